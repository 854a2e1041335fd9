from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from .types import ParsedConversation, ParsedMessage
from .utils import UNTITLED


@dataclass(frozen=True)
class SourceMeta:
    id: str
    label: str
    available: bool


IMPORT_SOURCES: tuple[SourceMeta, ...] = (
    SourceMeta(id="claude", label="Claude", available=True),
    SourceMeta(id="chatgpt", label="ChatGPT", available=True),
    SourceMeta(id="gemini", label="Gemini", available=False),
    SourceMeta(id="grok", label="Grok", available=False),
)


def _iso_to_millis(value: Any) -> int:
    if not isinstance(value, str) or not value.strip():
        return 0
    cleaned = value.strip()
    if cleaned.endswith("Z"):
        cleaned = cleaned[:-1] + "+00:00"
    try:
        return int(datetime.fromisoformat(cleaned).timestamp() * 1000)
    except ValueError:
        return 0


def _seconds_to_millis(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not value:
        return 0
    return int(value * 1000)


def _claude_content(message: dict[str, Any]) -> str | None:
    text = message.get("text")
    if isinstance(text, str):
        return text.strip() or None

    blocks = message.get("content")
    if not isinstance(blocks, list):
        return None
    parts = [
        block["text"].strip()
        for block in blocks
        if isinstance(block, dict) and block.get("type") == "text" and isinstance(block.get("text"), str)
    ]
    parts = [part for part in parts if part]
    if not parts:
        return None
    return "\n\n".join(parts)


def parse_claude_conversations(raw: list[Any]) -> list[ParsedConversation]:
    """Claude ``conversations.json`` export -> canonical conversations."""
    conversations: list[ParsedConversation] = []
    for conv in raw:
        if not isinstance(conv, dict):
            continue
        conv_uuid = conv.get("uuid")
        chat_messages = conv.get("chat_messages")
        if not conv_uuid or not isinstance(chat_messages, list):
            continue

        messages: list[ParsedMessage] = []
        for msg in chat_messages:
            if not isinstance(msg, dict):
                continue
            msg_uuid = msg.get("uuid")
            sender = msg.get("sender")
            if not msg_uuid or sender not in ("human", "assistant"):
                continue
            content = _claude_content(msg)
            if not content:
                continue
            messages.append(
                ParsedMessage(
                    id=f"{conv_uuid}_{msg_uuid}",
                    conversation_id=conv_uuid,
                    sender=sender,
                    content=content,
                    created_at=_iso_to_millis(msg.get("created_at")),
                )
            )

        conversations.append(
            ParsedConversation(
                id=conv_uuid,
                external_id=conv_uuid,
                source="claude",
                title=conv.get("name") or UNTITLED,
                created_at=_iso_to_millis(conv.get("created_at")),
                updated_at=_iso_to_millis(conv.get("updated_at")),
                message_count=len(messages),
                messages=messages,
            )
        )
    return conversations


def _chatgpt_text(parts: Any) -> str | None:
    if not isinstance(parts, list):
        return None
    texts = [part.strip() for part in parts if isinstance(part, str) and part.strip()]
    if not texts:
        return None
    return "\n".join(texts).strip() or None


def _flatten_chatgpt(conv: dict[str, Any], conv_id: str) -> list[ParsedMessage]:
    mapping = conv.get("mapping")
    node_id = conv.get("current_node")
    if not isinstance(mapping, dict) or not node_id:
        return []

    collected: list[ParsedMessage] = []
    seen: set[str] = set()
    while node_id and node_id not in seen:
        seen.add(node_id)
        node = mapping.get(node_id)
        if not isinstance(node, dict):
            break
        msg = node.get("message")
        if isinstance(msg, dict):
            role = (msg.get("author") or {}).get("role")
            if role in ("user", "assistant"):
                text = _chatgpt_text((msg.get("content") or {}).get("parts"))
                if text:
                    collected.append(
                        ParsedMessage(
                            id=f"{conv_id}_{msg.get('id')}",
                            conversation_id=conv_id,
                            sender="human" if role == "user" else "assistant",
                            content=text,
                            created_at=_seconds_to_millis(msg.get("create_time")),
                        )
                    )
        node_id = node.get("parent")

    collected.reverse()
    return collected


def parse_chatgpt_conversations(raw: list[Any]) -> list[ParsedConversation]:
    """ChatGPT export: follow the active branch from ``current_node`` to the root."""
    conversations: list[ParsedConversation] = []
    for conv in raw:
        if not isinstance(conv, dict):
            continue
        conv_id = conv.get("conversation_id") or conv.get("id")
        if not conv_id or not isinstance(conv.get("mapping"), dict) or not conv.get("current_node"):
            continue

        messages = _flatten_chatgpt(conv, conv_id)
        if not messages:
            continue
        conversations.append(
            ParsedConversation(
                id=conv_id,
                external_id=conv_id,
                source="chatgpt",
                title=conv.get("title") or UNTITLED,
                created_at=_seconds_to_millis(conv.get("create_time")),
                updated_at=_seconds_to_millis(conv.get("update_time")),
                message_count=len(messages),
                messages=messages,
            )
        )
    return conversations


PARSERS: dict[str, Callable[[list[Any]], list[ParsedConversation]]] = {
    "claude": parse_claude_conversations,
    "chatgpt": parse_chatgpt_conversations,
}


def source_label(source: str) -> str:
    for meta in IMPORT_SOURCES:
        if meta.id == source:
            return meta.label
    return source


def parse_export(source: str, raw: Any) -> list[ParsedConversation]:
    parser = PARSERS.get(source)
    if parser is None:
        raise ValueError(f'Importer for "{source}" is not available yet.')
    if not isinstance(raw, list):
        raise ValueError(f"Invalid {source_label(source)} export: expected a JSON array of conversations")
    parsed = parser(raw)
    if not parsed:
        raise ValueError("No conversations found in the export file")
    return parsed
