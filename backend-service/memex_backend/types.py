from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

Sender = Literal["human", "assistant"]


@dataclass(slots=True)
class ParsedMessage:
    id: str
    conversation_id: str
    sender: Sender
    content: str
    created_at: int = 0


@dataclass(slots=True)
class ParsedConversation:
    id: str
    source: str
    title: str
    created_at: int = 0
    updated_at: int = 0
    message_count: int = 0
    messages: list[ParsedMessage] = field(default_factory=list)
    external_id: str | None = None

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ParsedConversation:
        conv_id = str(payload["id"])
        messages = [
            ParsedMessage(
                id=str(msg["id"]),
                conversation_id=str(msg.get("conversation_id") or msg.get("conversationId") or conv_id),
                sender=msg["sender"],
                content=msg["content"],
                created_at=int(msg.get("created_at") or msg.get("createdAt") or 0),
            )
            for msg in payload.get("messages") or []
        ]
        message_count = payload.get("message_count", payload.get("messageCount"))
        return cls(
            id=conv_id,
            source=str(payload["source"]),
            title=payload.get("title") or "",
            created_at=int(payload.get("created_at") or payload.get("createdAt") or 0),
            updated_at=int(payload.get("updated_at") or payload.get("updatedAt") or 0),
            message_count=int(message_count) if message_count is not None else len(messages),
            messages=messages,
            external_id=payload.get("external_id") or payload.get("externalId") or conv_id,
        )


@dataclass(slots=True)
class ImportResult:
    conversation_count: int
    message_count: int


@dataclass(slots=True)
class SearchOptions:
    source: str | None = None
    date_from: int | None = None
    date_to: int | None = None
    limit: int | None = None
    offset: int | None = None
    sort: str | None = None
    highlight_open: str = "<mark>"
    highlight_close: str = "</mark>"
