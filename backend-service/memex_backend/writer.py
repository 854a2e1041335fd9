from __future__ import annotations

import logging
import sqlite3
from typing import Iterable, Sequence

from .db import run_write_transaction
from .types import ImportResult, ParsedConversation
from .utils import display_title

logger = logging.getLogger(__name__)

UPSERT_CONVERSATION_SQL = """
INSERT INTO conversations(id, source, title, created_at, updated_at, message_count)
VALUES(?, ?, ?, ?, ?, ?)
ON CONFLICT(id) DO UPDATE SET
  source=excluded.source,
  title=excluded.title,
  created_at=excluded.created_at,
  updated_at=excluded.updated_at,
  message_count=excluded.message_count
"""

UPSERT_MESSAGE_SQL = """
INSERT INTO messages(id, conversation_id, sender, content, created_at)
VALUES(?, ?, ?, ?, ?)
ON CONFLICT(id) DO UPDATE SET
  conversation_id=excluded.conversation_id,
  sender=excluded.sender,
  content=excluded.content,
  created_at=excluded.created_at
"""

INSERT_INDEX_SQL = """
INSERT INTO messages_fts(content, title, conversation_id, message_id)
VALUES(?, ?, ?, ?)
"""


def write_conversations(conn: sqlite3.Connection, conversations: Iterable[ParsedConversation]) -> ImportResult:
    """Transaction body: upsert each conversation and rewrite its index slice."""
    conversation_count = 0
    message_count = 0
    for conv in conversations:
        title = display_title(conv.title)
        conn.execute(
            UPSERT_CONVERSATION_SQL,
            (conv.id, conv.source, title, int(conv.created_at or 0), int(conv.updated_at or 0), int(conv.message_count)),
        )
        # The index is not maintained by the engine; clear this conversation's slice first.
        conn.execute("DELETE FROM messages_fts WHERE conversation_id = ?", (conv.id,))
        conn.execute("DELETE FROM messages WHERE conversation_id = ?", (conv.id,))

        for msg in conv.messages:
            moved = conn.execute("SELECT conversation_id FROM messages WHERE id = ?", (msg.id,)).fetchone()
            if moved is not None:
                conn.execute("DELETE FROM messages_fts WHERE message_id = ?", (msg.id,))
            conn.execute(
                UPSERT_MESSAGE_SQL,
                (msg.id, msg.conversation_id, msg.sender, msg.content, int(msg.created_at or 0)),
            )
            conn.execute(INSERT_INDEX_SQL, (msg.content, title, msg.conversation_id, msg.id))
            message_count += 1
        conversation_count += 1
    return ImportResult(conversation_count=conversation_count, message_count=message_count)


def insert_conversations(
    conn: sqlite3.Connection,
    conversations: Sequence[ParsedConversation],
    *,
    attempts: int = 3,
    backoff_seconds: float = 0.2,
) -> ImportResult:
    if not conversations:
        return ImportResult(conversation_count=0, message_count=0)

    result = run_write_transaction(
        conn,
        lambda c: write_conversations(c, conversations),
        attempts=attempts,
        backoff_seconds=backoff_seconds,
        label="import",
    )
    logger.info(
        "Import complete conversations=%s messages=%s",
        result.conversation_count,
        result.message_count,
    )
    return result
