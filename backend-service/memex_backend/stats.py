from __future__ import annotations

import sqlite3
from datetime import date, datetime, timedelta
from typing import Any

from .db import fetchall, fetchone
from .utils import clamp_limit, display_title, local_day_start_ms

MAX_ACTIVITY_DAYS = 366


def get_stats(conn: sqlite3.Connection) -> dict[str, Any]:
    row = fetchone(
        conn,
        """
        SELECT
          (SELECT COUNT(*) FROM conversations) AS conversation_count,
          (SELECT COUNT(*) FROM messages) AS message_count,
          (SELECT COUNT(*) FROM messages_fts) AS indexed_message_count,
          (SELECT MAX(created_at) FROM messages) AS latest_message_timestamp
        """,
    ) or {}
    latest = row.get("latest_message_timestamp")
    return {
        "conversation_count": int(row.get("conversation_count") or 0),
        "message_count": int(row.get("message_count") or 0),
        "indexed_message_count": int(row.get("indexed_message_count") or 0),
        "latest_message_timestamp": int(latest) if latest is not None else None,
    }


def get_source_stats(conn: sqlite3.Connection) -> list[dict[str, Any]]:
    rows = fetchall(
        conn,
        """
        SELECT
          c.source AS source,
          COUNT(DISTINCT c.id) AS conversation_count,
          COUNT(m.id) AS message_count,
          MAX(m.created_at) AS last_activity_timestamp
        FROM conversations c
        LEFT JOIN messages m ON m.conversation_id = c.id
        GROUP BY c.source
        ORDER BY c.source
        """,
    )
    return [
        {
            "source": r["source"],
            "conversation_count": int(r["conversation_count"] or 0),
            "message_count": int(r["message_count"] or 0),
            "last_activity_timestamp": int(r["last_activity_timestamp"]) if r["last_activity_timestamp"] is not None else None,
        }
        for r in rows
    ]


def get_activity_by_day(conn: sqlite3.Connection, days: int, *, today: date | None = None) -> list[int]:
    """Messages per local calendar day over the trailing window, oldest first."""
    days = int(days)
    if days <= 0:
        return []
    if days > MAX_ACTIVITY_DAYS:
        raise ValueError(f"Activity window is limited to {MAX_ACTIVITY_DAYS} days, got {days}")
    today = today or datetime.now().date()
    first_day = today - timedelta(days=days - 1)
    start_ms = local_day_start_ms(first_day)
    end_ms = local_day_start_ms(today + timedelta(days=1))

    rows = conn.execute(
        """
        SELECT date(created_at / 1000, 'unixepoch', 'localtime') AS day, COUNT(*) AS n
        FROM messages
        WHERE created_at >= ? AND created_at < ?
        GROUP BY day
        """,
        (start_ms, end_ms),
    ).fetchall()
    counts = {str(r["day"]): int(r["n"]) for r in rows}
    return [counts.get((first_day + timedelta(days=offset)).isoformat(), 0) for offset in range(days)]


def get_messages(conn: sqlite3.Connection, conversation_id: str) -> list[dict[str, Any]]:
    rows = fetchall(
        conn,
        """
        SELECT id, conversation_id, sender, content, COALESCE(created_at, 0) AS created_at
        FROM messages
        WHERE conversation_id = ?
        ORDER BY created_at ASC, rowid ASC
        """,
        (conversation_id,),
    )
    return [
        {
            "id": r["id"],
            "conversation_id": r["conversation_id"],
            "sender": r["sender"],
            "content": r["content"],
            "created_at": int(r["created_at"]),
        }
        for r in rows
    ]


def _conversation_row_to_view(row: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": row["id"],
        "source": row["source"],
        "title": display_title(row.get("title")),
        "created_at": int(row.get("created_at") or 0),
        "updated_at": int(row.get("updated_at") or 0),
        "message_count": int(row.get("message_count") or 0),
    }


def get_conversation(conn: sqlite3.Connection, conversation_id: str) -> dict[str, Any] | None:
    row = fetchone(
        conn,
        """
        SELECT c.id, c.source, c.title, c.created_at, c.updated_at,
               (SELECT COUNT(*) FROM messages m WHERE m.conversation_id = c.id) AS message_count
        FROM conversations c
        WHERE c.id = ?
        """,
        (conversation_id,),
    )
    if not row:
        return None
    return _conversation_row_to_view(row)


def list_conversations(conn: sqlite3.Connection, *, limit: int = 50, source: str | None = None) -> list[dict[str, Any]]:
    safe_limit = clamp_limit(limit, default=50, maximum=500)
    where = "WHERE c.source = ?" if source else ""
    params: tuple[Any, ...] = (source, safe_limit) if source else (safe_limit,)
    rows = fetchall(
        conn,
        f"""
        SELECT c.id, c.source, c.title, c.created_at, c.updated_at,
               (SELECT COUNT(*) FROM messages m WHERE m.conversation_id = c.id) AS message_count
        FROM conversations c
        {where}
        ORDER BY c.created_at DESC, c.id ASC
        LIMIT ?
        """,
        params,
    )
    return [_conversation_row_to_view(r) for r in rows]
