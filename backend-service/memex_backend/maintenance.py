from __future__ import annotations

import logging
import sqlite3

from .db import BACKFILL_INDEX_SQL, run_write_transaction

logger = logging.getLogger(__name__)


def _wipe(conn: sqlite3.Connection) -> None:
    # Index first so no entry ever outlives its message.
    conn.execute("DELETE FROM messages_fts")
    conn.execute("DELETE FROM messages")
    conn.execute("DELETE FROM conversations")


def clear_all(conn: sqlite3.Connection, *, attempts: int = 3, backoff_seconds: float = 0.2) -> None:
    run_write_transaction(conn, _wipe, attempts=attempts, backoff_seconds=backoff_seconds, label="clear-all")
    logger.info("Cleared all conversations, messages and index entries")


def _reindex(conn: sqlite3.Connection) -> int:
    conn.execute("DELETE FROM messages_fts")
    conn.execute(BACKFILL_INDEX_SQL)
    return int(conn.execute("SELECT COUNT(*) AS n FROM messages_fts").fetchone()["n"])


def rebuild_index(conn: sqlite3.Connection, *, attempts: int = 3, backoff_seconds: float = 0.2) -> int:
    indexed = run_write_transaction(conn, _reindex, attempts=attempts, backoff_seconds=backoff_seconds, label="reindex")
    logger.info("Rebuilt search index entries=%s", indexed)
    return indexed
