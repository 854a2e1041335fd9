from __future__ import annotations

import logging
import sqlite3
import time
from pathlib import Path
from typing import Any, Callable, TypeVar

from .errors import BUSY, MIGRATION, StorageError, is_busy_error
from .utils import count_occurrences, title_sort_key

logger = logging.getLogger(__name__)

T = TypeVar("T")

SCHEMA_VERSION = 2
OCCURRENCES_FUNCTION = "memex_occurrences"
TITLE_KEY_FUNCTION = "memex_title_key"

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS conversations (
      id TEXT PRIMARY KEY,
      source TEXT NOT NULL,
      title TEXT,
      created_at INTEGER NOT NULL DEFAULT 0,
      updated_at INTEGER NOT NULL DEFAULT 0,
      message_count INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
      id TEXT PRIMARY KEY,
      conversation_id TEXT NOT NULL,
      sender TEXT NOT NULL,
      content TEXT NOT NULL,
      created_at INTEGER NOT NULL DEFAULT 0,
      FOREIGN KEY(conversation_id) REFERENCES conversations(id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_messages_conv_created ON messages(conversation_id, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_messages_created ON messages(created_at)",
    "CREATE INDEX IF NOT EXISTS idx_conversations_source ON conversations(source)",
    """
    CREATE VIRTUAL TABLE IF NOT EXISTS messages_fts USING fts5(
      content,
      title,
      conversation_id UNINDEXED,
      message_id UNINDEXED,
      tokenize = 'unicode61'
    )
    """,
)

# Columns older stores may lack; each can be added without touching existing rows.
ADDITIVE_COLUMNS: dict[str, tuple[tuple[str, str], ...]] = {
    "conversations": (
        ("source", "TEXT NOT NULL DEFAULT 'unknown'"),
        ("title", "TEXT"),
        ("created_at", "INTEGER NOT NULL DEFAULT 0"),
        ("updated_at", "INTEGER NOT NULL DEFAULT 0"),
        ("message_count", "INTEGER NOT NULL DEFAULT 0"),
    ),
    "messages": (("created_at", "INTEGER NOT NULL DEFAULT 0"),),
}

REQUIRED_COLUMNS = {
    "conversations": {"id"},
    "messages": {"id", "conversation_id", "sender", "content"},
    "messages_fts": {"content", "title", "conversation_id", "message_id"},
}

BACKFILL_INDEX_SQL = """
INSERT INTO messages_fts(content, title, conversation_id, message_id)
SELECT m.content, COALESCE(c.title, ''), m.conversation_id, m.id
FROM messages m
JOIN conversations c ON c.id = m.conversation_id
"""


def connect(db_path: str | Path, *, busy_timeout_ms: int = 30_000) -> sqlite3.Connection:
    path = str(db_path)
    if path != ":memory:":
        Path(path).expanduser().parent.mkdir(parents=True, exist_ok=True)
        path = str(Path(path).expanduser())
    # Transactions are managed explicitly with BEGIN IMMEDIATE.
    conn = sqlite3.connect(path, timeout=busy_timeout_ms / 1000, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.create_function(OCCURRENCES_FUNCTION, 2, count_occurrences, deterministic=True)
    conn.create_function(TITLE_KEY_FUNCTION, 1, title_sort_key, deterministic=True)
    return conn


def apply_pragmas(conn: sqlite3.Connection, *, busy_timeout_ms: int) -> None:
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")


def row_to_dict(row: sqlite3.Row | None) -> dict[str, Any] | None:
    if row is None:
        return None
    return {k: row[k] for k in row.keys()}


def fetchall(conn: sqlite3.Connection, sql: str, params: tuple[Any, ...] | dict[str, Any] = ()) -> list[dict[str, Any]]:
    return [{k: r[k] for k in r.keys()} for r in conn.execute(sql, params).fetchall()]


def fetchone(conn: sqlite3.Connection, sql: str, params: tuple[Any, ...] | dict[str, Any] = ()) -> dict[str, Any] | None:
    return row_to_dict(conn.execute(sql, params).fetchone())


def _table_names(conn: sqlite3.Connection) -> set[str]:
    rows = conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
    return {str(r["name"]) for r in rows}


def _table_columns(conn: sqlite3.Connection, table: str) -> set[str]:
    return {str(r["name"]) for r in conn.execute(f"PRAGMA table_info({table})").fetchall()}


def _drop_tables(conn: sqlite3.Connection, *tables: str) -> None:
    for table in tables:
        conn.execute(f"DROP TABLE IF EXISTS {table}")


def _upgrade_legacy_tables(conn: sqlite3.Connection) -> None:
    tables = _table_names(conn)

    if "conversations" in tables:
        columns = _table_columns(conn, "conversations")
        if not REQUIRED_COLUMNS["conversations"] <= columns:
            logger.warning("Legacy conversations table has no id column; rebuilding store tables")
            _drop_tables(conn, "messages_fts", "messages", "conversations")
            tables -= {"messages_fts", "messages", "conversations"}

    if "messages" in tables:
        columns = _table_columns(conn, "messages")
        if not REQUIRED_COLUMNS["messages"] <= columns:
            logger.warning("Legacy messages table is missing %s; rebuilding messages and index", sorted(REQUIRED_COLUMNS["messages"] - columns))
            _drop_tables(conn, "messages_fts", "messages")
            tables -= {"messages_fts", "messages"}

    for table, additions in ADDITIVE_COLUMNS.items():
        if table not in tables:
            continue
        columns = _table_columns(conn, table)
        for column, ddl in additions:
            if column not in columns:
                logger.info("Adding column %s.%s", table, column)
                conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}")

    if "messages_fts" in tables:
        columns = _table_columns(conn, "messages_fts")
        if not REQUIRED_COLUMNS["messages_fts"] <= columns:
            logger.warning("Search index has a legacy shape; recreating it from messages")
            _drop_tables(conn, "messages_fts")


def backfill_index(conn: sqlite3.Connection) -> int:
    indexed = conn.execute("SELECT COUNT(*) AS n FROM messages_fts").fetchone()["n"]
    if indexed:
        return 0
    messages = conn.execute("SELECT COUNT(*) AS n FROM messages").fetchone()["n"]
    if not messages:
        return 0
    conn.execute(BACKFILL_INDEX_SQL)
    indexed = conn.execute("SELECT COUNT(*) AS n FROM messages_fts").fetchone()["n"]
    logger.info("Backfilled search index with %s message(s)", indexed)
    return int(indexed)


def init_schema(conn: sqlite3.Connection, *, busy_timeout_ms: int = 30_000) -> int:
    """Bring the store to the current schema version. Returns the version."""
    try:
        apply_pragmas(conn, busy_timeout_ms=busy_timeout_ms)
        current = int(conn.execute("PRAGMA user_version").fetchone()[0])
        conn.execute("BEGIN IMMEDIATE")
        try:
            _upgrade_legacy_tables(conn)
            for statement in SCHEMA_STATEMENTS:
                conn.execute(statement)
            backfill_index(conn)
            if current != SCHEMA_VERSION:
                conn.execute(f"PRAGMA user_version={SCHEMA_VERSION}")
                logger.info("Schema version %s -> %s", current, SCHEMA_VERSION)
            conn.execute("COMMIT")
        except BaseException:
            _safe_rollback(conn)
            raise
    except sqlite3.Error as exc:
        raise StorageError(MIGRATION, f"Schema migration failed: {exc}") from exc
    return SCHEMA_VERSION


def _safe_rollback(conn: sqlite3.Connection) -> None:
    if not conn.in_transaction:
        return
    try:
        conn.execute("ROLLBACK")
    except sqlite3.Error:
        logger.warning("Rollback failed", exc_info=True)


def run_write_transaction(
    conn: sqlite3.Connection,
    body: Callable[[sqlite3.Connection], T],
    *,
    attempts: int = 3,
    backoff_seconds: float = 0.2,
    label: str = "write",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``body`` inside BEGIN IMMEDIATE, retrying the whole transaction on busy errors."""
    attempts = max(1, attempts)
    for attempt in range(1, attempts + 1):
        # A previous failure may have left the connection mid-transaction.
        _safe_rollback(conn)
        try:
            conn.execute("BEGIN IMMEDIATE")
            result = body(conn)
            conn.execute("COMMIT")
            return result
        except sqlite3.Error as exc:
            _safe_rollback(conn)
            if is_busy_error(exc) and attempt < attempts:
                delay = backoff_seconds * attempt
                logger.warning("%s transaction busy (attempt %s/%s); retrying in %.2fs", label, attempt, attempts, delay)
                sleep(delay)
                continue
            logger.exception("%s transaction failed after %s attempt(s)", label, attempt)
            if is_busy_error(exc):
                raise StorageError(BUSY, f"{exc} (gave up after {attempt} attempt(s))") from exc
            raise StorageError.from_sqlite(exc) from exc
        except BaseException:
            _safe_rollback(conn)
            raise
    raise AssertionError("unreachable")
