from __future__ import annotations

import asyncio
import sqlite3
import tempfile
import unittest
from pathlib import Path

from memex_backend.archive_store import ArchiveStore
from memex_backend.config import Settings
from memex_backend.db import SCHEMA_VERSION, connect, init_schema
from memex_backend.errors import MIGRATION, SERIALIZER, StorageError


def _columns(conn: sqlite3.Connection, table: str) -> set[str]:
    return {row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()}


class SchemaManagerTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.db_path = Path(self._tmp.name) / "memex.db"

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_fresh_store_gets_current_schema_and_pragmas(self) -> None:
        conn = connect(self.db_path, busy_timeout_ms=25_000)
        try:
            self.assertEqual(init_schema(conn, busy_timeout_ms=25_000), SCHEMA_VERSION)
            self.assertEqual(conn.execute("PRAGMA user_version").fetchone()[0], SCHEMA_VERSION)
            self.assertEqual(conn.execute("PRAGMA journal_mode").fetchone()[0].lower(), "wal")
            self.assertEqual(conn.execute("PRAGMA busy_timeout").fetchone()[0], 25_000)
            self.assertEqual(conn.execute("PRAGMA foreign_keys").fetchone()[0], 1)
            self.assertTrue({"id", "source", "title", "created_at", "updated_at", "message_count"} <= _columns(conn, "conversations"))
            self.assertTrue({"id", "conversation_id", "sender", "content", "created_at"} <= _columns(conn, "messages"))
            self.assertTrue({"content", "title", "conversation_id", "message_id"} <= _columns(conn, "messages_fts"))
        finally:
            conn.close()

    def test_init_schema_is_idempotent(self) -> None:
        conn = connect(self.db_path)
        try:
            init_schema(conn)
            conn.execute("INSERT INTO conversations(id, source, title) VALUES ('c1', 'claude', 'Kept')")
            init_schema(conn)
            self.assertEqual(conn.execute("SELECT title FROM conversations WHERE id='c1'").fetchone()[0], "Kept")
        finally:
            conn.close()

    def test_legacy_store_is_upgraded_without_losing_rows(self) -> None:
        legacy = sqlite3.connect(self.db_path)
        legacy.executescript(
            """
            CREATE TABLE conversations (id TEXT PRIMARY KEY, title TEXT, created_at INTEGER);
            CREATE TABLE messages (
              id TEXT PRIMARY KEY,
              conversation_id TEXT NOT NULL,
              sender TEXT NOT NULL,
              content TEXT NOT NULL,
              created_at INTEGER
            );
            CREATE VIRTUAL TABLE messages_fts USING fts5(content);
            INSERT INTO conversations VALUES ('c1', 'Old notes', 1000);
            INSERT INTO messages VALUES ('m1', 'c1', 'human', 'legacy quarterly forecast', 1500);
            INSERT INTO messages_fts(content) VALUES ('legacy quarterly forecast');
            """
        )
        legacy.commit()
        legacy.close()

        conn = connect(self.db_path)
        try:
            init_schema(conn)
            self.assertTrue({"source", "updated_at", "message_count"} <= _columns(conn, "conversations"))
            self.assertEqual(conn.execute("SELECT source FROM conversations WHERE id='c1'").fetchone()[0], "unknown")
            rows = conn.execute("SELECT content, title, conversation_id, message_id FROM messages_fts").fetchall()
            self.assertEqual([tuple(r) for r in rows], [("legacy quarterly forecast", "Old notes", "c1", "m1")])
        finally:
            conn.close()

    def test_empty_index_is_backfilled_from_messages(self) -> None:
        conn = connect(self.db_path)
        try:
            init_schema(conn)
            conn.execute("INSERT INTO conversations(id, source, title) VALUES ('c1', 'chatgpt', 'Trip')")
            conn.execute("INSERT INTO messages(id, conversation_id, sender, content, created_at) VALUES ('m1', 'c1', 'human', 'pack a tent', 1)")
            conn.execute("INSERT INTO messages(id, conversation_id, sender, content, created_at) VALUES ('m2', 'c1', 'assistant', 'and a stove', 2)")
            init_schema(conn)
            self.assertEqual(conn.execute("SELECT COUNT(*) FROM messages_fts").fetchone()[0], 2)
        finally:
            conn.close()

    def test_unreadable_store_fails_startup_with_migration_error(self) -> None:
        self.db_path.write_bytes(b"definitely not a sqlite database" * 64)
        store = ArchiveStore(Settings(db_path=str(self.db_path)))

        with self.assertRaises(StorageError) as ctx:
            store.open()

        self.assertEqual(ctx.exception.kind, MIGRATION)
        self.assertFalse(store.is_open)

    def test_operations_on_unopened_store_are_rejected(self) -> None:
        store = ArchiveStore(Settings(db_path=str(self.db_path)))
        with self.assertRaises(StorageError) as ctx:
            asyncio.run(store.get_stats())
        self.assertEqual(ctx.exception.kind, SERIALIZER)


if __name__ == "__main__":
    unittest.main()
