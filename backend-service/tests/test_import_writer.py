from __future__ import annotations

import sqlite3
import tempfile
import unittest
from pathlib import Path

from memex_backend.archive_store import ArchiveStore
from memex_backend.config import Settings
from memex_backend.db import connect, init_schema, run_write_transaction
from memex_backend.errors import BUSY, CONSTRAINT, StorageError
from memex_backend.types import ParsedConversation, ParsedMessage


def _conversation(conv_id: str, title: str, messages: list[tuple[str, str, int]], *, source: str = "claude") -> ParsedConversation:
    parsed = [
        ParsedMessage(
            id=f"{conv_id}_{msg_id}",
            conversation_id=conv_id,
            sender="human" if index % 2 == 0 else "assistant",
            content=content,
            created_at=created_at,
        )
        for index, (msg_id, content, created_at) in enumerate(messages)
    ]
    return ParsedConversation(
        id=conv_id,
        external_id=conv_id,
        source=source,
        title=title,
        created_at=messages[0][2] if messages else 0,
        updated_at=messages[-1][2] if messages else 0,
        message_count=len(parsed),
        messages=parsed,
    )


class _StoreTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.db_path = Path(self._tmp.name) / "memex.db"
        self.store = ArchiveStore(Settings(db_path=str(self.db_path), retry_backoff_ms=1))
        self.store.open()

    def tearDown(self) -> None:
        self.store.close()
        self._tmp.cleanup()

    def _inspect(self, sql: str, params: tuple = ()) -> list[tuple]:
        conn = sqlite3.connect(self.db_path)
        try:
            return [tuple(r) for r in conn.execute(sql, params).fetchall()]
        finally:
            conn.close()

    def assertIndexMirrorsMessages(self) -> None:
        drift = self._inspect(
            """
            SELECT m.id
            FROM messages m
            JOIN conversations c ON c.id = m.conversation_id
            LEFT JOIN messages_fts f ON f.message_id = m.id
              AND f.conversation_id = m.conversation_id
              AND f.content = m.content
              AND f.title = c.title
            WHERE f.message_id IS NULL
            """
        )
        self.assertEqual(drift, [])
        per_conversation_index = dict(self._inspect("SELECT conversation_id, COUNT(*) FROM messages_fts GROUP BY conversation_id"))
        per_conversation_messages = dict(self._inspect("SELECT conversation_id, COUNT(*) FROM messages GROUP BY conversation_id"))
        self.assertEqual(per_conversation_index, per_conversation_messages)


class ImportWriterTests(_StoreTestCase):
    async def test_insert_reports_counts_and_persists_rows(self) -> None:
        batch = [
            _conversation("c1", "Budget Planning", [("m1", "salary increase", 1000), ("m2", "weather today", 2000)]),
            _conversation("c2", "Trip", [("m1", "pack a tent", 3000)], source="chatgpt"),
        ]

        result = await self.store.insert_conversations(batch)

        self.assertEqual((result.conversation_count, result.message_count), (2, 3))
        stats = await self.store.get_stats()
        self.assertEqual(stats["conversation_count"], 2)
        self.assertEqual(stats["message_count"], 3)
        self.assertEqual(stats["indexed_message_count"], 3)
        self.assertEqual(stats["latest_message_timestamp"], 3000)
        self.assertIndexMirrorsMessages()

    async def test_reimport_is_idempotent(self) -> None:
        batch = [_conversation("c1", "Budget Planning", [("m1", "salary increase", 1000), ("m2", "weather today", 2000)])]

        await self.store.insert_conversations(batch)
        before = self._inspect("SELECT id, conversation_id, sender, content, created_at FROM messages ORDER BY id")
        await self.store.insert_conversations(batch)
        after = self._inspect("SELECT id, conversation_id, sender, content, created_at FROM messages ORDER BY id")

        stats = await self.store.get_stats()
        self.assertEqual((stats["conversation_count"], stats["message_count"], stats["indexed_message_count"]), (1, 2, 2))
        self.assertEqual(before, after)
        self.assertIndexMirrorsMessages()

    async def test_reimport_with_changed_content_replaces_index_entries(self) -> None:
        await self.store.insert_conversations(
            [_conversation("c1", "Draft", [("m1", "first draft text", 1000), ("m2", "second draft text", 2000), ("m3", "third", 3000)])]
        )
        await self.store.insert_conversations([_conversation("c1", "Final", [("m1", "final wording", 1000)])])

        self.assertIndexMirrorsMessages()
        stats = await self.store.get_stats()
        self.assertEqual((stats["message_count"], stats["indexed_message_count"]), (1, 1))
        self.assertEqual((await self.store.search("draft"))["total_matches"], 0)
        hit = await self.store.search("wording")
        self.assertEqual(hit["rows"][0]["title"], "Final")

    async def test_message_moved_between_conversations_keeps_one_index_entry(self) -> None:
        await self.store.insert_conversations([_conversation("c1", "One", [("m1", "shared note", 1000)])])
        moved = ParsedConversation(
            id="c2",
            source="claude",
            title="Two",
            messages=[ParsedMessage(id="c1_m1", conversation_id="c2", sender="human", content="shared note", created_at=1000)],
            message_count=1,
        )
        await self.store.insert_conversations([moved])

        self.assertEqual(self._inspect("SELECT conversation_id FROM messages_fts WHERE message_id = 'c1_m1'"), [("c2",)])
        self.assertIndexMirrorsMessages()

    async def test_missing_title_is_stored_as_untitled(self) -> None:
        await self.store.insert_conversations([_conversation("c1", "   ", [("m1", "hello", 1)])])
        self.assertEqual(self._inspect("SELECT title FROM conversations"), [("Untitled",)])
        self.assertEqual(self._inspect("SELECT title FROM messages_fts"), [("Untitled",)])

    async def test_accepts_plain_dict_records(self) -> None:
        result = await self.store.insert_conversations(
            [
                {
                    "id": "c9",
                    "externalId": "c9",
                    "source": "claude",
                    "title": "From dicts",
                    "createdAt": 5,
                    "updatedAt": 6,
                    "messageCount": 1,
                    "messages": [{"id": "c9_m1", "conversationId": "c9", "sender": "human", "content": "dict body", "createdAt": 5}],
                }
            ]
        )
        self.assertEqual((result.conversation_count, result.message_count), (1, 1))
        self.assertEqual((await self.store.get_messages("c9"))[0]["content"], "dict body")

    async def test_empty_batch_is_a_no_op(self) -> None:
        result = await self.store.insert_conversations([])
        self.assertEqual((result.conversation_count, result.message_count), (0, 0))

    async def test_failed_batch_leaves_no_partial_state(self) -> None:
        await self.store.insert_conversations([_conversation("c1", "Existing", [("m1", "keep me", 1000), ("m2", "me too", 2000)])])
        before = await self.store.get_stats()

        broken = _conversation("c3", "Broken", [("m1", "fine", 1000), ("m2", "orphan", 2000)])
        broken.messages[-1].conversation_id = "does-not-exist"
        batch = [_conversation("c2", "Would be new", [("m1", "new", 1000), ("m2", "newer", 2000)]), broken]

        with self.assertRaises(StorageError) as ctx:
            await self.store.insert_conversations(batch)

        self.assertEqual(ctx.exception.kind, CONSTRAINT)
        self.assertEqual(await self.store.get_stats(), before)
        self.assertEqual((await self.store.search("new"))["total_matches"], 0)
        self.assertIndexMirrorsMessages()

        # Retrying the corrected batch succeeds because nothing partial survived.
        broken.messages[-1].conversation_id = "c3"
        result = await self.store.insert_conversations(batch)
        self.assertEqual((result.conversation_count, result.message_count), (2, 4))


class WriteTransactionRetryTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.db_path = Path(self._tmp.name) / "memex.db"
        self.conn = connect(self.db_path, busy_timeout_ms=0)
        init_schema(self.conn, busy_timeout_ms=0)
        self.blocker = sqlite3.connect(self.db_path, isolation_level=None)
        self.blocker.execute("BEGIN IMMEDIATE")

    def tearDown(self) -> None:
        if self.blocker.in_transaction:
            self.blocker.execute("ROLLBACK")
        self.blocker.close()
        self.conn.close()
        self._tmp.cleanup()

    @staticmethod
    def _insert(conn: sqlite3.Connection) -> str:
        conn.execute("INSERT INTO conversations(id, source, title) VALUES ('c1', 'claude', 'Retry')")
        return "written"

    def test_busy_transaction_is_retried_with_linear_backoff(self) -> None:
        delays: list[float] = []

        def fake_sleep(seconds: float) -> None:
            delays.append(seconds)
            self.blocker.execute("COMMIT")

        result = run_write_transaction(self.conn, self._insert, attempts=3, backoff_seconds=0.2, sleep=fake_sleep)

        self.assertEqual(result, "written")
        self.assertEqual(delays, [0.2])
        self.assertEqual(self.conn.execute("SELECT title FROM conversations").fetchone()[0], "Retry")

    def test_busy_error_surfaces_after_attempts_are_exhausted(self) -> None:
        delays: list[float] = []

        with self.assertRaises(StorageError) as ctx:
            run_write_transaction(self.conn, self._insert, attempts=3, backoff_seconds=0.2, sleep=delays.append)

        self.assertEqual(ctx.exception.kind, BUSY)
        self.assertEqual(len(delays), 2)
        self.assertAlmostEqual(delays[0], 0.2)
        self.assertAlmostEqual(delays[1], 0.4)
        self.assertFalse(self.conn.in_transaction)

    def test_non_busy_errors_are_not_retried(self) -> None:
        self.blocker.execute("COMMIT")
        delays: list[float] = []

        def fails(conn: sqlite3.Connection) -> None:
            conn.execute("INSERT INTO messages(id, conversation_id, sender, content) VALUES ('m1', 'ghost', 'human', 'x')")

        with self.assertRaises(StorageError) as ctx:
            run_write_transaction(self.conn, fails, attempts=3, backoff_seconds=0.2, sleep=delays.append)

        self.assertEqual(ctx.exception.kind, CONSTRAINT)
        self.assertEqual(delays, [])


if __name__ == "__main__":
    unittest.main()
