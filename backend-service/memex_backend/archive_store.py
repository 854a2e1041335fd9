from __future__ import annotations

import logging
import sqlite3
from typing import Any, Iterable

from .config import Settings
from .db import connect, init_schema
from .errors import SERIALIZER, StorageError
from .maintenance import clear_all, rebuild_index
from .search import SearchEngine
from .serializer import AccessSerializer, Operation, T
from .stats import (
    get_activity_by_day,
    get_conversation,
    get_messages,
    get_source_stats,
    get_stats,
    list_conversations,
)
from .types import ImportResult, ParsedConversation, SearchOptions
from .writer import insert_conversations

logger = logging.getLogger(__name__)


class ArchiveStore:
    """Storage and search operations over one store file.

    Every operation goes through the access serializer; the schema migration
    is the first thing it runs.
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self.search_engine = SearchEngine(
            title_match_boost=settings.title_match_boost,
            snippet_tokens=settings.snippet_tokens,
        )
        self._serializer: AccessSerializer | None = None

    @property
    def is_open(self) -> bool:
        return self._serializer is not None

    def open(self) -> None:
        if self._serializer is not None:
            return
        settings = self.settings
        serializer = AccessSerializer(lambda: connect(settings.db_path, busy_timeout_ms=settings.busy_timeout_ms))
        migration = serializer.submit(lambda conn: init_schema(conn, busy_timeout_ms=settings.busy_timeout_ms))
        try:
            version = migration.result()
        except Exception:
            serializer.close()
            raise
        self._serializer = serializer
        logger.info("Opened archive store path=%s schema_version=%s", settings.db_path, version)

    def close(self) -> None:
        serializer, self._serializer = self._serializer, None
        if serializer is not None:
            serializer.close()

    async def _enqueue(self, operation: Operation[T]) -> T:
        if self._serializer is None:
            raise StorageError(SERIALIZER, "Archive store is not open")
        try:
            return await self._serializer.enqueue(operation)
        except sqlite3.Error as exc:
            raise StorageError.from_sqlite(exc) from exc

    @property
    def _backoff_seconds(self) -> float:
        return self.settings.retry_backoff_ms / 1000

    async def insert_conversations(self, conversations: Iterable[ParsedConversation | dict[str, Any]]) -> ImportResult:
        batch = [c if isinstance(c, ParsedConversation) else ParsedConversation.from_dict(c) for c in conversations]
        return await self._enqueue(
            lambda conn: insert_conversations(
                conn,
                batch,
                attempts=self.settings.write_attempts,
                backoff_seconds=self._backoff_seconds,
            )
        )

    async def search(
        self,
        query: str,
        *,
        source: str | None = None,
        date_from: int | None = None,
        date_to: int | None = None,
        limit: int | None = None,
        offset: int | None = None,
        sort: str | None = None,
        highlight_open: str = "<mark>",
        highlight_close: str = "</mark>",
    ) -> dict[str, Any]:
        options = SearchOptions(
            source=source,
            date_from=date_from,
            date_to=date_to,
            limit=limit,
            offset=offset,
            sort=sort,
            highlight_open=highlight_open,
            highlight_close=highlight_close,
        )
        return await self._enqueue(lambda conn: self.search_engine.search(conn, query, options))

    async def browse_conversations(
        self,
        *,
        source: str | None = None,
        date_from: int | None = None,
        date_to: int | None = None,
        limit: int | None = None,
        offset: int | None = None,
        sort: str | None = None,
    ) -> dict[str, Any]:
        options = SearchOptions(
            source=source,
            date_from=date_from,
            date_to=date_to,
            limit=limit,
            offset=offset,
            sort=sort,
        )
        return await self._enqueue(lambda conn: self.search_engine.browse(conn, options))

    async def get_messages(self, conversation_id: str) -> list[dict[str, Any]]:
        return await self._enqueue(lambda conn: get_messages(conn, conversation_id))

    async def get_conversation(self, conversation_id: str) -> dict[str, Any] | None:
        return await self._enqueue(lambda conn: get_conversation(conn, conversation_id))

    async def list_conversations(self, *, limit: int = 50, source: str | None = None) -> list[dict[str, Any]]:
        return await self._enqueue(lambda conn: list_conversations(conn, limit=limit, source=source))

    async def get_stats(self) -> dict[str, Any]:
        return await self._enqueue(get_stats)

    async def get_source_stats(self) -> list[dict[str, Any]]:
        return await self._enqueue(get_source_stats)

    async def get_activity_by_day(self, days: int) -> list[int]:
        return await self._enqueue(lambda conn: get_activity_by_day(conn, days))

    async def clear_all_data(self) -> None:
        await self._enqueue(
            lambda conn: clear_all(conn, attempts=self.settings.write_attempts, backoff_seconds=self._backoff_seconds)
        )

    async def rebuild_index(self) -> int:
        return await self._enqueue(
            lambda conn: rebuild_index(conn, attempts=self.settings.write_attempts, backoff_seconds=self._backoff_seconds)
        )
