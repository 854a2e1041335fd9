from __future__ import annotations

import asyncio
import logging
import sqlite3
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, TypeVar

from .errors import SERIALIZER, StorageError

logger = logging.getLogger(__name__)

T = TypeVar("T")
Operation = Callable[[sqlite3.Connection], T]


class AccessSerializer:
    """Single worker thread that owns the store connection.

    Operations run one at a time in submission order. A failing operation
    settles its own future and the next one still runs. Operations must not
    submit further work while they hold their turn.
    """

    def __init__(self, connect: Callable[[], sqlite3.Connection], *, name: str = "memex-db"):
        self._connect = connect
        self._conn: sqlite3.Connection | None = None
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=name)
        self._state_lock = threading.Lock()
        self._local = threading.local()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = self._connect()
        return self._conn

    def _run(self, operation: Operation[T]) -> T:
        self._local.active = True
        try:
            return operation(self._connection())
        finally:
            self._local.active = False

    def submit(self, operation: Operation[T]) -> Future[T]:
        if getattr(self._local, "active", False):
            raise StorageError(SERIALIZER, "Operation re-entered the access serializer while holding its turn")
        with self._state_lock:
            if self._closed:
                raise StorageError(SERIALIZER, "Access serializer is closed")
            return self._executor.submit(self._run, operation)

    def call(self, operation: Operation[T]) -> T:
        return self.submit(operation).result()

    async def enqueue(self, operation: Operation[T]) -> T:
        return await asyncio.wrap_future(self.submit(operation))

    def _close_connection(self) -> None:
        if self._conn is None:
            return
        try:
            if self._conn.in_transaction:
                self._conn.rollback()
        finally:
            self._conn.close()
            self._conn = None

    def close(self) -> None:
        with self._state_lock:
            if self._closed:
                return
            self._closed = True
            closing = self._executor.submit(self._close_connection)
        try:
            closing.result()
        except sqlite3.Error:
            logger.exception("Closing the store connection failed")
        finally:
            self._executor.shutdown(wait=True)
