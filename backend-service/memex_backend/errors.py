from __future__ import annotations

import sqlite3

BUSY = "busy"
CONSTRAINT = "constraint"
MIGRATION = "migration"
STORAGE = "storage"
SERIALIZER = "serializer"

BUSY_ERROR_NAMES = {"SQLITE_BUSY", "SQLITE_LOCKED"}


class StorageError(Exception):
    """Typed failure surfaced by every storage-layer operation."""

    def __init__(self, kind: str, message: str):
        super().__init__(message)
        self.kind = kind
        self.message = message

    def __str__(self) -> str:
        return f"[{self.kind}] {self.message}"

    @classmethod
    def from_sqlite(cls, exc: sqlite3.Error) -> StorageError:
        if is_busy_error(exc):
            return cls(BUSY, str(exc))
        if isinstance(exc, sqlite3.IntegrityError):
            return cls(CONSTRAINT, str(exc))
        return cls(STORAGE, str(exc))


def is_busy_error(exc: BaseException) -> bool:
    if not isinstance(exc, sqlite3.OperationalError):
        return False
    name = getattr(exc, "sqlite_errorname", None)
    if name is not None and any(name.startswith(prefix) for prefix in BUSY_ERROR_NAMES):
        return True
    text = str(exc).lower()
    return "database is locked" in text or "database is busy" in text or "database table is locked" in text
