from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

DEFAULT_DB_FILENAME = "memex.db"


def _default_db_path() -> str:
    return str(Path.home() / ".memex" / DEFAULT_DB_FILENAME)


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    host: str = "127.0.0.1"
    port: int = 8766
    db_path: str = DEFAULT_DB_FILENAME
    busy_timeout_ms: int = 30_000
    write_attempts: int = 3
    retry_backoff_ms: int = 200
    title_match_boost: int = 1000
    snippet_tokens: int = 16
    log_level: str = "INFO"


def load_settings() -> Settings:
    return Settings(
        host=os.getenv("MEMEX_HOST", "127.0.0.1"),
        port=_env_int("MEMEX_PORT", 8766),
        db_path=(os.getenv("MEMEX_DB_PATH") or "").strip() or _default_db_path(),
        busy_timeout_ms=max(0, _env_int("MEMEX_BUSY_TIMEOUT_MS", 30_000)),
        write_attempts=max(1, _env_int("MEMEX_WRITE_ATTEMPTS", 3)),
        retry_backoff_ms=max(0, _env_int("MEMEX_RETRY_BACKOFF_MS", 200)),
        title_match_boost=max(0, _env_int("MEMEX_TITLE_MATCH_BOOST", 1000)),
        snippet_tokens=max(1, min(_env_int("MEMEX_SNIPPET_TOKENS", 16), 64)),
        log_level=os.getenv("MEMEX_LOG_LEVEL", "INFO").strip().upper(),
    )
