from __future__ import annotations

from dataclasses import dataclass

from .archive_store import ArchiveStore
from .config import Settings


@dataclass
class Services:
    settings: Settings
    store: ArchiveStore


def build_services(settings: Settings) -> Services:
    return Services(settings=settings, store=ArchiveStore(settings))
