"""Store backends for clusters, scan runs and analyses."""

from __future__ import annotations

from .base import TriageStore
from .memory import MemoryStore
from .sql import SqlStore

__all__ = [
    "MemoryStore",
    "SqlStore",
    "TriageStore",
    "open_store",
]


def open_store(url: str) -> TriageStore:
    """Open a store by URL. ``memory://`` gives a fresh in-process store."""
    if url.startswith("memory:"):
        return MemoryStore()
    return SqlStore(url)
