"""
Local store adapters.

Provides synchronous, durable, never-raising key-value storage for
collection snapshots, with in-process and cross-process change
notification.
"""

from hybrid_sync.store.events import ChangeBus, ChangeHandler
from hybrid_sync.store.base import LocalStore
from hybrid_sync.store.memory import MemoryStore, MemoryBackend
from hybrid_sync.store.sqlite_store import SQLiteStore

__all__ = [
    "ChangeBus",
    "ChangeHandler",
    "LocalStore",
    "MemoryStore",
    "MemoryBackend",
    "SQLiteStore",
]
