"""
memory.py - In-memory local store.

Several MemoryStore instances may share one MemoryBackend, which is how
tests model two tabs of the same application writing the same keys.
"""

from dataclasses import dataclass, field

from hybrid_sync.config import STORAGE_QUOTA_BYTES
from hybrid_sync.store.base import LocalStore
from hybrid_sync.store.events import ChangeBus


@dataclass
class MemoryBackend:
    """Shared rows: key -> (blob, revision, writer token)."""
    rows: dict[str, tuple[str, int, str]] = field(default_factory=dict)
    revision: int = 0


class MemoryStore(LocalStore):
    """Local store kept in process memory."""

    def __init__(
        self,
        backend: MemoryBackend | None = None,
        bus: ChangeBus | None = None,
        quota_bytes: int = STORAGE_QUOTA_BYTES,
    ) -> None:
        super().__init__(bus=bus, quota_bytes=quota_bytes)
        self.backend = backend if backend is not None else MemoryBackend()

    def _load(self, key: str) -> str | None:
        row = self.backend.rows.get(key)
        return row[0] if row else None

    def _store(self, key: str, blob: str) -> int:
        self.backend.revision += 1
        self.backend.rows[key] = (blob, self.backend.revision, self.token)
        return self.backend.revision

    def _delete(self, key: str) -> None:
        self.backend.rows.pop(key, None)

    def _revisions(self) -> dict[str, tuple[int, str]]:
        return {key: (row[1], row[2]) for key, row in self.backend.rows.items()}
