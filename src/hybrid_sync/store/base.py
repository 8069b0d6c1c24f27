"""
base.py - Abstract local store adapter.

The adapter wraps a synchronous key-value backend holding one JSON
array per collection key. It owns two guarantees the rest of the
engine relies on:

- write() is durable before it returns and publishes the new value
  to in-process subscribers.
- No failure (serialization, quota, I/O) ever escapes read/write/remove;
  failures are logged, counted, and reported as None/False.

Backends implement four primitives (_load, _store, _delete, _revisions).
Every stored key carries a table-wide revision number and the token of
the store instance that wrote it, which is how poll_external() tells
changes made by another process apart from this instance's own writes.
"""

import json
import logging
import uuid
from abc import ABC, abstractmethod
from typing import Any, Callable

from hybrid_sync.config import STORAGE_QUOTA_BYTES
from hybrid_sync.errors import StorageFailure
from hybrid_sync.metrics import SyncLogger
from hybrid_sync.store.events import ChangeBus, ChangeHandler

logger = logging.getLogger(__name__)


class LocalStore(ABC):
    """Synchronous read/write/subscribe wrapper over a key-value backend."""

    def __init__(
        self,
        bus: ChangeBus | None = None,
        quota_bytes: int = STORAGE_QUOTA_BYTES,
    ) -> None:
        self._bus = bus or ChangeBus()
        self._external_bus = ChangeBus()
        self._quota_bytes = quota_bytes
        self._token = uuid.uuid4().hex
        self._seen: dict[str, int] = {}
        self._primed = False
        self._sync_log = SyncLogger(__name__)

    @property
    def bus(self) -> ChangeBus:
        """Bus carrying this instance's own writes."""
        return self._bus

    @property
    def token(self) -> str:
        return self._token

    # -------------------------------------------------------------------------
    # Backend primitives
    # -------------------------------------------------------------------------

    @abstractmethod
    def _load(self, key: str) -> str | None:
        """Return the raw JSON text stored under key, or None."""

    @abstractmethod
    def _store(self, key: str, blob: str) -> int:
        """Durably store blob under key tagged with this token; return its revision."""

    @abstractmethod
    def _delete(self, key: str) -> None:
        """Remove key if present."""

    @abstractmethod
    def _revisions(self) -> dict[str, tuple[int, str]]:
        """Map every stored key to (revision, writer token)."""

    def close(self) -> None:
        """Release backend resources."""

    # -------------------------------------------------------------------------
    # Public contract
    # -------------------------------------------------------------------------

    def read(self, key: str) -> Any | None:
        """
        Read the value stored under key.

        Returns:
            Decoded JSON value, or None when absent or unreadable
        """
        try:
            blob = self._load(key)
        except StorageFailure as e:
            self._sync_log.storage_failed(key, "read", e)
            return None
        if blob is None:
            return None
        try:
            return json.loads(blob)
        except json.JSONDecodeError as e:
            self._sync_log.storage_failed(key, "corrupt", e)
            return None

    def read_list(self, key: str) -> list[dict]:
        """Read a collection, treating absent or non-list values as empty."""
        value = self.read(key)
        if value is None:
            return []
        if not isinstance(value, list):
            logger.warning(f"Ignoring non-list value stored under {key}")
            return []
        return [item for item in value if isinstance(item, dict)]

    def write(self, key: str, value: Any) -> bool:
        """
        Serialize and durably store value, then notify subscribers.

        Returns:
            True if the value was stored, False if the write was dropped
        """
        try:
            blob = json.dumps(value, ensure_ascii=False, separators=(",", ":"))
        except (TypeError, ValueError) as e:
            self._sync_log.storage_failed(key, "serialization", e)
            return False

        size = len(blob.encode("utf-8"))
        if size > self._quota_bytes:
            self._sync_log.storage_failed(
                key,
                "quota",
                StorageFailure(
                    f"Value of {size} bytes exceeds quota of {self._quota_bytes}",
                    key=key,
                    reason="quota",
                ),
            )
            return False

        try:
            revision = self._store(key, blob)
        except StorageFailure as e:
            self._sync_log.storage_failed(key, "write", e)
            return False

        self._seen[key] = revision
        self._bus.publish(key, json.loads(blob))
        return True

    def remove(self, key: str) -> bool:
        """Delete key and notify subscribers with None."""
        try:
            self._delete(key)
        except StorageFailure as e:
            self._sync_log.storage_failed(key, "remove", e)
            return False
        self._seen.pop(key, None)
        self._bus.publish(key, None)
        return True

    def keys(self) -> list[str]:
        try:
            return sorted(self._revisions())
        except StorageFailure as e:
            self._sync_log.storage_failed("*", "keys", e)
            return []

    def subscribe(self, key: str | None, handler: ChangeHandler) -> Callable[[], None]:
        """Subscribe to writes made through this instance."""
        return self._bus.subscribe(key, handler)

    def subscribe_external(self, key: str | None, handler: ChangeHandler) -> Callable[[], None]:
        """Subscribe to writes made by other instances sharing the backend."""
        return self._external_bus.subscribe(key, handler)

    def poll_external(self) -> list[str]:
        """
        Detect keys changed or removed by another instance since the last poll
        and dispatch them to subscribe_external handlers.

        The first call only records the current revisions.

        Returns:
            Keys that changed externally
        """
        try:
            revisions = self._revisions()
        except StorageFailure as e:
            self._sync_log.storage_failed("*", "poll", e)
            return []

        if not self._primed:
            for key, (revision, _writer) in revisions.items():
                self._seen.setdefault(key, revision)
            self._primed = True
            return []

        changed = []
        for key, (revision, writer) in revisions.items():
            if self._seen.get(key) == revision:
                continue
            self._seen[key] = revision
            if writer != self._token:
                changed.append(key)

        for key in [k for k in self._seen if k not in revisions]:
            del self._seen[key]
            changed.append(key)

        for key in changed:
            self._external_bus.publish(key, self.read(key))
        return changed
