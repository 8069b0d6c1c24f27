"""
identity.py - Local/remote identifier reconciliation.

The UI keys records off small local identifiers; the remote store issues
UUIDs. This module keeps the two regimes apart:

- is_remote_id: format check for server identifiers
- derive_stable_local_id: deterministic local id for a remote-only record
- attach_remote_id: back-fill a server id onto the matching local record
- new_local_id: fresh local id for a record created on this device

Derived ids are a SHA-256 prefix folded to 53 bits, so the same remote id
always yields the same local id on every device and the value stays an
exact integer in JavaScript-style JSON consumers.
"""

import hashlib
import logging
import time
from typing import Any, Iterable

from hybrid_sync.config import (
    FIELD_LOCAL_ID,
    FIELD_REMOTE_ID,
    LOCAL_ID_BITS,
    REMOTE_ID_PATTERN,
)
from hybrid_sync.store.base import LocalStore

logger = logging.getLogger(__name__)

_LOCAL_ID_MASK = (1 << LOCAL_ID_BITS) - 1


def is_remote_id(value: Any) -> bool:
    """True if value is a well-formed server identifier (UUID v1-v5)."""
    return isinstance(value, str) and REMOTE_ID_PATTERN.match(value) is not None


def derive_stable_local_id(remote_id: str, salt: int = 0) -> int:
    """
    Derive a local id from a remote id.

    Pure and deterministic: case and hyphens in the UUID do not matter.

    Args:
        remote_id: Server identifier
        salt: Collision counter; 0 for the canonical id

    Returns:
        Positive integer below 2**53
    """
    normalized = remote_id.replace("-", "").lower()
    if salt:
        normalized = f"{normalized}#{salt}"
    digest = hashlib.sha256(normalized.encode("utf-8")).digest()
    value = int.from_bytes(digest[:8], "big") & _LOCAL_ID_MASK
    return value or 1


def _local_ids(records: Iterable[dict]) -> set:
    return {r.get(FIELD_LOCAL_ID) for r in records}


class IdentifierReconciler:
    """Maps between local and remote identifiers for records in a store."""

    def __init__(self, store: LocalStore):
        self._store = store

    is_remote_id = staticmethod(is_remote_id)
    derive_stable_local_id = staticmethod(derive_stable_local_id)

    @staticmethod
    def resolve_local_id(records: list[dict], remote_id: str) -> int:
        """
        Local id for a remote-only record entering this collection.

        Uses the canonical derived id unless a different record already
        holds it, in which case a salted derivation is used.
        """
        taken = _local_ids(records)
        salt = 0
        candidate = derive_stable_local_id(remote_id)
        while candidate in taken:
            salt += 1
            candidate = derive_stable_local_id(remote_id, salt)
        if salt:
            logger.warning(f"Derived local id for {remote_id} collided; used salt {salt}")
        return candidate

    @staticmethod
    def new_local_id(records: list[dict]) -> int:
        """Millisecond clock value, bumped above every integer local id present."""
        candidate = int(time.time() * 1000)
        numeric = [
            r.get(FIELD_LOCAL_ID) for r in records
            if isinstance(r.get(FIELD_LOCAL_ID), int) and not isinstance(r.get(FIELD_LOCAL_ID), bool)
        ]
        if numeric:
            candidate = max(candidate, max(numeric) + 1)
        taken = _local_ids(records)
        while candidate in taken:
            candidate += 1
        return candidate

    @staticmethod
    def find_by_remote_id(records: list[dict], remote_id: str) -> dict | None:
        return next((r for r in records if r.get(FIELD_REMOTE_ID) == remote_id), None)

    def attach_remote_id(self, collection_key: str, local_id: Any, remote_id: str) -> bool:
        """
        Back-fill remote_id onto the local record with local_id.

        Reads the current snapshot, so edits saved after the flush began
        are preserved. Writes (and notifies) only when something changed.

        Returns:
            True if the record was found and now carries remote_id
        """
        return self.attach_remote_ids(collection_key, {local_id: remote_id}) == 1

    def attach_remote_ids(self, collection_key: str, mapping: dict[Any, str]) -> int:
        """Back-fill several remote ids with one write; return how many records matched."""
        valid = {}
        for local_id, remote_id in mapping.items():
            if is_remote_id(remote_id):
                valid[local_id] = remote_id
            else:
                logger.warning(
                    f"Refusing to attach malformed remote id {remote_id!r} to {collection_key}/{local_id}"
                )
        if not valid:
            return 0

        records = self._store.read_list(collection_key)
        matched = 0
        changed = False
        updated = []
        for record in records:
            local_id = record.get(FIELD_LOCAL_ID)
            if local_id in valid:
                matched += 1
                if record.get(FIELD_REMOTE_ID) != valid[local_id]:
                    record = {**record, FIELD_REMOTE_ID: valid[local_id]}
                    changed = True
            updated.append(record)

        if matched < len(valid):
            logger.info(
                f"{len(valid) - matched} record(s) in {collection_key} were deleted "
                f"locally before their remote id arrived"
            )
        if changed and not self._store.write(collection_key, updated):
            return 0
        return matched
