"""
merge.py - Snapshot merge of one collection.

Combines the local snapshot (most recent intent on this device) with a
remote snapshot (cross-device truth) record by record:

1. Remote record with a local counterpart (same remote_id): the remote
   copy replaces the local content only if its updated_at is strictly
   newer. The local_id is always kept.
2. Remote record without a counterpart: if a not-yet-synced local record
   looks like the same item (duplicate heuristic), the local record
   adopts the remote_id instead of importing a second copy. Otherwise the
   remote record is appended under a derived local id.
3. Local-only records are kept untouched. Nothing is ever removed
   because the other side lacks it; an empty remote snapshot is a no-op.
"""

import logging
from dataclasses import dataclass, field
from typing import Any

from hybrid_sync.config import (
    DUPLICATE_PREFIX_CHARS,
    FIELD_LOCAL_ID,
    FIELD_REMOTE_ID,
    FIELD_UPDATED_AT,
)
from hybrid_sync.identity import IdentifierReconciler
from hybrid_sync.metrics import SyncLogger
from hybrid_sync.schema import CollectionSchema
from hybrid_sync.store.base import LocalStore
from hybrid_sync.utils.timestamps import is_strictly_newer

logger = logging.getLogger(__name__)


@dataclass
class MergeResult:
    """Merged snapshot plus per-outcome counts."""
    records: list[dict]
    added: int = 0
    updated: int = 0
    adopted: int = 0
    skipped: int = 0
    adopted_local_ids: set = field(default_factory=set)

    @property
    def changed(self) -> bool:
        return bool(self.added or self.updated or self.adopted)


def _normalize(text: Any) -> str:
    if not isinstance(text, str):
        return ""
    return " ".join(text.split()).casefold()


class MergeEngine:
    """Merges remote snapshots into the local store."""

    def __init__(self, store: LocalStore, reconciler: IdentifierReconciler | None = None):
        self._store = store
        self._reconciler = reconciler or IdentifierReconciler(store)
        self._sync_log = SyncLogger(__name__)

    def merge(
        self,
        local: list[dict],
        remote: list[dict],
        schema: CollectionSchema | None = None,
        tombstones: frozenset[str] = frozenset(),
    ) -> MergeResult:
        """
        Merge a remote snapshot into a local one.

        Neither input is mutated.

        Args:
            local: Local snapshot
            remote: Remote snapshot (records carry remote_id and updated_at)
            schema: Collection descriptor, used by the duplicate heuristic
            tombstones: Remote ids deleted on this device, never re-imported

        Returns:
            MergeResult with the merged snapshot in local order, new
            records appended in remote order
        """
        merged = [dict(record) for record in local]
        if not remote:
            return MergeResult(records=merged)

        result = MergeResult(records=merged)
        by_remote_id = {
            record[FIELD_REMOTE_ID]: index
            for index, record in enumerate(merged)
            if record.get(FIELD_REMOTE_ID)
        }
        unsynced = [index for index, record in enumerate(merged) if not record.get(FIELD_REMOTE_ID)]
        collection = schema.key if schema else "collection"

        for remote_record in remote:
            remote_id = remote_record.get(FIELD_REMOTE_ID)
            if not remote_id or remote_id in tombstones:
                result.skipped += 1
                continue

            index = by_remote_id.get(remote_id)
            if index is not None:
                current = merged[index]
                if is_strictly_newer(remote_record.get(FIELD_UPDATED_AT), current.get(FIELD_UPDATED_AT)):
                    replacement = {k: v for k, v in remote_record.items() if k != FIELD_LOCAL_ID}
                    replacement[FIELD_LOCAL_ID] = current.get(FIELD_LOCAL_ID)
                    merged[index] = replacement
                    result.updated += 1
                continue

            match = self._find_duplicate(merged, unsynced, remote_record, schema)
            if match is not None:
                index, reason = match
                unsynced.remove(index)
                merged[index] = {**merged[index], FIELD_REMOTE_ID: remote_id}
                by_remote_id[remote_id] = index
                result.adopted += 1
                result.adopted_local_ids.add(merged[index].get(FIELD_LOCAL_ID))
                self._sync_log.duplicate_adopted(
                    collection, merged[index].get(FIELD_LOCAL_ID), remote_id, reason
                )
                continue

            imported = {k: v for k, v in remote_record.items() if k != FIELD_LOCAL_ID}
            imported[FIELD_LOCAL_ID] = self._reconciler.resolve_local_id(merged, remote_id)
            merged.append(imported)
            by_remote_id[remote_id] = len(merged) - 1
            result.added += 1

        return result

    def apply(
        self,
        schema: CollectionSchema,
        remote: list[dict],
        tombstones: frozenset[str] = frozenset(),
    ) -> MergeResult:
        """
        Merge a remote snapshot into the stored collection and persist it.

        The store write (and its change notification) only happens when
        the merge changed something.
        """
        local = self._store.read_list(schema.key)
        result = self.merge(local, remote, schema, tombstones)
        if result.changed:
            self._store.write(schema.key, result.records)
        self._sync_log.merge_completed(
            schema.key, result.added, result.updated, result.adopted, result.skipped
        )
        return result

    @staticmethod
    def _find_duplicate(
        merged: list[dict],
        candidates: list[int],
        remote_record: dict,
        schema: CollectionSchema | None,
    ) -> tuple[int, str] | None:
        """
        Best-effort identity match between a remote record and an unsynced
        local one: same non-placeholder title, or same leading content.
        """
        title_field = schema.title_field if schema else "title"
        content_field = schema.content_field if schema else None

        remote_title = _normalize(remote_record.get(title_field)) if title_field else ""
        if remote_title and schema and schema.is_placeholder_title(remote_title):
            remote_title = ""
        remote_prefix = (
            _normalize(remote_record.get(content_field))[:DUPLICATE_PREFIX_CHARS]
            if content_field else ""
        )

        for index in candidates:
            local_record = merged[index]
            if remote_title and _normalize(local_record.get(title_field)) == remote_title:
                return index, "title match"
            if remote_prefix:
                local_prefix = _normalize(local_record.get(content_field))[:DUPLICATE_PREFIX_CHARS]
                if local_prefix and local_prefix == remote_prefix:
                    return index, "content prefix match"
        return None
