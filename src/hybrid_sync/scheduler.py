"""
scheduler.py - Deferred push of local changes to the remote service.

The scheduler owns the session: which principal is signed in, which
collections hold changes the remote has not confirmed, and the timers
that flush them:

- save() writes locally at once and restarts a short debounce timer
- a periodic tick flushes anything still pending (fixed interval, no backoff)
- going online flushes everything pending immediately
- teardown starts one bounded flush without waiting for it

A flush of one collection deletes tombstoned remote rows, creates records
that have no remote_id (back-filling the new id), and updates records whose
updated_at differs from the version the remote last acknowledged.

Every session carries a generation number. Signing out bumps it, and any
flush still awaiting the network discards its results when it resumes.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

from hybrid_sync.config import (
    EngineSettings,
    FIELD_LOCAL_ID,
    FIELD_REMOTE_ID,
    FIELD_UPDATED_AT,
    TOMBSTONE_KEY_SUFFIX,
)
from hybrid_sync.errors import (
    AuthFailure,
    ConfigurationError,
    RecordNotFound,
    RemoteError,
    ValidationFailure,
)
from hybrid_sync.identity import IdentifierReconciler
from hybrid_sync.metrics import SyncLogger, flush_latency_seconds, pending_collections
from hybrid_sync.remote.client import RemoteCollectionClient
from hybrid_sync.resolution.merge import MergeEngine
from hybrid_sync.schema import CollectionSchema
from hybrid_sync.store.base import LocalStore
from hybrid_sync.utils.timestamps import is_strictly_newer, utc_now_iso

logger = logging.getLogger(__name__)


class SyncState(Enum):
    """Observable scheduler state."""
    IDLE = "idle"
    PENDING_LOCAL = "pending_local"
    FLUSHING = "flushing"
    OFFLINE = "offline"


@dataclass
class FlushOutcome:
    """Result of flushing one collection."""
    collection: str
    created: int = 0
    updated: int = 0
    deleted: int = 0
    rejected: int = 0
    error: Exception | None = None
    discarded: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None and not self.discarded


@dataclass
class SyncStatusReport:
    """Snapshot of the engine's sync state."""
    online: bool
    principal_id: str | None
    pending_count: int
    state: SyncState
    auth_failed: bool = False
    last_sync_at: str | None = None
    last_error: str | None = None


StatusCallback = Callable[[SyncStatusReport], None]


def tombstone_key(collection_key: str) -> str:
    return f"{collection_key}{TOMBSTONE_KEY_SUFFIX}"


def _content(record: dict) -> dict:
    return {k: v for k, v in record.items() if k not in (FIELD_UPDATED_AT, FIELD_REMOTE_ID)}


def _usable_id(value: Any) -> bool:
    return isinstance(value, (int, str)) and not isinstance(value, bool)


def _is_acked(acked: dict, record: dict) -> bool:
    local_id = record.get(FIELD_LOCAL_ID)
    return local_id in acked and acked[local_id] == record.get(FIELD_UPDATED_AT)


def _has_running_loop() -> bool:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True


class SyncScheduler:
    """
    Session state, pending set and flush timers for all collections.

    Not thread-safe: every method runs on the event loop thread.
    """

    def __init__(
        self,
        store: LocalStore,
        clients: dict[str, RemoteCollectionClient],
        settings: EngineSettings | None = None,
        reconciler: IdentifierReconciler | None = None,
        merge_engine: MergeEngine | None = None,
        on_status_change: StatusCallback | None = None,
        online: bool = True,
    ):
        self._store = store
        self._clients = clients
        self._settings = settings or EngineSettings()
        self._reconciler = reconciler or IdentifierReconciler(store)
        self._merge = merge_engine or MergeEngine(store, self._reconciler)
        self._on_status_change = on_status_change
        self._online = online
        self._sync_log = SyncLogger(__name__)

        self._principal_id: str | None = None
        self._generation = 0
        self._ready = False
        self._pending: set[str] = set()
        self._revisions: dict[str, int] = {}
        self._acked: dict[str, dict[Any, Any]] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._inflight = 0
        self._auth_failed = False
        self._last_sync_at: str | None = None
        self._last_error: str | None = None
        self._last_reported: tuple | None = None

        self._debounce_task: asyncio.Task | None = None
        self._periodic_task: asyncio.Task | None = None
        self._watch_task: asyncio.Task | None = None
        self._background: set[asyncio.Task] = set()

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def store(self) -> LocalStore:
        return self._store

    @property
    def reconciler(self) -> IdentifierReconciler:
        return self._reconciler

    @property
    def collection_keys(self) -> list[str]:
        return list(self._clients)

    @property
    def principal_id(self) -> str | None:
        return self._principal_id

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def is_ready(self) -> bool:
        return self._ready

    @property
    def online(self) -> bool:
        return self._online

    @property
    def pending(self) -> frozenset[str]:
        return frozenset(self._pending)

    @property
    def auth_failed(self) -> bool:
        return self._auth_failed

    @property
    def state(self) -> SyncState:
        if not self._online:
            return SyncState.OFFLINE
        if self._inflight:
            return SyncState.FLUSHING
        if self._pending:
            return SyncState.PENDING_LOCAL
        return SyncState.IDLE

    def status(self) -> SyncStatusReport:
        return SyncStatusReport(
            online=self._online,
            principal_id=self._principal_id,
            pending_count=len(self._pending),
            state=self.state,
            auth_failed=self._auth_failed,
            last_sync_at=self._last_sync_at,
            last_error=self._last_error,
        )

    def schema_for(self, collection_key: str) -> CollectionSchema:
        """
        Raises:
            ConfigurationError: If collection_key is not configured
        """
        client = self._clients.get(collection_key)
        if client is None:
            raise ConfigurationError(
                "Unknown collection key", setting="collection_key", value=collection_key
            )
        return client.schema

    # -------------------------------------------------------------------------
    # Session lifecycle
    # -------------------------------------------------------------------------

    async def initialize(self, principal_id: str) -> None:
        """
        Start a session: pull every collection, merge it locally, then
        start the flush machinery.

        A collection whose remote list fails stays local-only for now;
        its local changes are still pushed by later flushes.
        """
        self.reset()
        self._principal_id = principal_id
        generation = self._generation
        logger.info(f"Initializing sync for principal {principal_id}")

        await asyncio.gather(
            *(self._load_collection(key, generation) for key in self._clients)
        )
        if self._is_stale(generation):
            return

        for key in self._clients:
            if self._needs_push(key):
                self._mark_pending(key)

        self._ready = True
        self._start_timers()
        if self._pending:
            self._schedule_debounce()
        self._notify_status()

    def reset(self) -> None:
        """
        Forget the current principal.

        Timers stop and flushes still in flight discard their results.
        Local data is left in place.
        """
        self._generation += 1
        self._cancel_timers()
        self._principal_id = None
        self._ready = False
        self._pending.clear()
        self._revisions.clear()
        self._acked.clear()
        self._locks = {}
        self._auth_failed = False
        self._last_sync_at = None
        self._last_error = None
        pending_collections.set(0)
        self._notify_status()

    def stop(self) -> None:
        """Cancel all timers. Flushes already running are left to finish."""
        self._cancel_timers()

    async def drain(self) -> None:
        """Wait for every flush started in the background to finish."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def set_online(self, online: bool) -> None:
        """Update connectivity; coming back online flushes all pending work."""
        if online == self._online:
            return
        self._online = online
        logger.info(f"Connectivity changed: {'online' if online else 'offline'}")
        self._notify_status()
        if online and self._pending and _has_running_loop():
            self._spawn(self.flush())

    def clear_auth_failure(self) -> None:
        """Resume flushing after the principal re-authenticated."""
        if not self._auth_failed:
            return
        self._auth_failed = False
        self._last_error = None
        logger.info("Credentials refreshed; resuming sync")
        self._notify_status()
        if self._pending and _has_running_loop():
            self._spawn(self.flush())

    def schedule_exit_flush(self) -> asyncio.Task | None:
        """
        Start a final flush bounded by the exit timeout.

        Returns the task without awaiting it; None when there is nothing
        to flush or no event loop is running.
        """
        if not self._pending or not self._can_flush() or not _has_running_loop():
            return None
        self._cancel_debounce()
        return self._spawn(self._exit_flush())

    async def _exit_flush(self) -> None:
        timeout = self._settings.exit_flush_timeout_seconds
        try:
            await asyncio.wait_for(self.flush(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(
                f"Exit flush did not finish within {timeout}s; changes stay pending locally"
            )

    # -------------------------------------------------------------------------
    # Local mutations
    # -------------------------------------------------------------------------

    def save(self, collection_key: str, records: list[dict]) -> bool:
        """
        Replace a collection locally and schedule its push.

        Records whose content changed get a fresh updated_at. Records
        missing a local_id (or repeating one) get a new one, and a
        remote_id already back-filled into the stored copy is carried
        over when the caller's copy predates the back-fill.

        Returns:
            True if the local write succeeded

        Raises:
            ConfigurationError: If collection_key is not configured
        """
        self.schema_for(collection_key)
        previous = {
            r.get(FIELD_LOCAL_ID): r
            for r in self._store.read_list(collection_key)
            if _usable_id(r.get(FIELD_LOCAL_ID))
        }
        incoming = [r for r in records if isinstance(r, dict)]
        if len(incoming) != len(records):
            logger.warning(f"Dropping {len(records) - len(incoming)} non-object record(s) from {collection_key}")

        now = utc_now_iso()
        stamped: list[dict] = []
        seen: set = set()
        for original in incoming:
            record = dict(original)
            local_id = record.get(FIELD_LOCAL_ID)
            if not _usable_id(local_id) or local_id in seen:
                local_id = self._reconciler.new_local_id(stamped + incoming)
                record[FIELD_LOCAL_ID] = local_id
            seen.add(local_id)

            prior = previous.get(local_id)
            if prior is not None and not record.get(FIELD_REMOTE_ID) and prior.get(FIELD_REMOTE_ID):
                record[FIELD_REMOTE_ID] = prior[FIELD_REMOTE_ID]
            if prior is None or not record.get(FIELD_UPDATED_AT) or _content(record) != _content(prior):
                record[FIELD_UPDATED_AT] = now
            stamped.append(record)

        if not self._store.write(collection_key, stamped):
            return False
        self._mark_pending(collection_key)
        self._schedule_debounce()
        return True

    def delete_record(self, collection_key: str, local_id: Any) -> bool:
        """
        Remove a record locally and queue deletion of its remote row.

        Returns:
            True if the record existed and the local write succeeded

        Raises:
            ConfigurationError: If collection_key is not configured
        """
        self.schema_for(collection_key)
        records = self._store.read_list(collection_key)
        target = next((r for r in records if r.get(FIELD_LOCAL_ID) == local_id), None)
        if target is None:
            return False
        if not self._store.write(collection_key, [r for r in records if r is not target]):
            return False

        self._acked.get(collection_key, {}).pop(local_id, None)
        remote_id = target.get(FIELD_REMOTE_ID)
        if remote_id:
            self._add_tombstone(collection_key, remote_id)
            self._mark_pending(collection_key)
            self._schedule_debounce()
        return True

    def tombstones(self, collection_key: str) -> dict[str, bool]:
        """Remote ids deleted on this device, mapped to whether the remote delete succeeded."""
        value = self._store.read(tombstone_key(collection_key))
        if not isinstance(value, dict):
            return {}
        return {str(k): bool(v) for k, v in value.items()}

    def _add_tombstone(self, collection_key: str, remote_id: str) -> None:
        tombstones = self.tombstones(collection_key)
        if remote_id not in tombstones:
            tombstones[remote_id] = False
            self._store.write(tombstone_key(collection_key), tombstones)

    def _confirm_tombstone(self, collection_key: str, remote_id: str) -> None:
        tombstones = self.tombstones(collection_key)
        if tombstones.get(remote_id) is False:
            tombstones[remote_id] = True
            self._store.write(tombstone_key(collection_key), tombstones)

    # -------------------------------------------------------------------------
    # Flushing
    # -------------------------------------------------------------------------

    async def force_sync(self) -> list[FlushOutcome]:
        """Push every record of every collection, acknowledged or not."""
        if self._principal_id is None:
            logger.warning("force_sync called without a signed-in principal")
            return []
        self._acked.clear()
        for key in self._clients:
            self._mark_pending(key)
        self._cancel_debounce()
        return await self.flush()

    async def flush(self, keys: list[str] | None = None) -> list[FlushOutcome]:
        """
        Flush the given collections (default: all pending) concurrently.

        Does nothing while offline, signed out, or suspended after an
        auth failure.
        """
        if not self._can_flush():
            return []
        targets = sorted(self._pending) if keys is None else [k for k in keys if k in self._clients]
        if not targets:
            return []
        generation = self._generation
        return list(await asyncio.gather(
            *(self._flush_collection(key, generation) for key in targets)
        ))

    async def _flush_collection(self, key: str, generation: int) -> FlushOutcome:
        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            if self._is_stale(generation):
                self._sync_log.flush_discarded(key)
                return FlushOutcome(collection=key, discarded=True)
            if not self._can_flush():
                return FlushOutcome(collection=key, discarded=True)

            revision = self._revisions.get(key, 0)
            self._inflight += 1
            self._notify_status()
            start = time.perf_counter()
            try:
                outcome = await self._push(key, generation)
            except Exception as e:
                logger.exception(f"Unexpected error flushing {key}")
                outcome = FlushOutcome(collection=key, error=e)
            finally:
                self._inflight -= 1

            if outcome.discarded or self._is_stale(generation):
                outcome.discarded = True
                self._sync_log.flush_discarded(key)
                self._notify_status()
                return outcome

            duration = time.perf_counter() - start
            flush_latency_seconds.observe(duration, collection=key)
            if outcome.error is None:
                if self._revisions.get(key, 0) == revision:
                    self._pending.discard(key)
                self._last_sync_at = utc_now_iso()
                self._sync_log.flush_completed(
                    key, outcome.created, outcome.updated, outcome.deleted,
                    outcome.rejected, duration * 1000
                )
            elif isinstance(outcome.error, AuthFailure):
                self._handle_auth_failure(outcome.error)
            else:
                self._last_error = str(outcome.error)
                self._sync_log.flush_failed(key, outcome.error)

            pending_collections.set(len(self._pending))
            self._notify_status()
            return outcome

    async def _push(self, key: str, generation: int) -> FlushOutcome:
        client = self._clients[key]
        outcome = FlushOutcome(collection=key)
        records = self._store.read_list(key)
        acked = self._acked.setdefault(key, {})

        deletes = [rid for rid, done in self.tombstones(key).items() if not done]
        unacked = [r for r in records if not _is_acked(acked, r)]
        creates = [r for r in unacked if not r.get(FIELD_REMOTE_ID)]
        updates = [r for r in unacked if r.get(FIELD_REMOTE_ID)]
        self._sync_log.flush_started(key, len(creates), len(updates), len(deletes))

        try:
            for remote_id in deletes:
                try:
                    await client.delete(remote_id)
                except RecordNotFound:
                    logger.debug(f"Remote row {remote_id} in {key} was already gone")
                except ValidationFailure as e:
                    if self._is_stale(generation):
                        outcome.discarded = True
                        return outcome
                    # Never retried: the remote will refuse it again
                    outcome.rejected += 1
                    self._sync_log.record_rejected(key, remote_id, e)
                    self._confirm_tombstone(key, remote_id)
                    continue
                if self._is_stale(generation):
                    outcome.discarded = True
                    return outcome
                self._confirm_tombstone(key, remote_id)
                outcome.deleted += 1

            for record in creates + updates:
                if not await self._push_record(client, record, generation, outcome):
                    outcome.discarded = True
                    return outcome
        except RemoteError as e:
            outcome.error = e
        return outcome

    async def _push_record(
        self,
        client: RemoteCollectionClient,
        record: dict,
        generation: int,
        outcome: FlushOutcome,
    ) -> bool:
        """Create or update one record; False if the session changed meanwhile."""
        key = client.key
        local_id = record.get(FIELD_LOCAL_ID)
        known_id = record.get(FIELD_REMOTE_ID)
        principal_id = self._principal_id

        try:
            if known_id:
                try:
                    await client.update(known_id, record)
                    remote_id = known_id
                    outcome.updated += 1
                except RecordNotFound:
                    if self._is_stale(generation):
                        return False
                    logger.warning(
                        f"Remote row {known_id} for {key}/{local_id} no longer exists; re-creating it"
                    )
                    remote_id = (await client.create(principal_id, record))[FIELD_REMOTE_ID]
                    outcome.created += 1
            else:
                remote_id = (await client.create(principal_id, record))[FIELD_REMOTE_ID]
                outcome.created += 1
        except ValidationFailure as e:
            if self._is_stale(generation):
                return False
            outcome.rejected += 1
            self._sync_log.record_rejected(key, local_id, e)
            if e.remote_id and e.remote_id != known_id:
                self._back_fill(key, local_id, e.remote_id)
            self._acked.setdefault(key, {})[local_id] = record.get(FIELD_UPDATED_AT)
            return True
        except RemoteError as e:
            # Parent row exists even though its children failed
            if e.remote_id and e.remote_id != known_id and not self._is_stale(generation):
                self._back_fill(key, local_id, e.remote_id)
            raise

        if self._is_stale(generation):
            return False
        if remote_id != known_id:
            self._back_fill(key, local_id, remote_id)
        self._acked.setdefault(key, {})[local_id] = record.get(FIELD_UPDATED_AT)
        return True

    def _back_fill(self, key: str, local_id: Any, remote_id: str) -> None:
        if self._reconciler.attach_remote_id(key, local_id, remote_id):
            return
        # Deleted locally while its create was in flight
        self._add_tombstone(key, remote_id)
        self._mark_pending(key)

    # -------------------------------------------------------------------------
    # Initialization helpers
    # -------------------------------------------------------------------------

    async def _load_collection(self, key: str, generation: int) -> None:
        client = self._clients[key]
        try:
            remote = await client.list(self._principal_id)
        except AuthFailure as e:
            if not self._is_stale(generation):
                self._handle_auth_failure(e)
            return
        except RemoteError as e:
            if not self._is_stale(generation):
                self._last_error = str(e)
                logger.warning(f"Could not load {key} from remote; continuing local-only: {e}")
            return
        if self._is_stale(generation):
            return

        tombstones = self.tombstones(key)
        result = self._merge.apply(client.schema, remote, frozenset(tombstones))

        remote_versions = {
            r[FIELD_REMOTE_ID]: r.get(FIELD_UPDATED_AT) for r in remote if r.get(FIELD_REMOTE_ID)
        }
        acked = self._acked.setdefault(key, {})
        for record in result.records:
            local_id = record.get(FIELD_LOCAL_ID)
            remote_id = record.get(FIELD_REMOTE_ID)
            if remote_id not in remote_versions or local_id in result.adopted_local_ids:
                continue
            if not is_strictly_newer(record.get(FIELD_UPDATED_AT), remote_versions[remote_id]):
                acked[local_id] = record.get(FIELD_UPDATED_AT)

        kept = {
            rid: done for rid, done in tombstones.items()
            if not done or rid in remote_versions
        }
        if kept != tombstones:
            self._store.write(tombstone_key(key), kept)

    def _needs_push(self, key: str) -> bool:
        acked = self._acked.get(key, {})
        for record in self._store.read_list(key):
            if not _is_acked(acked, record):
                return True
        return any(not done for done in self.tombstones(key).values())

    # -------------------------------------------------------------------------
    # Timers
    # -------------------------------------------------------------------------

    def _start_timers(self) -> None:
        if not _has_running_loop():
            return
        if self._periodic_task is None:
            self._periodic_task = asyncio.create_task(self._periodic_loop())
        if self._watch_task is None:
            self._watch_task = asyncio.create_task(self._watch_external())

    def _schedule_debounce(self) -> None:
        if not _has_running_loop():
            return
        self._cancel_debounce()
        self._debounce_task = asyncio.create_task(self._debounce())

    async def _debounce(self) -> None:
        await asyncio.sleep(self._settings.debounce_seconds)
        self._debounce_task = None
        # Separate task: a later save cancels this timer, never the flush
        self._spawn(self.flush())

    async def _periodic_loop(self) -> None:
        while True:
            await asyncio.sleep(self._settings.periodic_flush_seconds)
            if not self._pending:
                continue
            try:
                await self.flush()
            except Exception:
                logger.exception("Periodic flush failed")

    async def _watch_external(self) -> None:
        while True:
            changed = self._store.poll_external()
            if changed:
                logger.debug(f"Keys changed by another store instance: {changed}")
            await asyncio.sleep(self._settings.external_poll_seconds)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def _cancel_debounce(self) -> None:
        if self._debounce_task is not None:
            self._debounce_task.cancel()
            self._debounce_task = None

    def _cancel_timers(self) -> None:
        self._cancel_debounce()
        for task in (self._periodic_task, self._watch_task):
            if task is not None:
                task.cancel()
        self._periodic_task = None
        self._watch_task = None

    # -------------------------------------------------------------------------
    # State bookkeeping
    # -------------------------------------------------------------------------

    def _can_flush(self) -> bool:
        return self._principal_id is not None and self._online and not self._auth_failed

    def _is_stale(self, generation: int) -> bool:
        return generation != self._generation

    def _mark_pending(self, key: str) -> None:
        self._pending.add(key)
        self._revisions[key] = self._revisions.get(key, 0) + 1
        pending_collections.set(len(self._pending))
        self._notify_status()

    def _handle_auth_failure(self, error: AuthFailure) -> None:
        self._last_error = str(error)
        if self._auth_failed:
            return
        self._auth_failed = True
        self._sync_log.auth_failed(self._principal_id, error)
        self._notify_status()

    def _notify_status(self) -> None:
        report = self.status()
        marker = (report.state, report.auth_failed, report.principal_id)
        if marker == self._last_reported:
            return
        self._last_reported = marker
        if self._on_status_change is None:
            return
        try:
            self._on_status_change(report)
        except Exception:
            logger.exception("Status callback raised")
