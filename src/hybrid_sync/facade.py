"""
facade.py - The engine's public entry point.

SyncFacade is what the application talks to. Every call returns
promptly from local state; remote work happens in the background.
Runtime failures (network, auth, storage) never propagate out of it;
the only exception a caller sees is ConfigurationError for an unknown
collection key or invalid settings.
"""

import asyncio
import logging
from typing import Any, Callable

from hybrid_sync.config import EngineSettings
from hybrid_sync.errors import ConfigurationError, StorageFailure
from hybrid_sync.remote.base import RecordService
from hybrid_sync.remote.client import RemoteCollectionClient
from hybrid_sync.remote.http_service import HTTPRecordService
from hybrid_sync.scheduler import (
    FlushOutcome,
    StatusCallback,
    SyncScheduler,
    SyncStatusReport,
    tombstone_key,
)
from hybrid_sync.schema import DEFAULT_SCHEMAS, CollectionSchema, schema_registry
from hybrid_sync.store.base import LocalStore
from hybrid_sync.store.events import ChangeHandler
from hybrid_sync.store.memory import MemoryStore
from hybrid_sync.store.sqlite_store import SQLiteStore

logger = logging.getLogger(__name__)


class SyncFacade:
    """
    Local-first sync for a set of collections.

    Usage:
        engine = create_engine(settings=EngineSettings(remote_url=url, store_path=path))
        await engine.initialize_for_principal(user_id)
        engine.save("studyflow-notes", notes)
        ...
        await engine.shutdown()
    """

    def __init__(
        self,
        scheduler: SyncScheduler,
        owned_service: RecordService | None = None,
        owned_store: LocalStore | None = None,
    ):
        self._scheduler = scheduler
        self._owned_service = owned_service
        self._owned_store = owned_store
        self._ready_callbacks: list[Callable[[], None]] = []

    @property
    def scheduler(self) -> SyncScheduler:
        return self._scheduler

    @property
    def store(self) -> LocalStore:
        return self._scheduler.store

    @property
    def collection_keys(self) -> list[str]:
        return self._scheduler.collection_keys

    # -------------------------------------------------------------------------
    # Session
    # -------------------------------------------------------------------------

    async def initialize_for_principal(self, principal_id: str) -> None:
        """Load and merge remote data for principal_id, then start syncing."""
        try:
            await self._scheduler.initialize(principal_id)
        except Exception:
            logger.exception(f"Initialization for {principal_id} failed; continuing local-only")
            return
        if self._scheduler.is_ready:
            self._fire_ready()

    def clear_principal_data(self, wipe_local: bool = False) -> None:
        """
        Sign out: stop timers and forget the principal.

        Flushes still in flight finish without touching local data.
        With wipe_local, every collection (and its tombstones) is also
        removed from the local store.
        """
        self._scheduler.reset()
        self._ready_callbacks = []
        if not wipe_local:
            return
        for key in self.collection_keys:
            self.store.remove(key)
            self.store.remove(tombstone_key(key))
        logger.info("Local collection data wiped")

    def reauthenticated(self) -> None:
        """Resume syncing after an auth failure was resolved."""
        self._scheduler.clear_auth_failure()

    def set_online(self, online: bool) -> None:
        self._scheduler.set_online(online)

    @property
    def is_ready(self) -> bool:
        return self._scheduler.is_ready

    def on_ready(self, callback: Callable[[], None]) -> None:
        """Call callback once the current session finished initializing."""
        if self._scheduler.is_ready:
            self._call_ready(callback)
        else:
            self._ready_callbacks.append(callback)

    def _fire_ready(self) -> None:
        callbacks, self._ready_callbacks = self._ready_callbacks, []
        for callback in callbacks:
            self._call_ready(callback)

    @staticmethod
    def _call_ready(callback: Callable[[], None]) -> None:
        try:
            callback()
        except Exception:
            logger.exception("Ready callback raised")

    # -------------------------------------------------------------------------
    # Data
    # -------------------------------------------------------------------------

    def load(self, collection_key: str) -> list[dict]:
        """Current local snapshot of a collection."""
        self._scheduler.schema_for(collection_key)
        return self.store.read_list(collection_key)

    def save(self, collection_key: str, records: list[dict]) -> bool:
        """Replace a collection locally; the remote push follows shortly."""
        return self._scheduler.save(collection_key, records)

    def delete_record(self, collection_key: str, local_id: Any) -> bool:
        """Delete one record locally and, once synced, remotely."""
        return self._scheduler.delete_record(collection_key, local_id)

    def new_local_id(self, collection_key: str) -> int:
        """A local id not yet used in the collection."""
        return self._scheduler.reconciler.new_local_id(self.load(collection_key))

    def subscribe(self, collection_key: str | None, handler: ChangeHandler) -> Callable[[], None]:
        """
        Receive (key, value) for every change to a collection, whether it
        came from this engine or from another store instance.

        Returns:
            Function that removes the subscription
        """
        if collection_key is not None:
            self._scheduler.schema_for(collection_key)
        unsubscribers = [
            self.store.subscribe(collection_key, handler),
            self.store.subscribe_external(collection_key, handler),
        ]

        def unsubscribe() -> None:
            for remove in unsubscribers:
                remove()

        return unsubscribe

    # -------------------------------------------------------------------------
    # Sync control
    # -------------------------------------------------------------------------

    async def force_sync(self) -> list[FlushOutcome]:
        """Push every record of every collection now."""
        try:
            return await self._scheduler.force_sync()
        except Exception:
            logger.exception("Forced sync failed")
            return []

    def get_status(self) -> SyncStatusReport:
        return self._scheduler.status()

    def close(self) -> asyncio.Task | None:
        """
        Teardown: start a bounded final flush and stop all timers.

        Returns the flush task (not awaited), or None if nothing was pending.
        """
        task = self._scheduler.schedule_exit_flush()
        self._scheduler.stop()
        return task

    async def shutdown(self) -> None:
        """close(), wait for background flushes, then release owned resources."""
        self.close()
        await self._scheduler.drain()
        if self._owned_service is not None:
            await self._owned_service.close()
        if self._owned_store is not None:
            self._owned_store.close()


def create_engine(
    store: LocalStore | None = None,
    service: RecordService | None = None,
    settings: EngineSettings | None = None,
    schemas: tuple[CollectionSchema, ...] = DEFAULT_SCHEMAS,
    token_provider: Callable[[], str | None] | None = None,
    online: bool = True,
    on_status_change: StatusCallback | None = None,
) -> SyncFacade:
    """
    Build a SyncFacade and its object graph.

    Args:
        store: Local store (default: SQLite at settings.store_path, else memory)
        service: Remote record service (default: HTTP at settings.remote_url)
        settings: Engine settings (default: from HYBRID_SYNC_* environment)
        schemas: Collection descriptors
        token_provider: Bearer token source for the default HTTP service
        online: Initial connectivity
        on_status_change: Called with a SyncStatusReport on state changes

    Raises:
        ConfigurationError: On invalid settings or schemas, or when no
            remote service can be built
    """
    settings = settings or EngineSettings.from_env()
    registry = schema_registry(schemas)

    owned_store = None
    if store is None:
        if settings.store_path:
            try:
                store = SQLiteStore(settings.store_path, quota_bytes=settings.storage_quota_bytes)
            except StorageFailure as e:
                raise ConfigurationError(
                    f"Cannot open local store: {e.message}", setting="store_path", value=settings.store_path
                ) from e
        else:
            store = MemoryStore(quota_bytes=settings.storage_quota_bytes)
        owned_store = store

    owned_service = None
    if service is None:
        if not settings.remote_url:
            raise ConfigurationError("No remote service or remote_url configured", setting="remote_url")
        service = HTTPRecordService(
            settings.remote_url,
            token_provider=token_provider,
            timeout=settings.request_timeout_seconds,
        )
        owned_service = service

    clients = {key: RemoteCollectionClient(service, schema) for key, schema in registry.items()}
    scheduler = SyncScheduler(
        store,
        clients,
        settings=settings,
        on_status_change=on_status_change,
        online=online,
    )
    logger.info(f"Sync engine created for {len(clients)} collection(s) via {service.name}")
    return SyncFacade(scheduler, owned_service=owned_service, owned_store=owned_store)
