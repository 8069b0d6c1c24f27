"""
hybrid_sync - Local-first synchronization engine

Keeps a fast local key-value store and an authoritative remote record
service consistent for a set of user-owned collections. Writes land
locally first and are pushed in the background; remote data is merged
in record by record without ever dropping local work.
"""

from hybrid_sync.config import EngineSettings
from hybrid_sync.errors import (
    SyncError,
    ConfigurationError,
    StorageFailure,
    RemoteError,
    NetworkFailure,
    AuthFailure,
    ValidationFailure,
    RecordNotFound,
)
from hybrid_sync.facade import SyncFacade, create_engine
from hybrid_sync.identity import IdentifierReconciler, derive_stable_local_id, is_remote_id
from hybrid_sync.resolution import MergeEngine, MergeResult
from hybrid_sync.scheduler import FlushOutcome, SyncScheduler, SyncState, SyncStatusReport
from hybrid_sync.schema import (
    CollectionSchema,
    ChildSchema,
    FieldMap,
    DEFAULT_SCHEMAS,
)
from hybrid_sync.store import LocalStore, MemoryStore, SQLiteStore
from hybrid_sync.remote import RecordService, HTTPRecordService, RemoteCollectionClient

__version__ = "0.1.0"
__all__ = [
    # Entry point
    "SyncFacade",
    "create_engine",
    "EngineSettings",
    # Components
    "SyncScheduler",
    "SyncState",
    "SyncStatusReport",
    "FlushOutcome",
    "MergeEngine",
    "MergeResult",
    "IdentifierReconciler",
    "derive_stable_local_id",
    "is_remote_id",
    # Collections
    "CollectionSchema",
    "ChildSchema",
    "FieldMap",
    "DEFAULT_SCHEMAS",
    # Storage and transport
    "LocalStore",
    "MemoryStore",
    "SQLiteStore",
    "RecordService",
    "HTTPRecordService",
    "RemoteCollectionClient",
    # Errors
    "SyncError",
    "ConfigurationError",
    "StorageFailure",
    "RemoteError",
    "NetworkFailure",
    "AuthFailure",
    "ValidationFailure",
    "RecordNotFound",
]
