"""
Remote record service access.

- RecordService: table-level abstract transport
- HTTPRecordService: REST implementation over httpx
- RemoteCollectionClient: per-collection CRUD driven by a CollectionSchema
"""

from hybrid_sync.remote.base import RecordService
from hybrid_sync.remote.http_service import HTTPRecordService, error_for_status
from hybrid_sync.remote.client import RemoteCollectionClient

__all__ = [
    "RecordService",
    "HTTPRecordService",
    "RemoteCollectionClient",
    "error_for_status",
]
