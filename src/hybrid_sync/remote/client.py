"""
client.py - Per-collection remote CRUD.

RemoteCollectionClient turns local-shaped records into rows of the
collection's remote table (and child table) using its CollectionSchema.

Child rows are never diffed: every create/update deletes all children
of the parent and re-inserts the current list. This costs extra writes
for large decks but keeps the remote copy an exact image of the local
record.
"""

import asyncio
import logging
from typing import Any

from hybrid_sync.config import FIELD_REMOTE_ID
from hybrid_sync.errors import RemoteError, ValidationFailure
from hybrid_sync.remote.base import RecordService
from hybrid_sync.schema import CollectionSchema

logger = logging.getLogger(__name__)


class RemoteCollectionClient:
    """CRUD for one collection against a RecordService."""

    def __init__(self, service: RecordService, schema: CollectionSchema):
        self._service = service
        self._schema = schema

    @property
    def schema(self) -> CollectionSchema:
        return self._schema

    @property
    def key(self) -> str:
        return self._schema.key

    async def create(self, principal_id: str, record: dict[str, Any]) -> dict[str, Any]:
        """
        Insert a record owned by principal_id.

        Returns:
            Copy of record carrying the server-assigned remote_id

        Raises:
            RemoteError: On failure. If the parent row was stored but its
                children were not, the error's remote_id is set.
        """
        schema = self._schema
        payload = schema.to_remote(record)
        payload[schema.principal_column] = principal_id

        rows = await self._service.insert(schema.table, [payload])
        remote_id = rows[0].get(schema.id_column) if rows else None
        if not remote_id:
            raise ValidationFailure("Remote insert returned no id", table=schema.table)

        try:
            await self._replace_children(remote_id, record, existing=False)
        except RemoteError as e:
            e.remote_id = remote_id
            e.context["remote_id"] = remote_id
            raise

        logger.debug(f"Created {schema.table} row {remote_id}")
        return {**record, FIELD_REMOTE_ID: remote_id}

    async def update(self, remote_id: str, record: dict[str, Any]) -> dict[str, Any]:
        """
        Overwrite the remote row and its children with the record's content.

        Raises:
            RecordNotFound: If the row no longer exists remotely
        """
        schema = self._schema
        await self._service.update(schema.table, remote_id, schema.to_remote(record))
        await self._replace_children(remote_id, record, existing=True)
        return {**record, FIELD_REMOTE_ID: remote_id}

    async def delete(self, remote_id: str) -> None:
        """Delete the remote row and its children."""
        schema = self._schema
        if schema.children is not None:
            await self._service.delete_where(
                schema.children.table, {schema.children.parent_column: remote_id}
            )
        await self._service.delete(schema.table, remote_id)
        logger.debug(f"Deleted {schema.table} row {remote_id}")

    async def _fetch_children(self, parent_id: str) -> list[dict[str, Any]]:
        child = self._schema.children
        return await self._service.select(
            child.table, {child.parent_column: parent_id}, order_by=child.order_by
        )

    async def _replace_children(self, remote_id: str, record: dict[str, Any], existing: bool) -> None:
        child = self._schema.children
        if child is None or not isinstance(record.get(child.local_field), list):
            return
        if existing:
            await self._service.delete_where(child.table, {child.parent_column: remote_id})
        rows = child.to_remote(remote_id, record)
        if rows:
            await self._service.insert(child.table, rows)

    # Defined last so later annotations in the class body still see the builtin list
    async def list(self, principal_id: str) -> list[dict[str, Any]]:
        """
        Fetch every record owned by principal_id, newest first.

        Returns:
            Local-shaped records with remote_id and updated_at set and
            no local_id (the merge engine assigns one)
        """
        schema = self._schema
        rows = await self._service.select(
            schema.table,
            {schema.principal_column: principal_id},
            order_by=schema.updated_column,
            descending=True,
        )
        rows = [row for row in rows if row.get(schema.id_column)]

        if schema.children is None:
            return [schema.from_remote(row) for row in rows]

        child_lists = await asyncio.gather(
            *(self._fetch_children(row[schema.id_column]) for row in rows)
        )
        return [
            schema.from_remote(row, children)
            for row, children in zip(rows, child_lists)
        ]

