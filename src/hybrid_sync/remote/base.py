"""
base.py - Abstract base class for remote record services.

A RecordService is the table-level surface of the remote store. It knows
nothing about collections or local identifiers; RemoteCollectionClient
builds the per-collection semantics on top of it.

Every method may raise a RemoteError subclass and nothing else.
"""

from abc import ABC, abstractmethod
from typing import Any


class RecordService(ABC):
    """
    Abstract base class for remote record services.

    Implementations must provide:
    - Row insert (single or bulk) returning server-assigned ids
    - Update and delete by id
    - Filtered delete (child rows of a parent)
    - Filtered, ordered select
    """

    @abstractmethod
    async def insert(self, table: str, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """
        Insert rows.

        Returns:
            Stored rows, including server-generated "id" values, in input order
        """

    @abstractmethod
    async def update(self, table: str, row_id: str, values: dict[str, Any]) -> dict[str, Any]:
        """
        Update one row by id.

        Raises:
            RecordNotFound: If no row has that id
        """

    @abstractmethod
    async def delete(self, table: str, row_id: str) -> None:
        """
        Delete one row by id.

        Raises:
            RecordNotFound: If no row has that id
        """

    @abstractmethod
    async def delete_where(self, table: str, filters: dict[str, Any]) -> int:
        """Delete every row matching all equality filters; return the count."""

    @abstractmethod
    async def select(
        self,
        table: str,
        filters: dict[str, Any],
        order_by: str | None = None,
        descending: bool = False,
    ) -> list[dict[str, Any]]:
        """Return rows matching all equality filters, optionally ordered."""

    async def close(self) -> None:
        """Release network resources."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Service name for logging."""
