"""
http_service.py - REST record service over httpx.

Endpoints expected on the server (all scoped by the bearer token):
- POST   /{table}              - Insert a JSON list of rows, returns stored rows
- PATCH  /{table}/{id}         - Update one row, returns it
- DELETE /{table}/{id}         - Delete one row
- DELETE /{table}?col=value    - Delete rows matching the filters
- GET    /{table}?col=value&order=col.desc - Select rows

Response status codes are translated into the engine's error taxonomy:
401/403 -> AuthFailure, 400/409/422 -> ValidationFailure,
404 -> RecordNotFound, everything else non-2xx -> NetworkFailure.
"""

import logging
from typing import Any, Callable

import httpx

from hybrid_sync.config import REQUEST_TIMEOUT_SECONDS
from hybrid_sync.errors import (
    AuthFailure,
    NetworkFailure,
    RecordNotFound,
    RemoteError,
    ValidationFailure,
)
from hybrid_sync.remote.base import RecordService

logger = logging.getLogger(__name__)

TokenProvider = Callable[[], str | None]

_AUTH_STATUSES = frozenset({401, 403})
_VALIDATION_STATUSES = frozenset({400, 409, 422})


def error_for_status(response: httpx.Response, table: str) -> RemoteError:
    """Map a non-2xx response to the matching RemoteError."""
    status = response.status_code
    try:
        detail = response.json().get("message") or response.text
    except (ValueError, AttributeError):
        detail = response.text
    detail = (detail or response.reason_phrase or "").strip()[:200]

    if status in _AUTH_STATUSES:
        return AuthFailure(f"Remote rejected credentials: {detail}", table=table, status_code=status)
    if status in _VALIDATION_STATUSES:
        return ValidationFailure(f"Remote rejected payload: {detail}", table=table, status_code=status)
    if status == 404:
        return RecordNotFound(f"Remote row not found: {detail}", table=table, status_code=status)
    return NetworkFailure(f"Remote error {status}: {detail}", table=table, status_code=status)


class HTTPRecordService(RecordService):
    """REST implementation of RecordService."""

    def __init__(
        self,
        base_url: str,
        token_provider: TokenProvider | None = None,
        timeout: float = REQUEST_TIMEOUT_SECONDS,
        client: httpx.AsyncClient | None = None,
    ):
        self._base_url = base_url.rstrip('/')
        self._token_provider = token_provider
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    @property
    def name(self) -> str:
        return "HTTP"

    @property
    def base_url(self) -> str:
        return self._base_url

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def insert(self, table: str, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
        if not rows:
            return []
        data = await self._request("POST", table, f"/{table}", json=rows)
        stored = data if isinstance(data, list) else [data]
        if len(stored) != len(rows):
            raise ValidationFailure(
                f"Insert returned {len(stored)} rows for {len(rows)} sent", table=table
            )
        return stored

    async def update(self, table: str, row_id: str, values: dict[str, Any]) -> dict[str, Any]:
        data = await self._request("PATCH", table, f"/{table}/{row_id}", json=values)
        return data if isinstance(data, dict) else {}

    async def delete(self, table: str, row_id: str) -> None:
        await self._request("DELETE", table, f"/{table}/{row_id}")

    async def delete_where(self, table: str, filters: dict[str, Any]) -> int:
        data = await self._request("DELETE", table, f"/{table}", params=self._params(filters))
        if isinstance(data, dict):
            return int(data.get("deleted", 0))
        return 0

    async def select(
        self,
        table: str,
        filters: dict[str, Any],
        order_by: str | None = None,
        descending: bool = False,
    ) -> list[dict[str, Any]]:
        params = self._params(filters)
        if order_by:
            params["order"] = f"{order_by}.{'desc' if descending else 'asc'}"
        data = await self._request("GET", table, f"/{table}", params=params)
        if not isinstance(data, list):
            raise ValidationFailure("Select did not return a list", table=table)
        return [row for row in data if isinstance(row, dict)]

    @staticmethod
    def _params(filters: dict[str, Any]) -> dict[str, str]:
        return {column: str(value) for column, value in filters.items()}

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        token = self._token_provider() if self._token_provider else None
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def _request(self, method: str, table: str, path: str, **kwargs) -> Any:
        """Send one request and decode its JSON body, translating failures."""
        url = f"{self._base_url}{path}"
        try:
            response = await self._client.request(method, url, headers=self._headers(), **kwargs)
        except httpx.TimeoutException as e:
            raise NetworkFailure(f"{method} {path} timed out: {e}", table=table) from e
        except httpx.HTTPError as e:
            raise NetworkFailure(f"{method} {path} failed: {e}", table=table) from e

        if response.is_error:
            error = error_for_status(response, table)
            logger.debug(f"{method} {path} -> {response.status_code}")
            raise error

        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise NetworkFailure(f"{method} {path} returned invalid JSON", table=table) from e
