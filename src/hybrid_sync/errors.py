"""
errors.py - Domain-specific exceptions for hybrid_sync.

All exceptions inherit from SyncError for unified handling.
Each exception type represents a distinct failure mode:

- StorageFailure: local persistence failed (logged, swallowed)
- NetworkFailure: remote unreachable (retried by the scheduler)
- AuthFailure: remote rejected credentials (surfaced via status)
- ValidationFailure: remote rejected the payload (never retried)
- RecordNotFound: remote row no longer exists
"""

from typing import Any


class SyncError(Exception):
    """Base exception for all hybrid_sync errors."""

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            context_str = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
            return f"{self.message} [{context_str}]"
        return self.message


class ConfigurationError(SyncError):
    """
    Raised for invalid settings or an unknown collection key.

    This is a programming error, so unlike runtime failures it is
    allowed to reach the caller.
    """

    def __init__(
        self, message: str, setting: str | None = None, value: Any = None
    ) -> None:
        context = {}
        if setting is not None:
            context["setting"] = setting
        if value is not None:
            context["value"] = repr(value)[:100]
        super().__init__(message, context=context)
        self.setting = setting
        self.value = value


class StorageFailure(SyncError):
    """
    Raised inside the local store when a value cannot be serialized
    or persisted (I/O error, quota exceeded).

    The store catches it at its own boundary; callers only ever see
    a failed write reported as False.
    """

    def __init__(self, message: str, key: str | None = None, reason: str | None = None) -> None:
        context = {}
        if key is not None:
            context["key"] = key
        if reason is not None:
            context["reason"] = reason
        super().__init__(message, context=context)
        self.key = key
        self.reason = reason


class RemoteError(SyncError):
    """
    Base class for failures reported by the remote record service.

    remote_id is set when the failure happened after a parent row was
    already created, so the caller can still back-fill the identifier.
    """

    retryable: bool = False

    def __init__(
        self,
        message: str,
        table: str | None = None,
        status_code: int | None = None,
        remote_id: str | None = None,
    ) -> None:
        context = {}
        if table is not None:
            context["table"] = table
        if status_code is not None:
            context["status_code"] = status_code
        if remote_id is not None:
            context["remote_id"] = remote_id
        super().__init__(message, context=context)
        self.table = table
        self.status_code = status_code
        self.remote_id = remote_id


class NetworkFailure(RemoteError):
    """Remote unreachable, timed out or failed server-side. Retried."""

    retryable = True


class AuthFailure(RemoteError):
    """Remote rejected the credentials. Retried after re-authentication."""

    retryable = True


class ValidationFailure(RemoteError):
    """Remote rejected the payload shape or content. Never retried."""


class RecordNotFound(RemoteError):
    """The addressed remote row does not exist (deleted elsewhere)."""
