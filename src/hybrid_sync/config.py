"""
config.py - Configuration constants and runtime settings for hybrid_sync.

Constants are immutable and defined at module level.
Per-session tunables live in EngineSettings, which is validated once
at construction and then passed to the engine explicitly.
"""

import json
import os
import re
from pathlib import Path
from typing import Final, Any

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError

from hybrid_sync.errors import ConfigurationError

# Record field names shared by every collection
FIELD_LOCAL_ID: Final[str] = "local_id"
FIELD_REMOTE_ID: Final[str] = "remote_id"
FIELD_UPDATED_AT: Final[str] = "updated_at"

RESERVED_FIELDS: Final[frozenset[str]] = frozenset(
    {FIELD_LOCAL_ID, FIELD_REMOTE_ID, FIELD_UPDATED_AT}
)

# Local store keys, one per collection
KEY_NOTES: Final[str] = "studyflow-notes"
KEY_FLASHCARDS: Final[str] = "studyflow-flashcards"
KEY_QUIZZES: Final[str] = "studyflow-quizzes"
KEY_AI_CHATS: Final[str] = "studyflow-ai-chats"

# Suffix of the local key holding a collection's tombstoned remote ids
TOMBSTONE_KEY_SUFFIX: Final[str] = ":deleted"

# Remote identifiers are RFC 4122 UUIDs, versions 1-5
REMOTE_ID_PATTERN: Final[re.Pattern] = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)

# Derived local ids are folded into the float-safe integer range
LOCAL_ID_BITS: Final[int] = 53

# Number of leading characters compared by the duplicate heuristic
DUPLICATE_PREFIX_CHARS: Final[int] = 50

# Scheduler timing defaults (seconds)
DEBOUNCE_SECONDS: Final[float] = 2.0
PERIODIC_FLUSH_SECONDS: Final[float] = 30.0
EXIT_FLUSH_TIMEOUT_SECONDS: Final[float] = 3.0
EXTERNAL_POLL_SECONDS: Final[float] = 1.0

# Remote request timeout (seconds)
REQUEST_TIMEOUT_SECONDS: Final[float] = 15.0

# Largest serialized value the local store accepts for one key
STORAGE_QUOTA_BYTES: Final[int] = 5 * 1024 * 1024

# SQLite PRAGMA settings for the local store
SQLITE_PRAGMAS: Final[dict[str, str]] = {
    "journal_mode": "WAL",
    "synchronous": "FULL",
    "busy_timeout": "5000",
}

ENV_PREFIX: Final[str] = "HYBRID_SYNC_"


class EngineSettings(BaseModel):
    """Validated runtime settings for one engine instance."""

    debounce_seconds: float = Field(DEBOUNCE_SECONDS, gt=0)
    periodic_flush_seconds: float = Field(PERIODIC_FLUSH_SECONDS, gt=0)
    exit_flush_timeout_seconds: float = Field(EXIT_FLUSH_TIMEOUT_SECONDS, gt=0)
    external_poll_seconds: float = Field(EXTERNAL_POLL_SECONDS, gt=0)
    request_timeout_seconds: float = Field(REQUEST_TIMEOUT_SECONDS, gt=0)
    storage_quota_bytes: int = Field(STORAGE_QUOTA_BYTES, gt=0)
    remote_url: str | None = None
    store_path: str | None = None

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> "EngineSettings":
        """Build settings from HYBRID_SYNC_* environment variables."""
        environ = os.environ if environ is None else environ
        values: dict[str, Any] = {}
        for name in cls.model_fields:
            env_name = f"{ENV_PREFIX}{name.upper()}"
            if env_name in environ:
                values[name] = environ[env_name]
        return cls._validated(values, source="environment")

    @classmethod
    def from_file(cls, path: str | Path) -> "EngineSettings":
        """Load settings from a JSON file, then apply environment overrides."""
        try:
            data = json.loads(Path(path).read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(
                f"Cannot read settings file: {e}", setting="path", value=str(path)
            ) from e
        if not isinstance(data, dict):
            raise ConfigurationError("Settings file must hold a JSON object", value=str(path))

        env = cls.from_env().model_dump(exclude_unset=True)
        data.update(env)
        return cls._validated(data, source=str(path))

    @classmethod
    def _validated(cls, values: dict[str, Any], source: str) -> "EngineSettings":
        try:
            return cls(**values)
        except PydanticValidationError as e:
            first = e.errors()[0]
            setting = ".".join(str(p) for p in first.get("loc", ()))
            raise ConfigurationError(
                f"Invalid settings from {source}: {first.get('msg')}",
                setting=setting,
            ) from e
