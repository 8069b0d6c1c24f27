"""
sqlite_store.py - Durable local store backed by a SQLite file.

One table holds every key. All connections use WAL mode so a second
process (another tab or a CLI invocation) can read while this one
writes; synchronous=FULL makes each committed write durable before
write() returns.
"""

import logging
import sqlite3

from hybrid_sync.config import SQLITE_PRAGMAS, STORAGE_QUOTA_BYTES
from hybrid_sync.errors import StorageFailure
from hybrid_sync.store.base import LocalStore
from hybrid_sync.store.events import ChangeBus

logger = logging.getLogger(__name__)

KV_SCHEMA = """
CREATE TABLE IF NOT EXISTS kv_store (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    revision INTEGER NOT NULL,
    writer TEXT NOT NULL
)
"""


def create_connection(db_path: str) -> sqlite3.Connection:
    """
    Create a new SQLite connection with the store's PRAGMA settings.

    Args:
        db_path: Path to SQLite database file

    Returns:
        Configured sqlite3.Connection

    Raises:
        StorageFailure: If connection or configuration fails
    """
    try:
        conn = sqlite3.connect(
            db_path,
            isolation_level=None,  # Manual transaction control
            check_same_thread=False,
        )
    except sqlite3.Error as e:
        raise StorageFailure(f"Failed to open local store: {e}", reason="connect") from e

    for pragma, value in SQLITE_PRAGMAS.items():
        try:
            conn.execute(f"PRAGMA {pragma} = {value}")
        except sqlite3.Error as e:
            conn.close()
            raise StorageFailure(
                f"Failed to set PRAGMA {pragma}: {e}", reason="pragma"
            ) from e

    try:
        conn.execute(KV_SCHEMA)
    except sqlite3.Error as e:
        conn.close()
        raise StorageFailure(f"Failed to create kv_store table: {e}", reason="schema") from e

    return conn


class SQLiteStore(LocalStore):
    """Local store persisted in a SQLite database file."""

    def __init__(
        self,
        db_path: str,
        bus: ChangeBus | None = None,
        quota_bytes: int = STORAGE_QUOTA_BYTES,
    ) -> None:
        super().__init__(bus=bus, quota_bytes=quota_bytes)
        self._db_path = db_path
        self._conn = create_connection(db_path)
        logger.debug(f"Opened local store at {db_path}")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    @property
    def db_path(self) -> str:
        return self._db_path

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    @property
    def connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StorageFailure("Local store is closed", reason="closed")
        return self._conn

    def _load(self, key: str) -> str | None:
        try:
            row = self.connection.execute(
                "SELECT value FROM kv_store WHERE key = ?", (key,)
            ).fetchone()
        except sqlite3.Error as e:
            raise StorageFailure(f"Read failed: {e}", key=key, reason="read") from e
        return row[0] if row else None

    def _store(self, key: str, blob: str) -> int:
        conn = self.connection
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                revision = conn.execute(
                    "SELECT COALESCE(MAX(revision), 0) + 1 FROM kv_store"
                ).fetchone()[0]
                conn.execute(
                    """
                    INSERT INTO kv_store (key, value, revision, writer)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        value = excluded.value,
                        revision = excluded.revision,
                        writer = excluded.writer
                    """,
                    (key, blob, revision, self.token),
                )
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise
        except sqlite3.Error as e:
            raise StorageFailure(f"Write failed: {e}", key=key, reason="write") from e
        return revision

    def _delete(self, key: str) -> None:
        try:
            self.connection.execute("DELETE FROM kv_store WHERE key = ?", (key,))
        except sqlite3.Error as e:
            raise StorageFailure(f"Delete failed: {e}", key=key, reason="remove") from e

    def _revisions(self) -> dict[str, tuple[int, str]]:
        try:
            rows = self.connection.execute(
                "SELECT key, revision, writer FROM kv_store"
            ).fetchall()
        except sqlite3.Error as e:
            raise StorageFailure(f"Revision scan failed: {e}", reason="poll") from e
        return {key: (revision, writer) for key, revision, writer in rows}
