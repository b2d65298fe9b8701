"""Local SQLite key-value cache scoped to one context."""

import json
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

# SQL schema for the cache database
CACHE_SCHEMA = """
-- One row per key, value stored as JSON text
CREATE TABLE IF NOT EXISTS kv_cache (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    size_bytes INTEGER NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_kv_cache_updated ON kv_cache(updated_at);
"""


class QuotaExceededError(Exception):
    """Raised when a write would push the cache past its byte quota."""

    def __init__(self, key: str, required: int, quota: int):
        super().__init__(
            f"Writing '{key}' needs {required} bytes, quota is {quota} bytes"
        )
        self.key = key
        self.required = required
        self.quota = quota


@dataclass
class Entry:
    """A cached key with its decoded value."""

    key: str
    value: Any
    updated_at: datetime

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "key": self.key,
            "value": self.value,
            "updated_at": self.updated_at.isoformat(),
        }


def encode_value(value: Any) -> str:
    """Serialize a value as strict JSON.

    Raises:
        TypeError: If the value holds non-JSON types.
        ValueError: If the value holds NaN or infinity.
    """
    return json.dumps(value, allow_nan=False, separators=(",", ":"))


class LocalCache:
    """Synchronous key to JSON store with a hard capacity ceiling.

    Every call completes without awaiting. Sizes are counted as the UTF-8
    length of key plus encoded value.
    """

    def __init__(
        self,
        db_path: str | Path,
        context_name: str,
        quota_bytes: int | None = 5 * 1024 * 1024,
    ):
        """Initialize the cache.

        Args:
            db_path: Path to SQLite database file, or ":memory:".
            context_name: Name of the owning context (for logs and stats).
            quota_bytes: Maximum total bytes stored. None disables the check.
        """
        self.db_path = Path(db_path).expanduser()
        self.context_name = context_name
        self.quota_bytes = quota_bytes
        self._conn: sqlite3.Connection | None = None

    def connect(self) -> None:
        """Initialize database connection and schema."""
        if str(self.db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(CACHE_SCHEMA)
        self._conn.commit()

        logger.info(f"LocalCache for {self.context_name} connected to {self.db_path}")

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None
            logger.info("LocalCache connection closed")

    def _ensure_connected(self) -> sqlite3.Connection:
        """Ensure we have a database connection."""
        if self._conn is None:
            self.connect()
        return self._conn

    def get(self, key: str) -> tuple[bool, Any]:
        """Read a key.

        Returns:
            Tuple of (found, value). A row whose JSON cannot be decoded is
            reported as not found.
        """
        entry = self.get_entry(key)
        if entry is None:
            return False, None
        return True, entry.value

    def get_entry(self, key: str) -> Entry | None:
        """Read a key with its update time."""
        conn = self._ensure_connected()

        row = conn.execute(
            "SELECT key, value, updated_at FROM kv_cache WHERE key = ?", (key,)
        ).fetchone()
        if row is None:
            return None

        try:
            value = json.loads(row["value"])
        except json.JSONDecodeError as e:
            logger.warning(f"Ignoring malformed cached value for {key}: {e}")
            return None

        return Entry(
            key=row["key"],
            value=value,
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    def set(self, key: str, value: Any) -> Entry:
        """Write a key, replacing any previous value.

        The quota check and the write happen in one transaction, so a
        rejected write leaves the previous value untouched.

        Raises:
            QuotaExceededError: If the write would exceed the quota.
            TypeError, ValueError: If the value is not strict JSON.
        """
        encoded = encode_value(value)
        size = len(key.encode("utf-8")) + len(encoded.encode("utf-8"))
        conn = self._ensure_connected()

        with conn:
            if self.quota_bytes is not None:
                row = conn.execute(
                    "SELECT COALESCE(SUM(size_bytes), 0) FROM kv_cache WHERE key != ?",
                    (key,),
                ).fetchone()
                required = row[0] + size
                if required > self.quota_bytes:
                    raise QuotaExceededError(key, required, self.quota_bytes)

            now = datetime.now()
            conn.execute(
                """
                INSERT INTO kv_cache (key, value, size_bytes, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    size_bytes = excluded.size_bytes,
                    updated_at = excluded.updated_at
                """,
                (key, encoded, size, now.isoformat()),
            )

        logger.debug(f"Cached {key} ({size} bytes)")
        return Entry(key=key, value=value, updated_at=now)

    def delete(self, key: str) -> bool:
        """Remove a key. Returns True if it existed."""
        conn = self._ensure_connected()
        cursor = conn.execute("DELETE FROM kv_cache WHERE key = ?", (key,))
        conn.commit()
        return cursor.rowcount > 0

    def keys(self) -> list[str]:
        """List cached keys in name order."""
        conn = self._ensure_connected()
        cursor = conn.execute("SELECT key FROM kv_cache ORDER BY key")
        return [row[0] for row in cursor]

    def used_bytes(self) -> int:
        """Total bytes currently counted against the quota."""
        conn = self._ensure_connected()
        row = conn.execute("SELECT COALESCE(SUM(size_bytes), 0) FROM kv_cache").fetchone()
        return row[0]

    def get_stats(self) -> dict[str, Any]:
        """Get cache statistics."""
        conn = self._ensure_connected()

        stats: dict[str, Any] = {
            "context": self.context_name,
            "quota_bytes": self.quota_bytes,
            "used_bytes": self.used_bytes(),
        }
        stats["key_count"] = conn.execute("SELECT COUNT(*) FROM kv_cache").fetchone()[0]

        if str(self.db_path) != ":memory:" and self.db_path.exists():
            stats["db_size_mb"] = round(self.db_path.stat().st_size / (1024 * 1024), 2)

        return stats
