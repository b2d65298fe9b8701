"""SQLite table backing the shared remote store: one row per key."""

import json
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

REMOTE_SCHEMA = """
CREATE TABLE IF NOT EXISTS kv_store (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    origin TEXT,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_kv_store_updated ON kv_store(updated_at);
"""


@dataclass
class RemoteRow:
    """A stored key with its last writer."""

    key: str
    value: Any
    origin: str | None
    updated_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "value": self.value,
            "origin": self.origin,
            "updated_at": self.updated_at.isoformat(),
        }


class RemoteTable:
    """Key to JSON rows with last-write-wins upserts."""

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path).expanduser()
        self._conn: sqlite3.Connection | None = None

    def connect(self) -> None:
        """Initialize database connection and schema."""
        if str(self.db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        # TestClient and uvicorn may call from a thread other than the connecting one
        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(REMOTE_SCHEMA)
        self._conn.commit()

        logger.info(f"RemoteTable connected to {self.db_path}")

    def close(self) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None

    def _ensure_connected(self) -> sqlite3.Connection:
        if self._conn is None:
            self.connect()
        return self._conn

    def get(self, key: str) -> RemoteRow | None:
        """Read a row, or None if the key was never written."""
        conn = self._ensure_connected()
        row = conn.execute(
            "SELECT key, value, origin, updated_at FROM kv_store WHERE key = ?",
            (key,),
        ).fetchone()
        if row is None:
            return None

        return RemoteRow(
            key=row["key"],
            value=json.loads(row["value"]),
            origin=row["origin"],
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    def upsert(self, key: str, value: Any, origin: str | None = None) -> RemoteRow:
        """Insert or replace a row. Whoever writes last wins."""
        conn = self._ensure_connected()

        row = RemoteRow(key=key, value=value, origin=origin, updated_at=datetime.now())
        conn.execute(
            """
            INSERT INTO kv_store (key, value, origin, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET
                value = excluded.value,
                origin = excluded.origin,
                updated_at = excluded.updated_at
            """,
            (key, json.dumps(value), origin, row.updated_at.isoformat()),
        )
        conn.commit()

        logger.debug(f"Stored {key} from {origin}")
        return row

    def list_keys(self) -> list[str]:
        conn = self._ensure_connected()
        return [r[0] for r in conn.execute("SELECT key FROM kv_store ORDER BY key")]

    def count(self) -> int:
        conn = self._ensure_connected()
        return conn.execute("SELECT COUNT(*) FROM kv_store").fetchone()[0]
