"""Persistent outbox of writes waiting to reach the remote store.

Every local write of a shared key appends a row here. Rows stay pending until
the remote store accepts them, so a write made while offline (or just before
the process exits) is pushed on the next flush instead of being lost.
"""

import json
import logging
import sqlite3
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

OUTBOX_SCHEMA = """
-- Pending remote writes, one row per local set()
CREATE TABLE IF NOT EXISTS outbox (
    id TEXT PRIMARY KEY,
    seq INTEGER NOT NULL,
    key TEXT NOT NULL,
    value TEXT NOT NULL,
    origin TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    attempts INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    created_at TEXT NOT NULL,
    synced_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_outbox_seq ON outbox(seq);
CREATE INDEX IF NOT EXISTS idx_outbox_key ON outbox(key, status);
CREATE INDEX IF NOT EXISTS idx_outbox_status ON outbox(status);
"""

STATUS_PENDING = "pending"
STATUS_SYNCED = "synced"
STATUS_SUPERSEDED = "superseded"
STATUS_REJECTED = "rejected"  # Refused by the remote store, never retried


@dataclass
class OutboxEntry:
    """A single write waiting for (or done with) the remote store."""

    id: str
    seq: int
    key: str
    value: Any
    origin: str
    created_at: datetime
    status: str = STATUS_PENDING
    attempts: int = 0
    last_error: str | None = None
    synced_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "seq": self.seq,
            "key": self.key,
            "value": self.value,
            "origin": self.origin,
            "status": self.status,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "created_at": self.created_at.isoformat(),
            "synced_at": self.synced_at.isoformat() if self.synced_at else None,
        }


def _row_to_entry(row: sqlite3.Row) -> OutboxEntry:
    return OutboxEntry(
        id=row["id"],
        seq=row["seq"],
        key=row["key"],
        value=json.loads(row["value"]),
        origin=row["origin"],
        status=row["status"],
        attempts=row["attempts"],
        last_error=row["last_error"],
        created_at=datetime.fromisoformat(row["created_at"]),
        synced_at=(
            datetime.fromisoformat(row["synced_at"]) if row["synced_at"] else None
        ),
    )


class Outbox:
    """Ordered, coalescing queue of remote writes backed by SQLite.

    Only the newest pending write per key is ever handed out: enqueueing a
    key supersedes its older pending rows, so a retried stale write can
    never land after a newer one from the same context.
    """

    def __init__(self, db_path: str | Path, origin: str):
        """Initialize the outbox.

        Args:
            db_path: Path to SQLite database file, or ":memory:".
            origin: Context name stamped on every write.
        """
        self.db_path = Path(db_path).expanduser()
        self.origin = origin
        self._conn: sqlite3.Connection | None = None
        self._seq: int = 0

    def connect(self) -> None:
        """Initialize database connection and schema."""
        if str(self.db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(OUTBOX_SCHEMA)
        self._conn.commit()

        # Continue the sequence after a restart
        row = self._conn.execute("SELECT MAX(seq) FROM outbox").fetchone()
        if row[0] is not None:
            self._seq = row[0]

        logger.info(f"Outbox connected to {self.db_path}, seq={self._seq}")

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def _ensure_connected(self) -> sqlite3.Connection:
        """Ensure database connection exists."""
        if self._conn is None:
            self.connect()
        return self._conn

    def _next_seq(self) -> int:
        self._seq += 1
        return self._seq

    def enqueue(self, key: str, value: Any) -> OutboxEntry:
        """Queue a write and supersede older pending writes of the same key.

        Args:
            key: Key being written.
            value: JSON-serializable value.

        Returns:
            The created OutboxEntry.
        """
        conn = self._ensure_connected()

        entry = OutboxEntry(
            id=uuid.uuid4().hex,
            seq=self._next_seq(),
            key=key,
            value=value,
            origin=self.origin,
            created_at=datetime.now(),
        )

        with conn:
            conn.execute(
                """
                UPDATE outbox
                SET status = ?
                WHERE key = ? AND status = ? AND seq < ?
                """,
                (STATUS_SUPERSEDED, key, STATUS_PENDING, entry.seq),
            )
            conn.execute(
                """
                INSERT INTO outbox (
                    id, seq, key, value, origin, status, attempts, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, 0, ?)
                """,
                (
                    entry.id,
                    entry.seq,
                    entry.key,
                    json.dumps(entry.value),
                    entry.origin,
                    STATUS_PENDING,
                    entry.created_at.isoformat(),
                ),
            )

        logger.debug(f"Queued {key} as seq={entry.seq}")
        return entry

    def get_pending(self, limit: int = 100) -> list[OutboxEntry]:
        """Get pending writes, oldest first.

        Args:
            limit: Maximum entries to return.
        """
        conn = self._ensure_connected()

        cursor = conn.execute(
            """
            SELECT * FROM outbox
            WHERE status = ?
            ORDER BY seq ASC
            LIMIT ?
            """,
            (STATUS_PENDING, limit),
        )
        return [_row_to_entry(row) for row in cursor]

    def get_entry(self, entry_id: str) -> OutboxEntry | None:
        conn = self._ensure_connected()
        row = conn.execute("SELECT * FROM outbox WHERE id = ?", (entry_id,)).fetchone()
        return _row_to_entry(row) if row else None

    def mark_synced(self, entry_ids: list[str]) -> int:
        """Mark pending entries as accepted by the remote store.

        Returns:
            Number of entries updated.
        """
        if not entry_ids:
            return 0

        conn = self._ensure_connected()

        now = datetime.now().isoformat()
        placeholders = ",".join("?" * len(entry_ids))

        cursor = conn.execute(
            f"""
            UPDATE outbox
            SET status = ?, synced_at = ?, last_error = NULL
            WHERE id IN ({placeholders}) AND status = ?
            """,
            (STATUS_SYNCED, now, *entry_ids, STATUS_PENDING),
        )
        conn.commit()

        count = cursor.rowcount
        logger.debug(f"Marked {count} outbox entries as synced")
        return count

    def mark_failed(self, entry_id: str, error: str) -> None:
        """Record a failed push attempt; the entry stays pending."""
        conn = self._ensure_connected()
        conn.execute(
            """
            UPDATE outbox
            SET attempts = attempts + 1, last_error = ?
            WHERE id = ?
            """,
            (error, entry_id),
        )
        conn.commit()

    def mark_rejected(self, entry_id: str, error: str) -> bool:
        """Take a pending entry out of the queue for good.

        Returns:
            True if a pending entry was updated.
        """
        conn = self._ensure_connected()
        cursor = conn.execute(
            """
            UPDATE outbox
            SET status = ?, attempts = attempts + 1, last_error = ?
            WHERE id = ? AND status = ?
            """,
            (STATUS_REJECTED, error, entry_id, STATUS_PENDING),
        )
        conn.commit()
        return cursor.rowcount > 0

    def has_pending(self, key: str) -> bool:
        """Check whether a local write of a key is still waiting to be pushed."""
        conn = self._ensure_connected()
        row = conn.execute(
            "SELECT 1 FROM outbox WHERE key = ? AND status = ? LIMIT 1",
            (key, STATUS_PENDING),
        ).fetchone()
        return row is not None

    def pending_count(self) -> int:
        conn = self._ensure_connected()
        row = conn.execute(
            "SELECT COUNT(*) FROM outbox WHERE status = ?", (STATUS_PENDING,)
        ).fetchone()
        return row[0]

    def get_stats(self) -> dict[str, Any]:
        """Get outbox statistics.

        Returns:
            Dictionary with entry counts per status and the current sequence.
        """
        conn = self._ensure_connected()

        stats: dict[str, Any] = {
            "origin": self.origin,
            "seq": self._seq,
        }

        cursor = conn.execute("SELECT COUNT(*) FROM outbox")
        stats["total_entries"] = cursor.fetchone()[0]

        cursor = conn.execute("SELECT status, COUNT(*) FROM outbox GROUP BY status")
        by_status = {row[0]: row[1] for row in cursor}
        stats["pending_entries"] = by_status.get(STATUS_PENDING, 0)
        stats["synced_entries"] = by_status.get(STATUS_SYNCED, 0)
        stats["superseded_entries"] = by_status.get(STATUS_SUPERSEDED, 0)
        stats["rejected_entries"] = by_status.get(STATUS_REJECTED, 0)

        cursor = conn.execute(
            "SELECT COUNT(*) FROM outbox WHERE status = ? AND attempts > 0",
            (STATUS_PENDING,),
        )
        stats["retrying_entries"] = cursor.fetchone()[0]

        return stats

    def cleanup(self, days: int = 7) -> int:
        """Delete synced, superseded and rejected entries older than the given age.

        Returns:
            Number of entries deleted.
        """
        conn = self._ensure_connected()

        cutoff = (datetime.now() - timedelta(days=days)).isoformat()

        cursor = conn.execute(
            """
            DELETE FROM outbox
            WHERE created_at < ? AND status != ?
            """,
            (cutoff, STATUS_PENDING),
        )
        conn.commit()

        deleted = cursor.rowcount
        if deleted > 0:
            logger.info(f"Cleaned up {deleted} outbox entries older than {days} days")

        return deleted
