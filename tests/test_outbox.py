"""Tests for the persistent outbox."""

from datetime import datetime, timedelta

import pytest

from schoolkv.sync import Outbox


@pytest.fixture
def outbox():
    """Create an in-memory outbox."""
    outbox = Outbox(":memory:", "test-context")
    outbox.connect()
    yield outbox
    outbox.close()


class TestEnqueue:
    """Tests for queueing writes."""

    def test_enqueue(self, outbox):
        entry = outbox.enqueue("teachers", [{"name": "Ada"}])

        assert entry.seq == 1
        assert entry.origin == "test-context"
        assert entry.status == "pending"
        assert outbox.pending_count() == 1

    def test_sequence_increases(self, outbox):
        e1 = outbox.enqueue("teachers", [])
        e2 = outbox.enqueue("gallery", [])

        assert e2.seq > e1.seq

    def test_newer_write_supersedes_older(self, outbox):
        """Test only the newest pending write of a key is handed out."""
        old = outbox.enqueue("teachers", ["old"])
        outbox.enqueue("gallery", ["g"])
        new = outbox.enqueue("teachers", ["new"])

        pending = outbox.get_pending()

        assert [e.key for e in pending] == ["gallery", "teachers"]
        assert pending[1].id == new.id
        assert pending[1].value == ["new"]
        assert outbox.get_entry(old.id).status == "superseded"

    def test_pending_limit(self, outbox):
        for i in range(5):
            outbox.enqueue(f"key-{i}", i)

        assert len(outbox.get_pending(limit=3)) == 3

    def test_sequence_survives_restart(self, tmp_path):
        """Test the sequence continues after reopening the database."""
        path = tmp_path / "outbox.db"
        first = Outbox(path, "test-context")
        first.connect()
        first.enqueue("teachers", [])
        first.enqueue("gallery", [])
        first.close()

        second = Outbox(path, "test-context")
        second.connect()
        entry = second.enqueue("announcements", [])

        assert entry.seq == 3
        assert second.pending_count() == 3
        second.close()


class TestMarking:
    """Tests for push bookkeeping."""

    def test_mark_synced(self, outbox):
        e1 = outbox.enqueue("teachers", [])
        outbox.enqueue("gallery", [])

        count = outbox.mark_synced([e1.id])

        assert count == 1
        assert outbox.pending_count() == 1
        synced = outbox.get_entry(e1.id)
        assert synced.status == "synced"
        assert synced.synced_at is not None

    def test_mark_synced_empty(self, outbox):
        assert outbox.mark_synced([]) == 0

    def test_mark_synced_ignores_superseded(self, outbox):
        """Test a superseded entry is not revived as synced."""
        old = outbox.enqueue("teachers", ["old"])
        outbox.enqueue("teachers", ["new"])

        assert outbox.mark_synced([old.id]) == 0
        assert outbox.get_entry(old.id).status == "superseded"

    def test_mark_failed(self, outbox):
        entry = outbox.enqueue("teachers", [])

        outbox.mark_failed(entry.id, "Connection failed")
        outbox.mark_failed(entry.id, "Request timed out")

        failed = outbox.get_entry(entry.id)
        assert failed.status == "pending"
        assert failed.attempts == 2
        assert failed.last_error == "Request timed out"

    def test_mark_rejected(self, outbox):
        entry = outbox.enqueue("class/5", [])

        assert outbox.mark_rejected(entry.id, "HTTP 404") is True

        rejected = outbox.get_entry(entry.id)
        assert rejected.status == "rejected"
        assert rejected.attempts == 1
        assert rejected.last_error == "HTTP 404"
        assert outbox.pending_count() == 0
        assert outbox.get_pending() == []

    def test_mark_rejected_ignores_settled_entries(self, outbox):
        old = outbox.enqueue("teachers", ["old"])
        new = outbox.enqueue("teachers", ["new"])
        outbox.mark_synced([new.id])

        assert outbox.mark_rejected(old.id, "HTTP 403") is False
        assert outbox.mark_rejected(new.id, "HTTP 403") is False
        assert outbox.get_entry(old.id).status == "superseded"
        assert outbox.get_entry(new.id).status == "synced"

    def test_has_pending(self, outbox):
        entry = outbox.enqueue("teachers", [])

        assert outbox.has_pending("teachers")
        assert not outbox.has_pending("gallery")

        outbox.mark_synced([entry.id])

        assert not outbox.has_pending("teachers")


class TestStatsAndCleanup:
    """Tests for statistics and retention."""

    def test_stats(self, outbox):
        e1 = outbox.enqueue("teachers", [])
        outbox.enqueue("teachers", ["x"])
        e3 = outbox.enqueue("gallery", [])
        outbox.mark_synced([e3.id])
        outbox.mark_failed(e1.id, "ignored")

        stats = outbox.get_stats()

        assert stats["origin"] == "test-context"
        assert stats["seq"] == 3
        assert stats["total_entries"] == 3
        assert stats["pending_entries"] == 1
        assert stats["synced_entries"] == 1
        assert stats["superseded_entries"] == 1
        assert stats["rejected_entries"] == 0
        assert stats["retrying_entries"] == 0

    def test_cleanup_keeps_pending(self, outbox):
        """Test old synced rows go, pending rows stay whatever their age."""
        synced = outbox.enqueue("teachers", [])
        pending = outbox.enqueue("gallery", [])
        outbox.mark_synced([synced.id])

        old = (datetime.now() - timedelta(days=10)).isoformat()
        outbox._conn.execute("UPDATE outbox SET created_at = ?", (old,))
        outbox._conn.commit()

        deleted = outbox.cleanup(days=7)

        assert deleted == 1
        assert outbox.get_entry(synced.id) is None
        assert outbox.get_entry(pending.id) is not None

    def test_cleanup_recent_entries(self, outbox):
        entry = outbox.enqueue("teachers", [])
        outbox.mark_synced([entry.id])

        assert outbox.cleanup(days=7) == 0
