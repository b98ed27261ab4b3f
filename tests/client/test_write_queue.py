"""Tests for the write-ahead queue."""

import pytest

from offlinekit.client.sync.queue import WriteQueue
from offlinekit.client.sync.types import WriteOp


class TestWriteQueue:
    """Tests for WriteQueue."""

    def test_fifo_order(self) -> None:
        """Writes come out oldest first."""
        queue = WriteQueue()
        queue.put("bookmarks", WriteOp.PUT, "a", {"id": "a"})
        queue.put("bookmarks", WriteOp.PUT, "b", {"id": "b"})

        assert [w.key for w in queue.pending()] == ["a", "b"]
        assert len(queue) == 2

    def test_dedup_keeps_latest(self) -> None:
        """A newer write to the same record replaces the older one."""
        queue = WriteQueue()
        queue.put("bookmarks", WriteOp.PUT, "a", {"id": "a", "title": "old"})
        queue.put("bookmarks", WriteOp.PUT, "b", {"id": "b"})
        queue.put("bookmarks", WriteOp.PUT, "a", {"id": "a", "title": "new"})

        writes = queue.pending()
        assert [w.key for w in writes] == ["b", "a"]
        assert writes[1].record["title"] == "new"

    def test_journey_put_and_clear_share_slot(self) -> None:
        """PUT and CLEAR of the journey singleton collapse."""
        queue = WriteQueue()
        queue.put("journey", WriteOp.PUT, 1, {"id": 1})
        queue.put("journey", WriteOp.CLEAR)

        (write,) = queue.pending()
        assert write.op is WriteOp.CLEAR

    def test_compound_keys(self) -> None:
        """Compound keys are distinct slots."""
        queue = WriteQueue()
        queue.put("progress", WriteOp.PUT, ("dsa", "bfs"), {})
        queue.put("progress", WriteOp.PUT, ("dsa", "dfs"), {})

        assert len(queue) == 2

    def test_ack_ignores_superseded(self) -> None:
        """Acking an older revision keeps the newer write queued."""
        queue = WriteQueue()
        old = queue.put("bookmarks", WriteOp.PUT, "a", {"id": "a", "v": 1})
        new = queue.put("bookmarks", WriteOp.PUT, "a", {"id": "a", "v": 2})

        assert not queue.ack(old)
        assert len(queue) == 1
        assert queue.ack(new)
        assert len(queue) == 0

    def test_fail_counts_attempts(self) -> None:
        """fail() increments attempts and keeps the write."""
        queue = WriteQueue()
        write = queue.put("bookmarks", WriteOp.DELETE, "a")

        queue.fail(write)
        queue.fail(write)

        (pending,) = queue.pending()
        assert pending.attempts == 2
        assert pending.revision == write.revision

    def test_max_size(self) -> None:
        """A full queue rejects new slots but accepts updates."""
        queue = WriteQueue(max_size=1)
        queue.put("bookmarks", WriteOp.PUT, "a", {"id": "a"})
        queue.put("bookmarks", WriteOp.PUT, "a", {"id": "a", "v": 2})

        with pytest.raises(OverflowError):
            queue.put("bookmarks", WriteOp.PUT, "b", {"id": "b"})

    def test_clear(self) -> None:
        """clear() drops everything."""
        queue = WriteQueue()
        queue.put("bookmarks", WriteOp.PUT, "a", {"id": "a"})
        queue.clear()

        assert list(queue) == []
