"""Write-ahead queue of local writes.

This module provides:
- WriteQueue: Ordered, slot-deduplicated queue of PendingWrite

Every optimistic mutation is appended here before memory changes, then the
engine drains the queue into the persistent store. Writes are deduplicated by
slot: only the most recent write per record is kept, which is safe because
every write carries the full record rather than a delta. A write that fails
stays queued until a later drain succeeds.
"""

from __future__ import annotations

import itertools
import logging
import threading
from typing import TYPE_CHECKING, Any

from offlinekit.client.sync.types import PendingWrite, WriteOp

if TYPE_CHECKING:
    from collections.abc import Iterator

logger = logging.getLogger(__name__)


class WriteQueue:
    """Thread-safe FIFO of pending writes with per-record deduplication.

    Attributes:
        max_size: Maximum number of queued records (0 = unlimited)
    """

    def __init__(self, max_size: int = 0) -> None:
        self._lock = threading.RLock()
        self._writes: dict[tuple[Any, ...], PendingWrite] = {}
        self._revisions = itertools.count(1)
        self._max_size = max_size

    def put(
        self,
        table: str,
        op: WriteOp,
        key: Any = None,
        record: dict[str, Any] | None = None,
    ) -> PendingWrite:
        """Append a write, replacing any pending write to the same record.

        Returns:
            The queued write.

        Raises:
            OverflowError: If the queue is full.
        """
        with self._lock:
            write = PendingWrite(
                table=table,
                op=op,
                key=key,
                record=record,
                revision=next(self._revisions),
            )
            if (
                self._max_size > 0
                and write.slot not in self._writes
                and len(self._writes) >= self._max_size
            ):
                raise OverflowError(f"Write queue full (max_size={self._max_size})")

            # Re-insert so iteration order follows the latest write
            self._writes.pop(write.slot, None)
            self._writes[write.slot] = write
            logger.debug(f"Queued {op.value} on {table} (revision {write.revision})")
            return write

    def pending(self) -> list[PendingWrite]:
        """Snapshot of queued writes, oldest first."""
        with self._lock:
            return list(self._writes.values())

    def ack(self, write: PendingWrite) -> bool:
        """Remove a write after it reached the store.

        A newer write queued to the same slot in the meantime is kept.

        Returns:
            True if the write was removed.
        """
        with self._lock:
            current = self._writes.get(write.slot)
            if current is not None and current.revision == write.revision:
                del self._writes[write.slot]
                return True
            return False

    def fail(self, write: PendingWrite) -> None:
        """Record a failed attempt on a still-queued write."""
        with self._lock:
            current = self._writes.get(write.slot)
            if current is not None and current.revision == write.revision:
                self._writes[write.slot] = PendingWrite(
                    table=current.table,
                    op=current.op,
                    key=current.key,
                    record=current.record,
                    revision=current.revision,
                    attempts=current.attempts + 1,
                )

    def clear(self) -> None:
        """Drop every pending write."""
        with self._lock:
            self._writes.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._writes)

    def __iter__(self) -> Iterator[PendingWrite]:
        return iter(self.pending())
