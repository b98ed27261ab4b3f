"""Optimistic synchronization of local state.

Architecture:
    SyncEngine → WriteQueue → PersistentStore
         └────→ PreferencesClient (fire-and-forget)

Components:
- **SyncEngine**: In-memory journey, bookmarks and progress with optimistic writes
- **WriteQueue**: Write-ahead queue of pending local writes, deduplicated per record
- **retry_with_backoff**: Exponential backoff used to retry failed local writes

All public symbols are re-exported here.
"""

from offlinekit.client.sync.engine import RetryPolicy, SyncEngine
from offlinekit.client.sync.queue import WriteQueue
from offlinekit.client.sync.retry import (
    DEFAULT_BACKOFF_MULTIPLIER,
    DEFAULT_INITIAL_BACKOFF,
    DEFAULT_MAX_BACKOFF,
    DEFAULT_MAX_RETRIES,
    retry_with_backoff,
)
from offlinekit.client.sync.types import (
    JourneyState,
    PendingWrite,
    Recommendation,
    StateCallback,
    WriteOp,
)

__all__ = [
    # Retry functions and constants
    "DEFAULT_BACKOFF_MULTIPLIER",
    "DEFAULT_INITIAL_BACKOFF",
    "DEFAULT_MAX_BACKOFF",
    "DEFAULT_MAX_RETRIES",
    "retry_with_backoff",
    # Types
    "JourneyState",
    "PendingWrite",
    "Recommendation",
    "StateCallback",
    "WriteOp",
    # Classes
    "RetryPolicy",
    "SyncEngine",
    "WriteQueue",
]
