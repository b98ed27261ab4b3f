"""Core module - Shared configuration, errors and types."""

from offlinekit.core.config import CacheConfig, ClientConfig, TrackerConfig
from offlinekit.core.errors import (
    CacheMiss,
    ConstraintError,
    InstallError,
    NetworkFailure,
    OfflineKitError,
    ParseFailure,
    PersistenceError,
    SchemaError,
    SyncFailure,
)
from offlinekit.core.types import (
    CacheStrategy,
    ControlMessage,
    LifecycleEvent,
    WorkerState,
)

__all__ = [
    # Config
    "CacheConfig",
    "ClientConfig",
    "TrackerConfig",
    # Errors
    "CacheMiss",
    "ConstraintError",
    "InstallError",
    "NetworkFailure",
    "OfflineKitError",
    "ParseFailure",
    "PersistenceError",
    "SchemaError",
    "SyncFailure",
    # Types
    "CacheStrategy",
    "ControlMessage",
    "LifecycleEvent",
    "WorkerState",
]
