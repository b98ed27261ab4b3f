"""Shared types for offlinekit.

This module defines enums used by the cache manager, the sync engine and the CLI.
"""

from __future__ import annotations

from enum import Enum


class WorkerState(str, Enum):
    """Lifecycle state of the cache manager.

    Transitions:
        UNINSTALLED -> INSTALLING -> WAITING -> ACTIVE -> TERMINATED

    A failed install drops back to UNINSTALLED.
    """

    UNINSTALLED = "uninstalled"
    INSTALLING = "installing"
    WAITING = "waiting"
    ACTIVE = "active"
    TERMINATED = "terminated"


class CacheStrategy(str, Enum):
    """How an intercepted request is answered."""

    PASS_THROUGH = "pass_through"
    CACHE_FIRST = "cache_first"
    NETWORK_FIRST = "network_first"


class LifecycleEvent(str, Enum):
    """Events the cache manager reacts to."""

    INSTALL = "install"
    ACTIVATE = "activate"
    FETCH = "fetch"
    MESSAGE = "message"


class ControlMessage(str, Enum):
    """Commands accepted on the out-of-band control channel."""

    SKIP_WAITING = "SKIP_WAITING"
    CLEAR_CACHE = "CLEAR_CACHE"
