"""Shared types and dataclasses for the sync engine.

This module provides:
- JourneyState: The singleton journey record, in memory
- Recommendation: The separately loaded "next recommended action" slot
- WriteOp, PendingWrite: Queued local writes
- Type aliases for callbacks
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from offlinekit.client.store import JOURNEY_ID


@dataclass(frozen=True)
class JourneyState:
    """User journey preferences.

    Attributes:
        path_id: Selected learning path.
        experience_level: Self-reported level on that path.
        goals: Free-form goal identifiers.
        onboarding_completed: Whether onboarding finished.
        onboarding_completed_at: ISO timestamp of onboarding completion.
        last_path_change: ISO timestamp of the last path switch.
    """

    path_id: str | None = None
    experience_level: str | None = None
    goals: tuple[str, ...] = ()
    onboarding_completed: bool = False
    onboarding_completed_at: str | None = None
    last_path_change: str | None = None

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> JourneyState:
        """Create from a stored (or server) record."""
        return cls(
            path_id=record.get("pathId"),
            experience_level=record.get("experienceLevel"),
            goals=tuple(record.get("goals") or ()),
            onboarding_completed=bool(record.get("onboardingCompleted", False)),
            onboarding_completed_at=record.get("onboardingCompletedAt"),
            last_path_change=record.get("lastPathChange"),
        )

    def to_record(self) -> dict[str, Any]:
        """Convert to the singleton row stored in the journey table."""
        return {
            "id": JOURNEY_ID,
            "pathId": self.path_id,
            "experienceLevel": self.experience_level,
            "goals": list(self.goals),
            "onboardingCompleted": self.onboarding_completed,
            "onboardingCompletedAt": self.onboarding_completed_at,
            "lastPathChange": self.last_path_change,
        }

    def to_preferences(self) -> dict[str, Any]:
        """Convert to the payload of the remote preferences endpoint."""
        return {
            "pathId": self.path_id,
            "experienceLevel": self.experience_level,
            "goals": list(self.goals),
            "onboardingCompleted": self.onboarding_completed,
        }

    def evolve(self, **changes: Any) -> JourneyState:
        """Return a copy with some fields changed."""
        return replace(self, **changes)


@dataclass(frozen=True)
class Recommendation:
    """Derived "next recommended action", loaded independently of the journey."""

    data: dict[str, Any] | None = None
    loading: bool = False
    error: str | None = None


class WriteOp(str, Enum):
    """Kind of queued local write."""

    PUT = "put"
    DELETE = "delete"
    CLEAR = "clear"


@dataclass(frozen=True)
class PendingWrite:
    """A local write waiting to reach the persistent store.

    Writes are deduplicated by ``slot``: a newer write to the same record
    replaces an older one that has not been applied yet.

    Attributes:
        table: Target table.
        op: Kind of write.
        key: Primary key for PUT/DELETE, None for CLEAR.
        record: Full record for PUT.
        revision: Monotonic counter, higher is newer.
    """

    table: str
    op: WriteOp
    key: Any = None
    record: dict[str, Any] | None = None
    revision: int = 0
    attempts: int = field(default=0, compare=False)

    @property
    def slot(self) -> tuple[Any, ...]:
        """Deduplication key of this write."""
        if self.table == "journey":
            # PUT and CLEAR of the singleton target the same row
            return ("journey",)
        key = self.key if isinstance(self.key, tuple) else (self.key,)
        return (self.table, *key)


# Type alias for journey change subscribers
StateCallback = Callable[[JourneyState], None]
