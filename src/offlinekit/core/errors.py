"""Exception hierarchy for offlinekit.

Every layer fails soft except where noted; these classes exist so that the
layer which recovers can tell the failure kinds apart.
"""

from __future__ import annotations


class OfflineKitError(Exception):
    """Base exception for offlinekit errors."""


class NetworkFailure(OfflineKitError):
    """The network could not be reached or the request timed out."""


class CacheMiss(OfflineKitError):
    """No cached response exists for a request."""


class InstallError(OfflineKitError):
    """Precaching the shell resources failed."""


class ParseFailure(OfflineKitError):
    """A legacy record could not be parsed during migration.

    Attributes:
        key: Legacy storage key that failed to parse.
    """

    def __init__(self, key: str, reason: str) -> None:
        self.key = key
        super().__init__(f"Failed to parse legacy key {key!r}: {reason}")


class PersistenceError(OfflineKitError):
    """A local write was rejected (disk full, locked database, ...)."""


class ConstraintError(PersistenceError):
    """An insert collided with an existing primary key."""


class SchemaError(OfflineKitError):
    """A table or index is not part of the opened schema."""


class SyncFailure(OfflineKitError):
    """The remote authority rejected or never received a write."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
