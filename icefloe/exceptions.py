"""Typed failures raised by icefloe.

Every caller-visible failure derives from `IcefloeError`. The class-level
`retryable` flag lets calling code tell transient conditions (worth another
attempt) apart from fatal ones without matching on message text.
"""

from __future__ import annotations

from typing import Optional


class IcefloeError(Exception):
    retryable = False


class ValidationError(IcefloeError, ValueError):
    """Invalid argument or staged operation, detected before any I/O."""


class SchemaEvolutionError(ValidationError):
    """Invalid type promotion, field id collision or illegal removal."""


class PartitionEvolutionError(SchemaEvolutionError):
    """Invalid partition spec change."""


class IncompatibleSchemaError(IcefloeError):
    """A persisted record cannot be projected onto the reader's schema."""


class SnapshotNotFoundError(IcefloeError, LookupError):
    """Time-travel target is missing or has been expired."""


class CommitConflictError(IcefloeError):
    """The catalog swap was lost and the transaction could not be rebased."""


class CorruptMetadataError(IcefloeError):
    """A persisted document is malformed. Never retried, never repaired."""


class TransientIOError(IcefloeError, IOError):
    """Throttling, timeouts and server-side failures of storage or catalog."""

    retryable = True


class CommitStateUnknownError(TransientIOError):
    """The catalog swap may have been applied; the reply was lost."""

    def __init__(self, message: str, location: Optional[str] = None):
        super().__init__(message)
        self.location = location


class FileAlreadyExists(IcefloeError, FileExistsError):
    """A write-once path was written twice."""


class OperationCancelled(IcefloeError):
    pass


class DeadlineExceeded(OperationCancelled):
    pass


class TableNotFound(IcefloeError, LookupError):
    pass


class TableAlreadyExists(IcefloeError):
    pass


class NamespaceNotFound(IcefloeError, LookupError):
    pass


class NamespaceAlreadyExists(IcefloeError):
    pass
