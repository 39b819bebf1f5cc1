"""Error taxonomy for the memory bank.

Four families of failure are distinguished:

- ValidationError: an entry was rejected before it reached storage.
- StorageError: the physical store failed. Carries a classification so callers
  can decide between retrying, restoring from backup, or giving up.
- MigrationError: a schema migration failed and was rolled back.
- ModelError: the embedding backend is unavailable. Converted internally into
  the deterministic fallback embedding and never surfaced from retrieval.
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Sequence


class MemoryBankError(Exception):
    """Base class for every error raised by the memory bank."""


class ValidationError(MemoryBankError, ValueError):
    """An entry failed validation. Nothing was written.

    Attributes:
        errors: Every reason the entry was rejected, in the order found.
    """

    def __init__(self, errors: Sequence[str]):
        self.errors = list(errors)
        super().__init__("; ".join(self.errors) or "invalid entry")


class StorageErrorKind(str, Enum):
    """Classification of a storage failure."""

    CORRUPTED_RECOVERABLE = "corrupted-recoverable"
    CORRUPTED_UNRECOVERABLE = "corrupted-unrecoverable"
    TRANSIENT = "transient"
    UNCLASSIFIED = "unclassified"


class StorageError(MemoryBankError):
    """The physical store failed."""

    kind: StorageErrorKind = StorageErrorKind.UNCLASSIFIED

    def __init__(self, message: str, *, operation: str | None = None):
        self.operation = operation
        self.recovered = False
        super().__init__(message)


class RecoverableCorruptionError(StorageError):
    """The database file is damaged but a backup restore may fix it."""

    kind = StorageErrorKind.CORRUPTED_RECOVERABLE


class UnrecoverableCorruptionError(StorageError):
    """Disk fault or read-only media. The store stays inactive."""

    kind = StorageErrorKind.CORRUPTED_UNRECOVERABLE


class TransientStorageError(StorageError):
    """Lock contention or a busy database. Safe to retry."""

    kind = StorageErrorKind.TRANSIENT


class StoreInactiveError(StorageError):
    """The store was never opened, was closed, or was disabled by a fault."""


class EntryNotFoundError(MemoryBankError, KeyError):
    """No entry exists with the requested id."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "entry not found"


class ScanCancelledError(MemoryBankError):
    """A long scan was cancelled. Partial results are discarded."""


class MigrationError(MemoryBankError):
    """A schema migration failed.

    Attributes:
        version: Version of the migration that failed.
        applied: Number of migrations committed earlier in the same run.
        backup_path: Pre-run backup kept for manual recovery, if one was taken.
    """

    def __init__(
        self,
        message: str,
        *,
        version: int | None = None,
        applied: int = 0,
        backup_path: Path | None = None,
    ):
        self.version = version
        self.applied = applied
        self.backup_path = backup_path
        super().__init__(message)


class ModelError(MemoryBankError):
    """The embedding backend could not be loaded or failed to encode."""


__all__ = [
    "MemoryBankError",
    "ValidationError",
    "StorageErrorKind",
    "StorageError",
    "RecoverableCorruptionError",
    "UnrecoverableCorruptionError",
    "TransientStorageError",
    "StoreInactiveError",
    "EntryNotFoundError",
    "ScanCancelledError",
    "MigrationError",
    "ModelError",
]
