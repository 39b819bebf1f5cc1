"""Persistence layer - entry store, schema migrations and recovery."""

from .migrations import MigrationResult, apply_migrations, get_current_version
from .store import MemoryStore
from .validation import EntryValidator

__all__ = [
    "MemoryStore",
    "MigrationResult",
    "apply_migrations",
    "get_current_version",
    "EntryValidator",
]
