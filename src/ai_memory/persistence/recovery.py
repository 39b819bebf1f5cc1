"""Storage error classification and backup-based recovery."""

from __future__ import annotations

import logging
import shutil
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

from ..errors import (
    RecoverableCorruptionError,
    StorageError,
    TransientStorageError,
    UnrecoverableCorruptionError,
)

logger = logging.getLogger(__name__)

BACKUP_DIR_NAME = ".backup"

_UNRECOVERABLE_PATTERNS = (
    "disk i/o error",
    "readonly database",
    "read-only",
    "unable to open database file",
    "cannot open database",
    "permission denied",
    "no space left",
    "database or disk is full",
)
_RECOVERABLE_PATTERNS = (
    "database disk image is malformed",
    "file is not a database",
    "file is encrypted or is not a database",
    "database corrupted",
    "malformed database schema",
)
_TRANSIENT_PATTERNS = (
    "database is locked",
    "database table is locked",
    "database is busy",
    "sqlite_busy",
)


def classify_storage_error(exc: BaseException, operation: str | None = None) -> StorageError:
    """Map a low-level failure onto the storage error taxonomy.

    Unrecoverable patterns win over recoverable ones: a disk fault that also
    reports corruption cannot be fixed by restoring onto the same media.
    """
    if isinstance(exc, StorageError):
        return exc
    message = str(exc)
    lowered = message.lower()
    prefix = f"{operation}: " if operation else ""

    if any(p in lowered for p in _UNRECOVERABLE_PATTERNS):
        return UnrecoverableCorruptionError(prefix + message, operation=operation)
    if any(p in lowered for p in _RECOVERABLE_PATTERNS):
        return RecoverableCorruptionError(prefix + message, operation=operation)
    if any(p in lowered for p in _TRANSIENT_PATTERNS):
        return TransientStorageError(prefix + message, operation=operation)
    if isinstance(exc, PermissionError):
        return UnrecoverableCorruptionError(prefix + message, operation=operation)
    return StorageError(prefix + message, operation=operation)


@contextmanager
def storage_errors(operation: str) -> Iterator[None]:
    """Re-raise sqlite and OS failures as classified StorageErrors."""
    try:
        yield
    except (sqlite3.Error, OSError) as exc:
        raise classify_storage_error(exc, operation) from exc


def backup_dir_for(db_path: Path) -> Path:
    return db_path.parent / BACKUP_DIR_NAME


def list_backups(db_path: Path) -> list[Path]:
    """Backups of the given database, oldest first."""
    directory = backup_dir_for(db_path)
    if not directory.is_dir():
        return []
    backups = directory.glob(f"{db_path.name}.*.backup")
    return sorted(backups, key=lambda p: (p.stat().st_mtime, p.name))


def find_latest_backup(db_path: Path) -> Path | None:
    backups = list_backups(db_path)
    return backups[-1] if backups else None


def verify_integrity(path: Path) -> list[str]:
    """Run SQLite's integrity check. Returns problems found, empty if healthy."""
    try:
        conn = sqlite3.connect(f"file:{path}?mode=ro", uri=True)
        try:
            rows = conn.execute("PRAGMA integrity_check").fetchall()
        finally:
            conn.close()
    except sqlite3.Error as exc:
        return [str(exc)]
    problems = [row[0] for row in rows if row[0] != "ok"]
    return problems


def restore_from_backup(db_path: Path, backup_path: Path | None = None) -> Path | None:
    """Replace a damaged database with a backup.

    The damaged file is moved aside rather than deleted. WAL side files are
    removed so they cannot be replayed onto the restored copy.

    Returns:
        The backup that was restored, or None if no healthy backup exists.
    """
    candidates = [backup_path] if backup_path else list(reversed(list_backups(db_path)))
    for candidate in candidates:
        if candidate is None or not candidate.exists():
            continue
        problems = verify_integrity(candidate)
        if problems:
            logger.warning(f"Skipping damaged backup {candidate}: {problems[0]}")
            continue

        stamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S")
        if db_path.exists():
            quarantine = db_path.with_name(f"{db_path.name}.corrupt-{stamp}")
            db_path.replace(quarantine)
            logger.warning(f"Moved damaged database aside to {quarantine}")
        for suffix in ("-wal", "-shm"):
            side = db_path.with_name(db_path.name + suffix)
            if side.exists():
                side.unlink()

        shutil.copy2(candidate, db_path)
        logger.info(f"Restored {db_path} from {candidate}")
        return candidate

    logger.error(f"No healthy backup available for {db_path}")
    return None


__all__ = [
    "BACKUP_DIR_NAME",
    "classify_storage_error",
    "storage_errors",
    "backup_dir_for",
    "list_backups",
    "find_latest_backup",
    "verify_integrity",
    "restore_from_backup",
]
