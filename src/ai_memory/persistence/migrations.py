"""Forward-only schema migrations for the entry store.

The schema version is the highest version recorded in the `schema_version`
ledger. A database without the ledger is version 0, the legacy layout with a
single five-type `entries` table.

Each run:
    1. Computes the pending migrations from the ledger.
    2. Takes a full backup beside the database, before any schema change.
    3. Applies each pending migration in its own transaction, together with
       its ledger row.
    4. Stops at the first failure. Earlier migrations of the run stay
       committed, the failing one is rolled back, and the backup is kept.

Re-running after a partial run resumes from the ledger.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Sequence

from ..errors import MigrationError, StorageError
from .recovery import backup_dir_for

if TYPE_CHECKING:
    from .store import MemoryStore

logger = logging.getLogger(__name__)

LEDGER_TABLE = "schema_version"


@dataclass(frozen=True)
class Migration:
    version: int
    description: str
    statements: tuple[str, ...]


MIGRATIONS: tuple[Migration, ...] = (
    Migration(
        version=1,
        description="Add schema version ledger and metric tables",
        statements=(
            f"""
            CREATE TABLE IF NOT EXISTS {LEDGER_TABLE} (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                version INTEGER NOT NULL UNIQUE,
                description TEXT NOT NULL,
                applied_at TEXT NOT NULL
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS token_metrics (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp TEXT NOT NULL,
                model TEXT NOT NULL,
                input_tokens INTEGER NOT NULL,
                output_tokens INTEGER NOT NULL,
                total_tokens INTEGER NOT NULL,
                context_status TEXT NOT NULL
                    CHECK (context_status IN ('healthy', 'warning', 'critical')),
                created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_token_metrics_timestamp ON token_metrics(timestamp)",
            """
            CREATE TABLE IF NOT EXISTS query_metrics (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp TEXT NOT NULL,
                operation TEXT NOT NULL,
                elapsed_ms REAL NOT NULL,
                result_count INTEGER NOT NULL,
                created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_query_metrics_timestamp ON query_metrics(timestamp)",
            "CREATE INDEX IF NOT EXISTS idx_query_metrics_operation ON query_metrics(operation)",
        ),
    ),
    Migration(
        version=2,
        description="Widen entry types and add structured metadata columns",
        statements=(
            """
            CREATE TABLE entries_v2 (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                file_type TEXT NOT NULL CHECK (file_type IN (
                    'CONTEXT', 'DECISION', 'PROGRESS', 'PATTERN', 'BRIEF',
                    'DEPRECATED', 'SUPERSEDED'
                )),
                timestamp TEXT NOT NULL,
                tag TEXT NOT NULL,
                content TEXT NOT NULL,
                metadata TEXT,
                phase TEXT,
                progress_status TEXT
            )
            """,
            """
            INSERT INTO entries_v2 (id, file_type, timestamp, tag, content)
            SELECT id, file_type, timestamp, tag, content FROM entries
            """,
            "DROP TABLE entries",
            "ALTER TABLE entries_v2 RENAME TO entries",
            "CREATE INDEX idx_entries_type_timestamp ON entries(file_type, timestamp DESC)",
            "CREATE INDEX idx_entries_timestamp ON entries(timestamp DESC)",
            "CREATE INDEX idx_entries_phase ON entries(phase)",
        ),
    ),
    Migration(
        version=3,
        description="Add entry revision history and quantized vectors",
        statements=(
            """
            CREATE TABLE entry_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                entry_id INTEGER NOT NULL REFERENCES entries(id),
                revision INTEGER NOT NULL,
                timestamp TEXT NOT NULL,
                tag TEXT NOT NULL,
                content TEXT NOT NULL,
                metadata TEXT,
                recorded_at TEXT NOT NULL,
                UNIQUE (entry_id, revision)
            )
            """,
            """
            CREATE TABLE entry_vectors (
                entry_id INTEGER PRIMARY KEY REFERENCES entries(id),
                vector BLOB NOT NULL CHECK (length(vector) = 48),
                model TEXT NOT NULL,
                content_hash TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
            """,
        ),
    ),
)


@dataclass
class MigrationResult:
    """Outcome of one `apply_migrations` run."""

    success: bool
    migrations_applied: int
    current_version: int
    backup_path: Path | None = None
    error: str | None = None
    failed_version: int | None = None

    def raise_for_error(self) -> None:
        if not self.success:
            raise MigrationError(
                f"Migration {self.failed_version} failed: {self.error}",
                version=self.failed_version,
                applied=self.migrations_applied,
                backup_path=self.backup_path,
            )


def latest_version(migrations: Sequence[Migration] = MIGRATIONS) -> int:
    return max((m.version for m in migrations), default=0)


def get_current_version(store: "MemoryStore") -> int:
    """Highest applied migration version, or 0 if the ledger does not exist."""
    rows = store.query_raw(
        "SELECT name FROM sqlite_master WHERE type = 'table' AND name = ?",
        (LEDGER_TABLE,),
    )
    if not rows:
        return 0
    rows = store.query_raw(f"SELECT MAX(version) AS version FROM {LEDGER_TABLE}")
    return int(rows[0]["version"] or 0)


def _ordered(migrations: Sequence[Migration]) -> list[Migration]:
    ordered = sorted(migrations, key=lambda m: m.version)
    versions = [m.version for m in ordered]
    if len(set(versions)) != len(versions) or any(v < 1 for v in versions):
        raise ValueError(f"Migration versions must be unique positive integers: {versions}")
    return ordered


def pending_migrations(
    store: "MemoryStore", migrations: Sequence[Migration] = MIGRATIONS
) -> list[Migration]:
    current = get_current_version(store)
    return [m for m in _ordered(migrations) if m.version > current]


def backup_path_for(db_path: Path, now: datetime | None = None) -> Path:
    """`<dir>/.backup/<dbfile>.<YYYY-MM-DDTHH-MM-SS>.backup`, made unique if taken."""
    now = now or datetime.now(timezone.utc)
    stamp = now.astimezone(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S")
    directory = backup_dir_for(db_path)
    candidate = directory / f"{db_path.name}.{stamp}.backup"
    counter = 1
    while candidate.exists():
        candidate = directory / f"{db_path.name}.{stamp}-{counter}.backup"
        counter += 1
    return candidate


def create_backup(store: "MemoryStore", db_path: Path | None) -> Path | None:
    """Write a full backup of the store. Non-persistent stores get none."""
    if db_path is None:
        return None
    destination = backup_path_for(db_path)
    store.backup_to(destination)
    logger.info(f"Created pre-migration backup at {destination}")
    return destination


def apply_migrations(
    store: "MemoryStore",
    db_path: Path | None,
    migrations: Sequence[Migration] = MIGRATIONS,
) -> MigrationResult:
    """Bring the store's schema up to the newest version.

    Holds the store's exclusive lock for the whole run, so no reader sees a
    partially upgraded schema.

    Args:
        store: Open store to migrate.
        db_path: Database file, used to place the backup. None for in-memory.
        migrations: Migrations to consider, in any order.

    Returns:
        MigrationResult describing what happened.
    """
    with store.exclusive():
        current = get_current_version(store)
        pending = [m for m in _ordered(migrations) if m.version > current]
        if not pending:
            logger.debug(f"Schema up to date at version {current}")
            return MigrationResult(success=True, migrations_applied=0, current_version=current)

        try:
            backup = create_backup(store, db_path)
        except StorageError as exc:
            logger.error(f"Backup failed, schema left at version {current}: {exc}")
            return MigrationResult(
                success=False,
                migrations_applied=0,
                current_version=current,
                error=f"backup failed: {exc}",
                failed_version=pending[0].version,
            )

        applied = 0
        for migration in pending:
            logger.info(f"Applying migration {migration.version}: {migration.description}")
            try:
                with store.transaction():
                    for statement in migration.statements:
                        store.exec_raw(statement)
                    store.exec_raw(
                        f"INSERT INTO {LEDGER_TABLE} (version, description, applied_at) "
                        "VALUES (?, ?, ?)",
                        (
                            migration.version,
                            migration.description,
                            datetime.now(timezone.utc).isoformat(),
                        ),
                    )
            except StorageError as exc:
                logger.error(
                    f"Migration {migration.version} failed and was rolled back "
                    f"after {applied} succeeded: {exc}"
                )
                return MigrationResult(
                    success=False,
                    migrations_applied=applied,
                    current_version=current,
                    backup_path=backup,
                    error=str(exc),
                    failed_version=migration.version,
                )
            applied += 1
            current = migration.version

        logger.info(f"Applied {applied} migration(s), schema at version {current}")
        return MigrationResult(
            success=True,
            migrations_applied=applied,
            current_version=current,
            backup_path=backup,
        )


__all__ = [
    "LEDGER_TABLE",
    "Migration",
    "MIGRATIONS",
    "MigrationResult",
    "latest_version",
    "get_current_version",
    "pending_migrations",
    "backup_path_for",
    "create_backup",
    "apply_migrations",
]
