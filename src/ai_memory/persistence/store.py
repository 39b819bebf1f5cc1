"""Durable entry store.

MemoryStore is the single gateway to the database. It owns the storage engine,
serializes writers through a StoreLock, validates entries before they are
written and classifies every storage failure.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator, Sequence, TypeVar

from ..errors import (
    EntryNotFoundError,
    RecoverableCorruptionError,
    StorageError,
    StoreInactiveError,
    UnrecoverableCorruptionError,
)
from ..memory.models import (
    ContextStatus,
    EntryMetadata,
    EntryRevision,
    FileType,
    MemoryEntry,
    Phase,
    QueryMetric,
    QueryResult,
    TokenMetric,
    coerce_types,
    parse_timestamp,
    utc_now_iso,
)
from .engine import MEMORY_PATH, StorageEngine, create_engine
from .locking import CancellationToken, StoreLock
from .migrations import MIGRATIONS, Migration, MigrationResult, apply_migrations, get_current_version
from .recovery import restore_from_backup, storage_errors
from .validation import EntryValidator

logger = logging.getLogger(__name__)

T = TypeVar("T")

QUANTIZED_VECTOR_BYTES = 48

# Version 0 layout. Migrations take it from here.
LEGACY_SCHEMA = """
CREATE TABLE IF NOT EXISTS entries (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    file_type TEXT NOT NULL CHECK (file_type IN (
        'CONTEXT', 'DECISION', 'PROGRESS', 'PATTERN', 'BRIEF'
    )),
    timestamp TEXT NOT NULL,
    tag TEXT NOT NULL,
    content TEXT NOT NULL
)
"""

_UNSET: Any = object()
_MAX_SQL_PARAMS = 500


def _metadata_columns(metadata: EntryMetadata | None) -> tuple[str | None, str | None, str | None]:
    if metadata is None or metadata.is_empty():
        return None, None, None
    return (
        metadata.to_json(),
        metadata.phase.value if metadata.phase else None,
        metadata.progress_status.value if metadata.progress_status else None,
    )


def _as_timestamp(value: str | datetime) -> str:
    # Stored timestamps are UTC with a Z suffix, so text comparison orders them.
    return utc_now_iso(value if isinstance(value, datetime) else parse_timestamp(value))


class MemoryStore:
    """Typed persistence for memory entries.

    Example:
        store = MemoryStore()
        if store.init("AI-Memory/memory.db"):
            entry_id = store.append_entry(MemoryEntry.create("DECISION", "Use SQLite"))
            result = store.query_by_type("DECISION", limit=10)
    """

    def __init__(
        self,
        *,
        backend: str = "auto",
        validator: EntryValidator | None = None,
        lock: StoreLock | None = None,
        migrations: Sequence[Migration] = MIGRATIONS,
        engine_factory: Callable[[str | Path, str], StorageEngine] = create_engine,
        auto_recover: bool = True,
    ):
        self.backend = backend
        self.validator = validator or EntryValidator()
        self.migrations = tuple(migrations)
        self.auto_recover = auto_recover
        self._lock = lock or StoreLock()
        self._engine_factory = engine_factory
        self._engine: StorageEngine | None = None
        self._location: str | Path | None = None
        self._path: Path | None = None
        self._active = False
        self.inactive_reason: str | None = None
        self.last_migration: MigrationResult | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def init(self, path: str | Path) -> bool:
        """Open or create the store at `path` and bring its schema up to date.

        Returns:
            True when the store is ready. False on an unrecoverable failure,
            with the reason in `inactive_reason` (and `last_migration` when a
            migration failed).
        """
        if self._active:
            return True

        self._location = path
        self._path = None if str(path) == MEMORY_PATH else Path(path)

        try:
            self._open()
        except RecoverableCorruptionError as exc:
            logger.warning(f"Store at {path} is damaged, attempting restore: {exc}")
            if not self._restore():
                self._deactivate(f"corrupted and no usable backup: {exc}")
                return False
            try:
                self._open()
            except StorageError as retry_exc:
                self._deactivate(f"reopen after restore failed: {retry_exc}")
                return False
        except StorageError as exc:
            self._deactivate(str(exc))
            return False

        result = apply_migrations(self, self._path, self.migrations)
        self.last_migration = result
        if not result.success:
            self.close()
            self.inactive_reason = (
                f"migration {result.failed_version} failed after "
                f"{result.migrations_applied} applied: {result.error}"
            )
            logger.error(f"Store at {path} left inactive: {self.inactive_reason}")
            return False

        logger.info(
            f"Store ready at {path} ({self.engine_name}, schema v{result.current_version})"
        )
        return True

    def _open(self) -> None:
        with storage_errors("open"):
            if self._path is not None:
                self._path.parent.mkdir(parents=True, exist_ok=True)
            engine = self._engine_factory(self._location, self.backend)
            try:
                engine.open()
                engine.execute(LEGACY_SCHEMA)
            except BaseException:
                engine.close()
                raise
        self._engine = engine
        self._active = True
        self.inactive_reason = None

    def _restore(self) -> bool:
        if not self.auto_recover or self._path is None:
            return False
        if self._engine is not None:
            self._engine.close()
            self._engine = None
        self._active = False
        with storage_errors("restore"):
            restored = restore_from_backup(self._path)
        return restored is not None

    def _recover(self) -> bool:
        """Restore from the newest backup and reopen. Caller holds the write lock."""
        try:
            if not self._restore():
                self._deactivate("corruption detected and no usable backup")
                return False
            self._open()
        except StorageError as exc:
            self._deactivate(f"recovery failed: {exc}")
            return False
        # Backups may predate the newest schema.
        result = apply_migrations(self, self._path, self.migrations)
        self.last_migration = result
        if not result.success:
            self._deactivate(f"migration after restore failed: {result.error}")
            return False
        logger.warning(f"Store at {self._path} recovered from backup")
        return True

    def _deactivate(self, reason: str) -> None:
        self._active = False
        self.inactive_reason = reason
        if self._engine is not None:
            self._engine.close()
            self._engine = None
        logger.error(f"Store deactivated: {reason}")

    def close(self) -> None:
        with self._lock.exclusive():
            if self._engine is not None:
                self._engine.close()
                self._engine = None
            self._active = False

    def __enter__(self) -> "MemoryStore":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def is_active(self) -> bool:
        return self._active

    @property
    def path(self) -> Path | None:
        return self._path

    @property
    def engine_name(self) -> str | None:
        return self._engine.name if self._engine else None

    @property
    def schema_version(self) -> int:
        return get_current_version(self)

    # ------------------------------------------------------------------
    # Access control
    # ------------------------------------------------------------------

    def _require_engine(self) -> StorageEngine:
        if not self._active or self._engine is None:
            raise StoreInactiveError(
                f"store is not active: {self.inactive_reason or 'not initialized'}"
            )
        return self._engine

    @contextmanager
    def _writing(self, operation: str) -> Iterator[StorageEngine]:
        with self._lock.exclusive():
            engine = self._require_engine()
            try:
                with storage_errors(operation):
                    yield engine
            except UnrecoverableCorruptionError as exc:
                self._deactivate(str(exc))
                raise
            except RecoverableCorruptionError as exc:
                if self.auto_recover:
                    exc.recovered = self._recover()
                raise

    @contextmanager
    def _reading(self, operation: str) -> Iterator[StorageEngine]:
        with self._lock.shared():
            engine = self._require_engine()
            try:
                with storage_errors(operation):
                    yield engine
            except UnrecoverableCorruptionError as exc:
                self._active = False
                self.inactive_reason = str(exc)
                raise

    @contextmanager
    def exclusive(self) -> Iterator[None]:
        """Hold the write lock, blocking readers and other writers."""
        with self._lock.exclusive():
            yield

    @contextmanager
    def transaction(self) -> Iterator["MemoryStore"]:
        """Run the enclosed store calls atomically.

        Any exception inside rolls back every statement of the block.
        """
        with self._writing("transaction") as engine, engine.transaction():
            yield self

    def run_in_transaction(self, fn: Callable[["MemoryStore"], T]) -> T:
        with self.transaction():
            return fn(self)

    def exec_raw(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Execute a raw statement. Reserved for schema migrations."""
        with self._writing("exec_raw") as engine:
            return engine.execute(sql, params).rowcount

    def query_raw(self, sql: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        """Run a raw query. Reserved for schema migrations."""
        with self._reading("query_raw") as engine:
            return engine.query(sql, params)

    def backup_to(self, destination: Path) -> None:
        with self._reading("backup") as engine:
            engine.backup_to(destination)

    # ------------------------------------------------------------------
    # Entries
    # ------------------------------------------------------------------

    def append_entry(self, entry: MemoryEntry) -> int:
        """Validate and persist an entry.

        Returns:
            The id assigned to the new entry.

        Raises:
            ValidationError: The entry is invalid. Nothing was written.
            StorageError: The write failed. Nothing was written.
        """
        self.validator.check(entry)
        entry = replace(entry, timestamp=_as_timestamp(entry.timestamp))
        metadata_json, phase, status = _metadata_columns(entry.metadata)
        with self._writing("append_entry") as engine, engine.transaction():
            cursor = engine.execute(
                """
                INSERT INTO entries
                    (file_type, timestamp, tag, content, metadata, phase, progress_status)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    FileType(entry.file_type).value,
                    entry.timestamp,
                    entry.tag,
                    entry.content,
                    metadata_json,
                    phase,
                    status,
                ),
            )
            entry_id = int(cursor.lastrowid)
        logger.debug(f"Appended {entry.tag} as entry {entry_id}")
        return entry_id

    def get_entry(self, entry_id: int) -> MemoryEntry | None:
        with self._reading("get_entry") as engine:
            rows = engine.query("SELECT * FROM entries WHERE id = ?", (entry_id,))
        return MemoryEntry.from_row(rows[0]) if rows else None

    def query_by_type(self, file_type: FileType | str, limit: int = 50) -> QueryResult:
        """Newest entries of one type, with the total number of that type."""
        if limit < 0:
            raise ValueError("limit must be non-negative")
        code = FileType(file_type).value
        with self._reading("query_by_type") as engine:
            rows = engine.query(
                "SELECT * FROM entries WHERE file_type = ? "
                "ORDER BY timestamp DESC, id DESC LIMIT ?",
                (code, limit),
            )
            count = engine.query_value(
                "SELECT COUNT(*) FROM entries WHERE file_type = ?", (code,)
            )
        return QueryResult(entries=[MemoryEntry.from_row(r) for r in rows], count=int(count))

    def query_by_date_range(
        self,
        start: str | datetime,
        end: str | datetime,
        file_type: FileType | str | None = None,
    ) -> list[MemoryEntry]:
        sql = "SELECT * FROM entries WHERE timestamp >= ? AND timestamp <= ?"
        params: list[Any] = [_as_timestamp(start), _as_timestamp(end)]
        if file_type is not None:
            sql += " AND file_type = ?"
            params.append(FileType(file_type).value)
        sql += " ORDER BY timestamp DESC, id DESC"
        with self._reading("query_by_date_range") as engine:
            rows = engine.query(sql, params)
        return [MemoryEntry.from_row(r) for r in rows]

    def query_by_phase(self, phase: Phase | str) -> list[MemoryEntry]:
        with self._reading("query_by_phase") as engine:
            rows = engine.query(
                "SELECT * FROM entries WHERE phase = ? ORDER BY timestamp DESC, id DESC",
                (Phase(phase).value,),
            )
        return [MemoryEntry.from_row(r) for r in rows]

    def full_text_search(self, text: str, limit: int = 20) -> list[MemoryEntry]:
        """Case-insensitive substring search over entry content."""
        escaped = text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        with self._reading("full_text_search") as engine:
            rows = engine.query(
                "SELECT * FROM entries WHERE content LIKE ? ESCAPE '\\' "
                "ORDER BY timestamp DESC, id DESC LIMIT ?",
                (f"%{escaped}%", limit),
            )
        return [MemoryEntry.from_row(r) for r in rows]

    def scan_entries(
        self,
        types: Iterable[FileType | str] | None = None,
        since: str | datetime | None = None,
        cancel: CancellationToken | None = None,
        batch_size: int = 200,
    ) -> list[MemoryEntry]:
        """Read every matching entry, newest first, in batches.

        Raises:
            ScanCancelledError: `cancel` fired. No partial result is returned.
        """
        clauses: list[str] = []
        params: list[Any] = []
        codes = coerce_types(types)
        if codes is not None:
            if not codes:
                return []
            clauses.append(f"file_type IN ({', '.join('?' for _ in codes)})")
            params.extend(c.value for c in codes)
        if since is not None:
            clauses.append("timestamp >= ?")
            params.append(_as_timestamp(since))
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        sql = f"SELECT * FROM entries{where} ORDER BY timestamp DESC, id DESC"

        collected: list[MemoryEntry] = []
        with self._reading("scan_entries") as engine:
            for batch in engine.iter_batches(sql, params, batch_size):
                if cancel is not None:
                    cancel.raise_if_cancelled()
                collected.extend(MemoryEntry.from_row(r) for r in batch)
        if cancel is not None:
            cancel.raise_if_cancelled()
        return collected

    def get_entry_counts(self) -> dict[FileType, int]:
        counts = {t: 0 for t in FileType}
        with self._reading("get_entry_counts") as engine:
            rows = engine.query(
                "SELECT file_type, COUNT(*) AS total FROM entries GROUP BY file_type"
            )
        for row in rows:
            counts[FileType(row["file_type"])] = int(row["total"])
        return counts

    def update_entry(
        self,
        entry_id: int,
        content: str | None = None,
        metadata: EntryMetadata | None = _UNSET,
    ) -> MemoryEntry:
        """Replace an entry's content or metadata, keeping the prior revision.

        The previous state goes to `entry_history` and the entry's vector is
        dropped, all in one transaction.

        Raises:
            EntryNotFoundError: No entry has this id.
            ValidationError: The new state is invalid. Nothing was written.
        """
        with self._writing("update_entry") as engine, engine.transaction():
            rows = engine.query("SELECT * FROM entries WHERE id = ?", (entry_id,))
            if not rows:
                raise EntryNotFoundError(f"No entry with id {entry_id}")
            current = MemoryEntry.from_row(rows[0])
            updated = replace(
                current,
                content=current.content if content is None else content,
                metadata=current.metadata if metadata is _UNSET else metadata,
            )
            self.validator.check(updated)

            revision = engine.query_value(
                "SELECT COALESCE(MAX(revision), 0) + 1 FROM entry_history WHERE entry_id = ?",
                (entry_id,),
            )
            old_metadata, _, _ = _metadata_columns(current.metadata)
            engine.execute(
                """
                INSERT INTO entry_history
                    (entry_id, revision, timestamp, tag, content, metadata, recorded_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry_id,
                    revision,
                    current.timestamp,
                    current.tag,
                    current.content,
                    old_metadata,
                    utc_now_iso(),
                ),
            )
            metadata_json, phase, status = _metadata_columns(updated.metadata)
            engine.execute(
                "UPDATE entries SET content = ?, metadata = ?, phase = ?, progress_status = ? "
                "WHERE id = ?",
                (updated.content, metadata_json, phase, status, entry_id),
            )
            engine.execute("DELETE FROM entry_vectors WHERE entry_id = ?", (entry_id,))
        logger.debug(f"Updated entry {entry_id} (revision {revision} archived)")
        return updated

    def get_entry_history(self, entry_id: int) -> list[EntryRevision]:
        with self._reading("get_entry_history") as engine:
            rows = engine.query(
                "SELECT * FROM entry_history WHERE entry_id = ? ORDER BY revision",
                (entry_id,),
            )
        return [
            EntryRevision(
                entry_id=row["entry_id"],
                revision=row["revision"],
                timestamp=row["timestamp"],
                tag=row["tag"],
                content=row["content"],
                metadata=EntryMetadata.from_json(row["metadata"]),
                recorded_at=row["recorded_at"],
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Vectors
    # ------------------------------------------------------------------

    def store_vector(
        self,
        entry_id: int,
        vector: bytes,
        model: str,
        content_hash: str,
        expected_content: str | None = None,
    ) -> bool:
        """Save an entry's quantized vector.

        With `expected_content` the vector is written only while the entry
        still holds that content. An embedding computed before an edit is
        dropped instead of being attached to the new content.

        Returns:
            False when the entry is gone or its content changed, else True.
        """
        if len(vector) != QUANTIZED_VECTOR_BYTES:
            raise ValueError(
                f"Quantized vector must be {QUANTIZED_VECTOR_BYTES} bytes, got {len(vector)}"
            )
        with self._writing("store_vector") as engine, engine.transaction():
            if expected_content is not None:
                current = engine.query_value(
                    "SELECT content FROM entries WHERE id = ?", (entry_id,)
                )
                if current != expected_content:
                    return False
            engine.execute(
                """
                INSERT OR REPLACE INTO entry_vectors
                    (entry_id, vector, model, content_hash, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (entry_id, bytes(vector), model, content_hash, utc_now_iso()),
            )
        return True

    def get_vectors(
        self, entry_ids: Iterable[int] | None = None, model: str | None = None
    ) -> dict[int, bytes]:
        """Stored quantized vectors keyed by entry id.

        With `model`, vectors produced by any other model are left out.
        """
        sql = "SELECT entry_id, vector FROM entry_vectors"
        model_clause: list[str] = ["model = ?"] if model is not None else []
        model_params: list[Any] = [model] if model is not None else []
        with self._reading("get_vectors") as engine:
            if entry_ids is None:
                where = f" WHERE {model_clause[0]}" if model_clause else ""
                rows = engine.query(sql + where, model_params)
            else:
                ids = list(entry_ids)
                rows = []
                for start in range(0, len(ids), _MAX_SQL_PARAMS):
                    chunk = ids[start:start + _MAX_SQL_PARAMS]
                    clauses = [f"entry_id IN ({', '.join('?' for _ in chunk)})", *model_clause]
                    rows.extend(
                        engine.query(f"{sql} WHERE {' AND '.join(clauses)}", [*chunk, *model_params])
                    )
        return {int(row["entry_id"]): bytes(row["vector"]) for row in rows}

    def entries_missing_vectors(self, limit: int = 100) -> list[MemoryEntry]:
        with self._reading("entries_missing_vectors") as engine:
            rows = engine.query(
                """
                SELECT e.* FROM entries e
                LEFT JOIN entry_vectors v ON v.entry_id = e.id
                WHERE v.entry_id IS NULL
                ORDER BY e.id
                LIMIT ?
                """,
                (limit,),
            )
        return [MemoryEntry.from_row(r) for r in rows]

    def vector_count(self) -> int:
        with self._reading("vector_count") as engine:
            return int(engine.query_value("SELECT COUNT(*) FROM entry_vectors"))

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    def record_token_metric(self, metric: TokenMetric) -> None:
        with self._writing("record_token_metric") as engine:
            engine.execute(
                """
                INSERT INTO token_metrics
                    (timestamp, model, input_tokens, output_tokens, total_tokens, context_status)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    metric.timestamp,
                    metric.model,
                    metric.input_tokens,
                    metric.output_tokens,
                    metric.total_tokens,
                    ContextStatus(metric.context_status).value,
                ),
            )

    def record_query_metric(self, metric: QueryMetric) -> None:
        with self._writing("record_query_metric") as engine:
            engine.execute(
                "INSERT INTO query_metrics (timestamp, operation, elapsed_ms, result_count) "
                "VALUES (?, ?, ?, ?)",
                (metric.timestamp, metric.operation, metric.elapsed_ms, metric.result_count),
            )

    def query_token_metrics(self, since: str | datetime | None = None) -> list[TokenMetric]:
        """Token metrics, oldest first."""
        sql = "SELECT * FROM token_metrics"
        params: list[Any] = []
        if since is not None:
            sql += " WHERE timestamp >= ?"
            params.append(_as_timestamp(since))
        sql += " ORDER BY timestamp, id"
        with self._reading("query_token_metrics") as engine:
            rows = engine.query(sql, params)
        return [
            TokenMetric(
                timestamp=row["timestamp"],
                model=row["model"],
                input_tokens=row["input_tokens"],
                output_tokens=row["output_tokens"],
                context_status=ContextStatus(row["context_status"]),
            )
            for row in rows
        ]

    def query_query_metrics(
        self, operation: str | None = None, since: str | datetime | None = None
    ) -> list[QueryMetric]:
        """Query metrics, oldest first."""
        clauses: list[str] = []
        params: list[Any] = []
        if operation is not None:
            clauses.append("operation = ?")
            params.append(operation)
        if since is not None:
            clauses.append("timestamp >= ?")
            params.append(_as_timestamp(since))
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._reading("query_query_metrics") as engine:
            rows = engine.query(f"SELECT * FROM query_metrics{where} ORDER BY timestamp, id", params)
        return [
            QueryMetric(
                timestamp=row["timestamp"],
                operation=row["operation"],
                elapsed_ms=float(row["elapsed_ms"]),
                result_count=row["result_count"],
            )
            for row in rows
        ]

    def db_size_bytes(self) -> int:
        with self._reading("db_size_bytes") as engine:
            return engine.size_bytes()


__all__ = ["MemoryStore", "LEGACY_SCHEMA", "QUANTIZED_VECTOR_BYTES"]
