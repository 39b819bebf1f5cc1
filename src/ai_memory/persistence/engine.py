"""Physical storage engines behind one interface.

Two engines exist:

- WalSQLiteEngine talks to the database file directly in WAL mode. This is
  the native engine, used wherever the filesystem supports WAL's shared memory.
- SnapshotSQLiteEngine keeps the working database in memory and writes a full
  snapshot back to disk after every commit, replacing the file atomically. It
  is the portable fallback (network mounts, sandboxes) and also backs
  `:memory:` stores used in tests.

Which engine to use is decided once by `create_engine`.
"""

from __future__ import annotations

import logging
import os
import sqlite3
import threading
from abc import ABC, abstractmethod
from contextlib import closing, contextmanager
from pathlib import Path
from typing import Any, Iterator, Sequence

logger = logging.getLogger(__name__)

MEMORY_PATH = ":memory:"

Params = Sequence[Any]


class StorageEngine(ABC):
    """One open SQLite database.

    All calls on the underlying connection are serialized by an internal
    re-entrant lock. Higher-level reader/writer policy lives in the store.
    """

    name = "abstract"

    def __init__(self, path: Path | None):
        self.path = path
        self._conn: sqlite3.Connection | None = None
        self._conn_lock = threading.RLock()
        self._tx_depth = 0

    @abstractmethod
    def _connect(self) -> sqlite3.Connection:
        """Open and configure the connection."""

    def _after_commit(self) -> None:
        """Hook run after each committed write."""

    def _discard_working_copy(self) -> None:
        """Hook run when `_after_commit` fails. Drops state that did not persist."""

    def _committed(self) -> None:
        try:
            self._after_commit()
        except BaseException:
            self._discard_working_copy()
            raise

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    @property
    def in_transaction(self) -> bool:
        return self._tx_depth > 0

    def open(self) -> None:
        if self._conn is not None:
            return
        conn = self._connect()
        conn.row_factory = sqlite3.Row
        self._conn = conn
        problems = self.quick_check()
        if problems:
            self.close()
            raise sqlite3.DatabaseError(f"database disk image is malformed: {problems[0]}")
        logger.debug(f"Opened {self.name} engine at {self.path or MEMORY_PATH}")

    def _require(self) -> sqlite3.Connection:
        if self._conn is None:
            raise sqlite3.ProgrammingError("Cannot operate on a closed database.")
        return self._conn

    def execute(self, sql: str, params: Params = ()) -> sqlite3.Cursor:
        with self._conn_lock:
            conn = self._require()
            before = conn.total_changes
            cursor = conn.execute(sql, params)
            # Outside a transaction every statement autocommits. DDL leaves
            # total_changes alone, so anything that returns no rows counts too.
            if not self.in_transaction and (
                conn.total_changes != before or cursor.description is None
            ):
                self._committed()
            return cursor

    def query(self, sql: str, params: Params = ()) -> list[dict[str, Any]]:
        with self._conn_lock:
            rows = self._require().execute(sql, params).fetchall()
        return [dict(row) for row in rows]

    def query_value(self, sql: str, params: Params = ()) -> Any:
        with self._conn_lock:
            row = self._require().execute(sql, params).fetchone()
        return None if row is None else row[0]

    def iter_batches(
        self, sql: str, params: Params = (), batch_size: int = 200
    ) -> Iterator[list[dict[str, Any]]]:
        """Yield result rows in batches of `batch_size`.

        The query result is materialized under the connection lock one batch
        at a time, so other callers can interleave between batches.
        """
        offset = 0
        while True:
            batch = self.query(f"{sql} LIMIT ? OFFSET ?", (*params, batch_size, offset))
            if not batch:
                return
            yield batch
            if len(batch) < batch_size:
                return
            offset += batch_size

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Run the enclosed statements atomically.

        Nested use joins the outer transaction.
        """
        with self._conn_lock:
            conn = self._require()
            if self._tx_depth:
                self._tx_depth += 1
                try:
                    yield
                finally:
                    self._tx_depth -= 1
                return

            conn.execute("BEGIN IMMEDIATE")
            self._tx_depth = 1
            try:
                yield
            except BaseException:
                self._tx_depth = 0
                # Some errors make SQLite roll back on its own.
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            self._tx_depth = 0
            conn.execute("COMMIT")
            self._committed()

    def quick_check(self) -> list[str]:
        rows = self.query("PRAGMA quick_check")
        values = [next(iter(row.values())) for row in rows]
        return [v for v in values if v != "ok"]

    def backup_to(self, destination: Path) -> None:
        """Write a consistent full copy of the database to `destination`."""
        destination.parent.mkdir(parents=True, exist_ok=True)
        with self._conn_lock, closing(sqlite3.connect(destination)) as target:
            self._require().backup(target)

    def size_bytes(self) -> int:
        if self.path is not None and self.path.exists():
            total = self.path.stat().st_size
            wal = self.path.with_name(self.path.name + "-wal")
            if wal.exists():
                total += wal.stat().st_size
            return total
        page_count = self.query_value("PRAGMA page_count") or 0
        page_size = self.query_value("PRAGMA page_size") or 0
        return int(page_count) * int(page_size)

    def close(self) -> None:
        with self._conn_lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
                self._tx_depth = 0


class WalSQLiteEngine(StorageEngine):
    """Direct file access in WAL mode."""

    name = "sqlite-wal"

    def __init__(self, path: Path, busy_timeout_ms: int = 5000):
        super().__init__(path)
        self.busy_timeout_ms = busy_timeout_ms

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            str(self.path),
            isolation_level=None,
            check_same_thread=False,
            timeout=self.busy_timeout_ms / 1000,
        )
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute(f"PRAGMA busy_timeout={int(self.busy_timeout_ms)}")
        conn.execute("PRAGMA foreign_keys=ON")
        return conn


class SnapshotSQLiteEngine(StorageEngine):
    """In-memory working copy persisted as a whole after each commit.

    With `path=None` nothing is persisted.
    """

    name = "sqlite-snapshot"

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(MEMORY_PATH, isolation_level=None, check_same_thread=False)
        if self.path is not None and self.path.exists() and self.path.stat().st_size > 0:
            with closing(sqlite3.connect(f"file:{self.path}?mode=ro", uri=True)) as source:
                source.backup(conn)
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    def _after_commit(self) -> None:
        if self.path is None:
            return
        tmp = self.path.with_name(self.path.name + ".tmp")
        if tmp.exists():
            tmp.unlink()
        try:
            with closing(sqlite3.connect(tmp)) as target:
                self._require().backup(target)
            os.replace(tmp, self.path)
        except BaseException:
            tmp.unlink(missing_ok=True)
            raise

    def _discard_working_copy(self) -> None:
        """Reload the working copy from the last snapshot on disk.

        A commit that could not be persisted must not stay visible. If the
        reload fails too, the engine is left closed.
        """
        if self.path is None or self._conn is None:
            return
        logger.warning(f"Snapshot of {self.path} not written, reloading last persisted state")
        self._conn.close()
        self._conn = None
        self._tx_depth = 0
        conn = self._connect()
        conn.row_factory = sqlite3.Row
        self._conn = conn


def detect_wal_support(path: Path) -> bool:
    """Check whether SQLite can run the file at `path` in WAL mode."""
    try:
        with closing(sqlite3.connect(str(path), isolation_level=None)) as conn:
            mode = conn.execute("PRAGMA journal_mode=WAL").fetchone()[0]
    except sqlite3.Error as exc:
        logger.debug(f"WAL check failed for {path}: {exc}")
        return False
    return str(mode).lower() == "wal"


def create_engine(path: str | Path, backend: str = "auto") -> StorageEngine:
    """Pick the storage engine for `path`.

    Args:
        path: Database file, or ":memory:" for a non-persistent store.
        backend: "auto" to test the host, or "wal" / "snapshot" to force one.

    Returns:
        An unopened engine.
    """
    if str(path) == MEMORY_PATH:
        return SnapshotSQLiteEngine(None)

    path = Path(path)
    if backend == "wal":
        return WalSQLiteEngine(path)
    if backend == "snapshot":
        return SnapshotSQLiteEngine(path)
    if backend != "auto":
        raise ValueError(f"Unknown storage backend: {backend}")

    path.parent.mkdir(parents=True, exist_ok=True)
    if detect_wal_support(path):
        return WalSQLiteEngine(path)
    logger.info(f"WAL unavailable for {path}, using snapshot engine")
    return SnapshotSQLiteEngine(path)


__all__ = [
    "MEMORY_PATH",
    "StorageEngine",
    "WalSQLiteEngine",
    "SnapshotSQLiteEngine",
    "detect_wal_support",
    "create_engine",
]
