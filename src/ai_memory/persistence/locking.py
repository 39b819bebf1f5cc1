"""Reader-writer coordination for a single store instance.

Writers (appends, edits, migrations) are served one at a time in the order
they asked. Readers share access with each other but wait while a writer holds
or is queued for the lock, so nobody reads a half-applied migration.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator

from ..errors import ScanCancelledError


class StoreLock:
    """FIFO, writer-preferring readers-writer lock.

    The exclusive side is re-entrant for the thread holding it, and that thread
    may also take the shared side. Upgrading a shared hold to exclusive is not
    supported and raises RuntimeError.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer: int | None = None
        self._writer_depth = 0
        self._next_ticket = 0
        self._now_serving = 0
        self._local = threading.local()

    def _held_shared(self) -> int:
        return getattr(self._local, "shared", 0)

    def acquire_exclusive(self) -> None:
        me = threading.get_ident()
        with self._cond:
            if self._writer == me:
                self._writer_depth += 1
                return
            if self._held_shared():
                raise RuntimeError("cannot upgrade a shared hold to exclusive")
            ticket = self._next_ticket
            self._next_ticket += 1
            self._cond.wait_for(
                lambda: self._now_serving == ticket
                and self._writer is None
                and self._readers == 0
            )
            self._writer = me
            self._writer_depth = 1

    def release_exclusive(self) -> None:
        with self._cond:
            if self._writer != threading.get_ident():
                raise RuntimeError("exclusive lock released by a thread that does not hold it")
            self._writer_depth -= 1
            if self._writer_depth == 0:
                self._writer = None
                self._now_serving += 1
                self._cond.notify_all()

    def acquire_shared(self) -> None:
        me = threading.get_ident()
        with self._cond:
            if self._writer == me:
                self._writer_depth += 1
                return
            if not self._held_shared():
                # Queued writers go first.
                self._cond.wait_for(
                    lambda: self._writer is None and self._now_serving == self._next_ticket
                )
            self._readers += 1
            self._local.shared = self._held_shared() + 1

    def release_shared(self) -> None:
        me = threading.get_ident()
        with self._cond:
            if self._writer == me and not self._held_shared():
                self._writer_depth -= 1
                return
            if not self._held_shared():
                raise RuntimeError("shared lock released by a thread that does not hold it")
            self._readers -= 1
            self._local.shared -= 1
            if self._readers == 0:
                self._cond.notify_all()

    @contextmanager
    def exclusive(self) -> Iterator[None]:
        self.acquire_exclusive()
        try:
            yield
        finally:
            self.release_exclusive()

    @contextmanager
    def shared(self) -> Iterator[None]:
        self.acquire_shared()
        try:
            yield
        finally:
            self.release_shared()

    @property
    def writer_active(self) -> bool:
        with self._cond:
            return self._writer is not None

    @property
    def readers(self) -> int:
        with self._cond:
            return self._readers


class CancellationToken:
    """Cooperative cancellation flag for long scans."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise ScanCancelledError("scan cancelled")


__all__ = ["StoreLock", "CancellationToken"]
