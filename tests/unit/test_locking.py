"""Unit tests for store locking, cancellation and retries."""

import threading
import time

import pytest

from ai_memory.errors import (
    ScanCancelledError,
    StorageError,
    TransientStorageError,
    ValidationError,
)
from ai_memory.persistence.locking import CancellationToken, StoreLock
from ai_memory.service.retry import (
    RetryConfig,
    acall_with_retry,
    calculate_backoff,
    call_with_retry,
    retry_async,
    retry_sync,
)


@pytest.mark.unit
class TestStoreLock:
    """Tests for the readers-writer lock."""

    def test_shared_holders_coexist(self):
        lock = StoreLock()
        entered = threading.Barrier(2, timeout=5)

        def reader():
            with lock.shared():
                entered.wait()

        threads = [threading.Thread(target=reader) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=5)
        assert not any(t.is_alive() for t in threads)
        assert lock.readers == 0

    def test_exclusive_is_reentrant(self):
        lock = StoreLock()
        with lock.exclusive():
            with lock.exclusive():
                assert lock.writer_active
            assert lock.writer_active
        assert not lock.writer_active

    def test_writer_may_read(self):
        lock = StoreLock()
        with lock.exclusive():
            with lock.shared():
                assert lock.writer_active
        assert not lock.writer_active

    def test_upgrade_rejected(self):
        lock = StoreLock()
        with lock.shared():
            with pytest.raises(RuntimeError):
                lock.acquire_exclusive()

    def test_release_without_hold(self):
        with pytest.raises(RuntimeError):
            StoreLock().release_exclusive()

    def test_writer_excludes_readers(self):
        lock = StoreLock()
        events = []
        writer_in = threading.Event()

        def writer():
            with lock.exclusive():
                writer_in.set()
                time.sleep(0.05)
                events.append("write-done")

        def reader():
            writer_in.wait(timeout=5)
            with lock.shared():
                events.append("read")

        w = threading.Thread(target=writer)
        r = threading.Thread(target=reader)
        w.start()
        r.start()
        w.join(timeout=5)
        r.join(timeout=5)
        assert events == ["write-done", "read"]

    def test_writers_served_in_order(self):
        lock = StoreLock()
        order = []
        lock.acquire_exclusive()

        def writer(n):
            with lock.exclusive():
                order.append(n)

        threads = []
        for n in range(3):
            t = threading.Thread(target=writer, args=(n,))
            t.start()
            threads.append(t)
            # Let each thread take its ticket before the next starts.
            time.sleep(0.05)
        lock.release_exclusive()
        for t in threads:
            t.join(timeout=5)
        assert order == [0, 1, 2]


@pytest.mark.unit
class TestCancellationToken:
    def test_not_cancelled(self):
        token = CancellationToken()
        token.raise_if_cancelled()
        assert not token.cancelled

    def test_cancelled(self):
        token = CancellationToken()
        token.cancel()
        assert token.cancelled
        with pytest.raises(ScanCancelledError):
            token.raise_if_cancelled()


@pytest.mark.unit
class TestRetry:
    """Tests for retrying transient storage failures."""

    def test_transient_error_retried(self):
        attempts = []

        def flaky():
            attempts.append(1)
            if len(attempts) < 3:
                raise TransientStorageError("database is locked")
            return "ok"

        assert call_with_retry(flaky, sleep=lambda _: None) == "ok"
        assert len(attempts) == 3

    def test_gives_up_after_max_attempts(self):
        def always_locked():
            raise TransientStorageError("database is locked")

        with pytest.raises(TransientStorageError):
            call_with_retry(always_locked, config=RetryConfig(max_attempts=2), sleep=lambda _: None)

    def test_validation_not_retried(self):
        attempts = []

        def invalid():
            attempts.append(1)
            raise ValidationError(["Content is empty"])

        with pytest.raises(ValidationError):
            call_with_retry(invalid, sleep=lambda _: None)
        assert len(attempts) == 1

    def test_other_storage_errors_not_retried(self):
        attempts = []

        def broken():
            attempts.append(1)
            raise StorageError("boom")

        with pytest.raises(StorageError):
            call_with_retry(broken, sleep=lambda _: None)
        assert len(attempts) == 1

    def test_backoff_grows_and_caps(self):
        assert calculate_backoff(0, 0.1, 1.0, jitter=False) == pytest.approx(0.1)
        assert calculate_backoff(2, 0.1, 1.0, jitter=False) == pytest.approx(0.4)
        assert calculate_backoff(10, 0.1, 1.0, jitter=False) == 1.0

    def test_decorator(self):
        calls = []

        @retry_sync(config=RetryConfig(base_delay=0.0, jitter=False))
        def flaky():
            calls.append(1)
            if len(calls) == 1:
                raise TransientStorageError("database is busy")
            return len(calls)

        assert flaky() == 2

    @pytest.mark.asyncio
    async def test_async_transient_error_retried(self):
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) < 2:
                raise TransientStorageError("database is locked")
            return "ok"

        config = RetryConfig(base_delay=0.0, jitter=False)
        assert await acall_with_retry(flaky, config=config) == "ok"
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_async_decorator_does_not_retry_validation(self):
        calls = []

        @retry_async(config=RetryConfig(base_delay=0.0, jitter=False))
        async def invalid():
            calls.append(1)
            raise ValidationError(["Content is empty"])

        with pytest.raises(ValidationError):
            await invalid()
        assert calls == [1]
