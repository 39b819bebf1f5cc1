"""Integration tests for MemoryStore against real SQLite databases."""

import threading
from datetime import datetime, timezone

import pytest

from ai_memory.errors import (
    EntryNotFoundError,
    ScanCancelledError,
    StorageError,
    StoreInactiveError,
    ValidationError,
)
from ai_memory.memory.embeddings import HashEmbeddingBackend, quantize_embedding
from ai_memory.memory.models import (
    ContextStatus,
    EntryMetadata,
    FileType,
    MemoryEntry,
    Phase,
    ProgressStatus,
    QueryMetric,
    TokenMetric,
)
from ai_memory.persistence import engine as engine_module
from ai_memory.persistence.locking import CancellationToken
from ai_memory.persistence.migrations import latest_version
from ai_memory.persistence.store import MemoryStore


def _entry(content="Use SQLite", file_type=FileType.DECISION, day=15, metadata=None):
    return MemoryEntry(
        file_type=file_type,
        timestamp=f"2025-01-{day:02d}T00:00:00Z",
        tag=f"[{file_type.value}:2025-01-{day:02d}]",
        content=content,
        metadata=metadata,
    )


@pytest.mark.integration
class TestLifecycle:
    def test_init_creates_file_and_migrates(self, tmp_path):
        store = MemoryStore()
        assert store.init(tmp_path / "nested" / "memory.db")
        try:
            assert (tmp_path / "nested" / "memory.db").exists()
            assert store.schema_version == latest_version()
            assert store.engine_name in ("sqlite-wal", "sqlite-snapshot")
        finally:
            store.close()

    def test_init_is_idempotent(self, memory_store):
        assert memory_store.init(":memory:")

    def test_operations_before_init_fail(self):
        with pytest.raises(StoreInactiveError):
            MemoryStore().query_by_type("DECISION")

    def test_operations_after_close_fail(self, tmp_path):
        store = MemoryStore()
        store.init(tmp_path / "memory.db")
        store.close()
        assert not store.is_active
        with pytest.raises(StoreInactiveError):
            store.append_entry(_entry())

    @pytest.mark.parametrize("backend", ["wal", "snapshot"])
    def test_data_survives_reopen(self, tmp_path, backend):
        path = tmp_path / "memory.db"
        store = MemoryStore(backend=backend)
        assert store.init(path)
        entry_id = store.append_entry(_entry("persisted"))
        store.close()

        reopened = MemoryStore(backend=backend)
        assert reopened.init(path)
        try:
            assert reopened.get_entry(entry_id).content == "persisted"
        finally:
            reopened.close()

    def test_failed_snapshot_write_is_rolled_back(self, tmp_path, monkeypatch):
        path = tmp_path / "memory.db"
        store = MemoryStore(backend="snapshot")
        assert store.init(path)

        def refuse_rename(src, dst):
            raise OSError("rename refused")

        try:
            with monkeypatch.context() as patched:
                patched.setattr(engine_module.os, "replace", refuse_rename)
                with pytest.raises(StorageError):
                    store.append_entry(_entry("lost"))

            assert store.is_active
            assert store.query_by_type("DECISION").count == 0
            assert not (tmp_path / "memory.db.tmp").exists()
            store.append_entry(_entry("kept"))
        finally:
            store.close()

        reopened = MemoryStore(backend="snapshot")
        assert reopened.init(path)
        try:
            assert [e.content for e in reopened.query_by_type("DECISION").entries] == ["kept"]
        finally:
            reopened.close()

    def test_schema_change_outside_transaction_survives_reopen(self, tmp_path):
        path = tmp_path / "memory.db"
        store = MemoryStore(backend="snapshot")
        assert store.init(path)
        store.exec_raw("CREATE INDEX idx_entries_content ON entries(content)")
        store.close()

        reopened = MemoryStore(backend="snapshot")
        assert reopened.init(path)
        try:
            rows = reopened.query_raw(
                "SELECT name FROM sqlite_master WHERE type = 'index' AND name = ?",
                ("idx_entries_content",),
            )
            assert rows == [{"name": "idx_entries_content"}]
        finally:
            reopened.close()


@pytest.mark.integration
class TestEntries:
    """Tests for appending and querying entries."""

    def test_append_then_query(self, file_store):
        """A single appended decision comes back with count 1."""
        entry_id = file_store.append_entry(_entry())

        result = file_store.query_by_type("DECISION", 10)

        assert result.count == 1
        assert len(result.entries) == 1
        stored = result.entries[0]
        assert stored.id == entry_id
        assert stored.tag == "[DECISION:2025-01-15]"
        assert stored.content == "Use SQLite"
        assert stored.timestamp == "2025-01-15T00:00:00.000Z"

    def test_ids_increase(self, memory_store):
        first = memory_store.append_entry(_entry("one"))
        second = memory_store.append_entry(_entry("two"))
        assert second > first

    def test_invalid_entry_not_written(self, memory_store):
        with pytest.raises(ValidationError) as exc_info:
            memory_store.append_entry(_entry(content=""))
        assert exc_info.value.errors == ["Content is empty"]
        assert memory_store.query_by_type("DECISION").count == 0

    def test_newest_first_and_limit(self, memory_store):
        for day in (3, 9, 5):
            memory_store.append_entry(_entry(f"day {day}", day=day))

        result = memory_store.query_by_type("DECISION", 2)

        assert [e.content for e in result.entries] == ["day 9", "day 5"]
        assert result.count == 3

    def test_query_returns_fresh_copies(self, memory_store):
        memory_store.append_entry(_entry())
        first = memory_store.query_by_type("DECISION").entries[0]
        second = memory_store.query_by_type("DECISION").entries[0]
        assert first == second
        assert first is not second

    def test_counts_cover_every_type(self, memory_store):
        memory_store.append_entry(_entry(file_type=FileType.BRIEF))
        memory_store.append_entry(_entry(file_type=FileType.BRIEF))
        memory_store.append_entry(_entry(file_type=FileType.SUPERSEDED))

        counts = memory_store.get_entry_counts()

        assert set(counts) == set(FileType)
        assert counts[FileType.BRIEF] == 2
        assert counts[FileType.SUPERSEDED] == 1
        assert counts[FileType.DECISION] == 0

    def test_date_range(self, memory_store):
        for day in (1, 10, 20):
            memory_store.append_entry(_entry(f"day {day}", day=day))
        start = datetime(2025, 1, 5, tzinfo=timezone.utc)
        entries = memory_store.query_by_date_range(start, "2025-01-15T00:00:00Z")
        assert [e.content for e in entries] == ["day 10"]

    def test_offset_timestamps_stored_as_utc(self, memory_store):
        entry = MemoryEntry(
            file_type=FileType.DECISION,
            timestamp="2025-01-14T15:00:00-05:00",
            tag="[DECISION:2025-01-14]",
            content="from New York",
        )
        entry_id = memory_store.append_entry(entry)

        assert memory_store.get_entry(entry_id).timestamp == "2025-01-14T20:00:00.000Z"
        assert len(memory_store.scan_entries(since="2025-01-14T14:30:00-05:00")) == 1
        assert memory_store.scan_entries(since="2025-01-14T16:00:00-05:00") == []
        after_utc_day_start = datetime(2025, 1, 14, 19, 0, tzinfo=timezone.utc)
        assert len(memory_store.scan_entries(since=after_utc_day_start)) == 1

    def test_metadata_round_trip_and_phase_query(self, memory_store):
        meta = EntryMetadata(
            phase=Phase.EXECUTION,
            progress_status=ProgressStatus.DONE,
            targets=frozenset({"db"}),
        )
        entry_id = memory_store.append_entry(_entry(metadata=meta))
        memory_store.append_entry(_entry("no metadata"))

        assert memory_store.get_entry(entry_id).metadata == meta
        assert [e.id for e in memory_store.query_by_phase("execution")] == [entry_id]

    def test_full_text_search_escapes_wildcards(self, memory_store):
        memory_store.append_entry(_entry("100% coverage"))
        memory_store.append_entry(_entry("1000 coverage"))
        assert [e.content for e in memory_store.full_text_search("100%")] == ["100% coverage"]
        assert len(memory_store.full_text_search("COVERAGE")) == 2

    def test_scan_entries_in_batches(self, memory_store):
        for i in range(25):
            memory_store.append_entry(_entry(f"entry {i}", day=(i % 28) + 1))
        entries = memory_store.scan_entries(batch_size=10)
        assert len(entries) == 25
        assert len({e.id for e in entries}) == 25

    def test_scan_cancelled(self, memory_store):
        memory_store.append_entry(_entry())
        token = CancellationToken()
        token.cancel()
        with pytest.raises(ScanCancelledError):
            memory_store.scan_entries(cancel=token)

    def test_concurrent_appends(self, file_store):
        errors = []

        def writer(n):
            try:
                for i in range(10):
                    file_store.append_entry(_entry(f"writer {n} entry {i}"))
            except Exception as exc:  # pragma: no cover - surfaced by assertion
                errors.append(exc)

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        assert errors == []
        assert file_store.query_by_type("DECISION").count == 40


@pytest.mark.integration
class TestEditing:
    """Tests for in-place edits with revision history."""

    def test_update_keeps_history(self, memory_store):
        entry_id = memory_store.append_entry(_entry("first"))

        updated = memory_store.update_entry(entry_id, content="second")

        assert updated.content == "second"
        assert updated.tag == "[DECISION:2025-01-15]"
        assert memory_store.get_entry(entry_id).content == "second"
        history = memory_store.get_entry_history(entry_id)
        assert [(h.revision, h.content) for h in history] == [(1, "first")]

    def test_update_metadata_only(self, memory_store):
        entry_id = memory_store.append_entry(_entry())
        meta = EntryMetadata(phase=Phase.PLANNING)
        memory_store.update_entry(entry_id, metadata=meta)
        stored = memory_store.get_entry(entry_id)
        assert stored.metadata == meta
        assert stored.content == "Use SQLite"

    def test_update_missing_entry(self, memory_store):
        with pytest.raises(EntryNotFoundError):
            memory_store.update_entry(999, content="x")

    def test_invalid_update_rolled_back(self, memory_store):
        entry_id = memory_store.append_entry(_entry("keep me"))
        with pytest.raises(ValidationError):
            memory_store.update_entry(entry_id, content="   ")
        assert memory_store.get_entry(entry_id).content == "keep me"
        assert memory_store.get_entry_history(entry_id) == []

    def test_update_drops_vector(self, memory_store):
        entry_id = memory_store.append_entry(_entry())
        vector = quantize_embedding(HashEmbeddingBackend().embed_one("Use SQLite"))
        memory_store.store_vector(entry_id, vector, "hash", "abc")
        memory_store.update_entry(entry_id, content="changed")
        assert memory_store.get_vectors() == {}


@pytest.mark.integration
class TestVectorsAndMetrics:
    def test_vectors(self, memory_store):
        first = memory_store.append_entry(_entry("one"))
        second = memory_store.append_entry(_entry("two"))
        vector = quantize_embedding(HashEmbeddingBackend().embed_one("one"))
        memory_store.store_vector(first, vector, "hash", "h1")

        assert memory_store.get_vectors() == {first: vector}
        assert memory_store.get_vectors([second]) == {}
        assert [e.id for e in memory_store.entries_missing_vectors()] == [second]
        assert memory_store.vector_count() == 1

    def test_vector_size_checked(self, memory_store):
        entry_id = memory_store.append_entry(_entry())
        with pytest.raises(ValueError):
            memory_store.store_vector(entry_id, b"\x00" * 10, "hash", "h")

    def test_stale_vector_not_stored(self, memory_store):
        entry_id = memory_store.append_entry(_entry("old text"))
        vector = quantize_embedding(HashEmbeddingBackend().embed_one("old text"))
        memory_store.update_entry(entry_id, content="new text")

        assert not memory_store.store_vector(
            entry_id, vector, "hash", "h", expected_content="old text"
        )
        assert memory_store.get_vectors() == {}
        assert memory_store.store_vector(entry_id, vector, "hash", "h", expected_content="new text")
        assert memory_store.get_vectors() == {entry_id: vector}

    def test_vector_for_missing_entry_not_stored(self, memory_store):
        vector = quantize_embedding(HashEmbeddingBackend().embed_one("gone"))
        assert not memory_store.store_vector(999, vector, "hash", "h", expected_content="gone")
        assert memory_store.vector_count() == 0

    def test_vectors_filtered_by_model(self, memory_store):
        first = memory_store.append_entry(_entry("one"))
        second = memory_store.append_entry(_entry("two"))
        backend = HashEmbeddingBackend()
        memory_store.store_vector(first, quantize_embedding(backend.embed_one("one")), "hash", "h1")
        memory_store.store_vector(
            second, quantize_embedding(backend.embed_one("two")), "all-MiniLM-L6-v2", "h2"
        )

        assert set(memory_store.get_vectors(model="hash")) == {first}
        assert set(memory_store.get_vectors([first, second], model="all-MiniLM-L6-v2")) == {second}
        assert set(memory_store.get_vectors([first, second])) == {first, second}

    def test_token_metrics(self, memory_store):
        memory_store.record_token_metric(
            TokenMetric("2025-01-10T00:00:00.000Z", "model-a", 100, 50, ContextStatus.HEALTHY)
        )
        memory_store.record_token_metric(
            TokenMetric("2025-01-20T00:00:00.000Z", "model-a", 200, 10, ContextStatus.WARNING)
        )

        metrics = memory_store.query_token_metrics(since="2025-01-15T00:00:00.000Z")

        assert len(metrics) == 1
        assert metrics[0].total_tokens == 210
        assert metrics[0].context_status is ContextStatus.WARNING

    def test_query_metrics(self, memory_store):
        memory_store.record_query_metric(QueryMetric("2025-01-10T00:00:00.000Z", "select", 12.5, 3))
        memory_store.record_query_metric(QueryMetric("2025-01-11T00:00:00.000Z", "search", 4.0, 1))

        assert [m.operation for m in memory_store.query_query_metrics()] == ["select", "search"]
        assert memory_store.query_query_metrics(operation="select")[0].elapsed_ms == 12.5

    def test_db_size(self, file_store):
        assert file_store.db_size_bytes() > 0


@pytest.mark.integration
class TestTransactions:
    def test_run_in_transaction_rolls_back(self, memory_store):
        def write_then_fail(store):
            store.append_entry(_entry("inside"))
            raise RuntimeError("abort")

        with pytest.raises(RuntimeError):
            memory_store.run_in_transaction(write_then_fail)
        assert memory_store.query_by_type("DECISION").count == 0

    def test_transaction_commits(self, memory_store):
        with memory_store.transaction() as store:
            store.append_entry(_entry("a"))
            store.append_entry(_entry("b"))
        assert memory_store.query_by_type("DECISION").count == 2
