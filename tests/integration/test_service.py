"""Integration tests for MemoryService, the composition root."""

import pytest

from ai_memory.errors import EntryNotFoundError, MigrationError, ValidationError
from ai_memory.memory.embeddings import EmbeddingBackend, EmbeddingService, HashEmbeddingBackend
from ai_memory.memory.models import EntryMetadata, FileType, Phase, ProgressStatus
from ai_memory.persistence.migrations import MIGRATIONS, Migration, latest_version
from ai_memory.persistence.store import MemoryStore
from ai_memory.service.config import MemoryConfig
from ai_memory.service.core import MemoryService


class LazyBackend(EmbeddingBackend):
    """Hash embeddings behind a load step that must run first."""

    name = "lazy"

    def __init__(self):
        self.inner = HashEmbeddingBackend()
        self.load_calls = 0
        self._loaded = False

    @property
    def loaded(self):
        return self._loaded

    def load(self):
        self.load_calls += 1
        self._loaded = True

    def embed_sync(self, texts):
        return self.inner.embed_sync(texts)


class ShortVectorBackend(EmbeddingBackend):
    """Returns vectors of the wrong width."""

    name = "short"

    def embed_sync(self, texts):
        return [[0.5] * 8 for _ in texts]


@pytest.mark.integration
class TestWrites:
    """Tests for the memory-bank write operations."""

    def test_append_returns_stored_entry(self, service):
        entry = service.append("CONTEXT", "  Working on the selector  ")
        assert entry.id is not None
        assert entry.file_type is FileType.CONTEXT
        assert entry.content == "Working on the selector"
        assert service.get_entry(entry.id) == entry

    def test_append_rejects_unknown_type(self, service):
        with pytest.raises(ValidationError) as exc_info:
            service.append("NOTES", "text")
        assert exc_info.value.errors == ["Unknown entry type 'NOTES'"]
        assert service.metrics.validation_failures == 1

    def test_append_rejects_empty_content(self, service):
        with pytest.raises(ValidationError):
            service.append(FileType.DECISION, "\x00\n\n")

    def test_log_decision(self, service):
        entry = service.log_decision("Use SQLite", "Zero-config, embedded")
        assert entry.file_type is FileType.DECISION
        assert entry.content.startswith("| ")
        assert entry.content.endswith("| Use SQLite | Zero-config, embedded |")

    def test_update_progress(self, service):
        done = service.update_progress("Write migrations", "done")
        doing = service.update_progress("Write selector", "doing")
        nxt = service.update_progress("Write docs", "next")

        assert done.content == "Done: - [x] Write migrations"
        assert doing.content == "Doing: - [ ] Write selector"
        assert nxt.content == "Next: - [ ] Write docs"
        assert done.progress_status is ProgressStatus.DONE
        assert doing.progress_status is ProgressStatus.IN_PROGRESS

        summary = service.progress_summary()
        assert summary == {
            "done": ["Write migrations"],
            "doing": ["Write selector"],
            "next": ["Write docs"],
        }

    def test_update_progress_rejects_unknown_status(self, service):
        with pytest.raises(ValidationError):
            service.update_progress("x", "someday")

    def test_patterns_and_brief(self, service):
        assert service.update_patterns("Repository", "One gateway per store").content == (
            "Repository: One gateway per store"
        )
        assert service.update_brief("Memory bank").file_type is FileType.BRIEF

    def test_deprecation_markers(self, service):
        deprecated = service.mark_deprecated("JSON files", "Replaced by SQLite")
        superseded = service.mark_superseded("v1 scorer", "v2 scorer")

        assert deprecated.content == "DEPRECATED: JSON files\nReason: Replaced by SQLite"
        assert deprecated.file_type is FileType.DEPRECATED
        assert superseded.content == "SUPERSEDED: v1 scorer\nReplaced by: v2 scorer"
        assert superseded.file_type is FileType.SUPERSEDED

    def test_edit_and_append_to_entry(self, service):
        entry = service.update_context("First draft")

        edited = service.edit_entry(entry.id, "Second draft")
        assert edited.content == "Second draft"
        assert edited.timestamp == entry.timestamp

        appended = service.append_to_entry(entry.id, "More detail")
        assert appended.content.startswith("Second draft\n\n---\n\n**[Updated ")
        assert appended.content.endswith("** More detail")

        history = service.entry_history(entry.id)
        assert [h.content for h in history] == ["First draft", "Second draft"]

    def test_missing_entry(self, service):
        with pytest.raises(EntryNotFoundError):
            service.get_entry(12345)
        with pytest.raises(EntryNotFoundError):
            service.append_to_entry(12345, "text")

    def test_query_by_phase_groups_status(self, service):
        service.append("PROGRESS", "a", {"phase": "execution", "progress_status": "done"})
        service.append(
            "PROGRESS",
            "b",
            EntryMetadata(phase=Phase.EXECUTION, progress_status=ProgressStatus.DRAFT),
        )
        service.append("PROGRESS", "c", {"phase": "execution"})
        service.append("PROGRESS", "d", {"phase": "planning", "progress_status": "done"})

        groups = service.query_by_phase("execution")

        assert [e.content for e in groups["done"]] == ["a"]
        assert [e.content for e in groups["draft"]] == ["b"]
        assert [e.content for e in groups["other"]] == ["c"]
        assert groups["in_progress"] == []


@pytest.mark.integration
class TestRetrieval:
    """Tests for context selection through the service."""

    def test_select_context(self, service):
        service.log_decision("Use SQLite for storage", "Embedded and zero-config")
        service.update_patterns("Retry", "Retry transient storage errors")
        service.update_context("Unrelated note about the weather")

        result = service.select_context("sqlite storage", token_budget=1000)

        assert result.selected_count == 2
        assert result.total_count == 3
        assert "Use SQLite" in result.text
        assert result.tokens_used <= 1000
        assert service.recorder.average_query_time("select_context") >= 0.0
        assert len(service.store.query_query_metrics(operation="select_context")) == 1

    def test_default_budget(self, service):
        service.log_decision("Use SQLite", "")
        result = service.select_context("sqlite")
        assert result.token_budget == service.config.default_token_budget

    def test_zero_budget_selects_nothing(self, service):
        service.log_decision("Use SQLite", "")
        assert service.select_context("sqlite", token_budget=0).entries == []

    def test_semantic_selection_uses_indexed_vectors(self, service):
        entry = service.log_decision("Use SQLite", "")
        service.wait_for_indexing(timeout=10)
        assert service.store.get_vectors([entry.id])

        options = service.default_selection_options(use_semantic_search=True)
        result = service.select_context("sqlite", 1000, options)
        assert result.semantic
        assert result.scored[0].semantic_score is not None

    def test_index_missing_embeddings(self, config):
        config.embed_on_write = False
        svc = MemoryService(config, embeddings=EmbeddingService(HashEmbeddingBackend(), batch_size=2))
        assert svc.open()
        try:
            for i in range(5):
                svc.update_context(f"note {i}")
            assert svc.store.vector_count() == 0

            assert svc.index_missing_embeddings() == 5
            assert svc.store.vector_count() == 5
            assert svc.index_missing_embeddings() == 0
        finally:
            svc.close()

    @pytest.mark.asyncio
    async def test_async_indexing(self, config):
        config.embed_on_write = False
        svc = MemoryService(config, embeddings=EmbeddingService(HashEmbeddingBackend()))
        assert svc.open()
        try:
            svc.update_context("async note")
            assert await svc.aindex_missing_embeddings() == 1
            assert svc.store.vector_count() == 1
        finally:
            svc.close()

    def test_edited_entry_keeps_no_stale_vector(self, config):
        config.embed_on_write = False
        svc = MemoryService(config, embeddings=EmbeddingService(HashEmbeddingBackend()))
        assert svc.open()
        try:
            original = svc.update_context("first draft")
            svc.edit_entry(original.id, "second draft")

            assert svc._index_entry(original) is False
            assert svc.store.vector_count() == 0
            assert svc.metrics.vectors_total == 0
        finally:
            svc.close()

    def test_background_indexing_failure_is_counted(self, config):
        svc = MemoryService(config, embeddings=EmbeddingService(ShortVectorBackend()))
        assert svc.open()
        try:
            svc.update_context("cannot be embedded")
            svc.wait_for_indexing(timeout=10)

            assert svc.metrics.indexing_failures == 1
            assert svc.store.vector_count() == 0
            assert "ai_memory_indexing_failures_total 1" in svc.metrics.export_prometheus()
        finally:
            svc.close()

    def test_find_duplicates(self, service):
        first = service.update_context("Same text")
        second = service.update_context("Same text")
        service.update_context("Different text")
        service.wait_for_indexing(timeout=10)

        pairs = service.find_duplicates()
        assert [(p.first_id, p.second_id) for p in pairs] == [(first.id, second.id)]


@pytest.mark.integration
class TestReporting:
    def test_token_usage(self, service):
        metric = service.report_token_usage("model-a", 1000, 200)
        assert metric.total_tokens == 1200
        assert service.recorder.average_token_usage() == 1200

    def test_count_tokens_uses_configured_counter(self, service):
        assert service.count_tokens("abcdefgh") == 2

    def test_context_budget(self, service):
        assert service.context_budget(0).total == 160_000

    def test_dashboard(self, service):
        service.log_decision("Use SQLite", "")
        service.update_progress("Ship it", "doing")

        dashboard = service.dashboard()

        assert dashboard["state"]["active"] is True
        assert dashboard["total_entries"] == 2
        assert dashboard["entry_counts"]["DECISION"] == 1
        assert len(dashboard["latest"]["PROGRESS"]) == 1
        assert dashboard["progress"]["doing"] == ["Ship it"]
        assert dashboard["embeddings"]["backend"] == "hash"
        assert dashboard["metrics"]["call_count"] == 0

    def test_state(self, service):
        state = service.state()
        assert state["active"]
        assert state["schema_version"] == latest_version()


@pytest.mark.integration
class TestLifecycle:
    def test_separate_services_are_isolated(self, tmp_path):
        def build(name):
            return MemoryService(
                MemoryConfig(db_path=str(tmp_path / name / "memory.db"), embed_on_write=False),
                embeddings=EmbeddingService(HashEmbeddingBackend()),
            )

        with build("a") as first, build("b") as second:
            first.log_decision("Only in a", "")
            assert second.entry_counts()["DECISION"] == 0
            assert first.metrics is not second.metrics

    def test_failed_migration_raises(self, config):
        broken = Migration(latest_version() + 1, "Broken", ("SELECT * FROM nowhere",))
        store = MemoryStore(migrations=MIGRATIONS + (broken,))
        svc = MemoryService(config, store=store, embeddings=EmbeddingService(HashEmbeddingBackend()))

        with pytest.raises(MigrationError) as exc_info:
            svc.open()
        assert exc_info.value.version == broken.version
        assert not svc.store.is_active
        svc.close()

    def test_open_loads_embedding_model_in_background(self, config):
        config.embed_on_write = False
        backend = LazyBackend()
        svc = MemoryService(config, embeddings=EmbeddingService(backend))
        assert not svc.embeddings.ready

        assert svc.open()
        try:
            svc.wait_for_indexing(timeout=10)
            assert backend.load_calls == 1
            assert svc.embeddings.ready
        finally:
            svc.close()

    def test_open_skips_loading_ready_model(self, service):
        service.wait_for_indexing(timeout=10)
        assert service.embeddings.info()["initialized"] is False
