"""Unit tests for token counting, budgets and formatting."""

import pytest

from ai_memory.memory.formatter import ContextFormatter, strip_whitespace
from ai_memory.memory.models import (
    ContextStatus,
    EntryMetadata,
    FileType,
    MemoryEntry,
    Phase,
    ProgressStatus,
)
from ai_memory.memory.tokens import (
    CachedTokenCounter,
    CharRatioCounter,
    TokenCounter,
    context_budget,
    create_token_counter,
    estimate_tokens,
)


class CountingCounter(TokenCounter):
    name = "counting"

    def __init__(self):
        self.calls = 0

    def count(self, text):
        self.calls += 1
        return len(text.split())


@pytest.mark.unit
class TestEstimateTokens:
    def test_empty(self):
        assert estimate_tokens("") == 0

    def test_rounds_up(self):
        assert estimate_tokens("abc") == 1
        assert estimate_tokens("abcd") == 1
        assert estimate_tokens("abcde") == 2

    def test_char_counter_matches_estimate(self):
        assert CharRatioCounter().count("x" * 401) == estimate_tokens("x" * 401) == 101


@pytest.mark.unit
class TestCachedTokenCounter:
    def test_cache_hits(self):
        inner = CountingCounter()
        counter = CachedTokenCounter(inner)
        assert counter.count("one two three") == 3
        assert counter.count("one two three") == 3
        assert inner.calls == 1
        assert (counter.hits, counter.misses) == (1, 1)

    def test_entries_expire(self):
        now = [0.0]
        inner = CountingCounter()
        counter = CachedTokenCounter(inner, ttl_seconds=10, clock=lambda: now[0])
        counter.count("a b")
        now[0] = 11.0
        counter.count("a b")
        assert inner.calls == 2

    def test_lru_eviction(self):
        inner = CountingCounter()
        counter = CachedTokenCounter(inner, max_entries=2)
        counter.count("a")
        counter.count("b")
        counter.count("c")
        counter.count("a")
        assert inner.calls == 4

    def test_factory(self):
        assert isinstance(create_token_counter("chars"), CharRatioCounter)
        assert isinstance(create_token_counter("tiktoken"), CachedTokenCounter)
        with pytest.raises(ValueError):
            create_token_counter("words")


@pytest.mark.unit
class TestContextBudget:
    """Tests for context window accounting with a 20% output reserve."""

    def test_healthy(self):
        budget = context_budget(10_000, 200_000)
        assert budget.total == 160_000
        assert budget.remaining == 150_000
        assert budget.status is ContextStatus.HEALTHY

    def test_warning(self):
        assert context_budget(120_000, 200_000).status is ContextStatus.WARNING

    def test_critical(self):
        budget = context_budget(155_000, 200_000)
        assert budget.status is ContextStatus.CRITICAL
        assert budget.recommendations

    def test_overrun_clamped(self):
        budget = context_budget(500_000, 200_000)
        assert budget.remaining == 0
        assert budget.percent_used == 100.0


@pytest.mark.unit
class TestContextFormatter:
    def _entry(self, content, metadata=None):
        return MemoryEntry(
            file_type=FileType.DECISION,
            timestamp="2025-01-15T00:00:00Z",
            tag="[DECISION:2025-01-15]",
            content=content,
            metadata=metadata,
        )

    def test_format_entry(self):
        formatted = ContextFormatter().format_entry(self._entry("Use SQLite\nIt is embedded."))
        assert formatted.title == "Use SQLite"
        assert formatted.formatted == (
            "[DECISION:2025-01-15] Use SQLite\n\nUse SQLite\nIt is embedded.\n\n---\n"
        )

    def test_metadata_line(self):
        meta = EntryMetadata(
            phase=Phase.EXECUTION,
            progress_status=ProgressStatus.DONE,
            targets=frozenset({"db", "ui"}),
        )
        formatted = ContextFormatter().format_entry(self._entry("Use SQLite", meta))
        assert "(phase: execution | status: done | targets: db, ui)" in formatted.formatted

    def test_metadata_can_be_hidden(self):
        meta = EntryMetadata(phase=Phase.EXECUTION)
        formatted = ContextFormatter(include_metadata=False).format_entry(self._entry("x", meta))
        assert "phase" not in formatted.formatted

    def test_strip_whitespace(self):
        assert strip_whitespace("\n\n  a  \n\n\n\nb\n  - item\n\n") == "a\n\nb\n  - item"

    def test_document_groups_by_type(self):
        brief = MemoryEntry(FileType.BRIEF, "2025-01-01T00:00:00Z", "[BRIEF:2025-01-01]", "Brief")
        decision = self._entry("Decision")
        document = ContextFormatter().format_as_document([decision, brief])
        assert document.index("Brief") < document.index("Decision")
