"""Core memory service - composition root and memory-bank operations.

MemoryService builds and owns every collaborator (store, embeddings, scorer,
selector, token counter, metrics and thread pool). Nothing is shared between
instances, so two services never see each other's state.
"""

from __future__ import annotations

import re
import threading
import time
from concurrent.futures import Future, wait
from datetime import datetime
from typing import Any, Callable, Mapping

from ..errors import (
    EntryNotFoundError,
    StorageError,
    StoreInactiveError,
    ValidationError,
)
from ..memory.embeddings import (
    EmbeddingService,
    content_hash,
    create_embedding_backend,
    quantize_embedding,
)
from ..memory.formatter import ContextFormatter
from ..memory.models import (
    EntryMetadata,
    EntryRevision,
    FileType,
    MemoryEntry,
    Phase,
    ProgressStatus,
    QueryResult,
    TokenMetric,
    utc_now,
)
from ..memory.scorer import RelevanceScorer
from ..memory.selector import ContextSelector, SelectionOptions, SelectionResult
from ..memory.tokens import ContextBudget, TokenCounter, context_budget, create_token_counter
from ..memory.vector_index import DuplicatePair, VectorIndex
from ..persistence.locking import CancellationToken
from ..persistence.migrations import latest_version
from ..persistence.store import MemoryStore
from ..persistence.validation import EntryValidator, ValidationRules, sanitize_content
from .config import MemoryConfig
from .executor import BlockingExecutor
from .logging import get_logger
from .metrics import MetricsCollector, MetricsRecorder
from .retry import RetryConfig, acall_with_retry, call_with_retry

logger = get_logger(__name__)

PROGRESS_LINE = re.compile(r"^(Done|Doing|Next)\s*:\s*-?\s*\[(x|X|\s)\]\s*(.+)$")

_PROGRESS_FORMS: dict[str, tuple[str, str, ProgressStatus]] = {
    "done": ("Done", "x", ProgressStatus.DONE),
    "doing": ("Doing", " ", ProgressStatus.IN_PROGRESS),
    "next": ("Next", " ", ProgressStatus.DRAFT),
}

_UNSET: Any = object()

MetadataInput = EntryMetadata | Mapping[str, Any] | None


def _coerce_metadata(metadata: MetadataInput) -> EntryMetadata | None:
    if metadata is None:
        return None
    meta = metadata if isinstance(metadata, EntryMetadata) else EntryMetadata.from_dict(metadata)
    return None if meta.is_empty() else meta


class MemoryService:
    """Memory bank operations over one store.

    Example:
        service = MemoryService(MemoryConfig(db_path="AI-Memory/memory.db"))
        service.open()
        service.log_decision("Use SQLite", "Zero-config, embedded")
        result = service.select_context("sqlite storage", token_budget=2000)
        print(result.text)
        service.close()
    """

    def __init__(
        self,
        config: MemoryConfig | None = None,
        *,
        store: MemoryStore | None = None,
        embeddings: EmbeddingService | None = None,
        scorer: RelevanceScorer | None = None,
        formatter: ContextFormatter | None = None,
        token_counter: TokenCounter | None = None,
        metrics: MetricsCollector | None = None,
        executor: BlockingExecutor | None = None,
        retry: RetryConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.config = config or MemoryConfig()
        self._clock = clock

        self.executor = executor or BlockingExecutor(self.config.max_workers)
        self.store = store or MemoryStore(
            backend=self.config.storage_backend.value,
            validator=EntryValidator(
                ValidationRules(max_content_length=self.config.max_content_length)
            ),
        )
        self.embeddings = embeddings or EmbeddingService(
            create_embedding_backend(
                self.config.embedding_provider.value, self.config.embedding_model
            ),
            batch_size=self.config.embedding_batch_size,
        )
        self.scorer = scorer or RelevanceScorer(clock=clock)
        self.formatter = formatter or ContextFormatter()
        self.token_counter = token_counter or create_token_counter(self.config.token_counter.value)
        self.metrics = metrics or MetricsCollector()
        self.recorder = MetricsRecorder(self.store, self.config.context_window, clock)
        self.selector = ContextSelector(
            self.store,
            scorer=self.scorer,
            formatter=self.formatter,
            embeddings=self.embeddings,
            weights=self.config.blend_weights,
            clock=clock,
        )
        self.retry = retry or RetryConfig()

        self._pending: set[Future] = set()
        self._pending_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open(self) -> bool:
        """Open the store and apply pending migrations.

        Returns:
            True when the store is active. False when it could not be opened,
            with the reason in `state()`.

        Raises:
            MigrationError: A migration failed and was rolled back.
        """
        if self.store.init(self.config.db_path):
            counts = self.store.get_entry_counts()
            self.metrics.entries_total = sum(counts.values())
            self.metrics.vectors_total = self.store.vector_count()
            logger.info(
                "memory_bank_opened",
                db_path=self.config.db_path,
                engine=self.store.engine_name,
                entries=self.metrics.entries_total,
            )
            if not self.embeddings.ready:
                self._track(self.executor.pool.submit(self.embeddings.initialize))
            return True

        migration = self.store.last_migration
        if migration is not None and not migration.success:
            migration.raise_for_error()
        logger.error(
            "memory_bank_unavailable",
            db_path=self.config.db_path,
            reason=self.store.inactive_reason,
        )
        return False

    def close(self) -> None:
        self.wait_for_indexing()
        self.executor.shutdown()
        self.store.close()

    def __enter__(self) -> "MemoryService":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def state(self) -> dict[str, Any]:
        active = self.store.is_active
        return {
            "active": active,
            "db_path": self.config.db_path,
            "engine": self.store.engine_name,
            "schema_version": self.store.schema_version if active else None,
            "latest_schema_version": latest_version(self.store.migrations),
            "inactive_reason": self.store.inactive_reason,
        }

    def _today(self) -> str:
        return self._clock().strftime("%Y-%m-%d")

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def append(
        self,
        file_type: FileType | str,
        content: str,
        metadata: MetadataInput = None,
    ) -> MemoryEntry:
        """Sanitize, validate and store a new entry.

        Transient storage errors are retried. The entry's vector is computed
        in the background when `embed_on_write` is set.

        Raises:
            ValidationError: The entry was rejected.
            StorageError: The store failed. Nothing was written.
        """
        try:
            entry = MemoryEntry.create(
                file_type,
                sanitize_content(content),
                metadata=_coerce_metadata(metadata),
                now=self._clock(),
            )
        except ValueError as exc:
            self.metrics.validation_failures += 1
            if isinstance(exc, ValidationError):
                raise
            raise ValidationError([f"Unknown entry type '{file_type}'"]) from exc

        try:
            entry_id = call_with_retry(self.store.append_entry, entry, config=self.retry)
        except ValidationError:
            self.metrics.validation_failures += 1
            raise
        except StorageError as exc:
            self.metrics.record_storage_error(exc.kind.value)
            raise

        stored = entry.with_id(entry_id)
        self.metrics.record_append(stored.file_type.value)
        logger.info("entry_appended", entry_id=entry_id, tag=stored.tag)
        if self.config.embed_on_write:
            self._schedule_indexing(stored)
        return stored

    def log_decision(self, decision: str, rationale: str = "") -> MemoryEntry:
        return self.append(FileType.DECISION, f"| {self._today()} | {decision} | {rationale} |")

    def update_context(self, text: str, metadata: MetadataInput = None) -> MemoryEntry:
        return self.append(FileType.CONTEXT, text, metadata)

    def update_progress(self, item: str, status: str = "doing") -> MemoryEntry:
        """Record a task as done, doing or next."""
        try:
            label, mark, progress = _PROGRESS_FORMS[status.lower()]
        except KeyError:
            raise ValidationError(
                [f"Unknown progress status '{status}', expected done, doing or next"]
            ) from None
        return self.append(
            FileType.PROGRESS,
            f"{label}: - [{mark}] {item}",
            EntryMetadata(progress_status=progress),
        )

    def update_patterns(self, pattern: str, description: str) -> MemoryEntry:
        return self.append(FileType.PATTERN, f"{pattern}: {description}")

    def update_brief(self, text: str) -> MemoryEntry:
        return self.append(FileType.BRIEF, text)

    def mark_deprecated(self, item: str, reason: str) -> MemoryEntry:
        return self.append(
            FileType.DEPRECATED,
            f"DEPRECATED: {item}\nReason: {reason}",
            EntryMetadata(progress_status=ProgressStatus.DEPRECATED),
        )

    def mark_superseded(self, old: str, new: str, reason: str = "") -> MemoryEntry:
        lines = [f"SUPERSEDED: {old}", f"Replaced by: {new}"]
        if reason:
            lines.append(f"Reason: {reason}")
        return self.append(FileType.SUPERSEDED, "\n".join(lines))

    def edit_entry(
        self,
        entry_id: int,
        content: str | None = None,
        metadata: MetadataInput = _UNSET,
    ) -> MemoryEntry:
        """Replace an entry's content or metadata. The old state is kept in history."""
        kwargs: dict[str, Any] = {}
        if content is not None:
            kwargs["content"] = sanitize_content(content)
        if metadata is not _UNSET:
            kwargs["metadata"] = _coerce_metadata(metadata)
        updated = call_with_retry(self.store.update_entry, entry_id, config=self.retry, **kwargs)
        logger.info("entry_edited", entry_id=entry_id)
        if self.config.embed_on_write:
            self._schedule_indexing(updated)
        return updated

    def append_to_entry(self, entry_id: int, text: str) -> MemoryEntry:
        current = self.get_entry(entry_id)
        addition = f"\n\n---\n\n**[Updated {self._today()}]** {sanitize_content(text)}"
        return self.edit_entry(entry_id, current.content + addition)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_entry(self, entry_id: int) -> MemoryEntry:
        entry = self.store.get_entry(entry_id)
        if entry is None:
            raise EntryNotFoundError(f"No entry with id {entry_id}")
        return entry

    def query(self, file_type: FileType | str, limit: int = 50) -> QueryResult:
        return self.store.query_by_type(file_type, limit)

    def search(self, text: str, limit: int = 20) -> list[MemoryEntry]:
        return self.store.full_text_search(text, limit)

    def entry_history(self, entry_id: int) -> list[EntryRevision]:
        self.get_entry(entry_id)
        return self.store.get_entry_history(entry_id)

    def entry_counts(self) -> dict[str, int]:
        return {t.value: n for t, n in self.store.get_entry_counts().items()}

    def query_by_phase(self, phase: Phase | str) -> dict[str, list[MemoryEntry]]:
        """Entries of one phase, grouped by progress status."""
        groups: dict[str, list[MemoryEntry]] = {
            "done": [],
            "in_progress": [],
            "draft": [],
            "other": [],
        }
        for entry in self.store.query_by_phase(phase):
            status = entry.progress_status
            if status is ProgressStatus.DONE:
                groups["done"].append(entry)
            elif status is ProgressStatus.IN_PROGRESS:
                groups["in_progress"].append(entry)
            elif status is ProgressStatus.DRAFT:
                groups["draft"].append(entry)
            else:
                groups["other"].append(entry)
        return groups

    def progress_summary(self, limit: int = 100) -> dict[str, list[str]]:
        """Task lines from recent PROGRESS entries, bucketed done/doing/next."""
        buckets: dict[str, list[str]] = {"done": [], "doing": [], "next": []}
        for entry in self.store.query_by_type(FileType.PROGRESS, limit).entries:
            for line in entry.content.splitlines():
                match = PROGRESS_LINE.match(line.strip())
                if match:
                    buckets[match.group(1).lower()].append(match.group(3).strip())
        return buckets

    # ------------------------------------------------------------------
    # Retrieval
    # ------------------------------------------------------------------

    def default_selection_options(self, **overrides: Any) -> SelectionOptions:
        values: dict[str, Any] = {
            "min_relevance_threshold": self.config.min_relevance_threshold,
            "max_age_days": self.config.max_age_days,
        }
        values.update(overrides)
        return SelectionOptions(**values)

    def select_context(
        self,
        query: str,
        token_budget: int | None = None,
        options: SelectionOptions | None = None,
        cancel: CancellationToken | None = None,
    ) -> SelectionResult:
        """Pick the entries most worth including for `query` under a token budget."""
        budget = self.config.default_token_budget if token_budget is None else token_budget
        options = options or self.default_selection_options()

        start = time.perf_counter()
        result = self.selector.select(query, budget, options, cancel)
        elapsed = time.perf_counter() - start

        self.metrics.record_selection(elapsed)
        try:
            self.recorder.record_query("select_context", elapsed * 1000, result.selected_count)
        except StorageError as exc:
            self.metrics.record_storage_error(exc.kind.value)
            logger.warning("query_metric_not_recorded", error=str(exc))
        logger.info(
            "context_selected",
            selected=result.selected_count,
            candidates=result.total_count,
            tokens_used=result.tokens_used,
            budget=budget,
            semantic=result.semantic,
        )
        return result

    def report_token_usage(self, model: str, input_tokens: int, output_tokens: int) -> TokenMetric:
        return self.recorder.record_tokens(model, input_tokens, output_tokens)

    def count_tokens(self, text: str) -> int:
        return self.token_counter.count(text)

    def context_budget(self, used_tokens: int, context_window: int | None = None) -> ContextBudget:
        return context_budget(used_tokens, context_window or self.config.context_window)

    # ------------------------------------------------------------------
    # Embeddings
    # ------------------------------------------------------------------

    def _index_entry(self, entry: MemoryEntry) -> bool:
        """Embed one entry and store its quantized vector.

        Skips the write when the entry changed while it was being embedded.
        """
        start = time.perf_counter()
        vector = self.embeddings.embed(entry.content)
        self.metrics.record_embedding(time.perf_counter() - start)

        stored = self.store.store_vector(
            entry.id,
            quantize_embedding(vector),
            self.embeddings.model_name,
            content_hash(entry.content),
            expected_content=entry.content,
        )
        if stored:
            self.metrics.vectors_total += 1
        else:
            logger.debug("stale_embedding_dropped", entry_id=entry.id)
        return stored

    def _index_in_background(self, entry: MemoryEntry) -> None:
        try:
            self._index_entry(entry)
        except StorageError as exc:
            self.metrics.record_storage_error(exc.kind.value)
            logger.warning("entry_not_indexed", entry_id=entry.id, error=str(exc))
        except Exception as exc:
            self.metrics.indexing_failures += 1
            logger.error("entry_indexing_failed", entry_id=entry.id, error=str(exc), exc_info=True)

    def _schedule_indexing(self, entry: MemoryEntry) -> None:
        self._track(self.executor.pool.submit(self._index_in_background, entry))

    def _track(self, future: Future) -> None:
        with self._pending_lock:
            self._pending.add(future)
        future.add_done_callback(self._forget_future)

    def _forget_future(self, future: Future) -> None:
        with self._pending_lock:
            self._pending.discard(future)

    def wait_for_indexing(self, timeout: float | None = None) -> None:
        """Block until background embedding work submitted so far has finished."""
        with self._pending_lock:
            pending = list(self._pending)
        if pending:
            wait(pending, timeout=timeout)

    def index_missing_embeddings(self, limit: int = 100) -> int:
        """Compute vectors for entries that lack one. Returns how many were stored."""
        entries = self.store.entries_missing_vectors(limit)
        if not entries:
            return 0
        start = time.perf_counter()
        vectors = self.embeddings.embed_batch([e.content for e in entries])
        self.metrics.record_embedding(time.perf_counter() - start)
        return self._store_vectors(entries, vectors)

    async def aindex_missing_embeddings(self, limit: int = 100) -> int:
        entries = await self.executor.run(self.store.entries_missing_vectors, limit)
        if not entries:
            return 0
        vectors = await self.embeddings.aembed_batch([e.content for e in entries])
        return await acall_with_retry(
            self.executor.run, self._store_vectors, entries, vectors, config=self.retry
        )

    def _store_vectors(self, entries: list[MemoryEntry], vectors: list[list[float]]) -> int:
        model = self.embeddings.model_name
        stored = 0
        for entry, vector in zip(entries, vectors):
            if self.store.store_vector(
                entry.id,
                quantize_embedding(vector),
                model,
                content_hash(entry.content),
                expected_content=entry.content,
            ):
                stored += 1
        self.metrics.vectors_total += stored
        logger.info("embeddings_indexed", count=stored, model=model)
        return stored

    def find_duplicates(self, threshold: float = 0.95) -> list[DuplicatePair]:
        """Entry pairs whose stored vectors are at least `threshold` similar.

        Only vectors from the active embedding model are compared.
        """
        vectors = self.store.get_vectors(model=self.embeddings.model_name)
        return VectorIndex(vectors).find_duplicates(threshold)

    # ------------------------------------------------------------------
    # Dashboard
    # ------------------------------------------------------------------

    def dashboard(self, latest_per_type: int = 5, days: int = 7) -> dict[str, Any]:
        """Snapshot for the presentation layer."""
        if not self.store.is_active:
            raise StoreInactiveError(
                f"store is not active: {self.store.inactive_reason or 'not initialized'}"
            )
        counts = self.store.get_entry_counts()
        latest = {
            t.value: [e.to_dict() for e in self.store.query_by_type(t, latest_per_type).entries]
            for t in FileType
        }
        return {
            "state": self.state(),
            "entry_counts": {t.value: n for t, n in counts.items()},
            "total_entries": sum(counts.values()),
            "latest": latest,
            "progress": self.progress_summary(),
            "db_size_bytes": self.store.db_size_bytes(),
            "vector_count": self.store.vector_count(),
            "embeddings": self.embeddings.info(),
            "metrics": self.recorder.summary(days),
        }


__all__ = ["MemoryService", "PROGRESS_LINE"]
