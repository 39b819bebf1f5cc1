"""Budgeted context selection.

Given a query and a token budget, the selector:

1. Loads candidate entries (optionally filtered by type and age).
2. Scores them with the relevance scorer.
3. Optionally blends in semantic similarity from stored vectors.
4. Drops entries under the relevance threshold.
5. Ranks by score, keeping input order for ties.
6. Accepts entries greedily until the next one does not fit the budget.

The packing is a greedy heuristic, not an optimal knapsack: it stops at the
first entry that does not fit and never looks ahead for smaller ones.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable, Iterable, Mapping, Sequence, TypeVar

from .embeddings import EmbeddingService, quantize_embedding
from .formatter import ContextFormatter, FormattedEntry
from .models import FileType, MemoryEntry, coerce_types, utc_now
from .scorer import DEFAULT_THRESHOLD, RelevanceScorer, ScoredEntry, ScoringOptions
from .tokens import estimate_tokens
from .vector_index import VectorIndex

if TYPE_CHECKING:
    from ..persistence.locking import CancellationToken
    from ..persistence.store import MemoryStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_AGE_DAYS = 90


@dataclass(frozen=True)
class BlendWeights:
    """How keyword and semantic scores combine.

    `neutral_semantic` stands in for entries that have no stored vector.
    """

    keyword: float = 0.6
    semantic: float = 0.4
    neutral_semantic: float = 0.5

    def __post_init__(self) -> None:
        if self.keyword < 0 or self.semantic < 0:
            raise ValueError("blend weights must be non-negative")
        if not 0.0 <= self.neutral_semantic <= 1.0:
            raise ValueError("neutral semantic score must be within [0, 1]")


@dataclass(frozen=True)
class SelectionOptions:
    min_relevance_threshold: float = DEFAULT_THRESHOLD
    include_types: tuple[FileType, ...] | None = None
    max_age_days: int | None = DEFAULT_MAX_AGE_DAYS
    use_semantic_search: bool = False

    def __post_init__(self) -> None:
        if self.include_types is not None:
            object.__setattr__(self, "include_types", coerce_types(self.include_types))


@dataclass
class SelectionResult:
    """Entries chosen for a query, in acceptance order."""

    entries: list[MemoryEntry]
    scored: list[ScoredEntry]
    text: str
    tokens_used: int
    token_budget: int
    total_count: int
    semantic: bool = False
    costs: list[int] = field(default_factory=list)

    @classmethod
    def empty(cls, token_budget: int) -> "SelectionResult":
        return cls(entries=[], scored=[], text="", tokens_used=0, token_budget=token_budget, total_count=0)

    @property
    def selected_count(self) -> int:
        return len(self.entries)

    @property
    def entry_coverage(self) -> float:
        return self.selected_count / self.total_count if self.total_count else 0.0

    @property
    def budget_coverage(self) -> float:
        return self.tokens_used / self.token_budget if self.token_budget else 0.0

    @property
    def coverage(self) -> str:
        return (
            f"{self.selected_count}/{self.total_count} entries, "
            f"{self.tokens_used}/{self.token_budget} tokens"
        )


def pack_greedy(
    ranked: Iterable[T], token_budget: int, cost: Callable[[T], int]
) -> tuple[list[T], list[int]]:
    """Accept items in order while they fit, stopping at the first that does not.

    Returns:
        The accepted items and the cost of each.
    """
    accepted: list[T] = []
    costs: list[int] = []
    used = 0
    for item in ranked:
        item_cost = cost(item)
        if used + item_cost > token_budget:
            break
        accepted.append(item)
        costs.append(item_cost)
        used += item_cost
    return accepted, costs


class ContextSelector:
    """Chooses the entries most worth including under a token budget."""

    def __init__(
        self,
        store: "MemoryStore",
        scorer: RelevanceScorer | None = None,
        formatter: ContextFormatter | None = None,
        embeddings: EmbeddingService | None = None,
        weights: BlendWeights | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.scorer = scorer or RelevanceScorer(clock=clock)
        self.formatter = formatter or ContextFormatter()
        self.embeddings = embeddings
        self.weights = weights or BlendWeights()
        self._clock = clock

    def load_candidates(
        self,
        options: SelectionOptions,
        now: datetime,
        cancel: "CancellationToken | None" = None,
    ) -> list[MemoryEntry]:
        since = None
        if options.max_age_days is not None:
            since = now - timedelta(days=options.max_age_days)
        return self.store.scan_entries(types=options.include_types, since=since, cancel=cancel)

    def semantic_scores(
        self, query: str, candidates: Sequence[MemoryEntry]
    ) -> dict[int, float] | None:
        """Normalized similarity in [0, 1] for candidates that have a vector.

        Compares sign bits only, so this is a coarse proxy for semantic
        similarity. Only vectors from the active embedding model count.

        Returns:
            None when semantic scoring is unavailable: no embeddings, a model
            still loading, or a primary model that has fallen back to hash
            embeddings. Callers then rank by keywords alone.
        """
        embeddings = self.embeddings
        if embeddings is None:
            return None
        if embeddings.degraded or not embeddings.ready:
            logger.debug("Embedding model not usable for this query, keyword scoring only")
            return None
        ids = [c.id for c in candidates if c.id is not None]
        vectors = self.store.get_vectors(ids, model=embeddings.model_name)
        if not vectors:
            return {}
        query_vector = embeddings.embed(query)
        if embeddings.degraded:
            return None
        index = VectorIndex(vectors)
        similarities = index.similarities(quantize_embedding(query_vector))
        return {eid: (sim + 1.0) / 2.0 for eid, sim in similarities.items()}

    def blend(
        self, scored: Sequence[ScoredEntry], semantic: Mapping[int, float]
    ) -> list[ScoredEntry]:
        w = self.weights
        blended = []
        for item in scored:
            similarity = semantic.get(item.entry.id) if item.entry.id is not None else None
            value = w.neutral_semantic if similarity is None else similarity
            blended.append(
                replace(
                    item,
                    final_score=w.keyword * item.final_score + w.semantic * value,
                    semantic_score=similarity,
                )
            )
        return blended

    def select(
        self,
        query: str,
        token_budget: int,
        options: SelectionOptions | None = None,
        cancel: "CancellationToken | None" = None,
    ) -> SelectionResult:
        """Select entries for `query` within `token_budget` estimated tokens.

        Raises:
            ValueError: `token_budget` is negative.
            ScanCancelledError: `cancel` fired while candidates were loading.
        """
        if token_budget < 0:
            raise ValueError("token_budget must be non-negative")
        options = options or SelectionOptions()
        now = self._clock()

        candidates = self.load_candidates(options, now, cancel)
        if not candidates:
            return SelectionResult.empty(token_budget)

        scored = self.scorer.score_entries(candidates, query, ScoringOptions(now=now))
        semantic = False
        if options.use_semantic_search:
            if self.embeddings is None:
                logger.debug("Semantic search requested without embeddings, keyword scoring only")
            else:
                similarities = self.semantic_scores(query, candidates)
                if similarities is not None:
                    scored = self.blend(scored, similarities)
                    semantic = True

        kept = self.scorer.filter_by_threshold(scored, options.min_relevance_threshold)
        ranked = self.scorer.rank_entries(kept)
        pairs: list[tuple[ScoredEntry, FormattedEntry]] = [
            (s, self.formatter.format_entry(s.entry)) for s in ranked
        ]
        accepted, costs = pack_greedy(
            pairs, token_budget, lambda pair: estimate_tokens(pair[1].formatted)
        )

        result = SelectionResult(
            entries=[s.entry for s, _ in accepted],
            scored=[s for s, _ in accepted],
            text="\n".join(f.formatted for _, f in accepted),
            tokens_used=sum(costs),
            token_budget=token_budget,
            total_count=len(candidates),
            semantic=semantic,
            costs=costs,
        )
        logger.debug(f"Selected {result.coverage} for query {query!r}")
        return result


__all__ = [
    "DEFAULT_MAX_AGE_DAYS",
    "BlendWeights",
    "SelectionOptions",
    "SelectionResult",
    "pack_greedy",
    "ContextSelector",
]
