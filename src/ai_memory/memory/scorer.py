"""Multi-factor relevance scoring of entries against a query.

    final_score = keyword_relevance * recency * priority

Scoring depends only on the entry, the query, the options and the reference
time, so identical inputs always give identical scores and ordering.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterable, Sequence

from .models import FileType, MemoryEntry, parse_timestamp, utc_now

STOPWORDS = frozenset({
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for",
    "of", "is", "are", "was", "were", "be", "been", "being", "have", "has",
    "had", "do", "does", "did", "will", "would", "could", "should", "may",
    "might", "must", "can", "this", "that", "these", "those", "i", "you",
    "he", "she", "it", "we", "they", "what", "which", "who", "when", "where",
    "why", "how", "all", "each", "every", "both", "few", "more", "most",
    "other", "some", "such", "no", "nor", "not", "only", "same", "so",
    "than", "too", "very",
})

PRIORITY_MULTIPLIERS: dict[FileType, float] = {
    FileType.BRIEF: 1.5,
    FileType.PATTERN: 1.5,
    FileType.CONTEXT: 1.3,
    FileType.DECISION: 1.2,
    FileType.PROGRESS: 1.0,
}

DEFAULT_THRESHOLD = 0.1
UNPARSABLE_RECENCY = 0.5

_TOKEN_SPLIT = re.compile(r"[\s\-_.]+")


@dataclass(frozen=True)
class ScoringOptions:
    include_recency: bool = True
    include_priority: bool = True
    now: datetime | None = None


@dataclass(frozen=True)
class ScoredEntry:
    entry: MemoryEntry
    relevance_score: float
    recency_score: float
    priority_multiplier: float
    final_score: float
    reason: str = ""
    semantic_score: float | None = field(default=None)


def extract_keywords(query: str) -> list[str]:
    """Distinct lowercase query terms longer than two characters, minus stopwords."""
    seen: dict[str, None] = {}
    for word in _TOKEN_SPLIT.split(query.lower()):
        if len(word) > 2 and word not in STOPWORDS:
            seen.setdefault(word, None)
    return list(seen)


def keyword_relevance(content: str, query: str) -> float:
    """Fraction of query keywords found as whole words, plus a multi-match bonus."""
    if not content or not query:
        return 0.0
    keywords = extract_keywords(query)
    if not keywords:
        return 0.0

    lowered = content.lower()
    matches = sum(
        1 for kw in keywords if re.search(rf"\b{re.escape(kw)}\b", lowered)
    )
    relevance = min(1.0, matches / len(keywords))
    if matches > 1:
        relevance = min(1.0, relevance + min(0.5, 0.1 * (matches - 1)))
    return relevance


def recency_score(timestamp: str, now: datetime) -> float:
    try:
        age_days = (now - parse_timestamp(timestamp)).total_seconds() / 86400
    except (TypeError, ValueError):
        return UNPARSABLE_RECENCY
    if age_days < 7:
        return 1.0
    if age_days < 30:
        return 0.7
    if age_days < 90:
        return 0.3
    return 0.1


def priority_multiplier(file_type: FileType | str) -> float:
    return PRIORITY_MULTIPLIERS.get(file_type, 1.0)  # type: ignore[call-overload]


def describe_score(relevance: float, recency: float, priority: float) -> str:
    factors = []
    if relevance > 0.7:
        factors.append("highly relevant keywords")
    elif relevance > 0.4:
        factors.append("moderately relevant")
    elif relevance > 0:
        factors.append("weakly relevant")

    if recency >= 1.0:
        factors.append("recent (< 7 days)")
    elif recency >= 0.7:
        factors.append("fairly recent")
    elif recency > 0:
        factors.append("aging")

    if priority > 1.3:
        factors.append("high priority")
    return "; ".join(factors)


class RelevanceScorer:
    """Scores and ranks entries for a query.

    Args:
        clock: Source of the reference time when options do not fix one.
    """

    def __init__(self, clock: Callable[[], datetime] = utc_now):
        self._clock = clock

    def score_entry(
        self, entry: MemoryEntry, query: str, options: ScoringOptions | None = None
    ) -> ScoredEntry:
        options = options or ScoringOptions()
        now = options.now or self._clock()
        relevance = keyword_relevance(entry.content, query)
        recency = recency_score(entry.timestamp, now) if options.include_recency else 1.0
        priority = priority_multiplier(entry.file_type) if options.include_priority else 1.0
        return ScoredEntry(
            entry=entry,
            relevance_score=relevance,
            recency_score=recency,
            priority_multiplier=priority,
            final_score=relevance * recency * priority,
            reason=describe_score(relevance, recency, priority),
        )

    def score_entries(
        self,
        entries: Iterable[MemoryEntry],
        query: str,
        options: ScoringOptions | None = None,
    ) -> list[ScoredEntry]:
        options = options or ScoringOptions()
        if options.now is None:
            # One reference time for the whole batch.
            options = ScoringOptions(
                include_recency=options.include_recency,
                include_priority=options.include_priority,
                now=self._clock(),
            )
        return [self.score_entry(entry, query, options) for entry in entries]

    @staticmethod
    def rank_entries(scored: Sequence[ScoredEntry]) -> list[ScoredEntry]:
        """Highest score first. Equal scores keep their input order."""
        return sorted(scored, key=lambda s: -s.final_score)

    @staticmethod
    def filter_by_threshold(
        scored: Iterable[ScoredEntry], threshold: float = DEFAULT_THRESHOLD
    ) -> list[ScoredEntry]:
        return [s for s in scored if s.final_score >= threshold]

    def top_entries(
        self,
        entries: Iterable[MemoryEntry],
        query: str,
        limit: int = 10,
        options: ScoringOptions | None = None,
    ) -> list[ScoredEntry]:
        ranked = self.rank_entries(self.score_entries(entries, query, options))
        return ranked[:limit]


__all__ = [
    "STOPWORDS",
    "PRIORITY_MULTIPLIERS",
    "DEFAULT_THRESHOLD",
    "ScoringOptions",
    "ScoredEntry",
    "extract_keywords",
    "keyword_relevance",
    "recency_score",
    "priority_multiplier",
    "describe_score",
    "RelevanceScorer",
]
