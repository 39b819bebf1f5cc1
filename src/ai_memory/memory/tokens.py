"""Token counting and context budget accounting.

Selection uses the cheap `estimate_tokens` heuristic (four characters per
token) so its results do not depend on which tokenizer is installed. Token
counters are for reporting usage against a model's context window.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable

from .models import ContextStatus

if TYPE_CHECKING:
    import tiktoken

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4
DEFAULT_ENCODING = "cl100k_base"
DEFAULT_CONTEXT_WINDOW = 200_000
OUTPUT_RESERVE_RATIO = 0.20
HEALTHY_REMAINING = 50_000
WARNING_REMAINING = 10_000


def estimate_tokens(text: str) -> int:
    """`ceil(len(text) / 4)`."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


class TokenCounter(ABC):
    name = "abstract"

    @abstractmethod
    def count(self, text: str) -> int:
        """Number of tokens in `text`."""

    @property
    def exact(self) -> bool:
        return False


class CharRatioCounter(TokenCounter):
    """Estimate based on character count."""

    name = "chars"

    def __init__(self, chars_per_token: int = CHARS_PER_TOKEN):
        self.chars_per_token = chars_per_token

    def count(self, text: str) -> int:
        return math.ceil(len(text) / self.chars_per_token)


class TiktokenCounter(TokenCounter):
    """Counts with a tiktoken encoding, loaded on first use.

    Loading an encoding may download its ranks file. If that fails the counter
    logs once and answers with the character estimate from then on.
    """

    name = "tiktoken"

    def __init__(self, encoding: str = DEFAULT_ENCODING):
        self.encoding_name = encoding
        self._encoder: "tiktoken.Encoding | None" = None
        self._unavailable = False
        self._lock = threading.Lock()
        self._estimate = CharRatioCounter()

    def _get_encoder(self) -> "tiktoken.Encoding | None":
        if self._encoder is not None or self._unavailable:
            return self._encoder
        with self._lock:
            if self._encoder is None and not self._unavailable:
                import tiktoken

                try:
                    self._encoder = tiktoken.get_encoding(self.encoding_name)
                except KeyError:
                    self._encoder = tiktoken.get_encoding(DEFAULT_ENCODING)
                except Exception as exc:
                    logger.warning(
                        f"tiktoken encoding {self.encoding_name} unavailable, "
                        f"estimating tokens from characters: {exc}"
                    )
                    self._unavailable = True
        return self._encoder

    @property
    def exact(self) -> bool:
        return self._get_encoder() is not None

    def count(self, text: str) -> int:
        encoder = self._get_encoder()
        if encoder is None:
            return self._estimate.count(text)
        return len(encoder.encode(text, disallowed_special=()))


class CachedTokenCounter(TokenCounter):
    """LRU cache with expiry in front of another counter."""

    def __init__(
        self,
        inner: TokenCounter,
        max_entries: int = 100,
        ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.inner = inner
        self.name = inner.name
        self.max_entries = max_entries
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._cache: OrderedDict[str, tuple[int, float]] = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    @property
    def exact(self) -> bool:
        return self.inner.exact

    def count(self, text: str) -> int:
        now = self._clock()
        with self._lock:
            cached = self._cache.get(text)
            if cached is not None and now - cached[1] < self.ttl_seconds:
                self._cache.move_to_end(text)
                self.hits += 1
                return cached[0]
        value = self.inner.count(text)
        with self._lock:
            self.misses += 1
            self._cache[text] = (value, now)
            self._cache.move_to_end(text)
            while len(self._cache) > self.max_entries:
                self._cache.popitem(last=False)
        return value

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()


def create_token_counter(kind: str = "tiktoken", encoding: str = DEFAULT_ENCODING) -> TokenCounter:
    if kind == "tiktoken":
        return CachedTokenCounter(TiktokenCounter(encoding))
    if kind == "chars":
        return CharRatioCounter()
    raise ValueError(f"Unknown token counter: {kind}")


@dataclass(frozen=True)
class ContextBudget:
    total: int
    used: int
    remaining: int
    percent_used: float
    status: ContextStatus
    recommendations: list[str] = field(default_factory=list)


def context_budget(used_tokens: int, context_window: int = DEFAULT_CONTEXT_WINDOW) -> ContextBudget:
    """Input budget left in a context window after reserving 20% for output."""
    available = int(context_window * (1 - OUTPUT_RESERVE_RATIO))
    remaining = available - used_tokens
    percent = (used_tokens / available * 100) if available > 0 else 100.0

    if remaining > HEALTHY_REMAINING:
        status = ContextStatus.HEALTHY
        recommendations = ["Continue adding context as needed"]
    elif remaining > WARNING_REMAINING:
        status = ContextStatus.WARNING
        recommendations = [
            "Context budget getting low (< 50K tokens)",
            "Consider summarizing long contexts",
        ]
    else:
        status = ContextStatus.CRITICAL
        recommendations = [
            "Context budget nearly exhausted (< 10K tokens)",
            "Start a new session or drop non-essential context",
        ]

    return ContextBudget(
        total=available,
        used=used_tokens,
        remaining=max(0, remaining),
        percent_used=min(100.0, percent),
        status=status,
        recommendations=recommendations,
    )


__all__ = [
    "CHARS_PER_TOKEN",
    "DEFAULT_CONTEXT_WINDOW",
    "estimate_tokens",
    "TokenCounter",
    "CharRatioCounter",
    "TiktokenCounter",
    "CachedTokenCounter",
    "create_token_counter",
    "ContextBudget",
    "context_budget",
]
