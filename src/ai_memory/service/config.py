"""Configuration primitives for the memory service."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum

from ..memory.selector import BlendWeights


class StorageBackend(str, Enum):
    """Physical storage engine selection."""

    AUTO = "auto"
    WAL = "wal"
    SNAPSHOT = "snapshot"


class EmbeddingProvider(str, Enum):
    """Embedding backend selection."""

    AUTO = "auto"
    SENTENCE_TRANSFORMERS = "sentence-transformers"
    HASH = "hash"


class TokenCounterKind(str, Enum):
    TIKTOKEN = "tiktoken"
    CHARS = "chars"


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(slots=True)
class MemoryConfig:
    """Runtime configuration for the memory service.

    Configuration Sources (priority order):
    1. Direct constructor arguments
    2. Environment variables (AI_MEMORY_*)
    3. Default values

    Attributes:
        db_path: SQLite database path, or ":memory:" (default: AI-Memory/memory.db)
        storage_backend: 'auto' tests for WAL support, 'wal' or 'snapshot' force one
        embedding_provider: 'auto', 'sentence-transformers' or 'hash'
        embedding_model: sentence-transformers model identifier
        embedding_batch_size: Texts per embedding chunk (default: 10)
        embed_on_write: Compute and store a vector for each new entry
        token_counter: 'tiktoken' or 'chars', used for usage reporting
        default_token_budget: Budget when a caller gives none (default: 4000)
        min_relevance_threshold: Selection cut-off (default: 0.1)
        max_age_days: Candidate age limit for selection (default: 90)
        keyword_weight / semantic_weight: Blend of keyword and semantic scores
        neutral_semantic_score: Semantic score for entries without a vector
        context_window: Model context window for budget status (default: 200000)
        max_content_length: Largest accepted entry, in characters
    """

    db_path: str = "AI-Memory/memory.db"
    storage_backend: StorageBackend = StorageBackend.AUTO
    embedding_provider: EmbeddingProvider = EmbeddingProvider.AUTO
    embedding_model: str = "all-MiniLM-L6-v2"
    embedding_batch_size: int = 10
    embed_on_write: bool = True
    token_counter: TokenCounterKind = TokenCounterKind.TIKTOKEN
    default_token_budget: int = 4000
    min_relevance_threshold: float = 0.1
    max_age_days: int | None = 90
    keyword_weight: float = 0.6
    semantic_weight: float = 0.4
    neutral_semantic_score: float = 0.5
    context_window: int = 200_000
    max_content_length: int = 1_000_000
    host: str = "127.0.0.1"
    port: int = 4949
    log_level: str = "INFO"
    max_workers: int = 4
    cors_origins: list[str] = field(
        default_factory=lambda: [
            "http://localhost:5173",
            "http://127.0.0.1:5173",
        ]
    )

    @property
    def blend_weights(self) -> BlendWeights:
        return BlendWeights(
            keyword=self.keyword_weight,
            semantic=self.semantic_weight,
            neutral_semantic=self.neutral_semantic_score,
        )

    @classmethod
    def from_env(cls) -> MemoryConfig:
        """Create configuration from environment variables.

        Optional:
            AI_MEMORY_DB_PATH: SQLite database path
            AI_MEMORY_STORAGE_BACKEND: 'auto', 'wal' or 'snapshot'
            AI_MEMORY_EMBEDDING_PROVIDER: 'auto', 'sentence-transformers' or 'hash'
            AI_MEMORY_EMBEDDING_MODEL: Model identifier
            AI_MEMORY_EMBEDDING_BATCH_SIZE: Texts per embedding chunk
            AI_MEMORY_EMBED_ON_WRITE: '1' or '0'
            AI_MEMORY_TOKEN_COUNTER: 'tiktoken' or 'chars'
            AI_MEMORY_TOKEN_BUDGET: Default selection budget
            AI_MEMORY_MIN_RELEVANCE: Selection threshold
            AI_MEMORY_MAX_AGE_DAYS: Candidate age limit, empty for none
            AI_MEMORY_KEYWORD_WEIGHT / AI_MEMORY_SEMANTIC_WEIGHT: Blend weights
            AI_MEMORY_NEUTRAL_SEMANTIC: Score for entries without a vector
            AI_MEMORY_CONTEXT_WINDOW: Model context window in tokens
            AI_MEMORY_MAX_CONTENT_LENGTH: Largest accepted entry
            AI_MEMORY_HOST / AI_MEMORY_PORT: HTTP bind address
            AI_MEMORY_LOG_LEVEL: Log level
            AI_MEMORY_CORS_ORIGINS: Comma-separated allowed origins
        """
        env = os.environ.get
        max_age = env("AI_MEMORY_MAX_AGE_DAYS", "90").strip()
        config = cls(
            db_path=env("AI_MEMORY_DB_PATH", "AI-Memory/memory.db"),
            storage_backend=StorageBackend(env("AI_MEMORY_STORAGE_BACKEND", "auto").lower()),
            embedding_provider=EmbeddingProvider(
                env("AI_MEMORY_EMBEDDING_PROVIDER", "auto").lower()
            ),
            embedding_model=env("AI_MEMORY_EMBEDDING_MODEL", "all-MiniLM-L6-v2"),
            embedding_batch_size=int(env("AI_MEMORY_EMBEDDING_BATCH_SIZE", "10")),
            embed_on_write=_env_bool("AI_MEMORY_EMBED_ON_WRITE", True),
            token_counter=TokenCounterKind(env("AI_MEMORY_TOKEN_COUNTER", "tiktoken").lower()),
            default_token_budget=int(env("AI_MEMORY_TOKEN_BUDGET", "4000")),
            min_relevance_threshold=float(env("AI_MEMORY_MIN_RELEVANCE", "0.1")),
            max_age_days=int(max_age) if max_age else None,
            keyword_weight=float(env("AI_MEMORY_KEYWORD_WEIGHT", "0.6")),
            semantic_weight=float(env("AI_MEMORY_SEMANTIC_WEIGHT", "0.4")),
            neutral_semantic_score=float(env("AI_MEMORY_NEUTRAL_SEMANTIC", "0.5")),
            context_window=int(env("AI_MEMORY_CONTEXT_WINDOW", "200000")),
            max_content_length=int(env("AI_MEMORY_MAX_CONTENT_LENGTH", "1000000")),
            host=env("AI_MEMORY_HOST", "127.0.0.1"),
            port=int(env("AI_MEMORY_PORT", "4949")),
            log_level=env("AI_MEMORY_LOG_LEVEL", "INFO"),
        )

        origins = env("AI_MEMORY_CORS_ORIGINS", "")
        if origins:
            config.cors_origins = [o.strip() for o in origins.split(",") if o.strip()]

        return config


__all__ = [
    "StorageBackend",
    "EmbeddingProvider",
    "TokenCounterKind",
    "MemoryConfig",
]
