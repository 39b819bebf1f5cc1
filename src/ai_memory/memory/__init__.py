"""Memory layer - entry model, scoring, embeddings and budgeted selection."""

from .embeddings import EmbeddingService, create_embedding_backend
from .formatter import ContextFormatter
from .models import EntryMetadata, FileType, MemoryEntry, Phase, ProgressStatus, QueryResult
from .scorer import RelevanceScorer, ScoredEntry, ScoringOptions
from .selector import BlendWeights, ContextSelector, SelectionOptions, SelectionResult

__all__ = [
    "EmbeddingService",
    "create_embedding_backend",
    "ContextFormatter",
    "EntryMetadata",
    "FileType",
    "MemoryEntry",
    "Phase",
    "ProgressStatus",
    "QueryResult",
    "RelevanceScorer",
    "ScoredEntry",
    "ScoringOptions",
    "BlendWeights",
    "ContextSelector",
    "SelectionOptions",
    "SelectionResult",
]
