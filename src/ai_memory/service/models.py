"""Pydantic models backing the memory HTTP API."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator

from ..memory.models import (
    EntryMetadata,
    EntryRevision,
    FileType,
    MemoryEntry,
    Phase,
    ProgressStatus,
)
from ..memory.scorer import ScoredEntry
from ..memory.selector import SelectionResult

# ---------------------------------------------------------------------------
# Entries
# ---------------------------------------------------------------------------


class MetadataModel(BaseModel):
    """Optional structured metadata on an entry."""

    phase: Phase | None = None
    progress_status: ProgressStatus | None = None
    targets: list[str] = Field(default_factory=list)

    @field_validator("targets")
    @classmethod
    def _sorted_targets(cls, values: list[str]) -> list[str]:
        return sorted(set(values))

    def to_metadata(self) -> EntryMetadata:
        """Convert to the domain type, enforcing the known target domains."""
        return EntryMetadata.from_dict(self.model_dump(mode="json", exclude_none=True))

    @classmethod
    def from_metadata(cls, metadata: EntryMetadata | None) -> "MetadataModel | None":
        if metadata is None:
            return None
        return cls(
            phase=metadata.phase,
            progress_status=metadata.progress_status,
            targets=sorted(metadata.targets),
        )


class EntryModel(BaseModel):
    id: int | None
    file_type: FileType
    timestamp: str
    tag: str
    content: str
    metadata: MetadataModel | None = None

    @classmethod
    def from_entry(cls, entry: MemoryEntry) -> "EntryModel":
        return cls(
            id=entry.id,
            file_type=entry.file_type,
            timestamp=entry.timestamp,
            tag=entry.tag,
            content=entry.content,
            metadata=MetadataModel.from_metadata(entry.metadata),
        )


class AppendEntryRequest(BaseModel):
    """Request to append a new entry."""

    file_type: str = Field(..., min_length=1, max_length=32)
    content: str
    metadata: MetadataModel | None = None


class EditEntryRequest(BaseModel):
    """Replace an entry's content, metadata, or both.

    Leaving `metadata` out keeps the current metadata; `clear_metadata`
    removes it.
    """

    content: str | None = None
    metadata: MetadataModel | None = None
    clear_metadata: bool = False


class AppendTextRequest(BaseModel):
    text: str = Field(..., min_length=1)


class QueryResponse(BaseModel):
    entries: list[EntryModel]
    count: int


class RevisionModel(BaseModel):
    entry_id: int
    revision: int
    timestamp: str
    tag: str
    content: str
    metadata: MetadataModel | None = None
    recorded_at: str

    @classmethod
    def from_revision(cls, revision: EntryRevision) -> "RevisionModel":
        return cls(
            entry_id=revision.entry_id,
            revision=revision.revision,
            timestamp=revision.timestamp,
            tag=revision.tag,
            content=revision.content,
            metadata=MetadataModel.from_metadata(revision.metadata),
            recorded_at=revision.recorded_at,
        )


# ---------------------------------------------------------------------------
# Context selection
# ---------------------------------------------------------------------------


class SelectContextRequest(BaseModel):
    """Request for budgeted context selection."""

    query: str = Field(..., max_length=10000)
    token_budget: int | None = Field(default=None, ge=0)
    min_relevance_threshold: float | None = Field(default=None, ge=0.0)
    include_types: list[FileType] | None = None
    max_age_days: int | None = Field(default=None, ge=0)
    use_semantic_search: bool = False


class ScoredEntryModel(BaseModel):
    entry_id: int | None
    tag: str
    relevance_score: float
    recency_score: float
    priority_multiplier: float
    semantic_score: float | None = None
    final_score: float
    reason: str

    @classmethod
    def from_scored(cls, scored: ScoredEntry) -> "ScoredEntryModel":
        return cls(
            entry_id=scored.entry.id,
            tag=scored.entry.tag,
            relevance_score=scored.relevance_score,
            recency_score=scored.recency_score,
            priority_multiplier=scored.priority_multiplier,
            semantic_score=scored.semantic_score,
            final_score=scored.final_score,
            reason=scored.reason,
        )


class SelectContextResponse(BaseModel):
    entries: list[EntryModel]
    scores: list[ScoredEntryModel]
    text: str
    tokens_used: int
    token_budget: int
    selected_count: int
    total_count: int
    semantic: bool
    coverage: str

    @classmethod
    def from_result(cls, result: SelectionResult) -> "SelectContextResponse":
        return cls(
            entries=[EntryModel.from_entry(e) for e in result.entries],
            scores=[ScoredEntryModel.from_scored(s) for s in result.scored],
            text=result.text,
            tokens_used=result.tokens_used,
            token_budget=result.token_budget,
            selected_count=result.selected_count,
            total_count=result.total_count,
            semantic=result.semantic,
            coverage=result.coverage,
        )


# ---------------------------------------------------------------------------
# Metrics and status
# ---------------------------------------------------------------------------


class TokenUsageRequest(BaseModel):
    model: str = Field(..., min_length=1, max_length=200)
    input_tokens: int = Field(..., ge=0)
    output_tokens: int = Field(..., ge=0)


class TokenUsageResponse(BaseModel):
    timestamp: str
    model: str
    input_tokens: int
    output_tokens: int
    total_tokens: int
    context_status: str


class SchemaStatusResponse(BaseModel):
    active: bool
    db_path: str
    engine: str | None = None
    schema_version: int | None = None
    latest_schema_version: int
    inactive_reason: str | None = None


class DashboardResponse(BaseModel):
    """Snapshot for a dashboard or IDE panel."""

    state: SchemaStatusResponse
    entry_counts: dict[str, int]
    total_entries: int
    latest: dict[str, list[dict[str, Any]]]
    progress: dict[str, list[str]]
    db_size_bytes: int
    vector_count: int
    embeddings: dict[str, Any]
    metrics: dict[str, Any]


__all__ = [
    "MetadataModel",
    "EntryModel",
    "AppendEntryRequest",
    "EditEntryRequest",
    "AppendTextRequest",
    "QueryResponse",
    "RevisionModel",
    "SelectContextRequest",
    "ScoredEntryModel",
    "SelectContextResponse",
    "TokenUsageRequest",
    "TokenUsageResponse",
    "SchemaStatusResponse",
    "DashboardResponse",
]
