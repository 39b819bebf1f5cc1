"""Core data model for memory entries and metric records.

Entries are immutable value objects. The store hands out fresh instances on
every read, so a caller can never observe another caller's changes.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, Mapping

from ..errors import ValidationError


class FileType(str, Enum):
    """Kinds of memory entry."""

    CONTEXT = "CONTEXT"
    DECISION = "DECISION"
    PROGRESS = "PROGRESS"
    PATTERN = "PATTERN"
    BRIEF = "BRIEF"
    DEPRECATED = "DEPRECATED"
    SUPERSEDED = "SUPERSEDED"


class Phase(str, Enum):
    """Coarse workflow stage an entry belongs to."""

    RESEARCH = "research"
    PLANNING = "planning"
    EXECUTION = "execution"
    CHECKPOINT = "checkpoint"


class ProgressStatus(str, Enum):
    DONE = "done"
    IN_PROGRESS = "in-progress"
    DRAFT = "draft"
    DEPRECATED = "deprecated"


TARGET_DOMAINS = frozenset(
    {"ui", "db", "refactor", "tests", "docs", "perf", "integration", "infra"}
)

METADATA_VERSION = 1

_FILE_TYPE_CODES = frozenset(t.value for t in FileType)

TAG_PATTERN = re.compile(r"^\[([A-Z_]+):(\d{4})-(\d{2})-(\d{2})\]$")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_now_iso(now: datetime | None = None) -> str:
    """ISO-8601 UTC timestamp with millisecond precision and a Z suffix."""
    now = now or utc_now()
    return now.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace(
        "+00:00", "Z"
    )


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp into an aware UTC datetime.

    Naive timestamps are taken to be UTC.

    Raises:
        ValueError: If the value is not a valid ISO-8601 timestamp.
    """
    if not isinstance(value, str) or not value.strip():
        raise ValueError("timestamp is empty")
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def make_tag(file_type: FileType | str, when: datetime | None = None) -> str:
    """Build a `[TYPE:YYYY-MM-DD]` tag for the given type and date."""
    code = FileType(file_type).value
    when = when or utc_now()
    return f"[{code}:{when.astimezone(timezone.utc).strftime('%Y-%m-%d')}]"


@dataclass(frozen=True)
class EntryMetadata:
    """Optional structured metadata attached to an entry.

    Every field may be absent. `version` records the layout so stored JSON can
    be upgraded when fields are added.
    """

    phase: Phase | None = None
    progress_status: ProgressStatus | None = None
    targets: frozenset[str] = field(default_factory=frozenset)
    version: int = METADATA_VERSION

    def is_empty(self) -> bool:
        return self.phase is None and self.progress_status is None and not self.targets

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"version": self.version}
        if self.phase is not None:
            data["phase"] = self.phase.value
        if self.progress_status is not None:
            data["progress_status"] = self.progress_status.value
        if self.targets:
            data["targets"] = sorted(self.targets)
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "EntryMetadata":
        """Build metadata from a mapping, collecting every problem found.

        Raises:
            ValidationError: If any field holds an unknown value.
        """
        errors: list[str] = []
        phase = status = None

        raw_phase = data.get("phase")
        if raw_phase is not None:
            try:
                phase = Phase(raw_phase)
            except ValueError:
                errors.append(f"Unknown phase '{raw_phase}'")

        raw_status = data.get("progress_status")
        if raw_status is not None:
            try:
                status = ProgressStatus(raw_status)
            except ValueError:
                errors.append(f"Unknown progress status '{raw_status}'")

        raw_targets = data.get("targets") or ()
        if isinstance(raw_targets, str):
            raw_targets = [raw_targets]
        targets = frozenset(str(t).lower() for t in raw_targets)
        unknown = sorted(targets - TARGET_DOMAINS)
        if unknown:
            errors.append(f"Unknown target domain(s): {', '.join(unknown)}")

        if errors:
            raise ValidationError(errors)
        return cls(
            phase=phase,
            progress_status=status,
            targets=targets,
            version=int(data.get("version", METADATA_VERSION)),
        )

    @classmethod
    def from_json(cls, raw: str | None) -> "EntryMetadata | None":
        """Decode stored metadata. Absent or empty JSON gives None.

        Raises:
            ValidationError: If the stored JSON is malformed.
        """
        if not raw:
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ValidationError([f"Malformed metadata JSON: {exc.msg}"]) from exc
        if not isinstance(data, dict):
            raise ValidationError(["Metadata must be a JSON object"])
        meta = cls.from_dict(data)
        return None if meta.is_empty() else meta


@dataclass(frozen=True)
class MemoryEntry:
    """A single persisted unit of agent memory."""

    file_type: FileType
    timestamp: str
    tag: str
    content: str
    metadata: EntryMetadata | None = None
    id: int | None = None

    def __post_init__(self) -> None:
        # Unknown codes stay as plain strings so validation can report them.
        if not isinstance(self.file_type, FileType) and self.file_type in _FILE_TYPE_CODES:
            object.__setattr__(self, "file_type", FileType(self.file_type))

    @classmethod
    def create(
        cls,
        file_type: FileType | str,
        content: str,
        metadata: EntryMetadata | None = None,
        now: datetime | None = None,
    ) -> "MemoryEntry":
        """Build a new, not yet persisted entry stamped with the current time."""
        now = now or utc_now()
        file_type = FileType(file_type)
        return cls(
            file_type=file_type,
            timestamp=utc_now_iso(now),
            tag=make_tag(file_type, now),
            content=content,
            metadata=metadata,
        )

    @property
    def phase(self) -> Phase | None:
        return self.metadata.phase if self.metadata else None

    @property
    def progress_status(self) -> ProgressStatus | None:
        return self.metadata.progress_status if self.metadata else None

    def with_id(self, entry_id: int) -> "MemoryEntry":
        return replace(self, id=entry_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "file_type": self.file_type.value,
            "timestamp": self.timestamp,
            "tag": self.tag,
            "content": self.content,
            "metadata": self.metadata.to_dict() if self.metadata else None,
        }

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "MemoryEntry":
        return cls(
            id=row["id"],
            file_type=FileType(row["file_type"]),
            timestamp=row["timestamp"],
            tag=row["tag"],
            content=row["content"],
            metadata=EntryMetadata.from_json(row.get("metadata")),
        )


@dataclass(frozen=True)
class EntryRevision:
    """A prior state of an edited entry."""

    entry_id: int
    revision: int
    timestamp: str
    tag: str
    content: str
    metadata: EntryMetadata | None
    recorded_at: str


@dataclass
class QueryResult:
    """Entries from a typed query plus the true number of matches."""

    entries: list[MemoryEntry]
    count: int

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self):
        return iter(self.entries)


class ContextStatus(str, Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass(frozen=True)
class TokenMetric:
    """One model call's token usage. Write-once."""

    timestamp: str
    model: str
    input_tokens: int
    output_tokens: int
    context_status: ContextStatus = ContextStatus.HEALTHY

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass(frozen=True)
class QueryMetric:
    """Timing of one read operation. Write-once."""

    timestamp: str
    operation: str
    elapsed_ms: float
    result_count: int


def coerce_types(types: Iterable[FileType | str] | None) -> tuple[FileType, ...] | None:
    if types is None:
        return None
    return tuple(FileType(t) for t in types)


__all__ = [
    "FileType",
    "Phase",
    "ProgressStatus",
    "TARGET_DOMAINS",
    "METADATA_VERSION",
    "TAG_PATTERN",
    "EntryMetadata",
    "MemoryEntry",
    "EntryRevision",
    "QueryResult",
    "ContextStatus",
    "TokenMetric",
    "QueryMetric",
    "utc_now",
    "utc_now_iso",
    "parse_timestamp",
    "make_tag",
    "coerce_types",
]
