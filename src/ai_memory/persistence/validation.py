"""Entry validation and content sanitizing.

Validation collects every problem with an entry rather than stopping at the
first, so a caller can fix them all in one go.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from ..errors import ValidationError
from ..memory.models import TAG_PATTERN, EntryMetadata, FileType, MemoryEntry, parse_timestamp

DEFAULT_MAX_CONTENT_LENGTH = 1_000_000
DEFAULT_MAX_TAG_LENGTH = 100

_EXCESS_NEWLINES = re.compile(r"\n{3,}")


@dataclass(frozen=True)
class ValidationRules:
    max_content_length: int = DEFAULT_MAX_CONTENT_LENGTH
    max_tag_length: int = DEFAULT_MAX_TAG_LENGTH
    allowed_types: frozenset[str] = field(
        default_factory=lambda: frozenset(t.value for t in FileType)
    )


class EntryValidator:
    """Checks entries before they are persisted."""

    def __init__(self, rules: ValidationRules | None = None):
        self.rules = rules or ValidationRules()

    def validate_tag(self, tag: object) -> list[str]:
        """Validate a `[TYPE:YYYY-MM-DD]` tag.

        Month and day are range-checked only, not calendar-checked, so
        `[DECISION:2025-02-31]` passes.
        """
        if not isinstance(tag, str) or not tag:
            return ["Tag is required"]
        if len(tag) > self.rules.max_tag_length:
            return [f"Tag exceeds {self.rules.max_tag_length} characters"]

        match = TAG_PATTERN.match(tag)
        if match is None:
            return [f"Malformed tag '{tag}', expected [TYPE:YYYY-MM-DD]"]

        errors = []
        code, _year, month, day = match.groups()
        if code not in self.rules.allowed_types:
            errors.append(f"Unknown entry type '{code}' in tag")
        if not 1 <= int(month) <= 12:
            errors.append(f"Month {int(month)} out of range 1-12 in tag")
        if not 1 <= int(day) <= 31:
            errors.append(f"Day {int(day)} out of range 1-31 in tag")
        return errors

    def validate_content(self, content: object) -> list[str]:
        if isinstance(content, bytes):
            try:
                content = content.decode("utf-8")
            except UnicodeDecodeError:
                return ["Content is not valid UTF-8"]
        if not isinstance(content, str):
            return ["Content must be a string"]
        if not content.strip():
            return ["Content is empty"]
        try:
            content.encode("utf-8")
        except UnicodeEncodeError:
            return ["Content is not valid UTF-8"]
        if len(content) > self.rules.max_content_length:
            return [
                f"Content length {len(content)} exceeds maximum "
                f"{self.rules.max_content_length}"
            ]
        return []

    def validate_timestamp(self, timestamp: object) -> list[str]:
        if not timestamp:
            return ["Timestamp is required"]
        try:
            parse_timestamp(timestamp)  # type: ignore[arg-type]
        except (TypeError, ValueError):
            return [f"Invalid ISO-8601 timestamp '{timestamp}'"]
        return []

    def validate(self, entry: MemoryEntry) -> list[str]:
        """Return every validation error for the entry. Empty means valid."""
        errors: list[str] = []
        if entry.file_type not in self.rules.allowed_types:
            errors.append(f"Unknown entry type '{entry.file_type}'")
        errors.extend(self.validate_tag(entry.tag))
        errors.extend(self.validate_timestamp(entry.timestamp))
        errors.extend(self.validate_content(entry.content))
        if entry.metadata is not None and not isinstance(entry.metadata, EntryMetadata):
            errors.append("Metadata must be an EntryMetadata instance")
        return errors

    def check(self, entry: MemoryEntry) -> None:
        """Raise ValidationError if the entry is invalid."""
        errors = self.validate(entry)
        if errors:
            raise ValidationError(errors)


def sanitize_content(content: str) -> str:
    """Normalize user-supplied text before it becomes an entry.

    Strips null bytes, converts CRLF and CR line endings to LF, collapses
    three or more newlines to two, and trims surrounding whitespace.
    """
    text = content.replace("\x00", "")
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = _EXCESS_NEWLINES.sub("\n\n", text)
    return text.strip()


__all__ = [
    "DEFAULT_MAX_CONTENT_LENGTH",
    "DEFAULT_MAX_TAG_LENGTH",
    "ValidationRules",
    "EntryValidator",
    "sanitize_content",
]
