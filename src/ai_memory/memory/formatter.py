"""Rendering of entries as compact text for model context."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Iterable

from .models import FileType, MemoryEntry

DOCUMENT_TYPE_ORDER: dict[FileType, int] = {
    FileType.BRIEF: 0,
    FileType.CONTEXT: 1,
    FileType.PATTERN: 2,
    FileType.DECISION: 3,
    FileType.PROGRESS: 4,
}

_LIST_OR_CODE_LINE = re.compile(r"^\s+[-*#`]")


@dataclass(frozen=True)
class FormattedEntry:
    entry: MemoryEntry
    title: str
    formatted: str
    details: dict[str, Any] = field(default_factory=dict)


def strip_whitespace(content: str) -> str:
    """Trim lines and collapse runs of blank lines to one.

    Indented list, heading and code lines keep their leading whitespace.
    """
    lines = []
    for line in content.split("\n"):
        lines.append(line.rstrip() if _LIST_OR_CODE_LINE.match(line) else line.strip())

    result: list[str] = []
    blank_run = 0
    for line in lines:
        if line:
            blank_run = 0
            result.append(line)
        else:
            blank_run += 1
            if blank_run <= 1:
                result.append(line)

    while result and not result[0].strip():
        result.pop(0)
    while result and not result[-1].strip():
        result.pop()
    return "\n".join(result)


class ContextFormatter:
    """Formats entries as `{tag} {title}` blocks separated by rules."""

    def __init__(self, include_metadata: bool = True):
        self.include_metadata = include_metadata

    def format_entry(self, entry: MemoryEntry) -> FormattedEntry:
        body = strip_whitespace(entry.content)
        first_line = body.split("\n", 1)[0].strip()
        title = first_line or entry.tag

        parts = [f"{entry.tag} {title}", "", body]
        if self.include_metadata and entry.metadata is not None:
            meta = entry.metadata
            labels = []
            if meta.phase:
                labels.append(f"phase: {meta.phase.value}")
            if meta.progress_status:
                labels.append(f"status: {meta.progress_status.value}")
            if meta.targets:
                labels.append(f"targets: {', '.join(sorted(meta.targets))}")
            if labels:
                parts += ["", f"({' | '.join(labels)})"]
        formatted = "\n".join(parts) + "\n\n---\n"

        details = {
            "type": FileType(entry.file_type).value,
            "timestamp": entry.timestamp,
            "title": title,
            "content_length": len(entry.content),
            "content_lines": entry.content.count("\n") + 1,
        }
        return FormattedEntry(entry=entry, title=title, formatted=formatted, details=details)

    def format_entries(self, entries: Iterable[MemoryEntry]) -> list[FormattedEntry]:
        return [self.format_entry(e) for e in entries]

    def format_as_document(self, entries: Iterable[MemoryEntry], sort_by_type: bool = True) -> str:
        """Join entries into one document.

        With `sort_by_type`, entries are grouped brief, context, pattern,
        decision, progress (other types last), newest first within a group.
        """
        ordered = list(entries)
        if sort_by_type:
            ordered.sort(key=lambda e: e.timestamp, reverse=True)
            ordered.sort(key=lambda e: DOCUMENT_TYPE_ORDER.get(e.file_type, len(DOCUMENT_TYPE_ORDER)))
        return "\n".join(f.formatted for f in self.format_entries(ordered))


__all__ = ["DOCUMENT_TYPE_ORDER", "FormattedEntry", "strip_whitespace", "ContextFormatter"]
