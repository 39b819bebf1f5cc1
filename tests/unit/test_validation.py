"""Unit tests for entry validation and content sanitizing."""

import pytest

from ai_memory.errors import ValidationError
from ai_memory.memory.models import FileType, MemoryEntry
from ai_memory.persistence.validation import EntryValidator, ValidationRules, sanitize_content


def _entry(**overrides):
    values = dict(
        file_type=FileType.DECISION,
        timestamp="2025-01-15T00:00:00Z",
        tag="[DECISION:2025-01-15]",
        content="Use SQLite",
    )
    values.update(overrides)
    return MemoryEntry(**values)


@pytest.mark.unit
class TestTagValidation:
    """Tests for [TYPE:YYYY-MM-DD] tag checks."""

    def test_valid_tag(self):
        assert EntryValidator().validate_tag("[DECISION:2025-01-15]") == []

    def test_unknown_type_and_bad_month_both_reported(self):
        """Both problems in one tag should be reported separately."""
        errors = EntryValidator().validate_tag("[FOO:2025-13-01]")

        assert len(errors) == 2
        assert any("Unknown entry type 'FOO'" in e for e in errors)
        assert any("Month 13" in e for e in errors)

    def test_day_range_checked_not_calendar(self):
        """Feb 31 is within 1-31, so it passes."""
        validator = EntryValidator()
        assert validator.validate_tag("[DECISION:2025-02-31]") == []
        assert validator.validate_tag("[DECISION:2025-02-32]") == ["Day 32 out of range 1-31 in tag"]

    def test_malformed_tag(self):
        errors = EntryValidator().validate_tag("DECISION 2025-01-15")
        assert len(errors) == 1
        assert "Malformed tag" in errors[0]

    def test_missing_tag(self):
        assert EntryValidator().validate_tag("") == ["Tag is required"]

    def test_overlong_tag(self):
        validator = EntryValidator(ValidationRules(max_tag_length=10))
        assert validator.validate_tag("[DECISION:2025-01-15]") == ["Tag exceeds 10 characters"]


@pytest.mark.unit
class TestEntryValidation:
    """Tests for whole-entry validation."""

    def test_valid_entry(self):
        assert EntryValidator().validate(_entry()) == []

    def test_invalid_entry_raises_with_all_errors(self):
        entry = _entry(tag="[FOO:2025-13-01]", content="   ")
        with pytest.raises(ValidationError) as exc_info:
            EntryValidator().check(entry)

        assert len(exc_info.value.errors) == 3
        assert "Content is empty" in exc_info.value.errors

    def test_validation_error_is_value_error(self):
        with pytest.raises(ValueError):
            EntryValidator().check(_entry(content=""))

    def test_unknown_file_type(self):
        errors = EntryValidator().validate(_entry(file_type="NOTES"))
        assert "Unknown entry type 'NOTES'" in errors

    def test_bad_timestamp(self):
        errors = EntryValidator().validate(_entry(timestamp="yesterday"))
        assert errors == ["Invalid ISO-8601 timestamp 'yesterday'"]

    def test_content_too_long(self):
        validator = EntryValidator(ValidationRules(max_content_length=5))
        errors = validator.validate(_entry(content="123456"))
        assert errors == ["Content length 6 exceeds maximum 5"]

    def test_tag_type_may_differ_from_file_type(self):
        """Tags are display labels; only their own shape is checked."""
        assert EntryValidator().validate(_entry(tag="[CONTEXT:2025-01-15]")) == []


@pytest.mark.unit
class TestSanitizeContent:
    def test_strips_null_bytes(self):
        assert sanitize_content("a\x00b") == "ab"

    def test_normalizes_line_endings(self):
        assert sanitize_content("a\r\nb\rc") == "a\nb\nc"

    def test_collapses_blank_lines(self):
        assert sanitize_content("a\n\n\n\n\nb") == "a\n\nb"

    def test_trims(self):
        assert sanitize_content("  hello  \n") == "hello"
