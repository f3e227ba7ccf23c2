"""Tests for error classification and sanitization."""

import sqlite3

from api.errors import (
    ERROR_MESSAGES,
    InputValidationError,
    NotFoundError,
    is_unique_violation,
    sanitize_error_message,
    sanitize_item_error,
    truncate_string,
)
from api.schemas import item_errors


class PgUniqueViolation(Exception):
    """Stand-in for an asyncpg UniqueViolationError carrying a SQLSTATE."""

    sqlstate = "23505"


class TestIsUniqueViolation:
    """Tests for is_unique_violation."""

    def test_sqlite_message(self):
        exc = sqlite3.IntegrityError("UNIQUE constraint failed: tags.name")
        assert is_unique_violation(exc) is True

    def test_sqlite_message_with_column(self):
        exc = sqlite3.IntegrityError("UNIQUE constraint failed: users.external_id")
        assert is_unique_violation(exc, column="external_id") is True
        assert is_unique_violation(exc, column="email") is False

    def test_postgres_message(self):
        exc = Exception('duplicate key value violates unique constraint "uq_tags_name"')
        assert is_unique_violation(exc) is True

    def test_postgres_sqlstate(self):
        assert is_unique_violation(PgUniqueViolation("insert failed")) is True

    def test_wrapped_cause(self):
        """The databases library wraps driver errors; the cause is inspected."""
        try:
            try:
                raise sqlite3.IntegrityError("UNIQUE constraint failed: video_tags.video_id, video_tags.tag_id")
            except sqlite3.IntegrityError as inner:
                raise RuntimeError("query failed") from inner
        except RuntimeError as outer:
            assert is_unique_violation(outer) is True

    def test_other_errors(self):
        assert is_unique_violation(sqlite3.OperationalError("database is locked")) is False
        assert is_unique_violation(ValueError("bad input")) is False
        assert is_unique_violation(sqlite3.IntegrityError("FOREIGN KEY constraint failed")) is False


class TestTypedErrors:
    def test_input_validation_error_is_value_error(self):
        assert issubclass(InputValidationError, ValueError)

    def test_not_found_error_is_lookup_error(self):
        assert issubclass(NotFoundError, LookupError)


class TestTruncateString:
    def test_short_string_unchanged(self):
        assert truncate_string("short", 10) == "short"

    def test_long_string_truncated(self):
        assert truncate_string("a" * 20, 10) == "aaaaaaa..."

    def test_none(self):
        assert truncate_string(None, 10) is None


class TestSanitizeErrorMessage:
    """Tests for sanitize_error_message."""

    def test_none_passthrough(self):
        assert sanitize_error_message(None) is None

    def test_unique_violation_is_generic_conflict(self):
        msg = sanitize_error_message("UNIQUE constraint failed: tags.name", log_original=False)
        assert msg == ERROR_MESSAGES["conflict"]

    def test_not_found_kept(self):
        assert sanitize_error_message("Tag not found", log_original=False) == "Tag not found"

    def test_database_details_hidden(self):
        msg = sanitize_error_message("sqlite3.OperationalError: no such table: tags", log_original=False)
        assert msg == ERROR_MESSAGES["database"]

    def test_paths_hidden(self):
        msg = sanitize_error_message('File "/home/app/api/cascade.py", line 12', log_original=False)
        assert msg == ERROR_MESSAGES["general"]

    def test_short_safe_message_kept(self):
        assert sanitize_error_message("Tag name cannot be empty", log_original=False) == "Tag name cannot be empty"

    def test_sanitize_item_error(self):
        assert sanitize_item_error("travel", "Tag not found") == "travel: Tag not found"


class TestItemErrors:
    """Engine error dicts become client-safe ItemError models."""

    def test_item_key_and_message(self):
        errors = item_errors([{"tag_id": "3", "error": "Tag not found"}])
        assert errors[0].item == "3"
        assert errors[0].error == "Tag not found"

    def test_internal_message_sanitized(self):
        errors = item_errors([{"name": "travel", "error": "UNIQUE constraint failed: tags.name"}])
        assert errors[0].item == "travel"
        assert errors[0].error == ERROR_MESSAGES["conflict"]
