"""
Error handling utilities for sanitizing error messages and classifying store errors.

Prevents internal implementation details from being exposed to API clients
while still logging detailed errors for debugging.
"""
import logging
import re
from typing import Optional

logger = logging.getLogger(__name__)

# Patterns that indicate internal details
INTERNAL_PATTERNS = [
    r'/home/\w+/',           # Home directory paths
    r'/var/\w+/',            # Var paths
    r'/tmp/\w+',             # Temp paths
    r'line \d+',             # Line numbers in stack traces
    r'File "[^"]+\.py"',     # Python file paths
    r'Permission denied',    # System errors
    r'UNIQUE constraint failed',   # Database internals
    r'FOREIGN KEY constraint failed',
    r'duplicate key value',  # PostgreSQL unique violation text
    r'sqlite3?\.',           # SQLite details
    r'asyncpg\.',            # asyncpg exception paths
]

# Generic user-friendly messages for common error types
ERROR_MESSAGES = {
    "conflict": "The item was modified concurrently. Please retry.",
    "not_found": "The requested item was not found.",
    "database": "A database error occurred. Please try again.",
    "general": "An error occurred while processing your request. Please try again.",
}

# PostgreSQL SQLSTATE for unique_violation
UNIQUE_VIOLATION_SQLSTATE = "23505"


class InputValidationError(ValueError):
    """Raised before touching the store when ids or names are empty or malformed."""

    pass


class NotFoundError(LookupError):
    """Raised when the entity an operation targets does not exist."""

    pass


def truncate_string(value: Optional[str], max_length: int) -> Optional[str]:
    """Truncate a string to max_length, marking the cut with an ellipsis."""
    if value is None or len(value) <= max_length:
        return value
    if max_length <= 3:
        return value[:max_length]
    return value[: max_length - 3] + "..."


def is_unique_violation(exc: BaseException, column: Optional[str] = None) -> bool:
    """
    Check if an exception is a uniqueness constraint violation.

    Works with both SQLite ("UNIQUE constraint failed: users.external_id") and
    PostgreSQL (SQLSTATE 23505, "duplicate key value violates unique constraint").
    The databases library wraps driver exceptions, so __cause__ is inspected too.

    Args:
        exc: The exception raised by the store
        column: Optional column name; when given, the violation must mention it

    Returns:
        True if the exception is a unique violation (on the given column, if any)
    """
    error_str = str(exc).lower()

    matched = False
    if "unique constraint failed" in error_str:
        matched = True
    elif "duplicate key value" in error_str or "unique constraint" in error_str:
        matched = True
    elif getattr(exc, "sqlstate", None) == UNIQUE_VIOLATION_SQLSTATE:
        matched = True
    elif getattr(exc, "pgcode", None) == UNIQUE_VIOLATION_SQLSTATE:
        matched = True

    if matched:
        if column is None:
            return True
        # PostgreSQL messages name the constraint rather than the column, and the
        # detail line carries "Key (column)=(value)". Accept either form.
        return column.lower() in error_str or column.lower() in str(getattr(exc, "detail", "")).lower()

    cause = getattr(exc, "__cause__", None)
    if cause is not None and cause is not exc:
        return is_unique_violation(cause, column=column)

    return False


def sanitize_error_message(
    error: Optional[str],
    log_original: bool = True,
    context: str = ""
) -> Optional[str]:
    """
    Sanitize an error message for safe display to API clients.

    Args:
        error: The original error message (may contain internal details)
        log_original: Whether to log the original message before sanitizing
        context: Additional context for logging (e.g., "tag_id=123")

    Returns:
        A sanitized, user-friendly error message, or None if input was None
    """
    if error is None:
        return None

    if log_original and error:
        log_msg = "Original error"
        if context:
            log_msg += f" ({context})"
        log_msg += f": {error}"
        logger.warning(log_msg)

    error_lower = error.lower()

    if "unique constraint" in error_lower or "duplicate key" in error_lower:
        return ERROR_MESSAGES["conflict"]

    if "not found" in error_lower and len(error) < 100:
        return error

    if "sqlite" in error_lower or "database" in error_lower or "constraint" in error_lower:
        return ERROR_MESSAGES["database"]

    for pattern in INTERNAL_PATTERNS:
        if re.search(pattern, error, re.IGNORECASE):
            return ERROR_MESSAGES["general"]

    # If the error message is short and doesn't match patterns, it might be safe
    if len(error) < 100 and "/" not in error and "\\" not in error:
        return error

    return ERROR_MESSAGES["general"]


def sanitize_item_error(item: str, error: str) -> str:
    """Sanitize a per-item batch error of the form "<item>: <message>"."""
    return f"{item}: {sanitize_error_message(error, log_original=False)}"
