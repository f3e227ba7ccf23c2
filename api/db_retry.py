"""
Bounded retries for transient store failures.

Every read and write in the consistency engine goes through the wrappers at the
bottom of this module. A failure is retried with jittered exponential backoff
when it looks like contention or a dropped connection:

SQLite: "database is locked", SQLITE_BUSY, SQLITE_LOCKED.
PostgreSQL: deadlock (40P01), serialization failure (40001), lock timeouts,
refused or reset connections.

When the budget runs out the caller gets DatabaseRetryableError, which the API
maps to 503. A uniqueness violation is a different animal: the same insert
will never succeed, so db_insert turns it into ConflictError for the callers
that own that race (tag resolution, identity upsert) to resolve by lookup.
"""

import asyncio
import logging
import random
import time
from typing import Any, Callable, Optional, TypeVar

from api.errors import is_unique_violation
from api.metrics import DB_CONFLICTS_TOTAL, DB_QUERY_RETRIES_TOTAL
from config import DB_MAX_RETRIES, DB_RETRY_BASE_DELAY, DB_RETRY_MAX_DELAY

logger = logging.getLogger(__name__)

# Seconds before a single statement is reported as slow
SLOW_QUERY_THRESHOLD = 1.0

T = TypeVar("T")

DEFAULT_MAX_RETRIES = DB_MAX_RETRIES
DEFAULT_BASE_DELAY = DB_RETRY_BASE_DELAY
DEFAULT_MAX_DELAY = DB_RETRY_MAX_DELAY
BACKOFF_FACTOR = 2


class DatabaseRetryableError(Exception):
    """The store stayed unavailable for the whole retry budget."""


class ConflictError(Exception):
    """
    An insert lost a uniqueness race.

    Kept apart from transient and fatal store errors so retry policies can
    match on it precisely.
    """

    def __init__(self, message: str, table: Optional[str] = None, column: Optional[str] = None):
        super().__init__(message)
        self.table = table
        self.column = column


_TRANSIENT_MESSAGES = (
    # SQLite
    "database is locked",
    "database table is locked",
    "sqlite_busy",
    "sqlite_locked",
    # PostgreSQL
    "deadlock detected",
    "could not serialize access",
    "could not obtain lock",
    "lock timeout",
    "canceling statement due to lock timeout",
    "connection refused",
    "connection reset",
    "server closed the connection unexpectedly",
)

_TRANSIENT_SQLSTATES = frozenset({"40P01", "40001"})


def is_retryable_database_error(exc: BaseException) -> bool:
    """True for contention and connection failures; never for uniqueness violations."""
    if isinstance(exc, ConflictError) or is_unique_violation(exc):
        return False

    message = str(exc).lower()
    if any(fragment in message for fragment in _TRANSIENT_MESSAGES):
        return True
    if getattr(exc, "sqlstate", None) in _TRANSIENT_SQLSTATES:
        return True

    # databases re-raises driver errors, so the real cause may be one level down
    cause = exc.__cause__
    return cause is not None and is_retryable_database_error(cause)


def _backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Exponential backoff capped at max_delay, spread by +/-25% jitter."""
    delay = min(base_delay * (BACKOFF_FACTOR**attempt), max_delay)
    spread = delay * 0.25 * (2 * random.random() - 1)
    return max(0.01, delay + spread)


async def execute_with_retry(
    func: Callable,
    *args,
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
    **kwargs,
) -> T:
    """
    Await func(*args, **kwargs), retrying transient store failures.

    A call makes at most max_retries + 1 attempts. Anything that is not
    transient propagates from the first attempt unchanged.

    Raises:
        DatabaseRetryableError: Every attempt failed transiently
    """
    attempts = max_retries + 1
    last_error: Optional[BaseException] = None

    for attempt in range(attempts):
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            if not is_retryable_database_error(e):
                raise
            last_error = e

        if attempt + 1 < attempts:
            delay = _backoff_delay(attempt, base_delay, max_delay)
            DB_QUERY_RETRIES_TOTAL.inc()
            logger.warning(
                f"Transient store error on attempt {attempt + 1}/{attempts}, next try in {delay:.2f}s: {last_error}"
            )
            await asyncio.sleep(delay)

    logger.error(f"Store still failing after {attempts} attempts: {last_error}")
    raise DatabaseRetryableError(f"Database operation failed after {attempts} attempts: {last_error}")


# =============================================================================
# Query wrappers
# =============================================================================


async def _timed(method: str, query, values: Optional[dict] = None) -> Any:
    """Run one databases call against the current global Database, logging slow queries."""
    from api.database import database

    started = time.monotonic()
    call = getattr(database, method)
    if values is not None:
        result = await call(query, values)
    else:
        result = await call(query)
    elapsed = time.monotonic() - started
    if elapsed >= SLOW_QUERY_THRESHOLD:
        logger.warning(f"Slow query ({elapsed:.2f}s): {str(query)[:500]}")
    return result


async def fetch_one_with_retry(query, max_retries: int = DEFAULT_MAX_RETRIES):
    """Execute a fetch_one query with retry; returns a single row or None."""
    return await execute_with_retry(_timed, "fetch_one", query, max_retries=max_retries)


async def fetch_all_with_retry(query, max_retries: int = DEFAULT_MAX_RETRIES):
    """Execute a fetch_all query with retry; returns a list of rows."""
    return await execute_with_retry(_timed, "fetch_all", query, max_retries=max_retries)


async def fetch_val_with_retry(query, max_retries: int = DEFAULT_MAX_RETRIES):
    """Execute a fetch_val query with retry; returns a scalar or None."""
    return await execute_with_retry(_timed, "fetch_val", query, max_retries=max_retries)


async def db_execute_with_retry(query, values=None, max_retries: int = DEFAULT_MAX_RETRIES):
    """
    Run a write statement (insert, update, delete) with retries.

    Returns:
        Whatever databases returns; the new row id for inserts

    Raises:
        DatabaseRetryableError: If all retries are exhausted
    """
    return await execute_with_retry(_timed, "execute", query, values, max_retries=max_retries)


async def db_insert(query, table: Optional[str] = None, column: Optional[str] = None):
    """
    Execute an INSERT whose uniqueness constraint may be raced by another request.

    Transient errors are retried like any other write. A uniqueness violation is
    translated into ConflictError and never retried here.

    Args:
        query: SQLAlchemy insert statement
        table: Table name, recorded on the ConflictError
        column: Column guarded by the unique constraint, if known

    Returns:
        The new row id

    Raises:
        ConflictError: If the insert violated a unique constraint
        DatabaseRetryableError: If all retries are exhausted
    """
    try:
        return await db_execute_with_retry(query)
    except DatabaseRetryableError:
        raise
    except Exception as e:
        if is_unique_violation(e):
            DB_CONFLICTS_TOTAL.labels(table=table or "unknown").inc()
            raise ConflictError(f"Unique constraint conflict on {table or 'row'}", table=table, column=column) from e
        raise
