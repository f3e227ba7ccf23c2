"""
Materialize a local user row from an external (OAuth) identity.

Called on every successful login. Two simultaneous first logins for the same
identity race to insert; the unique constraint on users.external_id lets
exactly one win. The loser sees a ConflictError, waits briefly, and repeats the
lookup, which now finds the winner's row.

Where the dialect supports it, a single INSERT .. ON CONFLICT DO UPDATE is
tried first. If that statement fails for any reason the lookup-or-insert loop
takes over.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Mapping

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql, sqlite

from api.database import users
from api.db_retry import ConflictError, DatabaseRetryableError, db_execute_with_retry, db_insert, fetch_one_with_retry
from api.errors import InputValidationError
from api.metrics import USER_UPSERTS_TOTAL
from config import USER_ATOMIC_UPSERT, USER_UPSERT_BACKOFF, USER_UPSERT_RETRIES

logger = logging.getLogger(__name__)

# Profile attributes copied from the identity provider
PROFILE_FIELDS = ("first_name", "last_name", "display_name", "avatar_url", "email")

_UPSERT_DIALECTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


class UserUpsertError(Exception):
    """Raised when a user row could not be materialized within the retry budget."""

    def __init__(self, external_id: str, attempts: int):
        super().__init__(f"Could not create or load user {external_id!r} after {attempts} attempt(s)")
        self.external_id = external_id
        self.attempts = attempts


def _profile_values(profile: Mapping[str, Any]) -> Dict[str, Any]:
    """Profile fields the provider actually sent; blanks never overwrite local values."""
    values = {}
    for name in PROFILE_FIELDS:
        value = profile.get(name)
        if value is None or (isinstance(value, str) and not value.strip()):
            continue
        values[name] = value
    return values


def _external_id(profile: Mapping[str, Any]) -> str:
    external_id = profile.get("external_id")
    if external_id is None or not str(external_id).strip():
        raise InputValidationError("external_id is required")
    return str(external_id).strip()


async def get_user_by_external_id(external_id: str):
    return await fetch_one_with_retry(users.select().where(users.c.external_id == external_id))


async def _merge_profile(existing, values: Dict[str, Any]):
    """Write the provider's present fields over the stored row and return the fresh row."""
    changes = {name: value for name, value in values.items() if existing[name] != value}
    await db_execute_with_retry(
        users.update()
        .where(users.c.id == existing["id"])
        .values(updated_at=datetime.now(timezone.utc), **changes)
    )
    return await fetch_one_with_retry(users.select().where(users.c.id == existing["id"]))


async def _atomic_upsert(external_id: str, values: Dict[str, Any]):
    """
    One-statement create-or-update keyed on external_id.

    Returns the row, or None when the dialect has no ON CONFLICT support.
    """
    from api.database import database

    insert = _UPSERT_DIALECTS.get(database.url.dialect)
    if insert is None:
        return None

    now = datetime.now(timezone.utc)
    stmt = insert(users).values(external_id=external_id, created_at=now, updated_at=now, **values)
    merged = {name: sa.func.coalesce(stmt.excluded[name], users.c[name]) for name in PROFILE_FIELDS}
    stmt = stmt.on_conflict_do_update(
        index_elements=[users.c.external_id],
        set_=dict(merged, updated_at=stmt.excluded.updated_at),
    )
    await db_execute_with_retry(stmt)
    return await get_user_by_external_id(external_id)


async def _lookup_or_insert(external_id: str, values: Dict[str, Any]):
    """
    Lookup-or-insert, repeated after a uniqueness conflict on external_id.

    At most USER_UPSERT_RETRIES extra rounds, sleeping USER_UPSERT_BACKOFF * n
    before round n (0.1s, then 0.2s by default).
    """
    attempts = USER_UPSERT_RETRIES + 1
    for attempt in range(attempts):
        existing = await get_user_by_external_id(external_id)
        if existing:
            USER_UPSERTS_TOTAL.labels(result="existing" if attempt == 0 else "retried").inc()
            return await _merge_profile(existing, values)

        now = datetime.now(timezone.utc)
        try:
            user_id = await db_insert(
                users.insert().values(external_id=external_id, created_at=now, updated_at=now, **values),
                table="users",
                column="external_id",
            )
        except ConflictError:
            if attempt + 1 >= attempts:
                break
            delay = USER_UPSERT_BACKOFF * (attempt + 1)
            logger.warning(
                f"Concurrent first login for {external_id!r} (attempt {attempt + 1}/{attempts}), "
                f"retrying in {delay:.1f}s"
            )
            await asyncio.sleep(delay)
            continue

        USER_UPSERTS_TOTAL.labels(result="created").inc()
        logger.info(f"Created user {user_id} for external identity {external_id!r}")
        return await fetch_one_with_retry(users.select().where(users.c.id == user_id))

    USER_UPSERTS_TOTAL.labels(result="failed").inc()
    logger.error(f"Giving up on user upsert for {external_id!r} after {attempts} attempt(s)")
    raise UserUpsertError(external_id, attempts)


async def ensure_user(profile: Mapping[str, Any]):
    """
    Return the single local user row for an external identity, creating it if needed.

    Present profile fields overwrite stored ones; absent or blank fields never
    erase stored values.

    Args:
        profile: Mapping with "external_id" and any of PROFILE_FIELDS

    Raises:
        InputValidationError: If external_id is missing or blank
        UserUpsertError: If every attempt lost a uniqueness race
        Other exceptions: Non-conflict store errors propagate unchanged
    """
    external_id = _external_id(profile)
    values = _profile_values(profile)

    if USER_ATOMIC_UPSERT:
        try:
            row = await _atomic_upsert(external_id, values)
        except DatabaseRetryableError:
            raise
        except Exception as e:
            logger.warning(f"Atomic upsert for {external_id!r} failed, falling back to lookup-or-insert: {e}")
            row = None
        if row is not None:
            USER_UPSERTS_TOTAL.labels(result="atomic").inc()
            return row

    return await _lookup_or_insert(external_id, values)
