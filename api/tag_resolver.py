"""
Case-insensitive get-or-create for tags.

Tag names are stored under a normalization key (trimmed, lower-cased). The
unique constraint on tags.name turns a concurrent first use of the same name
into a ConflictError for the losing request, which then re-reads the row the
winner created.
"""

import logging
from typing import Optional

from api.database import tags
from api.db_retry import ConflictError, db_insert, fetch_one_with_retry
from api.errors import InputValidationError
from api.metrics import TAGS_CREATED_TOTAL
from config import MAX_TAG_LENGTH

logger = logging.getLogger(__name__)


def normalize_tag_name(name: str) -> str:
    """
    Normalize a tag name for lookup and storage.

    Raises:
        InputValidationError: If the name is not a string, is blank, or is too long
    """
    if not isinstance(name, str):
        raise InputValidationError("Tag name must be a string")
    key = name.strip().lower()
    if not key:
        raise InputValidationError("Tag name cannot be empty")
    if len(key) > MAX_TAG_LENGTH:
        raise InputValidationError(f"Tag name exceeds {MAX_TAG_LENGTH} characters")
    return key


async def get_tag_by_name(name: str):
    return await fetch_one_with_retry(tags.select().where(tags.c.name == normalize_tag_name(name)))


async def resolve_tag(name: str, creator_id: Optional[int] = None):
    """
    Return the tag row for `name`, creating it with usage_count=0 if missing.

    On a hit the existing row is returned unchanged and creator_id is ignored.

    Returns:
        A tuple of (tag row, created) where created is True only for the call
        whose insert actually produced the row.

    Raises:
        InputValidationError: If the name is blank or too long
    """
    key = normalize_tag_name(name)

    existing = await fetch_one_with_retry(tags.select().where(tags.c.name == key))
    if existing:
        return existing, False

    try:
        tag_id = await db_insert(
            tags.insert().values(name=key, usage_count=0, user_id=creator_id),
            table="tags",
            column="name",
        )
    except ConflictError:
        # A concurrent request created the same tag between our lookup and insert
        logger.info(f"Tag '{key}' was created concurrently, re-reading")
        winner = await fetch_one_with_retry(tags.select().where(tags.c.name == key))
        if winner is None:
            # Winner was deleted again before we could read it
            raise
        return winner, False

    TAGS_CREATED_TOTAL.inc()
    created = await fetch_one_with_retry(tags.select().where(tags.c.id == tag_id))
    return created, True
