"""
Attach tag names to a video.

Each name is handled independently: resolve (or create) the tag, skip it if
the video already carries it, otherwise insert the link and bump the tag's
usage_count. There is no transaction around the batch. Re-running the same
call is safe because an existing link makes the name a no-op.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import sqlalchemy as sa

from api import counters, link_store
from api.database import videos
from api.db_retry import ConflictError, DatabaseRetryableError, fetch_val_with_retry
from api.enums import BatchStatus, ItemOutcome
from api.errors import InputValidationError, NotFoundError
from api.metrics import TAG_ASSIGNMENTS_TOTAL
from api.tag_resolver import resolve_tag
from config import MAX_TAGS_PER_VIDEO

logger = logging.getLogger(__name__)


@dataclass
class AssignmentResult:
    """Per-batch outcome of assign_tags."""

    created: int = 0  # tags created by this call
    assigned: int = 0  # links created by this call
    skipped: int = 0  # names whose link already existed
    errors: List[Dict[str, str]] = field(default_factory=list)
    outcomes: Dict[str, ItemOutcome] = field(default_factory=dict)

    @property
    def status(self) -> BatchStatus:
        return BatchStatus.from_counts(self.assigned + self.skipped, len(self.errors))

    def to_dict(self) -> dict:
        return {
            "created": self.created,
            "assigned": self.assigned,
            "skipped": self.skipped,
            "errors": list(self.errors),
            "status": self.status.value,
        }


async def _assign_one(video_id: int, name: str, user_id: Optional[int], result: AssignmentResult) -> ItemOutcome:
    tag, created = await resolve_tag(name, creator_id=user_id)
    if created:
        result.created += 1

    if await link_store.get_link(video_id, tag["id"]):
        return ItemOutcome.SKIPPED

    try:
        await link_store.create_link(video_id, tag["id"], assigned_by=user_id)
    except ConflictError:
        # A concurrent assignment linked the same pair first and owns the increment
        return ItemOutcome.SKIPPED

    await counters.increment_tag_usage(tag["id"])
    return ItemOutcome.ASSIGNED


async def assign_tags(video_id: int, tag_names: List[str], user_id: Optional[int] = None) -> AssignmentResult:
    """
    Attach each of tag_names to a video.

    A failure on one name is recorded in `errors` and does not stop the others.

    Args:
        video_id: Target video
        tag_names: Raw tag names; compared case- and whitespace-insensitively
        user_id: User performing the assignment (tag creator and link attribution)

    Returns:
        AssignmentResult with created/assigned/skipped counts and per-name errors

    Raises:
        InputValidationError: If tag_names is empty or exceeds MAX_TAGS_PER_VIDEO
        NotFoundError: If the video does not exist
        DatabaseRetryableError: If the store stays unavailable; names already
            processed keep their effects and a retry of the call is safe
    """
    if not tag_names:
        raise InputValidationError("At least one tag name is required")
    if len(tag_names) > MAX_TAGS_PER_VIDEO:
        raise InputValidationError(f"Cannot assign more than {MAX_TAGS_PER_VIDEO} tags at once")

    if await fetch_val_with_retry(sa.select(videos.c.id).where(videos.c.id == video_id)) is None:
        raise NotFoundError(f"Video {video_id} not found")

    result = AssignmentResult()

    for name in tag_names:
        try:
            outcome = await _assign_one(video_id, name, user_id, result)
        except DatabaseRetryableError:
            raise
        except Exception as e:
            logger.warning(f"Failed to assign tag '{name}' to video {video_id}: {e}")
            outcome = ItemOutcome.FAILED
            result.errors.append({"name": str(name), "error": str(e)})

        if outcome == ItemOutcome.ASSIGNED:
            result.assigned += 1
        elif outcome == ItemOutcome.SKIPPED:
            result.skipped += 1
        result.outcomes[str(name)] = outcome
        TAG_ASSIGNMENTS_TOTAL.labels(result=outcome.value).inc()

    logger.info(
        f"Tag assignment for video {video_id}: created={result.created} assigned={result.assigned} "
        f"skipped={result.skipped} failed={len(result.errors)}"
    )
    return result
