"""
Cascading deletes for videos, tags and users.

Nothing here relies on database-level ON DELETE CASCADE or on multi-statement
transactions. Each operation is an ordered sequence of idempotent steps:

Videos: count links per tag -> delete links -> decrement each tag's
usage_count by its count (floored at zero) -> delete the video rows.
Links and their counter effects are retired before the videos disappear, so an
interruption leaves at worst stale, non-negative counters that
api.reconcile can repair. Fact rows (likes, comments, views) belong to the
caller and are removed with delete_video_facts() before delete_videos().

Tags: per tag, count links (for reporting) -> delete links -> delete the tag.
No other counter changes because the tag itself is gone.

Users: delete owned videos through the video cascade, retract the user's
likes, comments and views on other videos, detach creator/assigner
attribution, then delete the user row.
"""

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, Iterable, List

import sqlalchemy as sa

from api import counters, link_store
from api.database import comments, likes, tags, users, video_tags, video_views, videos
from api.db_retry import DatabaseRetryableError, db_execute_with_retry, fetch_all_with_retry, fetch_one_with_retry
from api.enums import BatchStatus, VideoCounter
from api.errors import InputValidationError
from api.metrics import CASCADE_DELETES_TOTAL
from config import MAX_BULK_ITEMS

logger = logging.getLogger(__name__)


def validate_ids(ids: Iterable[int], label: str = "id") -> List[int]:
    """
    Check an id list before any store access and drop duplicates, keeping order.

    Raises:
        InputValidationError: If the list is empty, too long, or holds non-positive
            or non-integer values
    """
    if ids is None:
        raise InputValidationError(f"At least one {label} is required")
    result = []
    for value in ids:
        if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
            raise InputValidationError(f"Invalid {label}: {value!r}")
        if value not in result:
            result.append(value)
    if not result:
        raise InputValidationError(f"At least one {label} is required")
    if len(result) > MAX_BULK_ITEMS:
        raise InputValidationError(f"Cannot process more than {MAX_BULK_ITEMS} items at once")
    return result


@dataclass
class VideoDeletionResult:
    deleted_count: int = 0
    updated_tags: Dict[int, int] = field(default_factory=dict)  # tag_id -> usage_count written
    errors: List[Dict[str, str]] = field(default_factory=list)

    @property
    def status(self) -> BatchStatus:
        return BatchStatus.from_counts(self.deleted_count + len(self.updated_tags), len(self.errors))

    def to_dict(self) -> dict:
        return {
            "deleted_count": self.deleted_count,
            "updated_tags": len(self.updated_tags),
            "errors": list(self.errors),
            "status": self.status.value,
        }


@dataclass
class TagDeletionResult:
    deleted_count: int = 0
    deleted_connections: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)

    @property
    def status(self) -> BatchStatus:
        return BatchStatus.from_counts(self.deleted_count, len(self.errors))

    def to_dict(self) -> dict:
        return {
            "deleted_count": self.deleted_count,
            "deleted_connections": self.deleted_connections,
            "errors": list(self.errors),
            "status": self.status.value,
        }


@dataclass
class UserDeletionResult:
    deleted_count: int = 0
    deleted_videos: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)

    @property
    def status(self) -> BatchStatus:
        return BatchStatus.from_counts(self.deleted_count, len(self.errors))

    def to_dict(self) -> dict:
        return {
            "deleted_count": self.deleted_count,
            "deleted_videos": self.deleted_videos,
            "errors": list(self.errors),
            "status": self.status.value,
        }


# =============================================================================
# Videos
# =============================================================================


async def delete_video_facts(video_ids: Iterable[int]) -> None:
    """
    Remove likes, comments and views for the given videos.

    The video counters are not touched: the videos themselves are about to go.

    Raises:
        InputValidationError: If any id is malformed; nothing is deleted then
    """
    ids = list(video_ids)
    if not ids:
        return
    ids = validate_ids(ids, "video id")
    await db_execute_with_retry(likes.delete().where(likes.c.video_id.in_(ids)))
    await db_execute_with_retry(comments.delete().where(comments.c.video_id.in_(ids)))
    await db_execute_with_retry(video_views.delete().where(video_views.c.video_id.in_(ids)))


async def delete_videos(video_ids: Iterable[int]) -> VideoDeletionResult:
    """
    Delete videos together with their tag links.

    Every affected tag's usage_count is decreased by exactly the number of
    links removed for it, floored at zero. Ids that do not exist are ignored,
    so repeating a partially applied call is safe.

    Raises:
        InputValidationError: If video_ids is empty or malformed
        DatabaseRetryableError: If the store stays unavailable mid-sequence
    """
    ids = validate_ids(video_ids, "video id")
    result = VideoDeletionResult()

    existing = await fetch_all_with_retry(sa.select(videos.c.id).where(videos.c.id.in_(ids)))
    existing_ids = [row["id"] for row in existing]

    # 1. How many of these videos each tag is linked to
    deltas = await link_store.count_links_by_videos(ids)

    # 2. Retire the links
    await link_store.delete_links_by_videos(ids)

    # 3. Adjust every affected tag by its own delta
    for tag_id, delta in deltas.items():
        try:
            written = await counters.decrement_tag_usage(tag_id, by=delta)
        except DatabaseRetryableError:
            raise
        except Exception as e:
            logger.warning(f"Failed to decrement usage_count for tag {tag_id} by {delta}: {e}")
            result.errors.append({"tag_id": str(tag_id), "error": str(e)})
            continue
        if written is not None:
            result.updated_tags[tag_id] = written

    # 4. Remove the videos
    if existing_ids:
        await db_execute_with_retry(videos.delete().where(videos.c.id.in_(existing_ids)))
    result.deleted_count = len(existing_ids)
    CASCADE_DELETES_TOTAL.labels(entity="video").inc(result.deleted_count)

    logger.info(
        f"Deleted {result.deleted_count} video(s), adjusted {len(result.updated_tags)} tag counter(s), "
        f"{len(result.errors)} error(s)"
    )
    return result


# =============================================================================
# Tags
# =============================================================================


async def delete_tags(tag_ids: Iterable[int]) -> TagDeletionResult:
    """
    Delete tags together with all their links, one tag at a time.

    A failure on one tag is recorded in `errors` and does not block the others.

    Raises:
        InputValidationError: If tag_ids is empty or malformed
    """
    ids = validate_ids(tag_ids, "tag id")
    result = TagDeletionResult()

    for tag_id in ids:
        try:
            tag = await fetch_one_with_retry(tags.select().where(tags.c.id == tag_id))
            if tag is None:
                result.errors.append({"tag_id": str(tag_id), "error": "Tag not found"})
                continue
            connections = await link_store.count_links_by_tag(tag_id)
            await link_store.delete_links_by_tag(tag_id)
            await db_execute_with_retry(tags.delete().where(tags.c.id == tag_id))
        except DatabaseRetryableError:
            raise
        except Exception as e:
            logger.warning(f"Failed to delete tag {tag_id}: {e}")
            result.errors.append({"tag_id": str(tag_id), "error": str(e)})
            continue

        result.deleted_count += 1
        result.deleted_connections += connections
        logger.info(f"Deleted tag {tag_id} ('{tag['name']}') and {connections} video link(s)")

    CASCADE_DELETES_TOTAL.labels(entity="tag").inc(result.deleted_count)
    return result


# =============================================================================
# Users
# =============================================================================


async def _retract_facts(table: sa.Table, counter: VideoCounter, user_id: int) -> None:
    """Delete one user's fact rows and decrement each affected video's counter."""
    rows = await fetch_all_with_retry(sa.select(table.c.video_id).where(table.c.user_id == user_id))
    per_video = Counter(row["video_id"] for row in rows)
    await db_execute_with_retry(table.delete().where(table.c.user_id == user_id))
    for video_id, delta in per_video.items():
        await counters.decrement_video_counter(video_id, counter, by=delta)


async def _delete_one_user(user_id: int) -> int:
    """Run the user cascade; returns how many owned videos were deleted."""
    owned = await fetch_all_with_retry(sa.select(videos.c.id).where(videos.c.user_id == user_id))
    owned_ids = [row["id"] for row in owned]

    deleted_videos = 0
    for start in range(0, len(owned_ids), MAX_BULK_ITEMS):
        chunk = owned_ids[start:start + MAX_BULK_ITEMS]
        await delete_video_facts(chunk)
        deleted_videos += (await delete_videos(chunk)).deleted_count

    await _retract_facts(likes, VideoCounter.LIKES, user_id)
    await _retract_facts(comments, VideoCounter.COMMENTS, user_id)
    await _retract_facts(video_views, VideoCounter.VIEWS, user_id)

    # Tags and links outlive the user who created them
    await db_execute_with_retry(tags.update().where(tags.c.user_id == user_id).values(user_id=None))
    await db_execute_with_retry(
        video_tags.update().where(video_tags.c.assigned_by == user_id).values(assigned_by=None)
    )

    await db_execute_with_retry(users.delete().where(users.c.id == user_id))
    return deleted_videos


async def delete_users(user_ids: Iterable[int]) -> UserDeletionResult:
    """
    Delete users and everything that hangs off them.

    Raises:
        InputValidationError: If user_ids is empty or malformed
    """
    ids = validate_ids(user_ids, "user id")
    result = UserDeletionResult()

    for user_id in ids:
        try:
            user = await fetch_one_with_retry(sa.select(users.c.id).where(users.c.id == user_id))
            if user is None:
                result.errors.append({"user_id": str(user_id), "error": "User not found"})
                continue
            deleted_videos = await _delete_one_user(user_id)
        except DatabaseRetryableError:
            raise
        except Exception as e:
            logger.warning(f"Failed to delete user {user_id}: {e}")
            result.errors.append({"user_id": str(user_id), "error": str(e)})
            continue

        result.deleted_count += 1
        result.deleted_videos += deleted_videos
        logger.info(f"Deleted user {user_id} with {deleted_videos} video(s)")

    CASCADE_DELETES_TOTAL.labels(entity="user").inc(result.deleted_count)
    return result
