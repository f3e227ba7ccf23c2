"""
Counter repository for the denormalized counts on tags and videos.

tags.usage_count caches count(video_tags) per tag; videos.likes_count,
comments_count and views_count cache counts of the likes, comments and
video_views fact tables. Every adjustment is a read followed by a separate
write, so two concurrent adjustments of the same row can lose an update.
Decrements clamp at zero, and api.reconcile restores exact values on demand.
"""

import logging
from typing import Optional

import sqlalchemy as sa

from api.database import tags, videos
from api.db_retry import db_execute_with_retry, fetch_val_with_retry
from api.enums import VideoCounter
from api.metrics import COUNTER_FLOOR_CLAMPS_TOTAL

logger = logging.getLogger(__name__)


def _video_column(counter: VideoCounter) -> sa.Column:
    return videos.c[VideoCounter(counter).value]


async def _read(table: sa.Table, column: sa.Column, row_id: int) -> Optional[int]:
    return await fetch_val_with_retry(sa.select(column).where(table.c.id == row_id))


async def _write(table: sa.Table, column: sa.Column, row_id: int, value: int) -> None:
    await db_execute_with_retry(table.update().where(table.c.id == row_id).values({column.name: value}))


async def _adjust(table: sa.Table, column: sa.Column, row_id: int, delta: int) -> Optional[int]:
    """
    Read the counter, add delta, and write back the result floored at zero.

    Returns:
        The value written, or None if the row does not exist (nothing is written)
    """
    current = await _read(table, column, row_id)
    if current is None:
        logger.warning(f"Cannot adjust {table.name}.{column.name}: row {row_id} not found")
        return None

    new_value = current + delta
    if new_value < 0:
        COUNTER_FLOOR_CLAMPS_TOTAL.labels(counter=column.name).inc()
        logger.warning(
            f"{table.name}.{column.name} for id={row_id} would drop to {new_value}; clamping at 0 "
            f"(counter drifted, reconciliation will repair)"
        )
        new_value = 0

    await _write(table, column, row_id, new_value)
    return new_value


# =============================================================================
# tags.usage_count
# =============================================================================


async def get_tag_usage(tag_id: int) -> Optional[int]:
    return await _read(tags, tags.c.usage_count, tag_id)


async def set_tag_usage(tag_id: int, value: int) -> None:
    """Overwrite usage_count. Used by reconciliation; negative values are rejected."""
    if value < 0:
        raise ValueError(f"usage_count cannot be negative: {value}")
    await _write(tags, tags.c.usage_count, tag_id, value)


async def increment_tag_usage(tag_id: int, by: int = 1) -> Optional[int]:
    return await _adjust(tags, tags.c.usage_count, tag_id, by)


async def decrement_tag_usage(tag_id: int, by: int = 1) -> Optional[int]:
    """Decrease usage_count by `by`, never below zero."""
    return await _adjust(tags, tags.c.usage_count, tag_id, -by)


# =============================================================================
# videos.likes_count / comments_count / views_count
# =============================================================================


async def get_video_counter(video_id: int, counter: VideoCounter) -> Optional[int]:
    return await _read(videos, _video_column(counter), video_id)


async def set_video_counter(video_id: int, counter: VideoCounter, value: int) -> None:
    if value < 0:
        raise ValueError(f"{VideoCounter(counter).value} cannot be negative: {value}")
    await _write(videos, _video_column(counter), video_id, value)


async def increment_video_counter(video_id: int, counter: VideoCounter, by: int = 1) -> Optional[int]:
    return await _adjust(videos, _video_column(counter), video_id, by)


async def decrement_video_counter(video_id: int, counter: VideoCounter, by: int = 1) -> Optional[int]:
    return await _adjust(videos, _video_column(counter), video_id, -by)
