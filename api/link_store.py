"""
CRUD over the video_tags junction table.

The junction table is the ground truth for tags.usage_count. Every function here
is a single store round-trip; callers compose them into idempotent sequences.
"""

import logging
from typing import Dict, Iterable, List, Optional

import sqlalchemy as sa

from api.database import tags, video_tags
from api.db_retry import (
    db_execute_with_retry,
    db_insert,
    fetch_all_with_retry,
    fetch_one_with_retry,
    fetch_val_with_retry,
)

logger = logging.getLogger(__name__)


async def get_link(video_id: int, tag_id: int):
    """Return the link row for (video_id, tag_id), or None."""
    return await fetch_one_with_retry(
        video_tags.select().where(
            sa.and_(video_tags.c.video_id == video_id, video_tags.c.tag_id == tag_id)
        )
    )


async def create_link(video_id: int, tag_id: int, assigned_by: Optional[int] = None) -> int:
    """
    Insert a link row and return its id.

    Raises:
        ConflictError: If the (video_id, tag_id) pair already exists
    """
    return await db_insert(
        video_tags.insert().values(video_id=video_id, tag_id=tag_id, assigned_by=assigned_by),
        table="video_tags",
        column="video_id",
    )


async def delete_links_by_videos(video_ids: Iterable[int]) -> None:
    ids = list(video_ids)
    if not ids:
        return
    await db_execute_with_retry(video_tags.delete().where(video_tags.c.video_id.in_(ids)))


async def delete_links_by_tag(tag_id: int) -> None:
    await db_execute_with_retry(video_tags.delete().where(video_tags.c.tag_id == tag_id))


async def count_links_by_tag(tag_id: int) -> int:
    count = await fetch_val_with_retry(
        sa.select(sa.func.count()).select_from(video_tags).where(video_tags.c.tag_id == tag_id)
    )
    return count or 0


async def count_links_by_videos(video_ids: Iterable[int]) -> Dict[int, int]:
    """
    Count links per tag for a set of videos in one grouped query.

    Returns:
        Mapping of tag_id to the number of the given videos linked to it.
        Tags with no link to any of the videos are absent.
    """
    ids = list(video_ids)
    if not ids:
        return {}
    rows = await fetch_all_with_retry(
        sa.select(video_tags.c.tag_id, sa.func.count().label("link_count"))
        .where(video_tags.c.video_id.in_(ids))
        .group_by(video_tags.c.tag_id)
    )
    return {row["tag_id"]: row["link_count"] for row in rows}


async def count_links_for_tags(tag_ids: Optional[List[int]] = None) -> Dict[int, int]:
    """
    Count links for each tag, straight from the junction table.

    Every requested tag appears in the result, with 0 when it has no links.
    With tag_ids=None every tag in the tags table is counted.
    """
    query = (
        sa.select(tags.c.id, sa.func.count(video_tags.c.id).label("link_count"))
        .select_from(tags.outerjoin(video_tags, video_tags.c.tag_id == tags.c.id))
        .group_by(tags.c.id)
        .order_by(tags.c.id)
    )
    if tag_ids is not None:
        query = query.where(tags.c.id.in_(tag_ids))
    rows = await fetch_all_with_retry(query)
    return {row["id"]: row["link_count"] for row in rows}


async def get_video_tags(video_id: int) -> List[dict]:
    """Return the tags linked to a video, with attribution, ordered by name."""
    rows = await fetch_all_with_retry(
        sa.select(
            tags.c.id,
            tags.c.name,
            tags.c.usage_count,
            video_tags.c.assigned_by,
            video_tags.c.created_at.label("assigned_at"),
        )
        .select_from(video_tags.join(tags, video_tags.c.tag_id == tags.c.id))
        .where(video_tags.c.video_id == video_id)
        .order_by(tags.c.name)
    )
    return [
        {
            "id": row["id"],
            "name": row["name"],
            "usage_count": row["usage_count"],
            "assigned_by": row["assigned_by"],
            "assigned_at": row["assigned_at"],
        }
        for row in rows
    ]
