"""
Writers for the likes, comments and video_views fact tables.

Each writer inserts or deletes its own fact row and then adjusts the matching
cached counter on videos through api.counters (read-then-write, floored at
zero). A fact write that hits an existing (video, user) pair is a no-op, so
repeated likes or views never inflate the counters.
"""

import logging
from typing import Optional

import sqlalchemy as sa

from api import counters
from api.database import comments, likes, users, video_views, videos
from api.db_retry import ConflictError, db_execute_with_retry, db_insert, fetch_one_with_retry, fetch_val_with_retry
from api.enums import VideoCounter
from api.errors import InputValidationError, NotFoundError
from config import MAX_COMMENT_LENGTH

logger = logging.getLogger(__name__)


async def _require_video(video_id: int) -> None:
    if await fetch_val_with_retry(sa.select(videos.c.id).where(videos.c.id == video_id)) is None:
        raise NotFoundError(f"Video {video_id} not found")


async def _require_user(user_id: int) -> None:
    if await fetch_val_with_retry(sa.select(users.c.id).where(users.c.id == user_id)) is None:
        raise NotFoundError(f"User {user_id} not found")


async def _current(video_id: int, counter: VideoCounter) -> int:
    return await counters.get_video_counter(video_id, counter) or 0


# =============================================================================
# Likes
# =============================================================================


async def like_video(video_id: int, user_id: int) -> dict:
    """Record a like; liking twice changes nothing."""
    await _require_video(video_id)
    await _require_user(user_id)
    existing = await fetch_one_with_retry(
        likes.select().where(sa.and_(likes.c.video_id == video_id, likes.c.user_id == user_id))
    )
    if existing:
        return {"liked": True, "changed": False, "likes_count": await _current(video_id, VideoCounter.LIKES)}

    try:
        await db_insert(likes.insert().values(video_id=video_id, user_id=user_id), table="likes")
    except ConflictError:
        # Double-click from the same user; the first request owns the increment
        return {"liked": True, "changed": False, "likes_count": await _current(video_id, VideoCounter.LIKES)}

    count = await counters.increment_video_counter(video_id, VideoCounter.LIKES)
    return {"liked": True, "changed": True, "likes_count": count}


async def unlike_video(video_id: int, user_id: int) -> dict:
    await _require_video(video_id)
    existing = await fetch_one_with_retry(
        likes.select().where(sa.and_(likes.c.video_id == video_id, likes.c.user_id == user_id))
    )
    if not existing:
        return {"liked": False, "changed": False, "likes_count": await _current(video_id, VideoCounter.LIKES)}

    await db_execute_with_retry(likes.delete().where(likes.c.id == existing["id"]))
    count = await counters.decrement_video_counter(video_id, VideoCounter.LIKES)
    return {"liked": False, "changed": True, "likes_count": count}


# =============================================================================
# Comments
# =============================================================================


async def add_comment(video_id: int, user_id: int, content: str) -> dict:
    """
    Store a comment and bump comments_count.

    Raises:
        InputValidationError: If content is blank or longer than MAX_COMMENT_LENGTH
        NotFoundError: If the video or the author does not exist
    """
    text = (content or "").strip()
    if not text:
        raise InputValidationError("Comment cannot be empty")
    if len(text) > MAX_COMMENT_LENGTH:
        raise InputValidationError(f"Comment exceeds {MAX_COMMENT_LENGTH} characters")

    await _require_video(video_id)
    await _require_user(user_id)
    comment_id = await db_execute_with_retry(
        comments.insert().values(video_id=video_id, user_id=user_id, content=text)
    )
    count = await counters.increment_video_counter(video_id, VideoCounter.COMMENTS)
    return {"id": comment_id, "video_id": video_id, "comments_count": count}


async def delete_comment(comment_id: int, user_id: Optional[int] = None) -> dict:
    """
    Delete a comment and decrement its video's comments_count.

    When user_id is given, only the comment's author may delete it.

    Raises:
        NotFoundError: If the comment does not exist
        PermissionError: If user_id is given and is not the author
    """
    comment = await fetch_one_with_retry(comments.select().where(comments.c.id == comment_id))
    if comment is None:
        raise NotFoundError(f"Comment {comment_id} not found")
    if user_id is not None and comment["user_id"] != user_id:
        raise PermissionError("Only the author can delete this comment")

    await db_execute_with_retry(comments.delete().where(comments.c.id == comment_id))
    count = await counters.decrement_video_counter(comment["video_id"], VideoCounter.COMMENTS)
    return {"id": comment_id, "video_id": comment["video_id"], "comments_count": count}


# =============================================================================
# Views
# =============================================================================


async def record_view(video_id: int, user_id: Optional[int] = None) -> dict:
    """
    Count a view once per (video, user).

    Anonymous views are not recorded, and a repeat view by the same user is ignored.
    """
    await _require_video(video_id)
    if user_id is None:
        return {"recorded": False, "views_count": await _current(video_id, VideoCounter.VIEWS)}
    await _require_user(user_id)

    try:
        await db_insert(video_views.insert().values(video_id=video_id, user_id=user_id), table="video_views")
    except ConflictError:
        return {"recorded": False, "views_count": await _current(video_id, VideoCounter.VIEWS)}

    count = await counters.increment_video_counter(video_id, VideoCounter.VIEWS)
    return {"recorded": True, "views_count": count}
