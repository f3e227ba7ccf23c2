"""
Recompute cached counters from their source tables and overwrite them.

This is the repair (and backfill) path for counter drift: lost updates from
concurrent read-then-write adjustments, interrupted cascades, or clamped
decrements. Running it again converges to the true counts as of each read.
A concurrent assignment between our count and our write can be overwritten;
the next run fixes that too.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

import sqlalchemy as sa

from api import counters, link_store
from api.cascade import validate_ids
from api.database import comments, likes, tags, video_views, videos
from api.db_retry import DatabaseRetryableError, fetch_all_with_retry
from api.enums import BatchStatus, VideoCounter
from api.metrics import COUNTER_CORRECTIONS_TOTAL

logger = logging.getLogger(__name__)

# Source fact table for each cached video counter
FACT_TABLES = {
    VideoCounter.LIKES: likes,
    VideoCounter.COMMENTS: comments,
    VideoCounter.VIEWS: video_views,
}


@dataclass
class ReconcileResult:
    counter: str
    checked: int = 0
    updated_count: int = 0
    dry_run: bool = False
    results: List[dict] = field(default_factory=list)  # drifted rows: {id, before, after}
    errors: List[Dict[str, str]] = field(default_factory=list)

    @property
    def status(self) -> BatchStatus:
        return BatchStatus.from_counts(self.checked - len(self.errors), len(self.errors))

    def to_dict(self) -> dict:
        return {
            "counter": self.counter,
            "checked": self.checked,
            "updated_count": self.updated_count,
            "dry_run": self.dry_run,
            "results": list(self.results),
            "errors": list(self.errors),
            "status": self.status.value,
        }


async def _apply(result: ReconcileResult, stored: Dict[int, int], actual: Dict[int, int], write) -> ReconcileResult:
    """Compare stored to actual values and overwrite each row unless dry_run."""
    for row_id, before in stored.items():
        after = actual.get(row_id, 0)
        result.checked += 1
        if not result.dry_run:
            try:
                await write(row_id, after)
            except DatabaseRetryableError:
                raise
            except Exception as e:
                logger.warning(f"Failed to reconcile {result.counter} for id={row_id}: {e}")
                result.errors.append({"id": str(row_id), "error": str(e)})
                continue
        if before != after:
            result.updated_count += 1
            result.results.append({"id": row_id, "before": before, "after": after})
            if not result.dry_run:
                COUNTER_CORRECTIONS_TOTAL.labels(counter=result.counter).inc()

    verb = "Would correct" if result.dry_run else "Corrected"
    logger.info(
        f"{verb} {result.updated_count}/{result.checked} {result.counter} value(s), {len(result.errors)} error(s)"
    )
    return result


async def reconcile_tag_counters(tag_ids: Optional[Iterable[int]] = None, dry_run: bool = False) -> ReconcileResult:
    """
    Overwrite tags.usage_count with the number of video_tags rows per tag.

    Args:
        tag_ids: Tags to repair; all tags when None
        dry_run: Report drift without writing

    Raises:
        InputValidationError: If tag_ids is given but empty or malformed
    """
    ids = validate_ids(tag_ids, "tag id") if tag_ids is not None else None

    query = sa.select(tags.c.id, tags.c.usage_count).order_by(tags.c.id)
    if ids is not None:
        query = query.where(tags.c.id.in_(ids))
    stored = {row["id"]: row["usage_count"] for row in await fetch_all_with_retry(query)}

    actual = await link_store.count_links_for_tags(ids)
    result = ReconcileResult(counter="usage_count", dry_run=dry_run)
    return await _apply(result, stored, actual, counters.set_tag_usage)


async def find_tag_drift(tag_ids: Optional[Iterable[int]] = None) -> ReconcileResult:
    """Report tags whose usage_count differs from their link count, without writing."""
    return await reconcile_tag_counters(tag_ids, dry_run=True)


async def reconcile_video_counters(
    counter: VideoCounter,
    video_ids: Optional[Iterable[int]] = None,
    dry_run: bool = False,
) -> ReconcileResult:
    """
    Overwrite one cached video counter with the row count of its fact table.

    Args:
        counter: Which counter to recompute (likes_count, comments_count, views_count)
        video_ids: Videos to repair; all videos when None
        dry_run: Report drift without writing
    """
    counter = VideoCounter(counter)
    fact_table = FACT_TABLES[counter]
    column = videos.c[counter.value]
    ids = validate_ids(video_ids, "video id") if video_ids is not None else None

    query = (
        sa.select(videos.c.id, column.label("stored"), sa.func.count(fact_table.c.id).label("actual"))
        .select_from(videos.outerjoin(fact_table, fact_table.c.video_id == videos.c.id))
        .group_by(videos.c.id, column)
        .order_by(videos.c.id)
    )
    if ids is not None:
        query = query.where(videos.c.id.in_(ids))
    rows = await fetch_all_with_retry(query)

    stored = {row["id"]: row["stored"] for row in rows}
    actual = {row["id"]: row["actual"] for row in rows}

    async def write(video_id: int, value: int) -> None:
        await counters.set_video_counter(video_id, counter, value)

    result = ReconcileResult(counter=counter.value, dry_run=dry_run)
    return await _apply(result, stored, actual, write)


async def reconcile_views(video_ids: Optional[Iterable[int]] = None, dry_run: bool = False) -> ReconcileResult:
    """Recompute videos.views_count from video_views."""
    return await reconcile_video_counters(VideoCounter.VIEWS, video_ids, dry_run=dry_run)
