"""Tests for counter reconciliation."""

from unittest.mock import AsyncMock, patch

import pytest

from api import counters
from api.cascade import delete_videos
from api.db_retry import DatabaseRetryableError
from api.enums import BatchStatus, VideoCounter
from api.errors import InputValidationError
from api.reconcile import (
    ReconcileResult,
    find_tag_drift,
    reconcile_tag_counters,
    reconcile_video_counters,
    reconcile_views,
)
from api.tag_assignment import assign_tags


class TestReconcileTagCounters:
    """Tests for reconcile_tag_counters."""

    async def test_overwrites_drifted_values(self, engine_db, make_video, make_tag, link_video_tag):
        video_id = await make_video()
        inflated = await make_tag("inflated", usage_count=7)
        deflated = await make_tag("deflated", usage_count=0)
        correct = await make_tag("correct", usage_count=1)
        for tag_id in (inflated, deflated, correct):
            await link_video_tag(video_id, tag_id)

        result = await reconcile_tag_counters()

        assert result.checked == 3
        assert result.updated_count == 2
        assert {(r["id"], r["before"], r["after"]) for r in result.results} == {
            (inflated, 7, 1),
            (deflated, 0, 1),
        }
        assert result.status == BatchStatus.OK
        for tag_id in (inflated, deflated, correct):
            assert await counters.get_tag_usage(tag_id) == 1

    async def test_unlinked_tag_reset_to_zero(self, engine_db, make_tag):
        tag_id = await make_tag("orphan", usage_count=4)

        result = await reconcile_tag_counters([tag_id])

        assert result.results == [{"id": tag_id, "before": 4, "after": 0}]
        assert await counters.get_tag_usage(tag_id) == 0

    async def test_only_requested_tags(self, engine_db, make_tag):
        target = await make_tag("target", usage_count=3)
        other = await make_tag("other", usage_count=3)

        result = await reconcile_tag_counters([target])

        assert result.checked == 1
        assert await counters.get_tag_usage(other) == 3

    async def test_dry_run_does_not_write(self, engine_db, make_tag):
        tag_id = await make_tag("drifted", usage_count=2)

        result = await find_tag_drift()

        assert result.dry_run is True
        assert result.updated_count == 1
        assert await counters.get_tag_usage(tag_id) == 2

    async def test_second_run_finds_nothing(self, engine_db, make_tag):
        await make_tag("drifted", usage_count=2)

        await reconcile_tag_counters()
        result = await reconcile_tag_counters()

        assert result.updated_count == 0
        assert result.results == []

    async def test_converges_after_lost_updates(self, engine_db, test_database, make_video):
        """After arbitrary assignments, deletes and lost updates, every counter equals its link count."""
        videos = [await make_video() for _ in range(4)]
        await assign_tags(videos[0], ["a", "b", "c"])
        await assign_tags(videos[1], ["a", "b"])
        await assign_tags(videos[2], ["a"])
        await assign_tags(videos[3], ["c", "d"])

        # Simulate lost updates and an interrupted cascade
        await test_database.execute("UPDATE tags SET usage_count = 1 WHERE name = 'a'")
        await test_database.execute("UPDATE tags SET usage_count = 9 WHERE name = 'd'")
        await test_database.execute(f"DELETE FROM video_tags WHERE video_id = {videos[3]}")
        await delete_videos([videos[1]])

        await reconcile_tag_counters()

        rows = await test_database.fetch_all(
            """
            SELECT t.id, t.usage_count, COUNT(vt.id) AS actual
            FROM tags t LEFT JOIN video_tags vt ON vt.tag_id = t.id
            GROUP BY t.id, t.usage_count
            """
        )
        assert rows
        for row in rows:
            assert row["usage_count"] == row["actual"]

    async def test_write_failure_collected(self, engine_db, make_tag):
        first = await make_tag("first", usage_count=5)
        second = await make_tag("second", usage_count=5)

        async def flaky_set(tag_id, value):
            if tag_id == first:
                raise RuntimeError("write failed")

        with patch("api.reconcile.counters.set_tag_usage", side_effect=flaky_set):
            result = await reconcile_tag_counters()

        assert result.errors == [{"id": str(first), "error": "write failed"}]
        assert result.results == [{"id": second, "before": 5, "after": 0}]
        assert result.status == BatchStatus.PARTIAL

    async def test_retryable_error_propagates(self, engine_db, make_tag):
        await make_tag("drifted", usage_count=5)

        with patch(
            "api.reconcile.counters.set_tag_usage",
            AsyncMock(side_effect=DatabaseRetryableError("gave up")),
        ):
            with pytest.raises(DatabaseRetryableError):
                await reconcile_tag_counters()

    async def test_empty_id_list_rejected(self, engine_db):
        with pytest.raises(InputValidationError):
            await reconcile_tag_counters([])


class TestReconcileVideoCounters:
    """Tests for reconcile_video_counters and reconcile_views."""

    async def test_views_recomputed_from_fact_table(self, engine_db, test_database, make_video, make_user):
        video_id = await make_video(views_count=42)
        untouched = await make_video(views_count=0)
        for _ in range(3):
            viewer = await make_user()
            await test_database.execute(f"INSERT INTO video_views (video_id, user_id) VALUES ({video_id}, {viewer})")

        result = await reconcile_views()

        assert result.counter == "views_count"
        assert result.checked == 2
        assert result.results == [{"id": video_id, "before": 42, "after": 3}]
        assert await counters.get_video_counter(video_id, VideoCounter.VIEWS) == 3
        assert await counters.get_video_counter(untouched, VideoCounter.VIEWS) == 0

    async def test_likes_recomputed(self, engine_db, test_database, make_video, make_user):
        video_id = await make_video(likes_count=0)
        fan = await make_user()
        await test_database.execute(f"INSERT INTO likes (video_id, user_id) VALUES ({video_id}, {fan})")

        result = await reconcile_video_counters(VideoCounter.LIKES, [video_id])

        assert result.results == [{"id": video_id, "before": 0, "after": 1}]

    async def test_comments_dry_run(self, engine_db, make_video):
        video_id = await make_video(comments_count=8)

        result = await reconcile_video_counters("comments_count", dry_run=True)

        assert result.updated_count == 1
        assert await counters.get_video_counter(video_id, VideoCounter.COMMENTS) == 8


class TestReconcileResult:
    def test_to_dict(self):
        result = ReconcileResult(counter="usage_count", checked=2, updated_count=1, results=[{"id": 1, "before": 3, "after": 1}])

        assert result.to_dict() == {
            "counter": "usage_count",
            "checked": 2,
            "updated_count": 1,
            "dry_run": False,
            "results": [{"id": 1, "before": 3, "after": 1}],
            "errors": [],
            "status": "ok",
        }

    def test_all_failed(self):
        result = ReconcileResult(counter="usage_count", checked=2, errors=[{"id": "1"}, {"id": "2"}])

        assert result.status == BatchStatus.FAILED
