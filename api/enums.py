"""
Centralized enums used throughout the application.
Using str-based enums for database and JSON compatibility.
"""

from enum import Enum


class VideoCounter(str, Enum):
    """Cached counters on the videos table, each derived from one fact table."""

    LIKES = "likes_count"
    COMMENTS = "comments_count"
    VIEWS = "views_count"


class BatchStatus(str, Enum):
    """Aggregate outcome of a multi-item operation."""

    OK = "ok"  # no item failed
    PARTIAL = "partial"  # at least one item succeeded and at least one failed
    FAILED = "failed"  # every item failed

    @classmethod
    def from_counts(cls, succeeded: int, failed: int) -> "BatchStatus":
        """Classify a batch; skipped items count as succeeded."""
        if failed == 0:
            return cls.OK
        if succeeded > 0:
            return cls.PARTIAL
        return cls.FAILED


class ItemOutcome(str, Enum):
    """Per-item outcome within a tag assignment batch."""

    ASSIGNED = "assigned"
    SKIPPED = "skipped"  # link already existed
    FAILED = "failed"
