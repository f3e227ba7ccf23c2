from datetime import datetime, timezone

import sqlalchemy as sa
from databases import Database

from config import DATABASE_URL

# Create database instance - works with PostgreSQL or SQLite
# PostgreSQL is the default and recommended database
database = Database(DATABASE_URL)
metadata = sa.MetaData()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


async def configure_database():
    """
    Configure database-specific settings after connection.

    The SQLite foreign_keys pragma only reaches the pooled connection that runs
    it, so other connections do not enforce the foreign keys declared below.
    Nothing depends on them: cascades delete child rows explicitly, and the
    fact writers in api.engagement check that the referenced video and user
    exist before inserting.
    """
    if database.url.dialect == "sqlite":
        await database.execute("PRAGMA foreign_keys = ON")


# Users are materialized from an external OAuth identity exactly once
users = sa.Table(
    "users",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("external_id", sa.String(128), unique=True, nullable=False),
    sa.Column("first_name", sa.String(100), nullable=True),
    sa.Column("last_name", sa.String(100), nullable=True),
    sa.Column("display_name", sa.String(255), nullable=True),
    sa.Column("avatar_url", sa.Text, nullable=True),
    sa.Column("email", sa.String(255), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), default=_utcnow),
    sa.Column("updated_at", sa.DateTime(timezone=True), default=_utcnow),
)

# Geotagged videos. The *_count columns are caches of the likes, comments and
# video_views fact tables; reconciliation recomputes them from those tables.
videos = sa.Table(
    "videos",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id"), nullable=True),
    sa.Column("description", sa.Text, default=""),
    sa.Column("video_url", sa.Text, nullable=True),
    sa.Column("latitude", sa.Float, nullable=True),
    sa.Column("longitude", sa.Float, nullable=True),
    sa.Column(
        "likes_count",
        sa.Integer,
        sa.CheckConstraint("likes_count >= 0", name="ck_videos_likes_count"),
        nullable=False,
        default=0,
    ),
    sa.Column(
        "comments_count",
        sa.Integer,
        sa.CheckConstraint("comments_count >= 0", name="ck_videos_comments_count"),
        nullable=False,
        default=0,
    ),
    sa.Column(
        "views_count",
        sa.Integer,
        sa.CheckConstraint("views_count >= 0", name="ck_videos_views_count"),
        nullable=False,
        default=0,
    ),
    sa.Column("created_at", sa.DateTime(timezone=True), default=_utcnow),
    sa.Column("updated_at", sa.DateTime(timezone=True), default=_utcnow),
    sa.Index("ix_videos_user_id", "user_id"),
    sa.Index("ix_videos_created_at", "created_at"),
)

# Tags are stored under their normalized (trimmed, lower-cased) name
tags = sa.Table(
    "tags",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("name", sa.String(50), unique=True, nullable=False),
    sa.Column(
        "usage_count",
        sa.Integer,
        sa.CheckConstraint("usage_count >= 0", name="ck_tags_usage_count"),
        nullable=False,
        default=0,
    ),
    sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id"), nullable=True),  # creator
    sa.Column("created_at", sa.DateTime(timezone=True), default=_utcnow),
    sa.Index("ix_tags_user_id", "user_id"),
)

# Many-to-many relationship between videos and tags.
# This table is the ground truth for tags.usage_count.
video_tags = sa.Table(
    "video_tags",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("video_id", sa.Integer, sa.ForeignKey("videos.id"), nullable=False),
    sa.Column("tag_id", sa.Integer, sa.ForeignKey("tags.id"), nullable=False),
    sa.Column("assigned_by", sa.Integer, sa.ForeignKey("users.id"), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), default=_utcnow),
    sa.UniqueConstraint("video_id", "tag_id", name="uq_video_tags_video_tag"),
    sa.Index("ix_video_tags_video_id", "video_id"),
    sa.Index("ix_video_tags_tag_id", "tag_id"),
)

# Fact tables: ground truth for videos.likes_count / comments_count / views_count
likes = sa.Table(
    "likes",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("video_id", sa.Integer, sa.ForeignKey("videos.id"), nullable=False),
    sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
    sa.Column("created_at", sa.DateTime(timezone=True), default=_utcnow),
    sa.UniqueConstraint("video_id", "user_id", name="uq_likes_video_user"),
    sa.Index("ix_likes_video_id", "video_id"),
    sa.Index("ix_likes_user_id", "user_id"),
)

comments = sa.Table(
    "comments",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("video_id", sa.Integer, sa.ForeignKey("videos.id"), nullable=False),
    sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
    sa.Column("content", sa.Text, nullable=False),
    sa.Column("created_at", sa.DateTime(timezone=True), default=_utcnow),
    sa.Column("updated_at", sa.DateTime(timezone=True), default=_utcnow),
    sa.Index("ix_comments_video_id", "video_id"),
    sa.Index("ix_comments_user_id", "user_id"),
)

# One view per (video, user); anonymous views are not recorded
video_views = sa.Table(
    "video_views",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("video_id", sa.Integer, sa.ForeignKey("videos.id"), nullable=False),
    sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id"), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), default=_utcnow),
    sa.UniqueConstraint("video_id", "user_id", name="uq_video_views_video_user"),
    sa.Index("ix_video_views_video_id", "video_id"),
)


def create_tables():
    """
    Create database tables directly using SQLAlchemy metadata.
    This creates all tables if they don't exist.
    """
    engine = sa.create_engine(DATABASE_URL)
    metadata.create_all(engine)
    engine.dispose()


if __name__ == "__main__":
    create_tables()
    print("Database tables created successfully!")
