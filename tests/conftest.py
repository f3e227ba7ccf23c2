"""
Pytest fixtures for GeoClips tests.
Provides a test database, test clients, and sample users, videos and tags.

Uses a temporary SQLite file by default. Set GEOCLIPS_TEST_DATABASE_URL to run
against PostgreSQL instead (the tables are dropped after each test).
"""

import importlib
import os
import sys
from datetime import datetime, timezone
from itertools import count

import pytest
import sqlalchemy as sa
from databases import Database

# Set up test mode BEFORE importing config
os.environ["GEOCLIPS_TEST_MODE"] = "1"
os.environ["GEOCLIPS_RATE_LIMIT_ENABLED"] = "false"
os.environ["GEOCLIPS_AUDIT_LOG_ENABLED"] = "false"

import config  # noqa: E402
from api.database import metadata  # noqa: E402

TEST_DATABASE_URL = os.environ.get("GEOCLIPS_TEST_DATABASE_URL")

# Test admin secret for admin API authentication tests
TEST_ADMIN_SECRET = "test-admin-secret-12345"


def _create_tables(db_url: str) -> None:
    """Create all tables in the test database."""
    engine = sa.create_engine(db_url)
    metadata.create_all(engine)
    engine.dispose()


def _drop_tables(db_url: str) -> None:
    engine = sa.create_engine(db_url)
    metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture(scope="function")
def test_db_url(tmp_path) -> str:
    """Create a fresh schema and return its URL. Cleans up after test."""
    db_url = TEST_DATABASE_URL or f"sqlite:///{tmp_path / 'geoclips_test.db'}"
    _create_tables(db_url)
    yield db_url
    if TEST_DATABASE_URL:
        _drop_tables(db_url)


def _reload_database_module(db_url: str, monkeypatch):
    """Point api.database at the test URL; the store helpers look it up lazily."""
    monkeypatch.setattr(config, "DATABASE_URL", db_url)
    if "api.database" in sys.modules:
        return importlib.reload(sys.modules["api.database"])
    return importlib.import_module("api.database")


@pytest.fixture(scope="function")
async def test_database(test_db_url: str):
    """Separate connection for seeding and inspecting rows."""
    database = Database(test_db_url)
    await database.connect()

    yield database

    await database.disconnect()


@pytest.fixture(scope="function")
async def engine_db(test_database, test_db_url: str, monkeypatch):
    """
    Connect the global Database used by the engine modules to the test database.

    Engine-level tests call api.* functions directly; HTTP tests use the client
    fixtures instead, whose apps connect in their own lifespan.
    """
    db_module = _reload_database_module(test_db_url, monkeypatch)
    await db_module.database.connect()
    await db_module.configure_database()

    yield db_module.database

    await db_module.database.disconnect()


# ============================================================================
# Sample data factories
# ============================================================================


@pytest.fixture(scope="function")
def make_user(test_database):
    """Factory creating a user row; returns its id."""
    from api.database import users

    seq = count(1)

    async def _make(external_id=None, **fields) -> int:
        now = datetime.now(timezone.utc)
        return await test_database.execute(
            users.insert().values(
                external_id=external_id or f"ext-user-{next(seq)}",
                created_at=now,
                updated_at=now,
                **fields,
            )
        )

    return _make


@pytest.fixture(scope="function")
def make_video(test_database):
    """Factory creating a video row with explicit zero counters; returns its id."""
    from api.database import videos

    async def _make(user_id=None, likes_count=0, comments_count=0, views_count=0, **fields) -> int:
        now = datetime.now(timezone.utc)
        return await test_database.execute(
            videos.insert().values(
                user_id=user_id,
                description=fields.pop("description", "Sunset over the harbour"),
                latitude=fields.pop("latitude", 59.91),
                longitude=fields.pop("longitude", 10.75),
                likes_count=likes_count,
                comments_count=comments_count,
                views_count=views_count,
                created_at=now,
                updated_at=now,
                **fields,
            )
        )

    return _make


@pytest.fixture(scope="function")
def make_tag(test_database):
    """Factory creating a tag row directly (bypassing the resolver); returns its id."""
    from api.database import tags

    async def _make(name: str, usage_count: int = 0, user_id=None) -> int:
        return await test_database.execute(
            tags.insert().values(
                name=name,
                usage_count=usage_count,
                user_id=user_id,
                created_at=datetime.now(timezone.utc),
            )
        )

    return _make


@pytest.fixture(scope="function")
def link_video_tag(test_database):
    """Factory inserting a video_tags row without touching any counter."""
    from api.database import video_tags

    async def _link(video_id: int, tag_id: int, assigned_by=None) -> int:
        return await test_database.execute(
            video_tags.insert().values(video_id=video_id, tag_id=tag_id, assigned_by=assigned_by)
        )

    return _link


@pytest.fixture(scope="function")
async def sample_user(make_user) -> dict:
    user_id = await make_user(external_id="ext-sample", display_name="Sample User")
    return {"id": user_id, "external_id": "ext-sample"}


@pytest.fixture(scope="function")
async def sample_video(make_video, sample_user) -> dict:
    video_id = await make_video(user_id=sample_user["id"])
    return {"id": video_id, "user_id": sample_user["id"]}


# ============================================================================
# Test Client Fixtures (require patching config)
# ============================================================================


@pytest.fixture(scope="function")
def public_client(test_db_url: str, monkeypatch):
    """
    Create a test client for the public API.
    The app manages its own database connection through its lifespan.
    """
    from fastapi.testclient import TestClient

    _reload_database_module(test_db_url, monkeypatch)

    # Force reload the public module to pick up the new database
    if "api.public" in sys.modules:
        importlib.reload(sys.modules["api.public"])
    from api.public import app

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client


@pytest.fixture(scope="function")
def admin_client(test_db_url: str, monkeypatch):
    """
    Create a test client for the admin API (no admin secret configured).
    The app manages its own database connection through its lifespan.
    """
    from fastapi.testclient import TestClient

    _reload_database_module(test_db_url, monkeypatch)

    if "api.admin" in sys.modules:
        importlib.reload(sys.modules["api.admin"])
    monkeypatch.setattr("api.admin.ADMIN_API_SECRET", "")
    from api.admin import app

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client


@pytest.fixture(scope="function")
def secured_admin_client(test_db_url: str, monkeypatch):
    """Admin API test client with an admin secret configured."""
    from fastapi.testclient import TestClient

    _reload_database_module(test_db_url, monkeypatch)

    if "api.admin" in sys.modules:
        importlib.reload(sys.modules["api.admin"])
    monkeypatch.setattr("api.admin.ADMIN_API_SECRET", TEST_ADMIN_SECRET)
    from api.admin import app

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client


@pytest.fixture(scope="function")
def admin_headers():
    """Return headers for admin authentication."""
    return {"X-Admin-Secret": TEST_ADMIN_SECRET}
