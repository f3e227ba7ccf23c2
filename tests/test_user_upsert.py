"""Tests for materializing local users from external identities."""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from api.db_retry import ConflictError, DatabaseRetryableError
from api.errors import InputValidationError
from api.user_upsert import UserUpsertError, ensure_user, get_user_by_external_id
from config import USER_UPSERT_RETRIES


@pytest.fixture(params=[True, False], ids=["atomic", "lookup_or_insert"])
def upsert_mode(request, monkeypatch):
    """Run a test against both the single-statement upsert and the retry loop."""
    monkeypatch.setattr("api.user_upsert.USER_ATOMIC_UPSERT", request.param)
    return request.param


class TestEnsureUser:
    """Tests for ensure_user against a real database."""

    async def test_creates_user(self, engine_db, upsert_mode):
        user = await ensure_user({"external_id": "ext-1", "first_name": "Ada", "email": "ada@example.com"})

        assert user["external_id"] == "ext-1"
        assert user["first_name"] == "Ada"
        assert user["email"] == "ada@example.com"

    async def test_second_login_returns_same_row(self, engine_db, upsert_mode):
        first = await ensure_user({"external_id": "ext-1"})
        second = await ensure_user({"external_id": "ext-1"})

        assert second["id"] == first["id"]

    async def test_present_fields_overwrite(self, engine_db, upsert_mode):
        await ensure_user({"external_id": "ext-1", "display_name": "Old Name"})

        user = await ensure_user({"external_id": "ext-1", "display_name": "New Name"})

        assert user["display_name"] == "New Name"

    async def test_absent_fields_never_erase(self, engine_db, upsert_mode):
        await ensure_user({"external_id": "ext-1", "first_name": "Ada", "avatar_url": "https://img/ada.png"})

        user = await ensure_user({"external_id": "ext-1", "first_name": None, "avatar_url": "  ", "last_name": "L"})

        assert user["first_name"] == "Ada"
        assert user["avatar_url"] == "https://img/ada.png"
        assert user["last_name"] == "L"

    async def test_concurrent_first_logins_create_one_row(self, engine_db, test_database, upsert_mode):
        """Two simultaneous logins for "ext-42" observe the same local id."""
        results = await asyncio.gather(
            ensure_user({"external_id": "ext-42", "first_name": "Grace"}),
            ensure_user({"external_id": "ext-42", "first_name": "Grace"}),
        )

        assert results[0]["id"] == results[1]["id"]
        count = await test_database.fetch_val("SELECT COUNT(*) FROM users WHERE external_id = 'ext-42'")
        assert count == 1

    @pytest.mark.parametrize("profile", [{}, {"external_id": ""}, {"external_id": "   "}, {"external_id": None}])
    async def test_missing_external_id(self, engine_db, profile):
        with pytest.raises(InputValidationError):
            await ensure_user(profile)


class TestLookupOrInsertRetries:
    """Conflict handling of the lookup-or-insert loop, with the store mocked."""

    @pytest.fixture(autouse=True)
    def loop_only(self, monkeypatch):
        monkeypatch.setattr("api.user_upsert.USER_ATOMIC_UPSERT", False)

    async def test_conflict_then_found(self):
        winner = {"id": 7, "external_id": "ext-42", "first_name": None, "last_name": None,
                  "display_name": None, "avatar_url": None, "email": None}
        lookups = AsyncMock(side_effect=[None, winner])
        mock_sleep = AsyncMock()

        with patch("api.user_upsert.get_user_by_external_id", lookups), patch(
            "api.user_upsert.db_insert", AsyncMock(side_effect=ConflictError("conflict", table="users"))
        ), patch("api.user_upsert._merge_profile", AsyncMock(return_value=winner)), patch(
            "api.user_upsert.asyncio.sleep", mock_sleep
        ):
            user = await ensure_user({"external_id": "ext-42"})

        assert user["id"] == 7
        assert mock_sleep.await_count == 1

    async def test_exhausted_retries_raise(self):
        mock_sleep = AsyncMock()
        mock_insert = AsyncMock(side_effect=ConflictError("conflict", table="users"))

        with patch("api.user_upsert.get_user_by_external_id", AsyncMock(return_value=None)), patch(
            "api.user_upsert.db_insert", mock_insert
        ), patch("api.user_upsert.asyncio.sleep", mock_sleep):
            with pytest.raises(UserUpsertError) as exc_info:
                await ensure_user({"external_id": "ext-42"})

        assert exc_info.value.attempts == USER_UPSERT_RETRIES + 1
        assert mock_insert.await_count == USER_UPSERT_RETRIES + 1
        assert mock_sleep.await_count == USER_UPSERT_RETRIES

    async def test_linear_backoff(self, monkeypatch):
        monkeypatch.setattr("api.user_upsert.USER_UPSERT_RETRIES", 2)
        monkeypatch.setattr("api.user_upsert.USER_UPSERT_BACKOFF", 0.1)
        mock_sleep = AsyncMock()

        with patch("api.user_upsert.get_user_by_external_id", AsyncMock(return_value=None)), patch(
            "api.user_upsert.db_insert", AsyncMock(side_effect=ConflictError("conflict", table="users"))
        ), patch("api.user_upsert.asyncio.sleep", mock_sleep):
            with pytest.raises(UserUpsertError):
                await ensure_user({"external_id": "ext-42"})

        delays = [c.args[0] for c in mock_sleep.call_args_list]
        assert delays == [pytest.approx(0.1), pytest.approx(0.2)]

    async def test_non_conflict_error_propagates(self):
        mock_insert = AsyncMock(side_effect=RuntimeError("disk I/O error"))

        with patch("api.user_upsert.get_user_by_external_id", AsyncMock(return_value=None)), patch(
            "api.user_upsert.db_insert", mock_insert
        ):
            with pytest.raises(RuntimeError):
                await ensure_user({"external_id": "ext-42"})

        assert mock_insert.await_count == 1


class TestAtomicUpsertFallback:
    async def test_atomic_failure_falls_back(self, engine_db, monkeypatch):
        monkeypatch.setattr("api.user_upsert.USER_ATOMIC_UPSERT", True)

        with patch("api.user_upsert._atomic_upsert", AsyncMock(side_effect=RuntimeError("syntax error"))):
            user = await ensure_user({"external_id": "ext-9"})

        assert (await get_user_by_external_id("ext-9"))["id"] == user["id"]

    async def test_retryable_error_not_masked(self, engine_db, monkeypatch):
        monkeypatch.setattr("api.user_upsert.USER_ATOMIC_UPSERT", True)

        with patch("api.user_upsert._atomic_upsert", AsyncMock(side_effect=DatabaseRetryableError("gave up"))):
            with pytest.raises(DatabaseRetryableError):
                await ensure_user({"external_id": "ext-9"})
