"""Tests for database retry logic."""

import sqlite3
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from api.db_retry import (
    DatabaseRetryableError,
    db_execute_with_retry,
    execute_with_retry,
    fetch_all_with_retry,
    fetch_one_with_retry,
    is_retryable_database_error,
)


class PgError(Exception):
    def __init__(self, message, sqlstate=""):
        super().__init__(message)
        self.sqlstate = sqlstate


class TestIsRetryableDatabaseError:
    @pytest.mark.parametrize(
        "message",
        [
            "database is locked",
            "Database table is locked",
            "SQLITE_BUSY",
            "deadlock detected",
            "could not serialize access due to concurrent update",
            "server closed the connection unexpectedly",
            "canceling statement due to lock timeout",
        ],
    )
    def test_retryable_messages(self, message):
        assert is_retryable_database_error(Exception(message))

    @pytest.mark.parametrize("message", ["syntax error", "UNIQUE constraint failed: videos.remote_asset_id", ""])
    def test_non_retryable_messages(self, message):
        assert not is_retryable_database_error(Exception(message))

    def test_sqlstate_codes(self):
        assert is_retryable_database_error(PgError("boom", sqlstate="40P01"))
        assert is_retryable_database_error(PgError("boom", sqlstate="40001"))
        assert not is_retryable_database_error(PgError("boom", sqlstate="23505"))

    def test_wrapped_driver_error(self):
        try:
            try:
                raise sqlite3.OperationalError("database is locked")
            except sqlite3.OperationalError as inner:
                raise RuntimeError("query failed") from inner
        except RuntimeError as outer:
            assert is_retryable_database_error(outer)


class TestExecuteWithRetry:
    async def test_success_first_try(self):
        func = AsyncMock(return_value="ok")
        assert await execute_with_retry(func, 1, key="v") == "ok"
        func.assert_awaited_once_with(1, key="v")

    async def test_retries_then_succeeds(self):
        func = AsyncMock(side_effect=[sqlite3.OperationalError("database is locked"), "ok"])
        with patch("api.db_retry.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            assert await execute_with_retry(func) == "ok"
        assert func.await_count == 2
        mock_sleep.assert_awaited_once()

    async def test_non_retryable_raised_immediately(self):
        func = AsyncMock(side_effect=ValueError("bad column"))
        with pytest.raises(ValueError):
            await execute_with_retry(func)
        assert func.await_count == 1

    async def test_exhausted_retries(self):
        func = AsyncMock(side_effect=sqlite3.OperationalError("database is locked"))
        with patch("api.db_retry.asyncio.sleep", new_callable=AsyncMock):
            with pytest.raises(DatabaseRetryableError, match="after 3 attempts"):
                await execute_with_retry(func, max_retries=2)
        assert func.await_count == 3

    async def test_exponential_backoff(self):
        func = AsyncMock(side_effect=sqlite3.OperationalError("database is locked"))
        with patch("api.db_retry.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            # 0.5 gives zero jitter
            with patch("api.db_retry.random.random", return_value=0.5):
                with pytest.raises(DatabaseRetryableError):
                    await execute_with_retry(func, max_retries=3, base_delay=0.1, max_delay=0.3)

        delays = [c.args[0] for c in mock_sleep.await_args_list]
        assert delays == pytest.approx([0.1, 0.2, 0.3])

    async def test_jitter_bounds(self):
        func = AsyncMock(side_effect=[sqlite3.OperationalError("database is locked"), "ok"])
        with patch("api.db_retry.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            with patch("api.db_retry.random.random", return_value=1.0):
                await execute_with_retry(func, base_delay=0.1)
        assert mock_sleep.await_args.args[0] == pytest.approx(0.125)


class TestQueryHelpers:
    async def test_fetch_one(self):
        db = MagicMock()
        db.fetch_one = AsyncMock(side_effect=[sqlite3.OperationalError("database is locked"), {"id": 1}])
        with patch("api.db_retry.asyncio.sleep", new_callable=AsyncMock):
            assert await fetch_one_with_retry(db, "SELECT 1") == {"id": 1}
        assert db.fetch_one.await_count == 2

    async def test_fetch_all(self):
        db = MagicMock()
        db.fetch_all = AsyncMock(return_value=[{"id": 1}, {"id": 2}])
        assert len(await fetch_all_with_retry(db, "SELECT id FROM videos")) == 2

    async def test_execute(self):
        db = MagicMock()
        db.execute = AsyncMock(return_value=7)
        assert await db_execute_with_retry(db, "INSERT") == 7

    async def test_slow_query_logged(self, caplog):
        db = MagicMock()
        db.fetch_all = AsyncMock(return_value=[])
        with patch("api.db_retry.time.monotonic", side_effect=[0.0, 5.0]):
            await fetch_all_with_retry(db, "SELECT * FROM videos")
        assert "Slow query" in caplog.text
