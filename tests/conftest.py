"""
Pytest fixtures for streamsync tests.
Provides a throwaway database, a record store, fake stream host gateways
and sample video records.

Uses a temporary SQLite file per test so tests run without a PostgreSQL server.
"""

import os
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

# Configure the environment BEFORE importing config
os.environ["STREAMSYNC_DATABASE_URL"] = "sqlite:///./streamsync-test.db"
os.environ["STREAMSYNC_RATE_LIMIT_ENABLED"] = "false"
os.environ["STREAMSYNC_ALERT_WEBHOOK_URL"] = ""
os.environ["STREAMSYNC_ADMIN_API_SECRET"] = ""
os.environ["STREAMSYNC_ENGINE_IN_API"] = "true"

from databases import Database  # noqa: E402

from api.database import configure_database, create_tables, videos  # noqa: E402
from api.enums import ProcessingStatus  # noqa: E402
from api.record_store import VideoAsset, VideoRecordStore  # noqa: E402
from worker.stream_gateway import AssetDetails, RemoteStatusSnapshot  # noqa: E402

THUMBNAIL_BASE = "https://customer-test.example.com"


@pytest.fixture(scope="function")
def test_db_url(tmp_path) -> str:
    """Create a SQLite database file with all tables and return its URL."""
    db_url = f"sqlite:///{tmp_path / 'streamsync.db'}"
    create_tables(db_url)
    return db_url


@pytest.fixture(scope="function")
async def test_database(test_db_url: str) -> AsyncGenerator[Database, None]:
    """Connected database for one test."""
    database = Database(test_db_url)
    await database.connect()
    await configure_database(database)

    yield database

    await database.disconnect()


@pytest.fixture(scope="function")
def store(test_database: Database) -> VideoRecordStore:
    return VideoRecordStore(test_database)


@pytest.fixture(scope="function")
def make_video(test_database: Database, store: VideoRecordStore):
    """Factory inserting a video row directly; returns the stored VideoAsset."""

    async def _make(
        status: ProcessingStatus = ProcessingStatus.UPLOADING,
        remote_asset_id: Optional[str] = "asset-1",
        title: str = "Test Video",
        age_seconds: float = 0,
        **fields,
    ) -> VideoAsset:
        created_at = datetime.now(timezone.utc) - timedelta(seconds=age_seconds)
        values = {
            "title": title,
            "remote_asset_id": remote_asset_id,
            "processing_status": status.value,
            "is_published": False,
            "created_at": created_at,
            "updated_at": created_at,
        }
        values.update(fields)
        video_id = await test_database.execute(videos.insert().values(**values))
        return await store.get_by_id(video_id)

    return _make


def make_snapshot(
    remote_asset_id: str = "asset-1",
    state: str = "inprogress",
    duration: Optional[float] = None,
    error_code: Optional[str] = None,
    error_reason: Optional[str] = None,
) -> RemoteStatusSnapshot:
    return RemoteStatusSnapshot(
        remote_asset_id=remote_asset_id,
        raw_state=state,
        duration_seconds=duration,
        error_code=error_code,
        error_reason=error_reason,
        ready_to_stream=state == "ready",
    )


@pytest.fixture(scope="function")
def fake_gateway() -> MagicMock:
    """Gateway double; set fetch_asset_status.return_value / side_effect per test."""
    gateway = MagicMock()
    gateway.is_configured = True
    gateway.fetch_asset_status = AsyncMock(return_value=make_snapshot())
    gateway.fetch_asset_details = AsyncMock(
        return_value=AssetDetails(
            remote_asset_id="asset-1",
            raw_state="ready",
            duration_seconds=42.4,
            ready_to_stream=True,
        )
    )
    gateway.thumbnail_url = MagicMock(
        side_effect=lambda rid: f"{THUMBNAIL_BASE}/{rid}/thumbnails/thumbnail.jpg"
    )
    gateway.retry_asset = AsyncMock(return_value=None)
    gateway.request_upload_slot = AsyncMock()
    gateway.generate_playback_url = AsyncMock()
    gateway.close = AsyncMock()
    return gateway
