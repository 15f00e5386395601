"""
Local record store for video assets.

Thin persistence layer over the ``videos`` and ``stream_webhook_events``
tables. Every reconciliation-driven write bumps ``updated_at``. Writes that
change ``processing_status`` can be guarded with ``expected_statuses`` so a
concurrent writer that already moved the record on is not overwritten; the
caller re-reads the returned record to see what actually landed.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional

import sqlalchemy as sa
from databases import Database

from api.common import ensure_utc
from api.database import stream_webhook_events, videos
from api.db_retry import db_execute_with_retry, fetch_all_with_retry, fetch_one_with_retry
from api.enums import ProcessingStatus
from api.errors import InvalidTransition, truncate_error

logger = logging.getLogger(__name__)

# Columns reconciliation may write through update_fields
_UPDATABLE_COLUMNS = frozenset(
    [
        "processing_status",
        "duration_seconds",
        "thumbnail_url",
        "is_published",
        "error_code",
        "error_message",
        "ready_at",
        "retried_at",
        "title",
    ]
)


@dataclass
class VideoAsset:
    """
    A local video record as seen by reconciliation.

    All datetime fields are normalized to UTC timezone.
    """

    id: int
    title: str
    remote_asset_id: Optional[str]
    processing_status: ProcessingStatus
    duration_seconds: Optional[int]
    thumbnail_url: Optional[str]
    is_published: bool
    error_code: Optional[str]
    error_message: Optional[str]
    ready_at: Optional[datetime]
    retried_at: Optional[datetime]
    created_at: Optional[datetime]
    updated_at: Optional[datetime]

    @classmethod
    def from_mapping(cls, row: Mapping[str, Any]) -> "VideoAsset":
        """Create a VideoAsset from a database row mapping."""
        return cls(
            id=row["id"],
            title=row.get("title") or "",
            remote_asset_id=row.get("remote_asset_id"),
            processing_status=ProcessingStatus(row.get("processing_status") or ProcessingStatus.UPLOADING.value),
            duration_seconds=row.get("duration_seconds"),
            thumbnail_url=row.get("thumbnail_url"),
            is_published=bool(row.get("is_published")),
            error_code=row.get("error_code"),
            error_message=row.get("error_message"),
            ready_at=ensure_utc(row.get("ready_at")),
            retried_at=ensure_utc(row.get("retried_at")),
            created_at=ensure_utc(row.get("created_at")),
            updated_at=ensure_utc(row.get("updated_at")),
        )

    @property
    def grace_origin(self) -> Optional[datetime]:
        """Start of the "not found" grace window (last retry, else creation)."""
        return self.retried_at or self.created_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "remote_asset_id": self.remote_asset_id,
            "processing_status": self.processing_status.value,
            "duration_seconds": self.duration_seconds,
            "thumbnail_url": self.thumbnail_url,
            "is_published": self.is_published,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "ready_at": self.ready_at.isoformat() if self.ready_at else None,
            "retried_at": self.retried_at.isoformat() if self.retried_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


def _row_to_asset(row) -> Optional[VideoAsset]:
    if row is None:
        return None
    return VideoAsset.from_mapping(row._mapping)


def _status_values(statuses: Iterable[Any]) -> List[str]:
    return [s.value if isinstance(s, ProcessingStatus) else str(s) for s in statuses]


class VideoRecordStore:
    """Reads and writes video records for the reconciliation path."""

    def __init__(self, db: Database):
        self.db = db

    async def get_by_id(self, video_id: int) -> Optional[VideoAsset]:
        row = await fetch_one_with_retry(self.db, videos.select().where(videos.c.id == video_id))
        return _row_to_asset(row)

    async def get_by_remote_asset_id(self, remote_asset_id: str) -> Optional[VideoAsset]:
        row = await fetch_one_with_retry(
            self.db, videos.select().where(videos.c.remote_asset_id == remote_asset_id)
        )
        return _row_to_asset(row)

    async def list_by_status(self, statuses: Iterable[Any], limit: Optional[int] = None) -> List[VideoAsset]:
        """List records whose status is one of ``statuses``, oldest first."""
        query = (
            videos.select()
            .where(videos.c.processing_status.in_(_status_values(statuses)))
            .order_by(videos.c.created_at.asc(), videos.c.id.asc())
        )
        if limit is not None:
            query = query.limit(limit)
        rows = await fetch_all_with_retry(self.db, query)
        return [VideoAsset.from_mapping(row._mapping) for row in rows]

    async def update_fields(
        self,
        video_id: int,
        partial: Dict[str, Any],
        expected_statuses: Optional[Iterable[Any]] = None,
    ) -> Optional[VideoAsset]:
        """
        Apply a partial update and return the record as stored afterwards.

        Args:
            video_id: Local record id
            partial: Column -> value; status enums are stored by value
            expected_statuses: When given, the write only applies if the stored
                status is still one of these

        Returns:
            The re-read record, or None if it no longer exists
        """
        unknown = set(partial) - _UPDATABLE_COLUMNS
        if unknown:
            raise ValueError(f"Cannot update columns: {sorted(unknown)}")

        values = dict(partial)
        if isinstance(values.get("processing_status"), ProcessingStatus):
            values["processing_status"] = values["processing_status"].value
        if "error_message" in values:
            values["error_message"] = truncate_error(values["error_message"])
        values["updated_at"] = datetime.now(timezone.utc)

        query = videos.update().where(videos.c.id == video_id)
        if expected_statuses is not None:
            query = query.where(videos.c.processing_status.in_(_status_values(expected_statuses)))
        await db_execute_with_retry(self.db, query.values(**values))
        return await self.get_by_id(video_id)

    async def create_uploading(self, title: str = "") -> VideoAsset:
        """Insert a new record in ``uploading`` with no remote asset yet."""
        now = datetime.now(timezone.utc)
        video_id = await db_execute_with_retry(
            self.db,
            videos.insert().values(
                title=title or "",
                processing_status=ProcessingStatus.UPLOADING.value,
                is_published=False,
                created_at=now,
                updated_at=now,
            ),
        )
        asset = await self.get_by_id(video_id)
        logger.info(f"Created video {video_id} in uploading")
        return asset

    async def attach_remote_asset(self, video_id: int, remote_asset_id: str) -> VideoAsset:
        """
        Persist the remote asset id issued with an upload slot.

        The id is immutable once set: attaching a different id raises
        InvalidTransition, re-attaching the same id is a no-op.
        """
        await db_execute_with_retry(
            self.db,
            videos.update()
            .where(videos.c.id == video_id)
            .where(videos.c.remote_asset_id.is_(None))
            .values(remote_asset_id=remote_asset_id, updated_at=datetime.now(timezone.utc)),
        )
        asset = await self.get_by_id(video_id)
        if asset is None:
            raise InvalidTransition(f"Video {video_id} does not exist")
        if asset.remote_asset_id != remote_asset_id:
            raise InvalidTransition(
                f"Video {video_id} is already bound to remote asset {asset.remote_asset_id}"
            )
        return asset

    async def mark_ready(
        self,
        video_id: int,
        duration_seconds: Optional[int],
        thumbnail_url: Optional[str],
        auto_publish: bool,
        expected_statuses: Optional[Iterable[Any]] = None,
    ) -> Optional[VideoAsset]:
        """
        Move a record to ``ready`` in a single statement.

        ``ready_at`` is set only the first time, and ``is_published`` is
        switched on only when ``ready_at`` was still NULL, so an editor's
        unpublish survives any later ready reconciliation.
        """
        now = datetime.now(timezone.utc)
        values: Dict[str, Any] = {
            "processing_status": ProcessingStatus.READY.value,
            "thumbnail_url": thumbnail_url,
            "error_code": None,
            "error_message": None,
            "ready_at": sa.func.coalesce(videos.c.ready_at, now),
            "updated_at": now,
        }
        if duration_seconds is not None:
            values["duration_seconds"] = duration_seconds
        if auto_publish:
            values["is_published"] = sa.case(
                (videos.c.ready_at.is_(None), sa.true()),
                else_=videos.c.is_published,
            )

        query = videos.update().where(videos.c.id == video_id)
        if expected_statuses is not None:
            query = query.where(videos.c.processing_status.in_(_status_values(expected_statuses)))
        await db_execute_with_retry(self.db, query.values(**values))
        return await self.get_by_id(video_id)

    async def mark_retried(self, video_id: int) -> Optional[VideoAsset]:
        """Apply the operator retry edge (error -> uploading) and restart the grace window."""
        now = datetime.now(timezone.utc)
        await db_execute_with_retry(
            self.db,
            videos.update()
            .where(videos.c.id == video_id)
            .where(videos.c.processing_status == ProcessingStatus.ERROR.value)
            .values(
                processing_status=ProcessingStatus.UPLOADING.value,
                error_code=None,
                error_message=None,
                retried_at=now,
                updated_at=now,
            ),
        )
        return await self.get_by_id(video_id)

    async def record_webhook_event(
        self,
        remote_asset_id: Optional[str],
        raw_state: Optional[str],
        outcome: Optional[str],
        success: bool,
        payload: Any = None,
        error_message: Optional[str] = None,
    ) -> None:
        """Append a webhook delivery to the event log. Failures are logged, not raised."""
        if payload is not None and not isinstance(payload, str):
            payload = json.dumps(payload, default=str)
        try:
            await db_execute_with_retry(
                self.db,
                stream_webhook_events.insert().values(
                    remote_asset_id=remote_asset_id,
                    raw_state=(raw_state or "")[:32] or None,
                    outcome=outcome,
                    success=success,
                    error_message=truncate_error(error_message),
                    payload=payload,
                    received_at=datetime.now(timezone.utc),
                ),
            )
        except Exception as e:
            logger.warning(f"Failed to record webhook event for {remote_asset_id}: {e}")

    async def list_webhook_events(self, remote_asset_id: Optional[str] = None, limit: int = 50) -> List[dict]:
        query = stream_webhook_events.select().order_by(stream_webhook_events.c.id.desc()).limit(limit)
        if remote_asset_id is not None:
            query = query.where(stream_webhook_events.c.remote_asset_id == remote_asset_id)
        rows = await fetch_all_with_retry(self.db, query)
        return [dict(row._mapping) for row in rows]
