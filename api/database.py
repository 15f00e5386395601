from datetime import datetime, timezone

import sqlalchemy as sa
from databases import Database

from config import DATABASE_URL, SQLITE_BUSY_TIMEOUT_MS

# Create database instance - works with PostgreSQL or SQLite
# PostgreSQL is the default and recommended database
database = Database(DATABASE_URL)
metadata = sa.MetaData()


async def configure_database(db: Database = database):
    """
    Configure database-specific settings after connection.
    SQLite: WAL journaling and a busy timeout for overlapping writers.
    PostgreSQL needs nothing here.
    """
    if db.url.dialect == "sqlite":
        await db.execute("PRAGMA journal_mode=WAL")
        await db.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS}")


# Video assets tracked against the remote stream host
#
# FIELD SEMANTICS:
# ----------------
# - remote_asset_id: Identifier assigned by the stream host when the upload slot is
#   issued. NULL until the slot response is persisted; immutable once set.
#   Records without it are never reconciled.
# - processing_status: uploading -> processing -> ready | error (see api/video_state.py)
#   Owned exclusively by the reconciliation path and the operator retry action.
# - duration_seconds / thumbnail_url: Populated only once status reaches ready.
# - is_published: Owned by content editing. Reconciliation sets it true exactly once,
#   the first time the record reaches ready (ready_at IS NULL at that moment).
# - error_code / error_message: Remote error reason, or a local escalation reason
#   ("upload_not_found", "retry_ceiling_exceeded") for operator display.
# - ready_at: First time the record reached ready. Never cleared.
# - retried_at: Last operator retry. Restarts the "not found" grace window.
# - updated_at: Bumped on every reconciliation-driven write.
videos = sa.Table(
    "videos",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("title", sa.String(255), nullable=False, default=""),
    sa.Column("remote_asset_id", sa.String(64), unique=True, nullable=True),
    sa.Column(
        "processing_status",
        sa.String(20),
        sa.CheckConstraint(
            "processing_status IN ('uploading', 'processing', 'ready', 'error')",
            name="ck_videos_processing_status",
        ),
        nullable=False,
        default="uploading",
    ),
    sa.Column("duration_seconds", sa.Integer, nullable=True),
    sa.Column("thumbnail_url", sa.Text, nullable=True),
    sa.Column("is_published", sa.Boolean, nullable=False, default=False),
    sa.Column("error_code", sa.String(64), nullable=True),
    sa.Column("error_message", sa.Text, nullable=True),
    sa.Column("ready_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("retried_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)),
    sa.Column("updated_at", sa.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)),
    sa.CheckConstraint(
        "duration_seconds IS NULL OR duration_seconds >= 0",
        name="ck_videos_duration_non_negative",
    ),
    sa.Index("ix_videos_processing_status", "processing_status"),
    sa.Index("ix_videos_created_at", "created_at"),
)

# Delivery log for stream host webhooks (debugging and monitoring)
stream_webhook_events = sa.Table(
    "stream_webhook_events",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("remote_asset_id", sa.String(64), nullable=True),
    sa.Column("raw_state", sa.String(32), nullable=True),
    sa.Column("outcome", sa.String(20), nullable=True),
    sa.Column("success", sa.Boolean, nullable=False, default=True),
    sa.Column("error_message", sa.Text, nullable=True),
    sa.Column("payload", sa.Text, nullable=True),
    sa.Column("received_at", sa.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)),
    sa.Index("ix_stream_webhook_events_remote_asset_id", "remote_asset_id"),
    sa.Index("ix_stream_webhook_events_received_at", "received_at"),
)


def create_tables(database_url: str = DATABASE_URL):
    """
    Create database tables directly using SQLAlchemy metadata.
    This creates all tables if they don't exist.
    """
    engine = sa.create_engine(database_url)
    metadata.create_all(engine)
    engine.dispose()


if __name__ == "__main__":
    create_tables()
    print("Database tables created successfully!")
