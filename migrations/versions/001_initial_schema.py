"""initial_schema

Revision ID: 001
Revises:
Create Date: 2026-10-18

Video records tracked against the stream host, and the webhook delivery log.
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "videos",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("title", sa.String(255), nullable=False, server_default=""),
        sa.Column("remote_asset_id", sa.String(64), nullable=True),
        sa.Column("processing_status", sa.String(20), nullable=False, server_default="uploading"),
        sa.Column("duration_seconds", sa.Integer, nullable=True),
        sa.Column("thumbnail_url", sa.Text, nullable=True),
        sa.Column("is_published", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("error_code", sa.String(64), nullable=True),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("ready_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("retried_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True)),
        sa.Column("updated_at", sa.DateTime(timezone=True)),
        sa.UniqueConstraint("remote_asset_id", name="uq_videos_remote_asset_id"),
        sa.CheckConstraint(
            "processing_status IN ('uploading', 'processing', 'ready', 'error')",
            name="ck_videos_processing_status",
        ),
        sa.CheckConstraint(
            "duration_seconds IS NULL OR duration_seconds >= 0",
            name="ck_videos_duration_non_negative",
        ),
    )
    op.create_index("ix_videos_processing_status", "videos", ["processing_status"])
    op.create_index("ix_videos_created_at", "videos", ["created_at"])

    op.create_table(
        "stream_webhook_events",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("remote_asset_id", sa.String(64), nullable=True),
        sa.Column("raw_state", sa.String(32), nullable=True),
        sa.Column("outcome", sa.String(20), nullable=True),
        sa.Column("success", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("payload", sa.Text, nullable=True),
        sa.Column("received_at", sa.DateTime(timezone=True)),
    )
    op.create_index("ix_stream_webhook_events_remote_asset_id", "stream_webhook_events", ["remote_asset_id"])
    op.create_index("ix_stream_webhook_events_received_at", "stream_webhook_events", ["received_at"])


def downgrade() -> None:
    op.drop_index("ix_stream_webhook_events_received_at", table_name="stream_webhook_events")
    op.drop_index("ix_stream_webhook_events_remote_asset_id", table_name="stream_webhook_events")
    op.drop_table("stream_webhook_events")
    op.drop_index("ix_videos_created_at", table_name="videos")
    op.drop_index("ix_videos_processing_status", table_name="videos")
    op.drop_table("videos")
