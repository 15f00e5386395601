"""
Centralized enums for status values used throughout the application.
Using str-based enums for database compatibility.
"""

from enum import Enum


class ProcessingStatus(str, Enum):
    """Local processing lifecycle of a video asset."""

    UPLOADING = "uploading"
    PROCESSING = "processing"
    READY = "ready"
    ERROR = "error"


# Statuses the reconciliation loop keeps polling
TRANSITIONAL_STATUSES = frozenset([ProcessingStatus.UPLOADING, ProcessingStatus.PROCESSING])

# Sink states for steady-state reconciliation (left only via operator retry)
TERMINAL_STATUSES = frozenset([ProcessingStatus.READY, ProcessingStatus.ERROR])


class ReconcileOutcome(str, Enum):
    """Result of a single reconciliation attempt."""

    UNCHANGED = "unchanged"  # Remote agrees with local, nothing written
    IN_PROGRESS = "in_progress"  # Moved between transitional states
    READY = "ready"  # Reached ready
    FAILED = "failed"  # Reached error
    RETRY_LATER = "retry_later"  # Remote could not be consulted, nothing written
    STALE = "stale"  # Remote implied a backward transition, ignored
    SKIPPED = "skipped"  # Precondition not met (no remote id, not transitional)


class ReconcileSource(str, Enum):
    """What triggered a reconciliation (used for logging and metrics)."""

    ENGINE = "engine"
    WEBHOOK = "webhook"
    CLIENT = "client"
    OPERATOR = "operator"


class SubscriptionTier(str, Enum):
    """Subscription tiers, ordered by access level."""

    NONE = "none"
    BEGINNER = "beginner"
    INTERMEDIATE = "intermediate"
    ADVANCED = "advanced"


class PlaybackFormat(str, Enum):
    """Playback URL formats offered by the stream host."""

    HLS = "hls"  # Streaming manifest
    MP4 = "mp4"  # Downloadable file
