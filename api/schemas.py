from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from api.enums import PlaybackFormat, SubscriptionTier

# Longest upload the stream host accepts (6 hours)
MAX_UPLOAD_DURATION_SECONDS = 21600

# Maximum origins accepted for an upload slot
MAX_ALLOWED_ORIGINS = 20


class UploadSlotRequest(BaseModel):
    """Request a direct upload URL and create the local record."""

    title: str = Field(default="", max_length=255)
    max_duration_seconds: Optional[int] = Field(default=None, ge=1, le=MAX_UPLOAD_DURATION_SECONDS)
    require_signed_urls: Optional[bool] = None
    thumbnail_timestamp_pct: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    allowed_origins: List[str] = Field(default_factory=list, max_length=MAX_ALLOWED_ORIGINS)

    @field_validator("title", mode="before")
    @classmethod
    def default_title(cls, v):
        return v.strip() if isinstance(v, str) else (v if v is not None else "")

    @field_validator("allowed_origins")
    @classmethod
    def strip_origins(cls, v: List[str]) -> List[str]:
        return [origin.strip() for origin in v if origin and origin.strip()]


class UploadSlotResponse(BaseModel):
    video_id: int
    remote_asset_id: str
    upload_url: str
    processing_status: str


class VideoAssetResponse(BaseModel):
    id: int
    title: str
    remote_asset_id: Optional[str] = None
    processing_status: str
    duration_seconds: Optional[int] = None
    thumbnail_url: Optional[str] = None
    is_published: bool = False
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    ready_at: Optional[datetime] = None
    retried_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ProcessingListResponse(BaseModel):
    """Records still converging with the stream host."""

    videos: List[VideoAssetResponse]
    count: int


class SyncSingleRequest(BaseModel):
    """Reconcile one record now (client poll or dashboard button)."""

    model_config = ConfigDict(populate_by_name=True)

    video_id: int = Field(..., alias="videoId", ge=1)


class SyncResultResponse(BaseModel):
    video_id: int
    title: str = ""
    remote_asset_id: Optional[str] = None
    outcome: str
    old_status: str
    new_status: str
    remote_state: Optional[str] = None
    updated: bool
    error: Optional[str] = None


class SyncAllResponse(BaseModel):
    total: int
    updated: int
    unchanged: int
    failed: int
    details: List[SyncResultResponse]


class SignedUrlRequest(BaseModel):
    """Request a playback URL for a ready video."""

    model_config = ConfigDict(populate_by_name=True)

    video_id: int = Field(..., alias="videoId", ge=1)
    subscription_tier: SubscriptionTier = Field(default=SubscriptionTier.BEGINNER, alias="subscriptionTier")
    required_tier: Optional[SubscriptionTier] = Field(default=None, alias="requiredTier")
    format: PlaybackFormat = PlaybackFormat.HLS

    @field_validator("subscription_tier", "required_tier", mode="before")
    @classmethod
    def normalize_tier(cls, v):
        if isinstance(v, str):
            return v.strip().lower()
        return v


class SignedUrlResponse(BaseModel):
    video_id: int
    url: str
    format: str
    signed: bool
    expires_at: Optional[datetime] = None
    expires_in: Optional[int] = None


class EngineStatusResponse(BaseModel):
    running: bool
    interval_seconds: float
    concurrency: int
    failure_ceiling: int
    watched: List[str]
    in_flight: List[str]
    failure_counts: Dict[str, int]


class WebhookAckResponse(BaseModel):
    received: bool = True
    remote_asset_id: Optional[str] = None
    result: str
    outcome: Optional[str] = None
    status: Optional[str] = None
