"""
Stream sync API - upload slots, processing status and stream host webhooks.
Runs on port 9010.
"""

import hmac
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List

from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded

from api.common import (
    RequestIDMiddleware,
    SecurityHeadersMiddleware,
    check_health,
    get_real_ip,
    rate_limit_exceeded_handler,
)
from api.database import configure_database, database
from api.db_retry import DatabaseRetryableError
from api.enums import ProcessingStatus, ReconcileOutcome, ReconcileSource
from api.errors import GatewayError, InvalidPayload, InvalidTransition, WebhookSignatureError
from api.metrics import get_metrics, init_app_info
from api.reconciler import ReconcileResult, Reconciler
from api.record_store import VideoAsset, VideoRecordStore
from api.schemas import (
    EngineStatusResponse,
    ProcessingListResponse,
    SignedUrlRequest,
    SignedUrlResponse,
    SyncAllResponse,
    SyncResultResponse,
    SyncSingleRequest,
    UploadSlotRequest,
    UploadSlotResponse,
    VideoAssetResponse,
    WebhookAckResponse,
)
from api.tiers import tier_allows
from api.webhook_ingest import WebhookIngestor
from config import (
    ADMIN_API_SECRET,
    CORS_ALLOWED_ORIGINS,
    ENGINE_IN_API,
    RATE_LIMIT_DEFAULT,
    RATE_LIMIT_ENABLED,
    RATE_LIMIT_STORAGE_URL,
    RATE_LIMIT_SYNC,
    RATE_LIMIT_WEBHOOK,
    STREAM_REQUIRE_SIGNED_URLS,
    UPLOAD_ALLOWED_ORIGINS,
    UPLOAD_MAX_DURATION_SECONDS,
    UPLOAD_THUMBNAIL_TIMESTAMP_PCT,
)
from worker.reconcile_engine import ReconciliationEngine
from worker.stream_gateway import StreamGatewayClient, UploadConstraints

logger = logging.getLogger(__name__)

# Security event logger for admin authentication
security_logger = logging.getLogger("security.admin_auth")

WEBHOOK_PATH = "/api/webhooks/stream"

# Initialize rate limiter
limiter = Limiter(
    key_func=get_real_ip,
    storage_uri=RATE_LIMIT_STORAGE_URL if RATE_LIMIT_ENABLED else None,
    enabled=RATE_LIMIT_ENABLED,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Connect the database, wire services and run the reconciliation engine."""
    if RATE_LIMIT_ENABLED and RATE_LIMIT_STORAGE_URL == "memory://":
        logger.warning(
            "Rate limiting is using in-memory storage. "
            "For deployments with multiple instances, configure "
            "STREAMSYNC_RATE_LIMIT_STORAGE_URL=redis://localhost:6379"
        )
    await database.connect()
    await configure_database()
    init_app_info()

    gateway = StreamGatewayClient()
    store = VideoRecordStore(database)
    reconciler = Reconciler(store, gateway)
    engine = ReconciliationEngine(store, reconciler)
    app.state.gateway = gateway
    app.state.store = store
    app.state.reconciler = reconciler
    app.state.engine = engine
    app.state.ingestor = WebhookIngestor(store, reconciler, engine)

    if ENGINE_IN_API:
        await engine.start()
    try:
        yield
    finally:
        await engine.stop()
        await gateway.close()
        await database.disconnect()


class AdminAuthMiddleware:
    """
    Require X-Admin-Secret on /api routes when ADMIN_API_SECRET is set.

    The webhook route authenticates with its own HMAC signature and is
    always let through, as are CORS preflight requests.
    """

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        path = scope.get("path", "")
        if (
            not ADMIN_API_SECRET
            or not path.startswith("/api")
            or path == WEBHOOK_PATH
            or scope.get("method") == "OPTIONS"
        ):
            await self.app(scope, receive, send)
            return

        client = scope.get("client")
        client_ip = client[0] if client else "unknown"
        headers = dict(scope.get("headers", []))
        admin_secret = headers.get(b"x-admin-secret", b"").decode("utf-8", errors="ignore")

        if admin_secret and hmac.compare_digest(admin_secret, ADMIN_API_SECRET):
            await self.app(scope, receive, send)
            return

        reason = "invalid_secret" if admin_secret else "no_credentials"
        security_logger.warning(
            "Admin API auth failed",
            extra={"event": "auth_failure", "reason": reason, "path": path, "client_ip": client_ip},
        )
        response = JSONResponse(status_code=401, content={"detail": "Authentication required"})
        await response(scope, receive, send)


app = FastAPI(title="streamsync", description="Stream processing status reconciliation", lifespan=lifespan)

# Register rate limiter with the app
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)


@app.exception_handler(DatabaseRetryableError)
async def database_retry_handler(request: Request, exc: DatabaseRetryableError):
    """Handle exhausted database retries with a 503 response."""
    logger.warning(f"Database unavailable: {exc}")
    return JSONResponse(
        status_code=503,
        content={"detail": "Database temporarily unavailable, please retry"},
        headers={"Retry-After": "1"},
    )


app.add_middleware(AdminAuthMiddleware)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(RequestIDMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOWED_ORIGINS,
    allow_credentials="*" not in CORS_ALLOWED_ORIGINS,
    allow_methods=["GET", "HEAD", "OPTIONS", "POST"],
    allow_headers=["Content-Type", "X-Admin-Secret", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
)


def _gateway_http_error(e: GatewayError) -> HTTPException:
    """Translate a gateway failure into an HTTP error for the caller."""
    if e.is_transient:
        return HTTPException(
            status_code=503,
            detail=f"Stream host temporarily unavailable: {e.message}",
            headers={"Retry-After": "10"},
        )
    return HTTPException(status_code=502, detail=f"Stream host error: {e.message}")


async def _get_asset_or_404(request: Request, video_id: int) -> VideoAsset:
    asset = await request.app.state.store.get_by_id(video_id)
    if asset is None:
        raise HTTPException(status_code=404, detail="Video not found")
    return asset


def _track_result(request: Request, asset: VideoAsset, result: ReconcileResult) -> None:
    engine: ReconciliationEngine = request.app.state.engine
    engine.track(asset, result.after_status)


def _sync_response(asset: VideoAsset, result: ReconcileResult) -> SyncResultResponse:
    return SyncResultResponse(
        video_id=asset.id,
        title=asset.title,
        remote_asset_id=asset.remote_asset_id,
        outcome=result.outcome.value,
        old_status=result.before_status.value,
        new_status=result.after_status.value,
        remote_state=result.raw_state,
        updated=result.updated,
        error=result.error,
    )


@app.get("/health")
async def health_check(request: Request):
    """
    Health check endpoint for monitoring and load balancers.

    Returns 503 if the database is unreachable or the engine is not running.
    """
    store = getattr(request.app.state, "store", None)
    engine = getattr(request.app.state, "engine", None)
    result = await check_health(store.db if store is not None else database, engine if ENGINE_IN_API else None)
    if not ENGINE_IN_API:
        # Engine runs in a separate worker process
        result["checks"].pop("engine", None)
        result["healthy"] = all(result["checks"].values())
        result["status_code"] = 200 if result["healthy"] else 503

    return JSONResponse(
        status_code=result["status_code"],
        content={
            "status": "healthy" if result["healthy"] else "unhealthy",
            "checks": result["checks"],
        },
    )


@app.get("/metrics")
async def metrics():
    """Prometheus metrics in text exposition format."""
    return Response(content=get_metrics(), media_type=CONTENT_TYPE_LATEST)


@app.post("/api/uploads", response_model=UploadSlotResponse)
@limiter.limit(RATE_LIMIT_DEFAULT)
async def create_upload(request: Request, data: UploadSlotRequest) -> UploadSlotResponse:
    """
    Request a direct upload URL and create the local record.

    The record starts in ``uploading`` and is watched by the engine
    immediately, so the not-found grace window starts now.
    """
    state = request.app.state
    constraints = UploadConstraints(
        max_duration_seconds=data.max_duration_seconds or UPLOAD_MAX_DURATION_SECONDS,
        require_signed_urls=(
            data.require_signed_urls if data.require_signed_urls is not None else STREAM_REQUIRE_SIGNED_URLS
        ),
        thumbnail_timestamp_pct=(
            data.thumbnail_timestamp_pct
            if data.thumbnail_timestamp_pct is not None
            else UPLOAD_THUMBNAIL_TIMESTAMP_PCT
        ),
        allowed_origins=data.allowed_origins or UPLOAD_ALLOWED_ORIGINS,
        metadata={"name": data.title},
    )

    try:
        slot = await state.gateway.request_upload_slot(constraints)
    except GatewayError as e:
        logger.warning(f"Upload slot request failed: {e}")
        raise _gateway_http_error(e)

    asset = await state.store.create_uploading(data.title)
    asset = await state.store.attach_remote_asset(asset.id, slot.remote_asset_id)
    state.engine.watch(asset)

    return UploadSlotResponse(
        video_id=asset.id,
        remote_asset_id=slot.remote_asset_id,
        upload_url=slot.upload_url,
        processing_status=asset.processing_status.value,
    )


@app.get("/api/videos/{video_id}", response_model=VideoAssetResponse)
@limiter.limit(RATE_LIMIT_DEFAULT)
async def get_video(request: Request, video_id: int) -> VideoAssetResponse:
    """Current record as stored (the client poll refresh)."""
    asset = await _get_asset_or_404(request, video_id)
    return VideoAssetResponse(**asset.to_dict())


@app.get("/api/video-processing/processing", response_model=ProcessingListResponse)
@limiter.limit(RATE_LIMIT_DEFAULT)
async def list_processing(request: Request) -> ProcessingListResponse:
    """List records still uploading or processing, oldest first."""
    assets = await request.app.state.store.list_by_status(
        [ProcessingStatus.UPLOADING, ProcessingStatus.PROCESSING]
    )
    return ProcessingListResponse(
        videos=[VideoAssetResponse(**asset.to_dict()) for asset in assets],
        count=len(assets),
    )


@app.post("/api/video-processing/sync-single", response_model=SyncResultResponse)
@limiter.limit(RATE_LIMIT_SYNC)
async def sync_single(request: Request, data: SyncSingleRequest) -> SyncResultResponse:
    """Reconcile one record against the stream host now."""
    asset = await _get_asset_or_404(request, data.video_id)
    result = await request.app.state.reconciler.reconcile(asset, ReconcileSource.CLIENT)
    _track_result(request, asset, result)
    return _sync_response(asset, result)


@app.post("/api/video-processing/sync-all", response_model=SyncAllResponse)
@limiter.limit(RATE_LIMIT_SYNC)
async def sync_all(request: Request) -> SyncAllResponse:
    """Reconcile every uploading/processing record once."""
    state = request.app.state
    assets = await state.store.list_by_status([ProcessingStatus.UPLOADING, ProcessingStatus.PROCESSING])

    details: List[SyncResultResponse] = []
    for asset in assets:
        result = await state.reconciler.reconcile(asset, ReconcileSource.OPERATOR)
        _track_result(request, asset, result)
        details.append(_sync_response(asset, result))

    updated = sum(1 for d in details if d.updated)
    failed = sum(1 for d in details if d.outcome == ReconcileOutcome.FAILED.value)
    logger.info(f"Sync-all reconciled {len(details)} videos ({updated} updated, {failed} failed)")
    return SyncAllResponse(
        total=len(details),
        updated=updated,
        unchanged=len(details) - updated,
        failed=failed,
        details=details,
    )


@app.post("/api/videos/{video_id}/retry", response_model=VideoAssetResponse)
@limiter.limit(RATE_LIMIT_SYNC)
async def retry_video(request: Request, video_id: int) -> VideoAssetResponse:
    """Operator retry: error -> uploading, nudge the stream host, watch again."""
    asset = await _get_asset_or_404(request, video_id)
    try:
        updated = await request.app.state.reconciler.retry(asset)
    except InvalidTransition as e:
        raise HTTPException(status_code=409, detail=str(e))
    request.app.state.engine.watch(updated)
    return VideoAssetResponse(**updated.to_dict())


@app.post("/api/video/signed-url", response_model=SignedUrlResponse)
@limiter.limit(RATE_LIMIT_DEFAULT)
async def signed_url(request: Request, data: SignedUrlRequest) -> SignedUrlResponse:
    """Issue a playback URL whose lifetime follows the subscriber's tier."""
    asset = await _get_asset_or_404(request, data.video_id)
    if data.required_tier is not None and not tier_allows(data.subscription_tier, data.required_tier):
        raise HTTPException(status_code=403, detail="Subscription tier does not include this video")
    if asset.processing_status != ProcessingStatus.READY or not asset.remote_asset_id:
        raise HTTPException(status_code=409, detail="Video is not ready for playback")

    try:
        playback = await request.app.state.gateway.generate_playback_url(
            asset.remote_asset_id, data.subscription_tier, data.format
        )
    except GatewayError as e:
        logger.warning(f"Playback URL generation failed for video {asset.id}: {e}")
        raise _gateway_http_error(e)

    expires_in = None
    if playback.expires_at is not None:
        expires_in = int((playback.expires_at - datetime.now(timezone.utc)).total_seconds())
    return SignedUrlResponse(
        video_id=asset.id,
        url=playback.url,
        format=playback.format.value,
        signed=playback.signed,
        expires_at=playback.expires_at,
        expires_in=expires_in,
    )


@app.post(WEBHOOK_PATH, response_model=WebhookAckResponse)
@limiter.limit(RATE_LIMIT_WEBHOOK)
async def stream_webhook(request: Request) -> WebhookAckResponse:
    """
    Receive processing notifications from the stream host.

    Unknown assets and no-op transitions are acknowledged with 200 so the
    sender does not retry them.
    """
    body = await request.body()
    try:
        result = await request.app.state.ingestor.handle(body, request.headers, client_ip=get_real_ip(request))
    except WebhookSignatureError:
        raise HTTPException(status_code=401, detail="Invalid webhook signature")
    except InvalidPayload as e:
        raise HTTPException(status_code=400, detail=f"Invalid payload: {e}")
    return WebhookAckResponse(**result.to_dict())


@app.get("/api/engine", response_model=EngineStatusResponse)
@limiter.limit(RATE_LIMIT_DEFAULT)
async def engine_status(request: Request) -> EngineStatusResponse:
    """Watched set, in-flight attempts and transient failure counters."""
    return EngineStatusResponse(**request.app.state.engine.status())


if __name__ == "__main__":
    import uvicorn

    from config import API_PORT

    uvicorn.run(app, host="0.0.0.0", port=API_PORT)
