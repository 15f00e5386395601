"""HTTP client for the remote stream host (Cloudflare Stream compatible API)."""

import asyncio
import logging
import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import httpx

from api.enums import PlaybackFormat, SubscriptionTier
from api.errors import GatewayError, GatewayErrorKind
from api.metrics import GATEWAY_REQUESTS_TOTAL
from api.tiers import parse_tier, playback_ttl
from config import (
    STREAM_ACCOUNT_ID,
    STREAM_API_BASE,
    STREAM_API_TOKEN,
    STREAM_DELIVERY_HOST,
    STREAM_MAX_RETRIES,
    STREAM_REQUEST_TIMEOUT,
    STREAM_REQUIRE_SIGNED_URLS,
    UPLOAD_MAX_DURATION_SECONDS,
)

logger = logging.getLogger(__name__)

# Retry configuration (administrative calls only)
DEFAULT_RETRY_BASE_DELAY = 0.5  # seconds
DEFAULT_RETRY_MAX_DELAY = 8.0  # seconds

THUMBNAIL_FIT_MODES = frozenset(["clip", "crop", "pad", "scale-down"])


@dataclass
class UploadConstraints:
    """Constraints sent with a direct upload slot request."""

    max_duration_seconds: int = UPLOAD_MAX_DURATION_SECONDS
    require_signed_urls: Optional[bool] = None
    thumbnail_timestamp_pct: Optional[float] = None
    allowed_origins: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        """Build the direct upload body, omitting anything not set."""
        payload: Dict[str, Any] = {"maxDurationSeconds": self.max_duration_seconds}
        if self.require_signed_urls is not None:
            payload["requireSignedURLs"] = self.require_signed_urls
        if self.thumbnail_timestamp_pct is not None:
            payload["thumbnailTimestampPct"] = self.thumbnail_timestamp_pct
        if self.allowed_origins:
            payload["allowedOrigins"] = list(self.allowed_origins)
        # Only a non-empty name is forwarded as asset metadata
        name = self.metadata.get("name")
        if name is not None and name != "":
            payload["meta"] = {"name": str(name)}
        return payload


@dataclass
class UploadSlot:
    remote_asset_id: str
    upload_url: str


@dataclass
class RemoteStatusSnapshot:
    """Point-in-time processing state of a remote asset."""

    remote_asset_id: str
    raw_state: str
    percent_complete: int = 0
    error_reason: Optional[str] = None
    error_code: Optional[str] = None
    duration_seconds: Optional[float] = None
    ready_to_stream: bool = False


@dataclass
class AssetDetails:
    """Metadata fetched once an asset is ready."""

    remote_asset_id: str
    raw_state: str
    duration_seconds: Optional[float]
    ready_to_stream: bool
    thumbnail: Optional[str] = None
    meta: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PlaybackUrl:
    url: str
    format: PlaybackFormat
    tier: SubscriptionTier
    signed: bool
    expires_at: Optional[datetime] = None


def _parse_percent(value: Any) -> int:
    """pctComplete arrives as a string ("45.5"); clamp to 0-100."""
    try:
        percent = int(float(value))
    except (TypeError, ValueError):
        return 0
    return max(0, min(100, percent))


def _parse_duration(value: Any) -> Optional[float]:
    # The host reports -1 until the duration is known
    try:
        duration = float(value)
    except (TypeError, ValueError):
        return None
    if duration < 0:
        return None
    return duration


def parse_asset_snapshot(payload: Dict[str, Any], remote_asset_id: Optional[str] = None) -> RemoteStatusSnapshot:
    """
    Build a snapshot from an asset document.

    Used for both API responses and webhook bodies, which share the shape
    ``{uid, readyToStream, duration, status: {state, pctComplete,
    errorReasonCode, errorReasonText}}``.
    """
    status = payload.get("status")
    if not isinstance(status, dict):
        status = {}
    return RemoteStatusSnapshot(
        remote_asset_id=remote_asset_id or str(payload.get("uid") or ""),
        raw_state=str(status.get("state") or ""),
        percent_complete=_parse_percent(status.get("pctComplete")),
        error_reason=status.get("errorReasonText") or None,
        error_code=status.get("errorReasonCode") or None,
        duration_seconds=_parse_duration(payload.get("duration")),
        ready_to_stream=bool(payload.get("readyToStream")),
    )


def _classify_status(status_code: int) -> GatewayErrorKind:
    if status_code >= 500 or status_code == 429:
        return GatewayErrorKind.TRANSIENT
    if status_code == 404:
        return GatewayErrorKind.NOT_FOUND
    return GatewayErrorKind.VALIDATION


def _first_error(body: Any):
    """Return (code, message, errors) from a host response envelope."""
    if not isinstance(body, dict):
        return None, None, []
    errors = body.get("errors") or []
    if errors and isinstance(errors[0], dict):
        return errors[0].get("code"), errors[0].get("message"), errors
    return None, None, errors


class StreamGatewayClient:
    """Client for the remote stream host API.

    Status polls are issued with no internal retry: the reconciliation engine
    is the retry loop for those. Administrative calls (upload slots, tokens,
    settings) retry transient failures with exponential backoff.
    """

    def __init__(
        self,
        account_id: str = STREAM_ACCOUNT_ID,
        api_token: str = STREAM_API_TOKEN,
        api_base: str = STREAM_API_BASE,
        delivery_host: str = STREAM_DELIVERY_HOST,
        require_signed_urls: bool = STREAM_REQUIRE_SIGNED_URLS,
        timeout: float = STREAM_REQUEST_TIMEOUT,
        max_retries: int = STREAM_MAX_RETRIES,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the stream host client.

        Args:
            account_id: Stream host account identifier
            api_token: Bearer token for the stream host API
            api_base: API root (e.g., https://api.cloudflare.com/client/v4)
            delivery_host: Host serving manifests, downloads and thumbnails
            require_signed_urls: Issue token-signed playback URLs
            timeout: Per-request timeout in seconds
            max_retries: Retry attempts for administrative calls
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.base_url = f"{api_base.rstrip('/')}/accounts/{account_id}/stream"
        self.delivery_host = delivery_host
        self.require_signed_urls = require_signed_urls
        self.headers = {"Authorization": f"Bearer {api_token}"}
        self.timeout = timeout
        self.max_retries = max_retries
        self.is_configured = bool(account_id and api_token)
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

        if not self.is_configured:
            logger.warning("Stream host credentials are not configured; gateway calls will fail")

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client with connection pooling."""
        if self._client is None or self._client.is_closed:
            limits = httpx.Limits(
                max_connections=20,
                max_keepalive_connections=10,
                keepalive_expiry=30.0,
            )
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                limits=limits,
                transport=self._transport,
            )
        return self._client

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        json: Optional[dict] = None,
        max_retries: Optional[int] = None,
    ) -> Any:
        """
        Make an API request and unwrap the ``result`` of the response envelope.

        Raises:
            GatewayError: classified as transient, not_found or validation
        """
        client = await self._get_client()
        url = f"{self.base_url}{path}"
        retries = max_retries if max_retries is not None else self.max_retries

        last_error: Optional[GatewayError] = None

        for attempt in range(retries + 1):
            try:
                resp = await client.request(method, url, headers=self.headers, json=json)
            except httpx.TimeoutException as e:
                last_error = GatewayError(GatewayErrorKind.TRANSIENT, f"Timed out: {e}")
            except httpx.RequestError as e:
                last_error = GatewayError(GatewayErrorKind.TRANSIENT, f"Connection error: {e}")
            else:
                try:
                    body = resp.json()
                except ValueError:
                    body = None
                remote_code, remote_message, remote_errors = _first_error(body)

                if resp.status_code >= 400:
                    kind = _classify_status(resp.status_code)
                    last_error = GatewayError(
                        kind,
                        remote_message or f"HTTP {resp.status_code}",
                        status_code=resp.status_code,
                        remote_code=remote_code,
                        remote_errors=remote_errors,
                    )
                    if kind != GatewayErrorKind.TRANSIENT:
                        GATEWAY_REQUESTS_TOTAL.labels(operation=operation, result=kind.value).inc()
                        raise last_error
                elif not resp.content:
                    # DELETE answers with an empty body
                    GATEWAY_REQUESTS_TOTAL.labels(operation=operation, result="success").inc()
                    return None
                elif not isinstance(body, dict) or not body.get("success"):
                    GATEWAY_REQUESTS_TOTAL.labels(
                        operation=operation, result=GatewayErrorKind.VALIDATION.value
                    ).inc()
                    raise GatewayError(
                        GatewayErrorKind.VALIDATION,
                        remote_message or "Unsuccessful response from stream host",
                        status_code=resp.status_code,
                        remote_code=remote_code,
                        remote_errors=remote_errors,
                    )
                else:
                    GATEWAY_REQUESTS_TOTAL.labels(operation=operation, result="success").inc()
                    return body.get("result")

            if attempt < retries:
                delay = min(
                    DEFAULT_RETRY_BASE_DELAY * (2**attempt),
                    DEFAULT_RETRY_MAX_DELAY,
                )
                # Add jitter (±25%)
                delay = delay * (0.75 + random.random() * 0.5)
                logger.warning(
                    f"Stream host {operation} failed (attempt {attempt + 1}/{retries + 1}), "
                    f"retrying in {delay:.2f}s: {last_error}"
                )
                await asyncio.sleep(delay)

        GATEWAY_REQUESTS_TOTAL.labels(operation=operation, result=GatewayErrorKind.TRANSIENT.value).inc()
        raise last_error

    @staticmethod
    def _require_dict(result: Any, operation: str) -> Dict[str, Any]:
        if not isinstance(result, dict):
            raise GatewayError(GatewayErrorKind.VALIDATION, f"Malformed {operation} result from stream host")
        return result

    async def request_upload_slot(self, constraints: Optional[UploadConstraints] = None) -> UploadSlot:
        """
        Request a one-time direct upload URL.

        Returns:
            UploadSlot with the remote asset id the host allocated
        """
        constraints = constraints or UploadConstraints()
        if constraints.max_duration_seconds is None or constraints.max_duration_seconds <= 0:
            raise GatewayError(GatewayErrorKind.VALIDATION, "max_duration_seconds must be positive")

        result = self._require_dict(
            await self._request(
                "request_upload_slot",
                "POST",
                "/direct_upload",
                json=constraints.to_payload(),
            ),
            "direct_upload",
        )
        uid = result.get("uid")
        upload_url = result.get("uploadURL")
        if not uid or not upload_url:
            raise GatewayError(GatewayErrorKind.VALIDATION, "Upload slot response missing uid or uploadURL")
        logger.info(f"Issued upload slot for remote asset {uid}")
        return UploadSlot(remote_asset_id=uid, upload_url=upload_url)

    async def fetch_asset_status(self, remote_asset_id: str) -> RemoteStatusSnapshot:
        """Fetch the current processing state. Never retries internally."""
        result = self._require_dict(
            await self._request("fetch_asset_status", "GET", f"/{remote_asset_id}", max_retries=0),
            "status",
        )
        return parse_asset_snapshot(result, remote_asset_id)

    async def fetch_asset_details(self, remote_asset_id: str) -> AssetDetails:
        """Fetch duration, thumbnail and metadata. Never retries internally."""
        result = self._require_dict(
            await self._request("fetch_asset_details", "GET", f"/{remote_asset_id}", max_retries=0),
            "details",
        )
        snapshot = parse_asset_snapshot(result, remote_asset_id)
        meta = result.get("meta")
        return AssetDetails(
            remote_asset_id=remote_asset_id,
            raw_state=snapshot.raw_state,
            duration_seconds=snapshot.duration_seconds,
            ready_to_stream=snapshot.ready_to_stream,
            thumbnail=result.get("thumbnail"),
            meta=meta if isinstance(meta, dict) else {},
        )

    def thumbnail_url(
        self,
        remote_asset_id: str,
        time: Optional[float] = None,
        width: Optional[int] = None,
        height: Optional[int] = None,
        fit: Optional[str] = None,
    ) -> str:
        """Build a thumbnail URL on the delivery host. Pure, no network call."""
        if fit is not None and fit not in THUMBNAIL_FIT_MODES:
            raise ValueError(f"Invalid thumbnail fit '{fit}'")
        params = {}
        if time is not None:
            params["time"] = str(time)
        if width is not None:
            params["width"] = str(width)
        if height is not None:
            params["height"] = str(height)
        if fit is not None:
            params["fit"] = fit

        base_url = f"https://{self.delivery_host}/{remote_asset_id}/thumbnails/thumbnail.jpg"
        return f"{base_url}?{urlencode(params)}" if params else base_url

    def _delivery_url(self, remote_asset_id: str, format: PlaybackFormat) -> str:
        if format == PlaybackFormat.MP4:
            return f"https://{self.delivery_host}/{remote_asset_id}/downloads/default.mp4"
        return f"https://{self.delivery_host}/{remote_asset_id}/manifest/video.m3u8"

    async def generate_playback_url(
        self,
        remote_asset_id: str,
        tier: Any = SubscriptionTier.NONE,
        format: PlaybackFormat = PlaybackFormat.HLS,
        ttl_seconds: Optional[int] = None,
    ) -> PlaybackUrl:
        """
        Build a playback URL, signed with a host-issued token when signed URLs are on.

        The token lifetime follows the subscription tier unless ttl_seconds is given.
        """
        tier = parse_tier(tier)
        format = PlaybackFormat(format)
        base_url = self._delivery_url(remote_asset_id, format)

        if not self.require_signed_urls:
            return PlaybackUrl(url=base_url, format=format, tier=tier, signed=False)

        now = datetime.now(timezone.utc)
        expires_at = now + timedelta(seconds=playback_ttl(tier, ttl_seconds))
        result = self._require_dict(
            await self._request(
                "generate_playback_url",
                "POST",
                f"/{remote_asset_id}/token",
                json={
                    "exp": int(expires_at.timestamp()),
                    "nbf": int(now.timestamp()),
                    "downloadable": format == PlaybackFormat.MP4,
                },
            ),
            "token",
        )
        token = result.get("token")
        if not token:
            raise GatewayError(GatewayErrorKind.VALIDATION, "Token response missing token")
        return PlaybackUrl(
            url=f"{base_url}?{urlencode({'token': token})}",
            format=format,
            tier=tier,
            signed=True,
            expires_at=expires_at,
        )

    async def update_asset_settings(
        self,
        remote_asset_id: str,
        require_signed_urls: Optional[bool] = None,
        name: Optional[str] = None,
        allowed_origins: Optional[List[str]] = None,
        thumbnail_timestamp_pct: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Update asset settings; only the given fields are sent."""
        payload: Dict[str, Any] = {}
        if require_signed_urls is not None:
            payload["requireSignedURLs"] = require_signed_urls
        if name:
            payload["meta"] = {"name": name}
        if allowed_origins is not None:
            payload["allowedOrigins"] = allowed_origins
        if thumbnail_timestamp_pct is not None:
            payload["thumbnailTimestampPct"] = thumbnail_timestamp_pct
        result = await self._request("update_asset_settings", "POST", f"/{remote_asset_id}", json=payload)
        return result if isinstance(result, dict) else {}

    async def retry_asset(self, remote_asset_id: str) -> None:
        """
        Nudge the host into reprocessing a failed asset.

        Best effort: the host has no reprocess call, so this touches the asset
        metadata. Callers must keep polling to learn the outcome.

        Raises:
            GatewayError: validation if the asset is already ready
        """
        details = await self._request("retry_asset", "GET", f"/{remote_asset_id}")
        details = self._require_dict(details, "details")
        state = parse_asset_snapshot(details, remote_asset_id).raw_state.lower()
        if state == "ready":
            raise GatewayError(GatewayErrorKind.VALIDATION, "Asset is already processed successfully")

        meta = details.get("meta") if isinstance(details.get("meta"), dict) else {}
        await self._request(
            "retry_asset",
            "POST",
            f"/{remote_asset_id}",
            json={"meta": {**meta, "retry_timestamp": datetime.now(timezone.utc).isoformat()}},
        )
        logger.info(f"Requested reprocessing of remote asset {remote_asset_id}")

    async def delete_asset(self, remote_asset_id: str) -> None:
        await self._request("delete_asset", "DELETE", f"/{remote_asset_id}")
        logger.info(f"Deleted remote asset {remote_asset_id}")

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None
