"""
Stream host webhook ingestion.

Deliveries are authenticated with HMAC-SHA256 over the raw body before the
body is parsed:

    Webhook-Signature: time=<unix seconds>,sig1=<hex(HMAC(secret, "<time>.<body>"))>

A plain ``X-Signature: sha256=<hex(HMAC(secret, body))>`` header is accepted
as well for senders that cannot sign the timestamp.

Verified deliveries are applied through the same Reconciler as every other
trigger, so a webhook and an engine tick racing on one asset converge to
the same record. Every delivery is written to ``stream_webhook_events``.
"""

import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Tuple

from api.enums import ReconcileSource
from api.errors import InvalidPayload, WebhookSignatureError
from api.metrics import WEBHOOK_EVENTS_TOTAL
from api.reconciler import ReconcileResult, Reconciler
from api.record_store import VideoRecordStore
from config import WEBHOOK_ALLOW_UNSIGNED, WEBHOOK_MAX_AGE_SECONDS, WEBHOOK_SECRET
from worker.stream_gateway import RemoteStatusSnapshot, parse_asset_snapshot

logger = logging.getLogger(__name__)

# Security event logger for webhook authentication
security_logger = logging.getLogger("security.webhooks")

SIGNATURE_HEADER = "webhook-signature"
LEGACY_SIGNATURE_HEADER = "x-signature"


def compute_signature(secret: str, timestamp: str, body: bytes) -> str:
    """HMAC-SHA256 hex digest of ``"<timestamp>.<body>"``."""
    message = timestamp.encode("utf-8") + b"." + body
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def generate_signature_header(secret: str, body: bytes, timestamp: Optional[int] = None) -> str:
    """Build a ``Webhook-Signature`` header value for ``body``.

    Args:
        secret: Shared webhook secret
        body: Raw request body
        timestamp: Unix time to sign (defaults to now)

    Returns:
        Header value in format "time=<unix>,sig1=<hex_digest>"
    """
    ts = str(int(timestamp if timestamp is not None else time.time()))
    return f"time={ts},sig1={compute_signature(secret, ts, body)}"


def generate_legacy_signature(body: bytes, secret: str) -> str:
    """Build an ``X-Signature`` header value in format "sha256=<hex_digest>"."""
    signature = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={signature}"


def parse_signature_header(value: str) -> Tuple[str, str]:
    """Split ``time=...,sig1=...`` into (time, signature).

    Raises:
        WebhookSignatureError: If either part is missing
    """
    parts: Dict[str, str] = {}
    for item in value.split(","):
        if "=" in item:
            key, val = item.split("=", 1)
            parts[key.strip()] = val.strip()
    timestamp = parts.get("time")
    signature = parts.get("sig1")
    if not timestamp or not signature:
        raise WebhookSignatureError("Malformed signature header")
    return timestamp, signature


def verify_webhook_signature(
    body: bytes,
    headers: Mapping[str, str],
    secret: str = WEBHOOK_SECRET,
    allow_unsigned: bool = WEBHOOK_ALLOW_UNSIGNED,
    max_age_seconds: int = WEBHOOK_MAX_AGE_SECONDS,
    now: Optional[float] = None,
) -> None:
    """
    Authenticate a webhook delivery.

    Raises:
        WebhookSignatureError: If the delivery cannot be trusted
    """
    if not secret:
        if allow_unsigned:
            return
        raise WebhookSignatureError("Webhook secret is not configured")

    header = headers.get(SIGNATURE_HEADER)
    if header:
        timestamp, signature = parse_signature_header(header)
        try:
            signed_at = int(timestamp)
        except ValueError:
            raise WebhookSignatureError("Malformed signature timestamp")
        current = now if now is not None else time.time()
        if max_age_seconds and abs(current - signed_at) > max_age_seconds:
            raise WebhookSignatureError("Signature timestamp outside tolerance")
        expected = compute_signature(secret, timestamp, body)
        if not hmac.compare_digest(expected, signature):
            raise WebhookSignatureError("Signature mismatch")
        return

    legacy = headers.get(LEGACY_SIGNATURE_HEADER)
    if legacy:
        if not hmac.compare_digest(generate_legacy_signature(body, secret), legacy):
            raise WebhookSignatureError("Signature mismatch")
        return

    raise WebhookSignatureError("Missing signature header")


def parse_webhook_payload(body: bytes) -> Tuple[Dict[str, Any], RemoteStatusSnapshot]:
    """Parse a webhook body into the raw document and a status snapshot.

    Raises:
        InvalidPayload: If the body is not a JSON object with a ``uid``
    """
    try:
        payload = json.loads(body)
    except (ValueError, UnicodeDecodeError) as e:
        raise InvalidPayload(f"Body is not valid JSON: {e}")
    if not isinstance(payload, dict):
        raise InvalidPayload("Body must be a JSON object")
    uid = payload.get("uid")
    if not uid or not isinstance(uid, str):
        raise InvalidPayload("Missing uid")
    return payload, parse_asset_snapshot(payload, uid)


@dataclass
class WebhookResult:
    remote_asset_id: str
    result: str  # applied, unknown_asset
    reconcile: Optional[ReconcileResult] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "received": True,
            "remote_asset_id": self.remote_asset_id,
            "result": self.result,
        }
        if self.reconcile is not None:
            data["outcome"] = self.reconcile.outcome.value
            data["status"] = self.reconcile.after_status.value
        return data


class WebhookIngestor:
    """Authenticates, parses and applies stream host webhook deliveries."""

    def __init__(
        self,
        store: VideoRecordStore,
        reconciler: Reconciler,
        engine=None,
        secret: str = WEBHOOK_SECRET,
        allow_unsigned: bool = WEBHOOK_ALLOW_UNSIGNED,
        max_age_seconds: int = WEBHOOK_MAX_AGE_SECONDS,
    ):
        self.store = store
        self.reconciler = reconciler
        self.engine = engine
        self.secret = secret
        self.allow_unsigned = allow_unsigned
        self.max_age_seconds = max_age_seconds

        if not secret and allow_unsigned:
            logger.warning("Accepting unsigned stream webhooks; do not use this in production")

    async def handle(
        self,
        body: bytes,
        headers: Mapping[str, str],
        client_ip: Optional[str] = None,
    ) -> WebhookResult:
        """
        Process one delivery.

        Raises:
            WebhookSignatureError: Delivery not authenticated (nothing applied)
            InvalidPayload: Body malformed (nothing applied)
        """
        headers = {k.lower(): v for k, v in headers.items()}

        try:
            verify_webhook_signature(
                body,
                headers,
                secret=self.secret,
                allow_unsigned=self.allow_unsigned,
                max_age_seconds=self.max_age_seconds,
            )
        except WebhookSignatureError as e:
            security_logger.warning(
                "Stream webhook rejected: invalid signature",
                extra={"event": "webhook_auth_failure", "reason": str(e), "client_ip": client_ip},
            )
            WEBHOOK_EVENTS_TOTAL.labels(result="invalid_signature").inc()
            await self.store.record_webhook_event(None, None, None, success=False, error_message=str(e))
            raise

        try:
            payload, snapshot = parse_webhook_payload(body)
        except InvalidPayload as e:
            logger.warning(f"Invalid stream webhook payload: {e}")
            WEBHOOK_EVENTS_TOTAL.labels(result="invalid_payload").inc()
            await self.store.record_webhook_event(
                None, None, None, success=False, payload=body.decode("utf-8", errors="replace"), error_message=str(e)
            )
            raise

        remote_asset_id = snapshot.remote_asset_id
        asset = await self.store.get_by_remote_asset_id(remote_asset_id)
        if asset is None:
            logger.info(f"Webhook for unknown remote asset {remote_asset_id}, acknowledging")
            WEBHOOK_EVENTS_TOTAL.labels(result="unknown_asset").inc()
            await self.store.record_webhook_event(
                remote_asset_id,
                snapshot.raw_state,
                None,
                success=True,
                payload=payload,
                error_message="No local record for asset",
            )
            return WebhookResult(remote_asset_id=remote_asset_id, result="unknown_asset")

        try:
            result = await self.reconciler.apply_snapshot(asset, snapshot, ReconcileSource.WEBHOOK)
        except Exception as e:
            WEBHOOK_EVENTS_TOTAL.labels(result="error").inc()
            await self.store.record_webhook_event(
                remote_asset_id, snapshot.raw_state, None, success=False, payload=payload, error_message=str(e)
            )
            raise

        if self.engine is not None:
            self.engine.track(asset, result.after_status)

        WEBHOOK_EVENTS_TOTAL.labels(result="applied").inc()
        await self.store.record_webhook_event(
            remote_asset_id,
            snapshot.raw_state,
            result.outcome.value,
            success=True,
            payload=payload,
            error_message=result.error,
        )
        return WebhookResult(remote_asset_id=remote_asset_id, result="applied", reconcile=result)
