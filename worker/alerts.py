"""
Operator alerts for stream processing events.

Provides webhook notifications for:
- Assets the stream host failed to process
- Uploads that never completed within the grace window
- Assets escalated after repeated failed status checks
- Reconciliation engine startup and shutdown

Includes rate limiting to prevent alert flooding.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Dict, Optional

import httpx

from config import ALERT_RATE_LIMIT_SECONDS, ALERT_WEBHOOK_TIMEOUT, ALERT_WEBHOOK_URL

logger = logging.getLogger(__name__)


class AlertType(str, Enum):
    """Types of alerts that can be sent."""

    PROCESSING_FAILED = "processing_failed"
    UPLOAD_NEVER_COMPLETED = "upload_never_completed"
    RETRY_CEILING_EXCEEDED = "retry_ceiling_exceeded"
    ENGINE_STARTUP = "engine_startup"
    ENGINE_SHUTDOWN = "engine_shutdown"


@dataclass
class AlertMetrics:
    """Tracks metrics for alerting and monitoring."""

    # Counters
    processing_failures: int = 0
    uploads_never_completed: int = 0
    retry_ceilings_exceeded: int = 0
    alerts_sent: int = 0
    alerts_rate_limited: int = 0
    alerts_failed: int = 0

    # Last alert timestamps by type (for rate limiting)
    last_alert_time: Dict[str, float] = field(default_factory=dict)

    def increment_processing_failed(self) -> int:
        self.processing_failures += 1
        return self.processing_failures

    def increment_upload_never_completed(self) -> int:
        self.uploads_never_completed += 1
        return self.uploads_never_completed

    def increment_retry_ceiling(self) -> int:
        self.retry_ceilings_exceeded += 1
        return self.retry_ceilings_exceeded

    def can_send_alert(self, alert_type: str, rate_limit_seconds: int = 300) -> bool:
        """Check if enough time has passed since the last alert of this type."""
        last_time = self.last_alert_time.get(alert_type, 0)
        return (time.time() - last_time) >= rate_limit_seconds

    def record_alert_sent(self, alert_type: str):
        """Record that an alert was sent."""
        self.last_alert_time[alert_type] = time.time()
        self.alerts_sent += 1

    def record_alert_rate_limited(self):
        self.alerts_rate_limited += 1

    def record_alert_failed(self):
        self.alerts_failed += 1

    def to_dict(self) -> Dict[str, Any]:
        """Convert metrics to a dictionary for reporting."""
        return {
            "processing_failures": self.processing_failures,
            "uploads_never_completed": self.uploads_never_completed,
            "retry_ceilings_exceeded": self.retry_ceilings_exceeded,
            "alerts_sent": self.alerts_sent,
            "alerts_rate_limited": self.alerts_rate_limited,
            "alerts_failed": self.alerts_failed,
        }


# Global metrics instance
_metrics: Optional[AlertMetrics] = None


def get_metrics() -> AlertMetrics:
    """Get or create the global metrics instance."""
    global _metrics
    if _metrics is None:
        _metrics = AlertMetrics()
    return _metrics


def reset_metrics():
    """Reset metrics (for testing)."""
    global _metrics
    _metrics = AlertMetrics()


def send_alert_fire_and_forget(coro: Awaitable[Any]) -> None:
    """
    Schedule an alert coroutine as a fire-and-forget background task.

    Alert failures never reach the reconciliation path; they are logged at
    debug level.

    Args:
        coro: The alert coroutine to execute (e.g., alert_processing_failed(...))
    """

    async def _safe_send():
        try:
            await coro
        except Exception as e:
            logger.debug(f"Failed to send alert (fire-and-forget): {e}")

    try:
        asyncio.create_task(_safe_send())
    except RuntimeError:
        logger.debug("Cannot send alert: no running event loop")


async def send_webhook_alert(
    alert_type: AlertType,
    details: Dict[str, Any],
    force: bool = False,
) -> bool:
    """
    Send an alert to the configured webhook URL.

    Args:
        alert_type: Type of alert being sent
        details: Additional details about the alert
        force: If True, bypass rate limiting

    Returns:
        True if alert was sent successfully, False otherwise
    """
    if not ALERT_WEBHOOK_URL:
        return False

    metrics = get_metrics()

    if not force and not metrics.can_send_alert(alert_type.value, ALERT_RATE_LIMIT_SECONDS):
        metrics.record_alert_rate_limited()
        logger.debug(f"Alert {alert_type.value} rate limited")
        return False

    payload = {
        "event": alert_type.value,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "details": details,
        "metrics": metrics.to_dict(),
    }

    try:
        async with httpx.AsyncClient(timeout=ALERT_WEBHOOK_TIMEOUT) as client:
            response = await client.post(
                ALERT_WEBHOOK_URL,
                json=payload,
                headers={"Content-Type": "application/json"},
            )
            response.raise_for_status()

        metrics.record_alert_sent(alert_type.value)
        logger.info(f"Alert sent: {alert_type.value}")
        return True

    except httpx.TimeoutException:
        metrics.record_alert_failed()
        logger.warning(f"Alert webhook timed out after {ALERT_WEBHOOK_TIMEOUT}s")
        return False
    except httpx.HTTPStatusError as e:
        metrics.record_alert_failed()
        logger.warning(f"Alert webhook returned error: {e.response.status_code}")
        return False
    except Exception as e:
        metrics.record_alert_failed()
        logger.warning(f"Failed to send alert webhook: {e}")
        return False


async def alert_processing_failed(
    video_id: int,
    remote_asset_id: str,
    error_code: Optional[str] = None,
    error_message: Optional[str] = None,
):
    """Send alert when the stream host reports an asset as failed."""
    get_metrics().increment_processing_failed()

    await send_webhook_alert(
        AlertType.PROCESSING_FAILED,
        {
            "video_id": video_id,
            "remote_asset_id": remote_asset_id,
            "error_code": error_code,
            "error_message": error_message[:500] if error_message else None,
        },
    )


async def alert_upload_never_completed(
    video_id: int,
    remote_asset_id: str,
    grace_seconds: int,
):
    """Send alert when an upload slot was issued but the asset never appeared."""
    get_metrics().increment_upload_never_completed()

    await send_webhook_alert(
        AlertType.UPLOAD_NEVER_COMPLETED,
        {
            "video_id": video_id,
            "remote_asset_id": remote_asset_id,
            "grace_seconds": grace_seconds,
        },
    )


async def alert_retry_ceiling_exceeded(
    video_id: int,
    remote_asset_id: str,
    attempts: int,
    last_error: Optional[str] = None,
):
    """
    Send alert when an asset is escalated after repeated failed status checks.

    Always sent: escalation means the stream host has been unreachable for
    this asset for a long time.
    """
    metrics = get_metrics()
    metrics.increment_retry_ceiling()

    await send_webhook_alert(
        AlertType.RETRY_CEILING_EXCEEDED,
        {
            "video_id": video_id,
            "remote_asset_id": remote_asset_id,
            "attempts": attempts,
            "last_error": last_error[:500] if last_error else None,
            "total_retry_ceilings_exceeded": metrics.retry_ceilings_exceeded,
        },
        force=True,
    )


async def alert_engine_startup(watched_assets: int = 0):
    """Send alert when the reconciliation engine starts."""
    await send_webhook_alert(
        AlertType.ENGINE_STARTUP,
        {"watched_assets": watched_assets},
        force=True,
    )


async def alert_engine_shutdown(watched_assets: int = 0):
    """Send alert when the reconciliation engine stops."""
    await send_webhook_alert(
        AlertType.ENGINE_SHUTDOWN,
        {
            "watched_assets": watched_assets,
            "final_metrics": get_metrics().to_dict(),
        },
        force=True,
    )
