"""Tests for operator alerting."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from worker.alerts import (
    AlertMetrics,
    AlertType,
    alert_engine_shutdown,
    alert_engine_startup,
    alert_processing_failed,
    alert_retry_ceiling_exceeded,
    alert_upload_never_completed,
    get_metrics,
    reset_metrics,
    send_alert_fire_and_forget,
    send_webhook_alert,
)


@pytest.fixture(autouse=True)
def reset_alert_metrics():
    """Reset metrics before each test."""
    reset_metrics()
    yield
    reset_metrics()


class TestAlertMetrics:
    def test_initial_state(self):
        metrics = AlertMetrics()
        assert metrics.processing_failures == 0
        assert metrics.uploads_never_completed == 0
        assert metrics.retry_ceilings_exceeded == 0
        assert metrics.alerts_sent == 0

    def test_counters(self):
        metrics = AlertMetrics()
        assert metrics.increment_processing_failed() == 1
        assert metrics.increment_processing_failed() == 2
        assert metrics.increment_upload_never_completed() == 1
        assert metrics.increment_retry_ceiling() == 1

    def test_rate_limit_window(self):
        metrics = AlertMetrics()
        assert metrics.can_send_alert("processing_failed") is True
        metrics.record_alert_sent("processing_failed")
        assert metrics.can_send_alert("processing_failed") is False
        assert metrics.can_send_alert("processing_failed", rate_limit_seconds=0) is True
        # Other alert types are unaffected
        assert metrics.can_send_alert("engine_startup") is True

    def test_to_dict(self):
        metrics = AlertMetrics()
        metrics.increment_retry_ceiling()
        metrics.record_alert_failed()
        data = metrics.to_dict()
        assert data["retry_ceilings_exceeded"] == 1
        assert data["alerts_failed"] == 1


class TestSendWebhookAlert:
    async def test_no_webhook_url_configured(self):
        with patch("worker.alerts.ALERT_WEBHOOK_URL", ""):
            assert await send_webhook_alert(AlertType.PROCESSING_FAILED, {"video_id": 1}) is False

    async def test_successful_webhook_call(self):
        mock_response = MagicMock()
        mock_response.raise_for_status = MagicMock()

        with patch("worker.alerts.ALERT_WEBHOOK_URL", "https://example.com/hook"):
            with patch("httpx.AsyncClient") as mock_client:
                mock_instance = AsyncMock()
                mock_instance.post = AsyncMock(return_value=mock_response)
                mock_client.return_value.__aenter__.return_value = mock_instance

                result = await send_webhook_alert(AlertType.UPLOAD_NEVER_COMPLETED, {"video_id": 5}, force=True)

        assert result is True
        url = mock_instance.post.call_args[0][0]
        payload = mock_instance.post.call_args[1]["json"]
        assert url == "https://example.com/hook"
        assert payload["event"] == "upload_never_completed"
        assert payload["details"] == {"video_id": 5}
        assert "timestamp" in payload
        assert get_metrics().alerts_sent == 1

    async def test_rate_limiting(self):
        metrics = get_metrics()
        metrics.record_alert_sent(AlertType.PROCESSING_FAILED.value)

        with patch("worker.alerts.ALERT_WEBHOOK_URL", "https://example.com/hook"):
            result = await send_webhook_alert(AlertType.PROCESSING_FAILED, {})

        assert result is False
        assert metrics.alerts_rate_limited == 1

    async def test_timeout_error(self):
        with patch("worker.alerts.ALERT_WEBHOOK_URL", "https://example.com/hook"):
            with patch("httpx.AsyncClient") as mock_client:
                mock_instance = AsyncMock()
                mock_instance.post = AsyncMock(side_effect=httpx.TimeoutException("timeout"))
                mock_client.return_value.__aenter__.return_value = mock_instance

                result = await send_webhook_alert(AlertType.ENGINE_STARTUP, {}, force=True)

        assert result is False
        assert get_metrics().alerts_failed == 1

    async def test_http_error(self):
        with patch("worker.alerts.ALERT_WEBHOOK_URL", "https://example.com/hook"):
            with patch("httpx.AsyncClient") as mock_client:
                mock_instance = AsyncMock()
                mock_response = MagicMock()
                mock_response.status_code = 500
                error = httpx.HTTPStatusError("error", request=MagicMock(), response=mock_response)
                mock_instance.post = AsyncMock(side_effect=error)
                mock_client.return_value.__aenter__.return_value = mock_instance

                result = await send_webhook_alert(AlertType.ENGINE_STARTUP, {}, force=True)

        assert result is False
        assert get_metrics().alerts_failed == 1


class TestAlertHelpers:
    async def test_processing_failed(self):
        with patch("worker.alerts.send_webhook_alert", new_callable=AsyncMock) as mock_send:
            await alert_processing_failed(3, "asset-3", "ERR_NON_VIDEO", "x" * 800)

        assert get_metrics().processing_failures == 1
        alert_type, details = mock_send.call_args[0]
        assert alert_type == AlertType.PROCESSING_FAILED
        assert details["remote_asset_id"] == "asset-3"
        assert details["error_code"] == "ERR_NON_VIDEO"
        assert len(details["error_message"]) == 500

    async def test_upload_never_completed(self):
        with patch("worker.alerts.send_webhook_alert", new_callable=AsyncMock) as mock_send:
            await alert_upload_never_completed(4, "asset-4", 1800)

        assert get_metrics().uploads_never_completed == 1
        assert mock_send.call_args[0][1]["grace_seconds"] == 1800

    async def test_retry_ceiling_always_sent(self):
        with patch("worker.alerts.send_webhook_alert", new_callable=AsyncMock) as mock_send:
            await alert_retry_ceiling_exceeded(5, "asset-5", 360, "upstream 503")

        details = mock_send.call_args[0][1]
        assert details["attempts"] == 360
        assert details["last_error"] == "upstream 503"
        assert mock_send.call_args[1]["force"] is True

    async def test_engine_lifecycle(self):
        with patch("worker.alerts.send_webhook_alert", new_callable=AsyncMock) as mock_send:
            await alert_engine_startup(watched_assets=4)
            await alert_engine_shutdown(watched_assets=1)

        startup, shutdown = mock_send.call_args_list
        assert startup[0][0] == AlertType.ENGINE_STARTUP
        assert startup[0][1] == {"watched_assets": 4}
        assert shutdown[0][0] == AlertType.ENGINE_SHUTDOWN
        assert "final_metrics" in shutdown[0][1]


class TestFireAndForget:
    async def test_failures_are_swallowed(self):
        async def failing():
            raise RuntimeError("alert backend down")

        send_alert_fire_and_forget(failing())
        # Let the background task run
        await asyncio.sleep(0)
        await asyncio.sleep(0)

    def test_without_running_loop(self):
        async def noop():
            return None

        coro = noop()
        send_alert_fire_and_forget(coro)
        coro.close()
