"""Tests for the stream host gateway client, using httpx.MockTransport."""

import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from api.enums import PlaybackFormat, SubscriptionTier
from api.errors import GatewayError, GatewayErrorKind
from worker.stream_gateway import (
    StreamGatewayClient,
    UploadConstraints,
    parse_asset_snapshot,
)

API_BASE = "https://api.stream.test/client/v4"
ACCOUNT = "acct123"
STREAM_ROOT = f"/client/v4/accounts/{ACCOUNT}/stream"
DELIVERY_HOST = "customer-test.example.com"


def envelope(result, success=True, errors=None, status_code=200):
    return httpx.Response(
        status_code,
        json={"success": success, "errors": errors or [], "messages": [], "result": result},
    )


def make_client(handler, **kwargs) -> StreamGatewayClient:
    kwargs.setdefault("require_signed_urls", True)
    kwargs.setdefault("max_retries", 0)
    return StreamGatewayClient(
        account_id=ACCOUNT,
        api_token="token-abc",
        api_base=API_BASE,
        delivery_host=DELIVERY_HOST,
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


def asset_doc(uid="asset-1", state="inprogress", pct="45.5", duration=-1, **status):
    return {
        "uid": uid,
        "readyToStream": state == "ready",
        "duration": duration,
        "status": {"state": state, "pctComplete": pct, **status},
        "meta": {"name": "Clip"},
    }


class TestUploadConstraints:
    def test_payload_omits_unset_fields(self):
        payload = UploadConstraints(max_duration_seconds=600).to_payload()
        assert payload == {"maxDurationSeconds": 600}

    def test_payload_includes_set_fields(self):
        payload = UploadConstraints(
            max_duration_seconds=600,
            require_signed_urls=True,
            thumbnail_timestamp_pct=0.25,
            allowed_origins=["example.com"],
            metadata={"name": "My clip"},
        ).to_payload()
        assert payload == {
            "maxDurationSeconds": 600,
            "requireSignedURLs": True,
            "thumbnailTimestampPct": 0.25,
            "allowedOrigins": ["example.com"],
            "meta": {"name": "My clip"},
        }

    def test_empty_name_not_forwarded(self):
        payload = UploadConstraints(max_duration_seconds=60, metadata={"name": ""}).to_payload()
        assert "meta" not in payload


class TestParseAssetSnapshot:
    def test_parses_status_document(self):
        snapshot = parse_asset_snapshot(asset_doc(pct="45.5", duration=12.6))
        assert snapshot.remote_asset_id == "asset-1"
        assert snapshot.raw_state == "inprogress"
        assert snapshot.percent_complete == 45
        assert snapshot.duration_seconds == 12.6

    def test_unknown_duration_is_none(self):
        assert parse_asset_snapshot(asset_doc(duration=-1)).duration_seconds is None

    def test_percent_is_clamped(self):
        assert parse_asset_snapshot(asset_doc(pct="150")).percent_complete == 100
        assert parse_asset_snapshot(asset_doc(pct="garbage")).percent_complete == 0

    def test_error_reason(self):
        doc = asset_doc(state="error", errorReasonCode="ERR_NON_VIDEO", errorReasonText="Not a video")
        snapshot = parse_asset_snapshot(doc)
        assert snapshot.error_code == "ERR_NON_VIDEO"
        assert snapshot.error_reason == "Not a video"

    def test_missing_status_block(self):
        snapshot = parse_asset_snapshot({"uid": "x"})
        assert snapshot.raw_state == ""


class TestRequestUploadSlot:
    async def test_success(self):
        seen = {}

        def handler(request):
            seen["method"] = request.method
            seen["path"] = request.url.path
            seen["auth"] = request.headers.get("Authorization")
            seen["body"] = json.loads(request.content)
            return envelope({"uid": "new-uid", "uploadURL": "https://upload.example.com/new-uid"})

        client = make_client(handler)
        slot = await client.request_upload_slot(
            UploadConstraints(max_duration_seconds=900, metadata={"name": "Lesson 1"})
        )

        assert slot.remote_asset_id == "new-uid"
        assert slot.upload_url == "https://upload.example.com/new-uid"
        assert seen["method"] == "POST"
        assert seen["path"] == f"{STREAM_ROOT}/direct_upload"
        assert seen["auth"] == "Bearer token-abc"
        assert seen["body"]["maxDurationSeconds"] == 900
        assert seen["body"]["meta"] == {"name": "Lesson 1"}
        await client.close()

    async def test_missing_upload_url_is_validation_error(self):
        client = make_client(lambda request: envelope({"uid": "new-uid"}))
        with pytest.raises(GatewayError) as exc_info:
            await client.request_upload_slot()
        assert exc_info.value.kind == GatewayErrorKind.VALIDATION

    async def test_non_positive_duration_rejected_locally(self):
        def handler(request):
            raise AssertionError("should not be called")

        client = make_client(handler)
        with pytest.raises(GatewayError) as exc_info:
            await client.request_upload_slot(UploadConstraints(max_duration_seconds=0))
        assert exc_info.value.kind == GatewayErrorKind.VALIDATION

    async def test_transient_failures_are_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) < 3:
                return httpx.Response(503, json={"success": False, "errors": [{"code": 10000, "message": "busy"}]})
            return envelope({"uid": "u", "uploadURL": "https://upload.example.com/u"})

        client = make_client(handler, max_retries=2)
        with patch("worker.stream_gateway.asyncio.sleep", new=AsyncMock()) as mock_sleep:
            slot = await client.request_upload_slot()

        assert slot.remote_asset_id == "u"
        assert len(calls) == 3
        assert mock_sleep.await_count == 2

    async def test_gives_up_after_retries(self):
        client = make_client(lambda request: httpx.Response(502, text="bad gateway"), max_retries=1)
        with patch("worker.stream_gateway.asyncio.sleep", new=AsyncMock()):
            with pytest.raises(GatewayError) as exc_info:
                await client.request_upload_slot()
        assert exc_info.value.is_transient
        assert exc_info.value.status_code == 502


class TestFetchAssetStatus:
    async def test_success(self):
        def handler(request):
            assert request.method == "GET"
            assert request.url.path == f"{STREAM_ROOT}/asset-1"
            return envelope(asset_doc(state="queued", pct="0"))

        client = make_client(handler)
        snapshot = await client.fetch_asset_status("asset-1")
        assert snapshot.raw_state == "queued"
        assert snapshot.remote_asset_id == "asset-1"

    async def test_not_found(self):
        client = make_client(
            lambda request: httpx.Response(
                404, json={"success": False, "errors": [{"code": 10005, "message": "Not found"}]}
            )
        )
        with pytest.raises(GatewayError) as exc_info:
            await client.fetch_asset_status("missing")
        assert exc_info.value.is_not_found
        assert exc_info.value.remote_code == 10005
        assert exc_info.value.message == "Not found"

    async def test_server_error_is_transient_and_not_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(500, text="oops")

        client = make_client(handler, max_retries=5)
        with pytest.raises(GatewayError) as exc_info:
            await client.fetch_asset_status("asset-1")
        assert exc_info.value.is_transient
        assert len(calls) == 1

    async def test_rate_limited_is_transient(self):
        client = make_client(lambda request: httpx.Response(429, json={"success": False, "errors": []}))
        with pytest.raises(GatewayError) as exc_info:
            await client.fetch_asset_status("asset-1")
        assert exc_info.value.kind == GatewayErrorKind.TRANSIENT

    async def test_bad_request_is_validation(self):
        client = make_client(
            lambda request: httpx.Response(
                400, json={"success": False, "errors": [{"code": 10002, "message": "Bad id"}]}
            )
        )
        with pytest.raises(GatewayError) as exc_info:
            await client.fetch_asset_status("asset-1")
        assert exc_info.value.kind == GatewayErrorKind.VALIDATION

    async def test_unsuccessful_envelope_is_validation(self):
        client = make_client(
            lambda request: envelope(None, success=False, errors=[{"code": 1, "message": "nope"}])
        )
        with pytest.raises(GatewayError) as exc_info:
            await client.fetch_asset_status("asset-1")
        assert exc_info.value.kind == GatewayErrorKind.VALIDATION
        assert exc_info.value.message == "nope"

    async def test_network_error_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = make_client(handler)
        with pytest.raises(GatewayError) as exc_info:
            await client.fetch_asset_status("asset-1")
        assert exc_info.value.is_transient

    async def test_timeout_is_transient(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        client = make_client(handler)
        with pytest.raises(GatewayError) as exc_info:
            await client.fetch_asset_status("asset-1")
        assert exc_info.value.is_transient


class TestFetchAssetDetails:
    async def test_details(self):
        doc = asset_doc(state="ready", duration=61.5)
        doc["thumbnail"] = "https://thumb.example.com/t.jpg"
        client = make_client(lambda request: envelope(doc))

        details = await client.fetch_asset_details("asset-1")
        assert details.duration_seconds == 61.5
        assert details.ready_to_stream is True
        assert details.thumbnail == "https://thumb.example.com/t.jpg"
        assert details.meta == {"name": "Clip"}


class TestThumbnailUrl:
    def test_plain(self):
        client = make_client(lambda request: envelope({}))
        assert client.thumbnail_url("abc") == f"https://{DELIVERY_HOST}/abc/thumbnails/thumbnail.jpg"

    def test_with_parameters(self):
        client = make_client(lambda request: envelope({}))
        url = client.thumbnail_url("abc", time=5, width=320, height=180, fit="crop")
        assert url == (
            f"https://{DELIVERY_HOST}/abc/thumbnails/thumbnail.jpg?time=5&width=320&height=180&fit=crop"
        )

    def test_invalid_fit(self):
        client = make_client(lambda request: envelope({}))
        with pytest.raises(ValueError):
            client.thumbnail_url("abc", fit="stretch")


class TestGeneratePlaybackUrl:
    async def test_unsigned_mode_makes_no_request(self):
        def handler(request):
            raise AssertionError("should not be called")

        client = make_client(handler, require_signed_urls=False)
        playback = await client.generate_playback_url("abc", SubscriptionTier.ADVANCED)
        assert playback.url == f"https://{DELIVERY_HOST}/abc/manifest/video.m3u8"
        assert playback.signed is False
        assert playback.expires_at is None

    async def test_signed_hls_lifetime_follows_tier(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return envelope({"token": "signed.jwt"})

        client = make_client(handler)
        playback = await client.generate_playback_url("abc", "intermediate")

        assert seen["path"] == f"{STREAM_ROOT}/abc/token"
        assert seen["body"]["exp"] - seen["body"]["nbf"] == 8 * 3600
        assert seen["body"]["downloadable"] is False
        assert playback.url == f"https://{DELIVERY_HOST}/abc/manifest/video.m3u8?token=signed.jwt"
        assert playback.signed is True
        assert playback.tier == SubscriptionTier.INTERMEDIATE

    async def test_signed_mp4_is_downloadable(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            return envelope({"token": "t"})

        client = make_client(handler)
        playback = await client.generate_playback_url("abc", "beginner", PlaybackFormat.MP4)
        assert seen["body"]["downloadable"] is True
        assert playback.url.startswith(f"https://{DELIVERY_HOST}/abc/downloads/default.mp4?token=")

    async def test_ttl_override(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            return envelope({"token": "t"})

        client = make_client(handler)
        await client.generate_playback_url("abc", "advanced", ttl_seconds=3600)
        assert seen["body"]["exp"] - seen["body"]["nbf"] == 3600

    async def test_missing_token(self):
        client = make_client(lambda request: envelope({}))
        with pytest.raises(GatewayError):
            await client.generate_playback_url("abc", "beginner")


class TestAdministrativeCalls:
    async def test_retry_asset_touches_metadata(self):
        requests = []

        def handler(request):
            requests.append(request)
            if request.method == "GET":
                return envelope(asset_doc(state="error"))
            return envelope(asset_doc(state="queued"))

        client = make_client(handler)
        await client.retry_asset("asset-1")

        assert [r.method for r in requests] == ["GET", "POST"]
        body = json.loads(requests[1].content)
        assert body["meta"]["name"] == "Clip"
        assert "retry_timestamp" in body["meta"]

    async def test_retry_ready_asset_rejected(self):
        client = make_client(lambda request: envelope(asset_doc(state="ready")))
        with pytest.raises(GatewayError) as exc_info:
            await client.retry_asset("asset-1")
        assert exc_info.value.kind == GatewayErrorKind.VALIDATION

    async def test_retry_asset_with_malformed_status(self):
        methods = []

        def handler(request):
            methods.append(request.method)
            return envelope({"uid": "asset-1", "status": "error", "meta": "not-a-dict"})

        client = make_client(handler)
        await client.retry_asset("asset-1")

        assert methods == ["GET", "POST"]

    async def test_update_settings_sends_only_given_fields(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            return envelope({"uid": "asset-1"})

        client = make_client(handler)
        await client.update_asset_settings("asset-1", require_signed_urls=False)
        assert seen["body"] == {"requireSignedURLs": False}

    async def test_delete_with_empty_body(self):
        client = make_client(lambda request: httpx.Response(200))
        assert await client.delete_asset("asset-1") is None

    def test_unconfigured_client(self):
        client = StreamGatewayClient(account_id="", api_token="")
        assert client.is_configured is False
