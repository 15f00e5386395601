"""Tests for the client-side poll trigger."""

import json

import httpx
import pytest

from cli.poll_trigger import ClientPollTrigger, PollTriggerError, is_transitional


class FakeApi:
    """Serves /videos/{id} and sync-single from a scripted list of statuses."""

    def __init__(self, statuses, fail_sync_at=(), fail_get_at=()):
        self.statuses = list(statuses)
        self.current = self.statuses.pop(0)
        self.fail_sync_at = set(fail_sync_at)
        self.fail_get_at = set(fail_get_at)
        self.sync_calls = 0
        self.get_calls = 0
        self.sync_bodies = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.method == "POST" and request.url.path == "/api/video-processing/sync-single":
            self.sync_calls += 1
            self.sync_bodies.append(json.loads(request.content))
            if self.sync_calls in self.fail_sync_at:
                raise httpx.ConnectError("connection reset", request=request)
            old = self.current
            if self.statuses:
                self.current = self.statuses.pop(0)
            return httpx.Response(
                200,
                json={
                    "video_id": 7,
                    "outcome": "in_progress" if old != self.current else "unchanged",
                    "old_status": old,
                    "new_status": self.current,
                    "updated": old != self.current,
                },
            )
        if request.method == "GET" and request.url.path == "/api/videos/7":
            self.get_calls += 1
            if self.get_calls in self.fail_get_at:
                raise httpx.ConnectError("connection reset", request=request)
            return httpx.Response(200, json={"id": 7, "processing_status": self.current})
        if request.method == "GET":
            return httpx.Response(404, json={"detail": "Video not found"})
        raise AssertionError(f"unexpected request {request.method} {request.url}")

    def client(self) -> httpx.Client:
        return httpx.Client(base_url="http://test/api", transport=httpx.MockTransport(self.handler))


class TestIsTransitional:
    def test_statuses(self):
        assert is_transitional({"processing_status": "uploading"})
        assert is_transitional({"processing_status": "processing"})
        assert not is_transitional({"processing_status": "ready"})
        assert not is_transitional({"processing_status": "error"})
        assert not is_transitional({})


class TestClientPollTrigger:
    def test_settled_record_is_not_polled(self):
        api = FakeApi(["ready"])
        sleeps = []
        trigger = ClientPollTrigger(api.client(), 7, sleep=sleeps.append)

        record = trigger.run()

        assert record["processing_status"] == "ready"
        assert api.sync_calls == 0
        assert sleeps == []

    def test_initial_delay_then_interval_until_settled(self):
        api = FakeApi(["uploading", "processing", "processing", "ready"])
        sleeps = []
        updates = []
        trigger = ClientPollTrigger(
            api.client(),
            7,
            initial_delay=10,
            interval=30,
            sleep=sleeps.append,
            on_update=lambda record, result: updates.append(record["processing_status"]),
        )

        record = trigger.run()

        assert record["processing_status"] == "ready"
        assert sleeps == [10, 30, 30]
        assert api.sync_calls == 3
        assert api.sync_bodies[0] == {"videoId": 7}
        assert updates == ["processing", "processing", "ready"]
        assert trigger.polls == 3

    def test_stops_on_error(self):
        api = FakeApi(["processing", "error"])
        trigger = ClientPollTrigger(api.client(), 7, sleep=lambda s: None)
        assert trigger.run()["processing_status"] == "error"
        assert api.sync_calls == 1

    def test_max_polls(self):
        api = FakeApi(["processing"] * 10)
        trigger = ClientPollTrigger(api.client(), 7, max_polls=2, sleep=lambda s: None)

        record = trigger.run()

        assert record["processing_status"] == "processing"
        assert api.sync_calls == 2

    def test_network_error_keeps_polling(self):
        api = FakeApi(["processing", "ready"], fail_sync_at={1})
        results = []
        trigger = ClientPollTrigger(
            api.client(), 7, sleep=lambda s: None, on_update=lambda record, result: results.append(result)
        )

        record = trigger.run()

        assert record["processing_status"] == "ready"
        assert api.sync_calls == 2
        assert results[0] == {}

    def test_refresh_network_error_keeps_polling(self):
        # The first GET is the initial read; the second is the refresh after poll 1
        api = FakeApi(["processing", "processing", "ready"], fail_get_at={2})
        seen = []
        trigger = ClientPollTrigger(
            api.client(), 7, sleep=lambda s: None, on_update=lambda record, result: seen.append(record)
        )

        record = trigger.run()

        assert record["processing_status"] == "ready"
        assert api.sync_calls == 2
        assert seen[0]["processing_status"] == "processing"

    def test_api_error_raises(self):
        api = FakeApi(["processing"])
        trigger = ClientPollTrigger(api.client(), 8, sleep=lambda s: None)
        with pytest.raises(PollTriggerError, match="404"):
            trigger.run()
