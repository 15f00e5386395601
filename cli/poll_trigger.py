"""
Client-side poll trigger.

Mirrors what the admin dashboard does while someone is looking at a record
that is still uploading or processing: wait a little, ask the API to
reconcile the record now, re-read it, and repeat until it settles.
"""

import logging
import time
from typing import Any, Callable, Dict, Optional

import httpx

from api.enums import TRANSITIONAL_STATUSES
from config import CLIENT_POLL_INITIAL_DELAY, CLIENT_POLL_INTERVAL

logger = logging.getLogger(__name__)

_TRANSITIONAL_VALUES = frozenset(status.value for status in TRANSITIONAL_STATUSES)


class PollTriggerError(Exception):
    """The API rejected a poll request."""


def is_transitional(record: Dict[str, Any]) -> bool:
    return record.get("processing_status") in _TRANSITIONAL_VALUES


class ClientPollTrigger:
    """
    Poll one video through the API until it leaves uploading/processing.

    Args:
        client: httpx.Client whose base_url points at the API root (".../api")
        video_id: Local record id
        initial_delay: Seconds to wait after the first transitional read
        interval: Seconds between subsequent polls
        max_polls: Stop after this many sync requests (None = until settled)
        sleep: Injected for tests
        on_update: Called with (record, sync_result) after every poll
    """

    def __init__(
        self,
        client: httpx.Client,
        video_id: int,
        initial_delay: float = CLIENT_POLL_INITIAL_DELAY,
        interval: float = CLIENT_POLL_INTERVAL,
        max_polls: Optional[int] = None,
        sleep: Callable[[float], None] = time.sleep,
        on_update: Optional[Callable[[Dict[str, Any], Dict[str, Any]], None]] = None,
    ):
        self.client = client
        self.video_id = video_id
        self.initial_delay = initial_delay
        self.interval = interval
        self.max_polls = max_polls
        self.sleep = sleep
        self.on_update = on_update
        self.polls = 0

    def _json(self, response: httpx.Response) -> Dict[str, Any]:
        if not response.is_success:
            try:
                detail = response.json().get("detail", response.text)
            except ValueError:
                detail = response.text
            raise PollTriggerError(f"API error ({response.status_code}): {detail}")
        return response.json()

    def refresh(self) -> Dict[str, Any]:
        """Read the record as currently stored."""
        return self._json(self.client.get(f"/videos/{self.video_id}"))

    def trigger(self) -> Dict[str, Any]:
        """Ask the API to reconcile the record against the stream host."""
        return self._json(
            self.client.post("/video-processing/sync-single", json={"videoId": self.video_id})
        )

    def run(self) -> Dict[str, Any]:
        """
        Poll until the record settles (or max_polls is reached).

        Returns:
            The last record read from the API
        """
        record = self.refresh()
        if not is_transitional(record):
            return record

        self.sleep(self.initial_delay)
        while True:
            try:
                result = self.trigger()
            except httpx.TransportError as e:
                # Network hiccup on our side; the next poll will try again
                logger.warning(f"Poll for video {self.video_id} failed: {e}")
                result = {}
            self.polls += 1

            try:
                record = self.refresh()
            except httpx.TransportError as e:
                # Keep the last record we read; it is still transitional
                logger.warning(f"Refresh for video {self.video_id} failed: {e}")
            if self.on_update is not None:
                self.on_update(record, result)

            if not is_transitional(record):
                return record
            if self.max_polls is not None and self.polls >= self.max_polls:
                return record
            self.sleep(self.interval)
