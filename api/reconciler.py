"""
Single-attempt reconciliation of one video record against the stream host.

Every trigger (engine tick, webhook, client poll, operator sync) goes through
``Reconciler``; the engine in worker/reconcile_engine.py only decides when to
call it. One attempt never retries internally: ``retry_later`` outcomes are
picked up by the next tick.

Steps for ``reconcile``:
    1. Skip records without a remote asset id or already in a sink state
    2. Fetch the remote status (not found / transient / validation handled here)
    3. Map the raw state and compare with the local status
    4. Apply the transition if the state machine allows it, else report stale
"""

import logging
import math
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from api.enums import TRANSITIONAL_STATUSES, ProcessingStatus, ReconcileOutcome, ReconcileSource
from api.errors import GatewayError, InvalidTransition, StaleTransition
from api.metrics import RECONCILE_DURATION_SECONDS, RECONCILE_TOTAL
from api.record_store import VideoAsset, VideoRecordStore
from api.status_mapper import map_remote_state
from api.video_state import video_state_machine
from config import AUTO_PUBLISH_ON_READY, NOT_FOUND_GRACE_SECONDS
from worker.alerts import (
    alert_processing_failed,
    alert_retry_ceiling_exceeded,
    alert_upload_never_completed,
    send_alert_fire_and_forget,
)
from worker.stream_gateway import RemoteStatusSnapshot, StreamGatewayClient

logger = logging.getLogger(__name__)

UPLOAD_NOT_FOUND_CODE = "upload_not_found"
UPLOAD_NOT_FOUND_MESSAGE = "Asset never completed upload"
RETRY_CEILING_CODE = "retry_ceiling_exceeded"
RETRY_CEILING_MESSAGE = "Status checks failed repeatedly"
DEFAULT_FAILURE_MESSAGE = "Processing failed"


@dataclass
class ReconcileResult:
    """What one reconciliation attempt observed and did."""

    video_id: int
    remote_asset_id: Optional[str]
    source: ReconcileSource
    outcome: ReconcileOutcome
    before_status: ProcessingStatus
    after_status: ProcessingStatus
    raw_state: Optional[str] = None
    transient: bool = False  # retry_later caused by a transient gateway failure
    error: Optional[str] = None

    @property
    def updated(self) -> bool:
        """True if the attempt wrote to the record."""
        return self.outcome in (ReconcileOutcome.IN_PROGRESS, ReconcileOutcome.READY, ReconcileOutcome.FAILED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "video_id": self.video_id,
            "remote_asset_id": self.remote_asset_id,
            "source": self.source.value,
            "outcome": self.outcome.value,
            "old_status": self.before_status.value,
            "new_status": self.after_status.value,
            "remote_state": self.raw_state,
            "updated": self.updated,
            "error": self.error,
        }


def round_duration(seconds: Optional[float]) -> Optional[int]:
    """Round a duration half-up to whole seconds."""
    if seconds is None:
        return None
    return int(math.floor(seconds + 0.5))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Reconciler:
    """Converges local records with the stream host, one record at a time."""

    def __init__(
        self,
        store: VideoRecordStore,
        gateway: StreamGatewayClient,
        not_found_grace_seconds: int = NOT_FOUND_GRACE_SECONDS,
        auto_publish: bool = AUTO_PUBLISH_ON_READY,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.gateway = gateway
        self.not_found_grace_seconds = not_found_grace_seconds
        self.auto_publish = auto_publish
        self._now = clock or _utcnow

    def _result(
        self,
        asset: VideoAsset,
        source: ReconcileSource,
        outcome: ReconcileOutcome,
        after: Optional[VideoAsset] = None,
        **kwargs,
    ) -> ReconcileResult:
        after_status = after.processing_status if after is not None else asset.processing_status
        return ReconcileResult(
            video_id=asset.id,
            remote_asset_id=asset.remote_asset_id,
            source=source,
            outcome=outcome,
            before_status=asset.processing_status,
            after_status=after_status,
            **kwargs,
        )

    @staticmethod
    def _observe(result: ReconcileResult, started: float) -> ReconcileResult:
        RECONCILE_TOTAL.labels(source=result.source.value, outcome=result.outcome.value).inc()
        RECONCILE_DURATION_SECONDS.labels(source=result.source.value).observe(time.monotonic() - started)
        if result.outcome not in (ReconcileOutcome.UNCHANGED, ReconcileOutcome.SKIPPED):
            logger.info(
                f"Reconciled video {result.video_id} ({result.remote_asset_id}) via {result.source.value}: "
                f"{result.before_status.value} -> {result.after_status.value} [{result.outcome.value}]"
            )
        return result

    def _within_grace(self, asset: VideoAsset) -> bool:
        origin = asset.grace_origin
        if origin is None:
            return True
        return (self._now() - origin).total_seconds() < self.not_found_grace_seconds

    async def reconcile(
        self,
        asset: VideoAsset,
        source: ReconcileSource = ReconcileSource.ENGINE,
    ) -> ReconcileResult:
        """
        Poll the stream host once for ``asset`` and apply what it reports.

        Gateway failures never raise: they become ``retry_later`` (or ``failed``
        for an upload that never appeared). Database errors propagate.
        """
        started = time.monotonic()

        if not asset.remote_asset_id or asset.processing_status not in TRANSITIONAL_STATUSES:
            return self._observe(self._result(asset, source, ReconcileOutcome.SKIPPED), started)

        try:
            snapshot = await self.gateway.fetch_asset_status(asset.remote_asset_id)
        except GatewayError as e:
            return self._observe(await self._handle_status_error(asset, source, e), started)

        return self._observe(await self._apply(asset, snapshot, source, details_required=True), started)

    async def apply_snapshot(
        self,
        asset: VideoAsset,
        snapshot: RemoteStatusSnapshot,
        source: ReconcileSource = ReconcileSource.WEBHOOK,
    ) -> ReconcileResult:
        """
        Apply a snapshot pushed by the stream host.

        A pushed ``ready`` is written even if the duration cannot be fetched:
        the host does not redeliver webhooks.
        """
        started = time.monotonic()
        return self._observe(await self._apply(asset, snapshot, source, details_required=False), started)

    async def _handle_status_error(
        self, asset: VideoAsset, source: ReconcileSource, error: GatewayError
    ) -> ReconcileResult:
        if error.is_transient:
            logger.debug(f"Transient failure polling {asset.remote_asset_id}: {error}")
            return self._result(
                asset, source, ReconcileOutcome.RETRY_LATER, transient=True, error=str(error)
            )

        if error.is_not_found:
            if self._within_grace(asset):
                logger.debug(f"Remote asset {asset.remote_asset_id} not found yet, within grace window")
                return self._result(asset, source, ReconcileOutcome.RETRY_LATER, error=str(error))

            after = await self.store.update_fields(
                asset.id,
                {
                    "processing_status": ProcessingStatus.ERROR,
                    "error_code": UPLOAD_NOT_FOUND_CODE,
                    "error_message": UPLOAD_NOT_FOUND_MESSAGE,
                },
                expected_statuses=TRANSITIONAL_STATUSES,
            )
            if after is None or after.processing_status != ProcessingStatus.ERROR:
                return self._result(asset, source, ReconcileOutcome.STALE, after=after)
            logger.warning(
                f"Video {asset.id}: remote asset {asset.remote_asset_id} never appeared "
                f"after {self.not_found_grace_seconds}s, marking as error"
            )
            send_alert_fire_and_forget(
                alert_upload_never_completed(asset.id, asset.remote_asset_id, self.not_found_grace_seconds)
            )
            return self._result(
                asset, source, ReconcileOutcome.FAILED, after=after, error=UPLOAD_NOT_FOUND_MESSAGE
            )

        # Validation: a request or credentials problem, not an asset state
        logger.error(f"Stream host rejected status request for {asset.remote_asset_id}: {error}")
        return self._result(asset, source, ReconcileOutcome.RETRY_LATER, error=str(error))

    async def _apply(
        self,
        asset: VideoAsset,
        snapshot: RemoteStatusSnapshot,
        source: ReconcileSource,
        details_required: bool,
    ) -> ReconcileResult:
        current = asset.processing_status
        proposed = map_remote_state(snapshot.raw_state)
        raw_state = snapshot.raw_state

        if proposed == current:
            return self._result(asset, source, ReconcileOutcome.UNCHANGED, raw_state=raw_state)

        if not video_state_machine.can_transition(current, proposed):
            logger.warning(str(StaleTransition(asset.remote_asset_id or "", current.value, proposed.value)))
            return self._result(asset, source, ReconcileOutcome.STALE, raw_state=raw_state)

        if proposed == ProcessingStatus.READY:
            return await self._apply_ready(asset, snapshot, source, details_required)

        if proposed == ProcessingStatus.ERROR:
            error_message = snapshot.error_reason or DEFAULT_FAILURE_MESSAGE
            after = await self.store.update_fields(
                asset.id,
                {
                    "processing_status": ProcessingStatus.ERROR,
                    "error_code": snapshot.error_code,
                    "error_message": error_message,
                },
                expected_statuses=TRANSITIONAL_STATUSES,
            )
            if after is None or after.processing_status != ProcessingStatus.ERROR:
                return self._result(asset, source, ReconcileOutcome.STALE, after=after, raw_state=raw_state)
            send_alert_fire_and_forget(
                alert_processing_failed(asset.id, asset.remote_asset_id, snapshot.error_code, error_message)
            )
            return self._result(
                asset, source, ReconcileOutcome.FAILED, after=after, raw_state=raw_state, error=error_message
            )

        after = await self.store.update_fields(
            asset.id,
            {"processing_status": proposed},
            expected_statuses=[current],
        )
        if after is None or after.processing_status != proposed:
            return self._result(asset, source, ReconcileOutcome.STALE, after=after, raw_state=raw_state)
        return self._result(asset, source, ReconcileOutcome.IN_PROGRESS, after=after, raw_state=raw_state)

    async def _apply_ready(
        self,
        asset: VideoAsset,
        snapshot: RemoteStatusSnapshot,
        source: ReconcileSource,
        details_required: bool,
    ) -> ReconcileResult:
        duration = snapshot.duration_seconds
        if duration is None:
            try:
                details = await self.gateway.fetch_asset_details(asset.remote_asset_id)
                duration = details.duration_seconds
            except GatewayError as e:
                if details_required:
                    logger.warning(f"Could not fetch details for ready asset {asset.remote_asset_id}: {e}")
                    return self._result(
                        asset,
                        source,
                        ReconcileOutcome.RETRY_LATER,
                        raw_state=snapshot.raw_state,
                        transient=e.is_transient,
                        error=str(e),
                    )
                logger.warning(
                    f"Could not fetch details for ready asset {asset.remote_asset_id}, "
                    f"marking ready without duration: {e}"
                )

        after = await self.store.mark_ready(
            asset.id,
            duration_seconds=round_duration(duration),
            thumbnail_url=self.gateway.thumbnail_url(asset.remote_asset_id),
            auto_publish=self.auto_publish,
            expected_statuses=TRANSITIONAL_STATUSES,
        )
        if after is None or after.processing_status != ProcessingStatus.READY:
            return self._result(asset, source, ReconcileOutcome.STALE, after=after, raw_state=snapshot.raw_state)
        return self._result(asset, source, ReconcileOutcome.READY, after=after, raw_state=snapshot.raw_state)

    async def escalate(
        self,
        asset: VideoAsset,
        attempts: int,
        last_error: Optional[str] = None,
    ) -> ReconcileResult:
        """Give up on a record whose status checks keep failing."""
        started = time.monotonic()
        after = await self.store.update_fields(
            asset.id,
            {
                "processing_status": ProcessingStatus.ERROR,
                "error_code": RETRY_CEILING_CODE,
                "error_message": RETRY_CEILING_MESSAGE,
            },
            expected_statuses=TRANSITIONAL_STATUSES,
        )
        if after is None or after.processing_status != ProcessingStatus.ERROR:
            return self._observe(
                self._result(asset, ReconcileSource.ENGINE, ReconcileOutcome.STALE, after=after), started
            )

        send_alert_fire_and_forget(
            alert_retry_ceiling_exceeded(asset.id, asset.remote_asset_id, attempts, last_error)
        )
        return self._observe(
            self._result(
                asset, ReconcileSource.ENGINE, ReconcileOutcome.FAILED, after=after, error=RETRY_CEILING_MESSAGE
            ),
            started,
        )

    async def retry(self, asset: VideoAsset) -> VideoAsset:
        """
        Operator retry: move an errored record back to ``uploading``.

        The remote nudge is best effort; the record is reset regardless so the
        engine re-polls and learns the real state.

        Raises:
            InvalidTransition: If the record is not in ``error``
        """
        if not video_state_machine.can_retry(asset.processing_status):
            raise InvalidTransition(
                f"Cannot retry video {asset.id} in status {asset.processing_status.value}"
            )

        if asset.remote_asset_id:
            try:
                await self.gateway.retry_asset(asset.remote_asset_id)
            except GatewayError as e:
                logger.warning(f"Remote retry for {asset.remote_asset_id} did not go through: {e}")

        after = await self.store.mark_retried(asset.id)
        if after is None or after.processing_status != ProcessingStatus.UPLOADING:
            raise InvalidTransition(f"Video {asset.id} changed state during retry")

        RECONCILE_TOTAL.labels(
            source=ReconcileSource.OPERATOR.value, outcome=ReconcileOutcome.IN_PROGRESS.value
        ).inc()
        logger.info(f"Video {asset.id} reset to uploading by operator retry")
        return after
