"""
Background reconciliation engine.

Owns the set of watched remote assets and polls each one on a fixed
interval until its record settles in ``ready`` or ``error``. The single
attempt itself lives in api/reconciler.py; this module decides when to call
it and what to do with repeated transient failures.

Concurrency:
    - One asyncio task drives the loop; each tick reconciles the watched set
      with at most ``concurrency`` attempts in flight.
    - An asset already in flight (from a slow previous tick) is skipped.
    - Records are re-read at the start of every attempt, so writes made by
      the webhook handler or a client sync are seen on the next tick.
"""

import asyncio
import logging
from typing import Dict, List, Optional, Set

from api.enums import TERMINAL_STATUSES, TRANSITIONAL_STATUSES, ProcessingStatus, ReconcileOutcome
from api.errors import RetryCeilingExceeded
from api.metrics import RETRY_CEILING_EXCEEDED_TOTAL, WATCHED_ASSETS
from api.reconciler import ReconcileResult, Reconciler
from api.record_store import VideoAsset, VideoRecordStore
from config import RECONCILE_CONCURRENCY, RECONCILE_INTERVAL, TRANSIENT_FAILURE_CEILING
from worker.alerts import alert_engine_shutdown, alert_engine_startup, send_alert_fire_and_forget

logger = logging.getLogger(__name__)

# Seconds to wait for an in-progress tick on shutdown
STOP_TIMEOUT = 30.0


class ReconciliationEngine:
    """Periodically reconciles every watched asset."""

    def __init__(
        self,
        store: VideoRecordStore,
        reconciler: Reconciler,
        interval: float = RECONCILE_INTERVAL,
        concurrency: int = RECONCILE_CONCURRENCY,
        failure_ceiling: int = TRANSIENT_FAILURE_CEILING,
    ):
        """
        Args:
            store: Record store used to reload and re-read records
            reconciler: Performs single reconciliation attempts
            interval: Seconds between ticks
            concurrency: Maximum simultaneous attempts per tick
            failure_ceiling: Consecutive transient failures before escalation (0 = never)
        """
        self.store = store
        self.reconciler = reconciler
        self.interval = interval
        self.concurrency = concurrency
        self.failure_ceiling = failure_ceiling

        self._watched: Set[str] = set()
        self._in_flight: Set[str] = set()
        self._failures: Dict[str, int] = {}
        self._semaphore = asyncio.Semaphore(concurrency)
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def watched(self) -> List[str]:
        return sorted(self._watched)

    def failure_count(self, remote_asset_id: str) -> int:
        return self._failures.get(remote_asset_id, 0)

    def _update_gauge(self) -> None:
        WATCHED_ASSETS.set(len(self._watched))

    def watch(self, asset: VideoAsset) -> bool:
        """
        Add a record to the watched set.

        Returns:
            False if the record has no remote asset id (never watched)
        """
        if not asset.remote_asset_id:
            return False
        if asset.remote_asset_id not in self._watched:
            self._watched.add(asset.remote_asset_id)
            logger.debug(f"Watching remote asset {asset.remote_asset_id} (video {asset.id})")
            self._update_gauge()
        return True

    def unwatch(self, remote_asset_id: str) -> None:
        """Remove an asset from the watched set. Unknown ids are ignored."""
        if remote_asset_id in self._watched:
            self._watched.discard(remote_asset_id)
            logger.debug(f"Stopped watching remote asset {remote_asset_id}")
        self._failures.pop(remote_asset_id, None)
        self._update_gauge()

    def track(self, asset: Optional[VideoAsset], status: Optional[ProcessingStatus] = None) -> None:
        """Watch or unwatch a record by its status (or ``status`` when the caller knows a newer one)."""
        if asset is None or not asset.remote_asset_id:
            return
        if (status or asset.processing_status) in TRANSITIONAL_STATUSES:
            self.watch(asset)
        else:
            self.unwatch(asset.remote_asset_id)

    async def load_watched(self) -> int:
        """Rebuild the watched set from records still uploading or processing."""
        assets = await self.store.list_by_status(
            [ProcessingStatus.UPLOADING, ProcessingStatus.PROCESSING]
        )
        loaded = 0
        for asset in assets:
            if self.watch(asset):
                loaded += 1
        logger.info(f"Loaded {loaded} transitional assets into the watched set")
        return loaded

    async def start(self) -> None:
        """Reload the watched set and start the polling loop."""
        if self._running:
            return
        await self.load_watched()
        self._stop_event.clear()
        self._running = True
        self._task = asyncio.create_task(self._run())
        logger.info(
            f"Reconciliation engine started (interval={self.interval}s, "
            f"concurrency={self.concurrency}, ceiling={self.failure_ceiling or 'disabled'})"
        )
        send_alert_fire_and_forget(alert_engine_startup(len(self._watched)))

    async def stop(self, timeout: float = STOP_TIMEOUT) -> None:
        """Signal the loop to stop and wait for the current tick to finish."""
        if self._task is None:
            self._running = False
            return
        self._stop_event.set()
        try:
            await asyncio.wait_for(self._task, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Reconciliation engine did not stop in time, cancelling")
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        finally:
            self._task = None
            self._running = False
        send_alert_fire_and_forget(alert_engine_shutdown(len(self._watched)))
        logger.info("Reconciliation engine stopped")

    async def _run(self) -> None:
        try:
            while not self._stop_event.is_set():
                try:
                    await self.tick()
                except Exception as e:
                    logger.exception(f"Reconciliation tick failed: {e}")

                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
                    break
                except asyncio.TimeoutError:
                    pass
        finally:
            self._running = False

    async def tick(self) -> List[ReconcileResult]:
        """Reconcile every watched asset once. Returns the results of attempts made."""
        members = [rid for rid in self._watched if rid not in self._in_flight]
        if not members:
            return []
        for rid in members:
            self._in_flight.add(rid)

        results = await asyncio.gather(*(self._reconcile_one(rid) for rid in members))
        self._update_gauge()
        return [r for r in results if r is not None]

    async def _reconcile_one(self, remote_asset_id: str) -> Optional[ReconcileResult]:
        try:
            async with self._semaphore:
                asset = await self.store.get_by_remote_asset_id(remote_asset_id)
                if asset is None:
                    logger.info(f"Remote asset {remote_asset_id} has no local record, unwatching")
                    self.unwatch(remote_asset_id)
                    return None
                result = await self.reconciler.reconcile(asset)
                return await self._after_attempt(asset, result)
        except Exception as e:
            # Database trouble; keep watching and try again next tick
            logger.error(f"Reconciliation of {remote_asset_id} failed: {e}")
            return None
        finally:
            self._in_flight.discard(remote_asset_id)

    async def _after_attempt(self, asset: VideoAsset, result: ReconcileResult) -> ReconcileResult:
        rid = asset.remote_asset_id

        if result.transient:
            attempts = self._failures.get(rid, 0) + 1
            self._failures[rid] = attempts
            if self.failure_ceiling and attempts >= self.failure_ceiling:
                logger.error(str(RetryCeilingExceeded(rid, attempts)))
                RETRY_CEILING_EXCEEDED_TOTAL.inc()
                result = await self.reconciler.escalate(asset, attempts, result.error)
                self.unwatch(rid)
            return result

        self._failures.pop(rid, None)
        if result.outcome == ReconcileOutcome.SKIPPED or result.after_status in TERMINAL_STATUSES:
            self.unwatch(rid)
        return result

    def status(self) -> dict:
        """Engine state for the status endpoint."""
        return {
            "running": self._running,
            "interval_seconds": self.interval,
            "concurrency": self.concurrency,
            "failure_ceiling": self.failure_ceiling,
            "watched": self.watched,
            "in_flight": sorted(self._in_flight),
            "failure_counts": dict(self._failures),
        }
