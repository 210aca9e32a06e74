"""Recurring poll loop driving queued jobs through the dispatcher."""

from __future__ import annotations

import asyncio
import math
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from .dispatcher import DispatchResult, Dispatcher
from .logger import get_logger
from .persistence import Persistence, utc_now
from .prometheus import QueueMetrics

DEFAULT_INTERVAL = 10.0
DEFAULT_BATCH_SIZE = 5
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_PROCESSING_TIMEOUT = 300.0
LEASE_EXPIRED_REASON = "processing lease expired"
TRANSPORT_CLEANUP_INTERVAL = 150.0


class Scheduler:
    """Wake every ``interval`` seconds and dispatch one batch of eligible jobs.

    Only one poll cycle is in flight at a time and jobs inside a cycle are
    dispatched sequentially, oldest first. A failing cycle is logged and the
    next one is scheduled as usual.
    """

    def __init__(
        self,
        persistence: Persistence,
        dispatcher: Dispatcher,
        *,
        interval: float = DEFAULT_INTERVAL,
        batch_size: int = DEFAULT_BATCH_SIZE,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        processing_timeout: Optional[float] = DEFAULT_PROCESSING_TIMEOUT,
        clock: Optional[Callable[[], datetime]] = None,
        metrics: Optional[QueueMetrics] = None,
        logger=None,
    ):
        self.persistence = persistence
        self.dispatcher = dispatcher
        self.interval = max(0.0, float(interval))
        self.batch_size = max(1, int(batch_size))
        self.max_attempts = max(1, int(max_attempts))
        self.processing_timeout = None if processing_timeout is None else float(processing_timeout)
        self.clock = clock or utc_now
        self.metrics = metrics or dispatcher.metrics
        self.logger = logger or get_logger("Scheduler")

        self._stop = asyncio.Event()
        self._wake_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._last_cleanup: Optional[datetime] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ----------------------------------------------------------------- lifecycle
    async def start(self) -> None:
        """Start the background poll loop."""
        if self.running:
            return
        self._stop.clear()
        self._wake_event.clear()
        self._task = asyncio.create_task(self._poll_loop(), name="mail-queue-poll-loop")
        self.logger.debug("Poll loop started (interval=%ss, batch_size=%d)", self.interval, self.batch_size)

    async def stop(self) -> None:
        """Stop the loop after the cycle in flight, if any, completes."""
        self._stop.set()
        self._wake_event.set()
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None

    def wake(self) -> None:
        """Run the next cycle now instead of waiting for the interval."""
        self._wake_event.set()

    # ---------------------------------------------------------------------- loop
    async def _poll_loop(self) -> None:
        while not self._stop.is_set():
            await self._wait_for_wakeup(self.interval)
            if self._stop.is_set():
                break
            try:
                results = await self.run_cycle()
                self.logger.debug("Poll cycle dispatched %d job(s)", len(results))
            except Exception as exc:
                self.logger.exception("Unhandled error in poll cycle: %s", exc)
            await self.cleanup_transport()

    async def run_cycle(self) -> List[DispatchResult]:
        """Reclaim expired leases, then dispatch up to ``batch_size`` eligible jobs."""
        now = self.clock()
        if self.processing_timeout is not None:
            reclaimed = await self.persistence.reclaim_expired(
                claimed_before=now - timedelta(seconds=self.processing_timeout),
                reason=LEASE_EXPIRED_REASON,
                max_attempts=self.max_attempts,
            )
            if reclaimed:
                self.logger.warning("Reclaimed %d job(s) stuck in processing", reclaimed)
                self.metrics.inc_reclaimed(reclaimed)

        batch = await self.persistence.fetch_eligible_jobs(
            now=now, max_attempts=self.max_attempts, limit=self.batch_size
        )
        self.logger.debug("Fetched %d eligible job(s) (now=%s)", len(batch), now.isoformat())
        results: List[DispatchResult] = []
        for job in batch:
            results.append(await self.dispatcher.dispatch(job))
        await self.refresh_gauges()
        return results

    async def cleanup_transport(self) -> None:
        """Let the transport drop idle connections, at most every few minutes."""
        now = self.clock()
        if self._last_cleanup is not None and (now - self._last_cleanup).total_seconds() < TRANSPORT_CLEANUP_INTERVAL:
            return
        self._last_cleanup = now
        cleanup = getattr(self.dispatcher.transport, "cleanup", None)
        if cleanup is None:
            return
        try:
            await cleanup()
        except Exception:
            self.logger.exception("Transport cleanup failed")

    async def refresh_gauges(self) -> None:
        """Refresh the metrics describing queued jobs."""
        try:
            counts = await self.persistence.count_jobs_by_status()
        except Exception:
            self.logger.exception("Failed to refresh queue gauges")
            return
        self.metrics.set_status_counts(counts)

    async def _wait_for_wakeup(self, timeout: float | None) -> None:
        """Pause the loop while allowing external wake-ups via :meth:`wake`."""
        if self._stop.is_set():
            return
        if timeout is None or math.isinf(timeout):
            await self._wake_event.wait()
            self._wake_event.clear()
            return
        if timeout <= 0:
            await asyncio.sleep(0)
            return
        try:
            async with asyncio.timeout(timeout):
                await self._wake_event.wait()
        except TimeoutError:
            return
        self._wake_event.clear()
