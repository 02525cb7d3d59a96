"""
Order Expiration Scheduler

Runs the expiration sweep on a fixed interval as an asyncio task with
explicit start/stop hooks. Used from the API lifespan and from the
standalone run_sweeper.py service.

A failed run is logged and counted in the heartbeat; the loop keeps going.
Runs may overlap (run_now during a scheduled run); releases are idempotent
so no lock is taken.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

from marketplace.core.config import settings
from marketplace.core.monitoring import metrics
from marketplace.services.order_expiration import sweep_expired_orders

logger = logging.getLogger(__name__)

SweepJob = Callable[[], Awaitable[Dict[str, Any]]]


class OrderExpirationScheduler:
    """
    Recurring expiration sweep.

    Call start() to begin background scheduling and stop() on shutdown.
    """

    def __init__(
        self,
        job: SweepJob = sweep_expired_orders,
        interval_seconds: Optional[float] = None,
    ):
        self.job = job
        self.interval_seconds = interval_seconds or settings.ORDER_SWEEP_INTERVAL_SECONDS
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self.heartbeat: Dict[str, Any] = {
            "last_run": None,
            "last_success": None,
            "orders_expired": 0,
            "runs": 0,
            "errors": 0,
        }

    @property
    def is_running(self) -> bool:
        return self._running and self._task is not None and not self._task.done()

    async def start(self):
        """Start the sweep loop. No-op if already running."""
        if self.is_running:
            logger.info("Order expiration scheduler already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(
            f"Order expiration scheduler started (interval: {self.interval_seconds:g}s)"
        )

    async def stop(self):
        """Cancel the sweep loop and wait for it to finish."""
        self._running = False
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info("Order expiration scheduler stopped")

    async def run_now(self) -> Optional[Dict[str, Any]]:
        """Run one sweep immediately, outside the schedule."""
        return await self._run_once()

    async def _run_loop(self):
        while self._running:
            await self._run_once()
            await asyncio.sleep(self.interval_seconds)

    async def _run_once(self) -> Optional[Dict[str, Any]]:
        self.heartbeat["last_run"] = datetime.now(timezone.utc).isoformat()
        self.heartbeat["runs"] += 1
        metrics.increment("order_sweep_runs_total")

        try:
            stats = await self.job()
        except Exception as e:
            self.heartbeat["errors"] += 1
            metrics.increment("order_sweep_errors_total")
            logger.error(f"Order expiration sweep failed: {e}", exc_info=True)
            return None

        self.heartbeat["last_success"] = datetime.now(timezone.utc).isoformat()
        expired = stats.get("orders_expired", 0)
        self.heartbeat["orders_expired"] += expired
        metrics.gauge("order_sweep_last_success_timestamp", datetime.now(timezone.utc).timestamp())
        return stats


# Global scheduler instance
order_expiration_scheduler = OrderExpirationScheduler()
