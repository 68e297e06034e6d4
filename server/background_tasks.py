"""
Background tasks for the realtime core - periodic presence sweep.
"""
import asyncio
from typing import Optional

from config import config
from devices import device_snapshot
from gateway import Gateway, DEVICE_UPDATED
from observability import structured_logger, metrics


class BackgroundTaskManager:
    """Manages background tasks for the MDM server."""

    def __init__(self, gateway: Gateway, sweep_interval_seconds: Optional[float] = None):
        self.gateway = gateway
        self.sweep_interval_seconds = (
            sweep_interval_seconds if sweep_interval_seconds is not None
            else config.PRESENCE_SWEEP_INTERVAL_SECONDS
        )
        self._running = False
        self._sweep_task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self):
        """Start all background tasks."""
        if self._running:
            return

        self._running = True
        self._sweep_task = asyncio.create_task(self._run_sweep_worker())
        structured_logger.log_event(
            "background_tasks.started",
            sweep_interval_seconds=self.sweep_interval_seconds
        )

    async def stop(self):
        """Stop all background tasks and wait for them to exit."""
        if not self._running:
            return

        self._running = False

        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

        structured_logger.log_event("background_tasks.stopped")

    async def run_sweep_once(self) -> list[str]:
        """
        Demote stale devices and tell the admins about each one.

        Returns:
            The demoted device ids
        """
        db = self.gateway.session_factory()
        try:
            demoted = self.gateway.presence.sweep(db)
            snapshots = [device_snapshot(db, device_id) for device_id in demoted]
        finally:
            db.close()

        for snapshot in snapshots:
            if snapshot is not None:
                await self.gateway.notify_admins(DEVICE_UPDATED, snapshot)
        return demoted

    async def _run_sweep_worker(self):
        """
        Background worker that runs the presence sweep every interval,
        first pass one interval after start. A failed pass is logged and the
        next pass runs on schedule.
        """
        while self._running:
            try:
                await asyncio.sleep(self.sweep_interval_seconds)
                await self.run_sweep_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                structured_logger.log_event(
                    "presence_sweep.error",
                    level="ERROR",
                    error=str(e)
                )
                metrics.inc_counter("presence_sweep_errors_total")
