"""
Booking Sync — Sync trigger.

The only way a reconciliation cycle is started, whether from the HTTP
endpoint, the periodic loop or the command line. Holds the SyncLockPort lock
for the calendar while the cycle runs, so at most one cycle is in flight.
"""

from __future__ import annotations

import asyncio
import logging
import time

from bookingsync.core.reconciler import Reconciler, SyncAbortedError
from bookingsync.data.models import SyncResult
from bookingsync.ports.lock_port import SyncLockPort

logger = logging.getLogger(__name__)


class SyncInProgressError(Exception):
    """Another cycle for the same calendar is running."""


class SyncTrigger:
    def __init__(self, reconciler: Reconciler, lock: SyncLockPort) -> None:
        self._reconciler = reconciler
        self._lock = lock

    @property
    def lock_key(self) -> str:
        return f"calendar-sync:{self._reconciler.calendar_id}"

    async def run(self) -> tuple[SyncResult, int]:
        """Run one cycle. Returns the result and its duration in ms.

        Raises SyncInProgressError without waiting if a cycle is running,
        and SyncAbortedError if the cycle failed fatally.
        """
        if not await self._lock.acquire(self.lock_key):
            raise SyncInProgressError("A sync cycle is already running")
        started = time.monotonic()
        try:
            result = await self._reconciler.run_cycle()
        finally:
            await self._lock.release(self.lock_key)
        duration_ms = int((time.monotonic() - started) * 1000)
        return result, duration_ms

    async def run_periodically(self, interval_minutes: int) -> None:
        """Run a cycle every interval until cancelled. Busy ticks are skipped."""
        logger.info("Periodic sync every %d minute(s)", interval_minutes)
        while True:
            try:
                result, duration_ms = await self.run()
                logger.info(
                    "Periodic sync finished in %d ms (%d error(s))",
                    duration_ms, len(result.errors),
                )
            except SyncInProgressError:
                logger.info("Periodic sync skipped, a cycle is already running")
            except SyncAbortedError as exc:
                logger.error("Periodic sync aborted: %s", exc)
            await asyncio.sleep(interval_minutes * 60)
