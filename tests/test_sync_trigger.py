"""Tests for the sync trigger, the in-process lock and per-row locks."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from bookingsync.adapters.local_lock import InProcessSyncLock
from bookingsync.core.reconciler import SyncAbortedError
from bookingsync.core.row_locks import EventLocks
from bookingsync.core.sync_trigger import SyncInProgressError, SyncTrigger
from bookingsync.data.models import SyncResult


def _reconciler(run_cycle):
    reconciler = MagicMock()
    reconciler.calendar_id = "cal"
    reconciler.run_cycle = run_cycle
    return reconciler


class TestInProcessSyncLock:
    @pytest.mark.asyncio
    async def test_acquire_is_exclusive_per_key(self):
        lock = InProcessSyncLock()
        assert await lock.acquire("a") is True
        assert await lock.acquire("a") is False
        assert await lock.acquire("b") is True
        await lock.release("a")
        assert await lock.acquire("a") is True

    @pytest.mark.asyncio
    async def test_release_unknown_key_is_harmless(self):
        lock = InProcessSyncLock()
        await lock.release("never-held")
        assert lock.is_held("never-held") is False


class TestEventLocks:
    @pytest.mark.asyncio
    async def test_lock_is_dropped_after_use(self):
        locks = EventLocks()
        async with locks.hold(1):
            assert locks.is_held(1)
        assert locks.is_held(1) is False
        assert locks._locks == {}

    @pytest.mark.asyncio
    async def test_same_row_is_serialised(self):
        locks = EventLocks()
        order = []

        async def worker(name):
            async with locks.hold(1):
                order.append(f"{name}-in")
                await asyncio.sleep(0)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))
        assert order == ["a-in", "a-out", "b-in", "b-out"]


class TestSyncTrigger:
    @pytest.mark.asyncio
    async def test_run_returns_result_and_duration(self):
        result = SyncResult(imported=1)
        trigger = SyncTrigger(_reconciler(AsyncMock(return_value=result)), InProcessSyncLock())
        got, duration_ms = await trigger.run()
        assert got is result
        assert duration_ms >= 0
        assert trigger.lock_key == "calendar-sync:cal"

    @pytest.mark.asyncio
    async def test_concurrent_trigger_is_rejected(self):
        started = asyncio.Event()
        finish = asyncio.Event()

        async def slow_cycle():
            started.set()
            await finish.wait()
            return SyncResult()

        lock = InProcessSyncLock()
        trigger = SyncTrigger(_reconciler(slow_cycle), lock)
        first = asyncio.create_task(trigger.run())
        await started.wait()
        with pytest.raises(SyncInProgressError):
            await trigger.run()
        finish.set()
        await first
        assert lock.is_held(trigger.lock_key) is False

    @pytest.mark.asyncio
    async def test_lock_released_after_abort(self):
        lock = InProcessSyncLock()
        trigger = SyncTrigger(
            _reconciler(AsyncMock(side_effect=SyncAbortedError("auth"))), lock,
        )
        with pytest.raises(SyncAbortedError):
            await trigger.run()
        assert lock.is_held(trigger.lock_key) is False

    @pytest.mark.asyncio
    async def test_periodic_loop_survives_busy_and_aborted_ticks(self, monkeypatch):
        cycle = AsyncMock(side_effect=[SyncAbortedError("down"), SyncResult()])
        lock = InProcessSyncLock()
        trigger = SyncTrigger(_reconciler(cycle), lock)
        sleeps = []

        async def fake_sleep(seconds):
            sleeps.append(seconds)
            if len(sleeps) == 2:
                await lock.acquire(trigger.lock_key)
            if len(sleeps) == 3:
                raise asyncio.CancelledError

        monkeypatch.setattr("bookingsync.core.sync_trigger.asyncio.sleep", fake_sleep)
        with pytest.raises(asyncio.CancelledError):
            await trigger.run_periodically(5)
        assert sleeps == [300, 300, 300]
        assert cycle.await_count == 2
