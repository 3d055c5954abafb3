"""Tests for the idle-timeout session guard."""

import asyncio

from portalauth.client.session_guard import (
    CHECK_INTERVAL_SECONDS,
    IDLE_TIMEOUT_SECONDS,
    TRACKED_EVENTS,
    SessionGuard,
)
from portalauth.client.storage import LAST_ACTIVITY_KEY, MemoryStorage


class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def _guard(storage=None, clock=None, **kwargs):
    fired = []
    guard = SessionGuard(
        storage if storage is not None else MemoryStorage(),
        lambda: fired.append(True),
        clock=clock or FakeClock(),
        **kwargs,
    )
    return guard, fired


def test_defaults():
    assert IDLE_TIMEOUT_SECONDS == 900
    assert CHECK_INTERVAL_SECONDS == 60
    assert TRACKED_EVENTS == {"click", "keypress", "pointermove", "touchstart"}


async def test_start_records_activity_and_persists():
    storage = MemoryStorage()
    clock = FakeClock()
    guard, _ = _guard(storage, clock)

    guard.start()
    try:
        assert guard.is_running
        assert float(storage.get(LAST_ACTIVITY_KEY)) == clock.now
        assert guard.idle_seconds() == 0.0
    finally:
        guard.stop()

    assert not guard.is_running


async def test_idle_past_threshold_fires_once_and_stops():
    clock = FakeClock()
    guard, fired = _guard(clock=clock)
    guard.start()

    clock.advance(IDLE_TIMEOUT_SECONDS)
    assert await guard.check() is False
    clock.advance(1)
    assert await guard.check() is True
    assert await guard.check() is False

    assert fired == [True]
    assert not guard.is_running


async def test_tracked_activity_resets_clock():
    clock = FakeClock()
    guard, fired = _guard(clock=clock)
    guard.start()
    try:
        clock.advance(IDLE_TIMEOUT_SECONDS - 10)
        assert guard.record_activity("keypress") is True
        clock.advance(IDLE_TIMEOUT_SECONDS - 10)

        assert await guard.check() is False
        assert fired == []
    finally:
        guard.stop()


async def test_untracked_events_are_ignored():
    clock = FakeClock()
    guard, fired = _guard(clock=clock)
    guard.start()

    clock.advance(IDLE_TIMEOUT_SECONDS - 10)
    assert guard.record_activity("scroll") is False
    assert guard.record_activity("focus") is False
    clock.advance(20)

    assert await guard.check() is True
    assert fired == [True]


def test_activity_ignored_when_not_running():
    storage = MemoryStorage()
    guard, _ = _guard(storage)

    assert guard.record_activity("click") is False
    assert storage.get(LAST_ACTIVITY_KEY) is None


async def test_restart_reads_persisted_activity():
    storage = MemoryStorage()
    clock = FakeClock()
    first, _ = _guard(storage, clock)
    first.start()
    first.stop()

    clock.advance(IDLE_TIMEOUT_SECONDS + 5)
    second, fired = _guard(storage, clock)
    second.start()

    assert second.idle_seconds() == IDLE_TIMEOUT_SECONDS + 5
    assert await second.check() is True
    assert fired == [True]


async def test_unparseable_persisted_activity_is_replaced():
    storage = MemoryStorage({LAST_ACTIVITY_KEY: "yesterday"})
    clock = FakeClock()
    guard, _ = _guard(storage, clock)

    guard.start()
    try:
        assert guard.last_activity == clock.now
    finally:
        guard.stop()


async def test_clear_removes_persisted_activity():
    storage = MemoryStorage()
    guard, _ = _guard(storage)
    guard.start()
    guard.stop()

    guard.clear()

    assert storage.get(LAST_ACTIVITY_KEY) is None
    assert guard.last_activity is None


async def test_background_loop_triggers_idle_handler():
    clock = FakeClock()
    fired = asyncio.Event()
    calls = []

    async def on_idle():
        calls.append(True)
        fired.set()

    guard = SessionGuard(
        MemoryStorage(),
        on_idle,
        idle_timeout_seconds=IDLE_TIMEOUT_SECONDS,
        check_interval_seconds=0.01,
        clock=clock,
    )
    guard.start()
    await asyncio.sleep(0.03)
    assert calls == []

    clock.advance(IDLE_TIMEOUT_SECONDS + 1)
    await asyncio.wait_for(fired.wait(), timeout=1)
    await asyncio.sleep(0.03)

    assert calls == [True]
    assert not guard.is_running


async def test_stop_cancels_background_task():
    guard, _ = _guard(check_interval_seconds=0.01)
    guard.start()
    task = guard._task

    guard.stop()
    await asyncio.sleep(0.02)

    assert task.cancelled() or task.done()
    assert guard._task is None
