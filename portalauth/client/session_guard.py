from __future__ import annotations

import asyncio
import inspect
import time
from typing import Any, Callable, Optional

from portalauth.client.storage import LAST_ACTIVITY_KEY, KeyValueStorage
from portalauth.logging import get_logger

logger = get_logger(__name__)

TRACKED_EVENTS = frozenset({"click", "keypress", "pointermove", "touchstart"})
IDLE_TIMEOUT_SECONDS = 15 * 60
CHECK_INTERVAL_SECONDS = 60


class SessionGuard:
    """Idle-timeout watchdog for an authenticated client session.

    The last activity timestamp is mirrored to storage so restarting the
    client does not reset the idle clock. While running, a background task
    checks every ``check_interval_seconds``; once the session has been idle
    longer than ``idle_timeout_seconds`` the guard stops and calls
    ``on_idle`` exactly once.
    """

    def __init__(
        self,
        storage: KeyValueStorage,
        on_idle: Callable[[], Any],
        *,
        idle_timeout_seconds: float = IDLE_TIMEOUT_SECONDS,
        check_interval_seconds: float = CHECK_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.storage = storage
        self.on_idle = on_idle
        self.idle_timeout_seconds = idle_timeout_seconds
        self.check_interval_seconds = check_interval_seconds
        self._clock = clock
        self._last_activity: Optional[float] = None
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def last_activity(self) -> Optional[float]:
        return self._last_activity

    def _load_persisted(self) -> Optional[float]:
        raw = self.storage.get(LAST_ACTIVITY_KEY)
        if not raw:
            return None
        try:
            return float(raw)
        except ValueError:
            logger.warning("last_activity_unparseable")
            return None

    def _touch(self) -> None:
        self._last_activity = self._clock()
        self.storage.set(LAST_ACTIVITY_KEY, repr(self._last_activity))

    def start(self) -> None:
        """Begin watching; must be called from inside a running event loop."""
        if self._running:
            return
        persisted = self._load_persisted()
        if persisted is None:
            self._touch()
        else:
            self._last_activity = persisted
        self._running = True
        self._task = asyncio.get_running_loop().create_task(self._run())
        logger.debug("session_guard_started", idle_timeout_seconds=self.idle_timeout_seconds)

    def stop(self) -> None:
        if not self._running and self._task is None:
            return
        self._running = False
        task, self._task = self._task, None
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        # check() stops the guard from inside the loop task; it exits on its own
        if task is not None and task is not current and not task.done():
            task.cancel()
        logger.debug("session_guard_stopped")

    def record_activity(self, event: str) -> bool:
        """Reset the idle clock for a tracked interaction event."""
        if not self._running or event not in TRACKED_EVENTS:
            return False
        self._touch()
        return True

    def reset(self) -> None:
        self._touch()

    def clear(self) -> None:
        self._last_activity = None
        self.storage.remove(LAST_ACTIVITY_KEY)

    def idle_seconds(self) -> float:
        if self._last_activity is None:
            return 0.0
        return max(0.0, self._clock() - self._last_activity)

    async def check(self) -> bool:
        """Run one idle check; returns True when the idle handler fired."""
        if not self._running:
            return False
        idle = self.idle_seconds()
        if idle <= self.idle_timeout_seconds:
            return False
        logger.info("session_idle_timeout", idle_seconds=int(idle))
        self.stop()
        result = self.on_idle()
        if inspect.isawaitable(result):
            await result
        return True

    async def _run(self) -> None:
        while self._running:
            await asyncio.sleep(self.check_interval_seconds)
            try:
                await self.check()
            except Exception as exc:
                logger.error("session_idle_handler_failed", error=str(exc))
