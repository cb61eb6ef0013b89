"""
Inactivity auto-logout timer.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

from .config import DEFAULT_INACTIVITY_CHECK_INTERVAL, DEFAULT_INACTIVITY_LIMIT

logger = logging.getLogger(__name__)


class InactivityMonitor:
    """Fires ``on_timeout`` once when nothing has called ``touch()`` for ``limit`` seconds.

    Args:
        on_timeout: Called (or awaited, if it returns an awaitable) on timeout
        limit: Idle seconds allowed
        check_interval: Seconds between checks
        clock: Monotonic time source in seconds
    """

    def __init__(
        self,
        on_timeout: Callable[[], Awaitable[None] | None],
        limit: float = DEFAULT_INACTIVITY_LIMIT,
        check_interval: float = DEFAULT_INACTIVITY_CHECK_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.on_timeout = on_timeout
        self.limit = limit
        self.check_interval = check_interval
        self.clock = clock

        self._last_activity = clock()
        self._task: asyncio.Task[None] | None = None
        self._fired = False

    @property
    def idle_seconds(self) -> float:
        return self.clock() - self._last_activity

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def touch(self) -> None:
        """Record user activity."""
        self._last_activity = self.clock()

    def start(self) -> None:
        if self.is_running:
            return
        self._fired = False
        self.touch()
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        task, self._task = self._task, None
        if task is not asyncio.current_task():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    async def check(self) -> bool:
        """Run one check. Returns True if the timeout fired."""
        if self._fired or self.idle_seconds <= self.limit:
            return False
        self._fired = True
        logger.info(f"No activity for {self.idle_seconds:.0f}s, logging out")
        result = self.on_timeout()
        if result is not None:
            await result
        return True

    async def _run(self) -> None:
        while not self._fired:
            await asyncio.sleep(self.check_interval)
            await self.check()
