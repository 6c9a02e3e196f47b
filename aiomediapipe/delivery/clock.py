"""Periodic clock source driving TimedDeliveryQueue.tick()."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from contextlib import suppress

from aiomediapipe.util import ListenerSet

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 1 / 60


class PeriodicClock:
    """
    Emit the event loop's monotonic time, in microseconds, at a fixed interval.

    Ticks are scheduled against absolute deadlines so they do not drift when a
    listener is slow; missed deadlines are skipped rather than replayed.
    """

    def __init__(
        self,
        interval: float = DEFAULT_INTERVAL,
        *,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        """
        Create a stopped clock.

        Args:
            interval: Seconds between ticks.
            loop: Event loop to run on; the running loop when omitted.
        """
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        self._interval = interval
        self._loop = loop
        self._task: asyncio.Task[None] | None = None
        self._listeners: ListenerSet[int] = ListenerSet("clock")
        self.ticks = 0

    @property
    def interval(self) -> float:
        """Return seconds between ticks."""
        return self._interval

    @property
    def running(self) -> bool:
        """Return True while the tick task is alive."""
        return self._task is not None and not self._task.done()

    def add_listener(self, callback: Callable[[int], None]) -> Callable[[], None]:
        """Add a tick listener receiving the timestamp in microseconds. Returns a remover."""
        return self._listeners.add(callback)

    def now_us(self) -> int:
        """Return the current clock time in microseconds."""
        return int(self._get_loop().time() * 1_000_000)

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def start(self) -> None:
        """Start ticking. Must be called with an event loop available."""
        if self.running:
            return
        loop = self._get_loop()
        self._task = loop.create_task(self._run())
        logger.debug("Clock started at %.4f s interval", self._interval)

    async def stop(self) -> None:
        """Stop ticking and wait for the tick task to finish."""
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
        logger.debug("Clock stopped after %d ticks", self.ticks)

    async def _run(self) -> None:
        loop = self._get_loop()
        deadline = loop.time()
        while True:
            deadline += self._interval
            delay = deadline - loop.time()
            if delay < 0:
                # Fell behind; realign to the next slot
                deadline = loop.time()
                delay = 0
            await asyncio.sleep(delay)
            self.ticks += 1
            self._listeners.signal(int(loop.time() * 1_000_000))
