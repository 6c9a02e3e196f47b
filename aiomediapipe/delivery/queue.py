"""
Presentation-timed release of encoded buffers.

TimedDeliveryQueue holds buffers until enough media has accumulated and the
external clock has reached each buffer's presentation time relative to the
first tick after start. Buffers leave in exactly the order they arrived.
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Callable

from aiomediapipe.errors import ConfigurationError
from aiomediapipe.models import DeliveryQueueSettings, TimedBuffer
from aiomediapipe.util import ListenerSet, SerialQueue

from .clock import PeriodicClock

logger = logging.getLogger(__name__)


class TimedDeliveryQueue:
    """Release buffers in FIFO order once their presentation time is due."""

    def __init__(
        self,
        settings: DeliveryQueueSettings | None = None,
        *,
        clock: PeriodicClock | None = None,
    ) -> None:
        """
        Create a stopped queue.

        Args:
            settings: Buffering settings, defaults when omitted.
            clock: Clock whose ticks drive delivery while started; tick() can
                also be called directly.
        """
        self._settings = settings or DeliveryQueueSettings()
        self._clock = clock
        self._queue = SerialQueue("delivery-queue")
        self._entries: deque[TimedBuffer] = deque()
        self._running = False
        self._ready = False
        self._duration_us = 0
        self._base_offset_us: int | None = None
        self._delivered = 0
        self._remove_clock_listener: Callable[[], None] | None = None
        self._delivery_listeners: ListenerSet[TimedBuffer] = ListenerSet("delivery")

    @property
    def settings(self) -> DeliveryQueueSettings:
        """Return the current settings."""
        return self._settings

    @property
    def running(self) -> bool:
        """Return True between start() and stop()."""
        return self._running

    @property
    def is_ready(self) -> bool:
        """Return True once more than buffer_time_us of media has been enqueued."""
        return self._ready

    @property
    def duration_us(self) -> int:
        """Return the total duration enqueued since start."""
        return self._duration_us

    @property
    def backlog(self) -> int:
        """Return the number of buffers waiting for delivery."""
        return len(self._entries)

    @property
    def delivered(self) -> int:
        """Return the number of buffers delivered since creation."""
        return self._delivered

    @property
    def base_offset_us(self) -> int | None:
        """Return the clock time of the first tick after start."""
        return self._base_offset_us

    def add_delivery_listener(self, callback: Callable[[TimedBuffer], None]) -> Callable[[], None]:
        """Add a listener receiving each released buffer. Returns a remover."""
        return self._delivery_listeners.add(callback)

    def configure(self, settings: DeliveryQueueSettings) -> None:
        """
        Replace the settings; readiness is re-evaluated on the next enqueue.

        Raises:
            ConfigurationError: If settings is not a DeliveryQueueSettings.
        """
        if not isinstance(settings, DeliveryQueueSettings):
            raise ConfigurationError(f"expected DeliveryQueueSettings, got {type(settings).__name__}")
        self._queue.dispatch(self._apply_settings, settings)

    def start(self) -> None:
        """Start releasing buffers; subscribes to the clock if one was given."""
        self._queue.dispatch(self._start)

    def stop(self) -> None:
        """Stop and drop everything queued. Safe to call repeatedly."""
        self._queue.dispatch(self._stop)

    def enqueue(self, buffer: TimedBuffer) -> None:
        """Append a buffer. Never blocks."""
        self._queue.dispatch(self._enqueue, buffer)

    def tick(self, clock_timestamp_us: int) -> None:
        """Handle one clock tick. Never blocks the caller."""
        self._queue.dispatch(self._tick, clock_timestamp_us)

    async def wait_idle(self) -> None:
        """Wait until everything dispatched so far has run."""
        await self._queue.wait_idle()

    def join(self, timeout: float | None = None) -> None:
        """Block until everything dispatched so far has run."""
        self._queue.join(timeout)

    def close(self) -> None:
        """Stop and release the worker thread."""
        self.stop()
        self._queue.shutdown()

    # Everything below runs on the serial queue

    def _apply_settings(self, settings: DeliveryQueueSettings) -> None:
        self._settings = settings

    def _start(self) -> None:
        if self._running:
            return
        self._running = True
        if self._clock is not None:
            self._remove_clock_listener = self._clock.add_listener(self.tick)
        logger.info("Delivery queue started, buffering %d us", self._settings.buffer_time_us)

    def _stop(self) -> None:
        if self._remove_clock_listener is not None:
            self._remove_clock_listener()
            self._remove_clock_listener = None
        dropped = len(self._entries)
        self._entries.clear()
        self._ready = False
        self._duration_us = 0
        self._base_offset_us = None
        if self._running:
            self._running = False
            logger.info("Delivery queue stopped, %d buffers dropped", dropped)

    def _enqueue(self, buffer: TimedBuffer) -> None:
        self._duration_us += buffer.duration_us
        self._entries.append(buffer)
        if not self._ready and self._duration_us > self._settings.buffer_time_us:
            self._ready = True
            logger.debug("Delivery queue ready with %d us buffered", self._duration_us)

    def _tick(self, clock_timestamp_us: int) -> None:
        if not self._running:
            return
        if self._base_offset_us is None:
            self._base_offset_us = clock_timestamp_us
        if not self._ready:
            return
        elapsed = clock_timestamp_us - self._base_offset_us
        for _ in range(self._settings.max_deliveries_per_tick):
            if not self._entries or self._entries[0].presentation_time_us > elapsed:
                return
            buffer = self._entries.popleft()
            self._delivered += 1
            self._delivery_listeners.signal(buffer)
