"""Application lifecycle notifications consumed by the video encoder."""

from __future__ import annotations

import logging
from collections.abc import Callable

from aiomediapipe.models import LifecycleEvent
from aiomediapipe.util import ListenerSet

logger = logging.getLogger(__name__)


class LifecycleSignals:
    """
    Fan-out point for lifecycle events raised by the host application.

    The application calls notify() when it returns to the foreground or when
    an audio interruption ends; subscribed encoders react on their own queue.
    """

    def __init__(self) -> None:
        """Create a signal source without subscribers."""
        self._listeners: ListenerSet[LifecycleEvent] = ListenerSet("lifecycle")

    def add_listener(self, callback: Callable[[LifecycleEvent], None]) -> Callable[[], None]:
        """Subscribe to lifecycle events. Returns a function that unsubscribes."""
        return self._listeners.add(callback)

    def notify(self, event: LifecycleEvent) -> None:
        """Deliver event to every subscriber."""
        logger.debug("Lifecycle event %s", event.value)
        self._listeners.signal(event)

    @property
    def subscriber_count(self) -> int:
        """Return the number of current subscribers."""
        return len(self._listeners)
