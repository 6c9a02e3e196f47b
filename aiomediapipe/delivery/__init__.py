"""Clock-driven delivery of timed buffers."""

from __future__ import annotations

__all__ = ["PeriodicClock", "TimedDeliveryQueue"]

from .clock import PeriodicClock
from .queue import TimedDeliveryQueue
