"""Lazy-rebuild state shared by the encoders' destination format and sessions."""

from __future__ import annotations

import logging
from enum import Enum

logger = logging.getLogger(__name__)


class SessionState(Enum):
    """Where a lazily built resource stands relative to its inputs."""

    UNCONFIGURED = "unconfigured"
    """Inputs unknown yet (no source format, or never built)."""
    CONFIGURED = "configured"
    """Built from the current inputs and safe to use."""
    INVALIDATED = "invalidated"
    """Inputs changed; must be rebuilt before the next use."""


class LazyResourceState:
    """
    Track whether a lazily built resource is current.

    Transitions:
        UNCONFIGURED -> CONFIGURED   on mark_configured() (inputs became known)
        CONFIGURED   -> INVALIDATED  on invalidate() (an input changed)
        INVALIDATED  -> CONFIGURED   on mark_configured() (rebuilt on next use)
        any          -> UNCONFIGURED on reset()
    """

    def __init__(self, name: str) -> None:
        """Start unconfigured."""
        self._name = name
        self._state = SessionState.UNCONFIGURED
        self.rebuilds = 0

    @property
    def state(self) -> SessionState:
        """Return the current state."""
        return self._state

    @property
    def needs_build(self) -> bool:
        """Return True when the resource must be (re)built before use."""
        return self._state is not SessionState.CONFIGURED

    def mark_configured(self) -> None:
        """Record that the resource was built from the current inputs."""
        if self._state is SessionState.INVALIDATED:
            self.rebuilds += 1
        self._state = SessionState.CONFIGURED

    def invalidate(self) -> None:
        """Record that an input changed. Unconfigured resources stay unconfigured."""
        if self._state is SessionState.CONFIGURED:
            logger.debug("%s invalidated", self._name)
            self._state = SessionState.INVALIDATED

    def reset(self) -> None:
        """Forget everything, as after stop()."""
        self._state = SessionState.UNCONFIGURED
