"""Utility functions for aiomediapipe."""

from __future__ import annotations

import asyncio
import logging
import threading
import types
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import suppress
from typing import Any, Generic, ParamSpec, TypeVar

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


def get_av() -> types.ModuleType:
    """Lazy import of av module to avoid slow startup."""
    import av as _av  # noqa: PLC0415

    return _av


def get_numpy() -> types.ModuleType:
    """Lazy import of numpy, only needed once media actually flows."""
    import numpy as _np  # noqa: PLC0415

    return _np


def _noop() -> None:
    return None


class SerialQueue:
    """
    Run submitted callables one at a time, in submission order, on a private thread.

    Each encoder and delivery queue owns one of these; every mutation of its
    state is dispatched here so no locking is needed inside the component.
    Errors raised by dispatched work are logged and never reach the caller.
    """

    def __init__(self, label: str) -> None:
        """
        Create the queue and its worker.

        Args:
            label: Name used for the worker thread and in log messages.
        """
        self._label = label
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=label)
        self._worker_ident: int | None = None
        self._closed = False

    @property
    def label(self) -> str:
        """Return the queue label."""
        return self._label

    @property
    def closed(self) -> bool:
        """Return True once the worker has been shut down."""
        return self._closed

    def is_current(self) -> bool:
        """Return True when called from this queue's worker thread."""
        return self._worker_ident == threading.get_ident()

    def dispatch(
        self, fn: Callable[P, Any], /, *args: P.args, **kwargs: P.kwargs
    ) -> Future[None] | None:
        """Schedule fn to run after everything dispatched before it. Never blocks."""
        if self._closed:
            logger.debug("Dropping work for closed serial queue %s", self._label)
            return None
        return self._executor.submit(self._run, fn, args, kwargs)

    def _run(self, fn: Callable[..., Any], args: tuple[Any, ...], kwargs: dict[str, Any]) -> None:
        self._worker_ident = threading.get_ident()
        try:
            fn(*args, **kwargs)
        except Exception:
            logger.exception("Unhandled error on serial queue %s", self._label)

    def join(self, timeout: float | None = None) -> None:
        """Block until all previously dispatched work has run."""
        if self._closed or self.is_current():
            return
        self._executor.submit(_noop).result(timeout)

    async def wait_idle(self) -> None:
        """Wait, without blocking the event loop, until dispatched work has run."""
        if self._closed:
            return
        await asyncio.wrap_future(self._executor.submit(_noop))

    def shutdown(self, *, wait: bool = True) -> None:
        """Run what is queued, then stop the worker thread."""
        if self._closed:
            return
        self._closed = True
        self._executor.shutdown(wait=wait and not self.is_current())


class ListenerSet(Generic[T]):
    """Callbacks for one kind of event; failures in one listener never affect another."""

    def __init__(self, name: str) -> None:
        """Create an empty set of listeners for the named event."""
        self._name = name
        self._callbacks: list[Callable[[T], None]] = []

    def add(self, callback: Callable[[T], None]) -> Callable[[], None]:
        """Add a listener.

        Returns:
            A function that removes this listener when called.
        """
        self._callbacks.append(callback)

        def _remove() -> None:
            with suppress(ValueError):
                self._callbacks.remove(callback)

        return _remove

    def signal(self, value: T) -> None:
        """Invoke every listener with value."""
        for cb in list(self._callbacks):
            try:
                cb(value)
            except Exception:
                logger.exception("Error in %s listener", self._name)

    def clear(self) -> None:
        """Remove all listeners."""
        self._callbacks.clear()

    def __len__(self) -> int:
        """Return the number of registered listeners."""
        return len(self._callbacks)
