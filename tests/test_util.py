from __future__ import annotations

import logging
import threading

import pytest

from aiomediapipe.encoder.state import LazyResourceState, SessionState
from aiomediapipe.util import ListenerSet, SerialQueue


def test_serial_queue_runs_in_order_on_one_thread() -> None:
    queue = SerialQueue("test-queue")
    seen: list[int] = []
    threads: set[int] = set()

    def record(value: int) -> None:
        threads.add(threading.get_ident())
        seen.append(value)

    for i in range(50):
        queue.dispatch(record, i)
    queue.join(timeout=5)
    assert seen == list(range(50))
    assert len(threads) == 1
    assert threading.get_ident() not in threads
    queue.shutdown()


def test_serial_queue_logs_and_continues(caplog: pytest.LogCaptureFixture) -> None:
    queue = SerialQueue("failing-queue")
    seen: list[str] = []

    def boom() -> None:
        raise RuntimeError("boom")

    with caplog.at_level(logging.ERROR, logger="aiomediapipe.util"):
        queue.dispatch(boom)
        queue.dispatch(seen.append, "after")
        queue.join(timeout=5)
    assert seen == ["after"]
    assert "failing-queue" in caplog.text
    queue.shutdown()


def test_serial_queue_drops_work_after_shutdown() -> None:
    queue = SerialQueue("closed-queue")
    queue.shutdown()
    assert queue.closed
    assert queue.dispatch(print, "never") is None
    queue.join()


@pytest.mark.asyncio
async def test_serial_queue_wait_idle() -> None:
    queue = SerialQueue("async-queue")
    seen: list[int] = []
    queue.dispatch(seen.append, 1)
    queue.dispatch(seen.append, 2)
    await queue.wait_idle()
    assert seen == [1, 2]
    queue.shutdown()


def test_listener_set_remover_and_isolation(caplog: pytest.LogCaptureFixture) -> None:
    listeners: ListenerSet[int] = ListenerSet("numbers")
    received: list[int] = []

    def broken(_value: int) -> None:
        raise ValueError("listener failed")

    listeners.add(broken)
    remove = listeners.add(received.append)
    with caplog.at_level(logging.ERROR, logger="aiomediapipe.util"):
        listeners.signal(1)
    assert received == [1]
    assert "numbers" in caplog.text

    remove()
    remove()
    listeners.signal(2)
    assert received == [1]
    assert len(listeners) == 1


def test_lazy_resource_state_transitions() -> None:
    state = LazyResourceState("resource")
    assert state.state is SessionState.UNCONFIGURED
    assert state.needs_build

    state.invalidate()
    assert state.state is SessionState.UNCONFIGURED

    state.mark_configured()
    assert state.state is SessionState.CONFIGURED
    assert not state.needs_build
    assert state.rebuilds == 0

    state.invalidate()
    state.invalidate()
    assert state.state is SessionState.INVALIDATED
    state.mark_configured()
    assert state.rebuilds == 1

    state.reset()
    assert state.state is SessionState.UNCONFIGURED
