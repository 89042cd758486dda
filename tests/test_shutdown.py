from __future__ import annotations

import asyncio
import signal
import time

import pytest

from authgate.domain.errors import ShuttingDown
from authgate.runtime.shutdown import ShutdownCoordinator, ShutdownPhase


class Hooks:
    def __init__(self) -> None:
        self.stopped = 0
        self.closed = 0

    def stop_accepting(self) -> None:
        self.stopped += 1

    def close_storage(self) -> None:
        self.closed += 1


@pytest.fixture
def hooks() -> Hooks:
    return Hooks()


def make_coordinator(hooks: Hooks, drain_timeout: float = 1.0) -> ShutdownCoordinator:
    return ShutdownCoordinator(
        drain_timeout=drain_timeout,
        close_storage=hooks.close_storage,
        stop_accepting=hooks.stop_accepting,
    )


def test_signal_enters_draining_and_refuses_new_requests(hooks):
    coordinator = make_coordinator(hooks)

    coordinator.handle_signal(signal.SIGTERM)

    async def scenario():
        with pytest.raises(ShuttingDown):
            async with coordinator.track():
                pass

    asyncio.run(scenario())
    assert coordinator.phase is ShutdownPhase.draining
    assert not coordinator.accepting
    assert hooks.stopped == 1


def test_begin_drain_is_idempotent(hooks):
    coordinator = make_coordinator(hooks)

    coordinator.begin_drain()
    coordinator.handle_signal(signal.SIGINT)

    assert hooks.stopped == 1


def test_drain_waits_for_in_flight_requests(hooks):
    coordinator = make_coordinator(hooks)
    finished = []

    async def request():
        async with coordinator.track():
            await asyncio.sleep(0.05)
            finished.append(True)

    async def scenario():
        task = asyncio.create_task(request())
        await asyncio.sleep(0)
        assert coordinator.in_flight == 1
        clean = await coordinator.drain()
        await task
        return clean

    assert asyncio.run(scenario()) is True
    assert finished == [True]
    assert hooks.closed == 1
    assert coordinator.phase is ShutdownPhase.closed


def test_drain_force_closes_after_timeout(hooks):
    coordinator = make_coordinator(hooks, drain_timeout=0.1)

    async def stuck_request(never: asyncio.Event):
        async with coordinator.track():
            await never.wait()

    async def scenario():
        never = asyncio.Event()
        task = asyncio.create_task(stuck_request(never))
        await asyncio.sleep(0)
        started = time.monotonic()
        clean = await coordinator.drain()
        elapsed = time.monotonic() - started
        task.cancel()
        return clean, elapsed

    clean, elapsed = asyncio.run(scenario())

    assert clean is False
    assert elapsed < 1.0
    assert hooks.closed == 1
    assert coordinator.phase is ShutdownPhase.closed


def test_drain_without_requests_closes_immediately(hooks):
    coordinator = make_coordinator(hooks)

    assert asyncio.run(coordinator.drain()) is True
    assert asyncio.run(coordinator.drain()) is True
    assert hooks.closed == 1


def test_storage_close_failure_still_closes(hooks):
    def broken_close():
        raise RuntimeError("pool already closed")

    coordinator = ShutdownCoordinator(drain_timeout=0.1, close_storage=broken_close)

    with pytest.raises(RuntimeError):
        asyncio.run(coordinator.drain())
    assert coordinator.phase is ShutdownPhase.closed


def test_requests_cancelled_while_draining_count_as_abandoned(hooks, caplog):
    coordinator = make_coordinator(hooks, drain_timeout=5.0)

    async def stuck_request(never: asyncio.Event):
        async with coordinator.track():
            await never.wait()

    async def scenario():
        never = asyncio.Event()
        task = asyncio.create_task(stuck_request(never))
        await asyncio.sleep(0)
        coordinator.begin_drain(reason="test")
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        return await coordinator.drain()

    with caplog.at_level("WARNING", logger="authgate.runtime.shutdown"):
        clean = asyncio.run(scenario())

    assert clean is False
    assert coordinator.abandoned == 1
    assert coordinator.in_flight == 0
    assert "1 request(s) abandoned" in caplog.text
    assert hooks.closed == 1
