from __future__ import annotations

import asyncio
from typing import Callable

import pytest

from propledger.core.config import Settings
from propledger.services.jobs.dispatcher import JobDispatcher
from propledger.services.telemetry import Telemetry


class _CountingQueue:
    # Pretends `available` jobs are claimable; each process_next consumes one.
    def __init__(self, available: int = 0) -> None:
        self.available = available
        self.processed = 0

    async def process_next(self) -> bool:
        if self.available <= 0:
            return False
        self.available -= 1
        self.processed += 1
        return True


class _FakeListener:
    def __init__(self, *, failures: int = 0) -> None:
        self.failures = failures
        self.connect_calls = 0
        self.closed = False
        self._connected = False
        self.on_notify: Callable[[str], None] | None = None
        self.on_lost: Callable[[], None] | None = None

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        self.connect_calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise OSError("connection refused")
        self._connected = True

    async def close(self) -> None:
        self.closed = True
        self._connected = False

    def drop(self) -> None:
        # Simulate a server-side disconnect.
        self._connected = False
        assert self.on_lost is not None
        self.on_lost()


def _factory(listener: _FakeListener) -> Callable[[Callable[[str], None], Callable[[], None]], _FakeListener]:
    def _build(on_notify: Callable[[str], None], on_lost: Callable[[], None]) -> _FakeListener:
        listener.on_notify = on_notify
        listener.on_lost = on_lost
        return listener

    return _build


async def _eventually(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_full_wake_channel_coalesces_signals(settings: Settings) -> None:
    telemetry = Telemetry()
    dispatcher = JobDispatcher(_CountingQueue(), settings=settings, telemetry=telemetry)

    accepted = [dispatcher.wake(f"job-{index}") for index in range(6)]

    assert accepted == [True, True, True, True, False, False]
    assert telemetry.counter("dispatcher.wake_coalesced") == 2


@pytest.mark.asyncio
async def test_startup_drains_everything_claimable(settings: Settings) -> None:
    queue = _CountingQueue(available=7)
    dispatcher = JobDispatcher(queue, settings=settings, telemetry=Telemetry())

    await dispatcher.start()
    try:
        await _eventually(lambda: queue.processed == 7)
    finally:
        await dispatcher.stop()

    assert not dispatcher.running


@pytest.mark.asyncio
async def test_push_notification_triggers_a_drain(settings: Settings) -> None:
    queue = _CountingQueue()
    listener = _FakeListener()
    telemetry = Telemetry()
    dispatcher = JobDispatcher(queue, settings=settings, telemetry=telemetry, listener_factory=_factory(listener))

    await dispatcher.start()
    try:
        assert dispatcher.push_enabled
        assert dispatcher.poll_interval_s() == settings.job_poll_interval_push_s
        queue.available = 2
        assert listener.on_notify is not None
        listener.on_notify("job-42")
        await _eventually(lambda: queue.processed == 2)
    finally:
        await dispatcher.stop()

    assert listener.closed
    assert telemetry.counter("dispatcher.push_received") == 1


@pytest.mark.asyncio
async def test_listener_failure_degrades_to_polling_once(settings: Settings) -> None:
    queue = _CountingQueue()
    listener = _FakeListener(failures=1)
    telemetry = Telemetry()
    dispatcher = JobDispatcher(queue, settings=settings, telemetry=telemetry, listener_factory=_factory(listener))

    await dispatcher.start()
    try:
        assert not dispatcher.push_enabled
        assert dispatcher.poll_interval_s() == settings.job_poll_interval_fallback_s
        # Jobs that arrive later are picked up by the fast sweep alone.
        queue.available = 3
        await _eventually(lambda: queue.processed == 3)
        # A degraded dispatcher does not try to reconnect.
        assert listener.on_lost is not None
        listener.on_lost()
        await asyncio.sleep(0.05)
    finally:
        await dispatcher.stop()

    assert listener.connect_calls == 1
    assert telemetry.counter("dispatcher.push_degraded") == 1


@pytest.mark.asyncio
async def test_lost_listener_reconnects_with_a_single_task(settings: Settings) -> None:
    queue = _CountingQueue()
    listener = _FakeListener()
    telemetry = Telemetry()
    dispatcher = JobDispatcher(queue, settings=settings, telemetry=telemetry, listener_factory=_factory(listener))

    await dispatcher.start()
    try:
        listener.failures = 2
        listener.drop()
        listener.drop()
        # Fast sweep takes over while the listener is down.
        assert dispatcher.poll_interval_s() == settings.job_poll_interval_fallback_s
        await _eventually(lambda: listener.connected)
        queue.available = 1
        await _eventually(lambda: queue.processed == 1)
    finally:
        await dispatcher.stop()

    # One initial connect, two failed retries, one success.
    assert listener.connect_calls == 4
    assert telemetry.counter("dispatcher.reconnect_failed") == 2
    assert telemetry.counter("dispatcher.reconnected") == 1


@pytest.mark.asyncio
async def test_drain_keeps_running_after_queue_errors(settings: Settings) -> None:
    class _FlakyQueue(_CountingQueue):
        def __init__(self) -> None:
            super().__init__(available=2)
            self.raised = False

        async def process_next(self) -> bool:
            if not self.raised:
                self.raised = True
                raise ConnectionError("pool exhausted")
            return await super().process_next()

    queue = _FlakyQueue()
    dispatcher = JobDispatcher(queue, settings=settings, telemetry=Telemetry())

    await dispatcher.start()
    try:
        await _eventually(lambda: queue.processed == 2)
    finally:
        await dispatcher.stop()
