"""Hybrid push/pull dispatch.

Two producers feed one bounded wake channel: the LISTEN callback (a job id
per enqueue) and a ticker (periodic safety sweep). A single drain loop takes
wakeups off the channel and processes jobs until nothing is claimable. A full
channel drops the wakeup; the pending ones already guarantee a drain.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Protocol

from propledger.core.config import Settings
from propledger.services.jobs.queue import JobQueue
from propledger.services.telemetry import Telemetry


logger = logging.getLogger(__name__)

WAKE_STARTUP = "startup"
WAKE_TICK = "tick"


class NotificationListener(Protocol):
    @property
    def connected(self) -> bool: ...

    async def connect(self) -> None: ...

    async def close(self) -> None: ...


# (on_notify, on_lost) -> listener
ListenerFactory = Callable[[Callable[[str], None], Callable[[], None]], NotificationListener]


class JobDispatcher:
    def __init__(
        self,
        queue: JobQueue,
        *,
        settings: Settings,
        telemetry: Telemetry,
        listener_factory: ListenerFactory | None = None,
    ) -> None:
        self._queue = queue
        self._settings = settings
        self._telemetry = telemetry
        self._listener = (
            listener_factory(self.on_notification, self.on_listener_lost) if listener_factory is not None else None
        )
        self._wake: asyncio.Queue[str] = asyncio.Queue(maxsize=max(1, settings.job_wake_channel_size))
        self._push_enabled = self._listener is not None
        self._degraded_logged = False
        self._running = False
        self._drain_task: asyncio.Task[None] | None = None
        self._ticker_task: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None

    @property
    def push_enabled(self) -> bool:
        return self._push_enabled

    @property
    def running(self) -> bool:
        return self._running

    def poll_interval_s(self) -> float:
        # Fast sweep whenever push is not currently delivering.
        if self._push_enabled and self._listener is not None and self._listener.connected:
            return float(self._settings.job_poll_interval_push_s)
        return float(self._settings.job_poll_interval_fallback_s)

    def wake(self, reason: str) -> bool:
        try:
            self._wake.put_nowait(reason)
        except asyncio.QueueFull:
            self._telemetry.increment("dispatcher.wake_coalesced")
            return False
        return True

    def on_notification(self, payload: str) -> None:
        self._telemetry.increment("dispatcher.push_received")
        self.wake(payload or "notify")

    def on_listener_lost(self) -> None:
        if not self._running or not self._push_enabled:
            return
        self._schedule_reconnect()

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        if self._listener is not None:
            try:
                await self._listener.connect()
            except Exception as exc:  # noqa: BLE001 - degrade to polling instead of failing startup
                self._degrade_to_polling(exc)
        else:
            self._degrade_to_polling(None)
        self._drain_task = asyncio.create_task(self._drain_loop(), name="job-drain")
        self._ticker_task = asyncio.create_task(self._ticker_loop(), name="job-ticker")
        self.wake(WAKE_STARTUP)
        logger.info(
            "job_dispatcher_started push_enabled=%s poll_interval_s=%s",
            self._push_enabled,
            self.poll_interval_s(),
        )

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        tasks = [task for task in (self._reconnect_task, self._ticker_task, self._drain_task) if task is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._reconnect_task = self._ticker_task = self._drain_task = None
        if self._listener is not None:
            await self._listener.close()
        logger.info("job_dispatcher_stopped")

    async def drain(self) -> int:
        # Process until nothing is claimable.
        processed = 0
        while await self._queue.process_next():
            processed += 1
        return processed

    def _degrade_to_polling(self, exc: BaseException | None) -> None:
        # Permanent for the process lifetime; logged once.
        self._push_enabled = False
        if self._degraded_logged:
            return
        self._degraded_logged = True
        self._telemetry.increment("dispatcher.push_degraded")
        logger.warning(
            "job_dispatcher_push_unavailable falling_back_to_polling interval_s=%s",
            self._settings.job_poll_interval_fallback_s,
            exc_info=exc,
        )

    def _schedule_reconnect(self) -> None:
        # A single reconnect task at a time; repeated loss signals collapse into it.
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        self._reconnect_task = asyncio.create_task(self._reconnect_loop(), name="job-listener-reconnect")

    async def _reconnect_loop(self) -> None:
        delay = float(self._settings.job_listener_reconnect_delay_s)
        while self._running and self._listener is not None:
            await asyncio.sleep(delay)
            try:
                await self._listener.connect()
            except Exception:  # noqa: BLE001 - keep retrying on the fixed delay
                self._telemetry.increment("dispatcher.reconnect_failed")
                logger.warning("job_listener_reconnect_failed retry_in_s=%s", delay, exc_info=True)
                continue
            self._telemetry.increment("dispatcher.reconnected")
            # Catch up on anything enqueued while the listener was down.
            self.wake("reconnected")
            return

    async def _ticker_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.poll_interval_s())
            self.wake(WAKE_TICK)

    async def _drain_loop(self) -> None:
        while self._running:
            reason = await self._wake.get()
            try:
                processed = await self.drain()
            except Exception:  # noqa: BLE001 - keep the loop alive while surfacing errors in logs
                logger.exception("job_drain_failed reason=%s", reason)
                continue
            if processed:
                logger.debug("job_drain_done reason=%s processed=%s", reason, processed)
