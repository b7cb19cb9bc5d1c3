from __future__ import annotations

import asyncio
import logging
import signal

from propledger.core.config import Settings, get_settings
from propledger.services.context import PipelineContext, build_context


logger = logging.getLogger(__name__)


def _install_stop_handlers(stop: asyncio.Event) -> None:
    # SIGINT/SIGTERM finish the current drain step and shut down cleanly.
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers; Ctrl+C still raises KeyboardInterrupt.
            pass


async def run_billing_worker(
    settings: Settings | None = None,
    *,
    stop: asyncio.Event | None = None,
    context: PipelineContext | None = None,
) -> None:
    settings = settings or get_settings()
    context = context or build_context(settings)
    stop = stop or asyncio.Event()
    _install_stop_handlers(stop)

    dispatcher = context.dispatcher
    if dispatcher is None:
        raise RuntimeError("billing worker needs a pipeline context with a dispatcher")
    await dispatcher.start()
    logger.info(
        "billing_worker_started job_types=%s push_enabled=%s",
        ",".join(context.registry.job_types()),
        dispatcher.push_enabled,
    )
    try:
        await stop.wait()
    finally:
        await context.aclose()
        logger.info("billing_worker_stopped counters=%s", context.telemetry.counters_snapshot())
