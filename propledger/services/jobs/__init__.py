from __future__ import annotations

from propledger.services.jobs.dispatcher import JobDispatcher
from propledger.services.jobs.handlers import HandlerRegistry, JobContext
from propledger.services.jobs.listener import PgNotificationListener
from propledger.services.jobs.queue import JobQueue, retry_delay_seconds


__all__ = [
    "HandlerRegistry",
    "JobContext",
    "JobDispatcher",
    "JobQueue",
    "PgNotificationListener",
    "retry_delay_seconds",
]
