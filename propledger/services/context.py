from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Callable

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from propledger.core.config import Settings, get_settings
from propledger.domain.records import JobRecord
from propledger.persistence.db import build_engine, build_sessionmaker, raw_dsn
from propledger.persistence.repos.job_runs import SqlJobRunStore
from propledger.persistence.repos.jobs import SqlJobStore
from propledger.services.audit import record_event
from propledger.services.billing.job_handlers import register_billing_handlers
from propledger.services.billing.sepa import HttpxPspTransport, PspTransport
from propledger.services.jobs.dispatcher import JobDispatcher, NotificationListener
from propledger.services.jobs.handlers import AuditEmitter, HandlerRegistry
from propledger.services.jobs.listener import PgNotificationListener
from propledger.services.jobs.queue import JobQueue
from propledger.services.telemetry import Telemetry


logger = logging.getLogger(__name__)


@dataclass
class PipelineContext:
    """Everything a pipeline process shares, built once at startup and passed down."""

    settings: Settings
    engine: AsyncEngine
    sessionmaker: async_sessionmaker[AsyncSession]
    telemetry: Telemetry
    registry: HandlerRegistry
    queue: JobQueue
    psp_transport: PspTransport
    dispatcher: JobDispatcher | None = None

    async def aclose(self) -> None:
        if self.dispatcher is not None:
            await self.dispatcher.stop()
        await self.engine.dispose()


def job_audit_emitter(sessionmaker: async_sessionmaker[AsyncSession]) -> AuditEmitter:
    # Lifecycle events commit on their own session so a rolled-back handler still leaves a trail.
    async def _emit(event_type: str, job: JobRecord, trace_id: str, outcome: str, metadata: dict[str, Any]) -> None:
        await record_event(
            sessionmaker=sessionmaker,
            organization_id=job.org_id,
            actor_type="system",
            actor_id="job_worker",
            event_type=event_type,
            outcome=outcome,
            resource_type="job",
            resource_id=job.id,
            trace_id=trace_id,
            metadata={**metadata, "trace_id": trace_id},
        )

    return _emit


def pg_listener_factory(settings: Settings) -> Callable[..., NotificationListener]:
    dsn = raw_dsn(settings.database_url)

    def _factory(on_notify: Callable[[str], None], on_lost: Callable[[], None]) -> NotificationListener:
        return PgNotificationListener(
            dsn=dsn,
            channel=settings.job_notify_channel,
            on_notify=on_notify,
            on_lost=on_lost,
        )

    return _factory


def build_context(
    settings: Settings | None = None,
    *,
    engine: AsyncEngine | None = None,
    telemetry: Telemetry | None = None,
    psp_transport: PspTransport | None = None,
    with_dispatcher: bool = True,
    push_enabled: bool = True,
) -> PipelineContext:
    settings = settings or get_settings()
    engine = engine or build_engine(settings)
    sessionmaker = build_sessionmaker(engine)
    telemetry = telemetry or Telemetry()

    registry = HandlerRegistry(
        run_store=SqlJobRunStore(sessionmaker),
        audit=job_audit_emitter(sessionmaker),
        telemetry=telemetry,
    )
    register_billing_handlers(registry)
    queue = JobQueue(
        store=SqlJobStore(sessionmaker, notify_channel=settings.job_notify_channel),
        registry=registry,
        settings=settings,
        telemetry=telemetry,
    )
    dispatcher = None
    if with_dispatcher:
        dispatcher = JobDispatcher(
            queue,
            settings=settings,
            telemetry=telemetry,
            listener_factory=pg_listener_factory(settings) if push_enabled else None,
        )
    context = PipelineContext(
        settings=settings,
        engine=engine,
        sessionmaker=sessionmaker,
        telemetry=telemetry,
        registry=registry,
        queue=queue,
        psp_transport=psp_transport or HttpxPspTransport.from_settings(settings),
        dispatcher=dispatcher,
    )
    queue.bind_pipeline(context)
    logger.debug("pipeline_context_built job_types=%s", ",".join(registry.job_types()))
    return context
