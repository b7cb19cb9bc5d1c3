from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Awaitable, Callable, Protocol

from propledger.domain.records import RUN_COMPLETED, JobRecord, JobRunRecord
from propledger.services.jobs.queue import error_message
from propledger.services.telemetry import Telemetry, Trace


logger = logging.getLogger(__name__)

SKIPPED_ALREADY_COMPLETED: dict[str, Any] = {"skipped": True, "reason": "already_completed"}


class JobRunStore(Protocol):
    async def get(self, job_id: str) -> JobRunRecord | None: ...

    async def mark_running(self, *, job_id: str, job_type: str, trace_id: str) -> JobRunRecord: ...

    async def mark_completed(self, *, job_id: str, trace_id: str) -> None: ...

    async def mark_failed(self, *, job_id: str, trace_id: str, error: str) -> None: ...


# (event_type, job, trace_id, outcome, metadata) -> None
AuditEmitter = Callable[[str, JobRecord, str, str, dict[str, Any]], Awaitable[None]]


@dataclass
class JobContext:
    job: JobRecord
    trace: Trace
    pipeline: Any = None

    @property
    def payload(self) -> dict[str, Any]:
        return self.job.payload


JobHandler = Callable[[JobContext], Awaitable[dict[str, Any] | None]]


class HandlerRegistry:
    """Job-type → handler map whose entries run behind an idempotency lock."""

    def __init__(self, *, run_store: JobRunStore, audit: AuditEmitter, telemetry: Telemetry) -> None:
        self._run_store = run_store
        self._audit = audit
        self._telemetry = telemetry
        self._handlers: dict[str, JobHandler] = {}

    def register(self, job_type: str, handler: JobHandler) -> None:
        if job_type in self._handlers:
            logger.warning("job_handler_replaced job_type=%s", job_type)
        self._handlers[job_type] = handler

    def has(self, job_type: str) -> bool:
        return job_type in self._handlers

    def job_types(self) -> list[str]:
        return sorted(self._handlers)

    async def run(self, job: JobRecord, *, pipeline: Any = None) -> dict[str, Any]:
        handler = self._handlers[job.job_type]

        # A completed lock means the side effects already happened under this id.
        existing = await self._run_store.get(job.id)
        if existing is not None and existing.status == RUN_COMPLETED:
            self._telemetry.increment("jobs.skipped_already_completed")
            logger.info("job_skipped_already_completed job_id=%s job_type=%s", job.id, job.job_type)
            return dict(SKIPPED_ALREADY_COMPLETED)

        trace = self._telemetry.start_trace(f"job.{job.job_type}")
        lock = await self._run_store.mark_running(job_id=job.id, job_type=job.job_type, trace_id=trace.trace_id)
        await self._audit(
            "job.started",
            job,
            trace.trace_id,
            "started",
            {"job_type": job.job_type, "attempt": lock.attempts},
        )
        try:
            with trace.span("handler") as span:
                span.set_attribute("job_id", job.id)
                span.set_attribute("job_type", job.job_type)
                result = await handler(JobContext(job=job, trace=trace, pipeline=pipeline))
        except Exception as exc:
            message = error_message(exc)
            # The handler's error is what the queue must record; bookkeeping failures only get logged.
            try:
                await self._run_store.mark_failed(job_id=job.id, trace_id=trace.trace_id, error=message)
                await self._audit(
                    "job.failed",
                    job,
                    trace.trace_id,
                    "failure",
                    {"job_type": job.job_type, "error": message, "trace": trace.finish()},
                )
            except Exception:  # noqa: BLE001 - keep the original handler error
                logger.exception("job_failure_bookkeeping_failed job_id=%s job_type=%s", job.id, job.job_type)
            raise
        await self._run_store.mark_completed(job_id=job.id, trace_id=trace.trace_id)
        summary = trace.finish()
        await self._audit(
            "job.completed",
            job,
            trace.trace_id,
            "success",
            {"job_type": job.job_type, "trace": summary},
        )
        resolved = dict(result or {})
        resolved.setdefault("trace_id", trace.trace_id)
        return resolved
