from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
from typing import TYPE_CHECKING, Any, Callable, Protocol

from propledger.core.config import Settings
from propledger.core.errors import JobHandlerNotFoundError
from propledger.domain.records import (
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_RETRYING,
    JobClaim,
    JobRecord,
    JobTransition,
)
from propledger.persistence.repos.jobs import insert_job
from propledger.services.telemetry import Telemetry

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from propledger.services.jobs.handlers import HandlerRegistry


logger = logging.getLogger(__name__)

_MAX_ERROR_CHARS = 2000


class JobStore(Protocol):
    async def enqueue(
        self,
        *,
        org_id: str | None,
        job_type: str,
        payload: dict[str, Any],
        priority: int,
        max_retries: int,
        scheduled_for: datetime | None,
    ) -> JobRecord: ...

    async def notify(self, job_id: str) -> None: ...

    async def claim_one(self, *, now: datetime | None = None) -> JobClaim | None: ...

    async def finalize(self, claim: JobClaim, transition: JobTransition, *, now: datetime | None = None) -> None: ...

    async def release(self, claim: JobClaim) -> None: ...


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def retry_delay_seconds(retry_count: int, *, base_delay_s: int = 30) -> int:
    # Quadratic backoff: 30s, 120s, 270s, ...
    return base_delay_s * retry_count * retry_count


def error_message(exc: BaseException) -> str:
    message = str(exc) or exc.__class__.__name__
    return message[:_MAX_ERROR_CHARS]


def completed_transition(job: JobRecord, result: dict[str, Any] | None) -> JobTransition:
    return JobTransition(status=JOB_COMPLETED, retry_count=job.retry_count, result=result or {})


def failure_transition(
    job: JobRecord,
    error: str,
    *,
    now: datetime,
    permanent: bool = False,
    base_delay_s: int = 30,
) -> JobTransition:
    # Retry while budget remains; otherwise the failure is terminal.
    if not permanent and job.retry_count + 1 < job.max_retries:
        next_count = job.retry_count + 1
        return JobTransition(
            status=JOB_RETRYING,
            retry_count=next_count,
            scheduled_for=now + timedelta(seconds=retry_delay_seconds(next_count, base_delay_s=base_delay_s)),
            error=error,
        )
    return JobTransition(status=JOB_FAILED, retry_count=job.retry_count, error=error)


class JobQueue:
    """Enqueue/claim/complete/fail over a Job Store.

    process_next() composes claim_one, dispatch and release.
    """

    def __init__(
        self,
        *,
        store: JobStore,
        registry: HandlerRegistry,
        settings: Settings,
        telemetry: Telemetry,
        pipeline: Any = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._store = store
        self._registry = registry
        self._settings = settings
        self._telemetry = telemetry
        self._pipeline = pipeline
        self._clock = clock

    def bind_pipeline(self, pipeline: Any) -> None:
        # Handlers receive the pipeline context; it is built after the queue.
        self._pipeline = pipeline

    @property
    def store(self) -> JobStore:
        return self._store

    async def enqueue(
        self,
        *,
        org_id: str | None,
        job_type: str,
        payload: dict[str, Any],
        priority: int = 0,
        max_retries: int | None = None,
        scheduled_for: datetime | None = None,
    ) -> JobRecord:
        record = await self._store.enqueue(
            org_id=org_id,
            job_type=job_type,
            payload=payload,
            priority=priority,
            max_retries=max_retries if max_retries is not None else self._settings.job_default_max_retries,
            scheduled_for=scheduled_for,
        )
        self._telemetry.increment("jobs.enqueued")
        await self.notify(record.id)
        logger.info("job_enqueued job_id=%s job_type=%s org_id=%s", record.id, job_type, org_id)
        return record

    async def enqueue_in_session(
        self,
        session: AsyncSession,
        *,
        org_id: str | None,
        job_type: str,
        payload: dict[str, Any],
        priority: int = 0,
        max_retries: int | None = None,
        scheduled_for: datetime | None = None,
    ) -> JobRecord:
        # Commits with the caller's transaction; call notify() once it has committed.
        record = await insert_job(
            session,
            org_id=org_id,
            job_type=job_type,
            payload=payload,
            priority=priority,
            max_retries=max_retries if max_retries is not None else self._settings.job_default_max_retries,
            scheduled_for=scheduled_for,
        )
        self._telemetry.increment("jobs.enqueued")
        return record

    async def notify(self, job_id: str) -> None:
        # Best-effort; the periodic sweep still picks the job up.
        try:
            await self._store.notify(job_id)
        except Exception as exc:  # noqa: BLE001 - notify is best-effort by contract
            self._telemetry.increment("jobs.notify_failed")
            logger.warning("job_notify_failed job_id=%s", job_id, exc_info=exc)

    async def claim_one(self) -> JobClaim | None:
        claim = await self._store.claim_one(now=self._clock())
        if claim is not None:
            self._telemetry.increment("jobs.claimed")
        return claim

    async def release(self, claim: JobClaim) -> None:
        await self._store.release(claim)

    async def complete(self, claim: JobClaim, result: dict[str, Any] | None = None) -> JobTransition:
        transition = completed_transition(claim.job, result)
        await self._store.finalize(claim, transition, now=self._clock())
        self._telemetry.increment(f"jobs.{transition.status}")
        return transition

    async def fail(self, claim: JobClaim, error: BaseException | str, *, permanent: bool = False) -> JobTransition:
        message = error if isinstance(error, str) else error_message(error)
        now = self._clock()
        transition = failure_transition(
            claim.job,
            message,
            now=now,
            permanent=permanent,
            base_delay_s=self._settings.job_retry_base_delay_s,
        )
        await self._store.finalize(claim, transition, now=now)
        self._telemetry.increment(f"jobs.{transition.status}")
        return transition

    async def dispatch(self, claim: JobClaim) -> JobTransition:
        # Run the handler for a claimed job and persist the resulting transition.
        job = claim.job
        if not self._registry.has(job.job_type):
            logger.error("job_handler_missing job_id=%s job_type=%s", job.id, job.job_type)
            return await self.fail(
                claim,
                JobHandlerNotFoundError(f"No handler registered for job type {job.job_type}"),
                permanent=True,
            )
        try:
            result = await self._registry.run(job, pipeline=self._pipeline)
        except Exception as exc:  # noqa: BLE001 - converted into retry/failed state below
            transition = await self.fail(claim, exc)
            logger.warning(
                "job_attempt_failed job_id=%s job_type=%s retry_count=%s status=%s",
                job.id,
                job.job_type,
                transition.retry_count,
                transition.status,
                exc_info=exc,
            )
            return transition
        return await self.complete(claim, result)

    async def process_next(self) -> bool:
        claim = await self.claim_one()
        if claim is None:
            return False
        try:
            await self.dispatch(claim)
        finally:
            await self.release(claim)
        return True
