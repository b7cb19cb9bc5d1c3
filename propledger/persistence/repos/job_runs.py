from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from propledger.domain.models import JobRun
from propledger.domain.records import RUN_COMPLETED, RUN_FAILED, RUN_RUNNING, JobRunRecord


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _to_record(row: JobRun) -> JobRunRecord:
    return JobRunRecord(
        job_id=row.job_id,
        job_type=row.job_type,
        status=row.status,
        attempts=int(row.attempts),
        last_error=row.last_error,
        trace_id=row.trace_id,
    )


class SqlJobRunStore:
    """Idempotency locks keyed by job id (job_runs)."""

    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession]) -> None:
        self._sessionmaker = sessionmaker

    async def get(self, job_id: str) -> JobRunRecord | None:
        async with self._sessionmaker() as session:
            row = (
                await session.execute(select(JobRun).where(JobRun.job_id == job_id))
            ).scalar_one_or_none()
            return _to_record(row) if row is not None else None

    async def mark_running(self, *, job_id: str, job_type: str, trace_id: str) -> JobRunRecord:
        # First attempt creates the lock; later attempts bump attempts on the same row.
        now = _utc_now()
        stmt = insert(JobRun).values(
            job_id=job_id,
            job_type=job_type,
            status=RUN_RUNNING,
            attempts=1,
            trace_id=trace_id,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[JobRun.job_id],
            set_={
                "status": RUN_RUNNING,
                "attempts": JobRun.attempts + 1,
                "trace_id": trace_id,
                "updated_at": now,
            },
        ).returning(JobRun)
        async with self._sessionmaker() as session:
            row = (await session.execute(stmt)).scalar_one()
            record = _to_record(row)
            await session.commit()
            return record

    async def mark_completed(self, *, job_id: str, trace_id: str) -> None:
        await self._set_status(job_id, status=RUN_COMPLETED, trace_id=trace_id, last_error=None)

    async def mark_failed(self, *, job_id: str, trace_id: str, error: str) -> None:
        await self._set_status(job_id, status=RUN_FAILED, trace_id=trace_id, last_error=error)

    async def _set_status(self, job_id: str, *, status: str, trace_id: str, last_error: str | None) -> None:
        async with self._sessionmaker() as session:
            row = (
                await session.execute(select(JobRun).where(JobRun.job_id == job_id).with_for_update())
            ).scalar_one_or_none()
            if row is None:
                return
            row.status = status
            row.trace_id = trace_id
            row.last_error = last_error
            row.updated_at = _utc_now()
            await session.commit()
