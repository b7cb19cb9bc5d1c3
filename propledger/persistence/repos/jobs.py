from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any
from uuid import uuid4

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from propledger.domain.models import Job
from propledger.domain.records import (
    CLAIMABLE_STATUSES,
    JOB_PROCESSING,
    JobClaim,
    JobRecord,
    JobTransition,
)


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_record(row: Job) -> JobRecord:
    return JobRecord(
        id=row.id,
        org_id=row.org_id,
        job_type=row.job_type,
        payload=dict(row.payload or {}),
        status=row.status,
        priority=int(row.priority),
        retry_count=int(row.retry_count),
        max_retries=int(row.max_retries),
        scheduled_for=row.scheduled_for,
        created_at=row.created_at,
        error=row.error,
        result=row.result,
    )


async def insert_job(
    session: AsyncSession,
    *,
    org_id: str | None,
    job_type: str,
    payload: dict[str, Any],
    priority: int = 0,
    max_retries: int = 3,
    scheduled_for: datetime | None = None,
    job_id: str | None = None,
) -> JobRecord:
    # Insert inside the caller's transaction; the caller notifies after commit.
    now = _utc_now()
    row = Job(
        id=job_id or str(uuid4()),
        org_id=org_id,
        job_type=job_type,
        payload=payload,
        status="pending",
        priority=priority,
        retry_count=0,
        max_retries=max_retries,
        scheduled_for=scheduled_for or now,
        created_at=now,
        updated_at=now,
    )
    session.add(row)
    await session.flush()
    return to_record(row)


async def get_job(session: AsyncSession, job_id: str) -> JobRecord | None:
    row = await session.get(Job, job_id)
    return to_record(row) if row is not None else None


async def notify_job(session: AsyncSession, *, channel: str, job_id: str) -> None:
    await session.execute(select(func.pg_notify(channel, job_id)))
    await session.commit()


class SqlJobStore:
    """Job Store over the jobs table.

    A claim keeps its transaction open until release(): the row lock is what
    makes the job exclusive, and a worker that dies mid-job simply drops the
    connection, rolling the row back to its claimable state.
    """

    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession], *, notify_channel: str) -> None:
        self._sessionmaker = sessionmaker
        self._notify_channel = notify_channel

    async def enqueue(
        self,
        *,
        org_id: str | None,
        job_type: str,
        payload: dict[str, Any],
        priority: int,
        max_retries: int,
        scheduled_for: datetime | None,
    ) -> JobRecord:
        async with self._sessionmaker() as session:
            record = await insert_job(
                session,
                org_id=org_id,
                job_type=job_type,
                payload=payload,
                priority=priority,
                max_retries=max_retries,
                scheduled_for=scheduled_for,
            )
            await session.commit()
            return record

    async def notify(self, job_id: str) -> None:
        async with self._sessionmaker() as session:
            await notify_job(session, channel=self._notify_channel, job_id=job_id)

    async def get(self, job_id: str) -> JobRecord | None:
        async with self._sessionmaker() as session:
            return await get_job(session, job_id)

    async def claim_one(self, *, now: datetime | None = None) -> JobClaim | None:
        # Skip rows another worker holds instead of queueing behind its lock.
        now = now or _utc_now()
        session = self._sessionmaker()
        try:
            row = (
                await session.execute(
                    select(Job)
                    .where(
                        Job.status.in_(CLAIMABLE_STATUSES),
                        Job.scheduled_for <= now,
                    )
                    .order_by(Job.priority.desc(), Job.created_at.asc())
                    .limit(1)
                    .with_for_update(skip_locked=True)
                )
            ).scalar_one_or_none()
            if row is None:
                await session.rollback()
                await session.close()
                return None
            row.status = JOB_PROCESSING
            row.updated_at = now
            await session.flush()
            logger.debug("job_claimed job_id=%s job_type=%s retry_count=%s", row.id, row.job_type, row.retry_count)
            return JobClaim(job=to_record(row), session=session)
        except SQLAlchemyError:
            await session.rollback()
            await session.close()
            raise

    async def finalize(self, claim: JobClaim, transition: JobTransition, *, now: datetime | None = None) -> None:
        now = now or _utc_now()
        session: AsyncSession = claim.session
        values: dict[str, Any] = {
            "status": transition.status,
            "retry_count": transition.retry_count,
            "error": transition.error,
            "updated_at": now,
        }
        if transition.result is not None:
            values["result"] = transition.result
        if transition.scheduled_for is not None:
            values["scheduled_for"] = transition.scheduled_for
        await session.execute(update(Job).where(Job.id == claim.job.id).values(**values))
        await session.commit()
        claim.finalized = True

    async def release(self, claim: JobClaim) -> None:
        # Unfinalized claims roll back, returning the row to pending/retrying.
        if claim.released:
            return
        session: AsyncSession = claim.session
        try:
            if not claim.finalized:
                await session.rollback()
        finally:
            await session.close()
            claim.released = True
