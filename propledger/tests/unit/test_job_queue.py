from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from propledger.core.config import Settings
from propledger.domain.records import JobClaim, JobRecord, JobRunRecord, JobTransition
from propledger.services.jobs.handlers import HandlerRegistry, JobContext
from propledger.services.jobs.queue import (
    JobQueue,
    error_message,
    failure_transition,
    retry_delay_seconds,
)
from propledger.services.telemetry import Telemetry


NOW = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


def _job(**overrides: Any) -> JobRecord:
    values: dict[str, Any] = {
        "id": "job-1",
        "org_id": "org-1",
        "job_type": "ledger_sync",
        "payload": {"payment_id": "pay-1"},
        "status": "processing",
        "priority": 0,
        "retry_count": 0,
        "max_retries": 3,
        "scheduled_for": NOW,
        "created_at": NOW,
    }
    values.update(overrides)
    return JobRecord(**values)


class _MemoryJobStore:
    # In-memory stand-in for SqlJobStore that records transitions.
    def __init__(self, jobs: list[JobRecord] | None = None, *, notify_error: Exception | None = None) -> None:
        self.pending = list(jobs or [])
        self.transitions: list[tuple[str, JobTransition]] = []
        self.released: list[str] = []
        self.notified: list[str] = []
        self._notify_error = notify_error

    async def enqueue(self, **kwargs: Any) -> JobRecord:
        record = _job(
            id=f"job-{len(self.pending) + 1}",
            org_id=kwargs["org_id"],
            job_type=kwargs["job_type"],
            payload=kwargs["payload"],
            status="pending",
            priority=kwargs["priority"],
            max_retries=kwargs["max_retries"],
        )
        self.pending.append(record)
        return record

    async def notify(self, job_id: str) -> None:
        if self._notify_error is not None:
            raise self._notify_error
        self.notified.append(job_id)

    async def claim_one(self, *, now: datetime | None = None) -> JobClaim | None:
        if not self.pending:
            return None
        return JobClaim(job=self.pending.pop(0))

    async def finalize(self, claim: JobClaim, transition: JobTransition, *, now: datetime | None = None) -> None:
        self.transitions.append((claim.job.id, transition))
        claim.finalized = True

    async def release(self, claim: JobClaim) -> None:
        self.released.append(claim.job.id)
        claim.released = True


class _MemoryRunStore:
    def __init__(self) -> None:
        self.runs: dict[str, JobRunRecord] = {}

    async def get(self, job_id: str) -> JobRunRecord | None:
        return self.runs.get(job_id)

    async def mark_running(self, *, job_id: str, job_type: str, trace_id: str) -> JobRunRecord:
        previous = self.runs.get(job_id)
        record = JobRunRecord(
            job_id=job_id,
            job_type=job_type,
            status="running",
            attempts=(previous.attempts if previous else 0) + 1,
            trace_id=trace_id,
        )
        self.runs[job_id] = record
        return record

    async def mark_completed(self, *, job_id: str, trace_id: str) -> None:
        run = self.runs[job_id]
        self.runs[job_id] = JobRunRecord(job_id, run.job_type, "completed", run.attempts, None, trace_id)

    async def mark_failed(self, *, job_id: str, trace_id: str, error: str) -> None:
        run = self.runs[job_id]
        self.runs[job_id] = JobRunRecord(job_id, run.job_type, "failed", run.attempts, error, trace_id)


async def _no_audit(*args: Any) -> None:
    return None


def _queue(store: _MemoryJobStore, registry: HandlerRegistry, telemetry: Telemetry) -> JobQueue:
    return JobQueue(store=store, registry=registry, settings=Settings(), telemetry=telemetry, clock=lambda: NOW)


def _registry(telemetry: Telemetry) -> HandlerRegistry:
    return HandlerRegistry(run_store=_MemoryRunStore(), audit=_no_audit, telemetry=telemetry)


def test_retry_delay_is_quadratic() -> None:
    assert [retry_delay_seconds(count) for count in (1, 2, 3)] == [30, 120, 270]


def test_failure_retries_until_budget_is_spent() -> None:
    first = failure_transition(_job(retry_count=0, max_retries=3), "boom", now=NOW)
    second = failure_transition(_job(retry_count=1, max_retries=3), "boom", now=NOW)
    last = failure_transition(_job(retry_count=2, max_retries=3), "boom", now=NOW)

    assert (first.status, first.retry_count, first.scheduled_for) == ("retrying", 1, NOW + timedelta(seconds=30))
    assert (second.status, second.retry_count, second.scheduled_for) == ("retrying", 2, NOW + timedelta(seconds=120))
    assert (last.status, last.retry_count, last.scheduled_for) == ("failed", 2, None)


def test_permanent_failure_skips_retry() -> None:
    transition = failure_transition(_job(), "no handler", now=NOW, permanent=True)

    assert transition.status == "failed"
    assert transition.error == "no handler"


def test_error_message_falls_back_to_exception_name_and_truncates() -> None:
    assert error_message(ValueError()) == "ValueError"
    assert len(error_message(RuntimeError("x" * 5000))) == 2000


@pytest.mark.asyncio
async def test_enqueue_survives_notify_failure() -> None:
    telemetry = Telemetry()
    store = _MemoryJobStore(notify_error=ConnectionError("listener down"))
    queue = _queue(store, _registry(telemetry), telemetry)

    record = await queue.enqueue(org_id="org-1", job_type="ledger_sync", payload={"payment_id": "pay-1"})

    assert record.status == "pending"
    assert record.max_retries == 3
    assert telemetry.counter("jobs.enqueued") == 1
    assert telemetry.counter("jobs.notify_failed") == 1


@pytest.mark.asyncio
async def test_enqueue_pushes_the_job_id() -> None:
    telemetry = Telemetry()
    store = _MemoryJobStore()
    queue = _queue(store, _registry(telemetry), telemetry)

    record = await queue.enqueue(org_id="org-1", job_type="ledger_sync", payload={}, max_retries=5)

    assert store.notified == [record.id]
    assert record.max_retries == 5


@pytest.mark.asyncio
async def test_process_next_completes_and_stores_result() -> None:
    telemetry = Telemetry()
    registry = _registry(telemetry)

    async def handler(ctx: JobContext) -> dict[str, Any]:
        return {"payment_id": ctx.payload["payment_id"]}

    registry.register("ledger_sync", handler)
    store = _MemoryJobStore([_job()])
    queue = _queue(store, registry, telemetry)

    assert await queue.process_next() is True
    job_id, transition = store.transitions[0]
    assert job_id == "job-1"
    assert transition.status == "completed"
    assert transition.result is not None
    assert transition.result["payment_id"] == "pay-1"
    assert "trace_id" in transition.result
    assert store.released == ["job-1"]
    assert telemetry.counter("jobs.completed") == 1


@pytest.mark.asyncio
async def test_process_next_returns_false_when_nothing_is_claimable() -> None:
    telemetry = Telemetry()
    queue = _queue(_MemoryJobStore(), _registry(telemetry), telemetry)

    assert await queue.process_next() is False


@pytest.mark.asyncio
async def test_missing_handler_fails_permanently() -> None:
    telemetry = Telemetry()
    store = _MemoryJobStore([_job(job_type="unknown_type", max_retries=5)])
    queue = _queue(store, _registry(telemetry), telemetry)

    await queue.process_next()

    _, transition = store.transitions[0]
    assert transition.status == "failed"
    assert transition.retry_count == 0
    assert "unknown_type" in (transition.error or "")


@pytest.mark.asyncio
async def test_handler_error_schedules_retry_with_backoff() -> None:
    telemetry = Telemetry()
    registry = _registry(telemetry)

    async def handler(ctx: JobContext) -> dict[str, Any]:
        raise RuntimeError("deadlock detected")

    registry.register("ledger_sync", handler)
    store = _MemoryJobStore([_job(retry_count=1)])
    queue = _queue(store, registry, telemetry)

    await queue.process_next()

    _, transition = store.transitions[0]
    assert transition.status == "retrying"
    assert transition.retry_count == 2
    assert transition.scheduled_for == NOW + timedelta(seconds=120)
    assert transition.error == "deadlock detected"
    assert store.released == ["job-1"]
    assert telemetry.counter("jobs.retrying") == 1


@pytest.mark.asyncio
async def test_release_runs_even_when_finalize_raises() -> None:
    telemetry = Telemetry()
    registry = _registry(telemetry)

    async def handler(ctx: JobContext) -> None:
        return None

    registry.register("ledger_sync", handler)

    class _BrokenStore(_MemoryJobStore):
        async def finalize(self, claim: JobClaim, transition: JobTransition, *, now: datetime | None = None) -> None:
            raise ConnectionError("connection reset")

    store = _BrokenStore([_job()])
    queue = _queue(store, registry, telemetry)

    with pytest.raises(ConnectionError):
        await queue.process_next()
    assert store.released == ["job-1"]
