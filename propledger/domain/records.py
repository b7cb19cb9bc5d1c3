from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any


JOB_PENDING = "pending"
JOB_PROCESSING = "processing"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"
JOB_RETRYING = "retrying"

CLAIMABLE_STATUSES = (JOB_PENDING, JOB_RETRYING)

RUN_RUNNING = "running"
RUN_COMPLETED = "completed"
RUN_FAILED = "failed"


@dataclass(frozen=True)
class JobRecord:
    id: str
    org_id: str | None
    job_type: str
    payload: dict[str, Any]
    status: str
    priority: int
    retry_count: int
    max_retries: int
    scheduled_for: datetime
    created_at: datetime
    error: str | None = None
    result: dict[str, Any] | None = None


@dataclass(frozen=True)
class JobTransition:
    # Terminal or retry state computed for a claimed job.
    status: str
    retry_count: int
    scheduled_for: datetime | None = None
    error: str | None = None
    result: dict[str, Any] | None = None


@dataclass(frozen=True)
class JobRunRecord:
    job_id: str
    job_type: str
    status: str
    attempts: int
    last_error: str | None = None
    trace_id: str | None = None


@dataclass
class JobClaim:
    """A claimed job plus the open transaction holding its row lock."""

    job: JobRecord
    session: Any = None
    finalized: bool = False
    released: bool = False
