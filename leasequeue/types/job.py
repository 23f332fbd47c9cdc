"""
Job-related type definitions.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from pydantic import BaseModel

from leasequeue.constants import JobStatus
from leasequeue.db.models import Job, as_utc


@dataclass(frozen=True)
class LeasedJob:
    """
    External view of a job handed out by dequeue.

    ``locked_until`` is the lease expiry; the holder must ack, fail or touch
    the job before then.
    """

    id: int
    created: datetime
    status: JobStatus
    locked_until: datetime
    payload: Any
    tries: int
    max_retries: int
    progress: int

    @classmethod
    def from_model(cls, job: Job) -> "LeasedJob":
        """Project a freshly leased row."""
        return cls(
            id=job.id,
            created=as_utc(job.created),
            status=JobStatus(job.status),
            locked_until=as_utc(job.visible),
            payload=job.payload,
            tries=job.tries,
            max_retries=job.max_retries,
            progress=job.progress,
        )


@dataclass(frozen=True)
class JobSnapshot:
    """Read-only copy of every stored field of a job."""

    id: int
    queue: str
    created: datetime
    status: JobStatus
    priority: int
    visible: datetime
    payload: Any
    tries: int
    max_retries: int
    progress: int
    last_started: datetime | None
    last_failed: datetime | None
    last_fail_reason: str | None
    worker: str | None

    @classmethod
    def from_model(cls, job: Job) -> "JobSnapshot":
        return cls(
            id=job.id,
            queue=job.queue,
            created=as_utc(job.created),
            status=JobStatus(job.status),
            priority=job.priority,
            visible=as_utc(job.visible),
            payload=job.payload,
            tries=job.tries,
            max_retries=job.max_retries,
            progress=job.progress,
            last_started=as_utc(job.last_started),
            last_failed=as_utc(job.last_failed),
            last_fail_reason=job.last_fail_reason,
            worker=job.worker,
        )


class JobResult(BaseModel):
    """
    Result of job execution.
    Returned by job handlers after processing.
    """

    success: bool
    output: Any = None
    error: str | None = None
    duration_ms: float | None = None


ProgressReporter = Callable[[int], Awaitable[Any]]


async def _no_progress(value: int) -> None:
    return None


@dataclass
class JobContext:
    """
    Context passed to job handlers during execution.
    Contains job metadata and utilities for the handler.
    """

    job_id: int
    queue: str
    attempt: int
    max_retries: int
    payload: Any
    worker_id: str | None
    locked_until: datetime
    report_progress: ProgressReporter = field(default=_no_progress, repr=False)

    @classmethod
    def from_leased(
        cls,
        job: LeasedJob,
        queue: str,
        worker_id: str | None,
        report_progress: ProgressReporter | None = None,
    ) -> "JobContext":
        return cls(
            job_id=job.id,
            queue=queue,
            attempt=job.tries,
            max_retries=job.max_retries,
            payload=job.payload,
            worker_id=worker_id,
            locked_until=job.locked_until,
            report_progress=report_progress or _no_progress,
        )

    @property
    def is_last_attempt(self) -> bool:
        """Check if a failure on this attempt would be terminal."""
        return self.attempt > self.max_retries

    @property
    def remaining_attempts(self) -> int:
        """Get remaining retry attempts after this one."""
        return max(0, self.max_retries + 1 - self.attempt)

    @property
    def job_type(self) -> str | None:
        """The ``job_type`` key of a mapping payload, if any."""
        if isinstance(self.payload, dict):
            return self.payload.get("job_type")
        return None
