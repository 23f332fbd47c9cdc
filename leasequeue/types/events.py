"""
Event type definitions for queue observers.
"""

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel

from leasequeue.constants import (
    EVENT_JOB_COMPLETED,
    EVENT_JOB_ENQUEUED,
    EVENT_JOB_FAILED,
    EVENT_JOB_PROGRESS,
    EVENT_JOB_RECOVERED,
    EVENT_JOB_RETRIED,
    EVENT_JOB_STARTED,
    EVENT_JOB_TOUCHED,
    JobStatus,
)
from leasequeue.db.models import Job, as_utc


def _now() -> datetime:
    return datetime.now(timezone.utc)


class JobEvent(BaseModel):
    """
    Event emitted after a job state change commits.
    Delivered to listeners registered with ``JobQueue.subscribe``.
    """

    event_type: str
    job_id: int
    queue: str
    status: JobStatus
    timestamp: datetime
    data: dict[str, Any] | None = None

    @classmethod
    def job_enqueued(cls, job: Job) -> "JobEvent":
        """Create a job enqueued event."""
        return cls(
            event_type=EVENT_JOB_ENQUEUED,
            job_id=job.id,
            queue=job.queue,
            status=JobStatus.WAITING,
            timestamp=_now(),
            data={"priority": job.priority},
        )

    @classmethod
    def job_started(cls, job: Job) -> "JobEvent":
        """Create a job started event."""
        return cls(
            event_type=EVENT_JOB_STARTED,
            job_id=job.id,
            queue=job.queue,
            status=JobStatus.RUNNING,
            timestamp=_now(),
            data={"worker_id": job.worker, "tries": job.tries},
        )

    @classmethod
    def job_touched(cls, job: Job) -> "JobEvent":
        """Create a lease renewed event."""
        return cls(
            event_type=EVENT_JOB_TOUCHED,
            job_id=job.id,
            queue=job.queue,
            status=JobStatus.RUNNING,
            timestamp=_now(),
            data={"locked_until": as_utc(job.visible).isoformat()},
        )

    @classmethod
    def job_progress(cls, job: Job) -> "JobEvent":
        """Create a progress reported event."""
        return cls(
            event_type=EVENT_JOB_PROGRESS,
            job_id=job.id,
            queue=job.queue,
            status=JobStatus.RUNNING,
            timestamp=_now(),
            data={"progress": job.progress},
        )

    @classmethod
    def job_completed(cls, job: Job) -> "JobEvent":
        """Create a job completed event."""
        return cls(
            event_type=EVENT_JOB_COMPLETED,
            job_id=job.id,
            queue=job.queue,
            status=JobStatus.SUCCESS,
            timestamp=_now(),
            data={"tries": job.tries},
        )

    @classmethod
    def job_failed(cls, job: Job) -> "JobEvent":
        """Create a failure event; the type says whether it will be retried."""
        will_retry = JobStatus(job.status) == JobStatus.WAITING
        return cls(
            event_type=EVENT_JOB_RETRIED if will_retry else EVENT_JOB_FAILED,
            job_id=job.id,
            queue=job.queue,
            status=JobStatus(job.status),
            timestamp=_now(),
            data={
                "reason": job.last_fail_reason,
                "tries": job.tries,
                "will_retry": will_retry,
            },
        )

    @classmethod
    def job_recovered(cls, job: Job) -> "JobEvent":
        """Create a stale lease recovered event."""
        return cls(
            event_type=EVENT_JOB_RECOVERED,
            job_id=job.id,
            queue=job.queue,
            status=JobStatus(job.status),
            timestamp=_now(),
            data={"tries": job.tries, "previous_worker": job.worker},
        )
