"""
Job repository for database operations.
Builds the conditional query/update pairs behind every queue operation.
"""

import logging
from collections.abc import Sequence
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import DateTime, and_, case, delete, func, literal, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from leasequeue.constants import STALE_LEASE_REASON, JobStatus
from leasequeue.db.models import Base, Job

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def _retry_or_fail(now: datetime) -> dict[str, Any]:
    """
    SET values that requeue a job, or fail it once tries exceed max_retries.

    Both branches read the row being updated, so the decision and the write
    happen in the same statement.
    """
    exhausted = Job.tries > Job.max_retries
    return {
        "status": case(
            (exhausted, JobStatus.FAILED.value),
            else_=JobStatus.WAITING.value,
        ),
        "visible": case(
            (exhausted, Job.visible),
            else_=literal(now, DateTime(timezone=True)),
        ),
    }


class JobRepository:
    """
    Repository for job database operations within one named queue.

    Implements atomic operations for:
    - Bulk enqueue
    - Lease acquisition with FOR UPDATE SKIP LOCKED
    - Lease-guarded transitions (touch, ack, fail, progress)
    - Stale lease recovery

    Every mutating method is a single UPDATE ... RETURNING whose WHERE clause
    is the whole guard. A ``None`` result means the guard matched nothing.
    """

    def __init__(self, session: AsyncSession, queue: str):
        """
        Initialize the repository with a database session.

        Args:
            session: The async database session.
            queue: Name of the queue every statement is scoped to.
        """
        self._session = session
        self._queue = queue

    async def create_schema(self) -> None:
        """Create the jobs table and its indexes if they are missing."""
        connection = await self._session.connection()
        await connection.run_sync(Base.metadata.create_all)

    async def insert_jobs(
        self,
        payloads: Sequence[Any],
        priority: int,
        max_retries: int,
        delay_seconds: float,
    ) -> list[Job]:
        """
        Insert one waiting job per payload.

        Args:
            payloads: Job payloads, in the order their ids should be assigned.
            priority: Priority for every inserted job.
            max_retries: Retry ceiling for every inserted job.
            delay_seconds: Seconds before the jobs become visible.

        Returns:
            The inserted jobs, ids populated, in input order.
        """
        now = utcnow()
        visible = now + timedelta(seconds=delay_seconds) if delay_seconds else now

        jobs = [
            Job(
                queue=self._queue,
                created=now,
                status=JobStatus.WAITING,
                priority=priority,
                visible=visible,
                payload=payload,
                tries=0,
                max_retries=max_retries,
                progress=0,
                last_started=None,
                last_failed=None,
                last_fail_reason=None,
                worker=None,
            )
            for payload in payloads
        ]
        self._session.add_all(jobs)
        await self._session.flush()

        logger.info(
            f"Enqueued {len(jobs)} jobs",
            extra={"queue": self._queue, "job_count": len(jobs)},
        )
        return jobs

    async def get_job(self, job_id: int) -> Job | None:
        """
        Get a job by ID.

        Args:
            job_id: The job id.

        Returns:
            The Job or None if not found in this queue.
        """
        stmt = select(Job).where(Job.id == job_id, Job.queue == self._queue)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def acquire_lease(
        self,
        worker_id: str | None,
        lock_duration_seconds: float,
    ) -> Job | None:
        """
        Lease the next visible waiting job.

        This is the critical path for job distribution. The candidate row is
        picked and rewritten in one statement; FOR UPDATE SKIP LOCKED keeps
        concurrent callers off the same row on PostgreSQL.

        Args:
            worker_id: Identity recorded on the job.
            lock_duration_seconds: Lease length.

        Returns:
            The leased job, or None when nothing is eligible.
        """
        now = utcnow()

        candidate = (
            select(Job.id)
            .where(
                Job.queue == self._queue,
                Job.status == JobStatus.WAITING,
                Job.visible <= now,
            )
            .order_by(Job.priority.desc(), Job.id.asc())
            .limit(1)
            .with_for_update(skip_locked=True)
            .scalar_subquery()
        )

        stmt = (
            update(Job)
            .where(
                and_(
                    Job.id == candidate,
                    Job.status == JobStatus.WAITING,
                )
            )
            .values(
                tries=Job.tries + 1,
                status=JobStatus.RUNNING,
                visible=now + timedelta(seconds=lock_duration_seconds),
                last_started=now,
                worker=worker_id,
            )
            .returning(Job)
            .execution_options(synchronize_session=False, populate_existing=True)
        )

        result = await self._session.execute(stmt)
        job = result.scalar_one_or_none()

        if job is not None:
            logger.info(
                "Acquired lease",
                extra={
                    "queue": self._queue,
                    "job_id": job.id,
                    "worker_id": worker_id,
                    "tries": job.tries,
                },
            )

        return job

    def _running_lease(self, job_id: int, now: datetime) -> Any:
        """Guard shared by every lease-holder operation."""
        return and_(
            Job.id == job_id,
            Job.queue == self._queue,
            Job.status == JobStatus.RUNNING,
            Job.visible > now,
        )

    async def _update_running(self, job_id: int, now: datetime, **values: Any) -> Job | None:
        stmt = (
            update(Job)
            .where(self._running_lease(job_id, now))
            .values(**values)
            .returning(Job)
            .execution_options(synchronize_session=False, populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def extend_lease(
        self,
        job_id: int,
        lock_duration_seconds: float,
    ) -> Job | None:
        """
        Extend the lease on a running job (heartbeat).

        Args:
            job_id: The job id.
            lock_duration_seconds: New lease length, counted from now.

        Returns:
            Updated Job or None if the lease is gone.
        """
        now = utcnow()
        return await self._update_running(
            job_id,
            now,
            visible=now + timedelta(seconds=lock_duration_seconds),
        )

    async def complete_job(self, job_id: int) -> Job | None:
        """
        Mark a running job as successfully completed.

        Args:
            job_id: The job id.

        Returns:
            Updated Job or None if the lease is gone.
        """
        job = await self._update_running(
            job_id,
            utcnow(),
            status=JobStatus.SUCCESS,
            progress=100,
        )

        if job:
            logger.info(
                "Job completed successfully",
                extra={"queue": self._queue, "job_id": job_id},
            )

        return job

    async def fail_job(self, job_id: int, reason: str | None) -> Job | None:
        """
        Record a failure. Either requeue the job or fail it permanently.

        The retry decision is evaluated by the database inside the same
        UPDATE that commits it, against the row's current ``tries``.

        Args:
            job_id: The job id.
            reason: Failure diagnostic.

        Returns:
            Updated Job (WAITING or FAILED) or None if the lease is gone.
        """
        now = utcnow()
        job = await self._update_running(
            job_id,
            now,
            last_failed=now,
            last_fail_reason=reason,
            **_retry_or_fail(now),
        )

        if job is None:
            return None

        if job.status == JobStatus.FAILED:
            logger.warning(
                f"Job failed permanently after {job.tries} tries",
                extra={"queue": self._queue, "job_id": job_id, "reason": reason},
            )
        else:
            logger.info(
                "Job queued for retry",
                extra={"queue": self._queue, "job_id": job_id, "tries": job.tries},
            )

        return job

    async def set_progress(self, job_id: int, progress: int) -> Job | None:
        """
        Store worker-reported progress on a running job.

        Args:
            job_id: The job id.
            progress: Already clamped percentage.

        Returns:
            Updated Job or None if the lease is gone.
        """
        return await self._update_running(job_id, utcnow(), progress=progress)

    async def recover_expired_leases(self) -> Sequence[Job]:
        """
        Reclaim running jobs whose lease has run out.

        Called by the reaper to handle worker crashes. Each stale job counts
        as a failure: it goes back to WAITING if it has retries left,
        otherwise to FAILED.

        Returns:
            The recovered jobs, in their new state.
        """
        now = utcnow()

        stmt = (
            update(Job)
            .where(
                and_(
                    Job.queue == self._queue,
                    Job.status == JobStatus.RUNNING,
                    Job.visible <= now,
                )
            )
            .values(
                last_failed=now,
                last_fail_reason=STALE_LEASE_REASON,
                **_retry_or_fail(now),
            )
            .returning(Job)
            .execution_options(synchronize_session=False, populate_existing=True)
        )

        result = await self._session.execute(stmt)
        jobs = result.scalars().all()

        if jobs:
            logger.info(
                f"Recovered {len(jobs)} jobs with expired leases",
                extra={"queue": self._queue},
            )

        return jobs

    async def count(
        self,
        status: JobStatus | None = None,
        visible_only: bool = False,
    ) -> int:
        """
        Count jobs in this queue.

        Args:
            status: Optional status filter.
            visible_only: Only count jobs whose visible time has passed.

        Returns:
            Number of matching jobs.
        """
        filters = [Job.queue == self._queue]
        if status is not None:
            filters.append(Job.status == status)
        if visible_only:
            filters.append(Job.visible <= utcnow())

        stmt = select(func.count()).select_from(Job).where(and_(*filters))
        result = await self._session.execute(stmt)
        return result.scalar() or 0

    async def get_job_stats(self) -> dict[str, int]:
        """
        Get job statistics by status.

        Returns:
            Dictionary of status -> count.
        """
        stmt = (
            select(Job.status, func.count())
            .where(Job.queue == self._queue)
            .group_by(Job.status)
        )

        result = await self._session.execute(stmt)
        return {JobStatus(status).value: count for status, count in result.all()}

    async def delete_inactive(self) -> int:
        """
        Delete every job that is not running.

        Returns:
            Number of deleted jobs.
        """
        stmt = (
            delete(Job)
            .where(
                and_(
                    Job.queue == self._queue,
                    Job.status != JobStatus.RUNNING,
                )
            )
            .execution_options(synchronize_session=False)
        )

        result = await self._session.execute(stmt)
        count = result.rowcount

        if count > 0:
            logger.info(
                f"Cleaned {count} jobs",
                extra={"queue": self._queue},
            )

        return count
