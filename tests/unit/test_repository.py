"""
Unit tests for the job repository.
"""

from datetime import datetime, timedelta, timezone

import pytest_asyncio
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from leasequeue.constants import STALE_LEASE_REASON, JobStatus
from leasequeue.db.models import Job, as_utc
from leasequeue.db.repository import JobRepository


async def _expire(db_session: AsyncSession, job_id: int) -> None:
    await db_session.execute(
        update(Job)
        .where(Job.id == job_id)
        .values(visible=datetime.now(timezone.utc) - timedelta(minutes=1))
    )
    await db_session.commit()


class TestJobRepository:
    """Tests for JobRepository."""

    @pytest_asyncio.fixture
    async def repo(self, db_session: AsyncSession, queue_name: str) -> JobRepository:
        """Create a repository instance."""
        return JobRepository(db_session, queue_name)

    async def test_insert_jobs_success(
        self,
        repo: JobRepository,
        db_session: AsyncSession,
        queue_name: str,
    ):
        """Test inserted jobs start out waiting and untried."""
        payload = {"job_type": "echo", "data": {"message": "test"}}

        jobs = await repo.insert_jobs(
            [payload], priority=5, max_retries=3, delay_seconds=0
        )
        await db_session.commit()

        assert len(jobs) == 1
        job = jobs[0]
        assert job.id is not None
        assert job.queue == queue_name
        assert job.payload == payload
        assert job.status == JobStatus.WAITING
        assert job.tries == 0
        assert job.max_retries == 3
        assert job.progress == 0
        assert job.worker is None
        assert job.last_started is None

    async def test_insert_jobs_preserves_order(
        self,
        repo: JobRepository,
        db_session: AsyncSession,
    ):
        """Test ids are assigned in input order."""
        jobs = await repo.insert_jobs(
            [{"n": 1}, {"n": 2}, {"n": 3}], priority=5, max_retries=5, delay_seconds=0
        )
        await db_session.commit()

        assert [job.payload["n"] for job in jobs] == [1, 2, 3]
        assert [job.id for job in jobs] == sorted(job.id for job in jobs)

    async def test_insert_jobs_with_delay(
        self,
        repo: JobRepository,
        db_session: AsyncSession,
    ):
        """Test delayed jobs are not visible yet."""
        jobs = await repo.insert_jobs(
            [{}], priority=5, max_retries=5, delay_seconds=60
        )
        await db_session.commit()

        assert as_utc(jobs[0].visible) > datetime.now(timezone.utc) + timedelta(seconds=50)
        assert await repo.acquire_lease("worker", 10) is None

    async def test_get_job_not_found(self, repo: JobRepository):
        """Test getting a non-existent job."""
        assert await repo.get_job(999_999) is None

    async def test_get_job_scoped_to_queue(
        self,
        repo: JobRepository,
        db_session: AsyncSession,
    ):
        """Test a job is invisible through another queue's repository."""
        jobs = await repo.insert_jobs([{}], priority=5, max_retries=5, delay_seconds=0)
        await db_session.commit()

        other = JobRepository(db_session, "some-other-queue")

        assert await other.get_job(jobs[0].id) is None
        assert await repo.get_job(jobs[0].id) is not None

    async def test_acquire_lease_success(
        self,
        repo: JobRepository,
        db_session: AsyncSession,
    ):
        """Test successful lease acquisition."""
        jobs = await repo.insert_jobs([{}], priority=5, max_retries=5, delay_seconds=0)
        await db_session.commit()

        before = datetime.now(timezone.utc)
        leased = await repo.acquire_lease("test-worker", 30)
        await db_session.commit()

        assert leased is not None
        assert leased.id == jobs[0].id
        assert leased.status == JobStatus.RUNNING
        assert leased.tries == 1
        assert leased.worker == "test-worker"
        assert as_utc(leased.last_started) >= before - timedelta(seconds=1)
        assert as_utc(leased.visible) >= before + timedelta(seconds=29)

    async def test_acquire_lease_empty(self, repo: JobRepository):
        """Test acquiring from an empty queue returns nothing."""
        assert await repo.acquire_lease("test-worker", 30) is None

    async def test_acquire_lease_no_double_leasing(
        self,
        repo: JobRepository,
        db_session: AsyncSession,
    ):
        """Test a leased job is not handed out again."""
        await repo.insert_jobs([{}, {}], priority=5, max_retries=5, delay_seconds=0)
        await db_session.commit()

        first = await repo.acquire_lease("worker-1", 30)
        second = await repo.acquire_lease("worker-2", 30)
        third = await repo.acquire_lease("worker-3", 30)
        await db_session.commit()

        assert first is not None and second is not None
        assert first.id != second.id
        assert third is None

    async def test_priority_ordering(
        self,
        repo: JobRepository,
        db_session: AsyncSession,
    ):
        """Test that jobs are leased by priority, then insertion order."""
        low = (await repo.insert_jobs([{}], priority=1, max_retries=5, delay_seconds=0))[0]
        normal_a = (await repo.insert_jobs([{}], priority=5, max_retries=5, delay_seconds=0))[0]
        high = (await repo.insert_jobs([{}], priority=10, max_retries=5, delay_seconds=0))[0]
        normal_b = (await repo.insert_jobs([{}], priority=5, max_retries=5, delay_seconds=0))[0]
        await db_session.commit()

        order = []
        for _ in range(4):
            job = await repo.acquire_lease("worker", 30)
            order.append(job.id)
        await db_session.commit()

        assert order == [high.id, normal_a.id, normal_b.id, low.id]

    async def test_extend_lease(
        self,
        repo: JobRepository,
        db_session: AsyncSession,
    ):
        """Test a live lease can be extended."""
        await repo.insert_jobs([{}], priority=5, max_retries=5, delay_seconds=0)
        leased = await repo.acquire_lease("worker", 5)
        await db_session.commit()
        first_expiry = as_utc(leased.visible)

        extended = await repo.extend_lease(leased.id, 120)
        await db_session.commit()

        assert extended is not None
        assert as_utc(extended.visible) > first_expiry + timedelta(seconds=100)

    async def test_extend_lease_expired(
        self,
        repo: JobRepository,
        db_session: AsyncSession,
    ):
        """Test an expired lease cannot be extended."""
        await repo.insert_jobs([{}], priority=5, max_retries=5, delay_seconds=0)
        leased = await repo.acquire_lease("worker", 5)
        await db_session.commit()
        await _expire(db_session, leased.id)

        assert await repo.extend_lease(leased.id, 120) is None

    async def test_complete_job_success(
        self,
        repo: JobRepository,
        db_session: AsyncSession,
    ):
        """Test successful job completion."""
        await repo.insert_jobs([{}], priority=5, max_retries=5, delay_seconds=0)
        leased = await repo.acquire_lease("worker", 30)
        await db_session.commit()

        completed = await repo.complete_job(leased.id)
        await db_session.commit()

        assert completed is not None
        assert completed.status == JobStatus.SUCCESS
        assert completed.progress == 100

    async def test_complete_job_twice(
        self,
        repo: JobRepository,
        db_session: AsyncSession,
    ):
        """Test a completed job cannot be completed again."""
        await repo.insert_jobs([{}], priority=5, max_retries=5, delay_seconds=0)
        leased = await repo.acquire_lease("worker", 30)
        await repo.complete_job(leased.id)
        await db_session.commit()

        assert await repo.complete_job(leased.id) is None

    async def test_complete_waiting_job(
        self,
        repo: JobRepository,
        db_session: AsyncSession,
    ):
        """Test a job that was never leased cannot be completed."""
        jobs = await repo.insert_jobs([{}], priority=5, max_retries=5, delay_seconds=0)
        await db_session.commit()

        assert await repo.complete_job(jobs[0].id) is None

    async def test_fail_job_with_retry(
        self,
        repo: JobRepository,
        db_session: AsyncSession,
    ):
        """Test job failure with retries left goes back to waiting."""
        await repo.insert_jobs([{}], priority=5, max_retries=3, delay_seconds=0)
        leased = await repo.acquire_lease("worker", 30)
        await db_session.commit()

        before = datetime.now(timezone.utc)
        failed = await repo.fail_job(leased.id, "Test error")
        await db_session.commit()

        assert failed is not None
        assert failed.status == JobStatus.WAITING
        assert failed.tries == 1
        assert failed.last_fail_reason == "Test error"
        assert failed.last_failed is not None
        assert as_utc(failed.visible) <= datetime.now(timezone.utc)
        assert as_utc(failed.visible) >= before - timedelta(seconds=1)

    async def test_fail_job_permanently(
        self,
        repo: JobRepository,
        db_session: AsyncSession,
    ):
        """Test job failure with no retries left is terminal."""
        await repo.insert_jobs([{}], priority=5, max_retries=0, delay_seconds=0)
        await db_session.commit()

        # tries becomes 1, which exceeds max_retries=0
        leased = await repo.acquire_lease("worker", 30)
        await db_session.commit()

        failed = await repo.fail_job(leased.id, "Final error")
        await db_session.commit()

        assert failed is not None
        assert failed.status == JobStatus.FAILED
        assert failed.tries == 1
        assert await repo.acquire_lease("worker", 30) is None

    async def test_set_progress(
        self,
        repo: JobRepository,
        db_session: AsyncSession,
    ):
        """Test progress is stored on a running job."""
        await repo.insert_jobs([{}], priority=5, max_retries=5, delay_seconds=0)
        leased = await repo.acquire_lease("worker", 30)
        await db_session.commit()

        updated = await repo.set_progress(leased.id, 42)
        await db_session.commit()

        assert updated is not None
        assert updated.progress == 42

    async def test_recover_expired_leases(
        self,
        repo: JobRepository,
        db_session: AsyncSession,
    ):
        """Test recovery of expired leases."""
        await repo.insert_jobs([{}, {}], priority=5, max_retries=5, delay_seconds=0)
        stale = await repo.acquire_lease("crashed-worker", 30)
        live = await repo.acquire_lease("live-worker", 30)
        await db_session.commit()
        await _expire(db_session, stale.id)

        recovered = await repo.recover_expired_leases()
        await db_session.commit()

        assert [job.id for job in recovered] == [stale.id]
        job = await repo.get_job(stale.id)
        assert job.status == JobStatus.WAITING
        assert job.last_fail_reason == STALE_LEASE_REASON
        assert (await repo.get_job(live.id)).status == JobStatus.RUNNING

    async def test_recover_expired_leases_exhausted(
        self,
        repo: JobRepository,
        db_session: AsyncSession,
    ):
        """Test a stale job with no retries left is failed, not requeued."""
        await repo.insert_jobs([{}], priority=5, max_retries=0, delay_seconds=0)
        stale = await repo.acquire_lease("crashed-worker", 30)
        await db_session.commit()
        await _expire(db_session, stale.id)

        recovered = await repo.recover_expired_leases()
        await db_session.commit()

        assert len(recovered) == 1
        assert recovered[0].status == JobStatus.FAILED

    async def test_count_and_stats(
        self,
        repo: JobRepository,
        db_session: AsyncSession,
    ):
        """Test counting by status."""
        await repo.insert_jobs([{}, {}, {}], priority=5, max_retries=5, delay_seconds=0)
        await repo.insert_jobs([{}], priority=5, max_retries=5, delay_seconds=60)
        leased = await repo.acquire_lease("worker", 30)
        await repo.complete_job(leased.id)
        await repo.acquire_lease("worker", 30)
        await db_session.commit()

        assert await repo.count() == 4
        assert await repo.count(JobStatus.WAITING) == 2
        assert await repo.count(JobStatus.WAITING, visible_only=True) == 1
        assert await repo.count(JobStatus.RUNNING) == 1
        assert await repo.get_job_stats() == {"waiting": 2, "running": 1, "success": 1}

    async def test_delete_inactive(
        self,
        repo: JobRepository,
        db_session: AsyncSession,
    ):
        """Test every job except running ones is deleted."""
        await repo.insert_jobs([{}, {}, {}], priority=5, max_retries=5, delay_seconds=0)
        done = await repo.acquire_lease("worker", 30)
        await repo.complete_job(done.id)
        running = await repo.acquire_lease("worker", 30)
        await db_session.commit()

        deleted = await repo.delete_inactive()
        await db_session.commit()

        assert deleted == 2
        assert await repo.count() == 1
        assert (await repo.get_job(running.id)) is not None
