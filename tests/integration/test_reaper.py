"""
Integration tests for the lease reaper.
"""

import asyncio

from leasequeue.constants import STALE_LEASE_REASON, JobStatus
from leasequeue.observability.metrics import MetricsCollector
from leasequeue.queue import JobQueue
from leasequeue.reaper.main import Reaper


class TestReaper:
    """Tests for expired lease recovery."""

    async def test_nothing_to_recover(self, queue: JobQueue):
        """Test a sweep with no running jobs."""
        await queue.enqueue({})

        assert await Reaper(queue, interval_seconds=1).run_once() == 0
        assert await queue.waiting() == 1

    async def test_live_lease_untouched(self, queue: JobQueue):
        """Test a job with a live lease is left alone."""
        job_id = await queue.enqueue({})
        await queue.dequeue()

        assert await Reaper(queue, interval_seconds=1).run_once() == 0
        assert (await queue.get(job_id)).status == JobStatus.RUNNING

    async def test_expired_lease_requeued(self, queue: JobQueue, expire_lease):
        """Test an expired lease returns the job to the queue."""
        job_id = await queue.enqueue({})
        await queue.dequeue()
        await expire_lease(job_id)

        assert await Reaper(queue, interval_seconds=1).run_once() == 1

        job = await queue.get(job_id)
        assert job.status == JobStatus.WAITING
        assert job.last_fail_reason == STALE_LEASE_REASON
        assert job.last_failed is not None

        leased = await queue.dequeue()
        assert leased.id == job_id
        assert leased.tries == 2

    async def test_expired_lease_exhausted(self, queue: JobQueue, expire_lease):
        """Test a job out of retries is failed instead of requeued."""
        job_id = await queue.enqueue({}, max_retries=0)
        await queue.dequeue()
        await expire_lease(job_id)

        await Reaper(queue, interval_seconds=1).run_once()

        job = await queue.get(job_id)
        assert job.status == JobStatus.FAILED
        assert await queue.failed() == 1
        assert await queue.dequeue() is None

    async def test_refreshes_queue_depth(
        self,
        queue: JobQueue,
        metrics: MetricsCollector,
    ):
        """Test a sweep updates the queue depth gauges."""
        await queue.enqueue([{}, {}])

        await Reaper(queue, interval_seconds=1).run_once()

        gauge = metrics.queue_depth.labels(queue=queue.name, status="waiting")
        assert gauge._value.get() == 2

    async def test_start_and_stop(self, queue: JobQueue, expire_lease):
        """Test the reaper loop sweeps until stopped."""
        job_id = await queue.enqueue({})
        await queue.dequeue()
        await expire_lease(job_id)

        reaper = Reaper(queue, interval_seconds=0.05)
        loop = asyncio.create_task(reaper.start())

        for _ in range(100):
            if await queue.waiting() == 1:
                break
            await asyncio.sleep(0.02)

        await reaper.stop()
        await asyncio.wait_for(loop, timeout=5)

        assert await queue.waiting() == 1
