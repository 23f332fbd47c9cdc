"""
Worker process for executing jobs.

The worker leases jobs from a queue, runs their handlers, keeps the leases
alive while handlers run, and reports the outcome with ack or fail.
"""

import asyncio
import logging
import os
import signal
import socket
import time

from leasequeue.config import get_settings
from leasequeue.constants import SPAN_EXECUTE_JOB
from leasequeue.db import close_db, get_engine, init_db
from leasequeue.exceptions import JobNotFoundError
from leasequeue.observability.logging import bind_context, setup_logging
from leasequeue.observability.metrics import setup_metrics
from leasequeue.observability.tracing import (
    get_tracer,
    instrument_sqlalchemy,
    setup_tracing,
)
from leasequeue.queue import JobQueue
from leasequeue.types.job import JobContext, LeasedJob
from leasequeue.worker.handlers import JobHandler, execute_job

logger = logging.getLogger(__name__)


def default_worker_id() -> str:
    """Identity of this process: hostname plus PID."""
    return f"{socket.gethostname()}-{os.getpid()}"


class Worker:
    """
    Job worker that polls a queue and executes jobs.

    Features:
    - Lease acquisition through the queue's atomic dequeue
    - Heartbeat that renews leases of jobs still executing
    - Graceful shutdown on SIGTERM/SIGINT
    - ack on success, fail (retry or permanent) otherwise
    """

    def __init__(
        self,
        queue: JobQueue,
        handler: JobHandler | None = None,
        worker_id: str | None = None,
        batch_size: int | None = None,
        poll_interval: float | None = None,
        heartbeat_interval: float | None = None,
    ):
        """
        Initialize the worker.

        Args:
            queue: The queue to consume.
            handler: Coroutine run for every job. Defaults to the registry.
            worker_id: Unique worker identifier. Defaults to hostname + PID.
            batch_size: Number of jobs to lease per poll.
            poll_interval: Seconds between polls when the queue is empty.
            heartbeat_interval: Seconds between lease renewals.
        """
        settings = get_settings()

        self.queue = queue
        self.handler = handler or execute_job
        self.worker_id = (
            worker_id or queue.worker_id or settings.worker_id or default_worker_id()
        )
        self.batch_size = batch_size or settings.worker_batch_size
        self.poll_interval = poll_interval or settings.worker_poll_interval_seconds
        self.heartbeat_interval = (
            heartbeat_interval or settings.worker_heartbeat_interval_seconds
        )

        self._running = False
        self._current_jobs: dict[int, asyncio.Task] = {}
        self._heartbeat_task: asyncio.Task | None = None

    @property
    def current_job_ids(self) -> list[int]:
        return list(self._current_jobs.keys())

    async def start(self) -> None:
        """Start the worker."""
        logger.info(
            "Worker starting",
            extra={
                "worker_id": self.worker_id,
                "queue": self.queue.name,
                "batch_size": self.batch_size,
            }
        )

        self._running = True

        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

        while self._running:
            try:
                jobs_processed = await self.run_once()

                if jobs_processed == 0:
                    await asyncio.sleep(self.poll_interval)

            except Exception as e:
                logger.exception(
                    f"Error in worker loop: {e}",
                    extra={"worker_id": self.worker_id}
                )
                await asyncio.sleep(self.poll_interval)

        if self._current_jobs:
            logger.info(f"Waiting for {len(self._current_jobs)} jobs to complete")
            await asyncio.gather(*self._current_jobs.values(), return_exceptions=True)

        if self._heartbeat_task:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass

        logger.info("Worker stopped", extra={"worker_id": self.worker_id})

    async def stop(self) -> None:
        """Stop the worker gracefully."""
        logger.info("Worker stopping", extra={"worker_id": self.worker_id})
        self._running = False

    async def run_once(self) -> int:
        """
        Lease up to ``batch_size`` jobs and execute them.

        Returns:
            Number of jobs processed.
        """
        jobs: list[LeasedJob] = []
        try:
            for _ in range(self.batch_size):
                job = await self.queue.dequeue(worker_id=self.worker_id)
                if job is None:
                    break
                jobs.append(job)
        except Exception:
            if not jobs:
                raise
            # run what was already leased; the next poll retries the dequeue
            logger.exception(
                "Dequeue failed part way through a batch",
                extra={"worker_id": self.worker_id, "leased": len(jobs)}
            )

        if not jobs:
            return 0

        logger.info(
            f"Acquired {len(jobs)} jobs",
            extra={"worker_id": self.worker_id}
        )

        tasks = []
        for job in jobs:
            task = asyncio.create_task(self._execute_job(job))
            self._current_jobs[job.id] = task
            tasks.append(task)

        await asyncio.gather(*tasks, return_exceptions=True)

        return len(jobs)

    async def _report_progress(self, job_id: int, value: int) -> None:
        try:
            await self.queue.progress(job_id, value)
        except JobNotFoundError:
            logger.warning(
                "Progress not recorded - lease lost",
                extra={"job_id": job_id, "worker_id": self.worker_id}
            )

    async def _execute_job(self, job: LeasedJob) -> None:
        """
        Execute a single leased job and report its outcome.

        Args:
            job: The leased job.
        """
        start_time = time.time()

        async def report_progress(value: int) -> None:
            await self._report_progress(job.id, value)

        context = JobContext.from_leased(
            job,
            queue=self.queue.name,
            worker_id=self.worker_id,
            report_progress=report_progress,
        )

        try:
            logger.info(
                "Executing job",
                extra={"job_id": job.id, "attempt": context.attempt}
            )

            with get_tracer().start_as_current_span(SPAN_EXECUTE_JOB) as span:
                span.set_attribute("job_id", job.id)
                span.set_attribute("queue", self.queue.name)
                span.set_attribute("attempt", context.attempt)

                result = await self.handler(context)

            duration = time.time() - start_time

            if result.success:
                await self.queue.ack(job.id)
                logger.info(
                    "Job completed successfully",
                    extra={"job_id": job.id, "duration": f"{duration:.2f}s"}
                )
            else:
                await self.queue.fail(job.id, result.error or "Unknown error")
                logger.warning(
                    "Job failed",
                    extra={
                        "job_id": job.id,
                        "error": result.error,
                        "attempt": context.attempt,
                    }
                )

        except JobNotFoundError:
            logger.warning(
                "Outcome not recorded - lease lost",
                extra={"job_id": job.id, "worker_id": self.worker_id}
            )

        except Exception as e:
            logger.exception(
                "Exception executing job",
                extra={"job_id": job.id, "error": str(e)}
            )

            try:
                await self.queue.fail(job.id, f"Worker exception: {str(e)}")
            except Exception:
                logger.exception("Failed to mark job as failed")

        finally:
            self._current_jobs.pop(job.id, None)

    async def renew_leases(self) -> int:
        """
        Touch every job this worker is executing.

        Returns:
            Number of leases renewed.
        """
        renewed = 0
        for job_id in self.current_job_ids:
            try:
                await self.queue.touch(job_id)
                renewed += 1
                logger.debug("Extended lease", extra={"job_id": job_id})
            except JobNotFoundError:
                logger.warning(
                    "Lease lost while executing",
                    extra={"job_id": job_id, "worker_id": self.worker_id}
                )
        return renewed

    async def _heartbeat_loop(self) -> None:
        """
        Periodically extend leases on running jobs.

        This keeps the reaper from reclaiming jobs that are still executing.
        """
        while self._running:
            try:
                await asyncio.sleep(self.heartbeat_interval)

                if self._current_jobs:
                    await self.renew_leases()

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.exception(f"Error in heartbeat loop: {e}")


async def run_async() -> None:
    """Run the worker asynchronously."""
    settings = get_settings()
    setup_logging(settings)
    if settings.tracing_enabled:
        setup_tracing()
        instrument_sqlalchemy(get_engine())

    if settings.metrics_port:
        setup_metrics().serve(settings.metrics_port)

    session_factory = await init_db()

    worker_id = settings.worker_id or default_worker_id()
    bind_context(worker_id=worker_id)

    queue = JobQueue.from_settings(session_factory, settings, worker_id=worker_id)
    await queue.create_indexes()

    worker = Worker(queue, worker_id=worker_id)

    loop = asyncio.get_running_loop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: asyncio.create_task(worker.stop())
        )

    try:
        await worker.start()
    finally:
        await close_db()


def run() -> None:
    """Run the worker."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
