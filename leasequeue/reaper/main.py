"""
Lease reaper for recovering expired job leases.

The reaper runs periodically to find running jobs whose lease has expired
and hands them back to the queue, or fails them once their retries are
used up. This handles crashed or hung workers.
"""

import asyncio
import logging
import signal

from leasequeue.config import get_settings
from leasequeue.db import close_db, get_engine, init_db
from leasequeue.observability.logging import setup_logging
from leasequeue.observability.metrics import setup_metrics
from leasequeue.observability.tracing import instrument_sqlalchemy, setup_tracing
from leasequeue.queue import JobQueue

logger = logging.getLogger(__name__)


class Reaper:
    """
    Lease reaper that recovers expired job leases.

    Runs periodically to:
    1. Find RUNNING jobs whose visible time has passed
    2. Return them to WAITING, or FAILED when out of retries
    3. Refresh the queue depth gauges
    """

    def __init__(self, queue: JobQueue, interval_seconds: float | None = None):
        """
        Initialize the reaper.

        Args:
            queue: The queue to sweep.
            interval_seconds: Seconds between reaper runs.
        """
        settings = get_settings()
        self.queue = queue
        self.interval = interval_seconds or settings.reaper_interval_seconds
        self._running = False

    async def start(self) -> None:
        """Start the reaper loop."""
        logger.info(
            f"Reaper starting with interval {self.interval}s",
            extra={"queue": self.queue.name}
        )
        self._running = True

        while self._running:
            try:
                recovered = await self.run_once()

                if recovered > 0:
                    logger.info(f"Recovered {recovered} expired leases")

            except Exception as e:
                logger.exception(f"Error in reaper loop: {e}")

            await asyncio.sleep(self.interval)

        logger.info("Reaper stopped")

    async def stop(self) -> None:
        """Stop the reaper."""
        logger.info("Reaper stopping")
        self._running = False

    async def run_once(self) -> int:
        """
        Run one sweep (for testing or cron-style execution).

        Returns:
            Number of jobs recovered.
        """
        recovered = await self.queue.recover_stale()
        await self.queue.stats()
        return recovered


async def run_async() -> None:
    """Run the reaper asynchronously."""
    settings = get_settings()
    setup_logging(settings)
    if settings.tracing_enabled:
        setup_tracing()
        instrument_sqlalchemy(get_engine())

    if settings.metrics_port:
        setup_metrics().serve(settings.metrics_port)

    session_factory = await init_db()
    queue = JobQueue.from_settings(session_factory, settings)
    await queue.create_indexes()

    reaper = Reaper(queue)

    loop = asyncio.get_running_loop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: asyncio.create_task(reaper.stop())
        )

    try:
        await reaper.start()
    finally:
        await close_db()


def run() -> None:
    """Run the reaper."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
