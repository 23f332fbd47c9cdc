"""
Job queue façade.

``JobQueue`` turns the lease protocol into single conditional statements
against the jobs table and interprets their results:

- enqueue: insert WAITING jobs
- dequeue: WAITING -> RUNNING, tries + 1, lease set (atomic pick-and-update)
- touch: extend a live lease
- ack: RUNNING -> SUCCESS
- fail: RUNNING -> WAITING, or -> FAILED once tries exceed max_retries
- progress: store a clamped percentage
- recover_stale: reclaim RUNNING jobs whose lease ran out

The queue holds no locks of its own. Any number of processes may share one
table; correctness rests on each statement's WHERE clause.
"""

import inspect
import logging
import math
from collections.abc import AsyncGenerator, Callable, Sequence
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from leasequeue.config import Settings, get_settings
from leasequeue.constants import (
    DEFAULT_DELAY_SECONDS,
    DEFAULT_LOCK_DURATION_SECONDS,
    DEFAULT_MAX_RETRIES,
    DEFAULT_PRIORITY,
    INT32_MAX,
    INT32_MIN,
    MAX_DURATION_SECONDS,
    PROGRESS_MAX,
    PROGRESS_MIN,
    SPAN_ACK,
    SPAN_DEQUEUE,
    SPAN_ENQUEUE,
    SPAN_FAIL,
    SPAN_PROGRESS,
    SPAN_RECOVER_STALE,
    SPAN_TOUCH,
    JobStatus,
)
from leasequeue.db.connection import session_scope
from leasequeue.db.models import as_utc
from leasequeue.db.repository import JobRepository
from leasequeue.exceptions import InvalidArgumentError, JobNotFoundError
from leasequeue.observability.metrics import MetricsCollector, get_metrics
from leasequeue.observability.tracing import get_tracer
from leasequeue.types.events import JobEvent
from leasequeue.types.job import JobSnapshot, LeasedJob

logger = logging.getLogger(__name__)

Listener = Callable[[JobEvent], Any]


def _coerce_seconds(value: Any, default: float, allow_zero: bool = False) -> float:
    """Read a duration option, falling back to ``default`` on anything unusable."""
    if value is None or isinstance(value, bool):
        return default
    try:
        seconds = float(value)
    except (TypeError, ValueError, OverflowError):
        return default
    if not math.isfinite(seconds) or seconds < 0 or (seconds == 0 and not allow_zero):
        return default
    if seconds > MAX_DURATION_SECONDS:
        return default
    return seconds


def _coerce_int(value: Any, default: int, minimum: int = INT32_MIN) -> int:
    """Read an integer option, falling back to ``default`` on anything unusable."""
    if value is None or isinstance(value, bool):
        return default
    try:
        number = int(value)
    except (TypeError, ValueError, OverflowError):
        return default
    if not minimum <= number <= INT32_MAX:
        return default
    return number


def clamp_progress(value: Any) -> int:
    """
    Clamp a progress report to [0, 100].

    Raises:
        InvalidArgumentError: If the value is not a number.
    """
    if isinstance(value, bool):
        raise InvalidArgumentError(f"progress(): not a number: {value!r}")
    if isinstance(value, int):
        return min(max(value, PROGRESS_MIN), PROGRESS_MAX)
    try:
        number = float(value)
    except OverflowError:
        number = math.inf if value > 0 else -math.inf
    except (TypeError, ValueError):
        raise InvalidArgumentError(f"progress(): not a number: {value!r}") from None
    if math.isnan(number):
        raise InvalidArgumentError("progress(): not a number: nan")
    return int(min(max(number, PROGRESS_MIN), PROGRESS_MAX))


class JobQueue:
    """
    A named queue of jobs with lease-based delivery.

    Each operation runs in its own session and transaction obtained from
    ``session_factory``. Per-call options override the queue defaults given
    here; unusable option values silently fall back to those defaults.

    Example:
        queue = await JobQueue.create(session_factory, "emails")
        job_id = await queue.enqueue({"to": "someone@example.com"})
        job = await queue.dequeue()
        await queue.ack(job.id)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        name: str,
        *,
        lock_duration: float = DEFAULT_LOCK_DURATION_SECONDS,
        delay: float = DEFAULT_DELAY_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        priority: int = DEFAULT_PRIORITY,
        worker_id: str | None = None,
        metrics: MetricsCollector | None = None,
    ):
        """
        Initialize the queue.

        Args:
            session_factory: Async session factory bound to the job store.
            name: Queue name; jobs of different queues never mix.
            lock_duration: Default lease length in seconds.
            delay: Default seconds before an enqueued job becomes visible.
            max_retries: Default retry ceiling for enqueued jobs.
            priority: Default priority for enqueued jobs.
            worker_id: Identity recorded on jobs this queue leases.
            metrics: Metrics collector. Defaults to the process-wide one.

        Raises:
            InvalidArgumentError: If the session factory or name is missing.
        """
        if session_factory is None:
            raise InvalidArgumentError("JobQueue: provide a session factory")
        if not name:
            raise InvalidArgumentError("JobQueue: provide a queue name")

        self.name = name
        self.lock_duration = _coerce_seconds(lock_duration, DEFAULT_LOCK_DURATION_SECONDS)
        self.delay = _coerce_seconds(delay, DEFAULT_DELAY_SECONDS, allow_zero=True)
        self.max_retries = _coerce_int(max_retries, DEFAULT_MAX_RETRIES, minimum=0)
        self.priority = _coerce_int(priority, DEFAULT_PRIORITY)
        self.worker_id = worker_id

        self._session_factory = session_factory
        self._metrics = metrics or get_metrics()
        self._listeners: list[Listener] = []

    @classmethod
    async def create(
        cls,
        session_factory: async_sessionmaker[AsyncSession],
        name: str,
        **kwargs: Any,
    ) -> "JobQueue":
        """Build a queue and make sure its table and indexes exist."""
        queue = cls(session_factory, name, **kwargs)
        await queue.create_indexes()
        return queue

    @classmethod
    def from_settings(
        cls,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings | None = None,
        **kwargs: Any,
    ) -> "JobQueue":
        """Build a queue whose defaults come from application settings."""
        settings = settings or get_settings()
        options: dict[str, Any] = {
            "lock_duration": settings.queue_lock_duration_seconds,
            "delay": settings.queue_delay_seconds,
            "max_retries": settings.queue_max_retries,
            "priority": settings.queue_default_priority,
            "worker_id": settings.worker_id,
        }
        options.update(kwargs)
        return cls(session_factory, options.pop("name", settings.queue_name), **options)

    def __repr__(self) -> str:
        return f"JobQueue(name={self.name!r}, worker_id={self.worker_id!r})"

    @asynccontextmanager
    async def _repository(self) -> AsyncGenerator[JobRepository]:
        async with session_scope(self._session_factory) as session:
            yield JobRepository(session, self.name)

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """
        Register a listener for job lifecycle events.

        Listeners run after the transition commits, in registration order.
        Coroutine functions are awaited.

        Returns:
            A callable that removes the listener.
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def _emit(self, event: JobEvent) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(
                    "Job event listener failed",
                    extra={"queue": self.name, "event_type": event.event_type},
                )

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    async def create_indexes(self) -> None:
        """Create the jobs table and its (queue, status, visible) index."""
        async with self._repository() as repo:
            await repo.create_schema()
        logger.debug("Ensured job table and indexes", extra={"queue": self.name})

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        payload: Any = None,
        *,
        priority: int | None = None,
        delay: float | None = None,
        max_retries: int | None = None,
    ) -> int | list[int]:
        """
        Add one job, or a batch of jobs, to the queue.

        A list or tuple is a batch: each element becomes its own job and the
        ids come back as a list in the same order. Anything else, ``None``
        included, is a single payload and a single id comes back.

        Args:
            payload: JSON-serialisable payload, or a batch of them.
            priority: Overrides the queue's default priority.
            delay: Seconds before the job becomes visible.
            max_retries: Overrides the queue's default retry ceiling.

        Returns:
            The new job id, or the list of new ids for a batch.

        Raises:
            InvalidArgumentError: If the batch is empty.
        """
        batch = isinstance(payload, (list, tuple))
        payloads: Sequence[Any] = list(payload) if batch else [payload]
        if batch and not payloads:
            raise InvalidArgumentError("enqueue(): a batch must contain at least one payload")

        priority = _coerce_int(priority, self.priority)
        delay = _coerce_seconds(delay, self.delay, allow_zero=True)
        max_retries = _coerce_int(max_retries, self.max_retries, minimum=0)

        with get_tracer().start_as_current_span(SPAN_ENQUEUE) as span:
            span.set_attribute("queue", self.name)
            span.set_attribute("job_count", len(payloads))

            async with self._repository() as repo:
                jobs = await repo.insert_jobs(
                    payloads,
                    priority=priority,
                    max_retries=max_retries,
                    delay_seconds=delay,
                )

        self._metrics.record_jobs_enqueued(self.name, priority, len(jobs))
        for job in jobs:
            await self._emit(JobEvent.job_enqueued(job))

        ids = [job.id for job in jobs]
        return ids if batch else ids[0]

    async def dequeue(
        self,
        *,
        lock_duration: Any = None,
        worker_id: str | None = None,
    ) -> LeasedJob | None:
        """
        Lease the highest-priority visible job, oldest first within a priority.

        Never blocks: returns ``None`` straight away if nothing is eligible.

        Args:
            lock_duration: Lease length in seconds. Missing or unusable values
                fall back to the queue default.
            worker_id: Identity to record instead of the queue's own.

        Returns:
            The leased job, or None.
        """
        seconds = _coerce_seconds(lock_duration, self.lock_duration)
        worker_id = worker_id or self.worker_id

        with get_tracer().start_as_current_span(SPAN_DEQUEUE) as span:
            span.set_attribute("queue", self.name)

            async with self._repository() as repo:
                job = await repo.acquire_lease(worker_id, seconds)

            if job is None:
                return None
            span.set_attribute("job_id", job.id)

        self._metrics.record_lease_acquired(self.name, worker_id)
        await self._emit(JobEvent.job_started(job))
        return LeasedJob.from_model(job)

    async def touch(self, job_id: int, *, lock_duration: Any = None) -> int:
        """
        Renew the lease on a running job, counting from now.

        Raises:
            JobNotFoundError: If the job is missing, not running, or its
                lease already expired.
        """
        seconds = _coerce_seconds(lock_duration, self.lock_duration)

        with get_tracer().start_as_current_span(SPAN_TOUCH) as span:
            span.set_attribute("queue", self.name)
            span.set_attribute("job_id", job_id)

            async with self._repository() as repo:
                job = await repo.extend_lease(job_id, seconds)

        if job is None:
            raise JobNotFoundError(job_id, "touch")

        self._metrics.record_lease_renewed(self.name)
        await self._emit(JobEvent.job_touched(job))
        return job.id

    async def ack(self, job_id: int) -> int:
        """
        Mark a running job as done.

        Acking twice is an error: the second call finds no running job.

        Raises:
            JobNotFoundError: If the job is missing, not running, already
                finished, or its lease expired.
        """
        with get_tracer().start_as_current_span(SPAN_ACK) as span:
            span.set_attribute("queue", self.name)
            span.set_attribute("job_id", job_id)

            async with self._repository() as repo:
                job = await repo.complete_job(job_id)

        if job is None:
            raise JobNotFoundError(job_id, "ack")

        duration = None
        if job.last_started is not None:
            duration = (datetime.now(timezone.utc) - as_utc(job.last_started)).total_seconds()
        self._metrics.record_job_finished(self.name, "success", duration)
        await self._emit(JobEvent.job_completed(job))
        return job.id

    async def fail(self, job_id: int, reason: str | None = None) -> int:
        """
        Report a failed attempt.

        The job returns to WAITING and is visible immediately, unless its
        tries already exceed max_retries, in which case it is FAILED for
        good. The decision is made inside the same atomic update.

        Raises:
            JobNotFoundError: If the job is missing, not running, or its
                lease expired.
        """
        reason = None if reason is None else str(reason)

        with get_tracer().start_as_current_span(SPAN_FAIL) as span:
            span.set_attribute("queue", self.name)
            span.set_attribute("job_id", job_id)

            async with self._repository() as repo:
                job = await repo.fail_job(job_id, reason)

            if job is None:
                raise JobNotFoundError(job_id, "fail")
            span.set_attribute("status", JobStatus(job.status).value)

        outcome = "failed" if job.status == JobStatus.FAILED else "retried"
        self._metrics.record_job_finished(self.name, outcome)
        await self._emit(JobEvent.job_failed(job))
        return job.id

    async def progress(self, job_id: int, value: Any) -> int:
        """
        Record progress on a running job. Values are clamped to [0, 100].

        Raises:
            InvalidArgumentError: If ``value`` is not a number.
            JobNotFoundError: If the job is missing, not running, or its
                lease expired.
        """
        progress = clamp_progress(value)

        with get_tracer().start_as_current_span(SPAN_PROGRESS) as span:
            span.set_attribute("queue", self.name)
            span.set_attribute("job_id", job_id)

            async with self._repository() as repo:
                job = await repo.set_progress(job_id, progress)

        if job is None:
            raise JobNotFoundError(job_id, "progress")

        await self._emit(JobEvent.job_progress(job))
        return job.id

    async def recover_stale(self) -> int:
        """
        Reclaim running jobs whose lease has expired.

        Each one is treated as a failed attempt with reason "lease expired":
        back to WAITING if it has retries left, otherwise FAILED.

        Returns:
            Number of jobs reclaimed.
        """
        with get_tracer().start_as_current_span(SPAN_RECOVER_STALE) as span:
            span.set_attribute("queue", self.name)

            async with self._repository() as repo:
                jobs = await repo.recover_expired_leases()

            span.set_attribute("job_count", len(jobs))

        if jobs:
            self._metrics.record_lease_expired(self.name, len(jobs))
        for job in jobs:
            outcome = "failed" if job.status == JobStatus.FAILED else "retried"
            self._metrics.record_job_finished(self.name, outcome)
            await self._emit(JobEvent.job_recovered(job))

        return len(jobs)

    # ------------------------------------------------------------------
    # Census
    # ------------------------------------------------------------------

    async def get(self, job_id: int) -> JobSnapshot | None:
        """Look up a job of this queue without changing it."""
        async with self._repository() as repo:
            job = await repo.get_job(job_id)
        return JobSnapshot.from_model(job) if job is not None else None

    async def _count(self, status: JobStatus | None = None, visible_only: bool = False) -> int:
        async with self._repository() as repo:
            return await repo.count(status, visible_only=visible_only)

    async def total(self) -> int:
        """Number of jobs in the queue, whatever their status."""
        return await self._count()

    async def waiting(self) -> int:
        """Number of waiting jobs that are visible now."""
        return await self._count(JobStatus.WAITING, visible_only=True)

    async def in_flight(self) -> int:
        """Number of running jobs, including ones whose lease has expired."""
        return await self._count(JobStatus.RUNNING)

    async def succeeded(self) -> int:
        return await self._count(JobStatus.SUCCESS)

    async def failed(self) -> int:
        return await self._count(JobStatus.FAILED)

    async def cancelled(self) -> int:
        return await self._count(JobStatus.CANCELLED)

    async def stats(self) -> dict[str, int]:
        """
        Count jobs per status in one query and publish them as gauges.

        Every status is present in the result, zero included.
        """
        async with self._repository() as repo:
            counts = await repo.get_job_stats()

        stats = {status.value: counts.get(status.value, 0) for status in JobStatus}
        self._metrics.update_queue_depth(self.name, stats)
        return stats

    async def clean(self) -> int:
        """
        Delete every job that is not running.

        Returns:
            Number of deleted jobs.
        """
        async with self._repository() as repo:
            return await repo.delete_inactive()
