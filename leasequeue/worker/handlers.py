"""
Job handlers registry and implementations.

Job handlers must be idempotent - a job whose lease expires is handed to
another worker, so the same payload may be processed more than once.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable

from leasequeue.types.job import JobContext, JobResult

logger = logging.getLogger(__name__)

# Type alias for job handler functions
JobHandler = Callable[[JobContext], Awaitable[JobResult]]

# Handler registry
_handlers: dict[str, JobHandler] = {}

DEFAULT_JOB_TYPE = "echo"


def register_handler(job_type: str) -> Callable[[JobHandler], JobHandler]:
    """
    Decorator to register a job handler.

    Args:
        job_type: The ``job_type`` payload key this handler processes.

    Returns:
        Decorator function.

    Example:
        @register_handler("send_email")
        async def handle_send_email(context: JobContext) -> JobResult:
            ...
    """
    def decorator(handler: JobHandler) -> JobHandler:
        _handlers[job_type] = handler
        logger.debug(f"Registered handler for job type: {job_type}")
        return handler
    return decorator


def get_handler(job_type: str) -> JobHandler | None:
    """
    Get the handler for a job type.

    Args:
        job_type: The job type.

    Returns:
        The handler, or None if nothing is registered.
    """
    return _handlers.get(job_type)


def list_handlers() -> list[str]:
    """List all registered job types."""
    return list(_handlers.keys())


# ============================================================================
# Built-in job handlers
# ============================================================================


@register_handler("echo")
async def handle_echo(context: JobContext) -> JobResult:
    """
    Echo handler for testing.

    Simply returns the input payload as output.
    """
    logger.info(
        "Echo job executing",
        extra={"job_id": context.job_id, "attempt": context.attempt}
    )

    return JobResult(
        success=True,
        output={"echo": context.payload},
    )


@register_handler("sleep")
async def handle_sleep(context: JobContext) -> JobResult:
    """
    Sleep handler that reports progress as it goes.

    Payload may contain:
    - duration_seconds: How long to sleep in total
    - steps: How many progress reports to make
    """
    data = context.payload.get("data") or {}
    duration = float(data.get("duration_seconds", 1))
    steps = max(1, int(data.get("steps", 4)))

    logger.info(
        "Sleep job starting",
        extra={"job_id": context.job_id, "duration": duration}
    )

    for step in range(1, steps + 1):
        await asyncio.sleep(duration / steps)
        await context.report_progress(step * 100 // steps)

    return JobResult(
        success=True,
        output={"slept_for": duration},
    )


async def execute_job(context: JobContext) -> JobResult:
    """
    Execute a job using the handler named by its payload.

    Payloads that are not mappings, or carry no ``job_type``, go to the
    ``echo`` handler. Handler exceptions become failed results.

    Args:
        context: The job context.

    Returns:
        JobResult from the handler, with ``duration_ms`` set to its run time.
    """
    job_type = context.job_type or DEFAULT_JOB_TYPE

    handler = get_handler(job_type)

    if handler is None:
        logger.error(
            f"No handler for job type: {job_type}",
            extra={"job_id": context.job_id}
        )
        return JobResult(
            success=False,
            error=f"No handler registered for job type: {job_type}",
        )

    start = time.monotonic()
    try:
        result = await handler(context)
    except Exception as e:
        logger.exception(
            "Handler raised exception",
            extra={"job_id": context.job_id, "error": str(e)}
        )
        return JobResult(
            success=False,
            error=f"Handler exception: {str(e)}",
        )

    return result.model_copy(
        update={"duration_ms": (time.monotonic() - start) * 1000}
    )
