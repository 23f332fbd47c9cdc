"""
Type definitions for the job queue.
"""

from leasequeue.types.events import JobEvent
from leasequeue.types.job import (
    JobContext,
    JobResult,
    JobSnapshot,
    LeasedJob,
)

__all__ = [
    "LeasedJob",
    "JobSnapshot",
    "JobResult",
    "JobContext",
    "JobEvent",
]
