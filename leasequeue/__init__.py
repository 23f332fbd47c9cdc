"""
Lease Queue

A durable, multi-consumer job queue on top of a SQL store, with lease-based
visibility timeouts, monotonic retry counting, and priority/FIFO dequeue.
"""

__version__ = "1.0.0"

from leasequeue.exceptions import (  # noqa: E402
    InvalidArgumentError,
    JobNotFoundError,
    LeaseExpiredOrMissing,
    QueueError,
)
from leasequeue.queue import JobQueue  # noqa: E402
from leasequeue.types.job import JobSnapshot, LeasedJob  # noqa: E402

__all__ = [
    "JobQueue",
    "LeasedJob",
    "JobSnapshot",
    "QueueError",
    "InvalidArgumentError",
    "JobNotFoundError",
    "LeaseExpiredOrMissing",
]
