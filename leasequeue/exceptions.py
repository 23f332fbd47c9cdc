"""
Queue exceptions.

Storage-layer failures (``sqlalchemy.exc.*``) are not wrapped; they reach the
caller unchanged.
"""


class QueueError(Exception):
    """Base class for all queue errors."""


class InvalidArgumentError(QueueError, ValueError):
    """Malformed call input, e.g. an empty batch passed to enqueue."""


class JobNotFoundError(QueueError, LookupError):
    """
    A mutating operation matched no running job with a live lease.

    The job may never have existed, may already be finished, or its lease
    may have expired. These cases are deliberately indistinguishable: the
    caller no longer holds the lease and must not assume the job can be
    retried.
    """

    def __init__(self, job_id: object, operation: str):
        self.job_id = job_id
        self.operation = operation
        super().__init__(
            f"{operation}(): there is no running job with id {job_id!r} "
            "or its lease has expired"
        )


LeaseExpiredOrMissing = JobNotFoundError
