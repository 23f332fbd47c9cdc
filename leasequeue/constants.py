"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import StrEnum


class JobStatus(StrEnum):
    """
    Job lifecycle states.

    State transitions:
    - WAITING -> RUNNING (lease acquired)
    - RUNNING -> RUNNING (lease renewed)
    - RUNNING -> SUCCESS (ack)
    - RUNNING -> WAITING (fail, retries left / lease expired and reaped)
    - RUNNING -> FAILED (fail, retries exhausted)

    CANCELLED is terminal and only ever set by an administrator.
    """

    WAITING = "waiting"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"


# Default values
DEFAULT_QUEUE_NAME = "default"
DEFAULT_LOCK_DURATION_SECONDS = 10
DEFAULT_DELAY_SECONDS = 0
DEFAULT_MAX_RETRIES = 5
DEFAULT_PRIORITY = 5

PROGRESS_MIN = 0
PROGRESS_MAX = 100

# Longest lease or delay accepted; larger values fall back to the default
MAX_DURATION_SECONDS = 10 * 365 * 24 * 60 * 60

# Range of the INTEGER columns holding priority and max_retries
INT32_MIN = -(2**31)
INT32_MAX = 2**31 - 1

STALE_LEASE_REASON = "lease expired"

# Metrics names
METRIC_QUEUE_DEPTH = "job_queue_depth"
METRIC_JOBS_ENQUEUED = "jobs_enqueued_total"
METRIC_JOBS_FINISHED = "jobs_finished_total"
METRIC_JOB_DURATION = "job_duration_seconds"
METRIC_LEASE_EXPIRED = "lease_expired_total"
METRIC_LEASE_ACQUIRED = "lease_acquired_total"
METRIC_LEASE_RENEWED = "lease_renewed_total"

# Trace span names
SPAN_ENQUEUE = "enqueue"
SPAN_DEQUEUE = "dequeue"
SPAN_TOUCH = "touch"
SPAN_ACK = "ack"
SPAN_FAIL = "fail"
SPAN_PROGRESS = "progress"
SPAN_RECOVER_STALE = "recover_stale"
SPAN_EXECUTE_JOB = "execute_job"

# Event types
EVENT_JOB_ENQUEUED = "job.enqueued"
EVENT_JOB_STARTED = "job.started"
EVENT_JOB_TOUCHED = "job.touched"
EVENT_JOB_PROGRESS = "job.progress"
EVENT_JOB_COMPLETED = "job.completed"
EVENT_JOB_FAILED = "job.failed"
EVENT_JOB_RETRIED = "job.retried"
EVENT_JOB_RECOVERED = "job.recovered"
