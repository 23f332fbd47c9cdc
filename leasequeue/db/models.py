"""
SQLAlchemy database models.
Defines the jobs table that backs every named queue.
"""

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    Enum,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from leasequeue.constants import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_PRIORITY,
    JobStatus,
)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class Job(Base):
    """
    Job document stored in a named queue.

    This is the authoritative source of truth for job state. Every lifecycle
    transition is a single conditional UPDATE against this table.

    Key points:
    - ``visible`` is the "not before" gate while waiting and the lease
      expiry while running
    - ``tries`` only ever increases, once per lease acquisition
    - ``worker`` is informational; lease enforcement uses status + visible
    - ids are assigned in insertion order and break priority ties
    """

    __tablename__ = "jobs"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"),
        primary_key=True,
        autoincrement=True,
    )

    queue: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )

    created: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )

    status: Mapped[JobStatus] = mapped_column(
        Enum(
            JobStatus,
            name="job_status",
            native_enum=False,
            length=16,
            create_constraint=True,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
        default=JobStatus.WAITING,
    )
    priority: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=DEFAULT_PRIORITY,
    )
    visible: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )

    payload: Mapped[Any] = mapped_column(
        JSON().with_variant(JSONB, "postgresql"),
        nullable=True,
    )

    # Retry tracking
    tries: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )
    max_retries: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=DEFAULT_MAX_RETRIES,
    )
    progress: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )

    last_started: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    last_failed: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    last_fail_reason: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    worker: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )

    __table_args__ = (
        # Dequeue and census lookups
        Index("ix_jobs_queue_status_visible", "queue", "status", "visible"),
    )

    def __repr__(self) -> str:
        return (
            f"Job(id={self.id}, queue={self.queue}, "
            f"status={self.status}, tries={self.tries}/{self.max_retries})"
        )


def as_utc(value: datetime | None) -> datetime | None:
    """
    Normalize a stored timestamp to an aware UTC datetime.

    SQLite hands back naive values; PostgreSQL hands back aware ones.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
