"""
Sync queue job model.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    SmallInteger,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from api.infra.database import Base


class JobStatus(str, Enum):
    """Job status enumeration."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive timestamps (SQLite drops the offset on read)."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


class Job(Base):
    """
    A unit of deferred outbound work.

    One row per (org_id, dedupe_key): re-enqueuing the same logical event
    rewrites the pending row instead of adding another one. The surrogate
    ``id`` is monotonic and doubles as the insertion-order tie-break when
    claiming.
    """

    __tablename__ = "sync_jobs"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"),
        primary_key=True,
        autoincrement=True,
    )
    org_id: Mapped[UUID] = mapped_column(
        Uuid, nullable=False, comment="Owning organization"
    )
    dedupe_key: Mapped[str] = mapped_column(
        Text, nullable=False, comment="Collapses repeated events into one job"
    )
    job_type: Mapped[str] = mapped_column(
        Text, nullable=False, comment="Handler name in the job registry"
    )
    payload: Mapped[dict[str, Any]] = mapped_column(
        JSON, nullable=False, default=dict, comment="Handler parameters"
    )

    # Scheduling
    status: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default=JobStatus.PENDING.value,
        comment="pending|running|completed|failed",
    )
    priority: Mapped[int] = mapped_column(
        SmallInteger,
        nullable=False,
        default=0,
        comment="0-100, higher runs first",
    )
    run_after: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, comment="Earliest time to run"
    )
    attempts: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, comment="Claims made since last enqueue"
    )
    max_attempts: Mapped[int] = mapped_column(
        Integer, nullable=False, default=10, comment="Claims allowed before failing"
    )
    last_error: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Most recent failure reason"
    )

    # Claim
    locked_by: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Worker holding the claim"
    )
    locked_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    locked_until: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, comment="Claim expiry"
    )

    # Outcome
    result: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    enqueue_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=1, comment="Enqueues collapsed into row"
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )

    __table_args__ = (
        UniqueConstraint("org_id", "dedupe_key", name="uq_sync_jobs_org_dedupe_key"),
        CheckConstraint(
            "status IN ('pending', 'running', 'completed', 'failed')",
            name="sync_jobs_status_check",
        ),
        CheckConstraint("priority BETWEEN 0 AND 100", name="sync_jobs_priority_check"),
        CheckConstraint("max_attempts >= 1", name="sync_jobs_max_attempts_check"),
        CheckConstraint("dedupe_key <> ''", name="sync_jobs_dedupe_key_check"),
        Index("ix_sync_jobs_ready", "status", "run_after", "priority"),
        Index("ix_sync_jobs_locked_until", "locked_until"),
        Index("ix_sync_jobs_org_status", "org_id", "status"),
    )

    def retries_left(self) -> int:
        return max(0, self.max_attempts - self.attempts)
