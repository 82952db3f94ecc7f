"""
Job run ledger models.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    TIMESTAMP,
    CheckConstraint,
    Index,
    Integer,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from jobledger.infra.database import Base

# JSONB on PostgreSQL so meta can be merged server-side
MetaJSON = JSON(none_as_null=True).with_variant(JSONB(none_as_null=True), "postgresql")


class JobRunStatus(str, Enum):
    """Job run status enumeration."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"
    SKIPPED = "skipped"


ACTIVE_RUN_STATUSES = (JobRunStatus.PENDING.value, JobRunStatus.RUNNING.value)


class JobRun(Base):
    """
    Audit record of one named execution.

    Rows are created in 'running' by begin_run and only ever mutated by
    updates guarded on status='running'. They are never deleted.
    """

    __tablename__ = "job_runs"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    job_name: Mapped[str] = mapped_column(
        Text, nullable=False, comment="Logical job identifier"
    )
    idempotency_key: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Collapses duplicate begin requests"
    )
    request_id: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Originating request ID for tracing"
    )

    status: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default=JobRunStatus.RUNNING.value,
        comment="pending|running|succeeded|failed|cancelled|timeout|skipped",
    )
    started_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    finished_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    retry_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, comment="Failures recorded for this run"
    )
    error_code: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Structured error identifier"
    )
    error_message: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Error text, at most 2048 characters"
    )
    meta: Mapped[dict[str, Any] | None] = mapped_column(
        MetaJSON, nullable=True, default=dict, comment="Sanitized run metadata"
    )

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )

    __table_args__ = (
        UniqueConstraint(
            "job_name", "idempotency_key", name="uq_job_runs_job_name_idempotency_key"
        ),
        CheckConstraint(
            "status IN ('pending', 'running', 'succeeded', 'failed', "
            "'cancelled', 'timeout', 'skipped')",
            name="job_runs_status_check",
        ),
        Index("ix_job_runs_job_name_status_started", "job_name", "status", "started_at"),
        Index("ix_job_runs_created_at", "created_at"),
    )

    @property
    def duration_ms(self) -> int | None:
        """Elapsed milliseconds between start and finish, once finished."""
        if self.started_at is None or self.finished_at is None:
            return None
        return int((self.finished_at - self.started_at).total_seconds() * 1000)

    def is_active(self) -> bool:
        return self.status in ACTIVE_RUN_STATUSES
