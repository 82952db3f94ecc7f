"""
Embedding work queue models.

These shapes are shared with the embedding worker and must stay
schema-compatible with it.
"""

from datetime import UTC, datetime
from enum import Enum
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    TIMESTAMP,
    Boolean,
    CheckConstraint,
    Index,
    Integer,
    SmallInteger,
    Text,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from jobledger.infra.database import Base


class EmbeddingJobStatus(str, Enum):
    """Embedding job status enumeration."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


IN_FLIGHT_STATUSES = (
    EmbeddingJobStatus.PENDING.value,
    EmbeddingJobStatus.PROCESSING.value,
)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class EmbeddingJob(Base):
    """
    One unit of embedding work for a single (source row, field, content hash).

    idempotency_key is unique, so identical content for the same field can
    only ever be queued once.
    """

    __tablename__ = "embedding_jobs"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    organization_id: Mapped[UUID] = mapped_column(
        Uuid, nullable=False, comment="Owning organization"
    )
    source_table: Mapped[str] = mapped_column(Text, nullable=False)
    source_id: Mapped[str] = mapped_column(Text, nullable=False)
    source_field: Mapped[str] = mapped_column(Text, nullable=False)
    content_hash: Mapped[str] = mapped_column(
        Text, nullable=False, comment="SHA-256 hex digest of content_text"
    )
    content_text: Mapped[str] = mapped_column(Text, nullable=False)
    chunk_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    chunk_strategy: Mapped[str] = mapped_column(
        Text, nullable=False, default="overlap"
    )
    embedding_model: Mapped[str] = mapped_column(Text, nullable=False)

    status: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default=EmbeddingJobStatus.PENDING.value,
        comment="pending|processing|completed|failed|cancelled",
    )
    batch_id: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Drain run that last claimed the job"
    )
    priority: Mapped[int] = mapped_column(
        SmallInteger,
        nullable=False,
        default=5,
        comment="Priority 1-10, higher runs first",
    )
    idempotency_key: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=3)

    scheduled_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow
    )
    started_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed', 'cancelled')",
            name="embedding_jobs_status_check",
        ),
        CheckConstraint(
            "priority BETWEEN 1 AND 10", name="embedding_jobs_priority_check"
        ),
        Index("ix_embedding_jobs_status_priority", "status", "priority", "scheduled_at"),
        Index(
            "ix_embedding_jobs_source",
            "organization_id",
            "source_table",
            "source_id",
            "source_field",
        ),
    )


class Embedding(Base):
    """
    One chunk of an embedded source field.

    Each (organization, table, source id, field) has at most one active
    generation; older generations stay as rows with is_active=False.
    """

    __tablename__ = "embeddings"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    organization_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    source_table: Mapped[str] = mapped_column(Text, nullable=False)
    source_id: Mapped[str] = mapped_column(Text, nullable=False)
    source_field: Mapped[str] = mapped_column(Text, nullable=False)
    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False)
    chunk_text: Mapped[str] = mapped_column(Text, nullable=False)
    content_hash: Mapped[str] = mapped_column(Text, nullable=False)
    embedding_model: Mapped[str] = mapped_column(Text, nullable=False)
    # Stored as a JSON array of floats; a pgvector column can replace it in a migration
    embedding: Mapped[list[float]] = mapped_column(
        JSON, nullable=False
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        Index(
            "ix_embeddings_source_active",
            "organization_id",
            "source_table",
            "source_id",
            "source_field",
            "is_active",
        ),
        Index("ix_embeddings_model", "embedding_model"),
        Index(
            "ux_embeddings_active_chunk",
            "organization_id",
            "source_table",
            "source_id",
            "source_field",
            "chunk_index",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<Embedding(source={self.source_table}/{self.source_id}/{self.source_field}, "
            f"chunk={self.chunk_index}, active={self.is_active})>"
        )
