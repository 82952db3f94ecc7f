"""create job runs ledger and embedding queue tables

Revision ID: 3a1f6c2d9b10
Revises:
Create Date: 2026-10-19 09:12:41.508213

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "3a1f6c2d9b10"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        "job_runs",
        sa.Column("id", sa.UUID(as_uuid=True), primary_key=True),
        sa.Column("job_name", sa.Text, nullable=False, comment="Logical job identifier"),
        sa.Column(
            "idempotency_key",
            sa.Text,
            nullable=True,
            comment="Collapses duplicate begin requests",
        ),
        sa.Column(
            "request_id",
            sa.Text,
            nullable=True,
            comment="Originating request ID for tracing",
        ),
        sa.Column(
            "status",
            sa.Text,
            nullable=False,
            server_default="running",
            comment="pending|running|succeeded|failed|cancelled|timeout|skipped",
        ),
        sa.Column("started_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("finished_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column(
            "retry_count",
            sa.Integer,
            nullable=False,
            server_default="0",
            comment="Failures recorded for this run",
        ),
        sa.Column("error_code", sa.Text, nullable=True, comment="Structured error identifier"),
        sa.Column(
            "error_message",
            sa.Text,
            nullable=True,
            comment="Error text, at most 2048 characters",
        ),
        sa.Column(
            "meta",
            postgresql.JSONB,
            nullable=True,
            server_default=sa.text("'{}'::jsonb"),
            comment="Sanitized run metadata",
        ),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.UniqueConstraint(
            "job_name", "idempotency_key", name="uq_job_runs_job_name_idempotency_key"
        ),
        sa.CheckConstraint(
            "status IN ('pending', 'running', 'succeeded', 'failed', "
            "'cancelled', 'timeout', 'skipped')",
            name="job_runs_status_check",
        ),
        sa.CheckConstraint(
            "error_message IS NULL OR char_length(error_message) <= 2048",
            name="job_runs_error_message_length_check",
        ),
    )

    # Governor counts running rows per job name within a trailing window
    op.create_index(
        "ix_job_runs_job_name_status_started",
        "job_runs",
        ["job_name", "status", "started_at"],
    )
    op.create_index("ix_job_runs_created_at", "job_runs", ["created_at"])

    op.create_table(
        "embedding_jobs",
        sa.Column("id", sa.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "organization_id",
            sa.UUID(as_uuid=True),
            nullable=False,
            comment="Owning organization",
        ),
        sa.Column("source_table", sa.Text, nullable=False),
        sa.Column("source_id", sa.Text, nullable=False),
        sa.Column("source_field", sa.Text, nullable=False),
        sa.Column(
            "content_hash",
            sa.Text,
            nullable=False,
            comment="SHA-256 hex digest of content_text",
        ),
        sa.Column("content_text", sa.Text, nullable=False),
        sa.Column("chunk_count", sa.Integer, nullable=False, server_default="1"),
        sa.Column("chunk_strategy", sa.Text, nullable=False, server_default="overlap"),
        sa.Column("embedding_model", sa.Text, nullable=False),
        sa.Column(
            "status",
            sa.Text,
            nullable=False,
            server_default="pending",
            comment="pending|processing|completed|failed|cancelled",
        ),
        sa.Column(
            "batch_id",
            sa.Text,
            nullable=True,
            comment="Drain run that last claimed the job",
        ),
        sa.Column(
            "priority",
            sa.SmallInteger,
            nullable=False,
            server_default="5",
            comment="Priority 1-10, higher runs first",
        ),
        sa.Column("idempotency_key", sa.Text, nullable=False, unique=True),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("retry_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_retries", sa.Integer, nullable=False, server_default="3"),
        sa.Column(
            "scheduled_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("started_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("completed_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed', 'cancelled')",
            name="embedding_jobs_status_check",
        ),
        sa.CheckConstraint(
            "priority BETWEEN 1 AND 10", name="embedding_jobs_priority_check"
        ),
    )

    # Drain selects by status, then priority desc and scheduled_at asc
    op.create_index(
        "ix_embedding_jobs_status_priority",
        "embedding_jobs",
        ["status", "priority", "scheduled_at"],
    )
    op.create_index(
        "ix_embedding_jobs_source",
        "embedding_jobs",
        ["organization_id", "source_table", "source_id", "source_field"],
    )

    op.create_table(
        "embeddings",
        sa.Column("id", sa.UUID(as_uuid=True), primary_key=True),
        sa.Column("organization_id", sa.UUID(as_uuid=True), nullable=False),
        sa.Column("source_table", sa.Text, nullable=False),
        sa.Column("source_id", sa.Text, nullable=False),
        sa.Column("source_field", sa.Text, nullable=False),
        sa.Column("chunk_index", sa.Integer, nullable=False),
        sa.Column("chunk_text", sa.Text, nullable=False),
        sa.Column("content_hash", sa.Text, nullable=False),
        sa.Column("embedding_model", sa.Text, nullable=False),
        sa.Column("embedding", sa.JSON, nullable=False, comment="Vector as a JSON array"),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )

    op.create_index(
        "ix_embeddings_source_active",
        "embeddings",
        ["organization_id", "source_table", "source_id", "source_field", "is_active"],
    )
    op.create_index("ix_embeddings_model", "embeddings", ["embedding_model"])

    # At most one active chunk per index in a source field's generation
    op.execute(
        """
        CREATE UNIQUE INDEX ux_embeddings_active_chunk
        ON embeddings (organization_id, source_table, source_id, source_field, chunk_index)
        WHERE is_active
        """
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.execute("DROP INDEX IF EXISTS ux_embeddings_active_chunk")
    op.drop_index("ix_embeddings_model", table_name="embeddings")
    op.drop_index("ix_embeddings_source_active", table_name="embeddings")
    op.drop_table("embeddings")

    op.drop_index("ix_embedding_jobs_source", table_name="embedding_jobs")
    op.drop_index("ix_embedding_jobs_status_priority", table_name="embedding_jobs")
    op.drop_table("embedding_jobs")

    op.drop_index("ix_job_runs_created_at", table_name="job_runs")
    op.drop_index("ix_job_runs_job_name_status_started", table_name="job_runs")
    op.drop_table("job_runs")
