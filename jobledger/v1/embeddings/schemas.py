"""
Pydantic schemas for the embedding work queue.

Request bodies double as the wire contract with the embedding worker; the
result models are what producer-side functions return instead of raising.
"""

from datetime import datetime
from typing import Generic, TypeVar
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from jobledger.v1.embeddings.models import EmbeddingJobStatus

T = TypeVar("T")


class EmbeddingEnqueueRequest(BaseModel):
    """Body of POST {worker}/enqueue."""

    organization_id: UUID
    source_table: str = Field(..., min_length=1, max_length=100)
    source_id: str = Field(..., min_length=1, max_length=255)
    source_field: str = Field(..., min_length=1, max_length=100)
    content_text: str = Field(..., description="Text to embed")
    priority: int = Field(5, ge=1, le=10, description="1-10, higher runs first")

    @field_validator("content_text")
    @classmethod
    def content_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("content_text cannot be blank")
        return v


class EnqueueResponse(BaseModel):
    """Worker reply to an enqueue call."""

    job_id: UUID | None = None
    message: str
    skipped: bool = False


class DrainResponse(BaseModel):
    """Worker reply to a drain call."""

    processed_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0
    message: str


class EnqueueResult(BaseModel):
    """Producer-side outcome of enqueue_embedding_job."""

    success: bool
    job_id: UUID | None = None
    message: str
    skipped: bool = False
    content_hash: str | None = None
    idempotency_key: str | None = None


class DrainResult(BaseModel):
    """Producer-side outcome of drain_embedding_jobs."""

    success: bool
    processed_count: int = 0
    failed_count: int = 0
    message: str


class BulkEnqueueResult(BaseModel):
    """Outcome of enqueue_organization_embeddings."""

    success: bool
    enqueued_count: int = 0
    skipped_count: int = 0
    failed_count: int = 0
    message: str


class EmbeddingJobRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: UUID
    source_table: str
    source_id: str
    source_field: str
    content_hash: str
    chunk_count: int
    chunk_strategy: str
    embedding_model: str
    status: str
    batch_id: str | None = None
    priority: int
    idempotency_key: str
    error_message: str | None = None
    retry_count: int
    max_retries: int
    scheduled_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class EmbeddingRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: UUID
    source_table: str
    source_id: str
    source_field: str
    chunk_index: int
    chunk_text: str
    content_hash: str
    embedding_model: str
    is_active: bool
    created_at: datetime
    updated_at: datetime


class EmbeddingJobFilter(BaseModel):
    """Filters for get_embedding_jobs; every field is optional."""

    organization_id: UUID | None = None
    source_table: str | None = None
    source_field: str | None = None
    status: list[EmbeddingJobStatus] | None = None
    priority_min: int | None = Field(None, ge=1, le=10)
    priority_max: int | None = Field(None, ge=1, le=10)
    created_after: datetime | None = None
    created_before: datetime | None = None
    limit: int = Field(50, ge=1, le=500)
    offset: int = Field(0, ge=0)

    @model_validator(mode="after")
    def check_ranges(self) -> "EmbeddingJobFilter":
        if (
            self.priority_min is not None
            and self.priority_max is not None
            and self.priority_min > self.priority_max
        ):
            raise ValueError("priority_min cannot exceed priority_max")
        if (
            self.created_after is not None
            and self.created_before is not None
            and self.created_after > self.created_before
        ):
            raise ValueError("created_after cannot be later than created_before")
        return self


class EmbeddingFilter(BaseModel):
    """Filters for get_embeddings."""

    organization_id: UUID | None = None
    source_table: str | None = None
    source_id: str | None = None
    source_field: str | None = None
    is_active: bool | None = None
    embedding_model: str | None = None
    limit: int = Field(50, ge=1, le=500)
    offset: int = Field(0, ge=0)


class Page(BaseModel, Generic[T]):
    """One page of a filtered listing."""

    success: bool = True
    items: list[T] = Field(default_factory=list)
    total: int = 0
    limit: int
    offset: int
    error: str | None = None


class EmbeddingMetrics(BaseModel):
    total_jobs: int = 0
    pending_jobs: int = 0
    processing_jobs: int = 0
    completed_jobs: int = 0
    failed_jobs: int = 0
    avg_processing_time_minutes: float | None = None
    success_rate_percent: int = 0
    total_embeddings: int = 0
    total_chunks: int = 0
    jobs_by_table: dict[str, int] = Field(default_factory=dict)
    embeddings_by_table: dict[str, int] = Field(default_factory=dict)
    embeddings_by_model: dict[str, int] = Field(default_factory=dict)


class MetricsResult(BaseModel):
    success: bool
    metrics: EmbeddingMetrics | None = None
    error: str | None = None
