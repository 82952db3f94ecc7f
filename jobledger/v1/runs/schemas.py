"""
Result and record schemas for the job run ledger.

Every ledger operation returns one of these models instead of raising, so
callers branch on fields rather than on exception types.
"""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, computed_field

from jobledger.v1.runs.models import JobRunStatus


class JobRunRecord(BaseModel):
    """Snapshot of a job_runs row."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    job_name: str
    idempotency_key: str | None = None
    request_id: str | None = None
    status: str
    started_at: datetime | None = None
    finished_at: datetime | None = None
    retry_count: int = 0
    error_code: str | None = None
    error_message: str | None = None
    meta: dict[str, Any] | None = None
    created_at: datetime
    updated_at: datetime

    @computed_field
    @property
    def duration_ms(self) -> int | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return int((self.finished_at - self.started_at).total_seconds() * 1000)

    @property
    def cancel_requested(self) -> bool:
        return bool((self.meta or {}).get("cancel_requested"))

    def is_terminal(self) -> bool:
        return self.status not in (JobRunStatus.PENDING.value, JobRunStatus.RUNNING.value)

    def can_retry(self, max_retries: int) -> bool:
        """Check if a failed run may be attempted again under a caller-supplied cap."""
        return self.status == JobRunStatus.FAILED.value and self.retry_count < max_retries


class BeginRunResult(BaseModel):
    """Outcome of begin_run.

    success=True, is_duplicate=False: this caller owns a fresh run.
    success=True, is_duplicate=True: another caller already owns the run.
    success=False, is_duplicate=True: the keyed work already finished.
    success=False, is_duplicate=False: the store could not be reached.
    """

    success: bool
    record: JobRunRecord | None = None
    is_duplicate: bool = False
    error: str | None = None


class CompletionOutcome(str, Enum):
    COMPLETED = "completed"
    NOT_RUNNING = "not_running"
    STORE_ERROR = "store_error"


class CompletionResult(BaseModel):
    """Outcome of a guarded update on a running job run."""

    success: bool
    outcome: CompletionOutcome
    record: JobRunRecord | None = None
    error: str | None = None


class ConcurrencyCheck(BaseModel):
    """Advisory admission decision for a job name."""

    can_run: bool
    current_running: int


class JobRunStats(BaseModel):
    """Rollup over the ledger."""

    total_runs: int
    by_status: dict[str, int]
    by_job_name: dict[str, int]
    running: int
    failed_last_hour: int
    avg_duration_ms: float | None = None


class JobRunPage(BaseModel):
    """Paginated ledger listing."""

    runs: list[JobRunRecord] = Field(default_factory=list)
    total: int = 0
    limit: int = 50
    offset: int = 0
    error: str | None = None
