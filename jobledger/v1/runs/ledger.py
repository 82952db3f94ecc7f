"""
Job run ledger: begin/complete bookkeeping for named executions.

All coordination comes from the store. The UNIQUE(job_name, idempotency_key)
constraint collapses concurrent begin calls onto one row, and every mutation
is an UPDATE guarded on status='running', so a caller that loses a race sees
zero affected rows instead of overwriting someone else's outcome.

Functions take the session as an explicit dependency and never raise; callers
branch on the returned result models.
"""

import logging
import uuid
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import and_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from jobledger.config.logging import current_request_id
from jobledger.infra.database import STORE_ERRORS
from jobledger.infra.sql import json_merge
from jobledger.v1.runs.models import ACTIVE_RUN_STATUSES, JobRun, JobRunStatus
from jobledger.v1.runs.sanitizer import MAX_MESSAGE_FULL_CHARS, sanitize_job_meta
from jobledger.v1.runs.schemas import (
    BeginRunResult,
    CompletionOutcome,
    CompletionResult,
    JobRunRecord,
)

logger = logging.getLogger(__name__)

MAX_ERROR_MESSAGE_CHARS = 2048


def truncate_error_message(message: str | None) -> str | None:
    """Bound error text to the persisted column limit."""
    if message is None:
        return None
    return message[:MAX_ERROR_MESSAGE_CHARS]


async def _find_by_idempotency_key(
    session: AsyncSession, job_name: str, idempotency_key: str
) -> JobRun | None:
    result = await session.execute(
        select(JobRun).where(
            and_(
                JobRun.job_name == job_name,
                JobRun.idempotency_key == idempotency_key,
            )
        ).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def begin_run(
    session: AsyncSession,
    job_name: str,
    idempotency_key: str | None = None,
    meta: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> BeginRunResult:
    """
    Record the start of a job run.

    Args:
        session: Database session
        job_name: Logical job identifier
        idempotency_key: Optional key collapsing duplicate triggers
        meta: Caller metadata, sanitized before storage
        request_id: Tracing id; defaults to the bound request context or a new UUID

    Returns:
        BeginRunResult describing a fresh run, a duplicate, or a failure
    """
    now = datetime.now(UTC)
    run = JobRun(
        id=uuid.uuid4(),
        job_name=job_name,
        idempotency_key=idempotency_key,
        request_id=request_id or current_request_id() or str(uuid.uuid4()),
        status=JobRunStatus.RUNNING.value,
        started_at=now,
        retry_count=0,
        meta=sanitize_job_meta(meta),
        created_at=now,
        updated_at=now,
    )

    try:
        session.add(run)
        await session.commit()
        await session.refresh(run)
    except IntegrityError as e:
        await session.rollback()
        if idempotency_key is None:
            logger.error(
                "Failed to begin job run",
                extra={"job_name": job_name, "error": str(e)},
            )
            return BeginRunResult(success=False, is_duplicate=False, error=str(e))
        return await _resolve_duplicate(session, job_name, idempotency_key)
    except STORE_ERRORS as e:
        await session.rollback()
        logger.error(
            "Failed to begin job run", extra={"job_name": job_name, "error": str(e)}
        )
        return BeginRunResult(success=False, is_duplicate=False, error=str(e))

    logger.info(
        "Job run started",
        extra={
            "job_id": str(run.id),
            "job_name": job_name,
            "idempotency_key": idempotency_key,
        },
    )
    return BeginRunResult(
        success=True, record=JobRunRecord.model_validate(run), is_duplicate=False
    )


async def _resolve_duplicate(
    session: AsyncSession, job_name: str, idempotency_key: str
) -> BeginRunResult:
    """Branch on the row that won the uniqueness race."""
    logger.info(
        "Job idempotency key collision, fetching existing",
        extra={"job_name": job_name, "idempotency_key": idempotency_key},
    )
    try:
        existing = await _find_by_idempotency_key(session, job_name, idempotency_key)
    except STORE_ERRORS as e:
        await session.rollback()
        return BeginRunResult(
            success=False,
            is_duplicate=False,
            error=f"Failed to fetch existing job record: {e}",
        )

    if existing is None:
        return BeginRunResult(
            success=False,
            is_duplicate=False,
            error="Failed to fetch existing job record",
        )

    record = JobRunRecord.model_validate(existing)
    if record.status in ACTIVE_RUN_STATUSES:
        logger.warning(
            "Duplicate job execution prevented",
            extra={"job_id": str(record.id), "existing_status": record.status},
        )
        return BeginRunResult(success=True, record=record, is_duplicate=True)

    logger.warning(
        "Job with same idempotency_key exists in final state",
        extra={"job_id": str(record.id), "existing_status": record.status},
    )
    return BeginRunResult(
        success=False,
        record=record,
        is_duplicate=True,
        error=f"Job already exists in {record.status} state",
    )


async def get_or_create_by_idempotency_key(
    session: AsyncSession,
    job_name: str,
    idempotency_key: str,
    meta: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> BeginRunResult:
    """Begin a keyed run, or return the run already holding the key."""
    return await begin_run(
        session,
        job_name,
        idempotency_key=idempotency_key,
        meta=meta,
        request_id=request_id,
    )


async def _update_running(
    session: AsyncSession,
    job_id: UUID,
    values: dict[str, Any],
    not_found_message: str,
) -> CompletionResult:
    """Apply values to a row only while it is still running."""
    stmt = (
        update(JobRun)
        .where(
            and_(JobRun.id == job_id, JobRun.status == JobRunStatus.RUNNING.value)
        )
        .values(**values)
        .returning(*JobRun.__table__.c)
        .execution_options(synchronize_session=False)
    )
    try:
        result = await session.execute(stmt)
        row = result.mappings().first()
        await session.commit()
    except STORE_ERRORS as e:
        await session.rollback()
        return CompletionResult(
            success=False, outcome=CompletionOutcome.STORE_ERROR, error=str(e)
        )

    if row is None:
        return CompletionResult(
            success=False,
            outcome=CompletionOutcome.NOT_RUNNING,
            error=not_found_message,
        )

    return CompletionResult(
        success=True,
        outcome=CompletionOutcome.COMPLETED,
        record=JobRunRecord.model_validate(dict(row)),
    )


def _finish_values(
    session: AsyncSession, status: JobRunStatus, meta: dict[str, Any] | None
) -> dict[str, Any]:
    now = datetime.now(UTC)
    values: dict[str, Any] = {
        "status": status.value,
        "finished_at": now,
        "updated_at": now,
    }
    sanitized = sanitize_job_meta(meta)
    if sanitized:
        values["meta"] = json_merge(session, JobRun.meta, sanitized)
    return values


async def complete_success(
    session: AsyncSession, job_id: UUID, meta: dict[str, Any] | None = None
) -> CompletionResult:
    """Mark a running job run as succeeded."""
    result = await _update_running(
        session,
        job_id,
        _finish_values(session, JobRunStatus.SUCCEEDED, meta),
        "No running job found to complete",
    )

    if result.success:
        logger.info(
            "Job completed successfully",
            extra={
                "job_id": str(job_id),
                "job_name": result.record.job_name,
                "duration_ms": result.record.duration_ms,
            },
        )
    else:
        logger.error(
            "Failed to complete job success",
            extra={"job_id": str(job_id), "error": result.error},
        )
    return result


async def complete_failure(
    session: AsyncSession,
    job_id: UUID,
    error_code: str | None = None,
    error_message: str | None = None,
    meta: dict[str, Any] | None = None,
) -> CompletionResult:
    """
    Mark a running job run as failed.

    The stored error_message is capped at 2048 characters; up to 5000
    characters of the original are kept under meta.error_details.message_full.
    retry_count is incremented in the same UPDATE.
    """
    failure_meta = dict(meta or {})
    if error_message:
        error_details = dict(failure_meta.get("error_details") or {})
        error_details["message_full"] = error_message[:MAX_MESSAGE_FULL_CHARS]
        failure_meta["error_details"] = error_details

    values = _finish_values(session, JobRunStatus.FAILED, failure_meta)
    values.update(
        error_code=error_code,
        error_message=truncate_error_message(error_message),
        retry_count=JobRun.retry_count + 1,
    )

    result = await _update_running(
        session, job_id, values, "No running job found to complete"
    )

    if result.success:
        logger.warning(
            "Job completed with failure",
            extra={
                "job_id": str(job_id),
                "job_name": result.record.job_name,
                "error_code": error_code,
                "retry_count": result.record.retry_count,
            },
        )
    else:
        logger.error(
            "Failed to complete job failure",
            extra={"job_id": str(job_id), "error": result.error},
        )
    return result


async def complete_cancelled(
    session: AsyncSession, job_id: UUID, meta: dict[str, Any] | None = None
) -> CompletionResult:
    """Mark a running job run as cancelled after it honored a cancel request."""
    result = await _update_running(
        session,
        job_id,
        _finish_values(session, JobRunStatus.CANCELLED, meta),
        "No running job found to cancel",
    )
    if result.success:
        logger.info(
            "Job cancelled",
            extra={"job_id": str(job_id), "job_name": result.record.job_name},
        )
    return result


async def expire_stale_runs(
    session: AsyncSession, job_name: str, max_age: timedelta
) -> int:
    """
    Move runs of job_name that have been running longer than max_age to timeout.

    A worker that dies mid-run never completes its row; this releases the
    slot it holds in the concurrency governor. Returns the number of runs
    expired, 0 when the store is unreachable.
    """
    now = datetime.now(UTC)
    try:
        result = await session.execute(
            update(JobRun)
            .where(
                and_(
                    JobRun.job_name == job_name,
                    JobRun.status == JobRunStatus.RUNNING.value,
                    JobRun.started_at < now - max_age,
                )
            )
            .values(
                status=JobRunStatus.TIMEOUT.value,
                finished_at=now,
                updated_at=now,
                error_code="LEASE_EXPIRED",
                error_message=f"Run exceeded its {max_age} lease without completing",
            )
            .returning(JobRun.id)
            .execution_options(synchronize_session=False)
        )
        expired = result.scalars().all()
        await session.commit()
    except STORE_ERRORS as e:
        await session.rollback()
        logger.error(
            "Failed to expire stale job runs",
            extra={"job_name": job_name, "error": str(e)},
        )
        return 0

    if expired:
        logger.warning(
            "Stale job runs timed out",
            extra={"job_name": job_name, "run_ids": [str(run_id) for run_id in expired]},
        )
    return len(expired)


async def request_cancel(session: AsyncSession, job_id: UUID) -> CompletionResult:
    """
    Ask a running job to stop.

    Only sets meta.cancel_requested; the executing worker is expected to poll
    is_cancel_requested at safe checkpoints and finish with complete_cancelled.
    """
    result = await _update_running(
        session,
        job_id,
        {
            "meta": json_merge(session, JobRun.meta, {"cancel_requested": True}),
            "updated_at": datetime.now(UTC),
        },
        "No running job found to cancel",
    )

    if result.success:
        logger.info(
            "Job cancel requested",
            extra={"job_id": str(job_id), "job_name": result.record.job_name},
        )
    else:
        logger.error(
            "Failed to request job cancel",
            extra={"job_id": str(job_id), "error": result.error},
        )
    return result


async def get_run(session: AsyncSession, job_id: UUID) -> JobRunRecord | None:
    """Fetch a job run by id; None when absent or unreachable."""
    try:
        result = await session.execute(
            select(JobRun)
            .where(JobRun.id == job_id)
            .execution_options(populate_existing=True)
        )
        run = result.scalar_one_or_none()
    except STORE_ERRORS as e:
        logger.error("Failed to fetch job run", extra={"job_id": str(job_id), "error": str(e)})
        return None
    return JobRunRecord.model_validate(run) if run else None


async def is_cancel_requested(session: AsyncSession, job_id: UUID) -> bool:
    """Cooperative cancellation checkpoint for job bodies."""
    try:
        result = await session.execute(
            select(JobRun.meta).where(JobRun.id == job_id)
        )
        meta = result.scalar_one_or_none()
    except STORE_ERRORS as e:
        logger.error(
            "Failed to read cancel flag", extra={"job_id": str(job_id), "error": str(e)}
        )
        return False
    return bool((meta or {}).get("cancel_requested"))
