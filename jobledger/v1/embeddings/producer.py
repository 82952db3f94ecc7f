"""
Organization-wide embedding enqueue.

Reads every text-bearing field of an organization's content rows and submits
one enqueue call per (row, field). Unchanged content is skipped by the worker,
so running this repeatedly is cheap.
"""

import logging
from uuid import UUID

from sqlalchemy import Uuid, column, inspect, select, table
from sqlalchemy.ext.asyncio import AsyncSession

from jobledger.config.settings import Settings, get_settings
from jobledger.infra.database import STORE_ERRORS
from jobledger.v1.embeddings.client import EmbeddingWorkerClient, enqueue_embedding_job
from jobledger.v1.embeddings.schemas import BulkEnqueueResult, EmbeddingEnqueueRequest

logger = logging.getLogger(__name__)


async def _table_columns(session: AsyncSession, table_name: str) -> set[str]:
    conn = await session.connection()
    columns = await conn.run_sync(
        lambda sync_conn: inspect(sync_conn).get_columns(table_name)
    )
    return {col["name"] for col in columns}


async def collect_field_requests(
    session: AsyncSession,
    table_name: str,
    organization_id: UUID,
    text_fields: list[str],
    priority: int = 5,
) -> list[EmbeddingEnqueueRequest]:
    """Build one enqueue request per populated text field of every row."""
    existing = await _table_columns(session, table_name)
    fields = [f for f in text_fields if f in existing]
    if not fields or "id" not in existing or "organization_id" not in existing:
        logger.info(
            "Content table has no embeddable fields",
            extra={"source_table": table_name},
        )
        return []

    content = table(table_name, column("id"), column("organization_id", Uuid))
    query = (
        select(content.c.id, *[column(f) for f in fields])
        .select_from(content)
        .where(content.c.organization_id == organization_id)
    )
    result = await session.execute(query)

    requests = []
    for row in result.mappings():
        for field in fields:
            text = row[field]
            if not isinstance(text, str) or not text.strip():
                continue
            requests.append(
                EmbeddingEnqueueRequest(
                    organization_id=organization_id,
                    source_table=table_name,
                    source_id=str(row["id"]),
                    source_field=field,
                    content_text=text,
                    priority=priority,
                )
            )
    return requests


async def enqueue_organization_embeddings(
    session: AsyncSession,
    client: EmbeddingWorkerClient,
    organization_id: UUID,
    content_types: list[str] | None = None,
    priority: int = 5,
    settings: Settings | None = None,
) -> BulkEnqueueResult:
    """
    Enqueue embedding jobs for every populated text field of an organization.

    Args:
        session: Database session used to read content tables
        client: Worker client used for the enqueue calls
        organization_id: Organization whose content is embedded
        content_types: Content tables to read; defaults to all configured tables
        priority: Priority assigned to every job (1-10)
        settings: Settings carrying the table and field allowlists

    Returns:
        BulkEnqueueResult with enqueued, skipped and failed counts. A failed
        submission is counted and the batch continues.
    """
    settings = settings or get_settings()
    tables = content_types or list(settings.embedding_content_tables)

    unknown = sorted(set(tables) - set(settings.embedding_content_tables))
    if unknown:
        return BulkEnqueueResult(
            success=False,
            message=f"Unknown content types: {', '.join(unknown)}",
        )
    if not 1 <= priority <= 10:
        return BulkEnqueueResult(
            success=False, message="priority must be between 1 and 10"
        )

    enqueued_count = 0
    skipped_count = 0
    failed_count = 0
    unreadable_tables = []

    for table_name in tables:
        try:
            requests = await collect_field_requests(
                session,
                table_name,
                organization_id,
                settings.embedding_text_fields,
                priority,
            )
        except STORE_ERRORS as e:
            await session.rollback()
            unreadable_tables.append(table_name)
            logger.error(
                "Failed to read content table",
                extra={"source_table": table_name, "error": str(e)},
            )
            continue

        for request in requests:
            result = await enqueue_embedding_job(client, request)
            if not result.success:
                failed_count += 1
            elif result.skipped:
                skipped_count += 1
            else:
                enqueued_count += 1

    if unreadable_tables and len(unreadable_tables) == len(tables):
        return BulkEnqueueResult(
            success=False,
            message=(
                "Bulk embedding enqueue failed: could not read "
                f"{', '.join(unreadable_tables)}"
            ),
        )

    message = (
        f"{enqueued_count} embedding jobs enqueued, {skipped_count} skipped "
        f"(already up to date), {failed_count} failed for organization {organization_id}"
    )
    if unreadable_tables:
        message += f"; unreadable tables: {', '.join(unreadable_tables)}"

    logger.info(
        "Organization embeddings enqueued",
        extra={
            "organization_id": str(organization_id),
            "enqueued_count": enqueued_count,
            "skipped_count": skipped_count,
            "failed_count": failed_count,
        },
    )
    return BulkEnqueueResult(
        success=True,
        enqueued_count=enqueued_count,
        skipped_count=skipped_count,
        failed_count=failed_count,
        message=message,
    )
