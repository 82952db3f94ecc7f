from fastapi import APIRouter, Request
from sqlalchemy.ext.asyncio import AsyncSession

from jobledger.config.logging import get_logger
from jobledger.config.settings import Settings, SettingsDep
from jobledger.infra.database import SessionDep
from jobledger.v1.core.exceptions import create_success_response
from jobledger.v1.core.security import WorkerAuthDep
from jobledger.v1.embeddings.registry_init import get_vectorizer
from jobledger.v1.embeddings.runner import drain_jobs, enqueue_job
from jobledger.v1.embeddings.schemas import EmbeddingEnqueueRequest

logger = get_logger(__name__)

router = APIRouter(dependencies=[WorkerAuthDep])


@router.post("/enqueue", response_model=dict)
async def enqueue_embedding(
    body: EmbeddingEnqueueRequest,
    request: Request,
    settings: Settings = SettingsDep,
    session: AsyncSession = SessionDep,
):
    """Queue one source field for embedding unless its content is unchanged."""
    vectorizer = get_vectorizer(settings)
    result = await enqueue_job(session, body, settings, vectorizer.get_model_version())

    logger.info(
        "Enqueue handled",
        source_table=body.source_table,
        source_id=body.source_id,
        source_field=body.source_field,
        skipped=result.skipped,
    )
    return create_success_response(
        data=result.model_dump(mode="json"),
        message=result.message,
        request_id=getattr(request.state, "request_id", None),
    )


@router.post("/drain", response_model=dict)
async def drain_embeddings(
    request: Request,
    settings: Settings = SettingsDep,
    session: AsyncSession = SessionDep,
):
    """Process one bounded batch of pending embedding jobs."""
    result = await drain_jobs(session, settings, get_vectorizer(settings))

    logger.info(
        "Drain handled",
        processed_count=result.processed_count,
        failed_count=result.failed_count,
        skipped_count=result.skipped_count,
    )
    return create_success_response(
        data=result.model_dump(mode="json"),
        message=result.message,
        request_id=getattr(request.state, "request_id", None),
    )
