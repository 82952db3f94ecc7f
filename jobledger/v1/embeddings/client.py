"""
Producer-side client for the embedding worker.

enqueue/drain are plain HTTP calls authenticated with the shared worker token.
Transport and protocol failures come back as success=False results; nothing
is retried at this layer.
"""

import logging
from typing import Any

import httpx
from pydantic import ValidationError as PydanticValidationError

from jobledger.config.settings import Settings
from jobledger.v1.embeddings.hashing import build_idempotency_key, content_hash
from jobledger.v1.embeddings.schemas import (
    DrainResponse,
    DrainResult,
    EmbeddingEnqueueRequest,
    EnqueueResponse,
    EnqueueResult,
)

logger = logging.getLogger(__name__)


class WorkerError(Exception):
    """The embedding worker could not be reached or rejected the call."""


class EmbeddingWorkerClient:
    """HTTP client for the embedding worker's enqueue/drain endpoints."""

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient | None = None):
        self.base_url = settings.worker_base_url.rstrip("/")
        self.default_headers = {"Authorization": f"Bearer {settings.worker_token}"}
        self._owns_client = http_client is None
        self.client = http_client or httpx.AsyncClient(timeout=settings.worker_timeout_s)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    def _handle_response(self, response: httpx.Response) -> dict[str, Any]:
        """Unwrap the worker's response envelope."""
        try:
            data = response.json()
        except ValueError:
            raise WorkerError(
                f"Invalid JSON response: {response.status_code}"
            ) from None

        if response.status_code >= 400:
            error_msg = "Unknown error"
            if isinstance(data, dict):
                error_msg = (data.get("error") or {}).get("message", error_msg)
            raise WorkerError(f"Worker error {response.status_code}: {error_msg}")

        if isinstance(data, dict) and "ok" in data:
            if not data.get("ok", False):
                error_msg = (data.get("error") or {}).get("message", "Request failed")
                raise WorkerError(error_msg)
            return data.get("data") or {}

        if not isinstance(data, dict):
            raise WorkerError("Unexpected response shape from worker")
        return data

    async def post(self, path: str, json: dict[str, Any] | None = None) -> dict[str, Any]:
        """POST to {worker_base_url}{path} and return the unwrapped payload."""
        try:
            response = await self.client.post(
                f"{self.base_url}{path}", json=json, headers=self.default_headers
            )
        except httpx.HTTPError as e:
            raise WorkerError(f"Connection failed: {e}") from None
        return self._handle_response(response)

    async def health_check(self) -> dict[str, Any]:
        """GET the worker's /v1/healthz (one level above the embeddings routes)."""
        service_root = self.base_url.rsplit("/", 1)[0]
        try:
            response = await self.client.get(
                f"{service_root}/healthz", headers=self.default_headers
            )
        except httpx.HTTPError as e:
            raise WorkerError(f"Connection failed: {e}") from None
        return self._handle_response(response)


async def enqueue_embedding_job(
    client: EmbeddingWorkerClient, request: EmbeddingEnqueueRequest
) -> EnqueueResult:
    """
    Submit one source field to the worker's enqueue endpoint.

    The content hash and idempotency key are computed here as well so the
    caller can log and correlate them; the worker recomputes both.
    """
    hash_hex = content_hash(request.content_text)
    idempotency_key = build_idempotency_key(
        request.organization_id,
        request.source_table,
        request.source_id,
        request.source_field,
        hash_hex,
    )

    try:
        payload = await client.post("/enqueue", json=request.model_dump(mode="json"))
        reply = EnqueueResponse.model_validate(payload)
    except (WorkerError, PydanticValidationError) as e:
        logger.error(
            "Failed to enqueue embedding job",
            extra={
                "source_table": request.source_table,
                "source_id": request.source_id,
                "source_field": request.source_field,
                "error": str(e),
            },
        )
        return EnqueueResult(
            success=False,
            message=str(e),
            content_hash=hash_hex,
            idempotency_key=idempotency_key,
        )

    logger.info(
        "Embedding job enqueued",
        extra={
            "job_id": str(reply.job_id) if reply.job_id else None,
            "source_table": request.source_table,
            "source_id": request.source_id,
            "source_field": request.source_field,
            "skipped": reply.skipped,
        },
    )
    return EnqueueResult(
        success=True,
        job_id=reply.job_id,
        message=reply.message,
        skipped=reply.skipped,
        content_hash=hash_hex,
        idempotency_key=idempotency_key,
    )


async def drain_embedding_jobs(client: EmbeddingWorkerClient) -> DrainResult:
    """Ask the worker to process one bounded batch of pending jobs."""
    try:
        payload = await client.post("/drain")
        reply = DrainResponse.model_validate(payload)
    except (WorkerError, PydanticValidationError) as e:
        logger.error("Failed to drain embedding jobs", extra={"error": str(e)})
        return DrainResult(success=False, message=str(e))

    logger.info(
        "Embedding jobs drained",
        extra={
            "processed_count": reply.processed_count,
            "failed_count": reply.failed_count,
        },
    )
    return DrainResult(
        success=True,
        processed_count=reply.processed_count,
        failed_count=reply.failed_count,
        message=reply.message,
    )
