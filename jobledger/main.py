from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from jobledger.config.logging import setup_logging
from jobledger.config.settings import settings
from jobledger.infra.database import get_database
from jobledger.v1.core.exceptions import (
    JobLedgerException,
    RequestContextMiddleware,
    general_exception_handler,
    http_exception_handler,
    job_ledger_exception_handler,
    request_validation_exception_handler,
)
from jobledger.v1.core.registries import vectorizer_registry
from jobledger.v1.embeddings.registry_init import init_vectorizer_registry
from jobledger.v1.embeddings.routes import router as embeddings_router
from jobledger.v1.healthz import router as health_router


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await get_database(settings).close()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""

    # Initialize structured logging
    setup_logging()

    app = FastAPI(
        title=settings.app_name,
        description="Job run ledger and embedding work queue worker",
        version=settings.version,
        debug=settings.debug,
        lifespan=lifespan,
        # All endpoints live under the /v1 prefix
        openapi_url="/v1/openapi.json" if settings.debug else None,
        docs_url="/v1/docs" if settings.debug else None,
        redoc_url="/v1/redoc" if settings.debug else None,
    )

    # Add middleware
    app.add_middleware(RequestContextMiddleware)

    # Add CORS middleware for development
    if settings.debug:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    # Add exception handlers
    app.add_exception_handler(JobLedgerException, job_ledger_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, request_validation_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    # Include routers with /v1 prefix
    app.include_router(health_router, prefix="/v1", tags=["health"])
    app.include_router(embeddings_router, prefix="/v1/embeddings", tags=["embeddings"])

    if not vectorizer_registry.is_frozen():
        init_vectorizer_registry(settings)

    # Freeze registries outside development to prevent runtime modifications
    if settings.environment != "development":
        vectorizer_registry.freeze()

    return app


# Create the app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "jobledger.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        workers=1 if settings.debug else settings.workers,
    )
