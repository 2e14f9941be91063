from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from docworker.config.logging import get_logger, setup_logging
from docworker.config.settings import Settings, settings as default_settings
from docworker.infra.database import Database
from docworker.v1.core.exceptions import (
    DocWorkerError,
    RequestContextMiddleware,
    docworker_exception_handler,
    general_exception_handler,
    http_exception_handler,
)
from docworker.v1.healthz import router as health_router
from docworker.v1.infra.jobs.routes import router as jobs_router
from docworker.v1.infra.jobs.store import JobStore
from docworker.v1.infra.workers.bootstrap import WorkerBootstrap

logger = get_logger(__name__)


def create_app(settings: Settings | None = None, database: Database | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or default_settings

    # Initialize structured logging
    setup_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        db = database or Database(settings)
        app.state.database = db
        app.state.store = JobStore(db, settings)
        app.state.bootstrap = None

        if settings.embedded_workers:
            bootstrap = WorkerBootstrap(db, settings, store=app.state.store)
            await bootstrap.start_workers()
            app.state.bootstrap = bootstrap
            logger.info("Embedded workers started")

        try:
            yield
        finally:
            if app.state.bootstrap is not None:
                await app.state.bootstrap.stop_workers()
            if database is None:
                await db.close()

    app = FastAPI(
        title=settings.app_name,
        description="Document processing job queue and worker pool",
        version=settings.version,
        debug=settings.debug,
        openapi_url="/v1/openapi.json" if settings.debug else None,
        docs_url="/v1/docs" if settings.debug else None,
        redoc_url="/v1/redoc" if settings.debug else None,
        lifespan=lifespan,
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
    app.add_exception_handler(DocWorkerError, docworker_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    # Include routers with /v1 prefix
    app.include_router(health_router, prefix="/v1", tags=["health"])
    app.include_router(jobs_router, prefix="/v1")

    return app


# Create the app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "docworker.main:app",
        host=default_settings.host,
        port=default_settings.port,
        reload=default_settings.debug,
    )
