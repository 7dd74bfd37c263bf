from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from jobcore.config.logging import get_logger, setup_logging
from jobcore.config.settings import Settings
from jobcore.config.settings import settings as default_settings
from jobcore.v1.core.exceptions import (
    JobCoreException,
    RequestContextMiddleware,
    general_exception_handler,
    http_exception_handler,
    jobcore_exception_handler,
)
from jobcore.v1.healthz import router as health_router
from jobcore.v1.jobs.routes import metrics_router
from jobcore.v1.jobs.routes import router as jobs_router
from jobcore.v1.jobs.runtime import JobRuntime, build_runtime

logger = get_logger(__name__)


def create_app(
    settings: Settings | None = None, runtime: JobRuntime | None = None
) -> FastAPI:
    """Create and configure the FastAPI application."""

    settings = settings or default_settings

    # Initialize structured logging
    setup_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        job_runtime = runtime or build_runtime(settings)
        app.state.runtime = job_runtime
        await job_runtime.prepare()
        if settings.run_workers_in_api:
            await job_runtime.start_workers()
        logger.info(
            "Application started",
            environment=settings.environment,
            workers_in_process=settings.run_workers_in_api,
        )
        try:
            yield
        finally:
            await job_runtime.close()
            logger.info("Application stopped")

    app = FastAPI(
        title=settings.app_name,
        description="Asynchronous job processing core",
        version=settings.version,
        debug=settings.debug,
        lifespan=lifespan,
        # All endpoints will be under /v1/ prefix
        openapi_url="/v1/openapi.json" if settings.debug else None,
        docs_url="/v1/docs" if settings.debug else None,
        redoc_url="/v1/redoc" if settings.debug else None,
    )
    app.state.settings = settings

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
    app.add_exception_handler(JobCoreException, jobcore_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    # Include routers with /v1 prefix
    app.include_router(health_router, prefix="/v1", tags=["health"])
    app.include_router(jobs_router, prefix="/v1")
    app.include_router(metrics_router)

    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "jobcore.main:create_app",
        factory=True,
        host=default_settings.host,
        port=default_settings.port,
        reload=default_settings.debug,
    )
