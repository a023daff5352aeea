import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import SQLAlchemyError

from jobrelay.config.logging import get_logger, setup_logging
from jobrelay.config.settings import Settings, get_settings
from jobrelay.v1.core.exceptions import (
    JobRelayException,
    RequestContextMiddleware,
    database_exception_handler,
    general_exception_handler,
    http_exception_handler,
    job_relay_exception_handler,
)
from jobrelay.v1.healthz import router as health_router
from jobrelay.v1.jobs.routes import router as jobs_router
from jobrelay.v1.jobs.runtime import JobRuntime

logger = get_logger(__name__)


def create_app(
    settings: Settings | None = None, runtime: JobRuntime | None = None
) -> FastAPI:
    """Create and configure the FastAPI application.

    A prebuilt ``runtime`` is used as is and left open on shutdown; otherwise
    the lifespan builds one from ``settings`` and closes it.
    """
    settings = settings or get_settings()

    # Initialize structured logging
    setup_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if runtime is not None:
            yield
            return

        app.state.runtime = await JobRuntime.create(settings)
        worker_task = None
        if settings.run_workers_in_process:
            pool = app.state.runtime.create_worker_pool()
            worker_task = asyncio.create_task(pool.start())
            logger.info("Worker pool started in API process", worker_id=pool.worker_id)

        try:
            yield
        finally:
            if worker_task is not None:
                await app.state.runtime.worker_pool.stop()
                worker_task.cancel()
                await asyncio.gather(worker_task, return_exceptions=True)
            await app.state.runtime.close()

    # Create FastAPI app with API versioning from day 1
    app = FastAPI(
        title=settings.app_name,
        description="Asynchronous job orchestration with durable job records",
        version=settings.version,
        debug=settings.debug,
        lifespan=lifespan,
        # All endpoints will be under /v1/ prefix
        openapi_url="/v1/openapi.json" if settings.debug else None,
        docs_url="/v1/docs" if settings.debug else None,
        redoc_url="/v1/redoc" if settings.debug else None,
    )

    if runtime is not None:
        app.state.runtime = runtime

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
    app.add_exception_handler(JobRelayException, job_relay_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(SQLAlchemyError, database_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    # Include routers with /v1 prefix
    app.include_router(health_router, prefix="/v1", tags=["health"])
    app.include_router(jobs_router, prefix="/v1")

    return app


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "jobrelay.main:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        workers=1 if settings.debug else settings.workers,
    )
