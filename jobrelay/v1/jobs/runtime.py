"""
Process-wide container for the job orchestration components.

Built once at process start and handed to every call site; routes reach it
through ``request.app.state.runtime``.
"""

from collections.abc import Iterable

from fastapi import Depends, Request

from jobrelay.config.logging import get_logger
from jobrelay.config.settings import QueueBackend, Settings
from jobrelay.infra.database import Database
from jobrelay.v1.core.registries import ProcessorRegistry
from jobrelay.v1.jobs.dispatcher import QueueDispatcher
from jobrelay.v1.jobs.engine import DatabaseEngine, ExecutionEngine, MemoryEngine
from jobrelay.v1.jobs.lifecycle import JobLifecycle
from jobrelay.v1.jobs.registry_init import build_processor_registry
from jobrelay.v1.jobs.service import JobService
from jobrelay.v1.jobs.store import JobStore
from jobrelay.v1.jobs.worker import WorkerPool

logger = get_logger(__name__)


class JobRuntime:
    """Owns the database, execution engine, registry, dispatcher and orchestrator."""

    def __init__(
        self,
        settings: Settings,
        database: Database,
        engine: ExecutionEngine,
        registry: ProcessorRegistry,
        engine_database: Database | None = None,
    ):
        self.settings = settings
        self.database = database
        self.engine = engine
        self.registry = registry
        self.engine_database = engine_database

        self.store = JobStore()
        self.dispatcher = QueueDispatcher(settings, engine)
        self.service = JobService(settings, self.store, self.dispatcher)
        self.lifecycle = JobLifecycle(database.SessionLocal, self.service)
        self.worker_pool: WorkerPool | None = None

    @classmethod
    async def create(
        cls, settings: Settings, registry: ProcessorRegistry | None = None
    ) -> "JobRuntime":
        """Build the runtime from settings, creating tables when configured."""
        database = Database(settings)
        engine_database = None

        if settings.queue_backend == QueueBackend.MEMORY:
            engine: ExecutionEngine = MemoryEngine(settings.queue_max_backoff_s)
        else:
            if settings.engine_database_url != settings.database_url:
                engine_database = Database(settings, settings.engine_database_url)
            engine = DatabaseEngine(
                (engine_database or database).SessionLocal,
                settings.queue_max_backoff_s,
            )

        if settings.auto_create_tables:
            await database.create_all()
            if engine_database is not None:
                await engine_database.create_all()

        runtime = cls(
            settings,
            database,
            engine,
            registry or build_processor_registry(settings),
            engine_database,
        )
        logger.info(
            "Job runtime ready",
            queue_backend=settings.queue_backend.value,
            processors=runtime.registry.list(),
        )
        return runtime

    def create_worker_pool(self, job_types: Iterable[str] | None = None) -> WorkerPool:
        """Build (once) the worker pool consuming every job type's queue."""
        if self.worker_pool is None:
            self.worker_pool = WorkerPool(
                self.settings, self.engine, self.registry, self.lifecycle, job_types
            )
        return self.worker_pool

    async def close(self) -> None:
        """Release engine and database resources."""
        await self.engine.close()
        if self.engine_database is not None:
            await self.engine_database.close()
        await self.database.close()
        logger.info("Job runtime closed")


def get_runtime(request: Request) -> JobRuntime:
    """Dependency injection function for the job runtime."""
    return request.app.state.runtime


def get_job_service(runtime: JobRuntime = Depends(get_runtime)) -> JobService:
    return runtime.service


# Convenience type aliases for dependency injection
RuntimeDep = Depends(get_runtime)
JobServiceDep = Depends(get_job_service)
