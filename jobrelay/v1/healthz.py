from datetime import UTC, datetime

from fastapi import APIRouter
from pydantic import BaseModel

from jobrelay.config.settings import Settings, SettingsDep
from jobrelay.v1.core.exceptions import create_success_response
from jobrelay.v1.jobs.models import JobType
from jobrelay.v1.jobs.runtime import JobRuntime, RuntimeDep

router = APIRouter()


class DatabaseHealth(BaseModel):
    """Database health status."""

    connected: bool
    response_time_ms: float | None = None
    error: str | None = None


class QueueHealth(BaseModel):
    """Execution engine status."""

    backend: str
    reachable: bool
    queue_depth: int = 0
    active: int = 0
    failed: int = 0
    error: str | None = None


@router.get("/healthz", response_model=dict)
async def health_check(
    settings: Settings = SettingsDep, runtime: JobRuntime = RuntimeDep
):
    """Health check with database connectivity and engine queue depth."""

    timestamp = datetime.now(UTC).isoformat()

    db_health = await _check_database_health(runtime)
    queue_health = await _check_queue_health(runtime, settings)

    health_data = {
        "ok": db_health.connected and queue_health.reachable,
        "version": settings.version,
        "environment": settings.environment,
        "timestamp": timestamp,
        "database": db_health.model_dump(),
        "queue": queue_health.model_dump(),
    }

    return create_success_response(data=health_data)


async def _check_database_health(runtime: JobRuntime) -> DatabaseHealth:
    """Check database connectivity and response time."""
    start_time = datetime.now(UTC)

    try:
        await runtime.database.ping()

        end_time = datetime.now(UTC)
        response_time_ms = (end_time - start_time).total_seconds() * 1000

        return DatabaseHealth(
            connected=True, response_time_ms=round(response_time_ms, 2)
        )

    except Exception as e:
        return DatabaseHealth(connected=False, error=str(e))


async def _check_queue_health(runtime: JobRuntime, settings: Settings) -> QueueHealth:
    """Sum engine item counts across every job type's queue."""
    backend = settings.queue_backend.value

    try:
        counts = await runtime.dispatcher.queue_counts(JobType.values())
    except Exception as e:
        return QueueHealth(backend=backend, reachable=False, error=str(e))

    return QueueHealth(
        backend=backend,
        reachable=True,
        queue_depth=sum(c["waiting"] + c["delayed"] for c in counts.values()),
        active=sum(c["active"] for c in counts.values()),
        failed=sum(c["failed"] for c in counts.values()),
    )
