import asyncio
from collections.abc import AsyncGenerator
from typing import Any

import pytest
from httpx import ASGITransport, AsyncClient

from jobrelay.config.settings import AuthMode, QueueBackend, Settings, get_settings
from jobrelay.infra.database import Database
from jobrelay.main import create_app
from jobrelay.v1.core.registries import ProcessorRegistry
from jobrelay.v1.jobs.models import JobType
from jobrelay.v1.jobs.runtime import JobRuntime


def build_settings(tmp_path, **overrides: Any) -> Settings:
    """Settings for an isolated SQLite database with instant retries."""
    values: dict[str, Any] = {
        "database_url": f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        "auto_create_tables": True,
        "queue_backend": QueueBackend.DATABASE,
        "queue_backoff_base_ms": 0,
        "processor_delay_scale": 0,
        "worker_rate_limit_max": 1000,
        "debug": False,
        "log_level": "WARNING",
    }
    values.update(overrides)
    return Settings(**values)


class RecordingProcessor:
    """Test processor returning a fixed result or raising a fixed error."""

    def __init__(
        self,
        result: dict[str, Any] | None = None,
        error: Exception | None = None,
        gate: asyncio.Event | None = None,
    ):
        self.result = result
        self.error = error
        self.gate = gate
        self.started = asyncio.Event()
        self.calls: list[dict[str, Any]] = []

    async def handle(self, payload: dict[str, Any]) -> dict[str, Any] | None:
        self.calls.append(payload)
        self.started.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.result


def registry_with(processor, job_types: list[str] | None = None) -> ProcessorRegistry:
    registry = ProcessorRegistry()
    for job_type in job_types or JobType.values():
        registry.register(job_type, processor)
    return registry


@pytest.fixture
def settings_factory(tmp_path):
    def factory(**overrides: Any) -> Settings:
        return build_settings(tmp_path, **overrides)

    return factory


@pytest.fixture(
    params=[QueueBackend.DATABASE, QueueBackend.MEMORY],
    ids=["database-engine", "memory-engine"],
)
def engine_backend(request) -> QueueBackend:
    return request.param


@pytest.fixture
async def runtime_factory(tmp_path, engine_backend):
    """Build job runtimes on the parametrized engine backend; closed on teardown."""
    created: list[JobRuntime] = []

    async def factory(registry: ProcessorRegistry | None = None, **overrides: Any):
        settings = build_settings(tmp_path, queue_backend=engine_backend, **overrides)
        runtime = await JobRuntime.create(settings, registry=registry)
        created.append(runtime)
        return runtime

    yield factory

    for runtime in created:
        await runtime.close()


@pytest.fixture
async def runtime(runtime_factory) -> JobRuntime:
    return await runtime_factory()


@pytest.fixture
async def session(runtime):
    async with runtime.database.SessionLocal() as session:
        yield session


@pytest.fixture
async def database(tmp_path) -> AsyncGenerator[Database, None]:
    """A bare database with all tables, for store and engine tests."""
    db = Database(build_settings(tmp_path))
    await db.create_all()
    yield db
    await db.close()


@pytest.fixture
async def api_runtime(tmp_path) -> AsyncGenerator[JobRuntime, None]:
    settings = build_settings(tmp_path, auth_mode=AuthMode.DEV)
    runtime = await JobRuntime.create(settings)
    yield runtime
    await runtime.close()


@pytest.fixture
async def client(api_runtime) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client bound to an app in dev auth mode (X-User-ID / X-Roles headers)."""
    app = create_app(api_runtime.settings, runtime=api_runtime)
    app.dependency_overrides[get_settings] = lambda: api_runtime.settings

    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as ac:
        yield ac
