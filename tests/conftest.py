import asyncio
import inspect

import pytest
from fastapi.testclient import TestClient

from jobcore.config.settings import BrokerBackend, RateLimiterBackend, Settings
from jobcore.infra.database import Database
from jobcore.main import create_app
from jobcore.v1.core.registries import JobTypeRegistry, TaskHandlerRegistry
from jobcore.v1.jobs.broker import BrokerTopology, InMemoryBroker
from jobcore.v1.jobs.handlers import CallableTaskHandler
from jobcore.v1.jobs.runtime import build_runtime
from jobcore.v1.jobs.schemas import BackoffPolicy, BackoffStrategy, JobTypeDefinition


class FakeClock:
    """Manually advanced clock for lease and delay tests."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def settings() -> Settings:
    """Fast in-memory settings for unit and worker tests."""
    return Settings(
        environment="test",
        debug=False,
        broker_backend=BrokerBackend.MEMORY,
        rate_limiter_backend=RateLimiterBackend.MEMORY,
        worker_count=1,
        prefetch_count=4,
        poll_interval_ms=5,
        rate_limit_defer_ms=20,
        maintenance_interval_s=0.05,
        shutdown_grace_s=1.0,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def topology() -> BrokerTopology:
    return BrokerTopology(prefix="jobs", ttl_safety_factor=2.0)


@pytest.fixture
def broker(topology: BrokerTopology, clock: FakeClock) -> InMemoryBroker:
    return InMemoryBroker(topology, clock=clock)


@pytest.fixture
def job_types() -> JobTypeRegistry:
    return JobTypeRegistry()


@pytest.fixture
def handlers() -> TaskHandlerRegistry:
    return TaskHandlerRegistry()


@pytest.fixture
def define(job_types: JobTypeRegistry):
    """Register a job type with zero-delay retries and a short timeout."""

    def _define(job_type: str, **overrides) -> JobTypeDefinition:
        values = {
            "type": job_type,
            "max_retries": 3,
            "timeout": 1.0,
            "backoff": BackoffPolicy(
                strategy=BackoffStrategy.FIXED, initial_delay=0.0, jitter=False
            ),
        }
        values.update(overrides)
        definition = JobTypeDefinition(**values)
        job_types.register_definition(definition)
        return definition

    return _define


@pytest.fixture
def handle(handlers: TaskHandlerRegistry):
    """Register a coroutine function as the handler of a job type."""

    def _handle(job_type: str, fn, on_terminal_failure=None) -> CallableTaskHandler:
        handler = CallableTaskHandler(fn, on_terminal_failure)
        handlers.register(job_type, handler)
        return handler

    return _handle


@pytest.fixture
async def runtime_factory(settings: Settings, job_types, handlers):
    """Build runtimes over the test registries and close them afterwards."""
    created = []

    def _build(**kwargs):
        runtime = build_runtime(
            kwargs.pop("settings", settings),
            job_types=job_types,
            handlers=handlers,
            **kwargs,
        )
        created.append(runtime)
        return runtime

    yield _build

    for runtime in created:
        await runtime.close()


@pytest.fixture
def eventually():
    """Poll a (possibly async) predicate until it holds."""

    async def _eventually(predicate, timeout: float = 5.0, interval: float = 0.01):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            result = predicate()
            if inspect.isawaitable(result):
                result = await result
            if result:
                return
            if loop.time() > deadline:
                raise AssertionError("Condition not met before timeout")
            await asyncio.sleep(interval)

    return _eventually


@pytest.fixture
def sql_settings(tmp_path) -> Settings:
    """Settings pointing at a throwaway SQLite database file."""
    return Settings(
        environment="test",
        debug=False,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'jobcore.db'}",
        broker_backend=BrokerBackend.SQL,
        rate_limiter_backend=RateLimiterBackend.SQL,
        worker_count=1,
        poll_interval_ms=5,
        rate_limit_defer_ms=20,
        maintenance_interval_s=0.05,
        shutdown_grace_s=1.0,
    )


@pytest.fixture
async def database(sql_settings: Settings):
    """Create a test database with all tables."""
    db = Database(sql_settings)
    await db.create_all()
    yield db
    await db.close()


@pytest.fixture
def app_registries(define, handle, job_types, handlers):
    """Registries with the job types the API tests submit."""
    define("echo")
    define(
        "render",
        rate_limit={"max_concurrent_per_owner": 2},
        severity="user_notice",
    )

    async def echo(job):
        return {"echo": job.payload}

    handle("echo", echo)
    return job_types, handlers


@pytest.fixture
def client(settings: Settings, app_registries):
    """FastAPI test client over an in-memory runtime."""
    job_types, handlers = app_registries
    runtime = build_runtime(settings, job_types=job_types, handlers=handlers)
    app = create_app(settings, runtime=runtime)
    with TestClient(app) as test_client:
        yield test_client
