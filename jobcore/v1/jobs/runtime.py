"""
Explicit wiring of the job processing components.

The runtime owns the broker and database handles; nothing in the job
system reaches for a module-level broker connection.
"""

from dataclasses import dataclass

from jobcore.config.logging import get_logger
from jobcore.config.settings import BrokerBackend, RateLimiterBackend, Settings
from jobcore.infra.database import Database
from jobcore.v1.core.registries import (
    JobTypeRegistry,
    TaskHandlerRegistry,
    job_type_registry,
    task_handler_registry,
)
from jobcore.v1.jobs.broker import Broker, BrokerTopology, InMemoryBroker, SqlBroker
from jobcore.v1.jobs.dead_letter import (
    DeadLetterHandler,
    DeadLetterStore,
    InMemoryDeadLetterStore,
    OperatorAlerter,
    SqlDeadLetterStore,
)
from jobcore.v1.jobs.monitor import Monitor
from jobcore.v1.jobs.rate_limiter import InMemoryRateLimiter, RateLimiter, SqlRateLimiter
from jobcore.v1.jobs.registry_init import load_handler_modules, register_job_types
from jobcore.v1.jobs.retry import RetryCoordinator
from jobcore.v1.jobs.schemas import OpsSnapshot
from jobcore.v1.jobs.submitter import JobSubmitter
from jobcore.v1.jobs.worker import WorkerPool

logger = get_logger(__name__)


@dataclass
class JobRuntime:
    settings: Settings
    database: Database | None
    topology: BrokerTopology
    broker: Broker
    job_types: JobTypeRegistry
    handlers: TaskHandlerRegistry
    rate_limiter: RateLimiter
    dead_letters: DeadLetterStore
    monitor: Monitor
    retry: RetryCoordinator
    submitter: JobSubmitter
    dead_letter_handler: DeadLetterHandler
    pool: WorkerPool

    async def prepare(self) -> None:
        if self.database is not None and self.settings.db_create_all:
            await self.database.create_all()
            logger.info("Database schema ensured")

    async def start_workers(self) -> None:
        await self.pool.start()

    async def close(self) -> None:
        await self.pool.stop()
        await self.broker.close()
        if self.database is not None:
            await self.database.close()

    async def snapshot(self, recent_limit: int | None = None) -> OpsSnapshot:
        return await self.monitor.snapshot(
            self.broker,
            self.pool.all_queues(),
            self.dead_letters,
            recent_limit or self.settings.dead_letter_recent_limit,
        )


def build_runtime(
    settings: Settings,
    *,
    database: Database | None = None,
    job_types: JobTypeRegistry | None = None,
    handlers: TaskHandlerRegistry | None = None,
    alerter: OperatorAlerter | None = None,
) -> JobRuntime:
    """Assemble every component for the configured backends."""
    if job_types is None:
        job_types = job_type_registry
        if not job_types.is_frozen():
            register_job_types(job_types, settings)
    if handlers is None:
        handlers = task_handler_registry
        if not handlers.is_frozen():
            load_handler_modules(settings.handler_modules)
    job_types.freeze()
    handlers.freeze()

    needs_database = (
        settings.broker_backend == BrokerBackend.SQL
        or settings.rate_limiter_backend == RateLimiterBackend.SQL
    )
    if needs_database and database is None:
        database = Database(settings)

    topology = BrokerTopology(settings.queue_prefix, settings.ttl_safety_factor)

    if settings.broker_backend == BrokerBackend.SQL:
        broker = SqlBroker(database.SessionLocal, topology)
    else:
        broker = InMemoryBroker(topology)

    if settings.rate_limiter_backend == RateLimiterBackend.SQL:
        rate_limiter = SqlRateLimiter(database.SessionLocal)
    else:
        rate_limiter = InMemoryRateLimiter()

    if database is not None:
        dead_letters = SqlDeadLetterStore(database.SessionLocal)
    else:
        dead_letters = InMemoryDeadLetterStore()

    monitor = Monitor(
        alert_queue_depth=settings.alert_queue_depth,
        alert_failure_rate=settings.alert_failure_rate,
    )
    retry = RetryCoordinator(broker, topology, job_types)
    submitter = JobSubmitter(broker, topology, job_types, monitor)
    dead_letter_handler = DeadLetterHandler(
        broker,
        topology,
        dead_letters,
        job_types,
        handlers,
        alerter=alerter,
        poll_interval=settings.poll_interval_ms / 1000,
    )
    pool = WorkerPool(
        settings,
        broker,
        topology,
        job_types,
        handlers,
        rate_limiter,
        retry,
        monitor,
        dead_letter_handler=dead_letter_handler,
    )

    logger.info(
        "Job runtime built",
        broker_backend=settings.broker_backend.value,
        rate_limiter_backend=settings.rate_limiter_backend.value,
        job_types=job_types.list(),
        handlers=handlers.list(),
    )
    return JobRuntime(
        settings=settings,
        database=database,
        topology=topology,
        broker=broker,
        job_types=job_types,
        handlers=handlers,
        rate_limiter=rate_limiter,
        dead_letters=dead_letters,
        monitor=monitor,
        retry=retry,
        submitter=submitter,
        dead_letter_handler=dead_letter_handler,
        pool=pool,
    )
