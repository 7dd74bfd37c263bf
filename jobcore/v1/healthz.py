import time
from datetime import UTC, datetime

from fastapi import APIRouter
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError

from jobcore.v1.core.exceptions import BrokerUnavailable, create_success_response
from jobcore.v1.jobs.routes import RuntimeDep
from jobcore.v1.jobs.runtime import JobRuntime

router = APIRouter()


class ComponentHealth(BaseModel):
    """Reachability of a backing component."""

    connected: bool
    response_time_ms: float | None = None
    error: str | None = None


class WorkerHealth(BaseModel):
    """Worker pool status for this process."""

    running: bool
    worker_units: int = 0
    active_jobs: int = 0
    in_flight: int = 0
    dead_letter_queue_depth: int = 0


@router.get("/healthz", response_model=dict)
async def health_check(runtime: JobRuntime = RuntimeDep):
    """Health check covering the broker, dead-letter store and worker pool."""

    settings = runtime.settings
    timestamp = datetime.now(UTC).isoformat()

    broker_health = await _check_broker_health(runtime)
    store_health = await _check_dead_letter_store_health(runtime)
    overall_ok = broker_health.connected and store_health.connected

    worker_health = WorkerHealth(
        running=runtime.pool.running,
        worker_units=len(runtime.pool.units) if runtime.pool.running else 0,
        active_jobs=runtime.pool.active_count,
    )
    if broker_health.connected:
        worker_health.in_flight = await runtime.broker.in_flight_count()
        worker_health.dead_letter_queue_depth = await runtime.broker.depth(
            runtime.topology.dead_letter_queue
        )

    health_data = {
        "ok": overall_ok,
        "version": settings.version,
        "environment": settings.environment,
        "timestamp": timestamp,
        "broker": broker_health.model_dump(),
        "dead_letter_store": store_health.model_dump(),
        "worker": worker_health.model_dump(),
    }

    return create_success_response(data=health_data)


async def _check_broker_health(runtime: JobRuntime) -> ComponentHealth:
    """Check broker reachability and response time."""
    start = time.perf_counter()
    try:
        await runtime.broker.depth(runtime.topology.dead_letter_queue)
    except BrokerUnavailable as e:
        return ComponentHealth(connected=False, error=e.message)
    return ComponentHealth(
        connected=True, response_time_ms=round((time.perf_counter() - start) * 1000, 2)
    )


async def _check_dead_letter_store_health(runtime: JobRuntime) -> ComponentHealth:
    start = time.perf_counter()
    try:
        await runtime.dead_letters.count()
    except (SQLAlchemyError, OSError) as e:
        return ComponentHealth(connected=False, error=str(e))
    return ComponentHealth(
        connected=True, response_time_ms=round((time.perf_counter() - start) * 1000, 2)
    )
