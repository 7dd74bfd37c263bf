"""
Job submission and operational query endpoints.
"""

import secrets
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from jobcore.config.logging import get_logger
from jobcore.v1.core.exceptions import NotFoundError, create_success_response
from jobcore.v1.jobs.runtime import JobRuntime
from jobcore.v1.jobs.schemas import JobSubmitRequest, JobSubmitResponse

logger = get_logger(__name__)
router = APIRouter(prefix="/jobs", tags=["jobs"])
metrics_router = APIRouter(tags=["metrics"])

_basic_auth = HTTPBasic(auto_error=False)


def get_runtime(request: Request) -> JobRuntime:
    """Dependency returning the runtime owned by the application lifespan."""
    return request.app.state.runtime


RuntimeDep = Depends(get_runtime)


@router.post("", response_model=dict, status_code=status.HTTP_202_ACCEPTED)
async def submit_job(
    job_request: JobSubmitRequest,
    request: Request,
    runtime: JobRuntime = RuntimeDep,
) -> dict[str, Any]:
    """Submit a job; returns once the broker has stored it."""

    job = await runtime.submitter.submit_job(
        job_request.type,
        job_request.payload,
        priority=job_request.priority,
        owner_context=job_request.owner_context,
        correlation_id=job_request.correlation_id,
    )
    definition = runtime.job_types.lookup(job.type)
    response = JobSubmitResponse(
        job_id=job.id,
        type=job.type,
        priority=job.priority,
        queue=runtime.topology.routing_key(definition, job.priority),
    )

    return create_success_response(
        data=response.model_dump(mode="json"),
        request_id=getattr(request.state, "request_id", None),
    )


@router.get("/types", response_model=dict)
async def list_job_types(runtime: JobRuntime = RuntimeDep) -> dict[str, Any]:
    """List registered job types with their queue, retry and rate-limit policy."""

    definitions = sorted(runtime.job_types.definitions(), key=lambda d: d.type)
    return create_success_response(
        data={
            "job_types": [d.model_dump(mode="json") for d in definitions],
            "handlers": sorted(runtime.handlers.list()),
        }
    )


@router.get("/stats", response_model=dict)
async def get_job_stats(
    limit: int | None = Query(
        default=None, ge=1, le=500, description="Recent dead letters to include"
    ),
    runtime: JobRuntime = RuntimeDep,
) -> dict[str, Any]:
    """Queue depths, per-type outcome counts, in-flight count and threshold breaches."""

    snapshot = await runtime.snapshot(recent_limit=limit)
    return create_success_response(data=snapshot.model_dump(mode="json"))


@router.get("/dead-letters", response_model=dict)
async def list_dead_letters(
    limit: int = Query(default=20, ge=1, le=500, description="Maximum results"),
    runtime: JobRuntime = RuntimeDep,
) -> dict[str, Any]:
    """Most recent dead-lettered jobs, newest first."""

    records = await runtime.dead_letters.recent(limit)
    total = await runtime.dead_letters.count()
    return create_success_response(
        data={
            "dead_letters": [r.model_dump(mode="json") for r in records],
            "total": total,
            "limit": limit,
        }
    )


@router.get("/dead-letters/{job_id}", response_model=dict)
async def get_dead_letter(job_id: UUID, runtime: JobRuntime = RuntimeDep) -> dict[str, Any]:
    """Get the dead-letter record of one job."""

    record = await runtime.dead_letters.get(job_id)
    if record is None:
        raise NotFoundError(
            "Dead letter not found", details={"job_id": str(job_id)}
        )
    return create_success_response(data=record.model_dump(mode="json"))


def _check_metrics_auth(
    request: Request,
    credentials: HTTPBasicCredentials | None = Depends(_basic_auth),
) -> None:
    expected = request.app.state.settings.metrics_auth
    if not expected:
        return

    user, _, password = expected.partition(":")
    if credentials is None or not (
        secrets.compare_digest(credentials.username, user)
        and secrets.compare_digest(credentials.password, password)
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid metrics credentials",
            headers={"WWW-Authenticate": "Basic"},
        )


@metrics_router.get("/metrics", dependencies=[Depends(_check_metrics_auth)])
async def metrics_endpoint() -> Response:
    """Prometheus text exposition of job metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
