"""
Job submission: validation, routing and durable publish.
"""

import uuid
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from jobcore.config.logging import get_logger
from jobcore.v1.core.exceptions import ValidationError
from jobcore.v1.core.registries import JobTypeRegistry
from jobcore.v1.jobs.broker import Broker, BrokerTopology
from jobcore.v1.jobs.monitor import Monitor
from jobcore.v1.jobs.schemas import Job, JobState, OwnerContext, Priority

logger = get_logger(__name__)


class JobSubmitter:
    """
    The only creator of Job records.

    ``submit`` returns once the broker has stored the message. A failed
    publish raises BrokerUnavailable and is never retried here, so a caller
    that retries knowingly accepts a possible duplicate.
    """

    def __init__(
        self,
        broker: Broker,
        topology: BrokerTopology,
        job_types: JobTypeRegistry,
        monitor: Monitor | None = None,
    ):
        self.broker = broker
        self.topology = topology
        self.job_types = job_types
        self.monitor = monitor

    async def submit(
        self,
        job_type: str,
        payload: dict[str, Any] | None = None,
        *,
        priority: Priority | None = None,
        owner_context: OwnerContext | None = None,
        correlation_id: str | None = None,
    ) -> UUID:
        job = await self.submit_job(
            job_type,
            payload,
            priority=priority,
            owner_context=owner_context,
            correlation_id=correlation_id,
        )
        return job.id

    async def submit_job(
        self,
        job_type: str,
        payload: dict[str, Any] | None = None,
        *,
        priority: Priority | None = None,
        owner_context: OwnerContext | None = None,
        correlation_id: str | None = None,
    ) -> Job:
        """Like ``submit`` but returns the published Job."""
        # Raises UnknownJobType before the broker is touched
        definition = self.job_types.lookup(job_type)

        if payload is None:
            payload = {}
        if not isinstance(payload, dict):
            raise ValidationError(
                "Job payload must be a JSON object",
                details={"job_type": job_type, "payload_type": type(payload).__name__},
            )
        if definition.rate_limit.enabled and owner_context is None:
            raise ValidationError(
                "owner_context is required for rate-limited job types",
                details={"job_type": job_type},
            )

        job = Job(
            id=uuid.uuid4(),
            type=job_type,
            payload=payload,
            priority=priority or definition.default_priority,
            created_at=datetime.now(UTC),
            retry_count=0,
            max_retries=definition.max_retries,
            timeout=definition.timeout,
            owner_context=owner_context,
            correlation_id=correlation_id,
        )
        queue = self.topology.routing_key(definition, job.priority)

        await self.broker.publish(queue, job)

        if self.monitor is not None:
            self.monitor.record_submitted(job)
        logger.info(
            "Job submitted",
            job_id=str(job.id),
            job_type=job.type,
            priority=job.priority.value,
            queue=queue,
            state=JobState.QUEUED.value,
            correlation_id=correlation_id,
            owner=owner_context.key if owner_context else None,
        )
        return job
