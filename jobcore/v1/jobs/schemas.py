"""
Job system Pydantic schemas: domain records and API payloads.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator


class Priority(str, Enum):
    """Advisory dispatch tier."""

    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    @property
    def rank(self) -> int:
        return PRIORITY_ORDER.index(self)


PRIORITY_ORDER = (Priority.HIGH, Priority.NORMAL, Priority.LOW)


class JobState(str, Enum):
    """Lifecycle states of a job as it moves through the broker."""

    CREATED = "created"
    QUEUED = "queued"
    DISPATCHED = "dispatched"
    SUCCEEDED = "succeeded"
    REQUEUED = "requeued"
    DEADLETTERED = "deadlettered"


class BackoffStrategy(str, Enum):
    FIXED = "fixed"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"


class FailureSeverity(str, Enum):
    """How a terminal failure of a job type is escalated."""

    CRITICAL = "critical"  # page an operator
    USER_NOTICE = "user_notice"  # best-effort notice to the owner
    REVIEW = "review"  # logged for periodic review


class OwnerContext(BaseModel):
    """Tenant/user identity used for rate limiting and notification routing."""

    model_config = ConfigDict(frozen=True)

    tenant_id: str = Field(..., min_length=1)
    user_id: str | None = None

    @property
    def key(self) -> str:
        return f"{self.tenant_id}/{self.user_id or '*'}"


class RateLimit(BaseModel):
    """Concurrency caps for a job type; None means unbounded."""

    model_config = ConfigDict(frozen=True)

    max_concurrent_global: int | None = Field(default=None, ge=1)
    max_concurrent_per_owner: int | None = Field(default=None, ge=1)

    @property
    def enabled(self) -> bool:
        return (
            self.max_concurrent_global is not None
            or self.max_concurrent_per_owner is not None
        )


class BackoffPolicy(BaseModel):
    """Delay strategy between retry attempts."""

    model_config = ConfigDict(frozen=True)

    strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    initial_delay: float = Field(default=1.0, ge=0)
    increment: float = Field(default=1.0, ge=0)
    multiplier: float = Field(default=2.0, ge=1.0)
    max_delay: float = Field(default=300.0, ge=0)
    jitter: bool = True


class JobTypeDefinition(BaseModel):
    """Registry entry describing how a job type is queued and retried."""

    model_config = ConfigDict(frozen=True)

    type: str = Field(..., min_length=1)
    queue: str | None = Field(
        default=None, description="Dedicated queue name; None uses the shared tiers"
    )
    default_priority: Priority = Priority.NORMAL
    max_retries: int = Field(default=3, ge=0)
    timeout: float = Field(default=60.0, gt=0, description="Seconds per attempt")
    rate_limit: RateLimit = Field(default_factory=RateLimit)
    backoff: BackoffPolicy = Field(default_factory=BackoffPolicy)
    severity: FailureSeverity = FailureSeverity.REVIEW


class Job(BaseModel):
    """A unit of deferred work."""

    id: UUID
    type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    priority: Priority = Priority.NORMAL
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    retry_count: int = Field(default=0, ge=0)
    max_retries: int = Field(default=3, ge=0)
    timeout: float = Field(default=60.0, gt=0)
    owner_context: OwnerContext | None = None
    correlation_id: str | None = None

    @model_validator(mode="after")
    def _check_retry_bounds(self) -> "Job":
        if self.retry_count > self.max_retries:
            raise ValueError(
                f"retry_count ({self.retry_count}) exceeds max_retries ({self.max_retries})"
            )
        return self

    @property
    def retries_exhausted(self) -> bool:
        return self.retry_count >= self.max_retries


@dataclass
class QueueMessage:
    """Wire envelope for a job plus broker delivery metadata."""

    delivery_tag: str
    queue: str
    job: Job
    deliveries: int = 0
    expirations: int = 0
    headers: dict[str, Any] = field(default_factory=dict)

    @property
    def attempt(self) -> int:
        return self.job.retry_count

    @property
    def redelivered(self) -> bool:
        return self.deliveries > 1


class DeadLetterRecord(BaseModel):
    """Immutable snapshot of a terminally failed job."""

    model_config = ConfigDict(frozen=True, from_attributes=True)

    job_id: UUID
    job_type: str
    payload: dict[str, Any]
    priority: Priority
    final_error: str
    error_kind: str
    retry_count: int
    max_retries: int
    created_at: datetime
    failed_at: datetime
    owner_tenant_id: str | None = None
    owner_user_id: str | None = None
    correlation_id: str | None = None
    severity: FailureSeverity = FailureSeverity.REVIEW
    origin_queue: str | None = None

    @classmethod
    def from_job(
        cls,
        job: Job,
        *,
        final_error: str,
        error_kind: str,
        severity: FailureSeverity,
        origin_queue: str | None = None,
        failed_at: datetime | None = None,
    ) -> "DeadLetterRecord":
        owner = job.owner_context
        return cls(
            job_id=job.id,
            job_type=job.type,
            payload=job.payload,
            priority=job.priority,
            final_error=final_error,
            error_kind=error_kind,
            retry_count=job.retry_count,
            max_retries=job.max_retries,
            created_at=job.created_at,
            failed_at=failed_at or datetime.now(UTC),
            owner_tenant_id=owner.tenant_id if owner else None,
            owner_user_id=owner.user_id if owner else None,
            correlation_id=job.correlation_id,
            severity=severity,
            origin_queue=origin_queue,
        )


# API payloads


class JobSubmitRequest(BaseModel):
    """Schema for submitting a job via the API."""

    type: str = Field(..., description="Job type")
    payload: dict[str, Any] = Field(default_factory=dict, description="Job payload")
    priority: Priority | None = Field(
        default=None, description="Overrides the job type's default priority"
    )
    owner_context: OwnerContext | None = Field(
        default=None, description="Tenant/user identity"
    )
    correlation_id: str | None = Field(default=None, description="Tracing identifier")


class JobSubmitResponse(BaseModel):
    """Schema for the submit response."""

    job_id: UUID
    type: str
    priority: Priority
    queue: str


class ThresholdBreach(BaseModel):
    """A monitored value above its alerting threshold."""

    metric: str
    subject: str
    value: float
    threshold: float


class OpsSnapshot(BaseModel):
    """Read-only operational view consumed by dashboards and alerting."""

    generated_at: datetime
    queue_depths: dict[str, int]
    in_flight: int
    outcomes: dict[str, dict[str, int]]
    breaches: list[ThresholdBreach] = Field(default_factory=list)
    dead_letter_total: int = 0
    recent_dead_letters: list[DeadLetterRecord] = Field(default_factory=list)
