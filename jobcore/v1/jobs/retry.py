"""
Retry policy: backoff computation and the retry/dead-letter decision.

The coordinator is the only code that increments ``Job.retry_count``. A retry
is a delayed re-publish through the broker, so a worker crash while the
delay elapses does not lose it.
"""

import random
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from jobcore.config.logging import get_logger
from jobcore.v1.core.registries import JobTypeRegistry
from jobcore.v1.jobs.broker import Broker, BrokerTopology
from jobcore.v1.jobs.handlers import Failure, NonRetryableError, RetryRequested
from jobcore.v1.jobs.schemas import BackoffPolicy, BackoffStrategy, Job

logger = get_logger(__name__)

JITTER_RATIO = 0.2


class FailureKind(str, Enum):
    ERROR = "error"
    TIMEOUT = "timeout"
    RETRY_REQUESTED = "retry_requested"
    NON_RETRYABLE = "non_retryable"
    CONFIGURATION = "configuration"
    LEASE_EXPIRED = "lease_expired"


_RETRYABLE = {FailureKind.ERROR, FailureKind.TIMEOUT, FailureKind.RETRY_REQUESTED}


@dataclass(frozen=True)
class JobFailure:
    """Why an attempt failed, as seen by the retry coordinator."""

    kind: FailureKind
    message: str
    suggested_delay: float | None = None

    @property
    def retryable(self) -> bool:
        return self.kind in _RETRYABLE

    @classmethod
    def from_exception(cls, exc: BaseException) -> "JobFailure":
        message = f"{exc.__class__.__name__}: {exc}"
        if isinstance(exc, NonRetryableError):
            return cls(FailureKind.NON_RETRYABLE, message)
        return cls(FailureKind.ERROR, message)

    @classmethod
    def from_timeout(cls, timeout: float) -> "JobFailure":
        return cls(FailureKind.TIMEOUT, f"Attempt exceeded timeout of {timeout}s")

    @classmethod
    def from_outcome(cls, outcome: RetryRequested | Failure) -> "JobFailure":
        if isinstance(outcome, RetryRequested):
            return cls(
                FailureKind.RETRY_REQUESTED, outcome.reason, outcome.delay
            )
        kind = FailureKind.ERROR if outcome.retryable else FailureKind.NON_RETRYABLE
        return cls(kind, outcome.error)


def base_delay(policy: BackoffPolicy, attempt: int) -> float:
    """Delay before retry number ``attempt + 1``, without jitter."""
    if attempt < 0:
        raise ValueError("attempt must be non-negative")

    if policy.strategy == BackoffStrategy.FIXED:
        delay = policy.initial_delay
    elif policy.strategy == BackoffStrategy.LINEAR:
        delay = policy.initial_delay + policy.increment * attempt
    else:
        try:
            delay = policy.initial_delay * policy.multiplier**attempt
        except OverflowError:
            delay = policy.max_delay
    return min(delay, policy.max_delay)


def compute_backoff(
    policy: BackoffPolicy, attempt: int, rng: random.Random | None = None
) -> float:
    """Backoff delay in seconds, jittered by up to 20% when the policy asks."""
    delay = base_delay(policy, attempt)
    if policy.jitter and delay > 0:
        rng = rng or random
        delay *= 1 + rng.uniform(-JITTER_RATIO, JITTER_RATIO)
    return max(0.0, min(delay, policy.max_delay))


@dataclass(frozen=True)
class Requeued:
    delay: float
    retry_count: int


@dataclass(frozen=True)
class DeadLettered:
    reason: str
    kind: FailureKind


RetryDecision = Requeued | DeadLettered


class RetryCoordinator:
    """Re-enqueues retryable failures under the limit and dead-letters the rest."""

    def __init__(
        self,
        broker: Broker,
        topology: BrokerTopology,
        job_types: JobTypeRegistry,
        rng: random.Random | None = None,
    ):
        self.broker = broker
        self.topology = topology
        self.job_types = job_types
        self._rng = rng

    def _policy(self, job: Job) -> BackoffPolicy:
        definition = self.job_types.find(job.type)
        return definition.backoff if definition else BackoffPolicy()

    async def handle_failure(
        self, job: Job, failure: JobFailure, *, origin_queue: str
    ) -> RetryDecision:
        if not failure.retryable or job.retries_exhausted:
            return await self.dead_letter(job, failure, origin_queue=origin_queue)

        policy = self._policy(job)
        if failure.suggested_delay is not None:
            delay = max(0.0, min(failure.suggested_delay, policy.max_delay))
        else:
            delay = compute_backoff(policy, job.retry_count, self._rng)

        retry_job = job.model_copy(update={"retry_count": job.retry_count + 1})
        await self.broker.publish(
            origin_queue,
            retry_job,
            delay=delay,
            headers={"x-last-error": failure.message},
        )

        logger.info(
            "Job requeued for retry",
            job_id=str(job.id),
            job_type=job.type,
            retry_count=retry_job.retry_count,
            max_retries=job.max_retries,
            delay=round(delay, 3),
            error=failure.message,
            error_kind=failure.kind.value,
            queue=origin_queue,
        )
        return Requeued(delay=delay, retry_count=retry_job.retry_count)

    async def dead_letter(
        self, job: Job, failure: JobFailure, *, origin_queue: str | None
    ) -> DeadLettered:
        """Route ``job`` to the dead-letter queue. It is never re-enqueued."""
        headers: dict[str, Any] = {
            "x-error": failure.message,
            "x-error-kind": failure.kind.value,
            "x-origin-queue": origin_queue,
            "x-failed-at": datetime.now(UTC).isoformat(),
        }
        await self.broker.publish(self.topology.dead_letter_queue, job, headers=headers)

        log_context: dict[str, Any] = {}
        if failure.kind == FailureKind.CONFIGURATION:
            log_context["operator_action_required"] = True
        logger.error(
            "Job dead-lettered",
            job_id=str(job.id),
            job_type=job.type,
            retry_count=job.retry_count,
            max_retries=job.max_retries,
            error=failure.message,
            error_kind=failure.kind.value,
            queue=origin_queue,
            **log_context,
        )
        return DeadLettered(reason=failure.message, kind=failure.kind)
