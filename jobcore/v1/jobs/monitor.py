"""
Passive observer of queue depth, durations and outcomes.

Everything is exported to Prometheus; the monitor also keeps in-process
tallies so the operational snapshot and threshold checks can be served
without a metrics backend.
"""

from collections import Counter
from collections.abc import Iterable
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING

from jobcore.config.logging import get_logger
from jobcore.v1.jobs import metrics
from jobcore.v1.jobs.schemas import Job, OpsSnapshot, ThresholdBreach

if TYPE_CHECKING:
    from jobcore.v1.jobs.broker import Broker
    from jobcore.v1.jobs.dead_letter import DeadLetterStore

logger = get_logger(__name__)


class JobOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    RETRIED = "retried"
    DEAD_LETTERED = "dead_lettered"
    RATE_LIMITED = "rate_limited"


class Monitor:
    def __init__(
        self,
        alert_queue_depth: int = 1000,
        alert_failure_rate: float = 0.25,
        min_samples: int = 10,
    ):
        self.alert_queue_depth = alert_queue_depth
        self.alert_failure_rate = alert_failure_rate
        self.min_samples = min_samples
        self._outcomes: dict[str, Counter[str]] = {}
        self._submitted: Counter[str] = Counter()
        self._depths: dict[str, int] = {}
        self._in_flight = 0

    def record_submitted(self, job: Job) -> None:
        self._submitted[job.type] += 1
        metrics.observe_submitted(job.type, job.priority.value)

    def record_outcome(
        self, job_type: str, outcome: JobOutcome, duration: float | None = None
    ) -> None:
        self._outcomes.setdefault(job_type, Counter())[outcome.value] += 1
        metrics.observe_outcome(job_type, outcome.value)
        if duration is not None:
            metrics.observe_duration(job_type, outcome.value, duration)

    def observe_queue_depth(self, queue: str, depth: int) -> None:
        self._depths[queue] = depth
        metrics.update_depth(queue, depth)

    def observe_in_flight(self, count: int) -> None:
        self._in_flight = count
        metrics.update_in_flight(count)

    async def refresh(self, broker: "Broker", queues: Iterable[str]) -> dict[str, int]:
        """Poll the broker for current depths and in-flight count."""
        for queue in queues:
            self.observe_queue_depth(queue, await broker.depth(queue))
        self.observe_in_flight(await broker.in_flight_count())
        return dict(self._depths)

    def outcome_counts(self) -> dict[str, dict[str, int]]:
        return {
            job_type: {outcome.value: counts.get(outcome.value, 0) for outcome in JobOutcome}
            for job_type, counts in sorted(self._outcomes.items())
        }

    def submitted_counts(self) -> dict[str, int]:
        return dict(self._submitted)

    def failure_rate(self, job_type: str) -> float | None:
        """Share of failed attempts, or None below ``min_samples`` attempts."""
        counts = self._outcomes.get(job_type, Counter())
        failures = counts[JobOutcome.FAILURE.value]
        attempts = counts[JobOutcome.SUCCESS.value] + failures
        if attempts < self.min_samples:
            return None
        return failures / attempts

    def evaluate_thresholds(self) -> list[ThresholdBreach]:
        breaches = [
            ThresholdBreach(
                metric="queue_depth",
                subject=queue,
                value=depth,
                threshold=self.alert_queue_depth,
            )
            for queue, depth in sorted(self._depths.items())
            if depth > self.alert_queue_depth
        ]
        for job_type in sorted(self._outcomes):
            rate = self.failure_rate(job_type)
            if rate is not None and rate > self.alert_failure_rate:
                breaches.append(
                    ThresholdBreach(
                        metric="failure_rate",
                        subject=job_type,
                        value=round(rate, 4),
                        threshold=self.alert_failure_rate,
                    )
                )
        return breaches

    def log_breaches(self) -> list[ThresholdBreach]:
        breaches = self.evaluate_thresholds()
        for breach in breaches:
            logger.warning("Threshold breached", **breach.model_dump())
        return breaches

    async def snapshot(
        self,
        broker: "Broker",
        queues: Iterable[str],
        store: "DeadLetterStore",
        recent_limit: int,
    ) -> OpsSnapshot:
        """Read-only operational view for dashboards and alerting."""
        depths = await self.refresh(broker, queues)
        return OpsSnapshot(
            generated_at=datetime.now(UTC),
            queue_depths=depths,
            in_flight=self._in_flight,
            outcomes=self.outcome_counts(),
            breaches=self.evaluate_thresholds(),
            dead_letter_total=await store.count(),
            recent_dead_letters=await store.recent(recent_limit),
        )
