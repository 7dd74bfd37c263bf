"""Prometheus instrumentation for submission, dispatch and queue state."""

from prometheus_client import Counter, Gauge, Histogram

JOB_DURATION_SECONDS = Histogram(
    "jobcore_job_duration_seconds",
    "Handler execution time per attempt.",
    labelnames=("job_type", "outcome"),
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30, 60, 120, 300, 600),
)

JOB_OUTCOMES_TOTAL = Counter(
    "jobcore_job_outcomes_total",
    "Dispatch outcomes per job type.",
    labelnames=("job_type", "outcome"),
)

JOBS_SUBMITTED_TOTAL = Counter(
    "jobcore_jobs_submitted_total",
    "Jobs accepted by the submitter.",
    labelnames=("job_type", "priority"),
)

QUEUE_DEPTH_GAUGE = Gauge(
    "jobcore_queue_depth",
    "Messages waiting in a queue.",
    labelnames=("queue",),
)

IN_FLIGHT_GAUGE = Gauge(
    "jobcore_in_flight",
    "Messages dispatched but not yet settled.",
)


def observe_submitted(job_type: str, priority: str) -> None:
    JOBS_SUBMITTED_TOTAL.labels(job_type=job_type, priority=priority).inc()


def observe_outcome(job_type: str, outcome: str) -> None:
    JOB_OUTCOMES_TOTAL.labels(job_type=job_type, outcome=outcome).inc()


def observe_duration(job_type: str, outcome: str, seconds: float) -> None:
    JOB_DURATION_SECONDS.labels(job_type=job_type, outcome=outcome).observe(seconds)


def update_depth(queue_name: str, depth: int) -> None:
    QUEUE_DEPTH_GAUGE.labels(queue=queue_name).set(depth)


def update_in_flight(count: int) -> None:
    IN_FLIGHT_GAUGE.set(count)
