import uuid

from jobcore.v1.jobs.dead_letter import InMemoryDeadLetterStore
from jobcore.v1.jobs.monitor import JobOutcome, Monitor
from jobcore.v1.jobs.schemas import Job


def test_outcome_counts_include_every_outcome():
    monitor = Monitor()

    monitor.record_outcome("echo", JobOutcome.SUCCESS, duration=0.2)
    monitor.record_outcome("echo", JobOutcome.SUCCESS)
    monitor.record_outcome("echo", JobOutcome.RATE_LIMITED)

    assert monitor.outcome_counts() == {
        "echo": {
            "success": 2,
            "failure": 0,
            "retried": 0,
            "dead_lettered": 0,
            "rate_limited": 1,
        }
    }


def test_failure_rate_needs_minimum_samples():
    monitor = Monitor(min_samples=10)
    for _ in range(9):
        monitor.record_outcome("ocr", JobOutcome.FAILURE)

    assert monitor.failure_rate("ocr") is None

    monitor.record_outcome("ocr", JobOutcome.SUCCESS)
    assert monitor.failure_rate("ocr") == 0.9


def test_failure_rate_ignores_retries_and_deferrals():
    monitor = Monitor(min_samples=2)
    monitor.record_outcome("ocr", JobOutcome.SUCCESS)
    monitor.record_outcome("ocr", JobOutcome.FAILURE)
    monitor.record_outcome("ocr", JobOutcome.RETRIED)
    monitor.record_outcome("ocr", JobOutcome.RATE_LIMITED)

    assert monitor.failure_rate("ocr") == 0.5


def test_threshold_breaches():
    """Queue depth and failure rate above their thresholds are reported."""
    monitor = Monitor(alert_queue_depth=100, alert_failure_rate=0.25, min_samples=4)
    monitor.observe_queue_depth("jobs.high", 101)
    monitor.observe_queue_depth("jobs.low", 100)
    for outcome in (JobOutcome.FAILURE, JobOutcome.FAILURE, JobOutcome.SUCCESS, JobOutcome.SUCCESS):
        monitor.record_outcome("ocr", outcome)
    for _ in range(4):
        monitor.record_outcome("tts", JobOutcome.SUCCESS)

    breaches = monitor.log_breaches()

    assert [(b.metric, b.subject, b.value) for b in breaches] == [
        ("queue_depth", "jobs.high", 101),
        ("failure_rate", "ocr", 0.5),
    ]


async def test_snapshot(broker):
    monitor = Monitor()
    store = InMemoryDeadLetterStore()
    job = Job(id=uuid.uuid4(), type="echo")
    await broker.publish("jobs.normal", job)
    await broker.publish("jobs.normal", job.model_copy(update={"id": uuid.uuid4()}))
    await broker.fetch("jobs.normal", "w1")
    monitor.record_submitted(job)
    monitor.record_outcome("echo", JobOutcome.SUCCESS)

    snapshot = await monitor.snapshot(
        broker, ["jobs.high", "jobs.normal"], store, recent_limit=5
    )

    assert snapshot.queue_depths == {"jobs.high": 0, "jobs.normal": 1}
    assert snapshot.in_flight == 1
    assert snapshot.outcomes["echo"]["success"] == 1
    assert snapshot.breaches == []
    assert snapshot.dead_letter_total == 0
    assert snapshot.recent_dead_letters == []
    assert monitor.submitted_counts() == {"echo": 1}
