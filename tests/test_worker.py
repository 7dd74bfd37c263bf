import asyncio
import dataclasses
import uuid
from collections import Counter

import pytest

from jobcore.v1.jobs.handlers import NonRetryableError, RetryRequested
from jobcore.v1.jobs.monitor import JobOutcome
from jobcore.v1.jobs.schemas import Job, OwnerContext, Priority
from jobcore.v1.jobs.worker import WeightedPrioritySelector, WorkerUnit

ACME = OwnerContext(tenant_id="acme", user_id="u1")


class TestWeightedPrioritySelector:
    def test_first_choice_follows_weights(self):
        selector = WeightedPrioritySelector(
            {Priority.HIGH: 6, Priority.NORMAL: 3, Priority.LOW: 1}
        )

        firsts = Counter(selector.order()[0] for _ in range(100))

        assert firsts == {Priority.HIGH: 60, Priority.NORMAL: 30, Priority.LOW: 10}

    def test_low_tier_first_once_per_cycle(self):
        """Low priority work is never starved while higher tiers stay busy."""
        selector = WeightedPrioritySelector(
            {Priority.HIGH: 6, Priority.NORMAL: 3, Priority.LOW: 1}
        )

        for _ in range(5):
            cycle = [selector.order()[0] for _ in range(10)]
            assert cycle.count(Priority.LOW) == 1

    def test_order_includes_every_tier_as_fallback(self):
        selector = WeightedPrioritySelector(
            {Priority.HIGH: 1, Priority.NORMAL: 0, Priority.LOW: 0}
        )

        for _ in range(5):
            assert selector.order() == [Priority.HIGH, Priority.NORMAL, Priority.LOW]

    def test_reset_restores_priority_order(self):
        selector = WeightedPrioritySelector(
            {Priority.HIGH: 6, Priority.NORMAL: 3, Priority.LOW: 1}
        )
        firsts = [selector.order()[0] for _ in range(6)]
        assert Priority.HIGH in firsts
        assert selector.order()[0] == Priority.LOW

        selector.reset()

        assert selector.order()[0] == Priority.HIGH

    def test_rejects_invalid_weights(self):
        with pytest.raises(ValueError):
            WeightedPrioritySelector({Priority.HIGH: 0, Priority.NORMAL: 0})
        with pytest.raises(ValueError):
            WeightedPrioritySelector({Priority.HIGH: -1, Priority.NORMAL: 2})


async def test_failing_job_retries_then_dead_letters(runtime_factory, define, handle, eventually):
    """A job that always fails runs max_retries + 1 times and lands in the dead-letter store."""
    define("flaky", max_retries=3)
    attempts = []
    terminal = []

    async def always_fails(job):
        attempts.append(job.retry_count)
        raise RuntimeError("downstream exploded")

    async def on_terminal_failure(job, error):
        terminal.append((job.id, error))

    handle("flaky", always_fails, on_terminal_failure)
    runtime = runtime_factory()
    await runtime.start_workers()

    job_id = await runtime.submitter.submit("flaky", {"n": 1})
    await eventually(lambda: runtime.dead_letters.count())

    record = await runtime.dead_letters.get(job_id)
    assert attempts == [0, 1, 2, 3]
    assert record.retry_count == 3
    assert record.error_kind == "error"
    assert "downstream exploded" in record.final_error
    assert record.origin_queue == "jobs.normal"

    await eventually(lambda: terminal)
    assert terminal == [(job_id, record.final_error)]

    counts = runtime.monitor.outcome_counts()["flaky"]
    assert counts["failure"] == 4
    assert counts["retried"] == 3
    assert counts["dead_lettered"] == 1


async def test_timeout_counts_as_retryable_failure(runtime_factory, define, handle, eventually):
    define("slow", max_retries=1, timeout=0.05)
    attempts = []

    async def hangs(job):
        attempts.append(job.retry_count)
        await asyncio.sleep(10)

    handle("slow", hangs)
    runtime = runtime_factory()
    await runtime.start_workers()

    job_id = await runtime.submitter.submit("slow")
    await eventually(lambda: runtime.dead_letters.count())

    record = await runtime.dead_letters.get(job_id)
    assert attempts == [0, 1]
    assert record.error_kind == "timeout"
    assert record.retry_count == 1


async def test_high_priority_dispatched_before_low(runtime_factory, define, handle, settings, eventually):
    """With one worker and prefetch 1, a waiting high job runs before a waiting low job."""
    define("echo")
    order = []

    async def record(job):
        order.append(job.payload["name"])

    handle("echo", record)
    runtime = runtime_factory(
        settings=settings.model_copy(update={"worker_count": 1, "prefetch_count": 1})
    )

    await runtime.submitter.submit("echo", {"name": "low"}, priority=Priority.LOW)
    await runtime.submitter.submit("echo", {"name": "high"}, priority=Priority.HIGH)
    await runtime.start_workers()

    await eventually(lambda: len(order) == 2)
    assert order == ["high", "low"]


async def test_idle_polls_do_not_shift_priority(runtime_factory, define):
    """However long a unit sat idle, a waiting high job is fetched before a low one."""
    define("echo")
    runtime = runtime_factory()
    pool = runtime.pool

    for idle_polls in range(10):
        unit = WorkerUnit(
            name="w1",
            pool=pool,
            queues=pool.queues,
            prefetch=1,
            selector=WeightedPrioritySelector(pool.weights),
        )
        for _ in range(idle_polls):
            assert await unit.next_message() is None

        await runtime.submitter.submit("echo", {"name": "low"}, priority=Priority.LOW)
        await runtime.submitter.submit("echo", {"name": "high"}, priority=Priority.HIGH)

        first = await unit.next_message()
        second = await unit.next_message()
        assert (idle_polls, first.job.payload["name"]) == (idle_polls, "high")
        assert second.job.payload["name"] == "low"
        await runtime.broker.ack(first)
        await runtime.broker.ack(second)


async def test_running_pool_prefers_high_after_idling(
    runtime_factory, define, handle, settings, eventually
):
    define("echo")
    order = []

    async def record(job):
        order.append(job.payload["name"])

    handle("echo", record)
    runtime = runtime_factory(
        settings=settings.model_copy(update={"worker_count": 1, "prefetch_count": 1})
    )
    await runtime.start_workers()
    # Let the unit poll empty queues for a while
    await asyncio.sleep(0.1)

    await runtime.submitter.submit("echo", {"name": "low"}, priority=Priority.LOW)
    await runtime.submitter.submit("echo", {"name": "high"}, priority=Priority.HIGH)

    await eventually(lambda: len(order) == 2)
    assert order == ["high", "low"]


async def test_low_priority_progresses_under_high_load(runtime_factory, define, handle, settings, eventually):
    """A low job waiting behind a backlog of high jobs runs within one weighted cycle."""
    define("echo")
    order = []

    async def record(job):
        order.append(job.payload["name"])

    handle("echo", record)
    runtime = runtime_factory(
        settings=settings.model_copy(update={"worker_count": 1, "prefetch_count": 1})
    )
    for n in range(30):
        await runtime.submitter.submit("echo", {"name": f"high-{n}"}, priority=Priority.HIGH)
    await runtime.submitter.submit("echo", {"name": "low"}, priority=Priority.LOW)
    await runtime.start_workers()

    await eventually(lambda: len(order) == 31)
    assert order.index("low") < 10


async def test_per_owner_rate_limit(runtime_factory, define, handle, eventually):
    """Only two jobs of one owner run at once; deferrals do not consume retries."""
    define("render", rate_limit={"max_concurrent_per_owner": 2})
    active = 0
    peak = 0
    retry_counts = []

    async def render(job):
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        retry_counts.append(job.retry_count)
        await asyncio.sleep(0.1)
        active -= 1

    handle("render", render)
    runtime = runtime_factory()
    for n in range(3):
        await runtime.submitter.submit("render", {"n": n}, owner_context=ACME)
    await runtime.start_workers()

    await eventually(
        lambda: runtime.monitor.outcome_counts().get("render", {}).get("success") == 3
    )
    assert peak == 2
    assert retry_counts == [0, 0, 0]
    assert runtime.monitor.outcome_counts()["render"]["rate_limited"] >= 1


async def test_non_retryable_error_dead_letters_immediately(runtime_factory, define, handle, eventually):
    define("parse", max_retries=5)
    attempts = []

    async def parse(job):
        attempts.append(job.retry_count)
        raise NonRetryableError("malformed document")

    handle("parse", parse)
    runtime = runtime_factory()
    await runtime.start_workers()

    job_id = await runtime.submitter.submit("parse")
    await eventually(lambda: runtime.dead_letters.count())

    record = await runtime.dead_letters.get(job_id)
    assert attempts == [0]
    assert record.error_kind == "non_retryable"
    assert record.retry_count == 0


async def test_retry_requested_outcome(runtime_factory, define, handle, eventually):
    define("poll")
    attempts = []

    async def poll(job):
        attempts.append(job.retry_count)
        if job.retry_count == 0:
            return RetryRequested("not ready yet", delay=0)
        return {"done": True}

    handle("poll", poll)
    runtime = runtime_factory()
    await runtime.start_workers()

    await runtime.submitter.submit("poll")
    await eventually(lambda: len(attempts) == 2)
    await eventually(
        lambda: runtime.monitor.outcome_counts()["poll"]["success"] == 1
    )

    assert attempts == [0, 1]
    assert runtime.monitor.outcome_counts()["poll"]["retried"] == 1
    assert await runtime.dead_letters.count() == 0


async def test_missing_handler_is_configuration_failure(runtime_factory, define, eventually):
    define("orphan")
    runtime = runtime_factory()
    await runtime.start_workers()

    job_id = await runtime.submitter.submit("orphan")
    await eventually(lambda: runtime.dead_letters.count())

    record = await runtime.dead_letters.get(job_id)
    assert record.error_kind == "configuration"
    assert record.retry_count == 0


async def test_unknown_type_in_queue_is_dead_lettered(runtime_factory, define, eventually):
    define("echo")
    runtime = runtime_factory()
    ghost = Job(id=uuid.uuid4(), type="ghost")
    await runtime.broker.publish("jobs.normal", ghost)
    await runtime.start_workers()

    await eventually(lambda: runtime.dead_letters.count())

    record = await runtime.dead_letters.get(ghost.id)
    assert record.error_kind == "configuration"


async def test_crashed_consumer_delivery_is_redelivered(runtime_factory, define, handle, eventually):
    """A message fetched by a consumer that never settles runs again after its lease lapses."""
    define("echo", timeout=0.05)
    seen = []

    async def echo(job):
        seen.append(job.id)

    handle("echo", echo)
    runtime = runtime_factory()
    job_id = await runtime.submitter.submit("echo")
    assert await runtime.broker.fetch("jobs.normal", "crashed-worker") is not None

    await runtime.start_workers()
    await eventually(lambda: seen)

    assert seen == [job_id]
    await eventually(lambda: runtime.monitor.outcome_counts()["echo"]["success"] == 1)
    assert await runtime.broker.in_flight_count() == 0


async def test_repeated_lease_expiry_dead_letters(runtime_factory, define, handle, settings):
    define("echo")
    calls = []

    async def echo(job):
        calls.append(job.id)

    handle("echo", echo)
    runtime = runtime_factory()
    await runtime.submitter.submit("echo")
    message = await runtime.broker.fetch("jobs.normal", "w1")
    poisoned = dataclasses.replace(
        message, expirations=settings.max_lease_expirations + 1
    )

    outcome = await runtime.pool.process_delivery(poisoned, "w1")

    assert outcome == JobOutcome.DEAD_LETTERED
    assert calls == []
    assert await runtime.broker.in_flight_count() == 0
    dead = await runtime.broker.fetch("jobs.dead", "dlq")
    assert dead.headers["x-error-kind"] == "lease_expired"


async def test_graceful_stop_requeues_unfinished_job(runtime_factory, define, handle, eventually):
    define("long", timeout=30)
    started = asyncio.Event()

    async def long_running(job):
        started.set()
        await asyncio.sleep(30)

    handle("long", long_running)
    runtime = runtime_factory()
    await runtime.start_workers()
    await runtime.submitter.submit("long")
    await asyncio.wait_for(started.wait(), timeout=5)

    await runtime.pool.stop(grace=0.05)

    assert not runtime.pool.running
    assert await runtime.broker.in_flight_count() == 0
    assert await runtime.broker.depth("jobs.normal") == 1
    message = await runtime.broker.fetch("jobs.normal", "w2")
    assert message.job.retry_count == 0


async def test_start_twice_raises(runtime_factory, define):
    define("echo")
    runtime = runtime_factory()
    await runtime.start_workers()

    with pytest.raises(RuntimeError, match="already running"):
        await runtime.pool.start()


async def test_run_maintenance_refreshes_depths(runtime_factory, define):
    define("echo")
    runtime = runtime_factory()
    await runtime.submitter.submit("echo")
    await runtime.submitter.submit("echo", priority=Priority.HIGH)

    result = await runtime.pool.run_maintenance()

    assert result == {"requeued": 0, "reaped": 0, "breaches": 0}
    snapshot = await runtime.snapshot()
    assert snapshot.queue_depths["jobs.normal"] == 1
    assert snapshot.queue_depths["jobs.high"] == 1
    assert snapshot.queue_depths["jobs.dead"] == 0


async def test_unit_survives_unexpected_fetch_error(runtime_factory, define, handle, eventually):
    """A fetch that blows up is logged and the unit keeps consuming."""
    define("echo")
    seen = []

    async def echo(job):
        seen.append(job.id)

    handle("echo", echo)
    runtime = runtime_factory()
    fetch = runtime.broker.fetch
    failures = []

    async def flaky_fetch(queue, consumer):
        if queue != "jobs.dead" and not failures:
            failures.append(queue)
            raise ValueError("corrupt frame")
        return await fetch(queue, consumer)

    runtime.broker.fetch = flaky_fetch
    await runtime.start_workers()
    job_id = await runtime.submitter.submit("echo")

    await eventually(lambda: seen)
    assert seen == [job_id]
    assert failures
    assert not any(task.done() for task in runtime.pool._loops)
