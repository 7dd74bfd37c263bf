"""
Worker pool: prefetch-bounded consumers with weighted priority dispatch.
"""

import asyncio
import os
import socket
import time
from typing import Any

from jobcore.config.logging import bind_worker_context, get_logger
from jobcore.config.settings import Settings
from jobcore.v1.core.registries import JobTypeRegistry, TaskHandler, TaskHandlerRegistry
from jobcore.v1.jobs.broker import Broker, BrokerTopology
from jobcore.v1.jobs.dead_letter import DeadLetterHandler
from jobcore.v1.jobs.handlers import Success, normalize_outcome
from jobcore.v1.jobs.monitor import JobOutcome, Monitor
from jobcore.v1.jobs.rate_limiter import RateLimiter
from jobcore.v1.jobs.retry import FailureKind, JobFailure, Requeued, RetryCoordinator
from jobcore.v1.jobs.schemas import PRIORITY_ORDER, JobState, Priority, QueueMessage

logger = get_logger(__name__)


class WeightedPrioritySelector:
    """
    Smooth weighted round-robin over the priority tiers.

    Each call to ``order()`` returns the tier to poll first followed by the
    others in priority order, so an empty winner falls back to whatever has
    work. With weights 6/3/1 the low tier is first once in every ten polls,
    which bounds how long a low-priority job can wait behind high ones. A
    zero-weight tier is never first and only gets fallback polls.

    Credit only means something while there is a backlog: a consumer whose
    poll came back empty calls ``reset()``, so work arriving at an idle
    consumer is always picked up in plain priority order.
    """

    def __init__(self, weights: dict[Priority, int]):
        if any(w < 0 for w in weights.values()):
            raise ValueError("Priority weights must be non-negative")
        self.weights = {p: weights.get(p, 0) for p in PRIORITY_ORDER}
        self._total = sum(self.weights.values())
        if self._total == 0:
            raise ValueError("At least one priority weight must be positive")
        self.reset()

    def reset(self) -> None:
        self._current = {p: 0 for p in PRIORITY_ORDER}

    def order(self) -> list[Priority]:
        for priority, weight in self.weights.items():
            self._current[priority] += weight
        winner = max(
            (p for p in PRIORITY_ORDER if self.weights[p] > 0),
            key=lambda p: (self._current[p], -p.rank),
        )
        self._current[winner] -= self._total
        return [winner] + [p for p in PRIORITY_ORDER if p != winner]


def _worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


async def _idle(stop: asyncio.Event, seconds: float) -> None:
    try:
        await asyncio.wait_for(stop.wait(), timeout=seconds)
    except TimeoutError:
        pass


class WorkerUnit:
    """
    One consumer bound to every work queue.

    Holds at most ``prefetch`` unacknowledged deliveries; while saturated it
    stops fetching until a delivery settles.
    """

    def __init__(
        self,
        name: str,
        pool: "WorkerPool",
        queues: dict[Priority, list[str]],
        prefetch: int,
        selector: WeightedPrioritySelector,
    ):
        self.name = name
        self.pool = pool
        self.queues = queues
        self.prefetch = prefetch
        self.selector = selector
        self.semaphore = asyncio.Semaphore(prefetch)
        self.tasks: set[asyncio.Task] = set()
        self._cursor = {p: 0 for p in PRIORITY_ORDER}

    async def next_message(self) -> QueueMessage | None:
        for priority in self.selector.order():
            queues = self.queues.get(priority, [])
            start = self._cursor[priority]
            for offset in range(len(queues)):
                index = (start + offset) % len(queues)
                message = await self.pool.broker.fetch(queues[index], self.name)
                if message is not None:
                    # Rotate dedicated queues within a tier
                    self._cursor[priority] = (index + 1) % len(queues)
                    return message
        self.selector.reset()
        return None

    async def run(self, stop: asyncio.Event) -> None:
        bind_worker_context(self.name)
        logger.info("Worker unit started", prefetch=self.prefetch)
        while not stop.is_set():
            await self.semaphore.acquire()
            if stop.is_set():
                self.semaphore.release()
                break

            try:
                message = await self.next_message()
            except Exception:
                # A failed fetch never ends the unit
                self.semaphore.release()
                logger.exception("Fetch failed")
                await _idle(stop, self.pool.poll_interval)
                continue

            if message is None:
                self.semaphore.release()
                await _idle(stop, self.pool.poll_interval)
                continue

            task = asyncio.create_task(self._handle(message))
            self.tasks.add(task)
            task.add_done_callback(self.tasks.discard)
        logger.info("Worker unit stopped")

    async def _handle(self, message: QueueMessage) -> None:
        try:
            await self.pool.process_delivery(message, self.name)
        except Exception:
            # Unsettled; the lease expiry will redeliver it
            logger.exception(
                "Delivery processing failed",
                job_id=str(message.job.id),
                delivery_tag=message.delivery_tag,
            )
        finally:
            self.semaphore.release()


class WorkerPool:
    """
    Fixed set of worker units plus maintenance and dead-letter consumers.

    Features:
    - Prefetch-bounded units for backpressure
    - Weighted round-robin between priority tiers
    - Rate-limit deferral that does not consume a retry
    - Per-attempt deadline with retry/dead-letter hand-off
    - Lease reaping for crashed consumers and graceful shutdown
    """

    def __init__(
        self,
        settings: Settings,
        broker: Broker,
        topology: BrokerTopology,
        job_types: JobTypeRegistry,
        handlers: TaskHandlerRegistry,
        rate_limiter: RateLimiter,
        retry: RetryCoordinator,
        monitor: Monitor,
        dead_letter_handler: DeadLetterHandler | None = None,
    ):
        self.settings = settings
        self.broker = broker
        self.topology = topology
        self.job_types = job_types
        self.handlers = handlers
        self.rate_limiter = rate_limiter
        self.retry = retry
        self.monitor = monitor
        self.dead_letter_handler = dead_letter_handler
        self.worker_id = _worker_id()
        self.poll_interval = settings.poll_interval_ms / 1000
        self.rate_limit_defer = settings.rate_limit_defer_ms / 1000
        self.units: list[WorkerUnit] = []
        self.running = False
        self._stop = asyncio.Event()
        self._loops: list[asyncio.Task] = []

    @property
    def weights(self) -> dict[Priority, int]:
        return {
            Priority.HIGH: self.settings.priority_weight_high,
            Priority.NORMAL: self.settings.priority_weight_normal,
            Priority.LOW: self.settings.priority_weight_low,
        }

    @property
    def queues(self) -> dict[Priority, list[str]]:
        return self.topology.declare(self.job_types.definitions())

    def all_queues(self) -> list[str]:
        names = [q for tier in self.queues.values() for q in tier]
        return names + [self.topology.dead_letter_queue]

    @property
    def active_count(self) -> int:
        return sum(len(unit.tasks) for unit in self.units)

    async def start(self) -> None:
        if self.running:
            raise RuntimeError("Worker pool is already running")

        self.running = True
        self._stop = asyncio.Event()
        queues = self.queues
        self.units = [
            WorkerUnit(
                name=f"{self.worker_id}-w{i}",
                pool=self,
                queues=queues,
                prefetch=self.settings.prefetch_count,
                selector=WeightedPrioritySelector(self.weights),
            )
            for i in range(self.settings.worker_count)
        ]
        self._loops = [asyncio.create_task(unit.run(self._stop)) for unit in self.units]
        self._loops.append(asyncio.create_task(self._maintenance_loop()))
        if self.dead_letter_handler is not None:
            self._loops.append(
                asyncio.create_task(self.dead_letter_handler.run(self._stop))
            )

        logger.info(
            "Worker pool started",
            worker_id=self.worker_id,
            worker_count=self.settings.worker_count,
            prefetch_count=self.settings.prefetch_count,
            weights={p.value: w for p, w in self.weights.items()},
            queues={p.value: q for p, q in queues.items()},
        )

    async def stop(self, grace: float | None = None) -> None:
        """Stop fetching, let in-flight work finish, then requeue the rest."""
        if not self.running:
            return
        grace = self.settings.shutdown_grace_s if grace is None else grace
        logger.info("Stopping worker pool", worker_id=self.worker_id, grace=grace)
        self._stop.set()

        in_flight = [task for unit in self.units for task in unit.tasks]
        if in_flight:
            _, pending = await asyncio.wait(in_flight, timeout=grace)
            if pending:
                logger.warning(
                    "Cancelling in-flight jobs after grace period",
                    worker_id=self.worker_id,
                    active_jobs=len(pending),
                )
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)

        _, lingering = await asyncio.wait(self._loops, timeout=self.poll_interval * 2)
        for task in lingering:
            task.cancel()
        await asyncio.gather(*self._loops, return_exceptions=True)

        self._loops = []
        self.running = False
        logger.info("Worker pool stopped", worker_id=self.worker_id)

    async def serve(self, stop: asyncio.Event) -> None:
        """Run until ``stop`` is set, then shut down gracefully."""
        await self.start()
        try:
            await stop.wait()
        finally:
            await self.stop()

    async def _maintenance_loop(self) -> None:
        while not self._stop.is_set():
            try:
                await self.run_maintenance()
            except Exception:
                logger.exception("Maintenance pass failed", worker_id=self.worker_id)
            await _idle(self._stop, self.settings.maintenance_interval_s)

    async def run_maintenance(self) -> dict[str, Any]:
        """Requeue lapsed leases, free rate-limit slots, refresh gauges."""
        requeued = await self.broker.requeue_expired()
        reaped = await self.rate_limiter.reap_expired()
        await self.monitor.refresh(self.broker, self.all_queues())
        breaches = self.monitor.log_breaches()
        return {"requeued": requeued, "reaped": reaped, "breaches": len(breaches)}

    async def process_delivery(self, message: QueueMessage, worker: str) -> JobOutcome:
        """Run one delivery through rate limiting, the handler and settlement."""
        job = message.job
        log = logger.bind(
            job_id=str(job.id),
            job_type=job.type,
            retry_count=job.retry_count,
            worker=worker,
            queue=message.queue,
        )

        if message.expirations > self.settings.max_lease_expirations:
            return await self._dead_letter(
                message,
                JobFailure(
                    FailureKind.LEASE_EXPIRED,
                    f"Delivery lease expired {message.expirations} times",
                ),
            )

        definition = self.job_types.find(job.type)
        if definition is None:
            return await self._dead_letter(
                message,
                JobFailure(FailureKind.CONFIGURATION, f"Unknown job type: {job.type}"),
            )

        lease_id = message.delivery_tag
        acquired = False
        try:
            if definition.rate_limit.enabled:
                acquired = await self.rate_limiter.acquire(
                    lease_id,
                    job.type,
                    job.owner_context,
                    definition.rate_limit,
                    ttl=self.topology.message_ttl(job),
                )
                if not acquired:
                    await self.broker.reject(
                        message, requeue=True, delay=self.rate_limit_defer
                    )
                    self.monitor.record_outcome(job.type, JobOutcome.RATE_LIMITED)
                    log.debug("Job deferred by rate limit", delay=self.rate_limit_defer)
                    return JobOutcome.RATE_LIMITED

            handler = self.handlers.find(job.type)
            if handler is None:
                return await self._dead_letter(
                    message,
                    JobFailure(
                        FailureKind.CONFIGURATION,
                        f"No task handler registered for job type: {job.type}",
                    ),
                )

            return await self._execute(message, handler, log)
        finally:
            if acquired:
                await self.rate_limiter.release(lease_id)

    async def _execute(
        self, message: QueueMessage, handler: TaskHandler, log: Any
    ) -> JobOutcome:
        job = message.job
        started = time.perf_counter()
        log.info(
            "Job dispatched",
            state=JobState.DISPATCHED.value,
            redelivered=message.redelivered,
        )

        try:
            result = await asyncio.wait_for(handler.process(job), timeout=job.timeout)
        except asyncio.CancelledError:
            # Pool shutdown: hand the message back without consuming a retry
            await asyncio.shield(self.broker.reject(message, requeue=True))
            log.warning("Job cancelled and requeued", state=JobState.QUEUED.value)
            raise
        except TimeoutError:
            failure = JobFailure.from_timeout(job.timeout)
        except Exception as e:
            failure = JobFailure.from_exception(e)
        else:
            outcome = normalize_outcome(result)
            if isinstance(outcome, Success):
                await self.broker.ack(message)
                duration = time.perf_counter() - started
                self.monitor.record_outcome(job.type, JobOutcome.SUCCESS, duration)
                log.info(
                    "Job succeeded",
                    state=JobState.SUCCEEDED.value,
                    duration=round(duration, 4),
                )
                return JobOutcome.SUCCESS
            failure = JobFailure.from_outcome(outcome)

        duration = time.perf_counter() - started
        self.monitor.record_outcome(job.type, JobOutcome.FAILURE, duration)
        log.warning(
            "Job attempt failed",
            error=failure.message,
            error_kind=failure.kind.value,
            duration=round(duration, 4),
        )

        decision = await self.retry.handle_failure(
            job, failure, origin_queue=message.queue
        )
        await self.broker.reject(message, requeue=False)

        if isinstance(decision, Requeued):
            self.monitor.record_outcome(job.type, JobOutcome.RETRIED)
            return JobOutcome.RETRIED
        self.monitor.record_outcome(job.type, JobOutcome.DEAD_LETTERED)
        return JobOutcome.DEAD_LETTERED

    async def _dead_letter(self, message: QueueMessage, failure: JobFailure) -> JobOutcome:
        await self.retry.dead_letter(message.job, failure, origin_queue=message.queue)
        await self.broker.reject(message, requeue=False)
        self.monitor.record_outcome(message.job.type, JobOutcome.DEAD_LETTERED)
        return JobOutcome.DEAD_LETTERED
