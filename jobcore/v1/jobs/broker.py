"""
Broker topology and queue backends.

Queues are named ``{prefix}.{priority}`` for the shared tiers and
``{prefix}.{queue}.{priority}`` for job types with a dedicated queue, plus a
single ``{prefix}.dead`` dead-letter queue. Delivery is at-least-once: a
dispatched message stays owned by its consumer until it is acknowledged,
rejected, or its lease (job timeout times the safety factor) lapses.
"""

import heapq
import itertools
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any, Protocol

from pydantic import ValidationError
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jobcore.config.logging import get_logger
from jobcore.v1.core.exceptions import BrokerUnavailable
from jobcore.v1.jobs.models import BrokerMessage, MessageState
from jobcore.v1.jobs.schemas import (
    PRIORITY_ORDER,
    Job,
    JobTypeDefinition,
    Priority,
    QueueMessage,
)

logger = get_logger(__name__)


class BrokerTopology:
    """Derives queue names, routing keys and message TTLs."""

    def __init__(self, prefix: str = "jobs", ttl_safety_factor: float = 2.0):
        if ttl_safety_factor <= 1.0:
            raise ValueError("ttl_safety_factor must be greater than 1")
        self.prefix = prefix
        self.ttl_safety_factor = ttl_safety_factor

    def priority_queue(self, priority: Priority) -> str:
        return f"{self.prefix}.{priority.value}"

    def type_queue(self, queue: str, priority: Priority) -> str:
        return f"{self.prefix}.{queue}.{priority.value}"

    @property
    def dead_letter_queue(self) -> str:
        return f"{self.prefix}.dead"

    def routing_key(self, definition: JobTypeDefinition, priority: Priority) -> str:
        """Queue a job of this type and priority is published to."""
        if definition.queue:
            return self.type_queue(definition.queue, priority)
        return self.priority_queue(priority)

    def declare(
        self, definitions: Iterable[JobTypeDefinition]
    ) -> dict[Priority, list[str]]:
        """All work queues grouped by priority tier, shared tier first."""
        dedicated = sorted({d.queue for d in definitions if d.queue})
        return {
            priority: [self.priority_queue(priority)]
            + [self.type_queue(name, priority) for name in dedicated]
            for priority in PRIORITY_ORDER
        }

    def message_ttl(self, job: Job) -> float:
        return job.timeout * self.ttl_safety_factor


class Broker(Protocol):
    """Queue operations used by the submitter, workers and retry coordinator."""

    async def publish(
        self,
        queue: str,
        job: Job,
        *,
        delay: float = 0.0,
        headers: dict[str, Any] | None = None,
    ) -> QueueMessage:
        """Durably enqueue ``job``; returns only once the message is stored."""
        ...

    async def fetch(self, queue: str, consumer: str) -> QueueMessage | None:
        """Dispatch the oldest available message of ``queue`` or return None."""
        ...

    async def ack(self, message: QueueMessage) -> None: ...

    async def reject(
        self, message: QueueMessage, *, requeue: bool, delay: float = 0.0
    ) -> None: ...

    async def requeue_expired(self) -> int:
        """Return messages with lapsed leases to their queues."""
        ...

    async def depth(self, queue: str) -> int: ...

    async def in_flight_count(self) -> int: ...

    async def close(self) -> None: ...


def delivery_tag(message_id: int, deliveries: int) -> str:
    return f"{message_id}.{deliveries}"


def parse_delivery_tag(tag: str) -> tuple[int, int]:
    message_id, _, deliveries = tag.partition(".")
    return int(message_id), int(deliveries)


def decode_job(body: Any, queue: str) -> Job | None:
    """Validate a stored body; None (and an error log) when it is not a Job."""
    try:
        return Job.model_validate(body)
    except ValidationError as e:
        logger.error(
            "Undecodable message removed from queue",
            queue=queue,
            job_id=body.get("id") if isinstance(body, dict) else None,
            body=body,
            error=str(e),
        )
        return None


@dataclass
class _StoredMessage:
    seq: int
    queue: str
    body: dict[str, Any]
    headers: dict[str, Any]
    ttl: float
    deliveries: int = 0
    expirations: int = 0
    lease_deadline: float | None = None

    def to_message(self, job: Job) -> QueueMessage:
        return QueueMessage(
            delivery_tag=delivery_tag(self.seq, self.deliveries),
            queue=self.queue,
            job=job,
            deliveries=self.deliveries,
            expirations=self.expirations,
            headers=dict(self.headers),
        )


@dataclass
class _Queue:
    ready: list[tuple[int, _StoredMessage]] = field(default_factory=list)
    scheduled: int = 0


class InMemoryBroker:
    """
    Process-local broker for tests and single-process deployments.

    Messages are ordered by publish sequence within a queue, so a requeued
    message returns to its original position. All state changes happen
    without awaiting, which makes each operation atomic on the event loop.
    A body that no longer decodes as a Job is logged and dropped at fetch.
    """

    def __init__(
        self,
        topology: BrokerTopology,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.topology = topology
        self._clock = clock
        self._seq = itertools.count(1)
        self._queues: dict[str, _Queue] = {}
        self._scheduled: list[tuple[float, int, _StoredMessage]] = []
        self._in_flight: dict[str, _StoredMessage] = {}
        self._closed = False

    def _queue(self, name: str) -> _Queue:
        return self._queues.setdefault(name, _Queue())

    def _check_open(self) -> None:
        if self._closed:
            raise BrokerUnavailable("Broker is closed")

    def _enqueue(self, stored: _StoredMessage, delay: float) -> None:
        if delay > 0:
            heapq.heappush(
                self._scheduled, (self._clock() + delay, stored.seq, stored)
            )
            self._queue(stored.queue).scheduled += 1
        else:
            heapq.heappush(self._queue(stored.queue).ready, (stored.seq, stored))

    def _promote_due(self) -> None:
        now = self._clock()
        while self._scheduled and self._scheduled[0][0] <= now:
            _, seq, stored = heapq.heappop(self._scheduled)
            queue = self._queue(stored.queue)
            queue.scheduled -= 1
            heapq.heappush(queue.ready, (seq, stored))

    async def publish(
        self,
        queue: str,
        job: Job,
        *,
        delay: float = 0.0,
        headers: dict[str, Any] | None = None,
    ) -> QueueMessage:
        self._check_open()
        stored = _StoredMessage(
            seq=next(self._seq),
            queue=queue,
            body=job.model_dump(mode="json"),
            headers=dict(headers or {}),
            ttl=self.topology.message_ttl(job),
        )
        self._enqueue(stored, delay)
        return stored.to_message(job)

    async def fetch(self, queue: str, consumer: str) -> QueueMessage | None:
        self._check_open()
        self._promote_due()
        ready = self._queue(queue).ready
        while ready:
            _, stored = heapq.heappop(ready)
            job = decode_job(stored.body, queue)
            if job is None:
                continue
            stored.deliveries += 1
            stored.lease_deadline = self._clock() + stored.ttl
            message = stored.to_message(job)
            self._in_flight[message.delivery_tag] = stored
            return message
        return None

    def _settle(self, message: QueueMessage, action: str) -> _StoredMessage | None:
        stored = self._in_flight.pop(message.delivery_tag, None)
        if stored is None:
            # Lease already lapsed and the message went back to its queue
            logger.warning(
                "Stale delivery settled",
                action=action,
                delivery_tag=message.delivery_tag,
                queue=message.queue,
                job_id=str(message.job.id),
            )
        return stored

    async def ack(self, message: QueueMessage) -> None:
        self._settle(message, "ack")

    async def reject(
        self, message: QueueMessage, *, requeue: bool, delay: float = 0.0
    ) -> None:
        stored = self._settle(message, "reject")
        if stored is None or not requeue:
            return
        stored.lease_deadline = None
        self._enqueue(stored, delay)

    async def requeue_expired(self) -> int:
        now = self._clock()
        expired = [
            tag
            for tag, stored in self._in_flight.items()
            if stored.lease_deadline is not None and stored.lease_deadline <= now
        ]
        for tag in expired:
            stored = self._in_flight.pop(tag)
            stored.expirations += 1
            stored.lease_deadline = None
            self._enqueue(stored, 0.0)
            logger.warning(
                "Message lease expired",
                delivery_tag=tag,
                queue=stored.queue,
                job_id=stored.body.get("id"),
                expirations=stored.expirations,
            )
        return len(expired)

    async def depth(self, queue: str) -> int:
        self._promote_due()
        q = self._queues.get(queue)
        if q is None:
            return 0
        return len(q.ready) + q.scheduled

    async def in_flight_count(self) -> int:
        return len(self._in_flight)

    async def close(self) -> None:
        self._closed = True


class SqlBroker:
    """
    Durable broker on the ``broker_messages`` table.

    Claims use SELECT ... FOR UPDATE SKIP LOCKED followed by a conditional
    update, so concurrent consumers on any node never receive the same
    delivery. Acks delete the row; every settle is conditioned on the
    delivery count so a consumer whose lease lapsed cannot settle a newer
    delivery. A row whose body no longer decodes as a Job is moved to the
    ``parked`` state, where it stays for inspection and is never delivered.
    Times are epoch seconds shared by all nodes.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        topology: BrokerTopology,
        clock: Callable[[], float] = time.time,
    ):
        self.session_factory = session_factory
        self.topology = topology
        self._clock = clock

    async def publish(
        self,
        queue: str,
        job: Job,
        *,
        delay: float = 0.0,
        headers: dict[str, Any] | None = None,
    ) -> QueueMessage:
        now = self._clock()
        row = BrokerMessage(
            queue=queue,
            job_id=str(job.id),
            body=job.model_dump(mode="json"),
            headers=dict(headers or {}),
            state=MessageState.READY,
            available_at=now + max(delay, 0.0),
            ttl_s=self.topology.message_ttl(job),
            deliveries=0,
            expirations=0,
            published_at=now,
        )
        try:
            async with self.session_factory() as session:
                session.add(row)
                await session.commit()
        except (SQLAlchemyError, OSError) as e:
            raise BrokerUnavailable(
                "Failed to publish message", details={"queue": queue, "error": str(e)}
            ) from e

        return QueueMessage(
            delivery_tag=delivery_tag(row.id, 0),
            queue=queue,
            job=job,
            headers=dict(row.headers),
        )

    async def fetch(self, queue: str, consumer: str) -> QueueMessage | None:
        now = self._clock()
        try:
            async with self.session_factory() as session:
                while True:
                    result = await session.execute(
                        select(BrokerMessage)
                        .where(
                            BrokerMessage.queue == queue,
                            BrokerMessage.state == MessageState.READY,
                            BrokerMessage.available_at <= now,
                        )
                        .order_by(BrokerMessage.id)
                        .limit(1)
                        .with_for_update(skip_locked=True)
                    )
                    row = result.scalar_one_or_none()
                    if row is None:
                        return None

                    job = decode_job(row.body, queue)
                    if job is None:
                        await self._park(session, row.id)
                        continue

                    message_id = row.id
                    deliveries = row.deliveries + 1
                    claimed = await session.execute(
                        update(BrokerMessage)
                        .where(
                            BrokerMessage.id == message_id,
                            BrokerMessage.state == MessageState.READY,
                            BrokerMessage.deliveries == row.deliveries,
                        )
                        .values(
                            state=MessageState.INFLIGHT,
                            deliveries=deliveries,
                            consumer=consumer,
                            lease_expires_at=now + row.ttl_s,
                        )
                        .execution_options(synchronize_session=False)
                    )
                    if claimed.rowcount != 1:
                        # Another consumer won the claim
                        await session.rollback()
                        return None
                    await session.commit()

                    return QueueMessage(
                        delivery_tag=delivery_tag(message_id, deliveries),
                        queue=queue,
                        job=job,
                        deliveries=deliveries,
                        expirations=row.expirations,
                        headers=dict(row.headers or {}),
                    )
        except (SQLAlchemyError, OSError) as e:
            raise BrokerUnavailable(
                "Failed to fetch message", details={"queue": queue, "error": str(e)}
            ) from e

    async def _park(self, session: AsyncSession, message_id: int) -> None:
        await session.execute(
            update(BrokerMessage)
            .where(
                BrokerMessage.id == message_id,
                BrokerMessage.state == MessageState.READY,
            )
            .values(state=MessageState.PARKED)
            .execution_options(synchronize_session=False)
        )
        await session.commit()

    def _owned(self, message: QueueMessage):
        message_id, deliveries = parse_delivery_tag(message.delivery_tag)
        return (
            BrokerMessage.id == message_id,
            BrokerMessage.deliveries == deliveries,
            BrokerMessage.state == MessageState.INFLIGHT,
        )

    async def _settle(self, message: QueueMessage, statement, action: str) -> None:
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    statement.execution_options(synchronize_session=False)
                )
                await session.commit()
        except (SQLAlchemyError, OSError) as e:
            raise BrokerUnavailable(
                f"Failed to {action} message",
                details={"delivery_tag": message.delivery_tag, "error": str(e)},
            ) from e

        if result.rowcount != 1:
            logger.warning(
                "Stale delivery settled",
                action=action,
                delivery_tag=message.delivery_tag,
                queue=message.queue,
                job_id=str(message.job.id),
            )

    async def ack(self, message: QueueMessage) -> None:
        await self._settle(
            message, delete(BrokerMessage).where(*self._owned(message)), "ack"
        )

    async def reject(
        self, message: QueueMessage, *, requeue: bool, delay: float = 0.0
    ) -> None:
        if not requeue:
            await self._settle(
                message, delete(BrokerMessage).where(*self._owned(message)), "reject"
            )
            return

        await self._settle(
            message,
            update(BrokerMessage)
            .where(*self._owned(message))
            .values(
                state=MessageState.READY,
                available_at=self._clock() + max(delay, 0.0),
                lease_expires_at=None,
                consumer=None,
            ),
            "requeue",
        )

    async def requeue_expired(self) -> int:
        now = self._clock()
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    update(BrokerMessage)
                    .where(
                        BrokerMessage.state == MessageState.INFLIGHT,
                        BrokerMessage.lease_expires_at <= now,
                    )
                    .values(
                        state=MessageState.READY,
                        available_at=now,
                        expirations=BrokerMessage.expirations + 1,
                        lease_expires_at=None,
                        consumer=None,
                    )
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
        except (SQLAlchemyError, OSError) as e:
            raise BrokerUnavailable(
                "Failed to requeue expired messages", details={"error": str(e)}
            ) from e

        if result.rowcount:
            logger.warning("Message leases expired", count=result.rowcount)
        return result.rowcount

    async def _count(self, *criteria) -> int:
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(func.count()).select_from(BrokerMessage).where(*criteria)
                )
                return result.scalar_one()
        except (SQLAlchemyError, OSError) as e:
            raise BrokerUnavailable(
                "Failed to read queue state", details={"error": str(e)}
            ) from e

    async def depth(self, queue: str) -> int:
        return await self._count(
            BrokerMessage.queue == queue, BrokerMessage.state == MessageState.READY
        )

    async def in_flight_count(self) -> int:
        return await self._count(BrokerMessage.state == MessageState.INFLIGHT)

    async def close(self) -> None:
        # The engine belongs to Database; nothing to release here
        return None
