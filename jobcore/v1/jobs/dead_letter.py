"""
Dead-letter consumption, persistence and escalation.

The handler drains the dead-letter queue, stores one DeadLetterRecord per
job, escalates by the job type's severity and calls the task handler's
terminal-failure hook once. Nothing here ever re-publishes a job.
"""

import asyncio
from datetime import UTC, datetime
from typing import Protocol
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jobcore.config.logging import get_logger
from jobcore.v1.core.exceptions import BrokerUnavailable
from jobcore.v1.core.registries import JobTypeRegistry, TaskHandlerRegistry
from jobcore.v1.jobs.broker import Broker, BrokerTopology
from jobcore.v1.jobs.models import DeadLetter
from jobcore.v1.jobs.schemas import DeadLetterRecord, FailureSeverity, QueueMessage

logger = get_logger(__name__)

DEAD_LETTER_CONSUMER = "dead-letter-handler"


class DeadLetterStore(Protocol):
    async def save(self, record: DeadLetterRecord) -> bool:
        """Persist ``record``; False when one already exists for the job."""
        ...

    async def get(self, job_id: UUID) -> DeadLetterRecord | None: ...

    async def recent(self, limit: int) -> list[DeadLetterRecord]: ...

    async def count(self) -> int: ...


class InMemoryDeadLetterStore:
    def __init__(self):
        self._records: dict[UUID, DeadLetterRecord] = {}

    async def save(self, record: DeadLetterRecord) -> bool:
        if record.job_id in self._records:
            return False
        self._records[record.job_id] = record
        return True

    async def get(self, job_id: UUID) -> DeadLetterRecord | None:
        return self._records.get(job_id)

    async def recent(self, limit: int) -> list[DeadLetterRecord]:
        records = sorted(
            self._records.values(), key=lambda r: r.failed_at, reverse=True
        )
        return records[:limit]

    async def count(self) -> int:
        return len(self._records)


class SqlDeadLetterStore:
    """Dead letters in the ``dead_letters`` table, keyed by job id."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def save(self, record: DeadLetterRecord) -> bool:
        values = record.model_dump()
        values["priority"] = record.priority.value
        values["severity"] = record.severity.value

        async with self.session_factory() as session:
            session.add(DeadLetter(**values))
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return False
        return True

    async def get(self, job_id: UUID) -> DeadLetterRecord | None:
        async with self.session_factory() as session:
            row = await session.get(DeadLetter, job_id)
            return DeadLetterRecord.model_validate(row) if row else None

    async def recent(self, limit: int) -> list[DeadLetterRecord]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(DeadLetter)
                .order_by(DeadLetter.failed_at.desc(), DeadLetter.job_id)
                .limit(limit)
            )
            return [DeadLetterRecord.model_validate(row) for row in result.scalars()]

    async def count(self) -> int:
        async with self.session_factory() as session:
            result = await session.execute(
                select(func.count()).select_from(DeadLetter)
            )
            return result.scalar_one()


class OperatorAlerter(Protocol):
    async def page(self, record: DeadLetterRecord) -> None: ...


class LogAlerter:
    """Default alert sink: a critical log line for the log pipeline to route."""

    async def page(self, record: DeadLetterRecord) -> None:
        logger.critical(
            "Operator page: critical job dead-lettered",
            job_id=str(record.job_id),
            job_type=record.job_type,
            error=record.final_error,
            error_kind=record.error_kind,
            owner_tenant_id=record.owner_tenant_id,
        )


def _parse_failed_at(value: str | None) -> datetime:
    if value:
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            pass
    return datetime.now(UTC)


class DeadLetterHandler:
    def __init__(
        self,
        broker: Broker,
        topology: BrokerTopology,
        store: DeadLetterStore,
        job_types: JobTypeRegistry,
        handlers: TaskHandlerRegistry,
        alerter: OperatorAlerter | None = None,
        poll_interval: float = 0.25,
        retry_delay: float = 5.0,
    ):
        self.broker = broker
        self.topology = topology
        self.store = store
        self.job_types = job_types
        self.handlers = handlers
        self.alerter = alerter or LogAlerter()
        self.poll_interval = poll_interval
        self.retry_delay = retry_delay

    def build_record(self, message: QueueMessage) -> DeadLetterRecord:
        job = message.job
        definition = self.job_types.find(job.type)
        severity = definition.severity if definition else FailureSeverity.REVIEW
        return DeadLetterRecord.from_job(
            job,
            final_error=message.headers.get("x-error") or "unknown error",
            error_kind=message.headers.get("x-error-kind") or "error",
            severity=severity,
            origin_queue=message.headers.get("x-origin-queue"),
            failed_at=_parse_failed_at(message.headers.get("x-failed-at")),
        )

    async def process(self, message: QueueMessage) -> DeadLetterRecord | None:
        """Persist and escalate one dead-lettered delivery, then acknowledge it."""
        record = self.build_record(message)
        log = logger.bind(
            job_id=str(record.job_id),
            job_type=record.job_type,
            retry_count=record.retry_count,
            queue=message.queue,
        )

        try:
            created = await self.store.save(record)
        except (SQLAlchemyError, OSError):
            # Keep the message; the record must exist before the ack
            log.exception("Failed to persist dead letter")
            await self.broker.reject(message, requeue=True, delay=self.retry_delay)
            return None

        if created:
            log.info(
                "Dead letter recorded",
                severity=record.severity.value,
                error_kind=record.error_kind,
            )
            await self._escalate(message, record)
        else:
            log.info("Duplicate dead letter delivery ignored")

        await self.broker.ack(message)
        return record

    async def _escalate(self, message: QueueMessage, record: DeadLetterRecord) -> None:
        if record.severity == FailureSeverity.CRITICAL:
            try:
                await self.alerter.page(record)
            except Exception:
                logger.exception("Operator alert failed", job_id=str(record.job_id))
        elif record.severity == FailureSeverity.REVIEW:
            logger.info(
                "Dead letter queued for review",
                job_id=str(record.job_id),
                job_type=record.job_type,
            )

        handler = self.handlers.find(record.job_type)
        if handler is None:
            return
        try:
            await handler.handle_terminal_failure(message.job, record.final_error)
        except Exception:
            # Notification is best-effort
            logger.exception(
                "Terminal failure hook raised",
                job_id=str(record.job_id),
                job_type=record.job_type,
            )

    async def run(self, stop: asyncio.Event) -> None:
        """Drain the dead-letter queue until ``stop`` is set."""
        queue = self.topology.dead_letter_queue
        logger.info("Dead-letter handler started", queue=queue)
        while not stop.is_set():
            try:
                message = await self.broker.fetch(queue, DEAD_LETTER_CONSUMER)
                if message is None:
                    await self._idle(stop)
                    continue
                await self.process(message)
            except BrokerUnavailable:
                logger.exception("Dead-letter handler lost the broker", queue=queue)
                await self._idle(stop)
            except Exception:
                # The delivery stays unsettled and comes back after its lease
                logger.exception("Dead letter processing failed", queue=queue)
                await self._idle(stop)
        logger.info("Dead-letter handler stopped", queue=queue)

    async def _idle(self, stop: asyncio.Event) -> None:
        try:
            await asyncio.wait_for(stop.wait(), timeout=self.poll_interval)
        except TimeoutError:
            pass
