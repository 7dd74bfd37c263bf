"""
Persisted state for the durable broker, dead letters and rate-limit leases.
"""

from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from sqlalchemy import (
    JSON,
    TIMESTAMP,
    BigInteger,
    CheckConstraint,
    Float,
    Index,
    Integer,
    SmallInteger,
    Text,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from jobcore.infra.database import Base


class MessageState:
    READY = "ready"
    INFLIGHT = "inflight"
    # Body no longer decodes as a Job; kept for inspection, never delivered
    PARKED = "parked"


class BrokerMessage(Base):
    """
    One queued delivery in the SQL-backed broker.

    Rows are claimed with SELECT ... FOR UPDATE SKIP LOCKED and a conditional
    state update, acknowledged by deletion, and returned to ``ready`` on
    reject or lease expiry. Rows that fail to decode are parked rather than
    deleted. Timestamps are epoch seconds.
    """

    __tablename__ = "broker_messages"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"),
        primary_key=True,
        autoincrement=True,
        comment="Monotonic id; FIFO order within a queue",
    )
    queue: Mapped[str] = mapped_column(Text, nullable=False)
    job_id: Mapped[str] = mapped_column(Text, nullable=False)
    body: Mapped[dict[str, Any]] = mapped_column(
        JSON, nullable=False, comment="Serialized Job"
    )
    headers: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    state: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default=MessageState.READY,
        comment="ready|inflight|parked",
    )
    available_at: Mapped[float] = mapped_column(
        Float, nullable=False, comment="Earliest delivery time"
    )
    ttl_s: Mapped[float] = mapped_column(
        Float, nullable=False, comment="Lease length once dispatched"
    )
    lease_expires_at: Mapped[float | None] = mapped_column(Float, nullable=True)
    consumer: Mapped[str | None] = mapped_column(Text, nullable=True)
    deliveries: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    expirations: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    published_at: Mapped[float] = mapped_column(Float, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "state IN ('ready', 'inflight', 'parked')", name="broker_messages_state_check"
        ),
        Index("ix_broker_messages_claim", "queue", "state", "available_at", "id"),
        Index("ix_broker_messages_lease", "state", "lease_expires_at"),
    )


class DeadLetter(Base):
    """Terminal failure snapshot. Written once, never updated or auto-deleted."""

    __tablename__ = "dead_letters"

    job_id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    job_type: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    priority: Mapped[str] = mapped_column(Text, nullable=False)
    final_error: Mapped[str] = mapped_column(Text, nullable=False)
    error_kind: Mapped[str] = mapped_column(Text, nullable=False)
    retry_count: Mapped[int] = mapped_column(SmallInteger, nullable=False)
    max_retries: Mapped[int] = mapped_column(SmallInteger, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False
    )
    failed_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        index=True,
    )
    owner_tenant_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    owner_user_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    correlation_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    severity: Mapped[str] = mapped_column(Text, nullable=False)
    origin_queue: Mapped[str | None] = mapped_column(Text, nullable=True)


class RateLimitCounter(Base):
    """In-flight count for one rate-limit key, shared by every worker."""

    __tablename__ = "rate_limit_counters"

    key: Mapped[str] = mapped_column(Text, primary_key=True)
    in_flight: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        CheckConstraint("in_flight >= 0", name="rate_limit_counters_non_negative"),
    )


class RateLimitLease(Base):
    """A held concurrency slot; expiry frees slots of crashed workers."""

    __tablename__ = "rate_limit_leases"

    lease_id: Mapped[str] = mapped_column(Text, primary_key=True)
    keys: Mapped[list[str]] = mapped_column(
        JSON, nullable=False, comment="Counter keys incremented by this lease"
    )
    expires_at: Mapped[float] = mapped_column(Float, nullable=False, index=True)
