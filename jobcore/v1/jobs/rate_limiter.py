"""
Concurrency limits per job type and per owner.

Each successful ``acquire`` takes one slot on every applicable counter and
records a lease keyed by the delivery tag. ``release`` gives the slots back
and is safe to call twice. Leases carry an expiry so slots held by a crashed
worker are freed by ``reap_expired``.
"""

import time
from collections.abc import Callable
from typing import Protocol

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jobcore.config.logging import get_logger
from jobcore.v1.jobs.models import RateLimitCounter, RateLimitLease
from jobcore.v1.jobs.schemas import OwnerContext, RateLimit

logger = get_logger(__name__)

ANONYMOUS_OWNER = "-"


def global_key(job_type: str) -> str:
    return f"type:{job_type}"


def owner_key(job_type: str, owner: OwnerContext | None) -> str:
    return f"owner:{job_type}:{owner.key if owner else ANONYMOUS_OWNER}"


def limit_keys(
    job_type: str, owner: OwnerContext | None, limit: RateLimit
) -> list[tuple[str, int]]:
    """Counter keys with their caps that a dispatch of this job must fit under."""
    keys = []
    if limit.max_concurrent_global is not None:
        keys.append((global_key(job_type), limit.max_concurrent_global))
    if limit.max_concurrent_per_owner is not None:
        keys.append((owner_key(job_type, owner), limit.max_concurrent_per_owner))
    return keys


class RateLimiter(Protocol):
    async def acquire(
        self,
        lease_id: str,
        job_type: str,
        owner: OwnerContext | None,
        limit: RateLimit,
        ttl: float,
    ) -> bool: ...

    async def release(self, lease_id: str) -> None: ...

    async def reap_expired(self) -> int: ...

    async def in_flight(self, key: str) -> int: ...


class InMemoryRateLimiter:
    """Counters for workers sharing one event loop."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._counts: dict[str, int] = {}
        self._leases: dict[str, tuple[list[str], float]] = {}

    async def acquire(
        self,
        lease_id: str,
        job_type: str,
        owner: OwnerContext | None,
        limit: RateLimit,
        ttl: float,
    ) -> bool:
        keys = limit_keys(job_type, owner, limit)
        if not keys or lease_id in self._leases:
            return True
        if any(self._counts.get(key, 0) >= cap for key, cap in keys):
            return False

        for key, _ in keys:
            self._counts[key] = self._counts.get(key, 0) + 1
        self._leases[lease_id] = ([key for key, _ in keys], self._clock() + ttl)
        return True

    async def release(self, lease_id: str) -> None:
        lease = self._leases.pop(lease_id, None)
        if lease is None:
            return
        for key in lease[0]:
            self._counts[key] = max(0, self._counts.get(key, 0) - 1)

    async def reap_expired(self) -> int:
        now = self._clock()
        expired = [
            lease_id
            for lease_id, (_, expires_at) in self._leases.items()
            if expires_at <= now
        ]
        for lease_id in expired:
            await self.release(lease_id)
        if expired:
            logger.warning("Expired rate-limit leases reaped", count=len(expired))
        return len(expired)

    async def in_flight(self, key: str) -> int:
        return self._counts.get(key, 0)


class SqlRateLimiter:
    """
    Counters in ``rate_limit_counters`` shared by workers on every node.

    A slot is taken with ``UPDATE ... SET in_flight = in_flight + 1 WHERE
    in_flight < cap``; all counters of one acquire change in a single
    transaction, so a refusal on the owner counter rolls back the global one.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Callable[[], float] = time.time,
    ):
        self.session_factory = session_factory
        self._clock = clock
        self._known_keys: set[str] = set()

    async def _ensure_counters(self, keys: list[str]) -> None:
        for key in keys:
            if key in self._known_keys:
                continue
            async with self.session_factory() as session:
                exists = await session.get(RateLimitCounter, key)
                if exists is None:
                    session.add(RateLimitCounter(key=key, in_flight=0))
                    try:
                        await session.commit()
                    except IntegrityError:
                        # Created concurrently by another worker
                        await session.rollback()
            self._known_keys.add(key)

    async def acquire(
        self,
        lease_id: str,
        job_type: str,
        owner: OwnerContext | None,
        limit: RateLimit,
        ttl: float,
    ) -> bool:
        keys = limit_keys(job_type, owner, limit)
        if not keys:
            return True

        await self._ensure_counters([key for key, _ in keys])
        async with self.session_factory() as session:
            if await session.get(RateLimitLease, lease_id) is not None:
                # This delivery already holds its slots
                return True

            for key, cap in keys:
                result = await session.execute(
                    update(RateLimitCounter)
                    .where(RateLimitCounter.key == key, RateLimitCounter.in_flight < cap)
                    .values(in_flight=RateLimitCounter.in_flight + 1)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    await session.rollback()
                    return False

            session.add(
                RateLimitLease(
                    lease_id=lease_id,
                    keys=[key for key, _ in keys],
                    expires_at=self._clock() + ttl,
                )
            )
            try:
                await session.commit()
            except IntegrityError:
                # A concurrent acquire for the same delivery won; the rollback
                # undid this attempt's increments, so only its lease counts
                await session.rollback()
                held = await session.get(RateLimitLease, lease_id) is not None
                logger.warning(
                    "Concurrent rate-limit acquire", lease_id=lease_id, held=held
                )
                return held
            return True

    async def release(self, lease_id: str) -> None:
        async with self.session_factory() as session:
            lease = await session.get(RateLimitLease, lease_id)
            if lease is None:
                return
            keys = list(lease.keys)

            # Deleting first makes a concurrent second release a no-op
            result = await session.execute(
                delete(RateLimitLease)
                .where(RateLimitLease.lease_id == lease_id)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await session.rollback()
                return

            for key in keys:
                await session.execute(
                    update(RateLimitCounter)
                    .where(RateLimitCounter.key == key, RateLimitCounter.in_flight > 0)
                    .values(in_flight=RateLimitCounter.in_flight - 1)
                    .execution_options(synchronize_session=False)
                )
            await session.commit()

    async def reap_expired(self) -> int:
        async with self.session_factory() as session:
            result = await session.execute(
                select(RateLimitLease.lease_id).where(
                    RateLimitLease.expires_at <= self._clock()
                )
            )
            expired = list(result.scalars().all())

        for lease_id in expired:
            await self.release(lease_id)
        if expired:
            logger.warning("Expired rate-limit leases reaped", count=len(expired))
        return len(expired)

    async def in_flight(self, key: str) -> int:
        async with self.session_factory() as session:
            counter = await session.get(RateLimitCounter, key)
            return counter.in_flight if counter else 0
