"""
Task handler building blocks.

A handler returns one of the outcome types below, or raises. Raising
NonRetryableError skips the remaining retries; any other exception is
treated as a retryable failure.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from jobcore.config.logging import get_logger
from jobcore.v1.jobs.schemas import Job

logger = get_logger(__name__)


@dataclass(frozen=True)
class Success:
    output: Any = None


@dataclass(frozen=True)
class RetryRequested:
    """The handler asks for another attempt, optionally after ``delay`` seconds."""

    reason: str
    delay: float | None = None


@dataclass(frozen=True)
class Failure:
    error: str
    retryable: bool = True


Outcome = Success | RetryRequested | Failure


class NonRetryableError(Exception):
    """Raised by a handler when retrying cannot succeed."""


class BaseTaskHandler:
    """
    Convenience base class for task handlers.

    Subclasses implement ``process``. The default terminal-failure hook only
    logs; override it to notify the job owner.
    """

    async def process(self, job: Job) -> Any:
        raise NotImplementedError

    async def handle_terminal_failure(self, job: Job, error: str) -> None:
        logger.info(
            "Terminal failure hook",
            job_id=str(job.id),
            job_type=job.type,
            error=error,
        )


class CallableTaskHandler(BaseTaskHandler):
    """Adapts a plain coroutine function into a task handler."""

    def __init__(
        self,
        fn: Callable[[Job], Awaitable[Any]],
        on_terminal_failure: Callable[[Job, str], Awaitable[None]] | None = None,
    ):
        self._fn = fn
        self._on_terminal_failure = on_terminal_failure

    async def process(self, job: Job) -> Any:
        return await self._fn(job)

    async def handle_terminal_failure(self, job: Job, error: str) -> None:
        if self._on_terminal_failure is None:
            await super().handle_terminal_failure(job, error)
            return
        await self._on_terminal_failure(job, error)


def normalize_outcome(result: Any) -> Outcome:
    """Wrap a bare handler return value as Success."""
    if isinstance(result, Success | RetryRequested | Failure):
        return result
    return Success(output=result)
