from typing import Any, Generic, Protocol, TypeVar

from jobcore.v1.core.exceptions import RegistryFrozenError, UnknownJobType
from jobcore.v1.jobs.schemas import Job, JobTypeDefinition

# Base registry implementation
T = TypeVar("T")


class Registry(Generic[T]):
    """Generic registry for pluggable implementations.

    Lookups are plain dict reads, so concurrent readers need no locking once
    registration at startup is complete. ``freeze()`` makes that explicit.
    """

    def __init__(self, name: str):
        self.name = name
        self._implementations: dict[str, T] = {}
        self._frozen = False

    def register(self, name: str, implementation: T) -> None:
        """Register an implementation with a given name."""
        if self._frozen:
            raise RegistryFrozenError(
                f"Cannot register '{name}' in {self.name.lower()} registry: "
                "registry is frozen"
            )
        self._implementations[name] = implementation

    def get(self, name: str) -> T:
        """Get an implementation by name."""
        if name not in self._implementations:
            raise KeyError(
                f"No {self.name.lower()} implementation registered with name: {name}"
            )
        return self._implementations[name]

    def find(self, name: str) -> T | None:
        """Get an implementation by name, or None when absent."""
        return self._implementations.get(name)

    def list(self) -> list[str]:
        """List all registered implementation names."""
        return list(self._implementations.keys())

    def freeze(self) -> None:
        """Freeze the registry to prevent further modifications."""
        self._frozen = True

    def is_frozen(self) -> bool:
        """Check if the registry is frozen."""
        return self._frozen

    def __contains__(self, name: object) -> bool:
        return name in self._implementations

    def __len__(self) -> int:
        return len(self._implementations)


# Job Type Registry - queue, priority, retry, timeout and rate limit per type
class JobTypeRegistry(Registry[JobTypeDefinition]):
    """Catalog mapping a job type to its JobTypeDefinition."""

    def __init__(self):
        super().__init__("JobType")

    def register_definition(self, definition: JobTypeDefinition) -> None:
        self.register(definition.type, definition)

    def lookup(self, job_type: str) -> JobTypeDefinition:
        """Return the definition for ``job_type`` or raise UnknownJobType."""
        definition = self._implementations.get(job_type)
        if definition is None:
            raise UnknownJobType(job_type)
        return definition

    def definitions(self) -> list[JobTypeDefinition]:
        return list(self._implementations.values())


# Task Handler Registry - processing logic supplied by collaborators
class TaskHandler(Protocol):
    """Protocol for handlers that execute jobs of one type.

    Handlers must tolerate being invoked more than once for the same job.
    """

    async def process(self, job: Job) -> Any:
        """
        Execute one attempt of the job.

        Returns:
            Success(output) | RetryRequested(reason, delay) | Failure(error).
            Any other return value is treated as Success(value).
        """
        ...

    async def handle_terminal_failure(self, job: Job, error: str) -> None:
        """Best-effort hook called once when the job is dead-lettered."""
        ...


class TaskHandlerRegistry(Registry[TaskHandler]):
    """Registry for task handlers keyed by job type."""

    def __init__(self):
        super().__init__("TaskHandler")


# Global registry instances (populated at startup by registry_init)
job_type_registry = JobTypeRegistry()
task_handler_registry = TaskHandlerRegistry()
