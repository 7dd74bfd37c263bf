"""
Job type catalog initialization.

Registers the built-in job types, applies overrides from an optional YAML
file and imports the modules that register task handlers.
"""

import importlib
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError as PydanticValidationError

from jobcore.config.logging import get_logger
from jobcore.config.settings import Settings
from jobcore.v1.core.exceptions import ValidationError
from jobcore.v1.core.registries import JobTypeRegistry
from jobcore.v1.jobs.schemas import (
    BackoffPolicy,
    FailureSeverity,
    JobTypeDefinition,
    Priority,
    RateLimit,
)

logger = get_logger(__name__)


def builtin_job_types(settings: Settings) -> list[JobTypeDefinition]:
    """Job types every deployment knows about."""
    backoff = BackoffPolicy(
        initial_delay=settings.backoff_initial_s,
        multiplier=settings.backoff_multiplier,
        max_delay=settings.backoff_max_s,
    )
    common: dict[str, Any] = {
        "max_retries": settings.default_max_retries,
        "timeout": settings.default_timeout_s,
        "backoff": backoff,
    }
    return [
        JobTypeDefinition(
            type="recognition",
            default_priority=Priority.NORMAL,
            rate_limit=RateLimit(max_concurrent_per_owner=2),
            severity=FailureSeverity.USER_NOTICE,
            **common,
        ),
        JobTypeDefinition(
            type="synthesis",
            default_priority=Priority.NORMAL,
            rate_limit=RateLimit(max_concurrent_per_owner=2),
            severity=FailureSeverity.USER_NOTICE,
            **common,
        ),
        JobTypeDefinition(
            type="bulk_import",
            queue="imports",
            default_priority=Priority.LOW,
            rate_limit=RateLimit(max_concurrent_global=4, max_concurrent_per_owner=1),
            severity=FailureSeverity.REVIEW,
            **common,
        ),
        JobTypeDefinition(
            type="notification",
            default_priority=Priority.HIGH,
            severity=FailureSeverity.REVIEW,
            **common,
        ),
        JobTypeDefinition(
            type="billing",
            default_priority=Priority.HIGH,
            severity=FailureSeverity.CRITICAL,
            **common,
        ),
    ]


def load_job_types_file(path: str | Path) -> list[JobTypeDefinition]:
    """
    Read job type definitions from YAML.

    Expected layout:

        job_types:
          - type: recognition
            default_priority: normal
            max_retries: 5
            rate_limit:
              max_concurrent_per_owner: 2
    """
    path = Path(path)
    try:
        raw = yaml.safe_load(path.read_text()) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ValidationError(
            f"Cannot read job types file: {path}", details={"error": str(e)}
        ) from e

    entries = raw.get("job_types", []) if isinstance(raw, dict) else None
    if not isinstance(entries, list):
        raise ValidationError(
            "Job types file must contain a 'job_types' list", details={"path": str(path)}
        )

    definitions = []
    for index, entry in enumerate(entries):
        try:
            definitions.append(JobTypeDefinition.model_validate(entry))
        except PydanticValidationError as e:
            raise ValidationError(
                f"Invalid job type definition at index {index}",
                details={"path": str(path), "errors": e.errors(include_url=False)},
            ) from e
    return definitions


def register_job_types(registry: JobTypeRegistry, settings: Settings) -> None:
    """Register built-ins, then file entries (a file entry replaces a built-in)."""

    logger.info("Registering job types")

    definitions = {d.type: d for d in builtin_job_types(settings)}
    if settings.job_types_file:
        for definition in load_job_types_file(settings.job_types_file):
            definitions[definition.type] = definition

    for definition in definitions.values():
        registry.register_definition(definition)

    logger.info("Job types registered", registered_types=registry.list())


def load_handler_modules(modules: list[str]) -> None:
    """Import modules that register task handlers as an import side effect."""
    for module in modules:
        importlib.import_module(module)
        logger.info("Handler module loaded", module=module)
