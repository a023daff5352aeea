"""
Processor registry initialization.

Builds the processor registry with one built-in processor per job type.
"""

from jobrelay.config.logging import get_logger
from jobrelay.config.settings import Settings
from jobrelay.v1.core.registries import ProcessorRegistry
from jobrelay.v1.jobs.models import JobType
from jobrelay.v1.jobs.processors import BUILTIN_PROCESSORS

logger = get_logger(__name__)


def build_processor_registry(settings: Settings) -> ProcessorRegistry:
    """Register the built-in processors for every job type."""

    logger.info("Registering job processors")

    registry = ProcessorRegistry()
    for processor_cls in BUILTIN_PROCESSORS:
        registry.register(processor_cls.job_type, processor_cls(settings))

    missing = set(JobType.values()) - set(registry.list())
    if missing:
        raise RuntimeError(f"No processor registered for job types: {sorted(missing)}")

    # Freeze registries in non-development environments to prevent runtime modifications
    if settings.environment != "development":
        registry.freeze()

    logger.info("Job processors registered", registered_processors=registry.list())
    return registry
