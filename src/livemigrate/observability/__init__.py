"""
Observability utilities for livemigrate.

Tracing through an injected Tracer and the attribute names every span and
metric uses. Metrics instruments live in ``livemigrate.metrics``.

Example:
    >>> from livemigrate.observability import create_tracer, ATTR_MIGRATION_ID
    >>>
    >>> tracer = create_tracer(__name__)
    >>> with tracer.span("livemigrate.engine.migrate", {ATTR_MIGRATION_ID: 1}):
    ...     pass
"""

from livemigrate.observability.attributes import (
    ATTR_ERROR_TYPE,
    ATTR_HEAP_WALK_MODE,
    ATTR_MIGRATION_ID,
    ATTR_MIGRATION_STATUS,
    ATTR_MIGRATOR_COUNT,
    ATTR_OBJECTS_MIGRATED,
    ATTR_OBJECTS_PATCHED,
    ATTR_PHASE,
    ATTR_ROLLBACK_SUCCEEDED,
    ATTR_SLOTS_PATCHED,
    ATTR_SOURCE_TYPE,
    ATTR_TARGET_TYPE,
)
from livemigrate.observability.tracer import (
    MockTracer,
    NullTracer,
    OpenTelemetryTracer,
    Tracer,
    create_tracer,
)

__all__ = [
    # Tracer
    "Tracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "MockTracer",
    "create_tracer",
    # Attributes
    "ATTR_MIGRATION_ID",
    "ATTR_MIGRATION_STATUS",
    "ATTR_PHASE",
    "ATTR_MIGRATOR_COUNT",
    "ATTR_SOURCE_TYPE",
    "ATTR_TARGET_TYPE",
    "ATTR_OBJECTS_MIGRATED",
    "ATTR_OBJECTS_PATCHED",
    "ATTR_SLOTS_PATCHED",
    "ATTR_HEAP_WALK_MODE",
    "ATTR_ERROR_TYPE",
    "ATTR_ROLLBACK_SUCCEEDED",
]
