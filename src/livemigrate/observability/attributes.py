"""
Standard span and metric attributes for livemigrate.

Attribute constants used by the engine and its collaborators for
consistent span naming and metric labeling.

Example:
    >>> from livemigrate.observability.attributes import (
    ...     ATTR_MIGRATION_ID,
    ...     ATTR_PHASE,
    ... )
    >>>
    >>> with tracer.span(
    ...     "livemigrate.engine.first_pass",
    ...     {ATTR_MIGRATION_ID: 7, ATTR_PHASE: "FIRST_PASS"},
    ... ):
    ...     pass
"""

# =============================================================================
# Migration Attributes
# =============================================================================

ATTR_MIGRATION_ID = "livemigrate.migration.id"
"""Monotonic identifier of the migration attempt (integer)."""

ATTR_MIGRATION_STATUS = "livemigrate.migration.status"
"""Final status of the attempt ('SUCCESS', 'FAILED')."""

ATTR_PHASE = "livemigrate.phase"
"""Engine phase name (e.g., 'FIRST_PASS', 'CRITICAL_PHASE')."""

ATTR_MIGRATOR_COUNT = "livemigrate.migrator.count"
"""Number of descriptors in the plan (integer)."""

# =============================================================================
# Type Attributes
# =============================================================================

ATTR_SOURCE_TYPE = "livemigrate.source.type"
"""Qualified name of the class being migrated from."""

ATTR_TARGET_TYPE = "livemigrate.target.type"
"""Qualified name of the class being migrated to."""

# =============================================================================
# Count Attributes
# =============================================================================

ATTR_OBJECTS_MIGRATED = "livemigrate.objects.migrated"
"""Number of instances converted (integer)."""

ATTR_OBJECTS_PATCHED = "livemigrate.objects.patched"
"""Number of live objects handed to the patcher (integer)."""

ATTR_SLOTS_PATCHED = "livemigrate.slots.patched"
"""Number of reference slots rewritten (integer)."""

ATTR_HEAP_WALK_MODE = "livemigrate.heap.walk_mode"
"""Heap walk mode used for the second pass ('FULL', 'FILTERED')."""

# =============================================================================
# Error Attributes
# =============================================================================

ATTR_ERROR_TYPE = "error.type"
"""Exception class name, following OpenTelemetry semantic conventions."""

ATTR_ROLLBACK_SUCCEEDED = "livemigrate.rollback.succeeded"
"""Whether the rollback after a failure succeeded (boolean)."""

__all__ = [
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
