"""
livemigrate - Live in-process object migration for Python.

This library provides:
- Migration plans built from typed class migrators
- A reference graph patcher that retargets every reference to a migrated object
- Registry and capability-typed container retargeting
- Heap walkers over the garbage collector or an explicit set of objects
- A phased migration engine with smoke tests, commit and rollback
- Lifecycle alerts, state history, OpenTelemetry tracing and metrics
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("livemigrate-py")
except PackageNotFoundError:
    # Package not installed (running from source without install)
    __version__ = "0.0.0.dev0"

# Alerts
from livemigrate.alerts import (
    AlertLevel,
    MigrationAlertLogger,
    MigrationCompleted,
    MigrationFailed,
    MigrationLifecycleEvent,
    MigrationStarted,
    MigrationTimedOut,
    PhaseCompleted,
    PhaseStarted,
    RollbackCompleted,
    RollbackTriggered,
)

# Checkpoint, commit and rollback
from livemigrate.checkpoint import (
    CheckpointController,
    CommitManager,
    NoopCheckpointController,
    RollbackManager,
    UndoJournal,
)

# Component discovery
from livemigrate.components import (
    ComponentRegistry,
    ResolvedComponents,
    commit_component,
    default_registry,
    health_check_component,
    migrator,
    phase_listener,
    rollback_component,
    smoke_test_component,
)

# Configuration
from livemigrate.config import (
    HeapWalkMode,
    MigrationConfig,
    MigrationTimeoutConfig,
    load_config,
    validate_heap_size,
)

# Engine
from livemigrate.engine import MigrationEngine, MigrationResult

# Exceptions
from livemigrate.exceptions import (
    CommitError,
    ConfigurationError,
    ConversionError,
    ErrorClassification,
    ErrorRecoverability,
    ErrorSeverity,
    FinalizationError,
    HeapSizeError,
    HeapWalkError,
    MigrationError,
    MigrationInProgressError,
    MigrationTimeoutError,
    PhaseSignalError,
    PlanError,
    RollbackError,
    SmokeTestFailedError,
    classify_exception,
)

# Forwarding
from livemigrate.forwarding import ForwardingTable

# Heap walking
from livemigrate.heap import (
    GcHeapWalker,
    HeapSnapshot,
    HeapSnapshotEntry,
    HeapWalker,
    MigrationAwareWalker,
    TrackedHeapWalker,
)

# Metrics
from livemigrate.metrics import MemoryMetrics, MigrationMetrics, MigrationMetricsCollector

# Patching
from livemigrate.patching import MutationRecorder, ReferenceGraphPatcher

# Phases
from livemigrate.phase import MigrationContext, MigrationPhase, NoopPhaseSignal, PhaseSignal

# Plans
from livemigrate.plan import ClassMigrator, MigrationPlan, MigratorDescriptor, infer_capability

# Registries
from livemigrate.registry import RegistryAware, RegistryUpdater, UpdateRegistry

# Smoke tests
from livemigrate.smoke import SmokeTestReport, SmokeTestResult, SmokeTestRunner

# State
from livemigrate.state import MigrationHistoryEntry, MigrationState, MigrationStatus

# Timeouts
from livemigrate.timeouts import TimeoutExecutor

__all__ = [
    "__version__",
    # Engine
    "MigrationEngine",
    "MigrationResult",
    # Plans
    "ClassMigrator",
    "MigratorDescriptor",
    "MigrationPlan",
    "infer_capability",
    # Forwarding and patching
    "ForwardingTable",
    "ReferenceGraphPatcher",
    "MutationRecorder",
    # Registries
    "UpdateRegistry",
    "RegistryAware",
    "RegistryUpdater",
    # Heap walking
    "HeapWalker",
    "MigrationAwareWalker",
    "GcHeapWalker",
    "TrackedHeapWalker",
    "HeapSnapshot",
    "HeapSnapshotEntry",
    # Phases
    "MigrationPhase",
    "MigrationContext",
    "PhaseSignal",
    "NoopPhaseSignal",
    # Smoke tests
    "SmokeTestResult",
    "SmokeTestReport",
    "SmokeTestRunner",
    # Checkpoint
    "CheckpointController",
    "NoopCheckpointController",
    "UndoJournal",
    "CommitManager",
    "RollbackManager",
    # Timeouts
    "TimeoutExecutor",
    # State
    "MigrationStatus",
    "MigrationHistoryEntry",
    "MigrationState",
    # Metrics
    "MemoryMetrics",
    "MigrationMetrics",
    "MigrationMetricsCollector",
    # Alerts
    "AlertLevel",
    "MigrationAlertLogger",
    "MigrationLifecycleEvent",
    "MigrationStarted",
    "PhaseStarted",
    "PhaseCompleted",
    "MigrationCompleted",
    "MigrationFailed",
    "RollbackTriggered",
    "RollbackCompleted",
    "MigrationTimedOut",
    # Configuration
    "HeapWalkMode",
    "MigrationConfig",
    "MigrationTimeoutConfig",
    "load_config",
    "validate_heap_size",
    # Components
    "ComponentRegistry",
    "ResolvedComponents",
    "default_registry",
    "migrator",
    "phase_listener",
    "commit_component",
    "rollback_component",
    "smoke_test_component",
    "health_check_component",
    # Exceptions
    "MigrationError",
    "PlanError",
    "ConversionError",
    "MigrationTimeoutError",
    "PhaseSignalError",
    "SmokeTestFailedError",
    "FinalizationError",
    "CommitError",
    "RollbackError",
    "HeapWalkError",
    "HeapSizeError",
    "MigrationInProgressError",
    "ConfigurationError",
    "ErrorSeverity",
    "ErrorRecoverability",
    "ErrorClassification",
    "classify_exception",
]
