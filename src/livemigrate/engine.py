"""
The migration engine.

MigrationEngine replaces every live instance of each source class in a plan
with an instance of its target class and retargets every reference to it:

1. FIRST_PASS: snapshot each source class, convert every instance and
   record old → new in the forwarding table.
2. CRITICAL_PHASE: tell the host to quiesce, then
   - SECOND_PASS: walk live objects (all of them, or only instances of the
     classes involved) and rewrite references to converted objects;
   - patch class-level and module-level state of those classes;
   - REGISTRY_UPDATE: retarget declared registries and capability-typed
     containers;
   and tell the host to resume.
3. SMOKE_TEST: run health checks and smoke tests against the new objects.
4. FINALIZE: commit, or roll back on any failure.

Example:
    >>> journal = UndoJournal()
    >>> engine = MigrationEngine(
    ...     MigrationPlan.build([UserMigrator]),
    ...     heap_walker=GcHeapWalker(),
    ...     recorder=journal,
    ...     commit_manager=CommitManager(journal),
    ...     rollback_manager=RollbackManager(journal),
    ... )
    >>> result = await engine.migrate(scan_targets=[UserService])
    >>> result.objects_migrated
    3
"""

from __future__ import annotations

import itertools
import logging
import sys
import threading
import types
from collections.abc import Generator, Iterable, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from livemigrate.alerts import MigrationAlertLogger
from livemigrate.checkpoint import (
    CheckpointController,
    CommitManager,
    NoopCheckpointController,
    RollbackManager,
    UndoJournal,
)
from livemigrate.config import HeapWalkMode, MigrationConfig
from livemigrate.config import validate_heap_size as _validate_heap_size
from livemigrate.exceptions import (
    CommitError,
    ConversionError,
    FinalizationError,
    HeapWalkError,
    MigrationError,
    MigrationInProgressError,
    MigrationTimeoutError,
    PhaseSignalError,
    SmokeTestFailedError,
)
from livemigrate.forwarding import ForwardingTable
from livemigrate.heap import HeapSnapshot, HeapWalker, MigrationAwareWalker
from livemigrate.metrics import MigrationMetrics, MigrationMetricsCollector
from livemigrate.observability import (
    ATTR_ERROR_TYPE,
    ATTR_HEAP_WALK_MODE,
    ATTR_MIGRATION_ID,
    ATTR_MIGRATION_STATUS,
    ATTR_MIGRATOR_COUNT,
    ATTR_OBJECTS_MIGRATED,
    ATTR_OBJECTS_PATCHED,
    ATTR_PHASE,
    ATTR_ROLLBACK_SUCCEEDED,
    ATTR_SOURCE_TYPE,
    ATTR_TARGET_TYPE,
    Tracer,
    create_tracer,
)
from livemigrate.patching import MutationRecorder, ReferenceGraphPatcher, is_runtime_owned
from livemigrate.phase import MigrationContext, MigrationPhase, NoopPhaseSignal, PhaseSignal
from livemigrate.plan import MigrationPlan, MigratorDescriptor
from livemigrate.registry import RegistryUpdater
from livemigrate.smoke import SmokeTestReport, SmokeTestRunner
from livemigrate.state import MigrationState, MigrationStatus
from livemigrate.timeouts import TimeoutExecutor

if TYPE_CHECKING:
    from livemigrate.components import ComponentRegistry

logger = logging.getLogger(__name__)

_migration_ids = itertools.count(1)
_migration_ids_lock = threading.Lock()


def next_migration_id() -> int:
    """Return the next process-wide migration id."""
    with _migration_ids_lock:
        return next(_migration_ids)


@dataclass(frozen=True)
class MigrationResult:
    """
    Outcome of one ``MigrationEngine.migrate`` call.

    Attributes:
        status: SUCCESS, FAILED, or IDLE when the plan was empty.
        migration_id: Attempt identifier; None for an empty plan.
        objects_migrated: Number of objects converted.
        objects_patched: Number of live objects handed to the patcher.
        metrics: Metrics of the attempt (partial on failure).
        error: The error the attempt failed with, or for a successful
            attempt an error raised after the commit (the migration stands).
        rollback_attempted: Whether rollback was tried.
        rollback_succeeded: Whether that rollback succeeded.
        created: New objects by source class.
    """

    status: MigrationStatus
    migration_id: int | None = None
    objects_migrated: int = 0
    objects_patched: int = 0
    metrics: MigrationMetrics | None = None
    error: BaseException | None = None
    rollback_attempted: bool = False
    rollback_succeeded: bool = False
    created: Mapping[type, tuple[Any, ...]] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status is MigrationStatus.SUCCESS

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "migration_id": self.migration_id,
            "objects_migrated": self.objects_migrated,
            "objects_patched": self.objects_patched,
            "error": str(self.error) if self.error is not None else None,
            "rollback_attempted": self.rollback_attempted,
            "rollback_succeeded": self.rollback_succeeded,
            "metrics": self.metrics.to_dict() if self.metrics is not None else None,
        }


class _Attempt:
    """Bookkeeping of one migration attempt."""

    def __init__(self, context: MigrationContext) -> None:
        self.context = context
        self.phase: MigrationPhase | None = None
        self.resolved_old: list[Any] = []
        self.forwarded_old: list[Any] = []
        self.created: dict[MigratorDescriptor, list[Any]] = {}
        self.objects_patched = 0
        self.before_called = False
        self.after_called = False
        self.rollback_attempted = False
        self.rollback_succeeded = False
        self.rollback_error: BaseException | None = None
        self.post_commit_error: BaseException | None = None
        self.finished = False

    @property
    def migration_id(self) -> int:
        return self.context.migration_id

    @property
    def objects_migrated(self) -> int:
        return sum(len(objs) for objs in self.created.values())

    def pass2_objects(self) -> list[Any]:
        """Resolved old objects followed by every new object."""
        objects = list(self.resolved_old)
        for created in self.created.values():
            objects.extend(created)
        return objects

    def created_by_descriptor(self) -> dict[MigratorDescriptor, tuple[Any, ...]]:
        return {d: tuple(objs) for d, objs in self.created.items()}

    def created_by_source(self) -> dict[type, tuple[Any, ...]]:
        return {d.source: tuple(objs) for d, objs in self.created.items()}

    def internal_containers(self) -> Iterable[Any]:
        yield self
        yield vars(self)
        yield self.resolved_old
        yield self.forwarded_old
        yield self.created
        yield from self.created.values()


class MigrationEngine:
    """
    Runs migration plans against the live process.

    One engine runs one attempt at a time; a second ``migrate`` call while
    an attempt is in flight raises MigrationInProgressError.

    Without a recorder and without commit/rollback managers, the engine
    records every write in its own UndoJournal and rolls back through it.

    Args:
        plan: The migration plan
        heap_walker: Source of live objects
        phase_signal: Host callbacks around the critical phase
        smoke_runner: Post-migration validation (default: no checks)
        commit_manager: Finalizes success; anything with ``commit()``
        rollback_manager: Restores state on failure; anything with ``rollback()``
        config: Engine configuration (default MigrationConfig())
        state: State to record into (default: a new MigrationState)
        forwarding: Forwarding table (default: a new one)
        alert_logger: Lifecycle alerts (default: WARNING level)
        recorder: Receives the inverse of every write (normally an UndoJournal)
        metrics_collector: Metrics collector (default: a new one)
        tracer: Optional custom Tracer instance
        enable_tracing: Whether to create spans (default True)
        enable_metrics: Whether to export OpenTelemetry metrics (default True)
    """

    def __init__(
        self,
        plan: MigrationPlan,
        *,
        heap_walker: HeapWalker,
        phase_signal: PhaseSignal | None = None,
        smoke_runner: SmokeTestRunner | None = None,
        commit_manager: CommitManager | None = None,
        rollback_manager: RollbackManager | None = None,
        config: MigrationConfig | None = None,
        state: MigrationState | None = None,
        forwarding: ForwardingTable | None = None,
        alert_logger: MigrationAlertLogger | None = None,
        recorder: MutationRecorder | None = None,
        metrics_collector: MigrationMetricsCollector | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
        enable_metrics: bool = True,
    ) -> None:
        self._plan = plan
        self._heap_walker = heap_walker
        self._phase_signal: PhaseSignal = phase_signal or NoopPhaseSignal()
        self._smoke_runner = smoke_runner or SmokeTestRunner()
        self._config = config or MigrationConfig()
        self._state = state or MigrationState(self._config.history_size)
        self._forwarding = forwarding if forwarding is not None else ForwardingTable()
        self._alerts = alert_logger or MigrationAlertLogger(self._config.alert_level)
        self._tracer = tracer or create_tracer(__name__, enable_tracing)

        if recorder is None and commit_manager is None and rollback_manager is None:
            recorder = UndoJournal()
        self._recorder = recorder
        controller: CheckpointController = (
            recorder if isinstance(recorder, CheckpointController) else NoopCheckpointController()
        )
        self._commit_manager = commit_manager or CommitManager(controller)
        self._rollback_manager = rollback_manager or RollbackManager(controller)

        self._patcher = ReferenceGraphPatcher(self._forwarding, recorder=recorder, tracer=self._tracer)
        self._registry_updater = RegistryUpdater(self._forwarding, self._patcher, tracer=self._tracer)
        self._executor = TimeoutExecutor(tracer=self._tracer)
        self._metrics = metrics_collector or MigrationMetricsCollector(enable_metrics=enable_metrics)

        self._run_lock = threading.Lock()
        self._last_result: MigrationResult | None = None

    @classmethod
    def from_components(
        cls,
        registry: ComponentRegistry,
        heap_walker: HeapWalker,
        **kwargs: Any,
    ) -> MigrationEngine:
        """
        Build an engine from decorated components.

        Args:
            registry: Registry holding the migrators and optional phase
                listener, commit/rollback components and smoke tests
            heap_walker: Source of live objects
            **kwargs: Any other MigrationEngine keyword argument

        Raises:
            ConfigurationError: If the registry cannot be resolved
            PlanError: If the migrators do not form a valid plan
        """
        components = registry.resolve()
        kwargs.setdefault("phase_signal", components.phase_listener)
        kwargs.setdefault("commit_manager", components.commit_manager)
        kwargs.setdefault("rollback_manager", components.rollback_manager)
        kwargs.setdefault(
            "smoke_runner",
            SmokeTestRunner(health_checks=components.health_checks, smoke_tests=components.smoke_tests),
        )
        return cls(MigrationPlan.build(components.migrators), heap_walker=heap_walker, **kwargs)

    # =========================================================================
    # Configuration and accessors
    # =========================================================================

    def apply_config(self, config: MigrationConfig) -> MigrationEngine:
        """
        Use ``config`` for subsequent migrations.

        Applies the timeouts and heap walk mode, resizes the state history
        and sets the alert level.
        """
        self._config = config
        self._state.set_max_history_size(config.history_size)
        self._alerts.level = config.alert_level
        logger.debug("Applied migration config: %s", config)
        return self

    def validate_heap_size(self, config: MigrationConfig | None = None) -> float:
        """
        Check process memory against the configured bounds.

        Raises:
            HeapSizeError: If memory is outside the bounds
        """
        return _validate_heap_size(config or self._config)

    @property
    def plan(self) -> MigrationPlan:
        return self._plan

    @property
    def config(self) -> MigrationConfig:
        return self._config

    @property
    def state(self) -> MigrationState:
        return self._state

    @property
    def forwarding(self) -> ForwardingTable:
        return self._forwarding

    @property
    def heap_walker(self) -> HeapWalker:
        return self._heap_walker

    @property
    def patcher(self) -> ReferenceGraphPatcher:
        return self._patcher

    @property
    def registry_updater(self) -> RegistryUpdater:
        return self._registry_updater

    @property
    def alert_logger(self) -> MigrationAlertLogger:
        return self._alerts

    @property
    def recorder(self) -> MutationRecorder | None:
        return self._recorder

    @property
    def last_result(self) -> MigrationResult | None:
        return self._last_result

    @property
    def in_progress(self) -> bool:
        return self._run_lock.locked()

    # =========================================================================
    # Migration
    # =========================================================================

    async def migrate(
        self,
        scan_targets: Iterable[type | types.ModuleType] = (),
        generic_containers: Iterable[Any] = (),
        capability_type: type | None = None,
        timeout: float | None = None,
    ) -> MigrationResult:
        """
        Run the plan once.

        Args:
            scan_targets: Classes and modules whose registries, generic fields
                and class-level state should be retargeted
            generic_containers: Extra containers holding capability instances
            capability_type: Capability of ``generic_containers``; the plan's
                capabilities when None
            timeout: Bound on the whole attempt in seconds; defaults to
                ``config.migration_timeout``

        Returns:
            The MigrationResult of a successful (or empty) attempt

        Raises:
            MigrationInProgressError: If an attempt is already running
            HeapSizeError: If memory is outside the configured bounds; no
                attempt is started
            MigrationTimeoutError: If the attempt exceeded ``timeout``
            MigrationError: Any failure; rollback was attempted and the
                error carries ``rollback_attempted``/``rollback_succeeded``
        """
        if not self._plan:
            result = MigrationResult(status=MigrationStatus.IDLE)
            self._last_result = result
            return result

        if not self._run_lock.acquire(blocking=False):
            raise MigrationInProgressError("A migration is already in progress on this engine")
        try:
            if self._config.min_heap_size_mb > 0 or self._config.max_heap_size_mb > 0:
                self.validate_heap_size()
            targets = list(scan_targets)
            containers = list(generic_containers)
            attempt = _Attempt(MigrationContext(plan=self._plan, migration_id=next_migration_id()))
            bound = timeout if timeout is not None else self._config.migration_timeout

            self._state.started(attempt.migration_id)
            self._alerts.migration_started(attempt.migration_id)
            self._metrics.start(attempt.migration_id, migrator_count=len(self._plan))
            logger.info(
                "Starting migration %d with %d migrators",
                attempt.migration_id,
                len(self._plan),
            )

            with self._tracer.span(
                "livemigrate.engine.migrate",
                {
                    ATTR_MIGRATION_ID: attempt.migration_id,
                    ATTR_MIGRATOR_COUNT: len(self._plan),
                    ATTR_HEAP_WALK_MODE: self._config.heap_walk_mode.value,
                },
            ) as span:
                try:
                    result = await self._executor.run_with_timeout(
                        "migration",
                        bound,
                        self._run,
                        attempt,
                        targets,
                        containers,
                        capability_type,
                        migration_id=attempt.migration_id,
                    )
                except MigrationTimeoutError as e:
                    if not attempt.finished and e.operation == "migration":
                        self._timed_out(attempt, e)
                    self._record_error(span, e)
                    raise
                except Exception as e:
                    self._record_error(span, e)
                    raise
                finally:
                    if span is not None:
                        span.set_attribute(ATTR_OBJECTS_MIGRATED, attempt.objects_migrated)
                        span.set_attribute(ATTR_OBJECTS_PATCHED, attempt.objects_patched)
                        if self._last_result is not None:
                            span.set_attribute(ATTR_MIGRATION_STATUS, self._last_result.status.value)
            return result
        finally:
            self._run_lock.release()

    async def _run(
        self,
        attempt: _Attempt,
        scan_targets: list[type | types.ModuleType],
        generic_containers: list[Any],
        capability_type: type | None,
    ) -> MigrationResult:
        try:
            try:
                with self._phase(attempt, MigrationPhase.FIRST_PASS):
                    await self._first_pass(attempt)
                self._metrics.record_objects_migrated(attempt.objects_migrated)

                await self._critical_phase(attempt, scan_targets, generic_containers, capability_type)
                await self._smoke_test(attempt)
                with self._phase(attempt, MigrationPhase.FINALIZE):
                    self._commit(attempt)
                    self._advance_walker(attempt)
            except Exception as e:
                self._failed(attempt, e)
                raise
            finally:
                if attempt.before_called and not attempt.after_called:
                    await self._safe_after_critical_phase(attempt)
        finally:
            self._patcher.unprotect_all()
        return self._completed(attempt)

    @contextmanager
    def _phase(self, attempt: _Attempt, phase: MigrationPhase) -> Generator[None, None, None]:
        previous = attempt.phase
        attempt.phase = phase
        self._state.phase(phase)
        self._alerts.phase_started(attempt.migration_id, phase)
        with (
            self._tracer.span(phase.span_name, {ATTR_MIGRATION_ID: attempt.migration_id, ATTR_PHASE: phase.value}),
            self._metrics.timed(phase) as timer,
        ):
            yield
        self._alerts.phase_completed(attempt.migration_id, phase, timer.duration_ms)
        if previous is not None:
            attempt.phase = previous
            self._state.phase(previous)

    # -------------------------------------------------------------------------
    # First pass
    # -------------------------------------------------------------------------

    async def _first_pass(self, attempt: _Attempt) -> None:
        timeouts = self._config.timeouts
        for descriptor in self._plan.ordered_migrators:
            try:
                snapshot = await self._executor.run_with_timeout(
                    f"heap snapshot({descriptor.source.__qualname__})",
                    timeouts.heap_snapshot,
                    self._heap_walker.snapshot,
                    descriptor.source,
                    migration_id=attempt.migration_id,
                )
            except MigrationError:
                raise
            except Exception as e:
                raise HeapWalkError(
                    f"Heap snapshot failed: {e}",
                    migration_id=attempt.migration_id,
                    stage=MigrationPhase.FIRST_PASS.value,
                    source_type=descriptor.source,
                ) from e
            if isinstance(snapshot, (bytes, bytearray, memoryview)):
                snapshot = HeapSnapshot.from_bytes(snapshot)
            if not snapshot:
                continue

            created = attempt.created.setdefault(descriptor, [])
            with self._tracer.span(
                "livemigrate.engine.convert",
                {
                    ATTR_MIGRATION_ID: attempt.migration_id,
                    ATTR_SOURCE_TYPE: descriptor.source.__qualname__,
                    ATTR_TARGET_TYPE: descriptor.target.__qualname__,
                },
            ):
                for entry in snapshot:
                    old = self._heap_walker.resolve(entry.tag)
                    if old is None:
                        continue
                    if self._forwarding.contains(old):
                        attempt.resolved_old.append(old)
                        continue
                    new = self._convert(attempt, descriptor, old)
                    self._forwarding.put(old, new)
                    attempt.forwarded_old.append(old)
                    attempt.resolved_old.append(old)
                    created.append(new)
            logger.debug(
                "Migration %d converted %d %s instances",
                attempt.migration_id,
                len(created),
                descriptor.source.__qualname__,
            )

    def _convert(self, attempt: _Attempt, descriptor: MigratorDescriptor, old: Any) -> Any:
        diagnostics: dict[str, Any] = {
            "migration_id": attempt.migration_id,
            "stage": MigrationPhase.FIRST_PASS.value,
            "source_type": descriptor.source,
            "target_type": descriptor.target,
            "subject": old,
        }
        try:
            new = descriptor.convert(old)
        except MigrationError:
            raise
        except Exception as e:
            raise ConversionError(f"Migrator raised {type(e).__name__}: {e}", **diagnostics) from e
        if new is None:
            raise ConversionError("Migrator returned None", **diagnostics)
        try:
            descriptor.validate(new)
        except MigrationError:
            raise
        except Exception as e:
            raise ConversionError(f"Migrated object failed validation: {e}", **diagnostics) from e
        return new

    # -------------------------------------------------------------------------
    # Critical phase
    # -------------------------------------------------------------------------

    async def _critical_phase(
        self,
        attempt: _Attempt,
        scan_targets: list[type | types.ModuleType],
        generic_containers: list[Any],
        capability_type: type | None,
    ) -> None:
        with self._phase(attempt, MigrationPhase.CRITICAL_PHASE):
            await self._signal_before_critical_phase(attempt)
            attempt.before_called = True

            self._protect_internals(attempt)
            pass2 = attempt.pass2_objects()
            self._patcher.protect(pass2)
            closure = class_closure(scan_targets, pass2)

            with self._phase(attempt, MigrationPhase.SECOND_PASS):
                walked = await self._second_pass(attempt, closure, pass2)
            self._patch_static_state(closure, scan_targets)

            closure_set = set(closure)
            live = _unique(itertools.chain(pass2, (o for o in walked if type(o) in closure_set)))
            with self._phase(attempt, MigrationPhase.REGISTRY_UPDATE):
                self._update_registries(scan_targets, live, generic_containers, capability_type)

            await self._signal_after_critical_phase(attempt)

    def _protect_internals(self, attempt: _Attempt) -> None:
        patcher = self._patcher
        patcher.protect(self, vars(self))
        patcher.protect_all(attempt.internal_containers())
        patcher.protect_all(self._forwarding.internal_containers())
        for collaborator in (self._heap_walker, self._recorder):
            internals = getattr(collaborator, "internal_containers", None)
            if internals is not None:
                patcher.protect_all(internals())
        if self._last_result is not None:
            patcher.protect(self._last_result, vars(self._last_result))

    async def _second_pass(self, attempt: _Attempt, closure: list[type], pass2: list[Any]) -> list[Any]:
        timeout = self._config.timeouts.heap_walk
        objects: list[Any] | None = None
        try:
            if self._config.heap_walk_mode is HeapWalkMode.FULL:
                objects = await self._executor.run_with_timeout(
                    "heap walk (full)",
                    timeout,
                    self._heap_walker.walk_all,
                    migration_id=attempt.migration_id,
                )
            else:
                objects = await self._executor.run_with_timeout(
                    "heap walk (filtered)",
                    timeout,
                    self._heap_walker.walk_filtered,
                    closure,
                    migration_id=attempt.migration_id,
                )
        except MigrationTimeoutError as e:
            self._alerts.migration_timeout(attempt.migration_id, e.timeout_ms, attempt.phase, recovered=True)
            logger.warning(
                "Heap walk of migration %d timed out, patching migrated objects only",
                attempt.migration_id,
            )
            objects = None
        except Exception as e:
            logger.warning(
                "Heap walk failed for migration %d, patching migrated objects only: %s",
                attempt.migration_id,
                e,
            )
            objects = None

        if not objects:
            objects = pass2
        self._patcher.patch_objects(objects)
        attempt.objects_patched = len(objects)
        self._metrics.record_objects_patched(len(objects))
        logger.debug("Migration %d patched %d objects", attempt.migration_id, len(objects))
        return list(objects)

    def _patch_static_state(
        self,
        closure: list[type],
        scan_targets: list[type | types.ModuleType],
    ) -> None:
        modules: dict[str, types.ModuleType] = {}
        for cls in closure:
            if is_runtime_owned(cls):
                continue
            try:
                self._patcher.patch_static_fields(cls)
            except Exception as e:
                logger.warning("Failed to patch static fields of %s: %s", cls.__qualname__, e)
            module = sys.modules.get(cls.__module__)
            if module is not None:
                modules.setdefault(module.__name__, module)
        for target in scan_targets:
            if isinstance(target, types.ModuleType):
                modules.setdefault(target.__name__, target)
        for module in modules.values():
            try:
                self._patcher.patch_module_globals(module)
            except Exception as e:
                logger.warning("Failed to patch globals of module %s: %s", module.__name__, e)

    def _update_registries(
        self,
        scan_targets: list[type | types.ModuleType],
        live: list[Any],
        generic_containers: list[Any],
        capability_type: type | None,
    ) -> None:
        updater = self._registry_updater
        updater.update_declared_registries(scan_targets, live)

        if generic_containers:
            if capability_type is not None:
                updater.update_generic_containers(generic_containers, capability_type)
            else:
                for capability in {d.capability for d in self._plan}:
                    updater.update_generic_containers(generic_containers, capability)

        capabilities = self._plan.capability_types()
        if capability_type is not None:
            capabilities.add(capability_type)
        classes = [t for t in scan_targets if isinstance(t, type)]
        if classes and capabilities:
            updater.update_generic_fields_in_classes(classes, live, capabilities)

    async def _signal_before_critical_phase(self, attempt: _Attempt) -> None:
        try:
            await self._executor.run_with_timeout(
                "before_critical_phase",
                self._config.timeouts.critical_phase,
                self._phase_signal.before_critical_phase,
                attempt.context,
                migration_id=attempt.migration_id,
            )
        except MigrationTimeoutError:
            raise
        except Exception as e:
            raise PhaseSignalError(
                f"Application refused to enter critical phase: {e}",
                migration_id=attempt.migration_id,
                stage=MigrationPhase.CRITICAL_PHASE.value,
            ) from e

    async def _signal_after_critical_phase(self, attempt: _Attempt) -> None:
        attempt.after_called = True
        try:
            await self._executor.run_with_timeout(
                "after_critical_phase",
                self._config.timeouts.critical_phase,
                self._phase_signal.after_critical_phase,
                attempt.context,
                migration_id=attempt.migration_id,
            )
        except Exception as e:
            rollback_error = self._rollback(attempt, "after_critical_phase failure")
            if rollback_error is not None:
                raise FinalizationError(
                    "after_critical_phase failed and rollback failed",
                    cause=e,
                    finalization_cause=rollback_error,
                    migration_id=attempt.migration_id,
                    stage=MigrationPhase.CRITICAL_PHASE.value,
                ) from e
            if isinstance(e, MigrationTimeoutError):
                raise
            raise PhaseSignalError(
                f"Application failed to leave critical phase: {e}",
                migration_id=attempt.migration_id,
                stage=MigrationPhase.CRITICAL_PHASE.value,
            ) from e

    async def _safe_after_critical_phase(self, attempt: _Attempt) -> None:
        attempt.after_called = True
        try:
            await self._executor.run_with_timeout(
                "after_critical_phase",
                self._config.timeouts.critical_phase,
                self._phase_signal.after_critical_phase,
                attempt.context,
                migration_id=attempt.migration_id,
            )
        except Exception as e:
            logger.warning(
                "after_critical_phase failed while aborting migration %d: %s",
                attempt.migration_id,
                e,
                exc_info=True,
            )

    # -------------------------------------------------------------------------
    # Smoke tests and finalization
    # -------------------------------------------------------------------------

    async def _smoke_test(self, attempt: _Attempt) -> None:
        with self._phase(attempt, MigrationPhase.SMOKE_TEST):
            report: SmokeTestReport = await self._executor.run_with_timeout(
                "smoke tests",
                self._config.timeouts.smoke_test,
                self._smoke_runner.run_all,
                attempt.created_by_descriptor(),
                migration_id=attempt.migration_id,
            )
        if report.success:
            return
        error = SmokeTestFailedError(report, migration_id=attempt.migration_id)
        rollback_error = self._rollback(attempt, "smoke test failure")
        if rollback_error is not None:
            raise FinalizationError(
                "Smoke tests failed and rollback failed",
                cause=error,
                finalization_cause=rollback_error,
                migration_id=attempt.migration_id,
                stage=MigrationPhase.SMOKE_TEST.value,
            )
        raise error

    def _commit(self, attempt: _Attempt) -> None:
        try:
            self._commit_manager.commit()
        except Exception as e:
            rollback_error = self._rollback(attempt, "commit failure")
            if rollback_error is not None:
                raise FinalizationError(
                    "Commit failed and rollback failed",
                    cause=e,
                    finalization_cause=rollback_error,
                    migration_id=attempt.migration_id,
                    stage=MigrationPhase.FINALIZE.value,
                ) from e
            if isinstance(e, FinalizationError):
                raise
            raise CommitError(
                "Commit failed",
                finalization_cause=e,
                migration_id=attempt.migration_id,
                stage=MigrationPhase.FINALIZE.value,
            ) from e

    def _advance_walker(self, attempt: _Attempt) -> None:
        """Tell the walker about the committed migration.

        Runs after the commit, so a failure here leaves the migration in
        place: nothing is rolled back and forwarding entries are kept.
        """
        walker = self._heap_walker
        try:
            if isinstance(walker, MigrationAwareWalker):
                walker.migrated([(old, self._forwarding.get(old)) for old in attempt.forwarded_old])
            walker.advance_epoch()
        except Exception as e:
            attempt.post_commit_error = e
            logger.error(
                "Migration %d committed but the heap walker epoch was not advanced: %s",
                attempt.migration_id,
                e,
                exc_info=True,
            )

    def _rollback(self, attempt: _Attempt, reason: str) -> BaseException | None:
        """Roll back at most once per attempt; return the rollback error, if any."""
        if attempt.rollback_attempted:
            return attempt.rollback_error
        attempt.rollback_attempted = True
        self._alerts.rollback_triggered(attempt.migration_id, reason)
        with self._tracer.span(
            "livemigrate.engine.rollback",
            {ATTR_MIGRATION_ID: attempt.migration_id},
        ) as span:
            try:
                self._rollback_manager.rollback()
            except Exception as e:
                attempt.rollback_error = e
                logger.error("Rollback of migration %d failed: %s", attempt.migration_id, e, exc_info=True)
            attempt.rollback_succeeded = attempt.rollback_error is None
            if span is not None:
                span.set_attribute(ATTR_ROLLBACK_SUCCEEDED, attempt.rollback_succeeded)
        self._alerts.rollback_completed(attempt.migration_id, attempt.rollback_succeeded)
        return attempt.rollback_error

    def _cleanup_forwarding(self, attempt: _Attempt) -> None:
        removed = 0
        for old in attempt.forwarded_old:
            if self._forwarding.remove(old):
                removed += 1
        if removed:
            logger.warning(
                "Removed %d forwarding entries of failed migration %d",
                removed,
                attempt.migration_id,
            )

    # -------------------------------------------------------------------------
    # Outcomes
    # -------------------------------------------------------------------------

    def _completed(self, attempt: _Attempt) -> MigrationResult:
        metrics = self._metrics.finish("success")
        self._state.completed(metrics)
        self._alerts.migration_completed(attempt.migration_id, metrics)
        logger.info("Migration %d completed: %s", attempt.migration_id, metrics.summary())
        result = MigrationResult(
            status=MigrationStatus.SUCCESS,
            migration_id=attempt.migration_id,
            objects_migrated=attempt.objects_migrated,
            objects_patched=attempt.objects_patched,
            metrics=metrics,
            error=attempt.post_commit_error,
            created=attempt.created_by_source(),
        )
        self._last_result = result
        return result

    def _failed(self, attempt: _Attempt, error: BaseException) -> None:
        attempt.finished = True
        if isinstance(error, MigrationTimeoutError):
            self._alerts.migration_timeout(attempt.migration_id, error.timeout_ms, attempt.phase)
        metrics = self._partial_metrics("failed")
        self._cleanup_forwarding(attempt)
        if not attempt.rollback_attempted:
            self._rollback(attempt, f"{type(error).__name__}: {error}")
        self._state.failed(error, metrics)
        self._alerts.migration_failed(attempt.migration_id, error, attempt.phase, metrics)
        _attach_outcome(error, attempt)
        self._last_result = MigrationResult(
            status=MigrationStatus.FAILED,
            migration_id=attempt.migration_id,
            objects_migrated=attempt.objects_migrated,
            objects_patched=attempt.objects_patched,
            metrics=metrics,
            error=error,
            rollback_attempted=attempt.rollback_attempted,
            rollback_succeeded=attempt.rollback_succeeded,
        )

    def _timed_out(self, attempt: _Attempt, error: MigrationTimeoutError) -> None:
        attempt.finished = True
        self._alerts.migration_timeout(attempt.migration_id, error.timeout_ms, attempt.phase)
        metrics = self._partial_metrics("timeout")
        self._cleanup_forwarding(attempt)
        self._rollback(attempt, "timeout")
        self._state.failed(error, metrics)
        _attach_outcome(error, attempt)
        self._last_result = MigrationResult(
            status=MigrationStatus.FAILED,
            migration_id=attempt.migration_id,
            objects_migrated=attempt.objects_migrated,
            objects_patched=attempt.objects_patched,
            metrics=metrics,
            error=error,
            rollback_attempted=attempt.rollback_attempted,
            rollback_succeeded=attempt.rollback_succeeded,
        )

    def _record_error(self, span: Any, error: BaseException) -> None:
        self._tracer.record_error(span, error)
        if span is not None:
            span.set_attribute(ATTR_ERROR_TYPE, type(error).__name__)

    def _partial_metrics(self, status: str) -> MigrationMetrics | None:
        try:
            metrics = self._metrics.finish(status)
        except Exception as e:
            logger.warning("Could not collect metrics of failed migration: %s", e)
            return None
        logger.warning("Migration %d failed - metrics: %s", metrics.migration_id, metrics.summary())
        return metrics


def _attach_outcome(error: BaseException, attempt: _Attempt) -> None:
    if isinstance(error, MigrationError) and error.migration_id is None:
        error.migration_id = attempt.migration_id
    try:
        error.rollback_attempted = attempt.rollback_attempted  # type: ignore[attr-defined]
        error.rollback_succeeded = attempt.rollback_succeeded  # type: ignore[attr-defined]
    except AttributeError:
        logger.debug("Cannot attach rollback outcome to %s", type(error).__name__)


def _unique(objects: Iterable[Any]) -> list[Any]:
    seen: set[int] = set()
    result = []
    for obj in objects:
        if id(obj) not in seen:
            seen.add(id(obj))
            result.append(obj)
    return result


def nested_classes(cls: type) -> list[type]:
    """Classes defined in ``cls``'s body, recursively."""
    found: list[type] = []
    prefix = f"{cls.__qualname__}."
    for value in list(vars(cls).values()):
        if isinstance(value, type) and value.__qualname__.startswith(prefix):
            found.append(value)
            found.extend(nested_classes(value))
    return found


def class_closure(scan_targets: Iterable[Any], objects: Iterable[Any]) -> list[type]:
    """
    Classes whose instances and class-level state may refer to migrated objects.

    The scan target classes and the runtime classes of ``objects``, with
    their MROs (``object`` excluded) and the classes nested in any of them.
    """
    seen: dict[type, None] = {}

    def add(cls: type) -> None:
        for klass in cls.__mro__:
            if klass is object or klass in seen:
                continue
            seen[klass] = None
            for nested in nested_classes(klass):
                add(nested)

    for target in scan_targets:
        if isinstance(target, type):
            add(target)
    for obj in objects:
        add(type(obj))
    return list(seen)


__all__ = [
    "MigrationEngine",
    "MigrationResult",
    "class_closure",
    "nested_classes",
    "next_migration_id",
]
