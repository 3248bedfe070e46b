"""
Metrics for migration attempts.

MigrationMetricsCollector measures one attempt: wall-clock time per phase,
memory and CPU time before and after, and object counts. ``finish()``
freezes them into a MigrationMetrics value that is kept in the migration
state and reported by the alert logger.

The same measurements are exported through OpenTelemetry.

Example:
    >>> collector = MigrationMetricsCollector().start(migration_id=7)
    >>> with collector.timed(MigrationPhase.FIRST_PASS):
    ...     convert_everything()
    >>> collector.record_objects_migrated(3)
    >>> metrics = collector.finish()
    >>> print(metrics.summary())

Metrics Exposed:
    - livemigrate.objects.migrated (Counter): Objects converted
    - livemigrate.objects.patched (Counter): Objects handed to the patcher
    - livemigrate.migrations (Counter): Finished attempts, by status
    - livemigrate.phase.duration (Histogram): Time spent in each phase (ms)
    - livemigrate.migration.duration (Histogram): Time per attempt (ms)
"""

from __future__ import annotations

import logging
import os
import threading
import time
import tracemalloc
from collections.abc import Generator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import psutil
from opentelemetry import metrics

from livemigrate.observability.attributes import ATTR_MIGRATION_ID, ATTR_MIGRATION_STATUS, ATTR_PHASE
from livemigrate.phase import MigrationPhase

logger = logging.getLogger(__name__)

METER_NAME = "livemigrate"
METER_VERSION = "1.0.0"

# Module-level meter instance
_meter: Any = None


def _get_meter(meter_provider: Any = None) -> Any:
    """
    Get the meter for livemigrate instruments.

    Args:
        meter_provider: Explicit provider; the global provider when None

    Returns:
        OpenTelemetry Meter
    """
    global _meter
    if meter_provider is not None:
        return meter_provider.get_meter(METER_NAME, version=METER_VERSION)
    if _meter is None:
        _meter = metrics.get_meter(METER_NAME, version=METER_VERSION)
    return _meter


def reset_meter() -> None:
    """
    Reset the cached module meter.

    Useful in tests that install a new global MeterProvider.
    """
    global _meter
    _meter = None


def _format_bytes(size: int) -> str:
    sign = "-" if size < 0 else ""
    size = abs(size)
    if size < 1024:
        return f"{sign}{size}B"
    if size < 1024 * 1024:
        return f"{sign}{size / 1024:.1f}KB"
    if size < 1024 * 1024 * 1024:
        return f"{sign}{size / (1024 * 1024):.1f}MB"
    return f"{sign}{size / (1024 * 1024 * 1024):.2f}GB"


@dataclass(frozen=True)
class MemoryMetrics:
    """
    Process memory at one point in time.

    When ``tracemalloc`` is tracing, ``used_bytes`` and ``peak_bytes`` are the
    traced Python allocations. Otherwise ``used_bytes`` is the current resident
    set size of the process and ``peak_bytes`` the highest one captured so far.

    Attributes:
        used_bytes: Memory in use.
        peak_bytes: Highest memory use observed so far.
        traced: True when the values come from tracemalloc.
    """

    used_bytes: int = 0
    peak_bytes: int = 0
    traced: bool = False

    @classmethod
    def capture(cls) -> MemoryMetrics:
        """Measure the current process."""
        if tracemalloc.is_tracing():
            current, peak = tracemalloc.get_traced_memory()
            return cls(used_bytes=current, peak_bytes=peak, traced=True)
        rss = psutil.Process(os.getpid()).memory_info().rss
        return cls(used_bytes=rss, peak_bytes=_observe_rss(rss), traced=False)

    def summary(self) -> str:
        return f"{_format_bytes(self.used_bytes)} (peak {_format_bytes(self.peak_bytes)})"

    def to_dict(self) -> dict[str, Any]:
        return {
            "used_bytes": self.used_bytes,
            "peak_bytes": self.peak_bytes,
            "traced": self.traced,
        }


_rss_lock = threading.Lock()
_rss_high_water = 0


def _observe_rss(rss: int) -> int:
    global _rss_high_water
    with _rss_lock:
        _rss_high_water = max(_rss_high_water, rss)
        return _rss_high_water


@dataclass(frozen=True)
class MigrationMetrics:
    """
    Measurements of one finished (or aborted) migration attempt.

    Attributes:
        migration_id: Attempt identifier.
        start_time: When the attempt started (UTC).
        end_time: When the metrics were frozen (UTC).
        memory_before: Memory when the attempt started.
        memory_after: Memory when the metrics were frozen.
        cpu_time_ms: Process CPU time spent during the attempt.
        phase_durations: Milliseconds spent in each phase that ran.
        total_duration_ms: Wall-clock duration of the attempt.
        objects_migrated: Number of objects converted.
        objects_patched: Number of objects handed to the reference patcher.
        migrator_count: Number of migrators in the plan.
    """

    migration_id: int
    start_time: datetime
    end_time: datetime
    memory_before: MemoryMetrics = field(default_factory=MemoryMetrics)
    memory_after: MemoryMetrics = field(default_factory=MemoryMetrics)
    cpu_time_ms: float = 0.0
    phase_durations: dict[MigrationPhase, float] = field(default_factory=dict)
    total_duration_ms: float = 0.0
    objects_migrated: int = 0
    objects_patched: int = 0
    migrator_count: int = 0

    @property
    def memory_delta(self) -> int:
        """Bytes of memory gained (negative when released) during the attempt."""
        return self.memory_after.used_bytes - self.memory_before.used_bytes

    def phase_duration(self, phase: MigrationPhase) -> float:
        """Milliseconds spent in ``phase``, 0 when it did not run."""
        return self.phase_durations.get(phase, 0.0)

    def summary(self) -> str:
        """One-line human readable summary."""
        return (
            f"Migration #{self.migration_id} in {self.total_duration_ms:.0f}ms | "
            f"Memory: {self.memory_after.summary()} (delta: {_format_bytes(self.memory_delta)}) | "
            f"CPU: {self.cpu_time_ms:.0f}ms | "
            f"Objects: {self.objects_migrated} migrated, {self.objects_patched} patched"
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "migration_id": self.migration_id,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
            "total_duration_ms": self.total_duration_ms,
            "memory_before": self.memory_before.to_dict(),
            "memory_after": self.memory_after.to_dict(),
            "memory_delta": self.memory_delta,
            "cpu_time_ms": self.cpu_time_ms,
            "objects_migrated": self.objects_migrated,
            "objects_patched": self.objects_patched,
            "migrator_count": self.migrator_count,
        }
        for phase, duration in self.phase_durations.items():
            data[f"{phase.value.lower()}_duration_ms"] = duration
        return data


@dataclass
class MigrationMetricsCollector:
    """
    Collects the metrics of one migration attempt.

    Reusable: ``start`` clears everything recorded for the previous attempt.

    Attributes:
        enable_metrics: Export measurements through OpenTelemetry (default True)
        meter_provider: Provider to create instruments from; the global
            provider when None

    Example:
        >>> reader = InMemoryMetricReader()
        >>> collector = MigrationMetricsCollector(
        ...     meter_provider=MeterProvider(metric_readers=[reader])
        ... )
    """

    enable_metrics: bool = True
    meter_provider: Any = None

    # Internal state
    _meter: Any = field(default=None, init=False, repr=False)
    _objects_migrated_counter: Any = field(default=None, init=False, repr=False)
    _objects_patched_counter: Any = field(default=None, init=False, repr=False)
    _migrations_counter: Any = field(default=None, init=False, repr=False)
    _phase_duration_histogram: Any = field(default=None, init=False, repr=False)
    _migration_duration_histogram: Any = field(default=None, init=False, repr=False)

    # Per-attempt values
    _migration_id: int = field(default=0, init=False, repr=False)
    _start_time: datetime | None = field(default=None, init=False, repr=False)
    _start_counter: float = field(default=0.0, init=False, repr=False)
    _start_cpu: float = field(default=0.0, init=False, repr=False)
    _memory_before: MemoryMetrics = field(default_factory=MemoryMetrics, init=False, repr=False)
    _phase_durations: dict[MigrationPhase, float] = field(default_factory=dict, init=False, repr=False)
    _objects_migrated: int = field(default=0, init=False, repr=False)
    _objects_patched: int = field(default=0, init=False, repr=False)
    _migrator_count: int = field(default=0, init=False, repr=False)

    def __post_init__(self) -> None:
        """Initialize metric instruments."""
        if self.enable_metrics:
            self._setup_metrics()

    def _setup_metrics(self) -> None:
        """Set up OpenTelemetry metric instruments."""
        self._meter = _get_meter(self.meter_provider)

        self._objects_migrated_counter = self._meter.create_counter(
            name="livemigrate.objects.migrated",
            unit="objects",
            description="Number of objects converted to their new class",
        )
        self._objects_patched_counter = self._meter.create_counter(
            name="livemigrate.objects.patched",
            unit="objects",
            description="Number of live objects handed to the reference patcher",
        )
        self._migrations_counter = self._meter.create_counter(
            name="livemigrate.migrations",
            unit="migrations",
            description="Number of finished migration attempts by status",
        )
        self._phase_duration_histogram = self._meter.create_histogram(
            name="livemigrate.phase.duration",
            unit="ms",
            description="Time spent in each migration phase in milliseconds",
        )
        self._migration_duration_histogram = self._meter.create_histogram(
            name="livemigrate.migration.duration",
            unit="ms",
            description="Duration of migration attempts in milliseconds",
        )

    @property
    def metrics_enabled(self) -> bool:
        return self.enable_metrics

    @property
    def migration_id(self) -> int:
        return self._migration_id

    @property
    def started(self) -> bool:
        return self._start_time is not None

    def _base_attributes(self) -> dict[str, Any]:
        return {ATTR_MIGRATION_ID: self._migration_id}

    def start(self, migration_id: int, migrator_count: int = 0) -> MigrationMetricsCollector:
        """
        Begin measuring a new attempt.

        Args:
            migration_id: Attempt identifier
            migrator_count: Number of migrators in the plan

        Returns:
            This collector, for chaining
        """
        self._migration_id = migration_id
        self._start_time = datetime.now(UTC)
        self._start_counter = time.perf_counter()
        self._start_cpu = time.process_time()
        self._memory_before = MemoryMetrics.capture()
        self._phase_durations = {}
        self._objects_migrated = 0
        self._objects_patched = 0
        self._migrator_count = migrator_count
        return self

    @contextmanager
    def timed(self, phase: MigrationPhase) -> Generator[_PhaseTimer, None, None]:
        """
        Context manager timing one phase.

        The duration is recorded when the block exits, also when it raises.

        Yields:
            PhaseTimer with a duration_ms property
        """
        timer = _PhaseTimer()
        timer.start()
        try:
            yield timer
        finally:
            timer.stop()
            self.record_phase_duration(phase, timer.duration_ms)

    def record_phase_duration(self, phase: MigrationPhase, duration_ms: float) -> None:
        """Add ``duration_ms`` to the time spent in ``phase``."""
        self._phase_durations[phase] = self._phase_durations.get(phase, 0.0) + duration_ms
        if self._phase_duration_histogram is not None:
            self._phase_duration_histogram.record(
                duration_ms, {**self._base_attributes(), ATTR_PHASE: phase.value}
            )

    def record_objects_migrated(self, count: int) -> None:
        if count <= 0:
            return
        self._objects_migrated += count
        if self._objects_migrated_counter is not None:
            self._objects_migrated_counter.add(count, self._base_attributes())

    def record_objects_patched(self, count: int) -> None:
        if count <= 0:
            return
        self._objects_patched += count
        if self._objects_patched_counter is not None:
            self._objects_patched_counter.add(count, self._base_attributes())

    @property
    def objects_migrated(self) -> int:
        return self._objects_migrated

    @property
    def objects_patched(self) -> int:
        return self._objects_patched

    def snapshot(self) -> MigrationMetrics:
        """
        Freeze the values recorded so far without reporting the attempt.

        Raises:
            RuntimeError: If ``start`` was never called
        """
        if self._start_time is None:
            raise RuntimeError("Metrics collector was not started")
        return MigrationMetrics(
            migration_id=self._migration_id,
            start_time=self._start_time,
            end_time=datetime.now(UTC),
            memory_before=self._memory_before,
            memory_after=MemoryMetrics.capture(),
            cpu_time_ms=(time.process_time() - self._start_cpu) * 1000,
            phase_durations=dict(self._phase_durations),
            total_duration_ms=(time.perf_counter() - self._start_counter) * 1000,
            objects_migrated=self._objects_migrated,
            objects_patched=self._objects_patched,
            migrator_count=self._migrator_count,
        )

    def finish(self, status: str = "success") -> MigrationMetrics:
        """
        Freeze the values of the attempt and report it.

        Args:
            status: Outcome label for the migrations counter

        Returns:
            The attempt's MigrationMetrics
        """
        result = self.snapshot()
        attrs = {**self._base_attributes(), ATTR_MIGRATION_STATUS: status}
        if self._migrations_counter is not None:
            self._migrations_counter.add(1, attrs)
        if self._migration_duration_histogram is not None:
            self._migration_duration_histogram.record(result.total_duration_ms, attrs)
        logger.debug("Migration %d metrics: %s", self._migration_id, result.summary())
        return result


class _PhaseTimer:
    """
    Internal timer for measuring phase duration.

    Used by the timed context manager.
    """

    def __init__(self) -> None:
        self._start: float = 0.0
        self._end: float = 0.0
        self._stopped: bool = False

    def start(self) -> None:
        self._start = time.perf_counter()
        self._stopped = False

    def stop(self) -> None:
        if not self._stopped:
            self._end = time.perf_counter()
            self._stopped = True

    @property
    def duration_ms(self) -> float:
        """
        Get duration in milliseconds.

        Returns:
            Duration in milliseconds, or 0 if not started
        """
        if self._start == 0:
            return 0.0
        end = self._end if self._stopped else time.perf_counter()
        return (end - self._start) * 1000


__all__ = [
    "MemoryMetrics",
    "MigrationMetrics",
    "MigrationMetricsCollector",
    "reset_meter",
]
