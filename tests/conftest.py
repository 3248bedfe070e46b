"""
Shared pytest fixtures for the livemigrate library tests.

This module provides:
- Domain state reset between tests (clean_domain_state, autouse)
- Plan fixtures (user_plan, plugin_plan)
- Engine collaborators (walker, journal, tracer, alert_events)
- An engine factory wiring them together (make_engine)
- OpenTelemetry metrics fixtures (meter_provider, metric_reader)
- Scripted process memory (fake_process)
"""

from __future__ import annotations

import tracemalloc
from collections.abc import Callable, Generator
from types import SimpleNamespace
from typing import Any

import psutil
import pytest
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import InMemoryMetricReader

from livemigrate import (
    CommitManager,
    MigrationAlertLogger,
    MigrationEngine,
    MigrationLifecycleEvent,
    MigrationPlan,
    MigratorDescriptor,
    RollbackManager,
    TrackedHeapWalker,
    UndoJournal,
)
from livemigrate.metrics import reset_meter
from livemigrate.observability import MockTracer
from tests.fixtures import PluginV1, PluginV2, UserV1ToV2, reset_state, upgrade_plugin

# ============================================================================
# Pytest Configuration
# ============================================================================


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers for tests."""
    config.addinivalue_line("markers", "integration: end-to-end migration scenarios")
    config.addinivalue_line("markers", "slow: walks the whole garbage-collected heap")


# ============================================================================
# Domain State
# ============================================================================


@pytest.fixture(autouse=True)
def clean_domain_state() -> Generator[None, None, None]:
    """Clear class-level and module-level registries of the test domain."""
    reset_state()
    yield
    reset_state()


# ============================================================================
# Plans
# ============================================================================


@pytest.fixture
def user_plan() -> MigrationPlan:
    """Plan migrating UserV1 to UserV2."""
    return MigrationPlan.build([UserV1ToV2])


@pytest.fixture
def plugin_plan() -> MigrationPlan:
    """Plan migrating PluginV1 to PluginV2 with a function converter."""
    return MigrationPlan.build([MigratorDescriptor.of(upgrade_plugin, source=PluginV1, target=PluginV2)])


# ============================================================================
# Collaborators
# ============================================================================


@pytest.fixture
def walker() -> TrackedHeapWalker:
    """Heap walker reporting only the objects a test tracks."""
    return TrackedHeapWalker()


@pytest.fixture
def journal() -> UndoJournal:
    """Undo journal used as recorder and checkpoint controller."""
    return UndoJournal()


@pytest.fixture
def tracer() -> MockTracer:
    """Tracer recording span names and attributes."""
    return MockTracer()


@pytest.fixture
def alert_logger() -> MigrationAlertLogger:
    """Alert logger with default level."""
    return MigrationAlertLogger()


@pytest.fixture
def alert_events(alert_logger: MigrationAlertLogger) -> list[MigrationLifecycleEvent]:
    """Every lifecycle event published by ``alert_logger``."""
    events: list[MigrationLifecycleEvent] = []
    alert_logger.subscribe(events.append)
    return events


@pytest.fixture
def make_engine(
    walker: TrackedHeapWalker,
    journal: UndoJournal,
    tracer: MockTracer,
    alert_logger: MigrationAlertLogger,
) -> Callable[..., MigrationEngine]:
    """
    Factory building engines around the shared collaborators.

    Usage:
        def test_something(make_engine, user_plan):
            engine = make_engine(user_plan, smoke_runner=runner)

    Returns:
        Callable taking a plan and any MigrationEngine keyword argument.
    """

    def factory(plan: MigrationPlan, **kwargs: Any) -> MigrationEngine:
        kwargs.setdefault("heap_walker", walker)
        kwargs.setdefault("recorder", journal)
        kwargs.setdefault("commit_manager", CommitManager(journal))
        kwargs.setdefault("rollback_manager", RollbackManager(journal))
        kwargs.setdefault("alert_logger", alert_logger)
        kwargs.setdefault("tracer", tracer)
        kwargs.setdefault("enable_metrics", False)
        return MigrationEngine(plan, **kwargs)

    return factory


# ============================================================================
# OpenTelemetry Metrics Fixtures
# ============================================================================


@pytest.fixture
def metric_reader() -> InMemoryMetricReader:
    """
    Provide an InMemoryMetricReader for testing metrics.

    Returns:
        InMemoryMetricReader: Reader for inspecting collected metrics.
    """
    return InMemoryMetricReader()


@pytest.fixture
def meter_provider(metric_reader: InMemoryMetricReader) -> Generator[MeterProvider, None, None]:
    """
    Provide a MeterProvider exporting to ``metric_reader``.

    Pass it explicitly to MigrationMetricsCollector; the cached module meter
    is reset before and after the test.
    """
    reset_meter()
    provider = MeterProvider(metric_readers=[metric_reader])
    yield provider
    provider.shutdown()
    reset_meter()



# ============================================================================
# Process Memory Fixtures
# ============================================================================


class FakeProcess:
    """Stand-in for psutil.Process reporting a settable resident set size."""

    rss = 0

    def __init__(self, pid: int | None = None) -> None:
        self.pid = pid

    def memory_info(self) -> SimpleNamespace:
        return SimpleNamespace(rss=FakeProcess.rss)


@pytest.fixture
def fake_process(monkeypatch: pytest.MonkeyPatch) -> type[FakeProcess]:
    """
    Replace psutil.Process so tests control the measured memory.

    Usage:
        def test_something(fake_process):
            fake_process.rss = 200 * 1024 * 1024
    """
    if tracemalloc.is_tracing():
        pytest.skip("tracemalloc already tracing")
    monkeypatch.setattr(psutil, "Process", FakeProcess)
    FakeProcess.rss = 0
    return FakeProcess
