"""
Shared pytest fixtures for observability integration tests.

This module provides fixtures for OpenTelemetry testing infrastructure
using an in-memory span exporter for span inspection.
"""

from __future__ import annotations

from collections.abc import Callable, Generator
from typing import Any

import pytest

# ============================================================================
# OpenTelemetry Fixtures
# ============================================================================

# Module-level storage for the global test provider
_test_provider = None


@pytest.fixture(scope="session", autouse=True)
def setup_test_tracing() -> Generator[Any, None, None]:
    """
    Set up a global TracerProvider for all tests at session scope.

    This sets up OpenTelemetry once at the start of the test session.
    Individual tests use the trace_exporter fixture to capture spans.
    """
    global _test_provider

    from opentelemetry import trace
    from opentelemetry.sdk.trace import TracerProvider

    # Only set up if not already configured (avoid re-configuration errors)
    current_provider = trace.get_tracer_provider()

    # Check if current provider is a proxy (not yet configured)
    if current_provider.__class__.__name__ == "ProxyTracerProvider":
        _test_provider = TracerProvider()
        trace.set_tracer_provider(_test_provider)
    else:
        _test_provider = current_provider

    yield _test_provider


@pytest.fixture(scope="function")
def trace_exporter(setup_test_tracing: Any) -> Generator[Any, None, None]:
    """
    Create an in-memory span exporter for testing.

    The exporter is added to the session provider; it cannot be removed
    again, so it is cleared after the test instead.

    Yields:
        InMemorySpanExporter instance with captured spans
    """
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import SimpleSpanProcessor
    from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

    exporter = InMemorySpanExporter()

    if isinstance(_test_provider, TracerProvider):
        _test_provider.add_span_processor(SimpleSpanProcessor(exporter))
    else:
        pytest.skip("Global TracerProvider is not an SDK provider")

    yield exporter

    exporter.clear()


@pytest.fixture(scope="function")
def get_spans(trace_exporter: Any) -> Callable[[], list[Any]]:
    """
    Helper fixture to retrieve finished spans from the exporter.

    Returns:
        Callable that returns list of finished spans
    """

    def _get_spans() -> list[Any]:
        return list(trace_exporter.get_finished_spans())

    return _get_spans


@pytest.fixture(scope="function")
def find_span(get_spans: Callable[[], list[Any]]) -> Callable[[str], Any | None]:
    """
    Helper fixture to find a span by exact name.

    Example:
        >>> def test_find_span(find_span):
        ...     # ... run a migration ...
        ...     span = find_span("livemigrate.engine.migrate")
        ...     assert span is not None
    """

    def _find_span(name: str) -> Any | None:
        return next((s for s in get_spans() if s.name == name), None)

    return _find_span


@pytest.fixture(scope="function")
def find_spans(get_spans: Callable[[], list[Any]]) -> Callable[[str], list[Any]]:
    """
    Helper fixture to find all spans whose name contains a substring.

    Example:
        >>> def test_find_spans(find_spans):
        ...     # ... run a migration ...
        ...     phase_spans = find_spans("livemigrate.engine.")
        ...     assert len(phase_spans) > 6
    """

    def _find_spans(name_contains: str) -> list[Any]:
        return [s for s in get_spans() if name_contains in s.name]

    return _find_spans
