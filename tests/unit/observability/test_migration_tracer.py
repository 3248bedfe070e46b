"""
Unit tests for tracer protocol and implementations.

Tests for:
- Tracer Protocol (runtime_checkable)
- NullTracer class
- OpenTelemetryTracer class
- MockTracer class
- create_tracer() factory function
"""

from __future__ import annotations

from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import StatusCode

from livemigrate.observability import (
    MockTracer,
    NullTracer,
    OpenTelemetryTracer,
    Tracer,
    create_tracer,
)


class TestTracerProtocol:
    """Tests for Tracer protocol."""

    def test_null_tracer_implements_protocol(self):
        """NullTracer implements Tracer protocol."""
        assert isinstance(NullTracer(), Tracer)

    def test_otel_tracer_implements_protocol(self):
        """OpenTelemetryTracer implements Tracer protocol."""
        assert isinstance(OpenTelemetryTracer(__name__), Tracer)

    def test_mock_tracer_implements_protocol(self):
        """MockTracer implements Tracer protocol."""
        assert isinstance(MockTracer(), Tracer)


class TestNullTracer:
    """Tests for NullTracer."""

    def test_span_yields_none(self):
        """NullTracer spans yield None."""
        with NullTracer().span("operation", {"key": "value"}) as span:
            assert span is None

    def test_disabled(self):
        assert NullTracer().enabled is False

    def test_record_error_is_noop(self):
        NullTracer().record_error(None, ValueError("x"))


class TestOpenTelemetryTracer:
    """Tests for OpenTelemetryTracer."""

    def test_enabled(self):
        assert OpenTelemetryTracer(__name__).enabled is True

    def test_span_is_context_manager(self):
        """Spans work without a configured provider."""
        with OpenTelemetryTracer(__name__).span("operation", {"livemigrate.migration.id": 1}) as span:
            assert span is not None

    def test_record_error(self):
        """Errors are recorded as exception events with an error status."""
        exporter = InMemorySpanExporter()
        provider = TracerProvider()
        provider.add_span_processor(SimpleSpanProcessor(exporter))
        span = provider.get_tracer(__name__).start_span("operation")

        OpenTelemetryTracer(__name__).record_error(span, RuntimeError("patch failed"))
        span.end()

        (finished,) = exporter.get_finished_spans()
        assert finished.status.status_code is StatusCode.ERROR
        assert finished.events[0].name == "exception"

    def test_record_error_without_span(self):
        OpenTelemetryTracer(__name__).record_error(None, RuntimeError("x"))


class TestMockTracer:
    """Tests for MockTracer."""

    def test_records_spans(self):
        """MockTracer records span names and attributes."""
        tracer = MockTracer()
        with tracer.span("first", {"a": 1}):
            pass
        with tracer.span("second"):
            pass

        assert tracer.spans == [("first", {"a": 1}), ("second", None)]
        assert tracer.span_names == ["first", "second"]

    def test_records_errors(self):
        tracer = MockTracer()
        error = ValueError("x")
        tracer.record_error(None, error)

        assert tracer.errors == [error]

    def test_clear(self):
        tracer = MockTracer()
        with tracer.span("x"):
            pass
        tracer.record_error(None, ValueError())
        tracer.clear()

        assert tracer.spans == []
        assert tracer.errors == []


class TestCreateTracer:
    """Tests for create_tracer()."""

    def test_enabled_returns_otel_tracer(self):
        assert isinstance(create_tracer(__name__, True), OpenTelemetryTracer)

    def test_disabled_returns_null_tracer(self):
        assert isinstance(create_tracer(__name__, False), NullTracer)
