"""
Unit tests for tracer protocol and implementations.

Tests for:
- Tracer Protocol (runtime_checkable)
- NullTracer class
- MockTracer class
- create_tracer() factory function
- Standard attribute names
"""

from __future__ import annotations

import pytest

from dualstore.observability import (
    ATTR_RECORD_CLASS,
    ATTR_STORE_ROLE,
    OTEL_AVAILABLE,
    MockTracer,
    NullTracer,
    OpenTelemetryTracer,
    Tracer,
    create_tracer,
    should_trace,
)


class TestTracerProtocol:
    """Tests for Tracer protocol."""

    def test_null_tracer_implements_protocol(self):
        """NullTracer implements Tracer protocol."""
        assert isinstance(NullTracer(), Tracer)

    def test_mock_tracer_implements_protocol(self):
        """MockTracer implements Tracer protocol."""
        assert isinstance(MockTracer(), Tracer)

    @pytest.mark.skipif(not OTEL_AVAILABLE, reason="OTEL not installed")
    def test_otel_tracer_implements_protocol(self):
        """OpenTelemetryTracer implements Tracer protocol."""
        assert isinstance(OpenTelemetryTracer(__name__), Tracer)


class TestNullTracer:
    """Tests for NullTracer class."""

    def test_span_yields_none(self):
        """span() is a context manager yielding None."""
        tracer = NullTracer()
        with tracer.span("test", {"key": "value"}) as span:
            assert span is None

    def test_enabled_is_false(self):
        assert NullTracer().enabled is False


class TestMockTracer:
    """Tests for MockTracer class."""

    def test_records_spans_in_order(self):
        """Spans are recorded with their attributes."""
        tracer = MockTracer()
        with tracer.span("outer", {ATTR_RECORD_CLASS: "payments"}):
            with tracer.span("inner"):
                pass

        assert tracer.span_names == ["outer", "inner"]
        assert tracer.spans[0] == ("outer", {ATTR_RECORD_CLASS: "payments"})

    def test_attributes_of(self):
        tracer = MockTracer()
        for run_id in ("a", "b"):
            with tracer.span("dualstore.backfill.window", {"run": run_id}):
                pass
        with tracer.span("dualstore.backfill.run"):
            pass

        assert tracer.attributes_of("dualstore.backfill.window") == [{"run": "a"}, {"run": "b"}]
        assert tracer.attributes_of("dualstore.backfill.run") == [{}]

    def test_clear(self):
        tracer = MockTracer()
        with tracer.span("x"):
            pass
        tracer.clear()
        assert tracer.spans == []


class TestCreateTracer:
    """Tests for create_tracer() factory function."""

    def test_disabled_returns_null_tracer(self):
        """enable_tracing=False always gives a NullTracer."""
        assert isinstance(create_tracer(__name__, enable_tracing=False), NullTracer)

    def test_enabled_depends_on_otel(self):
        """enable_tracing=True gives an OTEL tracer only when OTEL is installed."""
        tracer = create_tracer(__name__, enable_tracing=True)
        expected = OpenTelemetryTracer if OTEL_AVAILABLE else NullTracer
        assert isinstance(tracer, expected)

    def test_should_trace(self):
        assert should_trace(False) is False
        assert should_trace(True) is OTEL_AVAILABLE


class TestAttributes:
    def test_attribute_names_are_namespaced(self):
        assert ATTR_RECORD_CLASS.startswith("dualstore.")
        assert ATTR_STORE_ROLE.startswith("dualstore.")
