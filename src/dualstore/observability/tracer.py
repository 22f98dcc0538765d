"""
Tracers handed to dualstore components.

Stores, the router, the phase controller, the validator and the backfill
migrator all take ``tracer`` and ``enable_tracing`` arguments and open spans
with ``self._tracer.span(name, attributes)``. Span names follow
``dualstore.<component>.<operation>``; attribute keys live in
``dualstore.observability.attributes``.

Example:
    >>> tracer = create_tracer(__name__, enable_tracing=True)
    >>> with tracer.span("dualstore.router.write_record", {ATTR_RECORD_ID: 42}):
    ...     ...
"""

from __future__ import annotations

import contextlib
from collections.abc import Generator
from contextlib import AbstractContextManager
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from opentelemetry.trace import Span

from dualstore.observability.tracing import OTEL_AVAILABLE

SpanAttributes = dict[str, Any]


@runtime_checkable
class Tracer(Protocol):
    """What a component needs from a tracer: spans and an enabled flag."""

    def span(
        self,
        name: str,
        attributes: SpanAttributes | None = None,
    ) -> AbstractContextManager[Span | None]:
        """
        Open a span around a store call, routed write or backfill window.

        Args:
            name: Span name, e.g. "dualstore.backfill.window".
            attributes: Initial span attributes.
        """
        ...

    @property
    def enabled(self) -> bool:
        """False when spans are discarded, so callers can skip building attributes."""
        ...


class NullTracer:
    """Discards every span. Used when tracing is off or OpenTelemetry is missing."""

    @contextlib.contextmanager
    def span(
        self,
        name: str,
        attributes: SpanAttributes | None = None,
    ) -> Generator[None, None, None]:
        yield None

    @property
    def enabled(self) -> bool:
        return False


class OpenTelemetryTracer:
    """
    Spans through the OpenTelemetry API.

    Only constructed by ``create_tracer`` once OpenTelemetry is known to be
    importable.
    """

    def __init__(self, tracer_name: str) -> None:
        from opentelemetry import trace

        self._tracer = trace.get_tracer(tracer_name)

    def span(
        self,
        name: str,
        attributes: SpanAttributes | None = None,
    ) -> AbstractContextManager[Span | None]:
        return self._tracer.start_as_current_span(name, attributes=attributes or {})

    @property
    def enabled(self) -> bool:
        return True


class MockTracer:
    """
    Records spans so tests can assert on what a component traced.

    Example:
        >>> tracer = MockTracer()
        >>> router = HybridRouter(controller, source, target, tracer=tracer)
        >>> await router.write_record(record)
        >>> tracer.span_names
        ['dualstore.router.write_record', ...]
    """

    def __init__(self) -> None:
        self.spans: list[tuple[str, SpanAttributes | None]] = []

    @contextlib.contextmanager
    def span(
        self,
        name: str,
        attributes: SpanAttributes | None = None,
    ) -> Generator[None, None, None]:
        self.spans.append((name, attributes))
        yield None

    @property
    def enabled(self) -> bool:
        return True

    @property
    def span_names(self) -> list[str]:
        return [name for name, _ in self.spans]

    def attributes_of(self, name: str) -> list[SpanAttributes]:
        """Attributes of every recorded span called ``name``, in order."""
        return [attrs or {} for span_name, attrs in self.spans if span_name == name]

    def clear(self) -> None:
        self.spans.clear()


def create_tracer(name: str, enable_tracing: bool = True) -> Tracer:
    """
    Pick the tracer for a component.

    Args:
        name: Tracer name, normally the component's ``__name__``.
        enable_tracing: The component's ``enable_tracing`` argument.

    Returns:
        An OpenTelemetryTracer when tracing is enabled and OpenTelemetry is
        installed, otherwise a NullTracer.
    """
    if enable_tracing and OTEL_AVAILABLE:
        return OpenTelemetryTracer(name)
    return NullTracer()


__all__ = [
    "SpanAttributes",
    "Tracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "MockTracer",
    "create_tracer",
]
