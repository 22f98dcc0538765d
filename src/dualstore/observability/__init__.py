"""
Observability utilities for dualstore.

Tracing and standard attribute definitions shared by every component.
OpenTelemetry is optional; all utilities degrade to no-ops without it.

Example:
    >>> from dualstore.observability import create_tracer
    >>>
    >>> class MyStore:
    ...     def __init__(self, enable_tracing: bool = True):
    ...         self._tracer = create_tracer(__name__, enable_tracing)
    ...         self._enable_tracing = self._tracer.enabled
"""

from dualstore.observability.attributes import (
    ATTR_APPLICATION_ID,
    ATTR_BATCH_SIZE,
    ATTR_DB_OPERATION,
    ATTR_DB_SYSTEM,
    ATTR_ERROR_TYPE,
    ATTR_MIGRATION_OPERATOR,
    ATTR_MIGRATION_PHASE,
    ATTR_RECORD_CLASS,
    ATTR_RECORD_COUNT,
    ATTR_RECORD_ID,
    ATTR_RETRY_COUNT,
    ATTR_RUN_ID,
    ATTR_SERVICE_NAME,
    ATTR_STORE_NAME,
    ATTR_STORE_ROLE,
    ATTR_WINDOW_END,
    ATTR_WINDOW_START,
    ATTR_WRITE_STATUS,
)
from dualstore.observability.tracer import (
    MockTracer,
    NullTracer,
    OpenTelemetryTracer,
    Tracer,
    create_tracer,
)
from dualstore.observability.tracing import (
    OTEL_AVAILABLE,
    get_tracer,
    should_trace,
)

__all__ = [
    "OTEL_AVAILABLE",
    "get_tracer",
    "should_trace",
    "Tracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "MockTracer",
    "create_tracer",
    "ATTR_RECORD_CLASS",
    "ATTR_RECORD_ID",
    "ATTR_RECORD_COUNT",
    "ATTR_SERVICE_NAME",
    "ATTR_APPLICATION_ID",
    "ATTR_STORE_NAME",
    "ATTR_STORE_ROLE",
    "ATTR_DB_SYSTEM",
    "ATTR_DB_OPERATION",
    "ATTR_BATCH_SIZE",
    "ATTR_MIGRATION_PHASE",
    "ATTR_MIGRATION_OPERATOR",
    "ATTR_RUN_ID",
    "ATTR_WINDOW_START",
    "ATTR_WINDOW_END",
    "ATTR_WRITE_STATUS",
    "ATTR_RETRY_COUNT",
    "ATTR_ERROR_TYPE",
]
