"""
Standard span attributes for dualstore.

Attribute constants used across all dualstore components for consistent
span labelling. Database attributes follow OpenTelemetry semantic
conventions.
"""

# =============================================================================
# Record Attributes
# =============================================================================

ATTR_RECORD_CLASS = "dualstore.record.class"
"""Record class being handled ('integration_logs' or 'payments')."""

ATTR_RECORD_ID = "dualstore.record.id"
"""Natural id of a single record (log id or payment id)."""

ATTR_RECORD_COUNT = "dualstore.record.count"
"""Number of records in an operation (integer)."""

ATTR_SERVICE_NAME = "dualstore.record.service"
"""Originating service name of a log record."""

ATTR_APPLICATION_ID = "dualstore.record.application_id"
"""Application reference used for indexed reads."""

# =============================================================================
# Store Attributes
# =============================================================================

ATTR_STORE_NAME = "dualstore.store.name"
"""Logical store name ('relational' or 'dynamodb')."""

ATTR_STORE_ROLE = "dualstore.store.role"
"""Role of the store in the migration ('source' or 'target')."""

ATTR_DB_SYSTEM = "db.system"
"""Database system identifier (OTEL semantic convention)."""

ATTR_DB_OPERATION = "db.operation"
"""Database operation name (OTEL semantic convention)."""

ATTR_BATCH_SIZE = "dualstore.batch.size"
"""Size of a (sub-)batch sent to a store."""

# =============================================================================
# Migration Attributes
# =============================================================================

ATTR_MIGRATION_PHASE = "dualstore.migration.phase"
"""Current migration phase."""

ATTR_MIGRATION_OPERATOR = "dualstore.migration.operator"
"""Operator identifier for an administrative action."""

ATTR_RUN_ID = "dualstore.backfill.run_id"
"""Backfill run identifier."""

ATTR_WINDOW_START = "dualstore.backfill.window_start"
"""ISO-8601 start of a backfill or validation window."""

ATTR_WINDOW_END = "dualstore.backfill.window_end"
"""ISO-8601 end of a backfill or validation window."""

ATTR_WRITE_STATUS = "dualstore.write.status"
"""Outcome status of a routed write ('success', 'degraded', 'failed')."""

# =============================================================================
# Error/Retry Attributes
# =============================================================================

ATTR_RETRY_COUNT = "dualstore.retry.count"
"""Number of retry attempts made."""

ATTR_ERROR_TYPE = "dualstore.error.type"
"""Exception class name of a failure."""


__all__ = [
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
