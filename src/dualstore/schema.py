"""
Relational schema used by dualstore.

Two groups of tables share one MetaData:

- Source record tables (``integration_logs``, ``payments``). In production
  these belong to the surrounding application; they are declared here so
  the store can build queries and tests can create them. Most payload
  columns are nullable because legacy rows are not guaranteed to be clean.
- Migration state tables (``migration_phase_state``,
  ``migration_phase_audit``, ``backfill_checkpoints``, ``backfill_locks``,
  ``migration_validation_results``).

Usage:
    >>> engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    >>> await create_schema(engine)
"""

from __future__ import annotations

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
)
from sqlalchemy.ext.asyncio import AsyncEngine

metadata = MetaData()

integration_logs = Table(
    "integration_logs",
    metadata,
    Column("log_id", BigInteger, primary_key=True, autoincrement=False),
    Column("log_timestamp", DateTime(timezone=True), nullable=False),
    Column("service_name", String(100)),
    Column("log_type", String(50)),
    Column("application_id", Integer),
    Column("request_data", Text),
    Column("response_data", Text),
    Column("is_success", Boolean, nullable=False, default=True),
    Column("status_code", String(20)),
    Column("error_message", Text),
    Column("processing_time_ms", Integer),
    Column("correlation_id", String(100)),
    Column("user_id", String(100)),
    Index("ix_integration_logs_timestamp", "log_timestamp", "log_id"),
    Index("ix_integration_logs_service_timestamp", "service_name", "log_timestamp"),
    Index("ix_integration_logs_application", "application_id"),
)

payments = Table(
    "payments",
    metadata,
    Column("payment_id", BigInteger, primary_key=True, autoincrement=False),
    Column("loan_id", BigInteger),
    Column("customer_id", BigInteger),
    Column("amount", Numeric(18, 2)),
    Column("payment_date", DateTime(timezone=True), nullable=False),
    Column("payment_method", String(50)),
    Column("status", String(20)),
    Column("transaction_reference", String(100)),
    Column("created_at", DateTime(timezone=True)),
    Column("updated_at", DateTime(timezone=True)),
    Index("ix_payments_date", "payment_date", "payment_id"),
    Index("ix_payments_customer", "customer_id", "payment_date"),
    Index("ix_payments_loan", "loan_id"),
    Index("ix_payments_status", "status"),
)

migration_phase_state = Table(
    "migration_phase_state",
    metadata,
    Column("record_class", String(50), primary_key=True),
    Column("phase", String(50), nullable=False),
    Column("require_both_writes", Boolean, nullable=False),
    Column("continue_on_write_failure", Boolean, nullable=False),
    Column("version", Integer, nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    Column("updated_by", String(255), nullable=False),
)

migration_phase_audit = Table(
    "migration_phase_audit",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("record_class", String(50), nullable=False),
    Column("action", String(50), nullable=False),
    Column("from_phase", String(50), nullable=False),
    Column("to_phase", String(50), nullable=False),
    Column("version", Integer, nullable=False),
    Column("operator", String(255), nullable=False),
    Column("reason", Text),
    Column("details", Text),
    Column("occurred_at", DateTime(timezone=True), nullable=False),
    Index("ix_migration_phase_audit_class", "record_class", "occurred_at"),
)

backfill_checkpoints = Table(
    "backfill_checkpoints",
    metadata,
    Column("run_id", String(100), primary_key=True),
    Column("record_class", String(50), nullable=False),
    Column("status", String(20), nullable=False),
    Column("window_start", DateTime(timezone=True), nullable=False),
    Column("window_end", DateTime(timezone=True), nullable=False),
    Column("cursor", DateTime(timezone=True), nullable=False),
    Column("last_record_key", String(255)),
    Column("options", Text, nullable=False),
    Column("records_seen", Integer, nullable=False),
    Column("records_migrated", Integer, nullable=False),
    Column("records_failed", Integer, nullable=False),
    Column("records_skipped", Integer, nullable=False),
    Column("windows_completed", Integer, nullable=False),
    Column("errors", Text, nullable=False),
    Column("started_at", DateTime(timezone=True), nullable=False),
    Column("ended_at", DateTime(timezone=True)),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    Index("ix_backfill_checkpoints_class", "record_class", "status"),
)

backfill_locks = Table(
    "backfill_locks",
    metadata,
    Column("record_class", String(50), primary_key=True),
    Column("run_id", String(100), nullable=False),
    Column("claimed_at", DateTime(timezone=True), nullable=False),
)

migration_validation_results = Table(
    "migration_validation_results",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("record_class", String(50), nullable=False),
    Column("window_start", DateTime(timezone=True), nullable=False),
    Column("window_end", DateTime(timezone=True), nullable=False),
    Column("is_consistent", Boolean, nullable=False),
    Column("report", Text, nullable=False),
    Column("validated_at", DateTime(timezone=True), nullable=False),
    Index("ix_migration_validation_results_class", "record_class", "validated_at"),
)


async def create_schema(engine: AsyncEngine) -> None:
    """Create every dualstore table that does not exist yet."""
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)


__all__ = [
    "metadata",
    "integration_logs",
    "payments",
    "migration_phase_state",
    "migration_phase_audit",
    "backfill_checkpoints",
    "backfill_locks",
    "migration_validation_results",
    "create_schema",
]
