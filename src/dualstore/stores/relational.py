"""
SQLAlchemyRecordStore - relational (source) record store.

Reads and writes the ``integration_logs`` or ``payments`` table through
SQLAlchemy's async engine. Works against PostgreSQL (asyncpg) and SQLite
(aiosqlite).

Responsibilities:
    - Idempotent upserts keyed by natural id
    - Keyset-paginated window streaming for the backfill migrator
    - Indexed reads and counts for the router and validator
    - Data-quality probes for source validation
    - Mapping driver failures onto TransientStoreError / StoreError

Usage:
    >>> engine = create_async_engine("postgresql+asyncpg://...")
    >>> store = SQLAlchemyRecordStore(engine, RecordClass.INTEGRATION_LOGS)
    >>> await store.insert(record)
    >>> async for row in store.iter_window(start, end, page_size=500):
    ...     ...
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from datetime import UTC, date, datetime, time, timedelta
from decimal import Decimal
from typing import Any

from pydantic import ValidationError
from sqlalchemy import Row, Table, and_, func, or_, select
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from dualstore.exceptions import RecordConversionError, StoreError, TransientStoreError
from dualstore.observability import (
    ATTR_APPLICATION_ID,
    ATTR_BATCH_SIZE,
    ATTR_DB_OPERATION,
    ATTR_DB_SYSTEM,
    ATTR_RECORD_CLASS,
    ATTR_RECORD_COUNT,
    ATTR_RECORD_ID,
    ATTR_SERVICE_NAME,
    ATTR_STORE_NAME,
    Tracer,
    create_tracer,
)
from dualstore.records import (
    LogRecord,
    PaymentRecord,
    PaymentStatus,
    Record,
    RecordClass,
    ensure_utc,
    record_id,
)
from dualstore.schema import integration_logs, payments
from dualstore.stores._connection import execute_with_connection
from dualstore.stores.interface import (
    BatchAccumulator,
    BatchWriteResult,
    check_record,
    require_record_class,
)

logger = logging.getLogger(__name__)

DEFAULT_SQL_BATCH_SIZE = 500


def is_transient_db_error(error: SQLAlchemyError) -> bool:
    """Connection drops, timeouts and invalidated connections are retryable."""
    if isinstance(error, (OperationalError, InterfaceError, PoolTimeoutError)):
        return True
    return isinstance(error, DBAPIError) and error.connection_invalidated


class SQLAlchemyRecordStore:
    """
    Relational implementation of RecordStore.

    The store is bound to one record class and therefore to one table.
    Naive datetimes coming back from SQLite are interpreted as UTC.

    Example:
        >>> store = SQLAlchemyRecordStore(engine, RecordClass.PAYMENTS, name="relational")
        >>> payments = await store.query_payments_by_customer(42, limit=10)
    """

    def __init__(
        self,
        conn: AsyncConnection | AsyncEngine,
        record_class: RecordClass,
        *,
        name: str = "relational",
        max_batch_size: int = DEFAULT_SQL_BATCH_SIZE,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the store.

        Args:
            conn: Database connection or engine
            record_class: Record class held by this store
            name: Logical name reported in outcomes and logs
            max_batch_size: Rows per upsert statement
            tracer: Optional custom Tracer instance.
            enable_tracing: Whether to enable OpenTelemetry tracing
        """
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._conn = conn
        self._record_class = record_class
        self._name = name
        self._max_batch_size = max_batch_size
        self._table: Table = (
            payments if record_class is RecordClass.PAYMENTS else integration_logs
        )

    @property
    def name(self) -> str:
        return self._name

    @property
    def record_class(self) -> RecordClass:
        return self._record_class

    @property
    def max_batch_size(self) -> int:
        return self._max_batch_size

    @property
    def table(self) -> Table:
        return self._table

    # =========================================================================
    # Writes
    # =========================================================================

    async def insert(self, record: Record) -> None:
        """Upsert one record."""
        check_record(self._name, self._record_class, record, "insert")
        with self._tracer.span(
            "dualstore.sql_store.insert",
            self._attributes("insert", {ATTR_RECORD_ID: record_id(record)}),
        ):
            async with self._guard("insert"):
                async with execute_with_connection(self._conn, transactional=True) as conn:
                    await self._upsert(conn, [self._to_row(record)])

    async def insert_batch(self, records: Sequence[Record]) -> BatchWriteResult:
        """
        Upsert records in chunks of ``max_batch_size``.

        Each chunk runs in its own transaction; a failed chunk reports all
        of its records as failed and the remaining chunks still run.
        """
        for record in records:
            check_record(self._name, self._record_class, record, "insert_batch")

        acc = BatchAccumulator()
        with self._tracer.span(
            "dualstore.sql_store.insert_batch",
            self._attributes("insert_batch", {ATTR_RECORD_COUNT: len(records)}),
        ):
            for start in range(0, len(records), self._max_batch_size):
                chunk = records[start : start + self._max_batch_size]
                with self._tracer.span(
                    "dualstore.sql_store.insert_chunk",
                    {ATTR_BATCH_SIZE: len(chunk), ATTR_STORE_NAME: self._name},
                ):
                    try:
                        async with execute_with_connection(
                            self._conn, transactional=True
                        ) as conn:
                            await self._upsert(conn, [self._to_row(r) for r in chunk])
                    except SQLAlchemyError as e:
                        logger.warning(
                            "%s: chunk of %d records failed: %s",
                            self._name,
                            len(chunk),
                            e,
                        )
                        acc.add_failures(chunk, str(e), retryable=is_transient_db_error(e))
                        continue
                    acc.written += len(chunk)
        return acc.result()

    async def _upsert(self, conn: AsyncConnection, rows: list[dict[str, Any]]) -> None:
        dialect = conn.dialect.name
        if dialect == "postgresql":
            from sqlalchemy.dialects.postgresql import insert
        elif dialect == "sqlite":
            from sqlalchemy.dialects.sqlite import insert
        else:
            raise StoreError(self._name, "insert", f"unsupported dialect {dialect}")

        key = self._key_column.name
        stmt = insert(self._table)
        stmt = stmt.on_conflict_do_update(
            index_elements=[key],
            set_={c.name: stmt.excluded[c.name] for c in self._table.columns if c.name != key},
        )
        await conn.execute(stmt, rows)

    # =========================================================================
    # Generic reads
    # =========================================================================

    async def get(self, record: Record) -> Record | None:
        check_record(self._name, self._record_class, record, "get")
        with self._tracer.span(
            "dualstore.sql_store.get",
            self._attributes("get", {ATTR_RECORD_ID: record_id(record)}),
        ):
            stmt = select(self._table).where(self._key_column == record_id(record))
            rows = await self._fetch("get", stmt)
            return self._from_row(rows[0]) if rows else None

    async def count_by_time_range(
        self,
        start: datetime,
        end: datetime,
        service: str | None = None,
    ) -> int:
        with self._tracer.span(
            "dualstore.sql_store.count_by_time_range",
            self._attributes("count", {ATTR_SERVICE_NAME: service or ""}),
        ):
            ts = self._time_column
            stmt = (
                select(func.count())
                .select_from(self._table)
                .where(ts >= ensure_utc(start), ts < ensure_utc(end))
            )
            if service is not None:
                require_record_class(
                    self._name,
                    self._record_class,
                    RecordClass.INTEGRATION_LOGS,
                    "count_by_time_range",
                )
                stmt = stmt.where(integration_logs.c.service_name == service)
            rows = await self._fetch("count_by_time_range", stmt)
            return int(rows[0][0])

    async def iter_window(
        self,
        start: datetime,
        end: datetime,
        page_size: int = 500,
    ) -> AsyncIterator[Record | RecordConversionError]:
        """
        Stream ``[start, end)`` ordered by (time, id) using keyset pagination.

        Each page is a separate short query so no connection is held open
        between pages.
        """
        ts = self._time_column
        key = self._key_column
        last: tuple[datetime, int] | None = None
        while True:
            stmt = select(self._table).where(ts >= ensure_utc(start), ts < ensure_utc(end))
            if last is not None:
                stmt = stmt.where(or_(ts > last[0], and_(ts == last[0], key > last[1])))
            stmt = stmt.order_by(ts, key).limit(page_size)

            with self._tracer.span(
                "dualstore.sql_store.iter_window_page",
                self._attributes("select", {ATTR_BATCH_SIZE: page_size}),
            ):
                rows = await self._fetch("iter_window", stmt)

            for row in rows:
                try:
                    yield self._from_row(row)
                except RecordConversionError as e:
                    yield e
            if len(rows) < page_size:
                return
            tail = rows[-1]._mapping
            last = (tail[ts.name], tail[key.name])

    async def ping(self) -> None:
        stmt = select(1)
        await self._fetch("ping", stmt)

    # =========================================================================
    # Integration log reads
    # =========================================================================

    async def query_by_application(self, application_id: int) -> list[LogRecord]:
        self._logs_only("query_by_application")
        with self._tracer.span(
            "dualstore.sql_store.query_by_application",
            self._attributes("select", {ATTR_APPLICATION_ID: application_id}),
        ):
            t = integration_logs
            stmt = (
                select(t)
                .where(t.c.application_id == application_id)
                .order_by(t.c.log_timestamp.desc(), t.c.log_id.desc())
            )
            return self._logs_from(await self._fetch("query_by_application", stmt))

    async def query_by_time_range(
        self,
        service: str,
        start: datetime,
        end: datetime,
    ) -> list[LogRecord]:
        self._logs_only("query_by_time_range")
        with self._tracer.span(
            "dualstore.sql_store.query_by_time_range",
            self._attributes("select", {ATTR_SERVICE_NAME: service}),
        ):
            t = integration_logs
            stmt = (
                select(t)
                .where(
                    t.c.service_name == service,
                    t.c.log_timestamp >= ensure_utc(start),
                    t.c.log_timestamp < ensure_utc(end),
                )
                .order_by(t.c.log_timestamp, t.c.log_id)
            )
            return self._logs_from(await self._fetch("query_by_time_range", stmt))

    async def query_error_logs_by_date(self, day: date) -> list[LogRecord]:
        self._logs_only("query_error_logs_by_date")
        t = integration_logs
        start, end = _day_bounds(day)
        stmt = (
            select(t)
            .where(
                t.c.is_success.is_(False),
                t.c.log_timestamp >= start,
                t.c.log_timestamp < end,
            )
            .order_by(t.c.log_timestamp.desc(), t.c.log_id.desc())
        )
        return self._logs_from(await self._fetch("query_error_logs_by_date", stmt))

    async def distinct_service_names(self) -> list[str]:
        self._logs_only("distinct_service_names")
        t = integration_logs
        stmt = (
            select(t.c.service_name)
            .where(t.c.service_name.is_not(None))
            .distinct()
            .order_by(t.c.service_name)
        )
        return [row[0] for row in await self._fetch("distinct_service_names", stmt)]

    # =========================================================================
    # Payment reads
    # =========================================================================

    async def get_payment(self, payment_id: int) -> PaymentRecord | None:
        self._payments_only("get_payment")
        stmt = select(payments).where(payments.c.payment_id == payment_id)
        rows = await self._fetch("get_payment", stmt)
        if not rows:
            return None
        payment = self._from_row(rows[0])
        return payment if isinstance(payment, PaymentRecord) else None

    async def query_payments_by_customer(
        self,
        customer_id: int,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int = 50,
    ) -> list[PaymentRecord]:
        self._payments_only("query_payments_by_customer")
        t = payments
        stmt = select(t).where(t.c.customer_id == customer_id)
        if start is not None:
            stmt = stmt.where(t.c.payment_date >= ensure_utc(start))
        if end is not None:
            stmt = stmt.where(t.c.payment_date < ensure_utc(end))
        stmt = stmt.order_by(t.c.payment_date.desc(), t.c.payment_id.desc()).limit(limit)
        return self._payments_from(await self._fetch("query_payments_by_customer", stmt))

    async def query_payments_by_status(self, status: PaymentStatus) -> list[PaymentRecord]:
        self._payments_only("query_payments_by_status")
        t = payments
        stmt = (
            select(t)
            .where(t.c.status == status.value)
            .order_by(t.c.payment_date.desc(), t.c.payment_id.desc())
        )
        return self._payments_from(await self._fetch("query_payments_by_status", stmt))

    async def query_payments_by_loan(self, loan_id: int) -> list[PaymentRecord]:
        self._payments_only("query_payments_by_loan")
        t = payments
        stmt = (
            select(t)
            .where(t.c.loan_id == loan_id)
            .order_by(t.c.payment_date.desc(), t.c.payment_id.desc())
        )
        return self._payments_from(await self._fetch("query_payments_by_loan", stmt))

    # =========================================================================
    # Data quality
    # =========================================================================

    async def quality_counts(self, now: datetime) -> dict[str, int]:
        """
        Count rows that would fail or distort a migration.

        Payments: null customer ids, null or non-positive amounts,
        future-dated payments and duplicated transaction references.
        Logs: missing service names or log types and future-dated entries.
        """
        now = ensure_utc(now)
        if self._record_class is RecordClass.PAYMENTS:
            t = payments
            checks = {
                "null_customer_id": t.c.customer_id.is_(None),
                "null_amount": t.c.amount.is_(None),
                "non_positive_amount": t.c.amount <= 0,
                "future_dated": t.c.payment_date > now,
            }
        else:
            t = integration_logs
            checks = {
                "missing_service_name": or_(
                    t.c.service_name.is_(None), t.c.service_name == ""
                ),
                "missing_log_type": or_(t.c.log_type.is_(None), t.c.log_type == ""),
                "future_dated": t.c.log_timestamp > now,
            }

        counts: dict[str, int] = {}
        for check_name, condition in checks.items():
            stmt = select(func.count()).select_from(t).where(condition)
            counts[check_name] = int((await self._fetch("quality_counts", stmt))[0][0])

        if self._record_class is RecordClass.PAYMENTS:
            dupes = (
                select(payments.c.transaction_reference)
                .where(payments.c.transaction_reference.is_not(None))
                .group_by(payments.c.transaction_reference)
                .having(func.count() > 1)
                .subquery()
            )
            stmt = select(func.count()).select_from(dupes)
            counts["duplicate_transaction_reference"] = int(
                (await self._fetch("quality_counts", stmt))[0][0]
            )
        return counts

    # =========================================================================
    # Row mapping
    # =========================================================================

    @property
    def _key_column(self) -> Any:
        if self._record_class is RecordClass.PAYMENTS:
            return payments.c.payment_id
        return integration_logs.c.log_id

    @property
    def _time_column(self) -> Any:
        if self._record_class is RecordClass.PAYMENTS:
            return payments.c.payment_date
        return integration_logs.c.log_timestamp

    def _to_row(self, record: Record) -> dict[str, Any]:
        if isinstance(record, LogRecord):
            return {
                "log_id": record.log_id,
                "log_timestamp": record.timestamp,
                "service_name": record.service_name,
                "log_type": record.log_type,
                "application_id": record.application_id,
                "request_data": record.request_data,
                "response_data": record.response_data,
                "is_success": record.is_success,
                "status_code": record.status_code,
                "error_message": record.error_message,
                "processing_time_ms": record.processing_time_ms,
                "correlation_id": record.correlation_id,
                "user_id": record.user_id,
            }
        return {
            "payment_id": record.payment_id,
            "loan_id": record.loan_id,
            "customer_id": record.customer_id,
            "amount": record.amount,
            "payment_date": record.payment_date,
            "payment_method": record.payment_method,
            "status": record.status.value,
            "transaction_reference": record.transaction_reference,
            "created_at": record.created_at,
            "updated_at": record.updated_at,
        }

    def _from_row(self, row: Row[Any]) -> Record:
        """
        Convert a result row to a record.

        Raises:
            RecordConversionError: If the row violates the record model.
        """
        data = dict(row._mapping)
        try:
            if self._record_class is RecordClass.PAYMENTS:
                return PaymentRecord(
                    payment_id=data["payment_id"],
                    loan_id=data["loan_id"],
                    customer_id=data["customer_id"],
                    amount=Decimal(str(data["amount"])) if data["amount"] is not None else None,
                    payment_date=data["payment_date"],
                    payment_method=data["payment_method"],
                    status=PaymentStatus(data["status"] or PaymentStatus.PENDING.value),
                    transaction_reference=data["transaction_reference"],
                    created_at=data["created_at"] or data["payment_date"],
                    updated_at=data["updated_at"] or data["created_at"] or data["payment_date"],
                )
            return LogRecord(
                log_id=data["log_id"],
                timestamp=data["log_timestamp"],
                service_name=data["service_name"],
                log_type=data["log_type"],
                application_id=data["application_id"],
                request_data=data["request_data"],
                response_data=data["response_data"],
                is_success=bool(data["is_success"]),
                status_code=data["status_code"],
                error_message=data["error_message"],
                processing_time_ms=data["processing_time_ms"],
                correlation_id=data["correlation_id"],
                user_id=data["user_id"],
            )
        except (ValidationError, ValueError) as e:
            key = self._key_column.name
            raise RecordConversionError(
                {key: data.get(key), self._time_column.name: str(data.get(self._time_column.name))},
                str(e),
            ) from e

    def _logs_from(self, rows: Sequence[Row[Any]]) -> list[LogRecord]:
        return [r for r in self._convert_all(rows) if isinstance(r, LogRecord)]

    def _payments_from(self, rows: Sequence[Row[Any]]) -> list[PaymentRecord]:
        return [r for r in self._convert_all(rows) if isinstance(r, PaymentRecord)]

    def _convert_all(self, rows: Sequence[Row[Any]]) -> list[Record]:
        records: list[Record] = []
        for row in rows:
            try:
                records.append(self._from_row(row))
            except RecordConversionError as e:
                logger.warning("%s: skipping unreadable row: %s", self._name, e)
        return records

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _fetch(self, operation: str, stmt: Any) -> Sequence[Row[Any]]:
        async with self._guard(operation):
            async with execute_with_connection(self._conn, transactional=False) as conn:
                result = await conn.execute(stmt)
                return result.fetchall()

    @asynccontextmanager
    async def _guard(self, operation: str) -> AsyncIterator[None]:
        """Translate SQLAlchemy errors into the store error taxonomy."""
        try:
            yield
        except SQLAlchemyError as e:
            if is_transient_db_error(e):
                raise TransientStoreError(self._name, operation, str(e)) from e
            raise StoreError(self._name, operation, str(e)) from e

    def _attributes(self, operation: str, extra: dict[str, Any]) -> dict[str, Any]:
        return {
            ATTR_STORE_NAME: self._name,
            ATTR_RECORD_CLASS: self._record_class.value,
            ATTR_DB_SYSTEM: self._db_system,
            ATTR_DB_OPERATION: operation,
            **extra,
        }

    @property
    def _db_system(self) -> str:
        dialect = getattr(self._conn, "dialect", None)
        return getattr(dialect, "name", "sql")

    def _logs_only(self, operation: str) -> None:
        require_record_class(
            self._name, self._record_class, RecordClass.INTEGRATION_LOGS, operation
        )

    def _payments_only(self, operation: str) -> None:
        require_record_class(self._name, self._record_class, RecordClass.PAYMENTS, operation)


def _day_bounds(day: date) -> tuple[datetime, datetime]:
    start = datetime.combine(day, time.min, tzinfo=UTC)
    return start, start + timedelta(days=1)


__all__ = ["SQLAlchemyRecordStore", "is_transient_db_error", "DEFAULT_SQL_BATCH_SIZE"]
