"""
Record store capability interface.

Both backing stores expose the same narrow capability set so the router,
validator and backfill migrator never branch on store type. A store
instance is bound to one record class; log-only and payment-only queries
raise StoreError on a store bound to the other class.

Time windows are half-open: ``start <= t < end``.

This module provides:
- BatchWriteResult: Per-item outcome of a batch write
- RecordStore: Protocol implemented by the relational, DynamoDB and
  in-memory stores
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Protocol, runtime_checkable

from dualstore.exceptions import RecordConversionError, StoreError
from dualstore.records import (
    LogRecord,
    PaymentRecord,
    PaymentStatus,
    Record,
    RecordClass,
)

SOURCE_ROLE = "source"
TARGET_ROLE = "target"


@dataclass(frozen=True)
class BatchWriteResult:
    """
    Outcome of ``insert_batch``.

    A batch write does not raise for individual items; items the store
    could not persist are returned in ``failed_records``.

    Attributes:
        written: Number of records persisted.
        failed_records: Records that were not persisted.
        errors: Error messages, one per failed chunk or item group.
        retryable: Whether the failures look transient.
    """

    written: int
    failed_records: tuple[Record, ...] = ()
    errors: tuple[str, ...] = ()
    retryable: bool = False

    @property
    def succeeded(self) -> bool:
        return not self.failed_records

    @property
    def failed_keys(self) -> list[dict[str, Any]]:
        """Identifying fields of each failed record."""
        return [record.key_fields for record in self.failed_records]

    def to_dict(self) -> dict[str, Any]:
        return {
            "written": self.written,
            "failed_keys": self.failed_keys,
            "errors": list(self.errors),
            "retryable": self.retryable,
        }


@dataclass
class BatchAccumulator:
    """Collects per-chunk results into one BatchWriteResult."""

    written: int = 0
    failed: list[Record] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    retryable: bool = False

    def add_failures(self, records: Sequence[Record], error: str, retryable: bool) -> None:
        self.failed.extend(records)
        self.errors.append(error)
        self.retryable = self.retryable or retryable

    def result(self) -> BatchWriteResult:
        return BatchWriteResult(
            written=self.written,
            failed_records=tuple(self.failed),
            errors=tuple(self.errors),
            retryable=self.retryable,
        )


@runtime_checkable
class RecordStore(Protocol):
    """
    Protocol for stores the migration engine reads and writes.

    Implementations:
    - SQLAlchemyRecordStore: relational source store
    - DynamoDBRecordStore: distributed target store
    - InMemoryRecordStore: tests and dry runs

    Writes are idempotent: inserting a record whose natural id already
    exists overwrites the stored copy.
    """

    @property
    def name(self) -> str:
        """Logical store name used in outcomes and logs."""
        ...

    @property
    def record_class(self) -> RecordClass:
        """Record class this store instance holds."""
        ...

    @property
    def max_batch_size(self) -> int:
        """Largest batch the store accepts in one request."""
        ...

    async def insert(self, record: Record) -> None:
        """
        Persist one record.

        Raises:
            TransientStoreError: On network, timeout or throttling failures.
            StoreError: On any other store failure.
        """
        ...

    async def insert_batch(self, records: Sequence[Record]) -> BatchWriteResult:
        """
        Persist many records, reporting per-item failures.

        Chunks larger than ``max_batch_size`` are split internally.
        """
        ...

    async def get(self, record: Record) -> Record | None:
        """Read back the stored copy of ``record`` by its natural key."""
        ...

    async def count_by_time_range(
        self,
        start: datetime,
        end: datetime,
        service: str | None = None,
    ) -> int:
        """Count records in ``[start, end)``, optionally for one service."""
        ...

    def iter_window(
        self,
        start: datetime,
        end: datetime,
        page_size: int = 500,
    ) -> AsyncIterator[Record | RecordConversionError]:
        """
        Stream records in ``[start, end)`` ordered by natural key.

        Rows that cannot be converted into a record are yielded as
        RecordConversionError instances so the stream continues past them.
        """
        ...

    async def ping(self) -> None:
        """Raise if the store is unreachable."""
        ...

    # Integration logs

    async def query_by_application(self, application_id: int) -> list[LogRecord]:
        """Logs referencing an application, most recent first."""
        ...

    async def query_by_time_range(
        self,
        service: str,
        start: datetime,
        end: datetime,
    ) -> list[LogRecord]:
        """Logs of one service in ``[start, end)``, oldest first."""
        ...

    async def query_error_logs_by_date(self, day: date) -> list[LogRecord]:
        """Failed calls logged on a given day, most recent first."""
        ...

    async def distinct_service_names(self) -> list[str]:
        """Sorted distinct service names present in the store."""
        ...

    # Payments

    async def get_payment(self, payment_id: int) -> PaymentRecord | None:
        ...

    async def query_payments_by_customer(
        self,
        customer_id: int,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int = 50,
    ) -> list[PaymentRecord]:
        """A customer's payments, most recent first."""
        ...

    async def query_payments_by_status(self, status: PaymentStatus) -> list[PaymentRecord]:
        ...

    async def query_payments_by_loan(self, loan_id: int) -> list[PaymentRecord]:
        ...


@runtime_checkable
class SupportsQualityChecks(Protocol):
    """Stores that can run data-quality probes over their own rows."""

    async def quality_counts(self, now: datetime) -> dict[str, int]:
        """Number of offending rows per named check."""
        ...


def require_record_class(
    store_name: str,
    bound: RecordClass,
    wanted: RecordClass,
    operation: str,
) -> None:
    """Raise StoreError when a class-specific query hits the wrong store."""
    if bound is not wanted:
        raise StoreError(
            store_name,
            operation,
            f"store holds {bound.value}, operation needs {wanted.value}",
        )


def check_record(store_name: str, bound: RecordClass, record: Record, operation: str) -> None:
    if record.record_class is not bound:
        raise StoreError(
            store_name,
            operation,
            f"store holds {bound.value}, got a {record.record_class.value} record",
        )


__all__ = [
    "SOURCE_ROLE",
    "TARGET_ROLE",
    "BatchWriteResult",
    "RecordStore",
    "SupportsQualityChecks",
    "require_record_class",
    "check_record",
]
