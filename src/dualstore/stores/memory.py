"""
In-memory record store.

Holds records in a dict keyed by natural id and follows the same
semantics as the real stores: inserts overwrite, windows are half-open and
reads come back in the documented order. Failure injection hooks let tests
simulate transient outages, permanent failures and partially processed
batches.

Example:
    >>> store = InMemoryRecordStore("target", RecordClass.INTEGRATION_LOGS)
    >>> store.fail_writes(TransientStoreError("target", "insert", "timeout"), times=2)
    >>> await store.insert(record)  # raises twice, then succeeds
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Sequence
from datetime import date, datetime
from typing import Any

from dualstore.exceptions import RecordConversionError, StoreError
from dualstore.records import (
    LogRecord,
    PaymentRecord,
    PaymentStatus,
    Record,
    RecordClass,
    ensure_utc,
    record_id,
    record_time,
)
from dualstore.stores.interface import (
    BatchAccumulator,
    BatchWriteResult,
    check_record,
    require_record_class,
)


class _FailurePlan:
    """Error to raise for the next ``remaining`` calls (forever when None)."""

    def __init__(self, error: Exception, times: int | None) -> None:
        self.error = error
        self.remaining = times

    def take(self) -> Exception | None:
        if self.remaining is None:
            return self.error
        if self.remaining <= 0:
            return None
        self.remaining -= 1
        return self.error


class InMemoryRecordStore:
    """
    Dict-backed RecordStore for tests and dry runs.

    Attributes:
        write_calls: Number of insert/insert_batch calls received.
        read_calls: Number of read calls received.
    """

    def __init__(
        self,
        name: str,
        record_class: RecordClass,
        *,
        max_batch_size: int = 25,
    ) -> None:
        self._name = name
        self._record_class = record_class
        self._max_batch_size = max_batch_size
        self._records: dict[int, Record] = {}
        self._lock = asyncio.Lock()
        self._write_failure: _FailurePlan | None = None
        self._read_failure: _FailurePlan | None = None
        self._rejected_ids: set[int] = set()
        self._malformed: list[tuple[datetime, RecordConversionError]] = []
        self.write_calls = 0
        self.read_calls = 0

    @property
    def name(self) -> str:
        return self._name

    @property
    def record_class(self) -> RecordClass:
        return self._record_class

    @property
    def max_batch_size(self) -> int:
        return self._max_batch_size

    # =========================================================================
    # Failure injection
    # =========================================================================

    def fail_writes(self, error: Exception | None = None, times: int | None = None) -> None:
        """Make the next ``times`` writes raise ``error`` (all writes when None)."""
        self._write_failure = _FailurePlan(
            error or StoreError(self._name, "insert", "injected failure"), times
        )

    def fail_reads(self, error: Exception | None = None, times: int | None = None) -> None:
        self._read_failure = _FailurePlan(
            error or StoreError(self._name, "query", "injected failure"), times
        )

    def reject_ids(self, *ids: int) -> None:
        """Report these natural ids as unprocessed in batch writes."""
        self._rejected_ids.update(ids)

    def add_malformed_row(self, at: datetime, key_fields: dict[str, Any], reason: str) -> None:
        """Add a source row that fails conversion when streamed by iter_window."""
        self._malformed.append((ensure_utc(at), RecordConversionError(key_fields, reason)))

    def clear_malformed_rows(self) -> None:
        self._malformed.clear()

    def reset_failures(self) -> None:
        self._write_failure = None
        self._read_failure = None
        self._rejected_ids.clear()

    def _maybe_fail_write(self) -> None:
        self.write_calls += 1
        if self._write_failure is not None:
            error = self._write_failure.take()
            if error is not None:
                raise error

    def _maybe_fail_read(self) -> None:
        self.read_calls += 1
        if self._read_failure is not None:
            error = self._read_failure.take()
            if error is not None:
                raise error

    # =========================================================================
    # Writes
    # =========================================================================

    async def insert(self, record: Record) -> None:
        check_record(self._name, self._record_class, record, "insert")
        self._maybe_fail_write()
        async with self._lock:
            self._records[record_id(record)] = record

    async def insert_batch(self, records: Sequence[Record]) -> BatchWriteResult:
        self._maybe_fail_write()
        acc = BatchAccumulator()
        async with self._lock:
            for start in range(0, len(records), self._max_batch_size):
                chunk = records[start : start + self._max_batch_size]
                rejected = []
                for record in chunk:
                    check_record(self._name, self._record_class, record, "insert_batch")
                    if record_id(record) in self._rejected_ids:
                        rejected.append(record)
                        continue
                    self._records[record_id(record)] = record
                    acc.written += 1
                if rejected:
                    acc.add_failures(
                        rejected, f"{len(rejected)} items unprocessed", retryable=False
                    )
        return acc.result()

    # =========================================================================
    # Reads
    # =========================================================================

    def all_records(self) -> list[Record]:
        """Every stored record ordered by natural key."""
        return sorted(self._records.values(), key=lambda r: r.natural_key)

    def clear(self) -> None:
        self._records.clear()

    async def get(self, record: Record) -> Record | None:
        self._maybe_fail_read()
        return self._records.get(record_id(record))

    async def count_by_time_range(
        self,
        start: datetime,
        end: datetime,
        service: str | None = None,
    ) -> int:
        self._maybe_fail_read()
        return sum(1 for r in self._in_window(start, end) if _matches_service(r, service))

    async def iter_window(
        self,
        start: datetime,
        end: datetime,
        page_size: int = 500,
    ) -> AsyncIterator[Record | RecordConversionError]:
        self._maybe_fail_read()
        start, end = ensure_utc(start), ensure_utc(end)
        rows: list[tuple[tuple[datetime, int], Record | RecordConversionError]] = [
            (r.natural_key, r) for r in self._in_window(start, end)
        ]
        rows.extend(((at, -1), error) for at, error in self._malformed if start <= at < end)
        for _, row in sorted(rows, key=lambda pair: pair[0]):
            yield row

    async def ping(self) -> None:
        self._maybe_fail_read()

    async def quality_counts(self, now: datetime) -> dict[str, int]:
        """Future-dated records; the model itself rejects null key fields."""
        now = ensure_utc(now)
        future = sum(1 for r in self._records.values() if record_time(r) > now)
        return {"future_dated": future, "malformed_rows": len(self._malformed)}

    async def query_by_application(self, application_id: int) -> list[LogRecord]:
        self._logs_only("query_by_application")
        self._maybe_fail_read()
        logs = [r for r in self._logs() if r.application_id == application_id]
        return sorted(logs, key=lambda r: r.natural_key, reverse=True)

    async def query_by_time_range(
        self,
        service: str,
        start: datetime,
        end: datetime,
    ) -> list[LogRecord]:
        self._logs_only("query_by_time_range")
        self._maybe_fail_read()
        logs = [
            r
            for r in self._in_window(start, end)
            if isinstance(r, LogRecord) and r.service_name == service
        ]
        return sorted(logs, key=lambda r: r.natural_key)

    async def query_error_logs_by_date(self, day: date) -> list[LogRecord]:
        self._logs_only("query_error_logs_by_date")
        self._maybe_fail_read()
        logs = [r for r in self._logs() if not r.is_success and r.timestamp.date() == day]
        return sorted(logs, key=lambda r: r.natural_key, reverse=True)

    async def distinct_service_names(self) -> list[str]:
        self._logs_only("distinct_service_names")
        self._maybe_fail_read()
        return sorted({r.service_name for r in self._logs()})

    async def get_payment(self, payment_id: int) -> PaymentRecord | None:
        self._payments_only("get_payment")
        self._maybe_fail_read()
        record = self._records.get(payment_id)
        return record if isinstance(record, PaymentRecord) else None

    async def query_payments_by_customer(
        self,
        customer_id: int,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int = 50,
    ) -> list[PaymentRecord]:
        self._payments_only("query_payments_by_customer")
        self._maybe_fail_read()
        payments = [
            p
            for p in self._payments()
            if p.customer_id == customer_id
            and (start is None or p.payment_date >= ensure_utc(start))
            and (end is None or p.payment_date < ensure_utc(end))
        ]
        payments.sort(key=lambda p: p.natural_key, reverse=True)
        return payments[:limit]

    async def query_payments_by_status(self, status: PaymentStatus) -> list[PaymentRecord]:
        self._payments_only("query_payments_by_status")
        self._maybe_fail_read()
        payments = [p for p in self._payments() if p.status == status]
        return sorted(payments, key=lambda p: p.natural_key, reverse=True)

    async def query_payments_by_loan(self, loan_id: int) -> list[PaymentRecord]:
        self._payments_only("query_payments_by_loan")
        self._maybe_fail_read()
        payments = [p for p in self._payments() if p.loan_id == loan_id]
        return sorted(payments, key=lambda p: p.natural_key, reverse=True)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _in_window(self, start: datetime, end: datetime) -> list[Record]:
        start, end = ensure_utc(start), ensure_utc(end)
        return [r for r in self._records.values() if start <= record_time(r) < end]

    def _logs(self) -> list[LogRecord]:
        return [r for r in self._records.values() if isinstance(r, LogRecord)]

    def _payments(self) -> list[PaymentRecord]:
        return [r for r in self._records.values() if isinstance(r, PaymentRecord)]

    def _logs_only(self, operation: str) -> None:
        require_record_class(
            self._name, self._record_class, RecordClass.INTEGRATION_LOGS, operation
        )

    def _payments_only(self, operation: str) -> None:
        require_record_class(self._name, self._record_class, RecordClass.PAYMENTS, operation)

    @property
    def size(self) -> int:
        return len(self._records)


def _matches_service(record: Record, service: str | None) -> bool:
    if service is None:
        return True
    return isinstance(record, LogRecord) and record.service_name == service


__all__ = ["InMemoryRecordStore"]
