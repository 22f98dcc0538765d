"""
HybridRouter - phase-aware routing of record writes and reads.

The router holds one source store and one target store for a record class
and asks the PhaseController for the current RoutingPolicy on every call.

Write semantics:
    - Each store the policy writes to is written concurrently; the legs are
      joined before the call returns.
    - Transient store errors are retried per RetryConfig; anything else
      fails the leg at once.
    - The result is a WriteOutcome naming every store's result. One failed
      leg with another succeeding is DEGRADED, unless the policy requires
      both writes, in which case it is FAILED.
    - A FAILED outcome raises DualWriteFailureError only when the policy
      does not continue on write failure.
    - Every failed leg is logged and kept in a bounded failure history so
      it can be replayed.

Read semantics:
    Exactly one store answers each read: the target when the policy reads
    from the target, the source otherwise. Results are never merged.

Usage:
    >>> router = HybridRouter(controller, source=relational, target=dynamodb)
    >>> outcome = await router.write_record(log_record)
    >>> if outcome.status is WriteStatus.DEGRADED:
    ...     print(outcome.failed_stores)
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta
from enum import Enum
from typing import Any

from dualstore.exceptions import (
    DualWriteFailureError,
    ErrorHandler,
    RecordNotFoundError,
    RetryConfig,
    TransientStoreError,
)
from dualstore.observability import (
    ATTR_RECORD_CLASS,
    ATTR_RECORD_COUNT,
    ATTR_RECORD_ID,
    ATTR_STORE_NAME,
    ATTR_STORE_ROLE,
    ATTR_WRITE_STATUS,
    Tracer,
    create_tracer,
)
from dualstore.phase import PhaseController, RoutingPolicy
from dualstore.records import (
    LogRecord,
    PaymentRecord,
    PaymentStatus,
    Record,
    RecordClass,
    record_id,
)
from dualstore.stores.interface import SOURCE_ROLE, TARGET_ROLE, BatchWriteResult, RecordStore

logger = logging.getLogger(__name__)


class WriteStatus(Enum):
    """Overall result of a routed write."""

    SUCCESS = "success"
    DEGRADED = "degraded"
    FAILED = "failed"


@dataclass(frozen=True)
class StoreWriteResult:
    """
    Result of one store's leg of a routed write.

    Attributes:
        store: Store name.
        role: ``source`` or ``target``.
        attempted: False when the policy does not write to this store.
        succeeded: True when every record of the leg was persisted.
        attempts: Number of attempts made (retries included).
        written: Records persisted by this leg.
        error: Last error message, if the leg failed.
        retryable: Whether the failure looked transient.
        failed_keys: Identifying fields of records that were not persisted.
    """

    store: str
    role: str
    attempted: bool
    succeeded: bool
    attempts: int = 0
    written: int = 0
    error: str | None = None
    retryable: bool = False
    failed_keys: tuple[dict[str, Any], ...] = ()

    @classmethod
    def skipped(cls, store: RecordStore, role: str) -> StoreWriteResult:
        return cls(store=store.name, role=role, attempted=False, succeeded=False)

    @property
    def failed(self) -> bool:
        return self.attempted and not self.succeeded

    def to_dict(self) -> dict[str, Any]:
        return {
            "store": self.store,
            "role": self.role,
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "attempts": self.attempts,
            "written": self.written,
            "error": self.error,
            "retryable": self.retryable,
            "failed_keys": list(self.failed_keys),
        }


@dataclass(frozen=True)
class WriteOutcome:
    """
    Joined result of a routed write.

    Attributes:
        status: SUCCESS, DEGRADED or FAILED.
        results: One StoreWriteResult per store (attempted or not).
        policy: Routing policy the write was made under.
        record_count: Number of records in the write.
    """

    status: WriteStatus
    results: tuple[StoreWriteResult, ...]
    policy: RoutingPolicy
    record_count: int = 1

    @property
    def succeeded(self) -> bool:
        """True for SUCCESS and DEGRADED outcomes."""
        return self.status is not WriteStatus.FAILED

    @property
    def failed_stores(self) -> list[str]:
        return [r.store for r in self.results if r.failed]

    @property
    def retryable(self) -> bool:
        return any(r.retryable for r in self.results if r.failed)

    def result_for(self, role: str) -> StoreWriteResult:
        for result in self.results:
            if result.role == role:
                return result
        raise KeyError(role)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "succeeded": self.succeeded,
            "record_count": self.record_count,
            "failed_stores": self.failed_stores,
            "results": [r.to_dict() for r in self.results],
            "policy": self.policy.to_dict(),
        }


def resolve_status(results: Sequence[StoreWriteResult], policy: RoutingPolicy) -> WriteStatus:
    """
    Decide the overall status from the legs that were attempted.

    All attempted legs succeeded: SUCCESS. None did: FAILED. Otherwise
    DEGRADED, or FAILED when the policy requires both writes.
    """
    attempted = [r for r in results if r.attempted]
    succeeded = [r for r in attempted if r.succeeded]
    if attempted and len(succeeded) == len(attempted):
        return WriteStatus.SUCCESS
    if not succeeded or policy.require_both_writes:
        return WriteStatus.FAILED
    return WriteStatus.DEGRADED


@dataclass
class FailedWrite:
    """
    A store leg that failed after retries.

    Attributes:
        timestamp: When the failure was recorded.
        store: Store that failed.
        role: ``source`` or ``target``.
        record_class: Record class of the write.
        record_keys: Identifying fields of the records not persisted.
        error_message: Last error seen.
        retryable: Whether replaying is likely to succeed.
    """

    timestamp: datetime
    store: str
    role: str
    record_class: RecordClass
    record_keys: list[dict[str, Any]]
    error_message: str
    retryable: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "store": self.store,
            "role": self.role,
            "record_class": self.record_class.value,
            "record_keys": self.record_keys,
            "error_message": self.error_message,
            "retryable": self.retryable,
        }


@dataclass
class FailureStats:
    """
    Aggregate metrics over the failure history.

    Attributes:
        total_failures: Failed legs recorded.
        total_records_failed: Records across all failed legs.
        failures_by_store: Failed legs per store name.
        first_failure_at: Timestamp of the oldest retained failure.
        last_failure_at: Timestamp of the most recent failure.
    """

    total_failures: int = 0
    total_records_failed: int = 0
    failures_by_store: dict[str, int] = field(default_factory=dict)
    first_failure_at: datetime | None = None
    last_failure_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "total_failures": self.total_failures,
            "total_records_failed": self.total_records_failed,
            "failures_by_store": dict(self.failures_by_store),
            "first_failure_at": (
                self.first_failure_at.isoformat() if self.first_failure_at else None
            ),
            "last_failure_at": (self.last_failure_at.isoformat() if self.last_failure_at else None),
        }


async def insert_with_retry(
    store: RecordStore,
    role: str,
    record: Record,
    handler: ErrorHandler,
) -> StoreWriteResult:
    """Write one record to one store, retrying transient errors."""
    attempts = 0

    async def attempt() -> None:
        nonlocal attempts
        attempts += 1
        await store.insert(record)

    try:
        await handler.execute_with_retry(attempt, f"{store.name}.insert")
    except Exception as e:
        return StoreWriteResult(
            store=store.name,
            role=role,
            attempted=True,
            succeeded=False,
            attempts=attempts,
            error=str(e),
            retryable=isinstance(e, TransientStoreError),
            failed_keys=(record.key_fields,),
        )
    return StoreWriteResult(
        store=store.name, role=role, attempted=True, succeeded=True, attempts=attempts, written=1
    )


async def insert_batch_with_retry(
    store: RecordStore,
    role: str,
    records: Sequence[Record],
    handler: ErrorHandler,
) -> StoreWriteResult:
    """
    Write a batch to one store, re-sending only the records that failed.

    Failures the store reports as retryable (throttled or unprocessed
    items) are retried per the handler's RetryConfig; other failures end
    the leg with the failed records' keys.
    """
    attempts = 0
    written = 0
    pending: list[Record] = list(records)
    last: BatchWriteResult | None = None

    async def attempt() -> None:
        nonlocal attempts, written, pending, last
        attempts += 1
        last = await store.insert_batch(pending)
        written += last.written
        if last.failed_records:
            pending = list(last.failed_records)
            if last.retryable:
                raise TransientStoreError(
                    store.name,
                    "insert_batch",
                    f"{len(pending)} records not written: {'; '.join(last.errors)}",
                )
        else:
            pending = []

    error: str | None = None
    retryable = False
    try:
        await handler.execute_with_retry(attempt, f"{store.name}.insert_batch")
    except Exception as e:
        error = str(e)
        retryable = isinstance(e, TransientStoreError)

    if not pending:
        return StoreWriteResult(
            store=store.name,
            role=role,
            attempted=True,
            succeeded=True,
            attempts=attempts,
            written=written,
        )
    if error is None and last is not None:
        error = "; ".join(last.errors) or "records not written"
    return StoreWriteResult(
        store=store.name,
        role=role,
        attempted=True,
        succeeded=False,
        attempts=attempts,
        written=written,
        error=error,
        retryable=retryable,
        failed_keys=tuple(r.key_fields for r in pending),
    )


class HybridRouter:
    """
    Routes writes and reads of one record class between two stores.

    Example:
        >>> router = HybridRouter(
        ...     controller,
        ...     source=SQLAlchemyRecordStore(engine, RecordClass.INTEGRATION_LOGS),
        ...     target=DynamoDBRecordStore(client, "LoanApp-IntegrationLogs-dev", codec),
        ...     retry_config=RetryConfig(max_attempts=3, base_delay_ms=200),
        ... )
        >>> outcome = await router.write_batch(records)
        >>> stats = router.get_failure_stats()
    """

    def __init__(
        self,
        controller: PhaseController,
        source: RecordStore,
        target: RecordStore,
        *,
        retry_config: RetryConfig | None = None,
        error_handler: ErrorHandler | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
        max_failure_history: int = 1000,
    ) -> None:
        """
        Initialize the router.

        Args:
            controller: Phase controller of the record class.
            source: Relational source store.
            target: Distributed target store.
            retry_config: Retry policy for transient store errors.
            error_handler: Handler to use instead of one built from retry_config.
            tracer: Optional custom Tracer instance.
            enable_tracing: Whether to enable OpenTelemetry tracing.
            max_failure_history: Maximum failed legs kept (oldest dropped first).

        Raises:
            ValueError: If the stores and controller hold different record classes.
        """
        for store in (source, target):
            if store.record_class is not controller.record_class:
                raise ValueError(
                    f"Store {store.name} holds {store.record_class.value}, "
                    f"controller owns {controller.record_class.value}"
                )

        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._controller = controller
        self._source = source
        self._target = target
        self._handler = error_handler or ErrorHandler(retry_config)
        self._max_failure_history = max_failure_history
        self._failed_writes: list[FailedWrite] = []

    # =========================================================================
    # Public Properties
    # =========================================================================

    @property
    def record_class(self) -> RecordClass:
        return self._controller.record_class

    @property
    def source_store(self) -> RecordStore:
        return self._source

    @property
    def target_store(self) -> RecordStore:
        return self._target

    @property
    def controller(self) -> PhaseController:
        return self._controller

    def read_store(self, policy: RoutingPolicy | None = None) -> RecordStore:
        """The single store that answers reads under the policy."""
        policy = policy or self._controller.get_routing_policy()
        return self._target if policy.reads_from_target else self._source

    # =========================================================================
    # Writes
    # =========================================================================

    async def write_record(self, record: Record) -> WriteOutcome:
        """
        Write one record to the stores the current policy names.

        Args:
            record: Record of this router's record class.

        Returns:
            WriteOutcome with one result per store.

        Raises:
            ValueError: If the record belongs to another record class.
            DualWriteFailureError: If the outcome is FAILED and the policy
                does not continue on write failure.
        """
        self._check_record(record)
        policy = self._controller.get_routing_policy()

        with self._tracer.span(
            "dualstore.router.write_record",
            {
                ATTR_RECORD_CLASS: self.record_class.value,
                ATTR_RECORD_ID: record_id(record),
            },
        ) as span:
            legs = await asyncio.gather(
                self._write_leg(self._source, SOURCE_ROLE, policy.writes_to_source, record),
                self._write_leg(self._target, TARGET_ROLE, policy.writes_to_target, record),
            )
            outcome = WriteOutcome(
                status=resolve_status(legs, policy),
                results=tuple(legs),
                policy=policy,
            )
            if span is not None:
                span.set_attribute(ATTR_WRITE_STATUS, outcome.status.value)

        return self._finish(outcome)

    async def write_batch(self, records: Sequence[Record]) -> WriteOutcome:
        """
        Write many records with the same semantics as ``write_record``.

        Stores chunk the batch to their own maximum batch size; per-chunk
        failures are aggregated into the store's leg result, and only the
        records that failed are retried.

        Raises:
            ValueError: If the batch is empty or holds another record class.
            DualWriteFailureError: As for ``write_record``.
        """
        if not records:
            raise ValueError("Cannot write an empty batch")
        for record in records:
            self._check_record(record)
        policy = self._controller.get_routing_policy()

        with self._tracer.span(
            "dualstore.router.write_batch",
            {
                ATTR_RECORD_CLASS: self.record_class.value,
                ATTR_RECORD_COUNT: len(records),
            },
        ) as span:
            legs = await asyncio.gather(
                self._write_batch_leg(self._source, SOURCE_ROLE, policy.writes_to_source, records),
                self._write_batch_leg(self._target, TARGET_ROLE, policy.writes_to_target, records),
            )
            outcome = WriteOutcome(
                status=resolve_status(legs, policy),
                results=tuple(legs),
                policy=policy,
                record_count=len(records),
            )
            if span is not None:
                span.set_attribute(ATTR_WRITE_STATUS, outcome.status.value)

        return self._finish(outcome)

    async def _write_leg(
        self,
        store: RecordStore,
        role: str,
        enabled: bool,
        record: Record,
    ) -> StoreWriteResult:
        if not enabled:
            return StoreWriteResult.skipped(store, role)
        with self._tracer.span(
            "dualstore.router.write_leg",
            {ATTR_STORE_NAME: store.name, ATTR_STORE_ROLE: role},
        ):
            return await insert_with_retry(store, role, record, self._handler)

    async def _write_batch_leg(
        self,
        store: RecordStore,
        role: str,
        enabled: bool,
        records: Sequence[Record],
    ) -> StoreWriteResult:
        if not enabled:
            return StoreWriteResult.skipped(store, role)
        with self._tracer.span(
            "dualstore.router.write_batch_leg",
            {ATTR_STORE_NAME: store.name, ATTR_STORE_ROLE: role, ATTR_RECORD_COUNT: len(records)},
        ):
            return await insert_batch_with_retry(store, role, records, self._handler)

    def _finish(self, outcome: WriteOutcome) -> WriteOutcome:
        for result in outcome.results:
            if result.failed:
                self._record_failure(result)

        if outcome.status is WriteStatus.FAILED:
            logger.error(
                "Write of %d %s record(s) failed on %s",
                outcome.record_count,
                self.record_class.value,
                ", ".join(outcome.failed_stores),
            )
            if not outcome.policy.continue_on_write_failure:
                raise DualWriteFailureError(outcome)
        return outcome

    def _check_record(self, record: Record) -> None:
        if record.record_class is not self.record_class:
            raise ValueError(
                f"Router handles {self.record_class.value}, got {record.record_class.value}"
            )

    # =========================================================================
    # Failure Tracking
    # =========================================================================

    def get_failed_writes(self) -> list[FailedWrite]:
        """
        Get the failed legs in chronological order.

        Returns:
            List of FailedWrite records.
        """
        return list(self._failed_writes)

    def get_failure_stats(self) -> FailureStats:
        """
        Get aggregate statistics about failed legs.

        Returns:
            FailureStats with summary metrics.
        """
        if not self._failed_writes:
            return FailureStats()

        by_store: dict[str, int] = {}
        for fw in self._failed_writes:
            by_store[fw.store] = by_store.get(fw.store, 0) + 1

        return FailureStats(
            total_failures=len(self._failed_writes),
            total_records_failed=sum(len(fw.record_keys) for fw in self._failed_writes),
            failures_by_store=by_store,
            first_failure_at=self._failed_writes[0].timestamp,
            last_failure_at=self._failed_writes[-1].timestamp,
        )

    def clear_failure_history(self) -> int:
        """
        Clear the failure history.

        Returns:
            Number of failure records cleared.
        """
        count = len(self._failed_writes)
        self._failed_writes.clear()
        return count

    def _record_failure(self, result: StoreWriteResult) -> None:
        logger.warning(
            "%s write to %s (%s) failed after %d attempt(s): %s",
            self.record_class.value,
            result.store,
            result.role,
            result.attempts,
            result.error,
        )
        self._failed_writes.append(
            FailedWrite(
                timestamp=datetime.now(UTC),
                store=result.store,
                role=result.role,
                record_class=self.record_class,
                record_keys=list(result.failed_keys),
                error_message=result.error or "",
                retryable=result.retryable,
            )
        )
        if len(self._failed_writes) > self._max_failure_history:
            removed = len(self._failed_writes) - self._max_failure_history
            self._failed_writes = self._failed_writes[-self._max_failure_history :]
            logger.debug("Trimmed %d old failure records", removed)

    # =========================================================================
    # Reads
    # =========================================================================

    async def _read(
        self,
        operation: str,
        call: Any,
        attributes: dict[str, Any] | None = None,
    ) -> Any:
        store = self.read_store()
        with self._tracer.span(
            f"dualstore.router.{operation}",
            {
                ATTR_RECORD_CLASS: self.record_class.value,
                ATTR_STORE_NAME: store.name,
                **(attributes or {}),
            },
        ):
            return await self._handler.execute_with_retry(
                lambda: call(store), f"{store.name}.{operation}"
            )

    async def read_by_application(self, application_id: int) -> list[LogRecord]:
        """Logs referencing an application, most recent first."""
        result: list[LogRecord] = await self._read(
            "read_by_application",
            lambda s: s.query_by_application(application_id),
        )
        return result

    async def read_by_time_range(
        self,
        service: str,
        start: datetime,
        end: datetime,
    ) -> list[LogRecord]:
        """Logs of one service in ``[start, end)``, oldest first."""
        result: list[LogRecord] = await self._read(
            "read_by_time_range",
            lambda s: s.query_by_time_range(service, start, end),
        )
        return result

    async def read_error_logs_by_date(self, day: date) -> list[LogRecord]:
        result: list[LogRecord] = await self._read(
            "read_error_logs_by_date",
            lambda s: s.query_error_logs_by_date(day),
        )
        return result

    async def count_records(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
        service: str | None = None,
    ) -> int:
        """
        Count records in the read store.

        Defaults to the current UTC day.
        """
        if start is None:
            now = datetime.now(UTC)
            start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        if end is None:
            end = start + timedelta(days=1)
        window_start, window_end = start, end
        result: int = await self._read(
            "count_records",
            lambda s: s.count_by_time_range(window_start, window_end, service),
        )
        return result

    async def distinct_service_names(self) -> list[str]:
        result: list[str] = await self._read(
            "distinct_service_names",
            lambda s: s.distinct_service_names(),
        )
        return result

    async def get_payment(self, payment_id: int) -> PaymentRecord | None:
        result: PaymentRecord | None = await self._read(
            "get_payment",
            lambda s: s.get_payment(payment_id),
            {ATTR_RECORD_ID: payment_id},
        )
        return result

    async def read_payments_by_customer(
        self,
        customer_id: int,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int = 50,
    ) -> list[PaymentRecord]:
        """A customer's payments, most recent first."""
        result: list[PaymentRecord] = await self._read(
            "read_payments_by_customer",
            lambda s: s.query_payments_by_customer(customer_id, start, end, limit),
        )
        return result

    async def read_payments_by_loan(self, loan_id: int) -> list[PaymentRecord]:
        result: list[PaymentRecord] = await self._read(
            "read_payments_by_loan",
            lambda s: s.query_payments_by_loan(loan_id),
        )
        return result

    async def read_payments_by_status(self, status: PaymentStatus) -> list[PaymentRecord]:
        result: list[PaymentRecord] = await self._read(
            "read_payments_by_status",
            lambda s: s.query_payments_by_status(status),
        )
        return result

    async def read_payment_status(self, payment_id: int) -> PaymentStatus | None:
        """Current status of a payment, or None if the read store lacks it."""
        payment = await self.get_payment(payment_id)
        return payment.status if payment else None

    async def update_payment_status(
        self,
        payment_id: int,
        new_status: PaymentStatus,
        at: datetime | None = None,
    ) -> WriteOutcome:
        """
        Move a payment to a new status and write it through the router.

        Args:
            payment_id: Payment to update.
            new_status: Target status.
            at: Update time (defaults to now).

        Returns:
            WriteOutcome of the write.

        Raises:
            RecordNotFoundError: If the read store has no such payment.
            InvalidPaymentStatusTransition: If the move would regress.
        """
        payment = await self.get_payment(payment_id)
        if payment is None:
            raise RecordNotFoundError(self.read_store().name, {"payment_id": payment_id})
        updated = payment.with_status(new_status, at)
        logger.info(
            "Payment %d status %s -> %s",
            payment_id,
            payment.status.value,
            new_status.value,
        )
        return await self.write_record(updated)


__all__ = [
    "WriteStatus",
    "StoreWriteResult",
    "WriteOutcome",
    "FailedWrite",
    "FailureStats",
    "HybridRouter",
    "resolve_status",
    "insert_with_retry",
    "insert_batch_with_retry",
]
