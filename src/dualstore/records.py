"""
Canonical record types moved between the two stores.

Records are immutable pydantic models. A log record is append-only; a
payment record changes only through ``with_status``, which enforces the
forward-only status machine.

Example:
    >>> record = LogRecord(
    ...     log_id=42,
    ...     timestamp=datetime(2024, 1, 31, 14, 30, tzinfo=UTC),
    ...     service_name="CreditBureau",
    ...     log_type="Request",
    ...     application_id=7,
    ... )
    >>> record.natural_key
    (datetime.datetime(2024, 1, 31, 14, 30, tzinfo=datetime.timezone.utc), 42)
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from dualstore.exceptions import InvalidPaymentStatusTransition


def ensure_utc(value: datetime) -> datetime:
    """Interpret naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def truncate_to_millis(value: datetime) -> datetime:
    """UTC with sub-millisecond digits dropped, the precision of log items."""
    value = ensure_utc(value)
    return value.replace(microsecond=value.microsecond // 1000 * 1000)


def truncate_to_seconds(value: datetime) -> datetime:
    """UTC with sub-second digits dropped, the precision of payment items."""
    return ensure_utc(value).replace(microsecond=0)


class RecordClass(Enum):
    """
    Kinds of records the engine migrates.

    Each record class has its own phase, backfill marker and codec.
    """

    INTEGRATION_LOGS = "integration_logs"
    PAYMENTS = "payments"


class PaymentStatus(Enum):
    """
    Payment lifecycle.

    Valid transitions:
        - PENDING -> COMPLETED | FAILED
        - COMPLETED -> REVERSED
        - FAILED and REVERSED are terminal
    """

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REVERSED = "reversed"

    @property
    def is_terminal(self) -> bool:
        return self in (PaymentStatus.FAILED, PaymentStatus.REVERSED)

    def can_transition_to(self, target: PaymentStatus) -> bool:
        """
        Check whether moving to ``target`` keeps the status monotonic.

        Same-state "transitions" are allowed and are no-ops.
        """
        if target == self:
            return True
        return target in _PAYMENT_TRANSITIONS[self]


_PAYMENT_TRANSITIONS: dict[PaymentStatus, set[PaymentStatus]] = {
    PaymentStatus.PENDING: {PaymentStatus.COMPLETED, PaymentStatus.FAILED},
    PaymentStatus.COMPLETED: {PaymentStatus.REVERSED},
    PaymentStatus.FAILED: set(),
    PaymentStatus.REVERSED: set(),
}


class LogRecord(BaseModel):
    """
    An event emitted by an integration point.

    ``log_id`` is monotonic per service; ``(timestamp, log_id)`` is unique
    within a service and is the record's natural key.

    Attributes:
        log_id: Numeric id assigned by the source store.
        timestamp: When the event happened (UTC, millisecond precision).
        service_name: Originating integration, e.g. "CreditBureau".
        log_type: Category such as "Request", "Response" or "Error".
        application_id: Optional loan application reference.
        request_data: Raw request payload.
        response_data: Raw response payload.
        is_success: Whether the integration call succeeded.
        status_code: Protocol status code, if any.
        error_message: Error text for failed calls.
        processing_time_ms: Call duration in milliseconds.
        correlation_id: Id tying related calls together.
        user_id: Acting user.
    """

    model_config = ConfigDict(frozen=True)

    log_id: int = Field(..., ge=0)
    timestamp: datetime
    service_name: str = Field(..., min_length=1)
    log_type: str = Field(..., min_length=1)
    application_id: int | None = None
    request_data: str | None = None
    response_data: str | None = None
    is_success: bool = True
    status_code: str | None = None
    error_message: str | None = None
    processing_time_ms: int | None = None
    correlation_id: str | None = None
    user_id: str | None = None

    @field_validator("timestamp")
    @classmethod
    def _timestamp_utc(cls, value: datetime) -> datetime:
        return truncate_to_millis(value)

    @property
    def natural_key(self) -> tuple[datetime, int]:
        return (self.timestamp, self.log_id)

    @property
    def record_class(self) -> RecordClass:
        return RecordClass.INTEGRATION_LOGS

    @property
    def key_fields(self) -> dict[str, Any]:
        """Identifying fields used in error messages and audit entries."""
        return {
            "log_id": self.log_id,
            "service_name": self.service_name,
            "timestamp": self.timestamp.isoformat(),
        }


class PaymentRecord(BaseModel):
    """
    A financial event against a loan.

    ``payment_id`` is globally unique. ``status`` is the only field that
    changes after creation and it only moves forward.
    ``payment_date`` is kept to whole seconds.
    """

    model_config = ConfigDict(frozen=True)

    payment_id: int = Field(..., ge=0)
    loan_id: int = Field(..., ge=0)
    customer_id: int = Field(..., ge=0)
    amount: Decimal
    payment_date: datetime
    payment_method: str = Field(..., min_length=1)
    status: PaymentStatus = PaymentStatus.PENDING
    transaction_reference: str | None = None
    created_at: datetime
    updated_at: datetime

    @field_validator("payment_date")
    @classmethod
    def _payment_date_utc(cls, value: datetime) -> datetime:
        return truncate_to_seconds(value)

    @field_validator("created_at", "updated_at")
    @classmethod
    def _timestamps_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @property
    def natural_key(self) -> tuple[datetime, int]:
        return (self.payment_date, self.payment_id)

    @property
    def record_class(self) -> RecordClass:
        return RecordClass.PAYMENTS

    @property
    def key_fields(self) -> dict[str, Any]:
        return {
            "payment_id": self.payment_id,
            "customer_id": self.customer_id,
            "payment_date": self.payment_date.isoformat(),
        }

    def with_status(self, new_status: PaymentStatus, at: datetime | None = None) -> PaymentRecord:
        """
        Return a copy with the new status.

        Args:
            new_status: Status to move to.
            at: Update time (defaults to now).

        Returns:
            The updated record, or ``self`` when the status is unchanged.

        Raises:
            InvalidPaymentStatusTransition: If the move would regress.
        """
        if new_status == self.status:
            return self
        if not self.status.can_transition_to(new_status):
            raise InvalidPaymentStatusTransition(self.payment_id, self.status, new_status)
        return self.model_copy(
            update={"status": new_status, "updated_at": ensure_utc(at or datetime.now(UTC))}
        )


Record = LogRecord | PaymentRecord


def record_id(record: Record) -> int:
    """Natural id of a record: log id or payment id."""
    if isinstance(record, LogRecord):
        return record.log_id
    return record.payment_id


def record_time(record: Record) -> datetime:
    """Timestamp that places a record in time windows."""
    if isinstance(record, LogRecord):
        return record.timestamp
    return record.payment_date


__all__ = [
    "RecordClass",
    "PaymentStatus",
    "LogRecord",
    "PaymentRecord",
    "Record",
    "ensure_utc",
    "truncate_to_millis",
    "truncate_to_seconds",
    "record_id",
    "record_time",
]
