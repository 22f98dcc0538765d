"""
Record codec: canonical records to and from DynamoDB items.

The codec owns key construction and time-to-live stamping. Items are plain
Python mappings (str, int, bool, Decimal values); the DynamoDB store turns
them into the attribute-value wire format with boto3's TypeSerializer.

Key layout for integration logs:
    PK     = "{service}#{YYYY-MM-DD}"
    SK     = "{timestamp ISO-8601 ms}Z#{log_id:020d}"
    GSI1PK = "APP#{application_id}"   (only when an application is referenced)
    GSI2PK = "DATE#{YYYY-MM-DD}"      (date bucket for window counts)
    GSI3PK = "ERR#{YYYY-MM-DD}"       (only for failed calls)

Key layout for payments:
    PK     = "CUSTOMER#{customer_id}"
    SK     = "{payment_date ISO-8601 s}Z#{payment_id:012d}"
    GSI1PK = "LOAN#{loan_id}"
    GSI2PK = "DATE#{YYYY-MM-DD}"
    GSI3PK = "STATUS#{status}"
    GSI4PK = "PAYMENT#{payment_id}"

Every index sort key equals SK, so each index is ordered by time and "most
recent N" is a reverse query. The ``ttl`` attribute is the record's own
timestamp plus the retention period, so encoding is deterministic and
rewriting an item during backfill is an exact overwrite. Records carry no
more timestamp precision than their items (see ``dualstore.records``), so
decoding an item gives back an equal record.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any

from pydantic import ValidationError

from dualstore.exceptions import RecordConversionError
from dualstore.records import (
    LogRecord,
    PaymentRecord,
    PaymentStatus,
    Record,
    RecordClass,
    ensure_utc,
    record_time,
)

PK = "PK"
SK = "SK"
TTL_ATTRIBUTE = "ttl"

APPLICATION_INDEX = "GSI1"
DATE_INDEX = "GSI2"
ERROR_INDEX = "GSI3"
LOAN_INDEX = "GSI1"
STATUS_INDEX = "GSI3"
PAYMENT_ID_INDEX = "GSI4"

DEFAULT_LOG_RETENTION_DAYS = 90
DEFAULT_PAYMENT_RETENTION_DAYS = 7 * 365

_LOG_ENTITY = "IntegrationLog"
_PAYMENT_ENTITY = "Payment"


@dataclass(frozen=True)
class DistributedItemKey:
    """
    Primary key of an item in the distributed store.

    Attributes:
        partition_key: Value of the PK attribute.
        sort_key: Value of the SK attribute; orders items by time.
    """

    partition_key: str
    sort_key: str

    def to_item(self) -> dict[str, str]:
        return {PK: self.partition_key, SK: self.sort_key}


def format_log_timestamp(value: datetime) -> str:
    """ISO-8601 with millisecond precision and a Z suffix."""
    value = ensure_utc(value)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def format_payment_timestamp(value: datetime) -> str:
    """ISO-8601 with second precision and a Z suffix."""
    return ensure_utc(value).strftime("%Y-%m-%dT%H:%M:%SZ")


def day_bucket(value: datetime | date) -> str:
    if isinstance(value, datetime):
        value = ensure_utc(value).date()
    return value.isoformat()


def log_partition_key(service_name: str, day: datetime | date) -> str:
    return f"{service_name}#{day_bucket(day)}"


def application_key(application_id: int) -> str:
    return f"APP#{application_id}"


def date_key(day: datetime | date) -> str:
    return f"DATE#{day_bucket(day)}"


def error_key(day: datetime | date) -> str:
    return f"ERR#{day_bucket(day)}"


def customer_key(customer_id: int) -> str:
    return f"CUSTOMER#{customer_id}"


def loan_key(loan_id: int) -> str:
    return f"LOAN#{loan_id}"


def status_key(status: PaymentStatus) -> str:
    return f"STATUS#{status.value}"


def payment_id_key(payment_id: int) -> str:
    return f"PAYMENT#{payment_id}"


def log_sort_key(timestamp: datetime, log_id: int) -> str:
    return f"{format_log_timestamp(timestamp)}#{log_id:020d}"


def payment_sort_key(payment_date: datetime, payment_id: int) -> str:
    return f"{format_payment_timestamp(payment_date)}#{payment_id:012d}"


def _round_up(value: datetime, unit_us: int) -> datetime:
    value = ensure_utc(value)
    remainder = value.microsecond % unit_us
    return value + timedelta(microseconds=unit_us - remainder) if remainder else value


def log_sort_bound(value: datetime) -> str:
    """
    Sort-key prefix usable as a BETWEEN bound for log items.

    Rounded up to the next millisecond, so comparing millisecond item
    timestamps with it agrees with comparing them with ``value``.
    """
    return format_log_timestamp(_round_up(value, 1000))


def payment_sort_bound(value: datetime) -> str:
    """Like ``log_sort_bound``, rounded up to the next second."""
    return format_payment_timestamp(_round_up(value, 1_000_000))


class RecordCodec:
    """
    Converts canonical records to DynamoDB items and back.

    One codec instance serves one record class. Retention periods are
    configurable per class.

    Example:
        >>> codec = RecordCodec(RecordClass.INTEGRATION_LOGS)
        >>> item = codec.encode(record)
        >>> codec.decode(item) == record
        True
    """

    def __init__(
        self,
        record_class: RecordClass,
        *,
        retention_days: int | None = None,
    ) -> None:
        self._record_class = record_class
        if retention_days is None:
            retention_days = (
                DEFAULT_PAYMENT_RETENTION_DAYS
                if record_class is RecordClass.PAYMENTS
                else DEFAULT_LOG_RETENTION_DAYS
            )
        if retention_days < 1:
            raise ValueError(f"retention_days must be >= 1, got {retention_days}")
        self._retention = timedelta(days=retention_days)

    @property
    def record_class(self) -> RecordClass:
        return self._record_class

    @property
    def retention(self) -> timedelta:
        return self._retention

    # =========================================================================
    # Keys and TTL
    # =========================================================================

    def key_for(self, record: Record) -> DistributedItemKey:
        """Derive the primary key of a record's item."""
        self._check_class(record)
        if isinstance(record, LogRecord):
            return DistributedItemKey(
                partition_key=log_partition_key(record.service_name, record.timestamp),
                sort_key=log_sort_key(record.timestamp, record.log_id),
            )
        return DistributedItemKey(
            partition_key=customer_key(record.customer_id),
            sort_key=payment_sort_key(record.payment_date, record.payment_id),
        )

    def expires_at(self, record: Record) -> datetime:
        return record_time(record) + self._retention

    def ttl_for(self, record: Record) -> int:
        """Epoch seconds at which the store may expire the item."""
        return int(self.expires_at(record).timestamp())

    def is_expired(self, record: Record, now: datetime | None = None) -> bool:
        """True when the item's TTL is already in the past."""
        now = ensure_utc(now) if now else datetime.now(UTC)
        return self.expires_at(record) <= now

    # =========================================================================
    # Encoding
    # =========================================================================

    def encode(self, record: Record) -> dict[str, Any]:
        """
        Build the item for a record.

        Args:
            record: A LogRecord or PaymentRecord of this codec's class.

        Returns:
            Item mapping with keys, index attributes, payload and ``ttl``.

        Raises:
            RecordConversionError: If the record is of the wrong class or
                carries values the store cannot hold.
        """
        self._check_class(record)
        if isinstance(record, LogRecord):
            item = self._encode_log(record)
        else:
            item = self._encode_payment(record)
        return {name: value for name, value in item.items() if value is not None}

    def _encode_log(self, record: LogRecord) -> dict[str, Any]:
        key = self.key_for(record)
        item: dict[str, Any] = {
            **key.to_item(),
            "EntityType": _LOG_ENTITY,
            "LogId": record.log_id,
            "LogTimestamp": format_log_timestamp(record.timestamp),
            "ServiceName": record.service_name,
            "LogType": record.log_type,
            "ApplicationId": record.application_id,
            "RequestData": record.request_data,
            "ResponseData": record.response_data,
            "IsSuccess": record.is_success,
            "StatusCode": record.status_code,
            "ErrorMessage": record.error_message,
            "ProcessingTimeMs": record.processing_time_ms,
            "CorrelationId": record.correlation_id,
            "UserId": record.user_id,
            "GSI2PK": date_key(record.timestamp),
            "GSI2SK": key.sort_key,
            TTL_ATTRIBUTE: self.ttl_for(record),
        }
        if record.application_id is not None:
            item["GSI1PK"] = application_key(record.application_id)
            item["GSI1SK"] = key.sort_key
        if not record.is_success:
            item["GSI3PK"] = error_key(record.timestamp)
            item["GSI3SK"] = key.sort_key
        return item

    def _encode_payment(self, record: PaymentRecord) -> dict[str, Any]:
        key = self.key_for(record)
        try:
            amount = Decimal(record.amount)
        except (InvalidOperation, TypeError) as e:
            raise RecordConversionError(record.key_fields, f"invalid amount: {e}") from e
        if not amount.is_finite():
            raise RecordConversionError(record.key_fields, "amount must be finite")
        return {
            **key.to_item(),
            "EntityType": _PAYMENT_ENTITY,
            "PaymentId": record.payment_id,
            "LoanId": record.loan_id,
            "CustomerId": record.customer_id,
            "Amount": amount,
            "PaymentDate": format_payment_timestamp(record.payment_date),
            "PaymentMethod": record.payment_method,
            "Status": record.status.value,
            "TransactionReference": record.transaction_reference,
            "CreatedAt": ensure_utc(record.created_at).isoformat(),
            "UpdatedAt": ensure_utc(record.updated_at).isoformat(),
            "GSI1PK": loan_key(record.loan_id),
            "GSI1SK": key.sort_key,
            "GSI2PK": date_key(record.payment_date),
            "GSI2SK": key.sort_key,
            "GSI3PK": status_key(record.status),
            "GSI3SK": key.sort_key,
            "GSI4PK": payment_id_key(record.payment_id),
            "GSI4SK": key.sort_key,
            TTL_ATTRIBUTE: self.ttl_for(record),
        }

    # =========================================================================
    # Decoding
    # =========================================================================

    def decode(self, item: dict[str, Any]) -> Record:
        """
        Rebuild a record from an item.

        Raises:
            RecordConversionError: If required attributes are missing or invalid.
        """
        key_fields = {name: item.get(name) for name in (PK, SK)}
        try:
            if self._record_class is RecordClass.INTEGRATION_LOGS:
                return self._decode_log(item)
            return self._decode_payment(item)
        except KeyError as e:
            raise RecordConversionError(key_fields, f"missing attribute {e.args[0]}") from e
        except (ValidationError, ValueError, TypeError, InvalidOperation) as e:
            raise RecordConversionError(key_fields, str(e)) from e

    def _decode_log(self, item: dict[str, Any]) -> LogRecord:
        return LogRecord(
            log_id=int(item["LogId"]),
            timestamp=_parse_timestamp(item["LogTimestamp"]),
            service_name=item["ServiceName"],
            log_type=item["LogType"],
            application_id=_optional_int(item.get("ApplicationId")),
            request_data=item.get("RequestData"),
            response_data=item.get("ResponseData"),
            is_success=bool(item.get("IsSuccess", True)),
            status_code=item.get("StatusCode"),
            error_message=item.get("ErrorMessage"),
            processing_time_ms=_optional_int(item.get("ProcessingTimeMs")),
            correlation_id=item.get("CorrelationId"),
            user_id=item.get("UserId"),
        )

    def _decode_payment(self, item: dict[str, Any]) -> PaymentRecord:
        return PaymentRecord(
            payment_id=int(item["PaymentId"]),
            loan_id=int(item["LoanId"]),
            customer_id=int(item["CustomerId"]),
            amount=Decimal(str(item["Amount"])),
            payment_date=_parse_timestamp(item["PaymentDate"]),
            payment_method=item["PaymentMethod"],
            status=PaymentStatus(item["Status"]),
            transaction_reference=item.get("TransactionReference"),
            created_at=_parse_timestamp(item["CreatedAt"]),
            updated_at=_parse_timestamp(item["UpdatedAt"]),
        )

    # =========================================================================
    # Digests
    # =========================================================================

    def digest(self, record: Record) -> str:
        """
        SHA-256 of the record's canonical encoding.

        Two records digest equal exactly when they would produce the same item.
        """
        item = self.encode(record)
        canonical = json.dumps(item, sort_keys=True, separators=(",", ":"), default=str)
        return hashlib.sha256(canonical.encode()).hexdigest()

    def _check_class(self, record: Record) -> None:
        if record.record_class is not self._record_class:
            raise RecordConversionError(
                record.key_fields,
                f"codec for {self._record_class.value} cannot handle "
                f"{record.record_class.value} records",
            )


def _parse_timestamp(value: str) -> datetime:
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return ensure_utc(datetime.fromisoformat(value))


def _optional_int(value: Any) -> int | None:
    return None if value is None else int(value)


__all__ = [
    "DistributedItemKey",
    "RecordCodec",
    "PK",
    "SK",
    "TTL_ATTRIBUTE",
    "APPLICATION_INDEX",
    "DATE_INDEX",
    "ERROR_INDEX",
    "LOAN_INDEX",
    "STATUS_INDEX",
    "PAYMENT_ID_INDEX",
    "DEFAULT_LOG_RETENTION_DAYS",
    "DEFAULT_PAYMENT_RETENTION_DAYS",
    "format_log_timestamp",
    "format_payment_timestamp",
    "day_bucket",
    "log_partition_key",
    "log_sort_key",
    "payment_sort_key",
    "log_sort_bound",
    "payment_sort_bound",
    "application_key",
    "date_key",
    "error_key",
    "customer_key",
    "loan_key",
    "status_key",
    "payment_id_key",
]
