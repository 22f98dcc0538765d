"""
Unit tests for the canonical record types.

Tests cover:
- UTC normalization of timestamps
- Natural keys and identifying fields
- Payment status transitions
"""

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from dualstore.exceptions import InvalidPaymentStatusTransition
from dualstore.records import (
    PaymentStatus,
    RecordClass,
    ensure_utc,
    record_id,
    record_time,
)
from tests.factories import BASE_TIME, make_log, make_payment


class TestEnsureUtc:
    def test_naive_datetime_is_taken_as_utc(self):
        """Naive datetimes are interpreted as UTC, not local time."""
        value = ensure_utc(datetime(2024, 1, 1, 12, 0))
        assert value.utcoffset() == timedelta(0)
        assert value.hour == 12

    def test_aware_datetime_is_converted(self):
        """Offset datetimes are converted to the same instant in UTC."""
        plus_two = timezone(timedelta(hours=2))
        value = ensure_utc(datetime(2024, 1, 1, 12, 0, tzinfo=plus_two))
        assert value.hour == 10


class TestLogRecord:
    def test_timestamp_normalized_to_utc(self):
        """Record timestamps are always stored in UTC."""
        record = make_log(1, timestamp=datetime(2024, 3, 1, 8, 0))
        assert record.timestamp.utcoffset() == timedelta(0)

    def test_timestamp_truncated_to_milliseconds(self):
        record = make_log(1, timestamp=datetime(2024, 3, 1, 8, 0, 0, 123456))
        assert record.timestamp.microsecond == 123000

    def test_natural_key_and_class(self):
        """Logs are keyed by (timestamp, log_id)."""
        record = make_log(3)
        assert record.natural_key == (record.timestamp, 3)
        assert record.record_class is RecordClass.INTEGRATION_LOGS
        assert record_id(record) == 3
        assert record_time(record) == record.timestamp

    def test_key_fields_identify_the_record(self):
        record = make_log(5, service_name="Payroll")
        assert record.key_fields == {
            "log_id": 5,
            "service_name": "Payroll",
            "timestamp": record.timestamp.isoformat(),
        }

    def test_empty_service_name_rejected(self):
        with pytest.raises(ValidationError):
            make_log(1, service_name="")

    def test_negative_id_rejected(self):
        with pytest.raises(ValidationError):
            make_log(-1, timestamp=BASE_TIME)

    def test_records_are_immutable(self):
        record = make_log(1)
        with pytest.raises(ValidationError):
            record.log_type = "Response"


class TestPaymentStatus:
    @pytest.mark.parametrize(
        "current,target,allowed",
        [
            (PaymentStatus.PENDING, PaymentStatus.COMPLETED, True),
            (PaymentStatus.PENDING, PaymentStatus.FAILED, True),
            (PaymentStatus.COMPLETED, PaymentStatus.REVERSED, True),
            (PaymentStatus.COMPLETED, PaymentStatus.PENDING, False),
            (PaymentStatus.FAILED, PaymentStatus.COMPLETED, False),
            (PaymentStatus.REVERSED, PaymentStatus.COMPLETED, False),
            (PaymentStatus.PENDING, PaymentStatus.PENDING, True),
        ],
    )
    def test_transitions(self, current, target, allowed):
        assert current.can_transition_to(target) is allowed

    def test_terminal_statuses(self):
        assert PaymentStatus.FAILED.is_terminal
        assert PaymentStatus.REVERSED.is_terminal
        assert not PaymentStatus.COMPLETED.is_terminal


class TestPaymentRecord:
    def test_with_status_moves_forward(self):
        """with_status returns an updated copy and leaves the original alone."""
        payment = make_payment(1)
        at = BASE_TIME + timedelta(days=1)

        updated = payment.with_status(PaymentStatus.COMPLETED, at)

        assert updated.status is PaymentStatus.COMPLETED
        assert updated.updated_at == at
        assert payment.status is PaymentStatus.PENDING

    def test_with_same_status_is_noop(self):
        payment = make_payment(1)
        assert payment.with_status(PaymentStatus.PENDING) is payment

    def test_regression_rejected(self):
        """A completed payment cannot go back to pending."""
        payment = make_payment(1, status=PaymentStatus.COMPLETED)

        with pytest.raises(InvalidPaymentStatusTransition) as exc_info:
            payment.with_status(PaymentStatus.PENDING)

        assert exc_info.value.payment_id == 1
        assert exc_info.value.current is PaymentStatus.COMPLETED

    def test_natural_key_and_class(self):
        payment = make_payment(9)
        assert payment.natural_key == (payment.payment_date, 9)
        assert payment.record_class is RecordClass.PAYMENTS
        assert record_time(payment) == payment.payment_date
