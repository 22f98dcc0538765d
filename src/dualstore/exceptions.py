"""
Exceptions for the dualstore migration engine.

Every exception raised by dualstore inherits from DualStoreError and carries
an ErrorClassification describing its severity, whether it can be retried
and what an operator should do about it.

Exception Hierarchy:
    DualStoreError (base)
    +-- StoreError
    |   +-- TransientStoreError
    +-- InvalidPhaseTransitionError
    +-- ConcurrentPhaseUpdateError
    +-- MigrationAlreadyInProgressError
    +-- BackfillRunNotFoundError
    +-- BackfillStateError
    +-- ChecksumOrCountMismatchError
    +-- RecordConversionError
    +-- DualWriteFailureError
    +-- InvalidPaymentStatusTransition
    +-- RecordNotFoundError

Retry support:
    - RetryConfig: bounded attempts with fixed or exponential backoff
    - ErrorHandler: retries TransientStoreError (and any other error
      classified TRANSIENT) according to a RetryConfig
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Callable, Coroutine
from dataclasses import asdict, dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, TypeVar

if TYPE_CHECKING:
    from dualstore.phase import MigrationPhase
    from dualstore.records import PaymentStatus, RecordClass
    from dualstore.router import WriteOutcome

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ErrorSeverity(Enum):
    """How loudly a dualstore error is logged."""

    CRITICAL = "critical"
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"

    @property
    def log_level(self) -> int:
        return getattr(logging, self.name)


class ErrorRecoverability(Enum):
    """
    What it takes to get past an error.

    Attributes:
        RECOVERABLE: An operator fixes something (pauses a run, repairs a
            source row) and the migration carries on.
        TRANSIENT: A store hiccup; ErrorHandler retries the call.
        FATAL: Retrying the same call cannot succeed.
    """

    RECOVERABLE = "recoverable"
    TRANSIENT = "transient"
    FATAL = "fatal"

    @property
    def should_retry(self) -> bool:
        return self is ErrorRecoverability.TRANSIENT


@dataclass(frozen=True)
class RetryConfig:
    """
    Bounded retry policy for store calls.

    The router applies it to each write leg and each read; the backfill
    applies it to target batch writes. Delays grow by ``exponential_base``
    per failed attempt up to ``max_delay_ms``; a base of 1.0 keeps the delay
    fixed, matching the "retry N times, D seconds apart" setting.

    Attributes:
        max_attempts: Attempts per call, the first one included.
        base_delay_ms: Wait after the first failed attempt.
        max_delay_ms: Cap on any single wait.
        exponential_base: Growth factor between waits.
        jitter_factor: Up to this fraction of the delay is added at random.

    Example:
        >>> RetryConfig(max_attempts=3, base_delay_ms=1000, exponential_base=1.0).get_delay_ms(2)
        1000.0
    """

    max_attempts: int = 3
    base_delay_ms: float = 1000.0
    max_delay_ms: float = 30000.0
    exponential_base: float = 2.0
    jitter_factor: float = 0.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {self.max_attempts}")
        if self.base_delay_ms < 0:
            raise ValueError(f"base_delay_ms cannot be negative, got {self.base_delay_ms}")
        if self.max_delay_ms < self.base_delay_ms:
            raise ValueError(
                f"max_delay_ms ({self.max_delay_ms}) is below base_delay_ms ({self.base_delay_ms})"
            )
        if self.exponential_base < 1.0:
            raise ValueError(
                f"exponential_base below 1.0 would shrink delays, got {self.exponential_base}"
            )
        if not 0.0 <= self.jitter_factor <= 1.0:
            raise ValueError(f"jitter_factor must be within [0, 1], got {self.jitter_factor}")

    def get_delay_ms(self, attempt: int) -> float:
        """Wait in milliseconds after failed attempt number ``attempt`` (0-based)."""
        delay = self.base_delay_ms * self.exponential_base**attempt
        if self.jitter_factor > 0:
            delay += delay * self.jitter_factor * random.random()  # nosec B311
        return min(delay, self.max_delay_ms)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


STORE_RETRY_CONFIG = RetryConfig(
    max_attempts=3,
    base_delay_ms=1000.0,
    max_delay_ms=30000.0,
    exponential_base=2.0,
    jitter_factor=0.1,
)


@dataclass(frozen=True)
class ErrorClassification:
    """
    Operator-facing description attached to every DualStoreError class.

    Attributes:
        severity: Log level the error deserves.
        recoverability: Whether ErrorHandler may retry it.
        error_code: Stable code for dashboards and API responses.
        category: Coarse grouping (store, state, consistency, data, ...).
        suggested_action: What an operator should do next.
        retry_config: Retry policy suited to the error, when it is transient.
    """

    severity: ErrorSeverity
    recoverability: ErrorRecoverability
    error_code: str
    category: str
    suggested_action: str
    retry_config: RetryConfig | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "severity": self.severity.value,
            "recoverability": self.recoverability.value,
            "error_code": self.error_code,
            "category": self.category,
            "suggested_action": self.suggested_action,
        }
        if self.retry_config is not None:
            data["retry_config"] = self.retry_config.to_dict()
        return data


class DualStoreError(Exception):
    """
    Root of every error dualstore raises.

    Subclasses set ``_default_classification``; instances may narrow the
    suggested action for the case at hand.

    Attributes:
        message: What went wrong.
        record_class: Record class being migrated, when known.
        suggested_action: Case-specific advice overriding the class default.
    """

    _default_classification: ErrorClassification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="DUALSTORE_ERROR",
        category="general",
        suggested_action="Review migration logs",
    )

    def __init__(
        self,
        message: str,
        *,
        record_class: RecordClass | None = None,
        suggested_action: str | None = None,
    ) -> None:
        self.message = message
        self.record_class = record_class
        self.suggested_action = suggested_action or self._default_classification.suggested_action
        super().__init__(message)

    def __str__(self) -> str:
        if self.record_class is None:
            return self.message
        return f"{self.message} record_class={self.record_class.value}"

    @property
    def classification(self) -> ErrorClassification:
        return self._default_classification

    @property
    def severity(self) -> ErrorSeverity:
        return self.classification.severity

    @property
    def recoverability_type(self) -> ErrorRecoverability:
        return self.classification.recoverability

    @property
    def error_code(self) -> str:
        return self.classification.error_code

    @property
    def retry_config(self) -> RetryConfig | None:
        return self.classification.retry_config

    def to_dict(self) -> dict[str, Any]:
        """Serializable form for the admin surface and structured logs."""
        return {
            "message": self.message,
            "record_class": self.record_class.value if self.record_class else None,
            "error_code": self.error_code,
            "suggested_action": self.suggested_action,
            "classification": self.classification.to_dict(),
        }


class StoreError(DualStoreError):
    """
    Raised when a store operation fails for a non-transient reason.

    Attributes:
        store: Logical name of the store that failed.
        operation: The operation that was attempted.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="STORE_ERROR",
        category="store",
        suggested_action="Inspect the store error; it will not succeed on retry",
    )

    def __init__(self, store: str, operation: str, message: str) -> None:
        self.store = store
        self.operation = operation
        super().__init__(f"{store}.{operation} failed: {message}")


class TransientStoreError(StoreError):
    """
    Raised for network, timeout and throttling failures.

    These are retried by ErrorHandler according to the configured RetryConfig.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.TRANSIENT,
        error_code="STORE_TRANSIENT",
        category="connectivity",
        suggested_action="Check store connectivity and capacity; the operation is retried",
        retry_config=STORE_RETRY_CONFIG,
    )


class InvalidPhaseTransitionError(DualStoreError):
    """
    Raised when a phase transition is attempted out of order.

    The phase is left unchanged.

    Attributes:
        current_phase: The phase at the time of the attempt.
        target_phase: The phase that was requested.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="INVALID_PHASE_TRANSITION",
        category="state",
        suggested_action="Advance through the phases in order: "
        "source_only, dual_write, dual_write_read_target, target_only",
    )

    def __init__(
        self,
        current_phase: MigrationPhase,
        target_phase: MigrationPhase,
        *,
        record_class: RecordClass | None = None,
        reason: str | None = None,
    ) -> None:
        self.current_phase = current_phase
        self.target_phase = target_phase
        message = f"Invalid phase transition: {current_phase.value} -> {target_phase.value}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message, record_class=record_class)


class ConcurrentPhaseUpdateError(DualStoreError):
    """Raised when the persisted phase version moved underneath a transition."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="CONCURRENT_PHASE_UPDATE",
        category="state",
        suggested_action="Reload the phase controller and retry the command",
    )

    def __init__(self, scope: str, expected_version: int, actual_version: int | None) -> None:
        self.scope = scope
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Phase state for {scope} changed concurrently: "
            f"expected version {expected_version}, found {actual_version}"
        )


class MigrationAlreadyInProgressError(DualStoreError):
    """
    Raised when a backfill run is started while another run for the same
    record class holds the in-progress marker.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="MIGRATION_ALREADY_IN_PROGRESS",
        category="state",
        suggested_action="Wait for the active run to finish or pause it first",
    )

    def __init__(self, record_class: RecordClass, active_run_id: str) -> None:
        self.active_run_id = active_run_id
        super().__init__(
            f"Backfill already in progress: {active_run_id}",
            record_class=record_class,
        )


class BackfillRunNotFoundError(DualStoreError):
    """Raised when a run id has no persisted checkpoint."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="BACKFILL_RUN_NOT_FOUND",
        category="lookup",
        suggested_action="Verify the run id",
    )

    def __init__(self, run_id: str) -> None:
        self.run_id = run_id
        super().__init__(f"Backfill run not found: {run_id}")


class BackfillStateError(DualStoreError):
    """Raised when a backfill operation is invalid for the run's status."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="BACKFILL_STATE_ERROR",
        category="state",
        suggested_action="Only paused, failed or interrupted runs can be resumed",
    )

    def __init__(self, run_id: str, status: str, operation: str) -> None:
        self.run_id = run_id
        self.status = status
        self.operation = operation
        super().__init__(f"Cannot {operation} backfill run {run_id} in status {status}")


class ChecksumOrCountMismatchError(DualStoreError):
    """
    Raised on request when a validation report is inconsistent.

    The validator never raises this on its own; it reports discrepancies.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="CHECKSUM_OR_COUNT_MISMATCH",
        category="consistency",
        suggested_action="Review the discrepancies and backfill the affected window",
    )

    def __init__(self, source_count: int, target_count: int, discrepancies: list[str]) -> None:
        self.source_count = source_count
        self.target_count = target_count
        self.discrepancies = discrepancies
        super().__init__(
            f"Stores are inconsistent: source={source_count}, target={target_count}, "
            f"{len(discrepancies)} discrepancies"
        )


class RecordConversionError(DualStoreError):
    """
    Raised when a record cannot be converted to or from the item format.

    Attributes:
        record_key: Identifying fields of the offending record or item.
        reason: What was wrong with it.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="RECORD_CONVERSION_ERROR",
        category="data",
        suggested_action="Fix the source row identified by record_key and resume the backfill",
    )

    def __init__(self, record_key: dict[str, Any], reason: str) -> None:
        self.record_key = record_key
        self.reason = reason
        super().__init__(f"Cannot convert record {record_key}: {reason}")


class DualWriteFailureError(DualStoreError):
    """
    Raised when a routed write fails and the policy does not allow continuing.

    Attributes:
        outcome: The WriteOutcome describing which store failed and why.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="DUAL_WRITE_FAILURE",
        category="dual_write",
        suggested_action="Check the failed store's health; the record must be replayed",
    )

    def __init__(self, outcome: WriteOutcome) -> None:
        self.outcome = outcome
        failed = ", ".join(outcome.failed_stores) or "none"
        super().__init__(f"Write failed (failed stores: {failed})")


class InvalidPaymentStatusTransition(DualStoreError):
    """Raised when a payment status would regress or leave a terminal state."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.FATAL,
        error_code="INVALID_PAYMENT_STATUS_TRANSITION",
        category="data",
        suggested_action="Payment statuses only move forward: pending -> completed/failed",
    )

    def __init__(self, payment_id: int, current: PaymentStatus, target: PaymentStatus) -> None:
        self.payment_id = payment_id
        self.current = current
        self.target = target
        super().__init__(
            f"Payment {payment_id} cannot move from {current.value} to {target.value}"
        )


class RecordNotFoundError(DualStoreError):
    """Raised when an update targets a record the read store does not hold."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.FATAL,
        error_code="RECORD_NOT_FOUND",
        category="lookup",
        suggested_action="Verify the record id and the current read store",
    )

    def __init__(self, store: str, record_key: dict[str, Any]) -> None:
        self.store = store
        self.record_key = record_key
        super().__init__(f"Record {record_key} not found in {store}")


class ErrorHandler:
    """
    Runs one store call under a RetryConfig.

    Only errors whose classification is TRANSIENT are retried. Anything else,
    including exceptions from outside dualstore, propagates on the first
    failure. When attempts run out the last transient error propagates and
    the caller decides how to report it (a failed write leg, a failed
    backfill chunk).

    Usage:
        >>> handler = ErrorHandler(RetryConfig(max_attempts=3, base_delay_ms=100))
        >>> await handler.execute_with_retry(
        ...     lambda: target.insert(record),
        ...     operation_name="target.insert",
        ... )
    """

    def __init__(
        self,
        retry_config: RetryConfig | None = None,
        *,
        sleep: Callable[[float], Coroutine[Any, Any, None]] | None = None,
    ) -> None:
        self.retry_config = retry_config or STORE_RETRY_CONFIG
        self._sleep = sleep or asyncio.sleep

    async def execute_with_retry(
        self,
        operation: Callable[[], Coroutine[Any, Any, T]],
        operation_name: str,
        *,
        on_retry: Callable[[int, Exception, float], None] | None = None,
    ) -> T:
        """
        Await ``operation()`` until it succeeds or may no longer be retried.

        Args:
            operation: Zero-argument factory of the coroutine to run.
            operation_name: Label used in log messages.
            on_retry: Called as ``on_retry(attempt, error, delay_ms)`` before
                each wait.

        Returns:
            Whatever the operation returned.

        Raises:
            DualStoreError: A non-transient error, or the last transient one.
        """
        config = self.retry_config
        attempt = 0
        while True:
            try:
                result = await operation()
            except DualStoreError as e:
                if not e.recoverability_type.should_retry:
                    raise
                if attempt + 1 >= config.max_attempts:
                    logger.error(
                        "'%s' still failing after %d attempts: %s",
                        operation_name,
                        config.max_attempts,
                        e.message,
                    )
                    raise

                delay_ms = config.get_delay_ms(attempt)
                logger.log(
                    e.severity.log_level,
                    "'%s' attempt %d/%d failed: %s; retrying in %.2fs",
                    operation_name,
                    attempt + 1,
                    config.max_attempts,
                    e.message,
                    delay_ms / 1000.0,
                )
                if on_retry is not None:
                    on_retry(attempt, e, delay_ms)
                await self._sleep(delay_ms / 1000.0)
                attempt += 1
                continue

            if attempt > 0:
                logger.info("'%s' succeeded on attempt %d", operation_name, attempt + 1)
            return result


def classify_exception(exc: Exception) -> ErrorClassification:
    """Classification of ``exc``; foreign exceptions are treated as fatal and unknown."""
    if isinstance(exc, DualStoreError):
        return exc.classification
    return ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="UNKNOWN_ERROR",
        category="unknown",
        suggested_action="Unexpected error; check the logs of the failing component",
    )


__all__ = [
    "ErrorSeverity",
    "ErrorRecoverability",
    "ErrorClassification",
    "RetryConfig",
    "STORE_RETRY_CONFIG",
    "DualStoreError",
    "StoreError",
    "TransientStoreError",
    "InvalidPhaseTransitionError",
    "ConcurrentPhaseUpdateError",
    "MigrationAlreadyInProgressError",
    "BackfillRunNotFoundError",
    "BackfillStateError",
    "ChecksumOrCountMismatchError",
    "RecordConversionError",
    "DualWriteFailureError",
    "InvalidPaymentStatusTransition",
    "RecordNotFoundError",
    "ErrorHandler",
    "classify_exception",
]
