"""
ConsistencyValidator - cross-store comparison for a time window.

The validator counts the records of one record class in both stores over
the same half-open window and declares the stores consistent when the
difference is within a tolerance proportional to the source count.
Optionally it samples source records and compares each with the target's
copy by digest.

Validation is read-only and runs alongside live dual-write traffic, so the
two counts are point-in-time approximations rather than a snapshot. A store
query that fails becomes a discrepancy in the report instead of an error.

Usage:
    >>> validator = ConsistencyValidator(source, target, codec)
    >>> report = await validator.validate_window(start, end, sample_size=50)
    >>> if not report.is_consistent:
    ...     for discrepancy in report.discrepancies:
    ...         print(discrepancy)
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from dualstore.codec import RecordCodec
from dualstore.exceptions import ChecksumOrCountMismatchError, RecordConversionError
from dualstore.observability import (
    ATTR_RECORD_CLASS,
    ATTR_WINDOW_END,
    ATTR_WINDOW_START,
    Tracer,
    create_tracer,
)
from dualstore.records import Record, RecordClass, ensure_utc
from dualstore.stores.interface import RecordStore, SupportsQualityChecks

if TYPE_CHECKING:
    from dualstore.repositories.validation import ValidationReportRepository

logger = logging.getLogger(__name__)


class DiscrepancyType(Enum):
    COUNT_MISMATCH = "count_mismatch"
    SOURCE_QUERY_FAILED = "source_query_failed"
    TARGET_QUERY_FAILED = "target_query_failed"
    MISSING_IN_TARGET = "missing_in_target"
    FIELD_MISMATCH = "field_mismatch"


@dataclass(frozen=True)
class Discrepancy:
    """
    One finding of a validation run.

    Attributes:
        type: What kind of discrepancy was found.
        message: Human-readable description.
        record_key: Identifying fields of the record involved, if any.
    """

    type: DiscrepancyType
    message: str
    record_key: dict[str, Any] | None = None

    def __str__(self) -> str:
        if self.record_key:
            return f"[{self.type.value}] {self.message} {self.record_key}"
        return f"[{self.type.value}] {self.message}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "message": self.message,
            "record_key": self.record_key,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Discrepancy:
        return cls(
            type=DiscrepancyType(data["type"]),
            message=data["message"],
            record_key=data.get("record_key"),
        )


@dataclass(frozen=True)
class ValidationConfig:
    """
    Tolerance settings.

    Attributes:
        tolerance_ratio: Allowed difference as a fraction of the source count.
        min_tolerance: Floor of the allowed difference, in records.
    """

    tolerance_ratio: float = 0.01
    min_tolerance: int = 1

    def __post_init__(self) -> None:
        if not 0.0 <= self.tolerance_ratio <= 1.0:
            raise ValueError(f"tolerance_ratio must be in [0, 1], got {self.tolerance_ratio}")
        if self.min_tolerance < 0:
            raise ValueError(f"min_tolerance must be >= 0, got {self.min_tolerance}")

    def tolerance_for(self, source_count: int) -> float:
        return max(float(self.min_tolerance), source_count * self.tolerance_ratio)


@dataclass(frozen=True)
class ValidationReport:
    """
    Result of validating one window.

    Attributes:
        record_class: Record class validated.
        window_start: Inclusive window start.
        window_end: Exclusive window end.
        source_count: Records counted in the source (None if the count failed).
        target_count: Records counted in the target (None if the count failed).
        difference: Absolute count difference (None if a count failed).
        tolerance: Allowed difference.
        is_consistent: Whether the stores agree within tolerance.
        discrepancies: Every finding, including failed queries.
        sampled: Source records compared field by field.
        sample_mismatches: Sampled records missing or different in the target.
        duration_seconds: Time taken.
        validated_at: When the validation finished.
    """

    record_class: RecordClass
    window_start: datetime
    window_end: datetime
    source_count: int | None
    target_count: int | None
    difference: int | None
    tolerance: float
    is_consistent: bool
    discrepancies: list[Discrepancy] = field(default_factory=list)
    sampled: int = 0
    sample_mismatches: int = 0
    duration_seconds: float = 0.0
    validated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def raise_for_inconsistency(self) -> None:
        """
        Raise if the report is inconsistent.

        Raises:
            ChecksumOrCountMismatchError: When ``is_consistent`` is False.
        """
        if not self.is_consistent:
            raise ChecksumOrCountMismatchError(
                self.source_count if self.source_count is not None else -1,
                self.target_count if self.target_count is not None else -1,
                [str(d) for d in self.discrepancies],
            )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "record_class": self.record_class.value,
            "window_start": self.window_start.isoformat(),
            "window_end": self.window_end.isoformat(),
            "source_count": self.source_count,
            "target_count": self.target_count,
            "difference": self.difference,
            "tolerance": self.tolerance,
            "is_consistent": self.is_consistent,
            "discrepancies": [d.to_dict() for d in self.discrepancies],
            "sampled": self.sampled,
            "sample_mismatches": self.sample_mismatches,
            "duration_seconds": self.duration_seconds,
            "validated_at": self.validated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ValidationReport:
        """Rebuild a report persisted with ``to_dict``."""
        return cls(
            record_class=RecordClass(data["record_class"]),
            window_start=ensure_utc(datetime.fromisoformat(data["window_start"])),
            window_end=ensure_utc(datetime.fromisoformat(data["window_end"])),
            source_count=data["source_count"],
            target_count=data["target_count"],
            difference=data["difference"],
            tolerance=data["tolerance"],
            is_consistent=data["is_consistent"],
            discrepancies=[Discrepancy.from_dict(d) for d in data.get("discrepancies", [])],
            sampled=data.get("sampled", 0),
            sample_mismatches=data.get("sample_mismatches", 0),
            duration_seconds=data.get("duration_seconds", 0.0),
            validated_at=ensure_utc(datetime.fromisoformat(data["validated_at"])),
        )


@dataclass(frozen=True)
class SourceQualityReport:
    """
    Data-quality probe results for the source store.

    Attributes:
        record_class: Record class probed.
        store: Store name.
        checks: Offending row count per named check.
        checked_at: When the probes ran.
    """

    record_class: RecordClass
    store: str
    checks: dict[str, int]
    checked_at: datetime

    @property
    def total_issues(self) -> int:
        return sum(self.checks.values())

    @property
    def is_clean(self) -> bool:
        return self.total_issues == 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "record_class": self.record_class.value,
            "store": self.store,
            "checks": dict(self.checks),
            "total_issues": self.total_issues,
            "is_clean": self.is_clean,
            "checked_at": self.checked_at.isoformat(),
        }


class ConsistencyValidator:
    """
    Compares one record class across the source and target stores.

    Example:
        >>> validator = ConsistencyValidator(
        ...     source, target, RecordCodec(RecordClass.PAYMENTS),
        ...     config=ValidationConfig(tolerance_ratio=0.005),
        ... )
        >>> report = await validator.validate_window(start, end)
        >>> report.raise_for_inconsistency()
    """

    def __init__(
        self,
        source: RecordStore,
        target: RecordStore,
        codec: RecordCodec,
        *,
        config: ValidationConfig | None = None,
        rng: random.Random | None = None,
        repository: ValidationReportRepository | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the validator.

        Args:
            source: Source store.
            target: Target store.
            codec: Codec of the record class, used for sample digests.
            config: Tolerance settings.
            rng: Random source for sampling.
            repository: Where every report is recorded, so the latest one
                outlives this validator.
            tracer: Optional custom Tracer instance.
            enable_tracing: Whether to enable OpenTelemetry tracing.
        """
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._source = source
        self._target = target
        self._codec = codec
        self._config = config or ValidationConfig()
        self._rng = rng or random.Random()  # nosec B311 - statistical sampling, not security
        self._repository = repository
        self._last_report: ValidationReport | None = None

    @property
    def record_class(self) -> RecordClass:
        return self._codec.record_class

    @property
    def config(self) -> ValidationConfig:
        return self._config

    @property
    def last_report(self) -> ValidationReport | None:
        """Most recent report produced by ``validate_window``."""
        return self._last_report

    async def latest_report(self) -> ValidationReport | None:
        """
        Most recent report of this record class.

        Read from the repository when one is configured, so reports made by
        other processes count too.
        """
        if self._repository is None:
            return self._last_report
        return await self._repository.get_latest(self.record_class)

    async def validate_window(
        self,
        start: datetime,
        end: datetime,
        *,
        sample_size: int = 0,
    ) -> ValidationReport:
        """
        Validate the window ``[start, end)``.

        Args:
            start: Inclusive window start.
            end: Exclusive window end.
            sample_size: Number of source records to compare field by field
                (0 disables sampling).

        Returns:
            ValidationReport. Failures of the compared stores become
            discrepancies; errors recording the report propagate.

        Raises:
            ValueError: If the window is empty or sample_size is negative.
        """
        start, end = ensure_utc(start), ensure_utc(end)
        if end <= start:
            raise ValueError(f"end must be after start, got {start} .. {end}")
        if sample_size < 0:
            raise ValueError(f"sample_size must be >= 0, got {sample_size}")

        with self._tracer.span(
            "dualstore.consistency.validate_window",
            {
                ATTR_RECORD_CLASS: self.record_class.value,
                ATTR_WINDOW_START: start.isoformat(),
                ATTR_WINDOW_END: end.isoformat(),
            },
        ):
            started = time.monotonic()
            discrepancies: list[Discrepancy] = []

            source_count, target_count = await asyncio.gather(
                self._count(
                    self._source, start, end, DiscrepancyType.SOURCE_QUERY_FAILED, discrepancies
                ),
                self._count(
                    self._target, start, end, DiscrepancyType.TARGET_QUERY_FAILED, discrepancies
                ),
            )

            tolerance = self._config.tolerance_for(source_count or 0)
            difference: int | None = None
            counts_ok = False
            if source_count is not None and target_count is not None:
                difference = abs(source_count - target_count)
                counts_ok = difference <= tolerance
                if not counts_ok:
                    discrepancies.append(
                        Discrepancy(
                            DiscrepancyType.COUNT_MISMATCH,
                            f"source has {source_count} records, target has {target_count} "
                            f"(difference {difference}, tolerance {tolerance:g})",
                        )
                    )

            sampled, mismatches = 0, 0
            if sample_size:
                sampled, mismatches = await self._compare_sample(
                    start, end, sample_size, discrepancies
                )

            report = ValidationReport(
                record_class=self.record_class,
                window_start=start,
                window_end=end,
                source_count=source_count,
                target_count=target_count,
                difference=difference,
                tolerance=tolerance,
                is_consistent=counts_ok and mismatches == 0,
                discrepancies=discrepancies,
                sampled=sampled,
                sample_mismatches=mismatches,
                duration_seconds=time.monotonic() - started,
            )
            self._last_report = report

        if self._repository is not None:
            await self._repository.add(report)

        if report.is_consistent:
            logger.info(
                "%s consistent for %s .. %s: source=%s target=%s",
                self.record_class.value,
                start.isoformat(),
                end.isoformat(),
                source_count,
                target_count,
            )
        else:
            logger.warning(
                "%s INCONSISTENT for %s .. %s: source=%s target=%s, %d discrepancies",
                self.record_class.value,
                start.isoformat(),
                end.isoformat(),
                source_count,
                target_count,
                len(discrepancies),
            )
        return report

    async def _count(
        self,
        store: RecordStore,
        start: datetime,
        end: datetime,
        failure_type: DiscrepancyType,
        discrepancies: list[Discrepancy],
    ) -> int | None:
        try:
            return await store.count_by_time_range(start, end)
        except Exception as e:
            logger.warning("Count on %s failed: %s", store.name, e)
            discrepancies.append(Discrepancy(failure_type, f"{store.name} count failed: {e}"))
            return None

    async def _compare_sample(
        self,
        start: datetime,
        end: datetime,
        sample_size: int,
        discrepancies: list[Discrepancy],
    ) -> tuple[int, int]:
        """Compare a random sample of source records with the target copies."""
        try:
            sample = await self._sample_source(start, end, sample_size)
        except Exception as e:
            discrepancies.append(
                Discrepancy(
                    DiscrepancyType.SOURCE_QUERY_FAILED, f"{self._source.name} scan failed: {e}"
                )
            )
            return 0, 0

        mismatches = 0
        for record in sample:
            try:
                stored = await self._target.get(record)
            except Exception as e:
                discrepancies.append(
                    Discrepancy(
                        DiscrepancyType.TARGET_QUERY_FAILED,
                        f"{self._target.name} read failed: {e}",
                        record.key_fields,
                    )
                )
                mismatches += 1
                continue

            if stored is None:
                discrepancies.append(
                    Discrepancy(
                        DiscrepancyType.MISSING_IN_TARGET,
                        f"record missing from {self._target.name}",
                        record.key_fields,
                    )
                )
                mismatches += 1
            elif self._codec.digest(stored) != self._codec.digest(record):
                discrepancies.append(
                    Discrepancy(
                        DiscrepancyType.FIELD_MISMATCH,
                        f"{self._target.name} copy differs from source",
                        record.key_fields,
                    )
                )
                mismatches += 1
        return len(sample), mismatches

    async def _sample_source(self, start: datetime, end: datetime, size: int) -> list[Record]:
        """Reservoir-sample ``size`` convertible records from the source window."""
        reservoir: list[Record] = []
        seen = 0
        async for item in self._source.iter_window(start, end):
            if isinstance(item, RecordConversionError):
                continue
            seen += 1
            if len(reservoir) < size:
                reservoir.append(item)
            else:
                slot = self._rng.randrange(seen)
                if slot < size:
                    reservoir[slot] = item
        return reservoir

    async def validate_source_quality(self, now: datetime | None = None) -> SourceQualityReport:
        """
        Run data-quality probes against the source store.

        Raises:
            TypeError: If the source store cannot run quality probes.
        """
        if not isinstance(self._source, SupportsQualityChecks):
            raise TypeError(f"Store {self._source.name} does not support quality checks")
        now = ensure_utc(now or datetime.now(UTC))

        with self._tracer.span(
            "dualstore.consistency.validate_source_quality",
            {ATTR_RECORD_CLASS: self.record_class.value},
        ):
            checks = await self._source.quality_counts(now)

        report = SourceQualityReport(
            record_class=self.record_class,
            store=self._source.name,
            checks=checks,
            checked_at=now,
        )
        if report.is_clean:
            logger.info("Source quality checks passed for %s", self.record_class.value)
        else:
            logger.warning(
                "Source quality issues for %s: %s",
                self.record_class.value,
                {k: v for k, v in checks.items() if v},
            )
        return report


__all__ = [
    "DiscrepancyType",
    "Discrepancy",
    "ValidationConfig",
    "ValidationReport",
    "SourceQualityReport",
    "ConsistencyValidator",
]
