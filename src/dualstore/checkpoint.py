"""
Backfill run models.

A backfill run copies a bounded date range of one record class from the
source store to the target store. Its progress lives in a BackfillCheckpoint
that is persisted after every committed window, so a crashed or paused run
can continue from the last durable cursor.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from dualstore.records import RecordClass, ensure_utc

# Bound on the error messages retained in a checkpoint.
MAX_CHECKPOINT_ERRORS = 100

DEFAULT_BACKFILL_WINDOW = timedelta(days=1)
DEFAULT_BACKFILL_PAGE_SIZE = 500
DEFAULT_BACKFILL_MAX_ERRORS = 100

# A RUNNING checkpoint not persisted for this long belongs to a dead execution.
DEFAULT_BACKFILL_LEASE = timedelta(minutes=10)


class BackfillStatus(Enum):
    """
    Lifecycle of a backfill run.

    NOT_STARTED -> RUNNING -> {PAUSED, COMPLETED, FAILED}. PAUSED and FAILED
    keep their checkpoint and may go back to RUNNING through a resume.
    COMPLETED is final.
    """

    NOT_STARTED = "not_started"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_resumable(self) -> bool:
        return self in (BackfillStatus.PAUSED, BackfillStatus.FAILED)

    @property
    def is_final(self) -> bool:
        return self == BackfillStatus.COMPLETED


@dataclass(frozen=True)
class BackfillOptions:
    """
    Parameters of a backfill run.

    Attributes:
        start_date: Inclusive lower bound of the range to copy.
        end_date: Exclusive upper bound of the range to copy.
        max_errors: Per-record failures tolerated before the run fails.
        window: Width of one processing window (and checkpoint).
        page_size: Records read from the source per page.
        run_id: Explicit run id; generated at start when omitted.

    Example:
        >>> options = BackfillOptions(
        ...     start_date=datetime(2024, 1, 1, tzinfo=UTC),
        ...     end_date=datetime(2024, 2, 1, tzinfo=UTC),
        ...     max_errors=10,
        ... )
    """

    start_date: datetime
    end_date: datetime
    max_errors: int = DEFAULT_BACKFILL_MAX_ERRORS
    window: timedelta = DEFAULT_BACKFILL_WINDOW
    page_size: int = DEFAULT_BACKFILL_PAGE_SIZE
    run_id: str | None = None

    def __post_init__(self) -> None:
        """Validate and normalize the range."""
        object.__setattr__(self, "start_date", ensure_utc(self.start_date))
        object.__setattr__(self, "end_date", ensure_utc(self.end_date))

        if self.end_date <= self.start_date:
            raise ValueError(
                f"end_date must be after start_date, got {self.start_date} .. {self.end_date}"
            )
        if self.max_errors < 0:
            raise ValueError(f"max_errors must be >= 0, got {self.max_errors}")
        if self.window <= timedelta(0):
            raise ValueError(f"window must be positive, got {self.window}")
        if self.page_size < 1:
            raise ValueError(f"page_size must be >= 1, got {self.page_size}")
        if self.run_id is not None and not self.run_id.strip():
            raise ValueError("run_id must not be blank")

    def to_dict(self) -> dict[str, Any]:
        return {
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat(),
            "max_errors": self.max_errors,
            "window_seconds": self.window.total_seconds(),
            "page_size": self.page_size,
            "run_id": self.run_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BackfillOptions:
        return cls(
            start_date=datetime.fromisoformat(data["start_date"]),
            end_date=datetime.fromisoformat(data["end_date"]),
            max_errors=data.get("max_errors", DEFAULT_BACKFILL_MAX_ERRORS),
            window=timedelta(
                seconds=data.get("window_seconds", DEFAULT_BACKFILL_WINDOW.total_seconds())
            ),
            page_size=data.get("page_size", DEFAULT_BACKFILL_PAGE_SIZE),
            run_id=data.get("run_id"),
        )


def generate_run_id(record_class: RecordClass, now: datetime | None = None) -> str:
    """Build the default run id, ``{record_class}-{YYYYmmdd-HHMMSS}``."""
    now = now or datetime.now(UTC)
    return f"{record_class.value}-{now.strftime('%Y%m%d-%H%M%S')}"


@dataclass
class BackfillCheckpoint:
    """
    Persisted progress of a backfill run.

    This is a mutable dataclass owned by the migrator for the duration of
    a run. ``cursor`` is the end boundary of the last committed window:
    every record before it has been handled, nothing at or after it has.

    Attributes:
        run_id: Unique run identifier.
        record_class: Record class being copied.
        status: Current lifecycle status.
        window_start: Start of the run's overall range.
        window_end: End of the run's overall range (exclusive).
        cursor: Resume point.
        options: Options the run was started with.
        last_record_key: Natural key of the last record committed.
        records_seen: Records read from the source.
        records_migrated: Records written to the target.
        records_failed: Records that could not be copied.
        records_skipped: Records not copied because their TTL had elapsed.
        windows_completed: Windows committed so far.
        errors: Most recent error messages (bounded).
        started_at: When the run was first started.
        ended_at: When the run last stopped (paused, failed or completed).
        updated_at: When the checkpoint was last persisted.
    """

    run_id: str
    record_class: RecordClass
    status: BackfillStatus
    window_start: datetime
    window_end: datetime
    cursor: datetime
    options: BackfillOptions
    last_record_key: str | None = None
    records_seen: int = 0
    records_migrated: int = 0
    records_failed: int = 0
    records_skipped: int = 0
    windows_completed: int = 0
    errors: list[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    ended_at: datetime | None = None
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def new(
        cls,
        run_id: str,
        record_class: RecordClass,
        options: BackfillOptions,
    ) -> BackfillCheckpoint:
        """Create the initial checkpoint of a run about to start."""
        return cls(
            run_id=run_id,
            record_class=record_class,
            status=BackfillStatus.NOT_STARTED,
            window_start=options.start_date,
            window_end=options.end_date,
            cursor=options.start_date,
            options=options,
        )

    @property
    def is_done(self) -> bool:
        """True when the cursor has reached the end of the range."""
        return self.cursor >= self.window_end

    @property
    def progress_percent(self) -> float:
        total = (self.window_end - self.window_start).total_seconds()
        if total <= 0:
            return 100.0
        done = (self.cursor - self.window_start).total_seconds()
        return min(100.0, max(0.0, done / total * 100))

    @property
    def duration(self) -> timedelta:
        end = self.ended_at or datetime.now(UTC)
        return end - self.started_at

    def add_error(self, message: str) -> None:
        """Record an error message, dropping the oldest beyond the bound."""
        self.errors.append(message)
        if len(self.errors) > MAX_CHECKPOINT_ERRORS:
            del self.errors[: len(self.errors) - MAX_CHECKPOINT_ERRORS]

    def copy(self) -> BackfillCheckpoint:
        """Detached copy, safe to hand out or store."""
        return replace(self, errors=list(self.errors))

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "record_class": self.record_class.value,
            "status": self.status.value,
            "window_start": self.window_start.isoformat(),
            "window_end": self.window_end.isoformat(),
            "cursor": self.cursor.isoformat(),
            "last_record_key": self.last_record_key,
            "options": self.options.to_dict(),
            "records_seen": self.records_seen,
            "records_migrated": self.records_migrated,
            "records_failed": self.records_failed,
            "records_skipped": self.records_skipped,
            "windows_completed": self.windows_completed,
            "progress_percent": round(self.progress_percent, 2),
            "errors": list(self.errors),
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "updated_at": self.updated_at.isoformat(),
        }


__all__ = [
    "MAX_CHECKPOINT_ERRORS",
    "DEFAULT_BACKFILL_WINDOW",
    "DEFAULT_BACKFILL_PAGE_SIZE",
    "DEFAULT_BACKFILL_MAX_ERRORS",
    "DEFAULT_BACKFILL_LEASE",
    "BackfillStatus",
    "BackfillOptions",
    "BackfillCheckpoint",
    "generate_run_id",
]
