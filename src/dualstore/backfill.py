"""
BackfillMigrator - resumable bulk copy of historical records.

The migrator copies one record class from the source store to the target
store over a bounded date range, one fixed-size time window at a time.
After every window the checkpoint cursor advances and is persisted before
the next window is read, so a crash never skips records; at worst the last
unfinished window is processed again, which is harmless because target
writes overwrite by natural key.

Responsibilities:
    - Hold the per-record-class in-progress marker for the life of a run
    - Stream each window from the source and write it to the target in pages
    - Count and skip records that cannot be converted or written
    - Skip records whose retention period has already elapsed
    - Fail the run once per-record failures exceed ``max_errors``
    - Stop cooperatively after the current window when asked
    - Resume a paused, failed or interrupted run from its cursor
    - Keep a RUNNING checkpoint fresh so no other execution takes it over

Usage:
    >>> migrator = BackfillMigrator(source, target, codec, checkpoints)
    >>> run_id = await migrator.start(
    ...     BackfillOptions(start_date=jan_1, end_date=feb_1, max_errors=10)
    ... )
    >>> result = await migrator.wait(run_id)
    >>> result.status
    <BackfillStatus.COMPLETED: 'completed'>
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from dualstore.checkpoint import (
    DEFAULT_BACKFILL_LEASE,
    BackfillCheckpoint,
    BackfillOptions,
    BackfillStatus,
    generate_run_id,
)
from dualstore.codec import RecordCodec
from dualstore.exceptions import (
    BackfillRunNotFoundError,
    BackfillStateError,
    ErrorHandler,
    RecordConversionError,
    RetryConfig,
)
from dualstore.observability import (
    ATTR_BATCH_SIZE,
    ATTR_RECORD_CLASS,
    ATTR_RUN_ID,
    ATTR_WINDOW_END,
    ATTR_WINDOW_START,
    Tracer,
    create_tracer,
)
from dualstore.records import Record, RecordClass, record_id, record_time
from dualstore.repositories.checkpoint import BackfillCheckpointRepository
from dualstore.router import insert_batch_with_retry
from dualstore.stores.interface import TARGET_ROLE, RecordStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BackfillProgress:
    """
    Snapshot reported after each committed window.

    Attributes:
        run_id: Run identifier.
        record_class: Record class being copied.
        cursor: End of the last committed window.
        window_end: End of the run's range.
        windows_completed: Windows committed so far.
        records_seen: Records read so far.
        records_migrated: Records written so far.
        records_failed: Records that failed so far.
        records_skipped: Expired records skipped so far.
        progress_percent: Share of the time range covered.
        records_per_second: Read rate since this execution started.
    """

    run_id: str
    record_class: RecordClass
    cursor: datetime
    window_end: datetime
    windows_completed: int
    records_seen: int
    records_migrated: int
    records_failed: int
    records_skipped: int
    progress_percent: float
    records_per_second: float

    @property
    def is_complete(self) -> bool:
        return self.cursor >= self.window_end


@dataclass(frozen=True)
class RunResult:
    """
    Final result of a backfill execution.

    Counters include the records of a window that was abandoned when the
    run failed, even though that window was not committed.

    Attributes:
        run_id: Run identifier.
        record_class: Record class copied.
        status: Status the run ended in.
        records_seen: Records read from the source.
        records_migrated: Records written to the target.
        records_failed: Records that could not be copied.
        records_skipped: Expired records that were not written.
        windows_completed: Windows committed.
        cursor: Resume point.
        duration_seconds: Wall time of the run so far.
        errors: Most recent error messages.
    """

    run_id: str
    record_class: RecordClass
    status: BackfillStatus
    records_seen: int
    records_migrated: int
    records_failed: int
    records_skipped: int
    windows_completed: int
    cursor: datetime
    duration_seconds: float
    errors: tuple[str, ...] = ()

    @property
    def succeeded(self) -> bool:
        return self.status == BackfillStatus.COMPLETED

    @classmethod
    def from_checkpoint(
        cls,
        checkpoint: BackfillCheckpoint,
        pending: _WindowStats | None = None,
    ) -> RunResult:
        pending = pending or _WindowStats()
        return cls(
            run_id=checkpoint.run_id,
            record_class=checkpoint.record_class,
            status=checkpoint.status,
            records_seen=checkpoint.records_seen + pending.seen,
            records_migrated=checkpoint.records_migrated + pending.migrated,
            records_failed=checkpoint.records_failed + pending.failed,
            records_skipped=checkpoint.records_skipped + pending.skipped,
            windows_completed=checkpoint.windows_completed,
            cursor=checkpoint.cursor,
            duration_seconds=checkpoint.duration.total_seconds(),
            errors=tuple(checkpoint.errors),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "run_id": self.run_id,
            "record_class": self.record_class.value,
            "status": self.status.value,
            "records_seen": self.records_seen,
            "records_migrated": self.records_migrated,
            "records_failed": self.records_failed,
            "records_skipped": self.records_skipped,
            "windows_completed": self.windows_completed,
            "cursor": self.cursor.isoformat(),
            "duration_seconds": self.duration_seconds,
            "errors": list(self.errors),
        }


@dataclass
class _WindowStats:
    seen: int = 0
    migrated: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)
    last_record_key: str | None = None


class _ErrorBudgetExceeded(Exception):
    def __init__(self, failed: int, max_errors: int) -> None:
        self.failed = failed
        self.max_errors = max_errors
        super().__init__(f"{failed} record failures exceed max_errors={max_errors}")


class BackfillMigrator:
    """
    Copies historical records of one record class from source to target.

    Runs execute as background asyncio tasks; at most one run per record
    class holds the in-progress marker at a time, enforced through the
    checkpoint repository so it also holds across processes.

    Example:
        >>> migrator = BackfillMigrator(
        ...     source=relational,
        ...     target=dynamodb,
        ...     codec=RecordCodec(RecordClass.INTEGRATION_LOGS),
        ...     repository=SQLAlchemyBackfillCheckpointRepository(engine),
        ...     progress_callback=lambda p: print(f"{p.progress_percent:.1f}%"),
        ... )
        >>> result = await migrator.run(BackfillOptions(start_date=start, end_date=end))
        >>> if result.status is BackfillStatus.FAILED:
        ...     result = await migrator.resume(result.run_id)
    """

    def __init__(
        self,
        source: RecordStore,
        target: RecordStore,
        codec: RecordCodec,
        repository: BackfillCheckpointRepository,
        *,
        retry_config: RetryConfig | None = None,
        error_handler: ErrorHandler | None = None,
        progress_callback: Callable[[BackfillProgress], None] | None = None,
        clock: Callable[[], datetime] | None = None,
        lease_timeout: timedelta = DEFAULT_BACKFILL_LEASE,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the migrator.

        Args:
            source: Store to read from.
            target: Store to write to.
            codec: Codec of the record class (retention and expiry).
            repository: Checkpoint and marker persistence.
            retry_config: Retry policy for target writes.
            error_handler: Handler to use instead of one built from retry_config.
            progress_callback: Called with a BackfillProgress after each window.
            clock: Returns the current time; used for expiry checks.
            lease_timeout: How long a RUNNING checkpoint may go without being
                persisted before another execution may take it over. Running
                executions persist it at least every half lease.
            tracer: Optional custom Tracer instance.
            enable_tracing: Whether to enable OpenTelemetry tracing.
        """
        for store in (source, target):
            if store.record_class is not codec.record_class:
                raise ValueError(
                    f"Store {store.name} holds {store.record_class.value}, "
                    f"codec handles {codec.record_class.value}"
                )

        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._source = source
        self._target = target
        self._codec = codec
        self._repository = repository
        self._handler = error_handler or ErrorHandler(retry_config)
        self._progress_callback = progress_callback
        self._clock = clock or (lambda: datetime.now(UTC))
        if lease_timeout <= timedelta(0):
            raise ValueError(f"lease_timeout must be positive, got {lease_timeout}")
        self._lease_timeout = lease_timeout
        self._tasks: dict[str, asyncio.Task[RunResult]] = {}
        self._stop_requested: set[str] = set()
        self._saved_at: dict[str, float] = {}

    @property
    def record_class(self) -> RecordClass:
        return self._codec.record_class

    @property
    def repository(self) -> BackfillCheckpointRepository:
        return self._repository

    # =========================================================================
    # Run control
    # =========================================================================

    async def start(self, options: BackfillOptions) -> str:
        """
        Start a new run in the background.

        Args:
            options: Range and limits of the run.

        Returns:
            The run id.

        Raises:
            MigrationAlreadyInProgressError: If a run of this record class
                holds the in-progress marker.
            BackfillStateError: If the run id already exists.
        """
        run_id = options.run_id or generate_run_id(self.record_class)
        await self._repository.claim(self.record_class, run_id)

        checkpoint = BackfillCheckpoint.new(run_id, self.record_class, options)
        checkpoint.status = BackfillStatus.RUNNING
        try:
            await self._repository.create(checkpoint)
        except Exception:
            await self._repository.release(self.record_class, run_id)
            raise

        logger.info(
            "Starting backfill %s for %s: %s .. %s (max_errors=%d)",
            run_id,
            self.record_class.value,
            options.start_date.isoformat(),
            options.end_date.isoformat(),
            options.max_errors,
        )
        self._launch(checkpoint)
        return run_id

    async def wait(self, run_id: str) -> RunResult:
        """
        Wait for a run to stop and return its result.

        For a run that is not executing in this process, the result is
        built from its persisted checkpoint.

        Raises:
            BackfillRunNotFoundError: If the run id is unknown.
        """
        task = self._tasks.get(run_id)
        if task is not None:
            return await asyncio.shield(task)

        checkpoint = await self._repository.get(run_id)
        if checkpoint is None:
            raise BackfillRunNotFoundError(run_id)
        return RunResult.from_checkpoint(checkpoint)

    async def run(self, options: BackfillOptions) -> RunResult:
        """Start a run and wait for it to stop."""
        run_id = await self.start(options)
        return await self.wait(run_id)

    async def resume(self, run_id: str, *, force: bool = False) -> RunResult:
        """
        Continue a paused, failed or interrupted run from its cursor.

        A checkpoint still marked RUNNING is treated as interrupted by a
        crash only once it has not been persisted for ``lease_timeout``;
        until then another execution, possibly in another process, owns it.

        Args:
            run_id: Run to continue.
            force: Take over a RUNNING checkpoint even if its lease is fresh.

        Raises:
            BackfillRunNotFoundError: If the run id is unknown.
            BackfillStateError: If the run is completed or still executing.
            MigrationAlreadyInProgressError: If another run holds the marker.
        """
        checkpoint = await self._repository.get(run_id)
        if checkpoint is None:
            raise BackfillRunNotFoundError(run_id)
        if checkpoint.record_class is not self.record_class:
            raise BackfillStateError(
                run_id, checkpoint.status.value, f"resume as {self.record_class.value}"
            )
        if run_id in self._tasks:
            raise BackfillStateError(run_id, BackfillStatus.RUNNING.value, "resume")
        if not (checkpoint.status.is_resumable or checkpoint.status == BackfillStatus.RUNNING):
            raise BackfillStateError(run_id, checkpoint.status.value, "resume")
        if checkpoint.status == BackfillStatus.RUNNING:
            idle = datetime.now(UTC) - checkpoint.updated_at
            if idle < self._lease_timeout and not force:
                raise BackfillStateError(run_id, checkpoint.status.value, "resume")
            logger.warning(
                "Taking over backfill %s, last persisted %.0fs ago%s",
                run_id,
                idle.total_seconds(),
                " (forced)" if force else "",
            )

        await self._repository.claim(self.record_class, run_id)
        previous = checkpoint.status
        checkpoint.status = BackfillStatus.RUNNING
        checkpoint.ended_at = None
        try:
            await self._repository.save(checkpoint)
        except Exception:
            await self._repository.release(self.record_class, run_id)
            raise

        logger.info(
            "Resuming backfill %s (%s) from %s",
            run_id,
            previous.value,
            checkpoint.cursor.isoformat(),
        )
        self._launch(checkpoint)
        return await self.wait(run_id)

    def request_stop(self, run_id: str) -> bool:
        """
        Ask a run to pause after its current window.

        Returns:
            True if the run is executing in this process.
        """
        if run_id not in self._tasks:
            return False
        self._stop_requested.add(run_id)
        logger.info("Stop requested for backfill %s", run_id)
        return True

    def is_running(self, run_id: str) -> bool:
        return run_id in self._tasks

    async def get_checkpoint(self, run_id: str) -> BackfillCheckpoint | None:
        return await self._repository.get(run_id)

    async def get_active_run(self) -> str | None:
        """Run id holding this record class's marker, if any."""
        return await self._repository.get_active(self.record_class)

    def _launch(self, checkpoint: BackfillCheckpoint) -> None:
        run_id = checkpoint.run_id
        self._stop_requested.discard(run_id)
        self._saved_at[run_id] = time.monotonic()
        task = asyncio.create_task(self._execute(checkpoint), name=f"backfill-{run_id}")
        self._tasks[run_id] = task
        task.add_done_callback(lambda _: self._forget(run_id))

    def _forget(self, run_id: str) -> None:
        self._tasks.pop(run_id, None)
        self._saved_at.pop(run_id, None)

    async def _save(self, checkpoint: BackfillCheckpoint) -> None:
        await self._repository.save(checkpoint)
        self._saved_at[checkpoint.run_id] = time.monotonic()

    async def _heartbeat(self, checkpoint: BackfillCheckpoint) -> None:
        """Re-persist the committed checkpoint when half the lease has passed."""
        last = self._saved_at.get(checkpoint.run_id, 0.0)
        if time.monotonic() - last >= self._lease_timeout.total_seconds() / 2:
            await self._save(checkpoint)

    # =========================================================================
    # Execution
    # =========================================================================

    async def _execute(self, checkpoint: BackfillCheckpoint) -> RunResult:
        run_id = checkpoint.run_id
        options = checkpoint.options
        started = time.monotonic()
        seen_at_start = checkpoint.records_seen
        pending: _WindowStats | None = None
        failure: str | None = None

        with self._tracer.span(
            "dualstore.backfill.run",
            {
                ATTR_RUN_ID: run_id,
                ATTR_RECORD_CLASS: self.record_class.value,
                ATTR_WINDOW_START: checkpoint.cursor.isoformat(),
                ATTR_WINDOW_END: checkpoint.window_end.isoformat(),
            },
        ):
            try:
                while not checkpoint.is_done:
                    if run_id in self._stop_requested:
                        checkpoint.status = BackfillStatus.PAUSED
                        break

                    window_start = checkpoint.cursor
                    window_end = min(window_start + options.window, checkpoint.window_end)
                    pending = _WindowStats()
                    await self._process_window(checkpoint, window_start, window_end, pending)
                    self._commit_window(checkpoint, window_end, pending)
                    pending = None
                    await self._save(checkpoint)
                    self._report_progress(checkpoint, started, seen_at_start)
                else:
                    checkpoint.status = BackfillStatus.COMPLETED

            except _ErrorBudgetExceeded as e:
                checkpoint.status = BackfillStatus.FAILED
                failure = str(e)
                logger.error("Backfill %s failed: %s", run_id, e)
            except asyncio.CancelledError:
                checkpoint.status = BackfillStatus.PAUSED
                await self._finish(checkpoint, pending)
                raise
            except Exception as e:
                checkpoint.status = BackfillStatus.FAILED
                failure = f"{type(e).__name__}: {e}"
                logger.error("Backfill %s failed: %s", run_id, e)

            return await self._finish(checkpoint, pending, failure)

    async def _finish(
        self,
        checkpoint: BackfillCheckpoint,
        pending: _WindowStats | None,
        failure: str | None = None,
    ) -> RunResult:
        if pending is not None:
            for message in pending.errors:
                checkpoint.add_error(message)
        if failure is not None:
            checkpoint.add_error(failure)
        checkpoint.ended_at = datetime.now(UTC)
        self._stop_requested.discard(checkpoint.run_id)
        try:
            await self._repository.save(checkpoint)
        except BackfillStateError as e:
            # Another execution of this run finished it and owns the marker.
            self._fail_final_save(checkpoint, e)
        except Exception as e:
            self._fail_final_save(checkpoint, e)
            await self._repository.release(self.record_class, checkpoint.run_id)
        else:
            await self._repository.release(self.record_class, checkpoint.run_id)

        result = RunResult.from_checkpoint(checkpoint, pending)
        logger.info(
            "Backfill %s %s: seen=%d migrated=%d failed=%d skipped=%d in %.1fs",
            checkpoint.run_id,
            checkpoint.status.value,
            result.records_seen,
            result.records_migrated,
            result.records_failed,
            result.records_skipped,
            result.duration_seconds,
        )
        return result

    def _fail_final_save(self, checkpoint: BackfillCheckpoint, error: Exception) -> None:
        logger.error("Backfill %s: final checkpoint save failed: %s", checkpoint.run_id, error)
        checkpoint.status = BackfillStatus.FAILED
        checkpoint.add_error(f"Final checkpoint save failed: {type(error).__name__}: {error}")

    async def _process_window(
        self,
        checkpoint: BackfillCheckpoint,
        start: datetime,
        end: datetime,
        stats: _WindowStats,
    ) -> None:
        """Copy ``[start, end)``; raises _ErrorBudgetExceeded on too many failures."""
        page_size = checkpoint.options.page_size
        now = self._clock()

        with self._tracer.span(
            "dualstore.backfill.window",
            {
                ATTR_RUN_ID: checkpoint.run_id,
                ATTR_WINDOW_START: start.isoformat(),
                ATTR_WINDOW_END: end.isoformat(),
            },
        ):
            batch: list[Record] = []
            async for item in self._source.iter_window(start, end, page_size):
                stats.seen += 1
                if isinstance(item, RecordConversionError):
                    self._record_failures(checkpoint, stats, 1, str(item))
                    continue
                if self._codec.is_expired(item, now):
                    stats.skipped += 1
                    continue
                batch.append(item)
                if len(batch) >= page_size:
                    await self._write_page(checkpoint, stats, batch)
                    batch = []

            if batch:
                await self._write_page(checkpoint, stats, batch)

    async def _write_page(
        self,
        checkpoint: BackfillCheckpoint,
        stats: _WindowStats,
        records: list[Record],
    ) -> None:
        with self._tracer.span(
            "dualstore.backfill.write_page",
            {ATTR_RUN_ID: checkpoint.run_id, ATTR_BATCH_SIZE: len(records)},
        ):
            result = await insert_batch_with_retry(
                self._target, TARGET_ROLE, records, self._handler
            )

        await self._heartbeat(checkpoint)
        stats.migrated += result.written
        for record in reversed(records):
            if record.key_fields not in result.failed_keys:
                stats.last_record_key = f"{record_time(record).isoformat()}#{record_id(record)}"
                break

        if result.failed_keys:
            self._record_failures(
                checkpoint,
                stats,
                len(result.failed_keys),
                f"{len(result.failed_keys)} records not written to {self._target.name}: "
                f"{result.error} {list(result.failed_keys)[:5]}",
            )

    def _record_failures(
        self,
        checkpoint: BackfillCheckpoint,
        stats: _WindowStats,
        count: int,
        message: str,
    ) -> None:
        stats.failed += count
        stats.errors.append(message)
        logger.warning("Backfill %s: %s", checkpoint.run_id, message)

        total = checkpoint.records_failed + stats.failed
        if total > checkpoint.options.max_errors:
            raise _ErrorBudgetExceeded(total, checkpoint.options.max_errors)

    def _commit_window(
        self,
        checkpoint: BackfillCheckpoint,
        window_end: datetime,
        stats: _WindowStats,
    ) -> None:
        checkpoint.records_seen += stats.seen
        checkpoint.records_migrated += stats.migrated
        checkpoint.records_failed += stats.failed
        checkpoint.records_skipped += stats.skipped
        for message in stats.errors:
            checkpoint.add_error(message)
        if stats.last_record_key is not None:
            checkpoint.last_record_key = stats.last_record_key
        checkpoint.cursor = window_end
        checkpoint.windows_completed += 1

    def _report_progress(
        self,
        checkpoint: BackfillCheckpoint,
        started: float,
        seen_at_start: int,
    ) -> None:
        logger.debug(
            "Backfill %s committed window up to %s (%.1f%%)",
            checkpoint.run_id,
            checkpoint.cursor.isoformat(),
            checkpoint.progress_percent,
        )
        if self._progress_callback is None:
            return
        elapsed = time.monotonic() - started
        seen = checkpoint.records_seen - seen_at_start
        self._progress_callback(
            BackfillProgress(
                run_id=checkpoint.run_id,
                record_class=checkpoint.record_class,
                cursor=checkpoint.cursor,
                window_end=checkpoint.window_end,
                windows_completed=checkpoint.windows_completed,
                records_seen=checkpoint.records_seen,
                records_migrated=checkpoint.records_migrated,
                records_failed=checkpoint.records_failed,
                records_skipped=checkpoint.records_skipped,
                progress_percent=checkpoint.progress_percent,
                records_per_second=seen / elapsed if elapsed > 0 else 0.0,
            )
        )


__all__ = [
    "BackfillProgress",
    "RunResult",
    "BackfillMigrator",
]
