"""
Unit tests for BackfillMigrator.

Tests cover:
- Full runs over multiple windows
- Pause after a window and resume from the checkpoint cursor
- Resume of a run interrupted mid-flight
- The per-record-class in-progress marker
- The max_errors budget
- Skipping of records whose retention has elapsed
- Source and target failures
- Leases on RUNNING checkpoints shared between migrators
"""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest
import pytest_asyncio

from dualstore.backfill import BackfillMigrator, BackfillProgress
from dualstore.checkpoint import BackfillCheckpoint, BackfillOptions, BackfillStatus
from dualstore.codec import RecordCodec
from dualstore.exceptions import (
    BackfillRunNotFoundError,
    BackfillStateError,
    MigrationAlreadyInProgressError,
    RetryConfig,
)
from dualstore.observability import ATTR_WINDOW_START, MockTracer
from dualstore.records import RecordClass
from dualstore.repositories.checkpoint import InMemoryBackfillCheckpointRepository
from dualstore.stores.interface import BatchWriteResult
from dualstore.stores.memory import InMemoryRecordStore
from tests.factories import BASE_TIME, make_log, make_payment

RANGE_START = BASE_TIME
RANGE_END = BASE_TIME + timedelta(days=4)
FAST_RETRY = RetryConfig(max_attempts=2, base_delay_ms=0, max_delay_ms=0)

# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def checkpoints() -> InMemoryBackfillCheckpointRepository:
    return InMemoryBackfillCheckpointRepository()


@pytest_asyncio.fixture
async def seeded_source(source_store: InMemoryRecordStore) -> InMemoryRecordStore:
    """Sixteen logs, four per day, six hours apart."""
    for i in range(16):
        await source_store.insert(make_log(i, timestamp=BASE_TIME + timedelta(hours=6 * i)))
    return source_store


def make_migrator(source, target, repository, **kwargs) -> BackfillMigrator:
    kwargs.setdefault("retry_config", FAST_RETRY)
    kwargs.setdefault("enable_tracing", False)
    return BackfillMigrator(
        source,
        target,
        RecordCodec(source.record_class),
        repository,
        **kwargs,
    )


def options(**overrides) -> BackfillOptions:
    values = {"start_date": RANGE_START, "end_date": RANGE_END}
    values.update(overrides)
    return BackfillOptions(**values)


class GatedStore(InMemoryRecordStore):
    """Target whose batch writes block until ``gate`` is set."""

    def __init__(self, name: str, record_class: RecordClass) -> None:
        super().__init__(name, record_class)
        self.gate = asyncio.Event()

    async def insert_batch(self, records) -> BatchWriteResult:
        await self.gate.wait()
        return await super().insert_batch(records)


class CountingRepository(InMemoryBackfillCheckpointRepository):
    def __init__(self) -> None:
        super().__init__()
        self.saves = 0

    async def save(self, checkpoint: BackfillCheckpoint) -> None:
        self.saves += 1
        await super().save(checkpoint)


def running_checkpoint(run_id: str, cursor_days: int, idle: timedelta) -> BackfillCheckpoint:
    """A RUNNING checkpoint last persisted ``idle`` ago with ``cursor_days`` windows done."""
    checkpoint = BackfillCheckpoint.new(run_id, RecordClass.INTEGRATION_LOGS, options())
    checkpoint.status = BackfillStatus.RUNNING
    checkpoint.cursor = RANGE_START + timedelta(days=cursor_days)
    checkpoint.records_seen = 4 * cursor_days
    checkpoint.records_migrated = 4 * cursor_days
    checkpoint.windows_completed = cursor_days
    checkpoint.updated_at = datetime.now(UTC) - idle
    return checkpoint


# =============================================================================
# Full runs
# =============================================================================


class TestFullRun:
    @pytest.mark.asyncio
    async def test_copies_every_record(self, seeded_source, target_store, checkpoints):
        migrator = make_migrator(seeded_source, target_store, checkpoints)

        result = await migrator.run(options())

        assert result.status is BackfillStatus.COMPLETED
        assert result.succeeded
        assert result.records_seen == 16
        assert result.records_migrated == 16
        assert result.records_failed == 0
        assert result.windows_completed == 4
        assert result.cursor == RANGE_END
        assert target_store.all_records() == seeded_source.all_records()

    @pytest.mark.asyncio
    async def test_checkpoint_persisted_and_marker_released(
        self, seeded_source, target_store, checkpoints
    ):
        migrator = make_migrator(seeded_source, target_store, checkpoints)

        result = await migrator.run(options(run_id="logs-run-1"))

        checkpoint = await migrator.get_checkpoint("logs-run-1")
        assert result.run_id == "logs-run-1"
        assert checkpoint.status is BackfillStatus.COMPLETED
        assert checkpoint.progress_percent == 100.0
        assert checkpoint.last_record_key.endswith("#15")
        assert checkpoint.ended_at is not None
        assert await migrator.get_active_run() is None

    @pytest.mark.asyncio
    async def test_small_pages(self, seeded_source, target_store, checkpoints):
        """Pages smaller than a window still copy everything."""
        migrator = make_migrator(seeded_source, target_store, checkpoints)

        result = await migrator.run(options(page_size=3, window=timedelta(hours=12)))

        assert result.records_migrated == 16
        assert result.windows_completed == 8

    @pytest.mark.asyncio
    async def test_empty_range_completes(self, source_store, target_store, checkpoints):
        migrator = make_migrator(source_store, target_store, checkpoints)

        result = await migrator.run(options())

        assert result.status is BackfillStatus.COMPLETED
        assert result.records_seen == 0

    @pytest.mark.asyncio
    async def test_rerun_overwrites_instead_of_duplicating(
        self, seeded_source, target_store, checkpoints
    ):
        migrator = make_migrator(seeded_source, target_store, checkpoints)

        await migrator.run(options(run_id="first-pass"))
        await migrator.run(options(run_id="second-pass"))

        assert target_store.size == 16

    @pytest.mark.asyncio
    async def test_progress_reported_per_window(self, seeded_source, target_store, checkpoints):
        reports: list[BackfillProgress] = []
        migrator = make_migrator(
            seeded_source, target_store, checkpoints, progress_callback=reports.append
        )

        await migrator.run(options())

        assert [p.windows_completed for p in reports] == [1, 2, 3, 4]
        assert [p.progress_percent for p in reports] == [25.0, 50.0, 75.0, 100.0]
        assert reports[-1].is_complete
        assert reports[-1].records_migrated == 16

    @pytest.mark.asyncio
    async def test_run_span(self, seeded_source, target_store, checkpoints):
        tracer = MockTracer()
        migrator = make_migrator(seeded_source, target_store, checkpoints, tracer=tracer)

        await migrator.run(options(window=timedelta(days=2)))

        assert tracer.span_names.count("dualstore.backfill.run") == 1
        assert tracer.span_names.count("dualstore.backfill.window") == 2
        windows = tracer.attributes_of("dualstore.backfill.window")
        assert [w[ATTR_WINDOW_START] for w in windows] == [
            RANGE_START.isoformat(),
            (RANGE_START + timedelta(days=2)).isoformat(),
        ]


# =============================================================================
# Pause and resume
# =============================================================================


class TestPauseAndResume:
    @pytest.mark.asyncio
    async def test_resume_continues_from_cursor(self, seeded_source, target_store, checkpoints):
        """A run paused after two windows finishes the remaining two on resume."""
        migrator_ref: list[BackfillMigrator] = []

        def stop_after_two(progress: BackfillProgress) -> None:
            if progress.windows_completed == 2:
                migrator_ref[0].request_stop(progress.run_id)

        migrator = make_migrator(
            seeded_source, target_store, checkpoints, progress_callback=stop_after_two
        )
        migrator_ref.append(migrator)

        paused = await migrator.run(options())

        assert paused.status is BackfillStatus.PAUSED
        assert paused.windows_completed == 2
        assert paused.records_migrated == 8
        assert paused.cursor == RANGE_START + timedelta(days=2)
        assert await migrator.get_active_run() is None

        read_calls = seeded_source.read_calls
        resumed = await migrator.resume(paused.run_id)

        assert resumed.status is BackfillStatus.COMPLETED
        assert resumed.windows_completed == 4
        assert resumed.records_seen == 16
        assert resumed.records_migrated == 16
        assert target_store.size == 16
        # Only the two remaining windows were read.
        assert seeded_source.read_calls - read_calls == 2

    @pytest.mark.asyncio
    async def test_resume_after_crash(self, seeded_source, target_store, checkpoints):
        """A checkpoint left RUNNING by a dead process can be resumed."""
        crashed = BackfillCheckpoint.new("crashed-run", RecordClass.INTEGRATION_LOGS, options())
        crashed.status = BackfillStatus.RUNNING
        crashed.cursor = RANGE_START + timedelta(days=3)
        crashed.records_seen = 12
        crashed.records_migrated = 12
        crashed.windows_completed = 3
        crashed.updated_at = datetime.now(UTC) - timedelta(hours=1)
        await checkpoints.create(crashed)
        await checkpoints.claim(RecordClass.INTEGRATION_LOGS, "crashed-run")

        migrator = make_migrator(seeded_source, target_store, checkpoints)
        result = await migrator.resume("crashed-run")

        assert result.status is BackfillStatus.COMPLETED
        assert result.records_migrated == 16
        assert target_store.size == 4

    @pytest.mark.asyncio
    async def test_request_stop_unknown_run(self, source_store, target_store, checkpoints):
        migrator = make_migrator(source_store, target_store, checkpoints)
        assert migrator.request_stop("nope") is False

    @pytest.mark.asyncio
    async def test_completed_run_cannot_resume(self, seeded_source, target_store, checkpoints):
        migrator = make_migrator(seeded_source, target_store, checkpoints)
        result = await migrator.run(options())

        with pytest.raises(BackfillStateError):
            await migrator.resume(result.run_id)

    @pytest.mark.asyncio
    async def test_unknown_run_cannot_resume(self, source_store, target_store, checkpoints):
        migrator = make_migrator(source_store, target_store, checkpoints)

        with pytest.raises(BackfillRunNotFoundError):
            await migrator.resume("missing")
        with pytest.raises(BackfillRunNotFoundError):
            await migrator.wait("missing")


# =============================================================================
# In-progress marker
# =============================================================================


class TestInProgressMarker:
    @pytest.mark.asyncio
    async def test_second_run_of_same_class_rejected(
        self, seeded_source, target_store, checkpoints
    ):
        migrator = make_migrator(seeded_source, target_store, checkpoints)

        first = await migrator.start(options(run_id="first"))
        assert await migrator.get_active_run() == "first"
        assert migrator.is_running("first")

        with pytest.raises(MigrationAlreadyInProgressError) as exc_info:
            await migrator.start(options(run_id="second"))
        assert exc_info.value.active_run_id == "first"

        result = await migrator.wait(first)
        assert result.status is BackfillStatus.COMPLETED
        assert await checkpoints.get("second") is None

    @pytest.mark.asyncio
    async def test_other_record_class_runs_concurrently(
        self, seeded_source, target_store, payment_source, payment_target, checkpoints
    ):
        for i in range(1, 5):
            await payment_source.insert(make_payment(i))
        logs = make_migrator(seeded_source, target_store, checkpoints)
        payments = make_migrator(payment_source, payment_target, checkpoints)

        logs_run = await logs.start(options(run_id="logs"))
        payments_run = await payments.start(options(run_id="payments"))

        assert (await logs.wait(logs_run)).succeeded
        assert (await payments.wait(payments_run)).succeeded
        assert payment_target.size == 4

    @pytest.mark.asyncio
    async def test_duplicate_run_id_releases_marker(
        self, seeded_source, target_store, checkpoints
    ):
        migrator = make_migrator(seeded_source, target_store, checkpoints)
        await migrator.run(options(run_id="dup"))

        with pytest.raises(BackfillStateError):
            await migrator.start(options(run_id="dup"))

        assert await migrator.get_active_run() is None

    def test_store_class_must_match_codec(self, source_store, payment_target, checkpoints):
        with pytest.raises(ValueError):
            BackfillMigrator(
                source_store,
                payment_target,
                RecordCodec(RecordClass.INTEGRATION_LOGS),
                checkpoints,
            )


# =============================================================================
# Errors
# =============================================================================


class TestErrorBudget:
    @pytest.mark.asyncio
    async def test_exceeding_max_errors_fails_run(
        self, seeded_source, target_store, checkpoints
    ):
        """Three malformed rows exceed a budget of two."""
        for hour in (1, 2, 3):
            seeded_source.add_malformed_row(
                BASE_TIME + timedelta(hours=hour), {"log_id": 1000 + hour}, "null ServiceName"
            )
        migrator = make_migrator(seeded_source, target_store, checkpoints)

        result = await migrator.run(options(max_errors=2))

        assert result.status is BackfillStatus.FAILED
        assert result.records_failed == 3
        assert result.windows_completed == 0
        assert any("max_errors=2" in e for e in result.errors)
        assert await migrator.get_active_run() is None

        checkpoint = await migrator.get_checkpoint(result.run_id)
        assert checkpoint.cursor == RANGE_START
        assert checkpoint.status.is_resumable

    @pytest.mark.asyncio
    async def test_failures_within_budget_complete(
        self, seeded_source, target_store, checkpoints
    ):
        for hour in (1, 2):
            seeded_source.add_malformed_row(
                BASE_TIME + timedelta(hours=hour), {"log_id": 1000 + hour}, "null ServiceName"
            )
        migrator = make_migrator(seeded_source, target_store, checkpoints)

        result = await migrator.run(options(max_errors=2))

        assert result.status is BackfillStatus.COMPLETED
        assert result.records_failed == 2
        assert result.records_seen == 18
        assert result.records_migrated == 16

    @pytest.mark.asyncio
    async def test_rejected_target_writes_are_counted(
        self, seeded_source, target_store, checkpoints
    ):
        target_store.reject_ids(3, 9)
        migrator = make_migrator(seeded_source, target_store, checkpoints)

        result = await migrator.run(options())

        assert result.status is BackfillStatus.COMPLETED
        assert result.records_failed == 2
        assert result.records_migrated == 14
        assert any("not written to target" in e for e in result.errors)

    @pytest.mark.asyncio
    async def test_source_failure_fails_run(self, seeded_source, target_store, checkpoints):
        seeded_source.fail_reads()
        migrator = make_migrator(seeded_source, target_store, checkpoints)

        result = await migrator.run(options())

        assert result.status is BackfillStatus.FAILED
        assert result.records_seen == 0
        assert any("StoreError" in e for e in result.errors)

    @pytest.mark.asyncio
    async def test_failed_run_can_resume(self, seeded_source, target_store, checkpoints):
        seeded_source.fail_reads(times=1)
        migrator = make_migrator(seeded_source, target_store, checkpoints)

        failed = await migrator.run(options())
        resumed = await migrator.resume(failed.run_id)

        assert failed.status is BackfillStatus.FAILED
        assert resumed.status is BackfillStatus.COMPLETED
        assert resumed.records_migrated == 16


class TestExpiry:
    @pytest.mark.asyncio
    async def test_expired_records_are_skipped(self, seeded_source, target_store, checkpoints):
        """Records already past their 90-day retention are not written."""
        now = BASE_TIME + timedelta(days=90, hours=12)
        migrator = make_migrator(seeded_source, target_store, checkpoints, clock=lambda: now)

        result = await migrator.run(options())

        assert result.records_skipped == 3
        assert result.records_migrated == 13
        assert result.records_failed == 0
        assert target_store.size == 13


class TestIdempotentOverwrite:
    @pytest.mark.asyncio
    async def test_reprocessed_window_leaves_target_items_unchanged(
        self, seeded_source, target_store, checkpoints, log_codec
    ):
        """Windows committed before a crash are copied again without changing any item."""
        migrator = make_migrator(seeded_source, target_store, checkpoints)
        await migrator.run(options(run_id="first-pass"))
        records = seeded_source.all_records()
        before = [log_codec.digest(await target_store.get(r)) for r in records]

        await checkpoints.create(running_checkpoint("replay", 1, idle=timedelta(hours=1)))
        await checkpoints.claim(RecordClass.INTEGRATION_LOGS, "replay")
        result = await migrator.resume("replay")

        after = [log_codec.digest(await target_store.get(r)) for r in records]
        assert result.status is BackfillStatus.COMPLETED
        assert result.records_migrated == 16
        assert after == before
        assert after == [log_codec.digest(r) for r in records]
        assert target_store.size == 16


class TestFailureMidRange:
    @pytest.mark.asyncio
    async def test_checkpoint_kept_at_last_committed_window(
        self, seeded_source, target_store, checkpoints
    ):
        """Failures in the third window leave the cursor after the second."""
        third_window = RANGE_START + timedelta(days=2)
        for hour in (1, 2, 3):
            seeded_source.add_malformed_row(
                third_window + timedelta(hours=hour), {"log_id": 2000 + hour}, "null LogType"
            )
        migrator = make_migrator(seeded_source, target_store, checkpoints)

        result = await migrator.run(options(max_errors=2))

        checkpoint = await migrator.get_checkpoint(result.run_id)
        assert result.status is BackfillStatus.FAILED
        assert checkpoint.cursor == RANGE_START + timedelta(days=2)
        assert checkpoint.windows_completed == 2
        assert checkpoint.records_migrated == 8
        assert checkpoint.records_failed == 0

        seeded_source.clear_malformed_rows()
        resumed = await migrator.resume(result.run_id)

        assert resumed.status is BackfillStatus.COMPLETED
        assert resumed.windows_completed == 4
        assert target_store.size == 16


# =============================================================================
# Leases
# =============================================================================


class TestRunLease:
    @pytest.mark.asyncio
    async def test_live_run_cannot_be_resumed_by_another_migrator(
        self, seeded_source, checkpoints
    ):
        gated = GatedStore("target", RecordClass.INTEGRATION_LOGS)
        owner = make_migrator(seeded_source, gated, checkpoints)
        other = make_migrator(
            seeded_source, InMemoryRecordStore("target", RecordClass.INTEGRATION_LOGS), checkpoints
        )

        run_id = await owner.start(options(run_id="live"))
        await asyncio.sleep(0)

        with pytest.raises(BackfillStateError):
            await other.resume(run_id)
        assert not other.is_running(run_id)
        assert await checkpoints.get_active(RecordClass.INTEGRATION_LOGS) == run_id

        gated.gate.set()
        result = await owner.wait(run_id)
        assert result.status is BackfillStatus.COMPLETED
        assert gated.size == 16

    @pytest.mark.asyncio
    async def test_fresh_running_checkpoint_needs_force(
        self, seeded_source, target_store, checkpoints
    ):
        await checkpoints.create(running_checkpoint("fresh", 2, idle=timedelta(seconds=5)))
        await checkpoints.claim(RecordClass.INTEGRATION_LOGS, "fresh")
        migrator = make_migrator(seeded_source, target_store, checkpoints)

        with pytest.raises(BackfillStateError):
            await migrator.resume("fresh")

        result = await migrator.resume("fresh", force=True)
        assert result.status is BackfillStatus.COMPLETED
        assert result.windows_completed == 4

    @pytest.mark.asyncio
    async def test_short_lease_expires(self, seeded_source, target_store, checkpoints):
        await checkpoints.create(running_checkpoint("quiet", 2, idle=timedelta(seconds=5)))
        migrator = make_migrator(
            seeded_source, target_store, checkpoints, lease_timeout=timedelta(seconds=1)
        )

        result = await migrator.resume("quiet")

        assert result.status is BackfillStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_superseded_execution_returns_failed_result(self, seeded_source, checkpoints):
        """An execution whose run was finished elsewhere reports FAILED instead of raising."""
        gated = GatedStore("target", RecordClass.INTEGRATION_LOGS)
        owner = make_migrator(seeded_source, gated, checkpoints)
        other = make_migrator(
            seeded_source, InMemoryRecordStore("target", RecordClass.INTEGRATION_LOGS), checkpoints
        )

        run_id = await owner.start(options(run_id="contested"))
        taken_over = await other.resume(run_id, force=True)
        gated.gate.set()
        superseded = await owner.wait(run_id)

        assert taken_over.status is BackfillStatus.COMPLETED
        assert superseded.status is BackfillStatus.FAILED
        assert any("Final checkpoint save failed" in e for e in superseded.errors)
        persisted = await checkpoints.get(run_id)
        assert persisted.status is BackfillStatus.COMPLETED
        assert await checkpoints.get_active(RecordClass.INTEGRATION_LOGS) is None

    @pytest.mark.asyncio
    async def test_checkpoint_refreshed_between_pages(self, seeded_source, target_store):
        single_window = options(window=timedelta(days=4), page_size=1)
        default_lease = CountingRepository()
        await make_migrator(seeded_source, target_store, default_lease).run(single_window)

        short_lease = CountingRepository()
        migrator = make_migrator(
            seeded_source, target_store, short_lease, lease_timeout=timedelta(microseconds=1)
        )
        await migrator.run(single_window)

        # One window commit plus the final save.
        assert default_lease.saves == 2
        assert short_lease.saves > default_lease.saves

    def test_lease_timeout_must_be_positive(self, source_store, target_store, checkpoints):
        with pytest.raises(ValueError):
            make_migrator(source_store, target_store, checkpoints, lease_timeout=timedelta(0))
