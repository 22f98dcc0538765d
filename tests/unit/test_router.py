"""
Unit tests for HybridRouter.

Tests cover:
- Which stores are written and read in every phase
- SUCCESS, DEGRADED and FAILED outcomes under the durability flags
- Retry of transient errors
- Batch writes with partially rejected records
- Failure tracking and statistics
- Payment reads and status updates through the router
"""

from datetime import timedelta

import pytest

from dualstore.exceptions import (
    DualWriteFailureError,
    ErrorHandler,
    InvalidPaymentStatusTransition,
    RecordNotFoundError,
    RetryConfig,
    StoreError,
    TransientStoreError,
)
from dualstore.observability import MockTracer
from dualstore.phase import MigrationPhase, PhaseController, RoutingPolicy
from dualstore.records import PaymentStatus, RecordClass
from dualstore.router import (
    HybridRouter,
    StoreWriteResult,
    WriteStatus,
    insert_batch_with_retry,
    resolve_status,
)
from dualstore.stores.interface import SOURCE_ROLE, TARGET_ROLE, BatchWriteResult
from dualstore.stores.memory import InMemoryRecordStore
from tests.factories import BASE_TIME, build_controller, make_log, make_payment

# =============================================================================
# Fixtures
# =============================================================================


def make_router(
    phase: MigrationPhase,
    source: InMemoryRecordStore,
    target: InMemoryRecordStore,
    *,
    require_both_writes: bool = False,
    continue_on_write_failure: bool = True,
    retry_config: RetryConfig | None = None,
) -> HybridRouter:
    controller = build_controller(
        source.record_class,
        phase,
        require_both_writes=require_both_writes,
        continue_on_write_failure=continue_on_write_failure,
    )
    return HybridRouter(
        controller,
        source,
        target,
        retry_config=retry_config or RetryConfig(max_attempts=3, base_delay_ms=0, max_delay_ms=0),
        enable_tracing=False,
    )


# =============================================================================
# Status resolution
# =============================================================================


class TestResolveStatus:
    def _result(self, attempted: bool, succeeded: bool) -> StoreWriteResult:
        return StoreWriteResult(
            store="s", role=SOURCE_ROLE, attempted=attempted, succeeded=succeeded
        )

    def test_all_attempted_succeeded(self):
        policy = RoutingPolicy.for_phase(MigrationPhase.DUAL_WRITE)
        results = [self._result(True, True), self._result(True, True)]
        assert resolve_status(results, policy) is WriteStatus.SUCCESS

    def test_one_of_two_succeeded_is_degraded(self):
        policy = RoutingPolicy.for_phase(MigrationPhase.DUAL_WRITE)
        results = [self._result(True, True), self._result(True, False)]
        assert resolve_status(results, policy) is WriteStatus.DEGRADED

    def test_skipped_legs_are_ignored(self):
        policy = RoutingPolicy.for_phase(MigrationPhase.SOURCE_ONLY)
        results = [self._result(True, True), self._result(False, False)]
        assert resolve_status(results, policy) is WriteStatus.SUCCESS

    def test_nothing_succeeded_is_failed(self):
        policy = RoutingPolicy.for_phase(MigrationPhase.DUAL_WRITE)
        results = [self._result(True, False), self._result(True, False)]
        assert resolve_status(results, policy) is WriteStatus.FAILED


# =============================================================================
# Routing per phase
# =============================================================================


class TestWriteRouting:
    @pytest.mark.parametrize(
        "phase,in_source,in_target",
        [
            (MigrationPhase.SOURCE_ONLY, True, False),
            (MigrationPhase.DUAL_WRITE, True, True),
            (MigrationPhase.DUAL_WRITE_READ_TARGET, True, True),
            (MigrationPhase.TARGET_ONLY, False, True),
        ],
    )
    @pytest.mark.asyncio
    async def test_write_lands_in_policy_stores(
        self, source_store, target_store, phase, in_source, in_target
    ):
        """A successful write is present in exactly the stores the phase names."""
        router = make_router(phase, source_store, target_store)
        record = make_log(1)

        outcome = await router.write_record(record)

        assert outcome.status is WriteStatus.SUCCESS
        assert (await source_store.get(record) is not None) is in_source
        assert (await target_store.get(record) is not None) is in_target
        assert outcome.result_for(SOURCE_ROLE).attempted is in_source
        assert outcome.result_for(TARGET_ROLE).attempted is in_target

    @pytest.mark.parametrize(
        "phase,reads_target",
        [
            (MigrationPhase.SOURCE_ONLY, False),
            (MigrationPhase.DUAL_WRITE, False),
            (MigrationPhase.DUAL_WRITE_READ_TARGET, True),
            (MigrationPhase.TARGET_ONLY, True),
        ],
    )
    @pytest.mark.asyncio
    async def test_reads_use_exactly_one_store(
        self, source_store, target_store, phase, reads_target
    ):
        router = make_router(phase, source_store, target_store)
        await source_store.insert(make_log(1, application_id=5))
        await target_store.insert(make_log(2, application_id=5))

        logs = await router.read_by_application(5)

        expected_id = 2 if reads_target else 1
        assert [log.log_id for log in logs] == [expected_id]
        assert router.read_store() is (target_store if reads_target else source_store)

    @pytest.mark.asyncio
    async def test_phase_change_applies_to_next_write(
        self, controller: PhaseController, router: HybridRouter, target_store
    ):
        await router.write_record(make_log(1))
        await controller.advance_to_dual_write("alice")
        await router.write_record(make_log(2))

        assert [r.log_id for r in target_store.all_records()] == [2]


# =============================================================================
# Durability flags
# =============================================================================


class TestWriteFailures:
    @pytest.mark.asyncio
    async def test_target_failure_is_degraded(self, source_store, target_store):
        """With the default policy a lost target leg degrades the write."""
        router = make_router(MigrationPhase.DUAL_WRITE, source_store, target_store)
        target_store.fail_writes()

        outcome = await router.write_record(make_log(1))

        assert outcome.status is WriteStatus.DEGRADED
        assert outcome.succeeded
        assert outcome.failed_stores == ["target"]
        assert source_store.size == 1

    @pytest.mark.asyncio
    async def test_require_both_writes_fails_on_one_leg(self, source_store, target_store):
        """Requiring both writes turns a one-sided success into FAILED."""
        router = make_router(
            MigrationPhase.DUAL_WRITE,
            source_store,
            target_store,
            require_both_writes=True,
        )
        target_store.fail_writes()

        outcome = await router.write_record(make_log(1))

        assert outcome.status is WriteStatus.FAILED
        assert outcome.failed_stores == ["target"]

    @pytest.mark.asyncio
    async def test_failed_write_raises_when_not_continuing(self, source_store, target_store):
        router = make_router(
            MigrationPhase.DUAL_WRITE,
            source_store,
            target_store,
            require_both_writes=True,
            continue_on_write_failure=False,
        )
        source_store.fail_writes()

        with pytest.raises(DualWriteFailureError) as exc_info:
            await router.write_record(make_log(1))

        assert exc_info.value.outcome.status is WriteStatus.FAILED
        assert exc_info.value.outcome.failed_stores == ["source"]

    @pytest.mark.asyncio
    async def test_degraded_write_does_not_raise(self, source_store, target_store):
        """Only FAILED outcomes raise; a degraded write is returned."""
        router = make_router(
            MigrationPhase.DUAL_WRITE,
            source_store,
            target_store,
            continue_on_write_failure=False,
        )
        target_store.fail_writes()

        outcome = await router.write_record(make_log(1))

        assert outcome.status is WriteStatus.DEGRADED

    @pytest.mark.asyncio
    async def test_single_store_failure_is_failed(self, source_store, target_store):
        router = make_router(MigrationPhase.SOURCE_ONLY, source_store, target_store)
        source_store.fail_writes()

        outcome = await router.write_record(make_log(1))

        assert outcome.status is WriteStatus.FAILED

    @pytest.mark.asyncio
    async def test_transient_errors_are_retried(self, source_store, target_store):
        """A transient error followed by success counts as a successful leg."""
        router = make_router(MigrationPhase.DUAL_WRITE, source_store, target_store)
        target_store.fail_writes(TransientStoreError("target", "insert", "throttled"), times=2)

        outcome = await router.write_record(make_log(1))

        assert outcome.status is WriteStatus.SUCCESS
        assert outcome.result_for(TARGET_ROLE).attempts == 3

    @pytest.mark.asyncio
    async def test_permanent_errors_are_not_retried(self, source_store, target_store):
        router = make_router(MigrationPhase.DUAL_WRITE, source_store, target_store)
        target_store.fail_writes(StoreError("target", "insert", "validation"), times=5)

        outcome = await router.write_record(make_log(1))

        result = outcome.result_for(TARGET_ROLE)
        assert result.attempts == 1
        assert result.retryable is False

    @pytest.mark.asyncio
    async def test_exhausted_retries_report_retryable(self, source_store, target_store):
        router = make_router(MigrationPhase.DUAL_WRITE, source_store, target_store)
        target_store.fail_writes(TransientStoreError("target", "insert", "throttled"))

        outcome = await router.write_record(make_log(1))

        result = outcome.result_for(TARGET_ROLE)
        assert result.attempts == 3
        assert result.retryable is True
        assert outcome.retryable is True


# =============================================================================
# Batches
# =============================================================================


class TestWriteBatch:
    @pytest.mark.asyncio
    async def test_batch_written_to_both_stores(self, source_store, target_store):
        router = make_router(MigrationPhase.DUAL_WRITE, source_store, target_store)
        records = [make_log(i) for i in range(60)]

        outcome = await router.write_batch(records)

        assert outcome.status is WriteStatus.SUCCESS
        assert outcome.record_count == 60
        assert source_store.size == 60
        assert target_store.size == 60

    @pytest.mark.asyncio
    async def test_rejected_records_reported_by_key(self, source_store, target_store):
        """Records the target refuses are listed; the others are written."""
        router = make_router(MigrationPhase.DUAL_WRITE, source_store, target_store)
        target_store.reject_ids(3, 7)
        records = [make_log(i) for i in range(10)]

        outcome = await router.write_batch(records)

        target = outcome.result_for(TARGET_ROLE)
        assert outcome.status is WriteStatus.DEGRADED
        assert target.written == 8
        assert [k["log_id"] for k in target.failed_keys] == [3, 7]

    @pytest.mark.asyncio
    async def test_empty_batch_rejected(self, router: HybridRouter):
        with pytest.raises(ValueError):
            await router.write_batch([])

    @pytest.mark.asyncio
    async def test_wrong_record_class_rejected(self, router: HybridRouter):
        with pytest.raises(ValueError):
            await router.write_record(make_payment(1))


class TestInsertBatchWithRetry:
    @pytest.mark.asyncio
    async def test_only_failed_records_are_resent(self, target_store):
        """Retryable partial failures re-send just the unprocessed records."""
        calls: list[int] = []
        original = target_store.insert_batch
        state = {"first": True}

        async def flaky_insert_batch(records):
            calls.append(len(records))
            if state["first"]:
                state["first"] = False
                result = await original(records[:8])
                return BatchWriteResult(
                    written=result.written,
                    failed_records=tuple(records[8:]),
                    errors=("2 items unprocessed",),
                    retryable=True,
                )
            return await original(records)

        target_store.insert_batch = flaky_insert_batch
        handler = ErrorHandler(RetryConfig(max_attempts=3, base_delay_ms=0, max_delay_ms=0))

        result = await insert_batch_with_retry(
            target_store, TARGET_ROLE, [make_log(i) for i in range(10)], handler
        )

        assert result.succeeded
        assert result.written == 10
        assert calls == [10, 2]


# =============================================================================
# Failure tracking
# =============================================================================


class TestFailureTracking:
    @pytest.mark.asyncio
    async def test_failed_legs_are_recorded(self, source_store, target_store):
        router = make_router(MigrationPhase.DUAL_WRITE, source_store, target_store)
        target_store.fail_writes()

        await router.write_record(make_log(1))
        await router.write_batch([make_log(2), make_log(3)])

        failures = router.get_failed_writes()
        stats = router.get_failure_stats()
        assert len(failures) == 2
        assert failures[0].record_keys[0]["log_id"] == 1
        assert failures[0].role == TARGET_ROLE
        assert stats.total_failures == 2
        assert stats.total_records_failed == 3
        assert stats.failures_by_store == {"target": 2}
        assert stats.first_failure_at <= stats.last_failure_at

    @pytest.mark.asyncio
    async def test_history_is_bounded(self, source_store, target_store):
        controller = build_controller(RecordClass.INTEGRATION_LOGS, MigrationPhase.DUAL_WRITE)
        router = HybridRouter(
            controller,
            source_store,
            target_store,
            retry_config=RetryConfig(max_attempts=1, base_delay_ms=0, max_delay_ms=0),
            enable_tracing=False,
            max_failure_history=3,
        )
        target_store.fail_writes()

        for i in range(5):
            await router.write_record(make_log(i))

        kept = [fw.record_keys[0]["log_id"] for fw in router.get_failed_writes()]
        assert kept == [2, 3, 4]

    @pytest.mark.asyncio
    async def test_clear_failure_history(self, source_store, target_store):
        router = make_router(MigrationPhase.DUAL_WRITE, source_store, target_store)
        target_store.fail_writes()
        await router.write_record(make_log(1))

        assert router.clear_failure_history() == 1
        assert router.get_failure_stats().total_failures == 0


# =============================================================================
# Reads
# =============================================================================


class TestReads:
    @pytest.mark.asyncio
    async def test_read_retries_transient_errors(self, router: HybridRouter, source_store):
        await source_store.insert(make_log(1))
        source_store.fail_reads(TransientStoreError("source", "query", "timeout"), times=1)

        assert await router.distinct_service_names() == ["CreditBureau"]

    @pytest.mark.asyncio
    async def test_count_records_defaults_to_today(self, router: HybridRouter, source_store):
        await source_store.insert(make_log(1))
        assert await router.count_records() == 0
        assert (
            await router.count_records(BASE_TIME, BASE_TIME + timedelta(days=1)) == 1
        )

    @pytest.mark.asyncio
    async def test_read_by_time_range_is_half_open(self, router: HybridRouter, source_store):
        for i in range(1, 4):
            await source_store.insert(make_log(i))

        start = BASE_TIME + timedelta(minutes=1)
        logs = await router.read_by_time_range("CreditBureau", start, start + timedelta(minutes=2))

        assert [log.log_id for log in logs] == [1, 2]

    @pytest.mark.asyncio
    async def test_error_logs_by_date(self, router: HybridRouter, source_store):
        await source_store.insert(make_log(1))
        await source_store.insert(make_log(2, is_success=False, error_message="502"))

        logs = await router.read_error_logs_by_date(BASE_TIME.date())

        assert [log.log_id for log in logs] == [2]

    @pytest.mark.asyncio
    async def test_read_spans(self, controller, source_store, target_store):
        tracer = MockTracer()
        router = HybridRouter(controller, source_store, target_store, tracer=tracer)

        await router.read_by_application(1)

        assert "dualstore.router.read_by_application" in tracer.span_names


class TestPayments:
    @pytest.fixture
    def payment_router(self, payment_source, payment_target) -> HybridRouter:
        return make_router(MigrationPhase.DUAL_WRITE, payment_source, payment_target)

    @pytest.mark.asyncio
    async def test_payment_queries(self, payment_router: HybridRouter):
        for i in range(1, 5):
            await payment_router.write_record(make_payment(i))

        by_customer = await payment_router.read_payments_by_customer(7, limit=2)
        by_loan = await payment_router.read_payments_by_loan(101)
        pending = await payment_router.read_payments_by_status(PaymentStatus.PENDING)

        assert [p.payment_id for p in by_customer] == [4, 3]
        assert [p.payment_id for p in by_loan] == [4, 1]
        assert len(pending) == 4

    @pytest.mark.asyncio
    async def test_update_payment_status_writes_both_stores(
        self, payment_router: HybridRouter, payment_target
    ):
        await payment_router.write_record(make_payment(1))

        outcome = await payment_router.update_payment_status(1, PaymentStatus.COMPLETED)

        assert outcome.status is WriteStatus.SUCCESS
        assert await payment_router.read_payment_status(1) is PaymentStatus.COMPLETED
        stored = await payment_target.get_payment(1)
        assert stored.status is PaymentStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_update_rejects_regression(self, payment_router: HybridRouter):
        await payment_router.write_record(make_payment(1, status=PaymentStatus.COMPLETED))

        with pytest.raises(InvalidPaymentStatusTransition):
            await payment_router.update_payment_status(1, PaymentStatus.PENDING)

    @pytest.mark.asyncio
    async def test_update_missing_payment(self, payment_router: HybridRouter):
        with pytest.raises(RecordNotFoundError):
            await payment_router.update_payment_status(99, PaymentStatus.COMPLETED)

    def test_mismatched_stores_rejected(self, payment_source, target_store):
        controller = build_controller(RecordClass.PAYMENTS)
        with pytest.raises(ValueError):
            HybridRouter(controller, payment_source, target_store, enable_tracing=False)
