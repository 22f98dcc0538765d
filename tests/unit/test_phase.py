"""
Unit tests for the Migration Phase Controller.

Tests cover:
- The routing table for every phase and override combination
- Forward-only advancement and operator rollback
- Override changes
- Persistence of state and audit entries
- Loading and refreshing persisted state
- Concurrent readers during a transition
"""

import asyncio

import pytest

from dualstore.exceptions import ConcurrentPhaseUpdateError, InvalidPhaseTransitionError
from dualstore.observability import MockTracer
from dualstore.phase import (
    MigrationPhase,
    PhaseAction,
    PhaseController,
    PhaseOverrides,
    PhaseState,
    RoutingPolicy,
)
from dualstore.records import RecordClass
from dualstore.repositories.phase import InMemoryPhaseStateRepository
from tests.factories import build_controller

# =============================================================================
# Routing table
# =============================================================================


class TestRoutingPolicy:
    @pytest.mark.parametrize(
        "phase,source,target,reads_target",
        [
            (MigrationPhase.SOURCE_ONLY, True, False, False),
            (MigrationPhase.DUAL_WRITE, True, True, False),
            (MigrationPhase.DUAL_WRITE_READ_TARGET, True, True, True),
            (MigrationPhase.TARGET_ONLY, False, True, True),
        ],
    )
    @pytest.mark.parametrize("require_both", [False, True])
    @pytest.mark.parametrize("continue_on_failure", [False, True])
    def test_policy_table(
        self, phase, source, target, reads_target, require_both, continue_on_failure
    ):
        """Each phase maps to exactly one row of the routing table."""
        policy = RoutingPolicy.for_phase(
            phase,
            PhaseOverrides(
                require_both_writes=require_both,
                continue_on_write_failure=continue_on_failure,
            ),
        )

        assert policy.writes_to_source is source
        assert policy.writes_to_target is target
        assert policy.reads_from_target is reads_target
        assert policy.continue_on_write_failure is continue_on_failure
        # Requiring both writes only applies while both stores are written.
        assert policy.require_both_writes is (require_both and source and target)

    def test_every_phase_writes_somewhere(self):
        for phase in MigrationPhase:
            policy = RoutingPolicy.for_phase(phase)
            assert policy.writes_to_source or policy.writes_to_target

    def test_is_dual_write(self):
        assert RoutingPolicy.for_phase(MigrationPhase.DUAL_WRITE).is_dual_write
        assert not RoutingPolicy.for_phase(MigrationPhase.TARGET_ONLY).is_dual_write


class TestMigrationPhase:
    def test_next_phase_chain(self):
        assert MigrationPhase.SOURCE_ONLY.next_phase is MigrationPhase.DUAL_WRITE
        assert MigrationPhase.DUAL_WRITE.next_phase is MigrationPhase.DUAL_WRITE_READ_TARGET
        assert MigrationPhase.DUAL_WRITE_READ_TARGET.next_phase is MigrationPhase.TARGET_ONLY
        assert MigrationPhase.TARGET_ONLY.next_phase is None

    def test_cannot_skip_phases(self):
        assert not MigrationPhase.SOURCE_ONLY.can_advance_to(MigrationPhase.TARGET_ONLY)

    def test_rollback_only_to_earlier(self):
        assert MigrationPhase.TARGET_ONLY.can_roll_back_to(MigrationPhase.SOURCE_ONLY)
        assert not MigrationPhase.DUAL_WRITE.can_roll_back_to(MigrationPhase.DUAL_WRITE)
        assert not MigrationPhase.DUAL_WRITE.can_roll_back_to(MigrationPhase.TARGET_ONLY)

    def test_state_derives_policy(self):
        state = PhaseState(record_class=RecordClass.PAYMENTS, phase=MigrationPhase.DUAL_WRITE)
        assert state.policy == RoutingPolicy.for_phase(MigrationPhase.DUAL_WRITE)


# =============================================================================
# Transitions
# =============================================================================


class TestAdvance:
    @pytest.mark.asyncio
    async def test_full_forward_sequence(self, controller: PhaseController):
        """The controller walks through all four phases in order."""
        await controller.advance_to_dual_write("alice")
        await controller.advance_to_read_from_target("alice")
        state = await controller.advance_to_target_only("alice", "cutover")

        assert state.phase is MigrationPhase.TARGET_ONLY
        assert state.version == 3
        assert state.updated_by == "alice"
        assert controller.get_routing_policy().writes_to_source is False

    @pytest.mark.asyncio
    async def test_skipping_a_phase_is_rejected(self, controller: PhaseController):
        """SOURCE_ONLY cannot jump straight to reading from the target."""
        with pytest.raises(InvalidPhaseTransitionError) as exc_info:
            await controller.advance_to_read_from_target("alice")

        assert exc_info.value.current_phase is MigrationPhase.SOURCE_ONLY
        assert exc_info.value.target_phase is MigrationPhase.DUAL_WRITE_READ_TARGET
        assert controller.phase is MigrationPhase.SOURCE_ONLY

    @pytest.mark.asyncio
    async def test_repeating_an_advance_is_rejected(self, controller: PhaseController):
        await controller.advance_to_dual_write("alice")
        with pytest.raises(InvalidPhaseTransitionError):
            await controller.advance_to_dual_write("alice")
        assert controller.state.version == 1

    @pytest.mark.asyncio
    async def test_advance_is_audited(
        self, controller: PhaseController, phase_repo: InMemoryPhaseStateRepository
    ):
        """Every change is saved together with an audit entry."""
        await controller.advance_to_dual_write("alice", "backfill done")

        persisted = await phase_repo.get(RecordClass.INTEGRATION_LOGS)
        audit = await controller.get_audit_log()

        assert persisted is not None
        assert persisted.phase is MigrationPhase.DUAL_WRITE
        assert len(audit) == 1
        assert audit[0].action is PhaseAction.ADVANCE
        assert audit[0].from_phase is MigrationPhase.SOURCE_ONLY
        assert audit[0].to_phase is MigrationPhase.DUAL_WRITE
        assert audit[0].operator == "alice"
        assert audit[0].reason == "backfill done"

    @pytest.mark.asyncio
    async def test_advance_opens_span(self, phase_repo: InMemoryPhaseStateRepository):
        tracer = MockTracer()
        controller = PhaseController(
            RecordClass.PAYMENTS, phase_repo, tracer=tracer, enable_tracing=False
        )
        await controller.advance_to_dual_write("alice")
        assert "dualstore.phase.advance" in tracer.span_names


class TestRollback:
    @pytest.mark.asyncio
    async def test_rollback_to_earlier_phase(self, controller: PhaseController):
        await controller.advance_to_dual_write("alice")
        await controller.advance_to_read_from_target("alice")

        state = await controller.rollback(MigrationPhase.SOURCE_ONLY, "bob", "target throttling")

        assert state.phase is MigrationPhase.SOURCE_ONLY
        audit = await controller.get_audit_log()
        assert audit[0].action is PhaseAction.ROLLBACK
        assert audit[0].reason == "target throttling"
        assert audit[0].operator == "bob"

    @pytest.mark.asyncio
    async def test_rollback_requires_reason(self, controller: PhaseController):
        await controller.advance_to_dual_write("alice")
        with pytest.raises(ValueError):
            await controller.rollback(MigrationPhase.SOURCE_ONLY, "bob", "")

    @pytest.mark.asyncio
    async def test_rollback_cannot_move_forward(self, controller: PhaseController):
        with pytest.raises(InvalidPhaseTransitionError):
            await controller.rollback(MigrationPhase.DUAL_WRITE, "bob", "oops")


class TestOverrides:
    @pytest.mark.asyncio
    async def test_set_overrides_keeps_phase(self, controller: PhaseController):
        await controller.advance_to_dual_write("alice")

        state = await controller.set_overrides("alice", require_both_writes=True)

        assert state.phase is MigrationPhase.DUAL_WRITE
        assert state.overrides.require_both_writes is True
        assert state.overrides.continue_on_write_failure is True
        assert controller.get_routing_policy().require_both_writes is True

    @pytest.mark.asyncio
    async def test_unchanged_overrides_do_not_bump_version(self, controller: PhaseController):
        state = await controller.set_overrides("alice", continue_on_write_failure=True)
        assert state.version == 0
        assert await controller.get_audit_log() == []


# =============================================================================
# Loading and concurrency
# =============================================================================


class TestLoading:
    @pytest.mark.asyncio
    async def test_load_restores_persisted_state(self, phase_repo: InMemoryPhaseStateRepository):
        """A new controller picks up where the previous process left off."""
        first = build_controller(RecordClass.INTEGRATION_LOGS, repository=phase_repo)
        await first.advance_to_dual_write("alice")

        second = build_controller(RecordClass.INTEGRATION_LOGS, repository=phase_repo)
        state = await second.load()

        assert state.phase is MigrationPhase.DUAL_WRITE
        assert state.version == 1

    @pytest.mark.asyncio
    async def test_load_without_persisted_state_keeps_initial(self):
        controller = build_controller(RecordClass.PAYMENTS, MigrationPhase.DUAL_WRITE)
        state = await controller.load()
        assert state.phase is MigrationPhase.DUAL_WRITE
        assert state.version == 0

    @pytest.mark.asyncio
    async def test_phases_are_per_record_class(self, phase_repo: InMemoryPhaseStateRepository):
        logs = build_controller(RecordClass.INTEGRATION_LOGS, repository=phase_repo)
        payments = build_controller(RecordClass.PAYMENTS, repository=phase_repo)

        await logs.advance_to_dual_write("alice")
        await payments.load()

        assert payments.phase is MigrationPhase.SOURCE_ONLY

    @pytest.mark.asyncio
    async def test_stale_controller_cannot_overwrite(
        self, phase_repo: InMemoryPhaseStateRepository
    ):
        """Optimistic versioning rejects a change based on an outdated state."""
        first = build_controller(RecordClass.INTEGRATION_LOGS, repository=phase_repo)
        second = build_controller(RecordClass.INTEGRATION_LOGS, repository=phase_repo)
        await first.advance_to_dual_write("alice")

        with pytest.raises(ConcurrentPhaseUpdateError):
            await second.advance_to_dual_write("bob")

        refreshed = await second.refresh()
        assert refreshed.phase is MigrationPhase.DUAL_WRITE


class TestConcurrentReads:
    @pytest.mark.asyncio
    async def test_readers_see_whole_snapshots(self, controller: PhaseController):
        """Readers during a transition see either the old or the new policy."""
        valid = {RoutingPolicy.for_phase(phase) for phase in MigrationPhase}
        seen: list[RoutingPolicy] = []

        async def reader():
            for _ in range(200):
                seen.append(controller.get_routing_policy())
                await asyncio.sleep(0)

        async def writer():
            await controller.advance_to_dual_write("alice")
            await controller.advance_to_read_from_target("alice")

        await asyncio.gather(reader(), reader(), writer())

        assert all(policy in valid for policy in seen)
        assert controller.phase is MigrationPhase.DUAL_WRITE_READ_TARGET
