"""
Migration phase controller.

The controller exclusively owns the migration phase of one record class
and the routing policy derived from it. Readers (the router, on every
record operation) get an immutable snapshot without locking; transitions
are serialized, persisted first and only then published by swapping the
snapshot reference.

State machine:
    SOURCE_ONLY -> DUAL_WRITE -> DUAL_WRITE_READ_TARGET -> TARGET_ONLY

Transitions only move one step forward. Moving back is a separate,
explicitly audited ``rollback`` operation.

Usage:
    >>> controller = PhaseController(RecordClass.INTEGRATION_LOGS, repository)
    >>> await controller.load()
    >>> await controller.advance_to_dual_write(operator="ops@example.com")
    >>> controller.get_routing_policy().writes_to_target
    True
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from dualstore.exceptions import InvalidPhaseTransitionError
from dualstore.observability import (
    ATTR_MIGRATION_OPERATOR,
    ATTR_MIGRATION_PHASE,
    ATTR_RECORD_CLASS,
    Tracer,
    create_tracer,
)
from dualstore.records import RecordClass

if TYPE_CHECKING:
    from dualstore.repositories.phase import PhaseStateRepository

logger = logging.getLogger(__name__)

SYSTEM_OPERATOR = "system"


class MigrationPhase(Enum):
    """
    Migration phases in their strict linear order.

    Attributes:
        SOURCE_ONLY: Relational store only.
        DUAL_WRITE: Writes to both stores, reads from the source.
        DUAL_WRITE_READ_TARGET: Writes to both stores, reads from the target.
        TARGET_ONLY: Target store only; cutover complete.
    """

    SOURCE_ONLY = "source_only"
    DUAL_WRITE = "dual_write"
    DUAL_WRITE_READ_TARGET = "dual_write_read_target"
    TARGET_ONLY = "target_only"

    @property
    def order(self) -> int:
        """Position in the phase sequence (0-based)."""
        return _PHASE_ORDER.index(self)

    @property
    def next_phase(self) -> MigrationPhase | None:
        """The only phase this one may advance to, or None at the end."""
        index = self.order + 1
        return _PHASE_ORDER[index] if index < len(_PHASE_ORDER) else None

    def can_advance_to(self, target: MigrationPhase) -> bool:
        return self.next_phase == target

    def can_roll_back_to(self, target: MigrationPhase) -> bool:
        return target.order < self.order


_PHASE_ORDER: tuple[MigrationPhase, ...] = (
    MigrationPhase.SOURCE_ONLY,
    MigrationPhase.DUAL_WRITE,
    MigrationPhase.DUAL_WRITE_READ_TARGET,
    MigrationPhase.TARGET_ONLY,
)


@dataclass(frozen=True)
class PhaseOverrides:
    """
    Operator-tunable durability flags, independent of the phase.

    Attributes:
        require_both_writes: A write succeeds only if every written store
            succeeds. Only meaningful while both stores are written.
        continue_on_write_failure: A failed write is returned as an outcome
            instead of raising DualWriteFailureError.
    """

    require_both_writes: bool = False
    continue_on_write_failure: bool = True

    def to_dict(self) -> dict[str, bool]:
        return {
            "require_both_writes": self.require_both_writes,
            "continue_on_write_failure": self.continue_on_write_failure,
        }


@dataclass(frozen=True)
class RoutingPolicy:
    """
    Which stores a record operation touches.

    Derived, never stored: see ``for_phase``.

    Phase table:
        =========================  ======  ======  ===========
        phase                      source  target  reads from
        =========================  ======  ======  ===========
        SOURCE_ONLY                write   -       source
        DUAL_WRITE                 write   write   source
        DUAL_WRITE_READ_TARGET     write   write   target
        TARGET_ONLY                -       write   target
        =========================  ======  ======  ===========
    """

    writes_to_source: bool
    writes_to_target: bool
    reads_from_target: bool
    require_both_writes: bool
    continue_on_write_failure: bool

    @classmethod
    def for_phase(
        cls,
        phase: MigrationPhase,
        overrides: PhaseOverrides | None = None,
    ) -> RoutingPolicy:
        """Pure derivation of the policy for a phase and override flags."""
        overrides = overrides or PhaseOverrides()
        writes_to_source = phase is not MigrationPhase.TARGET_ONLY
        writes_to_target = phase is not MigrationPhase.SOURCE_ONLY
        reads_from_target = phase in (
            MigrationPhase.DUAL_WRITE_READ_TARGET,
            MigrationPhase.TARGET_ONLY,
        )
        return cls(
            writes_to_source=writes_to_source,
            writes_to_target=writes_to_target,
            reads_from_target=reads_from_target,
            require_both_writes=(
                overrides.require_both_writes and writes_to_source and writes_to_target
            ),
            continue_on_write_failure=overrides.continue_on_write_failure,
        )

    @property
    def is_dual_write(self) -> bool:
        return self.writes_to_source and self.writes_to_target

    def to_dict(self) -> dict[str, bool]:
        return {
            "writes_to_source": self.writes_to_source,
            "writes_to_target": self.writes_to_target,
            "reads_from_target": self.reads_from_target,
            "require_both_writes": self.require_both_writes,
            "continue_on_write_failure": self.continue_on_write_failure,
        }


@dataclass(frozen=True)
class PhaseState:
    """
    Versioned phase snapshot of one record class.

    ``policy`` is computed once at construction so readers never derive it.

    Attributes:
        record_class: Record class the state belongs to.
        phase: Current phase.
        overrides: Current override flags.
        version: Incremented on every persisted change (0 = never persisted).
        updated_at: Time of the last change.
        updated_by: Operator of the last change.
    """

    record_class: RecordClass
    phase: MigrationPhase
    overrides: PhaseOverrides = field(default_factory=PhaseOverrides)
    version: int = 0
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_by: str = SYSTEM_OPERATOR
    policy: RoutingPolicy = field(init=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "policy", RoutingPolicy.for_phase(self.phase, self.overrides))

    def to_dict(self) -> dict[str, Any]:
        return {
            "record_class": self.record_class.value,
            "phase": self.phase.value,
            "overrides": self.overrides.to_dict(),
            "version": self.version,
            "updated_at": self.updated_at.isoformat(),
            "updated_by": self.updated_by,
            "policy": self.policy.to_dict(),
        }


class PhaseAction(Enum):
    ADVANCE = "advance"
    ROLLBACK = "rollback"
    SET_OVERRIDES = "set_overrides"


@dataclass(frozen=True)
class PhaseAuditEntry:
    """
    One audited change of a record class's phase state.

    Attributes:
        record_class: Record class that changed.
        action: Kind of change.
        from_phase: Phase before the change.
        to_phase: Phase after the change.
        version: State version after the change.
        operator: Who made the change.
        occurred_at: When the change was made.
        reason: Optional operator-supplied reason.
        details: Extra context (e.g. override values).
    """

    record_class: RecordClass
    action: PhaseAction
    from_phase: MigrationPhase
    to_phase: MigrationPhase
    version: int
    operator: str
    occurred_at: datetime
    reason: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "record_class": self.record_class.value,
            "action": self.action.value,
            "from_phase": self.from_phase.value,
            "to_phase": self.to_phase.value,
            "version": self.version,
            "operator": self.operator,
            "occurred_at": self.occurred_at.isoformat(),
            "reason": self.reason,
            "details": self.details,
        }


class PhaseController:
    """
    Owns the phase and routing policy of one record class.

    ``get_routing_policy`` and ``state`` read a single reference that is
    replaced, never mutated, so concurrent readers see either the old or
    the new snapshot. All changes run under an asyncio.Lock, are saved to
    the repository together with their audit entry, and are published only
    after the save returns.

    Example:
        >>> controller = PhaseController(
        ...     RecordClass.PAYMENTS,
        ...     InMemoryPhaseStateRepository(),
        ...     initial_phase=MigrationPhase.SOURCE_ONLY,
        ... )
        >>> await controller.load()
        >>> await controller.advance_to_dual_write("alice")
        >>> await controller.rollback(MigrationPhase.SOURCE_ONLY, "alice", "target throttling")
    """

    def __init__(
        self,
        record_class: RecordClass,
        repository: PhaseStateRepository,
        *,
        initial_phase: MigrationPhase = MigrationPhase.SOURCE_ONLY,
        initial_overrides: PhaseOverrides | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the controller.

        Args:
            record_class: Record class whose phase this controller owns.
            repository: Persistence for phase state and audit entries.
            initial_phase: Phase used when nothing has been persisted.
            initial_overrides: Override flags used when nothing has been persisted.
            tracer: Optional custom Tracer instance.
            enable_tracing: Whether to enable OpenTelemetry tracing.
        """
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._record_class = record_class
        self._repository = repository
        self._lock = asyncio.Lock()
        self._state = PhaseState(
            record_class=record_class,
            phase=initial_phase,
            overrides=initial_overrides or PhaseOverrides(),
        )

    # =========================================================================
    # Reads
    # =========================================================================

    @property
    def record_class(self) -> RecordClass:
        return self._record_class

    @property
    def state(self) -> PhaseState:
        """Current immutable snapshot."""
        return self._state

    @property
    def phase(self) -> MigrationPhase:
        return self._state.phase

    def get_routing_policy(self) -> RoutingPolicy:
        """Routing policy of the current snapshot; never blocks."""
        return self._state.policy

    async def get_audit_log(self, limit: int = 100) -> list[PhaseAuditEntry]:
        """Most recent audit entries, newest first."""
        return await self._repository.get_audit_log(self._record_class, limit=limit)

    # =========================================================================
    # Loading
    # =========================================================================

    async def load(self) -> PhaseState:
        """
        Restore the persisted state, if any.

        When nothing is persisted the configured initial state stays in
        effect (version 0) until the first change saves it.
        """
        async with self._lock:
            persisted = await self._repository.get(self._record_class)
            if persisted is not None:
                self._state = persisted
                logger.info(
                    "Loaded %s phase %s (version %d)",
                    self._record_class.value,
                    persisted.phase.value,
                    persisted.version,
                )
            else:
                logger.info(
                    "No persisted phase for %s; using %s",
                    self._record_class.value,
                    self._state.phase.value,
                )
            return self._state

    async def refresh(self) -> PhaseState:
        """Adopt a newer persisted state written by another process."""
        async with self._lock:
            persisted = await self._repository.get(self._record_class)
            if persisted is not None and persisted.version > self._state.version:
                self._state = persisted
            return self._state

    # =========================================================================
    # Transitions
    # =========================================================================

    async def advance_to_dual_write(self, operator: str, reason: str | None = None) -> PhaseState:
        """
        SOURCE_ONLY -> DUAL_WRITE.

        Raises:
            InvalidPhaseTransitionError: If the current phase is not SOURCE_ONLY.
        """
        return await self._advance(MigrationPhase.DUAL_WRITE, operator, reason)

    async def advance_to_read_from_target(
        self, operator: str, reason: str | None = None
    ) -> PhaseState:
        """
        DUAL_WRITE -> DUAL_WRITE_READ_TARGET.

        Raises:
            InvalidPhaseTransitionError: If the current phase is not DUAL_WRITE.
        """
        return await self._advance(MigrationPhase.DUAL_WRITE_READ_TARGET, operator, reason)

    async def advance_to_target_only(self, operator: str, reason: str | None = None) -> PhaseState:
        """
        DUAL_WRITE_READ_TARGET -> TARGET_ONLY.

        Raises:
            InvalidPhaseTransitionError: If the current phase is not
                DUAL_WRITE_READ_TARGET.
        """
        return await self._advance(MigrationPhase.TARGET_ONLY, operator, reason)

    async def rollback(
        self,
        to_phase: MigrationPhase,
        operator: str,
        reason: str,
    ) -> PhaseState:
        """
        Move back to an earlier phase.

        Rollback is never automatic: it requires an operator and a reason
        and is audited as a rollback, not an advance.

        Raises:
            InvalidPhaseTransitionError: If ``to_phase`` is not earlier than
                the current phase.
            ValueError: If no reason is given.
        """
        if not reason:
            raise ValueError("rollback requires a reason")
        async with self._lock:
            current = self._state
            if not current.phase.can_roll_back_to(to_phase):
                raise InvalidPhaseTransitionError(
                    current.phase,
                    to_phase,
                    record_class=self._record_class,
                    reason="rollback must target an earlier phase",
                )
            new_state = replace(
                current,
                phase=to_phase,
                version=current.version + 1,
                updated_at=datetime.now(UTC),
                updated_by=operator,
            )
            await self._commit(current, new_state, PhaseAction.ROLLBACK, reason, {})
            logger.warning(
                "Rolled back %s from %s to %s by %s: %s",
                self._record_class.value,
                current.phase.value,
                to_phase.value,
                operator,
                reason,
            )
            return new_state

    async def set_overrides(
        self,
        operator: str,
        *,
        require_both_writes: bool | None = None,
        continue_on_write_failure: bool | None = None,
        reason: str | None = None,
    ) -> PhaseState:
        """Change the override flags without changing the phase."""
        async with self._lock:
            current = self._state
            overrides = PhaseOverrides(
                require_both_writes=(
                    current.overrides.require_both_writes
                    if require_both_writes is None
                    else require_both_writes
                ),
                continue_on_write_failure=(
                    current.overrides.continue_on_write_failure
                    if continue_on_write_failure is None
                    else continue_on_write_failure
                ),
            )
            if overrides == current.overrides:
                return current
            new_state = replace(
                current,
                overrides=overrides,
                version=current.version + 1,
                updated_at=datetime.now(UTC),
                updated_by=operator,
            )
            await self._commit(
                current, new_state, PhaseAction.SET_OVERRIDES, reason, overrides.to_dict()
            )
            logger.info(
                "Overrides for %s set to %s by %s",
                self._record_class.value,
                overrides.to_dict(),
                operator,
            )
            return new_state

    async def _advance(
        self,
        target: MigrationPhase,
        operator: str,
        reason: str | None,
    ) -> PhaseState:
        with self._tracer.span(
            "dualstore.phase.advance",
            {
                ATTR_RECORD_CLASS: self._record_class.value,
                ATTR_MIGRATION_PHASE: target.value,
                ATTR_MIGRATION_OPERATOR: operator,
            },
        ):
            async with self._lock:
                current = self._state
                if not current.phase.can_advance_to(target):
                    raise InvalidPhaseTransitionError(
                        current.phase,
                        target,
                        record_class=self._record_class,
                    )
                new_state = replace(
                    current,
                    phase=target,
                    version=current.version + 1,
                    updated_at=datetime.now(UTC),
                    updated_by=operator,
                )
                await self._commit(current, new_state, PhaseAction.ADVANCE, reason, {})
                logger.info(
                    "Advanced %s from %s to %s by %s",
                    self._record_class.value,
                    current.phase.value,
                    target.value,
                    operator,
                )
                return new_state

    async def _commit(
        self,
        current: PhaseState,
        new_state: PhaseState,
        action: PhaseAction,
        reason: str | None,
        details: dict[str, Any],
    ) -> None:
        """Persist state and audit entry, then publish the new snapshot."""
        entry = PhaseAuditEntry(
            record_class=self._record_class,
            action=action,
            from_phase=current.phase,
            to_phase=new_state.phase,
            version=new_state.version,
            operator=new_state.updated_by,
            occurred_at=new_state.updated_at,
            reason=reason,
            details=details,
        )
        await self._repository.save(new_state, expected_version=current.version, audit=entry)
        self._state = new_state


__all__ = [
    "MigrationPhase",
    "PhaseOverrides",
    "RoutingPolicy",
    "PhaseState",
    "PhaseAction",
    "PhaseAuditEntry",
    "PhaseController",
    "SYSTEM_OPERATOR",
]
