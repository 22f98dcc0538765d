"""
PhaseStateRepository - persistence for migration phase state.

Stores one versioned PhaseState row per record class plus an append-only
audit log of every change. Saves use optimistic versioning: a save names
the version it expects to replace and is rejected if the persisted row has
moved on, so two controllers can never silently overwrite each other.

Database Tables:
    Uses ``migration_phase_state`` and ``migration_phase_audit`` from
    ``dualstore.schema``.

Usage:
    >>> repo = SQLAlchemyPhaseStateRepository(engine)
    >>> controller = PhaseController(RecordClass.PAYMENTS, repo)
    >>> await controller.load()
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Protocol, runtime_checkable

from sqlalchemy import Row, func, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from dualstore.exceptions import ConcurrentPhaseUpdateError
from dualstore.observability import (
    ATTR_DB_SYSTEM,
    ATTR_MIGRATION_PHASE,
    ATTR_RECORD_CLASS,
    Tracer,
    create_tracer,
)
from dualstore.phase import (
    MigrationPhase,
    PhaseAction,
    PhaseAuditEntry,
    PhaseOverrides,
    PhaseState,
)
from dualstore.records import RecordClass, ensure_utc
from dualstore.schema import migration_phase_audit, migration_phase_state
from dualstore.stores._connection import execute_with_connection


@runtime_checkable
class PhaseStateRepository(Protocol):
    """
    Protocol for phase state persistence.

    Implementations must apply the state row and its audit entry together
    and reject saves whose expected version is stale.
    """

    async def get(self, record_class: RecordClass) -> PhaseState | None:
        """
        Get the persisted state of a record class.

        Returns:
            PhaseState or None if nothing has been saved yet
        """
        ...

    async def save(
        self,
        state: PhaseState,
        *,
        expected_version: int,
        audit: PhaseAuditEntry,
    ) -> None:
        """
        Persist a new state and its audit entry.

        Args:
            state: New state (its version is expected_version + 1)
            expected_version: Version being replaced (0 if none persisted)
            audit: Audit entry describing the change

        Raises:
            ConcurrentPhaseUpdateError: If the persisted version differs
        """
        ...

    async def get_audit_log(
        self,
        record_class: RecordClass,
        limit: int = 100,
    ) -> list[PhaseAuditEntry]:
        """Most recent audit entries, newest first."""
        ...


class InMemoryPhaseStateRepository:
    """
    In-memory PhaseStateRepository for tests and single-process runs.

    State does not survive the process.
    """

    def __init__(self) -> None:
        self._states: dict[RecordClass, PhaseState] = {}
        self._audit: list[PhaseAuditEntry] = []
        self._lock = asyncio.Lock()

    async def get(self, record_class: RecordClass) -> PhaseState | None:
        return self._states.get(record_class)

    async def save(
        self,
        state: PhaseState,
        *,
        expected_version: int,
        audit: PhaseAuditEntry,
    ) -> None:
        async with self._lock:
            existing = self._states.get(state.record_class)
            actual = existing.version if existing else 0
            if actual != expected_version:
                raise ConcurrentPhaseUpdateError(
                    state.record_class.value, expected_version, actual
                )
            self._states[state.record_class] = state
            self._audit.append(audit)

    async def get_audit_log(
        self,
        record_class: RecordClass,
        limit: int = 100,
    ) -> list[PhaseAuditEntry]:
        entries = [e for e in self._audit if e.record_class is record_class]
        return list(reversed(entries))[:limit]


class SQLAlchemyPhaseStateRepository:
    """
    Relational PhaseStateRepository.

    The state row and audit entry are written in one transaction. A first
    save inserts the row (a concurrent first save loses on the primary
    key); later saves update ``WHERE version = expected_version``.
    """

    def __init__(
        self,
        conn: AsyncConnection | AsyncEngine,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the repository.

        Args:
            conn: Database connection or engine
            tracer: Optional custom Tracer instance.
            enable_tracing: Whether to enable OpenTelemetry tracing
        """
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._conn = conn

    async def get(self, record_class: RecordClass) -> PhaseState | None:
        with self._tracer.span(
            "dualstore.phase_repo.get",
            {ATTR_RECORD_CLASS: record_class.value, ATTR_DB_SYSTEM: "sql"},
        ):
            stmt = select(migration_phase_state).where(
                migration_phase_state.c.record_class == record_class.value
            )
            async with execute_with_connection(self._conn, transactional=False) as conn:
                result = await conn.execute(stmt)
                row = result.fetchone()

            if row is None:
                return None
            return self._row_to_state(row)

    async def save(
        self,
        state: PhaseState,
        *,
        expected_version: int,
        audit: PhaseAuditEntry,
    ) -> None:
        with self._tracer.span(
            "dualstore.phase_repo.save",
            {
                ATTR_RECORD_CLASS: state.record_class.value,
                ATTR_MIGRATION_PHASE: state.phase.value,
                ATTR_DB_SYSTEM: "sql",
            },
        ):
            values = {
                "phase": state.phase.value,
                "require_both_writes": state.overrides.require_both_writes,
                "continue_on_write_failure": state.overrides.continue_on_write_failure,
                "version": state.version,
                "updated_at": state.updated_at,
                "updated_by": state.updated_by,
            }
            try:
                async with execute_with_connection(self._conn, transactional=True) as conn:
                    if expected_version == 0:
                        await conn.execute(
                            insert(migration_phase_state).values(
                                record_class=state.record_class.value, **values
                            )
                        )
                    else:
                        result = await conn.execute(
                            update(migration_phase_state)
                            .where(
                                migration_phase_state.c.record_class == state.record_class.value,
                                migration_phase_state.c.version == expected_version,
                            )
                            .values(**values)
                        )
                        if result.rowcount != 1:
                            raise ConcurrentPhaseUpdateError(
                                state.record_class.value,
                                expected_version,
                                await self._current_version(conn, state.record_class),
                            )
                    await conn.execute(insert(migration_phase_audit).values(**_audit_row(audit)))
            except IntegrityError as e:
                raise ConcurrentPhaseUpdateError(
                    state.record_class.value, expected_version, None
                ) from e

    async def get_audit_log(
        self,
        record_class: RecordClass,
        limit: int = 100,
    ) -> list[PhaseAuditEntry]:
        t = migration_phase_audit
        stmt = (
            select(t)
            .where(t.c.record_class == record_class.value)
            .order_by(t.c.occurred_at.desc(), t.c.id.desc())
            .limit(limit)
        )
        async with execute_with_connection(self._conn, transactional=False) as conn:
            result = await conn.execute(stmt)
            rows = result.fetchall()
        return [self._row_to_audit(row) for row in rows]

    async def _current_version(
        self, conn: AsyncConnection, record_class: RecordClass
    ) -> int | None:
        result = await conn.execute(
            select(func.max(migration_phase_state.c.version)).where(
                migration_phase_state.c.record_class == record_class.value
            )
        )
        value = result.scalar()
        return int(value) if value is not None else None

    def _row_to_state(self, row: Row[Any]) -> PhaseState:
        data = row._mapping
        return PhaseState(
            record_class=RecordClass(data["record_class"]),
            phase=MigrationPhase(data["phase"]),
            overrides=PhaseOverrides(
                require_both_writes=bool(data["require_both_writes"]),
                continue_on_write_failure=bool(data["continue_on_write_failure"]),
            ),
            version=int(data["version"]),
            updated_at=ensure_utc(data["updated_at"]),
            updated_by=data["updated_by"],
        )

    def _row_to_audit(self, row: Row[Any]) -> PhaseAuditEntry:
        data = row._mapping
        return PhaseAuditEntry(
            record_class=RecordClass(data["record_class"]),
            action=PhaseAction(data["action"]),
            from_phase=MigrationPhase(data["from_phase"]),
            to_phase=MigrationPhase(data["to_phase"]),
            version=int(data["version"]),
            operator=data["operator"],
            occurred_at=ensure_utc(data["occurred_at"]),
            reason=data["reason"],
            details=json.loads(data["details"]) if data["details"] else {},
        )


def _audit_row(entry: PhaseAuditEntry) -> dict[str, Any]:
    return {
        "record_class": entry.record_class.value,
        "action": entry.action.value,
        "from_phase": entry.from_phase.value,
        "to_phase": entry.to_phase.value,
        "version": entry.version,
        "operator": entry.operator,
        "reason": entry.reason,
        "details": json.dumps(entry.details),
        "occurred_at": entry.occurred_at,
    }


__all__ = [
    "PhaseStateRepository",
    "InMemoryPhaseStateRepository",
    "SQLAlchemyPhaseStateRepository",
]
