"""
BackfillCheckpointRepository - persistence for backfill runs.

Holds one BackfillCheckpoint per run and the per-record-class in-progress
marker that keeps two runs of the same record class from overlapping.

Rules enforced by every implementation:
    - A run id can only be created once.
    - A COMPLETED checkpoint is never overwritten.
    - ``claim`` succeeds when the marker is free or already held by the same
      run id (a run resuming after a crash); otherwise it raises
      MigrationAlreadyInProgressError.

Database Tables:
    Uses ``backfill_checkpoints`` and ``backfill_locks`` from
    ``dualstore.schema``.
"""

from __future__ import annotations

import asyncio
import json
from datetime import UTC, datetime
from typing import Any, Protocol, runtime_checkable

from sqlalchemy import Row, delete, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from dualstore.checkpoint import BackfillCheckpoint, BackfillOptions, BackfillStatus
from dualstore.exceptions import (
    BackfillRunNotFoundError,
    BackfillStateError,
    MigrationAlreadyInProgressError,
)
from dualstore.observability import (
    ATTR_DB_SYSTEM,
    ATTR_RECORD_CLASS,
    ATTR_RUN_ID,
    Tracer,
    create_tracer,
)
from dualstore.records import RecordClass, ensure_utc
from dualstore.schema import backfill_checkpoints, backfill_locks
from dualstore.stores._connection import execute_with_connection


@runtime_checkable
class BackfillCheckpointRepository(Protocol):
    """Protocol for backfill checkpoint persistence."""

    async def create(self, checkpoint: BackfillCheckpoint) -> None:
        """
        Persist the first checkpoint of a run.

        Raises:
            BackfillStateError: If the run id already exists
        """
        ...

    async def get(self, run_id: str) -> BackfillCheckpoint | None:
        """Get a checkpoint by run id, or None if unknown."""
        ...

    async def save(self, checkpoint: BackfillCheckpoint) -> None:
        """
        Overwrite the checkpoint of an existing run.

        Raises:
            BackfillRunNotFoundError: If the run was never created
            BackfillStateError: If the persisted run is already completed
        """
        ...

    async def claim(self, record_class: RecordClass, run_id: str) -> None:
        """
        Take the in-progress marker of a record class.

        Raises:
            MigrationAlreadyInProgressError: If another run holds the marker
        """
        ...

    async def release(self, record_class: RecordClass, run_id: str) -> None:
        """Drop the marker if (and only if) run_id holds it."""
        ...

    async def get_active(self, record_class: RecordClass) -> str | None:
        """Run id holding the marker of a record class, if any."""
        ...


class InMemoryBackfillCheckpointRepository:
    """
    In-memory checkpoint repository for tests and dry runs.

    Checkpoints are copied on the way in and out, so callers never share
    mutable state with the repository.
    """

    def __init__(self) -> None:
        self._checkpoints: dict[str, BackfillCheckpoint] = {}
        self._locks: dict[RecordClass, str] = {}
        self._lock = asyncio.Lock()

    async def create(self, checkpoint: BackfillCheckpoint) -> None:
        async with self._lock:
            existing = self._checkpoints.get(checkpoint.run_id)
            if existing is not None:
                raise BackfillStateError(checkpoint.run_id, existing.status.value, "create")
            self._checkpoints[checkpoint.run_id] = checkpoint.copy()

    async def get(self, run_id: str) -> BackfillCheckpoint | None:
        checkpoint = self._checkpoints.get(run_id)
        return checkpoint.copy() if checkpoint else None

    async def save(self, checkpoint: BackfillCheckpoint) -> None:
        async with self._lock:
            existing = self._checkpoints.get(checkpoint.run_id)
            if existing is None:
                raise BackfillRunNotFoundError(checkpoint.run_id)
            if existing.status.is_final:
                raise BackfillStateError(checkpoint.run_id, existing.status.value, "update")
            stored = checkpoint.copy()
            stored.updated_at = datetime.now(UTC)
            self._checkpoints[checkpoint.run_id] = stored

    async def claim(self, record_class: RecordClass, run_id: str) -> None:
        async with self._lock:
            holder = self._locks.get(record_class)
            if holder is not None and holder != run_id:
                raise MigrationAlreadyInProgressError(record_class, holder)
            self._locks[record_class] = run_id

    async def release(self, record_class: RecordClass, run_id: str) -> None:
        async with self._lock:
            if self._locks.get(record_class) == run_id:
                del self._locks[record_class]

    async def get_active(self, record_class: RecordClass) -> str | None:
        return self._locks.get(record_class)

    async def list_runs(self, record_class: RecordClass | None = None) -> list[BackfillCheckpoint]:
        """All runs, newest first."""
        runs = [
            c.copy()
            for c in self._checkpoints.values()
            if record_class is None or c.record_class is record_class
        ]
        return sorted(runs, key=lambda c: c.started_at, reverse=True)


class SQLAlchemyBackfillCheckpointRepository:
    """
    Relational checkpoint repository.

    The marker is a row in ``backfill_locks`` keyed by record class, so the
    primary key arbitrates concurrent claims across processes.
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

    async def create(self, checkpoint: BackfillCheckpoint) -> None:
        with self._tracer.span(
            "dualstore.checkpoint_repo.create",
            {ATTR_RUN_ID: checkpoint.run_id, ATTR_DB_SYSTEM: "sql"},
        ):
            try:
                async with execute_with_connection(self._conn, transactional=True) as conn:
                    await conn.execute(
                        insert(backfill_checkpoints).values(**_checkpoint_row(checkpoint))
                    )
            except IntegrityError as e:
                existing = await self.get(checkpoint.run_id)
                status = existing.status.value if existing else "unknown"
                raise BackfillStateError(checkpoint.run_id, status, "create") from e

    async def get(self, run_id: str) -> BackfillCheckpoint | None:
        stmt = select(backfill_checkpoints).where(backfill_checkpoints.c.run_id == run_id)
        async with execute_with_connection(self._conn, transactional=False) as conn:
            result = await conn.execute(stmt)
            row = result.fetchone()
        return self._row_to_checkpoint(row) if row is not None else None

    async def save(self, checkpoint: BackfillCheckpoint) -> None:
        with self._tracer.span(
            "dualstore.checkpoint_repo.save",
            {ATTR_RUN_ID: checkpoint.run_id, ATTR_DB_SYSTEM: "sql"},
        ):
            t = backfill_checkpoints
            values = _checkpoint_row(checkpoint)
            values.pop("run_id")
            values["updated_at"] = datetime.now(UTC)
            async with execute_with_connection(self._conn, transactional=True) as conn:
                result = await conn.execute(
                    update(t)
                    .where(
                        t.c.run_id == checkpoint.run_id,
                        t.c.status != BackfillStatus.COMPLETED.value,
                    )
                    .values(**values)
                )
                if result.rowcount == 1:
                    return
                current = await conn.execute(
                    select(t.c.status).where(t.c.run_id == checkpoint.run_id)
                )
                status = current.scalar()
            if status is None:
                raise BackfillRunNotFoundError(checkpoint.run_id)
            raise BackfillStateError(checkpoint.run_id, status, "update")

    async def claim(self, record_class: RecordClass, run_id: str) -> None:
        with self._tracer.span(
            "dualstore.checkpoint_repo.claim",
            {ATTR_RECORD_CLASS: record_class.value, ATTR_RUN_ID: run_id},
        ):
            try:
                async with execute_with_connection(self._conn, transactional=True) as conn:
                    await conn.execute(
                        insert(backfill_locks).values(
                            record_class=record_class.value,
                            run_id=run_id,
                            claimed_at=datetime.now(UTC),
                        )
                    )
            except IntegrityError as e:
                holder = await self.get_active(record_class)
                if holder is None:
                    # Released between the insert and the lookup; try once more.
                    return await self.claim(record_class, run_id)
                if holder != run_id:
                    raise MigrationAlreadyInProgressError(record_class, holder) from e

    async def release(self, record_class: RecordClass, run_id: str) -> None:
        async with execute_with_connection(self._conn, transactional=True) as conn:
            await conn.execute(
                delete(backfill_locks).where(
                    backfill_locks.c.record_class == record_class.value,
                    backfill_locks.c.run_id == run_id,
                )
            )

    async def get_active(self, record_class: RecordClass) -> str | None:
        stmt = select(backfill_locks.c.run_id).where(
            backfill_locks.c.record_class == record_class.value
        )
        async with execute_with_connection(self._conn, transactional=False) as conn:
            result = await conn.execute(stmt)
            return result.scalar()

    async def list_runs(self, record_class: RecordClass | None = None) -> list[BackfillCheckpoint]:
        """All runs, newest first."""
        t = backfill_checkpoints
        stmt = select(t).order_by(t.c.started_at.desc())
        if record_class is not None:
            stmt = stmt.where(t.c.record_class == record_class.value)
        async with execute_with_connection(self._conn, transactional=False) as conn:
            result = await conn.execute(stmt)
            rows = result.fetchall()
        return [self._row_to_checkpoint(row) for row in rows]

    def _row_to_checkpoint(self, row: Row[Any]) -> BackfillCheckpoint:
        data = row._mapping
        return BackfillCheckpoint(
            run_id=data["run_id"],
            record_class=RecordClass(data["record_class"]),
            status=BackfillStatus(data["status"]),
            window_start=ensure_utc(data["window_start"]),
            window_end=ensure_utc(data["window_end"]),
            cursor=ensure_utc(data["cursor"]),
            options=BackfillOptions.from_dict(json.loads(data["options"])),
            last_record_key=data["last_record_key"],
            records_seen=data["records_seen"],
            records_migrated=data["records_migrated"],
            records_failed=data["records_failed"],
            records_skipped=data["records_skipped"],
            windows_completed=data["windows_completed"],
            errors=json.loads(data["errors"]),
            started_at=ensure_utc(data["started_at"]),
            ended_at=ensure_utc(data["ended_at"]) if data["ended_at"] else None,
            updated_at=ensure_utc(data["updated_at"]),
        )


def _checkpoint_row(checkpoint: BackfillCheckpoint) -> dict[str, Any]:
    return {
        "run_id": checkpoint.run_id,
        "record_class": checkpoint.record_class.value,
        "status": checkpoint.status.value,
        "window_start": checkpoint.window_start,
        "window_end": checkpoint.window_end,
        "cursor": checkpoint.cursor,
        "last_record_key": checkpoint.last_record_key,
        "options": json.dumps(checkpoint.options.to_dict()),
        "records_seen": checkpoint.records_seen,
        "records_migrated": checkpoint.records_migrated,
        "records_failed": checkpoint.records_failed,
        "records_skipped": checkpoint.records_skipped,
        "windows_completed": checkpoint.windows_completed,
        "errors": json.dumps(checkpoint.errors),
        "started_at": checkpoint.started_at,
        "ended_at": checkpoint.ended_at,
        "updated_at": checkpoint.updated_at,
    }


__all__ = [
    "BackfillCheckpointRepository",
    "InMemoryBackfillCheckpointRepository",
    "SQLAlchemyBackfillCheckpointRepository",
]
