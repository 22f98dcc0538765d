"""
ValidationReportRepository - history of consistency validation results.

Every report produced by ConsistencyValidator is appended, so the latest
result survives the process that produced it and a status query from any
process (for example a later CLI invocation) can report it.

Database Tables:
    Uses ``migration_validation_results`` from ``dualstore.schema``. The
    full report is kept as JSON next to the columns used for lookups.
"""

from __future__ import annotations

import json
from typing import Protocol, runtime_checkable

from sqlalchemy import insert, select
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from dualstore.consistency import ValidationReport
from dualstore.observability import ATTR_DB_SYSTEM, ATTR_RECORD_CLASS, Tracer, create_tracer
from dualstore.records import RecordClass
from dualstore.schema import migration_validation_results
from dualstore.stores._connection import execute_with_connection


@runtime_checkable
class ValidationReportRepository(Protocol):
    """Protocol for validation report persistence."""

    async def add(self, report: ValidationReport) -> None:
        """Append a report."""
        ...

    async def get_latest(self, record_class: RecordClass) -> ValidationReport | None:
        """Most recently validated report of a record class, or None."""
        ...


class InMemoryValidationReportRepository:
    """In-memory report history for tests and dry runs."""

    def __init__(self) -> None:
        self._reports: list[ValidationReport] = []

    async def add(self, report: ValidationReport) -> None:
        self._reports.append(report)

    async def get_latest(self, record_class: RecordClass) -> ValidationReport | None:
        matching = [r for r in self._reports if r.record_class is record_class]
        return max(matching, key=lambda r: r.validated_at) if matching else None


class SQLAlchemyValidationReportRepository:
    """Relational report history."""

    def __init__(
        self,
        conn: AsyncConnection | AsyncEngine,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._conn = conn

    async def add(self, report: ValidationReport) -> None:
        with self._tracer.span(
            "dualstore.validation_repo.add",
            {ATTR_RECORD_CLASS: report.record_class.value, ATTR_DB_SYSTEM: "sql"},
        ):
            async with execute_with_connection(self._conn, transactional=True) as conn:
                await conn.execute(
                    insert(migration_validation_results).values(
                        record_class=report.record_class.value,
                        window_start=report.window_start,
                        window_end=report.window_end,
                        is_consistent=report.is_consistent,
                        report=json.dumps(report.to_dict()),
                        validated_at=report.validated_at,
                    )
                )

    async def get_latest(self, record_class: RecordClass) -> ValidationReport | None:
        t = migration_validation_results
        stmt = (
            select(t.c.report)
            .where(t.c.record_class == record_class.value)
            .order_by(t.c.validated_at.desc(), t.c.id.desc())
            .limit(1)
        )
        async with execute_with_connection(self._conn, transactional=False) as conn:
            result = await conn.execute(stmt)
            payload = result.scalar()
        return ValidationReport.from_dict(json.loads(payload)) if payload else None


__all__ = [
    "ValidationReportRepository",
    "InMemoryValidationReportRepository",
    "SQLAlchemyValidationReportRepository",
]
