"""
MigrationAdmin - administrative control surface for one record class.

Wires the phase controller, router, consistency validator and backfill
migrator of a record class behind the operations an operator needs:
phase changes, consistency checks, backfill control, status and health.
The CLI (and any HTTP layer) talks only to this facade.

Usage:
    >>> admin = await build_admin(DualStoreSettings(), RecordClass.INTEGRATION_LOGS)
    >>> await admin.enable_dual_write(operator="alice")
    >>> report = await admin.validate_consistency()
    >>> status = await admin.status()
    >>> await admin.close()
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from dualstore.backfill import BackfillMigrator, RunResult
from dualstore.cache import TimedCache
from dualstore.checkpoint import (
    DEFAULT_BACKFILL_WINDOW,
    BackfillCheckpoint,
    BackfillOptions,
)
from dualstore.codec import RecordCodec
from dualstore.config import DualStoreSettings
from dualstore.consistency import (
    ConsistencyValidator,
    SourceQualityReport,
    ValidationConfig,
    ValidationReport,
)
from dualstore.observability import ATTR_MIGRATION_OPERATOR, ATTR_RECORD_CLASS, create_tracer
from dualstore.phase import MigrationPhase, PhaseController, PhaseState, RoutingPolicy
from dualstore.records import LogRecord, RecordClass
from dualstore.repositories.checkpoint import SQLAlchemyBackfillCheckpointRepository
from dualstore.repositories.phase import SQLAlchemyPhaseStateRepository
from dualstore.repositories.validation import SQLAlchemyValidationReportRepository
from dualstore.router import FailureStats, HybridRouter, WriteOutcome
from dualstore.schema import create_schema
from dualstore.stores.dynamodb import DynamoDBRecordStore, create_dynamodb_client
from dualstore.stores.interface import SOURCE_ROLE, TARGET_ROLE, RecordStore
from dualstore.stores.relational import SQLAlchemyRecordStore

logger = logging.getLogger(__name__)

DEFAULT_VALIDATION_LOOKBACK = timedelta(hours=24)
TEST_SERVICE_NAME = "MigrationTestService"


class HealthStatus(Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"


@dataclass(frozen=True)
class ComponentHealth:
    """Ping result of one store."""

    name: str
    role: str
    status: HealthStatus
    latency_ms: float
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "role": self.role,
            "status": self.status.value,
            "latency_ms": round(self.latency_ms, 2),
            "error": self.error,
        }


@dataclass(frozen=True)
class HealthReport:
    """
    Health of both stores.

    Overall status is HEALTHY only when every component is.
    """

    record_class: RecordClass
    status: HealthStatus
    components: tuple[ComponentHealth, ...]
    checked_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "record_class": self.record_class.value,
            "status": self.status.value,
            "components": [c.to_dict() for c in self.components],
            "checked_at": self.checked_at.isoformat(),
        }


@dataclass(frozen=True)
class MigrationStatus:
    """
    Point-in-time snapshot of a record class's migration.

    Attributes:
        record_class: Record class described.
        phase: Current phase.
        policy: Routing policy derived from the phase and overrides.
        phase_version: Persisted version of the phase state.
        phase_updated_at: When the phase state last changed.
        phase_updated_by: Operator of the last phase change.
        last_validation: Most recent consistency report, if any.
        active_backfill: Checkpoint of the run holding the marker, if any.
        write_failures: Dual-write failure statistics.
        timestamp: When the snapshot was taken.
    """

    record_class: RecordClass
    phase: MigrationPhase
    policy: RoutingPolicy
    phase_version: int
    phase_updated_at: datetime
    phase_updated_by: str
    last_validation: ValidationReport | None
    active_backfill: BackfillCheckpoint | None
    write_failures: FailureStats
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "record_class": self.record_class.value,
            "phase": self.phase.value,
            "policy": self.policy.to_dict(),
            "phase_version": self.phase_version,
            "phase_updated_at": self.phase_updated_at.isoformat(),
            "phase_updated_by": self.phase_updated_by,
            "last_validation": (
                self.last_validation.to_dict() if self.last_validation else None
            ),
            "active_backfill": self.active_backfill.to_dict() if self.active_backfill else None,
            "write_failures": self.write_failures.to_dict(),
            "timestamp": self.timestamp.isoformat(),
        }


class MigrationAdmin:
    """
    Operator facade over the migration components of one record class.

    Example:
        >>> admin = MigrationAdmin(controller, router, validator, migrator)
        >>> await admin.enable_dual_write("alice")
        >>> run_id = await admin.start_backfill(jan_1, feb_1, max_errors=10)
        >>> await admin.pause_backfill(run_id)
    """

    def __init__(
        self,
        controller: PhaseController,
        router: HybridRouter,
        validator: ConsistencyValidator,
        migrator: BackfillMigrator,
        *,
        lookup_cache: TimedCache[list[str]] | None = None,
        engine: AsyncEngine | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the facade.

        Args:
            controller: Phase controller of the record class.
            router: Router of the record class.
            validator: Consistency validator of the record class.
            migrator: Backfill migrator of the record class.
            lookup_cache: Cache for dropdown lookups.
            engine: Engine owned by this facade, disposed by ``close``.
            enable_tracing: Whether to enable OpenTelemetry tracing.
        """
        self._tracer = create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._controller = controller
        self._router = router
        self._validator = validator
        self._migrator = migrator
        self._lookup_cache = lookup_cache or TimedCache(ttl_seconds=3600)
        self._engine = engine

    @property
    def record_class(self) -> RecordClass:
        return self._controller.record_class

    @property
    def controller(self) -> PhaseController:
        return self._controller

    @property
    def router(self) -> HybridRouter:
        return self._router

    @property
    def validator(self) -> ConsistencyValidator:
        return self._validator

    @property
    def migrator(self) -> BackfillMigrator:
        return self._migrator

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()

    # =========================================================================
    # Phase commands
    # =========================================================================

    async def enable_dual_write(self, operator: str, reason: str | None = None) -> PhaseState:
        with self._tracer.span(
            "dualstore.admin.enable_dual_write",
            {ATTR_RECORD_CLASS: self.record_class.value, ATTR_MIGRATION_OPERATOR: operator},
        ):
            return await self._controller.advance_to_dual_write(operator, reason)

    async def switch_reads_to_target(self, operator: str, reason: str | None = None) -> PhaseState:
        with self._tracer.span(
            "dualstore.admin.switch_reads_to_target",
            {ATTR_RECORD_CLASS: self.record_class.value, ATTR_MIGRATION_OPERATOR: operator},
        ):
            return await self._controller.advance_to_read_from_target(operator, reason)

    async def disable_source_writes(self, operator: str, reason: str | None = None) -> PhaseState:
        with self._tracer.span(
            "dualstore.admin.disable_source_writes",
            {ATTR_RECORD_CLASS: self.record_class.value, ATTR_MIGRATION_OPERATOR: operator},
        ):
            return await self._controller.advance_to_target_only(operator, reason)

    async def rollback(self, to_phase: MigrationPhase, operator: str, reason: str) -> PhaseState:
        with self._tracer.span(
            "dualstore.admin.rollback",
            {ATTR_RECORD_CLASS: self.record_class.value, ATTR_MIGRATION_OPERATOR: operator},
        ):
            return await self._controller.rollback(to_phase, operator, reason)

    async def set_overrides(
        self,
        operator: str,
        *,
        require_both_writes: bool | None = None,
        continue_on_write_failure: bool | None = None,
        reason: str | None = None,
    ) -> PhaseState:
        return await self._controller.set_overrides(
            operator,
            require_both_writes=require_both_writes,
            continue_on_write_failure=continue_on_write_failure,
            reason=reason,
        )

    # =========================================================================
    # Validation
    # =========================================================================

    async def validate_consistency(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
        *,
        sample_size: int = 0,
    ) -> ValidationReport:
        """
        Compare the stores over ``[start, end)``.

        Defaults to the last 24 hours.
        """
        end = end or datetime.now(UTC)
        start = start or end - DEFAULT_VALIDATION_LOOKBACK
        return await self._validator.validate_window(start, end, sample_size=sample_size)

    async def validate_source_quality(self) -> SourceQualityReport:
        return await self._validator.validate_source_quality()

    # =========================================================================
    # Backfill
    # =========================================================================

    async def start_backfill(
        self,
        start_date: datetime,
        end_date: datetime,
        *,
        max_errors: int = 100,
        window: timedelta = DEFAULT_BACKFILL_WINDOW,
        page_size: int = 500,
        run_id: str | None = None,
    ) -> str:
        """Start a backfill run in the background and return its id."""
        options = BackfillOptions(
            start_date=start_date,
            end_date=end_date,
            max_errors=max_errors,
            window=window,
            page_size=page_size,
            run_id=run_id,
        )
        return await self._migrator.start(options)

    async def wait_for_backfill(self, run_id: str) -> RunResult:
        return await self._migrator.wait(run_id)

    async def resume_backfill(self, run_id: str, *, force: bool = False) -> RunResult:
        return await self._migrator.resume(run_id, force=force)

    async def pause_backfill(self, run_id: str) -> bool:
        """
        Ask a run to pause after its current window.

        Returns:
            True if the run was executing in this process.
        """
        return self._migrator.request_stop(run_id)

    async def get_backfill(self, run_id: str) -> BackfillCheckpoint | None:
        return await self._migrator.get_checkpoint(run_id)

    # =========================================================================
    # Status and health
    # =========================================================================

    async def status(self) -> MigrationStatus:
        """Current phase, routing policy, last validation and active backfill."""
        with self._tracer.span(
            "dualstore.admin.status",
            {ATTR_RECORD_CLASS: self.record_class.value},
        ):
            state = self._controller.state
            active_run = await self._migrator.get_active_run()
            checkpoint = (
                await self._migrator.get_checkpoint(active_run) if active_run else None
            )
            return MigrationStatus(
                record_class=self.record_class,
                phase=state.phase,
                policy=state.policy,
                phase_version=state.version,
                phase_updated_at=state.updated_at,
                phase_updated_by=state.updated_by,
                last_validation=await self._validator.latest_report(),
                active_backfill=checkpoint,
                write_failures=self._router.get_failure_stats(),
            )

    async def health(self) -> HealthReport:
        """Ping both stores concurrently and time each ping."""
        with self._tracer.span(
            "dualstore.admin.health",
            {ATTR_RECORD_CLASS: self.record_class.value},
        ):
            components = await asyncio.gather(
                _check(self._router.source_store, SOURCE_ROLE),
                _check(self._router.target_store, TARGET_ROLE),
            )
        overall = (
            HealthStatus.HEALTHY
            if all(c.status is HealthStatus.HEALTHY for c in components)
            else HealthStatus.DEGRADED
        )
        if overall is HealthStatus.DEGRADED:
            logger.warning(
                "%s health degraded: %s",
                self.record_class.value,
                [c.name for c in components if c.status is not HealthStatus.HEALTHY],
            )
        return HealthReport(
            record_class=self.record_class,
            status=overall,
            components=tuple(components),
        )

    async def write_test_record(self) -> tuple[LogRecord, WriteOutcome]:
        """
        Write a synthetic log record through the router.

        Returns:
            The record written and the write outcome.

        Raises:
            ValueError: If this facade does not manage integration logs.
        """
        if self.record_class is not RecordClass.INTEGRATION_LOGS:
            raise ValueError("Test records can only be written for integration logs")

        now = datetime.now(UTC)
        record = LogRecord(
            log_id=time.time_ns() // 1000,
            timestamp=now,
            service_name=TEST_SERVICE_NAME,
            log_type="TEST",
            is_success=True,
            request_data=json.dumps({"test": "dual-write"}),
            response_data=json.dumps({"result": "success"}),
            correlation_id=str(uuid.uuid4()),
        )
        outcome = await self._router.write_record(record)
        logger.info(
            "Test record %d written: %s (correlation %s)",
            record.log_id,
            outcome.status.value,
            record.correlation_id,
        )
        return record, outcome

    async def distinct_services(self) -> list[str]:
        """Distinct service names from the read store, cached for an hour."""
        return await self._lookup_cache.get_or_compute(
            f"{self.record_class.value}:services",
            self._router.distinct_service_names,
        )


async def _check(store: RecordStore, role: str) -> ComponentHealth:
    started = time.perf_counter()
    try:
        await store.ping()
    except Exception as e:
        return ComponentHealth(
            name=store.name,
            role=role,
            status=HealthStatus.DEGRADED,
            latency_ms=(time.perf_counter() - started) * 1000,
            error=str(e),
        )
    return ComponentHealth(
        name=store.name,
        role=role,
        status=HealthStatus.HEALTHY,
        latency_ms=(time.perf_counter() - started) * 1000,
    )


async def build_admin(
    settings: DualStoreSettings,
    record_class: RecordClass,
    *,
    engine: AsyncEngine | None = None,
    dynamodb_client: Any = None,
    create_tables: bool = True,
    enable_tracing: bool = True,
) -> MigrationAdmin:
    """
    Build the components of a record class from settings.

    Args:
        settings: Deployment settings.
        record_class: Record class to manage.
        engine: Existing engine (otherwise one is created from
            ``settings.database_url`` and disposed by ``MigrationAdmin.close``).
        dynamodb_client: Existing boto3 DynamoDB client.
        create_tables: Create missing relational tables first.
        enable_tracing: Whether to enable OpenTelemetry tracing.

    Returns:
        A MigrationAdmin whose phase state has been loaded.
    """
    owned_engine = None
    if engine is None:
        engine = owned_engine = create_async_engine(settings.database_url)
    if create_tables:
        await create_schema(engine)
    client = dynamodb_client or create_dynamodb_client(
        settings.dynamodb_region, settings.dynamodb_endpoint_url
    )

    codec = RecordCodec(record_class, retention_days=settings.retention_days(record_class))
    source = SQLAlchemyRecordStore(engine, record_class, enable_tracing=enable_tracing)
    target = DynamoDBRecordStore(
        client,
        settings.table_name(record_class),
        codec,
        enable_tracing=enable_tracing,
    )

    controller = PhaseController(
        record_class,
        SQLAlchemyPhaseStateRepository(engine, enable_tracing=enable_tracing),
        initial_phase=settings.initial_phase,
        initial_overrides=settings.phase_overrides(),
        enable_tracing=enable_tracing,
    )
    await controller.load()

    retry_config = settings.retry_config()
    router = HybridRouter(
        controller,
        source,
        target,
        retry_config=retry_config,
        enable_tracing=enable_tracing,
    )
    validator = ConsistencyValidator(
        source,
        target,
        codec,
        config=ValidationConfig(tolerance_ratio=settings.consistency_tolerance_ratio),
        repository=SQLAlchemyValidationReportRepository(engine, enable_tracing=enable_tracing),
        enable_tracing=enable_tracing,
    )
    migrator = BackfillMigrator(
        source,
        target,
        codec,
        SQLAlchemyBackfillCheckpointRepository(engine, enable_tracing=enable_tracing),
        retry_config=retry_config,
        enable_tracing=enable_tracing,
    )
    return MigrationAdmin(
        controller,
        router,
        validator,
        migrator,
        engine=owned_engine,
        enable_tracing=enable_tracing,
    )


__all__ = [
    "HealthStatus",
    "ComponentHealth",
    "HealthReport",
    "MigrationStatus",
    "MigrationAdmin",
    "build_admin",
]
