"""
dualstore - Online migration from a relational store to DynamoDB.

This library provides:
- A per-record-class Migration Phase Controller with an audited phase log
- A Hybrid Router that dual-writes and routes reads according to the phase
- A Consistency Validator comparing counts and sampled records
- A resumable, checkpointed Batch Backfill Migrator
- Relational (SQLAlchemy), DynamoDB and in-memory record stores
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("dualstore")
except PackageNotFoundError:
    # Package not installed (running from source without install)
    __version__ = "0.0.0.dev0"

from dualstore.admin import (
    ComponentHealth,
    HealthReport,
    HealthStatus,
    MigrationAdmin,
    MigrationStatus,
    build_admin,
)
from dualstore.backfill import BackfillMigrator, BackfillProgress, RunResult
from dualstore.cache import CacheStats, TimedCache
from dualstore.checkpoint import (
    BackfillCheckpoint,
    BackfillOptions,
    BackfillStatus,
    generate_run_id,
)
from dualstore.codec import RecordCodec
from dualstore.config import DualStoreSettings
from dualstore.consistency import (
    ConsistencyValidator,
    Discrepancy,
    DiscrepancyType,
    SourceQualityReport,
    ValidationConfig,
    ValidationReport,
)
from dualstore.exceptions import (
    BackfillRunNotFoundError,
    BackfillStateError,
    ChecksumOrCountMismatchError,
    ConcurrentPhaseUpdateError,
    DualStoreError,
    DualWriteFailureError,
    ErrorHandler,
    InvalidPaymentStatusTransition,
    InvalidPhaseTransitionError,
    MigrationAlreadyInProgressError,
    RecordConversionError,
    RecordNotFoundError,
    RetryConfig,
    StoreError,
    TransientStoreError,
)
from dualstore.phase import (
    MigrationPhase,
    PhaseAuditEntry,
    PhaseController,
    PhaseOverrides,
    PhaseState,
    RoutingPolicy,
)
from dualstore.records import LogRecord, PaymentRecord, PaymentStatus, Record, RecordClass
from dualstore.repositories import (
    BackfillCheckpointRepository,
    InMemoryBackfillCheckpointRepository,
    InMemoryPhaseStateRepository,
    InMemoryValidationReportRepository,
    PhaseStateRepository,
    SQLAlchemyBackfillCheckpointRepository,
    SQLAlchemyPhaseStateRepository,
    SQLAlchemyValidationReportRepository,
    ValidationReportRepository,
)
from dualstore.router import (
    FailedWrite,
    FailureStats,
    HybridRouter,
    StoreWriteResult,
    WriteOutcome,
    WriteStatus,
)
from dualstore.stores import (
    DynamoDBRecordStore,
    InMemoryRecordStore,
    RecordStore,
    SQLAlchemyRecordStore,
)

__all__ = [
    "__version__",
    # Records
    "RecordClass",
    "LogRecord",
    "PaymentRecord",
    "PaymentStatus",
    "Record",
    "RecordCodec",
    # Stores
    "RecordStore",
    "SQLAlchemyRecordStore",
    "DynamoDBRecordStore",
    "InMemoryRecordStore",
    # Phase
    "MigrationPhase",
    "PhaseOverrides",
    "RoutingPolicy",
    "PhaseState",
    "PhaseAuditEntry",
    "PhaseController",
    # Router
    "HybridRouter",
    "WriteStatus",
    "WriteOutcome",
    "StoreWriteResult",
    "FailedWrite",
    "FailureStats",
    # Consistency
    "ConsistencyValidator",
    "ValidationConfig",
    "ValidationReport",
    "Discrepancy",
    "DiscrepancyType",
    "SourceQualityReport",
    # Backfill
    "BackfillMigrator",
    "BackfillOptions",
    "BackfillCheckpoint",
    "BackfillStatus",
    "BackfillProgress",
    "RunResult",
    "generate_run_id",
    # Repositories
    "PhaseStateRepository",
    "InMemoryPhaseStateRepository",
    "SQLAlchemyPhaseStateRepository",
    "BackfillCheckpointRepository",
    "InMemoryBackfillCheckpointRepository",
    "SQLAlchemyBackfillCheckpointRepository",
    "ValidationReportRepository",
    "InMemoryValidationReportRepository",
    "SQLAlchemyValidationReportRepository",
    # Admin
    "MigrationAdmin",
    "MigrationStatus",
    "HealthStatus",
    "HealthReport",
    "ComponentHealth",
    "build_admin",
    "DualStoreSettings",
    # Cache
    "TimedCache",
    "CacheStats",
    # Exceptions
    "DualStoreError",
    "StoreError",
    "TransientStoreError",
    "InvalidPhaseTransitionError",
    "ConcurrentPhaseUpdateError",
    "MigrationAlreadyInProgressError",
    "BackfillRunNotFoundError",
    "BackfillStateError",
    "ChecksumOrCountMismatchError",
    "RecordConversionError",
    "DualWriteFailureError",
    "InvalidPaymentStatusTransition",
    "RecordNotFoundError",
    "RetryConfig",
    "ErrorHandler",
]
