"""
Persistence for migration control state.

- PhaseStateRepository: versioned phase state and its audit log
- BackfillCheckpointRepository: backfill checkpoints and in-progress markers
- ValidationReportRepository: history of consistency validation results
"""

from dualstore.repositories.checkpoint import (
    BackfillCheckpointRepository,
    InMemoryBackfillCheckpointRepository,
    SQLAlchemyBackfillCheckpointRepository,
)
from dualstore.repositories.phase import (
    InMemoryPhaseStateRepository,
    PhaseStateRepository,
    SQLAlchemyPhaseStateRepository,
)
from dualstore.repositories.validation import (
    InMemoryValidationReportRepository,
    SQLAlchemyValidationReportRepository,
    ValidationReportRepository,
)

__all__ = [
    "PhaseStateRepository",
    "InMemoryPhaseStateRepository",
    "SQLAlchemyPhaseStateRepository",
    "BackfillCheckpointRepository",
    "InMemoryBackfillCheckpointRepository",
    "SQLAlchemyBackfillCheckpointRepository",
    "ValidationReportRepository",
    "InMemoryValidationReportRepository",
    "SQLAlchemyValidationReportRepository",
]
