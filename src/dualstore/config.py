"""
Settings for dualstore deployments.

Settings are read from ``DUALSTORE_*`` environment variables and an optional
``.env`` file. Components do not read settings directly; the CLI and
``dualstore.admin.build_admin`` translate them into the frozen dataclass
configs (``RetryConfig``, ``BackfillOptions``) the components accept.

Example:
    >>> settings = DualStoreSettings(database_url="sqlite+aiosqlite:///local.db")
    >>> settings.retry_config().max_attempts
    3
"""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from dualstore.exceptions import RetryConfig
from dualstore.phase import MigrationPhase, PhaseOverrides
from dualstore.records import RecordClass


class DualStoreSettings(BaseSettings):
    """Runtime configuration for the migration engine."""

    model_config = SettingsConfigDict(
        env_prefix="DUALSTORE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    database_url: str = Field(
        default="sqlite+aiosqlite:///dualstore.db",
        description="SQLAlchemy async URL of the relational (source) store",
    )
    dynamodb_region: str = Field(default="us-east-1")
    dynamodb_endpoint_url: str | None = Field(
        default=None,
        description="Override endpoint, e.g. http://localhost:8000 for DynamoDB Local",
    )
    log_table_name: str = Field(default="LoanApp-IntegrationLogs-dev")
    payment_table_name: str = Field(default="LoanApp-Payments-dev")

    initial_phase: MigrationPhase = Field(
        default=MigrationPhase.SOURCE_ONLY,
        description="Phase used when nothing has been persisted yet",
    )
    require_both_writes: bool = False
    continue_on_write_failure: bool = True

    retry_attempts: int = Field(default=3, ge=1)
    retry_delay_seconds: float = Field(default=1.0, ge=0.0)
    retry_exponential_base: float = Field(default=2.0, ge=1.0)

    log_retention_days: int = Field(default=90, ge=1)
    payment_retention_days: int = Field(default=2555, ge=1)

    consistency_tolerance_ratio: float = Field(default=0.01, ge=0.0)
    backfill_page_size: int = Field(default=500, ge=1)
    backfill_max_errors: int = Field(default=100, ge=0)

    log_level: str = Field(default="INFO")

    def table_name(self, record_class: RecordClass) -> str:
        """DynamoDB table holding items of the given record class."""
        if record_class is RecordClass.PAYMENTS:
            return self.payment_table_name
        return self.log_table_name

    def retention_days(self, record_class: RecordClass) -> int:
        if record_class is RecordClass.PAYMENTS:
            return self.payment_retention_days
        return self.log_retention_days

    def retry_config(self) -> RetryConfig:
        """Build the router's RetryConfig from the flat settings."""
        base_delay_ms = self.retry_delay_seconds * 1000.0
        return RetryConfig(
            max_attempts=self.retry_attempts,
            base_delay_ms=base_delay_ms,
            max_delay_ms=max(base_delay_ms, 30000.0),
            exponential_base=self.retry_exponential_base,
        )

    def phase_overrides(self) -> PhaseOverrides:
        return PhaseOverrides(
            require_both_writes=self.require_both_writes,
            continue_on_write_failure=self.continue_on_write_failure,
        )


__all__ = ["DualStoreSettings"]
