"""Command line interface for operating a dualstore migration."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, TypeVar

import typer

from dualstore.admin import HealthStatus, MigrationAdmin, build_admin
from dualstore.config import DualStoreSettings
from dualstore.exceptions import DualStoreError
from dualstore.phase import MigrationPhase
from dualstore.records import RecordClass, ensure_utc

T = TypeVar("T")

DATE_FORMATS = ["%Y-%m-%d", "%Y-%m-%dT%H:%M:%S", "%Y-%m-%d %H:%M:%S"]

app = typer.Typer(help="Operate a relational-to-DynamoDB migration")

backfill_app = typer.Typer(help="Copy historical records into the target store")
app.add_typer(backfill_app, name="backfill")


class AdvanceTarget(str, Enum):
    DUAL_WRITE = "dual-write"
    READ_TARGET = "read-target"
    TARGET_ONLY = "target-only"


RecordClassOption = typer.Option(
    RecordClass.INTEGRATION_LOGS,
    "--record-class",
    "-r",
    help="Record class to operate on",
)
OperatorOption = typer.Option(
    "cli",
    "--operator",
    envvar="DUALSTORE_OPERATOR",
    help="Name recorded in the phase audit log",
)


@app.callback()
def main() -> None:
    """dualstore CLI entry point."""
    settings = DualStoreSettings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _run(record_class: RecordClass, action: Callable[[MigrationAdmin], Awaitable[T]]) -> T:
    """Build the admin for a record class, run one action and close it."""

    async def runner() -> T:
        admin = await build_admin(DualStoreSettings(), record_class)
        try:
            return await action(admin)
        finally:
            await admin.close()

    try:
        return asyncio.run(runner())
    except (DualStoreError, ValueError) as e:
        typer.secho(f"Error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1) from e


def _echo_json(data: dict[str, Any]) -> None:
    typer.echo(json.dumps(data, indent=2, default=str))


@app.command("status")
def status(record_class: RecordClass = RecordClassOption) -> None:
    """
    Show the phase, routing policy, last validation and active backfill.

    Example:
        dualstore status --record-class payments
    """

    async def action(admin: MigrationAdmin) -> dict[str, Any]:
        return (await admin.status()).to_dict()

    _echo_json(_run(record_class, action))


@app.command("health")
def health(record_class: RecordClass = RecordClassOption) -> None:
    """Ping both stores. Exits 1 when either is unreachable."""

    async def action(admin: MigrationAdmin) -> Any:
        return await admin.health()

    report = _run(record_class, action)
    _echo_json(report.to_dict())
    if report.status is not HealthStatus.HEALTHY:
        raise typer.Exit(code=1)


@app.command("advance")
def advance(
    target: AdvanceTarget,
    record_class: RecordClass = RecordClassOption,
    operator: str = OperatorOption,
    reason: str | None = typer.Option(None, help="Why the phase is changing"),
) -> None:
    """
    Move a record class forward to the next phase.

    Example:
        dualstore advance dual-write --record-class integration_logs --operator alice
    """

    async def action(admin: MigrationAdmin) -> Any:
        if target is AdvanceTarget.DUAL_WRITE:
            return await admin.enable_dual_write(operator, reason)
        if target is AdvanceTarget.READ_TARGET:
            return await admin.switch_reads_to_target(operator, reason)
        return await admin.disable_source_writes(operator, reason)

    state = _run(record_class, action)
    typer.echo(f"{record_class.value}: {state.phase.value} (version {state.version})")


@app.command("rollback")
def rollback(
    to_phase: MigrationPhase,
    reason: str = typer.Option(..., help="Why the phase is rolled back"),
    record_class: RecordClass = RecordClassOption,
    operator: str = OperatorOption,
) -> None:
    """Move a record class back to an earlier phase."""

    async def action(admin: MigrationAdmin) -> Any:
        return await admin.rollback(to_phase, operator, reason)

    state = _run(record_class, action)
    typer.echo(f"{record_class.value}: rolled back to {state.phase.value}")


@app.command("validate")
def validate(
    start: datetime | None = typer.Option(None, formats=DATE_FORMATS, help="Window start (UTC)"),
    end: datetime | None = typer.Option(None, formats=DATE_FORMATS, help="Window end (UTC)"),
    sample: int = typer.Option(0, "--sample", min=0, help="Records to compare field by field"),
    record_class: RecordClass = RecordClassOption,
) -> None:
    """
    Compare record counts in both stores over [start, end).

    Defaults to the last 24 hours. Exits 1 when the stores are inconsistent.

    Example:
        dualstore validate --start 2024-01-01 --end 2024-01-02 --sample 100
    """

    async def action(admin: MigrationAdmin) -> Any:
        return await admin.validate_consistency(
            ensure_utc(start) if start else None,
            ensure_utc(end) if end else None,
            sample_size=sample,
        )

    report = _run(record_class, action)
    _echo_json(report.to_dict())
    if not report.is_consistent:
        raise typer.Exit(code=1)


@app.command("validate-source")
def validate_source(record_class: RecordClass = RecordClassOption) -> None:
    """Run data-quality checks against the relational store."""

    async def action(admin: MigrationAdmin) -> Any:
        return await admin.validate_source_quality()

    report = _run(record_class, action)
    _echo_json(report.to_dict())
    if not report.is_clean:
        raise typer.Exit(code=1)


@backfill_app.command("start")
def backfill_start(
    start_date: datetime = typer.Option(..., formats=DATE_FORMATS, help="First day to copy"),
    end_date: datetime = typer.Option(..., formats=DATE_FORMATS, help="Exclusive end"),
    max_errors: int | None = typer.Option(None, min=0, help="Failures tolerated before stopping"),
    page_size: int | None = typer.Option(None, min=1, help="Records written per batch"),
    window_hours: int = typer.Option(24, min=1, help="Hours per checkpointed window"),
    record_class: RecordClass = RecordClassOption,
) -> None:
    """
    Copy records in [start_date, end_date) and wait for the run to finish.

    Example:
        dualstore backfill start -r payments --start-date 2024-01-01 --end-date 2024-02-01
    """
    settings = DualStoreSettings()

    async def action(admin: MigrationAdmin) -> Any:
        run_id = await admin.start_backfill(
            ensure_utc(start_date),
            ensure_utc(end_date),
            max_errors=settings.backfill_max_errors if max_errors is None else max_errors,
            page_size=page_size or settings.backfill_page_size,
            window=timedelta(hours=window_hours),
        )
        typer.echo(f"Started backfill {run_id}")
        return await admin.wait_for_backfill(run_id)

    result = _run(record_class, action)
    _echo_json(result.to_dict())
    if not result.succeeded:
        raise typer.Exit(code=1)


@backfill_app.command("resume")
def backfill_resume(
    run_id: str,
    force: bool = typer.Option(
        False, "--force", help="Take over a run whose checkpoint still looks alive"
    ),
    record_class: RecordClass = RecordClassOption,
) -> None:
    """Resume a paused, failed or interrupted run from its checkpoint."""

    async def action(admin: MigrationAdmin) -> Any:
        return await admin.resume_backfill(run_id, force=force)

    result = _run(record_class, action)
    _echo_json(result.to_dict())
    if not result.succeeded:
        raise typer.Exit(code=1)


@backfill_app.command("show")
def backfill_show(
    run_id: str,
    record_class: RecordClass = RecordClassOption,
) -> None:
    """Show the checkpoint of a run."""

    async def action(admin: MigrationAdmin) -> Any:
        return await admin.get_backfill(run_id)

    checkpoint = _run(record_class, action)
    if checkpoint is None:
        typer.echo("Run not found")
        raise typer.Exit(code=1)
    _echo_json(checkpoint.to_dict())


@app.command("test-write")
def test_write() -> None:
    """Write a synthetic integration log through the router."""

    async def action(admin: MigrationAdmin) -> Any:
        return await admin.write_test_record()

    record, outcome = _run(RecordClass.INTEGRATION_LOGS, action)
    _echo_json(
        {
            "log_id": record.log_id,
            "correlation_id": record.correlation_id,
            "outcome": outcome.to_dict(),
        }
    )
    if not outcome.succeeded:
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
