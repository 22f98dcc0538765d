"""
Unit tests for the dualstore CLI.

``build_admin`` is replaced with a factory returning in-memory admins, so
commands run end to end without a database or DynamoDB.
"""

import asyncio
import json
from datetime import timedelta

import pytest
from typer.testing import CliRunner

from dualstore import cli
from dualstore.phase import MigrationPhase
from dualstore.records import RecordClass
from tests.factories import BASE_TIME, build_memory_admin, make_log

runner = CliRunner()

DAY = BASE_TIME.strftime("%Y-%m-%d")
NEXT_DAY = (BASE_TIME + timedelta(days=1)).strftime("%Y-%m-%d")


@pytest.fixture
def admins(monkeypatch):
    """One in-memory admin per record class, shared across invocations."""
    monkeypatch.setenv("DUALSTORE_LOG_LEVEL", "CRITICAL")
    built = {
        RecordClass.INTEGRATION_LOGS: build_memory_admin(RecordClass.INTEGRATION_LOGS),
        RecordClass.PAYMENTS: build_memory_admin(RecordClass.PAYMENTS),
    }

    async def fake_build_admin(settings, record_class):
        return built[record_class]

    monkeypatch.setattr(cli, "build_admin", fake_build_admin)
    return built


def invoke(*args: str):
    return runner.invoke(cli.app, list(args))


class TestPhaseCommands:
    def test_status(self, admins):
        result = invoke("status", "--record-class", "payments")

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["record_class"] == "payments"
        assert data["phase"] == "source_only"

    def test_advance(self, admins):
        result = invoke("advance", "dual-write", "--operator", "alice")

        assert result.exit_code == 0
        assert "integration_logs: dual_write (version 1)" in result.output
        state = admins[RecordClass.INTEGRATION_LOGS].controller.state
        assert state.updated_by == "alice"

    def test_invalid_advance_exits_with_error(self, admins):
        result = invoke("advance", "target-only")

        assert result.exit_code == 1
        assert "Error:" in result.output
        assert admins[RecordClass.INTEGRATION_LOGS].controller.phase is MigrationPhase.SOURCE_ONLY

    def test_rollback(self, admins):
        invoke("advance", "dual-write")

        result = invoke("rollback", "source_only", "--reason", "target errors")

        assert result.exit_code == 0
        assert "rolled back to source_only" in result.output

    def test_rollback_requires_reason(self, admins):
        result = invoke("rollback", "source_only")
        assert result.exit_code != 0


class TestChecks:
    def test_health(self, admins):
        assert invoke("health").exit_code == 0

    def test_degraded_health_exits_1(self, admins):
        admins[RecordClass.INTEGRATION_LOGS].router.target_store.fail_reads()

        result = invoke("health")

        assert result.exit_code == 1
        assert json.loads(result.stdout)["status"] == "degraded"

    def test_validate_inconsistent_window(self, admins):
        source = admins[RecordClass.INTEGRATION_LOGS].router.source_store
        for i in range(3):
            asyncio.run(source.insert(make_log(i)))

        result = invoke("validate", "--start", DAY, "--end", NEXT_DAY)

        data = json.loads(result.stdout)
        assert result.exit_code == 1
        assert data["source_count"] == 3
        assert data["target_count"] == 0

    def test_validate_source(self, admins):
        result = invoke("validate-source")

        assert result.exit_code == 0
        assert json.loads(result.stdout)["is_clean"] is True


class TestBackfillCommands:
    def test_start_waits_for_completion(self, admins):
        source = admins[RecordClass.INTEGRATION_LOGS].router.source_store
        for i in range(5):
            asyncio.run(source.insert(make_log(i)))

        result = invoke("backfill", "start", "--start-date", DAY, "--end-date", NEXT_DAY)

        assert result.exit_code == 0
        first_line, _, body = result.stdout.partition("\n")
        assert first_line.startswith("Started backfill integration_logs-")
        data = json.loads(body)
        assert data["status"] == "completed"
        assert data["records_migrated"] == 5

    def test_show_unknown_run(self, admins):
        result = invoke("backfill", "show", "missing")

        assert result.exit_code == 1
        assert "Run not found" in result.output

    def test_resume_unknown_run(self, admins):
        result = invoke("backfill", "resume", "missing")

        assert result.exit_code == 1
        assert "Error:" in result.output


class TestWriteCommand:
    def test_test_write(self, admins):
        result = invoke("test-write")

        data = json.loads(result.stdout)
        assert result.exit_code == 0
        assert data["outcome"]["status"] == "success"
        assert admins[RecordClass.INTEGRATION_LOGS].router.source_store.size == 1
