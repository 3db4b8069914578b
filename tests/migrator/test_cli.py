import json

import pytest

from legacy_bridge.migrator import init_migrator
from legacy_bridge.migrator.errors import StepFailedError
from legacy_bridge.migrator.orchestrator import MigrationOrchestrator
from legacy_bridge.models import MigrationRun, MigrationRunStatus, db


@pytest.fixture
def configured_app(app, source_engine, destination_engine):
    app.config["SOURCE_DATABASE_URL"] = str(source_engine.url)
    app.config["DESTINATION_DATABASE_URL"] = str(destination_engine.url)
    return app


def test_group_lists_steps_in_order(runner):
    result = runner.invoke(args=["migrator"])

    assert result.exit_code == 0, result.output
    assert "Scope: all-tenants" in result.output
    assert " 1. Tenants" in result.output
    assert "Messages -> messages" in result.output
    assert result.output.index("Tenants") < result.output.index("Tickets")


def test_group_rejects_invalid_tenant_setting(app, runner):
    app.config["TENANT_ID"] = "abc"

    result = runner.invoke(args=["migrator"])

    assert result.exit_code != 0
    assert "TENANT_ID must be an integer" in result.output


def test_run_migrates_selected_step(configured_app, runner, source_engine, destination_engine, seed, fetch):
    seed(source_engine, "Tenants", [{"id": 2, "name": "Acme"}, {"id": 3, "name": "Beta"}])

    result = runner.invoke(args=["migrator", "run", "--yes", "--step", "Tenants", "--tenant", "2", "--summary-json"])

    assert result.exit_code == 0, result.output
    assert "Migrating scope tenant-2." in result.output
    assert "Step Tenants completed" in result.output
    assert "inserted           : 1" in result.output
    assert "finished with status pending: 1 step(s) completed, 0 skipped." in result.output
    payload = json.loads(result.output[result.output.index("{") :])
    assert payload["scope"] == "tenant-2"
    assert payload["steps"][0]["summary"]["inserted"] == 1
    assert [row["id"] for row in fetch(destination_engine, "companies")] == [2]


def test_run_prompts_per_step_and_records_decline(configured_app, runner, source_engine, seed):
    seed(source_engine, "Tenants", [{"id": 2, "name": "Acme"}])

    result = runner.invoke(args=["migrator", "run", "--step", "Tenants"], input="n\n")

    assert result.exit_code == 0, result.output
    assert "Run step Tenants (Tenants)?" in result.output
    assert "Step Tenants skipped." in result.output
    assert "0 step(s) completed, 1 skipped." in result.output


def test_run_reports_unknown_step(configured_app, runner):
    result = runner.invoke(args=["migrator", "run", "--yes", "--step", "Nope"])

    assert result.exit_code != 0
    assert "Unknown migration steps: Nope" in result.output


def test_run_surfaces_step_failure(app, runner, monkeypatch):
    class FailingOrchestrator(MigrationOrchestrator):
        def run(self, selected=(), *, from_step=None, restart=False):
            raise StepFailedError("Tickets", "streaming", "connection reset")

    monkeypatch.setattr("legacy_bridge.migrator.cli.MigrationOrchestrator", FailingOrchestrator)

    result = runner.invoke(args=["migrator", "run", "--yes"])

    assert result.exit_code != 0
    assert "Migration stopped at step Tickets" in result.output
    assert "connection reset" in result.output


def test_run_without_configured_source_fails_cleanly(app, runner):
    app.config["SOURCE_DATABASE_URL"] = None

    result = runner.invoke(args=["migrator", "run", "--yes", "--step", "Tenants"])

    assert result.exit_code != 0
    assert "Source database is not configured" in result.output


def test_status_and_reset(app, runner):
    assert "No migration runs recorded for tenant-4." in runner.invoke(args=["migrator", "status", "--tenant", "4"]).output

    run = MigrationRun(scope="tenant-4", tenant_id=4, status=MigrationRunStatus.FAILED, last_completed_step="Users")
    db.session.add(run)
    db.session.commit()

    status = runner.invoke(args=["migrator", "status", "--tenant", "4"])
    assert status.exit_code == 0, status.output
    assert f"Run {run.id} (tenant-4) status failed; last completed step: Users" in status.output

    aborted = runner.invoke(args=["migrator", "reset", "--tenant", "4"], input="n\n")
    assert "Reset aborted." in aborted.output

    reset = runner.invoke(args=["migrator", "reset", "--tenant", "4", "--yes"])
    assert reset.exit_code == 0, reset.output
    assert "Cancelled 1 unfinished run(s) for tenant-4." in reset.output
    assert db.session.get(MigrationRun, run.id).status is MigrationRunStatus.CANCELLED


def test_disabled_migrator_group(app, runner):
    app.config["MIGRATOR_ENABLED"] = False
    init_migrator(app)
    try:
        result = runner.invoke(args=["migrator"])
        assert result.exit_code != 0
        assert "MIGRATOR_ENABLED=false" in result.output
        assert app.extensions["migrator"]["enabled"] is False
    finally:
        app.config["MIGRATOR_ENABLED"] = True
        init_migrator(app)
    assert app.extensions["migrator"]["steps"][0] == "Tenants"
