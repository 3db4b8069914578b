import json
from collections import OrderedDict

import pytest
from sqlalchemy import select

from legacy_bridge.migrator.errors import StepFailedError
from legacy_bridge.migrator.orchestrator import MigrationOrchestrator, ProgressFile
from legacy_bridge.migrator.registry import StepDescriptor
from legacy_bridge.migrator.steps import DepartmentsStep, TenantsStep
from legacy_bridge.models import MigrationRun, MigrationRunStatus, MigrationStepRun, MigrationStepStatus, db


def _registry():
    return OrderedDict(
        (
            step_class.name,
            StepDescriptor(
                name=step_class.name,
                position=position,
                step_class=step_class,
                source_table=step_class.mapping.source_table,
                destination_table=step_class.mapping.destination_table,
            ),
        )
        for position, step_class in enumerate((TenantsStep, DepartmentsStep))
    )


@pytest.fixture
def two_step_registry(monkeypatch):
    monkeypatch.setattr("legacy_bridge.migrator.orchestrator.get_step_registry", _registry)


@pytest.fixture
def legacy_rows(source_engine, seed):
    seed(source_engine, "Tenants", [{"id": 2, "name": "Acme"}])
    seed(source_engine, "Queues", [{"id": 10, "queue": "Sales", "tenantId": 2}])


@pytest.fixture
def orchestrator(app, source_engine, destination_engine, enums, two_step_registry, legacy_rows):
    def _build(**options):
        return MigrationOrchestrator(app, engines=(source_engine, destination_engine), enums=enums, **options)

    return _build


def _progress(tmp_path):
    return tmp_path / "progress-all-tenants.json"


def test_full_run_succeeds_and_clears_progress(orchestrator, destination_engine, fetch, tmp_path):
    finished = []

    report = orchestrator(on_step_finished=finished.append).run()

    assert report.status is MigrationRunStatus.SUCCEEDED
    assert [(outcome.name, outcome.status) for outcome in report.steps] == [
        ("Tenants", MigrationStepStatus.SUCCEEDED),
        ("Departments", MigrationStepStatus.SUCCEEDED),
    ]
    assert [outcome.name for outcome in finished] == ["Tenants", "Departments"]
    assert [row["id"] for row in fetch(destination_engine, "departments")] == [10]
    assert not _progress(tmp_path).exists()

    run = db.session.get(MigrationRun, report.run_id)
    assert run.last_completed_step == "Departments"
    assert run.finished_at is not None
    assert run.counts_json["Tenants"]["inserted"] == 1
    assert [step_run.engine_state for step_run in run.steps] == ["done", "done"]


def test_declined_step_is_recorded_as_skipped(orchestrator, destination_engine, fetch):
    report = orchestrator(confirm=lambda descriptor: descriptor.name != "Tenants").run()

    assert [(outcome.name, outcome.status) for outcome in report.steps] == [
        ("Tenants", MigrationStepStatus.SKIPPED),
        ("Departments", MigrationStepStatus.SUCCEEDED),
    ]
    assert fetch(destination_engine, "companies") == []
    step_runs = db.session.scalars(select(MigrationStepRun).order_by(MigrationStepRun.position)).all()
    assert [step_run.status for step_run in step_runs] == [MigrationStepStatus.SKIPPED, MigrationStepStatus.SUCCEEDED]


def test_partial_selection_leaves_run_pending_with_progress(orchestrator, tmp_path):
    report = orchestrator().run(["tenants"])

    assert report.status is MigrationRunStatus.PENDING
    assert json.loads(_progress(tmp_path).read_text()) == {"lastCompleted": "Tenants"}

    resumed = orchestrator().run()
    assert resumed.run_id == report.run_id
    assert resumed.resumed_from == "Tenants"
    assert [outcome.name for outcome in resumed.steps] == ["Departments"]
    assert resumed.status is MigrationRunStatus.SUCCEEDED


def test_failed_step_stops_run_and_resume_continues_after_last_completed(
    orchestrator, destination_engine, destination_metadata, tmp_path
):
    with destination_engine.begin() as connection:
        connection.exec_driver_sql("DROP TABLE departments")

    with pytest.raises(StepFailedError) as excinfo:
        orchestrator().run()

    assert excinfo.value.step == "Departments"
    assert excinfo.value.state == "counting"
    run = db.session.scalars(select(MigrationRun)).one()
    assert run.status is MigrationRunStatus.FAILED
    assert run.last_completed_step == "Tenants"
    assert run.error_summary.startswith("Departments:")
    failed_step = [step_run for step_run in run.steps if step_run.step == "Departments"][0]
    assert failed_step.status is MigrationStepStatus.FAILED
    assert failed_step.engine_state == "failed"
    assert json.loads(_progress(tmp_path).read_text()) == {"lastCompleted": "Tenants"}

    destination_metadata.tables["departments"].create(destination_engine)
    report = orchestrator().run()

    assert report.run_id == run.id
    assert report.resumed_from == "Tenants"
    assert [(outcome.name, outcome.status) for outcome in report.steps] == [
        ("Departments", MigrationStepStatus.SUCCEEDED)
    ]
    assert report.status is MigrationRunStatus.SUCCEEDED
    assert len(db.session.scalars(select(MigrationStepRun)).all()) == 2


def test_restart_cancels_unfinished_run(orchestrator):
    first = orchestrator().run(["Tenants"])

    report = orchestrator().run(restart=True)

    assert report.run_id != first.run_id
    assert report.resumed_from is None
    assert [outcome.name for outcome in report.steps] == ["Tenants", "Departments"]
    assert db.session.get(MigrationRun, first.run_id).status is MigrationRunStatus.CANCELLED


def test_unknown_step_creates_no_run(orchestrator):
    with pytest.raises(ValueError, match="Bogus"):
        orchestrator().run(["Bogus"])
    assert db.session.scalars(select(MigrationRun)).all() == []


def test_progress_file_ignores_unreadable_content(tmp_path):
    progress = ProgressFile(tmp_path, "tenant-3")
    assert progress.read() is None

    progress.path.write_text("{not json", encoding="utf-8")
    assert progress.read() is None

    progress.write("Users")
    assert progress.read() == "Users"
    progress.clear()
    assert not progress.path.exists()
