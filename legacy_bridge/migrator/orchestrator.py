"""
Progress orchestration across entity steps.

Steps run in registry order against one tenant scope. Progress is tracked in
the ``migration_runs``/``migration_step_runs`` tables and mirrored to a
``progress-<scope>.json`` file; an unfinished run for the same scope is
resumed from the step after its last completed one.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Sequence

from flask import Flask
from sqlalchemy import select
from sqlalchemy.engine import Engine

from legacy_bridge.migrator.connections import get_engines, step_connections
from legacy_bridge.migrator.errors import MigratorError, StepFailedError
from legacy_bridge.migrator.mapping import EnumTables, get_enum_tables
from legacy_bridge.migrator.pipeline.engine import EntityMigration, MigratorSettings, StepContext, StepState, StepSummary
from legacy_bridge.migrator.registry import StepDescriptor, get_step_registry, next_step_after, resolve_steps
from legacy_bridge.models import MigrationRun, MigrationRunStatus, MigrationStepRun, MigrationStepStatus, db
from legacy_bridge.utils.logging_config import step_log_file
from legacy_bridge.utils.migrator import scope_key

logger = logging.getLogger(__name__)

UNFINISHED_STATUSES = (MigrationRunStatus.PENDING, MigrationRunStatus.RUNNING, MigrationRunStatus.FAILED)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProgressFile:
    """``{"lastCompleted": "<Step>"}`` written after every completed step."""

    def __init__(self, directory: str | Path, scope: str):
        self.path = Path(directory) / f"progress-{scope}.json"

    def read(self) -> str | None:
        if not self.path.exists():
            return None
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("Could not read progress file %s; starting over: %s", self.path, exc)
            return None
        value = payload.get("lastCompleted") if isinstance(payload, dict) else None
        return str(value) if value else None

    def write(self, step: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps({"lastCompleted": step}), encoding="utf-8")

    def clear(self) -> None:
        if self.path.exists():
            self.path.unlink()


@dataclass
class StepOutcome:
    name: str
    status: MigrationStepStatus
    summary: StepSummary | None = None
    error: str | None = None


@dataclass
class RunReport:
    run_id: int
    scope: str
    tenant_id: int | None
    status: MigrationRunStatus
    resumed_from: str | None = None
    steps: list[StepOutcome] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "scope": self.scope,
            "tenant_id": self.tenant_id,
            "status": self.status.value,
            "resumed_from": self.resumed_from,
            "steps": [
                {
                    "step": outcome.name,
                    "status": outcome.status.value,
                    "summary": outcome.summary.to_dict() if outcome.summary else None,
                    "error": outcome.error,
                }
                for outcome in self.steps
            ],
        }


class MigrationOrchestrator:
    """
    Sequence entity steps for one tenant scope.

    ``confirm`` is asked before each step; a declined step is recorded as
    skipped and the run moves on. The first failing step stops the run and
    raises ``StepFailedError``.
    """

    def __init__(
        self,
        app: Flask,
        *,
        tenant_id: int | None = None,
        confirm: Callable[[StepDescriptor], bool] | None = None,
        on_step_finished: Callable[[StepOutcome], None] | None = None,
        engines: tuple[Engine, Engine] | None = None,
        enums: EnumTables | None = None,
    ):
        self.app = app
        self.tenant_id = tenant_id
        self.scope = scope_key(tenant_id)
        self.confirm = confirm
        self.on_step_finished = on_step_finished
        self._engines = engines
        self._enums = enums
        self.settings = MigratorSettings.from_config(app.config)
        self.progress = ProgressFile(app.config.get("MIGRATOR_PROGRESS_DIR") or app.instance_path, self.scope)
        self._active_state = StepState.NOT_STARTED.value

    def latest_unfinished_run(self) -> MigrationRun | None:
        return db.session.scalars(
            select(MigrationRun)
            .where(MigrationRun.scope == self.scope, MigrationRun.status.in_(UNFINISHED_STATUSES))
            .order_by(MigrationRun.id.desc())
            .limit(1)
        ).first()

    def cancel_unfinished(self) -> int:
        """Cancel every unfinished run for the scope and forget file progress."""
        runs = db.session.scalars(
            select(MigrationRun).where(MigrationRun.scope == self.scope, MigrationRun.status.in_(UNFINISHED_STATUSES))
        ).all()
        for run in runs:
            run.status = MigrationRunStatus.CANCELLED
            run.finished_at = _utcnow()
        db.session.commit()
        self.progress.clear()
        return len(runs)

    def run(
        self,
        selected: Sequence[str] = (),
        *,
        from_step: str | None = None,
        restart: bool = False,
    ) -> RunReport:
        registry = get_step_registry()
        descriptors_all = tuple(registry.values())
        # Validate names and connections before touching any run state.
        resolve_steps(selected, from_step=from_step, registry=registry)
        engines = self._engines or get_engines(self.app)
        if restart:
            cancelled = self.cancel_unfinished()
            if cancelled:
                logger.info("Cancelled unfinished runs before restart", extra={"migrator_scope": self.scope})

        enums = self._enums or get_enum_tables()
        run = self.latest_unfinished_run()
        resumed_from = None
        if run is None:
            run = MigrationRun(
                scope=self.scope,
                tenant_id=self.tenant_id,
                status=MigrationRunStatus.PENDING,
                counts_json={},
                enum_tables_checksum=enums.checksum,
            )
            db.session.add(run)
            db.session.commit()
            last_completed = self.progress.read()
        else:
            last_completed = run.last_completed_step or self.progress.read()

        if not selected and not from_step and last_completed:
            from_step = next_step_after(last_completed, registry)
            resumed_from = last_completed
            if from_step is None:
                descriptors: tuple[StepDescriptor, ...] = ()
            else:
                descriptors = resolve_steps((), from_step=from_step, registry=registry)
        else:
            descriptors = resolve_steps(selected, from_step=from_step, registry=registry)

        report = RunReport(
            run_id=run.id,
            scope=self.scope,
            tenant_id=self.tenant_id,
            status=run.status,
            resumed_from=resumed_from,
        )
        run.status = MigrationRunStatus.RUNNING
        run.started_at = run.started_at or _utcnow()
        run.error_summary = None
        db.session.commit()
        logger.info(
            "Migration run started",
            extra={
                "migrator_run_id": run.id,
                "migrator_scope": self.scope,
                "migrator_steps": [descriptor.name for descriptor in descriptors],
                "migrator_resumed_from": resumed_from,
            },
        )

        for descriptor in descriptors:
            step_run = self._step_run(run, descriptor)
            if self.confirm is not None and not self.confirm(descriptor):
                step_run.status = MigrationStepStatus.SKIPPED
                step_run.finished_at = _utcnow()
                db.session.commit()
                outcome = StepOutcome(name=descriptor.name, status=MigrationStepStatus.SKIPPED)
                self._finish(report, outcome)
                logger.info("Step skipped by operator", extra={"migrator_step": descriptor.name})
                continue

            try:
                summary = self._run_step(descriptor, step_run, engines, enums)
            except Exception as exc:
                state = self._active_state
                self._fail(run, step_run, report, descriptor, exc)
                if isinstance(exc, StepFailedError):
                    raise
                raise StepFailedError(descriptor.name, state, str(exc)) from exc

            step_run.status = MigrationStepStatus.SUCCEEDED
            step_run.finished_at = _utcnow()
            step_run.counts_json = summary.to_dict()
            run.last_completed_step = descriptor.name
            run.counts_json = {**(run.counts_json or {}), descriptor.name: summary.to_dict()}
            db.session.commit()
            self.progress.write(descriptor.name)
            self._finish(report, StepOutcome(name=descriptor.name, status=MigrationStepStatus.SUCCEEDED, summary=summary))

        reached_end = not descriptors or descriptors[-1].name == descriptors_all[-1].name
        if reached_end:
            run.status = MigrationRunStatus.SUCCEEDED
            run.finished_at = _utcnow()
            self.progress.clear()
        else:
            run.status = MigrationRunStatus.PENDING
        db.session.commit()
        report.status = run.status
        logger.info(
            "Migration run finished",
            extra={"migrator_run_id": run.id, "migrator_scope": self.scope, "migrator_status": run.status.value},
        )
        return report

    def _step_run(self, run: MigrationRun, descriptor: StepDescriptor) -> MigrationStepRun:
        step_run = db.session.scalars(
            select(MigrationStepRun).where(MigrationStepRun.run_id == run.id, MigrationStepRun.step == descriptor.name)
        ).first()
        if step_run is None:
            step_run = MigrationStepRun(run_id=run.id, step=descriptor.name, position=descriptor.position)
            db.session.add(step_run)
        step_run.status = MigrationStepStatus.RUNNING
        step_run.engine_state = StepState.NOT_STARTED.value
        step_run.started_at = _utcnow()
        step_run.finished_at = None
        step_run.error_summary = None
        db.session.commit()
        return step_run

    def _run_step(
        self,
        descriptor: StepDescriptor,
        step_run: MigrationStepRun,
        engines: tuple[Engine, Engine],
        enums: EnumTables,
    ) -> StepSummary:
        self._active_state = StepState.NOT_STARTED.value

        def record_state(state: StepState) -> None:
            if state is not StepState.FAILED:
                self._active_state = state.value
            step_run.engine_state = state.value
            db.session.commit()

        context = StepContext(tenant_id=self.tenant_id, settings=self.settings, enums=enums)
        with step_log_file(self.app, descriptor.name), step_connections(*engines) as (source, destination):
            migration = EntityMigration(
                descriptor.build(),
                source=source,
                destination=destination,
                context=context,
                on_transition=record_state,
            )
            return migration.run()

    def _fail(
        self,
        run: MigrationRun,
        step_run: MigrationStepRun,
        report: RunReport,
        descriptor: StepDescriptor,
        exc: Exception,
    ) -> None:
        db.session.rollback()
        message = str(exc)
        step_run.status = MigrationStepStatus.FAILED
        step_run.finished_at = _utcnow()
        step_run.error_summary = message
        run.status = MigrationRunStatus.FAILED
        run.error_summary = f"{descriptor.name}: {message}"
        db.session.commit()
        level = logging.ERROR if isinstance(exc, MigratorError) else logging.CRITICAL
        logger.log(
            level,
            "Migration step failed; stopping run",
            extra={"migrator_run_id": run.id, "migrator_step": descriptor.name, "migrator_error": message},
        )
        report.status = MigrationRunStatus.FAILED
        self._finish(report, StepOutcome(name=descriptor.name, status=MigrationStepStatus.FAILED, error=message))

    def _finish(self, report: RunReport, outcome: StepOutcome) -> None:
        report.steps.append(outcome)
        if self.on_step_finished is not None:
            self.on_step_finished(outcome)
