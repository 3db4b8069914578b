"""
CLI commands for the legacy migrator.

``flask migrator`` lists the steps and the tenant scope; ``run`` executes them
with a confirmation prompt per step, ``status`` shows the latest run for a
scope and ``reset`` forgets unfinished progress.
"""

from __future__ import annotations

import json
from typing import Optional

import click
from flask.cli import ScriptInfo
from sqlalchemy import select

from legacy_bridge.migrator.connections import dispose_engines
from legacy_bridge.migrator.errors import MigratorError, StepFailedError
from legacy_bridge.migrator.orchestrator import MigrationOrchestrator, RunReport, StepOutcome
from legacy_bridge.migrator.registry import get_step_registry
from legacy_bridge.models import MigrationRun, MigrationStepStatus, db
from legacy_bridge.utils.migrator import get_tenant_scope, is_migrator_enabled, scope_key


def _load_enabled_app(ctx):
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    if not is_migrator_enabled(app):
        raise click.ClickException("Migrator is disabled; enable it via MIGRATOR_ENABLED before running.")
    return app


def _resolve_tenant(app, tenant: Optional[int]) -> Optional[int]:
    try:
        return get_tenant_scope(app, override=tenant)
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc


@click.group(name="migrator", invoke_without_command=True)
@click.pass_context
def migrator_cli(ctx):
    """
    Legacy database migration commands.

    Lists the migration steps in execution order when invoked without a subcommand.
    """
    app = _load_enabled_app(ctx)
    if ctx.invoked_subcommand is None:
        tenant_id = _resolve_tenant(app, None)
        click.echo(f"Scope: {scope_key(tenant_id)}")
        click.echo("Migration steps:")
        for descriptor in get_step_registry().values():
            click.echo(
                f"  {descriptor.position + 1:>2}. {descriptor.name:<16} "
                f"{descriptor.source_table} -> {descriptor.destination_table}"
            )


def get_disabled_migrator_group() -> click.Group:
    """
    Return a minimal command group that informs the operator the migrator is disabled.
    """

    @click.group(name="migrator", invoke_without_command=True)
    def disabled_group():
        raise click.ClickException("Migrator commands are unavailable because MIGRATOR_ENABLED=false.")

    return disabled_group


def _format_outcome(outcome: StepOutcome) -> str:
    if outcome.status is MigrationStepStatus.SKIPPED:
        return f"Step {outcome.name} skipped."
    if outcome.status is MigrationStepStatus.FAILED:
        return f"Step {outcome.name} failed: {outcome.error}"
    summary = outcome.summary
    if summary is None:
        return f"Step {outcome.name} completed."
    counts = summary.counts
    reasons = summary.skip_reasons
    reasons_display = ", ".join(f"{code}={count}" for code, count in sorted(reasons.items())) if reasons else "none"
    return (
        f"Step {outcome.name} completed in {summary.duration_seconds:.1f}s.\n"
        f"  total              : {summary.total}\n"
        f"  batches            : {summary.batches}\n"
        f"  processed          : {counts.processed}\n"
        f"  inserted           : {counts.inserted}\n"
        f"  existing           : {counts.existing}\n"
        f"  skipped            : {counts.skipped}\n"
        f"  errored            : {counts.errored}\n"
        f"  skip_reasons       : {reasons_display}\n"
        f"  demoted_keys       : {summary.demoted_keys}\n"
        f"  references_resolved: {summary.references_resolved}/{summary.references_staged}"
    )


def _format_report(report: RunReport) -> str:
    completed = sum(1 for outcome in report.steps if outcome.status is MigrationStepStatus.SUCCEEDED)
    skipped = sum(1 for outcome in report.steps if outcome.status is MigrationStepStatus.SKIPPED)
    resumed = f", resumed after {report.resumed_from}" if report.resumed_from else ""
    return (
        f"Run {report.run_id} ({report.scope}{resumed}) finished with status {report.status.value}: "
        f"{completed} step(s) completed, {skipped} skipped."
    )


@migrator_cli.command("run")
@click.option("--tenant", type=int, help="Restrict the run to one tenant (overrides TENANT_ID).")
@click.option("--step", "steps", multiple=True, help="Run only the named step (repeatable).")
@click.option("--from-step", help="Start from the named step, ignoring saved progress.")
@click.option("--yes", "assume_yes", is_flag=True, help="Run every step without asking for confirmation.")
@click.option("--restart", is_flag=True, help="Cancel unfinished runs for the scope and start from the first step.")
@click.option("--summary-json", is_flag=True, help="Emit a machine-readable summary payload after completion.")
@click.pass_context
def migrator_run(
    ctx,
    tenant: Optional[int],
    steps: tuple[str, ...],
    from_step: Optional[str],
    assume_yes: bool,
    restart: bool,
    summary_json: bool,
):
    """Migrate legacy data step by step, resuming from saved progress."""
    app = _load_enabled_app(ctx)
    tenant_id = _resolve_tenant(app, tenant)

    def confirm(descriptor) -> bool:
        if assume_yes:
            return True
        return click.confirm(f"Run step {descriptor.name} ({descriptor.source_table})?", default=True)

    def announce(outcome: StepOutcome) -> None:
        click.echo(_format_outcome(outcome))

    orchestrator = MigrationOrchestrator(app, tenant_id=tenant_id, confirm=confirm, on_step_finished=announce)
    click.echo(f"Migrating scope {orchestrator.scope}.")
    try:
        report = orchestrator.run(steps, from_step=from_step, restart=restart)
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc
    except StepFailedError as exc:
        raise click.ClickException(f"Migration stopped at step {exc.step}: {exc}") from exc
    except MigratorError as exc:
        raise click.ClickException(f"Migration failed: {exc}") from exc
    finally:
        dispose_engines(app)

    click.echo(_format_report(report))
    if summary_json:
        click.echo(json.dumps(report.to_dict(), indent=2, sort_keys=True))


@migrator_cli.command("status")
@click.option("--tenant", type=int, help="Scope to inspect (overrides TENANT_ID).")
@click.pass_context
def migrator_status(ctx, tenant: Optional[int]):
    """Show the latest migration run for a scope."""
    app = _load_enabled_app(ctx)
    scope = scope_key(_resolve_tenant(app, tenant))
    run = db.session.scalars(
        select(MigrationRun).where(MigrationRun.scope == scope).order_by(MigrationRun.id.desc()).limit(1)
    ).first()
    if run is None:
        click.echo(f"No migration runs recorded for {scope}.")
        return
    click.echo(
        f"Run {run.id} ({scope}) status {run.status.value}; last completed step: {run.last_completed_step or 'none'}"
    )
    if run.error_summary:
        click.echo(f"  error: {run.error_summary}")
    for step_run in run.steps:
        state = f" [{step_run.engine_state}]" if step_run.engine_state else ""
        click.echo(f"  {step_run.step:<16} {step_run.status.value}{state}")


@migrator_cli.command("reset")
@click.option("--tenant", type=int, help="Scope to reset (overrides TENANT_ID).")
@click.option("--yes", "assume_yes", is_flag=True, help="Do not ask for confirmation.")
@click.pass_context
def migrator_reset(ctx, tenant: Optional[int], assume_yes: bool):
    """Cancel unfinished runs for a scope so the next run starts from the first step."""
    app = _load_enabled_app(ctx)
    tenant_id = _resolve_tenant(app, tenant)
    if not assume_yes and not click.confirm(f"Forget migration progress for {scope_key(tenant_id)}?", default=False):
        click.echo("Reset aborted.")
        return
    cancelled = MigrationOrchestrator(app, tenant_id=tenant_id).cancel_unfinished()
    click.echo(f"Cancelled {cancelled} unfinished run(s) for {scope_key(tenant_id)}.")
