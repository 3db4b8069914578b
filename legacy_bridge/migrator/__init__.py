"""
Legacy migrator feature package.

Registers the ``flask migrator`` CLI group, or a disabled stand-in when
``MIGRATOR_ENABLED`` is false, and records migrator state in
``app.extensions['migrator']``.
"""

from __future__ import annotations

from flask import Flask

from legacy_bridge.utils.migrator import is_migrator_enabled

from .cli import get_disabled_migrator_group, migrator_cli
from .orchestrator import MigrationOrchestrator, RunReport, StepOutcome
from .registry import StepDescriptor, get_step_registry, resolve_steps

MIGRATOR_EXTENSION_KEY = "migrator"

__all__ = [
    "init_migrator",
    "MIGRATOR_EXTENSION_KEY",
    "MigrationOrchestrator",
    "RunReport",
    "StepDescriptor",
    "StepOutcome",
    "get_step_registry",
    "resolve_steps",
]


def _ensure_extension_state(app: Flask) -> dict:
    return app.extensions.setdefault(
        MIGRATOR_EXTENSION_KEY,
        {
            "enabled": False,
            "steps": (),
        },
    )


def _set_cli(app: Flask, enabled: bool) -> None:
    """Register the appropriate CLI group based on flag state."""
    # Avoid duplicate registrations when running tests
    command_name = migrator_cli.name
    if command_name in app.cli.commands:
        app.cli.commands.pop(command_name)

    if enabled:
        app.cli.add_command(migrator_cli)
    else:
        app.cli.add_command(get_disabled_migrator_group())


def init_migrator(app: Flask) -> None:
    """Mount the migrator CLI according to ``MIGRATOR_ENABLED``."""
    enabled = is_migrator_enabled(app)
    state = _ensure_extension_state(app)
    state.update(
        {
            "enabled": enabled,
            "steps": tuple(get_step_registry().keys()) if enabled else (),
        }
    )
    _set_cli(app, enabled=enabled)
    app.logger.debug("Migrator initialized (enabled=%s)", enabled)
