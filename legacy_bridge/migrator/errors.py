"""Exception types raised by the migrator engine and its steps."""

from __future__ import annotations


class MigratorError(RuntimeError):
    """Base class for migrator failures."""


class MappingLoadError(MigratorError):
    """Raised when a lookup table file cannot be loaded or validated."""


class SchemaMappingError(MigratorError):
    """Raised at step start when declared columns are missing from a table."""


class SyntheticKeyExhausted(MigratorError):
    """Raised when no free synthetic key was found within the attempt cap."""

    def __init__(self, old_id: str, attempts: int):
        super().__init__(f"No free synthetic key for row {old_id} after {attempts} attempts")
        self.old_id = old_id
        self.attempts = attempts


class StepFailedError(MigratorError):
    """Fatal, step-aborting failure (cursor, count query or connection loss)."""

    def __init__(self, step: str, state: str, message: str):
        super().__init__(f"Step '{step}' failed while {state}: {message}")
        self.step = step
        self.state = state


class SkipRow(Exception):
    """
    Signal that a source row cannot be migrated because of an expected data gap.

    ``reason`` is a short code (``missing_required``, ``missing_channel_fk`` ...)
    used for the per-step skip report.
    """

    def __init__(self, reason: str, **details):
        super().__init__(reason)
        self.reason = reason
        self.details = details
