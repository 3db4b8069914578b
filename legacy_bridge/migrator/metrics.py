"""Prometheus metrics helpers for the migrator."""

from __future__ import annotations

from typing import Mapping

try:
    from prometheus_client import Counter, Histogram

    _PROMETHEUS_AVAILABLE = True
except ImportError:  # pragma: no cover - metrics optional in some deployments
    Counter = Histogram = None  # type: ignore
    _PROMETHEUS_AVAILABLE = False


if _PROMETHEUS_AVAILABLE:
    _batch_counter = Counter(
        "migrator_batches_total",
        "Number of migration batches processed by step and status.",
        ["step", "status"],
    )
    _batch_duration = Histogram(
        "migrator_batch_duration_seconds",
        "Duration of migration batch processing in seconds.",
        ["step"],
        buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30, 60, 120),
    )
    _row_counter = Counter(
        "migrator_rows_total",
        "Source rows by step and outcome (inserted, existing, skipped, errored).",
        ["step", "outcome"],
    )
    _step_state_counter = Counter(
        "migrator_step_transitions_total",
        "Step state machine transitions.",
        ["step", "state"],
    )
else:  # pragma: no cover - fallbacks when prometheus_client missing
    _batch_counter = None
    _batch_duration = None
    _row_counter = None
    _step_state_counter = None


def record_batch(step: str, *, status: str, duration_seconds: float) -> None:
    """Record one processed batch and its duration."""

    if _batch_counter is None:
        return
    _batch_counter.labels(step=step, status=status).inc()
    if _batch_duration is not None:
        _batch_duration.labels(step=step).observe(max(duration_seconds, 0.0))


def record_rows(step: str, counts: Mapping[str, int]) -> None:
    if _row_counter is None:
        return
    for outcome in ("inserted", "existing", "skipped", "errored"):
        value = counts.get(outcome, 0)
        if value:
            _row_counter.labels(step=step, outcome=outcome).inc(value)


def record_step_state(step: str, state: str) -> None:
    if _step_state_counter is None:
        return
    _step_state_counter.labels(step=step, state=state).inc()
