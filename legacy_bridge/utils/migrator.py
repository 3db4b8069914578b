"""
Utility helpers for migrator configuration checks.
"""

from __future__ import annotations

from flask import current_app


def _get_config(app=None):
    if app is not None:
        return app.config
    return current_app.config


def is_migrator_enabled(app=None) -> bool:
    """Return True when the migrator feature flag is enabled."""
    config = _get_config(app)
    return bool(config.get("MIGRATOR_ENABLED", True))


def get_tenant_scope(app=None, override: int | None = None) -> int | None:
    """Resolve the tenant a run is scoped to; an explicit override wins over ``TENANT_ID``."""
    if override is not None:
        return override
    config = _get_config(app)
    raw = config.get("TENANT_ID")
    if raw is None or str(raw).strip() == "":
        return None
    try:
        return int(str(raw).strip())
    except ValueError as exc:
        raise ValueError(f"TENANT_ID must be an integer, got {raw!r}") from exc


def scope_key(tenant_id: int | None) -> str:
    return "all-tenants" if tenant_id is None else f"tenant-{tenant_id}"
