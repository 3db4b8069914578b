"""Schema mapping declarations and legacy lookup tables for migrator steps."""

from __future__ import annotations

import enum
import hashlib
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Mapping, Sequence

import yaml
from flask import current_app
from sqlalchemy import ColumnElement, Select, Table

from legacy_bridge.migrator.errors import MappingLoadError, SchemaMappingError

REQUIRED_ENUM_TABLES = (
    "channel_types",
    "ticket_statuses",
    "media_types",
    "message_acks",
    "campaign_statuses",
    "task_priorities",
    "user_profiles",
)


class ConflictPolicy(str, enum.Enum):
    """How an insert-or-update treats a destination column that already holds data."""

    OVERWRITE = "overwrite"
    PRESERVE_IF_NON_EMPTY = "preserve_if_non_empty"
    KEEP = "keep"


@dataclass(frozen=True)
class NaturalKey:
    """
    Destination columns constrained to be unique.

    ``nullable_column`` is cleared when a later row of the same run repeats a
    key already claimed, so the row can still be written and is then
    identified by the fallback key.
    """

    columns: tuple[str, ...]
    nullable_column: str | None = None


@dataclass(frozen=True)
class FallbackKey:
    columns: tuple[str, ...]
    blank_as_empty: tuple[str, ...] = ()


@dataclass(frozen=True)
class SyntheticKey:
    """
    Deterministic generated value for a unique column the source may lack.

    ``generator(old_id, seed, values)`` receives the payload values so a key
    may embed other columns of the row.
    """

    column: str
    generator: Callable[[str, int, Mapping[str, Any]], str]
    validator: Callable[[Any], bool] | None = None


@dataclass(frozen=True)
class EntityMapping:
    """Explicit source/destination declaration for one entity step."""

    entity: str
    source_table: str
    source_columns: Mapping[str, str]
    destination_table: str
    destination_columns: tuple[str, ...]
    natural_key: NaturalKey = NaturalKey(("id",))
    fallback_key: FallbackKey | None = None
    synthetic_key: SyntheticKey | None = None
    source_pk: str = "id"
    source_tenant_column: str | None = "tenantId"
    source_filter: Callable[[Table], ColumnElement] | None = None
    source_query: Callable[[Mapping[str, Table], int | None], Select] | None = None
    extra_source_tables: tuple[str, ...] = ()
    destination_pk: str = "id"
    destination_tenant_column: str | None = "company_id"
    conflict_columns: tuple[str, ...] | None = ("id",)
    conflict_policy: Mapping[str, ConflictPolicy] = field(default_factory=dict)
    immutable_columns: tuple[str, ...] = ("id", "created_at")
    refresh_existing: bool = True
    reference_tables: Mapping[str, str] = field(default_factory=dict)
    tracks_self_references: bool = False

    @property
    def source_tables(self) -> tuple[str, ...]:
        return (self.source_table, *self.extra_source_tables)

    @property
    def returned_columns(self) -> tuple[str, ...]:
        columns: list[str] = []
        for name in self.natural_key.columns + (self.fallback_key.columns if self.fallback_key else ()):
            if name != self.destination_pk and name not in columns:
                columns.append(name)
        return tuple(columns)


def validate_mapping(
    mapping: EntityMapping,
    source_tables: Mapping[str, Table],
    destination_table: Table,
) -> None:
    """
    Check every declared column against reflected tables.

    Runs once per step before any row is read.
    """
    problems: list[str] = []
    source = source_tables.get(mapping.source_table)
    if source is None:
        raise SchemaMappingError(f"Source table '{mapping.source_table}' is not available.")
    if mapping.source_query is None:
        for alias, column in mapping.source_columns.items():
            if column not in source.c:
                problems.append(f"{mapping.source_table}.{column} (for {alias})")
    for column in (mapping.source_pk, mapping.source_tenant_column):
        if column and column not in source.c:
            problems.append(f"{mapping.source_table}.{column}")

    declared = set(mapping.destination_columns)
    for column in declared | {mapping.destination_pk}:
        if column not in destination_table.c:
            problems.append(f"{mapping.destination_table}.{column}")
    key_columns = list(mapping.natural_key.columns)
    if mapping.fallback_key:
        key_columns.extend(mapping.fallback_key.columns)
    if mapping.synthetic_key:
        key_columns.append(mapping.synthetic_key.column)
    for column in key_columns:
        if column != mapping.destination_pk and column not in declared:
            problems.append(f"{mapping.destination_table}.{column} (key column not written)")
    if mapping.destination_tenant_column and mapping.destination_tenant_column not in destination_table.c:
        problems.append(f"{mapping.destination_table}.{mapping.destination_tenant_column}")
    for column in mapping.conflict_policy:
        if column not in declared:
            problems.append(f"{mapping.destination_table}.{column} (conflict policy)")

    if problems:
        raise SchemaMappingError(
            f"Mapping for '{mapping.entity}' references missing columns: " + ", ".join(sorted(set(problems)))
        )


@dataclass(frozen=True)
class EnumTables:
    tables: Mapping[str, Mapping[str, str]]
    defaults: Mapping[str, str]
    checksum: str
    path: Path

    def lookup(self, name: str) -> Mapping[str, str]:
        return self.tables[name]

    def default(self, name: str) -> str:
        return self.defaults[name]


def load_enum_tables(path: str | Path) -> EnumTables:
    """
    Load and validate the YAML file holding legacy → destination vocabularies.
    """
    path = Path(path)
    if not path.exists():
        raise MappingLoadError(f"Lookup table file not found at {path}")

    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - YAML parser errors
        raise MappingLoadError(f"Failed to parse lookup YAML at {path}: {exc}") from exc

    payload = raw.get("tables")
    if not isinstance(payload, Mapping):
        raise MappingLoadError("Lookup file must define a 'tables' mapping.")

    tables: dict[str, dict[str, str]] = {}
    defaults: dict[str, str] = {}
    for name, entry in payload.items():
        if not isinstance(entry, Mapping):
            raise MappingLoadError(f"Table '{name}' must be a mapping, got {entry!r}")
        values = entry.get("values") or {}
        if not isinstance(values, Mapping):
            raise MappingLoadError(f"Table '{name}' values must be a mapping.")
        if "default" not in entry:
            raise MappingLoadError(f"Table '{name}' requires a default value.")
        tables[str(name)] = {str(key).strip().lower(): str(value) for key, value in values.items()}
        defaults[str(name)] = str(entry["default"])

    missing = [name for name in REQUIRED_ENUM_TABLES if name not in tables]
    if missing:
        raise MappingLoadError(f"Lookup file missing tables: {', '.join(missing)}")

    return EnumTables(tables=tables, defaults=defaults, checksum=_compute_checksum(raw), path=path)


def get_enum_tables() -> EnumTables:
    """Return the lookup tables configured for the current app, cached per path."""
    path = Path(current_app.config["MIGRATOR_ENUM_TABLES_PATH"])
    cache: dict[str, EnumTables] = current_app.extensions.setdefault("migrator_enum_tables", {})
    key = str(path.resolve())
    if key not in cache:
        cache[key] = load_enum_tables(path)
    return cache[key]


def _compute_checksum(payload: Mapping[str, Any] | Sequence[Any]) -> str:
    serialized = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


__all__ = [
    "ConflictPolicy",
    "EntityMapping",
    "EnumTables",
    "FallbackKey",
    "MappingLoadError",
    "NaturalKey",
    "SyntheticKey",
    "get_enum_tables",
    "load_enum_tables",
    "validate_mapping",
]
