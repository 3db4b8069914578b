"""
Generic batched migration engine.

One ``EntityMigration`` runs one entity step:
NotStarted → Counting → Streaming → ResolvingReferences → Done, or Failed.
"""

from __future__ import annotations

import csv
import enum
import json
import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Mapping

from sqlalchemy import MetaData, Select, Table, select
from sqlalchemy.engine import Connection
from sqlalchemy.exc import NoSuchTableError, SQLAlchemyError

from legacy_bridge.migrator.errors import SchemaMappingError, SkipRow, StepFailedError
from legacy_bridge.migrator.mapping import EntityMapping, EnumTables, validate_mapping
from legacy_bridge.migrator.metrics import record_batch, record_rows, record_step_state
from legacy_bridge.migrator.pipeline.identity import IdentityResolver, OldToNewMap
from legacy_bridge.migrator.pipeline.reader import CursorReader
from legacy_bridge.migrator.pipeline.references import ReferenceResolver, ReferenceStager
from legacy_bridge.migrator.pipeline.transform import TargetPayload
from legacy_bridge.migrator.pipeline.writer import BatchResult, BatchWriter

logger = logging.getLogger(__name__)


class StepState(str, enum.Enum):
    NOT_STARTED = "not_started"
    COUNTING = "counting"
    STREAMING = "streaming"
    RESOLVING_REFERENCES = "resolving_references"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class MigratorSettings:
    """Tuning inputs accepted by the engine; built from app config."""

    fetch_size: int = 2000
    insert_chunk_size: int = 500
    synthetic_key_max_attempts: int = 50
    relaxed_durability: bool = True
    skip_report_dir: Path | None = None
    flags: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "MigratorSettings":
        report_dir = config.get("MIGRATOR_SKIP_REPORT_DIR")
        return cls(
            fetch_size=int(config.get("MIGRATOR_FETCH_SIZE", 2000)),
            insert_chunk_size=int(config.get("MIGRATOR_INSERT_CHUNK_SIZE", 500)),
            synthetic_key_max_attempts=int(config.get("MIGRATOR_SYNTHETIC_KEY_MAX_ATTEMPTS", 50)),
            relaxed_durability=bool(config.get("MIGRATOR_RELAXED_DURABILITY", True)),
            skip_report_dir=Path(report_dir) if report_dir else None,
            flags={
                "tasks_default_type": bool(config.get("MIGRATOR_TASKS_DEFAULT_TYPE", False)),
                "tasks_default_type_name": config.get("MIGRATOR_TASKS_DEFAULT_TYPE_NAME", "Geral"),
                "tags_assign_all_users": bool(config.get("MIGRATOR_TAGS_ASSIGN_ALL_USERS", False)),
            },
        )


@dataclass
class StepContext:
    """Read-only inputs handed to every transform call."""

    tenant_id: int | None
    settings: MigratorSettings
    enums: EnumTables
    lookups: dict[str, Any] = field(default_factory=dict)

    def flag(self, name: str, default: Any = None) -> Any:
        return self.settings.flags.get(name, default)


class EntityStep:
    """
    Thin configuration of the engine for one entity.

    Subclasses provide ``mapping`` and ``transform``; ``prepare`` may preload
    destination lookups (valid foreign keys, fallbacks) before streaming and
    ``finalize`` may run set-based fix-ups after references are resolved.
    """

    name: str = ""
    mapping: EntityMapping

    def prepare(self, destination: Connection, tables: "TableCatalog", context: StepContext) -> dict[str, Any]:
        return {}

    def transform(self, row: Mapping[str, Any], context: StepContext) -> TargetPayload | None:
        raise NotImplementedError

    def finalize(self, destination: Connection, tables: "TableCatalog", context: StepContext) -> None:
        return None


class TableCatalog:
    """Reflects tables once per step and caches them by name."""

    def __init__(self, connection: Connection):
        self.connection = connection
        self.metadata = MetaData()

    def get(self, name: str) -> Table:
        if name in self.metadata.tables:
            return self.metadata.tables[name]
        try:
            return Table(name, self.metadata, autoload_with=self.connection)
        except NoSuchTableError as exc:
            raise SchemaMappingError(f"Table '{name}' does not exist") from exc

    def has(self, name: str) -> bool:
        try:
            self.get(name)
        except SchemaMappingError:
            return False
        return True


class SkipReport:
    """Write skipped rows to ``<dir>/skipped-<step>.csv``; the file opens on the first skip."""

    HEADER = ("old_id", "reason", "details")

    def __init__(self, directory: Path | None, step: str):
        self.path = directory / f"skipped-{step.lower()}.csv" if directory else None
        self._handle = None
        self._writer = None

    def write(self, old_id: Any, reason: str, details: Mapping[str, Any]) -> None:
        if self.path is None:
            return
        if self._handle is None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._handle = self.path.open("w", encoding="utf-8", newline="")
            self._writer = csv.writer(self._handle, quoting=csv.QUOTE_ALL)
            self._writer.writerow(self.HEADER)
        self._writer.writerow(
            ("" if old_id is None else str(old_id), reason, json.dumps(details, default=str, sort_keys=True))
        )

    def flush(self) -> None:
        if self._handle is not None:
            self._handle.flush()

    def close(self) -> None:
        if self._handle is not None:
            self._handle.close()
            self._handle = None
            self._writer = None


@dataclass
class StepSummary:
    """Step-level result reported to the orchestrator."""

    step: str
    state: StepState = StepState.NOT_STARTED
    total: int = 0
    batches: int = 0
    counts: BatchResult = field(default_factory=BatchResult)
    skip_reasons: Counter = field(default_factory=Counter)
    error_samples: list[str] = field(default_factory=list)
    demoted_keys: int = 0
    references_staged: int = 0
    references_resolved: int = 0
    duration_seconds: float = 0.0
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.state is StepState.DONE

    def to_dict(self) -> dict[str, Any]:
        return {
            "step": self.step,
            "state": self.state.value,
            "total": self.total,
            "batches": self.batches,
            **self.counts.to_dict(),
            "skip_reasons": dict(self.skip_reasons),
            "demoted_keys": self.demoted_keys,
            "references_staged": self.references_staged,
            "references_resolved": self.references_resolved,
            "duration_seconds": round(self.duration_seconds, 3),
            "error": self.error,
        }


_MAX_ERROR_SAMPLES = 20


class EntityMigration:
    """Run one entity step against a source and a destination connection."""

    def __init__(
        self,
        step: EntityStep,
        *,
        source: Connection,
        destination: Connection,
        context: StepContext,
        on_transition: Callable[[StepState], None] | None = None,
    ):
        self.step = step
        self.mapping = step.mapping
        self.source = source
        self.destination = destination
        self.context = context
        self.on_transition = on_transition
        self.summary = StepSummary(step=step.name)
        self.id_map = OldToNewMap()
        self.skip_report = SkipReport(context.settings.skip_report_dir, step.name)

    def _transition(self, state: StepState) -> None:
        self.summary.state = state
        record_step_state(self.step.name, state.value)
        logger.debug("Step state changed", extra={"migrator_step": self.step.name, "migrator_state": state.value})
        if self.on_transition is not None:
            self.on_transition(state)

    def run(self) -> StepSummary:
        started = time.perf_counter()
        self._transition(StepState.NOT_STARTED)
        stager = ReferenceStager(self.destination, self.mapping.entity)
        try:
            self._transition(StepState.COUNTING)
            source_tables = TableCatalog(self.source)
            destination_tables = TableCatalog(self.destination)
            query, target = self._prepare_tables(source_tables, destination_tables)
            reader = CursorReader(self.source, query, batch_size=self.context.settings.fetch_size)
            try:
                self.summary.total = reader.count()
            except SQLAlchemyError as exc:
                raise StepFailedError(self.step.name, "counting", str(exc)) from exc
            if self.source.in_transaction():
                self.source.rollback()

            if self.summary.total == 0:
                logger.info(
                    "No source rows in scope",
                    extra={"migrator_step": self.step.name, "migrator_tenant_id": self.context.tenant_id},
                )
                self._transition(StepState.DONE)
                return self.summary

            try:
                with self.destination.begin():
                    self.context.lookups = self.step.prepare(self.destination, destination_tables, self.context)
            except SQLAlchemyError as exc:
                raise StepFailedError(self.step.name, "counting", str(exc)) from exc

            resolver = IdentityResolver(
                self.destination,
                target,
                self.mapping,
                tenant_id=self.context.tenant_id,
                max_synthetic_attempts=self.context.settings.synthetic_key_max_attempts,
            )
            writer = BatchWriter(
                self.destination,
                target,
                self.mapping,
                chunk_size=self.context.settings.insert_chunk_size,
                relaxed_durability=self.context.settings.relaxed_durability,
            )
            self._transition(StepState.STREAMING)
            try:
                resolver.prime()
                for rows in reader.batches():
                    self._process_batch(rows, resolver, writer, stager)
            except SQLAlchemyError as exc:
                raise StepFailedError(self.step.name, "streaming", str(exc)) from exc
            finally:
                if self.source.in_transaction():
                    self.source.rollback()

            self._transition(StepState.RESOLVING_REFERENCES)
            referenced = {
                entity: destination_tables.get(table_name)
                for entity, table_name in self.mapping.reference_tables.items()
            }
            reference_resolver = ReferenceResolver(
                self.destination,
                stager,
                target,
                self.mapping,
                referenced_tables=referenced,
                tenant_id=self.context.tenant_id,
            )
            try:
                resolved = reference_resolver.resolve()
                with self.destination.begin():
                    self.step.finalize(self.destination, destination_tables, self.context)
            except SQLAlchemyError as exc:
                raise StepFailedError(self.step.name, "resolving references", str(exc)) from exc
            self.summary.references_staged = stager.staged_count
            self.summary.references_resolved = sum(resolved.values())
            self._transition(StepState.DONE)
            return self.summary
        except Exception as exc:
            self.summary.error = str(exc)
            self._transition(StepState.FAILED)
            logger.error(
                "Migration step failed",
                extra={"migrator_step": self.step.name, "migrator_error": str(exc)},
            )
            raise
        finally:
            self.summary.duration_seconds = time.perf_counter() - started
            self.skip_report.close()
            try:
                stager.teardown()
            except SQLAlchemyError as exc:  # pragma: no cover - connection already gone
                logger.warning("Failed to drop staging tables: %s", exc)

    def _prepare_tables(self, source_tables: TableCatalog, destination_tables: TableCatalog) -> tuple[Select, Table]:
        sources = {name: source_tables.get(name) for name in self.mapping.source_tables}
        target = destination_tables.get(self.mapping.destination_table)
        validate_mapping(self.mapping, sources, target)
        for table_name in self.mapping.reference_tables.values():
            destination_tables.get(table_name)
        if self.source.in_transaction():
            self.source.rollback()
        if self.destination.in_transaction():
            self.destination.rollback()
        return build_source_query(self.mapping, sources, self.context.tenant_id), target

    def _process_batch(
        self,
        rows: list[Mapping[str, Any]],
        resolver: IdentityResolver,
        writer: BatchWriter,
        stager: ReferenceStager,
    ) -> None:
        started = time.perf_counter()
        batch = BatchResult(processed=len(rows))
        self.summary.batches += 1
        payloads: list[TargetPayload] = []
        for row in rows:
            try:
                payload = self.step.transform(row, self.context)
            except SkipRow as skip:
                batch.skipped += 1
                self.summary.skip_reasons[skip.reason] += 1
                self.skip_report.write(row.get("id"), skip.reason, skip.details)
                continue
            if payload is None:
                batch.skipped += 1
                self.summary.skip_reasons["filtered"] += 1
                self.skip_report.write(row.get("id"), "filtered", {})
                continue
            payloads.append(payload)

        resolution = resolver.resolve(payloads)
        self.summary.demoted_keys += resolution.demoted
        for payload in resolution.duplicates:
            batch.skipped += 1
            self.summary.skip_reasons["duplicate_key"] += 1
            self.skip_report.write(payload.old_id, "duplicate_key", {})
        for payload, message in resolution.errored:
            batch.errored += 1
            self._sample_error(payload, message)

        mapped: list[tuple[TargetPayload, int]] = []
        fresh_ids: list[tuple[str, int]] = []
        existing_ids = {id(payload) for payload, _ in resolution.existing}
        for payload, new_id in resolution.existing:
            if self.id_map.add(payload.old_id, new_id):
                fresh_ids.append((payload.old_id, new_id))
            mapped.append((payload, new_id))
        to_write = list(resolution.candidates)
        if self.mapping.refresh_existing:
            to_write.extend(payload for payload, new_id in resolution.existing)
        else:
            batch.existing += len(resolution.existing)

        outcome = writer.write(to_write)
        for payload, new_id in outcome.written:
            if id(payload) in existing_ids:
                batch.existing += 1
                continue
            batch.inserted += 1
            if self.id_map.add(payload.old_id, new_id):
                fresh_ids.append((payload.old_id, new_id))
            mapped.append((payload, new_id))
        for payload, message in outcome.failed:
            batch.errored += 1
            self._sample_error(payload, message)

        if self.mapping.tracks_self_references:
            stager.record_ids(fresh_ids)
        self._stage_references(mapped, stager)

        self.summary.counts.merge(batch)
        self.skip_report.flush()
        duration = time.perf_counter() - started
        record_batch(self.step.name, status="fallback" if outcome.used_fallback else "success", duration_seconds=duration)
        record_rows(self.step.name, batch.to_dict())
        logger.info(
            "Batch processed",
            extra={
                "migrator_step": self.step.name,
                "migrator_batch": self.summary.batches,
                "migrator_batch_rows": len(rows),
                "migrator_batch_fallback": outcome.used_fallback,
                "migrator_batch_duration_seconds": round(duration, 3),
                **{f"migrator_{key}": value for key, value in batch.to_dict().items()},
            },
        )

    def _stage_references(self, mapped: list[tuple[TargetPayload, int]], stager: ReferenceStager) -> None:
        entries = [(new_id, reference) for payload, new_id in mapped for reference in payload.references]
        if entries:
            stager.stage(entries)

    def _sample_error(self, payload: TargetPayload, message: str) -> None:
        if len(self.summary.error_samples) < _MAX_ERROR_SAMPLES:
            self.summary.error_samples.append(f"{payload.old_id}: {message}")


def build_source_query(mapping: EntityMapping, tables: Mapping[str, Table], tenant_id: int | None) -> Select:
    """Select declared columns, apply filters and tenant scope, order by primary key."""
    table = tables[mapping.source_table]
    if mapping.source_query is not None:
        query = mapping.source_query(tables, tenant_id)
    else:
        query = select(*(table.c[column].label(alias) for alias, column in mapping.source_columns.items()))
        if mapping.source_tenant_column and tenant_id is not None:
            query = query.where(table.c[mapping.source_tenant_column] == tenant_id)
    if mapping.source_filter is not None:
        query = query.where(mapping.source_filter(table))
    return query.order_by(table.c[mapping.source_pk])
