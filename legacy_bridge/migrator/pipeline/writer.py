"""
Bounded-transaction bulk writer with row-by-row fallback.
"""

from __future__ import annotations

import logging
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

from sqlalchemy import String, Table, case, cast, or_
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Connection
from sqlalchemy.exc import SQLAlchemyError

from legacy_bridge.migrator.errors import MigratorError
from legacy_bridge.migrator.mapping import ConflictPolicy, EntityMapping
from legacy_bridge.migrator.pipeline.identity import normalize_key_value
from legacy_bridge.migrator.pipeline.transform import TargetPayload

logger = logging.getLogger(__name__)

_EMPTY_MARKERS = ("", "{}", "[]")


@dataclass
class BatchResult:
    """Row outcome counts; accumulated into step totals, never decremented."""

    processed: int = 0
    existing: int = 0
    inserted: int = 0
    skipped: int = 0
    errored: int = 0

    def merge(self, other: "BatchResult") -> None:
        self.processed += other.processed
        self.existing += other.existing
        self.inserted += other.inserted
        self.skipped += other.skipped
        self.errored += other.errored

    def to_dict(self) -> dict[str, int]:
        return {
            "processed": self.processed,
            "existing": self.existing,
            "inserted": self.inserted,
            "skipped": self.skipped,
            "errored": self.errored,
        }


@dataclass
class WriteOutcome:
    written: list[tuple[TargetPayload, int]] = field(default_factory=list)
    failed: list[tuple[TargetPayload, str]] = field(default_factory=list)
    used_fallback: bool = False


class BatchWriter:
    """
    Execute multi-row insert-or-update statements for one destination table.

    A batch is attempted inside one transaction (split into statements of at
    most ``chunk_size`` rows). If any statement fails the whole batch is
    rolled back and every row is retried in its own transaction.
    """

    def __init__(
        self,
        connection: Connection,
        table: Table,
        mapping: EntityMapping,
        *,
        chunk_size: int = 500,
        relaxed_durability: bool = True,
    ):
        self.connection = connection
        self.table = table
        self.mapping = mapping
        self.chunk_size = max(1, chunk_size)
        self.relaxed_durability = relaxed_durability
        dialect = connection.dialect.name
        if dialect == "postgresql":
            self._insert = postgresql.insert
        elif dialect == "sqlite":
            self._insert = sqlite.insert
        else:
            raise MigratorError(f"Unsupported destination dialect '{dialect}'")

    def write(self, payloads: Sequence[TargetPayload]) -> WriteOutcome:
        if not payloads:
            return WriteOutcome()
        try:
            with self.connection.begin():
                self._relax()
                returned: list[Mapping[str, Any]] = []
                for start in range(0, len(payloads), self.chunk_size):
                    returned.extend(self._execute(payloads[start : start + self.chunk_size]))
        except SQLAlchemyError as exc:
            logger.warning(
                "Batch write failed; retrying rows individually",
                extra={
                    "migrator_entity": self.mapping.entity,
                    "migrator_batch_rows": len(payloads),
                    "migrator_error": _describe(exc),
                },
            )
            outcome = self._write_rows(payloads)
            outcome.used_fallback = True
            return outcome
        return self._match(payloads, returned)

    def _write_rows(self, payloads: Sequence[TargetPayload]) -> WriteOutcome:
        outcome = WriteOutcome()
        pk = self.mapping.destination_pk
        for payload in payloads:
            try:
                with self.connection.begin():
                    self._relax()
                    rows = self._execute([payload])
            except SQLAlchemyError as exc:
                message = _describe(exc)
                logger.warning(
                    "Row write failed",
                    extra={
                        "migrator_entity": self.mapping.entity,
                        "migrator_old_id": payload.old_id,
                        "migrator_error": message,
                    },
                )
                outcome.failed.append((payload, message))
                continue
            if not rows:
                outcome.failed.append((payload, "no row returned"))
                continue
            outcome.written.append((payload, int(rows[0][pk])))
        return outcome

    def _relax(self) -> None:
        if self.relaxed_durability and self.connection.dialect.name == "postgresql":
            self.connection.exec_driver_sql("SET LOCAL synchronous_commit TO OFF")

    def _execute(self, chunk: Sequence[TargetPayload]) -> list[Mapping[str, Any]]:
        columns = self.mapping.destination_columns
        rows = [{name: payload.values.get(name) for name in columns} for payload in chunk]
        stmt = self._insert(self.table).values(rows)
        conflict = self.mapping.conflict_columns
        if conflict:
            stmt = stmt.on_conflict_do_update(index_elements=list(conflict), set_=self._update_set(stmt))
        returning = [self.table.c[self.mapping.destination_pk]]
        returning.extend(self.table.c[name] for name in self.mapping.returned_columns)
        stmt = stmt.returning(*returning)
        return list(self.connection.execute(stmt).mappings().all())

    def _update_set(self, stmt) -> dict[str, Any]:
        conflict = set(self.mapping.conflict_columns or ())
        updates: dict[str, Any] = {}
        for name in self.mapping.destination_columns:
            if name in conflict or name in self.mapping.immutable_columns:
                continue
            policy = self.mapping.conflict_policy.get(name, ConflictPolicy.OVERWRITE)
            if policy is ConflictPolicy.KEEP:
                continue
            current = self.table.c[name]
            incoming = stmt.excluded[name]
            if policy is ConflictPolicy.PRESERVE_IF_NON_EMPTY:
                is_empty = or_(current.is_(None), cast(current, String).in_(_EMPTY_MARKERS))
                updates[name] = case((is_empty, incoming), else_=current)
            else:
                updates[name] = incoming
        if not updates:
            pk = self.mapping.destination_pk
            updates[pk] = stmt.excluded[pk]
        return updates

    def _match_key(self, values: Mapping[str, Any]) -> tuple:
        natural = tuple(values.get(name) for name in self.mapping.natural_key.columns)
        if all(part is not None and part != "" for part in natural):
            return ("natural",) + tuple(normalize_key_value(part) for part in natural)
        fallback = self.mapping.fallback_key
        if fallback is None:
            return ("row",)
        parts = []
        for name in fallback.columns:
            value = values.get(name)
            if name in fallback.blank_as_empty and value is None:
                value = ""
            parts.append(normalize_key_value(value))
        return ("fallback",) + tuple(parts)

    def _match(self, payloads: Sequence[TargetPayload], returned: list[Mapping[str, Any]]) -> WriteOutcome:
        """Pair RETURNING rows with payloads by the key columns they carry."""
        pending: dict[tuple, deque[TargetPayload]] = defaultdict(deque)
        for payload in payloads:
            pending[self._match_key(payload.values)].append(payload)
        outcome = WriteOutcome()
        pk = self.mapping.destination_pk
        for row in returned:
            queue = pending.get(self._match_key(row))
            if not queue:
                continue
            outcome.written.append((queue.popleft(), int(row[pk])))
        for queue in pending.values():
            for payload in queue:
                outcome.failed.append((payload, "row not returned by insert"))
        return outcome


def _describe(exc: SQLAlchemyError) -> str:
    original = getattr(exc, "orig", None)
    message = str(original if original is not None else exc)
    return " ".join(message.split())[:300]
