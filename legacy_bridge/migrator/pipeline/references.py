"""
Two-phase reference handling: stage pointers now, resolve them after the stream.

Staging relations are temporary tables on the destination connection. They
are created lazily on first use and dropped when the step finishes.
"""

from __future__ import annotations

import logging
import re
from typing import Iterable, Mapping

from sqlalchemy import BigInteger, Column, MetaData, String, Table, cast, insert, select, update
from sqlalchemy.engine import Connection

from legacy_bridge.migrator.mapping import EntityMapping
from legacy_bridge.migrator.pipeline.transform import PendingReference

logger = logging.getLogger(__name__)

_SAFE_NAME_RE = re.compile(r"[^a-z0-9_]+")


class ReferenceStager:
    """Persist ``(new_id, column, referenced_old_id)`` rows and the step's id map."""

    def __init__(self, connection: Connection, entity: str):
        self.connection = connection
        self.entity = entity
        suffix = _SAFE_NAME_RE.sub("_", entity.lower())
        metadata = MetaData()
        self.references = Table(
            f"migrator_stage_refs_{suffix}",
            metadata,
            Column("new_id", BigInteger, primary_key=True),
            Column("column_name", String(64), primary_key=True),
            Column("referenced_old_id", String(64), nullable=False),
            Column("referenced_entity", String(64), nullable=False),
            prefixes=["TEMPORARY"],
        )
        self.id_map = Table(
            f"migrator_stage_ids_{suffix}",
            metadata,
            Column("old_id", String(64), primary_key=True),
            Column("new_id", BigInteger, nullable=False),
            prefixes=["TEMPORARY"],
        )
        self._created = False
        self._staged: set[tuple[int, str]] = set()
        self.staged_count = 0

    def _ensure_tables(self) -> None:
        if self._created:
            return
        with self.connection.begin():
            for table in (self.references, self.id_map):
                self.connection.exec_driver_sql(f"DROP TABLE IF EXISTS {table.name}")
                table.create(self.connection)
        self._created = True

    def record_ids(self, pairs: Iterable[tuple[str, int]]) -> None:
        """Mirror newly mapped ids so the resolver can join against them."""
        rows = [{"old_id": old_id, "new_id": new_id} for old_id, new_id in pairs]
        if not rows:
            return
        self._ensure_tables()
        with self.connection.begin():
            self.connection.execute(insert(self.id_map), rows)

    def stage(self, entries: Iterable[tuple[int, PendingReference]]) -> int:
        rows = []
        for new_id, reference in entries:
            marker = (int(new_id), reference.column)
            if marker in self._staged:
                continue
            self._staged.add(marker)
            rows.append(
                {
                    "new_id": int(new_id),
                    "column_name": reference.column,
                    "referenced_old_id": reference.old_id,
                    "referenced_entity": reference.entity,
                }
            )
        if not rows:
            return 0
        self._ensure_tables()
        with self.connection.begin():
            self.connection.execute(insert(self.references), rows)
        self.staged_count += len(rows)
        return len(rows)

    def teardown(self) -> None:
        if not self._created:
            return
        with self.connection.begin():
            for table in (self.references, self.id_map):
                self.connection.exec_driver_sql(f"DROP TABLE IF EXISTS {table.name}")
        self._created = False
        self._staged.clear()


class ReferenceResolver:
    """
    Patch referencing columns with one UPDATE per (column, referenced entity).

    Same-entity references join the staged id map; cross-entity references
    join the referenced destination table on its (preserved) legacy id.
    Unresolvable references leave the column untouched.
    """

    def __init__(
        self,
        connection: Connection,
        stager: ReferenceStager,
        table: Table,
        mapping: EntityMapping,
        *,
        referenced_tables: Mapping[str, Table] | None = None,
        tenant_id: int | None = None,
    ):
        self.connection = connection
        self.stager = stager
        self.table = table
        self.mapping = mapping
        self.referenced_tables = dict(referenced_tables or {})
        self.tenant_id = tenant_id

    def resolve(self) -> dict[str, int]:
        if not self.stager.staged_count:
            return {}
        refs = self.stager.references
        with self.connection.begin():
            groups = self.connection.execute(
                select(refs.c.column_name, refs.c.referenced_entity).distinct()
            ).all()
        resolved: dict[str, int] = {}
        for column_name, entity in groups:
            with self.connection.begin():
                count = self._resolve_group(column_name, entity)
            resolved[column_name] = resolved.get(column_name, 0) + count
            logger.info(
                "References resolved",
                extra={
                    "migrator_entity": self.mapping.entity,
                    "migrator_reference_column": column_name,
                    "migrator_reference_entity": entity,
                    "migrator_references_resolved": count,
                },
            )
        return resolved

    def _resolve_group(self, column_name: str, entity: str) -> int:
        refs = self.stager.references
        pk = self.table.c[self.mapping.destination_pk]
        if entity == self.mapping.entity:
            source = self.stager.id_map
            target_id = source.c.new_id
            join_condition = source.c.old_id == refs.c.referenced_old_id
            extra = []
        else:
            source = self.referenced_tables.get(entity)
            if source is None:
                logger.warning(
                    "No destination table declared for referenced entity",
                    extra={"migrator_entity": self.mapping.entity, "migrator_reference_entity": entity},
                )
                return 0
            target_id = source.c["id"]
            join_condition = cast(source.c["id"], String) == refs.c.referenced_old_id
            extra = []
            tenant_column = self.mapping.destination_tenant_column
            if self.tenant_id is not None and tenant_column and tenant_column in source.c:
                extra.append(source.c[tenant_column] == self.tenant_id)

        scope = [refs.c.column_name == column_name, refs.c.referenced_entity == entity, *extra]
        value = (
            select(target_id)
            .select_from(refs.join(source, join_condition))
            .where(refs.c.new_id == pk, *scope)
            .limit(1)
            .scalar_subquery()
        )
        resolvable = select(refs.c.new_id).select_from(refs.join(source, join_condition)).where(*scope)
        stmt = update(self.table).where(pk.in_(resolvable)).values({column_name: value})
        result = self.connection.execute(stmt)
        return max(result.rowcount or 0, 0)
