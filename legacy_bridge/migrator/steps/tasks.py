"""TodoListTypes → task_types and TodoLists → tasks."""

from __future__ import annotations

from typing import Any, Mapping

from sqlalchemy import func, select
from sqlalchemy.engine import Connection

from legacy_bridge.migrator.errors import SkipRow
from legacy_bridge.migrator.mapping import EntityMapping
from legacy_bridge.migrator.pipeline.engine import EntityStep, StepContext, TableCatalog
from legacy_bridge.migrator.pipeline.transform import (
    TargetPayload,
    normalize_enum,
    parse_timestamp,
    require,
    safe_name,
    sanitize_text,
    to_int,
)

MIGRATED_COMMENT_TITLE = "Comentário Migrado"


def task_type_key(company_id: Any, name: Any) -> str:
    return f"{company_id}|{str(name or '').strip().lower()}"


class TaskTypesStep(EntityStep):
    name = "TaskTypes"
    mapping = EntityMapping(
        entity="task_types",
        source_table="TodoListTypes",
        source_columns={
            "id": "id",
            "name": "type",
            "company_id": "tenantId",
            "created_at": "createdAt",
            "updated_at": "updatedAt",
        },
        destination_table="task_types",
        destination_columns=("id", "name", "company_id", "created_at", "updated_at"),
    )

    def transform(self, row: Mapping[str, Any], context: StepContext) -> TargetPayload:
        require(row, "id", "company_id")
        type_id = to_int(row["id"])
        return TargetPayload(
            old_id=str(type_id),
            values={
                "id": type_id,
                "name": safe_name(row.get("name"), f"Tipo {type_id}"),
                "company_id": to_int(row["company_id"]),
                "created_at": parse_timestamp(row.get("created_at")),
                "updated_at": parse_timestamp(row.get("updated_at")),
            },
        )


class TasksStep(EntityStep):
    name = "Tasks"
    mapping = EntityMapping(
        entity="tasks",
        source_table="TodoLists",
        source_columns={
            "id": "id",
            "company_id": "tenantId",
            "created_by_id": "ownerId",
            "assigned_to_id": "userId",
            "name": "name",
            "description": "description",
            "type": "type",
            "due_date": "limitDate",
            "priority": "priority",
            "status": "status",
            "comments": "comments",
            "created_at": "createdAt",
            "updated_at": "updatedAt",
        },
        destination_table="tasks",
        destination_columns=(
            "id",
            "company_id",
            "created_by_id",
            "assigned_to_id",
            "name",
            "description",
            "task_type_id",
            "due_date",
            "priority",
            "status",
            "extra_info",
            "created_at",
            "updated_at",
        ),
    )

    def prepare(self, destination: Connection, tables: TableCatalog, context: StepContext) -> dict[str, Any]:
        """Load ``company|lower(name)`` → task type id, creating default types when enabled."""
        task_types = tables.get("task_types")
        if context.flag("tasks_default_type"):
            self._ensure_default_types(destination, tables, context)
        query = select(task_types.c.id, task_types.c.name, task_types.c.company_id)
        if context.tenant_id is not None:
            query = query.where(task_types.c.company_id == context.tenant_id)
        types: dict[str, int] = {}
        for type_id, name, company_id in destination.execute(query):
            types.setdefault(task_type_key(company_id, name), int(type_id))
        return {"task_types": types}

    def _ensure_default_types(self, destination: Connection, tables: TableCatalog, context: StepContext) -> None:
        task_types = tables.get("task_types")
        companies = tables.get("companies")
        default_name = context.flag("tasks_default_type_name", "Geral")
        existing = select(task_types.c.company_id).where(
            func.lower(task_types.c.name) == default_name.strip().lower()
        )
        missing = select(companies.c.id).where(companies.c.id.not_in(existing))
        if context.tenant_id is not None:
            missing = missing.where(companies.c.id == context.tenant_id)
        company_ids = list(destination.execute(missing).scalars())
        if company_ids:
            destination.execute(
                task_types.insert(),
                [{"name": default_name, "company_id": company_id} for company_id in company_ids],
            )

    def transform(self, row: Mapping[str, Any], context: StepContext) -> TargetPayload:
        require(row, "id", "company_id")
        task_id = to_int(row["id"])
        company_id = to_int(row["company_id"])
        types = context.lookups["task_types"]
        task_type_id = types.get(task_type_key(company_id, row.get("type")))
        if task_type_id is None and context.flag("tasks_default_type"):
            task_type_id = types.get(task_type_key(company_id, context.flag("tasks_default_type_name", "Geral")))
        if task_type_id is None:
            raise SkipRow("missing_task_type", type=row.get("type"), company_id=company_id)

        extra_info = []
        comments = sanitize_text(row.get("comments"))
        if comments and comments.strip():
            extra_info.append({"title": MIGRATED_COMMENT_TITLE, "content": comments, "required": False})

        return TargetPayload(
            old_id=str(task_id),
            values={
                "id": task_id,
                "company_id": company_id,
                "created_by_id": to_int(row.get("created_by_id")),
                "assigned_to_id": to_int(row.get("assigned_to_id")),
                "name": safe_name(row.get("name"), f"Tarefa {task_id}"),
                "description": sanitize_text(row.get("description")),
                "task_type_id": task_type_id,
                "due_date": parse_timestamp(row.get("due_date")),
                "priority": normalize_enum(
                    row.get("priority"),
                    context.enums.lookup("task_priorities"),
                    context.enums.default("task_priorities"),
                ),
                "status": sanitize_text(row.get("status")),
                "extra_info": extra_info,
                "created_at": parse_timestamp(row.get("created_at")),
                "updated_at": parse_timestamp(row.get("updated_at")),
            },
        )
