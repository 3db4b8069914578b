"""Queues → departments."""

from __future__ import annotations

from typing import Any, Mapping

from legacy_bridge.migrator.mapping import EntityMapping
from legacy_bridge.migrator.pipeline.engine import EntityStep, StepContext
from legacy_bridge.migrator.pipeline.transform import TargetPayload, parse_timestamp, require, safe_name, to_int


class DepartmentsStep(EntityStep):
    name = "Departments"
    mapping = EntityMapping(
        entity="departments",
        source_table="Queues",
        source_columns={
            "id": "id",
            "name": "queue",
            "is_active": "isActive",
            "company_id": "tenantId",
            "created_at": "createdAt",
            "updated_at": "updatedAt",
        },
        destination_table="departments",
        destination_columns=(
            "id",
            "name",
            "status",
            "company_id",
            "transfer_type",
            "created_at",
            "updated_at",
        ),
    )

    def transform(self, row: Mapping[str, Any], context: StepContext) -> TargetPayload:
        require(row, "id", "company_id")
        department_id = to_int(row["id"])
        return TargetPayload(
            old_id=str(department_id),
            values={
                "id": department_id,
                "name": safe_name(row.get("name"), f"Departamento {department_id}"),
                "status": row.get("is_active") is not False,
                "company_id": to_int(row["company_id"]),
                "transfer_type": "queue",
                "created_at": parse_timestamp(row.get("created_at")),
                "updated_at": parse_timestamp(row.get("updated_at")),
            },
        )
