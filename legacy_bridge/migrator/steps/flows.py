"""ChatFlow → flows."""

from __future__ import annotations

from typing import Any, Mapping

from legacy_bridge.migrator.mapping import ConflictPolicy, EntityMapping
from legacy_bridge.migrator.pipeline.engine import EntityStep, StepContext
from legacy_bridge.migrator.pipeline.transform import (
    TargetPayload,
    parse_json_value,
    parse_timestamp,
    require,
    safe_name,
    to_int,
)


class FlowsStep(EntityStep):
    """Flow definitions edited in the destination are never replaced by legacy ones."""

    name = "Flows"
    mapping = EntityMapping(
        entity="flows",
        source_table="ChatFlow",
        source_columns={
            "id": "id",
            "name": "name",
            "flow": "flow",
            "company_id": "tenantId",
            "created_at": "createdAt",
            "updated_at": "updatedAt",
        },
        source_filter=lambda table: table.c.isDeleted.is_not(True),
        destination_table="flows",
        destination_columns=("id", "name", "flow", "company_id", "created_at", "updated_at"),
        conflict_policy={"flow": ConflictPolicy.PRESERVE_IF_NON_EMPTY},
    )

    def transform(self, row: Mapping[str, Any], context: StepContext) -> TargetPayload:
        require(row, "id", "company_id")
        flow_id = to_int(row["id"])
        return TargetPayload(
            old_id=str(flow_id),
            values={
                "id": flow_id,
                "name": safe_name(row.get("name"), f"Flow {flow_id}"),
                "flow": parse_json_value(row.get("flow"), default=dict),
                "company_id": to_int(row["company_id"]),
                "created_at": parse_timestamp(row.get("created_at")),
                "updated_at": parse_timestamp(row.get("updated_at")),
            },
        )
