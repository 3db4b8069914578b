"""Whatsapps → channel_instances."""

from __future__ import annotations

from typing import Any, Mapping

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
from legacy_bridge.migrator.steps.lookups import lowest_id_by_company, valid_ids

DISCONNECTED = "disconnected"


class ChannelsStep(EntityStep):
    name = "Channels"
    mapping = EntityMapping(
        entity="channel_instances",
        source_table="Whatsapps",
        source_columns={
            "id": "id",
            "name": "name",
            "type": "type",
            "number": "number",
            "qrcode": "qrcode",
            "token": "tokenAPI",
            "flow_id": "chatFlowId",
            "department_id": "queueId",
            "is_open_ia": "is_open_ia",
            "is_deleted": "isDeleted",
            "company_id": "tenantId",
            "created_at": "createdAt",
            "updated_at": "updatedAt",
        },
        destination_table="channel_instances",
        destination_columns=(
            "id",
            "name",
            "type",
            "company_id",
            "status",
            "j_id",
            "session",
            "qr_code",
            "config",
            "flow_id",
            "department_id",
            "enable_chatbot_for_groups",
            "open_ticket_for_groups",
            "created_at",
            "updated_at",
            "deleted_at",
        ),
        immutable_columns=("id", "created_at", "flow_id"),
        reference_tables={"flows": "flows"},
    )

    def prepare(self, destination: Connection, tables: TableCatalog, context: StepContext) -> dict[str, Any]:
        departments = tables.get("departments")
        return {
            "departments": valid_ids(destination, departments, context.tenant_id),
            "department_fallback": lowest_id_by_company(destination, departments, context.tenant_id),
        }

    def transform(self, row: Mapping[str, Any], context: StepContext) -> TargetPayload:
        require(row, "id", "company_id")
        channel_id = to_int(row["id"])
        company_id = to_int(row["company_id"])
        channel_type = normalize_enum(
            row.get("type"), context.enums.lookup("channel_types"), context.enums.default("channel_types")
        )
        if not channel_type:
            raise SkipRow("unknown_channel_type", type=row.get("type"))

        department_id = to_int(row.get("department_id"))
        if department_id not in context.lookups["departments"]:
            department_id = context.lookups["department_fallback"].get(company_id)

        token = sanitize_text(row.get("token"))
        updated_at = parse_timestamp(row.get("updated_at"))
        payload = TargetPayload(
            old_id=str(channel_id),
            values={
                "id": channel_id,
                "name": safe_name(row.get("name"), f"Canal {channel_id}"),
                "type": channel_type,
                "company_id": company_id,
                "status": DISCONNECTED,
                "j_id": sanitize_text(row.get("number")) or "",
                "session": None,
                "qr_code": sanitize_text(row.get("qrcode")) or "",
                "config": {"tokenAPI": token} if token else {},
                "flow_id": None,
                "department_id": department_id,
                "enable_chatbot_for_groups": bool(row.get("is_open_ia")),
                "open_ticket_for_groups": bool(row.get("is_open_ia")),
                "created_at": parse_timestamp(row.get("created_at")),
                "updated_at": updated_at,
                "deleted_at": (updated_at or parse_timestamp(row.get("created_at"))) if row.get("is_deleted") else None,
            },
        )
        payload.reference("flow_id", row.get("flow_id"), "flows")
        return payload
