"""Tickets → tickets."""

from __future__ import annotations

from typing import Any, Mapping

from sqlalchemy.engine import Connection

from legacy_bridge.migrator.errors import SkipRow
from legacy_bridge.migrator.mapping import EntityMapping
from legacy_bridge.migrator.pipeline.engine import EntityStep, StepContext, TableCatalog
from legacy_bridge.migrator.pipeline.transform import (
    TargetPayload,
    normalize_enum,
    parse_step_to_int,
    parse_timestamp,
    sanitize_text,
    to_int,
)
from legacy_bridge.migrator.steps.lookups import valid_ids

OPTIONAL_REFERENCES = {
    "user_id": "users",
    "department_id": "departments",
    "flow_id": "flows",
}


class TicketsStep(EntityStep):
    """
    Tickets need both a channel and a contact in the destination.

    Rows missing either are skipped with the reason recorded in the skip
    report; optional pointers (user, department, flow) are nulled instead.
    """

    name = "Tickets"
    mapping = EntityMapping(
        entity="tickets",
        source_table="Tickets",
        source_columns={
            "id": "id",
            "status": "status",
            "last_message": "lastMessage",
            "channel_id": "whatsappId",
            "contact_id": "contactId",
            "user_id": "userId",
            "department_id": "queueId",
            "flow_id": "chatFlowId",
            "flow_step_raw": "stepChatFlow",
            "bot_retries": "botRetries",
            "last_message_at": "lastMessageAt",
            "last_message_received": "lastMessageReceived",
            "started_attendance_at": "startedAttendanceAt",
            "closed_at": "closedAt",
            "is_group": "isGroup",
            "company_id": "tenantId",
            "created_at": "createdAt",
            "updated_at": "updatedAt",
        },
        destination_table="tickets",
        destination_columns=(
            "id",
            "status",
            "last_message",
            "channel_id",
            "contact_id",
            "company_id",
            "user_id",
            "department_id",
            "flow_id",
            "flow_step_id",
            "flow_attempts",
            "last_message_at",
            "closed_at",
            "last_interaction_at",
            "is_group",
            "created_at",
            "updated_at",
        ),
    )

    def prepare(self, destination: Connection, tables: TableCatalog, context: StepContext) -> dict[str, Any]:
        lookups = {
            "channels": valid_ids(destination, tables.get("channel_instances"), context.tenant_id),
            "contacts": valid_ids(destination, tables.get("contacts"), context.tenant_id),
        }
        for column, table_name in OPTIONAL_REFERENCES.items():
            lookups[column] = valid_ids(destination, tables.get(table_name), context.tenant_id) if tables.has(table_name) else set()
        return lookups

    def transform(self, row: Mapping[str, Any], context: StepContext) -> TargetPayload:
        ticket_id = to_int(row.get("id"))
        company_id = to_int(row.get("company_id"))
        channel_id = to_int(row.get("channel_id"))
        contact_id = to_int(row.get("contact_id"))
        details = {"company_id": company_id, "channel_id": channel_id, "contact_id": contact_id}
        if None in (ticket_id, company_id, channel_id, contact_id):
            raise SkipRow("missing_required", **details)

        has_channel = channel_id in context.lookups["channels"]
        has_contact = contact_id in context.lookups["contacts"]
        if not has_channel and not has_contact:
            raise SkipRow("missing_both_fk", **details)
        if not has_channel:
            raise SkipRow("missing_channel_fk", **details)
        if not has_contact:
            raise SkipRow("missing_contact_fk", **details)

        optional = {}
        for column in OPTIONAL_REFERENCES:
            value = to_int(row.get(column))
            optional[column] = value if value in context.lookups[column] else None

        last_message_at = parse_timestamp(row.get("last_message_at"))
        last_interaction_at = (
            parse_timestamp(row.get("last_message_received"))
            or parse_timestamp(row.get("started_attendance_at"))
            or last_message_at
        )
        last_message = row.get("last_message")
        return TargetPayload(
            old_id=str(ticket_id),
            values={
                "id": ticket_id,
                "status": normalize_enum(
                    row.get("status"),
                    context.enums.lookup("ticket_statuses"),
                    context.enums.default("ticket_statuses"),
                ),
                "last_message": sanitize_text(last_message) if last_message is not None else "",
                "channel_id": channel_id,
                "contact_id": contact_id,
                "company_id": company_id,
                **optional,
                "flow_step_id": parse_step_to_int(row.get("flow_step_raw")),
                "flow_attempts": to_int(row.get("bot_retries")),
                "last_message_at": last_message_at,
                "closed_at": parse_timestamp(row.get("closed_at")),
                "last_interaction_at": last_interaction_at,
                "is_group": bool(row.get("is_group")),
                "created_at": parse_timestamp(row.get("created_at")),
                "updated_at": parse_timestamp(row.get("updated_at")),
            },
        )
