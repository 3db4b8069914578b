"""Messages → messages and InternalMessage → internal_messages."""

from __future__ import annotations

from typing import Any, Mapping

from sqlalchemy import Select, Table, select
from sqlalchemy.engine import Connection

from legacy_bridge.migrator.errors import SkipRow
from legacy_bridge.migrator.mapping import EntityMapping, FallbackKey, NaturalKey
from legacy_bridge.migrator.pipeline.engine import EntityStep, StepContext, TableCatalog
from legacy_bridge.migrator.pipeline.transform import (
    TargetPayload,
    normalize_enum,
    parse_json_value,
    parse_timestamp,
    require,
    sanitize_text,
    to_int,
)
from legacy_bridge.migrator.steps.lookups import valid_ids

MESSAGE_COLUMNS = (
    "ticket_id",
    "body",
    "edited_body",
    "media_type",
    "media_name",
    "message_id",
    "data_json",
    "ack",
    "is_deleted",
    "from_me",
    "user_id",
    "contact_id",
    "schedule_date",
    "quoted_msg_id",
    "created_at",
    "updated_at",
)


def _messages_query(tables: Mapping[str, Table], tenant_id: int | None) -> Select:
    messages = tables["Messages"]
    tickets = tables["Tickets"]
    query = select(
        messages.c.id.label("id"),
        messages.c.ticketId.label("ticket_id"),
        messages.c.body.label("body"),
        messages.c.edited.label("edited"),
        messages.c.mediaType.label("media_type"),
        messages.c.messageId.label("message_id"),
        messages.c.dataJson.label("data_json"),
        messages.c.status.label("status"),
        messages.c.isDeleted.label("is_deleted"),
        messages.c.fromMe.label("from_me"),
        messages.c.userId.label("user_id"),
        messages.c.contactId.label("contact_id"),
        messages.c.scheduleDate.label("schedule_date"),
        messages.c.quotedMsgId.label("quoted_msg_id"),
        messages.c.createdAt.label("created_at"),
        messages.c.updatedAt.label("updated_at"),
    ).select_from(messages.join(tickets, tickets.c.id == messages.c.ticketId))
    if tenant_id is not None:
        query = query.where(tickets.c.tenantId == tenant_id)
    return query


class MessagesStep(EntityStep):
    """
    The destination assigns message ids.

    Rows are identified by (ticket_id, message_id); rows without a usable
    message_id, and later repeats of one already seen in the run, fall back
    to (ticket_id, from_me, created_at, body). Quoted messages are patched
    after the stream through the step's own id map.
    """

    name = "Messages"
    mapping = EntityMapping(
        entity="messages",
        source_table="Messages",
        source_columns={},
        source_query=_messages_query,
        extra_source_tables=("Tickets",),
        source_tenant_column=None,
        destination_table="messages",
        destination_columns=MESSAGE_COLUMNS,
        natural_key=NaturalKey(("ticket_id", "message_id"), nullable_column="message_id"),
        fallback_key=FallbackKey(("ticket_id", "from_me", "created_at", "body"), blank_as_empty=("body",)),
        destination_tenant_column=None,
        conflict_columns=None,
        refresh_existing=False,
        tracks_self_references=True,
    )

    def prepare(self, destination: Connection, tables: TableCatalog, context: StepContext) -> dict[str, Any]:
        return {"tickets": valid_ids(destination, tables.get("tickets"), context.tenant_id)}

    def transform(self, row: Mapping[str, Any], context: StepContext) -> TargetPayload:
        require(row, "id", "ticket_id")
        ticket_id = to_int(row["ticket_id"])
        if ticket_id not in context.lookups["tickets"]:
            raise SkipRow("missing_ticket_fk", ticket_id=ticket_id)
        message_id = sanitize_text(row.get("message_id"))
        payload = TargetPayload(
            old_id=str(row["id"]).strip(),
            values={
                "ticket_id": ticket_id,
                "body": sanitize_text(row.get("body")),
                "edited_body": sanitize_text(row.get("edited")),
                "media_type": normalize_enum(
                    row.get("media_type"),
                    context.enums.lookup("media_types"),
                    context.enums.default("media_types"),
                ),
                "media_name": "",
                "message_id": message_id.strip() if message_id and message_id.strip() else None,
                "data_json": parse_json_value(row.get("data_json"), default=dict),
                "ack": normalize_enum(
                    row.get("status"),
                    context.enums.lookup("message_acks"),
                    context.enums.default("message_acks"),
                ),
                "is_deleted": bool(row.get("is_deleted")),
                "from_me": bool(row.get("from_me")),
                "user_id": to_int(row.get("user_id")),
                "contact_id": to_int(row.get("contact_id")),
                "schedule_date": parse_timestamp(row.get("schedule_date")),
                "quoted_msg_id": None,
                "created_at": parse_timestamp(row.get("created_at")),
                "updated_at": parse_timestamp(row.get("updated_at")),
            },
        )
        payload.reference("quoted_msg_id", row.get("quoted_msg_id"), "messages")
        return payload


class InternalMessagesStep(EntityStep):
    name = "InternalMessages"
    mapping = EntityMapping(
        entity="internal_messages",
        source_table="InternalMessage",
        source_columns={
            "id": "id",
            "text": "text",
            "media_type": "mediaType",
            "media_url": "mediaUrl",
            "read": "read",
            "sender_id": "senderId",
            "receiver_id": "receiverId",
            "group_id": "groupId",
            "created_at": "createdAt",
            "updated_at": "updatedAt",
        },
        destination_table="internal_messages",
        destination_columns=(
            "id",
            "body",
            "media_type",
            "media_name",
            "media_url",
            "data_json",
            "ack",
            "is_deleted",
            "sender_id",
            "recipient_id",
            "group_id",
            "is_group_message",
            "created_at",
            "updated_at",
        ),
        destination_tenant_column=None,
    )

    def transform(self, row: Mapping[str, Any], context: StepContext) -> TargetPayload:
        require(row, "id")
        message_id = to_int(row["id"])
        media_type = row.get("media_type")
        group_id = to_int(row.get("group_id"))
        return TargetPayload(
            old_id=str(message_id),
            values={
                "id": message_id,
                "body": sanitize_text(row.get("text")) or "",
                "media_type": None
                if media_type is None
                else normalize_enum(media_type, context.enums.lookup("media_types"), str(media_type)),
                "media_name": "",
                "media_url": sanitize_text(row.get("media_url")) or "",
                "data_json": {},
                "ack": "read" if row.get("read") else "sent",
                "is_deleted": False,
                "sender_id": to_int(row.get("sender_id")),
                "recipient_id": to_int(row.get("receiver_id")),
                "group_id": group_id,
                "is_group_message": bool(group_id),
                "created_at": parse_timestamp(row.get("created_at")),
                "updated_at": parse_timestamp(row.get("updated_at")),
            },
        )
