"""Campaigns → campaigns and CampaignContacts → campaign_contacts."""

from __future__ import annotations

from typing import Any, Mapping

from sqlalchemy import Select, Table, select
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


def collect_messages(*messages: Any) -> list[str]:
    collected = []
    for message in messages:
        text = sanitize_text(message)
        if text is not None and text.strip():
            collected.append(text.strip())
    return collected


def campaign_contact_status(ack: Any) -> str:
    value = to_int(ack, 0)
    if value >= 1:
        return "sent"
    if value == -1:
        return "error"
    return "pending"


class CampaignsStep(EntityStep):
    name = "Campaigns"
    mapping = EntityMapping(
        entity="campaigns",
        source_table="Campaigns",
        source_columns={
            "id": "id",
            "name": "name",
            "start": "start",
            "status": "status",
            "channel_id": "sessionId",
            "message1": "message1",
            "message2": "message2",
            "message3": "message3",
            "media_url": "mediaUrl",
            "delay": "delay",
            "company_id": "tenantId",
            "created_at": "createdAt",
            "updated_at": "updatedAt",
        },
        destination_table="campaigns",
        destination_columns=(
            "id",
            "name",
            "start_at",
            "status",
            "delay_seconds",
            "messages",
            "media_path",
            "company_id",
            "channel_id",
            "created_at",
            "updated_at",
        ),
    )

    def prepare(self, destination: Connection, tables: TableCatalog, context: StepContext) -> dict[str, Any]:
        channels = tables.get("channel_instances")
        return {
            "channels": valid_ids(destination, channels, context.tenant_id),
            "channel_fallback": lowest_id_by_company(destination, channels, context.tenant_id),
        }

    def transform(self, row: Mapping[str, Any], context: StepContext) -> TargetPayload:
        require(row, "id", "company_id")
        campaign_id = to_int(row["id"])
        company_id = to_int(row["company_id"])
        channel_id = to_int(row.get("channel_id"))
        if channel_id not in context.lookups["channels"]:
            channel_id = context.lookups["channel_fallback"].get(company_id)
        return TargetPayload(
            old_id=str(campaign_id),
            values={
                "id": campaign_id,
                "name": safe_name(row.get("name"), f"Campanha {campaign_id}"),
                "start_at": parse_timestamp(row.get("start")),
                "status": normalize_enum(
                    row.get("status"),
                    context.enums.lookup("campaign_statuses"),
                    context.enums.default("campaign_statuses"),
                ),
                "delay_seconds": to_int(row.get("delay"), 0),
                "messages": collect_messages(row.get("message1"), row.get("message2"), row.get("message3")),
                "media_path": sanitize_text(row.get("media_url")) or None,
                "company_id": company_id,
                "channel_id": channel_id,
                "created_at": parse_timestamp(row.get("created_at")),
                "updated_at": parse_timestamp(row.get("updated_at")),
            },
        )


def _campaign_contacts_query(tables: Mapping[str, Table], tenant_id: int | None) -> Select:
    contacts = tables["CampaignContacts"]
    campaigns = tables["Campaigns"]
    query = select(
        contacts.c.id.label("id"),
        contacts.c.campaignId.label("campaign_id"),
        contacts.c.contactId.label("contact_id"),
        contacts.c.ack.label("ack"),
        contacts.c.timestamp.label("timestamp"),
        contacts.c.createdAt.label("created_at"),
        contacts.c.updatedAt.label("updated_at"),
    ).select_from(contacts.join(campaigns, campaigns.c.id == contacts.c.campaignId))
    if tenant_id is not None:
        query = query.where(campaigns.c.tenantId == tenant_id)
    return query


class CampaignContactsStep(EntityStep):
    name = "CampaignContacts"
    mapping = EntityMapping(
        entity="campaign_contacts",
        source_table="CampaignContacts",
        source_columns={},
        source_query=_campaign_contacts_query,
        extra_source_tables=("Campaigns",),
        source_tenant_column=None,
        destination_table="campaign_contacts",
        destination_columns=(
            "id",
            "campaign_id",
            "contact_id",
            "status",
            "error_msg",
            "responded",
            "responded_at",
            "created_at",
            "updated_at",
        ),
        destination_tenant_column=None,
    )

    def prepare(self, destination: Connection, tables: TableCatalog, context: StepContext) -> dict[str, Any]:
        return {
            "campaigns": valid_ids(destination, tables.get("campaigns"), context.tenant_id),
            "contacts": valid_ids(destination, tables.get("contacts"), context.tenant_id),
        }

    def transform(self, row: Mapping[str, Any], context: StepContext) -> TargetPayload:
        require(row, "id", "campaign_id", "contact_id")
        campaign_id = to_int(row["campaign_id"])
        contact_id = to_int(row["contact_id"])
        if campaign_id not in context.lookups["campaigns"]:
            raise SkipRow("missing_campaign_fk", campaign_id=campaign_id)
        if contact_id not in context.lookups["contacts"]:
            raise SkipRow("missing_contact_fk", contact_id=contact_id)
        responded_at = None if not to_int(row.get("timestamp")) else parse_timestamp(row.get("timestamp"))
        return TargetPayload(
            old_id=str(row["id"]),
            values={
                "id": to_int(row["id"]),
                "campaign_id": campaign_id,
                "contact_id": contact_id,
                "status": campaign_contact_status(row.get("ack")),
                "error_msg": None,
                "responded": responded_at is not None,
                "responded_at": responded_at,
                "created_at": parse_timestamp(row.get("created_at")),
                "updated_at": parse_timestamp(row.get("updated_at")),
            },
        )
