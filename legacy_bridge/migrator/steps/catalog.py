"""Per-company catalogs: Tags, FastReply and Settings."""

from __future__ import annotations

import re
from typing import Any, Mapping

from sqlalchemy import and_, exists, insert, select, text
from sqlalchemy.engine import Connection

from legacy_bridge.migrator.mapping import EntityMapping, NaturalKey
from legacy_bridge.migrator.pipeline.engine import EntityStep, StepContext, TableCatalog
from legacy_bridge.migrator.pipeline.transform import (
    TargetPayload,
    parse_json_value,
    parse_timestamp,
    require,
    safe_name,
    sanitize_text,
    to_int,
)

DEFAULT_COLOR = "#999999"

_RGB_RE = re.compile(r"^rgb\(\s*(\d{1,3})\s*,\s*(\d{1,3})\s*,\s*(\d{1,3})\s*\)$", re.IGNORECASE)
_HEX3_RE = re.compile(r"^#?([0-9a-f]{3})$", re.IGNORECASE)
_HEX6_RE = re.compile(r"^#?([0-9a-f]{6})$", re.IGNORECASE)


def normalize_color(value: Any) -> str:
    """Coerce ``rgb(r,g,b)``, ``#abc`` and ``abcdef`` into lowercase ``#rrggbb``."""
    if not value:
        return DEFAULT_COLOR
    raw = str(value).strip()
    match = _RGB_RE.match(raw)
    if match:
        red, green, blue = (max(0, min(255, int(part))) for part in match.groups())
        return f"#{red:02x}{green:02x}{blue:02x}"
    match = _HEX3_RE.match(raw)
    if match:
        return "#" + "".join(ch * 2 for ch in match.group(1)).lower()
    match = _HEX6_RE.match(raw)
    if match:
        return "#" + match.group(1).lower()
    return DEFAULT_COLOR


class TagsStep(EntityStep):
    name = "Tags"
    mapping = EntityMapping(
        entity="tags",
        source_table="Tags",
        source_columns={
            "id": "id",
            "name": "tag",
            "color": "color",
            "active": "isActive",
            "company_id": "tenantId",
            "created_at": "createdAt",
            "updated_at": "updatedAt",
        },
        destination_table="tags",
        destination_columns=(
            "id",
            "name",
            "color",
            "active",
            "company_id",
            "is_public",
            "owner_id",
            "created_at",
            "updated_at",
        ),
    )

    def transform(self, row: Mapping[str, Any], context: StepContext) -> TargetPayload:
        require(row, "id", "company_id")
        tag_id = to_int(row["id"])
        return TargetPayload(
            old_id=str(tag_id),
            values={
                "id": tag_id,
                "name": safe_name(row.get("name"), f"Tag {tag_id}"),
                "color": normalize_color(row.get("color")),
                "active": row.get("active") is not False,
                "company_id": to_int(row["company_id"]),
                "is_public": True,
                "owner_id": None,
                "created_at": parse_timestamp(row.get("created_at")),
                "updated_at": parse_timestamp(row.get("updated_at")),
            },
        )

    def finalize(self, destination: Connection, tables: TableCatalog, context: StepContext) -> None:
        if destination.dialect.name == "postgresql":
            destination.execute(
                text("SELECT setval(pg_get_serial_sequence('tags', 'id'), COALESCE((SELECT MAX(id) FROM tags), 1))")
            )
        if context.flag("tags_assign_all_users") and tables.has("tag_users"):
            assign_tags_to_users(destination, tables, context.tenant_id)


def assign_tags_to_users(destination: Connection, tables: TableCatalog, tenant_id: int | None) -> int:
    """Link every tag of a company to every user of the same company, once."""
    tags = tables.get("tags")
    users = tables.get("users")
    tag_users = tables.get("tag_users")
    already = exists().where(and_(tag_users.c.tag_id == tags.c.id, tag_users.c.user_id == users.c.id))
    pairs = (
        select(tags.c.id, users.c.id)
        .select_from(tags.join(users, users.c.company_id == tags.c.company_id))
        .where(~already)
    )
    if tenant_id is not None:
        pairs = pairs.where(tags.c.company_id == tenant_id)
    result = destination.execute(insert(tag_users).from_select(["tag_id", "user_id"], pairs))
    return max(result.rowcount or 0, 0)


class QuickMessagesStep(EntityStep):
    name = "QuickMessages"
    mapping = EntityMapping(
        entity="quick_messages",
        source_table="FastReply",
        source_columns={
            "id": "id",
            "name": "name",
            "messages": "messages",
            "company_id": "tenantId",
            "created_at": "createdAt",
            "updated_at": "updatedAt",
        },
        destination_table="quick_messages",
        destination_columns=("id", "name", "messages", "company_id", "created_at", "updated_at"),
    )

    def transform(self, row: Mapping[str, Any], context: StepContext) -> TargetPayload:
        require(row, "id", "company_id")
        reply_id = to_int(row["id"])
        return TargetPayload(
            old_id=str(reply_id),
            values={
                "id": reply_id,
                "name": safe_name(row.get("name"), "Sem nome"),
                "messages": parse_json_value(row.get("messages"), default=list),
                "company_id": to_int(row["company_id"]),
                "created_at": parse_timestamp(row.get("created_at")),
                "updated_at": parse_timestamp(row.get("updated_at")),
            },
        )


class SettingsStep(EntityStep):
    """Settings are keyed on (company, key); the destination assigns ids."""

    name = "Settings"
    mapping = EntityMapping(
        entity="settings",
        source_table="Settings",
        source_columns={
            "id": "id",
            "key": "key",
            "value": "value",
            "company_id": "tenantId",
            "created_at": "createdAt",
            "updated_at": "updatedAt",
        },
        destination_table="settings",
        destination_columns=("company_id", "key", "value", "created_at", "updated_at"),
        natural_key=NaturalKey(("company_id", "key")),
        conflict_columns=("company_id", "key"),
        immutable_columns=("company_id", "key", "created_at"),
    )

    def transform(self, row: Mapping[str, Any], context: StepContext) -> TargetPayload:
        require(row, "id", "key", "company_id")
        return TargetPayload(
            old_id=str(row["id"]),
            values={
                "company_id": to_int(row["company_id"]),
                "key": sanitize_text(row["key"]).strip(),
                "value": sanitize_text(row.get("value")),
                "created_at": parse_timestamp(row.get("created_at")),
                "updated_at": parse_timestamp(row.get("updated_at")),
            },
        )
