"""Users (+ UsersQueues) → users."""

from __future__ import annotations

import re
from typing import Any, Mapping

from sqlalchemy import Select, String, Table, cast, func, select, text
from sqlalchemy.engine import Connection

from legacy_bridge.migrator.errors import SkipRow
from legacy_bridge.migrator.mapping import EntityMapping, SyntheticKey
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
from legacy_bridge.migrator.steps.lookups import ids_by_company, valid_ids

MASTER_USER_ID = 1

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def is_valid_email(value: Any) -> bool:
    return value is not None and bool(_EMAIL_RE.match(str(value)))


def placeholder_email(user_id: Any, company_id: Any, seed: int = 0) -> str:
    suffix = f".{seed}" if seed else ""
    return f"user{user_id}.{company_id}{suffix}@placeholder.local"


def _placeholder_key(old_id: str, seed: int, values: Mapping[str, Any]) -> str:
    return placeholder_email(old_id, values.get("company_id"), seed)


def parse_queue_ids(value: Any) -> list[int]:
    """Split the aggregated ``"3,1,3"`` queue list into sorted unique ids."""
    if value is None:
        return []
    ids = {to_int(part) for part in str(value).split(",")}
    return sorted(item for item in ids if item is not None)


def _users_query(tables: Mapping[str, Table], tenant_id: int | None) -> Select:
    users = tables["Users"]
    links = tables["UsersQueues"]
    queue_ids = (
        select(func.aggregate_strings(cast(links.c.queueId, String), ","))
        .where(links.c.userId == users.c.id)
        .scalar_subquery()
    )
    query = select(
        users.c.id.label("id"),
        users.c.name.label("name"),
        users.c.email.label("email"),
        users.c.passwordHash.label("password_hash"),
        users.c.profile.label("profile"),
        users.c.tenantId.label("company_id"),
        queue_ids.label("queue_ids"),
        users.c.createdAt.label("created_at"),
        users.c.updatedAt.label("updated_at"),
    )
    if tenant_id is not None:
        query = query.where(users.c.tenantId == tenant_id)
    return query


class UsersStep(EntityStep):
    """
    Legacy user ids are kept.

    Emails are unique across the destination: a missing, malformed or
    already-claimed address is replaced by a per-user placeholder when the
    batch is resolved. ``departments`` lists the user's queues that exist as
    departments of the same company. ``permission_id`` belongs to the
    Permissions step.
    """

    name = "Users"
    mapping = EntityMapping(
        entity="users",
        source_table="Users",
        source_columns={
            "id": "id",
            "name": "name",
            "email": "email",
            "password_hash": "passwordHash",
            "profile": "profile",
            "company_id": "tenantId",
            "created_at": "createdAt",
            "updated_at": "updatedAt",
        },
        source_filter=lambda table: table.c.id != MASTER_USER_ID,
        source_query=_users_query,
        extra_source_tables=("UsersQueues",),
        destination_table="users",
        destination_columns=(
            "id",
            "name",
            "email",
            "password_hash",
            "profile",
            "is_master",
            "company_id",
            "departments",
            "created_at",
            "updated_at",
        ),
        synthetic_key=SyntheticKey(column="email", generator=_placeholder_key, validator=is_valid_email),
    )

    def prepare(self, destination: Connection, tables: TableCatalog, context: StepContext) -> dict[str, Any]:
        return {
            "companies": valid_ids(destination, tables.get("companies"), context.tenant_id, tenant_column="id"),
            "departments": ids_by_company(destination, tables.get("departments"), context.tenant_id),
        }

    def transform(self, row: Mapping[str, Any], context: StepContext) -> TargetPayload:
        require(row, "id", "company_id")
        user_id = to_int(row["id"])
        company_id = to_int(row["company_id"])
        if company_id not in context.lookups["companies"]:
            raise SkipRow("missing_company_fk", company_id=company_id)
        raw_profile = str(row.get("profile") or "").strip().lower()
        profile = normalize_enum(raw_profile, context.enums.lookup("user_profiles"), context.enums.default("user_profiles"))
        email = sanitize_text(row.get("email"))
        company_departments = context.lookups["departments"].get(company_id, set())
        return TargetPayload(
            old_id=str(user_id),
            values={
                "id": user_id,
                "name": safe_name(row.get("name"), f"Usuário {user_id}"),
                "email": email.strip().lower() if email and email.strip() else None,
                "password_hash": row.get("password_hash") or "",
                "profile": profile,
                "is_master": "super" in raw_profile or raw_profile == "master",
                "company_id": company_id,
                "departments": [
                    queue_id for queue_id in parse_queue_ids(row.get("queue_ids")) if queue_id in company_departments
                ],
                "created_at": parse_timestamp(row.get("created_at")),
                "updated_at": parse_timestamp(row.get("updated_at")),
            },
        )

    def finalize(self, destination: Connection, tables: TableCatalog, context: StepContext) -> None:
        if destination.dialect.name != "postgresql":
            return
        destination.execute(
            text("SELECT setval(pg_get_serial_sequence('users', 'id'), COALESCE((SELECT MAX(id) FROM users), 1))")
        )
