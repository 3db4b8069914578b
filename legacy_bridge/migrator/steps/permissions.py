"""Default permission profiles per company, linked to migrated users."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Mapping

from sqlalchemy import Select, Table, case, literal, or_, select, text, true, union_all, update
from sqlalchemy.engine import Connection

from legacy_bridge.migrator.errors import SkipRow
from legacy_bridge.migrator.mapping import EntityMapping, NaturalKey
from legacy_bridge.migrator.pipeline.engine import EntityStep, StepContext, TableCatalog
from legacy_bridge.migrator.pipeline.transform import TargetPayload, require, to_int
from legacy_bridge.migrator.steps.lookups import valid_ids
from legacy_bridge.migrator.steps.tenants import MASTER_TENANT_ID

USER_PROFILE = "Usuário"
ADMIN_PROFILE = "Administrador"


def _grant(allowed: bool, *actions: str) -> dict[str, bool]:
    return {action: allowed for action in actions}


_VIEW = ("access",)
_MANAGE = ("access", "edit", "create")
_FULL = ("access", "edit", "create", "delete")
_KANBAN = _grant(True, *_FULL)
_SUPPORT_USERS = _grant(False, "access", "list", "create", "edit", "delete")
_TICKETS = _grant(True, "access", "sendMessage", "openTicket", "filterSeeAll", "manage", "viewTicketContact")


def profile_permissions(admin: bool) -> dict[str, dict[str, bool]]:
    """Permission document for the administrator or the regular user profile."""
    return {
        "Dashboard": {"access": True, "geral": admin, "atendente": True},
        "Tickets": dict(_TICKETS),
        "InternalChat": _grant(True, *_VIEW),
        "ApiDocs": _grant(True, *_VIEW),
        "Users": _grant(admin, *_MANAGE),
        "Departments": _grant(admin, *_MANAGE),
        "Permissions": _grant(admin, *_MANAGE),
        "Channels": _grant(admin, *_MANAGE),
        "Settings": _grant(admin, *_MANAGE),
        "Tags": _grant(admin, *_FULL, "seeAll"),
        **{
            name: _grant(admin, *_FULL)
            for name in (
                "TicketReasons",
                "Providers",
                "Contacts",
                "QuickMessages",
                "Flows",
                "Campaign",
                "Task",
                "TaskType",
                "MyTask",
                "TaskAutomation",
                "AttendancePeriods",
                "VirtualAgents",
                "SGP",
            )
        },
        "Holidays": _grant(admin, "access", "create", "delete"),
        **{
            name: _grant(admin, *_VIEW)
            for name in ("ReportsMessage", "ReportsTicket", "ReportsRating", "ReportsContact", "TicketsPanel")
        },
        "Timeline": {"access": True, "seeAll": admin},
        "Kanban": dict(_KANBAN),
        "KanbanBoard": dict(_KANBAN),
        "SupportUsers": dict(_SUPPORT_USERS),
    }


def _profiles_query(tables: Mapping[str, Table], tenant_id: int | None) -> Select:
    """One row per (tenant, default profile name)."""
    tenants = tables["Tenants"]
    profiles = union_all(
        select(literal(USER_PROFILE).label("name")),
        select(literal(ADMIN_PROFILE).label("name")),
    ).subquery("profiles")
    query = select(tenants.c.id.label("company_id"), profiles.c.name.label("name")).select_from(
        tenants.join(profiles, true())
    )
    if tenant_id is not None:
        query = query.where(tenants.c.id == tenant_id)
    return query


class PermissionsStep(EntityStep):
    """
    Ensure every migrated company owns a "Usuário" and an "Administrador" profile.

    Existing profiles with those names are left untouched. After the stream,
    ``users.permission_id`` of the companies in scope points at the
    administrator profile for admin or master users and at the regular
    profile for everyone else.
    """

    name = "Permissions"
    mapping = EntityMapping(
        entity="permissions",
        source_table="Tenants",
        source_columns={"company_id": "id"},
        source_tenant_column="id",
        source_filter=lambda table: table.c.id != MASTER_TENANT_ID,
        source_query=_profiles_query,
        destination_table="permissions",
        destination_columns=("name", "permissions", "company_id", "created_at", "updated_at"),
        natural_key=NaturalKey(("company_id", "name")),
        conflict_columns=None,
        refresh_existing=False,
    )

    def prepare(self, destination: Connection, tables: TableCatalog, context: StepContext) -> dict[str, Any]:
        return {"companies": valid_ids(destination, tables.get("companies"), context.tenant_id, tenant_column="id")}

    def transform(self, row: Mapping[str, Any], context: StepContext) -> TargetPayload:
        require(row, "company_id", "name")
        company_id = to_int(row["company_id"])
        if company_id not in context.lookups["companies"]:
            raise SkipRow("missing_company_fk", company_id=company_id)
        name = str(row["name"])
        now = datetime.now(timezone.utc)
        return TargetPayload(
            old_id=f"{company_id}:{name}",
            values={
                "name": name,
                "permissions": profile_permissions(admin=name == ADMIN_PROFILE),
                "company_id": company_id,
                "created_at": now,
                "updated_at": now,
            },
        )

    def finalize(self, destination: Connection, tables: TableCatalog, context: StepContext) -> None:
        link_user_permissions(destination, tables, context.tenant_id)
        if destination.dialect.name == "postgresql":
            destination.execute(
                text(
                    "SELECT setval(pg_get_serial_sequence('permissions', 'id'), "
                    "COALESCE((SELECT MAX(id) FROM permissions), 1))"
                )
            )


def link_user_permissions(destination: Connection, tables: TableCatalog, tenant_id: int | None) -> int:
    """Point each user at the default profile matching its role, in one UPDATE."""
    permissions = tables.get("permissions")
    users = tables.get("users")
    role = case(
        (or_(users.c.profile == "admin", users.c.is_master.is_(True)), ADMIN_PROFILE),
        else_=USER_PROFILE,
    )
    profile_id = (
        select(permissions.c.id)
        .where(permissions.c.company_id == users.c.company_id, permissions.c.name == role)
        .order_by(permissions.c.id)
        .limit(1)
        .scalar_subquery()
    )
    stmt = update(users).values(permission_id=profile_id)
    if tenant_id is not None:
        stmt = stmt.where(users.c.company_id == tenant_id)
    result = destination.execute(stmt)
    return max(result.rowcount or 0, 0)
