"""Destination lookups preloaded by steps before streaming."""

from __future__ import annotations

from sqlalchemy import Table, func, select
from sqlalchemy.engine import Connection


def valid_ids(
    destination: Connection, table: Table, tenant_id: int | None, *, tenant_column: str = "company_id"
) -> set[int]:
    query = select(table.c.id)
    if tenant_id is not None and tenant_column in table.c:
        query = query.where(table.c[tenant_column] == tenant_id)
    return {int(value) for value in destination.execute(query).scalars()}


def ids_by_company(destination: Connection, table: Table, tenant_id: int | None) -> dict[int, set[int]]:
    """``company_id → {id, ...}`` for a per-company destination table."""
    query = select(table.c.company_id, table.c.id)
    if tenant_id is not None:
        query = query.where(table.c.company_id == tenant_id)
    grouped: dict[int, set[int]] = {}
    for company_id, row_id in destination.execute(query):
        grouped.setdefault(int(company_id), set()).add(int(row_id))
    return grouped


def lowest_id_by_company(destination: Connection, table: Table, tenant_id: int | None) -> dict[int, int]:
    """``company_id → MIN(id)`` for a per-company destination table."""
    query = select(table.c.company_id, func.min(table.c.id)).group_by(table.c.company_id)
    if tenant_id is not None:
        query = query.where(table.c.company_id == tenant_id)
    return {int(company_id): int(row_id) for company_id, row_id in destination.execute(query)}
