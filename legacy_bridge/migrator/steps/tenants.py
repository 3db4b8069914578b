"""Tenants → companies."""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, Mapping

from legacy_bridge.migrator.mapping import EntityMapping, SyntheticKey
from legacy_bridge.migrator.pipeline.engine import EntityStep, StepContext
from legacy_bridge.migrator.pipeline.identity import generate_check_digit_key, is_valid_check_digit_key
from legacy_bridge.migrator.pipeline.transform import TargetPayload, parse_timestamp, require, safe_name, to_int

MASTER_TENANT_ID = 1

DEFAULT_PLAN = {
    "Webchat": {"price": 0, "amount": 0, "enabled": False},
    "Telegram": {"price": 0, "amount": 0, "enabled": False},
    "Instagram": {"price": 0, "amount": 0, "enabled": False},
    "Messenger": {"price": 0, "amount": 0, "enabled": False},
    "Telefonia": {"price": 0, "amount": 0, "enabled": True},
    "WhatsAppQRCode": {"price": 0, "amount": 0, "enabled": False},
    "WhatsAppCloudAPI": {"price": 0, "amount": 0, "enabled": False},
}
DEFAULT_THEME = {"primary": "#1976d2", "secondary": "#42a5f5"}
DEFAULT_ASSET = "default.png"

_NON_DIGITS = re.compile(r"\D+")


def build_subdomain(name: str) -> str:
    return name.replace(" ", "_").lower()


def normalize_registry_number(value: Any) -> str | None:
    if value is None:
        return None
    digits = _NON_DIGITS.sub("", str(value))
    return digits or None


class TenantsStep(EntityStep):
    name = "Tenants"
    mapping = EntityMapping(
        entity="companies",
        source_table="Tenants",
        source_columns={
            "id": "id",
            "name": "name",
            "cnpj": "cnpj",
            "max_users": "maxUsers",
            "status": "status",
            "created_at": "createdAt",
            "updated_at": "updatedAt",
        },
        source_tenant_column="id",
        source_filter=lambda table: table.c.id != MASTER_TENANT_ID,
        destination_table="companies",
        destination_columns=(
            "id",
            "name",
            "cnpj",
            "users_allowed",
            "status",
            "plan",
            "address",
            "price_per_user",
            "is_master",
            "logo",
            "theme",
            "background",
            "subdomain",
            "omni_name",
            "favicon",
            "created_at",
            "updated_at",
        ),
        destination_tenant_column="id",
        synthetic_key=SyntheticKey(
            column="cnpj",
            generator=generate_check_digit_key,
            validator=is_valid_check_digit_key,
        ),
    )

    def transform(self, row: Mapping[str, Any], context: StepContext) -> TargetPayload:
        require(row, "id")
        company_id = to_int(row["id"])
        name = safe_name(row.get("name"), f"Empresa {company_id}")
        now = datetime.now(timezone.utc)
        return TargetPayload(
            old_id=str(company_id),
            values={
                "id": company_id,
                "name": name,
                "cnpj": normalize_registry_number(row.get("cnpj")),
                "users_allowed": to_int(row.get("max_users"), 0) or 0,
                "status": str(row.get("status") or "").strip().lower() == "active",
                "plan": DEFAULT_PLAN,
                "address": "",
                "price_per_user": 0.0,
                "is_master": False,
                "logo": DEFAULT_ASSET,
                "theme": DEFAULT_THEME,
                "background": DEFAULT_ASSET,
                "subdomain": build_subdomain(name),
                "omni_name": name,
                "favicon": DEFAULT_ASSET,
                "created_at": parse_timestamp(row.get("created_at")) or now,
                "updated_at": parse_timestamp(row.get("updated_at")) or now,
            },
        )
