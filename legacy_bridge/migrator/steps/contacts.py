"""Contacts → contacts."""

from __future__ import annotations

import re
from typing import Any, Mapping

from legacy_bridge.migrator.mapping import EntityMapping
from legacy_bridge.migrator.pipeline.engine import EntityStep, StepContext
from legacy_bridge.migrator.pipeline.transform import (
    TargetPayload,
    parse_timestamp,
    require,
    safe_name,
    sanitize_text,
    to_int,
)

LEGAL_ENTITY = "Pessoa Jurídica"
PHONE_MAX_LENGTH = 20

_NON_DIGITS = re.compile(r"\D+")
_ADDRESS_PARTS = ("street", "district", "zip_code", "city", "state", "country")


def digits_only(value: Any, limit: int = PHONE_MAX_LENGTH) -> str | None:
    if value is None:
        return None
    digits = _NON_DIGITS.sub("", str(value))[:limit]
    return digits or None


def build_jid(phone_number: str | None, is_group: bool) -> str | None:
    if not phone_number:
        return None
    return phone_number + ("@g.us" if is_group else "@s.whatsapp.net")


def _optional_text(value: Any) -> str | None:
    text = sanitize_text(value)
    if text is None or not text.strip():
        return None
    return text.strip()


class ContactsStep(EntityStep):
    name = "Contacts"
    mapping = EntityMapping(
        entity="contacts",
        source_table="Contacts",
        source_columns={
            "id": "id",
            "name": "name",
            "number": "number",
            "profile_pic_url": "profilePicUrl",
            "email": "email",
            "is_group": "isGroup",
            "telegram_id": "telegramId",
            "instagram_pk": "instagramPK",
            "messenger_id": "messengerId",
            "kind": "tipo",
            "cpf": "cpf",
            "cnpj": "cnpj",
            "birth_date": "dataNascimento",
            "street": "rua",
            "district": "bairro",
            "zip_code": "cep",
            "city": "cidade",
            "state": "estado",
            "country": "pais",
            "pushname": "pushname",
            "company_id": "tenantId",
            "created_at": "createdAt",
            "updated_at": "updatedAt",
        },
        destination_table="contacts",
        destination_columns=(
            "id",
            "name",
            "phone_number",
            "j_id",
            "whatsapp",
            "instagram",
            "instagram_id",
            "telegram",
            "messenger",
            "email",
            "profile_pic_url",
            "push_name",
            "is_wa_contact",
            "is_group",
            "type",
            "cpf",
            "cnpj",
            "birth_date",
            "address",
            "annotations",
            "company_id",
            "created_at",
            "updated_at",
        ),
    )

    def transform(self, row: Mapping[str, Any], context: StepContext) -> TargetPayload:
        require(row, "id", "company_id")
        contact_id = to_int(row["id"])
        phone_number = digits_only(row.get("number"))
        is_group = row.get("is_group") is True
        push_name = _optional_text(row.get("pushname"))
        instagram = _optional_text(row.get("instagram_pk"))
        address = ", ".join(part for part in (_optional_text(row.get(name)) for name in _ADDRESS_PARTS) if part)
        return TargetPayload(
            old_id=str(contact_id),
            values={
                "id": contact_id,
                "name": safe_name(row.get("name"), push_name or phone_number or f"Contato {contact_id}"),
                "phone_number": phone_number,
                "j_id": build_jid(phone_number, is_group),
                "whatsapp": phone_number,
                "instagram": instagram,
                "instagram_id": instagram,
                "telegram": _optional_text(row.get("telegram_id")),
                "messenger": _optional_text(row.get("messenger_id")),
                "email": _optional_text(row.get("email")),
                "profile_pic_url": _optional_text(row.get("profile_pic_url")),
                "push_name": push_name,
                "is_wa_contact": phone_number is not None,
                "is_group": is_group,
                "type": 2 if row.get("kind") == LEGAL_ENTITY else 1,
                "cpf": _optional_text(row.get("cpf")),
                "cnpj": _optional_text(row.get("cnpj")),
                "birth_date": parse_timestamp(row.get("birth_date")),
                "address": address,
                "annotations": "",
                "company_id": to_int(row["company_id"]),
                "created_at": parse_timestamp(row.get("created_at")),
                "updated_at": parse_timestamp(row.get("updated_at")),
            },
        )
