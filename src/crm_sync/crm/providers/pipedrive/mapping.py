"""Pipedrive field mappings for persons (contacts) and deals.

Persons carry email and phone as lists of ``{"value", "primary"}`` entries
and require a ``name``, which is computed from first and last name.
Pipedrive custom fields are top-level 40-character hash keys; tags and
custom fields map only when those keys are configured.
"""

from __future__ import annotations

from typing import Any

from src.crm_sync.crm.mapping import FieldMapping, MappingDirection, map_from_crm, map_to_crm
from src.crm_sync.crm.schemas import Contact, CRMProvider, Deal
from src.crm_sync.crm.utils import (
    csv_to_tags,
    date_to_iso,
    dict_to_json,
    iso_to_date,
    json_to_dict,
    normalize_phone_number,
    parse_datetime,
    tags_to_csv,
    to_int_id,
    to_str_id,
)


def _to_primary_entry(value: str) -> list[dict[str, Any]]:
    return [{"value": value, "primary": True}]


def _phone_entry(value: str) -> list[dict[str, Any]] | None:
    normalized = normalize_phone_number(value)
    return _to_primary_entry(normalized) if normalized else None


def primary_value(entries: Any) -> str | None:
    """Pick the primary (else first non-empty) value from a Pipedrive multi-value field."""
    if isinstance(entries, str):
        return entries or None
    if not isinstance(entries, list):
        return None
    values = [e for e in entries if isinstance(e, dict) and e.get("value")]
    for entry in values:
        if entry.get("primary"):
            return entry["value"]
    return values[0]["value"] if values else None


PERSON_MAPPINGS: tuple[FieldMapping, ...] = (
    FieldMapping("first_name", "first_name"),
    FieldMapping("last_name", "last_name"),
    FieldMapping("email", "email", to_crm_transform=_to_primary_entry, from_crm_transform=primary_value),
    FieldMapping("phone", "phone", to_crm_transform=_phone_entry, from_crm_transform=primary_value),
    FieldMapping("title", "job_title"),
    FieldMapping("company", "org_name", direction=MappingDirection.FROM_CRM),
)

DEAL_MAPPINGS: tuple[FieldMapping, ...] = (
    FieldMapping("title", "title"),
    FieldMapping("value", "value", to_crm_transform=float, from_crm_transform=float),
    FieldMapping("currency", "currency"),
    FieldMapping("stage", "stage_id", to_crm_transform=to_int_id, from_crm_transform=to_str_id),
    FieldMapping("contact_id", "person_id", to_crm_transform=to_int_id, from_crm_transform=to_str_id),
    FieldMapping("company_id", "org_id", to_crm_transform=to_int_id, from_crm_transform=to_str_id),
    FieldMapping("expected_close_date", "expected_close_date", to_crm_transform=date_to_iso, from_crm_transform=iso_to_date),
    FieldMapping("probability", "probability", to_crm_transform=float, from_crm_transform=float),
)


def _custom_field_mappings(tags_key: str | None, custom_fields_key: str | None) -> tuple[FieldMapping, ...]:
    mappings: list[FieldMapping] = []
    if tags_key:
        mappings.append(FieldMapping("tags", tags_key, to_crm_transform=tags_to_csv, from_crm_transform=csv_to_tags))
    if custom_fields_key:
        mappings.append(
            FieldMapping("custom_fields", custom_fields_key, to_crm_transform=dict_to_json, from_crm_transform=json_to_dict)
        )
    return tuple(mappings)


def person_mappings(tags_key: str | None = None, custom_fields_key: str | None = None) -> tuple[FieldMapping, ...]:
    return PERSON_MAPPINGS + _custom_field_mappings(tags_key, custom_fields_key)


def deal_mappings(custom_fields_key: str | None = None) -> tuple[FieldMapping, ...]:
    return DEAL_MAPPINGS + _custom_field_mappings(None, custom_fields_key)


def person_payload(contact: Contact, mappings: tuple[FieldMapping, ...] = PERSON_MAPPINGS) -> dict[str, Any]:
    payload = map_to_crm(contact, mappings)
    if contact.full_name:
        payload["name"] = contact.full_name
    return payload


def _metadata(data: dict[str, Any]) -> dict[str, Any]:
    return {
        "crm_id": str(data["id"]),
        "crm_provider": CRMProvider.PIPEDRIVE,
        "created_at": parse_datetime(data.get("add_time")),
        "updated_at": parse_datetime(data.get("update_time")),
    }


def contact_from_pipedrive(data: dict[str, Any], mappings: tuple[FieldMapping, ...] = PERSON_MAPPINGS) -> Contact:
    fields = map_from_crm(data, mappings)
    if "first_name" not in fields and "last_name" not in fields and data.get("name"):
        first, _, last = str(data["name"]).partition(" ")
        fields["first_name"] = first or None
        fields["last_name"] = last or None
    return Contact(**fields, **_metadata(data))


def contact_from_search_item(item: dict[str, Any]) -> Contact:
    """Convert a ``/persons/search`` item, whose shape differs from ``/persons``."""
    first, _, last = str(item.get("name") or "").partition(" ")
    emails = item.get("emails") or []
    phones = item.get("phones") or []
    organization = item.get("organization") or {}
    return Contact(
        first_name=first or None,
        last_name=last or None,
        email=emails[0] if emails else None,
        phone=phones[0] if phones else None,
        company=organization.get("name"),
        crm_id=str(item["id"]),
        crm_provider=CRMProvider.PIPEDRIVE,
    )


def deal_from_pipedrive(data: dict[str, Any], mappings: tuple[FieldMapping, ...] = DEAL_MAPPINGS) -> Deal:
    return Deal(**map_from_crm(data, mappings), **_metadata(data))
