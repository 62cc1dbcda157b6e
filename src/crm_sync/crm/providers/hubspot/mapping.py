"""HubSpot property mappings for contacts and deals.

HubSpot returns every property value as a string, so numeric fields carry
``float`` transforms. ``hs_deal_stage_probability`` is a 0-1 fraction
computed from the pipeline stage; it is read-only and scaled to 0-100.
"""

from __future__ import annotations

from typing import Any

from src.crm_sync.crm.mapping import FieldMapping, MappingDirection, map_from_crm
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
)


def _fraction_to_percent(value: Any) -> float:
    return round(float(value) * 100, 4)


def _first_association_id(results: list[dict[str, Any]]) -> str | None:
    return str(results[0]["id"]) if results else None


CONTACT_MAPPINGS: tuple[FieldMapping, ...] = (
    FieldMapping("first_name", "firstname"),
    FieldMapping("last_name", "lastname"),
    FieldMapping("email", "email"),
    FieldMapping("phone", "phone", to_crm_transform=normalize_phone_number),
    FieldMapping("company", "company"),
    FieldMapping("title", "jobtitle"),
)

DEAL_MAPPINGS: tuple[FieldMapping, ...] = (
    FieldMapping("title", "dealname"),
    FieldMapping("value", "amount", to_crm_transform=float, from_crm_transform=float),
    FieldMapping("currency", "deal_currency_code"),
    FieldMapping("stage", "dealstage"),
    FieldMapping("expected_close_date", "closedate", to_crm_transform=date_to_iso, from_crm_transform=iso_to_date),
    FieldMapping(
        "probability",
        "hs_deal_stage_probability",
        direction=MappingDirection.FROM_CRM,
        from_crm_transform=_fraction_to_percent,
    ),
)

# Read from the ``associations`` block of a deal fetched with associations=contacts,companies.
DEAL_ASSOCIATION_MAPPINGS: tuple[FieldMapping, ...] = (
    FieldMapping(
        "contact_id",
        "associations.contacts.results",
        direction=MappingDirection.FROM_CRM,
        from_crm_transform=_first_association_id,
    ),
    FieldMapping(
        "company_id",
        "associations.companies.results",
        direction=MappingDirection.FROM_CRM,
        from_crm_transform=_first_association_id,
    ),
)


def _custom_property_mappings(tags_property: str | None, custom_fields_property: str | None) -> tuple[FieldMapping, ...]:
    mappings: list[FieldMapping] = []
    if tags_property:
        mappings.append(FieldMapping("tags", tags_property, to_crm_transform=tags_to_csv, from_crm_transform=csv_to_tags))
    if custom_fields_property:
        mappings.append(
            FieldMapping("custom_fields", custom_fields_property, to_crm_transform=dict_to_json, from_crm_transform=json_to_dict)
        )
    return tuple(mappings)


def contact_mappings(tags_property: str | None = None, custom_fields_property: str | None = None) -> tuple[FieldMapping, ...]:
    return CONTACT_MAPPINGS + _custom_property_mappings(tags_property, custom_fields_property)


def deal_mappings(custom_fields_property: str | None = None) -> tuple[FieldMapping, ...]:
    return DEAL_MAPPINGS + _custom_property_mappings(None, custom_fields_property)


def property_names(mappings: tuple[FieldMapping, ...]) -> list[str]:
    return [m.crm_field for m in mappings]


def _metadata(data: dict[str, Any]) -> dict[str, Any]:
    properties = data.get("properties") or {}
    return {
        "crm_id": str(data["id"]),
        "crm_provider": CRMProvider.HUBSPOT,
        "created_at": parse_datetime(data.get("createdAt") or properties.get("createdate")),
        "updated_at": parse_datetime(
            data.get("updatedAt") or properties.get("lastmodifieddate") or properties.get("hs_lastmodifieddate")
        ),
    }


def contact_from_hubspot(data: dict[str, Any], mappings: tuple[FieldMapping, ...] = CONTACT_MAPPINGS) -> Contact:
    return Contact(**map_from_crm(data.get("properties") or {}, mappings), **_metadata(data))


def deal_from_hubspot(data: dict[str, Any], mappings: tuple[FieldMapping, ...] = DEAL_MAPPINGS) -> Deal:
    fields = map_from_crm(data.get("properties") or {}, mappings)
    fields.update(map_from_crm(data, DEAL_ASSOCIATION_MAPPINGS))
    return Deal(**fields, **_metadata(data))
