"""Salesforce field mappings for Contact and Opportunity.

Tags and custom fields have no standard Salesforce home; they map only
when the org provides custom fields for them (``tags_field`` /
``custom_fields_field``, e.g. ``App_Tags__c``).
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

CONTACT_MAPPINGS: tuple[FieldMapping, ...] = (
    FieldMapping("first_name", "FirstName"),
    FieldMapping("last_name", "LastName"),
    FieldMapping("email", "Email"),
    FieldMapping("phone", "Phone", to_crm_transform=normalize_phone_number),
    FieldMapping("title", "Title"),
    FieldMapping("company", "Account.Name", direction=MappingDirection.FROM_CRM),
)

OPPORTUNITY_MAPPINGS: tuple[FieldMapping, ...] = (
    FieldMapping("title", "Name"),
    FieldMapping("value", "Amount", to_crm_transform=float, from_crm_transform=float),
    FieldMapping("stage", "StageName"),
    FieldMapping("expected_close_date", "CloseDate", to_crm_transform=date_to_iso, from_crm_transform=iso_to_date),
    FieldMapping("probability", "Probability", to_crm_transform=float, from_crm_transform=float),
    FieldMapping("contact_id", "ContactId"),
    FieldMapping("company_id", "AccountId"),
)

CONTACT_SELECT_FIELDS = (
    "Id",
    "FirstName",
    "LastName",
    "Email",
    "Phone",
    "Title",
    "Account.Name",
    "CreatedDate",
    "LastModifiedDate",
)
OPPORTUNITY_SELECT_FIELDS = (
    "Id",
    "Name",
    "Amount",
    "StageName",
    "CloseDate",
    "Probability",
    "ContactId",
    "AccountId",
    "CreatedDate",
    "LastModifiedDate",
)


def _custom_field_mappings(tags_field: str | None, custom_fields_field: str | None) -> tuple[FieldMapping, ...]:
    mappings: list[FieldMapping] = []
    if tags_field:
        mappings.append(FieldMapping("tags", tags_field, to_crm_transform=tags_to_csv, from_crm_transform=csv_to_tags))
    if custom_fields_field:
        mappings.append(
            FieldMapping("custom_fields", custom_fields_field, to_crm_transform=dict_to_json, from_crm_transform=json_to_dict)
        )
    return tuple(mappings)


def contact_mappings(tags_field: str | None = None, custom_fields_field: str | None = None) -> tuple[FieldMapping, ...]:
    return CONTACT_MAPPINGS + _custom_field_mappings(tags_field, custom_fields_field)


def opportunity_mappings(custom_fields_field: str | None = None) -> tuple[FieldMapping, ...]:
    return OPPORTUNITY_MAPPINGS + _custom_field_mappings(None, custom_fields_field)


def select_fields(base: tuple[str, ...], mappings: tuple[FieldMapping, ...]) -> str:
    """SOQL field list: base fields plus any configured custom fields."""
    fields = list(base)
    for mapping in mappings:
        if mapping.crm_field not in fields:
            fields.append(mapping.crm_field)
    return ", ".join(fields)


def _metadata(data: dict[str, Any]) -> dict[str, Any]:
    return {
        "crm_id": data["Id"],
        "crm_provider": CRMProvider.SALESFORCE,
        "created_at": parse_datetime(data.get("CreatedDate")),
        "updated_at": parse_datetime(data.get("LastModifiedDate")),
    }


def contact_from_salesforce(data: dict[str, Any], mappings: tuple[FieldMapping, ...] = CONTACT_MAPPINGS) -> Contact:
    return Contact(**map_from_crm(data, mappings), **_metadata(data))


def deal_from_salesforce(data: dict[str, Any], mappings: tuple[FieldMapping, ...] = OPPORTUNITY_MAPPINGS) -> Deal:
    return Deal(**map_from_crm(data, mappings), **_metadata(data))
