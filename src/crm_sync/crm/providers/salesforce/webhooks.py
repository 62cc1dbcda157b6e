"""Salesforce streaming (PushTopic) event normalization.

Expected payload::

    {"event": {"replayId": 12, "type": "updated", "createdDate": "2024-01-15T10:30:00.000Z"},
     "sobject": {"Id": "003...", "attributes": {"type": "Contact"}, ...}}
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from src.crm_sync.crm.errors import WebhookParseError
from src.crm_sync.crm.schemas import CRMObjectType, CRMProvider, CRMWebhookEvent, WebhookAction
from src.crm_sync.crm.utils import parse_datetime

_ACTIONS = {
    "created": WebhookAction.CREATED,
    "undeleted": WebhookAction.CREATED,
    "updated": WebhookAction.UPDATED,
    "deleted": WebhookAction.DELETED,
}

_SOBJECT_TYPES = {
    "Contact": CRMObjectType.CONTACT,
    "Lead": CRMObjectType.CONTACT,
    "Opportunity": CRMObjectType.DEAL,
}

# Salesforce key prefixes: first three characters of every record id.
_ID_PREFIXES = {
    "003": CRMObjectType.CONTACT,
    "00Q": CRMObjectType.CONTACT,
    "006": CRMObjectType.DEAL,
}


class _StreamingEvent(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    replay_id: int | str = Field(alias="replayId")
    type: str
    created_date: str = Field(alias="createdDate")


class _StreamingPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    event: _StreamingEvent
    sobject: dict[str, Any]


def parse_salesforce_webhook(payload: dict[str, Any]) -> CRMWebhookEvent:
    """Normalize a Salesforce streaming event.

    Raises:
        WebhookParseError: Missing event fields, missing ``sobject.Id``,
            unknown event type, or an sObject that is not a contact/deal.
    """
    try:
        parsed = _StreamingPayload.model_validate(payload)
    except ValidationError as exc:
        raise WebhookParseError(f"malformed Salesforce event: {exc}", provider=CRMProvider.SALESFORCE.value) from exc

    record_id = parsed.sobject.get("Id")
    if not record_id:
        raise WebhookParseError("Salesforce event is missing sobject.Id", provider=CRMProvider.SALESFORCE.value)

    action = _ACTIONS.get(parsed.event.type.lower())
    if action is None:
        raise WebhookParseError(
            f"unrecognized Salesforce event type {parsed.event.type!r}",
            provider=CRMProvider.SALESFORCE.value,
        )

    sobject_type = (parsed.sobject.get("attributes") or {}).get("type")
    object_type = _SOBJECT_TYPES.get(sobject_type) if sobject_type else _ID_PREFIXES.get(str(record_id)[:3])
    if object_type is None:
        raise WebhookParseError(
            f"Salesforce event for unsupported object {sobject_type or record_id!r}",
            provider=CRMProvider.SALESFORCE.value,
        )

    try:
        timestamp = parse_datetime(parsed.event.created_date)
    except ValueError as exc:
        raise WebhookParseError("Salesforce event has an invalid createdDate", provider=CRMProvider.SALESFORCE.value) from exc
    if timestamp is None:
        raise WebhookParseError("Salesforce event has an empty createdDate", provider=CRMProvider.SALESFORCE.value)

    return CRMWebhookEvent(
        id=str(parsed.event.replay_id),
        type=parsed.event.type,
        provider=CRMProvider.SALESFORCE,
        object_type=object_type,
        object_id=str(record_id),
        action=action,
        data=parsed.sobject,
        timestamp=timestamp,
    )
