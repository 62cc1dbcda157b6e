"""HubSpot webhook event normalization.

HubSpot posts a JSON array of events; each element looks like::

    {"eventId": 100, "subscriptionId": 7, "subscriptionType": "contact.propertyChange",
     "objectId": 123, "propertyName": "email", "propertyValue": "a@b.co",
     "occurredAt": 1705312200000, "portalId": 62515}

Callers pass one element at a time (see ``split_hubspot_batch``).
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from src.crm_sync.crm.errors import WebhookParseError
from src.crm_sync.crm.schemas import CRMObjectType, CRMProvider, CRMWebhookEvent, WebhookAction
from src.crm_sync.crm.utils import parse_datetime

_OBJECT_TYPES = {
    "contact": CRMObjectType.CONTACT,
    "deal": CRMObjectType.DEAL,
}

_ACTIONS = {
    "creation": WebhookAction.CREATED,
    "restore": WebhookAction.CREATED,
    "propertyChange": WebhookAction.UPDATED,
    "associationChange": WebhookAction.UPDATED,
    "merge": WebhookAction.UPDATED,
    "deletion": WebhookAction.DELETED,
    "privacyDeletion": WebhookAction.DELETED,
}


class _HubSpotEvent(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    event_id: int | str = Field(alias="eventId")
    subscription_type: str = Field(alias="subscriptionType")
    object_id: int | str = Field(alias="objectId")
    occurred_at: int | str = Field(alias="occurredAt")
    property_name: str | None = Field(default=None, alias="propertyName")


def split_hubspot_batch(payload: list[dict[str, Any]] | dict[str, Any]) -> list[dict[str, Any]]:
    """HubSpot delivers batches; normalize a single event or a batch to a list."""
    if isinstance(payload, list):
        return payload
    return [payload]


def parse_hubspot_webhook(payload: dict[str, Any]) -> CRMWebhookEvent:
    """Normalize one HubSpot webhook event.

    A ``propertyName`` implies ``updated`` regardless of the subscription
    suffix.

    Raises:
        WebhookParseError: Missing eventId/subscriptionType/objectId/occurredAt,
            an object other than contact/deal, or an unknown event kind.
    """
    if not isinstance(payload, dict):
        raise WebhookParseError("HubSpot webhook payload must be a single event object", provider=CRMProvider.HUBSPOT.value)
    try:
        event = _HubSpotEvent.model_validate(payload)
    except ValidationError as exc:
        raise WebhookParseError(f"malformed HubSpot event: {exc}", provider=CRMProvider.HUBSPOT.value) from exc

    object_name, _, kind = event.subscription_type.partition(".")
    object_type = _OBJECT_TYPES.get(object_name)
    if object_type is None:
        raise WebhookParseError(
            f"HubSpot event for unsupported object {object_name!r}",
            provider=CRMProvider.HUBSPOT.value,
        )

    if event.property_name:
        action = WebhookAction.UPDATED
    else:
        action = _ACTIONS.get(kind)
    if action is None:
        raise WebhookParseError(
            f"unrecognized HubSpot subscription type {event.subscription_type!r}",
            provider=CRMProvider.HUBSPOT.value,
        )

    try:
        timestamp = parse_datetime(event.occurred_at)
    except ValueError as exc:
        raise WebhookParseError("HubSpot event has an invalid occurredAt", provider=CRMProvider.HUBSPOT.value) from exc
    if timestamp is None:
        raise WebhookParseError("HubSpot event has an empty occurredAt", provider=CRMProvider.HUBSPOT.value)

    return CRMWebhookEvent(
        id=str(event.event_id),
        type=event.subscription_type,
        provider=CRMProvider.HUBSPOT,
        object_type=object_type,
        object_id=str(event.object_id),
        action=action,
        data=payload,
        timestamp=timestamp,
    )
