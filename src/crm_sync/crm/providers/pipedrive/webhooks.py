"""Pipedrive v1 webhook normalization.

Expected payload::

    {"meta": {"action": "updated", "object": "person", "id": 42, "timestamp": 1705312200},
     "current": {"id": 42, ...}, "previous": {...}}

Deletions carry ``previous`` only.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError

from src.crm_sync.crm.errors import WebhookParseError
from src.crm_sync.crm.schemas import CRMObjectType, CRMProvider, CRMWebhookEvent, WebhookAction
from src.crm_sync.crm.utils import parse_datetime

_ACTIONS = {
    "added": WebhookAction.CREATED,
    "updated": WebhookAction.UPDATED,
    "merged": WebhookAction.UPDATED,
    "deleted": WebhookAction.DELETED,
}

_OBJECT_TYPES = {
    "person": CRMObjectType.CONTACT,
    "deal": CRMObjectType.DEAL,
}


class _Meta(BaseModel):
    model_config = ConfigDict(extra="allow")

    action: str
    object: str
    timestamp: int | float | str
    id: int | str | None = None


class _PipedrivePayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    meta: _Meta
    current: dict[str, Any] | None = None
    previous: dict[str, Any] | None = None


def parse_pipedrive_webhook(payload: dict[str, Any]) -> CRMWebhookEvent:
    """Normalize a Pipedrive v1 webhook.

    The object id comes from ``meta.id``, else ``current.id``, else
    ``previous.id``. ``meta.timestamp`` is epoch seconds.

    Raises:
        WebhookParseError: Missing meta fields or object id, an object other
            than person/deal, or an unknown action.
    """
    try:
        parsed = _PipedrivePayload.model_validate(payload)
    except ValidationError as exc:
        raise WebhookParseError(f"malformed Pipedrive webhook: {exc}", provider=CRMProvider.PIPEDRIVE.value) from exc

    meta = parsed.meta
    action = _ACTIONS.get(meta.action)
    if action is None:
        raise WebhookParseError(f"unrecognized Pipedrive action {meta.action!r}", provider=CRMProvider.PIPEDRIVE.value)
    object_type = _OBJECT_TYPES.get(meta.object)
    if object_type is None:
        raise WebhookParseError(
            f"Pipedrive webhook for unsupported object {meta.object!r}",
            provider=CRMProvider.PIPEDRIVE.value,
        )

    object_id = meta.id or (parsed.current or {}).get("id") or (parsed.previous or {}).get("id")
    if not object_id:
        raise WebhookParseError("Pipedrive webhook carries no object id", provider=CRMProvider.PIPEDRIVE.value)

    try:
        timestamp = parse_datetime(meta.timestamp)
    except ValueError as exc:
        raise WebhookParseError("Pipedrive webhook has an invalid timestamp", provider=CRMProvider.PIPEDRIVE.value) from exc
    if timestamp is None:
        raise WebhookParseError("Pipedrive webhook has an empty timestamp", provider=CRMProvider.PIPEDRIVE.value)

    return CRMWebhookEvent(
        id=f"{meta.object}:{object_id}:{meta.action}:{int(timestamp.timestamp())}",
        type=f"{meta.action}.{meta.object}",
        provider=CRMProvider.PIPEDRIVE,
        object_type=object_type,
        object_id=str(object_id),
        action=action,
        data=parsed.current if parsed.current is not None else (parsed.previous or {}),
        timestamp=timestamp,
    )
