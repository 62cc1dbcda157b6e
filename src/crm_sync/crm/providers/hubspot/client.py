"""HubSpot CRM v3 client.

Contacts and deals live under ``/crm/v3/objects/{contacts,deals}``. Plain
listing pages with the ``after`` cursor; listing with ``modified_since``
or filters switches to the search endpoint. Activities become the matching
engagement object (calls, meetings, emails, tasks, notes) associated to the
contact and/or deal by HubSpot-defined association type ids.
"""

from __future__ import annotations

import functools
from datetime import datetime, timezone
from typing import Any

import httpx
import structlog
from pydantic import BaseModel, Field

from src.crm_sync.config import Settings
from src.crm_sync.crm.client import CRMClient, CredentialsCallback
from src.crm_sync.crm.mapping import map_to_crm
from src.crm_sync.crm.providers.hubspot.auth import HubSpotAuth
from src.crm_sync.crm.providers.hubspot.mapping import (
    contact_from_hubspot,
    contact_mappings,
    deal_from_hubspot,
    deal_mappings,
    property_names,
)
from src.crm_sync.crm.providers.hubspot.webhooks import parse_hubspot_webhook
from src.crm_sync.crm.schemas import (
    Activity,
    ActivityType,
    Contact,
    Credentials,
    CRMObjectType,
    CRMProvider,
    CRMWebhookEvent,
    Deal,
    Note,
    QueryOptions,
    RecordPage,
    WebhookConfig,
)
from src.crm_sync.crm.transport import CRMTransport
from src.crm_sync.crm.utils import RateLimiter

logger = structlog.get_logger(__name__)

API_BASE_URL = "https://api.hubapi.com"
MAX_PAGE_SIZE = 100
SEARCH_LIMIT = 20

_OBJECT_PATHS = {
    CRMObjectType.CONTACT: "/crm/v3/objects/contacts",
    CRMObjectType.DEAL: "/crm/v3/objects/deals",
}

_LAST_MODIFIED_PROPERTY = {
    CRMObjectType.CONTACT: "lastmodifieddate",
    CRMObjectType.DEAL: "hs_lastmodifieddate",
}

# HUBSPOT_DEFINED association type ids: (to contact, to deal).
NOTE_ASSOCIATIONS = (202, 214)
DEAL_TO_CONTACT_ASSOCIATION = 3
DEAL_TO_COMPANY_ASSOCIATION = 341

_ENGAGEMENTS: dict[ActivityType, tuple[str, tuple[int, int]]] = {
    ActivityType.CALL: ("calls", (194, 206)),
    ActivityType.MEETING: ("meetings", (200, 212)),
    ActivityType.EMAIL: ("emails", (198, 210)),
    ActivityType.TASK: ("tasks", (204, 216)),
    ActivityType.NOTE: ("notes", NOTE_ASSOCIATIONS),
}


# ── Response DTOs ───────────────────────────────────────────────────────────


class HubSpotObject(BaseModel):
    id: str
    properties: dict[str, Any] = Field(default_factory=dict)


class _NextPage(BaseModel):
    after: str


class _Paging(BaseModel):
    next: _NextPage | None = None


class HubSpotCollection(BaseModel):
    results: list[dict[str, Any]] = Field(default_factory=list)
    paging: _Paging | None = None
    total: int | None = None

    @property
    def next_cursor(self) -> str | None:
        if self.paging and self.paging.next:
            return self.paging.next.after
        return None


def _epoch_ms(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


def _associations(to_ids: list[tuple[str | None, int]]) -> list[dict[str, Any]]:
    return [
        {
            "to": {"id": object_id},
            "types": [{"associationCategory": "HUBSPOT_DEFINED", "associationTypeId": type_id}],
        }
        for object_id, type_id in to_ids
        if object_id
    ]


class HubSpotClient(CRMClient):
    """HubSpot implementation of CRMClient.

    Args:
        credentials: OAuth credentials.
        http_client: Injected httpx client shared by API and auth calls.
        rate_limiter: Overrides the per-client limiter (100 req/s default).
        tags_property: Custom contact property holding comma-separated tags.
        custom_fields_property: Custom property holding JSON custom fields.
    """

    provider = CRMProvider.HUBSPOT

    def __init__(
        self,
        credentials: Credentials,
        *,
        http_client: httpx.AsyncClient | None = None,
        rate_limiter: RateLimiter | None = None,
        settings: Settings | None = None,
        on_credentials_refreshed: CredentialsCallback | None = None,
        tags_property: str | None = None,
        custom_fields_property: str | None = None,
    ) -> None:
        super().__init__(credentials, settings=settings, on_credentials_refreshed=on_credentials_refreshed)
        s = self.settings
        self.default_batch_size = s.HUBSPOT_BATCH_SIZE
        self._auth = HubSpotAuth(
            credentials.client_id or s.HUBSPOT_CLIENT_ID,
            credentials.client_secret or s.HUBSPOT_CLIENT_SECRET,
            s.HUBSPOT_REDIRECT_URI,
            http_client=http_client,
            timeout=s.CRM_HTTP_TIMEOUT,
        )
        self._contact_mappings = contact_mappings(tags_property, custom_fields_property)
        self._deal_mappings = deal_mappings(custom_fields_property)
        self._transport = CRMTransport(
            provider=self.provider.value,
            base_url=API_BASE_URL,
            rate_limiter=rate_limiter or RateLimiter(s.HUBSPOT_REQUESTS_PER_SECOND, name="hubspot"),
            auth_headers=self._auth_headers,
            refresh=self.refresh_token,
            is_expired=self._needs_refresh,
            http_client=http_client,
            timeout=s.CRM_HTTP_TIMEOUT,
        )

    @property
    def auth(self) -> HubSpotAuth:
        return self._auth

    # ── Authentication ─────────────────────────────────────────────────────

    def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.credentials.access_token}"}

    def _needs_refresh(self) -> bool:
        creds = self.credentials
        return not creds.access_token or creds.is_expired(self.settings.CRM_TOKEN_REFRESH_SKEW_SECONDS)

    async def authenticate(self) -> Credentials:
        if self._needs_refresh():
            await self.refresh_token()
        await self._transport.get(_OBJECT_PATHS[CRMObjectType.CONTACT], params={"limit": 1})
        logger.info("hubspot.authenticated")
        return self.credentials

    async def refresh_token(self) -> Credentials:
        refreshed = await self._auth.refresh_access_token(self.credentials.refresh_token)
        await self._store_credentials(refreshed)
        logger.info("hubspot.token_refreshed", expires_at=refreshed.expires_at)
        return refreshed

    async def _probe_connection(self) -> int | None:
        data = await self._transport.post(f"{_OBJECT_PATHS[CRMObjectType.CONTACT]}/search", json={"limit": 1})
        return self._parse(HubSpotCollection, data).total

    # ── Generic object helpers ─────────────────────────────────────────────

    def _properties(self, object_type: CRMObjectType) -> list[str]:
        mappings = self._contact_mappings if object_type == CRMObjectType.CONTACT else self._deal_mappings
        return property_names(mappings) + [_LAST_MODIFIED_PROPERTY[object_type], "createdate"]

    def _converter(self, object_type: CRMObjectType):
        if object_type == CRMObjectType.CONTACT:
            return functools.partial(contact_from_hubspot, mappings=self._contact_mappings)
        return functools.partial(deal_from_hubspot, mappings=self._deal_mappings)

    def _read_params(self, object_type: CRMObjectType) -> dict[str, Any]:
        params: dict[str, Any] = {"properties": ",".join(self._properties(object_type))}
        if object_type == CRMObjectType.DEAL:
            params["associations"] = "contacts,companies"
        return params

    async def _list(self, object_type: CRMObjectType, options: QueryOptions | None) -> RecordPage:
        options = options or QueryOptions(limit=min(self.default_batch_size, MAX_PAGE_SIZE))
        limit = min(options.limit, MAX_PAGE_SIZE)
        path = _OBJECT_PATHS[object_type]

        if options.modified_since is not None or options.filters:
            filters: list[dict[str, Any]] = []
            if options.modified_since is not None:
                filters.append(
                    {
                        "propertyName": _LAST_MODIFIED_PROPERTY[object_type],
                        "operator": "GTE",
                        "value": str(_epoch_ms(options.modified_since)),
                    }
                )
            for name, value in options.filters.items():
                filters.append({"propertyName": name, "operator": "EQ", "value": str(value)})
            body: dict[str, Any] = {
                "filterGroups": [{"filters": filters}],
                "sorts": [{"propertyName": _LAST_MODIFIED_PROPERTY[object_type], "direction": "ASCENDING"}],
                "properties": self._properties(object_type),
                "limit": limit,
            }
            if options.cursor:
                body["after"] = options.cursor
            data = await self._transport.post(f"{path}/search", json=body)
        else:
            params = self._read_params(object_type)
            params["limit"] = limit
            if options.cursor:
                params["after"] = options.cursor
            data = await self._transport.get(path, params=params)

        collection = self._parse(HubSpotCollection, data)
        converter = self._converter(object_type)
        records = [self._convert(converter, row) for row in collection.results]
        return RecordPage(records=records, next_cursor=collection.next_cursor, total=collection.total)

    async def _get(self, object_type: CRMObjectType, record_id: str):
        data = await self._transport.get(f"{_OBJECT_PATHS[object_type]}/{record_id}", params=self._read_params(object_type))
        return self._convert(self._converter(object_type), data)

    async def _create(self, object_type: CRMObjectType, body: dict[str, Any]) -> str:
        data = await self._transport.post(_OBJECT_PATHS[object_type], json=body)
        return self._parse(HubSpotObject, data).id

    async def _update(self, object_type: CRMObjectType, record_id: str, properties: dict[str, Any]) -> None:
        if properties:
            await self._transport.patch(f"{_OBJECT_PATHS[object_type]}/{record_id}", json={"properties": properties})

    # ── Contacts ───────────────────────────────────────────────────────────

    async def list_contacts(self, options: QueryOptions | None = None) -> RecordPage[Contact]:
        return await self._list(CRMObjectType.CONTACT, options)

    async def get_contact(self, contact_id: str) -> Contact:
        return await self._get(CRMObjectType.CONTACT, contact_id)

    async def create_contact(self, contact: Contact) -> Contact:
        crm_id = await self._create(
            CRMObjectType.CONTACT,
            {"properties": map_to_crm(contact, self._contact_mappings)},
        )
        logger.info("hubspot.contact_created", crm_id=crm_id)
        return await self._fetch_created(CRMObjectType.CONTACT, crm_id, contact)

    async def update_contact(self, contact_id: str, contact: Contact) -> Contact:
        await self._update(CRMObjectType.CONTACT, contact_id, map_to_crm(contact, self._contact_mappings))
        logger.info("hubspot.contact_updated", crm_id=contact_id)
        return await self.get_contact(contact_id)

    async def delete_contact(self, contact_id: str) -> None:
        await self._transport.delete(f"{_OBJECT_PATHS[CRMObjectType.CONTACT]}/{contact_id}")
        logger.info("hubspot.contact_deleted", crm_id=contact_id)

    async def search_contacts(self, query: str) -> list[Contact]:
        term = query.strip()
        if not term:
            return []
        body = {
            "filterGroups": [
                {"filters": [{"propertyName": prop, "operator": "CONTAINS_TOKEN", "value": term}]}
                for prop in ("email", "firstname", "lastname")
            ],
            "properties": self._properties(CRMObjectType.CONTACT),
            "limit": SEARCH_LIMIT,
        }
        data = await self._transport.post(f"{_OBJECT_PATHS[CRMObjectType.CONTACT]}/search", json=body)
        collection = self._parse(HubSpotCollection, data)
        converter = self._converter(CRMObjectType.CONTACT)
        return [self._convert(converter, row) for row in collection.results]

    # ── Deals ──────────────────────────────────────────────────────────────

    async def list_deals(self, options: QueryOptions | None = None) -> RecordPage[Deal]:
        return await self._list(CRMObjectType.DEAL, options)

    async def get_deal(self, deal_id: str) -> Deal:
        return await self._get(CRMObjectType.DEAL, deal_id)

    async def create_deal(self, deal: Deal) -> Deal:
        body: dict[str, Any] = {"properties": map_to_crm(deal, self._deal_mappings)}
        associations = _associations(
            [(deal.contact_id, DEAL_TO_CONTACT_ASSOCIATION), (deal.company_id, DEAL_TO_COMPANY_ASSOCIATION)]
        )
        if associations:
            body["associations"] = associations
        crm_id = await self._create(CRMObjectType.DEAL, body)
        logger.info("hubspot.deal_created", crm_id=crm_id)
        return await self._fetch_created(CRMObjectType.DEAL, crm_id, deal)

    async def update_deal(self, deal_id: str, deal: Deal) -> Deal:
        await self._update(CRMObjectType.DEAL, deal_id, map_to_crm(deal, self._deal_mappings))
        logger.info("hubspot.deal_updated", crm_id=deal_id)
        return await self.get_deal(deal_id)

    async def delete_deal(self, deal_id: str) -> None:
        await self._transport.delete(f"{_OBJECT_PATHS[CRMObjectType.DEAL]}/{deal_id}")
        logger.info("hubspot.deal_deleted", crm_id=deal_id)

    # ── Activities / Notes ─────────────────────────────────────────────────

    async def create_activity(self, activity: Activity) -> Activity:
        object_name, (to_contact, to_deal) = _ENGAGEMENTS[activity.type]
        timestamp = _epoch_ms(activity.due_date or activity.created_at or datetime.now(timezone.utc))
        properties = self._engagement_properties(activity, timestamp)
        body = {
            "properties": {k: v for k, v in properties.items() if v is not None},
            "associations": _associations([(activity.contact_id, to_contact), (activity.deal_id, to_deal)]),
        }
        data = await self._transport.post(f"/crm/v3/objects/{object_name}", json=body)
        crm_id = self._parse(HubSpotObject, data).id
        logger.info("hubspot.engagement_created", crm_id=crm_id, engagement=object_name)
        return activity.model_copy(update={"id": crm_id})

    @staticmethod
    def _engagement_properties(activity: Activity, timestamp: int) -> dict[str, Any]:
        done = activity.completed
        if activity.type == ActivityType.CALL:
            return {
                "hs_timestamp": timestamp,
                "hs_call_title": activity.subject,
                "hs_call_body": activity.description,
                "hs_call_status": "COMPLETED" if done else "SCHEDULED",
            }
        if activity.type == ActivityType.MEETING:
            return {
                "hs_timestamp": timestamp,
                "hs_meeting_title": activity.subject,
                "hs_meeting_body": activity.description,
                "hs_meeting_start_time": timestamp,
                "hs_meeting_outcome": "COMPLETED" if done else "SCHEDULED",
            }
        if activity.type == ActivityType.EMAIL:
            return {
                "hs_timestamp": timestamp,
                "hs_email_subject": activity.subject,
                "hs_email_text": activity.description,
                "hs_email_direction": "EMAIL",
            }
        if activity.type == ActivityType.TASK:
            return {
                "hs_timestamp": timestamp,
                "hs_task_subject": activity.subject,
                "hs_task_body": activity.description,
                "hs_task_status": "COMPLETED" if done else "NOT_STARTED",
            }
        body = activity.subject if not activity.description else f"{activity.subject}\n\n{activity.description}"
        return {"hs_timestamp": timestamp, "hs_note_body": body}

    async def create_note(self, note: Note) -> Note:
        to_contact, to_deal = NOTE_ASSOCIATIONS
        body = {
            "properties": {
                "hs_note_body": note.content,
                "hs_timestamp": _epoch_ms(note.created_at or datetime.now(timezone.utc)),
            },
            "associations": _associations([(note.contact_id, to_contact), (note.deal_id, to_deal)]),
        }
        data = await self._transport.post("/crm/v3/objects/notes", json=body)
        crm_id = self._parse(HubSpotObject, data).id
        logger.info("hubspot.note_created", crm_id=crm_id)
        return note.model_copy(update={"id": crm_id})

    # ── Webhooks ───────────────────────────────────────────────────────────

    async def setup_webhooks(self, config: WebhookConfig) -> list[str]:
        logger.warning(
            "hubspot.webhooks_manual_setup_required",
            url=config.url,
            detail="webhook subscriptions are configured in the HubSpot app settings",
        )
        return []

    def handle_webhook(self, payload: dict[str, Any]) -> CRMWebhookEvent:
        return parse_hubspot_webhook(payload)
