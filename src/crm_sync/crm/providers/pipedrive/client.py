"""Pipedrive API v1 client.

Authentication is a static API token sent as the ``api_token`` query
parameter. Lists page with ``start``/``limit`` sorted by ``update_time``;
Pipedrive has no server-side modified-since filter, so ``modified_since``
is applied client-side on ``update_time``.
"""

from __future__ import annotations

import functools
from typing import Any

import httpx
import structlog
from pydantic import BaseModel, Field

from src.crm_sync.config import Settings
from src.crm_sync.crm.client import CRMClient, CredentialsCallback
from src.crm_sync.crm.errors import AuthenticationError, CRMRequestError
from src.crm_sync.crm.mapping import map_to_crm
from src.crm_sync.crm.providers.pipedrive.auth import PipedriveAuth
from src.crm_sync.crm.providers.pipedrive.mapping import (
    contact_from_pipedrive,
    contact_from_search_item,
    deal_from_pipedrive,
    deal_mappings,
    person_mappings,
    person_payload,
)
from src.crm_sync.crm.providers.pipedrive.webhooks import parse_pipedrive_webhook
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
from src.crm_sync.crm.utils import RateLimiter, parse_datetime, to_int_id

logger = structlog.get_logger(__name__)

MAX_PAGE_SIZE = 500
SEARCH_LIMIT = 20
MIN_SEARCH_TERM_LENGTH = 2

_ACTIVITY_TYPES = {
    ActivityType.CALL: "call",
    ActivityType.MEETING: "meeting",
    ActivityType.EMAIL: "email",
    ActivityType.NOTE: "task",
    ActivityType.TASK: "task",
}


# ── Response DTOs ───────────────────────────────────────────────────────────


class _Pagination(BaseModel):
    more_items_in_collection: bool = False
    next_start: int | None = None


class _AdditionalData(BaseModel):
    pagination: _Pagination | None = None


class PipedriveEnvelope(BaseModel):
    """Every v1 response wraps its payload as ``{"success", "data", "additional_data"}``."""

    success: bool = True
    data: Any = None
    additional_data: _AdditionalData | None = None

    @property
    def next_cursor(self) -> str | None:
        pagination = self.additional_data.pagination if self.additional_data else None
        if pagination and pagination.more_items_in_collection and pagination.next_start is not None:
            return str(pagination.next_start)
        return None


class PipedriveCreated(BaseModel):
    id: int | str


class _SearchItem(BaseModel):
    item: dict[str, Any]


class _SearchData(BaseModel):
    items: list[_SearchItem] = Field(default_factory=list)


class PipedriveClient(CRMClient):
    """Pipedrive implementation of CRMClient.

    Args:
        credentials: ``api_key`` holds the API token; ``instance_url`` may
            override the API base URL (company domain).
        http_client: Injected httpx client.
        rate_limiter: Overrides the per-client limiter (20 req/s default).
        tags_key: Custom-field hash key holding comma-separated tags.
        custom_fields_key: Custom-field hash key holding JSON custom fields.
    """

    provider = CRMProvider.PIPEDRIVE

    def __init__(
        self,
        credentials: Credentials,
        *,
        http_client: httpx.AsyncClient | None = None,
        rate_limiter: RateLimiter | None = None,
        settings: Settings | None = None,
        on_credentials_refreshed: CredentialsCallback | None = None,
        tags_key: str | None = None,
        custom_fields_key: str | None = None,
    ) -> None:
        super().__init__(credentials, settings=settings, on_credentials_refreshed=on_credentials_refreshed)
        s = self.settings
        self.default_batch_size = s.PIPEDRIVE_BATCH_SIZE
        self._person_mappings = person_mappings(tags_key, custom_fields_key)
        self._deal_mappings = deal_mappings(custom_fields_key)
        self._transport = CRMTransport(
            provider=self.provider.value,
            base_url=credentials.instance_url or s.PIPEDRIVE_BASE_URL,
            rate_limiter=rate_limiter or RateLimiter(s.PIPEDRIVE_REQUESTS_PER_SECOND, name="pipedrive"),
            auth_params=self._auth_params,
            http_client=http_client,
            timeout=s.CRM_HTTP_TIMEOUT,
        )
        self._auth = PipedriveAuth(self._transport)

    @property
    def auth(self) -> PipedriveAuth:
        return self._auth

    # ── Authentication ─────────────────────────────────────────────────────

    def _auth_params(self) -> dict[str, str]:
        if not self.credentials.api_key:
            raise AuthenticationError("missing Pipedrive API token", provider=self.provider.value)
        return {"api_token": self.credentials.api_key}

    async def authenticate(self) -> Credentials:
        await self._auth.validate_token()
        return self.credentials

    async def refresh_token(self) -> Credentials:
        # API tokens do not expire; re-validating is the only meaningful refresh.
        await self._auth.validate_token()
        return self.credentials

    async def _probe_connection(self) -> int | None:
        await self._auth.validate_token()
        data = await self._transport.get("/persons", params={"limit": 1})
        envelope = self._parse(PipedriveEnvelope, data)
        # The v1 list endpoints do not report a total; count is only known for tiny accounts.
        return None if envelope.next_cursor else len(envelope.data or [])

    # ── Generic helpers ────────────────────────────────────────────────────

    async def _list(self, path: str, options: QueryOptions | None, converter) -> RecordPage:
        options = options or QueryOptions(limit=self.default_batch_size)
        params: dict[str, Any] = {
            "start": int(options.cursor) if options.cursor else 0,
            "limit": min(options.limit, MAX_PAGE_SIZE),
            "sort": "update_time ASC",
        }
        params.update(options.filters)
        data = await self._transport.get(path, params=params)
        envelope = self._parse(PipedriveEnvelope, data)
        records = [self._convert(converter, row) for row in envelope.data or []]
        since = parse_datetime(options.modified_since)
        if since is not None:
            records = [r for r in records if r.updated_at is not None and r.updated_at > since]
        return RecordPage(records=records, next_cursor=envelope.next_cursor)

    async def _get(self, path: str, record_id: str, converter):
        data = await self._transport.get(f"{path}/{record_id}")
        envelope = self._parse(PipedriveEnvelope, data)
        if not envelope.data:
            raise CRMRequestError(
                f"pipedrive {path}/{record_id} not found",
                status_code=404,
                provider=self.provider.value,
            )
        return self._convert(converter, envelope.data)

    async def _create(self, path: str, payload: dict[str, Any]) -> str:
        data = await self._transport.post(path, json=payload)
        envelope = self._parse(PipedriveEnvelope, data)
        return str(self._parse(PipedriveCreated, envelope.data).id)

    async def _update(self, path: str, record_id: str, payload: dict[str, Any]) -> None:
        if payload:
            await self._transport.put(f"{path}/{record_id}", json=payload)

    def _person_converter(self):
        return functools.partial(contact_from_pipedrive, mappings=self._person_mappings)

    def _deal_converter(self):
        return functools.partial(deal_from_pipedrive, mappings=self._deal_mappings)

    # ── Contacts ───────────────────────────────────────────────────────────

    async def list_contacts(self, options: QueryOptions | None = None) -> RecordPage[Contact]:
        return await self._list("/persons", options, self._person_converter())

    async def get_contact(self, contact_id: str) -> Contact:
        return await self._get("/persons", contact_id, self._person_converter())

    async def create_contact(self, contact: Contact) -> Contact:
        crm_id = await self._create("/persons", person_payload(contact, self._person_mappings))
        logger.info("pipedrive.person_created", crm_id=crm_id)
        return await self._fetch_created(CRMObjectType.CONTACT, crm_id, contact)

    async def update_contact(self, contact_id: str, contact: Contact) -> Contact:
        await self._update("/persons", contact_id, person_payload(contact, self._person_mappings))
        logger.info("pipedrive.person_updated", crm_id=contact_id)
        return await self.get_contact(contact_id)

    async def delete_contact(self, contact_id: str) -> None:
        await self._transport.delete(f"/persons/{contact_id}")
        logger.info("pipedrive.person_deleted", crm_id=contact_id)

    async def search_contacts(self, query: str) -> list[Contact]:
        term = query.strip()
        if len(term) < MIN_SEARCH_TERM_LENGTH:
            return []
        data = await self._transport.get("/persons/search", params={"term": term, "limit": SEARCH_LIMIT})
        envelope = self._parse(PipedriveEnvelope, data)
        results = self._parse(_SearchData, envelope.data or {})
        return [self._convert(contact_from_search_item, hit.item) for hit in results.items]

    # ── Deals ──────────────────────────────────────────────────────────────

    async def list_deals(self, options: QueryOptions | None = None) -> RecordPage[Deal]:
        return await self._list("/deals", options, self._deal_converter())

    async def get_deal(self, deal_id: str) -> Deal:
        return await self._get("/deals", deal_id, self._deal_converter())

    async def create_deal(self, deal: Deal) -> Deal:
        crm_id = await self._create("/deals", map_to_crm(deal, self._deal_mappings))
        logger.info("pipedrive.deal_created", crm_id=crm_id)
        return await self._fetch_created(CRMObjectType.DEAL, crm_id, deal)

    async def update_deal(self, deal_id: str, deal: Deal) -> Deal:
        await self._update("/deals", deal_id, map_to_crm(deal, self._deal_mappings))
        logger.info("pipedrive.deal_updated", crm_id=deal_id)
        return await self.get_deal(deal_id)

    async def delete_deal(self, deal_id: str) -> None:
        await self._transport.delete(f"/deals/{deal_id}")
        logger.info("pipedrive.deal_deleted", crm_id=deal_id)

    # ── Activities / Notes ─────────────────────────────────────────────────

    async def create_activity(self, activity: Activity) -> Activity:
        payload = {
            "subject": activity.subject,
            "note": activity.description,
            "type": _ACTIVITY_TYPES[activity.type],
            "person_id": to_int_id(activity.contact_id),
            "deal_id": to_int_id(activity.deal_id),
            "due_date": activity.due_date.date().isoformat() if activity.due_date else None,
            "due_time": activity.due_date.strftime("%H:%M") if activity.due_date else None,
            "done": 1 if activity.completed else 0,
        }
        crm_id = await self._create("/activities", {k: v for k, v in payload.items() if v is not None})
        logger.info("pipedrive.activity_created", crm_id=crm_id, activity_type=activity.type.value)
        return activity.model_copy(update={"id": crm_id})

    async def create_note(self, note: Note) -> Note:
        payload = {
            "content": note.content,
            "person_id": to_int_id(note.contact_id),
            "deal_id": to_int_id(note.deal_id),
        }
        crm_id = await self._create("/notes", {k: v for k, v in payload.items() if v is not None})
        logger.info("pipedrive.note_created", crm_id=crm_id)
        return note.model_copy(update={"id": crm_id})

    # ── Webhooks ───────────────────────────────────────────────────────────

    async def setup_webhooks(self, config: WebhookConfig) -> list[str]:
        """Register one webhook per event action, covering all object types."""
        webhook_ids: list[str] = []
        for event in config.events:
            payload: dict[str, Any] = {
                "subscription_url": config.url,
                "event_action": event,
                "event_object": "*",
            }
            if config.secret:
                payload["secret"] = config.secret
            webhook_ids.append(await self._create("/webhooks", payload))
        logger.info("pipedrive.webhooks_registered", count=len(webhook_ids), url=config.url)
        return webhook_ids

    def handle_webhook(self, payload: dict[str, Any]) -> CRMWebhookEvent:
        return parse_pipedrive_webhook(payload)
