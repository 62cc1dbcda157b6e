"""Salesforce REST API (v59.0) client.

Contacts map to the ``Contact`` sObject, deals to ``Opportunity``,
activities to ``Task`` and notes to ``Note``. Reads go through SOQL so
relationship fields (``Account.Name``) come back in one call; search uses
SOSL. Paging is keyset-based: the cursor is the last row's
``LastModifiedDate|Id`` pair, so walks are not bounded by the 2000-row
OFFSET ceiling.
"""

from __future__ import annotations

import functools
import re
from datetime import date, datetime, timezone
from typing import Any

import httpx
import structlog
from pydantic import BaseModel, Field

from src.crm_sync.config import Settings
from src.crm_sync.crm.client import CRMClient, CredentialsCallback
from src.crm_sync.crm.errors import CRMRequestError, CRMResponseError
from src.crm_sync.crm.mapping import map_to_crm
from src.crm_sync.crm.providers.salesforce.auth import SalesforceAuth
from src.crm_sync.crm.providers.salesforce.mapping import (
    CONTACT_SELECT_FIELDS,
    OPPORTUNITY_SELECT_FIELDS,
    contact_from_salesforce,
    contact_mappings,
    deal_from_salesforce,
    opportunity_mappings,
    select_fields,
)
from src.crm_sync.crm.providers.salesforce.webhooks import parse_salesforce_webhook
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
from src.crm_sync.crm.utils import RateLimiter, parse_datetime

logger = structlog.get_logger(__name__)

API_VERSION = "v59.0"
SEARCH_LIMIT = 20
NOTE_TITLE_LENGTH = 80

_TASK_TYPES = {
    ActivityType.CALL: "Call",
    ActivityType.MEETING: "Meeting",
    ActivityType.EMAIL: "Email",
    ActivityType.NOTE: "Other",
    ActivityType.TASK: "Other",
}

_FIELD_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_.]*$")
_SOSL_RESERVED = re.compile(r"([?&|!{}\[\]()^~*:\\\"'+\-])")


# ── Response DTOs ───────────────────────────────────────────────────────────


class SalesforceQueryResponse(BaseModel):
    total_size: int = Field(default=0, alias="totalSize")
    done: bool = True
    records: list[dict[str, Any]] = Field(default_factory=list)


class SalesforceCreateResponse(BaseModel):
    id: str
    success: bool = True
    errors: list[Any] = Field(default_factory=list)


class SalesforceSearchResponse(BaseModel):
    search_records: list[dict[str, Any]] = Field(default_factory=list, alias="searchRecords")


# ── SOQL helpers ────────────────────────────────────────────────────────────


def soql_literal(value: Any) -> str:
    """Render a Python value as a SOQL literal."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, datetime):
        return soql_datetime(value)
    if isinstance(value, date):
        return value.isoformat()
    escaped = str(value).replace("\\", "\\\\").replace("'", "\\'")
    return f"'{escaped}'"


def soql_datetime(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def sosl_escape(term: str) -> str:
    return _SOSL_RESERVED.sub(r"\\\1", term)


def encode_cursor(last_modified: datetime, record_id: str) -> str:
    return f"{soql_datetime(last_modified)}|{record_id}"


def decode_cursor(cursor: str) -> tuple[datetime, str]:
    """Split a ``LastModifiedDate|Id`` paging cursor.

    Raises:
        ValueError: Cursor was not produced by encode_cursor.
    """
    stamp, sep, record_id = cursor.partition("|")
    parsed = parse_datetime(stamp) if sep and record_id else None
    if parsed is None:
        raise ValueError(f"invalid Salesforce paging cursor: {cursor!r}")
    return parsed, record_id


def build_soql(
    sobject: str,
    fields: str,
    options: QueryOptions,
    *,
    after: tuple[datetime, str] | None = None,
) -> str:
    """SELECT ... FROM sobject with delta filter, equality filters, stable ordering and keyset paging."""
    conditions: list[str] = []
    if options.modified_since is not None:
        conditions.append(f"LastModifiedDate > {soql_datetime(options.modified_since)}")
    for name, value in options.filters.items():
        if not _FIELD_NAME.match(name):
            raise ValueError(f"invalid SOQL field name: {name!r}")
        conditions.append(f"{name} = {soql_literal(value)}")
    if after is not None:
        stamp, last_id = soql_datetime(after[0]), soql_literal(after[1])
        conditions.append(f"(LastModifiedDate > {stamp} OR (LastModifiedDate = {stamp} AND Id > {last_id}))")

    soql = f"SELECT {fields} FROM {sobject}"
    if conditions:
        soql += " WHERE " + " AND ".join(conditions)
    soql += f" ORDER BY LastModifiedDate ASC, Id ASC LIMIT {options.limit}"
    return soql


# ── Client ──────────────────────────────────────────────────────────────────


class SalesforceClient(CRMClient):
    """Salesforce implementation of CRMClient.

    Args:
        credentials: OAuth credentials with ``instance_url``.
        http_client: Injected httpx client shared by API and auth calls.
        rate_limiter: Overrides the per-client limiter (100 req/s default).
        sandbox: Authenticate against test.salesforce.com.
        tags_field: Custom Contact field holding comma-separated tags.
        custom_fields_field: Custom field holding JSON custom fields.
    """

    provider = CRMProvider.SALESFORCE

    def __init__(
        self,
        credentials: Credentials,
        *,
        http_client: httpx.AsyncClient | None = None,
        rate_limiter: RateLimiter | None = None,
        settings: Settings | None = None,
        on_credentials_refreshed: CredentialsCallback | None = None,
        sandbox: bool = False,
        tags_field: str | None = None,
        custom_fields_field: str | None = None,
    ) -> None:
        super().__init__(credentials, settings=settings, on_credentials_refreshed=on_credentials_refreshed)
        s = self.settings
        self.default_batch_size = s.SALESFORCE_BATCH_SIZE
        self._auth = SalesforceAuth(
            credentials.client_id or s.SALESFORCE_CLIENT_ID,
            credentials.client_secret or s.SALESFORCE_CLIENT_SECRET,
            s.SALESFORCE_REDIRECT_URI,
            login_url=s.SALESFORCE_LOGIN_URL,
            sandbox=sandbox,
            http_client=http_client,
            timeout=s.CRM_HTTP_TIMEOUT,
        )
        self._contact_mappings = contact_mappings(tags_field, custom_fields_field)
        self._opportunity_mappings = opportunity_mappings(custom_fields_field)
        self._contact_fields = select_fields(CONTACT_SELECT_FIELDS, self._contact_mappings)
        self._opportunity_fields = select_fields(OPPORTUNITY_SELECT_FIELDS, self._opportunity_mappings)
        self._transport = CRMTransport(
            provider=self.provider.value,
            base_url=credentials.instance_url or "",
            rate_limiter=rate_limiter or RateLimiter(s.SALESFORCE_REQUESTS_PER_SECOND, name="salesforce"),
            auth_headers=self._auth_headers,
            refresh=self.refresh_token,
            is_expired=self._needs_refresh,
            http_client=http_client,
            timeout=s.CRM_HTTP_TIMEOUT,
        )

    @property
    def auth(self) -> SalesforceAuth:
        return self._auth

    @property
    def _data_path(self) -> str:
        return f"/services/data/{API_VERSION}"

    # ── Authentication ─────────────────────────────────────────────────────

    def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.credentials.access_token}"}

    def _needs_refresh(self) -> bool:
        creds = self.credentials
        return (
            not creds.access_token
            or not creds.instance_url
            or creds.is_expired(self.settings.CRM_TOKEN_REFRESH_SKEW_SECONDS)
        )

    async def authenticate(self) -> Credentials:
        if self._needs_refresh():
            await self.refresh_token()
        await self._transport.get("/services/data")
        logger.info("salesforce.authenticated", instance_url=self.credentials.instance_url)
        return self.credentials

    async def refresh_token(self) -> Credentials:
        refreshed = await self._auth.refresh_access_token(self.credentials.refresh_token)
        if refreshed.instance_url is None:
            refreshed = refreshed.model_copy(update={"instance_url": self.credentials.instance_url})
        await self._store_credentials(refreshed)
        self._transport.base_url = refreshed.instance_url or ""
        logger.info("salesforce.token_refreshed", instance_url=refreshed.instance_url)
        return refreshed

    async def _probe_connection(self) -> int | None:
        await self._transport.get("/services/data")
        data = await self._transport.get(f"{self._data_path}/query", params={"q": "SELECT COUNT() FROM Contact"})
        return self._parse(SalesforceQueryResponse, data).total_size

    # ── Query helpers ──────────────────────────────────────────────────────

    async def _query(self, soql: str) -> SalesforceQueryResponse:
        data = await self._transport.get(f"{self._data_path}/query", params={"q": soql})
        return self._parse(SalesforceQueryResponse, data)

    async def _list(self, sobject: str, fields: str, options: QueryOptions | None, converter) -> RecordPage:
        options = options or QueryOptions(limit=self.default_batch_size)
        after = decode_cursor(options.cursor) if options.cursor else None
        response = await self._query(build_soql(sobject, fields, options, after=after))
        records = [self._convert(converter, row) for row in response.records]
        next_cursor = None
        if records and len(records) == options.limit:
            last = records[-1]
            if last.updated_at is None or not last.crm_id:
                raise CRMResponseError(
                    f"salesforce {sobject} row lacks Id or LastModifiedDate for paging",
                    provider=self.provider.value,
                )
            next_cursor = encode_cursor(last.updated_at, last.crm_id)
        return RecordPage(records=records, next_cursor=next_cursor, total=response.total_size)

    async def _get(self, sobject: str, fields: str, record_id: str, converter):
        soql = f"SELECT {fields} FROM {sobject} WHERE Id = {soql_literal(record_id)} LIMIT 1"
        response = await self._query(soql)
        if not response.records:
            raise CRMRequestError(
                f"salesforce {sobject} {record_id} not found",
                status_code=404,
                provider=self.provider.value,
            )
        return self._convert(converter, response.records[0])

    async def _create(self, sobject: str, payload: dict[str, Any]) -> str:
        data = await self._transport.post(f"{self._data_path}/sobjects/{sobject}", json=payload)
        return self._parse(SalesforceCreateResponse, data).id

    async def _update(self, sobject: str, record_id: str, payload: dict[str, Any]) -> None:
        if payload:
            await self._transport.patch(f"{self._data_path}/sobjects/{sobject}/{record_id}", json=payload)

    async def _delete(self, sobject: str, record_id: str) -> None:
        await self._transport.delete(f"{self._data_path}/sobjects/{sobject}/{record_id}")

    def _contact_converter(self):
        return functools.partial(contact_from_salesforce, mappings=self._contact_mappings)

    def _deal_converter(self):
        return functools.partial(deal_from_salesforce, mappings=self._opportunity_mappings)

    # ── Contacts ───────────────────────────────────────────────────────────

    async def list_contacts(self, options: QueryOptions | None = None) -> RecordPage[Contact]:
        return await self._list("Contact", self._contact_fields, options, self._contact_converter())

    async def get_contact(self, contact_id: str) -> Contact:
        return await self._get("Contact", self._contact_fields, contact_id, self._contact_converter())

    async def create_contact(self, contact: Contact) -> Contact:
        crm_id = await self._create("Contact", map_to_crm(contact, self._contact_mappings))
        logger.info("salesforce.contact_created", crm_id=crm_id)
        return await self._fetch_created(CRMObjectType.CONTACT, crm_id, contact)

    async def update_contact(self, contact_id: str, contact: Contact) -> Contact:
        await self._update("Contact", contact_id, map_to_crm(contact, self._contact_mappings))
        logger.info("salesforce.contact_updated", crm_id=contact_id)
        return await self.get_contact(contact_id)

    async def delete_contact(self, contact_id: str) -> None:
        await self._delete("Contact", contact_id)
        logger.info("salesforce.contact_deleted", crm_id=contact_id)

    async def search_contacts(self, query: str) -> list[Contact]:
        if not query.strip():
            return []
        sosl = (
            f"FIND {{{sosl_escape(query.strip())}}} IN ALL FIELDS "
            f"RETURNING Contact({self._contact_fields}) LIMIT {SEARCH_LIMIT}"
        )
        data = await self._transport.get(f"{self._data_path}/search", params={"q": sosl})
        response = self._parse(SalesforceSearchResponse, data)
        converter = self._contact_converter()
        return [self._convert(converter, row) for row in response.search_records]

    # ── Deals ──────────────────────────────────────────────────────────────

    async def list_deals(self, options: QueryOptions | None = None) -> RecordPage[Deal]:
        return await self._list("Opportunity", self._opportunity_fields, options, self._deal_converter())

    async def get_deal(self, deal_id: str) -> Deal:
        return await self._get("Opportunity", self._opportunity_fields, deal_id, self._deal_converter())

    async def create_deal(self, deal: Deal) -> Deal:
        crm_id = await self._create("Opportunity", map_to_crm(deal, self._opportunity_mappings))
        logger.info("salesforce.opportunity_created", crm_id=crm_id)
        return await self._fetch_created(CRMObjectType.DEAL, crm_id, deal)

    async def update_deal(self, deal_id: str, deal: Deal) -> Deal:
        await self._update("Opportunity", deal_id, map_to_crm(deal, self._opportunity_mappings))
        logger.info("salesforce.opportunity_updated", crm_id=deal_id)
        return await self.get_deal(deal_id)

    async def delete_deal(self, deal_id: str) -> None:
        await self._delete("Opportunity", deal_id)
        logger.info("salesforce.opportunity_deleted", crm_id=deal_id)

    # ── Activities / Notes ─────────────────────────────────────────────────

    async def create_activity(self, activity: Activity) -> Activity:
        task = {
            "Subject": activity.subject,
            "Description": activity.description,
            "WhoId": activity.contact_id,
            "WhatId": activity.deal_id,
            "ActivityDate": activity.due_date.date().isoformat() if activity.due_date else None,
            "Status": "Completed" if activity.completed else "Not Started",
            "Type": _TASK_TYPES[activity.type],
        }
        crm_id = await self._create("Task", {k: v for k, v in task.items() if v is not None})
        logger.info("salesforce.task_created", crm_id=crm_id, activity_type=activity.type.value)
        return activity.model_copy(update={"id": crm_id})

    async def create_note(self, note: Note) -> Note:
        first_line = note.content.strip().splitlines()[0] if note.content.strip() else "Note"
        payload = {
            "Title": first_line[:NOTE_TITLE_LENGTH],
            "Body": note.content,
            "ParentId": note.contact_id or note.deal_id,
        }
        crm_id = await self._create("Note", payload)
        logger.info("salesforce.note_created", crm_id=crm_id)
        return note.model_copy(update={"id": crm_id})

    # ── Webhooks ───────────────────────────────────────────────────────────

    async def setup_webhooks(self, config: WebhookConfig) -> list[str]:
        logger.warning(
            "salesforce.webhooks_manual_setup_required",
            url=config.url,
            detail="configure a PushTopic or Platform Event subscription in the org",
        )
        return []

    def handle_webhook(self, payload: dict[str, Any]) -> CRMWebhookEvent:
        return parse_salesforce_webhook(payload)

