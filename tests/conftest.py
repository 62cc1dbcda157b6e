"""Shared fixtures for CRM sync tests.

Provides:
- settings: Settings instance with fast retry defaults
- mock_http: Builds an httpx.AsyncClient backed by httpx.MockTransport
- FakeCRMClient / fake_client: In-memory CRMClient that records every call
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

import httpx
import pytest

from src.crm_sync.config import Settings
from src.crm_sync.crm.client import CRMClient
from src.crm_sync.crm.errors import CRMRequestError
from src.crm_sync.crm.schemas import (
    Activity,
    Contact,
    Credentials,
    CRMObjectType,
    CRMProvider,
    CRMRecord,
    CRMWebhookEvent,
    Deal,
    Note,
    QueryOptions,
    RecordPage,
    WebhookAction,
    WebhookConfig,
)

T0 = datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)

Handler = Callable[[httpx.Request], httpx.Response]


@pytest.fixture
def settings() -> Settings:
    return Settings(
        CRM_RETRY_INITIAL_DELAY=0.0,
        SALESFORCE_CLIENT_ID="sf-client",
        SALESFORCE_CLIENT_SECRET="sf-secret",
        HUBSPOT_CLIENT_ID="hs-client",
        HUBSPOT_CLIENT_SECRET="hs-secret",
    )


@pytest.fixture
def mock_http() -> Callable[[Handler], httpx.AsyncClient]:
    """Factory: wrap a request handler in an httpx client (no network)."""

    def _build(handler: Handler) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(handler))

    return _build


# ── Fake client ──────────────────────────────────────────────────────────────


class _NullTransport:
    async def aclose(self) -> None:
        return None


class FakeCRMClient(CRMClient):
    """In-memory provider used to exercise the sync engine and manager.

    ``remote`` holds the CRM-side records by object type and crm id.
    ``remote_now`` is the timestamp the fake CRM stamps on every write.
    ``failures`` maps an operation name (create/update/get/list) to a list
    of exceptions raised, in order, by the next calls of that operation.
    """

    provider = CRMProvider.HUBSPOT
    default_batch_size = 2

    def __init__(self, settings: Settings | None = None) -> None:
        super().__init__(Credentials(access_token="token"), settings=settings or Settings())
        self._transport = _NullTransport()
        self.remote: dict[CRMObjectType, dict[str, CRMRecord]] = {
            CRMObjectType.CONTACT: {},
            CRMObjectType.DEAL: {},
        }
        self.remote_now = T0
        self.calls: list[tuple[str, str]] = []
        self.failures: dict[str, list[Exception]] = {}
        self._sequence = 0

    # ── Test helpers ──

    def seed(self, object_type: CRMObjectType, record: CRMRecord) -> CRMRecord:
        stored = record.model_copy(update={"id": None, "crm_provider": self.provider})
        self.remote[object_type][stored.crm_id] = stored
        return stored

    @property
    def write_calls(self) -> list[tuple[str, str]]:
        return [c for c in self.calls if c[0] in ("create", "update", "delete")]

    def _record_call(self, operation: str, object_type: CRMObjectType) -> None:
        self.calls.append((operation, object_type.value))
        pending = self.failures.get(operation)
        if pending:
            raise pending.pop(0)

    def _store(self, object_type: CRMObjectType, crm_id: str, record: CRMRecord) -> CRMRecord:
        stored = record.model_copy(
            update={
                "id": None,
                "crm_id": crm_id,
                "crm_provider": self.provider,
                "updated_at": self.remote_now,
            }
        )
        self.remote[object_type][crm_id] = stored
        return stored

    # ── CRMClient ──

    async def authenticate(self) -> Credentials:
        return self.credentials

    async def refresh_token(self) -> Credentials:
        return self.credentials

    async def _probe_connection(self) -> int | None:
        return len(self.remote[CRMObjectType.CONTACT])

    async def list_records(self, object_type: CRMObjectType, options: QueryOptions | None = None) -> RecordPage[Any]:
        self._record_call("list", object_type)
        options = options or QueryOptions()
        records = sorted(self.remote[object_type].values(), key=lambda r: r.crm_id)
        if options.modified_since is not None:
            records = [r for r in records if r.updated_at and r.updated_at > options.modified_since]
        start = int(options.cursor or 0)
        page = records[start : start + options.limit]
        next_start = start + len(page)
        return RecordPage(records=page, next_cursor=str(next_start) if next_start < len(records) else None)

    async def get_record(self, object_type: CRMObjectType, record_id: str) -> CRMRecord:
        self._record_call("get", object_type)
        record = self.remote[object_type].get(record_id)
        if record is None:
            raise CRMRequestError("not found", status_code=404, provider=self.provider.value)
        return record

    async def create_record(self, object_type: CRMObjectType, record: CRMRecord) -> CRMRecord:
        self._record_call("create", object_type)
        self._sequence += 1
        return self._store(object_type, f"crm-{self._sequence}", record)

    async def update_record(self, object_type: CRMObjectType, record_id: str, record: CRMRecord) -> CRMRecord:
        self._record_call("update", object_type)
        if record_id not in self.remote[object_type]:
            raise CRMRequestError("not found", status_code=404, provider=self.provider.value)
        return self._store(object_type, record_id, record)

    async def delete_record(self, object_type: CRMObjectType, record_id: str) -> None:
        self._record_call("delete", object_type)
        self.remote[object_type].pop(record_id, None)

    async def list_contacts(self, options: QueryOptions | None = None) -> RecordPage[Contact]:
        return await self.list_records(CRMObjectType.CONTACT, options)

    async def get_contact(self, contact_id: str) -> Contact:
        return await self.get_record(CRMObjectType.CONTACT, contact_id)

    async def create_contact(self, contact: Contact) -> Contact:
        return await self.create_record(CRMObjectType.CONTACT, contact)

    async def update_contact(self, contact_id: str, contact: Contact) -> Contact:
        return await self.update_record(CRMObjectType.CONTACT, contact_id, contact)

    async def delete_contact(self, contact_id: str) -> None:
        await self.delete_record(CRMObjectType.CONTACT, contact_id)

    async def search_contacts(self, query: str) -> list[Contact]:
        return [c for c in self.remote[CRMObjectType.CONTACT].values() if query in (c.email or "")]

    async def list_deals(self, options: QueryOptions | None = None) -> RecordPage[Deal]:
        return await self.list_records(CRMObjectType.DEAL, options)

    async def get_deal(self, deal_id: str) -> Deal:
        return await self.get_record(CRMObjectType.DEAL, deal_id)

    async def create_deal(self, deal: Deal) -> Deal:
        return await self.create_record(CRMObjectType.DEAL, deal)

    async def update_deal(self, deal_id: str, deal: Deal) -> Deal:
        return await self.update_record(CRMObjectType.DEAL, deal_id, deal)

    async def delete_deal(self, deal_id: str) -> None:
        await self.delete_record(CRMObjectType.DEAL, deal_id)

    async def create_activity(self, activity: Activity) -> Activity:
        return activity.model_copy(update={"id": "activity-1"})

    async def create_note(self, note: Note) -> Note:
        return note.model_copy(update={"id": "note-1"})

    async def setup_webhooks(self, config: WebhookConfig) -> list[str]:
        return []

    def handle_webhook(self, payload: dict[str, Any]) -> CRMWebhookEvent:
        return CRMWebhookEvent(
            id=str(payload["id"]),
            type="contact.propertyChange",
            provider=self.provider,
            object_type=CRMObjectType(payload.get("object_type", "contact")),
            object_id=str(payload["object_id"]),
            action=WebhookAction.UPDATED,
            timestamp=payload["timestamp"],
        )


@pytest.fixture
def fake_client(settings: Settings) -> FakeCRMClient:
    return FakeCRMClient(settings)

