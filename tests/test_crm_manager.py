"""Unit tests for CRMSyncManager and InMemorySyncStore."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import httpx
import pytest

from src.crm_sync.crm.errors import CRMRequestError, RecordNotLinkedError, WebhookParseError
from src.crm_sync.crm.manager import CRMSyncManager, InMemorySyncStore, SyncManagerConfig
from src.crm_sync.crm.schemas import (
    Contact,
    Credentials,
    CRMObjectType,
    CRMProvider,
    Deal,
    SyncDirection,
    SyncState,
    SyncStatus,
    SyncType,
)
from src.crm_sync.crm.sync import SyncEngine
from src.crm_sync.crm.utils import RateLimiter, RetryOptions

T0 = datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)
ORG = "org-1"


async def _no_sleep(delay: float) -> None:
    return None


@pytest.fixture
def store() -> InMemorySyncStore:
    return InMemorySyncStore()


@pytest.fixture
def manager(fake_client, store) -> CRMSyncManager:
    config = SyncManagerConfig(retry=RetryOptions(initial_delay=0.0))
    return CRMSyncManager(
        ORG,
        "hubspot",
        Credentials(access_token="token"),
        store,
        config,
        client=fake_client,
        engine=SyncEngine(fake_client, sleep=_no_sleep),
    )


async def _seed_local(store: InMemorySyncStore, *records) -> None:
    for record in records:
        object_type = CRMObjectType.DEAL if isinstance(record, Deal) else CRMObjectType.CONTACT
        await store.save_records(ORG, object_type, [record])


# ── Runs ───────────────────────────────────────────────────────────────────


class TestSyncRuns:
    async def test_full_sync_links_contacts_then_deals(self, manager, store, fake_client):
        """Deals are synced after contacts so their contact_id resolves to the CRM id."""
        await _seed_local(
            store,
            Contact(id="c1", email="ada@example.com", updated_at=T0),
            Contact(id="c2", email="grace@example.com", updated_at=T0),
            Deal(id="d1", title="Renewal", contact_id="c1", updated_at=T0),
        )

        result = await manager.full_sync()

        assert result.success
        assert result.records_processed == 3
        contact_states = await store.load_sync_states(ORG, CRMProvider.HUBSPOT, CRMObjectType.CONTACT)
        deal_states = await store.load_sync_states(ORG, CRMProvider.HUBSPOT, CRMObjectType.DEAL)
        crm_id_for_c1 = next(s.crm_record_id for s in contact_states if s.local_id == "c1")
        assert len(contact_states) == 2
        (deal_state,) = deal_states
        remote_deal = fake_client.remote[CRMObjectType.DEAL][deal_state.crm_record_id]
        assert remote_deal.contact_id == crm_id_for_c1

    async def test_run_is_logged_and_advances_last_sync(self, manager, store):
        await _seed_local(store, Contact(id="c1", updated_at=T0))

        await manager.full_sync()

        (entry,) = await manager.get_sync_history()
        assert entry.sync_type == SyncType.FULL
        assert entry.status == SyncStatus.COMPLETED
        assert entry.records_processed == 1
        assert entry.records_success == 1
        assert entry.completed_at is not None
        assert await store.get_last_sync_at(ORG, CRMProvider.HUBSPOT) == entry.started_at

    async def test_delta_sync_uses_last_sync_cutoff(self, manager, store, fake_client):
        await _seed_local(store, Contact(id="c1", updated_at=T0))
        await manager.full_sync()
        writes = len(fake_client.write_calls)

        await _seed_local(store, Contact(id="c2", updated_at=datetime.now(timezone.utc) + timedelta(minutes=1)))
        result = await manager.delta_sync()

        assert len(fake_client.write_calls) == writes + 1
        assert result.records_processed == 1
        history = await manager.get_sync_history()
        assert [e.sync_type for e in history] == [SyncType.DELTA, SyncType.FULL]

    async def test_failed_run_keeps_previous_cutoff(self, manager, store, fake_client):
        await _seed_local(store, Contact(id="c1", updated_at=T0))
        fake_client.failures["create"] = [CRMRequestError("rejected", status_code=400)]

        result = await manager.full_sync()

        assert not result.success
        (entry,) = await manager.get_sync_history()
        assert entry.status == SyncStatus.FAILED
        assert entry.errors[0].status_code == 400
        assert await store.get_last_sync_at(ORG, CRMProvider.HUBSPOT) is None

    async def test_store_failure_is_logged_and_raised(self, fake_client):
        class BrokenStore(InMemorySyncStore):
            async def load_records(self, organization_id, object_type, since=None):
                raise RuntimeError("database unavailable")

        broken = BrokenStore()
        manager = CRMSyncManager(ORG, CRMProvider.HUBSPOT, Credentials(), broken, client=fake_client)

        with pytest.raises(RuntimeError):
            await manager.full_sync()

        (entry,) = await broken.list_sync_logs(ORG, CRMProvider.HUBSPOT)
        assert entry.status == SyncStatus.FAILED
        assert entry.errors[0].error_type == "RuntimeError"

    async def test_deals_can_be_disabled(self, fake_client, store):
        config = SyncManagerConfig(sync_deals=False, direction=SyncDirection.TO_CRM)
        manager = CRMSyncManager(ORG, "hubspot", Credentials(), store, config, client=fake_client)
        await _seed_local(store, Deal(id="d1", title="Skipped", updated_at=T0))

        result = await manager.full_sync()

        assert result.records_processed == 0
        assert fake_client.calls == []


# ── Single record ──────────────────────────────────────────────────────────


class TestSyncRecord:
    async def test_push_creates_then_updates(self, manager, store, fake_client):
        await _seed_local(store, Contact(id="c1", email="ada@example.com", updated_at=T0))

        created = await manager.sync_record("c1")
        await manager.sync_record("c1")

        assert fake_client.write_calls == [("create", "contact"), ("update", "contact")]
        (state,) = await store.load_sync_states(ORG, CRMProvider.HUBSPOT, CRMObjectType.CONTACT)
        assert state.crm_record_id == created.crm_id
        assert state.sync_direction == SyncDirection.TO_CRM

    async def test_pull_overwrites_local_copy(self, manager, store, fake_client):
        fake_client.seed(CRMObjectType.CONTACT, Contact(crm_id="crm-9", email="crm@example.com", updated_at=T0))
        await store.save_sync_states(
            ORG, CRMProvider.HUBSPOT, [SyncState(local_id="c1", crm_record_id="crm-9", last_synced_at=T0)]
        )

        pulled = await manager.sync_record("c1", SyncDirection.FROM_CRM)

        assert pulled.id == "c1"
        stored = await store.get_record(ORG, CRMObjectType.CONTACT, "c1")
        assert stored.email == "crm@example.com"

    async def test_pull_requires_link(self, manager):
        with pytest.raises(RecordNotLinkedError):
            await manager.sync_record("unknown", SyncDirection.FROM_CRM)

    async def test_push_requires_local_record(self, manager):
        with pytest.raises(RecordNotLinkedError):
            await manager.sync_record("missing")

    async def test_bidirectional_rejected(self, manager):
        with pytest.raises(ValueError):
            await manager.sync_record("c1", SyncDirection.BIDIRECTIONAL)


# ── Webhooks ───────────────────────────────────────────────────────────────


class TestWebhooks:
    async def test_webhook_stamps_crm_updated_at(self, manager, store):
        await store.save_sync_states(
            ORG, CRMProvider.HUBSPOT, [SyncState(local_id="c1", crm_record_id="crm-9", last_synced_at=T0)]
        )
        changed_at = T0 + timedelta(hours=2)

        event = await manager.handle_webhook({"id": "evt-1", "object_id": "crm-9", "timestamp": changed_at})
        await manager.handle_webhook({"id": "evt-0", "object_id": "crm-9", "timestamp": T0})

        (state,) = await store.load_sync_states(ORG, CRMProvider.HUBSPOT, CRMObjectType.CONTACT)
        assert event.object_id == "crm-9"
        assert state.crm_updated_at == changed_at
        webhook_logs = [e for e in await manager.get_sync_history() if e.sync_type == SyncType.WEBHOOK]
        assert len(webhook_logs) == 2
        assert all(e.records_success == 1 for e in webhook_logs)

    async def test_unlinked_webhook_is_logged_without_state(self, manager, store):
        await manager.handle_webhook({"id": "evt-2", "object_id": "crm-unknown", "timestamp": T0})

        assert await store.load_sync_states(ORG, CRMProvider.HUBSPOT, CRMObjectType.CONTACT) == []
        (entry,) = await manager.get_sync_history()
        assert entry.records_processed == 0

    async def test_batch_handles_each_event(self, manager):
        events = await manager.handle_webhook_batch(
            [
                {"id": "a", "object_id": "crm-1", "timestamp": T0},
                {"id": "b", "object_id": "crm-2", "timestamp": T0},
            ]
        )
        assert [e.id for e in events] == ["a", "b"]

    async def test_malformed_provider_webhook_rejected(self, store, settings):
        """A real provider client rejects a payload missing required fields; nothing is logged."""
        async with CRMSyncManager(ORG, "hubspot", Credentials(access_token="t"), store, settings=settings) as manager:
            with pytest.raises(WebhookParseError):
                await manager.handle_webhook({"subscriptionType": "contact.creation"})
        assert store.logs == {}


# ── Status / credentials ───────────────────────────────────────────────────


class TestConnection:
    async def test_connection_status(self, manager, fake_client):
        fake_client.seed(CRMObjectType.CONTACT, Contact(crm_id="crm-1"))
        status = await manager.get_connection_status()
        assert status.connected
        assert status.record_count == 1

    async def test_refreshed_credentials_are_persisted(self, store, settings, mock_http):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/oauth/v1/token":
                return httpx.Response(200, json={"access_token": "fresh", "refresh_token": "r2", "expires_in": 1800})
            return httpx.Response(200, json={"total": 0, "results": []})

        expired = Credentials(
            access_token="stale",
            refresh_token="r1",
            expires_at=datetime.now(timezone.utc) - timedelta(minutes=5),
        )
        async with CRMSyncManager(
            ORG,
            "hubspot",
            expired,
            store,
            settings=settings,
            http_client=mock_http(handler),
            rate_limiter=RateLimiter(10_000),
        ) as manager:
            status = await manager.get_connection_status()

        assert status.connected
        persisted = store.credentials[(ORG, CRMProvider.HUBSPOT)]
        assert persisted.access_token == "fresh"
        assert persisted.refresh_token == "r2"
