"""CRM sync manager: per-organization orchestration on top of SyncEngine.

Loads local records and SyncStates from a caller-owned SyncStore, runs the
engine for contacts and then deals, persists the resulting states and pulled
records, and writes a SyncLogEntry for every run. Also owns single-record
sync, webhook intake and connection status for one organization+provider.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from datetime import datetime, timezone
from typing import Any, Protocol

import structlog
from pydantic import BaseModel, Field

from src.crm_sync.crm.client import CRMClient
from src.crm_sync.crm.errors import RecordNotLinkedError
from src.crm_sync.crm.factory import create_client, resolve_provider
from src.crm_sync.crm.schemas import (
    ConflictResolution,
    ConnectionStatus,
    Credentials,
    CRMObjectType,
    CRMProvider,
    CRMRecord,
    CRMWebhookEvent,
    SyncDirection,
    SyncError,
    SyncLogEntry,
    SyncOptions,
    SyncResult,
    SyncState,
    SyncStatus,
    SyncType,
)
from src.crm_sync.crm.sync import SyncEngine
from src.crm_sync.crm.utils import RetryOptions, retry_with_backoff

logger = structlog.get_logger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


# ── Persistence protocol ──────────────────────────────────────────────────────
# The product database is out of scope; callers adapt their storage to this.


class SyncStore(Protocol):
    """Persistence boundary for local records, sync states and sync logs."""

    async def load_records(
        self, organization_id: str, object_type: CRMObjectType, since: datetime | None = None
    ) -> list[CRMRecord]: ...

    async def get_record(
        self, organization_id: str, object_type: CRMObjectType, local_id: str
    ) -> CRMRecord | None: ...

    async def save_records(
        self, organization_id: str, object_type: CRMObjectType, records: Sequence[CRMRecord]
    ) -> None: ...

    async def load_sync_states(
        self, organization_id: str, provider: CRMProvider, object_type: CRMObjectType
    ) -> list[SyncState]: ...

    async def save_sync_states(
        self, organization_id: str, provider: CRMProvider, states: Sequence[SyncState]
    ) -> None: ...

    async def get_last_sync_at(self, organization_id: str, provider: CRMProvider) -> datetime | None: ...

    async def set_last_sync_at(self, organization_id: str, provider: CRMProvider, at: datetime) -> None: ...

    async def save_sync_log(self, entry: SyncLogEntry) -> None: ...

    async def list_sync_logs(
        self, organization_id: str, provider: CRMProvider, limit: int = 10
    ) -> list[SyncLogEntry]: ...

    async def save_credentials(
        self, organization_id: str, provider: CRMProvider, credentials: Credentials
    ) -> None: ...


class InMemorySyncStore:
    """Dict-backed SyncStore for tests, scripts and single-process use."""

    def __init__(self) -> None:
        self.records: dict[tuple[str, CRMObjectType], dict[str, CRMRecord]] = {}
        self.states: dict[tuple[str, CRMProvider, CRMObjectType], dict[str, SyncState]] = {}
        self.last_sync: dict[tuple[str, CRMProvider], datetime] = {}
        self.logs: dict[str, SyncLogEntry] = {}
        self.credentials: dict[tuple[str, CRMProvider], Credentials] = {}

    async def load_records(
        self, organization_id: str, object_type: CRMObjectType, since: datetime | None = None
    ) -> list[CRMRecord]:
        records = list(self.records.get((organization_id, object_type), {}).values())
        if since is None:
            return records
        return [r for r in records if r.updated_at is None or _aware(r.updated_at) >= _aware(since)]

    async def get_record(
        self, organization_id: str, object_type: CRMObjectType, local_id: str
    ) -> CRMRecord | None:
        return self.records.get((organization_id, object_type), {}).get(local_id)

    async def save_records(
        self, organization_id: str, object_type: CRMObjectType, records: Sequence[CRMRecord]
    ) -> None:
        bucket = self.records.setdefault((organization_id, object_type), {})
        for record in records:
            if record.id:
                bucket[record.id] = record

    async def load_sync_states(
        self, organization_id: str, provider: CRMProvider, object_type: CRMObjectType
    ) -> list[SyncState]:
        return list(self.states.get((organization_id, provider, object_type), {}).values())

    async def save_sync_states(
        self, organization_id: str, provider: CRMProvider, states: Sequence[SyncState]
    ) -> None:
        for state in states:
            bucket = self.states.setdefault((organization_id, provider, state.object_type), {})
            bucket[state.local_id] = state

    async def get_last_sync_at(self, organization_id: str, provider: CRMProvider) -> datetime | None:
        return self.last_sync.get((organization_id, provider))

    async def set_last_sync_at(self, organization_id: str, provider: CRMProvider, at: datetime) -> None:
        self.last_sync[(organization_id, provider)] = at

    async def save_sync_log(self, entry: SyncLogEntry) -> None:
        self.logs[entry.id] = entry

    async def list_sync_logs(
        self, organization_id: str, provider: CRMProvider, limit: int = 10
    ) -> list[SyncLogEntry]:
        entries = [e for e in self.logs.values() if e.organization_id == organization_id and e.provider == provider]
        entries.sort(key=lambda e: e.started_at, reverse=True)
        return entries[:limit]

    async def save_credentials(
        self, organization_id: str, provider: CRMProvider, credentials: Credentials
    ) -> None:
        self.credentials[(organization_id, provider)] = credentials


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


# ── Manager ──────────────────────────────────────────────────────────────────


class SyncManagerConfig(BaseModel):
    """Per-connection sync settings."""

    direction: SyncDirection = SyncDirection.BIDIRECTIONAL
    conflict_resolution: ConflictResolution = ConflictResolution.NEWEST_WINS
    batch_size: int | None = Field(default=None, ge=1, le=1000)
    sync_contacts: bool = True
    sync_deals: bool = True
    adopt_unmapped: bool = False
    retry: RetryOptions = Field(default_factory=RetryOptions)

    def options_for(self, object_type: CRMObjectType, *, since: datetime | None = None) -> SyncOptions:
        return SyncOptions(
            direction=self.direction,
            conflict_resolution=self.conflict_resolution,
            object_type=object_type,
            batch_size=self.batch_size,
            since=since,
            adopt_unmapped=self.adopt_unmapped,
            retry=self.retry,
        )


class CRMSyncManager:
    """Synchronizes one organization's records with one CRM connection.

    Args:
        organization_id: Tenant whose records are synced.
        provider: CRMProvider or its string value.
        credentials: Connection credentials; refreshed tokens are written
            back through ``store.save_credentials``.
        store: SyncStore implementation.
        config: Direction, conflict policy and which object types to sync.
        client: Pre-built client (tests); otherwise one is created via the
            factory and closed by ``aclose``.
        **client_kwargs: Forwarded to ``create_client``.
    """

    def __init__(
        self,
        organization_id: str,
        provider: CRMProvider | str,
        credentials: Credentials,
        store: SyncStore,
        config: SyncManagerConfig | None = None,
        *,
        client: CRMClient | None = None,
        engine: SyncEngine | None = None,
        **client_kwargs: Any,
    ) -> None:
        self.organization_id = organization_id
        self.provider = resolve_provider(provider)
        self.store = store
        self.config = config or SyncManagerConfig()
        self._owns_client = client is None
        self.client = client or create_client(
            self.provider,
            credentials,
            on_credentials_refreshed=self._persist_credentials,
            **client_kwargs,
        )
        self.engine = engine or SyncEngine(self.client, batch_size=self.config.batch_size)
        self._log = logger.bind(organization_id=organization_id, provider=self.provider.value)

    async def _persist_credentials(self, credentials: Credentials) -> None:
        await self.store.save_credentials(self.organization_id, self.provider, credentials)

    # ── Runs ────────────────────────────────────────────────────────────────

    async def full_sync(self, *, cancel_event: asyncio.Event | None = None) -> SyncResult:
        """Sync every enabled object type without a modification cutoff."""
        return await self._run(SyncType.FULL, since=None, cancel_event=cancel_event)

    async def delta_sync(self, *, cancel_event: asyncio.Event | None = None) -> SyncResult:
        """Sync records modified since the last successful run (epoch if none)."""
        since = await self.store.get_last_sync_at(self.organization_id, self.provider) or EPOCH
        return await self._run(SyncType.DELTA, since=since, cancel_event=cancel_event)

    async def _run(
        self,
        sync_type: SyncType,
        *,
        since: datetime | None,
        cancel_event: asyncio.Event | None,
    ) -> SyncResult:
        entry = SyncLogEntry(
            organization_id=self.organization_id,
            provider=self.provider,
            sync_type=sync_type,
            direction=self.config.direction,
        )
        await self.store.save_sync_log(entry)
        self._log.info("sync_manager.run_started", sync_type=sync_type.value, log_id=entry.id, since=since)

        try:
            results: list[SyncResult] = []
            contact_states: list[SyncState] | None = None
            if self.config.sync_contacts:
                result, contact_states = await self._sync_object_type(
                    CRMObjectType.CONTACT, since=since, cancel_event=cancel_event
                )
                results.append(result)
            if self.config.sync_deals and not any(r.aborted or r.cancelled for r in results):
                if contact_states is None:
                    contact_states = await self.store.load_sync_states(
                        self.organization_id, self.provider, CRMObjectType.CONTACT
                    )
                result, _ = await self._sync_object_type(
                    CRMObjectType.DEAL,
                    since=since,
                    cancel_event=cancel_event,
                    related_states=contact_states,
                )
                results.append(result)
        except Exception as exc:
            failed = entry.model_copy(
                update={
                    "status": SyncStatus.FAILED,
                    "errors": [SyncError(message=str(exc) or type(exc).__name__, error_type=type(exc).__name__)],
                    "completed_at": datetime.now(timezone.utc),
                }
            )
            await self.store.save_sync_log(failed)
            self._log.error("sync_manager.run_failed", log_id=entry.id, error=str(exc), exc_info=True)
            raise

        merged = SyncResult.merge(*results)
        completed = entry.model_copy(
            update={
                "status": SyncStatus.COMPLETED if merged.success else SyncStatus.FAILED,
                "records_processed": merged.records_processed,
                "records_success": merged.records_success,
                "records_failed": merged.records_failed,
                "errors": list(merged.errors),
                "completed_at": datetime.now(timezone.utc),
            }
        )
        await self.store.save_sync_log(completed)
        if merged.success and not merged.cancelled:
            await self.store.set_last_sync_at(self.organization_id, self.provider, entry.started_at)

        self._log.info(
            "sync_manager.run_completed",
            log_id=entry.id,
            status=completed.status.value,
            processed=merged.records_processed,
            failed=merged.records_failed,
            unmapped=merged.records_unmapped,
        )
        return merged

    async def _sync_object_type(
        self,
        object_type: CRMObjectType,
        *,
        since: datetime | None,
        cancel_event: asyncio.Event | None,
        related_states: list[SyncState] | None = None,
    ) -> tuple[SyncResult, list[SyncState]]:
        records = await self.store.load_records(self.organization_id, object_type, since=since)
        states = await self.store.load_sync_states(self.organization_id, self.provider, object_type)
        options = self.config.options_for(object_type, since=since)

        outcome = await self.engine.full_sync(
            records,
            states,
            options,
            related_states=related_states if object_type == CRMObjectType.DEAL else None,
            cancel_event=cancel_event,
        )
        await self.store.save_sync_states(self.organization_id, self.provider, outcome.sync_states)
        if outcome.pulled_records:
            await self.store.save_records(self.organization_id, object_type, outcome.pulled_records)
        return outcome.result, outcome.sync_states

    # ── Single record ───────────────────────────────────────────────────────

    async def sync_record(
        self,
        local_id: str,
        direction: SyncDirection = SyncDirection.TO_CRM,
        object_type: CRMObjectType = CRMObjectType.CONTACT,
    ) -> CRMRecord:
        """Push or pull one record immediately, ignoring conflict policy.

        Returns:
            The CRM copy (to_crm) or the updated local record (from_crm).

        Raises:
            RecordNotLinkedError: The local record does not exist, or a
                from_crm pull was requested for a record with no SyncState.
            ValueError: ``direction`` is bidirectional.
        """
        if direction == SyncDirection.BIDIRECTIONAL:
            raise ValueError("sync_record needs an explicit direction")

        states = await self.store.load_sync_states(self.organization_id, self.provider, object_type)
        state = next((s for s in states if s.local_id == local_id), None)
        retry = self.config.retry
        now = datetime.now(timezone.utc)

        if direction == SyncDirection.TO_CRM:
            record = await self.store.get_record(self.organization_id, object_type, local_id)
            if record is None:
                raise RecordNotLinkedError(f"local {object_type.value} {local_id} not found", provider=self.provider.value)
            record = await self._deal_contact_to_crm(record)
            if state is None:
                remote = await retry_with_backoff(
                    lambda: self.client.create_record(object_type, record), retry, operation_name="sync_record.create"
                )
            else:
                remote = await retry_with_backoff(
                    lambda: self.client.update_record(object_type, state.crm_record_id, record),
                    retry,
                    operation_name="sync_record.update",
                )
            local_updated_at = record.updated_at
            result = remote
        else:
            if state is None:
                raise RecordNotLinkedError(
                    f"{object_type.value} {local_id} is not linked to {self.provider.value}",
                    provider=self.provider.value,
                )
            remote = await retry_with_backoff(
                lambda: self.client.get_record(object_type, state.crm_record_id), retry, operation_name="sync_record.get"
            )
            result = remote.model_copy(update={"id": local_id})
            await self.store.save_records(self.organization_id, object_type, [result])
            local_updated_at = now

        remote_updated = remote.updated_at
        new_state = SyncState(
            local_id=local_id,
            crm_record_id=remote.crm_id or (state.crm_record_id if state else ""),
            object_type=object_type,
            last_synced_at=max(now, _aware(remote_updated)) if remote_updated else now,
            local_updated_at=local_updated_at,
            crm_updated_at=remote_updated,
            sync_direction=direction,
        )
        await self.store.save_sync_states(self.organization_id, self.provider, [new_state])
        self._log.info(
            "sync_manager.record_synced",
            local_id=local_id,
            crm_id=new_state.crm_record_id,
            direction=direction.value,
            object_type=object_type.value,
        )
        return result

    async def _deal_contact_to_crm(self, record: CRMRecord) -> CRMRecord:
        contact_id = getattr(record, "contact_id", None)
        if contact_id is None:
            return record
        contact_states = await self.store.load_sync_states(self.organization_id, self.provider, CRMObjectType.CONTACT)
        crm_ids = {s.local_id: s.crm_record_id for s in contact_states}
        return record.model_copy(update={"contact_id": crm_ids.get(contact_id)})

    # ── Webhooks ────────────────────────────────────────────────────────────

    async def handle_webhook(self, payload: dict[str, Any]) -> CRMWebhookEvent:
        """Normalize one webhook and stamp the linked SyncState.

        The event's timestamp becomes ``crm_updated_at`` so the next run sees
        the CRM side as changed. Unlinked objects are logged and ignored.
        """
        event = self.client.handle_webhook(payload)
        states = await self.store.load_sync_states(self.organization_id, self.provider, event.object_type)
        state = next((s for s in states if s.crm_record_id == event.object_id), None)

        entry = SyncLogEntry(
            organization_id=self.organization_id,
            provider=self.provider,
            sync_type=SyncType.WEBHOOK,
            direction=SyncDirection.FROM_CRM,
            status=SyncStatus.COMPLETED,
            completed_at=datetime.now(timezone.utc),
        )
        if state is None:
            self._log.info(
                "sync_manager.webhook_unlinked",
                event_id=event.id,
                object_type=event.object_type.value,
                crm_id=event.object_id,
            )
        else:
            current = state.crm_updated_at
            stamped = event.timestamp if current is None else max(_aware(current), _aware(event.timestamp))
            await self.store.save_sync_states(
                self.organization_id, self.provider, [state.model_copy(update={"crm_updated_at": stamped})]
            )
            entry = entry.model_copy(update={"records_processed": 1, "records_success": 1})
            self._log.info(
                "sync_manager.webhook_applied",
                event_id=event.id,
                action=event.action.value,
                local_id=state.local_id,
                crm_id=event.object_id,
            )
        await self.store.save_sync_log(entry)
        return event

    async def handle_webhook_batch(self, payloads: Sequence[dict[str, Any]]) -> list[CRMWebhookEvent]:
        """Handle a delivery that carries several events (HubSpot posts arrays)."""
        return [await self.handle_webhook(payload) for payload in payloads]

    # ── Status / history ────────────────────────────────────────────────────

    async def get_sync_history(self, limit: int = 10) -> list[SyncLogEntry]:
        return await self.store.list_sync_logs(self.organization_id, self.provider, limit)

    async def get_connection_status(self) -> ConnectionStatus:
        return await self.client.validate_connection()

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def __aenter__(self) -> CRMSyncManager:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()
