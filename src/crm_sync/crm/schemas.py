"""Pydantic schemas for the CRM sync core -- canonical records, credentials, sync bookkeeping.

Defines all structured types that cross the core's boundary:
- Enums: CRMProvider, CRMObjectType, ActivityType, WebhookAction, SyncDirection,
  ConflictResolution, SyncType, SyncStatus
- Credentials: per organization+provider secret material, refreshed in place
- Canonical records: Contact, Deal (share CRMRecord), Activity, Note
- Query/paging: QueryOptions, RecordPage
- Webhooks: WebhookConfig, CRMWebhookEvent
- Sync: SyncOptions, SyncState, SyncError, SyncConflict, SyncResult, SyncOutcome,
  SyncLogEntry, ConnectionStatus

Provider-native shapes never appear here; each provider package owns its own
DTOs and converts at the client boundary.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from src.crm_sync.crm.utils import RetryOptions


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Enums ───────────────────────────────────────────────────────────────────


class CRMProvider(str, Enum):
    """Supported CRM providers (closed set)."""

    SALESFORCE = "salesforce"
    HUBSPOT = "hubspot"
    PIPEDRIVE = "pipedrive"


class CRMObjectType(str, Enum):
    """Canonical object types that participate in sync."""

    CONTACT = "contact"
    DEAL = "deal"


class ActivityType(str, Enum):
    CALL = "call"
    MEETING = "meeting"
    EMAIL = "email"
    NOTE = "note"
    TASK = "task"


class WebhookAction(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


class SyncDirection(str, Enum):
    """Which way records flow during a sync run."""

    TO_CRM = "to_crm"
    FROM_CRM = "from_crm"
    BIDIRECTIONAL = "bidirectional"

    @property
    def includes_to_crm(self) -> bool:
        return self in (SyncDirection.TO_CRM, SyncDirection.BIDIRECTIONAL)

    @property
    def includes_from_crm(self) -> bool:
        return self in (SyncDirection.FROM_CRM, SyncDirection.BIDIRECTIONAL)


class ConflictResolution(str, Enum):
    """Policy applied when both sides changed since the last sync."""

    ADSAPP_WINS = "adsapp_wins"
    CRM_WINS = "crm_wins"
    NEWEST_WINS = "newest_wins"
    MANUAL = "manual"


class SyncType(str, Enum):
    FULL = "full"
    DELTA = "delta"
    MANUAL = "manual"
    WEBHOOK = "webhook"


class SyncStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


# ── Credentials ─────────────────────────────────────────────────────────────


class Credentials(BaseModel):
    """Secret material for one organization+provider connection.

    OAuth providers use access/refresh tokens (plus instance_url for
    Salesforce); Pipedrive uses a static api_key.
    """

    client_id: str | None = None
    client_secret: str | None = Field(default=None, repr=False)
    access_token: str | None = Field(default=None, repr=False)
    refresh_token: str | None = Field(default=None, repr=False)
    expires_at: datetime | None = None
    instance_url: str | None = None
    api_key: str | None = Field(default=None, repr=False)
    scope: str | None = None

    def is_expired(self, skew_seconds: int = 0, now: datetime | None = None) -> bool:
        """True when the access token expires within ``skew_seconds``."""
        if self.expires_at is None:
            return False
        now = now or _utcnow()
        expires_at = self.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return now >= expires_at - timedelta(seconds=skew_seconds)


# ── Canonical Records ───────────────────────────────────────────────────────


class CRMRecord(BaseModel):
    """Fields shared by every syncable canonical record.

    ``crm_id`` and ``crm_provider`` are only populated on records produced by
    a from_crm conversion; mapping tables never send them to a provider.
    """

    id: str | None = None
    custom_fields: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None
    crm_id: str | None = None
    crm_provider: CRMProvider | None = None


class Contact(CRMRecord):
    """Canonical contact shape."""

    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None
    phone: str | None = None
    company: str | None = None
    title: str | None = None
    tags: list[str] = Field(default_factory=list)

    @field_validator("tags")
    @classmethod
    def _normalize_tags(cls, value: list[str]) -> list[str]:
        return sorted({tag.strip() for tag in value if tag and tag.strip()})

    @property
    def full_name(self) -> str:
        return " ".join(part for part in (self.first_name, self.last_name) if part)


class Deal(CRMRecord):
    """Canonical deal (opportunity) shape."""

    title: str | None = None
    value: float | None = None
    currency: str | None = None
    stage: str | None = None
    contact_id: str | None = None
    company_id: str | None = None
    expected_close_date: date | None = None
    probability: float | None = Field(default=None, ge=0.0, le=100.0)


class Activity(BaseModel):
    """Call/meeting/email/note/task logged against a contact and/or deal."""

    id: str | None = None
    type: ActivityType
    subject: str
    description: str | None = None
    contact_id: str | None = None
    deal_id: str | None = None
    due_date: datetime | None = None
    completed: bool = False
    created_at: datetime | None = None

    @model_validator(mode="after")
    def _require_link(self) -> Activity:
        if not self.contact_id and not self.deal_id:
            raise ValueError("activity must be linked to a contact or a deal")
        return self


class Note(BaseModel):
    """Free-text note attached to a contact and/or deal."""

    id: str | None = None
    content: str
    contact_id: str | None = None
    deal_id: str | None = None
    created_at: datetime | None = None

    @model_validator(mode="after")
    def _require_link(self) -> Note:
        if not self.contact_id and not self.deal_id:
            raise ValueError("note must be linked to a contact or a deal")
        return self


RecordT = TypeVar("RecordT", bound=CRMRecord)


# ── Query / Paging ──────────────────────────────────────────────────────────


class QueryOptions(BaseModel):
    """Listing parameters understood by every provider client.

    ``cursor`` is opaque: each provider encodes its own paging token
    (Salesforce ``LastModifiedDate|Id`` keyset, HubSpot ``after``, Pipedrive ``start``).
    """

    limit: int = Field(default=100, ge=1, le=2000)
    cursor: str | None = None
    modified_since: datetime | None = None
    filters: dict[str, str | int | float | bool] = Field(default_factory=dict)


class RecordPage(BaseModel, Generic[RecordT]):
    """One page of canonical records plus the cursor for the next page."""

    records: list[RecordT] = Field(default_factory=list)
    next_cursor: str | None = None
    total: int | None = None


# ── Webhooks ────────────────────────────────────────────────────────────────


class WebhookConfig(BaseModel):
    """Subscription request for provider-side change notifications."""

    url: str
    events: list[str] = Field(default_factory=lambda: ["*"])
    secret: str | None = Field(default=None, repr=False)


class CRMWebhookEvent(BaseModel):
    """Provider-agnostic webhook event produced by ``handle_webhook``."""

    model_config = ConfigDict(frozen=True)

    id: str
    type: str
    provider: CRMProvider
    object_type: CRMObjectType
    object_id: str
    action: WebhookAction
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime


class ConnectionStatus(BaseModel):
    """Result of a connection health check."""

    connected: bool
    record_count: int | None = None
    last_error: str | None = None
    checked_at: datetime = Field(default_factory=_utcnow)


# ── Sync Schemas ────────────────────────────────────────────────────────────


class SyncOptions(BaseModel):
    """Parameters for one sync run."""

    direction: SyncDirection = SyncDirection.BIDIRECTIONAL
    conflict_resolution: ConflictResolution = ConflictResolution.NEWEST_WINS
    object_type: CRMObjectType = CRMObjectType.CONTACT
    batch_size: int | None = Field(default=None, ge=1, le=1000)
    since: datetime | None = None
    force: bool = False
    adopt_unmapped: bool = False
    retry: RetryOptions = Field(default_factory=RetryOptions)


class SyncState(BaseModel):
    """Durable link between one local record and its provider counterpart."""

    local_id: str
    crm_record_id: str
    object_type: CRMObjectType = CRMObjectType.CONTACT
    last_synced_at: datetime
    local_updated_at: datetime | None = None
    crm_updated_at: datetime | None = None
    sync_direction: SyncDirection | None = None


class SyncError(BaseModel):
    """Per-record failure captured during a sync run."""

    model_config = ConfigDict(frozen=True)

    local_id: str | None = None
    crm_record_id: str | None = None
    object_type: CRMObjectType | None = None
    direction: SyncDirection | None = None
    message: str
    error_type: str
    status_code: int | None = None
    occurred_at: datetime = Field(default_factory=_utcnow)


class SyncConflict(BaseModel):
    """Record left unresolved under ``manual`` conflict resolution."""

    model_config = ConfigDict(frozen=True)

    local_id: str
    crm_record_id: str
    object_type: CRMObjectType
    direction: SyncDirection
    local_updated_at: datetime | None = None
    crm_updated_at: datetime | None = None


class SyncResult(BaseModel):
    """Immutable aggregate outcome of one sync run.

    ``records_processed`` always equals success + failed + skipped so the
    success fraction stays meaningful under partial failure. Records from
    the provider that have no SyncState are counted in ``records_unmapped``
    and are not part of ``records_processed``.
    """

    model_config = ConfigDict(frozen=True)

    success: bool
    records_processed: int = 0
    records_success: int = 0
    records_failed: int = 0
    records_skipped: int = 0
    records_unmapped: int = 0
    errors: tuple[SyncError, ...] = ()
    conflicts: tuple[SyncConflict, ...] = ()
    duration_ms: int = 0
    cancelled: bool = False
    aborted: bool = False
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def success_rate(self) -> float:
        if self.records_processed == 0:
            return 1.0
        return self.records_success / self.records_processed

    @classmethod
    def merge(cls, *results: SyncResult) -> SyncResult:
        """Combine several runs (e.g. contacts then deals) into one result."""
        if not results:
            return cls(success=True)
        started = [r.started_at for r in results if r.started_at is not None]
        completed = [r.completed_at for r in results if r.completed_at is not None]
        return cls(
            success=all(r.success for r in results),
            records_processed=sum(r.records_processed for r in results),
            records_success=sum(r.records_success for r in results),
            records_failed=sum(r.records_failed for r in results),
            records_skipped=sum(r.records_skipped for r in results),
            records_unmapped=sum(r.records_unmapped for r in results),
            errors=tuple(e for r in results for e in r.errors),
            conflicts=tuple(c for r in results for c in r.conflicts),
            duration_ms=sum(r.duration_ms for r in results),
            cancelled=any(r.cancelled for r in results),
            aborted=any(r.aborted for r in results),
            started_at=min(started) if started else None,
            completed_at=max(completed) if completed else None,
        )


class SyncOutcome(BaseModel):
    """Everything a sync run hands back to the caller for persistence."""

    result: SyncResult
    sync_states: list[SyncState] = Field(default_factory=list)
    pulled_records: list[Contact | Deal] = Field(default_factory=list)


class SyncLogEntry(BaseModel):
    """Sync history row written by CRMSyncManager for every run."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    organization_id: str
    provider: CRMProvider
    sync_type: SyncType
    direction: SyncDirection
    status: SyncStatus = SyncStatus.RUNNING
    records_processed: int = 0
    records_success: int = 0
    records_failed: int = 0
    errors: list[SyncError] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=_utcnow)
    completed_at: datetime | None = None
