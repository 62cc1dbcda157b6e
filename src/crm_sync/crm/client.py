"""CRM client abstract base class -- the uniform contract every provider implements.

Every provider client (Salesforce, HubSpot, Pipedrive) implements this ABC.
The SyncEngine only talks to CRMClient, so it never sees provider-native
payloads. Semantics are identical across providers:

- create/update return the canonical record re-fetched from the provider;
  a failed re-fetch after a successful create returns the submitted record
  stamped with the new id, so retrying a create never writes twice
- get of a missing record raises CRMRequestError with status 404
- validate_connection never raises; failures land in ConnectionStatus
- clients never retry; callers wrap calls in retry_with_backoff
"""

from __future__ import annotations

import inspect
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import Any, ClassVar, TypeVar

import structlog
from pydantic import BaseModel, ValidationError

from src.crm_sync.config import Settings, get_settings
from src.crm_sync.crm.errors import CRMError, CRMResponseError
from src.crm_sync.crm.schemas import (
    Activity,
    ConnectionStatus,
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
    WebhookConfig,
)
from src.crm_sync.crm.transport import CRMTransport

logger = structlog.get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)
RecordT = TypeVar("RecordT", bound=CRMRecord)

CredentialsCallback = Callable[[Credentials], Awaitable[None] | None]


class CRMClient(ABC):
    """Abstract interface for CRM provider operations.

    Args:
        credentials: Per organization+provider credentials. Refreshed in
            place; ``on_credentials_refreshed`` is notified so the caller
            can persist the new tokens.
        settings: App settings (defaults from get_settings()).
        on_credentials_refreshed: Sync or async callback receiving the new
            Credentials after each refresh.
    """

    provider: ClassVar[CRMProvider]
    default_batch_size: int = 100

    _transport: CRMTransport

    def __init__(
        self,
        credentials: Credentials,
        *,
        settings: Settings | None = None,
        on_credentials_refreshed: CredentialsCallback | None = None,
    ) -> None:
        self.credentials = credentials
        self.settings = settings or get_settings()
        self._on_credentials_refreshed = on_credentials_refreshed

    # ── Authentication ─────────────────────────────────────────────────────

    @abstractmethod
    async def authenticate(self) -> Credentials:
        """Ensure usable credentials, refreshing or validating as the provider requires."""
        ...

    @abstractmethod
    async def refresh_token(self) -> Credentials:
        """Refresh credentials in place and return them."""
        ...

    async def validate_connection(self) -> ConnectionStatus:
        """Probe the provider. Never raises."""
        try:
            record_count = await self._probe_connection()
        except Exception as exc:
            logger.warning(
                "crm.connection_invalid",
                provider=self.provider.value,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return ConnectionStatus(connected=False, last_error=str(exc) or type(exc).__name__)
        return ConnectionStatus(connected=True, record_count=record_count)

    @abstractmethod
    async def _probe_connection(self) -> int | None:
        """Cheap authenticated call; returns the contact count when available."""
        ...

    # ── Contacts ───────────────────────────────────────────────────────────

    @abstractmethod
    async def list_contacts(self, options: QueryOptions | None = None) -> RecordPage[Contact]:
        ...

    @abstractmethod
    async def get_contact(self, contact_id: str) -> Contact:
        ...

    @abstractmethod
    async def create_contact(self, contact: Contact) -> Contact:
        ...

    @abstractmethod
    async def update_contact(self, contact_id: str, contact: Contact) -> Contact:
        ...

    @abstractmethod
    async def delete_contact(self, contact_id: str) -> None:
        ...

    @abstractmethod
    async def search_contacts(self, query: str) -> list[Contact]:
        """Free-text search over name and email."""
        ...

    # ── Deals ──────────────────────────────────────────────────────────────

    @abstractmethod
    async def list_deals(self, options: QueryOptions | None = None) -> RecordPage[Deal]:
        ...

    @abstractmethod
    async def get_deal(self, deal_id: str) -> Deal:
        ...

    @abstractmethod
    async def create_deal(self, deal: Deal) -> Deal:
        ...

    @abstractmethod
    async def update_deal(self, deal_id: str, deal: Deal) -> Deal:
        ...

    @abstractmethod
    async def delete_deal(self, deal_id: str) -> None:
        ...

    # ── Activities / Notes ─────────────────────────────────────────────────

    @abstractmethod
    async def create_activity(self, activity: Activity) -> Activity:
        """Log an activity; returns it with the provider id set."""
        ...

    @abstractmethod
    async def create_note(self, note: Note) -> Note:
        """Attach a note; returns it with the provider id set."""
        ...

    # ── Webhooks ───────────────────────────────────────────────────────────

    @abstractmethod
    async def setup_webhooks(self, config: WebhookConfig) -> list[str]:
        """Register change notifications; returns subscription ids."""
        ...

    @abstractmethod
    def handle_webhook(self, payload: dict[str, Any]) -> CRMWebhookEvent:
        """Normalize one raw provider webhook payload. Pure, no I/O."""
        ...

    # ── Object-type dispatch (used by the sync engine) ─────────────────────

    async def list_records(
        self, object_type: CRMObjectType, options: QueryOptions | None = None
    ) -> RecordPage[Any]:
        if object_type == CRMObjectType.CONTACT:
            return await self.list_contacts(options)
        return await self.list_deals(options)

    async def get_record(self, object_type: CRMObjectType, record_id: str) -> CRMRecord:
        if object_type == CRMObjectType.CONTACT:
            return await self.get_contact(record_id)
        return await self.get_deal(record_id)

    async def create_record(self, object_type: CRMObjectType, record: CRMRecord) -> CRMRecord:
        if object_type == CRMObjectType.CONTACT:
            return await self.create_contact(record)
        return await self.create_deal(record)

    async def update_record(
        self, object_type: CRMObjectType, record_id: str, record: CRMRecord
    ) -> CRMRecord:
        if object_type == CRMObjectType.CONTACT:
            return await self.update_contact(record_id, record)
        return await self.update_deal(record_id, record)

    async def delete_record(self, object_type: CRMObjectType, record_id: str) -> None:
        if object_type == CRMObjectType.CONTACT:
            await self.delete_contact(record_id)
        else:
            await self.delete_deal(record_id)

    # ── Lifecycle ──────────────────────────────────────────────────────────

    async def aclose(self) -> None:
        """Stop the rate limiter and release HTTP connections."""
        await self._transport.aclose()

    async def __aenter__(self) -> CRMClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    # ── Helpers for subclasses ─────────────────────────────────────────────

    async def _store_credentials(self, credentials: Credentials) -> None:
        self.credentials = credentials
        if self._on_credentials_refreshed is not None:
            result = self._on_credentials_refreshed(credentials)
            if inspect.isawaitable(result):
                await result

    async def _fetch_created(self, object_type: CRMObjectType, crm_id: str, submitted: RecordT) -> RecordT:
        """Re-fetch a record the provider just created.

        The create already happened, so a failed read must not propagate into
        a retried create. The submitted record is returned stamped with the
        provider id instead; the next pull refreshes it.
        """
        try:
            return await self.get_record(object_type, crm_id)
        except CRMError as exc:
            logger.warning(
                "crm.created_refetch_failed",
                provider=self.provider.value,
                object_type=object_type.value,
                crm_id=crm_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return submitted.model_copy(
                update={
                    "id": None,
                    "crm_id": crm_id,
                    "crm_provider": self.provider,
                    "created_at": None,
                    "updated_at": None,
                }
            )

    def _parse(self, model: type[ModelT], data: Any) -> ModelT:
        """Validate a provider response body against its DTO."""
        try:
            return model.model_validate(data)
        except ValidationError as exc:
            raise CRMResponseError(
                f"{self.provider.value} response did not match {model.__name__}: {exc.error_count()} error(s)",
                provider=self.provider.value,
            ) from exc

    def _convert(self, converter: Callable[[dict[str, Any]], ModelT], data: dict[str, Any]) -> ModelT:
        """Run a provider -> canonical converter, mapping failures to CRMResponseError."""
        try:
            return converter(data)
        except (ValidationError, ValueError, KeyError, TypeError) as exc:
            raise CRMResponseError(
                f"{self.provider.value} record could not be converted: {exc}",
                provider=self.provider.value,
            ) from exc
