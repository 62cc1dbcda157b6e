"""CRM sync core -- uniform clients for Salesforce, HubSpot and Pipedrive plus sync orchestration.

Provides:
- CRMClient: Abstract provider contract; concrete clients live under providers/
- create_client: Closed provider registry
- SyncEngine: Full/delta bidirectional sync with conflict resolution
- CRMSyncManager: Per-organization runs, sync logs and webhook intake
- Canonical schemas (Contact, Deal, SyncState, SyncResult, ...) and errors
"""

from src.crm_sync.crm.errors import (
    AuthenticationError,
    CRMConnectionError,
    CRMError,
    CRMRequestError,
    CRMResponseError,
    RecordNotLinkedError,
    TokenExpiredError,
    UnsupportedProviderError,
    WebhookParseError,
)
from src.crm_sync.crm.schemas import (
    Activity,
    ConflictResolution,
    Contact,
    Credentials,
    CRMObjectType,
    CRMProvider,
    CRMWebhookEvent,
    Deal,
    Note,
    SyncDirection,
    SyncOptions,
    SyncResult,
    SyncState,
)
from src.crm_sync.crm.client import CRMClient
from src.crm_sync.crm.factory import create_client, supported_providers
from src.crm_sync.crm.sync import SyncEngine, resolve_conflict
from src.crm_sync.crm.manager import CRMSyncManager, InMemorySyncStore, SyncManagerConfig, SyncStore

__all__ = [
    "CRMClient",
    "create_client",
    "supported_providers",
    "SyncEngine",
    "resolve_conflict",
    "CRMSyncManager",
    "SyncManagerConfig",
    "SyncStore",
    "InMemorySyncStore",
    "Activity",
    "ConflictResolution",
    "Contact",
    "Credentials",
    "CRMObjectType",
    "CRMProvider",
    "CRMWebhookEvent",
    "Deal",
    "Note",
    "SyncDirection",
    "SyncOptions",
    "SyncResult",
    "SyncState",
    "AuthenticationError",
    "CRMConnectionError",
    "CRMError",
    "CRMRequestError",
    "CRMResponseError",
    "RecordNotLinkedError",
    "TokenExpiredError",
    "UnsupportedProviderError",
    "WebhookParseError",
]
