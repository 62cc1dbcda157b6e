"""HubSpot provider: OAuth public app, CRM v3 objects, engagements and webhook events."""

from src.crm_sync.crm.providers.hubspot.auth import HubSpotAuth
from src.crm_sync.crm.providers.hubspot.client import HubSpotClient

__all__ = ["HubSpotAuth", "HubSpotClient"]
