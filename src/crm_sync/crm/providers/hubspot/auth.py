"""HubSpot OAuth 2.0 for public apps."""

from __future__ import annotations

from src.crm_sync.crm.auth import OAuth2Auth
from src.crm_sync.crm.schemas import CRMProvider


class HubSpotAuth(OAuth2Auth):
    """OAuth against app.hubspot.com; ``expires_in`` is the token lifetime in seconds.

    HubSpot has no token revocation endpoint for access tokens, so
    ``revoke`` only logs. Uninstalling the app is the way to revoke access.
    """

    provider = CRMProvider.HUBSPOT
    authorize_url = "https://app.hubspot.com/oauth/authorize"
    token_url = "https://api.hubapi.com/oauth/v1/token"
    revoke_url = None
    default_scopes = (
        "crm.objects.contacts.read",
        "crm.objects.contacts.write",
        "crm.objects.deals.read",
        "crm.objects.deals.write",
    )
