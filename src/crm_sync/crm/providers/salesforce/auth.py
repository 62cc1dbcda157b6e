"""Salesforce OAuth 2.0 (web server flow) for connected apps."""

from __future__ import annotations

from datetime import datetime, timedelta

from src.crm_sync.crm.auth import OAuth2Auth, TokenResponse
from src.crm_sync.crm.schemas import CRMProvider

PRODUCTION_LOGIN_URL = "https://login.salesforce.com"
SANDBOX_LOGIN_URL = "https://test.salesforce.com"

# Salesforce does not return expires_in; session timeout defaults to 2 hours.
TOKEN_TTL = timedelta(hours=2)


class SalesforceAuth(OAuth2Auth):
    """OAuth against ``login.salesforce.com`` (or ``test.salesforce.com`` for sandboxes).

    Refresh responses omit the refresh token, so the previous one is kept.
    Token responses carry ``instance_url``, the org-specific API host.
    """

    provider = CRMProvider.SALESFORCE
    authorize_url = "/services/oauth2/authorize"
    token_url = "/services/oauth2/token"
    revoke_url = "/services/oauth2/revoke"
    default_scopes = ("api", "refresh_token", "offline_access")

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str = "",
        *,
        login_url: str = PRODUCTION_LOGIN_URL,
        sandbox: bool = False,
        **kwargs,
    ) -> None:
        super().__init__(client_id, client_secret, redirect_uri, **kwargs)
        self.login_url = (SANDBOX_LOGIN_URL if sandbox else login_url).rstrip("/")

    def _authorize_endpoint(self) -> str:
        return f"{self.login_url}{self.authorize_url}"

    def _token_endpoint(self) -> str:
        return f"{self.login_url}{self.token_url}"

    def _revoke_endpoint(self) -> str:
        return f"{self.login_url}{self.revoke_url}"

    def _expires_at(self, token: TokenResponse, issued_at: datetime) -> datetime | None:
        return issued_at + TOKEN_TTL
