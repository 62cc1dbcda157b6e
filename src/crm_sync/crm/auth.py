"""Shared OAuth 2.0 authorization-code flow for CRM providers.

OAuth2Auth implements the four operations every OAuth provider needs:
authorization URL, code exchange, refresh and revoke. Provider subclasses
set their endpoints and scopes and override ``_expires_at`` when the
provider's token lifetime is not reported via ``expires_in``.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, ClassVar
from urllib.parse import urlencode

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, ValidationError

from src.crm_sync.crm.errors import AuthenticationError, CRMConnectionError
from src.crm_sync.crm.schemas import Credentials, CRMProvider

logger = structlog.get_logger(__name__)


class TokenResponse(BaseModel):
    """Token endpoint payload (fields common to Salesforce and HubSpot)."""

    model_config = ConfigDict(extra="ignore")

    access_token: str
    refresh_token: str | None = None
    expires_in: int | None = None
    instance_url: str | None = None
    scope: str | None = None
    token_type: str | None = None


class OAuth2Auth:
    """Authorization-code OAuth client for one provider app.

    Args:
        client_id: OAuth app client id.
        client_secret: OAuth app client secret.
        redirect_uri: Callback URL registered with the provider.
        scopes: Overrides ``default_scopes``.
        http_client: Injected httpx client (tests use httpx.MockTransport).
        timeout: Timeout for per-call clients when none is injected.
    """

    provider: ClassVar[CRMProvider]
    authorize_url: ClassVar[str]
    token_url: ClassVar[str]
    revoke_url: ClassVar[str | None] = None
    default_scopes: ClassVar[tuple[str, ...]] = ()

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str = "",
        *,
        scopes: list[str] | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.scopes = list(scopes) if scopes is not None else list(self.default_scopes)
        self._http = http_client
        self._timeout = timeout

    def get_authorization_url(self, state: str) -> str:
        """Build the provider consent URL carrying ``state`` for CSRF checks."""
        params = {
            "response_type": "code",
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "scope": " ".join(self.scopes),
            "state": state,
        }
        return f"{self._authorize_endpoint()}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> Credentials:
        """Exchange an authorization code for credentials."""
        token = await self._token_request(
            {
                "grant_type": "authorization_code",
                "code": code,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "redirect_uri": self.redirect_uri,
            }
        )
        logger.info("oauth.code_exchanged", provider=self.provider.value)
        return self._to_credentials(token, previous_refresh_token=None)

    async def refresh_access_token(self, refresh_token: str | None) -> Credentials:
        """Obtain a new access token. Keeps ``refresh_token`` when the response omits one."""
        if not refresh_token:
            raise AuthenticationError(
                f"{self.provider.value} credentials have no refresh token",
                provider=self.provider.value,
            )
        token = await self._token_request(
            {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
            }
        )
        logger.info("oauth.token_refreshed", provider=self.provider.value)
        return self._to_credentials(token, previous_refresh_token=refresh_token)

    async def revoke(self, token: str) -> None:
        """Revoke an access or refresh token at the provider."""
        if self.revoke_url is None:
            logger.info("oauth.revoke_not_supported", provider=self.provider.value)
            return
        response = await self._post(self._revoke_endpoint(), {"token": token})
        if not response.is_success:
            raise AuthenticationError(
                f"{self.provider.value} token revocation failed with status {response.status_code}",
                provider=self.provider.value,
            )
        logger.info("oauth.token_revoked", provider=self.provider.value)

    # ── Overridable hooks ──────────────────────────────────────────────────

    def _authorize_endpoint(self) -> str:
        return self.authorize_url

    def _token_endpoint(self) -> str:
        return self.token_url

    def _revoke_endpoint(self) -> str:
        return self.revoke_url or ""

    def _expires_at(self, token: TokenResponse, issued_at: datetime) -> datetime | None:
        if token.expires_in is None:
            return None
        return issued_at + timedelta(seconds=token.expires_in)

    # ── Internals ──────────────────────────────────────────────────────────

    def _to_credentials(self, token: TokenResponse, previous_refresh_token: str | None) -> Credentials:
        issued_at = datetime.now(timezone.utc)
        return Credentials(
            client_id=self.client_id,
            client_secret=self.client_secret,
            access_token=token.access_token,
            refresh_token=token.refresh_token or previous_refresh_token,
            expires_at=self._expires_at(token, issued_at),
            instance_url=token.instance_url,
            scope=token.scope or " ".join(self.scopes) or None,
        )

    async def _token_request(self, form: dict[str, str]) -> TokenResponse:
        response = await self._post(self._token_endpoint(), form)
        if not response.is_success:
            logger.warning(
                "oauth.token_request_failed",
                provider=self.provider.value,
                status=response.status_code,
                grant_type=form.get("grant_type"),
            )
            raise AuthenticationError(
                f"{self.provider.value} token request failed with status {response.status_code}",
                provider=self.provider.value,
            )
        try:
            return TokenResponse.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise AuthenticationError(
                f"{self.provider.value} token response is malformed",
                provider=self.provider.value,
            ) from exc

    async def _post(self, url: str, form: dict[str, Any]) -> httpx.Response:
        headers = {"Accept": "application/json"}
        try:
            if self._http is not None:
                return await self._http.post(url, data=form, headers=headers)
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                return await client.post(url, data=form, headers=headers)
        except httpx.HTTPError as exc:
            raise CRMConnectionError(
                f"{self.provider.value} auth endpoint unreachable: {exc}",
                provider=self.provider.value,
            ) from exc
