"""Pipedrive static API token validation.

Pipedrive API tokens do not expire and cannot be refreshed. A rejected
token is an AuthenticationError: never retried, never refreshed.
"""

from __future__ import annotations

from typing import Any

import structlog

from src.crm_sync.crm.errors import AuthenticationError, CRMRequestError
from src.crm_sync.crm.schemas import CRMProvider
from src.crm_sync.crm.transport import CRMTransport

logger = structlog.get_logger(__name__)


class PipedriveAuth:
    """Validates a Pipedrive API token against ``/users/me``.

    Args:
        transport: The client's transport, which appends ``api_token`` to
            every request.
    """

    def __init__(self, transport: CRMTransport) -> None:
        self._transport = transport

    async def validate_token(self) -> dict[str, Any]:
        """Return the authenticated user's profile.

        Raises:
            AuthenticationError: Token missing, invalid or lacking access (401/403).
        """
        try:
            data = await self._transport.get("/users/me")
        except CRMRequestError as exc:
            if exc.status_code == 403:
                raise AuthenticationError(
                    "pipedrive API token lacks access (403)",
                    provider=CRMProvider.PIPEDRIVE.value,
                ) from exc
            raise
        user = (data or {}).get("data") or {}
        logger.info("pipedrive.token_validated", user_id=user.get("id"), company_id=user.get("company_id"))
        return user
