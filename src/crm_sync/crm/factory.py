"""Client factory: resolve a provider identifier plus credentials to a CRMClient.

The registry is a closed mapping from CRMProvider to constructor, so an
unsupported identifier fails at construction time.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from src.crm_sync.crm.client import CRMClient
from src.crm_sync.crm.errors import UnsupportedProviderError
from src.crm_sync.crm.providers.hubspot import HubSpotClient
from src.crm_sync.crm.providers.pipedrive import PipedriveClient
from src.crm_sync.crm.providers.salesforce import SalesforceClient
from src.crm_sync.crm.schemas import Credentials, CRMProvider

ClientConstructor = Callable[..., CRMClient]

CLIENT_REGISTRY: dict[CRMProvider, ClientConstructor] = {
    CRMProvider.SALESFORCE: SalesforceClient,
    CRMProvider.HUBSPOT: HubSpotClient,
    CRMProvider.PIPEDRIVE: PipedriveClient,
}


def resolve_provider(provider: CRMProvider | str) -> CRMProvider:
    """Coerce a provider identifier (enum or case-insensitive string)."""
    if isinstance(provider, CRMProvider):
        return provider
    try:
        return CRMProvider(str(provider).strip().lower())
    except ValueError:
        raise UnsupportedProviderError(f"unsupported CRM provider: {provider!r}") from None


def create_client(provider: CRMProvider | str, credentials: Credentials, **kwargs: Any) -> CRMClient:
    """Construct the client for ``provider``.

    Args:
        provider: CRMProvider or its string value.
        credentials: Per organization+provider credentials.
        **kwargs: Forwarded to the client constructor (http_client,
            rate_limiter, settings, on_credentials_refreshed, custom-field keys).

    Raises:
        UnsupportedProviderError: No client is registered for ``provider``.
    """
    resolved = resolve_provider(provider)
    constructor = CLIENT_REGISTRY.get(resolved)
    if constructor is None:
        raise UnsupportedProviderError(f"no client registered for {resolved.value!r}", provider=resolved.value)
    return constructor(credentials, **kwargs)


def supported_providers() -> list[CRMProvider]:
    return list(CLIENT_REGISTRY)
