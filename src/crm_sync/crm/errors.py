"""Exception hierarchy for the CRM integration layer.

Every error raised across the client/sync boundary derives from CRMError.
The ``retryable`` flag drives retry_with_backoff: authentication failures,
malformed webhooks and client-side 4xx responses are never retried;
transport failures, 408/429 and 5xx responses are.
"""

from __future__ import annotations

import httpx


class CRMError(Exception):
    """Base exception for CRM integration errors."""

    retryable: bool = False

    def __init__(self, message: str, *, provider: str | None = None) -> None:
        super().__init__(message)
        self.provider = provider


class AuthenticationError(CRMError):
    """Missing, invalid, or unrefreshable credentials. Fatal for a sync run."""


class TokenExpiredError(AuthenticationError):
    """Provider still rejected the request after one refresh-and-retry."""


class CRMRequestError(CRMError):
    """Provider returned a non-2xx response."""

    RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})

    def __init__(
        self,
        message: str,
        *,
        status_code: int,
        provider: str | None = None,
        body: str | None = None,
    ) -> None:
        super().__init__(message, provider=provider)
        self.status_code = status_code
        self.body = body
        self.retryable = status_code in self.RETRYABLE_STATUS_CODES

    @property
    def not_found(self) -> bool:
        return self.status_code == 404


class CRMConnectionError(CRMError):
    """Transport-level failure (DNS, connect, read timeout)."""

    retryable = True


class CRMResponseError(CRMError):
    """2xx response whose body does not match the provider's documented shape."""


class WebhookParseError(CRMError):
    """Webhook payload is malformed or describes an unrecognized object."""


class UnsupportedProviderError(CRMError, ValueError):
    """No client is registered for the requested provider identifier."""


class RateLimiterClosedError(CRMError):
    """Rate limiter was stopped while a caller was waiting for a slot."""


class RecordNotLinkedError(CRMError, LookupError):
    """Local record is missing, or has no SyncState linking it to the CRM."""


def is_retryable(exc: BaseException) -> bool:
    """Decide whether a failed attempt should be retried.

    CRM errors carry their own classification. Outside the taxonomy only
    raw transport failures (httpx transport errors, OS-level socket errors
    and timeouts) are transient; programming errors surface on the first
    attempt.
    """
    if isinstance(exc, CRMError):
        return exc.retryable
    return isinstance(exc, (httpx.TransportError, OSError))
