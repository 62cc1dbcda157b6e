"""HTTP transport shared by the provider clients.

CRMTransport wraps one httpx.AsyncClient and the owning client's
RateLimiter. Every request:

1. waits for a rate-limiter slot,
2. refreshes credentials first when they are about to expire,
3. injects auth headers and/or query params,
4. on a 401, refreshes once and replays (only when a refresh hook exists),
5. records Prometheus metrics and maps the status into the CRMError taxonomy.

The transport never retries transient failures; the sync engine owns retry.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from typing import Any

import httpx
import structlog

from src.crm_sync.crm.errors import (
    AuthenticationError,
    CRMConnectionError,
    CRMRequestError,
    CRMResponseError,
    TokenExpiredError,
)
from src.crm_sync.crm.utils import RateLimiter
from src.crm_sync.observability.metrics import (
    crm_api_request_duration_seconds,
    crm_api_requests_total,
)

logger = structlog.get_logger(__name__)

_BODY_EXCERPT_LENGTH = 500


class CRMTransport:
    """Rate-limited, auth-aware JSON transport for one provider connection.

    Args:
        provider: Provider label for logs, metrics and errors.
        base_url: Prefix for relative request paths. Mutable; Salesforce
            rewrites it when a refresh returns a new instance URL.
        rate_limiter: The owning client's limiter.
        auth_headers: Returns headers to attach to every request.
        auth_params: Returns query params to attach to every request.
        refresh: Coroutine that refreshes credentials in place. When None,
            a 401 raises AuthenticationError immediately.
        is_expired: Returns True when credentials should be refreshed
            before the next request.
        http_client: Injected httpx client (tests use httpx.MockTransport).
        timeout: Timeout for the owned client when none is injected.
    """

    def __init__(
        self,
        *,
        provider: str,
        base_url: str,
        rate_limiter: RateLimiter,
        auth_headers: Callable[[], dict[str, str]] | None = None,
        auth_params: Callable[[], dict[str, str]] | None = None,
        refresh: Callable[[], Awaitable[Any]] | None = None,
        is_expired: Callable[[], bool] | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ) -> None:
        self.provider = provider
        self.base_url = base_url
        self.rate_limiter = rate_limiter
        self._auth_headers = auth_headers
        self._auth_params = auth_params
        self._refresh = refresh
        self._is_expired = is_expired
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=timeout)
        self._refresh_lock = asyncio.Lock()

    # ── Public API ─────────────────────────────────────────────────────────

    async def get(self, path: str, *, params: dict[str, Any] | None = None) -> Any:
        return await self.request("GET", path, params=params)

    async def post(self, path: str, *, json: Any = None, params: dict[str, Any] | None = None) -> Any:
        return await self.request("POST", path, json=json, params=params)

    async def patch(self, path: str, *, json: Any = None) -> Any:
        return await self.request("PATCH", path, json=json)

    async def put(self, path: str, *, json: Any = None) -> Any:
        return await self.request("PUT", path, json=json)

    async def delete(self, path: str) -> Any:
        return await self.request("DELETE", path)

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
    ) -> Any:
        """Send one request and return the decoded JSON body (None when empty).

        Raises:
            AuthenticationError: 401 with no refresh hook, or refresh failed.
            TokenExpiredError: 401 persisted after one refresh-and-retry.
            CRMRequestError: Any other non-2xx status.
            CRMConnectionError: Transport failure or timeout.
            CRMResponseError: 2xx body that is not valid JSON.
        """
        if self._refresh is not None and self._is_expired is not None and self._is_expired():
            logger.info("transport.proactive_refresh", provider=self.provider)
            await self._run_refresh()

        response = await self._send(method, path, params=params, json=json)

        if response.status_code == 401:
            if self._refresh is None:
                raise AuthenticationError(
                    f"{self.provider} rejected credentials (401)",
                    provider=self.provider,
                )
            logger.info("transport.unauthorized_refreshing", provider=self.provider, path=path)
            await self._run_refresh()
            response = await self._send(method, path, params=params, json=json)
            if response.status_code == 401:
                raise TokenExpiredError(
                    f"{self.provider} still returned 401 after token refresh",
                    provider=self.provider,
                )

        return self._decode(method, path, response)

    async def aclose(self) -> None:
        """Stop the rate limiter and close the owned httpx client."""
        await self.rate_limiter.stop()
        if self._owns_client:
            await self._http.aclose()

    # ── Internals ──────────────────────────────────────────────────────────

    def _url(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        return f"{self.base_url.rstrip('/')}/{path.lstrip('/')}"

    async def _run_refresh(self) -> None:
        async with self._refresh_lock:
            await self._refresh()

    async def _send(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None,
        json: Any,
    ) -> httpx.Response:
        headers = {"Accept": "application/json"}
        if self._auth_headers is not None:
            headers.update(self._auth_headers())
        merged_params = dict(params or {})
        if self._auth_params is not None:
            merged_params.update(self._auth_params())

        await self.rate_limiter.acquire()
        started = time.perf_counter()
        try:
            response = await self._http.request(
                method,
                self._url(path),
                params=merged_params or None,
                json=json,
                headers=headers,
            )
        except httpx.TimeoutException as exc:
            crm_api_requests_total.labels(provider=self.provider, method=method, status="timeout").inc()
            logger.warning("transport.timeout", provider=self.provider, method=method, path=path)
            raise CRMConnectionError(f"{self.provider} {method} {path} timed out", provider=self.provider) from exc
        except httpx.HTTPError as exc:
            crm_api_requests_total.labels(provider=self.provider, method=method, status="error").inc()
            logger.warning(
                "transport.connection_failed",
                provider=self.provider,
                method=method,
                path=path,
                error=str(exc),
            )
            raise CRMConnectionError(f"{self.provider} {method} {path} failed: {exc}", provider=self.provider) from exc

        elapsed = time.perf_counter() - started
        crm_api_request_duration_seconds.labels(provider=self.provider, method=method).observe(elapsed)
        crm_api_requests_total.labels(
            provider=self.provider, method=method, status=str(response.status_code)
        ).inc()
        logger.debug(
            "transport.response",
            provider=self.provider,
            method=method,
            path=path,
            status=response.status_code,
            duration_ms=int(elapsed * 1000),
        )
        return response

    def _decode(self, method: str, path: str, response: httpx.Response) -> Any:
        if not response.is_success:
            raise CRMRequestError(
                f"{self.provider} {method} {path} failed with status {response.status_code}",
                status_code=response.status_code,
                provider=self.provider,
                body=response.text[:_BODY_EXCERPT_LENGTH],
            )
        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise CRMResponseError(
                f"{self.provider} {method} {path} returned a non-JSON body",
                provider=self.provider,
            ) from exc
