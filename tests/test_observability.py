"""Tests for the observability layer: Prometheus metrics and structlog setup.

Counter assertions read the current value before and after the action, so
they hold regardless of what other tests in the session recorded.
"""

from __future__ import annotations

from datetime import datetime, timezone

import httpx
import pytest

from src.crm_sync.config import Environment, Settings
from src.crm_sync.crm.errors import CRMRequestError
from src.crm_sync.crm.schemas import Contact
from src.crm_sync.crm.sync import SyncEngine
from src.crm_sync.crm.transport import CRMTransport
from src.crm_sync.crm.utils import RateLimiter, RetryOptions, retry_with_backoff
from src.crm_sync.observability import configure_structlog
from src.crm_sync.observability.metrics import (
    crm_api_requests_total,
    crm_retry_attempts_total,
    crm_sync_records_total,
    crm_sync_runs_total,
    get_metrics_text,
)

T0 = datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)


async def _no_sleep(delay: float) -> None:
    return None


# ── API Metrics ──────────────────────────────────────────────────────────────


class TestApiMetrics:
    """Transport-level request counters."""

    async def test_request_counter_labels_status(self):
        """Each response increments crm_api_requests_total with its status code."""
        labels = {"provider": "metrics-test", "method": "GET", "status": "200"}
        before = crm_api_requests_total.labels(**labels)._value.get()

        transport = CRMTransport(
            provider="metrics-test",
            base_url="https://crm.example.com",
            rate_limiter=RateLimiter(10_000),
            http_client=httpx.AsyncClient(
                transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"ok": True}))
            ),
        )
        try:
            assert await transport.request("GET", "/ping") == {"ok": True}
        finally:
            await transport.aclose()

        after = crm_api_requests_total.labels(**labels)._value.get()
        assert after == before + 1

    async def test_error_status_is_counted(self):
        labels = {"provider": "metrics-test", "method": "POST", "status": "500"}
        before = crm_api_requests_total.labels(**labels)._value.get()

        transport = CRMTransport(
            provider="metrics-test",
            base_url="https://crm.example.com",
            rate_limiter=RateLimiter(10_000),
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(500))),
        )
        try:
            with pytest.raises(CRMRequestError):
                await transport.request("POST", "/records", json={})
        finally:
            await transport.aclose()

        assert crm_api_requests_total.labels(**labels)._value.get() == before + 1


# ── Retry Metrics ────────────────────────────────────────────────────────────


class TestRetryMetrics:
    async def test_each_scheduled_retry_is_counted(self):
        """Two failures before success schedule two retries."""
        before = crm_retry_attempts_total.labels(operation="metrics.flaky")._value.get()
        failures = [CRMRequestError("busy", status_code=503), CRMRequestError("busy", status_code=503)]

        async def flaky() -> str:
            if failures:
                raise failures.pop(0)
            return "done"

        result = await retry_with_backoff(
            flaky,
            RetryOptions(max_attempts=3, initial_delay=0.0),
            sleep=_no_sleep,
            operation_name="metrics.flaky",
        )

        assert result == "done"
        assert crm_retry_attempts_total.labels(operation="metrics.flaky")._value.get() == before + 2


# ── Sync Metrics ─────────────────────────────────────────────────────────────


class TestSyncMetrics:
    async def test_run_and_record_outcomes_counted(self, fake_client):
        run_before = crm_sync_runs_total.labels(provider="hubspot", status="completed")._value.get()
        created_before = crm_sync_records_total.labels(
            provider="hubspot", object_type="contact", direction="to_crm", outcome="created"
        )._value.get()

        engine = SyncEngine(fake_client, sleep=_no_sleep)
        await engine.full_sync([Contact(id="c1", email="ada@example.com", updated_at=T0)], [])

        assert crm_sync_runs_total.labels(provider="hubspot", status="completed")._value.get() == run_before + 1
        created_after = crm_sync_records_total.labels(
            provider="hubspot", object_type="contact", direction="to_crm", outcome="created"
        )._value.get()
        assert created_after == created_before + 1


# ── Exposition / Logging ─────────────────────────────────────────────────────


class TestExposition:
    def test_metrics_text_lists_crm_metrics(self):
        text = get_metrics_text().decode()
        for name in (
            "crm_api_requests_total",
            "crm_api_request_duration_seconds",
            "crm_retry_attempts_total",
            "crm_sync_records_total",
            "crm_sync_runs_total",
            "crm_sync_duration_seconds",
        ):
            assert name in text


class TestStructlogConfiguration:
    @pytest.mark.parametrize("environment", [Environment.development, Environment.production])
    def test_configure_does_not_raise(self, environment):
        configure_structlog(Settings(ENVIRONMENT=environment))
