"""Unit tests for retry, rate limiting, normalization and value transforms."""

from __future__ import annotations

import asyncio
from datetime import date, datetime, timezone

import httpx
import pytest

from src.crm_sync.crm.errors import AuthenticationError, CRMRequestError, RateLimiterClosedError
from src.crm_sync.crm.utils import (
    RateLimiter,
    RetryOptions,
    chunk,
    compute_backoff,
    csv_to_tags,
    date_to_iso,
    datetime_to_iso,
    dict_to_json,
    iso_to_date,
    json_to_dict,
    normalize_phone_number,
    parse_datetime,
    retry_with_backoff,
    sanitize_custom_fields,
    tags_to_csv,
    to_int_id,
    to_str_id,
    with_retry,
)


class _Sleeps:
    """Records requested delays instead of sleeping."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


# ── Retry ──────────────────────────────────────────────────────────────────


class TestComputeBackoff:
    def test_exponential_growth(self):
        """Delay doubles per attempt from the initial delay."""
        options = RetryOptions(initial_delay=1.0, multiplier=2.0, max_delay=10.0)
        assert [compute_backoff(n, options) for n in range(4)] == [1.0, 2.0, 4.0, 8.0]

    def test_capped_at_max_delay(self):
        """Delay never exceeds max_delay."""
        options = RetryOptions(initial_delay=1.0, multiplier=2.0, max_delay=10.0)
        assert compute_backoff(5, options) == 10.0

    def test_max_attempts_must_be_positive(self):
        """A retry policy with zero attempts is rejected."""
        with pytest.raises(ValueError):
            RetryOptions(max_attempts=0)


class TestRetryWithBackoff:
    async def test_always_failing_operation_called_max_attempts_times(self):
        """A permanently failing call runs exactly max_attempts times."""
        calls = 0

        async def operation():
            nonlocal calls
            calls += 1
            raise CRMRequestError(f"attempt {calls}", status_code=503)

        sleeps = _Sleeps()
        with pytest.raises(CRMRequestError):
            await retry_with_backoff(operation, RetryOptions(max_attempts=3), sleep=sleeps)

        assert calls == 3
        assert len(sleeps.delays) == 2

    async def test_last_error_propagates_not_first(self):
        """The propagated exception is the one raised by the final attempt."""
        calls = 0

        async def operation():
            nonlocal calls
            calls += 1
            raise CRMRequestError(f"attempt {calls}", status_code=500)

        with pytest.raises(CRMRequestError, match="attempt 3"):
            await retry_with_backoff(operation, RetryOptions(max_attempts=3), sleep=_Sleeps())

    async def test_success_on_second_attempt(self):
        """A transient failure followed by success returns the result."""
        outcomes = [CRMRequestError("boom", status_code=500), "ok"]

        async def operation():
            outcome = outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        assert await retry_with_backoff(operation, RetryOptions(), sleep=_Sleeps()) == "ok"

    async def test_non_retryable_error_raised_immediately(self):
        """Authentication failures are never retried."""
        calls = 0

        async def operation():
            nonlocal calls
            calls += 1
            raise AuthenticationError("bad token")

        with pytest.raises(AuthenticationError):
            await retry_with_backoff(operation, RetryOptions(max_attempts=5), sleep=_Sleeps())
        assert calls == 1

    async def test_client_error_not_retried(self):
        """A 400 response is surfaced without retry."""
        calls = 0

        async def operation():
            nonlocal calls
            calls += 1
            raise CRMRequestError("bad request", status_code=400)

        with pytest.raises(CRMRequestError):
            await retry_with_backoff(operation, RetryOptions(max_attempts=3), sleep=_Sleeps())
        assert calls == 1

    async def test_programming_error_not_retried(self):
        """Errors outside the CRM taxonomy surface on the first attempt."""
        calls = 0

        async def operation():
            nonlocal calls
            calls += 1
            raise KeyError("missing field")

        with pytest.raises(KeyError):
            await retry_with_backoff(operation, RetryOptions(max_attempts=3), sleep=_Sleeps())
        assert calls == 1

    async def test_raw_transport_error_retried(self):
        """An httpx transport failure escaping a wrapped call is transient."""
        outcomes = [httpx.ConnectError("refused"), "ok"]

        async def operation():
            outcome = outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        assert await retry_with_backoff(operation, RetryOptions(), sleep=_Sleeps()) == "ok"

    async def test_sleeps_follow_backoff_schedule(self):
        """Delays between attempts follow initial * multiplier**n."""

        async def operation():
            raise CRMRequestError("unavailable", status_code=503)

        sleeps = _Sleeps()
        options = RetryOptions(max_attempts=4, initial_delay=1.0, multiplier=2.0, max_delay=10.0)
        with pytest.raises(CRMRequestError):
            await retry_with_backoff(operation, options, sleep=sleeps)
        assert sleeps.delays == [1.0, 2.0, 4.0]

    async def test_with_retry_decorator(self):
        """The decorator retries the wrapped coroutine function."""
        calls = 0

        @with_retry(RetryOptions(max_attempts=2, initial_delay=0.0))
        async def flaky(value: int) -> int:
            nonlocal calls
            calls += 1
            if calls == 1:
                raise CRMRequestError("flaky", status_code=502)
            return value * 2

        assert await flaky(21) == 42
        assert calls == 2


# ── Rate Limiter ───────────────────────────────────────────────────────────


class TestRateLimiter:
    async def test_n_calls_take_at_least_n_minus_one_intervals(self):
        """N sequential acquisitions at R req/s span at least (N-1)/R seconds."""
        limiter = RateLimiter(50)
        loop = asyncio.get_running_loop()
        started = loop.time()
        for _ in range(5):
            await limiter.acquire()
        elapsed = loop.time() - started
        await limiter.stop()

        assert elapsed >= (5 - 1) / 50 - 0.005

    async def test_concurrent_callers_are_paced(self):
        """Concurrent acquisitions are released one interval apart."""
        limiter = RateLimiter(100)
        loop = asyncio.get_running_loop()
        started = loop.time()
        await asyncio.gather(*(limiter.acquire() for _ in range(6)))
        elapsed = loop.time() - started
        await limiter.stop()

        assert elapsed >= (6 - 1) / 100 - 0.005

    async def test_run_returns_operation_result(self):
        """run() acquires a slot and returns the awaited value."""
        async with RateLimiter(1000) as limiter:

            async def operation():
                return "done"

            assert await limiter.run(operation) == "done"

    async def test_stop_fails_pending_waiters(self):
        """Stopping the limiter fails callers still waiting for a slot."""
        limiter = RateLimiter(1)
        await limiter.acquire()
        pending = asyncio.create_task(limiter.acquire())
        await asyncio.sleep(0.01)

        await limiter.stop()

        with pytest.raises(RateLimiterClosedError):
            await pending
        assert not limiter.running

    async def test_acquire_after_stop_raises_until_restarted(self):
        """A stopped limiter rejects callers until start() reopens it."""
        limiter = RateLimiter(1000)
        await limiter.acquire()
        await limiter.stop()

        with pytest.raises(RateLimiterClosedError):
            await limiter.acquire()

        limiter.start()
        await limiter.acquire()
        assert limiter.running
        await limiter.stop()

    def test_rejects_non_positive_rate(self):
        """A zero rate is a configuration error."""
        with pytest.raises(ValueError):
            RateLimiter(0)


# ── Normalization ──────────────────────────────────────────────────────────


class TestNormalizePhoneNumber:
    def test_strips_formatting_keeps_plus(self):
        assert normalize_phone_number("+1 (555) 123-4567") == "+15551234567"

    def test_international_double_zero_prefix(self):
        assert normalize_phone_number("0031 6 1234 5678") == "+31612345678"

    def test_default_country_code_drops_trunk_zero(self):
        assert normalize_phone_number("06 12345678", default_country_code="+31") == "+31612345678"

    def test_national_number_without_country_code(self):
        assert normalize_phone_number("555-1234") == "5551234"

    def test_empty_and_non_numeric(self):
        assert normalize_phone_number("") is None
        assert normalize_phone_number("n/a") is None
        assert normalize_phone_number(None) is None

    def test_idempotent(self):
        """Normalizing a normalized number is a no-op."""
        once = normalize_phone_number("+44 20 7946 0958")
        assert normalize_phone_number(once) == once


class TestSanitizeCustomFields:
    def test_keys_become_snake_case(self):
        result = sanitize_custom_fields({"First Name": "Ada", "leadScore": 5})
        assert result == {"first_name": "Ada", "lead_score": 5}

    def test_drops_none_values_and_empty_keys(self):
        result = sanitize_custom_fields({"kept": "yes", "gone": None, "!!!": 1})
        assert result == {"kept": "yes"}

    def test_value_coercion(self):
        """Scalar lists survive, dates become ISO strings, other values become strings."""
        result = sanitize_custom_fields(
            {"labels": ["a", "b"], "renewal": date(2024, 3, 1), "nested": {"a": 1}}
        )
        assert result["labels"] == ["a", "b"]
        assert result["renewal"] == "2024-03-01"
        assert result["nested"] == "{'a': 1}"

    def test_key_length_capped(self):
        result = sanitize_custom_fields({"x" * 80: 1})
        assert list(result) == ["x" * 50]

    def test_empty_input(self):
        assert sanitize_custom_fields(None) == {}
        assert sanitize_custom_fields({}) == {}


class TestChunk:
    def test_splits_preserving_order(self):
        assert chunk([1, 2, 3, 4, 5], 2) == [[1, 2], [3, 4], [5]]

    def test_empty_input(self):
        assert chunk([], 3) == []

    def test_non_positive_size_rejected(self):
        with pytest.raises(ValueError):
            chunk([1], 0)


# ── Value Transforms ───────────────────────────────────────────────────────


class TestValueTransforms:
    def test_tags_round_trip(self):
        """Tags survive CSV encoding as a sorted, de-duplicated list."""
        assert csv_to_tags(tags_to_csv(["vip", "lead", "vip"])) == ["lead", "vip"]

    def test_custom_fields_round_trip(self):
        fields = {"plan": "pro", "seats": 3, "trial": False}
        assert json_to_dict(dict_to_json(fields)) == fields

    def test_invalid_custom_fields_json_decodes_to_empty(self):
        assert json_to_dict("{not json") == {}
        assert json_to_dict("[1, 2]") == {}

    def test_date_round_trip(self):
        value = date(2024, 6, 30)
        assert iso_to_date(date_to_iso(value)) == value

    def test_iso_to_date_accepts_datetime_strings(self):
        assert iso_to_date("2024-06-30T00:00:00Z") == date(2024, 6, 30)

    def test_id_coercion(self):
        assert to_int_id("42") == 42
        assert to_int_id({"value": 7, "name": "Acme"}) == 7
        assert to_int_id(None) is None
        assert to_str_id(42) == "42"
        assert to_str_id({"id": 3}) == "3"
        assert to_str_id({"name": "no id"}) is None


class TestParseDatetime:
    EXPECTED = datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc)

    @pytest.mark.parametrize(
        "value",
        [
            "2024-01-15T10:30:00Z",
            "2024-01-15T10:30:00.000Z",
            "2024-01-15T10:30:00.000+0000",
            "2024-01-15T11:30:00+01:00",
            "2024-01-15 10:30:00",
            1705314600,
            1705314600000,
            "1705314600000",
        ],
    )
    def test_provider_formats(self, value):
        """Every provider timestamp format parses to the same aware UTC instant."""
        assert parse_datetime(value) == self.EXPECTED

    def test_empty_is_none(self):
        assert parse_datetime(None) is None
        assert parse_datetime("") is None

    def test_garbage_raises(self):
        with pytest.raises(ValueError):
            parse_datetime("yesterday")

    def test_out_of_range_epoch_raises_value_error(self):
        """Epochs beyond the platform range surface as ValueError, not OverflowError."""
        with pytest.raises(ValueError):
            parse_datetime(10**30)
        with pytest.raises(ValueError):
            parse_datetime(str(10**30))

    def test_datetime_to_iso_uses_z_suffix(self):
        assert datetime_to_iso(self.EXPECTED) == "2024-01-15T10:30:00Z"
