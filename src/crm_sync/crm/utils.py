"""Shared helpers for provider clients and the sync engine.

- RetryOptions / compute_backoff / retry_with_backoff / with_retry: bounded
  exponential backoff built on tenacity, driven by errors.is_retryable
- RateLimiter: fixed-interval request pacing, one instance per client
- normalize_phone_number, sanitize_custom_fields, chunk
- Value transforms used by the per-provider mapping tables
"""

from __future__ import annotations

import asyncio
import contextlib
import functools
import json
import re
from collections.abc import Awaitable, Callable, Iterable, Sequence
from datetime import date, datetime, timezone
from typing import Any, TypeVar

import structlog
from pydantic import BaseModel, Field
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_exponential

from src.crm_sync.config import Settings, get_settings
from src.crm_sync.crm.errors import RateLimiterClosedError, is_retryable
from src.crm_sync.observability.metrics import crm_retry_attempts_total

logger = structlog.get_logger(__name__)

T = TypeVar("T")

MAX_CUSTOM_FIELD_KEY_LENGTH = 50


# ── Retry ───────────────────────────────────────────────────────────────────


class RetryOptions(BaseModel):
    """Backoff policy: delay for attempt n (0-based) is initial * multiplier**n, capped."""

    max_attempts: int = Field(default=3, ge=1)
    initial_delay: float = Field(default=1.0, ge=0.0)
    multiplier: float = Field(default=2.0, ge=1.0)
    max_delay: float = Field(default=10.0, ge=0.0)

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> RetryOptions:
        if settings is None:
            settings = get_settings()
        return cls(
            max_attempts=settings.CRM_RETRY_MAX_ATTEMPTS,
            initial_delay=settings.CRM_RETRY_INITIAL_DELAY,
            multiplier=settings.CRM_RETRY_MULTIPLIER,
            max_delay=settings.CRM_RETRY_MAX_DELAY,
        )


def compute_backoff(attempt: int, options: RetryOptions) -> float:
    """Delay in seconds before retrying after the given 0-based failed attempt."""
    return min(options.initial_delay * options.multiplier**attempt, options.max_delay)


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    options: RetryOptions | None = None,
    *,
    retry_on: Callable[[BaseException], bool] = is_retryable,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    operation_name: str = "operation",
) -> T:
    """Invoke ``operation`` up to ``options.max_attempts`` times.

    Failures for which ``retry_on`` is False propagate immediately. When all
    attempts fail, the last attempt's exception propagates unchanged.

    Args:
        operation: Zero-argument coroutine factory; called once per attempt.
        options: Backoff policy (defaults to RetryOptions()).
        retry_on: Predicate deciding whether an exception is transient.
        sleep: Awaitable sleep, injectable for tests.
        operation_name: Label used in logs and the retry metric.
    """
    options = options or RetryOptions()

    def _before_sleep(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        crm_retry_attempts_total.labels(operation=operation_name).inc()
        logger.warning(
            "retry.scheduled",
            operation=operation_name,
            attempt=retry_state.attempt_number,
            max_attempts=options.max_attempts,
            delay=retry_state.next_action.sleep if retry_state.next_action else None,
            error_type=type(exc).__name__ if exc else None,
            error=str(exc) if exc else None,
        )

    retrying = AsyncRetrying(
        stop=stop_after_attempt(options.max_attempts),
        wait=wait_exponential(
            multiplier=options.initial_delay,
            exp_base=options.multiplier,
            max=options.max_delay,
        ),
        retry=retry_if_exception(retry_on),
        before_sleep=_before_sleep,
        sleep=sleep,
        reraise=True,
    )
    async for attempt in retrying:
        with attempt:
            result = await operation()
    return result


def with_retry(
    options: RetryOptions | None = None,
    *,
    retry_on: Callable[[BaseException], bool] = is_retryable,
    operation_name: str | None = None,
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """Decorator form of retry_with_backoff for async functions."""

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            return await retry_with_backoff(
                lambda: func(*args, **kwargs),
                options,
                retry_on=retry_on,
                operation_name=operation_name or func.__qualname__,
            )

        return wrapper

    return decorator


# ── Rate Limiting ───────────────────────────────────────────────────────────


class RateLimiter:
    """Paces calls to at most ``requests_per_second``.

    Waiters queue in FIFO order; a ticker task releases one waiter, then
    sleeps one interval. N acquisitions therefore span at least
    (N - 1) / requests_per_second seconds. Each client owns its own limiter.

    Usage:
        async with RateLimiter(20) as limiter:
            data = await limiter.run(lambda: client.get("/persons"))
    """

    def __init__(self, requests_per_second: float, *, name: str = "crm") -> None:
        if requests_per_second <= 0:
            raise ValueError("requests_per_second must be positive")
        self.requests_per_second = requests_per_second
        self.interval = 1.0 / requests_per_second
        self.name = name
        self._queue: asyncio.Queue[asyncio.Future[None]] | None = None
        self._ticker: asyncio.Task[None] | None = None
        self._closed = False

    @property
    def running(self) -> bool:
        return self._ticker is not None and not self._ticker.done()

    def start(self) -> None:
        """Start the ticker on the running loop. Reopens a stopped limiter."""
        self._closed = False
        if self.running:
            return
        if self._queue is None:
            self._queue = asyncio.Queue()
        self._ticker = asyncio.get_running_loop().create_task(self._tick())

    async def stop(self) -> None:
        """Stop the ticker and fail every pending waiter."""
        self._closed = True
        if self._ticker is not None:
            self._ticker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._ticker
            self._ticker = None
        if self._queue is not None:
            while not self._queue.empty():
                waiter = self._queue.get_nowait()
                if not waiter.done():
                    waiter.set_exception(RateLimiterClosedError(f"rate limiter {self.name!r} stopped"))
            self._queue = None

    async def acquire(self) -> None:
        """Wait for the next free slot."""
        if self._closed:
            raise RateLimiterClosedError(f"rate limiter {self.name!r} is stopped")
        if not self.running:
            self.start()
        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._queue.put_nowait(waiter)
        await waiter

    async def run(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Acquire a slot, then await ``operation()``."""
        await self.acquire()
        return await operation()

    async def _tick(self) -> None:
        assert self._queue is not None
        while True:
            waiter = await self._queue.get()
            # Cancelled waiters do not consume a slot.
            if waiter.done():
                continue
            waiter.set_result(None)
            await asyncio.sleep(self.interval)

    async def __aenter__(self) -> RateLimiter:
        self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()


# ── Normalization ───────────────────────────────────────────────────────────

_NON_DIGIT = re.compile(r"\D")


def normalize_phone_number(value: str | None, default_country_code: str | None = None) -> str | None:
    """Reduce a phone number to ``+<digits>`` (or bare digits without a country code).

    Formatting characters are stripped and an international ``00`` prefix
    becomes ``+``. With ``default_country_code``, national numbers get the
    code prepended (leading trunk zero dropped). Idempotent.
    """
    if value is None:
        return None
    stripped = value.strip()
    digits = _NON_DIGIT.sub("", stripped)
    if not digits:
        return None
    if stripped.startswith("+"):
        return f"+{digits}"
    if digits.startswith("00"):
        return f"+{digits[2:]}"
    if default_country_code:
        code = _NON_DIGIT.sub("", default_country_code)
        return f"+{code}{digits.lstrip('0')}"
    return digits


_CAMEL_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_INVALID_KEY_CHARS = re.compile(r"[^a-z0-9_]+")
_REPEATED_UNDERSCORES = re.compile(r"_+")

_JSON_SCALARS = (str, int, float, bool)


def _sanitize_key(key: Any) -> str:
    key = _CAMEL_BOUNDARY.sub(r"\1_\2", str(key)).lower()
    key = _INVALID_KEY_CHARS.sub("_", key)
    key = _REPEATED_UNDERSCORES.sub("_", key).strip("_")
    return key[:MAX_CUSTOM_FIELD_KEY_LENGTH]


def _sanitize_value(value: Any) -> Any:
    if isinstance(value, _JSON_SCALARS):
        return value
    if isinstance(value, (list, tuple)) and all(isinstance(v, _JSON_SCALARS) for v in value):
        return list(value)
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return str(value)


def sanitize_custom_fields(fields: dict[str, Any] | None) -> dict[str, Any]:
    """Make an arbitrary custom-field dict safe to store in a provider field.

    Keys become snake_case ``[a-z0-9_]`` up to 50 chars; ``None`` values and
    keys that sanitize to empty are dropped; non-scalar values become strings.
    """
    if not fields:
        return {}
    sanitized: dict[str, Any] = {}
    for key, value in fields.items():
        if value is None:
            continue
        clean_key = _sanitize_key(key)
        if not clean_key:
            continue
        sanitized[clean_key] = _sanitize_value(value)
    return sanitized


def chunk(items: Sequence[T] | Iterable[T], size: int) -> list[list[T]]:
    """Split items into ordered batches of at most ``size``."""
    if size <= 0:
        raise ValueError("chunk size must be positive")
    items = list(items)
    return [items[i : i + size] for i in range(0, len(items), size)]


# ── Value Transforms ────────────────────────────────────────────────────────


def tags_to_csv(tags: Iterable[str] | None) -> str:
    return ",".join(sorted({t.strip() for t in tags or () if t and t.strip()}))


def csv_to_tags(value: str | None) -> list[str]:
    if not value:
        return []
    return sorted({t.strip() for t in value.split(",") if t.strip()})


def dict_to_json(fields: dict[str, Any] | None) -> str:
    return json.dumps(sanitize_custom_fields(fields), sort_keys=True, separators=(",", ":"))


def json_to_dict(value: str | dict[str, Any] | None) -> dict[str, Any]:
    if not value:
        return {}
    if isinstance(value, dict):
        return value
    try:
        decoded = json.loads(value)
    except (TypeError, ValueError):
        logger.warning("mapping.invalid_custom_fields_json", length=len(str(value)))
        return {}
    return decoded if isinstance(decoded, dict) else {}


def date_to_iso(value: date | datetime | None) -> str | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        value = value.date()
    return value.isoformat()


def iso_to_date(value: str | date | None) -> date | None:
    if not value:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(value[:10])


_COMPACT_OFFSET = re.compile(r"([+-]\d{2})(\d{2})$")


def parse_datetime(value: str | int | float | datetime | None) -> datetime | None:
    """Parse provider timestamps into aware UTC datetimes.

    Accepts ISO 8601 (``Z``, ``+00:00`` and ``+0000`` offsets, space
    separator, naive treated as UTC) and epoch seconds or milliseconds.

    Raises:
        ValueError: Value is not a recognizable timestamp.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        parsed = _from_epoch(float(value))
    elif isinstance(value, str):
        text = value.strip()
        if text.isdigit():
            parsed = _from_epoch(float(text))
        else:
            if text.endswith("Z"):
                text = text[:-1] + "+00:00"
            text = _COMPACT_OFFSET.sub(r"\1:\2", text)
            parsed = datetime.fromisoformat(text)
    else:
        raise ValueError(f"unsupported timestamp value: {value!r}")
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _from_epoch(seconds: float) -> datetime:
    # Anything past year 5138 in seconds is really milliseconds.
    if seconds > 1e11:
        seconds /= 1000.0
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError) as exc:
        raise ValueError(f"epoch timestamp out of range: {seconds!r}") from exc


def datetime_to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def to_int_id(value: Any) -> int | None:
    if value is None or value == "":
        return None
    if isinstance(value, dict):
        value = value.get("value", value.get("id"))
    return int(value)


def to_str_id(value: Any) -> str | None:
    if value is None or value == "":
        return None
    if isinstance(value, dict):
        value = value.get("value", value.get("id"))
        if value is None:
            return None
    return str(value)
