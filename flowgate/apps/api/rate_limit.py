from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
import math
from typing import Callable

from fastapi import Request, Response
from sqlalchemy.exc import SQLAlchemyError

from flowgate.apps.api.response import API_VERSION
from flowgate.core.config import get_settings
from flowgate.core.errors import DatabaseError, RateLimitedError
from flowgate.persistence.repos.rate_limits import AtomicWindowCounter, SqlWindowCounter, WindowKey
from flowgate.services.audit import client_ip
from flowgate.services.auth.api_keys import is_api_key
from flowgate.services.auth.tokens import token_subject


logger = logging.getLogger(__name__)

SCOPE_SHORT = "short"
SCOPE_LONG = "long"


@dataclass(frozen=True)
class WindowConfig:
    # One fixed-window cap: at most `limit` requests per `window_s` seconds.
    scope: str
    limit: int
    window_s: int


@dataclass(frozen=True)
class WindowUsage:
    scope: str
    limit: int
    count: int
    window_start: datetime
    window_end: datetime

    @property
    def exceeded(self) -> bool:
        return self.count > self.limit

    @property
    def remaining(self) -> int:
        return max(self.limit - self.count, 0)


@dataclass(frozen=True)
class RateLimitDecision:
    # Capture the outcome and retry hint for one admission check.
    allowed: bool
    scope: str | None
    retry_after_s: int
    windows: tuple[WindowUsage, ...]

    @property
    def tightest(self) -> WindowUsage | None:
        if not self.windows:
            return None
        return min(self.windows, key=lambda usage: usage.remaining)


def window_bounds(now: datetime, window_s: int) -> tuple[datetime, datetime]:
    # Align windows to epoch multiples so every instance computes the same boundary.
    epoch_s = now.timestamp()
    start_s = math.floor(epoch_s / window_s) * window_s
    start = datetime.fromtimestamp(start_s, tz=timezone.utc)
    return start, start + timedelta(seconds=window_s)


def retry_after_seconds(window_end: datetime, now: datetime) -> int:
    # Round up so clients never retry before the window actually rolls over.
    return max(1, int(math.ceil((window_end - now).total_seconds())))


def windows_from_settings() -> tuple[WindowConfig, ...]:
    settings = get_settings()
    return (
        WindowConfig(SCOPE_SHORT, settings.rl_short_limit, settings.rl_short_window_s),
        WindowConfig(SCOPE_LONG, settings.rl_long_limit, settings.rl_long_window_s),
    )


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class RateLimiter:
    def __init__(
        self,
        *,
        counter: AtomicWindowCounter | None = None,
        windows: tuple[WindowConfig, ...] | None = None,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        # Allow injecting the counter, caps and clock for deterministic tests.
        self._counter = counter or SqlWindowCounter()
        self._windows = windows
        self._time_provider = time_provider or _utc_now

    @property
    def windows(self) -> tuple[WindowConfig, ...]:
        return self._windows if self._windows is not None else windows_from_settings()

    async def check_and_increment(
        self,
        identifier: str,
        endpoint: str,
        now: datetime | None = None,
    ) -> RateLimitDecision:
        # Increment every cap atomically, then admit only if no post-increment count is over its limit.
        current = now or self._time_provider()
        configs = self.windows
        keys: list[WindowKey] = []
        for config in configs:
            start, end = window_bounds(current, config.window_s)
            keys.append(
                WindowKey(identifier=identifier, endpoint=endpoint, window_start=start, window_end=end)
            )

        counts = await self._counter.increment(keys)

        usages = tuple(
            WindowUsage(
                scope=config.scope,
                limit=config.limit,
                count=count,
                window_start=key.window_start,
                window_end=key.window_end,
            )
            for config, key, count in zip(configs, keys, counts)
        )
        exceeded = [usage for usage in usages if usage.exceeded]
        if not exceeded:
            return RateLimitDecision(allowed=True, scope=None, retry_after_s=0, windows=usages)

        # When several caps reject, the client must wait for the latest one to roll over.
        blocking = max(exceeded, key=lambda usage: usage.window_end)
        return RateLimitDecision(
            allowed=False,
            scope=blocking.scope,
            retry_after_s=retry_after_seconds(blocking.window_end, current),
            windows=usages,
        )


_rate_limiter: RateLimiter | None = None


def get_rate_limiter() -> RateLimiter:
    # Cache the limiter so requests share one counter and clock.
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = RateLimiter()
    return _rate_limiter


def set_rate_limiter(limiter: RateLimiter | None) -> None:
    # Swap in a limiter with an injected clock (tests) or reset to the default.
    global _rate_limiter
    _rate_limiter = limiter


def reset_rate_limiter_state() -> None:
    set_rate_limiter(None)


def _bearer_credential(request: Request) -> str | None:
    header_value = request.headers.get(get_settings().auth_api_key_header)
    if not header_value:
        return None
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1]


def rate_limit_identifier(request: Request) -> str:
    # Key verified token holders by user id; everyone else (API keys included) by client address.
    credential = _bearer_credential(request)
    if credential and not is_api_key(credential):
        subject = token_subject(credential)
        if subject is not None:
            return f"user:{subject}"
    return f"ip:{client_ip(request) or 'unknown'}"


def rate_limit_endpoint(request: Request) -> str:
    # Use the matched route template so path parameters do not split one endpoint's budget.
    route = request.scope.get("route")
    path = getattr(route, "path", None)
    if not path:
        return request.url.path
    # Some FastAPI releases keep the include_router prefix off the route; restore the version mount.
    prefix = f"/{API_VERSION}"
    if request.url.path.startswith(f"{prefix}/") and not path.startswith(f"{prefix}/"):
        return f"{prefix}{path}"
    return path


async def enforce_rate_limit(request: Request, response: Response) -> None:
    # Admission gate that runs before authentication on every limited route.
    settings = get_settings()
    if not settings.rate_limit_enabled:
        return

    identifier = rate_limit_identifier(request)
    endpoint = rate_limit_endpoint(request)
    try:
        decision = await get_rate_limiter().check_and_increment(identifier, endpoint)
    except SQLAlchemyError as exc:
        logger.error("rate_limit_store_failed identifier=%s endpoint=%s", identifier, endpoint)
        raise DatabaseError("rate limit store unavailable") from exc

    request.state.rate_limit = decision
    tightest = decision.tightest
    if tightest is not None:
        response.headers["X-RateLimit-Limit"] = str(tightest.limit)
        response.headers["X-RateLimit-Remaining"] = str(tightest.remaining)

    if decision.allowed:
        return

    logger.info(
        "rate_limited identifier=%s endpoint=%s scope=%s retry_after_s=%s",
        identifier,
        endpoint,
        decision.scope,
        decision.retry_after_s,
    )
    raise RateLimitedError(decision.retry_after_s, scope=decision.scope)
