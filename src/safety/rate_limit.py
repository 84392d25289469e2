"""Fixed-window rate limiting with a burst allowance.

- One counter record per key, reset lazily once its window has expired
- The burst allowance is spent first and does not touch the main counter,
  so exactly burst_size + max_requests calls succeed per window
- MultiTierRateLimiter checks global, then client, then per-tool limits
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)

GLOBAL_KEY = "global"


def _now_ms() -> float:
    return time.time() * 1000


@dataclass(frozen=True)
class RateLimitConfig:
    """Rate limit configuration. burst_size None means 10% of max_requests."""

    window_ms: int = 60_000
    max_requests: int = 100
    burst_size: int | None = None

    @property
    def effective_burst(self) -> int:
        if self.burst_size is not None:
            return self.burst_size
        return math.floor(self.max_requests * 0.1)


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: float
    retry_after: int | None = None


@dataclass
class _Record:
    count: int
    burst_used: int
    reset_at: float


class RateLimiter:
    """Per-key fixed-window limiter. The clock returns epoch milliseconds."""

    def __init__(self, config: RateLimitConfig | None = None, *, clock: Callable[[], float] = _now_ms) -> None:
        self._config = config or RateLimitConfig()
        self._burst = self._config.effective_burst
        self._clock = clock
        self._records: dict[str, _Record] = {}

    @property
    def config(self) -> RateLimitConfig:
        return self._config

    def _remaining(self, record: _Record) -> int:
        return max(0, self._config.max_requests - record.count) + max(0, self._burst - record.burst_used)

    def check(self, key: str) -> RateLimitResult:
        """Consume one request for ``key`` if the window allows it."""
        now = self._clock()
        record = self._records.get(key)
        if record is None or now >= record.reset_at:
            record = _Record(count=0, burst_used=0, reset_at=now + self._config.window_ms)
            self._records[key] = record

        if record.burst_used < self._burst:
            record.burst_used += 1
            return RateLimitResult(allowed=True, remaining=self._remaining(record), reset_at=record.reset_at)

        if record.count >= self._config.max_requests:
            retry_after = max(1, math.ceil((record.reset_at - now) / 1000))
            logger.debug("Rate limit hit for %s, retry after %ds", key, retry_after)
            return RateLimitResult(allowed=False, remaining=0, reset_at=record.reset_at, retry_after=retry_after)

        record.count += 1
        return RateLimitResult(allowed=True, remaining=self._remaining(record), reset_at=record.reset_at)

    def state(self, key: str) -> RateLimitResult | None:
        """Current window for ``key`` without consuming; None if no live window."""
        record = self._records.get(key)
        now = self._clock()
        if record is None or now >= record.reset_at:
            return None
        remaining = self._remaining(record)
        return RateLimitResult(
            allowed=remaining > 0,
            remaining=remaining,
            reset_at=record.reset_at,
            retry_after=None if remaining > 0 else max(1, math.ceil((record.reset_at - now) / 1000)),
        )

    def reset(self, key: str) -> None:
        self._records.pop(key, None)

    def cleanup(self) -> int:
        """Drop expired records. Returns how many were removed."""
        now = self._clock()
        expired = [k for k, r in self._records.items() if now >= r.reset_at]
        for key in expired:
            del self._records[key]
        return len(expired)


@dataclass(frozen=True)
class MultiTierConfig:
    client: RateLimitConfig
    tool: RateLimitConfig
    global_: RateLimitConfig


DEFAULT_MULTI_TIER = MultiTierConfig(
    client=RateLimitConfig(window_ms=60_000, max_requests=100, burst_size=10),
    tool=RateLimitConfig(window_ms=60_000, max_requests=20, burst_size=2),
    global_=RateLimitConfig(window_ms=60_000, max_requests=1000, burst_size=100),
)


class MultiTierRateLimiter:
    """Global -> client -> tool. The first tier that denies wins.

    Tool limiters are created lazily, one per tool name.
    """

    def __init__(self, config: MultiTierConfig = DEFAULT_MULTI_TIER, *, clock: Callable[[], float] = _now_ms) -> None:
        self._config = config
        self._clock = clock
        self._global = RateLimiter(config.global_, clock=clock)
        self._client = RateLimiter(config.client, clock=clock)
        self._tools: dict[str, RateLimiter] = {}

    def _tool_limiter(self, tool_name: str) -> RateLimiter:
        limiter = self._tools.get(tool_name)
        if limiter is None:
            limiter = RateLimiter(self._config.tool, clock=self._clock)
            self._tools[tool_name] = limiter
        return limiter

    def check(self, client_id: str, tool_name: str | None = None) -> RateLimitResult:
        global_result = self._global.check(GLOBAL_KEY)
        if not global_result.allowed:
            return global_result
        client_result = self._client.check(client_id)
        if not client_result.allowed:
            return client_result
        if tool_name:
            tool_result = self._tool_limiter(tool_name).check(tool_name)
            if not tool_result.allowed:
                return tool_result
        return RateLimitResult(
            allowed=True,
            remaining=min(global_result.remaining, client_result.remaining),
            reset_at=min(global_result.reset_at, client_result.reset_at),
        )

    def reset_client(self, client_id: str) -> None:
        self._client.reset(client_id)

    def cleanup(self) -> int:
        removed = self._global.cleanup() + self._client.cleanup()
        for limiter in self._tools.values():
            removed += limiter.cleanup()
        return removed


def create_default_rate_limiter() -> MultiTierRateLimiter:
    return MultiTierRateLimiter(DEFAULT_MULTI_TIER)
