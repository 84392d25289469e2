"""Run-scoped timeout budgets.

- Every operation gets min(its own budget, what is left of the global budget)
- Once the global budget is exhausted the run is aborted, and stays aborted
  until the next start_run()
- Operations are wrapped with asyncio.wait_for and raise OperationTimeoutError
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, TypeVar

from src.shared.errors import OperationTimeoutError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

T = TypeVar("T")

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TimeoutConfig:
    """Budgets in milliseconds."""

    action_timeout_ms: int = 10_000
    page_timeout_ms: int = 30_000
    global_timeout_ms: int = 300_000
    network_timeout_ms: int = 15_000


DEFAULT_TIMEOUTS = TimeoutConfig()

MAX_TIMEOUTS = TimeoutConfig(
    action_timeout_ms=60_000,
    page_timeout_ms=120_000,
    global_timeout_ms=600_000,
    network_timeout_ms=60_000,
)


@dataclass(frozen=True)
class TimeoutState:
    started_at: float
    elapsed_ms: int
    remaining_ms: int
    global_timeout_reached: bool


def _clamp(config: TimeoutConfig) -> TimeoutConfig:
    return TimeoutConfig(
        action_timeout_ms=min(config.action_timeout_ms, MAX_TIMEOUTS.action_timeout_ms),
        page_timeout_ms=min(config.page_timeout_ms, MAX_TIMEOUTS.page_timeout_ms),
        global_timeout_ms=min(config.global_timeout_ms, MAX_TIMEOUTS.global_timeout_ms),
        network_timeout_ms=min(config.network_timeout_ms, MAX_TIMEOUTS.network_timeout_ms),
    )


class TimeoutManager:
    """Tracks one run's global budget and hands out per-operation timeouts.

    The clock returns seconds (time.monotonic by default) and is injectable
    for tests.
    """

    def __init__(
        self,
        config: TimeoutConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = _clamp(config or DEFAULT_TIMEOUTS)
        self._clock = clock
        self._started_at: float | None = None
        self._aborted = False

    @property
    def config(self) -> TimeoutConfig:
        return self._config

    def start_run(self) -> None:
        self._started_at = self._clock()
        self._aborted = False

    def stop_run(self) -> None:
        self._started_at = None

    def abort(self) -> None:
        """Mark the run aborted; every later operation fails fast."""
        self._aborted = True

    def _elapsed_ms(self) -> int:
        if self._started_at is None:
            return 0
        return int((self._clock() - self._started_at) * 1000)

    def remaining_ms(self) -> int:
        if self._started_at is None:
            return self._config.global_timeout_ms
        return max(0, self._config.global_timeout_ms - self._elapsed_ms())

    def state(self) -> TimeoutState:
        remaining = self.remaining_ms()
        if self._started_at is not None and remaining == 0 and not self._aborted:
            logger.warning("Global timeout of %dms reached", self._config.global_timeout_ms)
            self._aborted = True
        return TimeoutState(
            started_at=self._started_at or 0.0,
            elapsed_ms=self._elapsed_ms(),
            remaining_ms=remaining,
            global_timeout_reached=self._aborted or remaining == 0,
        )

    def should_abort(self) -> bool:
        return self.state().global_timeout_reached

    def get_action_timeout(self) -> int:
        return min(self._config.action_timeout_ms, self.remaining_ms())

    def get_page_timeout(self) -> int:
        return min(self._config.page_timeout_ms, self.remaining_ms())

    def get_network_timeout(self) -> int:
        return min(self._config.network_timeout_ms, self.remaining_ms())

    async def with_timeout(  # noqa: UP047
        self,
        operation: Callable[[], Awaitable[T]],
        timeout_ms: int,
        name: str = "operation",
    ) -> T:
        """Run ``operation()`` under min(timeout_ms, remaining global budget).

        Raises:
            OperationTimeoutError: the run is already aborted, or the
                operation did not finish in time.
        """
        if self.should_abort():
            raise OperationTimeoutError(f"{name} (global budget exhausted)", self._config.global_timeout_ms)
        effective_ms = min(timeout_ms, self.remaining_ms())
        try:
            return await asyncio.wait_for(operation(), timeout=effective_ms / 1000)
        except TimeoutError:
            logger.warning("%s timed out after %dms", name, effective_ms)
            raise OperationTimeoutError(name, effective_ms) from None

    async def with_action_timeout(self, operation: Callable[[], Awaitable[Any]], name: str = "action") -> Any:
        return await self.with_timeout(operation, self._config.action_timeout_ms, name)

    async def with_page_timeout(self, operation: Callable[[], Awaitable[Any]], name: str = "page") -> Any:
        return await self.with_timeout(operation, self._config.page_timeout_ms, name)


def format_duration(ms: float) -> str:
    """``950`` -> ``950ms``; ``1500`` -> ``1s``; ``125000`` -> ``2m 5s``."""
    if ms < 1000:
        return f"{int(ms)}ms"
    seconds = int(ms // 1000)
    minutes, rest = divmod(seconds, 60)
    if minutes:
        return f"{minutes}m {rest}s"
    return f"{seconds}s"
