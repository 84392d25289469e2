"""Manually advanced clock for timeout and rate-limit tests.

Usage:
    clock = FakeClock()
    manager = TimeoutManager(clock=clock)
    clock.advance(2.5)
"""

from __future__ import annotations


class FakeClock:
    """Callable returning seconds; only moves when told to."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def advance_ms(self, ms: int) -> None:
        self.now += ms / 1000
