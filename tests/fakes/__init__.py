"""Shared fakes and builders for testing without unittest.mock.

Ports are exercised through the real in-memory/static adapters; this
package only adds the pieces those adapters do not cover.
"""

from tests.fakes.builders import found_evidence, make_claim, make_finding
from tests.fakes.clock import FakeClock

__all__ = [
    "FakeClock",
    "found_evidence",
    "make_claim",
    "make_finding",
]
