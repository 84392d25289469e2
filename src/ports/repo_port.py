"""Repository ports - diff and static-analysis inputs for the gate.

Soft dependencies. The graph treats a failing provider as a failed
collection step; there is no partial verdict.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from src.shared.types import StaticFinding


@dataclass(frozen=True)
class DiffResult:
    files: tuple[str, ...] = ()
    lines_added: int = 0
    lines_removed: int = 0
    text: str = ""


class DiffProvider(ABC):
    """Port: working-tree diff between two refs."""

    @abstractmethod
    async def get_diff(self, base: str = "HEAD", head: str | None = None) -> DiffResult:
        """Return the diff between base and head.

        Args:
            base: Base ref.
            head: Head ref; None means the working tree.

        Returns:
            DiffResult with changed file paths, line counts and raw text.
        """


class FindingsProvider(ABC):
    """Port: static-analysis findings for the current change."""

    @abstractmethod
    async def get_findings(self, limit: int = 1000) -> list[StaticFinding]:
        """Return at most ``limit`` findings."""


class StaticDiffProvider(DiffProvider):
    """Fixed diff, for tests and API callers that post the diff inline."""

    def __init__(self, diff: DiffResult | None = None) -> None:
        self._diff = diff or DiffResult()

    async def get_diff(self, base: str = "HEAD", head: str | None = None) -> DiffResult:
        return self._diff


class StaticFindingsProvider(FindingsProvider):
    def __init__(self, findings: list[StaticFinding] | None = None) -> None:
        self._findings = list(findings or [])

    async def get_findings(self, limit: int = 1000) -> list[StaticFinding]:
        return self._findings[:limit]
