"""GroundTruthPort - read-only access to the verified project snapshot.

Hard dependency of the verification core. The snapshot ("truthpack") is a
set of JSON sections: routes, env, auth, contracts, dependencies, meta.
Day-1 implementation: JSON files under the project root.

A section that does not exist is not an error: implementations return None
and callers treat it as "nothing declared".
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

SECTIONS = ("routes", "env", "auth", "contracts", "dependencies")


class GroundTruthPort(ABC):
    """Port: versioned snapshot of verified project facts."""

    @abstractmethod
    async def load_section(self, name: str) -> Any | None:
        """Load one section.

        Args:
            name: Section name (one of SECTIONS, or "meta").

        Returns:
            Parsed JSON document, or None when the section is missing or
            cannot be parsed.
        """

    @abstractmethod
    async def list_sections(self) -> list[str]:
        """Names of the sections present in the snapshot."""
