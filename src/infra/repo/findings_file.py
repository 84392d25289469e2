"""JSON findings adapter implementing FindingsProvider.

Layer: Infrastructure

Reads static-analysis output written by the scanner, either a bare list or
``{"findings": [...]}``. A missing file means no findings; a corrupt one is
an evidence error.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from src.ports.repo_port import FindingsProvider
from src.shared.errors import EvidenceUnavailableError
from src.shared.types import StaticFinding

logger = logging.getLogger(__name__)

DEFAULT_FINDINGS_PATH = ".vibecheck/findings.json"


class JsonFindingsProvider(FindingsProvider):
    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)

    async def get_findings(self, limit: int = 1000) -> list[StaticFinding]:
        if not self._path.is_file():
            return []
        try:
            doc = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise EvidenceUnavailableError(str(self._path), f"Unreadable findings file: {exc}") from exc

        items = doc.get("findings", []) if isinstance(doc, dict) else doc
        findings: list[StaticFinding] = []
        for item in items if isinstance(items, list) else []:
            if not isinstance(item, dict):
                continue
            findings.append(
                StaticFinding(
                    rule_id=str(item.get("ruleId") or item.get("rule_id") or item.get("type") or "unknown"),
                    severity=str(item.get("severity", "medium")).lower(),
                    message=str(item.get("message", "")),
                    file=str(item.get("file", "")),
                    line=int(item.get("line", 0) or 0),
                )
            )
            if len(findings) >= limit:
                break
        logger.debug("Loaded %d findings from %s", len(findings), self._path)
        return findings
