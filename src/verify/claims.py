"""Claim extraction.

Turns source text into Claims for the policy engine. Extraction is pure
pattern matching; verifying claims is EvidenceResolver's job.
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING

from src.shared.types import Claim, ClaimType, SourceLocation
from src.verify.hallucination import BUILTIN_TYPES, package_name
from src.verify.ids import generate_finding_id

if TYPE_CHECKING:
    from collections.abc import Iterator

_CONTEXT_RADIUS = 50
_CLAIM_CONFIDENCE = 0.8

_PATTERNS: tuple[tuple[ClaimType, re.Pattern[str]], ...] = (
    (ClaimType.IMPORT, re.compile(r"""import\s+(?:type\s+)?(?:\{[^}]+\}|\*\s+as\s+\w+|\w+(?:\s*,\s*\{[^}]*\})?)\s+from\s+['"]([^'"]+)['"]""")),
    (ClaimType.PACKAGE_DEPENDENCY, re.compile(r"""from\s+['"]([^./'"][^'"]*)['"]""")),
    (ClaimType.PACKAGE_DEPENDENCY, re.compile(r"""require\(\s*['"]([^./'"][^'"]*)['"]\s*\)""")),
    (ClaimType.API_ENDPOINT, re.compile(r"""['"`](/api/[^'"`\s]+)['"`]""")),
    (ClaimType.ENV_VARIABLE, re.compile(r"process\.env\.([A-Za-z_]\w*)|import\.meta\.env\.([A-Za-z_]\w*)")),
    (ClaimType.TYPE_REFERENCE, re.compile(r":\s*([A-Z]\w*)(?:<[^>]+>)?")),
    (ClaimType.FILE_REFERENCE, re.compile(r"""['"`](\.\.?/[^'"`\s]+\.[a-zA-Z]+)['"`]""")),
    (ClaimType.FUNCTION_CALL, re.compile(r"\b(?:await\s+)?([a-z]\w*\.[a-z]\w*)\(")),
)  # fmt: skip


def _line_col(content: str, index: int) -> tuple[int, int]:
    line = content.count("\n", 0, index) + 1
    return line, index - content.rfind("\n", 0, index)


def _context(content: str, start: int, end: int) -> str:
    return content[max(0, start - _CONTEXT_RADIUS) : min(len(content), end + _CONTEXT_RADIUS)]


class ClaimExtractor:
    """Extracts Claims of every ClaimType from source text.

    Claims are de-duplicated by (type, value, line). Function-call claims
    are off by default; they are noisy and no default rule consumes them.
    """

    def __init__(self, *, include_function_calls: bool = False) -> None:
        self._include_calls = include_function_calls

    def _matches(self, content: str) -> Iterator[tuple[ClaimType, str, re.Match[str]]]:
        for claim_type, pattern in _PATTERNS:
            if claim_type is ClaimType.FUNCTION_CALL and not self._include_calls:
                continue
            for match in pattern.finditer(content):
                value = next(g for g in match.groups() if g is not None)
                if claim_type is ClaimType.PACKAGE_DEPENDENCY:
                    value = package_name(value.removeprefix("node:"))
                elif claim_type is ClaimType.TYPE_REFERENCE and value in BUILTIN_TYPES:
                    continue
                yield claim_type, value, match

    def extract(self, content: str, file_path: str) -> list[Claim]:
        claims: list[Claim] = []
        seen: set[tuple[ClaimType, str, int]] = set()
        for claim_type, value, match in self._matches(content):
            line, column = _line_col(content, match.start())
            key = (claim_type, value, line)
            if key in seen:
                continue
            seen.add(key)
            claims.append(
                Claim(
                    id=generate_finding_id(f"claim-{claim_type.value}", file_path, line, column, value),
                    type=claim_type,
                    value=value,
                    location=SourceLocation(file=file_path, line=line, column=column),
                    confidence=_CLAIM_CONFIDENCE,
                    context=_context(content, match.start(), match.end()),
                )
            )
        claims.sort(key=lambda c: (c.location.line, c.location.column, c.type.value))
        return claims
