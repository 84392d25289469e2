"""Hallucination / ground-truth cross-reference detector.

Scans source text for four kinds of claims and checks each against its
ground-truth section:

- API routes      -> routes          (ghost-route)
- Package imports -> dependencies    (ghost-import)
- Type names      -> local/imported  (ghost-type, high strictness only)
- Env variables   -> env             (ghost-env)

The checks are heuristics (regex extraction, no AST). A missing ground-truth
section means "nothing declared", so everything in it becomes a candidate.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from src.verify.ground_truth import normalize_path, route_matches
from src.verify.ids import generate_finding_id

if TYPE_CHECKING:
    from src.verify.ground_truth import GroundTruth

logger = logging.getLogger(__name__)


class Strictness(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


_CONFIDENCE_MULTIPLIER = {Strictness.LOW: 0.7, Strictness.MEDIUM: 1.0, Strictness.HIGH: 1.2}
_PASS_THRESHOLD = {Strictness.LOW: 0.5, Strictness.MEDIUM: 0.3, Strictness.HIGH: 0.1}

_BASE_CONFIDENCE = {"api": 0.9, "import": 0.85, "type": 0.6, "env": 0.9}

BUILTIN_TYPES = frozenset(
    {
        "Array", "Object", "String", "Number", "Boolean", "Function",
        "Promise", "Map", "Set", "WeakMap", "WeakSet", "Date", "Error",
        "RegExp", "JSON", "Math", "Record", "Partial", "Required",
        "Pick", "Omit", "Exclude", "Extract", "NonNullable", "ReturnType",
        "Parameters", "Awaited", "ReadonlyArray", "Readonly",
        "Request", "Response", "Headers", "URL", "URLSearchParams",
        "Event", "EventTarget", "HTMLElement", "Document", "Window",
    }
)  # fmt: skip

NODE_BUILTINS = frozenset(
    {
        "fs", "path", "os", "crypto", "http", "https", "url", "util",
        "stream", "events", "buffer", "child_process", "cluster", "net",
        "dns", "tls", "zlib", "readline", "assert", "fs/promises",
        "worker_threads", "perf_hooks", "querystring", "string_decoder",
    }
)  # fmt: skip

WELLKNOWN_ENV = frozenset(
    {"NODE_ENV", "PORT", "HOST", "DEBUG", "TZ", "PATH", "HOME", "CI", "VERCEL", "NETLIFY", "AWS_REGION"}
)
FRAMEWORK_ENV_PREFIXES = ("NEXT_PUBLIC_", "VITE_")

_API_LITERAL = re.compile(r"""['"`](/api/[^'"`\s]+)['"`]""")
_IMPORT_FROM = re.compile(r"""import\s+(?:type\s+)?(?:\{[^}]*\}|\*\s+as\s+\w+|\w+(?:\s*,\s*\{[^}]*\})?)\s+from\s+['"]([^'"]+)['"]""")
_IMPORT_BARE = re.compile(r"""^[ \t]*import\s+['"]([^'"]+)['"]""", re.MULTILINE)
_TYPE_ANNOTATION = re.compile(r":\s*([A-Z][a-zA-Z0-9_]*)\b(?![<(])")
_ENV_PATTERNS = (
    re.compile(r"process\.env\.([A-Z_][A-Z0-9_]*)"),
    re.compile(r"""process\.env\[['"]([A-Z_][A-Z0-9_]*)['"]\]"""),
    re.compile(r"import\.meta\.env\.([A-Z_][A-Z0-9_]*)"),
)

_QUICK_CHECK_PATTERNS: dict[str, re.Pattern[str]] = {
    "long-env-name": re.compile(r"process\.env\.\w{25,}"),
    "deep-api-path": re.compile(r"/api/v\d+(?:/[a-z]+){5,}"),
    "long-scope-name": re.compile(r"""from ['"]@[a-z]{20,}/"""),
    "generic-fetch-helper": re.compile(r"\.(?:fetchData|getData|sendRequest)\(\)"),
}


@dataclass(frozen=True)
class CandidateLocation:
    file: str
    line: int
    column: int


@dataclass(frozen=True)
class HallucinationCandidate:
    id: str
    rule_id: str
    type: str  # api | import | type | env
    value: str
    confidence: float
    location: CandidateLocation
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "ruleId": self.rule_id,
            "type": self.type,
            "value": self.value,
            "confidence": self.confidence,
            "location": {
                "file": self.location.file,
                "line": self.location.line,
                "column": self.location.column,
            },
            "reason": self.reason,
        }


@dataclass(frozen=True)
class HallucinationReport:
    candidates: tuple[HallucinationCandidate, ...]
    score: float
    total: int
    by_type: dict[str, int]
    high_confidence: int
    passed: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "candidates": [c.to_dict() for c in self.candidates],
            "score": self.score,
            "summary": {
                "total": self.total,
                "byType": dict(self.by_type),
                "highConfidence": self.high_confidence,
            },
            "passed": self.passed,
        }


@dataclass(frozen=True)
class DetectorConfig:
    strictness: Strictness = Strictness.MEDIUM
    check_api: bool = True
    check_imports: bool = True
    check_types: bool = True
    check_env: bool = True
    extra_builtin_types: frozenset[str] = field(default_factory=frozenset)


def _location(content: str, index: int, file_path: str) -> CandidateLocation:
    """1-indexed line/column of a character offset."""
    line = content.count("\n", 0, index) + 1
    last_newline = content.rfind("\n", 0, index)
    return CandidateLocation(file=file_path, line=line, column=index - last_newline)


def package_name(specifier: str) -> str:
    """``@scope/pkg/sub`` -> ``@scope/pkg``; ``lodash/get`` -> ``lodash``."""
    parts = specifier.split("/")
    if specifier.startswith("@"):
        return "/".join(parts[:2])
    return parts[0]


def is_external_specifier(specifier: str) -> bool:
    return not specifier.startswith((".", "/", "node:"))


class HallucinationDetector:
    """Cross-references source text against ground truth.

    One detector per evaluation. Ground-truth sections are cached on the
    GroundTruth accessor; ``clear_cache()`` drops them.
    """

    def __init__(self, ground_truth: GroundTruth, config: DetectorConfig | None = None) -> None:
        self._truth = ground_truth
        self._config = config or DetectorConfig()

    @property
    def config(self) -> DetectorConfig:
        return self._config

    def clear_cache(self) -> None:
        self._truth.clear_cache()

    def _confidence(self, kind: str) -> float:
        return min(1.0, _BASE_CONFIDENCE[kind] * _CONFIDENCE_MULTIPLIER[self._config.strictness])

    def _candidate(
        self, rule_id: str, kind: str, value: str, content: str, index: int, file_path: str, reason: str
    ) -> HallucinationCandidate:
        loc = _location(content, index, file_path)
        return HallucinationCandidate(
            id=generate_finding_id(rule_id, loc.file, loc.line, loc.column, value),
            rule_id=rule_id,
            type=kind,
            value=value,
            confidence=self._confidence(kind),
            location=loc,
            reason=reason,
        )

    async def detect(self, content: str, file_path: str) -> HallucinationReport:
        """Run all enabled checks concurrently and aggregate a report."""
        cfg = self._config
        checks = []
        if cfg.check_api:
            checks.append(self._detect_api(content, file_path))
        if cfg.check_imports:
            checks.append(self._detect_imports(content, file_path))
        if cfg.check_types and cfg.strictness is Strictness.HIGH:
            checks.append(self._detect_types(content, file_path))
        if cfg.check_env:
            checks.append(self._detect_env(content, file_path))

        results = await asyncio.gather(*checks)
        candidates = sorted(
            (c for group in results for c in group),
            key=lambda c: (c.location.file, c.location.line, c.location.column, c.rule_id),
        )
        report = self._report(candidates)
        logger.debug(
            "Hallucination scan %s: %d candidates, score=%.2f", file_path, report.total, report.score
        )
        return report

    async def _detect_api(self, content: str, file_path: str) -> list[HallucinationCandidate]:
        routes = await self._truth.routes()
        found: list[HallucinationCandidate] = []
        for match in _API_LITERAL.finditer(content):
            endpoint = match.group(1)
            normalized = normalize_path(endpoint)
            if any(route_matches(normalized, r.path) for r in routes):
                continue
            found.append(
                self._candidate(
                    "ghost-route", "api", endpoint, content, match.start(), file_path,
                    f'GHOST ROUTE: Endpoint "{endpoint}" not found in ground truth',
                )
            )  # fmt: skip
        return found

    async def _detect_imports(self, content: str, file_path: str) -> list[HallucinationCandidate]:
        declared = await self._truth.dependencies()
        found: list[HallucinationCandidate] = []
        matches = sorted(
            [*_IMPORT_FROM.finditer(content), *_IMPORT_BARE.finditer(content)],
            key=lambda m: m.start(),
        )
        seen: set[int] = set()
        for match in matches:
            specifier = match.group(1)
            if match.start(1) in seen or not is_external_specifier(specifier):
                continue
            seen.add(match.start(1))
            name = package_name(specifier)
            if name in NODE_BUILTINS or name in declared:
                continue
            found.append(
                self._candidate(
                    "ghost-import", "import", name, content, match.start(), file_path,
                    f'GHOST IMPORT: Package "{name}" not found in dependency manifest',
                )
            )  # fmt: skip
        return found

    async def _detect_types(self, content: str, file_path: str) -> list[HallucinationCandidate]:
        builtin = BUILTIN_TYPES | self._config.extra_builtin_types
        found: list[HallucinationCandidate] = []
        for match in _TYPE_ANNOTATION.finditer(content):
            type_name = match.group(1)
            if type_name in builtin:
                continue
            name = re.escape(type_name)
            imported = re.search(rf"import\s+(?:type\s*)?\{{[^}}]*\b{name}\b[^}}]*\}}\s+from", content)
            defined = re.search(rf"(?:interface|type|class|enum)\s+{name}\b", content)
            if imported or defined:
                continue
            found.append(
                self._candidate(
                    "ghost-type", "type", type_name, content, match.start(), file_path,
                    f'GHOST TYPE: Type "{type_name}" may not be defined or imported',
                )
            )  # fmt: skip
        return found

    async def _detect_env(self, content: str, file_path: str) -> list[HallucinationCandidate]:
        declared = await self._truth.env_vars()
        found: list[HallucinationCandidate] = []
        for pattern in _ENV_PATTERNS:
            for match in pattern.finditer(content):
                var = match.group(1)
                if var in WELLKNOWN_ENV or var.startswith(FRAMEWORK_ENV_PREFIXES) or var in declared:
                    continue
                found.append(
                    self._candidate(
                        "ghost-env", "env", var, content, match.start(), file_path,
                        f'GHOST ENV: Environment variable "{var}" not declared in ground truth',
                    )
                )  # fmt: skip
        return found

    def _report(self, candidates: list[HallucinationCandidate]) -> HallucinationReport:
        by_type = Counter(c.type for c in candidates)
        score = sum(c.confidence for c in candidates) / len(candidates) if candidates else 0.0
        return HallucinationReport(
            candidates=tuple(candidates),
            score=score,
            total=len(candidates),
            by_type=dict(by_type),
            high_confidence=sum(1 for c in candidates if c.confidence > 0.7),
            passed=score < _PASS_THRESHOLD[self._config.strictness],
        )


def quick_check(content: str) -> list[str]:
    """Names of cheap red-flag patterns present in content. Empty means clean."""
    return [name for name, pattern in _QUICK_CHECK_PATTERNS.items() if pattern.search(content)]
