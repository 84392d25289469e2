"""Shared domain types used across layers.

These types flow through ports and the gate pipeline and must remain stable.
Claims and Evidence live for one evaluation only. Receipts and
ShipGateResult are the durable records and serialize to camelCase JSON.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

# -- Claims & evidence (transient, one evaluation) --


class ClaimType(Enum):
    API_ENDPOINT = "api_endpoint"
    IMPORT = "import"
    PACKAGE_DEPENDENCY = "package_dependency"
    TYPE_REFERENCE = "type_reference"
    FILE_REFERENCE = "file_reference"
    ENV_VARIABLE = "env_variable"
    FUNCTION_CALL = "function_call"


@dataclass(frozen=True)
class SourceLocation:
    file: str
    line: int
    column: int


@dataclass(frozen=True)
class Claim:
    """An extracted, unverified assertion made by code text."""

    id: str
    type: ClaimType
    value: str
    location: SourceLocation
    confidence: float
    context: str = ""


class EvidenceSource(Enum):
    TRUTHPACK = "truthpack"
    FILESYSTEM = "filesystem"
    PACKAGE_JSON = "package_json"
    NONE = "none"


@dataclass(frozen=True)
class Evidence:
    """Verification outcome for exactly one Claim.

    A claim that could not be verified still gets Evidence, with found=False.
    """

    claim_id: str
    found: bool
    source: EvidenceSource
    confidence: float
    location: SourceLocation | None = None
    details: dict[str, Any] = field(default_factory=dict)


# -- Policy --


class Severity(Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


@dataclass(frozen=True)
class ChangeIntent:
    """What the agent said it was going to change."""

    scope: str = "module"  # file | module | project
    description: str = ""


@dataclass(frozen=True)
class DiffSummary:
    files_changed: int = 0
    lines_added: int = 0
    lines_removed: int = 0
    files: tuple[str, ...] = ()
    affected_routes: tuple[str, ...] = ()

    @property
    def lines_changed(self) -> int:
        return self.lines_added + self.lines_removed

    def to_dict(self) -> dict[str, Any]:
        return {
            "filesChanged": self.files_changed,
            "linesAdded": self.lines_added,
            "linesRemoved": self.lines_removed,
            "files": list(self.files),
            "affectedRoutes": list(self.affected_routes),
        }


@dataclass(frozen=True)
class PolicyContext:
    """Everything one policy evaluation may read. Built per evaluation."""

    claims: tuple[Claim, ...] = ()
    evidence: tuple[Evidence, ...] = ()
    intent: ChangeIntent | None = None
    diff_summary: DiffSummary = field(default_factory=DiffSummary)
    project_root: str = "."

    def evidence_for(self, claim_id: str) -> Evidence | None:
        for ev in self.evidence:
            if ev.claim_id == claim_id:
                return ev
        return None


@dataclass(frozen=True)
class PolicyViolation:
    policy: str
    message: str
    severity: Severity
    claim: Claim | None = None
    suggestion: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "policy": self.policy,
            "message": self.message,
            "severity": self.severity.value,
            "claimId": self.claim.id if self.claim else None,
            "suggestion": self.suggestion,
        }


@dataclass(frozen=True)
class PolicyDecision:
    allowed: bool
    violations: tuple[PolicyViolation, ...]
    confidence: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed,
            "violations": [v.to_dict() for v in self.violations],
            "confidence": self.confidence,
        }


# -- Receipts (durable) --


class ReceiptKind(Enum):
    TEST = "test"
    RUNTIME = "runtime"
    NETWORK = "network"
    UI = "ui"
    SECURITY = "security"
    POLICY = "policy"
    CHAOS = "chaos"


class EvidenceRefType(Enum):
    SCREENSHOT = "screenshot"
    TRACE = "trace"
    HAR = "har"
    LOG = "log"
    DIFF = "diff"
    VIDEO = "video"


@dataclass(frozen=True)
class EvidenceRef:
    path: str
    type: EvidenceRefType
    hash: str | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"path": self.path, "type": self.type.value}
        if self.hash is not None:
            d["hash"] = self.hash
        return d


SignalValue = bool | float


@dataclass(frozen=True)
class Signal:
    id: str
    value: SignalValue
    description: str = ""

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"id": self.id, "value": self.value}
        if self.description:
            d["description"] = self.description
        return d


@dataclass(frozen=True)
class Receipt:
    """Signed, immutable record of one verification outcome."""

    receipt_id: str
    kind: ReceiptKind
    summary: str
    run_id: str
    timestamp: datetime
    evidence_refs: tuple[EvidenceRef, ...] = ()
    signals: tuple[Signal, ...] = ()
    signature: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "receiptId": self.receipt_id,
            "kind": self.kind.value,
            "summary": self.summary,
            "evidenceRefs": [r.to_dict() for r in self.evidence_refs],
            "signals": [s.to_dict() for s in self.signals],
            "timestamp": self.timestamp.isoformat(),
            "runId": self.run_id,
            "signature": self.signature,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Receipt:
        return cls(
            receipt_id=data["receiptId"],
            kind=ReceiptKind(data["kind"]),
            summary=data.get("summary", ""),
            run_id=data["runId"],
            timestamp=datetime.fromisoformat(data["timestamp"]),
            evidence_refs=tuple(
                EvidenceRef(path=r["path"], type=EvidenceRefType(r["type"]), hash=r.get("hash"))
                for r in data.get("evidenceRefs", [])
            ),
            signals=tuple(
                Signal(id=s["id"], value=s["value"], description=s.get("description", ""))
                for s in data.get("signals", [])
            ),
            signature=data.get("signature", ""),
        )


# -- Ship gate --


class Verdict(Enum):
    SHIP = "SHIP"
    WARN = "WARN"
    BLOCK = "BLOCK"


class BlockSeverity(Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"


@dataclass(frozen=True)
class BlockingReason:
    rule_id: str
    message: str
    severity: BlockSeverity
    receipt_ids: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "ruleId": self.rule_id,
            "message": self.message,
            "receiptIds": list(self.receipt_ids),
            "severity": self.severity.value,
        }


@dataclass(frozen=True)
class GateWarning:
    rule_id: str
    message: str
    receipt_ids: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "ruleId": self.rule_id,
            "message": self.message,
            "receiptIds": list(self.receipt_ids),
        }


@dataclass(frozen=True)
class RecommendedAction:
    action: str
    priority: str  # high | medium | low
    mission_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"action": self.action, "priority": self.priority}
        if self.mission_id is not None:
            d["missionId"] = self.mission_id
        return d


@dataclass(frozen=True)
class ShipGateResult:
    """Final gate decision. The only artifact a caller needs."""

    verdict: Verdict
    blocking_reasons: tuple[BlockingReason, ...] = ()
    warnings: tuple[GateWarning, ...] = ()
    recommended_actions: tuple[RecommendedAction, ...] = ()
    receipts_evaluated: int = 0
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def can_ship(self) -> bool:
        return self.verdict is not Verdict.BLOCK

    def to_dict(self) -> dict[str, Any]:
        return {
            "verdict": self.verdict.value,
            "blockingReasons": [b.to_dict() for b in self.blocking_reasons],
            "warnings": [w.to_dict() for w in self.warnings],
            "recommendedActions": [a.to_dict() for a in self.recommended_actions],
            "receiptsEvaluated": self.receipts_evaluated,
            "timestamp": self.timestamp.isoformat(),
        }


# -- Static analysis findings fed into the gate --


@dataclass(frozen=True)
class StaticFinding:
    rule_id: str
    severity: str  # critical | high | medium | low
    message: str
    file: str = ""
    line: int = 0


# -- Limits --


@dataclass(frozen=True)
class SafetyLimits:
    """Defaults for the patch, diff and graph bounds; each is overridable where it is enforced."""

    max_files_touched: int = 10
    max_lines_changed: int = 500
    max_graph_iterations: int = 10


SAFETY_LIMITS = SafetyLimits()
