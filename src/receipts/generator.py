"""Proof receipt generation and signing.

- A ProofReceipt records one runtime verification of a route
- Confidence (0-100) is derived from verdict, trace count and assertion pass rate
- Signatures are truncated sha256 over canonical JSON; they detect tampering,
  they do not authenticate the author
- Gate receipts (src.shared.types.Receipt) are signed by the same digest
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from src.shared.types import Receipt, ReceiptKind, Signal

if TYPE_CHECKING:
    from collections.abc import Iterable

    from src.verify.ground_truth import RouteDef

logger = logging.getLogger(__name__)

SIGNATURE_LENGTH = 32
SCHEMA_VERSION = "shipgate.proof.v2"


class ProofVerdict(Enum):
    PASS = "PASS"
    FAIL = "FAIL"
    SKIP = "SKIP"
    TIMEOUT = "TIMEOUT"
    ERROR = "ERROR"


class ProofCategory(Enum):
    AUTH_GATE = "auth_gate"
    ROUTE_HIT = "route_hit"
    API_RESPONSE = "api_response"


_VERDICT_BASE = {
    ProofVerdict.PASS: 40,
    ProofVerdict.FAIL: 30,
    ProofVerdict.SKIP: 10,
    ProofVerdict.TIMEOUT: 5,
    ProofVerdict.ERROR: 5,
}

_VERDICT_ICON = {
    ProofVerdict.PASS: "[PASS]",
    ProofVerdict.FAIL: "[FAIL]",
    ProofVerdict.SKIP: "[SKIP]",
    ProofVerdict.TIMEOUT: "[TIMEOUT]",
    ProofVerdict.ERROR: "[ERROR]",
}


@dataclass(frozen=True)
class Assertion:
    description: str
    passed: bool
    expected: str | None = None
    actual: str | None = None
    status: int | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"description": self.description, "passed": self.passed}
        for key in ("expected", "actual", "status"):
            value = getattr(self, key)
            if value is not None:
                d[key] = value
        return d


@dataclass(frozen=True)
class TracePointer:
    type: str
    path: str
    hash: str | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"type": self.type, "path": self.path}
        if self.hash is not None:
            d["hash"] = self.hash
        return d


@dataclass(frozen=True)
class ProofSubject:
    identifier: str
    method: str
    url: str
    type: str = "route"

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "identifier": self.identifier, "method": self.method, "url": self.url}


@dataclass(frozen=True)
class ProofTiming:
    started_at: str
    completed_at: str
    duration_ms: int

    def to_dict(self) -> dict[str, Any]:
        return {"startedAt": self.started_at, "completedAt": self.completed_at, "durationMs": self.duration_ms}


@dataclass(frozen=True)
class FailureDetail:
    expected: str
    actual: str
    diff: str | None = None


@dataclass(frozen=True)
class ProofReceipt:
    """Tamper-evident record of one route verification."""

    id: str
    title: str
    category: ProofCategory
    verdict: ProofVerdict
    reason: str
    subject: ProofSubject
    timing: ProofTiming
    confidence: int
    assertions: tuple[Assertion, ...] = ()
    traces: tuple[TracePointer, ...] = ()
    failure_detail: FailureDetail | None = None
    signature: str = ""
    schema_version: str = SCHEMA_VERSION

    @property
    def passed(self) -> bool:
        return self.verdict is ProofVerdict.PASS

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "schemaVersion": self.schema_version,
            "id": self.id,
            "title": self.title,
            "category": self.category.value,
            "verdict": self.verdict.value,
            "reason": self.reason,
            "subject": self.subject.to_dict(),
            "traces": [t.to_dict() for t in self.traces],
            "timing": self.timing.to_dict(),
            "assertions": [a.to_dict() for a in self.assertions],
            "confidence": self.confidence,
            "signature": self.signature,
        }
        if self.failure_detail is not None:
            d["failureDetail"] = {
                "expected": self.failure_detail.expected,
                "actual": self.failure_detail.actual,
                "diff": self.failure_detail.diff,
            }
        return d


@dataclass(frozen=True)
class ReceiptSummary:
    total: int = 0
    passed: int = 0
    failed: int = 0
    skipped: int = 0
    timed_out: int = 0
    errors: int = 0
    pass_rate: int = 0
    avg_confidence: int = 0
    total_duration_ms: int = 0
    by_verdict: dict[str, int] = field(default_factory=dict)


# -- signing --


def digest(payload: dict[str, Any]) -> str:
    """Truncated sha256 over canonical JSON (sorted keys, compact)."""
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:SIGNATURE_LENGTH]


def _proof_payload(receipt: ProofReceipt) -> dict[str, Any]:
    return {
        "id": receipt.id,
        "verdict": receipt.verdict.value,
        "reason": receipt.reason,
        "timing": receipt.timing.to_dict(),
        "subject": receipt.subject.to_dict(),
    }


def sign_proof(receipt: ProofReceipt) -> str:
    return digest(_proof_payload(receipt))


def verify_receipt_signature(receipt: ProofReceipt) -> bool:
    """Recompute the signature and compare in constant time.

    A mismatch is logged and reported as False; the receipt is never rewritten.
    """
    ok = hmac.compare_digest(receipt.signature, sign_proof(receipt))
    if not ok:
        logger.warning("Proof receipt %s failed signature verification", receipt.id)
    return ok


def _gate_payload(receipt: Receipt) -> dict[str, Any]:
    return {
        "receiptId": receipt.receipt_id,
        "kind": receipt.kind.value,
        "summary": receipt.summary,
        "signals": [s.to_dict() for s in receipt.signals],
        "evidenceRefs": [r.to_dict() for r in receipt.evidence_refs],
        "timestamp": receipt.timestamp.isoformat(),
        "runId": receipt.run_id,
    }


def sign_receipt(receipt: Receipt) -> str:
    return digest(_gate_payload(receipt))


def verify_gate_receipt(receipt: Receipt) -> bool:
    ok = bool(receipt.signature) and hmac.compare_digest(receipt.signature, sign_receipt(receipt))
    if not ok:
        logger.warning("Receipt %s failed signature verification", receipt.receipt_id)
    return ok


# -- creation --


def generate_proof_id() -> str:
    return f"proof_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"


def determine_category(route: RouteDef) -> ProofCategory:
    if route.auth_required:
        return ProofCategory.AUTH_GATE
    if route.method == "GET":
        return ProofCategory.ROUTE_HIT
    return ProofCategory.API_RESPONSE


def calculate_confidence(
    verdict: ProofVerdict, assertions: tuple[Assertion, ...], traces: tuple[TracePointer, ...]
) -> int:
    score = _VERDICT_BASE[verdict]
    if traces:
        score += min(30, len(traces) * 10)
    if assertions:
        pass_rate = sum(1 for a in assertions if a.passed) / len(assertions)
        score += round(pass_rate * 30)
    return min(100, score)


def _duration_ms(started_at: str, completed_at: str) -> int:
    start = datetime.fromisoformat(started_at)
    end = datetime.fromisoformat(completed_at)
    return int((end - start).total_seconds() * 1000)


def create_receipt(
    subject: RouteDef,
    verdict: ProofVerdict,
    reason: str,
    assertions: Iterable[Assertion] = (),
    traces: Iterable[TracePointer] = (),
    timing: tuple[str, str] | None = None,
    failure_detail: FailureDetail | None = None,
) -> ProofReceipt:
    """Build and sign a proof receipt for one verified route.

    Args:
        subject: The route that was exercised.
        verdict: Outcome of the verification.
        reason: Human-readable reason for the verdict.
        assertions: Checks that were evaluated.
        traces: Pointers to captured evidence.
        timing: Optional (started_at, completed_at) ISO timestamps; both
            default to now.
        failure_detail: Expected/actual detail for FAIL verdicts.
    """
    now = datetime.now(UTC).isoformat()
    started_at, completed_at = timing if timing is not None else (now, now)
    assertions = tuple(assertions)
    traces = tuple(traces)

    unsigned = ProofReceipt(
        id=generate_proof_id(),
        title=f"Verify {subject.method} {subject.path}",
        category=determine_category(subject),
        verdict=verdict,
        reason=reason,
        subject=ProofSubject(
            identifier=f"{subject.method}:{subject.path}",
            method=subject.method,
            url=subject.path,
        ),
        timing=ProofTiming(
            started_at=started_at,
            completed_at=completed_at,
            duration_ms=_duration_ms(started_at, completed_at),
        ),
        confidence=calculate_confidence(verdict, assertions, traces),
        assertions=assertions,
        traces=traces,
        failure_detail=failure_detail,
    )
    return replace(unsigned, signature=sign_proof(unsigned))


def summarize_receipts(receipts: Iterable[ProofReceipt]) -> ReceiptSummary:
    receipts = list(receipts)
    total = len(receipts)
    if total == 0:
        return ReceiptSummary()
    counts = {v: sum(1 for r in receipts if r.verdict is v) for v in ProofVerdict}
    return ReceiptSummary(
        total=total,
        passed=counts[ProofVerdict.PASS],
        failed=counts[ProofVerdict.FAIL],
        skipped=counts[ProofVerdict.SKIP],
        timed_out=counts[ProofVerdict.TIMEOUT],
        errors=counts[ProofVerdict.ERROR],
        pass_rate=round(counts[ProofVerdict.PASS] / total * 100),
        avg_confidence=round(sum(r.confidence for r in receipts) / total),
        total_duration_ms=sum(r.timing.duration_ms for r in receipts),
        by_verdict={v.value: n for v, n in counts.items()},
    )


def to_gate_receipt(proof: ProofReceipt, run_id: str, receipt_id: str | None = None) -> Receipt:
    """Convert a proof receipt into a signed gate receipt of kind runtime."""
    signals = [
        Signal(id="proof.passed", value=proof.passed, description=proof.reason),
        Signal(id="proof.confidence", value=float(proof.confidence)),
    ]
    status = next((a.status for a in proof.assertions if a.status is not None), None)
    if status is not None:
        signals.append(Signal(id=f"route.{proof.subject.identifier}.status", value=float(status)))
    unsigned = Receipt(
        receipt_id=receipt_id or proof.id.replace("proof_", "rcpt_", 1),
        kind=ReceiptKind.RUNTIME,
        summary=proof.title,
        run_id=run_id,
        timestamp=datetime.fromisoformat(proof.timing.completed_at),
        signals=tuple(signals),
    )
    return replace(unsigned, signature=sign_receipt(unsigned))


def format_receipt(receipt: ProofReceipt) -> str:
    lines = [
        f"{_VERDICT_ICON[receipt.verdict]} {receipt.title}",
        f"   ID: {receipt.id}",
        f"   Verdict: {receipt.verdict.value}",
        f"   Reason: {receipt.reason}",
        f"   Duration: {receipt.timing.duration_ms}ms",
        f"   Confidence: {receipt.confidence}%",
    ]
    if receipt.traces:
        lines.append(f"   Evidence: {len(receipt.traces)} trace(s)")
    if receipt.failure_detail is not None:
        lines.append(f"   Expected: {receipt.failure_detail.expected}")
        lines.append(f"   Actual: {receipt.failure_detail.actual}")
    return "\n".join(lines)
