"""Ship gate evaluator.

Deterministic SHIP / WARN / BLOCK decision over receipt signals.

- BLOCK if a required receipt kind is missing or any hard-block rule fires
- WARN if no hard block fired but a soft rule did (incl. high static findings)
- SHIP otherwise
- Generated text never reaches this module; only signals and receipts do
"""

from __future__ import annotations

import logging
import operator
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from src.gate.config import GateConfig
from src.shared.types import (
    SAFETY_LIMITS,
    BlockingReason,
    BlockSeverity,
    GateWarning,
    Receipt,
    RecommendedAction,
    ShipGateResult,
    SignalValue,
    Verdict,
)

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Mapping

    from src.gate.config import CustomRuleSpec
    from src.shared.types import DiffSummary, StaticFinding

logger = logging.getLogger(__name__)

Signals = dict[str, SignalValue]


class RuleType(Enum):
    BLOCK = "BLOCK"
    WARN = "WARN"


@dataclass(frozen=True)
class RuleInput:
    signals: Mapping[str, SignalValue]
    receipts: tuple[Receipt, ...]
    context: Mapping[str, Any]


@dataclass(frozen=True)
class GateRule:
    id: str
    type: RuleType
    description: str
    severity: BlockSeverity
    category: str
    condition: Callable[[RuleInput], bool]


@dataclass(frozen=True)
class ActiveRules:
    block: tuple[GateRule, ...]
    warn: tuple[GateRule, ...]


# -- signal helpers --


def _flag(signals: Mapping[str, SignalValue], key: str) -> bool:
    return signals.get(key) is True


def _number(signals: Mapping[str, SignalValue], key: str) -> float | None:
    value = signals.get(key)
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    return float(value)


def _count_over(key: str, limit: float = 0) -> Callable[[RuleInput], bool]:
    def condition(inp: RuleInput) -> bool:
        value = _number(inp.signals, key)
        return value is not None and value > limit

    return condition


def _flag_set(key: str) -> Callable[[RuleInput], bool]:
    return lambda inp: _flag(inp.signals, key)


def aggregate_signals(receipts: Iterable[Receipt]) -> Signals:
    """Flatten receipt signals in order; a later receipt overwrites an earlier one."""
    signals: Signals = {}
    for receipt in receipts:
        for signal in receipt.signals:
            signals[signal.id] = signal.value
    return signals


def finding_signals(findings: Iterable[StaticFinding]) -> Signals:
    findings = list(findings)
    severities = [str(f.severity).lower() for f in findings]
    return {
        "static.findings.critical.count": float(severities.count("critical")),
        "static.findings.high.count": float(severities.count("high")),
        "static.findings.any": bool(findings),
    }


def diff_signals(diff: DiffSummary, large_diff_lines: int = SAFETY_LIMITS.max_lines_changed) -> Signals:
    return {
        "diff.filesChanged": float(diff.files_changed),
        "diff.linesAdded": float(diff.lines_added),
        "diff.linesRemoved": float(diff.lines_removed),
        "diff.large": diff.lines_changed > large_diff_lines,
    }


# -- built-in rules --


def _block(
    rule_id: str, description: str, severity: BlockSeverity, category: str, condition: Callable[[RuleInput], bool]
) -> GateRule:
    return GateRule(rule_id, RuleType.BLOCK, description, severity, category, condition)


def _warn(rule_id: str, description: str, category: str, condition: Callable[[RuleInput], bool]) -> GateRule:
    return GateRule(rule_id, RuleType.WARN, description, BlockSeverity.MEDIUM, category, condition)


def builtin_block_rules() -> list[GateRule]:
    critical, high = BlockSeverity.CRITICAL, BlockSeverity.HIGH
    return [
        _block("typecheck-failed", "Type checking failed", critical, "test", _flag_set("typecheck.failed")),
        _block(
            "unit-tests-failed",
            "Unit tests failed (non-flaky)",
            critical,
            "test",
            lambda inp: _flag(inp.signals, "tests.unit.failed") and not _flag(inp.signals, "tests.unit.flaky"),
        ),
        _block(
            "route-mismatch",
            "Runtime proof shows broken navigation or route mismatch",
            high,
            "runtime",
            _flag_set("runtime.route.mismatch"),
        ),
        _block(
            "auth-bypass",
            "Protected route accessible without authentication",
            critical,
            "security",
            _flag_set("runtime.auth.bypass"),
        ),
        _block(
            "critical-endpoint-error",
            "Backend endpoint returns 404/500 on critical path",
            critical,
            "runtime",
            lambda inp: (_flag(inp.signals, "runtime.endpoint.404") or _flag(inp.signals, "runtime.endpoint.500"))
            and _flag(inp.signals, "runtime.endpoint.critical"),
        ),
        _block(
            "fake-success-ui",
            "UI shows success but network request failed",
            high,
            "runtime",
            _flag_set("runtime.fakeSuccess"),
        ),
        _block(
            "secrets-in-diff",
            "Secrets detected in diff or logs",
            critical,
            "security",
            _flag_set("security.secrets.detected"),
        ),
        _block(
            "sensitive-data-exposed",
            "Sensitive data exposed in response",
            critical,
            "security",
            _flag_set("security.data.exposed"),
        ),
        _block(
            "hardcoded-credentials",
            "Hardcoded API keys, passwords, or credentials detected",
            critical,
            "security",
            _count_over("mock.credentials.count"),
        ),
        _block(
            "fake-auth-bypass",
            "Fake authentication bypass detected (isAuthenticated = true)",
            critical,
            "security",
            _count_over("mock.fakeAuth.count"),
        ),
        _block(
            "jwt-token-hardcoded",
            "Hardcoded JWT token detected in source code",
            critical,
            "security",
            _flag_set("mock.jwt.detected"),
        ),
        _block(
            "critical-static-finding",
            "Critical static analysis finding present",
            critical,
            "quality",
            _count_over("static.findings.critical.count"),
        ),
    ]


def builtin_warn_rules(config: GateConfig) -> list[GateRule]:
    def perf_regressed(inp: RuleInput) -> bool:
        current = _number(inp.signals, "performance.responseTime.p95")
        baseline = _number(inp.signals, "performance.responseTime.baseline")
        if current is None or baseline is None:
            return False
        return current > baseline * config.perf_regression_factor

    def low_coverage(inp: RuleInput) -> bool:
        coverage = _number(inp.signals, "tests.coverage.percent")
        return coverage is not None and coverage < config.coverage_threshold

    return [
        _warn("flaky-tests", "Flaky test results detected", "test", _flag_set("tests.flaky")),
        _warn(
            "missing-env-var",
            "New environment variable required but not declared",
            "runtime",
            _flag_set("runtime.env.missing"),
        ),
        _warn(
            "missing-error-handling",
            "New network call missing error handling",
            "quality",
            _flag_set("quality.errorHandling.missing"),
        ),
        _warn(
            "performance-regression",
            "Performance regression detected beyond threshold",
            "performance",
            perf_regressed,
        ),
        _warn(
            "console-errors",
            "Console errors detected in runtime",
            "quality",
            _count_over("runtime.consoleErrors.count"),
        ),
        _warn("low-coverage", "Test coverage below threshold", "quality", low_coverage),
        _warn(
            "mock-data-in-code",
            "Mock/fake data variables detected in production code",
            "quality",
            _count_over("mock.mockData.count"),
        ),
        _warn(
            "debug-code-remaining",
            "Debug code (console.log, debugger) remaining in codebase",
            "quality",
            _count_over("mock.debugCode.count", config.debug_statement_limit),
        ),
        _warn(
            "placeholder-content",
            "Placeholder content (Lorem ipsum, TBD) detected",
            "quality",
            _count_over("mock.placeholder.count"),
        ),
        _warn(
            "hardcoded-localhost",
            "Hardcoded localhost URLs detected in code",
            "quality",
            _count_over("mock.localhost.count"),
        ),
        _warn(
            "fake-user-data",
            "Fake user data (John Doe, test@example.com) detected",
            "quality",
            _count_over("mock.fakeUserData.count"),
        ),
        _warn(
            "high-static-findings",
            "High-severity static analysis findings present",
            "quality",
            _count_over("static.findings.high.count"),
        ),
    ]


_PROMOTED_WHEN_PARANOID = ("flaky-tests", "console-errors")
_DROPPED_WHEN_RELAXED = ("low-coverage", "performance-regression")

_OPS: dict[str, Callable[[Any, Any], bool]] = {
    "eq": operator.eq,
    "ne": operator.ne,
    "gt": operator.gt,
    "gte": operator.ge,
    "lt": operator.lt,
    "lte": operator.le,
}


def rule_from_spec(spec: CustomRuleSpec, rule_type: RuleType) -> GateRule:
    """Turn a declarative config rule into a GateRule."""

    def condition(inp: RuleInput) -> bool:
        if spec.signal not in inp.signals:
            return False
        value = inp.signals[spec.signal]
        if spec.op == "truthy":
            return bool(value)
        if spec.threshold is None:
            return False
        if isinstance(spec.threshold, bool) or isinstance(value, bool):
            return _OPS[spec.op](value, spec.threshold) if spec.op in ("eq", "ne") else False
        return _OPS[spec.op](float(value), float(spec.threshold))

    severity = BlockSeverity(spec.severity) if rule_type is RuleType.BLOCK else BlockSeverity.MEDIUM
    return GateRule(spec.rule_id, rule_type, spec.message, severity, spec.category, condition)


def create_block_rule(
    rule_id: str,
    description: str,
    condition: Callable[[RuleInput], bool],
    *,
    severity: BlockSeverity = BlockSeverity.HIGH,
    category: str = "quality",
) -> GateRule:
    return GateRule(rule_id, RuleType.BLOCK, description, severity, category, condition)


def create_warn_rule(
    rule_id: str,
    description: str,
    condition: Callable[[RuleInput], bool],
    *,
    category: str = "quality",
) -> GateRule:
    return GateRule(rule_id, RuleType.WARN, description, BlockSeverity.MEDIUM, category, condition)


class ShipGate:
    """Evaluates receipts and derived signals into a ShipGateResult.

    Rule lists are built once from the config; add_rule() appends at runtime.
    """

    def __init__(
        self,
        config: GateConfig | None = None,
        *,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._config = config or GateConfig()
        self._clock = clock
        self._block_rules = self._build_block_rules()
        self._warn_rules = self._build_warn_rules()

    @property
    def config(self) -> GateConfig:
        return self._config

    def _build_block_rules(self) -> list[GateRule]:
        rules = builtin_block_rules()
        rules.extend(rule_from_spec(s, RuleType.BLOCK) for s in self._config.custom_block_rules)
        if self._config.strictness == "paranoid":
            for rule in builtin_warn_rules(self._config):
                if rule.id in _PROMOTED_WHEN_PARANOID:
                    rules.append(
                        GateRule(
                            rule.id, RuleType.BLOCK, rule.description, BlockSeverity.HIGH, rule.category, rule.condition
                        )
                    )
        return rules

    def _build_warn_rules(self) -> list[GateRule]:
        rules = builtin_warn_rules(self._config)
        rules.extend(rule_from_spec(s, RuleType.WARN) for s in self._config.custom_warn_rules)
        if self._config.strictness == "paranoid":
            rules = [r for r in rules if r.id not in _PROMOTED_WHEN_PARANOID]
        elif self._config.strictness == "relaxed":
            rules = [r for r in rules if r.id not in _DROPPED_WHEN_RELAXED]
        return rules

    def rules(self) -> ActiveRules:
        disabled = set(self._config.disabled_rules)
        return ActiveRules(
            block=tuple(r for r in self._block_rules if r.id not in disabled),
            warn=tuple(r for r in self._warn_rules if r.id not in disabled),
        )

    def add_rule(self, rule: GateRule) -> None:
        if rule.type is RuleType.BLOCK:
            self._block_rules.append(rule)
        else:
            self._warn_rules.append(rule)

    def evaluate(
        self,
        receipts: Iterable[Receipt],
        signals: Mapping[str, SignalValue] | None = None,
        findings: Iterable[StaticFinding] | None = None,
        *,
        diff_summary: DiffSummary | None = None,
        context: Mapping[str, Any] | None = None,
    ) -> ShipGateResult:
        """Evaluate receipts into a verdict.

        Args:
            receipts: Receipts in collection order.
            signals: Pre-flattened signals; when None they are aggregated
                from ``receipts``.
            findings: Static findings; adds the static.findings.* signals.
            diff_summary: Adds the diff.* signals.
            context: Free-form data handed to rule conditions.
        """
        receipts = tuple(receipts)
        merged: Signals = aggregate_signals(receipts) if signals is None else dict(signals)
        if findings is not None:
            merged.update(finding_signals(findings))
        if diff_summary is not None:
            merged.update(diff_signals(diff_summary, self._config.large_diff_lines))

        timestamp = self._clock()
        present = {r.kind.value for r in receipts}
        missing = [kind for kind in self._config.required_receipts if kind not in present]
        if missing:
            reasons = [
                BlockingReason(
                    rule_id="missing-receipt",
                    message=f"Missing required receipt: {kind}",
                    severity=BlockSeverity.HIGH,
                )
                for kind in missing
            ]
            return self._blocked(reasons, len(receipts), timestamp)

        inp = RuleInput(signals=merged, receipts=receipts, context=dict(context or {}))
        active = self.rules()

        blocking = [
            BlockingReason(
                rule_id=rule.id,
                message=rule.description,
                severity=rule.severity,
                receipt_ids=self._evidence_ids(receipts, rule),
            )
            for rule in active.block
            if rule.condition(inp)
        ]
        if blocking:
            return self._blocked(blocking, len(receipts), timestamp)

        warnings = [
            GateWarning(rule_id=rule.id, message=rule.description, receipt_ids=self._evidence_ids(receipts, rule))
            for rule in active.warn
            if rule.condition(inp)
        ]
        actions = [RecommendedAction(action=f"Address warning: {w.message}", priority="medium") for w in warnings]
        files_changed = _number(merged, "diff.filesChanged")
        if files_changed is not None and files_changed > self._config.split_suggestion_files:
            actions.append(RecommendedAction(action="Consider splitting this change into smaller PRs", priority="low"))

        verdict = Verdict.WARN if warnings else Verdict.SHIP
        logger.info("Ship gate verdict %s (%d warnings, %d receipts)", verdict.value, len(warnings), len(receipts))
        return ShipGateResult(
            verdict=verdict,
            warnings=tuple(warnings),
            recommended_actions=tuple(actions),
            receipts_evaluated=len(receipts),
            timestamp=timestamp,
        )

    @staticmethod
    def _evidence_ids(receipts: tuple[Receipt, ...], rule: GateRule) -> tuple[str, ...]:
        return tuple(
            r.receipt_id
            for r in receipts
            if any(rule.category in s.id.lower() for s in r.signals) or r.kind.value in rule.id
        )

    def _blocked(self, reasons: list[BlockingReason], receipt_count: int, timestamp: datetime) -> ShipGateResult:
        logger.info("Ship gate verdict BLOCK: %s", ", ".join(r.rule_id for r in reasons))
        return ShipGateResult(
            verdict=Verdict.BLOCK,
            blocking_reasons=tuple(reasons),
            recommended_actions=tuple(
                RecommendedAction(
                    action=f"Fix: {r.message}",
                    priority="high" if r.severity is BlockSeverity.CRITICAL else "medium",
                )
                for r in reasons
            ),
            receipts_evaluated=receipt_count,
            timestamp=timestamp,
        )


def can_ship(result: ShipGateResult) -> bool:
    return result.verdict is not Verdict.BLOCK


_PRIORITY_MARK = {"high": "!!!", "medium": "!!", "low": "!"}
_VERDICT_MARK = {Verdict.SHIP: "[OK]", Verdict.WARN: "[WARN]", Verdict.BLOCK: "[BLOCK]"}


def format_ship_gate_result(result: ShipGateResult) -> str:
    lines = [
        f"{_VERDICT_MARK[result.verdict]} Ship Gate Verdict: {result.verdict.value}",
        f"   Receipts evaluated: {result.receipts_evaluated}",
        "",
    ]
    if result.blocking_reasons:
        lines.append("Blocking Reasons:")
        for reason in result.blocking_reasons:
            lines.append(f"  x [{reason.severity.value}] {reason.message}")
            if reason.receipt_ids:
                lines.append(f"     Evidence: {', '.join(reason.receipt_ids)}")
        lines.append("")
    if result.warnings:
        lines.append("Warnings:")
        lines.extend(f"  ! {w.message}" for w in result.warnings)
        lines.append("")
    if result.recommended_actions:
        lines.append("Recommended Actions:")
        lines.extend(f"  {_PRIORITY_MARK.get(a.priority, '-')} {a.action}" for a in result.recommended_actions)
    return "\n".join(lines)
