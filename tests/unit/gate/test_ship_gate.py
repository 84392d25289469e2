"""Tests for the ship gate evaluator.

Acceptance: pytest tests/unit/gate/test_ship_gate.py -v
"""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from src.gate.config import CustomRuleSpec, GateConfig
from src.gate.ship_gate import (
    RuleType,
    ShipGate,
    aggregate_signals,
    can_ship,
    create_block_rule,
    diff_signals,
    finding_signals,
    format_ship_gate_result,
)
from src.shared.types import SAFETY_LIMITS, BlockSeverity, DiffSummary, ReceiptKind, Verdict
from tests.fakes import make_finding

FIXED_NOW = datetime(2024, 6, 1, 12, 0, tzinfo=UTC)


def _gate(**config: object) -> ShipGate:
    return ShipGate(GateConfig(**config), clock=lambda: FIXED_NOW)


class TestVerdicts:
    def test_no_receipts_ships(self) -> None:
        result = _gate().evaluate([])
        assert result.verdict is Verdict.SHIP
        assert result.can_ship is True
        assert result.timestamp == FIXED_NOW

    def test_single_hard_block_receipt(self, make_receipt) -> None:
        receipt = make_receipt(ReceiptKind.RUNTIME, {"runtime.auth.bypass": True})
        result = _gate().evaluate([receipt], findings=[])
        assert result.verdict is Verdict.BLOCK
        assert [r.rule_id for r in result.blocking_reasons] == ["auth-bypass"]
        assert result.blocking_reasons[0].severity is BlockSeverity.CRITICAL
        assert result.recommended_actions[0].priority == "high"
        assert can_ship(result) is False

    def test_high_static_finding_warns(self) -> None:
        result = _gate().evaluate([], findings=[make_finding("high")])
        assert result.verdict is Verdict.WARN
        assert [w.rule_id for w in result.warnings] == ["high-static-findings"]
        assert result.recommended_actions[0].action.startswith("Address warning:")

    def test_critical_static_finding_blocks(self) -> None:
        result = _gate().evaluate([], findings=[make_finding("critical"), make_finding("high")])
        assert result.verdict is Verdict.BLOCK
        assert [r.rule_id for r in result.blocking_reasons] == ["critical-static-finding"]
        assert result.warnings == ()

    def test_upper_case_severity_still_blocks(self) -> None:
        result = _gate().evaluate([], findings=[make_finding("CRITICAL"), make_finding("High")])
        assert result.verdict is Verdict.BLOCK
        assert [r.rule_id for r in result.blocking_reasons] == ["critical-static-finding"]

    def test_flaky_unit_failure_does_not_block(self, make_receipt) -> None:
        receipt = make_receipt(ReceiptKind.TEST, {"tests.unit.failed": True, "tests.unit.flaky": True})
        assert _gate().evaluate([receipt]).verdict is Verdict.SHIP

    def test_blocking_reason_cites_matching_receipts(self, make_receipt) -> None:
        failing = make_receipt(ReceiptKind.TEST, {"tests.unit.failed": True})
        unrelated = make_receipt(ReceiptKind.UI, {"ui.rendered": True})
        result = _gate().evaluate([failing, unrelated])
        assert result.blocking_reasons[0].receipt_ids == (failing.receipt_id,)
        assert result.receipts_evaluated == 2

    def test_later_receipt_overrides_signal(self, make_receipt) -> None:
        receipts = [
            make_receipt(ReceiptKind.RUNTIME, {"runtime.auth.bypass": True}),
            make_receipt(ReceiptKind.RUNTIME, {"runtime.auth.bypass": False}),
        ]
        assert _gate().evaluate(receipts).verdict is Verdict.SHIP

    def test_missing_required_receipt(self, make_receipt) -> None:
        gate = _gate(required_receipts=("test", "runtime"))
        result = gate.evaluate([make_receipt(ReceiptKind.RUNTIME)])
        assert result.verdict is Verdict.BLOCK
        assert [(r.rule_id, r.message) for r in result.blocking_reasons] == [
            ("missing-receipt", "Missing required receipt: test")
        ]


class TestThresholds:
    @pytest.mark.parametrize(("count", "verdict"), [(2.0, Verdict.SHIP), (3.0, Verdict.WARN)])
    def test_debug_statement_limit(self, count: float, verdict: Verdict) -> None:
        assert _gate().evaluate([], {"mock.debugCode.count": count}).verdict is verdict

    def test_performance_regression(self) -> None:
        signals = {"performance.responseTime.p95": 200.0, "performance.responseTime.baseline": 100.0}
        assert _gate().evaluate([], signals).verdict is Verdict.WARN
        assert _gate(perf_regression_factor=2.5).evaluate([], signals).verdict is Verdict.SHIP

    def test_boolean_is_not_a_count(self) -> None:
        assert _gate().evaluate([], {"mock.credentials.count": True}).verdict is Verdict.SHIP

    def test_split_suggestion(self) -> None:
        result = _gate().evaluate([], diff_summary=DiffSummary(files_changed=25, lines_added=10))
        assert result.verdict is Verdict.SHIP
        assert [a.priority for a in result.recommended_actions] == ["low"]


class TestStrictness:
    def test_paranoid_promotes_flaky_tests(self) -> None:
        signals = {"tests.flaky": True}
        assert _gate().evaluate([], signals).verdict is Verdict.WARN
        paranoid = _gate(strictness="paranoid").evaluate([], signals)
        assert paranoid.verdict is Verdict.BLOCK
        assert paranoid.blocking_reasons[0].severity is BlockSeverity.HIGH

    def test_relaxed_drops_coverage(self) -> None:
        signals = {"tests.coverage.percent": 10.0}
        assert _gate().evaluate([], signals).verdict is Verdict.WARN
        assert _gate(strictness="relaxed").evaluate([], signals).verdict is Verdict.SHIP

    def test_disabled_rules(self) -> None:
        signals = {"runtime.auth.bypass": True}
        assert _gate(disabled_rules=("auth-bypass",)).evaluate([], signals).verdict is Verdict.SHIP


class TestCustomRules:
    def test_threshold_rule(self) -> None:
        spec = CustomRuleSpec(
            rule_id="bundle-size", signal="bundle.kb", op="gt", threshold=500, message="Bundle too large",
            severity="critical",
        )  # fmt: skip
        gate = _gate(custom_block_rules=(spec,))
        blocked = gate.evaluate([], {"bundle.kb": 600.0})
        assert blocked.blocking_reasons[0].message == "Bundle too large"
        assert blocked.blocking_reasons[0].severity is BlockSeverity.CRITICAL
        assert gate.evaluate([], {"bundle.kb": 400.0}).verdict is Verdict.SHIP
        assert gate.evaluate([], {}).verdict is Verdict.SHIP

    def test_truthy_warn_rule(self) -> None:
        spec = CustomRuleSpec(rule_id="todo-left", signal="quality.todo", message="TODO left in diff")
        gate = _gate(custom_warn_rules=(spec,))
        assert gate.evaluate([], {"quality.todo": True}).verdict is Verdict.WARN

    def test_runtime_rule_sees_context(self) -> None:
        gate = _gate()
        gate.add_rule(
            create_block_rule("main-freeze", "Main is frozen", lambda inp: inp.context.get("branch") == "main")
        )
        assert gate.evaluate([], {}, context={"branch": "main"}).verdict is Verdict.BLOCK
        assert gate.evaluate([], {}, context={"branch": "dev"}).verdict is Verdict.SHIP
        assert gate.rules().block[-1].type is RuleType.BLOCK


class TestSignals:
    def test_aggregate(self, make_receipt) -> None:
        receipts = [make_receipt(signals={"a": True}), make_receipt(signals={"a": False, "b": 1.0})]
        assert aggregate_signals(receipts) == {"a": False, "b": 1.0}

    def test_finding_signals(self) -> None:
        assert finding_signals([make_finding("critical"), make_finding("low")]) == {
            "static.findings.critical.count": 1.0,
            "static.findings.high.count": 0.0,
            "static.findings.any": True,
        }

    def test_diff_signals(self) -> None:
        signals = diff_signals(DiffSummary(files_changed=2, lines_added=400, lines_removed=200))
        assert signals["diff.large"] is True
        assert signals["diff.filesChanged"] == 2.0

    def test_diff_signals_default_threshold(self) -> None:
        at_limit = DiffSummary(files_changed=1, lines_added=SAFETY_LIMITS.max_lines_changed, lines_removed=0)
        over_limit = DiffSummary(files_changed=1, lines_added=SAFETY_LIMITS.max_lines_changed + 1, lines_removed=0)
        assert diff_signals(at_limit)["diff.large"] is False
        assert diff_signals(over_limit)["diff.large"] is True
        assert GateConfig().large_diff_lines == SAFETY_LIMITS.max_lines_changed


class TestFormat:
    def test_block_rendering(self, make_receipt) -> None:
        result = _gate().evaluate([make_receipt(ReceiptKind.SECURITY, {"security.secrets.detected": True})])
        text = format_ship_gate_result(result)
        assert text.startswith("[BLOCK] Ship Gate Verdict: BLOCK")
        assert "x [critical] Secrets detected in diff or logs" in text
        assert "!!! Fix: Secrets detected in diff or logs" in text
