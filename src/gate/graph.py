"""Ship gate orchestration graph.

- Enum-keyed state machine: CollectReceipts -> EvaluatePolicy ->
  ExplainVerdict -> EmitVerdict -> Complete
- State is a frozen dataclass; every node returns a new one
- The first error halts the run and no partial verdict is emitted
- Iterations are capped so a bad transition can never loop forever
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import TYPE_CHECKING, Any

from src.gate.ship_gate import ShipGate, aggregate_signals, diff_signals, finding_signals
from src.ports.receipt_store_port import ReceiptQuery
from src.safety.timeout import TimeoutManager
from src.shared.errors import GraphExecutionError
from src.shared.logging.error_handler import log_structured_error
from src.shared.run_context import new_run_id, run_context
from src.shared.types import SAFETY_LIMITS, DiffSummary, Receipt, ReceiptKind, ShipGateResult, StaticFinding

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from src.gateway.metrics.gate_metrics import GateMetrics
    from src.ports.receipt_store_port import ReceiptStorePort
    from src.ports.repo_port import DiffProvider, FindingsProvider
    from src.shared.types import SignalValue
    from src.verify.ground_truth import GroundTruth, RouteDef

logger = logging.getLogger(__name__)

MAX_ITERATIONS = SAFETY_LIMITS.max_graph_iterations
RECEIPT_QUERY_LIMIT = 50
FINDING_SEVERITIES = ("critical", "high", "medium", "low")


class GraphNode(Enum):
    COLLECT_RECEIPTS = "CollectReceipts"
    EVALUATE_POLICY = "EvaluatePolicy"
    EXPLAIN_VERDICT = "ExplainVerdict"
    EMIT_VERDICT = "EmitVerdict"
    COMPLETE = "Complete"


@dataclass(frozen=True)
class ShipGateRequest:
    run_ids: tuple[str, ...] = ()
    base: str = "HEAD~1"
    head: str = "HEAD"
    run_id: str | None = None
    findings_limit: int = 100


@dataclass(frozen=True)
class ShipGateState:
    run_id: str
    current_node: GraphNode = GraphNode.COLLECT_RECEIPTS
    truthpack_version: str = ""
    truthpack_hash: str = ""
    diff_summary: DiffSummary | None = None
    static_findings: dict[str, tuple[StaticFinding, ...]] = field(default_factory=dict)
    runtime_receipts: tuple[Receipt, ...] = ()
    test_receipts: tuple[Receipt, ...] = ()
    policy_signals: dict[str, SignalValue] = field(default_factory=dict)
    result: ShipGateResult | None = None
    explanation: str | None = None
    error: str | None = None
    iterations: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "runId": self.run_id,
            "currentNode": self.current_node.value,
            "truthpackVersion": self.truthpack_version,
            "truthpackHash": self.truthpack_hash,
            "diffSummary": self.diff_summary.to_dict() if self.diff_summary else None,
            "staticFindings": {k: len(v) for k, v in self.static_findings.items()},
            "runtimeReceipts": [r.receipt_id for r in self.runtime_receipts],
            "testReceipts": [r.receipt_id for r in self.test_receipts],
            "result": self.result.to_dict() if self.result else None,
            "explanation": self.explanation,
            "error": self.error,
            "iterations": self.iterations,
        }


@dataclass(frozen=True)
class GraphRunResult:
    success: bool
    state: ShipGateState
    verdict: ShipGateResult | None = None
    error: str | None = None
    duration_ms: int = 0


@dataclass
class GraphDeps:
    """Everything one graph run may touch. Passed explicitly, never global."""

    ground_truth: GroundTruth
    receipt_store: ReceiptStorePort
    diff_provider: DiffProvider
    findings_provider: FindingsProvider
    gate: ShipGate = field(default_factory=ShipGate)
    timeouts: TimeoutManager = field(default_factory=TimeoutManager)
    explainer: Callable[[ShipGateResult, ShipGateState], Awaitable[str]] | None = None
    on_state_change: Callable[[ShipGateState], None] | None = None
    on_verdict: Callable[[ShipGateResult], None] | None = None
    metrics: GateMetrics | None = None


def extract_affected_routes(routes: list[RouteDef], diff_text: str) -> tuple[str, ...]:
    """``METHOD:path`` for each route with a path segment (len > 2) in the diff."""
    affected: list[str] = []
    for route in routes:
        segments = [s for s in route.path.split("/") if len(s) > 2]
        if any(s in diff_text for s in segments):
            key = f"{route.method.upper()}:{route.path}"
            if key not in affected:
                affected.append(key)
    return tuple(affected)


def bucket_findings(findings: list[StaticFinding]) -> dict[str, tuple[StaticFinding, ...]]:
    buckets: dict[str, list[StaticFinding]] = {s: [] for s in FINDING_SEVERITIES}
    for finding in findings:
        buckets.setdefault(finding.severity.lower(), []).append(finding)
    return {k: tuple(v) for k, v in buckets.items()}


class ShipGateGraph:
    """Runs one ship gate evaluation as a bounded state machine."""

    def __init__(self, deps: GraphDeps, *, max_iterations: int = MAX_ITERATIONS) -> None:
        self._deps = deps
        self._max_iterations = max_iterations
        self._handlers: dict[GraphNode, Callable[[ShipGateState, ShipGateRequest], Awaitable[ShipGateState]]] = {
            GraphNode.COLLECT_RECEIPTS: self._collect_receipts,
            GraphNode.EVALUATE_POLICY: self._evaluate_policy,
            GraphNode.EXPLAIN_VERDICT: self._explain_verdict,
            GraphNode.EMIT_VERDICT: self._emit_verdict,
        }

    @property
    def deps(self) -> GraphDeps:
        return self._deps

    def _transition(self, state: ShipGateState) -> None:
        if self._deps.on_state_change is not None:
            self._deps.on_state_change(state)

    async def run(self, request: ShipGateRequest | None = None) -> GraphRunResult:
        request = request or ShipGateRequest()
        started = time.monotonic()
        with run_context(request.run_id or new_run_id()) as run_id:
            state = ShipGateState(run_id=run_id)
            self._deps.timeouts.start_run()
            try:
                if self._deps.metrics is not None:
                    with self._deps.metrics.timer():
                        state = await self._loop(state, request)
                else:
                    state = await self._loop(state, request)
            finally:
                self._deps.timeouts.stop_run()

        success = state.error is None and state.current_node is GraphNode.COMPLETE
        duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "Ship gate run %s finished at %s in %dms (success=%s)",
            state.run_id,
            state.current_node.value,
            duration_ms,
            success,
        )
        return GraphRunResult(
            success=success,
            state=state,
            verdict=state.result if success else None,
            error=state.error,
            duration_ms=duration_ms,
        )

    async def _loop(self, state: ShipGateState, request: ShipGateRequest) -> ShipGateState:
        while state.current_node is not GraphNode.COMPLETE:
            if state.iterations >= self._max_iterations:
                return self._fail(state, GraphExecutionError(state.current_node.value, "Max iterations exceeded"))
            handler = self._handlers.get(state.current_node)
            if handler is None:
                return self._fail(state, GraphExecutionError(str(state.current_node), "Unknown node"))
            state = replace(state, iterations=state.iterations + 1)
            try:
                state = await handler(state, request)
            except Exception as exc:  # noqa: BLE001 -- any node failure halts the run
                return self._fail(state, exc)
            self._transition(state)
        return state

    def _fail(self, state: ShipGateState, exc: Exception) -> ShipGateState:
        node = state.current_node.value
        log_structured_error(logger, exc, run_id=state.run_id, node=node, context={"iterations": state.iterations})
        if self._deps.metrics is not None:
            self._deps.metrics.record_graph_error(node)
        failed = replace(state, error=str(exc), result=None)
        self._transition(failed)
        return failed

    async def _collect_receipts(self, state: ShipGateState, request: ShipGateRequest) -> ShipGateState:
        async def collect() -> ShipGateState:
            snapshot = await self._deps.ground_truth.snapshot()
            diff = await self._deps.diff_provider.get_diff(request.base, request.head)
            routes = await self._deps.ground_truth.routes()
            summary = DiffSummary(
                files_changed=len(diff.files),
                lines_added=diff.lines_added,
                lines_removed=diff.lines_removed,
                files=diff.files,
                affected_routes=extract_affected_routes(routes, diff.text),
            )
            runtime = await self._runtime_receipts(request.run_ids)
            tests = await self._deps.receipt_store.query_receipts(
                ReceiptQuery(kind=ReceiptKind.TEST, limit=RECEIPT_QUERY_LIMIT)
            )
            findings = await self._deps.findings_provider.get_findings(limit=request.findings_limit)
            return replace(
                state,
                current_node=GraphNode.EVALUATE_POLICY,
                truthpack_version=snapshot.version,
                truthpack_hash=snapshot.hash,
                diff_summary=summary,
                runtime_receipts=tuple(runtime),
                test_receipts=tuple(tests),
                static_findings=bucket_findings(findings),
            )

        new_state: ShipGateState = await self._deps.timeouts.with_action_timeout(collect, "CollectReceipts")
        logger.debug(
            "Collected %d runtime and %d test receipts for %s",
            len(new_state.runtime_receipts),
            len(new_state.test_receipts),
            state.run_id,
        )
        return new_state

    async def _runtime_receipts(self, run_ids: tuple[str, ...]) -> list[Receipt]:
        store = self._deps.receipt_store
        if not run_ids:
            return await store.query_receipts(ReceiptQuery(kind=ReceiptKind.RUNTIME, limit=RECEIPT_QUERY_LIMIT))
        collected: list[Receipt] = []
        for run_id in run_ids:
            receipts = await store.get_run_receipts(run_id)
            collected.extend(r for r in receipts if r.kind in (ReceiptKind.RUNTIME, ReceiptKind.CHAOS))
        return collected

    async def _evaluate_policy(self, state: ShipGateState, request: ShipGateRequest) -> ShipGateState:
        receipts = (*state.runtime_receipts, *state.test_receipts)
        signals = aggregate_signals(receipts)
        findings = [f for bucket in state.static_findings.values() for f in bucket]
        signals.update(finding_signals(findings))
        if state.diff_summary is not None:
            signals.update(diff_signals(state.diff_summary, self._deps.gate.config.large_diff_lines))

        result = self._deps.gate.evaluate(
            receipts,
            signals,
            diff_summary=state.diff_summary,
            context={"runId": state.run_id, "truthpackHash": state.truthpack_hash},
        )
        return replace(state, current_node=GraphNode.EXPLAIN_VERDICT, policy_signals=signals, result=result)

    async def _explain_verdict(self, state: ShipGateState, request: ShipGateRequest) -> ShipGateState:
        if state.result is None:
            raise GraphExecutionError(GraphNode.EXPLAIN_VERDICT.value, "No result to explain")
        explanation = None
        if self._deps.explainer is not None:
            explanation = await self._deps.explainer(state.result, state)
        return replace(state, current_node=GraphNode.EMIT_VERDICT, explanation=explanation)

    async def _emit_verdict(self, state: ShipGateState, request: ShipGateRequest) -> ShipGateState:
        if state.result is None:
            raise GraphExecutionError(GraphNode.EMIT_VERDICT.value, "No result to emit")
        if self._deps.on_verdict is not None:
            self._deps.on_verdict(state.result)
        if self._deps.metrics is not None:
            self._deps.metrics.record_verdict(state.result.verdict.value)
        return replace(state, current_node=GraphNode.COMPLETE)


async def run_ship_gate(deps: GraphDeps, request: ShipGateRequest | None = None) -> GraphRunResult:
    return await ShipGateGraph(deps).run(request)


async def quick_ship_check(deps: GraphDeps, request: ShipGateRequest | None = None) -> dict[str, Any]:
    """Run the graph and reduce the outcome to messages only."""
    outcome = await run_ship_gate(deps, request)
    if outcome.verdict is None:
        return {
            "can_ship": False,
            "verdict": "ERROR",
            "blocking_reasons": [outcome.error or "Unknown error"],
            "warnings": [],
        }
    return {
        "can_ship": outcome.verdict.can_ship,
        "verdict": outcome.verdict.verdict.value,
        "blocking_reasons": [r.message for r in outcome.verdict.blocking_reasons],
        "warnings": [w.message for w in outcome.verdict.warnings],
    }
