"""Ship gate API -- evaluate changes, browse receipts, scan for ghost refs.

- POST /api/v1/gate/evaluate             -> full graph run, ShipGateResult + canShip
- POST /api/v1/gate/quick-check          -> can_ship / verdict / messages only
- GET  /api/v1/receipts                  -> query receipts (run_id, kind, limit)
- GET  /api/v1/receipts/{receipt_id}     -> one receipt + signature check
- POST /api/v1/verify/hallucinations     -> hallucination report for one file
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, Query
from pydantic import BaseModel, Field

from src.gate.graph import ShipGateRequest, quick_ship_check
from src.ports.receipt_store_port import ReceiptQuery
from src.receipts.generator import verify_gate_receipt
from src.shared.errors import GraphExecutionError, InputValidationError, NotFoundError
from src.shared.types import ReceiptKind
from src.verify.hallucination import DetectorConfig, HallucinationDetector, Strictness

if TYPE_CHECKING:
    from collections.abc import Callable

    from src.gate.graph import ShipGateGraph
    from src.gateway.metrics.gate_metrics import GateMetrics
    from src.ports.receipt_store_port import ReceiptStorePort
    from src.verify.ground_truth import GroundTruth

logger = logging.getLogger(__name__)


class EvaluateRequest(BaseModel):
    run_ids: list[str] = Field(default_factory=list)
    base: str = "HEAD~1"
    head: str = "HEAD"
    run_id: str | None = None

    def to_request(self) -> ShipGateRequest:
        return ShipGateRequest(run_ids=tuple(self.run_ids), base=self.base, head=self.head, run_id=self.run_id)


class QuickCheckResponse(BaseModel):
    can_ship: bool
    verdict: str
    blocking_reasons: list[str]
    warnings: list[str]


class ReceiptListResponse(BaseModel):
    receipts: list[dict[str, Any]]
    total: int


class HallucinationScanRequest(BaseModel):
    content: str = Field(max_length=1_000_000)
    file_path: str = Field(min_length=1)
    strictness: Strictness = Strictness.MEDIUM


def create_gate_router(
    *,
    graph_factory: Callable[[], ShipGateGraph],
    store: ReceiptStorePort,
    ground_truth: GroundTruth,
    metrics: GateMetrics | None = None,
) -> APIRouter:
    """Create the ship gate API router.

    graph_factory must return a fresh graph per call; a graph carries its
    own run budget.
    """
    router = APIRouter(prefix="/api/v1", tags=["gate"])

    @router.post("/gate/evaluate")
    async def evaluate(body: EvaluateRequest) -> dict[str, Any]:
        outcome = await graph_factory().run(body.to_request())
        if outcome.verdict is None:
            raise GraphExecutionError(outcome.state.current_node.value, outcome.error or "Unknown error")
        return {
            **outcome.verdict.to_dict(),
            "canShip": outcome.verdict.can_ship,
            "runId": outcome.state.run_id,
            "truthpackHash": outcome.state.truthpack_hash,
            "explanation": outcome.state.explanation,
            "durationMs": outcome.duration_ms,
        }

    @router.post("/gate/quick-check", response_model=QuickCheckResponse)
    async def quick_check(body: EvaluateRequest) -> QuickCheckResponse:
        graph = graph_factory()
        return QuickCheckResponse(**await quick_ship_check(graph.deps, body.to_request()))

    @router.get("/receipts", response_model=ReceiptListResponse)
    async def list_receipts(
        run_id: str | None = None,
        kind: str | None = None,
        limit: int = Query(default=50, ge=1, le=500),
    ) -> ReceiptListResponse:
        receipt_kind = None
        if kind:
            try:
                receipt_kind = ReceiptKind(kind)
            except ValueError:
                raise InputValidationError(f"Invalid receipt kind: {kind}", field="kind") from None
        receipts = await store.query_receipts(ReceiptQuery(run_id=run_id, kind=receipt_kind, limit=limit))
        return ReceiptListResponse(receipts=[r.to_dict() for r in receipts], total=len(receipts))

    @router.get("/receipts/{receipt_id}")
    async def get_receipt(receipt_id: str) -> dict[str, Any]:
        receipt = await store.get_receipt(receipt_id)
        if receipt is None:
            raise NotFoundError("Receipt", receipt_id)
        return {**receipt.to_dict(), "signatureValid": verify_gate_receipt(receipt)}

    @router.post("/verify/hallucinations")
    async def scan_hallucinations(body: HallucinationScanRequest) -> dict[str, Any]:
        detector = HallucinationDetector(ground_truth, DetectorConfig(strictness=body.strictness))
        report = await detector.detect(body.content, body.file_path)
        if metrics is not None and report.by_type:
            metrics.record_candidates(report.by_type)
        logger.info("Scanned %s: %d candidates (passed=%s)", body.file_path, report.total, report.passed)
        return report.to_dict()

    return router
