"""Tests for the ship gate API router.

- evaluate returns the verdict plus canShip, runId and explanation
- quick-check reduces the outcome to messages, ERROR on graph failure
- receipts endpoints list, filter and verify signatures
- hallucination scans report ghost references and feed the metrics

Acceptance: pytest tests/unit/gateway/test_gate_api.py -v
"""

from __future__ import annotations

from dataclasses import replace
from typing import TYPE_CHECKING

import pytest
from httpx import ASGITransport, AsyncClient
from prometheus_client import CollectorRegistry

from src.gate.graph import GraphDeps, ShipGateGraph
from src.gateway.api.gate import create_gate_router
from src.gateway.app import create_app
from src.gateway.metrics.gate_metrics import GateMetrics
from src.ports.repo_port import DiffProvider, DiffResult, StaticDiffProvider, StaticFindingsProvider
from src.receipts.store import InMemoryReceiptStore
from src.shared.errors import EvidenceUnavailableError
from src.shared.types import ReceiptKind

if TYPE_CHECKING:
    from src.verify.ground_truth import GroundTruth
    from tests.conftest import ReceiptFactory


class _BrokenDiffProvider(DiffProvider):
    async def get_diff(self, base: str = "HEAD", head: str | None = None) -> DiffResult:
        raise EvidenceUnavailableError("git", "not a git repository")


class _Harness:
    def __init__(self, ground_truth: GroundTruth) -> None:
        self.registry = CollectorRegistry()
        self.metrics = GateMetrics(registry=self.registry)
        self.store = InMemoryReceiptStore()
        self.diff_provider: DiffProvider = StaticDiffProvider(
            DiffResult(files=("src/routes/orders.ts",), lines_added=4, text="orders")
        )
        router = create_gate_router(
            graph_factory=self.graph,
            store=self.store,
            ground_truth=ground_truth,
            metrics=self.metrics,
        )
        self._ground_truth = ground_truth
        self.app = create_app(routers=[router], registry=self.registry)
        self.client = AsyncClient(transport=ASGITransport(app=self.app), base_url="http://test")

    def graph(self) -> ShipGateGraph:
        return ShipGateGraph(
            GraphDeps(
                ground_truth=self._ground_truth,
                receipt_store=self.store,
                diff_provider=self.diff_provider,
                findings_provider=StaticFindingsProvider(),
                metrics=self.metrics,
            )
        )

    def sample(self, name: str, labels: dict[str, str]) -> float | None:
        return self.registry.get_sample_value(name, labels)


@pytest.fixture
def harness(ground_truth: GroundTruth) -> _Harness:
    return _Harness(ground_truth)


class TestEvaluate:
    @pytest.mark.asyncio
    async def test_clean_change_ships(self, harness: _Harness) -> None:
        resp = await harness.client.post("/api/v1/gate/evaluate", json={"run_id": "run_api"})
        assert resp.status_code == 200
        body = resp.json()
        assert body["verdict"] == "SHIP"
        assert body["canShip"] is True
        assert body["runId"] == "run_api"
        assert body["blockingReasons"] == []
        assert body["explanation"] is None
        assert harness.sample("shipgate_verdicts_total", {"verdict": "SHIP"}) == 1.0

    @pytest.mark.asyncio
    async def test_blocking_receipt(self, harness: _Harness, make_receipt: ReceiptFactory) -> None:
        await harness.store.add(make_receipt(ReceiptKind.RUNTIME, {"runtime.auth.bypass": True}))
        body = (await harness.client.post("/api/v1/gate/evaluate", json={})).json()
        assert body["verdict"] == "BLOCK"
        assert body["canShip"] is False
        assert body["blockingReasons"]

    @pytest.mark.asyncio
    async def test_graph_failure_is_500(self, harness: _Harness) -> None:
        harness.diff_provider = _BrokenDiffProvider()
        resp = await harness.client.post("/api/v1/gate/evaluate", json={})
        assert resp.status_code == 500
        assert resp.json() == {"error": "GRAPH_ERROR", "message": "[CollectReceipts] not a git repository"}

    @pytest.mark.asyncio
    async def test_body_validation(self, harness: _Harness) -> None:
        resp = await harness.client.post("/api/v1/gate/evaluate", json={"run_ids": "run_a"})
        assert resp.status_code == 422


class TestQuickCheck:
    @pytest.mark.asyncio
    async def test_messages_only(self, harness: _Harness) -> None:
        body = (await harness.client.post("/api/v1/gate/quick-check", json={})).json()
        assert body == {"can_ship": True, "verdict": "SHIP", "blocking_reasons": [], "warnings": []}

    @pytest.mark.asyncio
    async def test_failure_reports_error(self, harness: _Harness) -> None:
        harness.diff_provider = _BrokenDiffProvider()
        resp = await harness.client.post("/api/v1/gate/quick-check", json={})
        assert resp.status_code == 200
        assert resp.json() == {
            "can_ship": False,
            "verdict": "ERROR",
            "blocking_reasons": ["not a git repository"],
            "warnings": [],
        }


class TestReceipts:
    @pytest.mark.asyncio
    async def test_list_and_filter(self, harness: _Harness, make_receipt: ReceiptFactory) -> None:
        await harness.store.add(make_receipt(ReceiptKind.RUNTIME, run_id="run_a"))
        await harness.store.add(make_receipt(ReceiptKind.TEST, run_id="run_a"))
        await harness.store.add(make_receipt(ReceiptKind.TEST, run_id="run_b"))

        everything = (await harness.client.get("/api/v1/receipts")).json()
        assert everything["total"] == 3

        tests_in_a = (await harness.client.get("/api/v1/receipts", params={"run_id": "run_a", "kind": "test"})).json()
        assert tests_in_a["total"] == 1
        assert tests_in_a["receipts"][0]["kind"] == "test"

    @pytest.mark.asyncio
    async def test_invalid_kind(self, harness: _Harness) -> None:
        resp = await harness.client.get("/api/v1/receipts", params={"kind": "magic"})
        assert resp.status_code == 422
        assert resp.json() == {"error": "VALIDATION", "message": "Invalid receipt kind: magic"}

    @pytest.mark.asyncio
    async def test_get_verifies_signature(self, harness: _Harness, make_receipt: ReceiptFactory) -> None:
        receipt = await harness.store.add(make_receipt(receipt_id="rcpt_signed"))
        body = (await harness.client.get("/api/v1/receipts/rcpt_signed")).json()
        assert body["receiptId"] == "rcpt_signed"
        assert body["signatureValid"] is True

        await harness.store.add(replace(receipt, receipt_id="rcpt_forged", signature="0" * 64))
        forged = (await harness.client.get("/api/v1/receipts/rcpt_forged")).json()
        assert forged["signatureValid"] is False

    @pytest.mark.asyncio
    async def test_missing_receipt(self, harness: _Harness) -> None:
        resp = await harness.client.get("/api/v1/receipts/rcpt_gone")
        assert resp.status_code == 404
        assert resp.json() == {"error": "NOT_FOUND", "message": "Receipt not found: rcpt_gone"}


class TestHallucinationScan:
    @pytest.mark.asyncio
    async def test_ghost_env_reported(self, harness: _Harness) -> None:
        content = "const key = process.env.STRIPE_SECRET\nconst db = process.env.DATABASE_URL\n"
        resp = await harness.client.post(
            "/api/v1/verify/hallucinations", json={"content": content, "file_path": "src/pay.ts"}
        )
        assert resp.status_code == 200
        body = resp.json()
        assert [c["value"] for c in body["candidates"]] == ["STRIPE_SECRET"]
        assert body["summary"]["byType"] == {"env": 1}
        assert harness.sample("shipgate_hallucination_candidates_total", {"type": "env"}) == 1.0

    @pytest.mark.asyncio
    async def test_clean_file(self, harness: _Harness) -> None:
        resp = await harness.client.post(
            "/api/v1/verify/hallucinations", json={"content": "export const x = 1\n", "file_path": "src/x.ts"}
        )
        body = resp.json()
        assert body["candidates"] == []
        assert body["passed"] is True

    @pytest.mark.asyncio
    async def test_requires_file_path(self, harness: _Harness) -> None:
        resp = await harness.client.post("/api/v1/verify/hallucinations", json={"content": "x", "file_path": ""})
        assert resp.status_code == 422
