"""Application composition root -- wires all layers into a runnable FastAPI app.

- Reads configuration from environment variables
- Instantiates the port adapters (truthpack files, evidence store, git, findings)
- Builds a fresh ShipGateGraph per request from shared dependencies
- Mounts the gate router onto the FastAPI app

Entry point: uvicorn src.main:app --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import TYPE_CHECKING

from src.gate.config import load_gate_config
from src.gate.graph import GraphDeps, ShipGateGraph
from src.gate.ship_gate import ShipGate
from src.gateway.api.gate import create_gate_router
from src.gateway.app import create_app
from src.gateway.metrics.gate_metrics import GateMetrics
from src.infra.repo.findings_file import DEFAULT_FINDINGS_PATH, JsonFindingsProvider
from src.infra.repo.git_diff import GitDiffProvider
from src.receipts.store import DEFAULT_EVIDENCE_DIR, create_evidence_store
from src.safety.timeout import TimeoutManager
from src.verify.ground_truth import DEFAULT_TRUTHPACK_DIR, FileTruthpackReader, GroundTruth

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from fastapi import FastAPI

logger = logging.getLogger(__name__)


def build_app() -> FastAPI:
    """Build the application: instantiate adapters, wire dependencies, mount routers.

    This function is the single composition root. All DI wiring happens here.
    """
    # -- Configuration from environment --
    project_root = Path(os.environ.get("SHIPGATE_PROJECT_ROOT", ".")).resolve()
    truthpack_dir = os.environ.get("SHIPGATE_TRUTHPACK_DIR", DEFAULT_TRUTHPACK_DIR)
    evidence_dir = os.environ.get("SHIPGATE_EVIDENCE_DIR", DEFAULT_EVIDENCE_DIR)
    config_path = os.environ.get("SHIPGATE_CONFIG") or str(project_root / "shipgate.yaml")
    findings_path = os.environ.get("SHIPGATE_FINDINGS_FILE") or str(project_root / DEFAULT_FINDINGS_PATH)

    gate_config = load_gate_config(config_path)

    # -- Adapters --
    ground_truth = GroundTruth(FileTruthpackReader(project_root, truthpack_dir))
    store = create_evidence_store(project_root, evidence_dir)
    diff_provider = GitDiffProvider(project_root)
    findings_provider = JsonFindingsProvider(findings_path)
    metrics = GateMetrics()

    def graph_factory() -> ShipGateGraph:
        ground_truth.clear_cache()
        return ShipGateGraph(
            GraphDeps(
                ground_truth=ground_truth,
                receipt_store=store,
                diff_provider=diff_provider,
                findings_provider=findings_provider,
                gate=ShipGate(gate_config),
                timeouts=TimeoutManager(),
                metrics=metrics,
            )
        )

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        await store.initialize()
        logger.info("Evidence store ready at %s", store.base_dir)
        yield

    application = create_app(
        routers=[
            create_gate_router(
                graph_factory=graph_factory,
                store=store,
                ground_truth=ground_truth,
                metrics=metrics,
            )
        ],
        lifespan=lifespan,
    )
    application.state.gate_config = gate_config
    application.state.receipt_store = store

    logger.info(
        "Ship gate app assembled for %s (strictness=%s): %d routes mounted",
        project_root,
        gate_config.strictness,
        len(application.routes),
    )
    return application


app = build_app()
