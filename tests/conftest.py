"""Root conftest - shared fixtures for all test layers.

Markers:
    @pytest.mark.unit       - No external deps
    @pytest.mark.smoke      - Fast subset
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from src.shared.types import Receipt, ReceiptKind, Signal, SignalValue
from src.verify.ground_truth import GroundTruth, InMemoryTruthpackReader

SAMPLE_TRUTHPACK: dict[str, Any] = {
    "routes": {
        "routes": [
            {"method": "GET", "path": "/api/users", "file": "src/routes/users.ts", "line": 3},
            {"method": "GET", "path": "/api/users/:id", "file": "src/routes/users.ts", "line": 12},
            {"method": "POST", "path": "/api/orders", "auth": {"required": True}, "file": "src/routes/orders.ts"},
            {"method": "GET", "path": "/api/health"},
        ]
    },
    "env": {"variables": [{"name": "DATABASE_URL"}, {"name": "API_KEY"}]},
    "auth": {"protected": ["/api/admin/*"]},
    "contracts": {
        "contracts": [
            {"path": "/api/users", "method": "GET", "name": "UserList", "response": {"type": "User"}},
        ]
    },
    "dependencies": {"dependencies": {"react": "^18.2.0", "zod": "^3.22.0"}},
    "meta": {"version": "2024.1"},
}


@pytest.fixture
def truthpack_sections() -> dict[str, Any]:
    return {k: v for k, v in SAMPLE_TRUTHPACK.items()}


@pytest.fixture
def ground_truth(truthpack_sections: dict[str, Any]) -> GroundTruth:
    """In-memory ground truth with two GET user routes and one protected POST."""
    return GroundTruth(InMemoryTruthpackReader(truthpack_sections))


@pytest.fixture
def project_root(tmp_path: Path) -> Path:
    """Empty project directory with a src/ folder."""
    (tmp_path / "src").mkdir()
    return tmp_path


ReceiptFactory = Callable[..., Receipt]


@pytest.fixture
def make_receipt() -> ReceiptFactory:
    """Build receipts with increasing timestamps (later calls are newer)."""
    base = datetime(2024, 1, 1, tzinfo=UTC)
    counter = {"n": 0}

    def _make(
        kind: ReceiptKind = ReceiptKind.RUNTIME,
        signals: dict[str, SignalValue] | None = None,
        *,
        run_id: str = "run_test",
        receipt_id: str | None = None,
        summary: str = "receipt",
    ) -> Receipt:
        counter["n"] += 1
        n = counter["n"]
        return Receipt(
            receipt_id=receipt_id or f"rcpt_{n:04d}",
            kind=kind,
            summary=summary,
            run_id=run_id,
            timestamp=base + timedelta(seconds=n),
            signals=tuple(Signal(id=k, value=v) for k, v in (signals or {}).items()),
        )

    return _make
