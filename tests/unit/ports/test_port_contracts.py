"""Layer 1: Port Schema assertion tests.

Verifies Port interfaces maintain expected method signatures, and that
every shipped adapter satisfies its port.
These tests catch accidental breaking changes to Port contracts.

Acceptance: pytest tests/unit/ports/test_port_contracts.py -v
"""

from __future__ import annotations

import inspect
from pathlib import Path

import pytest

from src.infra.repo.findings_file import JsonFindingsProvider
from src.infra.repo.git_diff import GitDiffProvider
from src.ports import SECTIONS
from src.ports.ground_truth_port import GroundTruthPort
from src.ports.receipt_store_port import ReceiptStorePort
from src.ports.repo_port import DiffProvider, FindingsProvider, StaticDiffProvider, StaticFindingsProvider
from src.receipts.store import FileReceiptStore, InMemoryReceiptStore
from src.verify.ground_truth import FileTruthpackReader, InMemoryTruthpackReader


@pytest.mark.unit
class TestGroundTruthPortContract:
    """GroundTruthPort must expose required methods."""

    def test_has_load_section(self) -> None:
        assert hasattr(GroundTruthPort, "load_section")
        params = list(inspect.signature(GroundTruthPort.load_section).parameters.keys())
        assert "name" in params

    def test_has_list_sections(self) -> None:
        assert hasattr(GroundTruthPort, "list_sections")

    def test_sections(self) -> None:
        assert SECTIONS == ("routes", "env", "auth", "contracts", "dependencies")

    def test_cannot_instantiate_abstract_port(self) -> None:
        with pytest.raises(TypeError):
            GroundTruthPort()  # type: ignore[abstract]

    def test_adapters_implement_port(self, tmp_path: Path) -> None:
        assert isinstance(InMemoryTruthpackReader(), GroundTruthPort)
        assert isinstance(FileTruthpackReader(tmp_path), GroundTruthPort)


@pytest.mark.unit
class TestReceiptStorePortContract:
    """ReceiptStorePort must expose required methods."""

    @pytest.mark.parametrize("method", ["store_receipt", "get_receipt", "query_receipts", "get_run_receipts"])
    def test_methods_are_async(self, method: str) -> None:
        assert inspect.iscoroutinefunction(getattr(ReceiptStorePort, method))

    def test_has_get_receipt(self) -> None:
        params = list(inspect.signature(ReceiptStorePort.get_receipt).parameters.keys())
        assert "receipt_id" in params

    def test_stores_satisfy_protocol(self, tmp_path: Path) -> None:
        assert isinstance(InMemoryReceiptStore(), ReceiptStorePort)
        assert isinstance(FileReceiptStore(tmp_path), ReceiptStorePort)


@pytest.mark.unit
class TestRepoPortsContract:
    """DiffProvider and FindingsProvider must expose required methods."""

    def test_diff_provider_signature(self) -> None:
        params = list(inspect.signature(DiffProvider.get_diff).parameters.keys())
        assert "base" in params
        assert "head" in params

    def test_findings_provider_signature(self) -> None:
        params = list(inspect.signature(FindingsProvider.get_findings).parameters.keys())
        assert "limit" in params

    def test_adapters_implement_ports(self, tmp_path: Path) -> None:
        assert isinstance(StaticDiffProvider(), DiffProvider)
        assert isinstance(GitDiffProvider(tmp_path), DiffProvider)
        assert isinstance(StaticFindingsProvider(), FindingsProvider)
        assert isinstance(JsonFindingsProvider(tmp_path / "findings.json"), FindingsProvider)
