"""ReceiptStorePort - Append-only evidence receipt storage.

Receipts are written by verification runs and only ever read by the gate.
Both InMemoryReceiptStore and FileReceiptStore satisfy this protocol.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from src.shared.types import EvidenceRefType, Receipt, ReceiptKind, Signal, SignalValue


@dataclass(frozen=True)
class EvidenceFile:
    """An on-disk artifact copied into the store alongside a receipt."""

    source_path: str
    type: EvidenceRefType


@dataclass(frozen=True)
class InlineEvidence:
    """Artifact content handed over in memory (logs, small traces)."""

    data: bytes | str
    filename: str
    type: EvidenceRefType


@dataclass(frozen=True)
class ReceiptDraft:
    """Everything needed to store a receipt. The store assigns id and timestamp."""

    run_id: str
    kind: ReceiptKind
    summary: str
    signals: tuple[Signal, ...] = ()
    evidence_files: tuple[EvidenceFile, ...] = ()
    inline_evidence: tuple[InlineEvidence, ...] = ()


@dataclass(frozen=True)
class ReceiptQuery:
    """Receipt filter. Results are newest first, then paged."""

    run_id: str | None = None
    kind: ReceiptKind | None = None
    has_signal: str | None = None
    signal_value: tuple[str, SignalValue] | None = None
    limit: int = 50
    offset: int = 0


@runtime_checkable
class ReceiptStorePort(Protocol):
    """Protocol for receipt storage (structural typing)."""

    async def store_receipt(self, draft: ReceiptDraft) -> Receipt: ...

    async def get_receipt(self, receipt_id: str) -> Receipt | None: ...

    async def query_receipts(self, query: ReceiptQuery) -> list[Receipt]: ...

    async def get_run_receipts(self, run_id: str) -> list[Receipt]: ...
