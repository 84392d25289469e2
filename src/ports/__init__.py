"""Port interfaces - Layer boundary contracts.

Ports (4):
    GroundTruthPort   - Truthpack section reads (soft dep, degrades to empty)
    ReceiptStorePort  - Append-only evidence receipts (gate reads only)
    DiffProvider      - Working-tree diff for scope signals
    FindingsProvider  - Static-analysis findings
"""

from src.ports.ground_truth_port import SECTIONS, GroundTruthPort
from src.ports.receipt_store_port import (
    EvidenceFile,
    InlineEvidence,
    ReceiptDraft,
    ReceiptQuery,
    ReceiptStorePort,
)
from src.ports.repo_port import (
    DiffProvider,
    DiffResult,
    FindingsProvider,
    StaticDiffProvider,
    StaticFindingsProvider,
)

__all__ = [
    "SECTIONS",
    "DiffProvider",
    "DiffResult",
    "EvidenceFile",
    "FindingsProvider",
    "GroundTruthPort",
    "InlineEvidence",
    "ReceiptDraft",
    "ReceiptQuery",
    "ReceiptStorePort",
    "StaticDiffProvider",
    "StaticFindingsProvider",
]
