"""Evidence receipt stores.

- Append-only: receipts are signed on write and never mutated
- InMemoryReceiptStore for tests and single-process use
- FileReceiptStore persists runs/<run_id>/<receipt_id>.json plus index.json,
  and copies evidence artifacts next to the receipt with a content hash
"""

from __future__ import annotations

import base64
import hashlib
import json
import logging
import shutil
import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Any

from src.ports.receipt_store_port import ReceiptQuery
from src.receipts.generator import sign_receipt, verify_gate_receipt
from src.shared.errors import EvidenceUnavailableError, InputValidationError
from src.shared.types import EvidenceRef, EvidenceRefType, Receipt, ReceiptKind

if TYPE_CHECKING:
    from src.ports.receipt_store_port import ReceiptDraft

logger = logging.getLogger(__name__)

DEFAULT_EVIDENCE_DIR = ".vibecheck/evidence"

_DEFAULT_EXTENSION = {
    EvidenceRefType.SCREENSHOT: ".png",
    EvidenceRefType.TRACE: ".json",
    EvidenceRefType.HAR: ".har",
    EvidenceRefType.LOG: ".log",
    EvidenceRefType.DIFF: ".diff",
    EvidenceRefType.VIDEO: ".webm",
}


def new_receipt_id() -> str:
    return f"rcpt_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"


def hash_evidence(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()[:16]


def _validate_draft(draft: ReceiptDraft) -> None:
    if not draft.run_id:
        raise InputValidationError("Receipt run_id is required", field="run_id")
    if not draft.summary:
        raise InputValidationError("Receipt summary is required", field="summary")
    for signal in draft.signals:
        if not signal.id:
            raise InputValidationError("Receipt signal id is required", field="signals")


def _matches(receipt: Receipt, query: ReceiptQuery) -> bool:
    if query.run_id and receipt.run_id != query.run_id:
        return False
    if query.kind is not None and receipt.kind is not query.kind:
        return False
    if query.has_signal and not any(s.id == query.has_signal for s in receipt.signals):
        return False
    if query.signal_value is not None:
        sid, value = query.signal_value
        if not any(s.id == sid and s.value == value for s in receipt.signals):
            return False
    return True


def apply_query(receipts: list[Receipt], query: ReceiptQuery) -> list[Receipt]:
    """Filter, sort newest first, then page."""
    results = [r for r in receipts if _matches(r, query)]
    results.sort(key=lambda r: r.timestamp, reverse=True)
    results = results[query.offset :]
    if query.limit:
        results = results[: query.limit]
    return results


class InMemoryReceiptStore:
    """In-memory receipt store for unit testing.

    Evidence artifacts are hashed but not kept.
    """

    def __init__(self) -> None:
        self._receipts: dict[str, Receipt] = {}

    async def store_receipt(self, draft: ReceiptDraft) -> Receipt:
        _validate_draft(draft)
        refs = []
        for inline in draft.inline_evidence:
            data = inline.data.encode("utf-8") if isinstance(inline.data, str) else inline.data
            refs.append(EvidenceRef(path=inline.filename, type=inline.type, hash=hash_evidence(data)))
        unsigned = Receipt(
            receipt_id=new_receipt_id(),
            kind=draft.kind,
            summary=draft.summary,
            run_id=draft.run_id,
            timestamp=datetime.now(UTC),
            evidence_refs=tuple(refs),
            signals=tuple(draft.signals),
        )
        receipt = replace(unsigned, signature=sign_receipt(unsigned))
        self._receipts[receipt.receipt_id] = receipt
        return receipt

    async def add(self, receipt: Receipt) -> Receipt:
        """Insert an already-built receipt (e.g. converted proof receipts)."""
        if not receipt.signature:
            receipt = replace(receipt, signature=sign_receipt(receipt))
        self._receipts[receipt.receipt_id] = receipt
        return receipt

    async def get_receipt(self, receipt_id: str) -> Receipt | None:
        return self._receipts.get(receipt_id)

    async def query_receipts(self, query: ReceiptQuery) -> list[Receipt]:
        return apply_query(list(self._receipts.values()), query)

    async def get_run_receipts(self, run_id: str) -> list[Receipt]:
        return apply_query(list(self._receipts.values()), ReceiptQuery(run_id=run_id, limit=0))


@dataclass(frozen=True)
class VerificationResult:
    valid: bool
    errors: tuple[str, ...] = ()


@dataclass
class StorageStats:
    total_receipts: int = 0
    total_files: int = 0
    total_bytes: int = 0
    by_kind: dict[str, int] = field(default_factory=lambda: {k.value: 0 for k in ReceiptKind})
    by_run: dict[str, dict[str, int]] = field(default_factory=dict)


@dataclass(frozen=True)
class PruneResult:
    deleted_receipts: int
    freed_bytes: int


class FileReceiptStore:
    """Filesystem-backed receipt store.

    Layout under base_dir::

        index.json                     all receipts, for fast queries
        runs/<run_id>/<receipt_id>.json
        runs/<run_id>/<receipt_id>_<artifact>

    The index is loaded lazily on first use. An unreadable index is logged
    and rebuilt empty.
    """

    def __init__(self, base_dir: str | Path, *, retention_days: int = 30) -> None:
        self._base = Path(base_dir)
        self._retention_days = retention_days
        self._index: dict[str, Receipt] = {}
        self._initialized = False

    @property
    def base_dir(self) -> Path:
        return self._base

    def _run_dir(self, run_id: str) -> Path:
        if "/" in run_id or "\\" in run_id or run_id in ("", ".", ".."):
            raise InputValidationError(f"Invalid run_id: {run_id!r}", field="run_id")
        return self._base / "runs" / run_id

    async def initialize(self) -> None:
        if self._initialized:
            return
        (self._base / "runs").mkdir(parents=True, exist_ok=True)
        self._load_index()
        self._initialized = True

    def _load_index(self) -> None:
        self._index.clear()
        path = self._base / "index.json"
        if not path.is_file():
            return
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            for item in data:
                receipt = Receipt.from_dict(item)
                self._index[receipt.receipt_id] = receipt
        except (OSError, ValueError, KeyError, TypeError) as exc:
            logger.warning("Receipt index %s unreadable, starting empty: %s", path, exc)
            self._index.clear()

    def _save_index(self) -> None:
        data = [r.to_dict() for r in self._index.values()]
        (self._base / "index.json").write_text(json.dumps(data, indent=2), encoding="utf-8")

    def _store_file(self, source: Path, ref_type: EvidenceRefType, run_dir: Path, receipt_id: str) -> EvidenceRef:
        try:
            content = source.read_bytes()
        except OSError as exc:
            raise EvidenceUnavailableError(str(source), f"Evidence file unreadable: {source}") from exc
        ext = source.suffix or _DEFAULT_EXTENSION[ref_type]
        filename = f"{receipt_id}_{ref_type.value}{ext}"
        shutil.copyfile(source, run_dir / filename)
        return EvidenceRef(path=filename, type=ref_type, hash=hash_evidence(content))

    def _store_inline(
        self, data: bytes | str, name: str, ref_type: EvidenceRefType, run_dir: Path, receipt_id: str
    ) -> EvidenceRef:
        content = data.encode("utf-8") if isinstance(data, str) else data
        if Path(name).name != name:
            raise InputValidationError(f"Invalid evidence filename: {name!r}", field="inline_evidence")
        filename = f"{receipt_id}_{name}"
        if not Path(name).suffix:
            filename += _DEFAULT_EXTENSION[ref_type]
        (run_dir / filename).write_bytes(content)
        return EvidenceRef(path=filename, type=ref_type, hash=hash_evidence(content))

    async def store_receipt(self, draft: ReceiptDraft) -> Receipt:
        await self.initialize()
        _validate_draft(draft)
        receipt_id = new_receipt_id()
        run_dir = self._run_dir(draft.run_id)
        run_dir.mkdir(parents=True, exist_ok=True)

        refs = [self._store_file(Path(f.source_path), f.type, run_dir, receipt_id) for f in draft.evidence_files]
        refs.extend(
            self._store_inline(i.data, i.filename, i.type, run_dir, receipt_id) for i in draft.inline_evidence
        )
        unsigned = Receipt(
            receipt_id=receipt_id,
            kind=draft.kind,
            summary=draft.summary,
            run_id=draft.run_id,
            timestamp=datetime.now(UTC),
            evidence_refs=tuple(refs),
            signals=tuple(draft.signals),
        )
        receipt = replace(unsigned, signature=sign_receipt(unsigned))

        (run_dir / f"{receipt_id}.json").write_text(json.dumps(receipt.to_dict(), indent=2), encoding="utf-8")
        self._index[receipt_id] = receipt
        self._save_index()
        logger.info("Stored receipt %s (%s) for run %s", receipt_id, receipt.kind.value, receipt.run_id)
        return receipt

    async def get_receipt(self, receipt_id: str) -> Receipt | None:
        await self.initialize()
        return self._index.get(receipt_id)

    async def query_receipts(self, query: ReceiptQuery) -> list[Receipt]:
        await self.initialize()
        return apply_query(list(self._index.values()), query)

    async def get_run_receipts(self, run_id: str) -> list[Receipt]:
        return await self.query_receipts(ReceiptQuery(run_id=run_id, limit=0))

    async def get_evidence_file(self, run_id: str, filename: str) -> bytes | None:
        await self.initialize()
        path = self._run_dir(run_id) / filename
        if Path(filename).name != filename or not path.is_file():
            return None
        return path.read_bytes()

    async def verify_receipt(self, receipt_id: str) -> VerificationResult:
        """Check the signature and re-hash every evidence artifact."""
        await self.initialize()
        receipt = self._index.get(receipt_id)
        if receipt is None:
            return VerificationResult(valid=False, errors=("Receipt not found",))

        errors: list[str] = []
        if not verify_gate_receipt(receipt):
            errors.append(f"Signature mismatch for {receipt_id}")
        run_dir = self._run_dir(receipt.run_id)
        for ref in receipt.evidence_refs:
            path = run_dir / ref.path
            if not path.is_file():
                errors.append(f"Evidence file missing: {ref.path}")
                continue
            if ref.hash:
                actual = hash_evidence(path.read_bytes())
                if actual != ref.hash:
                    errors.append(f"Hash mismatch for {ref.path}: expected {ref.hash}, got {actual}")
        if errors:
            logger.warning("Receipt %s failed verification: %s", receipt_id, "; ".join(errors))
        return VerificationResult(valid=not errors, errors=tuple(errors))

    async def get_stats(self) -> StorageStats:
        await self.initialize()
        stats = StorageStats(total_receipts=len(self._index))
        for receipt in self._index.values():
            stats.by_kind[receipt.kind.value] += 1
            run = stats.by_run.setdefault(receipt.run_id, {"receipts": 0, "bytes": 0})
            run["receipts"] += 1
            for ref in receipt.evidence_refs:
                stats.total_files += 1
                path = self._run_dir(receipt.run_id) / ref.path
                if path.is_file():
                    size = path.stat().st_size
                    stats.total_bytes += size
                    run["bytes"] += size
        return stats

    async def prune(self, retention_days: int | None = None) -> PruneResult:
        """Delete receipts (and their artifacts) older than the retention window."""
        await self.initialize()
        days = self._retention_days if retention_days is None else retention_days
        cutoff = datetime.now(UTC) - timedelta(days=days)
        deleted = 0
        freed = 0
        for receipt_id, receipt in list(self._index.items()):
            if receipt.timestamp >= cutoff:
                continue
            run_dir = self._run_dir(receipt.run_id)
            for ref in receipt.evidence_refs:
                path = run_dir / ref.path
                if path.is_file():
                    freed += path.stat().st_size
                    path.unlink()
            (run_dir / f"{receipt_id}.json").unlink(missing_ok=True)
            del self._index[receipt_id]
            deleted += 1

        for run_dir in (self._base / "runs").iterdir():
            if run_dir.is_dir() and not any(run_dir.iterdir()):
                run_dir.rmdir()
        self._save_index()
        logger.info("Pruned %d receipts (%d bytes)", deleted, freed)
        return PruneResult(deleted_receipts=deleted, freed_bytes=freed)

    async def export_run(self, run_id: str) -> dict[str, Any]:
        """Receipts of one run plus base64 artifact contents keyed by path."""
        receipts = await self.get_run_receipts(run_id)
        manifest: dict[str, str] = {}
        for receipt in receipts:
            for ref in receipt.evidence_refs:
                content = await self.get_evidence_file(run_id, ref.path)
                if content is not None:
                    manifest[ref.path] = base64.b64encode(content).decode("ascii")
        return {"receipts": [r.to_dict() for r in receipts], "manifest": manifest}


def create_evidence_store(project_root: str | Path, subdir: str = DEFAULT_EVIDENCE_DIR) -> FileReceiptStore:
    return FileReceiptStore(Path(project_root) / subdir)
