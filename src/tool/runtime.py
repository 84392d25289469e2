"""ToolRuntime: the boundary between an agent and real operations.

- Every call is rate-limited per tool, then validated, before anything runs
- Read tools go through the ports (ground truth, diff, findings, receipts)
  or a registered handler; a read tool with neither is an error result
- Write tools are risk-scored; HIGH tier or a score above the auto-approval
  threshold asks on_approval_required, which may reject
- patch.apply checkpoints every touched file first so patch.rollback can
  restore it
- Every call lands in the execution log
"""

from __future__ import annotations

import logging
import re
import time
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from fnmatch import fnmatch
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Any

from src.ports.receipt_store_port import ReceiptQuery
from src.safety.rate_limit import MultiTierRateLimiter, create_default_rate_limiter
from src.shared.errors import InputValidationError, RateLimitExceededError, ToolExecutionError
from src.shared.logging.error_handler import log_structured_error
from src.shared.types import SAFETY_LIMITS, ReceiptKind
from src.tool.schemas import (
    AnalyzeFindingsInput,
    EvidenceFetchInput,
    EvidenceListInput,
    GitStageInput,
    PatchApplyInput,
    PatchFile,
    PatchProposeInput,
    PatchRollbackInput,
    RepoDiffInput,
    RepoReadFilesInput,
    ToolInput,
    TruthpackGetInput,
    is_write_tool,
    validate_tool_input,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Mapping

    from src.ports.receipt_store_port import ReceiptStorePort
    from src.ports.repo_port import DiffProvider, FindingsProvider
    from src.verify.ground_truth import GroundTruth

    ToolHandler = Callable[[ToolInput], Awaitable[Any]]

logger = logging.getLogger(__name__)

TOOL_BASE_RISK: dict[str, int] = {
    "patch.propose": 10,
    "patch.apply": 40,
    "patch.rollback": 20,
    "git.stage": 30,
    "git.commit": 60,
}

# (pattern, score, reason prefix)
_RISK_PATTERNS: tuple[tuple[re.Pattern[str], int, str], ...] = (
    (re.compile(r"auth|security|password|secret|cred", re.IGNORECASE), 30, "Touches security-related file"),
    (re.compile(r"config|env|\.[a-z]+rc", re.IGNORECASE), 20, "Touches configuration file"),
    (re.compile(r"lock\.json|lock\.yaml|\.lock$", re.IGNORECASE), 40, "Touches lockfile"),
    (re.compile(r"payment|billing|stripe|checkout", re.IGNORECASE), 35, "Touches payment-related file"),
)

_IGNORED_DIRS = frozenset({"node_modules", "dist", "build", ".git", "__pycache__", ".venv"})
_DIFF_PREVIEW_CHARS = 2000


class RiskTier(Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


@dataclass(frozen=True)
class RiskAssessment:
    tier: RiskTier
    reasons: tuple[str, ...]
    score: int

    def to_dict(self) -> dict[str, Any]:
        return {"tier": self.tier.value, "reasons": list(self.reasons), "score": self.score}


@dataclass(frozen=True)
class ToolResult:
    tool: str
    success: bool
    data: Any = None
    error: str | None = None
    duration_ms: int = 0
    timestamp: str = ""
    requires_approval: bool | None = None
    risk_assessment: RiskAssessment | None = None
    checkpoint_id: str | None = None
    diff_preview: str | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "success": self.success,
            "data": self.data,
            "error": self.error,
            "metadata": {"tool": self.tool, "durationMs": self.duration_ms, "timestamp": self.timestamp},
        }
        if self.requires_approval is not None:
            d["requiresApproval"] = self.requires_approval
        if self.risk_assessment is not None:
            d["riskAssessment"] = self.risk_assessment.to_dict()
        if self.checkpoint_id is not None:
            d["checkpointId"] = self.checkpoint_id
        if self.diff_preview is not None:
            d["diffPreview"] = self.diff_preview
        return d


@dataclass(frozen=True)
class ApprovalRequest:
    tool: str
    input: ToolInput
    risk_assessment: RiskAssessment


@dataclass(frozen=True)
class ToolExecutionLog:
    tool: str
    success: bool
    duration_ms: int
    timestamp: str
    approved: bool | None = None


@dataclass(frozen=True)
class ToolRuntimeConfig:
    auto_approval_threshold: int = 50
    blocked_patterns: tuple[str, ...] = (".env", ".env.*", "*.pem", "*.key", ".git/*", "node_modules/*")
    max_patch_lines: int = 200
    max_files_touched: int = SAFETY_LIMITS.max_files_touched


@dataclass(frozen=True)
class PatchProposal:
    patch_id: str
    goal: str
    files: tuple[PatchFile, ...]
    diff: str
    lines_changed: int
    mission_id: str | None = None
    created_at: str = ""

    @property
    def paths(self) -> tuple[str, ...]:
        return tuple(f.path for f in self.files)


@dataclass
class Checkpoint:
    id: str
    files: dict[str, str | None] = field(default_factory=dict)
    created_at: str = ""


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def _short_id(prefix: str) -> str:
    return f"{prefix}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"


def assess_risk(tool: str, paths: tuple[str, ...] | list[str] = ()) -> RiskAssessment:
    """Base score per write tool plus a surcharge per sensitive path, capped at 100."""
    score = TOOL_BASE_RISK.get(tool, 0)
    reasons: list[str] = []
    for path in paths:
        for pattern, weight, reason in _RISK_PATTERNS:
            if pattern.search(path):
                score += weight
                reasons.append(f"{reason}: {path}")
    if score >= 70:
        tier = RiskTier.HIGH
    elif score >= 40:
        tier = RiskTier.MEDIUM
    else:
        tier = RiskTier.LOW
    return RiskAssessment(tier=tier, reasons=tuple(reasons), score=min(100, score))


def _matches_glob(path: str, patterns: tuple[str, ...] | list[str]) -> bool:
    lowered = path.lower()
    name = PurePosixPath(lowered).name
    return any(fnmatch(lowered, p.lower()) or fnmatch(name, p.lower()) for p in patterns)


def _apply_changes(original: str, patch_file: PatchFile) -> str:
    if patch_file.content is not None:
        return patch_file.content
    lines = original.split("\n")
    for change in sorted(patch_file.changes or [], key=lambda c: c.start_line, reverse=True):
        lines[change.start_line - 1 : change.end_line] = change.replacement.split("\n")
    return "\n".join(lines)


class ToolRuntime:
    """Validates, gates and executes tool calls for one project root."""

    def __init__(
        self,
        project_root: str | Path,
        config: ToolRuntimeConfig | None = None,
        *,
        handlers: Mapping[str, ToolHandler] | None = None,
        ground_truth: GroundTruth | None = None,
        receipt_store: ReceiptStorePort | None = None,
        diff_provider: DiffProvider | None = None,
        findings_provider: FindingsProvider | None = None,
        rate_limiter: MultiTierRateLimiter | None = None,
        client_id: str = "agent",
        on_approval_required: Callable[[ApprovalRequest], Awaitable[bool]] | None = None,
        on_tool_executed: Callable[[ToolExecutionLog], None] | None = None,
    ) -> None:
        self._root = Path(project_root).resolve()
        self._config = config or ToolRuntimeConfig()
        self._handlers = dict(handlers or {})
        self._ground_truth = ground_truth
        self._store = receipt_store
        self._diff = diff_provider
        self._findings = findings_provider
        self._limiter = rate_limiter or create_default_rate_limiter()
        self._client_id = client_id
        self._on_approval_required = on_approval_required
        self._on_tool_executed = on_tool_executed
        self._patches: dict[str, PatchProposal] = {}
        self._checkpoints: dict[str, Checkpoint] = {}
        self._log: list[ToolExecutionLog] = []
        self._builtin_reads: dict[str, Callable[[Any], Awaitable[Any]]] = {
            "truthpack.get": self._truthpack_get,
            "repo.diff": self._repo_diff,
            "repo.readFiles": self._repo_read_files,
            "analyze.findings": self._analyze_findings,
            "evidence.fetch": self._evidence_fetch,
            "evidence.list": self._evidence_list,
        }

    @property
    def config(self) -> ToolRuntimeConfig:
        return self._config

    def get_execution_log(self) -> list[ToolExecutionLog]:
        return list(self._log)

    def clear_log(self) -> None:
        self._log.clear()

    def register_handler(self, tool: str, handler: ToolHandler) -> None:
        self._handlers[tool] = handler

    async def execute(self, tool: str, data: Any = None) -> ToolResult:
        """Rate-limit, validate, then run one tool call. Never raises."""
        started = time.monotonic()
        timestamp = _now_iso()

        limit = self._limiter.check(self._client_id, tool)
        if not limit.allowed:
            error = RateLimitExceededError(tool, limit.retry_after or 1)
            return self._finish(ToolResult(tool=tool, success=False, error=str(error)), started, timestamp)

        validation = validate_tool_input(tool, data)
        if not validation.valid or validation.data is None:
            logger.warning("Rejected %s call: %s", tool, "; ".join(validation.errors))
            result = ToolResult(tool=tool, success=False, error=f"Invalid input: {', '.join(validation.errors)}")
            return self._finish(result, started, timestamp)

        try:
            if is_write_tool(tool):
                result = await self._execute_write(tool, validation.data)
            else:
                result = ToolResult(tool=tool, success=True, data=await self._execute_read(tool, validation.data))
        except Exception as exc:  # noqa: BLE001 -- tool failures become error results
            log_structured_error(logger, exc, context={"tool": tool}, level=logging.WARNING)
            result = ToolResult(tool=tool, success=False, error=str(exc))
        return self._finish(result, started, timestamp)

    def _finish(self, result: ToolResult, started: float, timestamp: str) -> ToolResult:
        duration_ms = int((time.monotonic() - started) * 1000)
        result = ToolResult(
            tool=result.tool,
            success=result.success,
            data=result.data,
            error=result.error,
            duration_ms=duration_ms,
            timestamp=timestamp,
            requires_approval=result.requires_approval,
            risk_assessment=result.risk_assessment,
            checkpoint_id=result.checkpoint_id,
            diff_preview=result.diff_preview,
        )
        approved = None
        if result.requires_approval is not None:
            approved = not result.requires_approval or result.success
        entry = ToolExecutionLog(
            tool=result.tool,
            success=result.success,
            duration_ms=duration_ms,
            timestamp=timestamp,
            approved=approved,
        )
        self._log.append(entry)
        if self._on_tool_executed is not None:
            self._on_tool_executed(entry)
        return result

    # -- Read tools --

    async def _execute_read(self, tool: str, data: ToolInput) -> Any:
        handler = self._handlers.get(tool)
        if handler is not None:
            return await handler(data)
        builtin = self._builtin_reads.get(tool)
        if builtin is None:
            raise ToolExecutionError(tool, "no handler registered")
        return await builtin(data)

    def _require(self, dependency: Any, tool: str, what: str) -> Any:
        if dependency is None:
            raise ToolExecutionError(tool, f"{what} is not configured")
        return dependency

    async def _truthpack_get(self, data: TruthpackGetInput) -> Any:
        ground_truth: GroundTruth = self._require(self._ground_truth, "truthpack.get", "ground truth")
        if data.section == "all":
            return await ground_truth.get_all()
        section = "contracts" if data.section == "api" else data.section
        doc = await ground_truth.section(section)
        if data.filter is None:
            return doc
        items = doc.get(section) if isinstance(doc, dict) else doc
        if not isinstance(items, list):
            return doc
        flt = data.filter
        items = [i for i in items if isinstance(i, dict)]
        if flt.path:
            items = [i for i in items if flt.path in str(i.get("path", ""))]
        if flt.method:
            items = [i for i in items if str(i.get("method", "")).upper() == flt.method]
        if flt.protected is not None:
            items = [i for i in items if _is_protected_item(i) is flt.protected]
        return items

    async def _repo_diff(self, data: RepoDiffInput) -> dict[str, Any]:
        provider: DiffProvider = self._require(self._diff, "repo.diff", "diff provider")
        diff = await provider.get_diff(data.base, data.head)
        files = list(diff.files)
        if data.paths:
            files = [f for f in files if any(f.startswith(p) for p in data.paths)]
        result: dict[str, Any] = {"diff": diff.text, "files": files}
        if data.stats:
            result["stats"] = {"files": len(files), "additions": diff.lines_added, "deletions": diff.lines_removed}
        return result

    async def _repo_read_files(self, data: RepoReadFilesInput) -> dict[str, Any]:
        seen: dict[Path, None] = {}
        for pattern in data.globs:
            for match in sorted(self._root.glob(pattern)):
                rel = match.relative_to(self._root)
                if match.is_file() and not _IGNORED_DIRS.intersection(rel.parts):
                    seen[match] = None

        files: list[dict[str, Any]] = []
        total = 0
        for path in seen:
            size = path.stat().st_size
            if total + size > data.max_bytes:
                continue
            content = path.read_text(encoding="utf-8", errors="replace")
            total += size
            lines = content.split("\n")
            if data.include_line_numbers:
                content = "\n".join(f"{i}|{line}" for i, line in enumerate(lines, start=1))
            files.append({"path": path.relative_to(self._root).as_posix(), "content": content, "lines": len(lines)})
        return {"files": files, "totalBytes": total}

    async def _analyze_findings(self, data: AnalyzeFindingsInput) -> dict[str, Any]:
        provider: FindingsProvider = self._require(self._findings, "analyze.findings", "findings provider")
        findings = await provider.get_findings()
        if data.severity:
            findings = [f for f in findings if f.severity in data.severity]
        if data.types:
            findings = [f for f in findings if f.rule_id in data.types]
        findings = findings[: data.limit]
        return {
            "scope": data.scope,
            "findings": [
                {"ruleId": f.rule_id, "severity": f.severity, "message": f.message, "file": f.file, "line": f.line}
                for f in findings
            ],
            "total": len(findings),
        }

    async def _evidence_fetch(self, data: EvidenceFetchInput) -> dict[str, Any]:
        store: ReceiptStorePort = self._require(self._store, "evidence.fetch", "receipt store")
        if data.receipt_ids:
            found = [await store.get_receipt(rid) for rid in data.receipt_ids]
            receipts = [r for r in found if r is not None]
        else:
            receipts = await store.get_run_receipts(data.run_id)
        result: dict[str, Any] = {"receipts": [r.to_dict() for r in receipts]}
        if data.include_artifacts:
            result["artifacts"] = [ref.to_dict() for r in receipts for ref in r.evidence_refs]
        return result

    async def _evidence_list(self, data: EvidenceListInput) -> dict[str, Any]:
        store: ReceiptStorePort = self._require(self._store, "evidence.list", "receipt store")
        query = ReceiptQuery(
            run_id=data.run_id,
            kind=ReceiptKind(data.kind) if data.kind else None,
            limit=data.limit,
        )
        receipts = await store.query_receipts(query)
        return {
            "receipts": [
                {
                    "receiptId": r.receipt_id,
                    "kind": r.kind.value,
                    "summary": r.summary,
                    "timestamp": r.timestamp.isoformat(),
                    "runId": r.run_id,
                }
                for r in receipts
            ],
            "total": len(receipts),
        }

    # -- Write tools --

    def _write_paths(self, tool: str, data: ToolInput) -> tuple[str, ...]:
        if isinstance(data, PatchProposeInput):
            return tuple(f.path for f in data.files)
        if isinstance(data, PatchApplyInput):
            patch = self._patches.get(data.diff_id)
            return patch.paths if patch else ()
        if isinstance(data, GitStageInput):
            if data.files:
                return tuple(data.files)
            patch = self._patches.get(data.diff_id)
            return patch.paths if patch else ()
        return ()

    async def _execute_write(self, tool: str, data: ToolInput) -> ToolResult:
        risk = assess_risk(tool, self._write_paths(tool, data))
        requires_approval = risk.tier is RiskTier.HIGH or risk.score > self._config.auto_approval_threshold

        if requires_approval and self._on_approval_required is not None:
            approved = await self._on_approval_required(ApprovalRequest(tool=tool, input=data, risk_assessment=risk))
            if not approved:
                logger.info("%s rejected by approver (risk %s, score %d)", tool, risk.tier.value, risk.score)
                return ToolResult(
                    tool=tool,
                    success=False,
                    error="Operation rejected: approval denied",
                    requires_approval=True,
                    risk_assessment=risk,
                )

        if isinstance(data, PatchProposeInput):
            return self._patch_propose(data, risk, requires_approval)
        if isinstance(data, PatchApplyInput):
            return self._patch_apply(data, risk, requires_approval)
        if isinstance(data, PatchRollbackInput):
            return self._patch_rollback(data, risk)

        if isinstance(data, GitStageInput) and data.diff_id not in self._patches:
            return self._write_failure(tool, f"Patch not found: {data.diff_id}", risk)
        handler = self._handlers.get(tool)
        if handler is None:
            return self._write_failure(tool, f"No handler registered for {tool}", risk)
        return ToolResult(
            tool=tool,
            success=True,
            data=await handler(data),
            requires_approval=True if tool == "git.commit" else requires_approval,
            risk_assessment=risk,
        )

    @staticmethod
    def _write_failure(tool: str, error: str, risk: RiskAssessment) -> ToolResult:
        return ToolResult(tool=tool, success=False, error=error, requires_approval=False, risk_assessment=risk)

    def _resolve(self, relative: str) -> Path:
        """Resolve a patch path, refusing anything outside the project root."""
        full = (self._root / relative).resolve()
        if not full.is_relative_to(self._root):
            raise InputValidationError(f"Path escapes project root: {relative}", field="files")
        return full

    def _patch_propose(self, data: PatchProposeInput, risk: RiskAssessment, requires_approval: bool) -> ToolResult:
        tool = "patch.propose"
        constraints = data.constraints
        if len(data.files) > self._config.max_files_touched:
            return self._write_failure(
                tool, f"Patch touches too many files ({len(data.files)} > {self._config.max_files_touched})", risk
            )
        blocked = (*self._config.blocked_patterns, *((constraints.blocked_patterns or []) if constraints else []))
        for patch_file in data.files:
            self._resolve(patch_file.path)
            if _matches_glob(patch_file.path, blocked):
                return self._write_failure(tool, f"File {patch_file.path} matches blocked pattern", risk)
            if constraints and constraints.allowed_dirs:
                if not any(patch_file.path.startswith(d.rstrip("/") + "/") for d in constraints.allowed_dirs):
                    return self._write_failure(tool, f"File {patch_file.path} is outside allowed dirs", risk)

        diff_lines: list[str] = []
        lines_changed = 0
        for patch_file in data.files:
            if patch_file.operation == "create":
                body = (patch_file.content or "").split("\n")
                diff_lines += ["--- /dev/null", f"+++ b/{patch_file.path}", *(f"+{line}" for line in body)]
                lines_changed += len(body)
            elif patch_file.operation == "delete":
                diff_lines += [f"--- a/{patch_file.path}", "+++ /dev/null"]
                lines_changed += 1
            else:
                diff_lines += [f"--- a/{patch_file.path}", f"+++ b/{patch_file.path}"]
                if patch_file.content is not None:
                    body = patch_file.content.split("\n")
                    diff_lines += [f"+{line}" for line in body]
                    lines_changed += len(body)
                for change in patch_file.changes or []:
                    replacement = change.replacement.split("\n")
                    diff_lines.append(f"@@ -{change.start_line},{change.end_line - change.start_line + 1} @@")
                    diff_lines += [f"+{line}" for line in replacement]
                    lines_changed += len(replacement)

        max_lines = self._config.max_patch_lines
        if constraints is not None:
            max_lines = min(max_lines, constraints.max_lines)
        if lines_changed > max_lines:
            return self._write_failure(tool, f"Patch exceeds max lines ({lines_changed} > {max_lines})", risk)

        diff = "\n".join(diff_lines)
        proposal = PatchProposal(
            patch_id=_short_id("patch"),
            goal=data.goal,
            files=tuple(data.files),
            diff=diff,
            lines_changed=lines_changed,
            mission_id=data.mission_id,
            created_at=_now_iso(),
        )
        self._patches[proposal.patch_id] = proposal
        logger.info("Proposed %s touching %d files (%d lines)", proposal.patch_id, len(data.files), lines_changed)
        return ToolResult(
            tool=tool,
            success=True,
            data={"patchId": proposal.patch_id, "linesChanged": lines_changed},
            requires_approval=requires_approval,
            risk_assessment=risk,
            diff_preview=diff[:_DIFF_PREVIEW_CHARS],
        )

    def _patch_apply(self, data: PatchApplyInput, risk: RiskAssessment, requires_approval: bool) -> ToolResult:
        tool = "patch.apply"
        patch = self._patches.get(data.diff_id)
        if patch is None:
            return self._write_failure(tool, f"Patch not found: {data.diff_id}", risk)

        checkpoint = Checkpoint(id=_short_id("cp"), created_at=_now_iso())
        for patch_file in patch.files:
            target = self._resolve(patch_file.path)
            checkpoint.files[patch_file.path] = target.read_text(encoding="utf-8") if target.is_file() else None
        self._checkpoints[checkpoint.id] = checkpoint

        try:
            for patch_file in patch.files:
                target = self._resolve(patch_file.path)
                if patch_file.operation == "delete":
                    target.unlink(missing_ok=True)
                    continue
                original = checkpoint.files[patch_file.path] or ""
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_text(_apply_changes(original, patch_file), encoding="utf-8")
        except OSError as exc:
            restored = self._restore(checkpoint)
            logger.warning(
                "Apply of %s failed, restored %d files from %s: %s", patch.patch_id, len(restored), checkpoint.id, exc
            )
            return ToolResult(
                tool=tool,
                success=False,
                error=f"Patch apply failed and was rolled back to {checkpoint.id}: {exc}",
                data={"patchId": patch.patch_id, "applied": False, "restoredFiles": restored},
                requires_approval=False,
                risk_assessment=risk,
                checkpoint_id=checkpoint.id,
            )

        logger.info("Applied %s with checkpoint %s", patch.patch_id, checkpoint.id)
        return ToolResult(
            tool=tool,
            success=True,
            data={"patchId": patch.patch_id, "applied": True, "files": list(patch.paths)},
            requires_approval=requires_approval,
            risk_assessment=risk,
            checkpoint_id=checkpoint.id,
        )

    def _restore(self, checkpoint: Checkpoint, files: list[str] | None = None) -> list[str]:
        """Put checkpointed files back; files that did not exist are removed."""
        restored: list[str] = []
        for rel in files or list(checkpoint.files):
            if rel not in checkpoint.files:
                continue
            target = self._resolve(rel)
            content = checkpoint.files[rel]
            if content is None:
                if target.is_file():
                    target.unlink()
                    restored.append(rel)
            else:
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_text(content, encoding="utf-8")
                restored.append(rel)
        return restored

    def _patch_rollback(self, data: PatchRollbackInput, risk: RiskAssessment) -> ToolResult:
        tool = "patch.rollback"
        checkpoint = self._checkpoints.get(data.checkpoint_id)
        if checkpoint is None:
            return self._write_failure(tool, f"Checkpoint not found: {data.checkpoint_id}", risk)

        restored = self._restore(checkpoint, data.files)
        logger.info("Rolled back %d files to %s", len(restored), checkpoint.id)
        return ToolResult(
            tool=tool,
            success=True,
            data={"checkpointId": checkpoint.id, "restoredFiles": restored},
            requires_approval=False,
            risk_assessment=risk,
        )


def _is_protected_item(item: Any) -> bool:
    if not isinstance(item, dict):
        return False
    auth = item.get("auth")
    if isinstance(auth, dict):
        return bool(auth.get("required"))
    return bool(item.get("protected", False))
