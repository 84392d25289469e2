"""Tests for ToolRuntime: validation, risk, approval, patches and read tools.

- Write tools are risk-scored; HIGH tier asks the approver
- patch.apply checkpoints files so patch.rollback can restore them
- Read tools resolve through the ports
- Every call lands in the execution log

Acceptance: pytest tests/unit/tool/test_runtime.py -v
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Any

import pytest

from src.ports.repo_port import DiffResult, StaticDiffProvider, StaticFindingsProvider
from src.receipts.store import InMemoryReceiptStore
from src.safety.rate_limit import MultiTierConfig, MultiTierRateLimiter, RateLimitConfig
from src.shared.types import ReceiptKind
from src.tool.runtime import (
    ApprovalRequest,
    RiskTier,
    ToolExecutionLog,
    ToolRuntime,
    ToolRuntimeConfig,
    assess_risk,
)
from tests.fakes import make_finding

if TYPE_CHECKING:
    from src.tool.schemas import ToolInput
    from src.verify.ground_truth import GroundTruth
    from tests.conftest import ReceiptFactory

GOAL = "Tidy the formatting helpers"
CHANGE = {"startLine": 2, "endLine": 2, "replacement": "B"}


@pytest.fixture
def store() -> InMemoryReceiptStore:
    return InMemoryReceiptStore()


@pytest.fixture
def runtime(project_root: Path, ground_truth: GroundTruth, store: InMemoryReceiptStore) -> ToolRuntime:
    return ToolRuntime(
        project_root,
        ground_truth=ground_truth,
        receipt_store=store,
        diff_provider=StaticDiffProvider(
            DiffResult(files=("src/a.ts", "docs/b.md"), lines_added=3, lines_removed=1, text="diff --git")
        ),
        findings_provider=StaticFindingsProvider(
            [make_finding("critical", "sec/eval"), make_finding("low", "style/quotes")]
        ),
    )


async def _propose(runtime: ToolRuntime, *files: dict[str, Any]) -> str:
    result = await runtime.execute("patch.propose", {"goal": GOAL, "files": list(files)})
    assert result.success is True, result.error
    return result.data["patchId"]


class TestAssessRisk:
    def test_low(self) -> None:
        risk = assess_risk("patch.propose", ["src/utils.ts"])
        assert risk.tier is RiskTier.LOW
        assert risk.score == 10
        assert risk.reasons == ()

    def test_medium(self) -> None:
        assert assess_risk("patch.apply", ["src/app.ts"]).tier is RiskTier.MEDIUM

    def test_security_path_is_high(self) -> None:
        risk = assess_risk("patch.apply", ["src/auth/login.ts"])
        assert risk.tier is RiskTier.HIGH
        assert risk.score == 70
        assert risk.reasons == ("Touches security-related file: src/auth/login.ts",)

    def test_score_capped(self) -> None:
        risk = assess_risk("git.commit", ["src/payment/auth.config.ts"])
        assert risk.score == 100
        assert len(risk.reasons) == 3

    def test_lockfile(self) -> None:
        assert assess_risk("patch.propose", ["package-lock.json"]).score == 50


class TestValidationAndLimits:
    @pytest.mark.asyncio
    async def test_invalid_input(self, runtime: ToolRuntime) -> None:
        result = await runtime.execute("truthpack.get", {"section": "secrets"})
        assert result.success is False
        assert result.error is not None
        assert result.error.startswith("Invalid input: section:")

    @pytest.mark.asyncio
    async def test_unknown_tool(self, runtime: ToolRuntime) -> None:
        result = await runtime.execute("shell.exec", {})
        assert result.error == "Invalid input: Unknown tool: shell.exec"

    @pytest.mark.asyncio
    async def test_rate_limited_per_tool(self, project_root: Path) -> None:
        tight = RateLimitConfig(window_ms=60_000, max_requests=1, burst_size=0)
        loose = RateLimitConfig(window_ms=60_000, max_requests=100, burst_size=0)
        runtime = ToolRuntime(
            project_root,
            diff_provider=StaticDiffProvider(),
            rate_limiter=MultiTierRateLimiter(MultiTierConfig(client=loose, tool=tight, global_=loose)),
        )
        assert (await runtime.execute("repo.diff", {})).success is True
        limited = await runtime.execute("repo.diff", {})
        assert limited.success is False
        assert limited.error is not None
        assert limited.error.startswith("Rate limit exceeded for repo.diff")

    @pytest.mark.asyncio
    async def test_missing_dependency(self, project_root: Path) -> None:
        result = await ToolRuntime(project_root).execute("truthpack.get", {"section": "routes"})
        assert result.success is False
        assert result.error == "truthpack.get: ground truth is not configured"

    @pytest.mark.asyncio
    async def test_read_tool_without_handler(self, runtime: ToolRuntime) -> None:
        result = await runtime.execute("test.run", {"type": "unit"})
        assert result.error == "test.run: no handler registered"

    @pytest.mark.asyncio
    async def test_registered_handler(self, runtime: ToolRuntime) -> None:
        seen: list[ToolInput] = []

        async def run_tests(data: ToolInput) -> dict[str, Any]:
            seen.append(data)
            return {"passed": 12, "failed": 0}

        runtime.register_handler("test.run", run_tests)
        result = await runtime.execute("test.run", {"type": "unit", "failFast": False})
        assert result.data == {"passed": 12, "failed": 0}
        assert seen[0].fail_fast is False  # type: ignore[attr-defined]


class TestReadTools:
    @pytest.mark.asyncio
    async def test_truthpack_filter(self, runtime: ToolRuntime) -> None:
        result = await runtime.execute("truthpack.get", {"section": "routes", "filter": {"method": "POST"}})
        assert [r["path"] for r in result.data] == ["/api/orders"]

    @pytest.mark.asyncio
    async def test_truthpack_protected_filter(self, runtime: ToolRuntime) -> None:
        result = await runtime.execute("truthpack.get", {"section": "routes", "filter": {"protected": False}})
        assert "/api/orders" not in [r["path"] for r in result.data]
        assert len(result.data) == 3

    @pytest.mark.asyncio
    async def test_truthpack_api_alias(self, runtime: ToolRuntime) -> None:
        result = await runtime.execute("truthpack.get", {"section": "api"})
        assert result.data["contracts"][0]["name"] == "UserList"

    @pytest.mark.asyncio
    async def test_truthpack_all(self, runtime: ToolRuntime) -> None:
        result = await runtime.execute("truthpack.get", {"section": "all"})
        assert set(result.data) == {"routes", "env", "auth", "contracts", "dependencies"}

    @pytest.mark.asyncio
    async def test_repo_diff(self, runtime: ToolRuntime) -> None:
        result = await runtime.execute("repo.diff", {"paths": ["src/"]})
        assert result.data["files"] == ["src/a.ts"]
        assert result.data["stats"] == {"files": 1, "additions": 3, "deletions": 1}

    @pytest.mark.asyncio
    async def test_read_files(self, runtime: ToolRuntime, project_root: Path) -> None:
        (project_root / "src" / "a.ts").write_text("one\ntwo", encoding="utf-8")
        vendored = project_root / "node_modules" / "x"
        vendored.mkdir(parents=True)
        (vendored / "index.ts").write_text("vendored", encoding="utf-8")

        result = await runtime.execute("repo.readFiles", {"globs": ["**/*.ts"], "includeLineNumbers": True})
        assert result.data["files"] == [{"path": "src/a.ts", "content": "1|one\n2|two", "lines": 2}]
        assert result.data["totalBytes"] == 7

    @pytest.mark.asyncio
    async def test_read_files_respects_max_bytes(self, runtime: ToolRuntime, project_root: Path) -> None:
        (project_root / "src" / "big.ts").write_text("x" * 100, encoding="utf-8")
        result = await runtime.execute("repo.readFiles", {"globs": ["src/*.ts"], "maxBytes": 10})
        assert result.data == {"files": [], "totalBytes": 0}

    @pytest.mark.asyncio
    async def test_findings_filter(self, runtime: ToolRuntime) -> None:
        result = await runtime.execute("analyze.findings", {"severity": ["critical"]})
        assert [f["ruleId"] for f in result.data["findings"]] == ["sec/eval"]
        assert result.data["total"] == 1

    @pytest.mark.asyncio
    async def test_evidence_tools(
        self, runtime: ToolRuntime, store: InMemoryReceiptStore, make_receipt: ReceiptFactory
    ) -> None:
        await store.add(make_receipt(ReceiptKind.RUNTIME, run_id="run_a"))
        await store.add(make_receipt(ReceiptKind.TEST, run_id="run_a"))
        await store.add(make_receipt(ReceiptKind.RUNTIME, run_id="run_b"))

        fetched = await runtime.execute("evidence.fetch", {"runId": "run_a", "includeArtifacts": True})
        assert len(fetched.data["receipts"]) == 2
        assert fetched.data["artifacts"] == []

        listed = await runtime.execute("evidence.list", {"kind": "runtime"})
        assert listed.data["total"] == 2
        assert {r["runId"] for r in listed.data["receipts"]} == {"run_a", "run_b"}

    @pytest.mark.asyncio
    async def test_evidence_fetch_by_id(
        self, runtime: ToolRuntime, store: InMemoryReceiptStore, make_receipt: ReceiptFactory
    ) -> None:
        receipt = await store.add(make_receipt(receipt_id="rcpt_wanted"))
        result = await runtime.execute("evidence.fetch", {"runId": "any", "receiptIds": ["rcpt_wanted", "rcpt_gone"]})
        assert [r["receiptId"] for r in result.data["receipts"]] == [receipt.receipt_id]


class TestPatches:
    @pytest.mark.asyncio
    async def test_propose_apply_rollback(self, runtime: ToolRuntime, project_root: Path) -> None:
        existing = project_root / "src" / "app.ts"
        existing.write_text("a\nb\nc", encoding="utf-8")

        patch_id = await _propose(
            runtime,
            {"path": "src/app.ts", "operation": "modify", "changes": [CHANGE]},
            {"path": "src/utils/format.ts", "operation": "create", "content": "export const x = 1"},
        )
        applied = await runtime.execute("patch.apply", {"diffId": patch_id})
        assert applied.success is True
        assert applied.checkpoint_id is not None
        assert existing.read_text(encoding="utf-8") == "a\nB\nc"
        assert (project_root / "src" / "utils" / "format.ts").read_text(encoding="utf-8") == "export const x = 1"

        rolled = await runtime.execute("patch.rollback", {"checkpointId": applied.checkpoint_id})
        assert rolled.success is True
        assert sorted(rolled.data["restoredFiles"]) == ["src/app.ts", "src/utils/format.ts"]
        assert existing.read_text(encoding="utf-8") == "a\nb\nc"
        assert not (project_root / "src" / "utils" / "format.ts").exists()

    @pytest.mark.asyncio
    async def test_failed_apply_restores_checkpoint(self, runtime: ToolRuntime, project_root: Path) -> None:
        existing = project_root / "src" / "app.ts"
        existing.write_text("a\nb\nc", encoding="utf-8")

        patch_id = await _propose(
            runtime,
            {"path": "src/new.ts", "operation": "create", "content": "fresh"},
            {"path": "src/app.ts", "operation": "modify", "changes": [CHANGE]},
            {"path": "src/app.ts/inner.ts", "operation": "create", "content": "x"},
        )
        applied = await runtime.execute("patch.apply", {"diffId": patch_id})
        assert applied.success is False
        assert applied.checkpoint_id is not None
        assert applied.error.startswith(f"Patch apply failed and was rolled back to {applied.checkpoint_id}")
        assert applied.data["applied"] is False
        assert not (project_root / "src" / "new.ts").exists()
        assert existing.read_text(encoding="utf-8") == "a\nb\nc"

    @pytest.mark.asyncio
    async def test_propose_reports_preview(self, runtime: ToolRuntime) -> None:
        result = await runtime.execute(
            "patch.propose", {"goal": GOAL, "files": [{"path": "src/new.ts", "operation": "create", "content": "x"}]}
        )
        assert result.diff_preview == "--- /dev/null\n+++ b/src/new.ts\n+x"
        assert result.data["linesChanged"] == 1
        assert result.requires_approval is False

    @pytest.mark.asyncio
    async def test_delete(self, runtime: ToolRuntime, project_root: Path) -> None:
        doomed = project_root / "src" / "old.ts"
        doomed.write_text("old", encoding="utf-8")
        patch_id = await _propose(runtime, {"path": "src/old.ts", "operation": "delete"})
        applied = await runtime.execute("patch.apply", {"diffId": patch_id})
        assert not doomed.exists()
        await runtime.execute("patch.rollback", {"checkpointId": applied.checkpoint_id})
        assert doomed.read_text(encoding="utf-8") == "old"

    @pytest.mark.asyncio
    async def test_blocked_pattern(self, runtime: ToolRuntime) -> None:
        result = await runtime.execute(
            "patch.propose", {"goal": GOAL, "files": [{"path": ".env", "operation": "modify", "content": "A=1"}]}
        )
        assert result.success is False
        assert result.error == "File .env matches blocked pattern"

    @pytest.mark.asyncio
    async def test_allowed_dirs(self, runtime: ToolRuntime) -> None:
        result = await runtime.execute(
            "patch.propose",
            {
                "goal": GOAL,
                "files": [{"path": "scripts/run.ts", "operation": "create", "content": "x"}],
                "constraints": {"allowedDirs": ["src"]},
            },
        )
        assert result.error == "File scripts/run.ts is outside allowed dirs"

    @pytest.mark.asyncio
    async def test_path_escape(self, runtime: ToolRuntime) -> None:
        result = await runtime.execute(
            "patch.propose", {"goal": GOAL, "files": [{"path": "../outside.ts", "operation": "create", "content": "x"}]}
        )
        assert result.success is False
        assert result.error == "Path escapes project root: ../outside.ts"

    @pytest.mark.asyncio
    async def test_max_lines(self, runtime: ToolRuntime) -> None:
        big = {"path": "src/big.ts", "operation": "create", "content": "\n".join(["line"] * 300)}
        result = await runtime.execute("patch.propose", {"goal": GOAL, "files": [big]})
        assert result.error == "Patch exceeds max lines (300 > 200)"

    @pytest.mark.asyncio
    async def test_max_files_touched(self, project_root: Path) -> None:
        runtime = ToolRuntime(project_root, ToolRuntimeConfig(max_files_touched=1))
        files = [{"path": f"src/f{i}.ts", "operation": "create", "content": "x"} for i in range(2)]
        result = await runtime.execute("patch.propose", {"goal": GOAL, "files": files})
        assert result.success is False
        assert result.error == "Patch touches too many files (2 > 1)"

    @pytest.mark.asyncio
    async def test_unknown_patch_and_checkpoint(self, runtime: ToolRuntime) -> None:
        assert (await runtime.execute("patch.apply", {"diffId": "patch_x"})).error == "Patch not found: patch_x"
        assert (await runtime.execute("patch.rollback", {"checkpointId": "cp_x"})).error == "Checkpoint not found: cp_x"
        assert (await runtime.execute("git.stage", {"diffId": "patch_x"})).error == "Patch not found: patch_x"


class TestApproval:
    @pytest.mark.asyncio
    async def test_rejection_leaves_files_untouched(self, project_root: Path) -> None:
        requests: list[ApprovalRequest] = []

        async def deny(request: ApprovalRequest) -> bool:
            requests.append(request)
            return False

        runtime = ToolRuntime(project_root, on_approval_required=deny)
        patch_id = await _propose(runtime, {"path": "src/auth/session.ts", "operation": "create", "content": "x"})
        result = await runtime.execute("patch.apply", {"diffId": patch_id})

        assert result.success is False
        assert result.error == "Operation rejected: approval denied"
        assert result.requires_approval is True
        assert [r.tool for r in requests] == ["patch.apply"]
        assert requests[0].risk_assessment.tier is RiskTier.HIGH
        assert not (project_root / "src" / "auth" / "session.ts").exists()
        assert runtime.get_execution_log()[-1].approved is False

    @pytest.mark.asyncio
    async def test_approved(self, project_root: Path) -> None:
        async def allow(_: ApprovalRequest) -> bool:
            return True

        runtime = ToolRuntime(project_root, on_approval_required=allow)
        patch_id = await _propose(runtime, {"path": "src/auth/session.ts", "operation": "create", "content": "x"})
        result = await runtime.execute("patch.apply", {"diffId": patch_id})
        assert result.success is True
        assert result.requires_approval is True
        assert runtime.get_execution_log()[-1].approved is True

    @pytest.mark.asyncio
    async def test_no_approver_proceeds(self, project_root: Path) -> None:
        runtime = ToolRuntime(project_root)
        patch_id = await _propose(runtime, {"path": "src/auth/session.ts", "operation": "create", "content": "x"})
        result = await runtime.execute("patch.apply", {"diffId": patch_id})
        assert result.success is True
        assert result.requires_approval is True

    @pytest.mark.asyncio
    async def test_threshold(self, project_root: Path) -> None:
        runtime = ToolRuntime(project_root, ToolRuntimeConfig(auto_approval_threshold=5))
        result = await runtime.execute(
            "patch.propose", {"goal": GOAL, "files": [{"path": "src/a.ts", "operation": "create", "content": "x"}]}
        )
        assert result.requires_approval is True


class TestGitTools:
    @pytest.mark.asyncio
    async def test_commit_without_handler(self, runtime: ToolRuntime) -> None:
        result = await runtime.execute("git.commit", {"message": "Tidy formatting", "diffId": "patch_x"})
        assert result.success is False
        assert result.error == "No handler registered for git.commit"

    @pytest.mark.asyncio
    async def test_commit_always_requires_approval(self, runtime: ToolRuntime) -> None:
        async def commit(data: ToolInput) -> dict[str, str]:
            return {"sha": "abc123"}

        runtime.register_handler("git.commit", commit)
        result = await runtime.execute("git.commit", {"message": "Tidy formatting", "diffId": "patch_x"})
        assert result.data == {"sha": "abc123"}
        assert result.requires_approval is True

    @pytest.mark.asyncio
    async def test_stage_known_patch(self, runtime: ToolRuntime) -> None:
        async def stage(data: ToolInput) -> dict[str, bool]:
            return {"staged": True}

        runtime.register_handler("git.stage", stage)
        patch_id = await _propose(runtime, {"path": "src/a.ts", "operation": "create", "content": "x"})
        result = await runtime.execute("git.stage", {"diffId": patch_id})
        assert result.data == {"staged": True}
        assert result.risk_assessment is not None
        assert result.risk_assessment.score == 30


class TestExecutionLog:
    @pytest.mark.asyncio
    async def test_log_and_callback(self, project_root: Path) -> None:
        seen: list[ToolExecutionLog] = []
        runtime = ToolRuntime(project_root, diff_provider=StaticDiffProvider(), on_tool_executed=seen.append)

        await runtime.execute("repo.diff", {})
        await runtime.execute("shell.exec", {})

        log = runtime.get_execution_log()
        assert [(e.tool, e.success) for e in log] == [("repo.diff", True), ("shell.exec", False)]
        assert seen == log
        assert log[0].approved is None
        runtime.clear_log()
        assert runtime.get_execution_log() == []

    @pytest.mark.asyncio
    async def test_result_serialization(self, runtime: ToolRuntime) -> None:
        result = await runtime.execute(
            "patch.propose", {"goal": GOAL, "files": [{"path": "src/a.ts", "operation": "create", "content": "x"}]}
        )
        d = result.to_dict()
        assert d["metadata"]["tool"] == "patch.propose"
        assert d["requiresApproval"] is False
        assert d["riskAssessment"] == {"tier": "LOW", "reasons": [], "score": 10}
        assert "checkpointId" not in d
