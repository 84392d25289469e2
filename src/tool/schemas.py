"""Tool-call input models.

Every tool an agent may call has a strict pydantic model. Input arrives
with camelCase keys (``maxBytes``, ``diffId``); snake_case is accepted too.
A call that does not validate is rejected before anything runs.

Read tools are side-effect free. Write tools go through risk assessment
and approval in ToolRuntime.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, HttpUrl, ValidationError
from pydantic.alias_generators import to_camel

MAX_READ_BYTES = 1024 * 1024


class ToolInput(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True, extra="forbid")


# -- Read tools --


class TruthpackFilter(ToolInput):
    path: str | None = None
    method: Literal["GET", "POST", "PUT", "PATCH", "DELETE"] | None = None
    protected: bool | None = None


class TruthpackGetInput(ToolInput):
    section: Literal["routes", "env", "auth", "api", "contracts", "dependencies", "all"]
    filter: TruthpackFilter | None = None


class RepoDiffInput(ToolInput):
    base: str = "HEAD~1"
    head: str = "HEAD"
    paths: list[str] | None = None
    stats: bool = True


class RepoReadFilesInput(ToolInput):
    globs: list[str] = Field(min_length=1, max_length=10)
    max_bytes: int = Field(default=512 * 1024, ge=1, le=MAX_READ_BYTES)
    include_line_numbers: bool = False


class AnalyzeFindingsInput(ToolInput):
    scope: Literal["all", "changed", "staged"] = "all"
    severity: list[Literal["critical", "high", "medium", "low", "info"]] | None = None
    types: list[str] | None = None
    limit: int = Field(default=50, ge=1, le=100)


class TestRunInput(ToolInput):
    __test__ = False

    type: Literal["typecheck", "unit", "lint", "e2e"]
    scope: list[str] | None = None
    timeout: int = Field(default=60, ge=1, le=300)
    fail_fast: bool = True


class ProofArtifacts(ToolInput):
    screenshots: bool = True
    traces: bool = False
    network_logs: bool = True
    videos: bool = False


class RealityRunProofInput(ToolInput):
    plan_id: str = Field(min_length=1)
    scenarios: list[str] | None = None
    base_url: HttpUrl | None = None
    timeout: int = Field(default=120, ge=1, le=600)
    artifacts: ProofArtifacts | None = None


class RealityRunChaosInput(ToolInput):
    plan_id: str = Field(min_length=1)
    base_url: HttpUrl | None = None
    max_duration: int = Field(default=60, ge=1, le=180)


class EvidenceFetchInput(ToolInput):
    run_id: str = Field(min_length=1)
    receipt_ids: list[str] | None = None
    include_artifacts: bool = False


class EvidenceListInput(ToolInput):
    kind: Literal["test", "runtime", "network", "ui", "security", "policy", "chaos"] | None = None
    run_id: str | None = None
    limit: int = Field(default=20, ge=1, le=100)


# -- Write tools --


class LineChange(ToolInput):
    start_line: int = Field(ge=1)
    end_line: int = Field(ge=1)
    replacement: str


class PatchFile(ToolInput):
    path: str = Field(min_length=1)
    operation: Literal["modify", "create", "delete"]
    content: str | None = None
    changes: list[LineChange] | None = None


class PatchConstraints(ToolInput):
    max_lines: int = Field(default=200, ge=1, le=500)
    allowed_dirs: list[str] | None = None
    blocked_patterns: list[str] | None = None


class PatchProposeInput(ToolInput):
    goal: str = Field(min_length=10, max_length=500)
    files: list[PatchFile] = Field(min_length=1, max_length=10)
    constraints: PatchConstraints | None = None
    mission_id: str | None = None


class VerificationPlan(ToolInput):
    run_typecheck: bool = True
    run_tests: list[str] | None = None
    run_proof_scenarios: list[str] | None = None


class PatchApplyInput(ToolInput):
    diff_id: str = Field(min_length=1)
    force: bool = False
    verification_plan: VerificationPlan | None = None


class PatchRollbackInput(ToolInput):
    checkpoint_id: str = Field(min_length=1)
    files: list[str] | None = None


class GitStageInput(ToolInput):
    diff_id: str = Field(min_length=1)
    files: list[str] | None = None


class GitCommitInput(ToolInput):
    message: str = Field(min_length=10, max_length=500)
    diff_id: str = Field(min_length=1)
    skip_hooks: bool = False


READ_ONLY_TOOLS: tuple[str, ...] = (
    "truthpack.get",
    "repo.diff",
    "repo.readFiles",
    "analyze.findings",
    "test.run",
    "reality.runProof",
    "reality.runChaos",
    "evidence.fetch",
    "evidence.list",
)

WRITE_TOOLS: tuple[str, ...] = (
    "patch.propose",
    "patch.apply",
    "patch.rollback",
    "git.stage",
    "git.commit",
)

TOOL_SCHEMAS: dict[str, type[ToolInput]] = {
    "truthpack.get": TruthpackGetInput,
    "repo.diff": RepoDiffInput,
    "repo.readFiles": RepoReadFilesInput,
    "analyze.findings": AnalyzeFindingsInput,
    "test.run": TestRunInput,
    "reality.runProof": RealityRunProofInput,
    "reality.runChaos": RealityRunChaosInput,
    "evidence.fetch": EvidenceFetchInput,
    "evidence.list": EvidenceListInput,
    "patch.propose": PatchProposeInput,
    "patch.apply": PatchApplyInput,
    "patch.rollback": PatchRollbackInput,
    "git.stage": GitStageInput,
    "git.commit": GitCommitInput,
}


class ToolValidation(BaseModel):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    valid: bool
    data: ToolInput | None = None
    errors: list[str] = Field(default_factory=list)


def _format_error(error: dict[str, Any]) -> str:
    path = ".".join(str(p) for p in error.get("loc", ()))
    return f"{path}: {error.get('msg', 'invalid')}"


def validate_tool_input(tool: str, data: Any) -> ToolValidation:
    """Validate raw tool input. Errors are ``"field.path: message"`` strings."""
    schema = TOOL_SCHEMAS.get(tool)
    if schema is None:
        return ToolValidation(valid=False, errors=[f"Unknown tool: {tool}"])
    try:
        parsed = schema.model_validate(data if data is not None else {})
    except ValidationError as exc:
        return ToolValidation(valid=False, errors=[_format_error(e) for e in exc.errors()])
    return ToolValidation(valid=True, data=parsed)


def is_write_tool(tool: str) -> bool:
    return tool in WRITE_TOOLS
