"""Unsafe-side-effect rule: block code that can execute, delete or inject."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from src.policy.rules.base import BaseRule, RuleConfig, claims_of
from src.shared.types import ClaimType

if TYPE_CHECKING:
    from src.shared.types import PolicyContext, PolicyViolation


@dataclass(frozen=True)
class DangerousPattern:
    pattern: re.Pattern[str]
    description: str


DANGEROUS_PATTERNS = (
    DangerousPattern(re.compile(r"\beval\s*\("), "eval() can execute arbitrary code"),
    DangerousPattern(re.compile(r"\bnew\s+Function\s*\("), "Function() constructor can execute arbitrary code"),
    DangerousPattern(re.compile(r"child_process\s*\.\s*exec\s*\("), "exec() can run arbitrary shell commands"),
    DangerousPattern(re.compile(r"execSync\s*\("), "execSync() can run arbitrary shell commands"),
    DangerousPattern(re.compile(r"rm\s+-rf\s+[/*]"), "Recursive delete from root or wildcard"),
    DangerousPattern(re.compile(r"DROP\s+TABLE", re.IGNORECASE), "SQL DROP TABLE statement"),
    DangerousPattern(re.compile(r"TRUNCATE\s+TABLE", re.IGNORECASE), "SQL TRUNCATE statement"),
    DangerousPattern(re.compile(r"\.innerHTML\s*="), "innerHTML assignment (XSS risk)"),
    DangerousPattern(re.compile(r"dangerouslySetInnerHTML"), "React dangerouslySetInnerHTML"),
    DangerousPattern(re.compile(r"__proto__|prototype\s*\["), "Prototype pollution risk"),
    DangerousPattern(re.compile(r"Object\.assign\s*\([^,]+,\s*req\.body"), "Mass assignment vulnerability"),
)

RESTRICTED_FILE_OPS = ("unlink", "rmdir", "rmSync", "rmdirSync", "unlinkSync")
_DANGEROUS_MODULES = ("child_process", "vm", "worker_threads")
_DANGEROUS_USAGE = re.compile(r"\b(?:exec|spawn|execFile|runInNewContext|runInThisContext)\s*\(")


@dataclass(frozen=True)
class UnsafeSideEffectConfig(RuleConfig):
    dangerous_patterns: tuple[DangerousPattern, ...] = field(default=DANGEROUS_PATTERNS)
    allowed_contexts: tuple[str, ...] = ("test", "spec", "mock", "__tests__")


class UnsafeSideEffectRule(BaseRule):
    name = "unsafe-side-effect"
    description = "Block dangerous operations that could have unintended side effects"

    config: UnsafeSideEffectConfig

    def __init__(self, config: UnsafeSideEffectConfig | None = None) -> None:
        super().__init__(config or UnsafeSideEffectConfig())

    def _allowed_context(self, *texts: str) -> bool:
        lowered = " ".join(texts).lower()
        return any(a.lower() in lowered for a in self.config.allowed_contexts)

    def evaluate(self, context: PolicyContext) -> PolicyViolation | None:
        for claim in context.claims:
            if self._allowed_context(claim.location.file, claim.context):
                continue
            for item in self.config.dangerous_patterns:
                if item.pattern.search(claim.context):
                    return self.create_violation(
                        f"UNSAFE SIDE EFFECT: {item.description}",
                        claim,
                        "Replace this with a safer construct or get explicit approval.",
                    )

        for call in claims_of(context, ClaimType.FUNCTION_CALL):
            if self._allowed_context(call.location.file, call.context):
                continue
            if any(call.value.endswith(op) for op in RESTRICTED_FILE_OPS):
                return self.create_violation(
                    f'UNSAFE SIDE EFFECT: Restricted file operation "{call.value}"',
                    call,
                    "File deletion operations require explicit approval.",
                )

        for imp in claims_of(context, ClaimType.IMPORT, ClaimType.PACKAGE_DEPENDENCY):
            if not any(m in imp.value for m in _DANGEROUS_MODULES):
                continue
            evidence = context.evidence_for(imp.id)
            if evidence is not None and evidence.found and _DANGEROUS_USAGE.search(imp.context):
                return self.create_violation(
                    f'UNSAFE SIDE EFFECT: Potentially dangerous module "{imp.value}" with risky usage',
                    imp,
                    "Review the usage of this module carefully. Consider safer alternatives.",
                )
        return None
