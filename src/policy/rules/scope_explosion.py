"""Scope-explosion rule: a change must stay within a bounded blast radius."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import TYPE_CHECKING

from src.policy.rules.base import BaseRule, RuleConfig, claims_of, match_pattern
from src.shared.types import ClaimType

if TYPE_CHECKING:
    from src.shared.types import PolicyContext, PolicyViolation

DEFAULT_PROTECTED_PATHS = (
    "package.json",
    "package-lock.json",
    "pnpm-lock.yaml",
    "yarn.lock",
    ".env",
    ".env.*",
    "*.config.js",
    "*.config.ts",
    "tsconfig.json",
)


@dataclass(frozen=True)
class ScopeExplosionConfig(RuleConfig):
    max_claims: int = 50
    max_affected_files: int = 10
    max_directory_depth: int = 3
    protected_paths: tuple[str, ...] = DEFAULT_PROTECTED_PATHS
    max_claim_categories: int = 3
    single_file_allowance: int = 2


def _clean(path: str) -> str:
    while path.startswith(("./", "../")):
        path = path.split("/", 1)[1]
    return path


class ScopeExplosionRule(BaseRule):
    """Sub-checks run in order; the first hit is reported.

    1. total claim count
    2. distinct affected files
    3. protected paths
    4. directory-depth spread
    5. scope creep against the declared intent
    """

    name = "scope-explosion"
    description = "Prevent changes that exceed declared intent scope"

    config: ScopeExplosionConfig

    def __init__(self, config: ScopeExplosionConfig | None = None) -> None:
        super().__init__(config or ScopeExplosionConfig())

    def evaluate(self, context: PolicyContext) -> PolicyViolation | None:
        for check in (
            self._check_claim_count,
            self._check_affected_files,
            self._check_protected_paths,
            self._check_directory_depth,
            self._check_scope_creep,
        ):
            violation = check(context)
            if violation is not None:
                return violation
        return None

    def _affected_files(self, context: PolicyContext) -> set[str]:
        files = {c.value for c in claims_of(context, ClaimType.FILE_REFERENCE)}
        files.update(c.value for c in claims_of(context, ClaimType.IMPORT) if c.value.startswith("."))
        files.update(context.diff_summary.files)
        return files

    def _check_claim_count(self, context: PolicyContext) -> PolicyViolation | None:
        cap = self.config.max_claims
        if len(context.claims) > cap:
            return self.create_violation(
                f"SCOPE EXPLOSION: Too many claims ({len(context.claims)}/{cap})",
                suggestion="Break this change into smaller, focused modifications.",
            )
        return None

    def _check_affected_files(self, context: PolicyContext) -> PolicyViolation | None:
        cap = self.config.max_affected_files
        files = self._affected_files(context)
        if len(files) > cap:
            refs = claims_of(context, ClaimType.FILE_REFERENCE)
            return self.create_violation(
                f"SCOPE EXPLOSION: Change affects too many files ({len(files)}/{cap})",
                refs[0] if refs else None,
                f"This change touches {len(files)} files. Consider breaking it into smaller changes.",
            )
        return None

    def _check_protected_paths(self, context: PolicyContext) -> PolicyViolation | None:
        refs = {c.value: c for c in claims_of(context, ClaimType.FILE_REFERENCE)}
        for path in sorted(self._affected_files(context)):
            cleaned = _clean(path)
            name = PurePosixPath(cleaned).name
            for pattern in self.config.protected_paths:
                if match_pattern(cleaned, pattern) or match_pattern(name, pattern):
                    return self.create_violation(
                        f"SCOPE EXPLOSION: Attempting to modify protected file: {path}",
                        refs.get(path),
                        f'File "{path}" is protected. Modifications require explicit approval.',
                    )
        return None

    def _check_directory_depth(self, context: PolicyContext) -> PolicyViolation | None:
        dirs = {str(PurePosixPath(_clean(p)).parent) for p in self._affected_files(context) if "/" in _clean(p)}
        if not dirs:
            return None
        depths = [len(d.split("/")) for d in dirs]
        spread = max(depths) - min(depths)
        if spread > self.config.max_directory_depth:
            refs = claims_of(context, ClaimType.FILE_REFERENCE)
            return self.create_violation(
                f"SCOPE EXPLOSION: Changes span too many directory levels ({spread} levels)",
                refs[0] if refs else None,
                f"Changes should be localized. This change spans from depth {min(depths)} to {max(depths)}.",
            )
        return None

    def _check_scope_creep(self, context: PolicyContext) -> PolicyViolation | None:
        if context.intent is None:
            return None
        if context.intent.scope == "file":
            refs = claims_of(context, ClaimType.FILE_REFERENCE)
            unique = {r.value for r in refs}
            if len(unique) > self.config.single_file_allowance:
                return self.create_violation(
                    f"SCOPE EXPLOSION: Intent was for single file but {len(unique)} files affected",
                    refs[0],
                    "Declare broader intent or split into multiple focused changes.",
                )
        categories = Counter(c.type for c in context.claims)
        if len(categories) > self.config.max_claim_categories:
            return self.create_violation(
                f"SCOPE EXPLOSION: Change spans too many categories ({len(categories)})",
                suggestion="This change mixes imports, types, API calls and more. Consider splitting by concern.",
            )
        return None
