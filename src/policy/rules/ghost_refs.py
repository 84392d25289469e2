"""Ghost-reference rules: claims that point at things ground truth never declared."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from src.policy.rules.base import BaseRule, RuleConfig, claims_of, match_pattern, unresolved
from src.shared.types import ClaimType, Severity

if TYPE_CHECKING:
    from src.shared.types import PolicyContext, PolicyViolation


@dataclass(frozen=True)
class GhostRouteConfig(RuleConfig):
    allowed_external_paths: tuple[str, ...] = ("https://*", "http://localhost:*")
    api_prefixes: tuple[str, ...] = ("/api/", "/v1/", "/v2/")


class GhostRouteRule(BaseRule):
    name = "ghost-route"
    description = "Block references to non-existent API endpoints"

    config: GhostRouteConfig

    def __init__(self, config: GhostRouteConfig | None = None) -> None:
        super().__init__(config or GhostRouteConfig())

    def _in_scope(self, path: str) -> bool:
        if any(match_pattern(path, p) for p in self.config.allowed_external_paths):
            return False
        if self.is_allowed(path):
            return False
        prefixes = self.config.api_prefixes
        return path.startswith(prefixes) if prefixes else path.startswith("/")

    def evaluate(self, context: PolicyContext) -> PolicyViolation | None:
        candidates = [c for c in claims_of(context, ClaimType.API_ENDPOINT) if self._in_scope(c.value)]
        ghosts = unresolved(context, candidates)
        if not ghosts:
            return None
        paths = ", ".join(g.value for g in ghosts)
        return self.create_violation(
            f"GHOST ROUTE: API endpoint(s) not found in ground truth: {paths}",
            ghosts[0],
            f'Create the route handler for "{ghosts[0].value}" or fix the path, then refresh the truthpack routes.',
        )


@dataclass(frozen=True)
class GhostEnvConfig(RuleConfig):
    builtin_allowed: tuple[str, ...] = (
        "NODE_ENV", "PATH", "HOME", "USER", "SHELL", "LANG", "PWD", "TERM", "CI", "DEBUG",
    )  # fmt: skip


class GhostEnvRule(BaseRule):
    name = "ghost-env"
    description = "Flag environment variables that are not declared"
    default_severity = Severity.WARNING

    config: GhostEnvConfig

    def __init__(self, config: GhostEnvConfig | None = None) -> None:
        super().__init__(config or GhostEnvConfig())

    def evaluate(self, context: PolicyContext) -> PolicyViolation | None:
        candidates = [
            c
            for c in claims_of(context, ClaimType.ENV_VARIABLE)
            if c.value not in self.config.builtin_allowed and not self.is_allowed(c.value)
        ]
        ghosts = unresolved(context, candidates)
        if not ghosts:
            return None
        names = ", ".join(sorted({g.value for g in ghosts}))
        return self.create_violation(
            f"GHOST ENV: Undeclared environment variable(s): {names}",
            ghosts[0],
            "Declare the variable in .env.example and refresh the truthpack env section.",
        )


class GhostImportRule(BaseRule):
    name = "ghost-import"
    description = "Block imports of packages or modules that do not exist"

    def evaluate(self, context: PolicyContext) -> PolicyViolation | None:
        candidates = [
            c
            for c in claims_of(context, ClaimType.IMPORT, ClaimType.PACKAGE_DEPENDENCY)
            if not self.is_allowed(c.value)
        ]
        ghosts = unresolved(context, candidates)
        if not ghosts:
            return None
        first = ghosts[0]
        return self.create_violation(
            f'GHOST IMPORT: "{first.value}" is not a declared dependency or existing module',
            first,
            "Add the dependency to the manifest or correct the import path.",
        )
