"""Auth-drift rule: changes must not quietly weaken authentication."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from src.policy.rules.base import BaseRule, RuleConfig, claims_of
from src.shared.types import ClaimType

if TYPE_CHECKING:
    from src.shared.types import PolicyContext, PolicyViolation

_SENSITIVE_PATTERNS = (
    re.compile(r"auth\s*=\s*false", re.IGNORECASE),
    re.compile(r"skipAuth", re.IGNORECASE),
    re.compile(r"noAuth", re.IGNORECASE),
    re.compile(r"bypassAuth", re.IGNORECASE),
    re.compile(r"requireAuth\s*:\s*false", re.IGNORECASE),
    re.compile(r"isPublic\s*:\s*true", re.IGNORECASE),
)

_AUTH_KEYWORDS = (
    "authenticate",
    "authorize",
    "requireauth",
    "isauthenticated",
    "checkpermission",
    "requirerole",
    "verifytoken",
    "validatesession",
)


@dataclass(frozen=True)
class AuthDriftConfig(RuleConfig):
    sensitive_patterns: tuple[re.Pattern[str], ...] = field(default=_SENSITIVE_PATTERNS)
    auth_keywords: tuple[str, ...] = _AUTH_KEYWORDS


class AuthDriftRule(BaseRule):
    """Checks, in order:

    1. a protected route referenced next to an auth-bypass pattern
    2. any claim context containing an auth-bypass pattern
    3. an auth-related import that does not resolve
    """

    name = "auth-drift"
    description = "Detect potentially dangerous changes to authentication patterns"

    config: AuthDriftConfig

    def __init__(self, config: AuthDriftConfig | None = None) -> None:
        super().__init__(config or AuthDriftConfig())

    def _suspicious(self, text: str) -> str | None:
        for pattern in self.config.sensitive_patterns:
            match = pattern.search(text)
            if match:
                return match.group(0)
        return None

    def evaluate(self, context: PolicyContext) -> PolicyViolation | None:
        for claim in claims_of(context, ClaimType.API_ENDPOINT):
            evidence = context.evidence_for(claim.id)
            if evidence is None or not evidence.found or not evidence.details.get("auth_required"):
                continue
            hit = self._suspicious(claim.context)
            if hit:
                return self.create_violation(
                    f'AUTH DRIFT: Protected route "{claim.value}" used with auth bypass "{hit}"',
                    claim,
                    "This route requires authentication. Remove the bypass or update the auth rules.",
                )

        for claim in context.claims:
            hit = self._suspicious(claim.context)
            if hit:
                return self.create_violation(
                    f'AUTH DRIFT: Suspicious auth pattern detected: "{hit}"',
                    claim,
                    "Review this change carefully. It may weaken authentication controls.",
                )

        for claim in claims_of(context, ClaimType.IMPORT):
            lowered = claim.value.lower()
            if not any(k in lowered for k in self.config.auth_keywords):
                continue
            evidence = context.evidence_for(claim.id)
            if evidence is None or not evidence.found:
                return self.create_violation(
                    f"AUTH DRIFT: Auth-related import not found: {claim.value}",
                    claim,
                    "Ensure authentication middleware and utilities are properly imported.",
                )
        return None
