"""Rule interface and shared helpers.

Every rule exposes one capability, ``evaluate(context) -> PolicyViolation | None``,
and returns on its first matching sub-check: one actionable message per rule.
Rules hold no state between evaluations.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from fnmatch import fnmatchcase
from typing import TYPE_CHECKING, ClassVar, Protocol, runtime_checkable

from src.shared.types import Claim, ClaimType, PolicyViolation, Severity

if TYPE_CHECKING:
    from collections.abc import Iterable

    from src.shared.types import PolicyContext


@dataclass(frozen=True)
class RuleConfig:
    """Options every rule understands. ``severity=None`` means the rule default."""

    enabled: bool = True
    severity: Severity | None = None
    allow_list: tuple[str, ...] = ()
    deny_list: tuple[str, ...] = ()


@runtime_checkable
class Rule(Protocol):
    name: str
    description: str

    @property
    def enabled(self) -> bool: ...

    def evaluate(self, context: PolicyContext) -> PolicyViolation | None: ...


def match_pattern(value: str, pattern: str) -> bool:
    """Case-sensitive glob match where ``*`` spans any run of characters, ``/`` included."""
    return fnmatchcase(value, pattern)


class BaseRule(ABC):
    name: ClassVar[str]
    description: ClassVar[str]
    default_severity: ClassVar[Severity] = Severity.ERROR

    def __init__(self, config: RuleConfig | None = None) -> None:
        self.config = config or RuleConfig()

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    @property
    def severity(self) -> Severity:
        return self.config.severity or self.default_severity

    @abstractmethod
    def evaluate(self, context: PolicyContext) -> PolicyViolation | None:
        """Return the first violation found, or None."""

    def is_allowed(self, value: str) -> bool:
        return any(match_pattern(value, p) for p in self.config.allow_list)

    def is_denied(self, value: str) -> bool:
        return any(match_pattern(value, p) for p in self.config.deny_list)

    def create_violation(self, message: str, claim: Claim | None = None, suggestion: str = "") -> PolicyViolation:
        return PolicyViolation(
            policy=self.name,
            message=message,
            severity=self.severity,
            claim=claim,
            suggestion=suggestion,
        )


def claims_of(context: PolicyContext, *types: ClaimType) -> list[Claim]:
    return [c for c in context.claims if c.type in types]


def unresolved(context: PolicyContext, claims: Iterable[Claim]) -> list[Claim]:
    """Claims with no evidence or evidence that was not found."""
    result = []
    for claim in claims:
        ev = context.evidence_for(claim.id)
        if ev is None or not ev.found:
            result.append(claim)
    return result
