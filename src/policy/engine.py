"""Policy engine.

Runs every enabled rule in an ordered list over one PolicyContext and folds
the violations into a PolicyDecision. The engine is deterministic: the same
context and rules always produce the same decision.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

from src.shared.errors import ConfigError, InputValidationError, OperationTimeoutError
from src.shared.logging.error_handler import log_structured_error
from src.shared.types import PolicyDecision, PolicyViolation, Severity

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from src.policy.rules.base import Rule
    from src.shared.types import PolicyContext

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PolicyLimits:
    max_policies: int = 50
    max_claims: int = 100
    max_evidence: int = 200
    max_violations: int = 50
    max_message_length: int = 500
    evaluation_timeout_ms: int = 5000


POLICY_LIMITS = PolicyLimits()


def sanitize_message(message: str, max_length: int = POLICY_LIMITS.max_message_length) -> str:
    """Strip angle brackets and truncate, so messages are safe to render anywhere."""
    cleaned = message.replace("<", "").replace(">", "")
    if len(cleaned) > max_length:
        return cleaned[: max_length - 3] + "..."
    return cleaned


class PolicyEngine:
    """Evaluates an ordered list of rules.

    strict_mode: any error-severity violation makes the decision disallowed.
    Outside strict mode violations are reported but never disallow.
    """

    def __init__(
        self,
        rules: Iterable[Rule] = (),
        *,
        strict_mode: bool = True,
        limits: PolicyLimits = POLICY_LIMITS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._rules: list[Rule] = []
        self._strict = strict_mode
        self._limits = limits
        self._clock = clock
        for rule in rules:
            self.add_rule(rule)

    @property
    def rules(self) -> tuple[Rule, ...]:
        return tuple(self._rules)

    def add_rule(self, rule: Rule) -> None:
        if not getattr(rule, "name", ""):
            raise ConfigError("Policy rule must have a name")
        if any(r.name == rule.name for r in self._rules):
            raise ConfigError(f"Policy rule already registered: {rule.name}", source=rule.name)
        if len(self._rules) >= self._limits.max_policies:
            raise ConfigError(f"Too many policy rules (max {self._limits.max_policies})")
        self._rules.append(rule)

    def remove_rule(self, name: str) -> bool:
        for i, rule in enumerate(self._rules):
            if rule.name == name:
                del self._rules[i]
                return True
        return False

    def _validate(self, context: PolicyContext) -> None:
        if len(context.claims) > self._limits.max_claims:
            raise InputValidationError(
                f"Too many claims ({len(context.claims)} > {self._limits.max_claims})", field="claims"
            )
        if len(context.evidence) > self._limits.max_evidence:
            raise InputValidationError(
                f"Too much evidence ({len(context.evidence)} > {self._limits.max_evidence})", field="evidence"
            )

    def evaluate(self, context: PolicyContext) -> PolicyDecision:
        self._validate(context)
        started = self._clock()
        deadline_ms = self._limits.evaluation_timeout_ms
        violations: list[PolicyViolation] = []

        for rule in self._rules:
            if not rule.enabled:
                continue
            if (self._clock() - started) * 1000 > deadline_ms:
                raise OperationTimeoutError("policy evaluation", deadline_ms)
            try:
                violation = rule.evaluate(context)
            except Exception as exc:  # noqa: BLE001 -- rule failure becomes a violation
                log_structured_error(logger, exc, context={"rule": rule.name})
                violation = PolicyViolation(
                    policy=rule.name,
                    message=f"Policy rule {rule.name} failed: {exc}",
                    severity=Severity.ERROR,
                    suggestion="Fix the rule or disable it explicitly.",
                )
            if violation is None:
                continue
            violations.append(
                PolicyViolation(
                    policy=violation.policy,
                    message=sanitize_message(violation.message, self._limits.max_message_length),
                    severity=violation.severity,
                    claim=violation.claim,
                    suggestion=sanitize_message(violation.suggestion, self._limits.max_message_length),
                )
            )
            if len(violations) >= self._limits.max_violations:
                logger.warning("Violation cap %d reached, skipping remaining rules", self._limits.max_violations)
                break

        errors = sum(1 for v in violations if v.severity is Severity.ERROR)
        warnings = sum(1 for v in violations if v.severity is Severity.WARNING)
        allowed = errors == 0 if self._strict else True
        decision = PolicyDecision(
            allowed=allowed,
            violations=tuple(violations),
            confidence=self._confidence(context, errors, warnings),
        )
        logger.info(
            "Policy evaluation: %d rules, %d violations (%d errors), allowed=%s",
            len(self._rules),
            len(violations),
            errors,
            allowed,
        )
        return decision

    @staticmethod
    def _confidence(context: PolicyContext, errors: int, warnings: int) -> float:
        if context.evidence:
            base = sum(e.confidence for e in context.evidence) / len(context.evidence)
        else:
            base = 1.0
        return max(0.0, min(1.0, base - 0.3 * errors - 0.1 * warnings))
