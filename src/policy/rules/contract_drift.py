"""Contract-drift rule: code must use API endpoints the way their contracts say."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from src.policy.rules.base import BaseRule, RuleConfig, claims_of
from src.shared.types import ClaimType, Severity

if TYPE_CHECKING:
    from src.shared.types import Claim, PolicyContext, PolicyViolation

_HTTP_METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE")
_CONTRACT_TYPE = re.compile(r"(?:Request|Response|Params|Query|Body|Schema|Dto|Input|Output)$")


@dataclass(frozen=True)
class ContractDriftConfig(RuleConfig):
    check_requests: bool = True
    check_types: bool = True


class ContractDriftRule(BaseRule):
    name = "contract-drift"
    description = "Detect API contract violations and schema mismatches"
    default_severity = Severity.WARNING

    config: ContractDriftConfig

    def __init__(self, config: ContractDriftConfig | None = None) -> None:
        super().__init__(config or ContractDriftConfig())

    def evaluate(self, context: PolicyContext) -> PolicyViolation | None:
        for claim in claims_of(context, ClaimType.API_ENDPOINT):
            evidence = context.evidence_for(claim.id)
            if evidence is not None and evidence.found and evidence.details:
                violation = self._check_drift(claim, evidence.details)
                if violation is not None:
                    return violation

        if self.config.check_types:
            for ref in claims_of(context, ClaimType.TYPE_REFERENCE):
                if not _CONTRACT_TYPE.search(ref.value):
                    continue
                evidence = context.evidence_for(ref.id)
                if evidence is None or not evidence.found:
                    return self.create_violation(
                        f'CONTRACT DRIFT: API type "{ref.value}" not found in contracts',
                        ref,
                        "Ensure API types match the contracts declared in ground truth.",
                    )
        return None

    def _check_drift(self, claim: Claim, details: dict[str, Any]) -> PolicyViolation | None:
        text = claim.context.upper()
        expected = str(details.get("method", "")).upper()
        if expected:
            for method in _HTTP_METHODS:
                if method == expected or method not in text:
                    continue
                # only trust the keyword when it reads like a request call
                if "FETCH" in text or f"{method}(" in text:
                    return self.create_violation(
                        f'CONTRACT DRIFT: Endpoint "{claim.value}" expects {expected} but context suggests {method}',
                        claim,
                        f"Use {expected} for this endpoint.",
                    )

        request = details.get("request")
        if self.config.check_requests and isinstance(request, dict):
            if not request.get("body") and "body:" in claim.context:
                return self.create_violation(
                    f'CONTRACT DRIFT: Endpoint "{claim.value}" doesn\'t expect a request body',
                    claim,
                    "Remove the request body or update the API contract.",
                )
        return None
