"""Built-in policy rules, in evaluation order."""

from __future__ import annotations

from dataclasses import fields
from typing import Any

from src.policy.rules.auth_drift import AuthDriftConfig, AuthDriftRule
from src.policy.rules.base import BaseRule, Rule, RuleConfig, match_pattern
from src.policy.rules.contract_drift import ContractDriftConfig, ContractDriftRule
from src.policy.rules.ghost_refs import GhostEnvConfig, GhostEnvRule, GhostImportRule, GhostRouteConfig, GhostRouteRule
from src.policy.rules.scope_explosion import ScopeExplosionConfig, ScopeExplosionRule
from src.policy.rules.unsafe_side_effect import UnsafeSideEffectConfig, UnsafeSideEffectRule
from src.shared.errors import ConfigError
from src.shared.types import Severity

_BUILTIN: tuple[tuple[type[BaseRule], type[RuleConfig]], ...] = (
    (GhostRouteRule, GhostRouteConfig),
    (GhostImportRule, RuleConfig),
    (GhostEnvRule, GhostEnvConfig),
    (AuthDriftRule, AuthDriftConfig),
    (UnsafeSideEffectRule, UnsafeSideEffectConfig),
    (ScopeExplosionRule, ScopeExplosionConfig),
    (ContractDriftRule, ContractDriftConfig),
)


def _build_config(config_cls: type[RuleConfig], rule_name: str, options: dict[str, Any]) -> RuleConfig:
    known = {f.name for f in fields(config_cls)}
    unknown = set(options) - known
    if unknown:
        raise ConfigError(f"Unknown options for rule {rule_name}: {sorted(unknown)}", source=rule_name)
    values: dict[str, Any] = {}
    for key, value in options.items():
        if key == "severity" and value is not None:
            try:
                value = Severity(value)
            except ValueError:
                raise ConfigError(f"Invalid severity for rule {rule_name}: {value}", source=rule_name) from None
        elif isinstance(value, list):
            value = tuple(value)
        values[key] = value
    return config_cls(**values)


def load_rules(options: dict[str, dict[str, Any]] | None = None) -> list[BaseRule]:
    """Build the default ordered rule list.

    ``options`` maps a rule name to keyword options for its config class,
    e.g. ``{"scope-explosion": {"max_affected_files": 20}}``.
    """
    options = options or {}
    names = {rule_cls.name for rule_cls, _ in _BUILTIN}
    unknown = set(options) - names
    if unknown:
        raise ConfigError(f"Unknown policy rules: {sorted(unknown)}")
    rules: list[BaseRule] = []
    for rule_cls, config_cls in _BUILTIN:
        config = _build_config(config_cls, rule_cls.name, options.get(rule_cls.name, {}))
        rules.append(rule_cls(config))  # type: ignore[arg-type]
    return rules


__all__ = [
    "AuthDriftRule",
    "BaseRule",
    "ContractDriftRule",
    "GhostEnvRule",
    "GhostImportRule",
    "GhostRouteRule",
    "Rule",
    "RuleConfig",
    "ScopeExplosionRule",
    "UnsafeSideEffectRule",
    "load_rules",
    "match_pattern",
]
