"""Ship gate configuration.

- GateConfig is a frozen pydantic model; every threshold the evaluator
  uses lives here so policy can be tuned without code changes
- load_gate_config reads YAML with yaml.safe_load, validates declarative
  custom rules against a JSON Schema, then applies SHIPGATE_* env overrides
- Any malformed input raises ConfigError before the gate runs
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal

import jsonschema
import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from src.shared.errors import ConfigError
from src.shared.types import SAFETY_LIMITS

if TYPE_CHECKING:
    from collections.abc import Mapping

logger = logging.getLogger(__name__)

Strictness = Literal["relaxed", "standard", "paranoid"]
RuleSeverity = Literal["critical", "high", "medium"]
RuleCategory = Literal["test", "runtime", "security", "quality", "performance"]
ComparisonOp = Literal["truthy", "eq", "ne", "gt", "gte", "lt", "lte"]

ENV_STRICTNESS = "SHIPGATE_STRICTNESS"
ENV_COVERAGE_THRESHOLD = "SHIPGATE_COVERAGE_THRESHOLD"

CUSTOM_RULE_SCHEMA: dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "required": ["rule_id", "signal", "message"],
    "additionalProperties": False,
    "properties": {
        "rule_id": {"type": "string", "pattern": "^[a-z0-9][a-z0-9._-]*$"},
        "signal": {"type": "string", "minLength": 1},
        "op": {"enum": ["truthy", "eq", "ne", "gt", "gte", "lt", "lte"]},
        "threshold": {"type": ["number", "boolean", "null"]},
        "message": {"type": "string", "minLength": 1},
        "severity": {"enum": ["critical", "high", "medium"]},
        "category": {"enum": ["test", "runtime", "security", "quality", "performance"]},
    },
}


class CustomRuleSpec(BaseModel):
    """Declarative rule: fires when ``signals[signal] <op> threshold``."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    rule_id: str
    signal: str
    op: ComparisonOp = "truthy"
    threshold: bool | float | None = None
    message: str
    severity: RuleSeverity = "high"
    category: RuleCategory = "quality"


class GateConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    strictness: Strictness = "standard"
    custom_block_rules: tuple[CustomRuleSpec, ...] = ()
    custom_warn_rules: tuple[CustomRuleSpec, ...] = ()
    disabled_rules: tuple[str, ...] = ()
    required_receipts: tuple[Literal["test", "runtime", "network", "ui", "security", "policy", "chaos"], ...] = ()
    coverage_threshold: float = Field(default=60.0, ge=0, le=100)
    perf_regression_factor: float = Field(default=1.5, gt=1.0)
    debug_statement_limit: int = Field(default=2, ge=0)
    large_diff_lines: int = Field(default=SAFETY_LIMITS.max_lines_changed, ge=1)
    split_suggestion_files: int = Field(default=20, ge=1)
    strict_mode: bool = True


def _validate_custom_rules(raw: Mapping[str, Any], source: str) -> None:
    validator = jsonschema.Draft7Validator(CUSTOM_RULE_SCHEMA)
    for key in ("custom_block_rules", "custom_warn_rules"):
        rules = raw.get(key) or []
        if not isinstance(rules, list):
            raise ConfigError(f"{key} must be a list", source=source)
        for i, rule in enumerate(rules):
            errors = sorted(validator.iter_errors(rule), key=lambda e: list(e.path))
            if errors:
                details = "; ".join(
                    f"{'.'.join(str(p) for p in e.path) or '<root>'}: {e.message}" for e in errors
                )
                raise ConfigError(f"{key}[{i}] invalid: {details}", source=source)


def _env_overrides(env: Mapping[str, str]) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    strictness = env.get(ENV_STRICTNESS)
    if strictness:
        overrides["strictness"] = strictness.strip().lower()
    coverage = env.get(ENV_COVERAGE_THRESHOLD)
    if coverage:
        try:
            overrides["coverage_threshold"] = float(coverage)
        except ValueError:
            raise ConfigError(f"{ENV_COVERAGE_THRESHOLD} must be a number, got {coverage!r}") from None
    return overrides


def build_gate_config(
    raw: Mapping[str, Any] | None = None,
    *,
    source: str = "<inline>",
    env: Mapping[str, str] | None = None,
) -> GateConfig:
    """Validate a raw mapping (plus env overrides) into a GateConfig."""
    data = dict(raw or {})
    _validate_custom_rules(data, source)
    data.update(_env_overrides(os.environ if env is None else env))
    try:
        return GateConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid gate config: {exc}", source=source) from exc


def load_gate_config(path: str | Path | None = None, *, env: Mapping[str, str] | None = None) -> GateConfig:
    """Load GateConfig from a YAML file.

    A missing file (or no path) yields defaults plus env overrides.
    """
    raw: Any = None
    source = str(path) if path else "<defaults>"
    if path is not None and Path(path).is_file():
        try:
            with open(path, encoding="utf-8") as f:
                raw = yaml.safe_load(f)
        except yaml.YAMLError as exc:
            raise ConfigError(f"Malformed YAML in {path}: {exc}", source=source) from exc
        if raw is not None and not isinstance(raw, dict):
            raise ConfigError(f"Gate config {path} must be a mapping", source=source)
        logger.info("Loaded gate config from %s", path)
    elif path is not None:
        logger.info("Gate config %s not found, using defaults", path)
    return build_gate_config(raw, source=source, env=env)
