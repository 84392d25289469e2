"""Tests for ship gate configuration loading.

Acceptance: pytest tests/unit/gate/test_config.py -v
"""

from __future__ import annotations

from pathlib import Path

import pytest

from src.gate.config import GateConfig, build_gate_config, load_gate_config
from src.shared.errors import ConfigError

VALID_YAML = """\
strictness: paranoid
coverage_threshold: 75
disabled_rules: [console-errors]
custom_block_rules:
  - rule_id: bundle-size
    signal: bundle.kb
    op: gt
    threshold: 500
    message: Bundle too large
    severity: critical
"""


class TestLoadGateConfig:
    def test_defaults_without_path(self) -> None:
        config = load_gate_config(None, env={})
        assert config == GateConfig()
        assert config.strictness == "standard"
        assert config.coverage_threshold == 60.0

    def test_missing_file_is_defaults(self, tmp_path: Path) -> None:
        assert load_gate_config(tmp_path / "shipgate.yaml", env={}) == GateConfig()

    def test_valid_file(self, tmp_path: Path) -> None:
        path = tmp_path / "shipgate.yaml"
        path.write_text(VALID_YAML, encoding="utf-8")
        config = load_gate_config(path, env={})
        assert config.strictness == "paranoid"
        assert config.coverage_threshold == 75.0
        assert config.disabled_rules == ("console-errors",)
        rule = config.custom_block_rules[0]
        assert (rule.rule_id, rule.op, rule.threshold, rule.severity) == ("bundle-size", "gt", 500, "critical")

    def test_malformed_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "shipgate.yaml"
        path.write_text("strictness: [unclosed\n", encoding="utf-8")
        with pytest.raises(ConfigError, match="Malformed YAML"):
            load_gate_config(path, env={})

    def test_non_mapping(self, tmp_path: Path) -> None:
        path = tmp_path / "shipgate.yaml"
        path.write_text("- just\n- a list\n", encoding="utf-8")
        with pytest.raises(ConfigError, match="must be a mapping"):
            load_gate_config(path, env={})

    def test_empty_file_is_defaults(self, tmp_path: Path) -> None:
        path = tmp_path / "shipgate.yaml"
        path.write_text("", encoding="utf-8")
        assert load_gate_config(path, env={}) == GateConfig()


class TestValidation:
    def test_unknown_key(self) -> None:
        with pytest.raises(ConfigError, match="Invalid gate config"):
            build_gate_config({"strictnes": "relaxed"}, env={})

    @pytest.mark.parametrize(
        "raw", [{"strictness": "yolo"}, {"coverage_threshold": 150}, {"perf_regression_factor": 1}]
    )
    def test_out_of_range(self, raw: dict) -> None:
        with pytest.raises(ConfigError):
            build_gate_config(raw, env={})

    def test_custom_rule_schema_missing_field(self) -> None:
        raw = {"custom_warn_rules": [{"rule_id": "x", "signal": "y"}]}
        with pytest.raises(ConfigError, match=r"custom_warn_rules\[0\] invalid: .*'message' is a required property"):
            build_gate_config(raw, env={})

    def test_custom_rule_schema_bad_id(self) -> None:
        raw = {"custom_block_rules": [{"rule_id": "Bad Id", "signal": "y", "message": "m"}]}
        with pytest.raises(ConfigError, match=r"rule_id: "):
            build_gate_config(raw, env={})

    def test_custom_rules_must_be_list(self) -> None:
        with pytest.raises(ConfigError, match="custom_block_rules must be a list"):
            build_gate_config({"custom_block_rules": {"rule_id": "x"}}, env={})


class TestEnvOverrides:
    def test_strictness_and_coverage(self) -> None:
        config = build_gate_config(
            {"strictness": "paranoid"},
            env={"SHIPGATE_STRICTNESS": " Relaxed ", "SHIPGATE_COVERAGE_THRESHOLD": "42.5"},
        )
        assert config.strictness == "relaxed"
        assert config.coverage_threshold == 42.5

    def test_bad_coverage(self) -> None:
        with pytest.raises(ConfigError, match="must be a number"):
            build_gate_config(env={"SHIPGATE_COVERAGE_THRESHOLD": "lots"})

    def test_process_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("SHIPGATE_STRICTNESS", "paranoid")
        assert load_gate_config(None).strictness == "paranoid"
