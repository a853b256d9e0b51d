"""Tests for config module."""

import json
from pathlib import Path

import pytest

from config import (
    DEFAULT_ALLOWED_TOOLS,
    RalphConfig,
    apply_env_overrides,
    load_config,
    load_effective_config,
    parse_bool,
    split_tools,
    validate_allowed_tools,
)


class TestRalphConfig:
    def test_defaults(self) -> None:
        config = RalphConfig()
        assert config.rate_limit.max_calls_per_hour == 100
        assert config.claude.timeout_minutes == 15
        assert config.claude.output_format == "json"
        assert config.claude.allowed_tools == DEFAULT_ALLOWED_TOOLS
        assert config.claude.dangerously_skip_permissions is False
        assert config.session.continuity_enabled is True
        assert config.session.expiry_hours == 24
        assert config.circuit_breaker.no_progress_threshold == 3
        assert config.circuit_breaker.same_error_threshold == 3
        assert config.circuit_breaker.cooldown_minutes == 30
        assert config.exit_detection.signal_window == 5
        assert config.loop.failure_backoff_seconds == 30.0

    def test_custom_values(self) -> None:
        config = RalphConfig(
            rate_limit={"max_calls_per_hour": 20},
            claude={"output_format": "text", "timeout_minutes": 60},
        )
        assert config.rate_limit.max_calls_per_hour == 20
        assert config.claude.output_format == "text"
        assert config.claude.timeout_minutes == 60

    def test_validation_rejects_bad_values(self) -> None:
        with pytest.raises(Exception):
            RalphConfig(rate_limit={"max_calls_per_hour": 0})  # ge=1

        with pytest.raises(Exception):
            RalphConfig(claude={"timeout_minutes": 121})  # le=120

        with pytest.raises(Exception):
            RalphConfig(claude={"output_format": "yaml"})


class TestLoadConfig:
    def test_missing_file_returns_defaults(self, tmp_path: Path) -> None:
        result = load_config(tmp_path / "nope.json")
        assert result.success
        assert result.data == RalphConfig()

    def test_load_valid_config(self, tmp_path: Path) -> None:
        path = tmp_path / "config.json"
        path.write_text(json.dumps({
            "rate_limit": {"max_calls_per_hour": 40},
            "circuit_breaker": {"no_progress_threshold": 5},
        }), encoding="utf-8")

        result = load_config(path)
        assert result.success
        assert result.data.rate_limit.max_calls_per_hour == 40
        assert result.data.circuit_breaker.no_progress_threshold == 5

    def test_invalid_json(self, tmp_path: Path) -> None:
        path = tmp_path / "config.json"
        path.write_text("{not json", encoding="utf-8")
        result = load_config(path)
        assert not result.success
        assert result.error_code == "JSON_ERROR"

    def test_validation_error(self, tmp_path: Path) -> None:
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"session": {"expiry_hours": 0}}), encoding="utf-8")
        result = load_config(path)
        assert not result.success
        assert result.error_code == "VALIDATION_ERROR"


class TestEnvOverrides:
    def test_env_wins_over_file(self) -> None:
        config = RalphConfig(rate_limit={"max_calls_per_hour": 40})
        result = apply_env_overrides(config, {"MAX_CALLS_PER_HOUR": "7"})
        assert result.success
        assert result.data.rate_limit.max_calls_per_hour == 7
        # original is untouched
        assert config.rate_limit.max_calls_per_hour == 40

    def test_empty_variables_are_ignored(self) -> None:
        config = RalphConfig()
        result = apply_env_overrides(config, {"MAX_CALLS_PER_HOUR": "", "CB_AUTO_RESET": ""})
        assert result.success
        assert result.data is config

    def test_boolean_and_list_variables(self) -> None:
        result = apply_env_overrides(RalphConfig(), {
            "CLAUDE_USE_CONTINUE": "false",
            "CB_AUTO_RESET": "true",
            "CLAUDE_ALLOWED_TOOLS": "Read, Write ,Bash(git *)",
            "VERBOSE_PROGRESS": "1",
        })
        assert result.success
        config = result.data
        assert config.session.continuity_enabled is False
        assert config.circuit_breaker.auto_reset_on_startup is True
        assert config.claude.allowed_tools == ["Read", "Write", "Bash(git *)"]
        assert config.logging.verbose is True

    def test_unparseable_value(self) -> None:
        result = apply_env_overrides(RalphConfig(), {"CLAUDE_TIMEOUT_MINUTES": "soon"})
        assert not result.success
        assert result.error_code == "ENV_ERROR"
        assert "CLAUDE_TIMEOUT_MINUTES" in result.error

    def test_out_of_range_value(self) -> None:
        result = apply_env_overrides(RalphConfig(), {"CLAUDE_TIMEOUT_MINUTES": "500"})
        assert not result.success
        assert result.error_code == "VALIDATION_ERROR"


class TestHelpers:
    @pytest.mark.parametrize("value,expected", [
        ("true", True), ("YES", True), ("1", True), ("off", False), ("False", False),
    ])
    def test_parse_bool(self, value: str, expected: bool) -> None:
        assert parse_bool(value) is expected

    def test_parse_bool_rejects_garbage(self) -> None:
        with pytest.raises(ValueError):
            parse_bool("maybe")

    def test_split_tools_drops_blanks(self) -> None:
        assert split_tools("Read,, Edit ,") == ["Read", "Edit"]


class TestValidateAllowedTools:
    def test_known_tools_and_bash_patterns(self) -> None:
        result = validate_allowed_tools(["Read", "Edit", "Bash(npm install)", "Bash(git *)"])
        assert result.success

    def test_unknown_tool(self) -> None:
        result = validate_allowed_tools(["Read", "Teleport"])
        assert not result.success
        assert result.error_code == "INVALID_TOOL"
        assert "Teleport" in result.error

    def test_empty_bash_pattern_rejected(self) -> None:
        assert not validate_allowed_tools(["Bash()"]).success


class TestLoadEffectiveConfig:
    def test_reads_project_settings_file(self, project_dir: Path) -> None:
        (project_dir / ".ralph" / "config.json").write_text(
            json.dumps({"rate_limit": {"max_calls_per_hour": 12}}), encoding="utf-8"
        )
        result = load_effective_config(project_dir, {})
        assert result.success
        assert result.data.rate_limit.max_calls_per_hour == 12

    def test_env_applied_on_top(self, project_dir: Path) -> None:
        (project_dir / ".ralph" / "config.json").write_text(
            json.dumps({"rate_limit": {"max_calls_per_hour": 12}}), encoding="utf-8"
        )
        result = load_effective_config(project_dir, {"MAX_CALLS_PER_HOUR": "3"})
        assert result.data.rate_limit.max_calls_per_hour == 3

    def test_invalid_tool_in_file(self, project_dir: Path) -> None:
        (project_dir / ".ralph" / "config.json").write_text(
            json.dumps({"claude": {"allowed_tools": ["Read", "Nope"]}}), encoding="utf-8"
        )
        result = load_effective_config(project_dir, {})
        assert not result.success
        assert result.error_code == "INVALID_TOOL"

    def test_explicit_config_path(self, project_dir: Path, tmp_path: Path) -> None:
        other = tmp_path / "elsewhere.json"
        other.write_text(json.dumps({"session": {"expiry_hours": 48}}), encoding="utf-8")
        result = load_effective_config(project_dir, {}, config_path=other)
        assert result.data.session.expiry_hours == 48
