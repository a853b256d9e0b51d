"""Configuration validation for the Ralph agent loop."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Generic, Literal, Mapping, Optional, TypeVar

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

T = TypeVar("T")

RALPH_DIR = ".ralph"
DEFAULT_CONFIG_PATH = Path(RALPH_DIR) / "config.json"

DEFAULT_ALLOWED_TOOLS = [
    "Write",
    "Read",
    "Edit",
    "Bash(git *)",
    "Bash(npm *)",
    "Bash(pytest)",
]

# Tool names accepted in the allowlist; any Bash(...) pattern is also accepted
VALID_TOOL_NAMES = {
    "Write",
    "Read",
    "Edit",
    "MultiEdit",
    "Glob",
    "Grep",
    "Task",
    "TodoWrite",
    "WebFetch",
    "WebSearch",
    "Bash",
    "NotebookEdit",
}

_BASH_PATTERN = re.compile(r"^Bash\(.+\)$")


@dataclass
class Result(Generic[T]):
    """Type-safe result wrapper for operations that can fail."""

    success: bool
    data: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @classmethod
    def ok(cls, data: T) -> Result[T]:
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str, code: str = "UNKNOWN") -> Result[T]:
        return cls(success=False, error=error, error_code=code)


class RateLimitConfig(BaseModel):
    """Hourly call budget for agent invocations."""

    max_calls_per_hour: int = Field(default=100, ge=1, le=10000)


class ClaudeConfig(BaseModel):
    """Claude CLI invocation settings."""

    command: str = Field(default="claude")
    prompt_file: str = Field(default=f"{RALPH_DIR}/PROMPT.md")
    output_format: Literal["json", "text"] = Field(default="json")
    allowed_tools: list[str] = Field(default_factory=lambda: list(DEFAULT_ALLOWED_TOOLS))
    dangerously_skip_permissions: bool = Field(
        default=False,
        description="Pass --dangerously-skip-permissions; the allowlist is ignored when set",
    )
    timeout_minutes: int = Field(default=15, ge=1, le=120)
    live_output: bool = Field(
        default=False,
        description="Stream output through the display filter instead of polling a file",
    )
    min_version: str = Field(default="2.0.76")


class SessionConfig(BaseModel):
    """Session continuity across loop iterations."""

    continuity_enabled: bool = Field(default=True)
    expiry_hours: int = Field(default=24, ge=1)


class CircuitBreakerConfig(BaseModel):
    """Stagnation detection thresholds.

    The breaker opens after ``no_progress_threshold`` loops without file
    changes, ``same_error_threshold`` loops repeating one error signature, or
    a run of ``output_decline_window`` loops whose output shrinks steadily by
    at least ``output_decline_threshold_pct`` percent.
    """

    no_progress_threshold: int = Field(default=3, ge=1)
    same_error_threshold: int = Field(default=3, ge=1)
    output_decline_threshold_pct: int = Field(default=70, ge=1, le=100)
    output_decline_window: int = Field(default=3, ge=2, le=20)
    output_history_size: int = Field(default=10, ge=2, le=100)
    cooldown_minutes: int = Field(default=30, ge=0)
    auto_reset_after_cooldown: bool = Field(
        default=True,
        description="Close an OPEN breaker once cooldown_minutes have elapsed",
    )
    auto_reset_on_startup: bool = Field(
        default=False,
        description="Reset an OPEN breaker at startup, bypassing the cooldown",
    )


class ExitDetectionConfig(BaseModel):
    """Graceful exit thresholds over the recent signal window."""

    max_test_only_loops: int = Field(default=3, ge=1)
    max_done_signals: int = Field(default=2, ge=1)
    safety_completion_threshold: int = Field(default=5, ge=1)
    completion_indicator_threshold: int = Field(default=2, ge=1)
    signal_window: int = Field(default=5, ge=1, le=50)
    plan_file: str = Field(default=f"{RALPH_DIR}/fix_plan.md")
    completion_phrases: list[str] = Field(
        default_factory=lambda: [
            "all tasks complete",
            "all tasks are complete",
            "project complete",
            "project is complete",
            "ready for review",
            "nothing left to implement",
        ]
    )


class LoopConfig(BaseModel):
    """Pauses and waits between iterations."""

    success_pause_seconds: float = Field(default=5.0, ge=0)
    failure_backoff_seconds: float = Field(default=30.0, ge=0)
    api_limit_wait_minutes: int = Field(default=60, ge=1)
    api_limit_choice_timeout_seconds: float = Field(default=30.0, gt=0)
    progress_poll_seconds: float = Field(default=10.0, gt=0)


class LoggingConfig(BaseModel):
    """Log verbosity and redaction."""

    verbose: bool = Field(default=False)
    json_log: bool = Field(default=False)
    redact_patterns: list[str] = Field(
        default_factory=lambda: [
            r"sk-ant-[\w-]+",
            r"sk-proj-[\w-]+",
            r"ghp_[\w]+",
        ]
    )


class RalphConfig(BaseModel):
    """Root configuration model for .ralph/config.json."""

    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    claude: ClaudeConfig = Field(default_factory=ClaudeConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    exit_detection: ExitDetectionConfig = Field(default_factory=ExitDetectionConfig)
    loop: LoopConfig = Field(default_factory=LoopConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def load_config(config_path: str | Path) -> Result[RalphConfig]:
    """Load and validate the project settings file."""
    path = Path(config_path)
    if not path.exists():
        logger.info("Config not found at %s, using defaults", path)
        return Result.ok(RalphConfig())

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
        config = RalphConfig.model_validate(raw)
        return Result.ok(config)
    except json.JSONDecodeError as e:
        return Result.fail(f"Invalid JSON in {path}: {e}", "JSON_ERROR")
    except Exception as e:
        return Result.fail(f"Config validation failed: {e}", "VALIDATION_ERROR")


def parse_bool(value: str) -> bool:
    """Parse an environment flag. Raises ValueError for anything unrecognised."""
    lowered = value.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"not a boolean: {value!r}")


def split_tools(value: str) -> list[str]:
    """Split a comma-separated tool list, dropping blanks."""
    return [tool.strip() for tool in value.split(",") if tool.strip()]


# Environment variable -> (section, field, parser)
ENV_OVERRIDES: dict[str, tuple[str, str, Callable[[str], object]]] = {
    "MAX_CALLS_PER_HOUR": ("rate_limit", "max_calls_per_hour", int),
    "CLAUDE_TIMEOUT_MINUTES": ("claude", "timeout_minutes", int),
    "CLAUDE_OUTPUT_FORMAT": ("claude", "output_format", str),
    "CLAUDE_ALLOWED_TOOLS": ("claude", "allowed_tools", split_tools),
    "CLAUDE_DANGEROUSLY_SKIP_PERMISSIONS": ("claude", "dangerously_skip_permissions", parse_bool),
    "CLAUDE_USE_CONTINUE": ("session", "continuity_enabled", parse_bool),
    "CLAUDE_SESSION_EXPIRY_HOURS": ("session", "expiry_hours", int),
    "CB_NO_PROGRESS_THRESHOLD": ("circuit_breaker", "no_progress_threshold", int),
    "CB_SAME_ERROR_THRESHOLD": ("circuit_breaker", "same_error_threshold", int),
    "CB_OUTPUT_DECLINE_THRESHOLD": ("circuit_breaker", "output_decline_threshold_pct", int),
    "CB_COOLDOWN_MINUTES": ("circuit_breaker", "cooldown_minutes", int),
    "CB_AUTO_RESET": ("circuit_breaker", "auto_reset_on_startup", parse_bool),
    "VERBOSE_PROGRESS": ("logging", "verbose", parse_bool),
}


def apply_env_overrides(
    config: RalphConfig, environ: Mapping[str, str]
) -> Result[RalphConfig]:
    """Return a new config with explicitly set environment variables applied.

    Empty variables are treated as unset.
    """
    merged = config.model_dump()
    applied: list[str] = []
    for var, (section, field, parser) in ENV_OVERRIDES.items():
        value = environ.get(var, "")
        if not value:
            continue
        try:
            merged[section][field] = parser(value)
        except ValueError as e:
            return Result.fail(f"Invalid value for {var}: {e}", "ENV_ERROR")
        applied.append(var)

    if not applied:
        return Result.ok(config)

    try:
        updated = RalphConfig.model_validate(merged)
    except Exception as e:
        return Result.fail(f"Environment override rejected: {e}", "VALIDATION_ERROR")
    logger.debug("Applied environment overrides: %s", ", ".join(applied))
    return Result.ok(updated)


def validate_allowed_tools(tools: list[str]) -> Result[list[str]]:
    """Check every tool against the known names or a Bash(...) pattern."""
    for tool in tools:
        if tool in VALID_TOOL_NAMES or _BASH_PATTERN.match(tool):
            continue
        return Result.fail(
            f"Invalid tool in allowed tools: '{tool}'. "
            f"Valid tools: {', '.join(sorted(VALID_TOOL_NAMES))}; "
            "Bash(...) patterns with any content are allowed (e.g. 'Bash(git *)')",
            "INVALID_TOOL",
        )
    return Result.ok(tools)


def load_effective_config(
    project_path: str | Path,
    environ: Mapping[str, str],
    config_path: str | Path | None = None,
) -> Result[RalphConfig]:
    """Read the settings file once and layer environment overrides on top."""
    path = Path(config_path) if config_path else Path(project_path) / DEFAULT_CONFIG_PATH
    loaded = load_config(path)
    if not loaded.success or loaded.data is None:
        return loaded

    overridden = apply_env_overrides(loaded.data, environ)
    if not overridden.success or overridden.data is None:
        return overridden

    tools = validate_allowed_tools(overridden.data.claude.allowed_tools)
    if not tools.success:
        return Result.fail(tools.error or "Invalid tools", tools.error_code or "INVALID_TOOL")
    return overridden
