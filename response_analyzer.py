"""Exit-signal analysis for agent output.

``classify_output`` is a pure function from captured output to a
``ResponseAnalysis``. ``ExitSignalAnalyzer`` records each analysis into a
bounded signal window on disk and decides whether the loop should stop.

Completion indicators come only from the explicit EXIT_SIGNAL marker the agent
emits in its RALPH_STATUS block (or the ``exit_signal`` field of a JSON
result). Phrase heuristics feed the done-signal count and never the
completion indicators.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Optional, Sequence

from pydantic import BaseModel, Field

from config import ExitDetectionConfig
from output_parser import ParsedOutput, parse_output
from state_store import Clock, StateStore, utc_now

logger = logging.getLogger(__name__)

# Exit reasons, in decision priority order
PERMISSION_DENIED = "permission_denied"
TEST_SATURATION = "test_saturation"
COMPLETION_SIGNALS = "completion_signals"
SAFETY_CIRCUIT_BREAKER = "safety_circuit_breaker"
PROJECT_COMPLETE = "project_complete"
PLAN_COMPLETE = "plan_complete"

STATUS_BLOCK_RE = re.compile(
    r"---RALPH_STATUS---(.*?)---END_RALPH_STATUS---", re.DOTALL
)
_FIELD_RE = re.compile(r"^\s*([A-Z_]+)\s*:\s*(.*?)\s*$")

# A line that is a JSON field whose key mentions "error", e.g. "is_error": false
_JSON_ERROR_FIELD_RE = re.compile(r'"[^"]*error[^"]*":')
ERROR_LINE_RE = re.compile(
    r"(^Error:|^ERROR:|^error:|\]: error|Link: error|Error occurred"
    r"|failed with error|[Ee]xception|Fatal|FATAL)"
)

TEST_PATTERNS = ("running tests", "npm test", "bats", "pytest", "all tests pass")
IMPLEMENTATION_PATTERNS = (
    "implementing", "creating", "writing", "adding", "function", "class",
)

_UNCHECKED_RE = re.compile(r"^\s*- \[ \]", re.MULTILINE)
_CHECKED_RE = re.compile(r"^\s*- \[[xX]\]", re.MULTILINE)

SUMMARY_MAX_LENGTH = 500


class ResponseAnalysis(BaseModel):
    """Classification of one loop's output (.ralph/.response_analysis)."""

    loop_number: int = 0
    timestamp: str = ""
    output_format: str = "text"
    output_length: int = 0
    session_id: str = ""
    has_permission_denials: bool = False
    denied_commands: list[str] = Field(default_factory=list)
    permission_denial_count: int = 0
    exit_signal: bool = False
    work_summary: str = ""
    confidence_score: int = Field(default=0, ge=0, le=100)
    is_test_only: bool = False
    done_signal: bool = False
    completion_indicator: bool = False
    has_errors: bool = False
    error_line: str = ""
    cost_usd: float = 0.0
    num_turns: int = 0
    status: str = ""
    work_type: str = ""
    tests_status: str = ""
    files_modified: int = 0
    tasks_completed: int = 0
    recommendation: str = ""


class ExitSignalWindow(BaseModel):
    """Loop numbers carrying each signal, most recent last (.ralph/.exit_signals)."""

    test_only_loops: list[int] = Field(default_factory=list)
    done_signals: list[int] = Field(default_factory=list)
    completion_indicators: list[int] = Field(default_factory=list)


def parse_status_block(text: str) -> dict[str, str]:
    """Fields of the last RALPH_STATUS block in ``text``, keys upper-cased."""
    blocks = STATUS_BLOCK_RE.findall(text)
    if not blocks:
        return {}
    fields: dict[str, str] = {}
    for line in blocks[-1].splitlines():
        match = _FIELD_RE.match(line)
        if match:
            fields[match.group(1).upper()] = match.group(2)
    return fields


def detect_errors(raw: str) -> Optional[str]:
    """First line that looks like a real error, skipping JSON fields named *error*."""
    for line in raw.splitlines():
        if _JSON_ERROR_FIELD_RE.search(line):
            continue
        if ERROR_LINE_RE.search(line):
            return line.strip()
    return None


def is_test_only_text(text: str) -> bool:
    lowered = text.lower()
    if not any(p in lowered for p in TEST_PATTERNS):
        return False
    return not any(p in lowered for p in IMPLEMENTATION_PATTERNS)


def _to_int(value: str) -> int:
    match = re.match(r"\s*(\d+)", value)
    return int(match.group(1)) if match else 0


def classify_output(
    raw: str,
    loop_number: int = 0,
    completion_phrases: Sequence[str] = (),
    parsed: Optional[ParsedOutput] = None,
) -> ResponseAnalysis:
    """Turn one invocation's captured output into a ResponseAnalysis."""
    if parsed is None:
        parsed = parse_output(raw)
    text = parsed.result_text or ""
    fields = parse_status_block(text) or parse_status_block(raw)

    status = fields.get("STATUS", "").upper()
    work_type = fields.get("WORK_TYPE", "").upper()

    if "EXIT_SIGNAL" in fields:
        exit_signal = fields["EXIT_SIGNAL"].strip().lower() == "true"
    else:
        exit_signal = bool(parsed.exit_signal)

    if work_type:
        is_test_only = work_type == "TESTING"
    else:
        is_test_only = is_test_only_text(text)

    lowered = text.lower()
    phrase_hit = any(p.lower() in lowered for p in completion_phrases if p)
    done_signal = status == "COMPLETE" or phrase_hit

    denied = parsed.denied_commands
    error_line = detect_errors(raw)
    if error_line is None and parsed.is_error:
        # the CLI flagged the result itself as an error
        error_line = next(
            (line.strip() for line in text.splitlines() if line.strip()), "is_error result"
        )

    summary = fields.get("RECOMMENDATION", "")
    if not summary:
        summary = next((line.strip() for line in text.splitlines() if line.strip()), "")

    confidence = 0
    if fields:
        confidence += 20
    if status == "COMPLETE":
        confidence += 30
    if phrase_hit:
        confidence += 20
    if exit_signal:
        confidence += 30

    return ResponseAnalysis(
        loop_number=loop_number,
        timestamp=utc_now().isoformat(),
        output_format=parsed.format,
        output_length=len(raw),
        cost_usd=parsed.cost_usd,
        num_turns=parsed.num_turns,
        session_id=parsed.session_id or "",
        has_permission_denials=bool(denied),
        denied_commands=denied,
        permission_denial_count=len(denied),
        exit_signal=exit_signal,
        work_summary=summary[:SUMMARY_MAX_LENGTH],
        confidence_score=min(confidence, 100),
        is_test_only=is_test_only,
        done_signal=done_signal,
        completion_indicator=exit_signal,
        has_errors=error_line is not None,
        error_line=error_line or "",
        status=status,
        work_type=work_type,
        tests_status=fields.get("TESTS_STATUS", "").upper(),
        files_modified=_to_int(fields.get("FILES_MODIFIED", "")),
        tasks_completed=_to_int(fields.get("TASKS_COMPLETED_THIS_LOOP", "")),
        recommendation=fields.get("RECOMMENDATION", ""),
    )


def count_plan_items(plan_file: Path) -> tuple[int, int]:
    """Return (unchecked, checked) markdown checkbox counts; (0, 0) if unreadable."""
    try:
        content = plan_file.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        return 0, 0
    return len(_UNCHECKED_RE.findall(content)), len(_CHECKED_RE.findall(content))


def clear_exit_signals(store: StateStore) -> None:
    """Empty the signal window and drop the latest analysis."""
    store.save_model(store.exit_signals_file, ExitSignalWindow())
    store.remove(store.response_analysis_file)


class ExitSignalAnalyzer:
    """Records loop classifications and applies the graceful-exit policy."""

    def __init__(
        self,
        store: StateStore,
        config: ExitDetectionConfig,
        clock: Clock = utc_now,
    ) -> None:
        self.store = store
        self.config = config
        self.clock = clock
        self.plan_file = store.project_path / config.plan_file

    def window(self) -> ExitSignalWindow:
        return self.store.load_model(
            self.store.exit_signals_file, ExitSignalWindow, ExitSignalWindow
        )

    def latest(self) -> Optional[ResponseAnalysis]:
        result = self.store.read_model(self.store.response_analysis_file, ResponseAnalysis)
        if result.success:
            return result.data
        if result.error_code != "NOT_FOUND":
            logger.warning("%s, ignoring previous analysis", result.error)
        return None

    def analyze(self, raw: str, loop_number: int) -> ResponseAnalysis:
        """Classify ``raw`` and fold the result into the signal window."""
        analysis = classify_output(raw, loop_number, self.config.completion_phrases)
        analysis.timestamp = self.clock().isoformat()
        self.record(analysis)
        return analysis

    def record(self, analysis: ResponseAnalysis) -> ExitSignalWindow:
        """Persist ``analysis`` as the latest and append its signals to the window.

        Signals only accumulate: a negative loop does not remove earlier entries.
        Each list keeps the ``signal_window`` most recent loop numbers.
        """
        self.store.save_model(self.store.response_analysis_file, analysis)

        window = self.window()
        loop = analysis.loop_number
        if analysis.is_test_only:
            window.test_only_loops.append(loop)
        if analysis.done_signal:
            window.done_signals.append(loop)
        if analysis.completion_indicator:
            window.completion_indicators.append(loop)

        size = self.config.signal_window
        window.test_only_loops = window.test_only_loops[-size:]
        window.done_signals = window.done_signals[-size:]
        window.completion_indicators = window.completion_indicators[-size:]
        self.store.save_model(self.store.exit_signals_file, window)

        logger.info(
            "Analysis: exit_signal=%s test_only=%s done=%s errors=%s denials=%d | %s",
            analysis.exit_signal, analysis.is_test_only, analysis.done_signal,
            analysis.has_errors, analysis.permission_denial_count,
            analysis.work_summary[:100],
        )
        return window

    def should_exit(self) -> str:
        """Exit reason for the current window, or "" to keep going."""
        window = self.window()
        latest = self.latest()
        cfg = self.config

        if latest is not None and latest.has_permission_denials:
            logger.warning(
                "Permission denied for %d command(s): %s",
                latest.permission_denial_count, ", ".join(latest.denied_commands),
            )
            return PERMISSION_DENIED

        if len(window.test_only_loops) >= cfg.max_test_only_loops:
            logger.warning(
                "Exit condition: Too many test-focused loops (%d >= %d)",
                len(window.test_only_loops), cfg.max_test_only_loops,
            )
            return TEST_SATURATION

        if len(window.done_signals) >= cfg.max_done_signals:
            logger.warning(
                "Exit condition: Multiple completion signals (%d >= %d)",
                len(window.done_signals), cfg.max_done_signals,
            )
            return COMPLETION_SIGNALS

        indicators = len(window.completion_indicators)
        if indicators >= cfg.safety_completion_threshold:
            logger.warning(
                "Safety circuit breaker: %d completion indicators recorded", indicators
            )
            return SAFETY_CIRCUIT_BREAKER

        if (
            indicators >= cfg.completion_indicator_threshold
            and latest is not None
            and latest.exit_signal
        ):
            logger.warning(
                "Exit condition: Strong completion indicators (%d) with EXIT_SIGNAL=true",
                indicators,
            )
            return PROJECT_COMPLETE

        unchecked, checked = count_plan_items(self.plan_file)
        total = unchecked + checked
        if total > 0 and checked == total:
            logger.warning("Exit condition: All plan items completed (%d/%d)", checked, total)
            return PLAN_COMPLETE

        return ""
