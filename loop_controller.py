"""Ralph loop controller: runs Claude Code against a project until the work is done.

Each iteration checks the circuit breaker, the hourly call budget and the
exit-signal window before invoking the agent, then feeds the outcome back
into those components. All state lives under ``.ralph/`` and is written by
this single process.
"""

from __future__ import annotations

import argparse
import enum
import json
import logging
import os
import signal
import sys
import threading
import time
from pathlib import Path
from typing import Callable, Optional

from agent_runner import AgentRunner, build_claude_command, is_api_limit_output
from change_detector import GitChangeDetector
from circuit_breaker import CLOSED, CircuitBreaker
from config import RalphConfig, load_effective_config, split_tools, validate_allowed_tools
from logging_setup import configure_logging
from rate_limiter import RateLimiter
from response_analyzer import PERMISSION_DENIED, ExitSignalAnalyzer, count_plan_items
from session_manager import SessionManager
from state_store import Clock, RunStatus, StateStore, utc_now

logger = logging.getLogger(__name__)

# Exit codes
EXIT_COMPLETE = 0
EXIT_FATAL = 1
EXIT_CIRCUIT_OPEN = 3
EXIT_PERMISSION_DENIED = 4
EXIT_API_LIMIT = 5
EXIT_INTERRUPTED = 130

LOOP_CONTEXT_MAX_LENGTH = 500
SUMMARY_CONTEXT_LENGTH = 200


class LoopState(str, enum.Enum):
    STARTUP = "STARTUP"
    ITERATING = "ITERATING"
    WAITING_RATE_LIMIT = "WAITING_RATE_LIMIT"
    WAITING_API_LIMIT = "WAITING_API_LIMIT"
    HALTED_CIRCUIT = "HALTED_CIRCUIT"
    HALTED_PERMISSION = "HALTED_PERMISSION"
    COMPLETED = "COMPLETED"
    FAILED_FATAL = "FAILED_FATAL"


class ExecutionOutcome(str, enum.Enum):
    SUCCESS = "success"
    GENERIC_FAILURE = "generic_failure"
    API_QUOTA_EXCEEDED = "api_quota_exceeded"
    CIRCUIT_TRIP = "circuit_trip"


class LoopInterrupted(Exception):
    """Raised from the SIGTERM handler to unwind into the interrupt cleanup."""


def build_loop_context(
    loop_number: int,
    remaining_tasks: Optional[int],
    breaker_state: str,
    previous_summary: str,
) -> str:
    """Short per-loop note passed with --append-system-prompt."""
    context = f"Loop #{loop_number}. "
    if remaining_tasks is not None:
        context += f"Remaining tasks: {remaining_tasks}. "
    if breaker_state and breaker_state != CLOSED:
        context += f"Circuit breaker: {breaker_state}. "
    if previous_summary:
        context += f"Previous: {previous_summary[:SUMMARY_CONTEXT_LENGTH]}"
    return context[:LOOP_CONTEXT_MAX_LENGTH]


def prompt_operator_choice(timeout: float) -> str:
    """Read one line from stdin, giving up after ``timeout`` seconds."""
    answer: list[str] = []

    def _read() -> None:
        try:
            answer.append(sys.stdin.readline())
        except (OSError, ValueError):
            pass

    print("\nThe Claude API usage limit has been reached. You can either:")
    print("  1) Wait for the limit to reset (usually within an hour)")
    print("  2) Exit the loop and try again later")
    print(f"Choose an option (1 or 2, {int(timeout)}s timeout): ", end="", flush=True)

    reader = threading.Thread(target=_read, daemon=True)
    reader.start()
    reader.join(timeout)
    print()
    return answer[0].strip() if answer else ""


class LoopController:
    """Drives the loop state machine for one project."""

    def __init__(
        self,
        project_path: str | Path,
        config: RalphConfig,
        runner=None,
        change_detector=None,
        clock: Clock = utc_now,
        sleep: Callable[[float], None] = time.sleep,
        choose: Callable[[float], str] = prompt_operator_choice,
    ) -> None:
        self.project_path = Path(project_path).resolve()
        self.config = config
        self.clock = clock
        self.sleep = sleep
        self.choose = choose

        self.store = StateStore(self.project_path)
        self.rate_limiter = RateLimiter(
            self.store, config.rate_limit.max_calls_per_hour, clock=clock, sleep=sleep,
        )
        self.breaker = CircuitBreaker(self.store, config.circuit_breaker, clock=clock)
        self.analyzer = ExitSignalAnalyzer(self.store, config.exit_detection, clock=clock)
        self.session = SessionManager(self.store, config.session.expiry_hours, clock=clock)
        self.runner = runner or AgentRunner(
            self.project_path,
            self.store,
            timeout_seconds=config.claude.timeout_minutes * 60,
            poll_interval=config.loop.progress_poll_seconds,
            verbose=config.logging.verbose,
        )
        self.change_detector = change_detector or GitChangeDetector(self.project_path)

        self.prompt_file = self.project_path / config.claude.prompt_file
        self.state = LoopState.STARTUP
        self.loop_count = 0

    # --- state bookkeeping ---

    def _set_state(self, new_state: LoopState) -> None:
        if new_state != self.state:
            logger.debug("Loop state: %s -> %s", self.state.value, new_state.value)
            self.state = new_state

    def _write_status(self, last_action: str, status: str, exit_reason: str = "") -> None:
        self.store.write_status(RunStatus(
            timestamp=self.clock().isoformat(),
            loop_count=self.loop_count,
            calls_made_this_hour=self.rate_limiter.calls_made,
            max_calls_per_hour=self.rate_limiter.limit,
            last_action=last_action,
            status=status,
            exit_reason=exit_reason,
            next_reset=self.rate_limiter.next_reset_time(),
        ))

    # --- main loop ---

    def run(self) -> int:
        """Execute the loop until a terminal state. Returns the exit code."""
        try:
            return self._run()
        except (KeyboardInterrupt, LoopInterrupted):
            self._cleanup_interrupted()
            return EXIT_INTERRUPTED

    def _run(self) -> int:
        logger.info("=" * 60)
        logger.info("Ralph loop starting with Claude Code")
        logger.info("Project: %s", self.project_path)
        logger.info("Max calls per hour: %d", self.config.rate_limit.max_calls_per_hour)
        logger.info("Timeout: %d minutes per call", self.config.claude.timeout_minutes)
        logger.info("=" * 60)

        created = self.store.ensure_dirs()
        if not created.success:
            logger.error("%s", created.error)
            self._set_state(LoopState.FAILED_FATAL)
            return EXIT_FATAL

        if not self.prompt_file.is_file():
            logger.error("Prompt file '%s' not found!", self.prompt_file)
            logger.error("Create %s describing the work for Claude Code.", self.config.claude.prompt_file)
            self._set_state(LoopState.FAILED_FATAL)
            return EXIT_FATAL

        self.runner.check_version(self.config.claude.command, self.config.claude.min_version)

        self.session.initialize()
        self.breaker.initialize()
        self._set_state(LoopState.ITERATING)
        logger.info("Starting main loop...")

        while True:
            self.loop_count += 1
            self.session.touch(self.loop_count)
            logger.info("=== Starting Loop #%d ===", self.loop_count)

            exit_code = self._iterate()
            if exit_code is not None:
                return exit_code
            logger.info("=== Completed Loop #%d ===", self.loop_count)

    def _iterate(self) -> Optional[int]:
        """One loop number. Returns an exit code once a terminal state is reached.

        Rate-limit and API-limit waits retry the same loop number.
        """
        while True:
            if self.breaker.should_halt():
                return self._halt_circuit("circuit_breaker_open")

            if not self.rate_limiter.can_proceed():
                self._set_state(LoopState.WAITING_RATE_LIMIT)
                self._write_status("rate_limited", "waiting")
                self.rate_limiter.wait_for_reset()
                self._set_state(LoopState.ITERATING)
                continue

            exit_reason = self.analyzer.should_exit()
            if exit_reason == PERMISSION_DENIED:
                return self._halt_permission()
            if exit_reason:
                return self._complete(exit_reason)

            self._write_status("executing", "running")
            outcome = self._execute()

            if outcome is ExecutionOutcome.SUCCESS:
                self._write_status("completed", "success")
                self.sleep(self.config.loop.success_pause_seconds)
                return None

            if outcome is ExecutionOutcome.CIRCUIT_TRIP:
                logger.error("Circuit breaker opened - halting loop")
                return self._halt_circuit("circuit_breaker_trip")

            if outcome is ExecutionOutcome.API_QUOTA_EXCEEDED:
                if self._wait_for_api_limit():
                    continue
                return EXIT_API_LIMIT

            self._write_status("failed", "error")
            logger.warning(
                "Execution failed, waiting %d seconds before retry...",
                self.config.loop.failure_backoff_seconds,
            )
            self.sleep(self.config.loop.failure_backoff_seconds)
            return None

    def _execute(self) -> ExecutionOutcome:
        """Invoke the agent once and classify the outcome."""
        claude = self.config.claude
        continuity = self.config.session.continuity_enabled
        loop = self.loop_count

        stamp = self.clock().strftime("%Y-%m-%d_%H-%M-%S")
        output_file = self.store.log_dir / f"claude_output_{stamp}.log"

        marker = self.change_detector.marker()
        self.store.write_text(self.store.loop_start_marker_file, marker)

        loop_context = ""
        session_id = None
        if continuity:
            loop_context = self._loop_context()
            if loop_context and self.config.logging.verbose:
                logger.info("Loop context: %s", loop_context)
            session_id = self.session.resume_or_new()

        try:
            prompt_content = self.prompt_file.read_text(encoding="utf-8")
        except OSError as e:
            logger.error("Cannot read prompt file %s: %s", self.prompt_file, e)
            return ExecutionOutcome.GENERIC_FAILURE

        live = claude.live_output
        command = build_claude_command(claude, prompt_content, loop_context, session_id, live=live)
        self.store.write_text(
            self.store.live_log_file,
            f"\n\n=== Loop #{loop} - {self.clock().strftime('%Y-%m-%d %H:%M:%S')} ===",
        )

        logger.info(
            "Executing Claude Code (Call %d/%d, timeout: %dm)",
            self.rate_limiter.calls_made + 1, self.rate_limiter.limit, claude.timeout_minutes,
        )
        result = self.runner.run(command, output_file, live=live)
        raw = self._read_output(output_file)

        if result.exit_code != 0:
            if is_api_limit_output(raw):
                logger.error("Claude API usage limit reached")
                return ExecutionOutcome.API_QUOTA_EXCEEDED
            logger.error(
                "Claude Code execution failed (exit %d), check: %s", result.exit_code, output_file
            )
            return ExecutionOutcome.GENERIC_FAILURE

        self.rate_limiter.record_call()
        logger.info("Claude Code execution completed successfully (%.0fs)", result.duration_seconds)

        analysis = self.analyzer.analyze(raw, loop)
        if analysis.num_turns:
            logger.info("Claude used %d turns ($%.4f)", analysis.num_turns, analysis.cost_usd)
        if continuity and analysis.session_id:
            self.session.save_token(analysis.session_id)

        files_changed = self.change_detector.count_changed_files(marker)
        if analysis.has_errors:
            logger.warning("Errors detected in output, check: %s", output_file)

        opened = self.breaker.record_result(
            loop, files_changed, analysis.has_errors, len(raw), analysis.error_line,
        )
        return ExecutionOutcome.CIRCUIT_TRIP if opened else ExecutionOutcome.SUCCESS

    @staticmethod
    def _read_output(output_file: Path) -> str:
        try:
            return output_file.read_text(encoding="utf-8", errors="replace")
        except OSError:
            return ""

    def _loop_context(self) -> str:
        plan = self.analyzer.plan_file
        remaining = count_plan_items(plan)[0] if plan.is_file() else None
        latest = self.analyzer.latest()
        return build_loop_context(
            self.loop_count,
            remaining,
            self.breaker.state,
            latest.work_summary if latest else "",
        )

    # --- waits ---

    def _wait_for_api_limit(self) -> bool:
        """Ask the operator whether to wait out the usage limit. True means retry.

        "2" or no answer before the timeout exits; any other answer waits.
        """
        self._set_state(LoopState.WAITING_API_LIMIT)
        self._write_status("api_limit", "paused")
        logger.warning("Claude API usage limit reached!")

        choice = self.choose(self.config.loop.api_limit_choice_timeout_seconds)
        if not choice or choice == "2":
            logger.info("User chose to exit (or timed out). Exiting loop...")
            self._write_status("api_limit_exit", "stopped", "api_5hour_limit")
            self._set_state(LoopState.FAILED_FATAL)
            return False

        minutes = self.config.loop.api_limit_wait_minutes
        logger.info("Waiting %d minutes before retrying...", minutes)
        for remaining in range(minutes, 0, -1):
            logger.info("Time until retry: %d min", remaining)
            self.sleep(60)
        self._set_state(LoopState.ITERATING)
        return True

    # --- terminal transitions ---

    def _halt_circuit(self, reset_reason: str) -> int:
        self.session.reset(reset_reason, self.loop_count)
        self._write_status("circuit_breaker_open", "halted", "stagnation_detected")
        self._set_state(LoopState.HALTED_CIRCUIT)
        logger.error("Circuit breaker has opened - execution halted")
        logger.info("Run 'ralph-loop --reset-circuit' after addressing the issue")
        return EXIT_CIRCUIT_OPEN

    def _halt_permission(self) -> int:
        latest = self.analyzer.latest()
        denied = ", ".join(latest.denied_commands) if latest else "unknown"
        self.session.reset(PERMISSION_DENIED, self.loop_count)
        self._write_status(PERMISSION_DENIED, "halted", PERMISSION_DENIED)
        self._set_state(LoopState.HALTED_PERMISSION)
        logger.error("Permission denied - halting loop (denied: %s)", denied)
        logger.error(
            "Add the required tools to claude.allowed_tools in .ralph/config.json "
            "(e.g. 'Bash(npm *)'), then run 'ralph-loop --reset-session' and restart."
        )
        return EXIT_PERMISSION_DENIED

    def _complete(self, exit_reason: str) -> int:
        logger.info("Graceful exit triggered: %s", exit_reason)
        self.session.reset("project_complete", self.loop_count)
        self._write_status("graceful_exit", "completed", exit_reason)
        self._set_state(LoopState.COMPLETED)
        logger.info("Ralph has completed the project! Final stats:")
        logger.info("  - Total loops: %d", self.loop_count)
        logger.info("  - API calls used: %d", self.rate_limiter.calls_made)
        logger.info("  - Exit reason: %s", exit_reason)
        return EXIT_COMPLETE

    def _cleanup_interrupted(self) -> None:
        logger.info("Ralph loop interrupted. Cleaning up...")
        self.session.reset("manual_interrupt", self.loop_count)
        self._write_status("interrupted", "stopped")


def _raise_interrupt(signum, frame) -> None:
    raise LoopInterrupted(f"signal {signum}")


def _positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError(f"{value} is not a positive integer")
    return number


def _timeout_minutes(value: str) -> int:
    number = _positive_int(value)
    if number > 120:
        raise argparse.ArgumentTypeError("Timeout must be between 1 and 120 minutes")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ralph-loop",
        description="Autonomous Claude Code development loop with rate limiting and stagnation detection",
    )
    parser.add_argument("--project", default=".", help="Project directory path")
    parser.add_argument("--config", default=None, help="Path to config.json (default: .ralph/config.json)")
    parser.add_argument("-c", "--calls", type=_positive_int, default=None, help="Max calls per hour")
    parser.add_argument("-p", "--prompt", default=None, help="Prompt file (default: .ralph/PROMPT.md)")
    parser.add_argument("-s", "--status", action="store_true", help="Show current status and exit")
    parser.add_argument("-v", "--verbose", action="store_true", help="Show detailed progress updates")
    parser.add_argument("--json-log", action="store_true", help="Output structured JSON logs")
    parser.add_argument("-l", "--live", action="store_true", help="Stream Claude Code output in real time")
    parser.add_argument("-t", "--timeout", type=_timeout_minutes, default=None, help="Execution timeout in minutes (1-120)")
    parser.add_argument("--reset-circuit", action="store_true", help="Reset circuit breaker to CLOSED and exit")
    parser.add_argument("--circuit-status", action="store_true", help="Show circuit breaker status and exit")
    parser.add_argument("--auto-reset-circuit", action="store_true", help="Reset an open circuit breaker on startup")
    parser.add_argument("--reset-session", action="store_true", help="Reset session state and exit")
    parser.add_argument("--output-format", choices=["json", "text"], default=None, help="Claude output format")
    parser.add_argument("--allowed-tools", default=None, help="Comma-separated list of allowed tools")
    parser.add_argument("--no-continue", action="store_true", help="Disable session continuity across loops")
    parser.add_argument("--session-expiry", type=_positive_int, default=None, help="Session expiration in hours")
    return parser


def apply_cli_overrides(config: RalphConfig, args: argparse.Namespace) -> Optional[str]:
    """Apply command-line flags to ``config``. Returns an error message on bad input."""
    if args.calls is not None:
        config.rate_limit.max_calls_per_hour = args.calls
    if args.prompt is not None:
        config.claude.prompt_file = args.prompt
    if args.verbose:
        config.logging.verbose = True
    if args.json_log:
        config.logging.json_log = True
    if args.live:
        config.claude.live_output = True
    if args.timeout is not None:
        config.claude.timeout_minutes = args.timeout
    if args.auto_reset_circuit:
        config.circuit_breaker.auto_reset_on_startup = True
    if args.output_format is not None:
        config.claude.output_format = args.output_format
    if args.allowed_tools is not None:
        tools = validate_allowed_tools(split_tools(args.allowed_tools))
        if not tools.success:
            return tools.error
        config.claude.allowed_tools = tools.data or []
    if args.no_continue:
        config.session.continuity_enabled = False
    if args.session_expiry is not None:
        config.session.expiry_hours = args.session_expiry
    if config.claude.live_output and config.claude.output_format == "text":
        logger.warning("Live mode requires JSON output format. Overriding text -> json.")
        config.claude.output_format = "json"
    return None


def main(argv: Optional[list[str]] = None) -> None:
    """CLI entry point."""
    args = build_parser().parse_args(argv)
    project_path = Path(args.project).resolve()
    store = StateStore(project_path)

    if args.status:
        status = store.read_status()
        if status is None:
            print("No status file found. Ralph may not be running.")
        else:
            print("Current Status:")
            print(json.dumps(status.model_dump(), indent=2))
        sys.exit(EXIT_COMPLETE)

    config_result = load_effective_config(project_path, os.environ, args.config)
    if not config_result.success or config_result.data is None:
        logger.error("Config error: %s", config_result.error)
        sys.exit(EXIT_FATAL)
    config = config_result.data

    error = apply_cli_overrides(config, args)
    if error:
        logger.error("%s", error)
        sys.exit(EXIT_FATAL)

    configure_logging(
        store.log_dir,
        verbose=config.logging.verbose,
        json_log=config.logging.json_log,
        redact_patterns=config.logging.redact_patterns,
    )

    if args.circuit_status:
        print(CircuitBreaker(store, config.circuit_breaker).format_status())
        sys.exit(EXIT_COMPLETE)

    if args.reset_circuit:
        CircuitBreaker(store, config.circuit_breaker).reset("Manual reset via command line")
        SessionManager(store, config.session.expiry_hours).reset("manual_circuit_reset")
        print("Circuit breaker reset to CLOSED")
        sys.exit(EXIT_COMPLETE)

    if args.reset_session:
        SessionManager(store, config.session.expiry_hours).reset("manual_reset_flag")
        print("Session state reset successfully")
        sys.exit(EXIT_COMPLETE)

    signal.signal(signal.SIGTERM, _raise_interrupt)
    controller = LoopController(project_path, config)
    sys.exit(controller.run())


if __name__ == "__main__":
    main()
