"""Claude CLI invocation: command building, process execution and timeouts.

Two execution modes:

* background: stdout/stderr go straight to the capture file while the
  runner polls for liveness and writes ``progress.json`` for monitors;
* streaming: stream-json output is read line by line, copied to the capture
  file, and rendered through the display filter to the console and
  ``live.log``.

Both modes kill the process tree once the wall-clock timeout expires. stdin is
always /dev/null because newer CLI versions read stdin even in ``-p`` mode.
"""

from __future__ import annotations

import logging
import os
import re
import signal
import subprocess
import sys
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, TextIO

from config import ClaudeConfig, Result
from output_parser import render_stream_event
from state_store import ProgressSnapshot, StateStore

logger = logging.getLogger(__name__)

EXIT_TIMEOUT = 124
EXIT_NOT_FOUND = 127
EXIT_SPAWN_ERROR = 126

SPINNER = ("⠸", "⠋", "⠙", "⠹")

API_LIMIT_RE = re.compile(
    r"5.*hour.*limit|limit.*reached.*try.*back|usage.*limit.*reached", re.IGNORECASE
)
_VERSION_RE = re.compile(r"(\d+)\.(\d+)\.(\d+)")


def build_claude_command(
    config: ClaudeConfig,
    prompt_content: str,
    loop_context: str = "",
    session_id: Optional[str] = None,
    live: bool = False,
) -> list[str]:
    """Argument vector for one invocation (no shell involved).

    ``--resume <id>`` targets this loop's own session; ``--continue`` is never
    used because it would pick up whatever session ran last in the directory.
    """
    args = [config.command]

    if config.dangerously_skip_permissions:
        args.append("--dangerously-skip-permissions")

    if live:
        args.extend(["--output-format", "stream-json"])
    elif config.output_format == "json":
        args.extend(["--output-format", "json"])

    if config.allowed_tools and not config.dangerously_skip_permissions:
        args.append("--allowedTools")
        args.extend(tool.strip() for tool in config.allowed_tools if tool.strip())

    if session_id:
        args.extend(["--resume", session_id])

    if loop_context:
        args.extend(["--append-system-prompt", loop_context])

    args.extend(["-p", prompt_content])

    if live:
        args.extend(["--verbose", "--include-partial-messages"])
    return args


def is_api_limit_output(text: str) -> bool:
    """True when failed output reports the usage limit being reached."""
    return any(API_LIMIT_RE.search(line) for line in text.splitlines())


def parse_version(text: str) -> Optional[tuple[int, int, int]]:
    match = _VERSION_RE.search(text)
    if not match:
        return None
    return int(match.group(1)), int(match.group(2)), int(match.group(3))


@dataclass
class ProcessResult:
    """Outcome of one agent process."""

    exit_code: int
    duration_seconds: float
    output_file: Path
    timed_out: bool = False


class AgentRunner:
    """Runs the Claude CLI for the loop controller, one process at a time."""

    def __init__(
        self,
        project_path: str | Path,
        store: StateStore,
        timeout_seconds: float,
        poll_interval: float = 10.0,
        verbose: bool = False,
        console: Optional[TextIO] = None,
    ) -> None:
        self.project_path = Path(project_path)
        self.store = store
        self.timeout_seconds = timeout_seconds
        self.poll_interval = poll_interval
        self.verbose = verbose
        self.console = console if console is not None else sys.stdout

    def check_version(self, command: str, min_version: str) -> Result[str]:
        """Compare the installed CLI version to ``min_version``. Advisory only."""
        try:
            result = subprocess.run(
                [command, "--version"],
                cwd=str(self.project_path),
                capture_output=True, text=True, timeout=30,
            )
        except FileNotFoundError:
            return Result.fail(f"{command} not found on PATH", "NOT_FOUND")
        except (subprocess.TimeoutExpired, OSError) as e:
            return Result.fail(f"Cannot run {command} --version: {e}", "VERSION_ERROR")

        version = parse_version(result.stdout)
        required = parse_version(min_version)
        if version is None or required is None:
            logger.warning("Cannot detect Claude CLI version, assuming compatible")
            return Result.ok("unknown")

        found = ".".join(map(str, version))
        if version < required:
            logger.warning(
                "Claude CLI version %s < %s. Some modern features may not work.",
                found, min_version,
            )
            return Result.fail(f"Claude CLI {found} is older than {min_version}", "VERSION_TOO_OLD")
        logger.info("Claude CLI version %s (>= %s)", found, min_version)
        return Result.ok(found)

    def run(self, command: list[str], output_file: Path, live: bool = False) -> ProcessResult:
        if live:
            return self.run_streaming(command, output_file)
        return self.run_background(command, output_file)

    def _spawn(self, command: list[str], **kwargs) -> subprocess.Popen | int:
        """Start the process, or return an exit code if it cannot be started."""
        try:
            return subprocess.Popen(
                command,
                cwd=str(self.project_path),
                stdin=subprocess.DEVNULL,
                start_new_session=sys.platform != "win32",
                **kwargs,
            )
        except FileNotFoundError:
            logger.error("%s CLI not found. Ensure it is on PATH.", command[0])
            return EXIT_NOT_FOUND
        except OSError as e:
            logger.error("Failed to start %s: %s", command[0], e)
            return EXIT_SPAWN_ERROR

    def _start_timer(self, proc: subprocess.Popen, flag: threading.Event) -> threading.Timer:
        def _on_timeout() -> None:
            flag.set()
            logger.warning("Claude timed out after %ds, killing PID %d", self.timeout_seconds, proc.pid)
            self._kill_process_tree(proc.pid)
            try:
                proc.kill()
            except OSError:
                pass

        timer = threading.Timer(self.timeout_seconds, _on_timeout)
        timer.daemon = True
        timer.start()
        return timer

    def run_background(self, command: list[str], output_file: Path) -> ProcessResult:
        """Run with output redirected to ``output_file``, polling for progress."""
        output_file.parent.mkdir(parents=True, exist_ok=True)
        start = time.monotonic()
        timed_out = threading.Event()

        with open(output_file, "w", encoding="utf-8") as out:
            proc = self._spawn(command, stdout=out, stderr=subprocess.STDOUT)
            if isinstance(proc, int):
                out.write(f"Failed to start {command[0]}\n")
                return ProcessResult(proc, time.monotonic() - start, output_file)

            timer = self._start_timer(proc, timed_out)
            ticks = 0
            try:
                while True:
                    try:
                        proc.wait(timeout=self.poll_interval)
                        break
                    except subprocess.TimeoutExpired:
                        ticks += 1
                        self._report_progress(output_file, ticks)
            finally:
                timer.cancel()

        duration = time.monotonic() - start
        exit_code = EXIT_TIMEOUT if timed_out.is_set() else (proc.returncode or 0)
        self._finish_progress(exit_code)
        return ProcessResult(exit_code, duration, output_file, timed_out.is_set())

    def _report_progress(self, output_file: Path, ticks: int) -> None:
        indicator = SPINNER[ticks % len(SPINNER)]
        elapsed = int(ticks * self.poll_interval)
        last_line = ""
        try:
            content = output_file.read_text(encoding="utf-8", errors="replace")
        except OSError:
            content = ""
        if content:
            lines = content.strip().splitlines()
            last_line = lines[-1][:80] if lines else ""
            self.store.write_text(self.store.live_log_file, content)

        self.store.write_progress(ProgressSnapshot(
            status="executing",
            indicator=indicator,
            elapsed_seconds=elapsed,
            last_output=last_line,
        ))
        if self.verbose:
            if last_line:
                logger.info("%s Claude Code: %s... (%ds)", indicator, last_line, elapsed)
            else:
                logger.info("%s Claude Code working... (%ds elapsed)", indicator, elapsed)

    def _finish_progress(self, exit_code: int) -> None:
        self.store.write_progress(
            ProgressSnapshot(status="completed" if exit_code == 0 else "failed")
        )

    def run_streaming(self, command: list[str], output_file: Path) -> ProcessResult:
        """Run with stream-json output rendered live and captured raw."""
        output_file.parent.mkdir(parents=True, exist_ok=True)
        start = time.monotonic()
        timed_out = threading.Event()

        proc = self._spawn(
            command,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            encoding="utf-8",
            errors="replace",
        )
        if isinstance(proc, int):
            output_file.write_text(f"Failed to start {command[0]}\n", encoding="utf-8")
            return ProcessResult(proc, time.monotonic() - start, output_file)

        timer = self._start_timer(proc, timed_out)
        try:
            with open(output_file, "w", encoding="utf-8") as raw, \
                    open(self.store.live_log_file, "a", encoding="utf-8") as live:
                for line in proc.stdout:
                    raw.write(line)
                    rendered = render_stream_event(line)
                    if rendered:
                        live.write(rendered)
                        live.flush()
                        self.console.write(rendered)
                        self.console.flush()
        except (OSError, ValueError) as e:
            logger.debug("Stream closed early: %s", e)
        finally:
            timer.cancel()
            try:
                proc.wait(timeout=5)
            except subprocess.TimeoutExpired:
                self._kill_process_tree(proc.pid)
                proc.kill()
                proc.wait(timeout=5)

        self.console.write("\n")
        duration = time.monotonic() - start
        exit_code = EXIT_TIMEOUT if timed_out.is_set() else (proc.returncode or 0)
        self._finish_progress(exit_code)
        return ProcessResult(exit_code, duration, output_file, timed_out.is_set())

    @staticmethod
    def _kill_process_tree(pid: int) -> None:
        """Terminate the agent and everything it spawned."""
        if sys.platform == "win32":
            try:
                result = subprocess.run(
                    ["taskkill", "/F", "/PID", str(pid), "/T"],
                    capture_output=True, text=True, timeout=10,
                )
                if result.returncode != 0:
                    logger.warning(
                        "taskkill PID %d failed (rc=%d): %s",
                        pid, result.returncode, result.stderr[:200],
                    )
            except (subprocess.TimeoutExpired, OSError) as e:
                logger.warning("taskkill PID %d exception: %s", pid, e)
        else:
            try:
                os.killpg(os.getpgid(pid), signal.SIGTERM)
            except (ProcessLookupError, PermissionError, OSError):
                pass
