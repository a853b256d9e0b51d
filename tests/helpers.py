"""Shared test helpers for the Ralph loop test suite.

Fixtures are in conftest.py. This module contains non-fixture helpers
(fake clock, fake runner and change detector, output builders) used across
multiple test files.
"""

import io
import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

from agent_runner import ProcessResult
from config import Result


# --- time ---

class FakeClock:
    """Controllable UTC clock, callable like ``utc_now``."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2026, 3, 14, 10, 15, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, minutes: float = 0, hours: float = 0) -> None:
        self.now += timedelta(seconds=seconds, minutes=minutes, hours=hours)


class SleepRecorder:
    """Records requested sleeps and advances an optional FakeClock by the same amount."""

    def __init__(self, clock: Optional[FakeClock] = None) -> None:
        self.clock = clock
        self.calls: list[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        if self.clock is not None:
            self.clock.advance(seconds=seconds)

    @property
    def total(self) -> float:
        return sum(self.calls)


# --- agent output builders ---

def status_block(
    status: str = "IN_PROGRESS",
    exit_signal: bool = False,
    work_type: str = "IMPLEMENTATION",
    tests_status: str = "PASSING",
    files_modified: int = 2,
    tasks_completed: int = 1,
    recommendation: str = "Continue with the next task",
) -> str:
    """Build a RALPH_STATUS block the way the agent is asked to emit it."""
    return (
        "---RALPH_STATUS---\n"
        f"STATUS: {status}\n"
        f"TASKS_COMPLETED_THIS_LOOP: {tasks_completed}\n"
        f"FILES_MODIFIED: {files_modified}\n"
        f"TESTS_STATUS: {tests_status}\n"
        f"WORK_TYPE: {work_type}\n"
        f"EXIT_SIGNAL: {'true' if exit_signal else 'false'}\n"
        f"RECOMMENDATION: {recommendation}\n"
        "---END_RALPH_STATUS---"
    )


def build_json_result(
    result_text: str,
    session_id: str = "sess-abc123",
    is_error: bool = False,
    permission_denials: Optional[list[dict]] = None,
    cost: float = 0.05,
    turns: int = 4,
) -> str:
    """Build a realistic ``--output-format json`` result object."""
    return json.dumps({
        "type": "result",
        "subtype": "success",
        "is_error": is_error,
        "duration_ms": 42000,
        "num_turns": turns,
        "result": result_text,
        "session_id": session_id,
        "total_cost_usd": cost,
        "permission_denials": permission_denials or [],
    })


def build_stream(result_text: str, session_id: str = "sess-stream-1") -> str:
    """Build a stream-json NDJSON capture with partial-message events."""
    lines = [
        json.dumps({"type": "system", "subtype": "init", "session_id": session_id}),
        json.dumps({
            "type": "stream_event",
            "event": {"type": "content_block_start", "content_block": {"type": "tool_use", "name": "Edit"}},
        }),
        json.dumps({"type": "stream_event", "event": {"type": "content_block_stop"}}),
        json.dumps({
            "type": "stream_event",
            "event": {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "Working"}},
        }),
        json.dumps({
            "type": "assistant",
            "message": {"role": "assistant", "content": [{"type": "text", "text": result_text}]},
            "session_id": session_id,
        }),
        json.dumps({
            "type": "result",
            "session_id": session_id,
            "is_error": False,
            "num_turns": 3,
            "total_cost_usd": 0.02,
            "result": result_text,
        }),
    ]
    return "\n".join(lines) + "\n"


def bash_denial(command: str) -> dict:
    return {"tool_name": "Bash", "tool_use_id": "toolu_01", "tool_input": {"command": command}}


# --- collaborator fakes ---

class FakeRunner:
    """Stands in for AgentRunner: writes scripted output and returns scripted exit codes.

    ``outputs`` is a list of (exit_code, text); the last entry repeats once
    the script runs out.
    """

    def __init__(self, outputs: list[tuple[int, str]]) -> None:
        self.outputs = list(outputs)
        self.commands: list[list[str]] = []
        self.live_flags: list[bool] = []
        self.version_checks = 0

    def check_version(self, command: str, min_version: str) -> Result:
        self.version_checks += 1
        return Result.ok("2.1.0")

    def run(self, command: list[str], output_file: Path, live: bool = False) -> ProcessResult:
        index = min(len(self.commands), len(self.outputs) - 1)
        exit_code, text = self.outputs[index]
        self.commands.append(command)
        self.live_flags.append(live)
        output_file.parent.mkdir(parents=True, exist_ok=True)
        output_file.write_text(text, encoding="utf-8")
        return ProcessResult(exit_code=exit_code, duration_seconds=1.0, output_file=output_file)

    @property
    def calls(self) -> int:
        return len(self.commands)


class FakeChangeDetector:
    """Scripted changed-file counts; 0 once the script runs out."""

    def __init__(self, counts: Optional[list[int]] = None, marker: str = "a1b2c3d") -> None:
        self.counts = list(counts or [])
        self._marker = marker
        self.markers_seen: list[str] = []

    def marker(self) -> str:
        return self._marker

    def count_changed_files(self, marker: str) -> int:
        self.markers_seen.append(marker)
        return self.counts.pop(0) if self.counts else 0


# --- Popen mock ---

class MockPopen:
    """Mock subprocess.Popen.

    Writes ``output`` to a file passed as ``stdout`` (background mode) or
    exposes it as a readable pipe (streaming mode).
    """

    def __init__(self, output: str, returncode: int = 0, **kwargs) -> None:
        stdout = kwargs.get("stdout")
        if stdout is not None and hasattr(stdout, "write"):
            stdout.write(output)
            stdout.flush()
            self.stdout = None
        else:
            self.stdout = io.StringIO(output)
        self.kwargs = kwargs
        self.returncode = returncode
        self.pid = 99999

    def wait(self, timeout: Optional[float] = None) -> int:
        return self.returncode

    def poll(self) -> int:
        return self.returncode

    def kill(self) -> None:
        pass


def make_popen_factory(output: str, returncode: int = 0, calls: Optional[list] = None):
    """Create a side_effect for a subprocess.Popen mock returning MockPopen."""
    def factory(*args, **kwargs):
        proc = MockPopen(output, returncode, **kwargs)
        if calls is not None:
            calls.append((args, kwargs))
        return proc
    return factory
