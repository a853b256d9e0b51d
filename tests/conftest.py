"""Shared pytest fixtures for the Ralph loop test suite.

Non-fixture helpers (fake clock, fake runner, output builders) are in helpers.py.
"""

import sys
from pathlib import Path

import pytest

# Add the tests directory to sys.path so test files can import helpers.py
sys.path.insert(0, str(Path(__file__).parent))

from helpers import FakeClock, SleepRecorder  # noqa: E402
from state_store import StateStore  # noqa: E402


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    """Create a Ralph project directory.

    Includes: .ralph/, .ralph/logs/, .ralph/PROMPT.md.
    Tests needing a bare directory should use tmp_path directly.
    """
    ralph_dir = tmp_path / ".ralph"
    (ralph_dir / "logs").mkdir(parents=True)
    (ralph_dir / "PROMPT.md").write_text(
        "# Task\nImplement the features listed in fix_plan.md.", encoding="utf-8"
    )
    return tmp_path


@pytest.fixture
def store(project_dir: Path) -> StateStore:
    return StateStore(project_dir)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleeper(clock: FakeClock) -> SleepRecorder:
    """Sleep stand-in that advances the fake clock instead of blocking."""
    return SleepRecorder(clock)
