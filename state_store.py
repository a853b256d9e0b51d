"""Persistent loop state under .ralph/, one file per concern.

Every reader validates what it finds on disk and falls back to a safe default
when a file is missing, truncated or malformed. Writers replace files
atomically so a crash mid-write leaves the previous record intact.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional, TypeVar

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from config import RALPH_DIR, Result

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

TRANSITION_HISTORY_LIMIT = 50


Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def iso_now() -> str:
    """Current UTC time as an ISO-8601 string."""
    return utc_now().isoformat()


def parse_timestamp(value: str) -> Optional[datetime]:
    """Parse a stored ISO-8601 timestamp; naive values are taken as UTC.

    Returns None when ``value`` is empty or unparseable.
    """
    try:
        moment = datetime.fromisoformat(value)
    except (TypeError, ValueError):
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


class TransitionEntry(BaseModel):
    """One state transition in a bounded history log."""

    timestamp: str
    from_state: str
    to_state: str
    reason: str
    loop_number: int = 0


class RunStatus(BaseModel):
    """Run-status snapshot rewritten every iteration for external observers."""

    timestamp: str = Field(default_factory=iso_now)
    loop_count: int = 0
    calls_made_this_hour: int = 0
    max_calls_per_hour: int = 0
    last_action: str = ""
    status: str = ""
    exit_reason: str = ""
    next_reset: str = ""


class ProgressSnapshot(BaseModel):
    """Liveness information while an agent call is running."""

    status: str = "executing"
    indicator: str = ""
    elapsed_seconds: int = 0
    last_output: str = ""
    timestamp: str = Field(default_factory=iso_now)


_transition_list = TypeAdapter(list[TransitionEntry])


class StateStore:
    """File-backed state for a single loop process (single writer)."""

    def __init__(self, project_path: str | Path) -> None:
        self.project_path = Path(project_path)
        self.ralph_dir = self.project_path / RALPH_DIR
        self.log_dir = self.ralph_dir / "logs"

        self.call_count_file = self.ralph_dir / ".call_count"
        self.last_reset_file = self.ralph_dir / ".last_reset"
        self.circuit_state_file = self.ralph_dir / ".circuit_breaker_state"
        self.circuit_history_file = self.ralph_dir / ".circuit_breaker_history"
        self.session_file = self.ralph_dir / ".ralph_session"
        self.session_history_file = self.ralph_dir / ".ralph_session_history"
        self.exit_signals_file = self.ralph_dir / ".exit_signals"
        self.response_analysis_file = self.ralph_dir / ".response_analysis"
        self.continuity_token_file = self.ralph_dir / ".claude_session_id"
        self.loop_start_marker_file = self.ralph_dir / ".loop_start_sha"
        self.status_file = self.ralph_dir / "status.json"
        self.progress_file = self.ralph_dir / "progress.json"
        self.live_log_file = self.ralph_dir / "live.log"

    def ensure_dirs(self) -> Result[None]:
        """Create .ralph/ and .ralph/logs/."""
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            return Result.ok(None)
        except OSError as e:
            return Result.fail(f"Cannot create {self.log_dir}: {e}", "DIR_ERROR")

    # --- structured records ---

    def read_model(self, path: Path, model: type[M]) -> Result[M]:
        """Read and validate a JSON record."""
        if not path.exists():
            return Result.fail(f"{path.name} does not exist", "NOT_FOUND")
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
            return Result.ok(model.model_validate(raw))
        except json.JSONDecodeError as e:
            return Result.fail(f"Corrupt state file {path.name}: {e}", "JSON_ERROR")
        except ValidationError as e:
            return Result.fail(f"Invalid state in {path.name}: {e}", "VALIDATION_ERROR")
        except OSError as e:
            return Result.fail(f"Cannot read {path.name}: {e}", "READ_ERROR")

    def load_model(self, path: Path, model: type[M], default: Callable[[], M]) -> M:
        """Read a record, substituting ``default()`` if it is missing or unusable."""
        result = self.read_model(path, model)
        if result.success and result.data is not None:
            return result.data
        if result.error_code != "NOT_FOUND":
            logger.warning("%s, using defaults", result.error)
        return default()

    def save_model(self, path: Path, record: BaseModel) -> Result[None]:
        """Persist a record as indented JSON."""
        return self.write_text(path, record.model_dump_json(indent=2))

    # --- plain text ---

    def read_text(self, path: Path) -> Optional[str]:
        """Return file contents stripped of surrounding whitespace, or None."""
        try:
            return path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("Cannot read %s: %s", path.name, e)
            return None

    def write_text(self, path: Path, content: str) -> Result[None]:
        """Atomically replace ``path`` with ``content``."""
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(content)
                    if not content.endswith("\n"):
                        f.write("\n")
                os.replace(tmp_name, path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
            return Result.ok(None)
        except OSError as e:
            logger.error("Failed to write %s: %s", path, e)
            return Result.fail(f"Write failed for {path.name}: {e}", "SAVE_ERROR")

    def remove(self, path: Path) -> bool:
        """Delete a file if present. Returns True when something was removed."""
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.warning("Cannot remove %s: %s", path.name, e)
            return False

    def read_int(self, path: Path, default: int = 0) -> int:
        """Read a non-negative integer counter, ``default`` when unusable."""
        text = self.read_text(path)
        if text is None:
            return default
        try:
            value = int(text)
        except ValueError:
            logger.warning("Corrupt counter in %s (%r), using %d", path.name, text[:40], default)
            return default
        return value if value >= 0 else default

    def file_age_hours(self, path: Path, now: Optional[float] = None) -> Optional[float]:
        """Age of ``path`` in hours from its mtime; None when it cannot be determined."""
        try:
            mtime = path.stat().st_mtime
        except OSError:
            return None
        if not mtime:
            return None
        current = time.time() if now is None else now
        return max(0.0, (current - mtime) / 3600)

    # --- bounded history logs ---

    def load_transitions(self, path: Path) -> list[TransitionEntry]:
        """Read a transition history, returning [] when missing or corrupt."""
        if not path.exists():
            return []
        try:
            return _transition_list.validate_json(path.read_text(encoding="utf-8"))
        except (ValidationError, ValueError, OSError) as e:
            logger.warning("Corrupt history in %s, starting fresh: %s", path.name, e)
            return []

    def append_transition(
        self,
        path: Path,
        entry: TransitionEntry,
        limit: int = TRANSITION_HISTORY_LIMIT,
    ) -> list[TransitionEntry]:
        """Append ``entry`` and keep only the ``limit`` most recent entries."""
        history = self.load_transitions(path)
        history.append(entry)
        if len(history) > limit:
            del history[: len(history) - limit]
        self.write_text(path, _transition_list.dump_json(history, indent=2).decode("utf-8"))
        return history

    # --- observer snapshots ---

    def write_status(self, status: RunStatus) -> Result[None]:
        return self.save_model(self.status_file, status)

    def read_status(self) -> Optional[RunStatus]:
        result = self.read_model(self.status_file, RunStatus)
        return result.data if result.success else None

    def write_progress(self, progress: ProgressSnapshot) -> Result[None]:
        return self.save_model(self.progress_file, progress)
