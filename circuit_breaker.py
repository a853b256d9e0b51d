"""Stagnation detection for the agent loop.

The breaker watches loop outcomes (files changed, error lines, output size)
and opens when the loop stops making measurable progress. Once OPEN it stays
OPEN until an operator resets it or, when auto-reset is enabled, until the
cooldown has elapsed. Further loop activity alone never closes it.
"""

from __future__ import annotations

import logging
import re
from datetime import timedelta
from typing import Literal, Optional

from pydantic import BaseModel, Field, model_validator

from config import CircuitBreakerConfig
from state_store import Clock, StateStore, TransitionEntry, parse_timestamp, utc_now

logger = logging.getLogger(__name__)

CLOSED = "CLOSED"
OPEN = "OPEN"

SIGNATURE_MAX_LENGTH = 200

_HEX_ID = re.compile(r"0x[0-9a-fA-F]+|\b[0-9a-f]{7,}\b")
_NUMBER = re.compile(r"\d+")


def normalize_error_signature(line: str) -> str:
    """Reduce an error line to a comparable signature.

    Numbers and hex ids are masked and whitespace is collapsed, so the same
    failure reported with a different line number or object id still matches.
    """
    masked = _HEX_ID.sub("<hex>", line)
    masked = _NUMBER.sub("<n>", masked)
    return " ".join(masked.split())[:SIGNATURE_MAX_LENGTH]


def output_decline_pct(history: list[int], window: int) -> Optional[int]:
    """Percentage drop across the trailing strictly-decreasing run of ``history``.

    Returns None when the run is shorter than ``window`` entries.
    """
    if len(history) < window:
        return None
    start = len(history) - 1
    while start > 0 and history[start - 1] > history[start]:
        start -= 1
    if len(history) - start < window:
        return None
    first, last = history[start], history[-1]
    if first <= 0:
        return None
    return int((first - last) * 100 / first)


class CircuitBreakerState(BaseModel):
    """Persisted breaker record (.ralph/.circuit_breaker_state)."""

    state: Literal["CLOSED", "OPEN"] = CLOSED
    consecutive_no_progress: int = Field(default=0, ge=0)
    consecutive_same_error: int = Field(default=0, ge=0)
    last_error_signature: str = ""
    output_length_history: list[int] = Field(default_factory=list)
    opened_at: str = ""
    cooldown_minutes: int = Field(default=30, ge=0)
    auto_reset_enabled: bool = True
    reason: str = ""
    total_opens: int = Field(default=0, ge=0)
    last_progress_loop: int = 0
    current_loop: int = 0
    last_change: str = ""

    @model_validator(mode="after")
    def _open_requires_timestamp(self) -> CircuitBreakerState:
        if self.state == OPEN and not self.opened_at:
            raise ValueError("OPEN breaker must record opened_at")
        return self


class CircuitBreaker:
    """Reloads its state from disk on every call and saves after every mutation."""

    def __init__(
        self,
        store: StateStore,
        config: CircuitBreakerConfig,
        clock: Clock = utc_now,
    ) -> None:
        self.store = store
        self.config = config
        self.clock = clock

    # --- persistence ---

    def _fresh(self, total_opens: int = 0) -> CircuitBreakerState:
        return CircuitBreakerState(
            cooldown_minutes=self.config.cooldown_minutes,
            auto_reset_enabled=self.config.auto_reset_after_cooldown,
            total_opens=total_opens,
            last_change=self.clock().isoformat(),
        )

    def load(self) -> CircuitBreakerState:
        state = self.store.load_model(
            self.store.circuit_state_file, CircuitBreakerState, self._fresh
        )
        # Settings come from the current configuration, not the stored copy
        state.cooldown_minutes = self.config.cooldown_minutes
        state.auto_reset_enabled = self.config.auto_reset_after_cooldown
        return state

    def _save(self, state: CircuitBreakerState) -> None:
        self.store.save_model(self.store.circuit_state_file, state)

    def _log_transition(
        self, from_state: str, to_state: str, reason: str, loop_number: int
    ) -> None:
        self.store.append_transition(
            self.store.circuit_history_file,
            TransitionEntry(
                timestamp=self.clock().isoformat(),
                from_state=from_state,
                to_state=to_state,
                reason=reason,
                loop_number=loop_number,
            ),
        )

    # --- public operations ---

    def initialize(self) -> CircuitBreakerState:
        """Make sure a state file exists; apply auto-reset-on-startup."""
        state = self.load()
        if not self.store.circuit_state_file.exists():
            self._save(state)
        if state.state == OPEN and self.config.auto_reset_on_startup:
            logger.info("Circuit breaker auto-reset on startup (was: %s)", state.reason)
            return self.reset("Auto-reset on startup")
        return state

    @property
    def state(self) -> str:
        return self.load().state

    def record_result(
        self,
        loop_number: int,
        files_changed: int,
        has_errors: bool,
        output_length: int,
        error_line: Optional[str] = None,
    ) -> bool:
        """Record one loop outcome. Returns True when the breaker is OPEN afterwards."""
        state = self.load()
        state.current_loop = loop_number

        if state.state == OPEN:
            logger.warning("Loop %d recorded while circuit breaker is OPEN", loop_number)
            self._save(state)
            return True

        if files_changed > 0:
            state.consecutive_no_progress = 0
            state.last_progress_loop = loop_number
        else:
            state.consecutive_no_progress += 1

        if has_errors:
            signature = normalize_error_signature(error_line or "") or "unknown error"
            if signature == state.last_error_signature:
                state.consecutive_same_error += 1
            else:
                state.consecutive_same_error = 1
            state.last_error_signature = signature
        else:
            state.consecutive_same_error = 0
            state.last_error_signature = ""

        state.output_length_history.append(max(0, output_length))
        overflow = len(state.output_length_history) - self.config.output_history_size
        if overflow > 0:
            del state.output_length_history[:overflow]

        logger.debug(
            "Circuit breaker: loop=%d files_changed=%d no_progress=%d same_error=%d",
            loop_number, files_changed,
            state.consecutive_no_progress, state.consecutive_same_error,
        )

        reason = self._trip_reason(state)
        if reason is None:
            self._save(state)
            return False

        now = self.clock().isoformat()
        state.state = OPEN
        state.opened_at = now
        state.last_change = now
        state.reason = reason
        state.total_opens += 1
        self._save(state)
        self._log_transition(CLOSED, OPEN, reason, loop_number)
        logger.error("Circuit breaker OPEN: %s", reason)
        return True

    def _trip_reason(self, state: CircuitBreakerState) -> Optional[str]:
        if state.consecutive_no_progress >= self.config.no_progress_threshold:
            return f"No progress detected in {state.consecutive_no_progress} consecutive loops"
        if state.consecutive_same_error >= self.config.same_error_threshold:
            return (
                f"Same error repeated in {state.consecutive_same_error} consecutive loops: "
                f"{state.last_error_signature[:80]}"
            )
        decline = output_decline_pct(
            state.output_length_history, self.config.output_decline_window
        )
        if decline is not None and decline >= self.config.output_decline_threshold_pct:
            return (
                f"Output declined by {decline}% over the last "
                f"{self.config.output_decline_window}+ loops"
            )
        return None

    def should_halt(self) -> bool:
        """True while OPEN; closes the breaker once an enabled cooldown has elapsed."""
        state = self.load()
        if state.state == CLOSED:
            return False

        if not state.auto_reset_enabled:
            return True

        remaining = self._cooldown_remaining(state)
        if remaining is None or remaining > timedelta(0):
            return True

        reason = f"Cooldown of {state.cooldown_minutes} minutes elapsed"
        closed = self._fresh(total_opens=state.total_opens)
        closed.last_progress_loop = state.last_progress_loop
        closed.current_loop = state.current_loop
        self._save(closed)
        self._log_transition(OPEN, CLOSED, reason, state.current_loop)
        logger.info("Circuit breaker CLOSED: %s", reason)
        return False

    def _cooldown_remaining(self, state: CircuitBreakerState) -> Optional[timedelta]:
        opened = parse_timestamp(state.opened_at)
        if opened is None:
            logger.warning("Unreadable opened_at %r, keeping breaker OPEN", state.opened_at)
            return None
        return opened + timedelta(minutes=state.cooldown_minutes) - self.clock()

    def reset(self, reason: str = "Manual reset", loop_number: int = 0) -> CircuitBreakerState:
        """Clear all counters and close the breaker, bypassing cooldown."""
        previous = self.load()
        fresh = self._fresh(total_opens=previous.total_opens)
        self._save(fresh)
        self._log_transition(previous.state, CLOSED, reason, loop_number)
        logger.info("Circuit breaker reset to CLOSED: %s", reason)
        return fresh

    def format_status(self, history_lines: int = 5) -> str:
        """Human-readable report for --circuit-status."""
        state = self.load()
        lines = [
            "Circuit Breaker Status",
            f"  State:                 {state.state}",
            f"  Reason:                {state.reason or '-'}",
            f"  Loops without progress: {state.consecutive_no_progress}"
            f" / {self.config.no_progress_threshold}",
            f"  Repeated error count:  {state.consecutive_same_error}"
            f" / {self.config.same_error_threshold}",
            f"  Last progress loop:    {state.last_progress_loop}",
            f"  Current loop:          {state.current_loop}",
            f"  Total opens:           {state.total_opens}",
        ]
        if state.state == OPEN:
            lines.append(f"  Opened at:             {state.opened_at}")
            remaining = self._cooldown_remaining(state)
            if state.auto_reset_enabled and remaining is not None:
                minutes = max(0, int(remaining.total_seconds() // 60))
                lines.append(f"  Auto-reset in:         {minutes} min")
            else:
                lines.append("  Auto-reset:            disabled (run with --reset-circuit)")

        history = self.store.load_transitions(self.store.circuit_history_file)
        if history:
            lines.append("  Recent transitions:")
            for entry in history[-history_lines:]:
                lines.append(
                    f"    {entry.timestamp} {entry.from_state} -> {entry.to_state}"
                    f" (loop {entry.loop_number}): {entry.reason}"
                )
        return "\n".join(lines)
