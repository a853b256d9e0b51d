"""Session lifecycle tracking across loop iterations.

Two records are kept apart on purpose:

* the lifecycle record (``.ralph_session``) with Ralph's own session id and
  timestamps, refreshed every iteration;
* the continuity token (``.claude_session_id``), the Claude CLI session id
  passed back with ``--resume``.

An expired or undatable token only removes the token file; the lifecycle
record is never dropped because of an ambiguous file age.
"""

from __future__ import annotations

import logging
import random
from datetime import datetime, timedelta
from typing import Optional

from pydantic import BaseModel, model_validator

from response_analyzer import clear_exit_signals
from state_store import Clock, StateStore, TransitionEntry, parse_timestamp, utc_now

logger = logging.getLogger(__name__)


def generate_session_id(moment: datetime) -> str:
    """Timestamp plus a random component; unique enough for log correlation."""
    return f"ralph-{int(moment.timestamp())}-{random.randint(0, 32767)}"


class SessionRecord(BaseModel):
    """Lifecycle record (.ralph/.ralph_session)."""

    session_id: str = ""
    created_at: str = ""
    last_used: str = ""
    reset_at: str = ""
    reset_reason: str = ""

    @model_validator(mode="after")
    def _empty_id_has_no_timestamps(self) -> SessionRecord:
        if not self.session_id and (self.created_at or self.last_used):
            raise ValueError("session without an id cannot carry created_at/last_used")
        return self


class SessionManager:
    def __init__(
        self,
        store: StateStore,
        expiry_hours: int = 24,
        clock: Clock = utc_now,
    ) -> None:
        self.store = store
        self.expiry_hours = expiry_hours
        self.clock = clock

    # --- lifecycle record ---

    def current(self) -> SessionRecord:
        return self.store.load_model(self.store.session_file, SessionRecord, SessionRecord)

    def _start_new(
        self, reset_at: str = "", reset_reason: str = "", loop_number: int = 0
    ) -> SessionRecord:
        now = self.clock().isoformat()
        record = SessionRecord(
            session_id=generate_session_id(self.clock()),
            created_at=now,
            last_used=now,
            reset_at=reset_at,
            reset_reason=reset_reason,
        )
        self.store.save_model(self.store.session_file, record)
        self._log_transition("inactive", "active", reset_reason or "new_session", loop_number)
        return record

    def _is_stale(self, record: SessionRecord) -> bool:
        last_used = parse_timestamp(record.last_used)
        if last_used is None:
            return False
        return self.clock() - last_used >= timedelta(hours=self.expiry_hours)

    def initialize(self) -> SessionRecord:
        """Load the lifecycle record at startup, creating or recovering it as needed."""
        result = self.store.read_model(self.store.session_file, SessionRecord)

        if result.error_code == "NOT_FOUND":
            record = self._start_new()
            logger.info("Initialized session tracking (session: %s)", record.session_id)
            return record

        if not result.success or result.data is None:
            logger.warning("Corrupted session file detected, recreating... (%s)", result.error)
            return self._start_new(
                reset_at=self.clock().isoformat(),
                reset_reason="corrupted_file_recovery",
            )

        record = result.data
        if not record.session_id:
            record = self._start_new(reset_at=record.reset_at, reset_reason=record.reset_reason)
            logger.info("Started new session: %s", record.session_id)
        elif self._is_stale(record):
            logger.info("Session %s expired, starting a new one", record.session_id)
            record = self._start_new(reset_at=self.clock().isoformat(), reset_reason="session_expired")
        else:
            logger.info("Continuing session: %s", record.session_id)
        return record

    def touch(self, loop_number: int = 0) -> SessionRecord:
        """Refresh last_used; runs every iteration."""
        record = self.current()
        if not record.session_id:
            return self._start_new(
                reset_at=record.reset_at,
                reset_reason=record.reset_reason,
                loop_number=loop_number,
            )
        record.last_used = self.clock().isoformat()
        self.store.save_model(self.store.session_file, record)
        return record

    def reset(self, reason: str = "manual_reset", loop_number: int = 0) -> SessionRecord:
        """Replace the record with an empty one and drop everything tied to the session.

        Removes the continuity token, the exit-signal window and the latest
        analysis so no stale completion marker outlives the session.
        """
        record = SessionRecord(reset_at=self.clock().isoformat(), reset_reason=reason)
        self.store.save_model(self.store.session_file, record)
        self.store.remove(self.store.continuity_token_file)
        clear_exit_signals(self.store)
        self._log_transition("active", "reset", reason, loop_number)
        logger.info("Session reset: %s", reason)
        return record

    def history(self) -> list[TransitionEntry]:
        return self.store.load_transitions(self.store.session_history_file)

    def _log_transition(
        self, from_state: str, to_state: str, reason: str, loop_number: int
    ) -> None:
        self.store.append_transition(
            self.store.session_history_file,
            TransitionEntry(
                timestamp=self.clock().isoformat(),
                from_state=from_state,
                to_state=to_state,
                reason=reason,
                loop_number=loop_number,
            ),
        )

    # --- continuity token ---

    def resume_or_new(self) -> Optional[str]:
        """Token to pass to ``--resume``, or None to start a fresh agent session.

        A token whose age cannot be determined, or whose age reached the
        expiry, is deleted. Only the token file is touched.
        """
        token_file = self.store.continuity_token_file
        if not token_file.exists():
            logger.info("Starting new Claude session")
            return None

        age = self.store.file_age_hours(token_file, now=self.clock().timestamp())
        if age is None:
            logger.warning("Could not determine session age, starting new session")
            self.store.remove(token_file)
            return None
        if age >= self.expiry_hours:
            logger.info(
                "Session expired (%.1fh old, max %dh), starting new session",
                age, self.expiry_hours,
            )
            self.store.remove(token_file)
            return None

        token = self.store.read_text(token_file)
        if not token:
            logger.info("Starting new Claude session")
            return None
        logger.info("Resuming Claude session: %s... (%.1fh old)", token[:20], age)
        return token

    def save_token(self, token: str) -> None:
        if not token:
            return
        self.store.write_text(self.store.continuity_token_file, token)
        logger.info("Saved Claude session: %s...", token[:20])
