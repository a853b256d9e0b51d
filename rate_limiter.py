"""Hourly call budget for agent invocations.

The budget resets at hour boundaries: the stored window key (``YYYYMMDDHH``)
is compared to the current one and a mismatch zeroes the counter. This is a
boundary reset, not a rolling window.
"""

from __future__ import annotations

import logging
import math
import time
from datetime import datetime, timedelta
from typing import Callable

from pydantic import BaseModel, Field, model_validator

from state_store import Clock, StateStore, utc_now

logger = logging.getLogger(__name__)


def window_key(moment: datetime) -> str:
    """Hour-granularity bucket key for ``moment``."""
    return moment.strftime("%Y%m%d%H")


def next_window_start(moment: datetime) -> datetime:
    """Start of the hour following ``moment``."""
    return moment.replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)


class CallBudget(BaseModel):
    """Calls made in the current window."""

    window_key: str
    count: int = Field(default=0, ge=0)
    limit: int = Field(ge=1)

    @model_validator(mode="after")
    def _count_within_limit(self) -> CallBudget:
        if self.count > self.limit:
            raise ValueError(f"count {self.count} exceeds limit {self.limit}")
        return self


class RateLimiter:
    """Enforces ``max_calls_per_hour`` using the call-count and window-marker files."""

    def __init__(
        self,
        store: StateStore,
        max_calls_per_hour: int,
        clock: Clock = utc_now,
        sleep: Callable[[float], None] = time.sleep,
        countdown_interval: float = 60.0,
    ) -> None:
        self.store = store
        self.limit = max_calls_per_hour
        self.clock = clock
        self.sleep = sleep
        self.countdown_interval = countdown_interval

    def budget(self) -> CallBudget:
        """Current budget, rolling the window over first if the hour changed."""
        current_key = window_key(self.clock())
        stored_key = self.store.read_text(self.store.last_reset_file)
        if stored_key != current_key:
            self._write(0, current_key)
            logger.info("Call counter reset for new hour: %s", current_key)
            return CallBudget(window_key=current_key, count=0, limit=self.limit)

        count = min(self.store.read_int(self.store.call_count_file), self.limit)
        return CallBudget(window_key=current_key, count=count, limit=self.limit)

    @property
    def calls_made(self) -> int:
        return self.budget().count

    def can_proceed(self) -> bool:
        """True while the current window still has budget."""
        return self.budget().count < self.limit

    def record_call(self) -> int:
        """Count one successful invocation and return the new total."""
        budget = self.budget()
        new_count = budget.count + 1
        if new_count > self.limit:
            logger.warning(
                "Call recorded with budget already exhausted (%d/%d)",
                budget.count, self.limit,
            )
            new_count = self.limit
        self._write(new_count, budget.window_key)
        return new_count

    def seconds_until_reset(self) -> int:
        now = self.clock()
        return max(0, math.ceil((next_window_start(now) - now).total_seconds()))

    def next_reset_time(self) -> str:
        return next_window_start(self.clock()).isoformat()

    def wait_for_reset(self) -> None:
        """Block until the clock is in the next hour window, logging a countdown.

        The remaining time is re-read from the clock after every step, so the
        wait never ends inside the window it started in.
        """
        waiting_on = window_key(self.clock())
        logger.warning(
            "Rate limit reached (%d/%d). Waiting for reset...", self.calls_made, self.limit
        )
        logger.info("Sleeping for %d seconds until next hour...", self.seconds_until_reset())

        while window_key(self.clock()) == waiting_on:
            remaining = max(1, self.seconds_until_reset())
            hours, rest = divmod(remaining, 3600)
            minutes, seconds = divmod(rest, 60)
            logger.info("Time until reset: %02d:%02d:%02d", hours, minutes, seconds)
            self.sleep(min(self.countdown_interval, remaining))

        self.budget()
        logger.info("Rate limit reset! Ready for new calls.")

    def _write(self, count: int, key: str) -> None:
        self.store.write_text(self.store.call_count_file, str(count))
        self.store.write_text(self.store.last_reset_file, key)
