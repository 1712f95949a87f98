"""
Per-source backoff after failed fetches.

State lives in memory only; a restart forgets every window.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional

DEFAULT_FLOOR = timedelta(seconds=30)
DEFAULT_CEILING = timedelta(minutes=10)
DEFAULT_FACTOR = 2.0


@dataclass
class BackoffState:
    until: datetime
    delay: timedelta


class BackoffTracker:
    """Tracks when each failing source may be fetched again."""

    def __init__(
        self,
        floor: timedelta = DEFAULT_FLOOR,
        ceiling: timedelta = DEFAULT_CEILING,
        factor: float = DEFAULT_FACTOR,
    ):
        if floor <= timedelta(0):
            raise ValueError("backoff floor must be positive")
        if ceiling < floor:
            raise ValueError("backoff ceiling must not be below the floor")
        if factor < 1:
            raise ValueError("backoff factor must be at least 1")

        self.floor = floor
        self.ceiling = ceiling
        self.factor = factor
        self._states: Dict[str, BackoffState] = {}

    def remaining(self, source_id: str, now: datetime) -> timedelta:
        """Time left in the source's window; zero when none or elapsed."""
        state = self._states.get(source_id)
        if state is None:
            return timedelta(0)
        if now >= state.until:
            del self._states[source_id]
            return timedelta(0)
        return state.until - now

    def schedule(
        self,
        source_id: str,
        now: datetime,
        suggested: Optional[timedelta] = None,
    ) -> timedelta:
        """Open (or extend) a window after a failure and return its delay.

        A positive ``suggested`` delay (from Retry-After) wins over growth;
        either way the delay never exceeds the ceiling.
        """
        if suggested is not None and suggested > timedelta(0):
            delay = suggested
        else:
            previous = self._states.get(source_id)
            delay = self.floor if previous is None else previous.delay * self.factor

        delay = min(delay, self.ceiling)
        self._states[source_id] = BackoffState(until=now + delay, delay=delay)
        return delay

    def reset(self, source_id: str) -> None:
        self._states.pop(source_id, None)

    def __contains__(self, source_id: str) -> bool:
        return source_id in self._states

    def __len__(self) -> int:
        return len(self._states)
