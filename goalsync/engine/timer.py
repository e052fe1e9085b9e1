"""Stopwatch for timed work sessions."""

import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from ..domain.models import Session, utcnow


def _monotonic_ms() -> float:
    return time.monotonic() * 1000


@dataclass(frozen=True)
class TimerState:
    """Point-in-time view of the timer for display."""

    running: bool
    elapsed_ms: int
    started_at: Optional[datetime]


class TimerEngine:
    """
    Drift-free stopwatch.

    Elapsed time is always recomputed from clock deltas, so it does not
    matter how often (or how irregularly) the display polls it.
    """

    def __init__(
        self,
        clock: Optional[Callable[[], float]] = None,
        wall_clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize timer.

        Args:
            clock: Monotonic clock in milliseconds
            wall_clock: Source of timestamps for saved sessions
        """
        self._clock = clock or _monotonic_ms
        self._wall_clock = wall_clock or utcnow
        self.running = False
        self.start_timestamp: Optional[float] = None
        self.accumulated: float = 0
        self.started_at: Optional[datetime] = None

    def start(self):
        if self.running:
            return
        self.start_timestamp = self._clock()
        self.running = True
        if self.started_at is None:
            self.started_at = self._wall_clock()

    def pause(self):
        if not self.running:
            return
        self.accumulated += self._clock() - self.start_timestamp
        self.start_timestamp = None
        self.running = False

    def elapsed(self) -> float:
        """Elapsed running time in milliseconds."""
        if self.running:
            return self.accumulated + (self._clock() - self.start_timestamp)
        return self.accumulated

    def reset(self):
        self.accumulated = 0
        self.start_timestamp = None
        self.running = False
        self.started_at = None

    def state(self) -> TimerState:
        return TimerState(
            running=self.running,
            elapsed_ms=int(self.elapsed()),
            started_at=self.started_at,
        )

    def save(self, label: str) -> Optional[Session]:
        """
        Turn the elapsed time into a Session and reset the timer.

        Args:
            label: What the session was spent on

        Returns:
            The new Session, or None if no time has elapsed
        """
        elapsed = self.elapsed()
        if elapsed <= 0:
            return None

        now = self._wall_clock()
        session = Session(
            id=str(uuid.uuid4()),
            label=label.strip(),
            start_time=self.started_at or now,
            duration_ms=int(round(elapsed)),
            created_at=now,
            updated_at=now,
        )
        self.reset()
        return session
