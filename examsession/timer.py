"""
Wall-clock exam timer.

Remaining time is always recomputed from a fixed end timestamp, so missed
ticks (a sleeping device, a backgrounded process) never cause drift.
"""

import time
from typing import Callable, Optional

from .errors import StorageError
from . import storage as store_kinds


class WallClockTimer:
    """Tracks remaining exam time against an absolute end timestamp."""

    def __init__(
        self,
        clock: Callable[[], float] = time.time,
        low_time_warning_seconds: float = 300,
        on_warning: Optional[Callable[[float], None]] = None,
        on_expired: Optional[Callable[[], None]] = None,
        session_logger=None
    ):
        self.clock = clock
        self.low_time_warning_seconds = low_time_warning_seconds
        self.on_warning = on_warning
        self.on_expired = on_expired
        self.session_logger = session_logger

        self.end_timestamp: Optional[float] = None
        self.running = False
        self.warning_emitted = False
        self.expired = False
        self._last_remaining: Optional[float] = None

    def start(self, remaining_seconds: float):
        """Anchor the end timestamp at now + remaining_seconds."""
        remaining_seconds = max(0.0, float(remaining_seconds))
        self.end_timestamp = self.clock() + remaining_seconds
        self.running = True
        self.expired = False
        self._last_remaining = remaining_seconds
        # no warning when the attempt already starts inside the window
        self.warning_emitted = remaining_seconds <= self.low_time_warning_seconds

    def stop(self):
        self.running = False

    def remaining(self) -> float:
        """Remaining seconds, never negative and never increasing."""
        if self.end_timestamp is None:
            return 0.0
        remaining = max(0.0, self.end_timestamp - self.clock())
        if self._last_remaining is not None:
            # a wall clock set backwards must not give time back
            remaining = min(remaining, self._last_remaining)
        self._last_remaining = remaining
        return remaining

    def tick(self) -> float:
        """
        Recompute remaining time and emit the warning/expiry signals.

        Returns:
            Remaining seconds
        """
        if not self.running:
            return self.remaining()

        remaining = self.remaining()
        if not self.warning_emitted and remaining <= self.low_time_warning_seconds and remaining > 0:
            self.warning_emitted = True
            if self.on_warning:
                self.on_warning(remaining)

        if remaining <= 0 and not self.expired:
            self.expired = True
            self.running = False
            if self.on_expired:
                self.on_expired()

        return remaining

    def format_remaining(self) -> str:
        """Format remaining time as HH:MM:SS."""
        total_seconds = int(self.remaining())
        hours = total_seconds // 3600
        minutes = (total_seconds % 3600) // 60
        seconds = total_seconds % 60
        return f"{hours:02d}:{minutes:02d}:{seconds:02d}"

    def save_timer_state(self, store, exam_id: str, attempt_id: str) -> bool:
        """Persist {remaining_seconds, saved_at}; failures are logged, not raised."""
        if self.end_timestamp is None:
            return False
        timer_data = {
            "remaining_seconds": self.remaining(),
            "saved_at": self.clock()
        }
        try:
            store.save(store_kinds.TIMER, exam_id, attempt_id, timer_data)
            return True
        except StorageError as e:
            if self.session_logger:
                self.session_logger("TIMER_PERSIST_FAILED", str(e))
            return False

    def load_timer_state(self, store, exam_id: str, attempt_id: str) -> Optional[float]:
        """
        Reconstruct remaining time from the saved state.

        Returns:
            Remaining seconds (saved remaining minus time elapsed since the
            save), or None if nothing usable was saved
        """
        try:
            data = store.load(store_kinds.TIMER, exam_id, attempt_id)
        except StorageError as e:
            if self.session_logger:
                self.session_logger("TIMER_RESTORE_FAILED", str(e))
            return None
        if not data:
            return None
        try:
            elapsed = max(0.0, self.clock() - float(data["saved_at"]))
            return max(0.0, float(data["remaining_seconds"]) - elapsed)
        except (KeyError, TypeError, ValueError):
            return None
