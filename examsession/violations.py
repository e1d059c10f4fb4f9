"""
Proctoring violation ledger.

Accounting is strict: every recorded event counts, duplicates included,
and the counter is never decremented.
"""

import time
from typing import Callable, List, Optional

from .models import ViolationEntry, ViolationPolicy


class ViolationLedger:
    """Counts violations and enforces the exam's threshold."""

    def __init__(
        self,
        max_violations: int,
        policy: Optional[ViolationPolicy] = None,
        clock: Callable[[], float] = time.time,
        on_warn: Optional[Callable[[str, int], None]] = None,
        on_threshold_exceeded: Optional[Callable[[str], None]] = None,
        session_logger=None
    ):
        if max_violations < 1:
            raise ValueError("max_violations must be at least 1")
        self.max_violations = max_violations
        self.policy = policy or ViolationPolicy()
        self.clock = clock
        self.on_warn = on_warn
        self.on_threshold_exceeded = on_threshold_exceeded
        self.session_logger = session_logger

        self.log: List[ViolationEntry] = []
        self.carried_over = 0
        self.threshold_exceeded = False

    @property
    def count(self) -> int:
        return self.carried_over + len(self.log)

    def carry_over(self, previous_count: int):
        """
        Account for violations recorded earlier in the same attempt (before a
        reload). Raises the count to previous_count; never lowers it and never
        fires callbacks.
        """
        if previous_count > self.count:
            self.carried_over += previous_count - self.count

    @property
    def remaining_before_threshold(self) -> int:
        return max(0, self.max_violations - self.count)

    def record(self, violation_type: str) -> Optional[ViolationEntry]:
        """
        Record one detected event.

        Returns:
            The new log entry, or None if the exam's policy ignores this type
        """
        if not self.policy.counts(violation_type):
            return None

        entry = ViolationEntry(violation_type=violation_type, timestamp=self.clock())
        self.log.append(entry)

        if self.session_logger:
            self.session_logger(
                "VIOLATION",
                f"Type: {violation_type}, Count: {self.count}/{self.max_violations}"
            )

        if self.threshold_exceeded:
            # already fatal; the event is still counted
            return entry

        if self.count >= self.max_violations:
            self.exceed(violation_type)
        elif self.on_warn:
            self.on_warn(violation_type, self.remaining_before_threshold)
        return entry

    def exceed(self, cause: str):
        """Raise the terminal threshold signal, at most once."""
        if self.threshold_exceeded:
            return
        self.threshold_exceeded = True
        if self.on_threshold_exceeded:
            self.on_threshold_exceeded(cause)

    def to_dict(self) -> dict:
        return {
            'count': self.count,
            'max_violations': self.max_violations,
            'log': [entry.to_dict() for entry in self.log],
        }
