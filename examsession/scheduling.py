"""
Cancellable background scheduling.

Callbacks scheduled here should only publish events onto the session's
EventBus; the session applies them one at a time.
"""

import itertools
import threading
from typing import Callable


class Handle:
    """A cancellable scheduled callback."""

    def __init__(self):
        self._cancelled = threading.Event()

    def cancel(self):
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()


class ThreadScheduler:
    """Runs callbacks on daemon threads."""

    def __init__(self, session_logger=None):
        self.session_logger = session_logger

    def every(self, interval: float, fn: Callable[[], None]) -> Handle:
        """Call fn every interval seconds until cancelled."""
        handle = Handle()

        def loop():
            while not handle._cancelled.wait(interval):
                self._run(fn)

        threading.Thread(target=loop, daemon=True).start()
        return handle

    def after(self, delay: float, fn: Callable[[], None]) -> Handle:
        """Call fn once after delay seconds unless cancelled first."""
        handle = Handle()

        def once():
            if not handle._cancelled.wait(max(0.0, delay)):
                self._run(fn)

        threading.Thread(target=once, daemon=True).start()
        return handle

    def defer(self, fn: Callable[[], None]) -> Handle:
        """Run fn in the background as soon as possible."""
        return self.after(0, fn)

    def _run(self, fn):
        try:
            fn()
        except Exception as e:
            if self.session_logger:
                self.session_logger("SCHEDULER_ERROR", f"Scheduled callback failed: {e}")


class ManualScheduler:
    """
    Virtual-time scheduler for simulations and tests.

    Nothing runs until `advance()` moves the clock. Due callbacks run in
    time order and the attached bus is drained after each one, so a whole
    session can be driven deterministically on one thread. `clock` is
    usable as the session clock.
    """

    def __init__(self, start: float = 0.0, bus=None):
        self.now = float(start)
        self.bus = bus
        self._jobs = []
        self._seq = itertools.count()

    def clock(self) -> float:
        return self.now

    def every(self, interval: float, fn: Callable[[], None]) -> Handle:
        if interval <= 0:
            raise ValueError("interval must be positive")
        return self._push(self.now + interval, interval, fn)

    def after(self, delay: float, fn: Callable[[], None]) -> Handle:
        return self._push(self.now + max(0.0, delay), None, fn)

    def defer(self, fn: Callable[[], None]) -> Handle:
        return self._push(self.now, None, fn)

    def pending(self) -> int:
        return sum(1 for job in self._jobs if not job[4].cancelled)

    def advance(self, seconds: float = 0.0):
        """Move the clock forward, running everything that falls due."""
        target = self.now + max(0.0, seconds)
        while True:
            self._drain()
            job = self._next_due(target)
            if job is None:
                break
            self._jobs.remove(job)
            due, _, interval, fn, handle = job
            self.now = max(self.now, due)
            if interval is not None:
                self._jobs.append((self.now + interval, next(self._seq), interval, fn, handle))
            fn()
        self.now = max(self.now, target)
        self._drain()

    def suspend(self, seconds: float):
        """
        The process sleeps: the clock jumps and every overdue callback
        fires once on wake, periodic ones re-anchored at the wake time.
        """
        self.now += seconds
        self._jobs = [
            (min(due, self.now), seq, interval, fn, handle)
            for due, seq, interval, fn, handle in self._jobs
        ]
        self.advance(0)

    def _push(self, due: float, interval, fn) -> Handle:
        handle = Handle()
        self._jobs.append((due, next(self._seq), interval, fn, handle))
        return handle

    def _next_due(self, target: float):
        self._jobs = [job for job in self._jobs if not job[4].cancelled]
        due_jobs = [job for job in self._jobs if job[0] <= target]
        if not due_jobs:
            return None
        return min(due_jobs, key=lambda job: (job[0], job[1]))

    def _drain(self):
        if self.bus is not None:
            self.bus.drain()
