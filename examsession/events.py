"""
Internal event bus: the single ingress of the attempt session.

Browser-style signals (visibility, blur, online/offline), timer ticks,
probe results, retry timers and resume events are all published here and
applied by one handler, in FIFO order.
"""

import queue
import threading
from dataclasses import dataclass
from typing import Any, Callable, Optional


@dataclass
class ViolationDetected:
    violation_type: str


@dataclass
class ConnectivityHint:
    """Native online/offline signal; only triggers an early probe."""
    online: bool


@dataclass
class ProbeCompleted:
    reachable: bool


@dataclass
class TimerTick:
    pass


@dataclass
class TimerPersistDue:
    pass


@dataclass
class WarningCountdownElapsed:
    warning_id: int


@dataclass
class SubmissionRetryDue:
    generation: int


@dataclass
class SubmissionCompleted:
    generation: int
    result: Any = None
    error: Optional[Exception] = None


@dataclass
class ResumeDecision:
    request_id: str
    status: str
    time_remaining_seconds: Optional[float] = None
    reason: Optional[str] = None


@dataclass
class ResumeCountdownElapsed:
    request_id: str


@dataclass
class ResumeRequestDue:
    """Retry creating a resume request after a transient failure."""
    pass


@dataclass
class ReentryDue:
    """Retry reaching the catalog for an attempt restored from its seal."""
    pass


class EventBus:
    """FIFO event queue with a single handler."""

    def __init__(self, session_logger=None):
        self.session_logger = session_logger
        self._queue: "queue.Queue[Any]" = queue.Queue()
        self._handler: Optional[Callable[[Any], None]] = None
        self._dispatch_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._running = False

    def subscribe(self, handler: Callable[[Any], None]):
        self._handler = handler

    def publish(self, event: Any):
        self._queue.put(event)

    def pending(self) -> int:
        return self._queue.qsize()

    def drain(self) -> int:
        """Apply every queued event synchronously. Returns how many ran."""
        count = 0
        while True:
            try:
                event = self._queue.get_nowait()
            except queue.Empty:
                return count
            self._dispatch(event)
            count += 1

    def start(self):
        """Start the dispatcher thread."""
        if self._running:
            return
        self._running = True
        self._thread = threading.Thread(target=self._loop, daemon=True)
        self._thread.start()

    def stop(self):
        self._running = False
        self._queue.put(None)
        if self._thread and self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join(timeout=2.0)

    def _loop(self):
        while self._running:
            event = self._queue.get()
            if event is None:
                continue
            self._dispatch(event)

    def _dispatch(self, event):
        if self._handler is None:
            return
        with self._dispatch_lock:
            try:
                self._handler(event)
            except Exception as e:
                if self.session_logger:
                    self.session_logger("EVENT_ERROR", f"{type(event).__name__}: {e}")
