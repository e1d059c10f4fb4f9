"""
Resume broker connections.

The session owns its broker handle and connects/disconnects it explicitly
with its own lifecycle; there is no process-wide connection.
"""

import threading
from typing import Callable, Dict

from .errors import ExamSessionError
from .models import ResumeStatus


class ResumeBroker:
    """Delivers approve/decline/expire events keyed by request id."""

    def connect(self):
        raise NotImplementedError

    def disconnect(self):
        raise NotImplementedError

    def subscribe(self, request_id: str, handler: Callable[[dict], None]):
        raise NotImplementedError

    def unsubscribe(self, request_id: str):
        raise NotImplementedError


class PollingResumeBroker(ResumeBroker):
    """Polls the server for the status of each subscribed request."""

    def __init__(self, service, scheduler, interval_seconds: float = 3.0, session_logger=None):
        self.service = service
        self.scheduler = scheduler
        self.interval_seconds = interval_seconds
        self.session_logger = session_logger
        self.connected = False
        self._subscriptions: Dict[str, object] = {}
        self._lock = threading.Lock()

    def connect(self):
        self.connected = True

    def disconnect(self):
        with self._lock:
            handles = list(self._subscriptions.values())
            self._subscriptions.clear()
        for handle in handles:
            handle.cancel()
        self.connected = False

    def subscribe(self, request_id: str, handler: Callable[[dict], None]):
        if not self.connected:
            raise ExamSessionError("Resume broker is not connected")

        def poll():
            try:
                data = self.service.get_resume_status(request_id)
            except ExamSessionError as e:
                if self.session_logger:
                    self.session_logger("RESUME_POLL_FAILED", f"Request: {request_id}, Error: {e}")
                return
            if data.get('status') in ResumeStatus.TERMINAL:
                self.unsubscribe(request_id)
                handler(data)

        handle = self.scheduler.every(self.interval_seconds, poll)
        with self._lock:
            previous = self._subscriptions.pop(request_id, None)
            self._subscriptions[request_id] = handle
        if previous is not None:
            previous.cancel()

    def unsubscribe(self, request_id: str):
        with self._lock:
            handle = self._subscriptions.pop(request_id, None)
        if handle is not None:
            handle.cancel()
