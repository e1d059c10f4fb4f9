"""
Resume handshake: asks an instructor to let an interrupted attempt
continue, with a local countdown mirroring the request's expiry.

Exactly one terminal outcome is applied per request. Precedence: local
expiry wins at and after `expires_at`, so an approval applied when the
clock already reads `>= expires_at` is discarded and the request expires.
"""

import time
from typing import Callable, Optional

from .errors import SessionStateError
from .events import ResumeCountdownElapsed, ResumeDecision
from .models import ResumeRequest, ResumeStatus


class ResumeHandshake:
    """Drives one ResumeRequest to approved, declined or expired."""

    def __init__(
        self,
        service,
        broker,
        scheduler,
        publish: Callable[[object], None],
        clock: Callable[[], float] = time.time,
        session_logger=None
    ):
        self.service = service
        self.broker = broker
        self.scheduler = scheduler
        self.publish = publish
        self.clock = clock
        self.session_logger = session_logger

        self.request: Optional[ResumeRequest] = None
        self._countdown = None

    @property
    def waiting(self) -> bool:
        return self.request is not None and self.request.status == ResumeStatus.PENDING

    def begin(self, attempt_id: str, requester: dict) -> ResumeRequest:
        """
        Create the request, subscribe to its events and start the countdown.

        Raises:
            SessionStateError: If a request for this attempt is still pending
            TransientError: If the request could not be created
        """
        if self.waiting:
            raise SessionStateError(f"Resume request {self.request.request_id} is still pending")

        request = self.service.request_resume(attempt_id, requester)
        self.request = request
        request_id = request.request_id

        def on_event(data: dict):
            self.publish(ResumeDecision(
                request_id=request_id,
                status=data.get('status'),
                time_remaining_seconds=data.get('time_remaining_seconds'),
                reason=data.get('reason')
            ))

        self.broker.subscribe(request_id, on_event)
        delay = max(0.0, request.expires_at - self.clock())
        self._countdown = self.scheduler.after(
            delay, lambda: self.publish(ResumeCountdownElapsed(request_id))
        )
        self._log("RESUME_REQUESTED", f"Request: {request_id}, Expires in: {delay:.0f}s")
        return request

    def seconds_left(self) -> float:
        if not self.waiting:
            return 0.0
        return max(0.0, self.request.expires_at - self.clock())

    def handle_decision(self, event: ResumeDecision) -> Optional[str]:
        """
        Apply a broker event.

        Returns:
            The terminal status applied, or None if the event was ignored
        """
        if not self._matches(event.request_id):
            return None

        if event.status == ResumeStatus.APPROVED:
            if self.clock() >= self.request.expires_at:
                self._log("RESUME_LATE_APPROVAL", f"Request: {event.request_id} approved after expiry")
                return self._finish(ResumeStatus.EXPIRED)
            self.request.time_remaining_seconds = event.time_remaining_seconds
            return self._finish(ResumeStatus.APPROVED)

        if event.status == ResumeStatus.DECLINED:
            self.request.decline_reason = event.reason
            return self._finish(ResumeStatus.DECLINED)

        if event.status == ResumeStatus.EXPIRED:
            return self._finish(ResumeStatus.EXPIRED)

        return None

    def handle_countdown(self, event: ResumeCountdownElapsed) -> Optional[str]:
        if not self._matches(event.request_id):
            return None
        return self._finish(ResumeStatus.EXPIRED)

    def cancel(self):
        """Stop listening without deciding the request."""
        self._release()

    def _matches(self, request_id: str) -> bool:
        return self.waiting and self.request.request_id == request_id

    def _finish(self, status: str) -> str:
        self.request.status = status
        self._release()
        details = f"Request: {self.request.request_id}"
        if status == ResumeStatus.APPROVED:
            details += f", Time remaining: {self.request.time_remaining_seconds}"
        elif status == ResumeStatus.DECLINED and self.request.decline_reason:
            details += f", Reason: {self.request.decline_reason}"
        self._log(f"RESUME_{status.upper()}", details)
        return status

    def _release(self):
        if self._countdown is not None:
            self._countdown.cancel()
            self._countdown = None
        if self.request is not None:
            self.broker.unsubscribe(self.request.request_id)

    def _log(self, event: str, details: str):
        if self.session_logger:
            self.session_logger(event, details)
