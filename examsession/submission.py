"""
Submission coordinator: delivers the final answers (live) or a sealed
snapshot to the server, retrying transient failures with capped
exponential backoff.
"""

from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

from .errors import ExamSessionError, IntegrityError, RetriesExhaustedError, TransientError
from .events import SubmissionCompleted, SubmissionRetryDue
from .models import SealedSnapshot, SessionFailure, SubmissionResult


@dataclass
class LiveSubmission:
    """Normal path: finalize the attempt with the in-memory answers."""
    attempt_id: str
    responses: Dict[str, dict] = field(default_factory=dict)


class SubmissionCoordinator:
    """Delivers exactly one final submission per attempt."""

    IDLE = "idle"
    IN_FLIGHT = "in_flight"
    WAITING_RETRY = "waiting_retry"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    def __init__(
        self,
        service,
        scheduler,
        publish: Callable[[object], None],
        base_delay_seconds: float = 5,
        max_delay_seconds: float = 30,
        max_retries: int = 10,
        on_success: Optional[Callable[[SubmissionResult], None]] = None,
        on_failure: Optional[Callable[[SessionFailure], None]] = None,
        session_logger=None
    ):
        self.service = service
        self.scheduler = scheduler
        self.publish = publish
        self.base_delay_seconds = base_delay_seconds
        self.max_delay_seconds = max_delay_seconds
        self.max_retries = max_retries
        self.on_success = on_success
        self.on_failure = on_failure
        self.session_logger = session_logger

        self.state = self.IDLE
        self.payload = None
        self.generation = 0
        self.retry_count = 0
        self.result: Optional[SubmissionResult] = None
        self.last_error: Optional[ExamSessionError] = None
        self._retry_handle = None

    @property
    def pending(self) -> bool:
        return self.state in (self.IN_FLIGHT, self.WAITING_RETRY)

    def backoff_delay(self, retry_count: int) -> float:
        return min(self.base_delay_seconds * (2 ** retry_count), self.max_delay_seconds)

    def submit(self, payload) -> bool:
        """
        Start delivering payload (LiveSubmission or SealedSnapshot).

        Returns:
            False if a submission was already started; the call is then a no-op
        """
        if self.state != self.IDLE:
            self._log("SUBMIT_IGNORED", f"Submission already {self.state}")
            return False
        self.payload = payload
        self._attempt()
        return True

    def retry_now(self) -> bool:
        """
        Retry immediately: cuts a pending backoff short, or restarts after
        retries ran out. Integrity rejections are never retried.
        """
        if self.state == self.WAITING_RETRY:
            self._cancel_retry()
            self._attempt()
            return True
        if self.state == self.FAILED and isinstance(self.last_error, RetriesExhaustedError):
            self.retry_count = 0
            self._attempt()
            return True
        return False

    def cancel(self):
        self._cancel_retry()

    def handle_completed(self, event: SubmissionCompleted):
        if self.state == self.SUCCEEDED:
            return

        if event.error is None:
            # any generation: the server applied it
            self._cancel_retry()
            self.state = self.SUCCEEDED
            self.result = event.result
            self._log("SUBMISSION_SUCCEEDED", f"Attempt: {self._attempt_id()}, Result: {event.result}")
            if self.on_success:
                self.on_success(event.result)
            return

        if event.generation != self.generation or self.state != self.IN_FLIGHT:
            return

        error = event.error
        self.last_error = error
        if isinstance(error, IntegrityError) or not error.retryable:
            self._fail(error, retryable=False)
            return

        if self.retry_count >= self.max_retries:
            self._fail(RetriesExhaustedError(
                f"Submission failed after {self.max_retries} retries: {error}"
            ), retryable=True)
            return

        delay = self.backoff_delay(self.retry_count)
        self.retry_count += 1
        self.state = self.WAITING_RETRY
        generation = self.generation
        self._log("SUBMISSION_RETRY_SCHEDULED",
                  f"Retry {self.retry_count}/{self.max_retries} in {delay:.0f}s, Error: {error}")
        self._retry_handle = self.scheduler.after(
            delay, lambda: self.publish(SubmissionRetryDue(generation))
        )

    def handle_retry_due(self, event: SubmissionRetryDue):
        if self.state == self.WAITING_RETRY and event.generation == self.generation:
            self._retry_handle = None
            self._attempt()

    def _attempt(self):
        self.generation += 1
        generation = self.generation
        payload = self.payload
        self.state = self.IN_FLIGHT
        kind = "sealed" if isinstance(payload, SealedSnapshot) else "live"
        self._log("SUBMISSION_ATTEMPT", f"Attempt #{generation} ({kind}) for {self._attempt_id()}")
        self.scheduler.defer(lambda: self._deliver(generation, payload))

    def _deliver(self, generation: int, payload):
        try:
            if isinstance(payload, SealedSnapshot):
                result = self.service.submit_sealed(payload)
            else:
                result = self.service.submit_live(payload.attempt_id, payload.responses)
        except ExamSessionError as e:
            self.publish(SubmissionCompleted(generation, error=e))
        except Exception as e:
            self.publish(SubmissionCompleted(generation, error=TransientError(str(e))))
        else:
            self.publish(SubmissionCompleted(generation, result=result))

    def _fail(self, error: ExamSessionError, retryable: bool):
        self.state = self.FAILED
        self.last_error = error
        self._log("SUBMISSION_FAILED", f"Category: {error.category}, Error: {error}")
        if self.on_failure:
            self.on_failure(SessionFailure(category=error.category, message=str(error), retryable=retryable))

    def _cancel_retry(self):
        if self._retry_handle is not None:
            self._retry_handle.cancel()
            self._retry_handle = None

    def _attempt_id(self) -> str:
        return getattr(self.payload, 'attempt_id', '?')

    def _log(self, event: str, details: str):
        if self.session_logger:
            self.session_logger(event, details)
