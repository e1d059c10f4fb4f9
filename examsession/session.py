"""
Attempt session state machine.

Binds the timer, violation ledger, response store, network monitor,
sealing engine, submission coordinator and resume handshake into one
lifecycle:

    initializing -> active <-> sealed -> submitting -> submitted
    interrupted -> awaiting_approval -> active | rejected | expired

Asynchronous inputs arrive as events on the EventBus and are applied one
at a time by `handle`. Presentation code calls the public methods, which
share the same lock.
"""

import threading
import time
from typing import Callable, Optional

from . import events as ev
from .connectivity import NetworkHealthMonitor
from .errors import (
    APPROVAL,
    ExamSessionError,
    HashMismatchError,
    PolicyViolationError,
    SessionStateError,
    StartRejectedError,
    StorageError,
    TransientError,
)
from .events import EventBus
from .models import (
    ResumeStatus,
    SealReason,
    SessionConfig,
    SessionFailure,
    SessionState,
    SubmissionResult,
)
from .resume import ResumeHandshake
from .responses import ResponseStore
from .scheduling import ThreadScheduler
from .sealing import SealingEngine
from .storage import VIOLATIONS
from .submission import LiveSubmission, SubmissionCoordinator
from .timer import WallClockTimer
from .violations import ViolationLedger

S = SessionState

ALLOWED_TRANSITIONS = {
    S.INITIALIZING: {S.ACTIVE, S.SEALED, S.INTERRUPTED, S.FAILED},
    S.ACTIVE: {S.SEALED, S.SUBMITTING},
    S.SEALED: {S.SUBMITTING, S.INTERRUPTED},
    S.SUBMITTING: {S.SUBMITTED, S.FAILED},
    S.INTERRUPTED: {S.AWAITING_APPROVAL, S.FAILED},
    S.AWAITING_APPROVAL: {S.ACTIVE, S.REJECTED, S.EXPIRED, S.FAILED},
    S.REJECTED: {S.SUBMITTING},
    S.EXPIRED: {S.SUBMITTING},
    S.FAILED: {S.SUBMITTING},
    S.SUBMITTED: set(),
}


class AttemptSession:
    """One person's attempt at one exam, from start to final submission."""

    def __init__(
        self,
        exam_id: str,
        identity,
        service,
        broker,
        store,
        config: Optional[SessionConfig] = None,
        scheduler=None,
        bus: Optional[EventBus] = None,
        clock: Callable[[], float] = time.time,
        session_logger=None,
        on_state_change: Optional[Callable[[str, str], None]] = None,
        on_notice: Optional[Callable[[str, dict], None]] = None
    ):
        self.exam_id = str(exam_id)
        self.identity = identity
        self.service = service
        self.broker = broker
        self.store = store
        self.config = config or SessionConfig.default()
        self.scheduler = scheduler or ThreadScheduler(session_logger=session_logger)
        self.bus = bus or EventBus(session_logger=session_logger)
        self.clock = clock
        self.session_logger = session_logger
        self.on_state_change = on_state_change
        self.on_notice = on_notice

        self.state = S.INITIALIZING
        self.attempt_id: Optional[str] = None
        self.exam = None
        self.questions = []
        self.started_at: Optional[float] = None
        self.failure: Optional[SessionFailure] = None
        self.result: Optional[SubmissionResult] = None
        self.resume_outcome: Optional[str] = None
        self._server_responses = {}
        self._server_remaining: Optional[float] = None

        self.responses: Optional[ResponseStore] = None
        self.ledger: Optional[ViolationLedger] = None
        self.timer: Optional[WallClockTimer] = None
        self.sealing: Optional[SealingEngine] = None

        self.monitor = NetworkHealthMonitor(
            disagreements_required=self.config.probe_disagreements_required,
            on_change=self._on_health_change,
            session_logger=session_logger
        )
        self.coordinator = SubmissionCoordinator(
            service=service,
            scheduler=self.scheduler,
            publish=self.bus.publish,
            base_delay_seconds=self.config.retry_base_delay_seconds,
            max_delay_seconds=self.config.retry_max_delay_seconds,
            max_retries=self.config.max_submission_retries,
            on_success=self._on_submitted,
            on_failure=self._on_submission_failed,
            session_logger=session_logger
        )
        self.resume = ResumeHandshake(
            service=service,
            broker=broker,
            scheduler=self.scheduler,
            publish=self.bus.publish,
            clock=clock,
            session_logger=session_logger
        )

        self._lock = threading.RLock()
        self._connected = False
        self._probe_handle = None
        self._tick_handle = None
        self._persist_handle = None
        self._warning_handle = None
        self._warning_id = 0
        self._pending_warning: Optional[int] = None
        self._password: Optional[str] = None
        self._reentry_pending = False
        self._reentry_handle = None

        self.bus.subscribe(self.handle)

    # --------------------------------------------------
    # Start
    # --------------------------------------------------

    def start(self, password: Optional[str] = None) -> str:
        """
        Start the attempt, or recover a previous one for this exam.

        A snapshot sealed for any reason but network loss is submitted
        right away. A network-loss snapshot is restored first (the session
        is Sealed even while the server is unreachable); once the catalog
        answers it goes through the resume handshake, as does an attempt
        the server reports as interrupted.

        Returns:
            The state reached

        Raises:
            StartRejectedError: Wrong password, closed exam, or no time information
            TransientError: The server could not be reached and nothing was sealed locally
        """
        with self._lock:
            if self.state != S.INITIALIZING or self.attempt_id is not None:
                raise SessionStateError(f"Cannot start a session in state {self.state}")

            seal = self._find_local_seal()
            if seal:
                attempt_id, document = seal
                self._log("SESSION_RECOVERED", f"Sealed attempt {attempt_id} found locally")
                self._bind_attempt(attempt_id, self.config.default_max_violations)
                self._connect()
                if not self._restore_seal(document):
                    return self.state
                self._carry_over_violations(self.sealing.snapshot.violation_count_at_seal)
                self._transition(S.SEALED)
                if self.sealing.snapshot.seal_reason == SealReason.NETWORK_LOSS:
                    self._password = password
                    self._reentry_pending = True
                    self._reenter()
                else:
                    self._submit_sealed()
                return self.state

            result = self.service.start_attempt(self.exam_id, self.identity.credentials(), password)
            self._log("SESSION_START", f"Taker: {self.identity.display_name()}, Exam: {self.exam_id}, Attempt: {result.attempt_id}")
            self._bind_attempt(result.attempt_id, result.exam.max_violations)
            self._apply_start_result(result)
            self._connect()

            if result.resume_required:
                self._transition(S.INTERRUPTED)
                self._request_resume()
                return self.state

            try:
                remaining = self._initial_remaining(result.time_remaining_seconds)
            except StartRejectedError:
                self._disconnect()
                raise
            self._activate(remaining, result.existing_responses)
            return self.state

    def _reenter(self):
        """Reach the catalog for the sealed attempt, then ask to resume it."""
        if self._reentry_handle is not None:
            self._reentry_handle.cancel()
            self._reentry_handle = None
        try:
            result = self.service.start_attempt(self.exam_id, self.identity.credentials(), self._password)
        except TransientError as e:
            self._log("REENTRY_DEFERRED", f"{e} - sealed answers kept")
            self._reentry_handle = self.scheduler.after(
                self.config.retry_base_delay_seconds, lambda: self.bus.publish(ev.ReentryDue())
            )
            return
        except ExamSessionError as e:
            # resuming is impossible, the sealed answers are still delivered
            self._reentry_pending = False
            self._log("REENTRY_REJECTED", str(e))
            self._submit_sealed()
            return

        self._reentry_pending = False
        self._log("SESSION_START", f"Taker: {self.identity.display_name()}, Exam: {self.exam_id}, Attempt: {result.attempt_id}")
        if str(result.attempt_id) != self.attempt_id:
            # the server no longer holds the sealed attempt open
            self._log("SEAL_SUPERSEDED", f"Server resumed {result.attempt_id}, delivering seal of {self.attempt_id}")
            self._submit_sealed()
            return
        self._apply_start_result(result)
        self._transition(S.INTERRUPTED)
        self._request_resume()

    def _apply_start_result(self, result):
        self.exam = result.exam
        self.questions = result.questions
        self.started_at = result.started_at or self.clock()
        self._server_responses = result.existing_responses
        self._server_remaining = result.time_remaining_seconds
        self.responses.question_ids = {q.question_id for q in result.questions}
        self.ledger.policy = result.exam.policy
        if result.exam.max_violations:
            self.ledger.max_violations = result.exam.max_violations
        self._carry_over_violations(result.violation_count)

    def _find_local_seal(self):
        try:
            seals = self.store.find_seals(self.exam_id)
        except (StorageError, OSError) as e:
            self._log("SEAL_LOOKUP_FAILED", str(e))
            return None
        if not seals:
            return None
        return max(seals, key=lambda item: item[1].get('sealed_at', 0))

    def _bind_attempt(self, attempt_id: str, max_violations: Optional[int]):
        self.attempt_id = str(attempt_id)
        self.responses = ResponseStore(
            store=self.store,
            exam_id=self.exam_id,
            attempt_id=self.attempt_id,
            sync=self._schedule_sync,
            session_logger=self.session_logger
        )
        self.ledger = ViolationLedger(
            max_violations=max_violations or self.config.default_max_violations,
            clock=self.clock,
            on_warn=self._on_violation_warning,
            on_threshold_exceeded=self._on_violation_threshold,
            session_logger=self.session_logger
        )
        self.timer = WallClockTimer(
            clock=self.clock,
            low_time_warning_seconds=self.config.low_time_warning_seconds,
            on_warning=self._on_low_time,
            on_expired=self._on_timer_expired,
            session_logger=self.session_logger
        )
        self.sealing = SealingEngine(
            store=self.store,
            exam_id=self.exam_id,
            attempt_id=self.attempt_id,
            clock=self.clock,
            session_logger=self.session_logger
        )

    def _restore_seal(self, document: dict) -> bool:
        try:
            self.sealing.restore(document)
        except HashMismatchError as e:
            self._fail(SessionFailure(category=e.category, message=str(e), retryable=False))
            return False
        return True

    def _initial_remaining(self, server_remaining: Optional[float]) -> float:
        local_remaining = self.timer.load_timer_state(self.store, self.exam_id, self.attempt_id)
        candidates = [r for r in (server_remaining, local_remaining) if r is not None]
        if not candidates and self.exam and self.exam.time_limit_seconds:
            candidates.append(self.exam.time_limit_seconds)
        if not candidates:
            raise StartRejectedError("Server did not report the remaining time")
        return min(candidates)

    def _connect(self):
        if self._connected:
            return
        self.broker.connect()
        self._connected = True
        self._probe_handle = self.scheduler.every(self.config.probe_interval_seconds, self._probe)

    def _disconnect(self):
        if self._probe_handle is not None:
            self._probe_handle.cancel()
            self._probe_handle = None
        if self._connected:
            self.broker.disconnect()
            self._connected = False

    # --------------------------------------------------
    # Active state
    # --------------------------------------------------

    def _activate(self, remaining: float, server_responses=None, sealed=None):
        self.responses.restore(server_responses or {}, sealed=sealed)
        self.timer.start(remaining)
        self.responses.unfreeze()
        self.responses.persist()
        self._transition(S.ACTIVE)
        self.timer.save_timer_state(self.store, self.exam_id, self.attempt_id)
        self._tick_handle = self.scheduler.every(
            self.config.tick_interval_seconds, lambda: self.bus.publish(ev.TimerTick())
        )
        self._persist_handle = self.scheduler.every(
            self.config.timer_persist_interval_seconds, lambda: self.bus.publish(ev.TimerPersistDue())
        )
        if self.ledger.count >= self.ledger.max_violations:
            # the limit was reached before the reload
            self.ledger.exceed("violation_limit")

    def _leave_active(self):
        for name in ('_tick_handle', '_persist_handle'):
            handle = getattr(self, name)
            if handle is not None:
                handle.cancel()
                setattr(self, name, None)
        self._clear_warning()
        if self.timer is not None:
            if self.timer.running:
                self.timer.save_timer_state(self.store, self.exam_id, self.attempt_id)
            self.timer.stop()
        if self.responses is not None:
            self.responses.freeze()

    # --------------------------------------------------
    # Presentation API
    # --------------------------------------------------

    def set_response(self, question_id: str, **patch):
        with self._lock:
            self._require_active()
            return self.responses.set_response(question_id, **patch)

    def toggle_flag(self, question_id: str) -> bool:
        with self._lock:
            self._require_active()
            return self.responses.toggle_flag(question_id)

    def go_to_page(self, page: int):
        with self._lock:
            self._require_active()
            self.responses.set_page(page)

    def report_violation(self, violation_type: str):
        """Entry point for proctoring detectors."""
        self.bus.publish(ev.ViolationDetected(violation_type))

    def connectivity_hint(self, online: bool):
        """Native online/offline signal; only schedules an early probe."""
        self.bus.publish(ev.ConnectivityHint(online))

    def acknowledge_warning(self) -> bool:
        """The taker returned to the exam before the countdown ran out."""
        with self._lock:
            if self._pending_warning is None:
                return False
            self._log("VIOLATION_ACKNOWLEDGED", f"Warning #{self._pending_warning}")
            self._clear_warning()
            return True

    def submit(self) -> bool:
        """
        Manual final submission.

        Returns:
            False if a submission is already under way or done (no-op)
        """
        with self._lock:
            if self.state in (S.SUBMITTING, S.SUBMITTED):
                return False
            if self.state == S.SEALED:
                self._submit_sealed()
                return True
            self._require_active()
            self._finish_live("manual")
            return True

    def retry_submission(self) -> bool:
        """Manual retry after retries ran out, or to cut a backoff short."""
        with self._lock:
            if self.state == S.FAILED and self.failure and self.failure.retryable:
                self.failure = None
                self._transition(S.SUBMITTING)
                return self.coordinator.retry_now()
            if self.state == S.SUBMITTING:
                return self.coordinator.retry_now()
            return False

    def time_remaining(self) -> float:
        with self._lock:
            return self.timer.remaining() if self.timer else 0.0

    def unload(self):
        """Page unload: persist locally and fire the seal beacon."""
        with self._lock:
            if self.state not in (S.ACTIVE, S.SEALED) or self.attempt_id is None:
                return
            self.timer.save_timer_state(self.store, self.exam_id, self.attempt_id)
            self.responses.persist()
            try:
                self.service.send_seal_beacon(self.attempt_id, self.timer.remaining(), self.responses.snapshot())
                self._log("SEAL_BEACON_SENT", f"Attempt: {self.attempt_id}")
            except Exception as e:
                self._log("SEAL_BEACON_FAILED", str(e))

    def close(self):
        """Cancel every scheduled callback and release the broker."""
        with self._lock:
            self._leave_active()
            if self._reentry_handle is not None:
                self._reentry_handle.cancel()
                self._reentry_handle = None
            self.coordinator.cancel()
            self.resume.cancel()
            self._disconnect()

    def status(self) -> dict:
        with self._lock:
            return {
                'state': self.state,
                'attempt_id': self.attempt_id,
                'time_remaining': self.timer.remaining() if self.timer else None,
                'answered': self.responses.answered_count() if self.responses else 0,
                'questions': len(self.questions),
                'flagged': sorted(self.responses.flagged) if self.responses else [],
                'current_page': self.responses.current_page if self.responses else 0,
                'violations': self.ledger.count if self.ledger else 0,
                'max_violations': self.ledger.max_violations if self.ledger else None,
                'healthy': self.monitor.healthy,
                'sealed': bool(self.sealing and self.sealing.sealed),
                'failure': self.failure,
                'resume_outcome': self.resume_outcome,
            }

    # --------------------------------------------------
    # Event ingress
    # --------------------------------------------------

    def handle(self, event):
        """Apply one event from the bus."""
        with self._lock:
            if isinstance(event, ev.TimerTick):
                if self.state == S.ACTIVE:
                    self.timer.tick()
            elif isinstance(event, ev.TimerPersistDue):
                if self.state == S.ACTIVE:
                    self.timer.save_timer_state(self.store, self.exam_id, self.attempt_id)
            elif isinstance(event, ev.ViolationDetected):
                self._on_violation(event.violation_type)
            elif isinstance(event, ev.WarningCountdownElapsed):
                if event.warning_id == self._pending_warning and self.state == S.ACTIVE:
                    self._pending_warning = None
                    self._log("VIOLATION_WARNING_EXPIRED", f"Warning #{event.warning_id} not acknowledged")
                    self.ledger.exceed("warning_timeout")
            elif isinstance(event, ev.ProbeCompleted):
                if self.state != S.SUBMITTED:
                    self.monitor.observe(event.reachable)
            elif isinstance(event, ev.ConnectivityHint):
                self._log("CONNECTIVITY_HINT", "online" if event.online else "offline")
                if self._connected:
                    self.scheduler.defer(self._probe)
            elif isinstance(event, ev.SubmissionCompleted):
                self.coordinator.handle_completed(event)
            elif isinstance(event, ev.SubmissionRetryDue):
                self.coordinator.handle_retry_due(event)
            elif isinstance(event, ev.ResumeDecision):
                self._on_resume_outcome(self.resume.handle_decision(event))
            elif isinstance(event, ev.ResumeCountdownElapsed):
                self._on_resume_outcome(self.resume.handle_countdown(event))
            elif isinstance(event, ev.ResumeRequestDue):
                if self.state == S.INTERRUPTED:
                    self._request_resume()
            elif isinstance(event, ev.ReentryDue):
                self._reentry_handle = None
                if self.state == S.SEALED and self._reentry_pending:
                    self._reenter()

    # --------------------------------------------------
    # Timer
    # --------------------------------------------------

    def _on_low_time(self, remaining: float):
        self._log("LOW_TIME_WARNING", f"{remaining:.0f} seconds remaining")
        self._notice("low_time", {"remaining": remaining})

    def _on_timer_expired(self):
        if self.state != S.ACTIVE:
            return
        self._log("EXAM_TIMEOUT", "Exam time finished - sealing and submitting")
        self._seal(SealReason.TIMER_EXPIRED)
        self._submit_sealed()

    # --------------------------------------------------
    # Violations
    # --------------------------------------------------

    def _on_violation(self, violation_type: str):
        if self.state not in (S.ACTIVE, S.SUBMITTING) or self.ledger is None:
            self._log("VIOLATION_IGNORED", f"Type: {violation_type}, State: {self.state}")
            return
        entry = self.ledger.record(violation_type)
        if entry is None:
            return
        self._persist_violations()
        attempt_id = self.attempt_id
        self.scheduler.defer(lambda: self._report_violation(attempt_id, violation_type))

    def _persist_violations(self):
        try:
            self.store.save(VIOLATIONS, self.exam_id, self.attempt_id, self.ledger.to_dict())
        except StorageError as e:
            self._log("VIOLATION_PERSIST_FAILED", str(e))

    def _carry_over_violations(self, reported: int = 0):
        """Never start an attempt with fewer violations than it already had."""
        try:
            document = self.store.load(VIOLATIONS, self.exam_id, self.attempt_id)
        except StorageError as e:
            self._log("VIOLATION_RESTORE_FAILED", str(e))
            document = None
        local_count = int(document.get('count', 0)) if document else 0
        previous = max(reported or 0, local_count)
        if previous > self.ledger.count:
            self.ledger.carry_over(previous)
            self._log("VIOLATIONS_RESTORED", f"Count: {self.ledger.count}/{self.ledger.max_violations}")

    def _report_violation(self, attempt_id: str, violation_type: str):
        try:
            self.service.log_violation(attempt_id, violation_type)
        except Exception as e:
            self._log("VIOLATION_REPORT_FAILED", f"Type: {violation_type}, Error: {e}")

    def _on_violation_warning(self, violation_type: str, remaining_before_threshold: int):
        if self.state != S.ACTIVE:
            return
        self._clear_warning()
        self._warning_id += 1
        warning_id = self._warning_id
        self._pending_warning = warning_id
        self._warning_handle = self.scheduler.after(
            self.config.violation_warning_seconds,
            lambda: self.bus.publish(ev.WarningCountdownElapsed(warning_id))
        )
        self._notice("violation_warning", {
            "type": violation_type,
            "remaining_before_threshold": remaining_before_threshold,
            "countdown_seconds": self.config.violation_warning_seconds,
        })

    def _on_violation_threshold(self, cause: str):
        self._log("VIOLATION_LIMIT", f"Cause: {cause}, Violations: {self.ledger.count}/{self.ledger.max_violations}")
        self._notice("violation_limit", {"cause": cause, "count": self.ledger.count})
        error = PolicyViolationError(
            f"Violation limit reached ({self.ledger.count}/{self.ledger.max_violations}), cause: {cause}"
        )
        self.failure = SessionFailure(category=error.category, message=str(error), retryable=False)
        if self.state == S.ACTIVE:
            self._finish_live("violation_limit")

    def _clear_warning(self):
        if self._warning_handle is not None:
            self._warning_handle.cancel()
            self._warning_handle = None
        self._pending_warning = None

    # --------------------------------------------------
    # Network
    # --------------------------------------------------

    def _probe(self):
        try:
            reachable = bool(self.service.probe())
        except Exception:
            reachable = False
        self.bus.publish(ev.ProbeCompleted(reachable))

    def _on_health_change(self, healthy: bool):
        if not healthy:
            if self.state == S.ACTIVE:
                self._seal(SealReason.NETWORK_LOSS)
            return

        if self.state == S.SEALED and self._reentry_pending:
            self._reenter()
        elif self.state == S.SEALED:
            self._submit_sealed()
        elif self.state == S.SUBMITTING and self.coordinator.state == SubmissionCoordinator.WAITING_RETRY:
            self.coordinator.retry_now()
        elif self.state == S.INTERRUPTED:
            self._request_resume()

    # --------------------------------------------------
    # Sealing and submission
    # --------------------------------------------------

    def _seal(self, reason: str):
        self._leave_active()
        self.sealing.seal(reason, self.responses, self.ledger, self.timer)
        self._transition(S.SEALED)

    def _submit_sealed(self):
        snapshot = self.sealing.snapshot
        if snapshot is None:
            return
        self._transition(S.SUBMITTING)
        self.coordinator.submit(snapshot)

    def _finish_live(self, cause: str):
        self._leave_active()
        self._transition(S.SUBMITTING)
        self._log("SUBMIT_REQUESTED", f"Cause: {cause}, Answers: {self.responses.answered_count()}")
        self.coordinator.submit(LiveSubmission(self.attempt_id, self.responses.snapshot()))

    def _on_submitted(self, result: SubmissionResult):
        self.result = result
        self._leave_active()
        try:
            self.store.clear_attempt(self.exam_id, self.attempt_id)
        except StorageError as e:
            self._log("LOCAL_PURGE_FAILED", str(e))
        self._transition(S.SUBMITTED)
        self.resume.cancel()
        self._disconnect()
        score = f"{result.score}" if result and result.score is not None else "pending"
        self._log("SESSION_FINISH", f"Attempt: {self.attempt_id}, Score: {score}")

    def _on_submission_failed(self, failure: SessionFailure):
        self._fail(failure)

    def _fail(self, failure: SessionFailure):
        self.failure = failure
        self._leave_active()
        self._transition(S.FAILED)
        self._notice("failure", {"category": failure.category, "message": failure.message,
                                 "retryable": failure.retryable})

    # --------------------------------------------------
    # Resume handshake
    # --------------------------------------------------

    def _request_resume(self):
        if self.resume.waiting:
            return
        try:
            request = self.resume.begin(self.attempt_id, self.identity.requester())
        except TransientError as e:
            self._log("RESUME_REQUEST_FAILED", f"{e} - will retry")
            self.scheduler.after(self.config.retry_base_delay_seconds,
                                 lambda: self.bus.publish(ev.ResumeRequestDue()))
            return
        except ExamSessionError as e:
            self._fail(SessionFailure(category=APPROVAL, message=str(e), retryable=False))
            if self.sealing.snapshot is not None:
                self._submit_sealed()
            return
        self._transition(S.AWAITING_APPROVAL)
        self._notice("awaiting_approval", {"request_id": request.request_id,
                                           "expires_at": request.expires_at,
                                           "exam_title": request.exam_title})

    def _on_resume_outcome(self, outcome: Optional[str]):
        if outcome is None or self.state != S.AWAITING_APPROVAL:
            return
        self.resume_outcome = outcome
        request = self.resume.request

        if outcome == ResumeStatus.APPROVED:
            remaining = request.time_remaining_seconds
            if remaining is None:
                try:
                    remaining = self._fallback_remaining()
                except StartRejectedError as e:
                    self._refuse_resume(S.FAILED, f"Approved without a time allowance: {e}")
                    return
            snapshot = self.sealing.snapshot
            self._activate(remaining, self._server_responses, sealed=snapshot)
            if snapshot is not None:
                self.sealing.discard()
            self._notice("resume_approved", {"time_remaining": remaining})
            return

        if outcome == ResumeStatus.DECLINED:
            self._refuse_resume(S.REJECTED, request.decline_reason or "Resume request declined")
        else:
            self._refuse_resume(S.EXPIRED, "Resume request expired")

    def _refuse_resume(self, new_state: str, message: str):
        self.failure = SessionFailure(category=APPROVAL, message=message, retryable=False)
        self._transition(new_state)
        self._notice("resume_refused", {"outcome": self.resume_outcome, "message": message})

        if self.sealing.snapshot is not None:
            # resuming is refused, the sealed answers are still delivered
            self._submit_sealed()
        else:
            self._disconnect()

    def _fallback_remaining(self) -> float:
        if self.sealing.snapshot is not None:
            return self.sealing.snapshot.time_remaining_at_seal
        return self._initial_remaining(self._server_remaining)

    # --------------------------------------------------
    # Helpers
    # --------------------------------------------------

    def _schedule_sync(self, question_id: str, entry):
        attempt_id = self.attempt_id
        self.scheduler.defer(lambda: self._sync_response(attempt_id, question_id, entry))

    def _sync_response(self, attempt_id: str, question_id: str, entry):
        try:
            self.service.save_response(attempt_id, question_id, entry)
        except Exception as e:
            self._log("RESPONSE_SYNC_FAILED", f"Question: {question_id}, Error: {e}")

    def _require_active(self):
        if self.state != S.ACTIVE:
            raise SessionStateError(f"Not allowed while the attempt is {self.state}")

    def _transition(self, new_state: str):
        old_state = self.state
        if new_state == old_state:
            return
        if new_state not in ALLOWED_TRANSITIONS[old_state]:
            raise SessionStateError(f"Illegal transition {old_state} -> {new_state}")
        self.state = new_state
        self._log("STATE", f"{old_state} -> {new_state}")
        if self.on_state_change:
            self.on_state_change(old_state, new_state)

    def _notice(self, kind: str, data: dict):
        if self.on_notice:
            self.on_notice(kind, data)

    def _log(self, event: str, details: str = ""):
        if self.session_logger:
            self.session_logger(event, details)
