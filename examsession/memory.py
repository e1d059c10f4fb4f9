"""
In-process reference implementation of the exam server contract.

Used by tools/simulate.py and the test suite. It implements the server
side of the protocol: idempotent submission keyed by attempt id, integrity
hash recomputation, the submission window and the resume request
lifecycle. Setting `reachable = False` simulates a network partition.
"""

import copy
import itertools
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from .broker import ResumeBroker
from .client import ExamService
from .errors import (
    ApprovalError,
    ExamSessionError,
    HashMismatchError,
    StartRejectedError,
    SubmissionWindowError,
    TransientError,
)
from .models import (
    ExamInfo,
    Question,
    ResponseEntry,
    ResumeRequest,
    ResumeStatus,
    SealedSnapshot,
    StartResult,
    SubmissionResult,
    ViolationPolicy,
    responses_from_dict,
)
from .sealing import verify_snapshot

RESUME_REQUEST_EXPIRY_SECONDS = 10 * 60


class InMemoryResumeBroker(ResumeBroker):
    """Delivers resume events published in-process."""

    def __init__(self):
        self.connected = False
        self.connect_count = 0
        self._handlers: Dict[str, Callable[[dict], None]] = {}
        self._lock = threading.Lock()

    def connect(self):
        self.connected = True
        self.connect_count += 1

    def disconnect(self):
        with self._lock:
            self._handlers.clear()
        self.connected = False

    def subscribe(self, request_id: str, handler: Callable[[dict], None]):
        if not self.connected:
            raise ExamSessionError("Resume broker is not connected")
        with self._lock:
            self._handlers[str(request_id)] = handler

    def unsubscribe(self, request_id: str):
        with self._lock:
            self._handlers.pop(str(request_id), None)

    def subscribed(self, request_id: str) -> bool:
        with self._lock:
            return str(request_id) in self._handlers

    def publish(self, request_id: str, data: dict) -> bool:
        """Deliver an event; returns False when nobody listens."""
        with self._lock:
            handler = self._handlers.get(str(request_id))
        if handler is None:
            return False
        handler(dict(data))
        return True


@dataclass
class _Exam:
    info: ExamInfo
    questions: List[Question]
    answer_key: Dict[str, object]
    password: Optional[str] = None
    submission_grace_seconds: float = 60.0


@dataclass
class _Attempt:
    attempt_id: str
    exam_id: str
    taker: str
    started_at: float
    ends_at: float
    status: str = "in_progress"
    interrupted: bool = False
    responses: Dict[str, ResponseEntry] = field(default_factory=dict)
    violations: List[str] = field(default_factory=list)
    result: Optional[SubmissionResult] = None
    sealed_hash: Optional[str] = None


class InMemoryExamService(ExamService):
    """Reference server holding exams, attempts and resume requests in memory."""

    def __init__(
        self,
        clock: Callable[[], float] = time.time,
        broker: Optional[InMemoryResumeBroker] = None,
        resume_expiry_seconds: float = RESUME_REQUEST_EXPIRY_SECONDS
    ):
        self.clock = clock
        self.broker = broker
        self.resume_expiry_seconds = resume_expiry_seconds
        self.reachable = True

        self.exams: Dict[str, _Exam] = {}
        self.attempts: Dict[str, _Attempt] = {}
        self.resume_requests: Dict[str, ResumeRequest] = {}
        self.saved: List[tuple] = []
        self.submit_calls: List[tuple] = []
        self.records_created = 0
        self.beacons: List[dict] = []

        self._ids = itertools.count(1)
        self._lock = threading.RLock()

    # --------------------------------------------------
    # Exam setup
    # --------------------------------------------------

    def add_exam(
        self,
        exam_id: str,
        title: str,
        questions: List[dict],
        time_limit_seconds: int,
        max_violations: int = 3,
        password: Optional[str] = None,
        policy: Optional[dict] = None,
        submission_grace_seconds: float = 60.0
    ) -> ExamInfo:
        """
        Register an exam. Each question dict may carry a `correct` key: an
        option id for single choice or a list of ids for multiple choice.
        """
        info = ExamInfo(
            exam_id=str(exam_id),
            title=title,
            time_limit_seconds=time_limit_seconds,
            max_violations=max_violations,
            password_required=password is not None,
            policy=ViolationPolicy.from_dict(policy or {})
        )
        parsed = [Question.from_dict(q) for q in questions]
        answer_key = {str(q['question_id']): q.get('correct') for q in questions}
        self.exams[info.exam_id] = _Exam(info, parsed, answer_key, password, submission_grace_seconds)
        return info

    # --------------------------------------------------
    # ExamService
    # --------------------------------------------------

    def start_attempt(self, exam_id: str, credentials: dict, password: Optional[str] = None) -> StartResult:
        with self._lock:
            self._check_reachable()
            exam = self.exams.get(str(exam_id))
            if exam is None:
                raise StartRejectedError(f"Exam {exam_id} not found")
            if exam.password is not None and password != exam.password:
                raise StartRejectedError("Invalid exam password")

            taker = credentials.get('student_id') or credentials.get('email')
            if not taker:
                raise StartRejectedError("Missing taker identity")

            attempt = self._in_progress_attempt(exam.info.exam_id, taker)
            now = self.clock()
            if attempt is None:
                attempt = _Attempt(
                    attempt_id=str(next(self._ids)),
                    exam_id=exam.info.exam_id,
                    taker=taker,
                    started_at=now,
                    ends_at=now + exam.info.time_limit_seconds
                )
                self.attempts[attempt.attempt_id] = attempt

            return StartResult(
                attempt_id=attempt.attempt_id,
                exam=copy.deepcopy(exam.info),
                questions=copy.deepcopy(exam.questions),
                time_remaining_seconds=max(0.0, attempt.ends_at - now),
                existing_responses=copy.deepcopy(attempt.responses),
                started_at=attempt.started_at,
                resume_required=attempt.interrupted,
                violation_count=len(attempt.violations)
            )

    def save_response(self, attempt_id: str, question_id: str, entry: ResponseEntry) -> None:
        with self._lock:
            self._check_reachable()
            attempt = self._attempt(attempt_id)
            if attempt.status != "in_progress":
                return
            attempt.responses[str(question_id)] = copy.deepcopy(entry)
            self.saved.append((attempt_id, question_id))

    def log_violation(self, attempt_id: str, violation_type: str) -> None:
        with self._lock:
            self._check_reachable()
            self._attempt(attempt_id).violations.append(violation_type)

    def submit_live(self, attempt_id: str, responses: Dict[str, dict]) -> SubmissionResult:
        with self._lock:
            self._check_reachable()
            self.submit_calls.append(("live", attempt_id))
            attempt = self._attempt(attempt_id)
            if attempt.result is not None:
                return self._already_submitted(attempt)
            attempt.responses.update(responses_from_dict(responses))
            return self._finalize(attempt, late=self.clock() > attempt.ends_at)

    def submit_sealed(self, snapshot: SealedSnapshot) -> SubmissionResult:
        with self._lock:
            self._check_reachable()
            self.submit_calls.append(("sealed", snapshot.attempt_id))
            attempt = self._attempt(snapshot.attempt_id)
            if attempt.result is not None:
                return self._already_submitted(attempt)
            if not verify_snapshot(snapshot):
                raise HashMismatchError("Sealed payload failed integrity verification")
            exam = self.exams[attempt.exam_id]
            if snapshot.sealed_at > attempt.ends_at + exam.submission_grace_seconds:
                raise SubmissionWindowError("Sealed after the exam's submission window closed")
            attempt.responses = responses_from_dict(snapshot.responses)
            attempt.sealed_hash = snapshot.integrity_hash
            return self._finalize(attempt, late=snapshot.sealed_at > attempt.ends_at)

    def request_resume(self, attempt_id: str, requester: dict) -> ResumeRequest:
        with self._lock:
            self._check_reachable()
            attempt = self._attempt(attempt_id)
            if attempt.status != "in_progress":
                raise ApprovalError(f"Attempt {attempt_id} is already submitted")
            self.expire_requests()
            for request in self.resume_requests.values():
                if request.attempt_id == attempt.attempt_id and request.status == ResumeStatus.PENDING:
                    return copy.deepcopy(request)
            now = self.clock()
            request = ResumeRequest(
                request_id=f"r{next(self._ids)}",
                attempt_id=attempt.attempt_id,
                requester_identity=dict(requester),
                exam_title=self.exams[attempt.exam_id].info.title,
                created_at=now,
                expires_at=now + self.resume_expiry_seconds
            )
            self.resume_requests[request.request_id] = request
            return copy.deepcopy(request)

    def get_resume_status(self, request_id: str) -> dict:
        with self._lock:
            self._check_reachable()
            self.expire_requests()
            request = self._request(request_id)
            return {
                'request_id': request.request_id,
                'status': request.status,
                'time_remaining_seconds': request.time_remaining_seconds,
                'reason': request.decline_reason,
            }

    def send_seal_beacon(self, attempt_id: str, time_remaining_seconds: float, responses: Dict[str, dict]) -> None:
        with self._lock:
            if not self.reachable:
                return
            self.beacons.append({'attempt_id': attempt_id, 'time_remaining_seconds': time_remaining_seconds})
            attempt = self.attempts.get(str(attempt_id))
            if attempt is not None and attempt.status == "in_progress":
                attempt.interrupted = True
                attempt.responses.update(responses_from_dict(responses))

    def probe(self) -> bool:
        return self.reachable

    # --------------------------------------------------
    # Reviewer actions
    # --------------------------------------------------

    def approve(self, request_id: str, time_remaining_seconds: Optional[float] = None) -> dict:
        """Approve a pending request; the attempt gets the authoritative time."""
        with self._lock:
            request = self._pending(request_id)
            attempt = self._attempt(request.attempt_id)
            now = self.clock()
            if time_remaining_seconds is None:
                time_remaining_seconds = max(0.0, attempt.ends_at - now)
            attempt.ends_at = now + time_remaining_seconds
            attempt.interrupted = False
            request.status = ResumeStatus.APPROVED
            request.time_remaining_seconds = time_remaining_seconds
            event = {'status': ResumeStatus.APPROVED, 'time_remaining_seconds': time_remaining_seconds}
        self._deliver(request_id, event)
        return event

    def decline(self, request_id: str, reason: Optional[str] = None) -> dict:
        with self._lock:
            request = self._pending(request_id)
            request.status = ResumeStatus.DECLINED
            request.decline_reason = reason
            event = {'status': ResumeStatus.DECLINED, 'reason': reason}
        self._deliver(request_id, event)
        return event

    def expire_requests(self) -> List[str]:
        """Expire pending requests past their deadline."""
        expired = []
        with self._lock:
            now = self.clock()
            for request in self.resume_requests.values():
                if request.status == ResumeStatus.PENDING and now >= request.expires_at:
                    request.status = ResumeStatus.EXPIRED
                    expired.append(request.request_id)
        for request_id in expired:
            self._deliver(request_id, {'status': ResumeStatus.EXPIRED})
        return expired

    def mark_interrupted(self, attempt_id: str):
        with self._lock:
            self._attempt(attempt_id).interrupted = True

    # --------------------------------------------------
    # Internals
    # --------------------------------------------------

    def _finalize(self, attempt: _Attempt, late: bool) -> SubmissionResult:
        exam = self.exams[attempt.exam_id]
        score = 0.0
        for question in exam.questions:
            entry = attempt.responses.get(question.question_id)
            correct = exam.answer_key.get(question.question_id)
            if entry is None or correct is None:
                continue
            if isinstance(correct, list):
                if sorted(entry.selected_option_ids or []) == sorted(correct):
                    score += question.weight
            elif entry.selected_option_id == correct:
                score += question.weight

        attempt.status = "submitted"
        attempt.interrupted = False
        attempt.result = SubmissionResult(
            attempt_id=attempt.attempt_id,
            finalized=True,
            score=round(score, 2),
            max_score=round(sum(q.weight for q in exam.questions), 2),
            late=late
        )
        self.records_created += 1
        return copy.deepcopy(attempt.result)

    def _already_submitted(self, attempt: _Attempt) -> SubmissionResult:
        result = copy.deepcopy(attempt.result)
        result.already_submitted = True
        return result

    def _deliver(self, request_id: str, event: dict):
        if self.broker is not None:
            self.broker.publish(request_id, event)

    def _in_progress_attempt(self, exam_id: str, taker: str) -> Optional[_Attempt]:
        for attempt in self.attempts.values():
            if attempt.exam_id == exam_id and attempt.taker == taker and attempt.status == "in_progress":
                return attempt
        return None

    def _attempt(self, attempt_id: str) -> _Attempt:
        attempt = self.attempts.get(str(attempt_id))
        if attempt is None:
            raise ExamSessionError(f"Attempt {attempt_id} not found")
        return attempt

    def _request(self, request_id: str) -> ResumeRequest:
        request = self.resume_requests.get(str(request_id))
        if request is None:
            raise ExamSessionError(f"Resume request {request_id} not found")
        return request

    def _pending(self, request_id: str) -> ResumeRequest:
        request = self._request(request_id)
        if request.status != ResumeStatus.PENDING:
            raise ExamSessionError(f"Resume request {request_id} is already {request.status}")
        return request

    def _check_reachable(self):
        if not self.reachable:
            raise TransientError("Server unreachable")
