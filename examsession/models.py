"""
Data models for the exam attempt session.

Provides type-safe structures for questions, responses, violations,
sealed snapshots, resume requests and the session configuration.
"""

import copy
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any


class SessionState:
    """Lifecycle states of an attempt session."""
    INITIALIZING = "initializing"
    ACTIVE = "active"
    SEALED = "sealed"
    SUBMITTING = "submitting"
    SUBMITTED = "submitted"
    INTERRUPTED = "interrupted"
    AWAITING_APPROVAL = "awaiting_approval"
    REJECTED = "rejected"
    EXPIRED = "expired"
    FAILED = "failed"

    TERMINAL = frozenset({SUBMITTED, FAILED})


class SealReason:
    TIMER_EXPIRED = "timer_expired"
    NETWORK_LOSS = "network_loss"
    MANUAL = "manual"

    ALL = frozenset({TIMER_EXPIRED, NETWORK_LOSS, MANUAL})


class ResumeStatus:
    PENDING = "pending"
    APPROVED = "approved"
    DECLINED = "declined"
    EXPIRED = "expired"

    TERMINAL = frozenset({APPROVED, DECLINED, EXPIRED})


class ViolationType:
    TAB_SWITCH = "tab_switch"
    WINDOW_BLUR = "window_blur"
    FULLSCREEN_EXIT = "fullscreen_exit"
    SCREENSHOT = "screenshot"
    COPY = "copy"
    DEVTOOLS = "devtools"

    ALL = frozenset({TAB_SWITCH, WINDOW_BLUR, FULLSCREEN_EXIT, SCREENSHOT, COPY, DEVTOOLS})


@dataclass
class Question:
    """A question as supplied by the catalog."""
    question_id: str
    kind: str  # "single", "multiple" or "text"
    weight: float = 1.0
    text: str = ""
    options: List[str] = field(default_factory=list)

    @staticmethod
    def from_dict(data: dict) -> 'Question':
        return Question(
            question_id=str(data['question_id']),
            kind=data.get('kind', 'single'),
            weight=float(data.get('weight', 1.0)),
            text=data.get('text', ''),
            options=[str(o) for o in data.get('options', [])]
        )


@dataclass
class ResponseEntry:
    """One answer in the response map."""
    selected_option_id: Optional[str] = None
    selected_option_ids: Optional[List[str]] = None
    text_response: Optional[str] = None
    is_flagged: bool = False

    FIELDS = ('selected_option_id', 'selected_option_ids', 'text_response', 'is_flagged')

    def merged(self, patch: Dict[str, Any]) -> 'ResponseEntry':
        """Return a copy with the fields in patch replaced, others preserved."""
        unknown = set(patch) - set(self.FIELDS)
        if unknown:
            raise ValueError(f"Unknown response fields: {', '.join(sorted(unknown))}")
        data = self.to_dict()
        data.update(copy.deepcopy(patch))
        return ResponseEntry.from_dict(data)

    def is_answered(self) -> bool:
        return bool(self.selected_option_id or self.selected_option_ids or self.text_response)

    def to_dict(self) -> dict:
        return {
            'selected_option_id': self.selected_option_id,
            'selected_option_ids': list(self.selected_option_ids) if self.selected_option_ids is not None else None,
            'text_response': self.text_response,
            'is_flagged': self.is_flagged,
        }

    @staticmethod
    def from_dict(data: dict) -> 'ResponseEntry':
        ids = data.get('selected_option_ids')
        return ResponseEntry(
            selected_option_id=data.get('selected_option_id'),
            selected_option_ids=list(ids) if ids is not None else None,
            text_response=data.get('text_response'),
            is_flagged=bool(data.get('is_flagged', False))
        )


def responses_to_dict(responses: Dict[str, ResponseEntry]) -> Dict[str, dict]:
    return {qid: entry.to_dict() for qid, entry in responses.items()}


def responses_from_dict(data: Dict[str, dict]) -> Dict[str, ResponseEntry]:
    return {str(qid): ResponseEntry.from_dict(entry) for qid, entry in (data or {}).items()}


@dataclass
class ViolationEntry:
    violation_type: str
    timestamp: float

    def to_dict(self) -> dict:
        return {'type': self.violation_type, 'timestamp': self.timestamp}


@dataclass
class ViolationPolicy:
    """Which proctoring signals an exam counts as violations."""
    detect_tab_switch: bool = True
    requires_fullscreen: bool = False
    block_screenshot: bool = True
    block_copy: bool = False
    detect_devtools: bool = False

    def counts(self, violation_type: str) -> bool:
        """Return True if a detected event of this type is counted."""
        if violation_type in (ViolationType.TAB_SWITCH, ViolationType.WINDOW_BLUR):
            return self.detect_tab_switch
        if violation_type == ViolationType.FULLSCREEN_EXIT:
            return self.requires_fullscreen
        if violation_type == ViolationType.SCREENSHOT:
            return self.block_screenshot
        if violation_type == ViolationType.COPY:
            return self.block_copy
        if violation_type == ViolationType.DEVTOOLS:
            return self.detect_devtools
        return False

    @staticmethod
    def from_dict(data: dict) -> 'ViolationPolicy':
        return ViolationPolicy(
            detect_tab_switch=data.get('detect_tab_switch', True),
            requires_fullscreen=data.get('requires_fullscreen', False),
            block_screenshot=data.get('block_screenshot', True),
            block_copy=data.get('block_copy', False),
            detect_devtools=data.get('detect_devtools', False)
        )


@dataclass
class ExamInfo:
    """Exam metadata and policy flags from the catalog."""
    exam_id: str
    title: str
    time_limit_seconds: Optional[int] = None
    max_violations: int = 3
    password_required: bool = False
    policy: ViolationPolicy = field(default_factory=ViolationPolicy)

    @staticmethod
    def from_dict(data: dict) -> 'ExamInfo':
        return ExamInfo(
            exam_id=str(data['exam_id']),
            title=data.get('title', ''),
            time_limit_seconds=data.get('time_limit_seconds'),
            max_violations=int(data.get('max_violations') or 3),
            password_required=bool(data.get('password_required', False)),
            policy=ViolationPolicy.from_dict(data.get('policy', {}))
        )


@dataclass
class StartResult:
    """Reply of the catalog to a start request."""
    attempt_id: str
    exam: ExamInfo
    questions: List[Question]
    time_remaining_seconds: Optional[float]
    existing_responses: Dict[str, ResponseEntry]
    started_at: Optional[float] = None
    resume_required: bool = False
    violation_count: int = 0

    @staticmethod
    def from_dict(data: dict) -> 'StartResult':
        existing = data.get('existing_responses') or {}
        if isinstance(existing, list):
            existing = {str(r['question_id']): r for r in existing}
        return StartResult(
            attempt_id=str(data['attempt_id']),
            exam=ExamInfo.from_dict(data['exam']),
            questions=[Question.from_dict(q) for q in data.get('questions', [])],
            time_remaining_seconds=data.get('time_remaining_seconds'),
            existing_responses=responses_from_dict(existing),
            started_at=data.get('started_at'),
            resume_required=bool(data.get('resume_required', False)),
            violation_count=int(data.get('violation_count') or 0)
        )


@dataclass
class SubmissionResult:
    """Reply of the persistence service to a final submission."""
    attempt_id: str
    finalized: bool = True
    score: Optional[float] = None
    max_score: Optional[float] = None
    already_submitted: bool = False
    late: bool = False

    @staticmethod
    def from_dict(data: dict) -> 'SubmissionResult':
        return SubmissionResult(
            attempt_id=str(data['attempt_id']),
            finalized=bool(data.get('finalized', True)),
            score=data.get('score'),
            max_score=data.get('max_score'),
            already_submitted=bool(data.get('already_submitted', False)),
            late=bool(data.get('late', False))
        )


@dataclass(frozen=True)
class SealedSnapshot:
    """
    Immutable, hashed copy of an attempt's answers.

    The integrity hash covers every other field; see examsession.sealing.
    """
    attempt_id: str
    responses: Dict[str, dict]
    flagged: tuple
    sealed_at: float
    seal_reason: str
    time_remaining_at_seal: float
    violation_count_at_seal: int
    integrity_hash: str

    def hashed_fields(self) -> dict:
        """All fields except the hash itself."""
        return {
            'attempt_id': self.attempt_id,
            'responses': self.responses,
            'flagged': sorted(self.flagged),
            'sealed_at': self.sealed_at,
            'seal_reason': self.seal_reason,
            'time_remaining_at_seal': self.time_remaining_at_seal,
            'violation_count_at_seal': self.violation_count_at_seal,
        }

    def to_dict(self) -> dict:
        data = self.hashed_fields()
        data['responses'] = copy.deepcopy(self.responses)
        data['integrity_hash'] = self.integrity_hash
        return data

    @staticmethod
    def from_dict(data: dict) -> 'SealedSnapshot':
        return SealedSnapshot(
            attempt_id=str(data['attempt_id']),
            responses=copy.deepcopy(data['responses']),
            flagged=tuple(sorted(data.get('flagged', []))),
            sealed_at=data['sealed_at'],
            seal_reason=data['seal_reason'],
            time_remaining_at_seal=data['time_remaining_at_seal'],
            violation_count_at_seal=data['violation_count_at_seal'],
            integrity_hash=data['integrity_hash']
        )


@dataclass
class ResumeRequest:
    """A request for an instructor to let an interrupted attempt continue."""
    request_id: str
    attempt_id: str
    requester_identity: Dict[str, Any]
    exam_title: str
    created_at: float
    expires_at: float
    status: str = ResumeStatus.PENDING
    decline_reason: Optional[str] = None
    time_remaining_seconds: Optional[float] = None

    def is_terminal(self) -> bool:
        return self.status in ResumeStatus.TERMINAL

    @staticmethod
    def from_dict(data: dict) -> 'ResumeRequest':
        return ResumeRequest(
            request_id=str(data['request_id']),
            attempt_id=str(data['attempt_id']),
            requester_identity=data.get('requester_identity', {}),
            exam_title=data.get('exam_title', ''),
            created_at=data['created_at'],
            expires_at=data['expires_at'],
            status=data.get('status', ResumeStatus.PENDING),
            decline_reason=data.get('decline_reason'),
            time_remaining_seconds=data.get('time_remaining_seconds')
        )


@dataclass
class SessionFailure:
    """A user-visible failure, always tagged with its error category."""
    category: str
    message: str
    retryable: bool = False


@dataclass
class SessionConfig:
    """
    Client-side protocol settings.

    Attributes:
        tick_interval_seconds: Timer tick resolution
        timer_persist_interval_seconds: How often the timer is saved locally
        low_time_warning_seconds: Remaining time that triggers the warning
        violation_warning_seconds: Countdown of the "return to exam" prompt
        default_max_violations: Threshold when the exam does not set one
        probe_interval_seconds: Reachability probe interval
        probe_timeout_seconds: Timeout of a single probe
        probe_disagreements_required: Consecutive disagreeing probes before
            a health transition is reported
        retry_base_delay_seconds: First submission retry delay
        retry_max_delay_seconds: Cap of the submission retry delay
        max_submission_retries: Retries before manual intervention is needed
        resume_poll_interval_seconds: Poll interval of the resume broker
        storage_dir: Directory of the durable local state
        log_file: Session event log path
    """
    tick_interval_seconds: float
    timer_persist_interval_seconds: float
    low_time_warning_seconds: float
    violation_warning_seconds: float
    default_max_violations: int
    probe_interval_seconds: float
    probe_timeout_seconds: float
    probe_disagreements_required: int
    retry_base_delay_seconds: float
    retry_max_delay_seconds: float
    max_submission_retries: int
    resume_poll_interval_seconds: float
    storage_dir: str
    log_file: str

    @staticmethod
    def from_dict(data: dict) -> 'SessionConfig':
        """Create SessionConfig from dictionary, defaulting missing keys."""
        return SessionConfig(
            tick_interval_seconds=float(data.get('tick_interval_seconds', 0.25)),
            timer_persist_interval_seconds=float(data.get('timer_persist_interval_seconds', 30)),
            low_time_warning_seconds=float(data.get('low_time_warning_seconds', 300)),
            violation_warning_seconds=float(data.get('violation_warning_seconds', 5)),
            default_max_violations=int(data.get('default_max_violations', 3)),
            probe_interval_seconds=float(data.get('probe_interval_seconds', 5)),
            probe_timeout_seconds=float(data.get('probe_timeout_seconds', 2)),
            probe_disagreements_required=int(data.get('probe_disagreements_required', 2)),
            retry_base_delay_seconds=float(data.get('retry_base_delay_seconds', 5)),
            retry_max_delay_seconds=float(data.get('retry_max_delay_seconds', 30)),
            max_submission_retries=int(data.get('max_submission_retries', 10)),
            resume_poll_interval_seconds=float(data.get('resume_poll_interval_seconds', 3)),
            storage_dir=data.get('storage_dir', '.exam_state'),
            log_file=data.get('log_file', 'session.log')
        )

    def validate(self) -> tuple[bool, str]:
        """
        Validate configuration consistency.

        Returns:
            Tuple of (is_valid, error_message)
        """
        positive = {
            'tick_interval_seconds': self.tick_interval_seconds,
            'timer_persist_interval_seconds': self.timer_persist_interval_seconds,
            'violation_warning_seconds': self.violation_warning_seconds,
            'probe_interval_seconds': self.probe_interval_seconds,
            'probe_timeout_seconds': self.probe_timeout_seconds,
            'retry_base_delay_seconds': self.retry_base_delay_seconds,
            'resume_poll_interval_seconds': self.resume_poll_interval_seconds,
        }
        for name, value in positive.items():
            if value <= 0:
                return False, f"{name} must be positive"

        if self.tick_interval_seconds > 1:
            return False, "tick_interval_seconds must be at most 1 second"

        if self.low_time_warning_seconds < 0:
            return False, "low_time_warning_seconds must be non-negative"

        if self.default_max_violations < 1:
            return False, "default_max_violations must be at least 1"

        if self.probe_disagreements_required not in (1, 2):
            return False, "probe_disagreements_required must be 1 or 2"

        if self.retry_max_delay_seconds < self.retry_base_delay_seconds:
            return False, f"retry_max_delay_seconds ({self.retry_max_delay_seconds}) is below the base delay ({self.retry_base_delay_seconds})"

        if self.max_submission_retries < 0:
            return False, "max_submission_retries must be non-negative"

        return True, ""

    @staticmethod
    def default() -> 'SessionConfig':
        """Return the default protocol settings."""
        return SessionConfig.from_dict({})
