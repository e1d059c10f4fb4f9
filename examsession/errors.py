"""
Error taxonomy of the attempt session.

Every error carries a category so that user-visible failures can state
whether retrying makes sense.
"""

TRANSIENT = "transient"
POLICY = "policy_violation"
INTEGRITY = "integrity"
APPROVAL = "approval"
RETRIES_EXHAUSTED = "retries_exhausted"
STORAGE = "storage"
STATE = "state"
START = "start_rejected"
AUTH = "authentication"


class ExamSessionError(Exception):
    """Base class for all attempt session errors."""
    category = "error"
    retryable = False


class TransientError(ExamSessionError):
    """Network or server hiccup; retried automatically."""
    category = TRANSIENT
    retryable = True


class PolicyViolationError(ExamSessionError):
    """Violation threshold reached; the attempt is ended."""
    category = POLICY


class IntegrityError(ExamSessionError):
    """Server refused a submission; retrying cannot succeed."""
    category = INTEGRITY
    code = "integrity"


class HashMismatchError(IntegrityError):
    code = "hash_mismatch"


class SubmissionWindowError(IntegrityError):
    code = "expired_window"


class ApprovalError(ExamSessionError):
    """Resuming was refused or the request cannot be made."""
    category = APPROVAL


class RetriesExhaustedError(ExamSessionError):
    """Bounded retries ran out; a manual retry is still possible."""
    category = RETRIES_EXHAUSTED
    retryable = True


class StorageError(ExamSessionError):
    category = STORAGE


class SessionStateError(ExamSessionError):
    """Operation not allowed in the current session state."""
    category = STATE


class StartRejectedError(ExamSessionError):
    category = START


class AuthenticationError(ExamSessionError):
    """Credentials expired or not accepted; the taker has to sign in again."""
    category = AUTH
