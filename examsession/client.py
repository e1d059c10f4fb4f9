"""
Clients for the exam server: catalog, response persistence and resume
requests.

ExamService is the interface the session depends on; HttpExamService
speaks it over HTTP. HTTP failures are mapped onto the error taxonomy so
the session can tell a transient failure from a terminal rejection.
"""

import threading
from typing import Any, Dict, Iterable, List, Optional, Tuple

import requests

from .connectivity import check_server_reachable, endpoint_from_url
from .errors import (
    ApprovalError,
    AuthenticationError,
    ExamSessionError,
    HashMismatchError,
    IntegrityError,
    StartRejectedError,
    SubmissionWindowError,
    TransientError,
)
from .models import (
    ResponseEntry,
    ResumeRequest,
    SealedSnapshot,
    StartResult,
    SubmissionResult,
)

RETRYABLE_STATUS = {408, 425, 429}


class ExamService:
    """Server contract used by the attempt session."""

    def start_attempt(self, exam_id: str, credentials: dict, password: Optional[str] = None) -> StartResult:
        raise NotImplementedError

    def save_response(self, attempt_id: str, question_id: str, entry: ResponseEntry) -> None:
        raise NotImplementedError

    def log_violation(self, attempt_id: str, violation_type: str) -> None:
        raise NotImplementedError

    def submit_live(self, attempt_id: str, responses: Dict[str, dict]) -> SubmissionResult:
        raise NotImplementedError

    def submit_sealed(self, snapshot: SealedSnapshot) -> SubmissionResult:
        raise NotImplementedError

    def request_resume(self, attempt_id: str, requester: dict) -> ResumeRequest:
        raise NotImplementedError

    def get_resume_status(self, request_id: str) -> dict:
        raise NotImplementedError

    def send_seal_beacon(self, attempt_id: str, time_remaining_seconds: float, responses: Dict[str, dict]) -> None:
        raise NotImplementedError

    def probe(self) -> bool:
        raise NotImplementedError


def sealed_payload(snapshot: SealedSnapshot) -> dict:
    """Wire form of a sealed submission."""
    return {
        "attempt_id": snapshot.attempt_id,
        "sealed_responses": snapshot.responses,
        "flagged": sorted(snapshot.flagged),
        "sealed_at": snapshot.sealed_at,
        "integrity_hash": snapshot.integrity_hash,
        "seal_reason": snapshot.seal_reason,
        "time_remaining_at_seal": snapshot.time_remaining_at_seal,
        "violation_count_at_seal": snapshot.violation_count_at_seal,
    }


class HttpExamService(ExamService):
    """ExamService over HTTP/JSON."""

    def __init__(
        self,
        base_url: str,
        identity=None,
        timeout_seconds: float = 10.0,
        probe_timeout_seconds: float = 2.0,
        fallback_endpoints: Optional[Iterable[Tuple[str, int]]] = None,
        session_logger=None
    ):
        if not base_url:
            raise ValueError("base_url is required")
        self._base_url = str(base_url).rstrip("/")
        self._timeout = float(timeout_seconds)
        self._probe_timeout = float(probe_timeout_seconds)
        self._endpoints: List[Tuple[str, int]] = [endpoint_from_url(self._base_url)]
        self._endpoints.extend(fallback_endpoints or [])
        self.session_logger = session_logger

        self._headers = {"Content-Type": "application/json"}
        if identity is not None:
            self._headers.update(identity.auth_headers())
        self._session = requests.Session()

    def close(self) -> None:
        self._session.close()

    # --------------------------------------------------
    # Catalog
    # --------------------------------------------------

    def start_attempt(self, exam_id: str, credentials: dict, password: Optional[str] = None) -> StartResult:
        body = dict(credentials)
        if password is not None:
            body["password"] = password
        try:
            data = self._request("POST", f"/exams/{exam_id}/attempts", json=body)
        except TransientError:
            raise
        except ExamSessionError as e:
            raise StartRejectedError(str(e)) from e
        return StartResult.from_dict(data)

    # --------------------------------------------------
    # Response persistence
    # --------------------------------------------------

    def save_response(self, attempt_id: str, question_id: str, entry: ResponseEntry) -> None:
        body = {"attempt_id": attempt_id, "question_id": question_id}
        body.update(entry.to_dict())
        self._request("PUT", f"/attempts/{attempt_id}/responses/{question_id}", json=body)

    def log_violation(self, attempt_id: str, violation_type: str) -> None:
        self._request("POST", f"/attempts/{attempt_id}/violations",
                      json={"attempt_id": attempt_id, "violation_type": violation_type})

    def submit_live(self, attempt_id: str, responses: Dict[str, dict]) -> SubmissionResult:
        data = self._request("POST", f"/attempts/{attempt_id}/submit",
                             json={"attempt_id": attempt_id, "responses": responses})
        data.setdefault("attempt_id", attempt_id)
        return SubmissionResult.from_dict(data)

    def submit_sealed(self, snapshot: SealedSnapshot) -> SubmissionResult:
        data = self._request("POST", f"/attempts/{snapshot.attempt_id}/submit-sealed",
                             json=sealed_payload(snapshot))
        data.setdefault("attempt_id", snapshot.attempt_id)
        return SubmissionResult.from_dict(data)

    def send_seal_beacon(self, attempt_id: str, time_remaining_seconds: float, responses: Dict[str, dict]) -> None:
        """Fire-and-forget; nothing waits for, or relies on, delivery."""
        body = {
            "attempt_id": attempt_id,
            "time_remaining_seconds": time_remaining_seconds,
            "responses": responses,
        }
        url = f"{self._base_url}/attempts/{attempt_id}/seal"

        def send():
            try:
                requests.post(url, json=body, headers=self._headers, timeout=self._probe_timeout)
            except requests.RequestException:
                pass

        threading.Thread(target=send, daemon=True).start()

    # --------------------------------------------------
    # Resume requests
    # --------------------------------------------------

    def request_resume(self, attempt_id: str, requester: dict) -> ResumeRequest:
        data = self._request("POST", f"/attempts/{attempt_id}/resume-requests",
                             json={"attempt_id": attempt_id, "requester_identity": requester})
        data.setdefault("attempt_id", attempt_id)
        data.setdefault("requester_identity", requester)
        return ResumeRequest.from_dict(data)

    def get_resume_status(self, request_id: str) -> dict:
        return self._request("GET", f"/resume-requests/{request_id}")

    # --------------------------------------------------
    # Reachability
    # --------------------------------------------------

    def probe(self) -> bool:
        return check_server_reachable(self._endpoints, timeout=self._probe_timeout)

    def _request(self, method: str, path: str, json: Optional[dict] = None) -> Dict[str, Any]:
        url = f"{self._base_url}{path}"
        try:
            resp = self._session.request(
                method,
                url,
                json=json,
                headers=self._headers,
                timeout=self._timeout,
            )
        except requests.RequestException as e:
            raise TransientError(f"{method} {path}: {e}") from e

        data = self._json(resp)
        if resp.status_code < 400:
            return data

        message = data.get("message") or f"HTTP {resp.status_code}"
        code = data.get("code")
        if code == HashMismatchError.code:
            raise HashMismatchError(message)
        if code == SubmissionWindowError.code:
            raise SubmissionWindowError(message)
        if code == IntegrityError.code:
            raise IntegrityError(message)
        if resp.status_code >= 500 or resp.status_code in RETRYABLE_STATUS:
            raise TransientError(f"{method} {path}: {message}")
        if resp.status_code in (401, 403):
            raise AuthenticationError(f"{method} {path}: {message}")
        if "/resume-requests" in path:
            raise ApprovalError(f"{method} {path}: {message}")
        raise ExamSessionError(f"{method} {path}: {message}")

    @staticmethod
    def _json(resp) -> Dict[str, Any]:
        if not resp.content:
            return {}
        try:
            data = resp.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {"data": data}
