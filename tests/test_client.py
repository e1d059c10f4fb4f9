"""
Tests for the HTTP exam service client.

requests is mocked; no network access is made.
"""

import pytest
import requests
from unittest.mock import Mock, patch

from examsession.client import HttpExamService, sealed_payload
from examsession.errors import (
    ApprovalError,
    AuthenticationError,
    ExamSessionError,
    HashMismatchError,
    IntegrityError,
    StartRejectedError,
    SubmissionWindowError,
    TransientError,
)
from examsession.identity import GuestIdentity, StudentIdentity
from examsession.models import ResponseEntry
from examsession.sealing import build_snapshot

BASE_URL = "https://exams.example.org/api"


def response(status=200, body=None):
    resp = Mock()
    resp.status_code = status
    resp.content = b"{}" if body is not None else b""
    resp.json.return_value = body
    return resp


@pytest.fixture
def http():
    with patch("examsession.client.requests.Session") as session_cls:
        session = session_cls.return_value
        service = HttpExamService(BASE_URL, identity=StudentIdentity("s1", "tok"))
        yield service, session


START_BODY = {
    "attempt_id": 77,
    "exam": {"exam_id": 5, "title": "Chemistry", "time_limit_seconds": 1800, "max_violations": 2,
             "policy": {"block_copy": True}},
    "questions": [{"question_id": "q1", "kind": "multiple", "weight": 3, "options": ["a", "b"]}],
    "time_remaining_seconds": 1750,
    "existing_responses": [{"question_id": "q1", "selected_option_ids": ["a"]}],
}


class TestRequests:
    """Test endpoints and payloads."""

    def test_start_attempt(self, http):
        service, session = http
        session.request.return_value = response(201, START_BODY)

        result = service.start_attempt("5", {"student_id": "s1"}, password="pw")

        method, url = session.request.call_args[0]
        assert (method, url) == ("POST", f"{BASE_URL}/exams/5/attempts")
        assert session.request.call_args[1]["json"] == {"student_id": "s1", "password": "pw"}
        assert session.request.call_args[1]["headers"]["Authorization"] == "Bearer tok"
        assert result.attempt_id == "77"
        assert result.exam.max_violations == 2
        assert result.exam.policy.block_copy is True
        assert result.existing_responses["q1"].selected_option_ids == ["a"]

    def test_guest_token_header(self):
        with patch("examsession.client.requests.Session") as session_cls:
            session = session_cls.return_value
            session.request.return_value = response(200, {})
            guest = GuestIdentity(name="Ada", email="Ada@Example.org", session_token="g-1")
            HttpExamService(BASE_URL, identity=guest).log_violation("9", "copy")

        headers = session.request.call_args[1]["headers"]
        assert headers["X-Session-Token"] == "g-1"
        assert "Authorization" not in headers

    def test_save_response(self, http):
        service, session = http
        session.request.return_value = response(200, {})

        service.save_response("77", "q1", ResponseEntry(text_response="NaCl"))

        method, url = session.request.call_args[0]
        assert (method, url) == ("PUT", f"{BASE_URL}/attempts/77/responses/q1")
        assert session.request.call_args[1]["json"]["text_response"] == "NaCl"

    def test_submit_sealed_payload(self, http):
        service, session = http
        session.request.return_value = response(200, {"score": 4, "max_score": 6})
        snapshot = build_snapshot("77", {"q1": {"selected_option_id": "a"}}, ["q1"], 99.0, "network_loss", 12.0, 1)

        result = service.submit_sealed(snapshot)

        assert session.request.call_args[0][1] == f"{BASE_URL}/attempts/77/submit-sealed"
        body = session.request.call_args[1]["json"]
        assert body == sealed_payload(snapshot)
        assert body["sealed_responses"] == {"q1": {"selected_option_id": "a"}}
        assert body["integrity_hash"] == snapshot.integrity_hash
        assert result.attempt_id == "77"
        assert result.score == 4

    def test_already_submitted_is_success(self, http):
        service, session = http
        session.request.return_value = response(200, {"already_submitted": True, "score": 9})

        result = service.submit_live("77", {})

        assert result.already_submitted is True
        assert result.score == 9

    def test_resume_request_and_status(self, http):
        service, session = http
        session.request.return_value = response(201, {
            "request_id": "r1", "exam_title": "Chemistry", "created_at": 10, "expires_at": 610,
        })

        request = service.request_resume("77", {"student_id": "s1"})

        assert request.request_id == "r1"
        assert request.attempt_id == "77"
        assert request.requester_identity == {"student_id": "s1"}

        session.request.return_value = response(200, {"status": "approved", "time_remaining_seconds": 300})
        assert service.get_resume_status("r1")["status"] == "approved"
        assert session.request.call_args[0] == ("GET", f"{BASE_URL}/resume-requests/r1")

    @patch("examsession.client.check_server_reachable")
    def test_probe_uses_api_host_and_fallbacks(self, mock_check):
        mock_check.return_value = True
        with patch("examsession.client.requests.Session"):
            service = HttpExamService(BASE_URL, probe_timeout_seconds=1.5,
                                      fallback_endpoints=[("backup.example.org", 443)])

        assert service.probe() is True
        mock_check.assert_called_once_with(
            [("exams.example.org", 443), ("backup.example.org", 443)], timeout=1.5
        )

    def test_base_url_required(self):
        with pytest.raises(ValueError):
            HttpExamService("")


class TestErrorMapping:
    """HTTP failures land in the right error category."""

    def test_connection_error_is_transient(self, http):
        service, session = http
        session.request.side_effect = requests.ConnectionError("refused")

        with pytest.raises(TransientError):
            service.save_response("77", "q1", ResponseEntry())

    def test_timeout_is_transient(self, http):
        service, session = http
        session.request.side_effect = requests.Timeout("slow")

        with pytest.raises(TransientError):
            service.submit_live("77", {})

    @pytest.mark.parametrize("status", [500, 502, 503, 408, 429])
    def test_retryable_status_is_transient(self, http, status):
        service, session = http
        session.request.return_value = response(status, {"message": "busy"})

        with pytest.raises(TransientError):
            service.submit_live("77", {})

    def test_hash_mismatch(self, http):
        service, session = http
        session.request.return_value = response(409, {"code": "hash_mismatch", "message": "bad"})

        with pytest.raises(HashMismatchError):
            service.submit_sealed(build_snapshot("77", {}, [], 1.0, "manual", 0.0, 0))

    def test_expired_window(self, http):
        service, session = http
        session.request.return_value = response(422, {"code": "expired_window", "message": "late"})

        with pytest.raises(SubmissionWindowError):
            service.submit_sealed(build_snapshot("77", {}, [], 1.0, "manual", 0.0, 0))

    def test_other_submit_rejection_is_not_integrity(self, http):
        service, session = http
        session.request.return_value = response(400, {"message": "invalid"})

        with pytest.raises(ExamSessionError) as excinfo:
            service.submit_live("77", {})
        assert not isinstance(excinfo.value, IntegrityError)
        assert excinfo.value.category == "error"

    def test_integrity_code(self, http):
        service, session = http
        session.request.return_value = response(409, {"code": "integrity", "message": "already graded"})

        with pytest.raises(IntegrityError, match="already graded"):
            service.submit_live("77", {})

    @pytest.mark.parametrize("status", [401, 403])
    def test_expired_credentials(self, http, status):
        service, session = http
        session.request.return_value = response(status, {"message": "token expired"})

        with pytest.raises(AuthenticationError) as excinfo:
            service.submit_live("77", {})
        assert excinfo.value.category == "authentication"

    def test_resume_request_rejection(self, http):
        service, session = http
        session.request.return_value = response(404, {"message": "no such request"})

        with pytest.raises(ApprovalError):
            service.get_resume_status("r9")

    def test_other_rejection_is_not_retryable(self, http):
        service, session = http
        session.request.return_value = response(404, {"message": "no such attempt"})

        with pytest.raises(ExamSessionError) as excinfo:
            service.log_violation("77", "tab_switch")
        assert excinfo.value.retryable is False

    def test_start_rejection(self, http):
        service, session = http
        session.request.return_value = response(403, {"message": "Invalid exam password"})

        with pytest.raises(StartRejectedError, match="Invalid exam password"):
            service.start_attempt("5", {"student_id": "s1"}, password="nope")

    def test_start_transient_stays_transient(self, http):
        service, session = http
        session.request.side_effect = requests.ConnectionError("down")

        with pytest.raises(TransientError):
            service.start_attempt("5", {"student_id": "s1"})


class TestSealBeacon:
    """The beacon is fire-and-forget."""

    @patch("examsession.client.threading.Thread")
    @patch("examsession.client.requests.post")
    def test_beacon_posts_in_background(self, mock_post, mock_thread, http):
        service, _ = http
        service.send_seal_beacon("77", 120.0, {"q1": {"selected_option_id": "a"}})

        target = mock_thread.call_args[1]["target"]
        assert mock_thread.call_args[1]["daemon"] is True
        mock_post.assert_not_called()

        target()
        url = mock_post.call_args[0][0]
        assert url == f"{BASE_URL}/attempts/77/seal"
        assert mock_post.call_args[1]["json"]["time_remaining_seconds"] == 120.0

    @patch("examsession.client.threading.Thread")
    @patch("examsession.client.requests.post")
    def test_beacon_errors_are_ignored(self, mock_post, mock_thread, http):
        service, _ = http
        mock_post.side_effect = requests.ConnectionError("offline")
        service.send_seal_beacon("77", 0.0, {})

        mock_thread.call_args[1]["target"]()
