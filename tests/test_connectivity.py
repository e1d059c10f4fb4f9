"""
Tests for connectivity module.

Tests the server reachability checks and the network health monitor including:
- Successful connection scenarios
- Connection failures
- Fallback mechanism to multiple endpoints
- Debounced health transitions
"""

import pytest
import socket
from unittest.mock import patch, Mock
from pathlib import Path

# Add parent directory to path for imports
import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from examsession.connectivity import NetworkHealthMonitor, check_server_reachable, endpoint_from_url

ENDPOINTS = [("exams.example.org", 443), ("10.0.0.5", 8443)]


class TestEndpointFromUrl:
    """Test URL to (host, port) conversion."""

    def test_https_default_port(self):
        assert endpoint_from_url("https://exams.example.org/api") == ("exams.example.org", 443)

    def test_http_default_port(self):
        assert endpoint_from_url("http://localhost/api") == ("localhost", 80)

    def test_explicit_port(self):
        assert endpoint_from_url("http://127.0.0.1:8000") == ("127.0.0.1", 8000)

    def test_missing_host(self):
        with pytest.raises(ValueError):
            endpoint_from_url("/relative/path")


class TestReachabilitySuccess:
    """Test successful reachability scenarios."""

    @patch('socket.create_connection')
    def test_first_endpoint_reachable(self, mock_connection):
        """Test successful connection to the primary endpoint."""
        mock_connection.return_value = Mock()

        result = check_server_reachable(ENDPOINTS)

        assert result is True
        mock_connection.assert_called_once_with(("exams.example.org", 443), timeout=2.0)

    @patch('socket.create_connection')
    def test_custom_timeout(self, mock_connection):
        """Test reachability check with custom timeout."""
        mock_connection.return_value = Mock()

        result = check_server_reachable(ENDPOINTS, timeout=5.0)

        assert result is True
        mock_connection.assert_called_once_with(("exams.example.org", 443), timeout=5.0)

    @patch('socket.create_connection')
    def test_connection_is_closed(self, mock_connection):
        """Test that the probe connection does not leak."""
        mock_conn = Mock()
        mock_connection.return_value = mock_conn

        check_server_reachable(ENDPOINTS)

        mock_conn.close.assert_called_once()


class TestReachabilityFallback:
    """Test fallback to alternative endpoints."""

    @patch('socket.create_connection')
    def test_fallback_to_second_endpoint(self, mock_connection):
        """Test fallback when the primary endpoint fails."""
        mock_connection.side_effect = [
            OSError("Connection failed"),
            Mock()  # Success
        ]

        result = check_server_reachable(ENDPOINTS)

        assert result is True
        calls = mock_connection.call_args_list
        assert calls[0][0] == (("exams.example.org", 443),)
        assert calls[1][0] == (("10.0.0.5", 8443),)

    @patch('socket.create_connection')
    def test_all_endpoints_fail(self, mock_connection):
        """Test when every endpoint fails."""
        mock_connection.side_effect = OSError("Network unreachable")

        result = check_server_reachable(ENDPOINTS)

        assert result is False
        assert mock_connection.call_count == 2

    def test_no_endpoints(self):
        assert check_server_reachable([]) is False


class TestReachabilityErrorTypes:
    """Test different types of network errors."""

    @pytest.mark.parametrize("error", [
        socket.gaierror("Name or service not known"),
        socket.timeout("timed out"),
        ConnectionRefusedError("Connection refused"),
        PermissionError("Permission denied"),
    ])
    @patch('socket.create_connection')
    def test_errors_mean_unreachable(self, mock_connection, error):
        mock_connection.side_effect = error

        assert check_server_reachable(ENDPOINTS[:1]) is False


class TestHealthMonitor:
    """Test debounced health transitions."""

    def test_starts_healthy(self):
        assert NetworkHealthMonitor().healthy is True

    def test_single_failed_probe_does_not_flip(self):
        on_change = Mock()
        monitor = NetworkHealthMonitor(disagreements_required=2, on_change=on_change)

        assert monitor.observe(False) is None
        assert monitor.healthy is True
        on_change.assert_not_called()

    def test_two_consecutive_failures_flip_once(self):
        on_change = Mock()
        monitor = NetworkHealthMonitor(disagreements_required=2, on_change=on_change)

        monitor.observe(False)
        assert monitor.observe(False) is False
        monitor.observe(False)
        monitor.observe(False)

        on_change.assert_called_once_with(False)
        assert monitor.healthy is False

    def test_agreeing_probe_resets_streak(self):
        on_change = Mock()
        monitor = NetworkHealthMonitor(disagreements_required=2, on_change=on_change)

        for reachable in (False, True, False, True):
            monitor.observe(reachable)

        on_change.assert_not_called()

    def test_recovery_needs_consecutive_successes(self):
        on_change = Mock()
        monitor = NetworkHealthMonitor(disagreements_required=2, on_change=on_change)
        monitor.observe(False)
        monitor.observe(False)

        monitor.observe(True)
        assert monitor.healthy is False
        monitor.observe(True)

        assert monitor.healthy is True
        assert on_change.call_args_list[-1][0] == (True,)

    def test_single_probe_mode(self):
        on_change = Mock()
        monitor = NetworkHealthMonitor(disagreements_required=1, on_change=on_change)

        monitor.observe(False)
        monitor.observe(True)

        assert [c[0][0] for c in on_change.call_args_list] == [False, True]

    def test_probes_are_logged(self):
        logger = Mock()
        monitor = NetworkHealthMonitor(session_logger=logger)
        monitor.observe(False)
        monitor.observe(False)

        events = [c[0][0] for c in logger.call_args_list]
        assert events == ["NETWORK_CHECK", "NETWORK_CHECK", "NETWORK_UNHEALTHY"]

    def test_invalid_debounce(self):
        with pytest.raises(ValueError):
            NetworkHealthMonitor(disagreements_required=0)


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
