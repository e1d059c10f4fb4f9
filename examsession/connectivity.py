"""
Server reachability checks and the debounced network health monitor.
"""

import socket
from typing import Callable, Iterable, Optional, Tuple
from urllib.parse import urlparse


def endpoint_from_url(url: str) -> Tuple[str, int]:
    """Return (host, port) of an http(s) URL."""
    parsed = urlparse(url)
    if not parsed.hostname:
        raise ValueError(f"URL has no host: {url}")
    port = parsed.port or (443 if parsed.scheme == "https" else 80)
    return parsed.hostname, port


def check_server_reachable(endpoints: Iterable[Tuple[str, int]], timeout: float = 2.0) -> bool:
    """
    Check whether the exam server can be reached by opening a TCP
    connection to each endpoint in turn.

    Args:
        endpoints: (host, port) pairs, tried in order as fallbacks
        timeout: Connection timeout in seconds

    Returns:
        True if any endpoint accepted a connection, False otherwise
    """
    for host, port in endpoints:
        try:
            conn = socket.create_connection((host, port), timeout=timeout)
        except OSError:
            continue
        try:
            conn.close()
        except (OSError, AttributeError):
            pass
        return True
    return False


class NetworkHealthMonitor:
    """
    Debounced view of server reachability.

    Browser-style online/offline signals are not trusted; only probe
    results move the state. A transition is reported once
    `disagreements_required` consecutive probes disagree with the last
    reported state.
    """

    def __init__(
        self,
        disagreements_required: int = 2,
        on_change: Optional[Callable[[bool], None]] = None,
        session_logger=None
    ):
        if disagreements_required < 1:
            raise ValueError("disagreements_required must be at least 1")
        self.disagreements_required = disagreements_required
        self.on_change = on_change
        self.session_logger = session_logger

        self.healthy = True
        self.disagreements = 0
        self.check_count = 0

    def observe(self, reachable: bool) -> Optional[bool]:
        """
        Feed one probe result.

        Returns:
            The new health state if a transition was reported, else None
        """
        self.check_count += 1
        if self.session_logger:
            status = "CONNECTED" if reachable else "OFFLINE"
            self.session_logger("NETWORK_CHECK", f"Check #{self.check_count}: Server status = {status}")

        if reachable == self.healthy:
            self.disagreements = 0
            return None

        self.disagreements += 1
        if self.disagreements < self.disagreements_required:
            return None

        self.healthy = reachable
        self.disagreements = 0
        if self.session_logger:
            self.session_logger("NETWORK_HEALTHY" if reachable else "NETWORK_UNHEALTHY",
                                f"After {self.disagreements_required} consecutive probe(s)")
        if self.on_change:
            self.on_change(reachable)
        return reachable
