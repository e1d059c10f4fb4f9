"""
Exam Session - client-side attempt protocol

This package contains the components of one exam attempt:
- timer: Wall-clock countdown immune to missed ticks
- violations: Proctoring violation ledger and threshold
- responses: Answer map with durable local persistence
- connectivity: Debounced network health monitor
- sealing: Hashed snapshots of answers taken offline or at expiry
- submission: Final submission with bounded retries
- resume: Instructor approval handshake for interrupted attempts
- session: The attempt state machine tying them together
"""

__version__ = "1.0.0"
