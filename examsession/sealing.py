"""
Sealing engine: freezes an attempt's answers into an immutable, hashed
snapshot when the session cannot safely continue live.
"""

import json
import time
import hashlib
import dataclasses
from typing import Callable, Optional

from .errors import HashMismatchError, StorageError
from .models import SealReason, SealedSnapshot
from . import storage as store_kinds


def canonical_serialization(fields: dict) -> bytes:
    """Deterministic JSON encoding: sorted keys, no whitespace, UTF-8."""
    return json.dumps(
        fields,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False
    ).encode('utf-8')


def compute_integrity_hash(fields: dict) -> str:
    return hashlib.sha256(canonical_serialization(fields)).hexdigest()


def verify_snapshot(snapshot: SealedSnapshot) -> bool:
    return compute_integrity_hash(snapshot.hashed_fields()) == snapshot.integrity_hash


def build_snapshot(
    attempt_id: str,
    responses: dict,
    flagged,
    sealed_at: float,
    seal_reason: str,
    time_remaining_at_seal: float,
    violation_count_at_seal: int
) -> SealedSnapshot:
    """Create a snapshot and compute its integrity hash."""
    if seal_reason not in SealReason.ALL:
        raise ValueError(f"Unknown seal reason: {seal_reason}")
    unhashed = SealedSnapshot(
        attempt_id=str(attempt_id),
        responses=responses,
        flagged=tuple(sorted(flagged)),
        sealed_at=sealed_at,
        seal_reason=seal_reason,
        time_remaining_at_seal=time_remaining_at_seal,
        violation_count_at_seal=violation_count_at_seal,
        integrity_hash=""
    )
    digest = compute_integrity_hash(unhashed.hashed_fields())
    return dataclasses.replace(unhashed, integrity_hash=digest)


class SealingEngine:
    """Produces at most one snapshot per interruption episode."""

    def __init__(
        self,
        store,
        exam_id: str,
        attempt_id: str,
        clock: Callable[[], float] = time.time,
        session_logger=None
    ):
        self.store = store
        self.exam_id = exam_id
        self.attempt_id = attempt_id
        self.clock = clock
        self.session_logger = session_logger
        self.snapshot: Optional[SealedSnapshot] = None

    @property
    def sealed(self) -> bool:
        return self.snapshot is not None

    def seal(self, reason: str, responses, ledger, timer) -> SealedSnapshot:
        """
        Seal the current answers. Idempotent: while a snapshot exists it is
        returned unchanged.

        Args:
            reason: One of SealReason
            responses: ResponseStore to copy
            ledger: ViolationLedger to copy the count from
            timer: WallClockTimer to read the remaining time from
        """
        if self.snapshot is not None:
            return self.snapshot

        snapshot = build_snapshot(
            attempt_id=self.attempt_id,
            responses=responses.snapshot(),
            flagged=responses.flagged,
            sealed_at=self.clock(),
            seal_reason=reason,
            time_remaining_at_seal=timer.remaining(),
            violation_count_at_seal=ledger.count
        )
        self.snapshot = snapshot
        try:
            self.store.save(store_kinds.SEAL, self.exam_id, self.attempt_id, snapshot.to_dict())
        except StorageError as e:
            if self.session_logger:
                self.session_logger("SEAL_PERSIST_FAILED", str(e))

        if self.session_logger:
            self.session_logger(
                "SEALED",
                f"Reason: {reason}, Answers: {len(snapshot.responses)}, Hash: {snapshot.integrity_hash}"
            )
        return snapshot

    def restore(self, document: Optional[dict] = None) -> Optional[SealedSnapshot]:
        """
        Restore a snapshot left in storage by a previous run, verbatim.

        Raises:
            HashMismatchError: If the stored snapshot fails verification
        """
        if document is None:
            try:
                document = self.store.load(store_kinds.SEAL, self.exam_id, self.attempt_id)
            except StorageError as e:
                if self.session_logger:
                    self.session_logger("SEAL_RESTORE_FAILED", str(e))
                return None
        if not document:
            return None

        try:
            snapshot = SealedSnapshot.from_dict(document)
        except (KeyError, TypeError) as e:
            raise HashMismatchError(f"Stored seal is incomplete: {e}") from e
        if not verify_snapshot(snapshot):
            raise HashMismatchError("Stored seal failed integrity verification")

        self.snapshot = snapshot
        if self.session_logger:
            self.session_logger("SEAL_RESTORED", f"Reason: {snapshot.seal_reason}, Sealed at: {snapshot.sealed_at}")
        return snapshot

    def discard(self):
        """Drop the snapshot after an approved resume."""
        self.snapshot = None
        try:
            self.store.remove(store_kinds.SEAL, self.exam_id, self.attempt_id)
        except StorageError as e:
            if self.session_logger:
                self.session_logger("SEAL_DISCARD_FAILED", str(e))
