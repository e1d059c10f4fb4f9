"""
Response store: the in-memory answer map with durable local persistence.

Every mutation is applied in memory, written to local storage, then synced
to the server best-effort. A failed sync never undoes the first two steps.
"""

import copy
from typing import Callable, Dict, Iterable, Optional, Set

from .errors import SessionStateError, StorageError
from .models import ResponseEntry, responses_to_dict, responses_from_dict
from . import storage as store_kinds


class ResponseStore:
    """Answer map and flagged set of one attempt."""

    def __init__(
        self,
        store,
        exam_id: str,
        attempt_id: str,
        question_ids: Optional[Iterable[str]] = None,
        sync: Optional[Callable[[str, ResponseEntry], None]] = None,
        session_logger=None
    ):
        self.store = store
        self.exam_id = exam_id
        self.attempt_id = attempt_id
        self.question_ids = set(question_ids) if question_ids is not None else None
        self.sync = sync
        self.session_logger = session_logger

        self.responses: Dict[str, ResponseEntry] = {}
        self.current_page = 0
        self.frozen = True

    @property
    def flagged(self) -> Set[str]:
        return {qid for qid, entry in self.responses.items() if entry.is_flagged}

    def unfreeze(self):
        self.frozen = False

    def freeze(self):
        self.frozen = True

    def set_response(self, question_id: str, **patch) -> ResponseEntry:
        """
        Merge patch into the entry of question_id.

        Raises:
            SessionStateError: If the store is frozen (session not active)
            ValueError: For an unknown question or field
        """
        self._check_writable()
        question_id = str(question_id)
        if self.question_ids is not None and question_id not in self.question_ids:
            raise ValueError(f"Unknown question: {question_id}")

        current = self.responses.get(question_id, ResponseEntry())
        entry = current.merged(patch)
        self.responses[question_id] = entry
        self.persist()
        self._sync(question_id, entry)
        return entry

    def toggle_flag(self, question_id: str) -> bool:
        current = self.responses.get(str(question_id), ResponseEntry())
        entry = self.set_response(question_id, is_flagged=not current.is_flagged)
        return entry.is_flagged

    def set_page(self, page: int):
        self._check_writable()
        if page < 0:
            raise ValueError("Page must be non-negative")
        self.current_page = page
        self.persist()

    def persist(self) -> bool:
        """Write {responses, flagged, current_page} locally; failures are logged."""
        try:
            self.store.save(store_kinds.RESPONSES, self.exam_id, self.attempt_id, self.to_dict())
            return True
        except StorageError as e:
            if self.session_logger:
                self.session_logger("RESPONSE_PERSIST_FAILED", str(e))
            return False

    def restore(self, server_responses: Optional[Dict[str, ResponseEntry]] = None,
                local: Optional[dict] = None, sealed=None):
        """
        Rebuild state from the server copy, the local copy and a sealed
        snapshot.

        Local entries win over the server copy for questions present in
        both, and the sealed answers win over both: nothing could change
        after the seal. If local is None the local document is read from
        storage.
        """
        if local is None:
            try:
                local = self.store.load(store_kinds.RESPONSES, self.exam_id, self.attempt_id)
            except StorageError as e:
                if self.session_logger:
                    self.session_logger("RESPONSE_RESTORE_FAILED", str(e))
                local = None

        merged = {qid: copy.deepcopy(entry) for qid, entry in (server_responses or {}).items()}
        if local:
            merged.update(responses_from_dict(local.get('responses', {})))
            for qid in local.get('flagged', []):
                merged.setdefault(qid, ResponseEntry()).is_flagged = True
            self.current_page = int(local.get('current_page', 0))
        if sealed is not None:
            merged.update(responses_from_dict(copy.deepcopy(sealed.responses)))
            for qid in sealed.flagged:
                merged.setdefault(qid, ResponseEntry()).is_flagged = True
        self.responses = merged

    def snapshot(self) -> Dict[str, dict]:
        """Deep copy of the answer map as plain dicts."""
        return copy.deepcopy(responses_to_dict(self.responses))

    def answered_count(self) -> int:
        return sum(1 for entry in self.responses.values() if entry.is_answered())

    def to_dict(self) -> dict:
        return {
            'responses': responses_to_dict(self.responses),
            'flagged': sorted(self.flagged),
            'current_page': self.current_page,
        }

    def _check_writable(self):
        if self.frozen:
            raise SessionStateError("Responses can only be changed while the attempt is active")

    def _sync(self, question_id: str, entry: ResponseEntry):
        if not self.sync:
            return
        try:
            self.sync(question_id, copy.deepcopy(entry))
        except Exception as e:
            if self.session_logger:
                self.session_logger("RESPONSE_SYNC_FAILED", f"Question: {question_id}, Error: {e}")
