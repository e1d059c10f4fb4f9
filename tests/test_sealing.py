"""
Tests for the sealing engine and integrity hash.
"""

import dataclasses
import pytest
from unittest.mock import Mock

from examsession.errors import HashMismatchError
from examsession.responses import ResponseStore
from examsession.sealing import (
    SealingEngine,
    build_snapshot,
    canonical_serialization,
    compute_integrity_hash,
    verify_snapshot,
)
from examsession.storage import LocalStore, SEAL
from examsession.timer import WallClockTimer
from examsession.violations import ViolationLedger


def sample_snapshot(**overrides):
    fields = dict(
        attempt_id="a1",
        responses={"q1": {"selected_option_id": "a", "selected_option_ids": None,
                          "text_response": None, "is_flagged": True}},
        flagged={"q1"},
        sealed_at=1000.0,
        seal_reason="network_loss",
        time_remaining_at_seal=321.5,
        violation_count_at_seal=1,
    )
    fields.update(overrides)
    return build_snapshot(**fields)


class TestIntegrityHash:
    """Test canonical serialization and hashing."""

    def test_canonical_serialization_is_key_order_independent(self):
        assert canonical_serialization({"b": 1, "a": [1, 2]}) == canonical_serialization({"a": [1, 2], "b": 1})
        assert canonical_serialization({"a": 1, "b": "é"}) == '{"a":1,"b":"é"}'.encode("utf-8")

    def test_hash_is_deterministic(self):
        assert sample_snapshot().integrity_hash == sample_snapshot().integrity_hash
        assert len(sample_snapshot().integrity_hash) == 64

    def test_flagged_order_does_not_matter(self):
        first = sample_snapshot(flagged=["q2", "q1"])
        second = sample_snapshot(flagged=["q1", "q2"])
        assert first.integrity_hash == second.integrity_hash

    @pytest.mark.parametrize("field, value", [
        ("attempt_id", "a2"),
        ("sealed_at", 1000.5),
        ("seal_reason", "timer_expired"),
        ("time_remaining_at_seal", 321.0),
        ("violation_count_at_seal", 2),
    ])
    def test_mutating_any_field_invalidates_hash(self, field, value):
        snapshot = sample_snapshot()
        tampered = dataclasses.replace(snapshot, **{field: value})
        assert verify_snapshot(snapshot) is True
        assert verify_snapshot(tampered) is False

    def test_mutating_a_response_invalidates_hash(self):
        snapshot = sample_snapshot()
        snapshot.responses["q1"]["selected_option_id"] = "b"
        assert verify_snapshot(snapshot) is False

    def test_hash_matches_hashed_fields(self):
        snapshot = sample_snapshot()
        assert compute_integrity_hash(snapshot.hashed_fields()) == snapshot.integrity_hash

    def test_unknown_reason_rejected(self):
        with pytest.raises(ValueError):
            sample_snapshot(seal_reason="bored")


@pytest.fixture
def parts(tmp_path):
    clock = Mock(return_value=5000.0)
    local = LocalStore(tmp_path)
    responses = ResponseStore(local, "e1", "a1")
    responses.unfreeze()
    responses.set_response("q1", selected_option_id="a")
    responses.set_response("q2", is_flagged=True)
    ledger = ViolationLedger(max_violations=3, clock=clock)
    ledger.record("tab_switch")
    timer = WallClockTimer(clock=clock)
    timer.start(240)
    engine = SealingEngine(local, "e1", "a1", clock=clock)
    return engine, responses, ledger, timer, local


class TestSealingEngine:
    """Test seal, restore and discard."""

    def test_seal_captures_state(self, parts):
        engine, responses, ledger, timer, _ = parts
        snapshot = engine.seal("network_loss", responses, ledger, timer)

        assert snapshot.responses == responses.snapshot()
        assert snapshot.flagged == ("q2",)
        assert snapshot.sealed_at == 5000.0
        assert snapshot.time_remaining_at_seal == pytest.approx(240)
        assert snapshot.violation_count_at_seal == 1
        assert verify_snapshot(snapshot)

    def test_seal_is_idempotent(self, parts):
        engine, responses, ledger, timer, _ = parts
        first = engine.seal("network_loss", responses, ledger, timer)
        responses.set_response("q3", selected_option_id="c")
        second = engine.seal("timer_expired", responses, ledger, timer)

        assert second is first
        assert "q3" not in second.responses

    def test_snapshot_is_isolated_from_later_edits(self, parts):
        engine, responses, ledger, timer, _ = parts
        snapshot = engine.seal("manual", responses, ledger, timer)
        responses.set_response("q1", selected_option_id="z")

        assert snapshot.responses["q1"]["selected_option_id"] == "a"
        assert verify_snapshot(snapshot)

    def test_seal_is_persisted_and_restored_verbatim(self, parts, tmp_path):
        engine, responses, ledger, timer, local = parts
        snapshot = engine.seal("network_loss", responses, ledger, timer)

        restored = SealingEngine(local, "e1", "a1").restore()
        assert restored == snapshot

    def test_restore_rejects_tampered_document(self, parts):
        engine, responses, ledger, timer, local = parts
        engine.seal("network_loss", responses, ledger, timer)
        document = local.load(SEAL, "e1", "a1")
        document["responses"]["q1"]["selected_option_id"] = "c"

        with pytest.raises(HashMismatchError):
            SealingEngine(local, "e1", "a1").restore(document)

    def test_restore_rejects_incomplete_document(self, parts):
        _, _, _, _, local = parts
        with pytest.raises(HashMismatchError):
            SealingEngine(local, "e1", "a1").restore({"attempt_id": "a1"})

    def test_discard_removes_seal(self, parts):
        engine, responses, ledger, timer, local = parts
        engine.seal("network_loss", responses, ledger, timer)
        engine.discard()

        assert engine.sealed is False
        assert local.load(SEAL, "e1", "a1") is None
