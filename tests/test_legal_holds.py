from __future__ import annotations

import pydantic
import pytest

from retainer.core.audit.models import TransitionReason
from retainer.core.errors import HeldError, RecordNotFoundError, ValidationError
from retainer.core.holds.models import LegalHold
from retainer.core.ledger.models import RecordState


def test_subject_hold_covers_every_record_of_the_subject(engine):
    engine.register_record("auth-token", "alice", record_id="a1")
    engine.register_record("support-ticket", "alice", record_id="a2")
    engine.register_record("auth-token", "bob", record_id="b1")

    hold = engine.place_legal_hold(reason="litigation 42", subject_id="alice", actor="legal")
    assert engine.get_record("a1").state == RecordState.Held
    assert engine.get_record("a2").state == RecordState.Held
    assert engine.get_record("b1").state == RecordState.Active
    assert engine.holds.is_held("a1") and not engine.holds.is_held("b1")

    engine.release_legal_hold(hold.hold_id, actor="legal", justification="case closed")
    assert engine.get_record("a1").state == RecordState.Active
    assert [e.reason.value for e in engine.audit.for_record("a1")] == ["legal-hold-placed", "legal-hold-released"]


def test_hold_restores_the_state_it_interrupted(engine):
    engine.register_record("transaction-record", "u1", record_id="t1")
    engine.ledger.transition("t1", RecordState.PendingReview, reason=TransitionReason.policy_expired)
    hold = engine.place_legal_hold(reason="audit", record_id="t1")
    rec = engine.get_record("t1")
    assert rec.state == RecordState.Held
    assert rec.held_from_state == RecordState.PendingReview
    engine.release_legal_hold(hold.hold_id)
    assert engine.get_record("t1").state == RecordState.PendingReview


def test_overlapping_holds_release_independently(engine):
    engine.register_record("auth-token", "alice", record_id="a1")
    h1 = engine.place_legal_hold(reason="case A", subject_id="alice")
    h2 = engine.place_legal_hold(reason="case B", record_id="a1")

    engine.release_legal_hold(h1.hold_id, justification="A closed")
    assert engine.get_record("a1").state == RecordState.Held

    engine.release_legal_hold(h2.hold_id, justification="B closed")
    assert engine.get_record("a1").state == RecordState.Active


def test_release_is_idempotent(engine):
    engine.register_record("auth-token", "alice", record_id="a1")
    hold = engine.place_legal_hold(reason="case", record_id="a1")
    first = engine.release_legal_hold(hold.hold_id, actor="legal")
    second = engine.release_legal_hold(hold.hold_id, actor="someone-else")
    assert first.released_at == second.released_at
    assert second.released_by == "legal"


def test_hold_needs_exactly_one_target():
    with pytest.raises(pydantic.ValidationError):
        LegalHold(reason="x")
    with pytest.raises(pydantic.ValidationError):
        LegalHold(reason="x", subject_id="s", record_id="r")


def test_held_record_cannot_be_deleted(engine, primary):
    engine.register_record("session-cookie", "alice", record_id="a1")
    primary.put("a1", b"cookie")
    engine.place_legal_hold(reason="case", record_id="a1")
    with pytest.raises(HeldError):
        engine.executor.delete("a1")
    assert primary.contains("a1")


def test_hold_on_deleted_record_is_recorded_but_changes_nothing(engine):
    engine.register_record("session-cookie", "alice", record_id="a1")
    engine.executor.delete("a1")
    hold = engine.place_legal_hold(reason="late request", record_id="a1")
    assert hold.active
    assert engine.get_record("a1").state == RecordState.Deleted


def test_forced_operations_need_a_justification(engine):
    engine.register_record("auth-token", "alice", record_id="a1")
    with pytest.raises(ValidationError):
        engine.force_place_hold(justification="   ", record_id="a1")
    hold = engine.force_place_hold(justification="regulator request 7", record_id="a1", actor="ops")
    assert hold.reason == "regulator request 7"
    with pytest.raises(ValidationError):
        engine.force_release_hold(hold.hold_id, justification="")
    released = engine.force_release_hold(hold.hold_id, justification="request withdrawn", actor="ops")
    assert "request withdrawn" in released.release_justification


def test_release_unknown_hold(engine):
    with pytest.raises(RecordNotFoundError):
        engine.release_legal_hold("nope")


def test_forced_hold_on_subject_without_records_is_audited(engine):
    hold = engine.force_place_hold(justification="regulator request 9", subject_id="nobody", actor="ops")
    entries = engine.audit.for_record(f"hold:{hold.hold_id}")
    assert [(e.from_state, e.to_state, e.reason, e.actor, e.note) for e in entries] == [
        ("none", "placed", TransitionReason.manual_override, "ops", "regulator request 9")
    ]
    assert engine.verify_audit_log().ok


def test_forced_release_under_another_hold_is_audited(engine):
    engine.register_record("auth-token", "alice", record_id="a1")
    h1 = engine.place_legal_hold(reason="case A", record_id="a1")
    engine.place_legal_hold(reason="case B", subject_id="alice")

    engine.force_release_hold(h1.hold_id, justification="case A withdrawn", actor="ops")
    assert engine.get_record("a1").state == RecordState.Held
    assert [e.reason for e in engine.audit.for_record("a1")] == [TransitionReason.legal_hold_placed]

    entries = engine.audit.for_record(f"hold:{h1.hold_id}")
    assert [(e.to_state, e.category, e.note) for e in entries] == [("released", "auth-token", "case A withdrawn")]
