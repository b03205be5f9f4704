from __future__ import annotations

import sqlite3

import pytest

from retainer.core.audit.models import TransitionReason
from retainer.core.errors import InvalidTransitionError, RecordNotFoundError, ValidationError
from retainer.core.ledger.models import Record, RecordState, can_transition
from retainer.core.timeutil import days


def test_register_is_idempotent(engine, clock):
    a = engine.register_record("auth-token", "u1", clock.time(), "r1")
    b = engine.register_record("auth-token", "u1", clock.time(), "r1")
    assert a.record_id == b.record_id
    assert engine.ledger.count_by_state() == {"Active": 1}
    with pytest.raises(ValidationError):
        engine.register_record("preferences", "u1", clock.time(), "r1")


def test_tags_never_carry_content(engine):
    rec = engine.register_record("auth-token", "u1", record_id="r1", tags={"content": "secret text", "source": "web"})
    assert rec.tags == {"source": "web"}


def test_transition_writes_exactly_one_audit_entry(engine):
    engine.register_record("transaction-record", "u1", record_id="r1")
    rec, entry = engine.ledger.transition("r1", RecordState.PendingReview, reason=TransitionReason.policy_expired, actor="sweeper")
    assert rec.state == RecordState.PendingReview
    assert entry is not None and entry.from_state == "Active" and entry.to_state == "PendingReview"

    # same target state again is a no-op and leaves no second entry
    again, none = engine.ledger.transition("r1", RecordState.PendingReview, reason=TransitionReason.policy_expired)
    assert none is None
    assert [e.to_state for e in engine.audit.for_record("r1")] == ["PendingReview"]


def test_invalid_transition_rejected_without_audit(engine):
    engine.register_record("auth-token", "u1", record_id="r1")
    with pytest.raises(InvalidTransitionError):
        engine.ledger.transition("r1", RecordState.Anonymized, reason=TransitionReason.aggregate_published)
    with pytest.raises(InvalidTransitionError):
        engine.ledger.transition("r1", RecordState.Deleted, reason=TransitionReason.policy_expired)
    assert engine.audit.for_record("r1") == []
    assert engine.get_record("r1").state == RecordState.Active


def test_failed_audit_append_rolls_back_state(engine, monkeypatch):
    engine.register_record("auth-token", "u1", record_id="r1")

    def boom(_conn, _entry):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(engine.ledger.audit, "append", boom)
    with pytest.raises(sqlite3.OperationalError):
        engine.ledger.transition("r1", RecordState.Held, reason=TransitionReason.legal_hold_placed)
    assert engine.get_record("r1").state == RecordState.Active


def test_deleted_is_terminal(engine, primary):
    engine.register_record("session-cookie", "u1", record_id="r1")
    engine.executor.delete("r1")
    for target in (RecordState.Active, RecordState.Held, RecordState.PendingDeletion):
        with pytest.raises(InvalidTransitionError):
            engine.ledger.transition("r1", target, reason=TransitionReason.manual_override)
    with pytest.raises(InvalidTransitionError):
        engine.touch_record("r1")


def test_held_only_returns_to_previous_state():
    assert can_transition(RecordState.Held, RecordState.Anonymizing, held_from=RecordState.Anonymizing)
    assert not can_transition(RecordState.Held, RecordState.Active, held_from=RecordState.Anonymizing)
    assert not can_transition(RecordState.Held, RecordState.Active, held_from=None)


def test_touch_only_moves_activity_forward(engine, clock):
    t0 = clock.time()
    engine.register_record("auth-token", "u1", t0, "r1")
    engine.touch_record("r1", t0 + 100)
    engine.touch_record("r1", t0 + 50)
    assert engine.get_record("r1").last_active_at == t0 + 100


def test_unknown_record(engine):
    with pytest.raises(RecordNotFoundError):
        engine.get_record("missing")


def test_candidates_page_in_id_order(engine, clock):
    t0 = clock.time()
    for i in range(7):
        engine.register_record("session-cookie", f"u{i}", t0, f"r{i}")
    engine.register_record("auth-token", "u1", t0, "fresh")
    rule = engine.catalog.rule_for("session-cookie")
    ids = [r.record_id for r in engine.ledger.candidates_for("session-cookie", t0 + 1, rule, page_size=3)]
    assert ids == [f"r{i}" for i in range(7)]
    # nothing is expired at the instant of creation (strict comparison)
    assert list(engine.ledger.candidates_for("session-cookie", t0, rule)) == []


def test_candidates_resume_after_cursor(engine, clock):
    t0 = clock.time()
    for i in range(5):
        engine.register_record("session-cookie", f"u{i}", t0, f"r{i}")
    rule = engine.catalog.rule_for("session-cookie")
    ids = [r.record_id for r in engine.ledger.candidates_for("session-cookie", t0 + 1, rule, after_id="r2")]
    assert ids == ["r3", "r4"]


def test_shards_partition_candidates(engine, clock):
    t0 = clock.time()
    for i in range(20):
        engine.register_record("session-cookie", f"owner-{i}", t0, f"r{i:02d}")
    rule = engine.catalog.rule_for("session-cookie")
    a = {r.record_id for r in engine.ledger.candidates_for("session-cookie", t0 + 1, rule, shard=(0, 2))}
    b = {r.record_id for r in engine.ledger.candidates_for("session-cookie", t0 + 1, rule, shard=(1, 2))}
    assert a.isdisjoint(b)
    assert len(a | b) == 20


def test_consent_and_anonymize_candidates(engine, clock):
    t0 = clock.time()
    engine.register_record("marketing-profile", "u1", t0, "m1")
    engine.register_record("analytics-event", "u1", t0, "a1")
    engine.record_consent_withdrawal("m1", t0 + days(1))

    m_rule = engine.catalog.rule_for("marketing-profile")
    a_rule = engine.catalog.rule_for("analytics-event")
    assert list(engine.ledger.candidates_for("marketing-profile", t0 + days(30), m_rule)) == []
    assert [r.record_id for r in engine.ledger.candidates_for("marketing-profile", t0 + days(32), m_rule)] == ["m1"]
    assert [r.record_id for r in engine.ledger.candidates_for("analytics-event", t0 + days(31), a_rule)] == ["a1"]


def test_consent_withdrawal_keeps_first_timestamp(engine, clock):
    t0 = clock.time()
    engine.register_record("preferences", "u1", t0, "p1")
    engine.record_consent_withdrawal("p1", t0 + 10)
    engine.record_consent_withdrawal("p1", t0 + 20)
    assert engine.get_record("p1").consent_withdrawn_at == t0 + 10


def test_record_model_defaults():
    rec = Record(category="auth-token", created_at=5.0)
    assert rec.state == RecordState.Active
    assert rec.effective_last_active == 5.0
