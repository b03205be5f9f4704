from __future__ import annotations

import pytest

from retainer.core.errors import RecordNotFoundError, ValidationError
from retainer.core.ledger.models import RecordState
from retainer.core.redaction import subject_digest
from retainer.core.timeutil import days


def _account(engine, primary, owner: str = "alice") -> None:
    for rid, cat in (("m1", "marketing-profile"), ("k1", "kyc-status"), ("s1", "support-ticket"), ("p1", "preferences")):
        engine.register_record(cat, owner, record_id=rid)
        primary.put(rid, b"x")


def test_assessment_only_withdraws_consent(engine, primary, clock):
    _account(engine, primary)
    engine.place_legal_hold(reason="dispute", record_id="s1")

    report = engine.erase_subject("alice")
    assert report.subject == subject_digest("alice")
    assert not report.executed
    assert sorted(s.record_id for s in report.deletable_now) == ["m1", "p1"]
    retained = {s.record_id: s.disposition for s in report.retained}
    assert retained == {"k1": "retain_regulatory", "s1": "retain_hold"}
    kyc = next(s for s in report.retained if s.record_id == "k1")
    assert kyc.effective_at == clock.time() + days(1825)

    m1 = next(s for s in report.deletable_now if s.record_id == "m1")
    assert m1.effective_at == clock.time() + days(30)
    assert engine.get_record("m1").consent_withdrawn_at == clock.time()
    assert engine.get_record("m1").state == RecordState.Active
    assert primary.contains("m1")


def test_execute_deletes_what_may_go_now(engine, primary, clock):
    _account(engine, primary)
    engine.place_legal_hold(reason="dispute", subject_id="alice")
    hold_report = engine.erase_subject("alice", execute=True)
    assert hold_report.deleted == 0
    assert {s.disposition for s in hold_report.retained} == {"retain_hold"}

    engine.release_legal_hold(engine.holds.active_holds()[0].hold_id, justification="settled")
    report = engine.erase_subject("alice", execute=True, actor="privacy-desk")
    assert report.deleted == 3
    assert [s.record_id for s in report.retained] == ["k1"]
    for rid in ("m1", "p1", "s1"):
        assert engine.get_record(rid).state == RecordState.Deleted
        assert not primary.contains(rid)
        assert engine.audit.for_record(rid)[-1].actor == "privacy-desk"
    assert engine.get_record("k1").state == RecordState.Active

    again = engine.erase_subject("alice", execute=True)
    assert again.already_deleted == 3
    assert again.deleted == 0


def test_expired_regulatory_record_is_deletable(engine, primary, clock):
    engine.register_record("kyc-status", "bob", clock.time() - days(2000), "k9")
    report = engine.erase_subject("bob")
    assert [s.record_id for s in report.deletable_now] == ["k9"]


def test_unknown_subject_is_an_empty_report(engine):
    report = engine.erase_subject("nobody")
    assert report.deletable_now == report.retained == []


def test_ingress_validation(engine, clock):
    with pytest.raises(ValidationError):
        engine.register_record("session-cookie", "alice", "not a time")
    with pytest.raises(RecordNotFoundError):
        engine.touch_record("missing")
    rec = engine.register_record("auth-token", "alice", "2023-11-14T00:00:00Z", "t1")
    assert rec.created_at == 1_699_920_000.0
    assert engine.touch_record("t1", clock.time()).last_active_at == clock.time()


def test_status_summary(engine, primary):
    engine.register_record("session-cookie", "alice", record_id="r1")
    engine.place_legal_hold(reason="x", record_id="r1")
    st = engine.status()
    assert st["catalog_version"] == 1
    assert st["records"] == {"Held": 1}
    assert st["active_holds"] == 1
    assert st["stores"] == ["primary"]
