from __future__ import annotations

import pytest

from helpers.fakes import FlakyStore

from retainer.core.audit.models import TransitionReason
from retainer.core.config.models import default_categories
from retainer.core.errors import RecordNotFoundError, ValidationError
from retainer.core.ledger.anomalies import AnomalyKind
from retainer.core.ledger.models import Record, RecordState
from retainer.core.timeutil import days


def _kinds(engine):
    return sorted(a.kind.value for a in engine.list_anomalies())


def test_clean_ledger_flags_nothing(engine, clock):
    engine.register_record("kyc-status", "alice", record_id="k1")
    report = engine.run_audit_scan()
    assert report.status == "ok"
    assert report.anomalies_flagged == 0
    assert engine.list_anomalies() == []


def test_orphaned_category_flagged(engine, clock):
    engine.register_record("support-ticket", "alice", record_id="s1")
    sunset = [c.model_copy(update={"sunset": True}) if c.name == "support-ticket" else c for c in default_categories()]
    engine.publish_catalog(sunset, effective_at=clock.time() + 1)
    engine.publish_catalog([c for c in default_categories() if c.name != "support-ticket"], effective_at=clock.time() + 2)
    clock.advance(3)

    report = engine.run_audit_scan()
    assert report.anomalies_flagged == 1
    (a,) = engine.list_anomalies()
    assert (a.kind, a.category) == (AnomalyKind.orphan_category, "support-ticket")
    assert a.details == {"states": {"Active": 1}}

    # flagged again next month, still one open anomaly
    engine.run_audit_scan()
    assert len(engine.list_anomalies()) == 1


def test_never_defined_category_flagged_as_unknown(engine, clock):
    engine.ledger.register(Record(record_id="x1", category="legacy-thing", owner_id="alice", created_at=clock.time()))
    engine.run_audit_scan()
    assert _kinds(engine) == ["unknown_category"]


def test_stuck_deletion_flagged_after_grace(make_engine, clock):
    flaky = FlakyStore(failures=100)
    engine = make_engine(stores=[flaky])
    engine.register_record("session-cookie", "alice", record_id="r1")
    flaky.put("r1")
    clock.advance(60)
    assert engine.run_sweep().status == "partial"

    clock.advance(days(6))
    assert engine.run_audit_scan().anomalies_flagged == 0

    clock.advance(days(2))
    engine.run_audit_scan()
    (a,) = engine.list_anomalies(kind=AnomalyKind.stuck_deletion)
    assert a.record_id == "r1"
    assert a.details["attempts"] == 1


def test_resolve_record_anomaly_by_deletion(make_engine, clock):
    flaky = FlakyStore(failures=100)
    engine = make_engine(stores=[flaky])
    engine.register_record("session-cookie", "alice", record_id="r1")
    flaky.put("r1")
    clock.advance(60)
    engine.run_sweep()
    clock.advance(days(8))
    engine.run_audit_scan()
    (a,) = engine.list_anomalies()

    flaky.failures = 0
    with pytest.raises(ValidationError):
        engine.resolve_anomaly(a.anomaly_id, actor="dpo", justification="  ")
    resolved = engine.resolve_anomaly(a.anomaly_id, actor="dpo", justification="store back online", delete=True)
    assert resolved.status == "resolved"
    assert resolved.resolved_by == "dpo"
    assert engine.get_record("r1").state == RecordState.Deleted
    last = engine.audit.for_record("r1")[-1]
    assert last.reason == TransitionReason.manual_override
    assert last.actor == "dpo"
    assert engine.list_anomalies() == []

    # resolving twice is a no-op
    assert engine.resolve_anomaly(a.anomaly_id, actor="dpo", justification="again").resolution == "store back online"


def test_resolve_record_anomaly_without_deletion_annotates(engine, clock):
    a = engine.anomalies.flag(AnomalyKind.verification_failure, record_id="r1", category="session-cookie")
    engine.register_record("session-cookie", "alice", record_id="r1")
    engine.resolve_anomaly(a.anomaly_id, actor="dpo", justification="replica rebuilt")
    (entry,) = engine.audit.for_record("r1")
    assert entry.reason == TransitionReason.manual_override
    assert entry.from_state == entry.to_state == "Active"
    assert engine.get_record("r1").state == RecordState.Active


def test_resolve_category_anomaly_is_audited(engine, clock):
    engine.ledger.register(Record(record_id="x1", category="legacy-thing", owner_id="alice", created_at=clock.time()))
    engine.run_audit_scan()
    (a,) = engine.list_anomalies()

    with pytest.raises(ValidationError):
        engine.resolve_anomaly(a.anomaly_id, actor="dpo", justification="migrated", delete=True)
    engine.resolve_anomaly(a.anomaly_id, actor="dpo", justification="migrated by hand")
    (entry,) = engine.audit.for_record(f"anomaly:{a.anomaly_id}")
    assert (entry.from_state, entry.to_state) == ("open", "resolved")
    assert entry.category == "legacy-thing"
    assert engine.verify_audit_log().ok


def test_unknown_anomaly(engine):
    with pytest.raises(RecordNotFoundError):
        engine.resolve_anomaly("nope", actor="dpo", justification="x")
