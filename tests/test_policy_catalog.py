from __future__ import annotations

import sqlite3

import pydantic
import pytest

from retainer.core.catalog.models import LegalBasis, RecordCategory
from retainer.core.config.models import default_categories
from retainer.core.errors import CatalogPublishError, UnknownCategoryError, ValidationError
from retainer.core.timeutil import days


def _replace(name: str, **changes):
    return [c.model_copy(update=changes) if c.name == name else c for c in default_categories()]


def test_seeded_catalog_is_version_one(engine):
    v = engine.get_current_policy_catalog()
    assert v.version == 1
    assert "kyc-status" in v.rules
    assert engine.catalog.verify_chain()


def test_publish_requires_strictly_later_effective_date(engine, clock):
    v2 = engine.publish_catalog(default_categories(), effective_at=clock.time() + 10, published_by="dpo")
    assert v2.version == 2
    assert v2.prev_hash == engine.catalog.versions()[0].hash
    with pytest.raises(CatalogPublishError):
        engine.publish_catalog(default_categories(), effective_at=clock.time() + 10)
    with pytest.raises(CatalogPublishError):
        engine.publish_catalog(default_categories(), effective_at=clock.time() + 5)


def test_future_version_does_not_apply_early(engine, clock):
    engine.publish_catalog(_replace("kyc-status", legal_basis_days=3650), effective_at=clock.time() + days(10))
    assert engine.catalog.rule_for("kyc-status").category.legal_basis_days == 1825
    later = engine.catalog.rule_for("kyc-status", clock.time() + days(11))
    assert later.category.legal_basis_days == 3650
    assert later.catalog_version == 2


def test_category_removed_only_after_sunset(engine, clock):
    without = [c for c in default_categories() if c.name != "support-ticket"]
    with pytest.raises(CatalogPublishError):
        engine.publish_catalog(without, effective_at=clock.time() + 1)

    engine.publish_catalog(_replace("support-ticket", sunset=True), effective_at=clock.time() + 1)
    engine.publish_catalog(without, effective_at=clock.time() + 2)
    clock.advance(3)

    # existing records keep the rule of the newest version that still defined the category
    rule = engine.catalog.rule_for("support-ticket")
    assert rule.catalog_version == 2
    assert rule.category.sunset
    assert "support-ticket" not in engine.catalog.current_rules()


def test_sunset_category_rejects_new_records(engine, clock):
    engine.register_record("support-ticket", "u1", record_id="before")
    engine.publish_catalog(_replace("support-ticket", sunset=True), effective_at=clock.time() + 1)
    clock.advance(2)
    with pytest.raises(ValidationError):
        engine.register_record("support-ticket", "u1", record_id="after")
    assert engine.get_record("before").category == "support-ticket"


def test_unknown_category_is_fatal(engine):
    with pytest.raises(UnknownCategoryError):
        engine.catalog.rule_for("never-defined")
    assert not engine.catalog.is_known("never-defined")


def test_regulatory_retention_wins_over_shorter_durations(engine):
    rule = engine.catalog.rule_for("kyc-status")
    assert rule.is_regulatory
    assert rule.governing_retention_days == 1825
    assert rule.consent_grace_seconds is None

    longer = RecordCategory(
        name="ledger-entry",
        post_active_retention_days=4000,
        legal_basis=LegalBasis.regulatory_required,
        legal_basis_days=3650,
    )
    assert engine.catalog._rule(longer, engine.get_current_policy_catalog()).governing_retention_days == 4000


def test_expiry_counts_active_lifespan_before_retention(engine):
    t = 1_700_000_000.0
    cookie = engine.catalog.rule_for("session-cookie")
    assert cookie.retention_expires_at(t) == t + days(cookie.category.post_active_retention_days)

    token = engine.catalog.rule_for("auth-token")
    assert token.category.active_lifespan_days == 30
    assert token.retention_expires_at(t) == t + (days(30) + days(token.governing_retention_days))


def test_regulatory_category_needs_duration():
    with pytest.raises(pydantic.ValidationError):
        RecordCategory(name="broken", legal_basis=LegalBasis.regulatory_required)


def test_publish_accepts_plain_dicts(engine, clock):
    cats = [c.model_dump(mode="json") for c in default_categories()] + [{"name": "chat-log", "post_active_retention_days": 14}]
    v = engine.publish_catalog(cats, effective_at=clock.time() + 1, notes="add chat logs")
    assert v.rules["chat-log"].post_active_retention_days == 14


def test_duplicate_category_rejected(engine, clock):
    cats = default_categories() + [RecordCategory(name="kyc-status", legal_basis=LegalBasis.regulatory_required, legal_basis_days=10)]
    with pytest.raises(CatalogPublishError):
        engine.publish_catalog(cats, effective_at=clock.time() + 1)


def test_rewritten_version_breaks_the_chain(engine, clock):
    engine.publish_catalog(default_categories(), effective_at=clock.time() + 1)
    conn = sqlite3.connect(engine.db.path)
    try:
        conn.execute("UPDATE catalog_versions SET notes='quietly edited' WHERE version=1")
        conn.commit()
    finally:
        conn.close()
    assert not engine.catalog.verify_chain()
