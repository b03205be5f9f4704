from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from helpers.log_assertions import read_jsonl

from retainer.web.api import create_app


@pytest.fixture
def client(engine):
    return TestClient(create_app(engine))


def test_health_and_trace_header(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.headers["X-Trace-Id"]
    r = client.get("/health", headers={"X-Trace-Id": "abc123"})
    assert r.headers["X-Trace-Id"] == "abc123"


def test_register_and_read_back_without_subject(client, clock):
    r = client.post("/v1/records", json={"category": "auth-token", "owner_id": "alice", "record_id": "r1", "tags": {"src": "web"}})
    assert r.status_code == 201
    assert r.json() == {"record_id": "r1", "category": "auth-token", "state": "Active"}

    body = client.get("/v1/records/r1").json()
    assert body["state"] == "Active"
    assert "owner_id" not in body
    assert "tags" not in body

    r = client.post("/v1/records/r1/touch", json={"at": clock.time() + 5})
    assert r.json()["last_active_at"] == clock.time() + 5
    r = client.post("/v1/records/r1/consent-withdrawal")
    assert r.json()["consent_withdrawn_at"] == clock.time()


def test_error_codes_map_to_statuses(client, engine, clock):
    assert client.post("/v1/records", json={"category": "nope", "owner_id": "a"}).status_code == 422
    assert client.post("/v1/records", json={"category": "auth-token", "created_at": "yesterday-ish"}).status_code == 400
    assert client.post("/v1/records", json={"category": "auth-token", "surprise": 1}).status_code == 400
    r = client.get("/v1/records/missing")
    assert r.status_code == 404
    assert r.json()["code"] == "not_found"

    assert client.post("/v1/holds", json={"reason": "x", "subject_id": "a", "record_id": "b"}).status_code == 400
    assert client.post("/v1/holds", json={"reason": "x"}).status_code == 400

    client.post("/v1/records", json={"category": "session-cookie", "owner_id": "a", "record_id": "c1"})
    clock.advance(60)
    engine.run_sweep()
    r = client.post("/v1/records/c1/touch")
    assert r.status_code == 409
    assert r.json()["code"] == "invalid_transition"


def test_holds_over_http(client, engine):
    client.post("/v1/records", json={"category": "session-cookie", "owner_id": "a", "record_id": "c1"})
    r = client.post("/v1/holds", json={"reason": "litigation", "record_id": "c1", "actor": "legal"})
    assert r.status_code == 201
    hold_id = r.json()["hold_id"]
    assert client.get("/v1/records/c1").json()["state"] == "Held"

    r = client.post(f"/v1/holds/{hold_id}/release", json={"justification": "closed"})
    assert r.status_code == 200
    assert r.json()["released_at"] is not None
    assert client.get("/v1/records/c1").json()["state"] == "Active"
    assert client.post("/v1/holds/unknown/release").status_code == 404


def test_certificate_and_audit_export(client, engine, clock):
    client.post("/v1/records", json={"category": "session-cookie", "owner_id": "a", "record_id": "c1"})
    assert client.get("/v1/certificates/c1").status_code == 404
    clock.advance(60)
    engine.run_sweep()

    cert = client.get("/v1/certificates/c1").json()
    assert cert["record_id"] == "c1"
    assert cert["hash"]

    audit = client.get("/v1/audit", params={"record_id": "c1"}).json()
    assert audit["count"] == 2
    assert audit["head_hash"] == engine.audit.head_hash()
    assert [e["to_state"] for e in audit["entries"]] == ["PendingDeletion", "Deleted"]
    assert client.get("/v1/audit", params={"since": "not-a-date"}).status_code == 400


def test_current_catalog(client):
    body = client.get("/v1/catalog").json()
    assert body["version"] == 1
    assert "marketing-profile" in body["rules"]


def test_subject_erasure_endpoint(client, engine, primary):
    client.post("/v1/records", json={"category": "marketing-profile", "owner_id": "alice", "record_id": "m1"})
    client.post("/v1/records", json={"category": "kyc-status", "owner_id": "alice", "record_id": "k1"})
    primary.put("m1", b"x")

    body = client.post("/v1/subjects/alice/erasure", json={"execute": True}).json()
    assert body["deleted"] == 1
    assert body["subject"] != "alice"
    assert [s["disposition"] for s in body["retained"]] == ["retain_regulatory"]
    assert engine.get_record("m1").state.value == "Deleted"


def test_api_key_required_when_configured(engine, ops_path):
    client = TestClient(create_app(engine, api_key="s3cret"))
    assert client.get("/health").status_code == 200
    assert client.get("/v1/catalog").status_code == 401
    assert client.get("/v1/catalog", headers={"X-API-Key": "wrong"}).status_code == 401
    assert client.get("/v1/catalog", headers={"X-API-Key": "s3cret"}).status_code == 200

    denied = [o for o in read_jsonl(ops_path) if o.get("event") == "web.auth.failed"]
    assert [o["details"]["reason"] for o in denied] == ["missing", "invalid"]
    assert "s3cret" not in str(denied)
