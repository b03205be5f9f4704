from __future__ import annotations

import json
import sqlite3
import time
import uuid
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from retainer.core.errors import RecordNotFoundError, ValidationError
from retainer.core.redaction import redact
from retainer.core.storage.sqlite import Database


class AnomalyKind(str, Enum):
    unknown_category = "unknown_category"
    orphan_category = "orphan_category"
    stuck_deletion = "stuck_deletion"
    verification_failure = "verification_failure"
    audit_chain_broken = "audit_chain_broken"
    catalog_chain_broken = "catalog_chain_broken"


class Anomaly(BaseModel):
    model_config = ConfigDict(extra="forbid")

    anomaly_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    kind: AnomalyKind
    record_id: Optional[str] = None
    category: str = ""
    detected_at: float = Field(default_factory=lambda: time.time())
    details: Dict[str, Any] = Field(default_factory=dict)
    status: str = "open"
    resolved_at: Optional[float] = None
    resolved_by: Optional[str] = None
    resolution: str = ""


class AnomalyRegister:
    """
    Conditions the engine refuses to resolve on its own. Each stays open until an operator
    resolves it with a justification.
    """

    def __init__(self, db: Database, *, now: Any = None):
        self.db = db
        self._now = now or time.time
        self._init_db()

    def _init_db(self) -> None:
        with self.db.transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS anomalies (
                  anomaly_id TEXT PRIMARY KEY,
                  kind TEXT NOT NULL,
                  record_id TEXT,
                  category TEXT,
                  detected_at REAL NOT NULL,
                  details_json TEXT,
                  status TEXT NOT NULL,
                  resolved_at REAL,
                  resolved_by TEXT,
                  resolution TEXT
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_anomalies_status ON anomalies(status, kind)")

    @staticmethod
    def _from_row(r: sqlite3.Row) -> Anomaly:
        return Anomaly(
            anomaly_id=str(r["anomaly_id"]),
            kind=AnomalyKind(str(r["kind"])),
            record_id=r["record_id"],
            category=str(r["category"] or ""),
            detected_at=float(r["detected_at"]),
            details=json.loads(r["details_json"] or "{}"),
            status=str(r["status"]),
            resolved_at=r["resolved_at"],
            resolved_by=r["resolved_by"],
            resolution=str(r["resolution"] or ""),
        )

    def flag(self, kind: AnomalyKind, *, record_id: Optional[str] = None, category: str = "", details: Optional[Dict[str, Any]] = None) -> Anomaly:
        """Open an anomaly; an identical open one (same kind and record) is returned instead of duplicated."""
        with self.db.transaction() as conn:
            if record_id is not None:
                row = conn.execute(
                    "SELECT * FROM anomalies WHERE kind=? AND record_id=? AND status='open' LIMIT 1",
                    (AnomalyKind(kind).value, str(record_id)),
                ).fetchone()
            else:
                row = conn.execute(
                    "SELECT * FROM anomalies WHERE kind=? AND record_id IS NULL AND category=? AND status='open' LIMIT 1",
                    (AnomalyKind(kind).value, str(category or "")),
                ).fetchone()
            if row is not None:
                return self._from_row(row)
            a = Anomaly(kind=kind, record_id=record_id, category=str(category or ""), detected_at=float(self._now()), details=redact(details or {}))
            conn.execute(
                "INSERT INTO anomalies(anomaly_id, kind, record_id, category, detected_at, details_json, status, resolved_at, resolved_by, resolution) VALUES (?, ?, ?, ?, ?, ?, 'open', NULL, NULL, '')",
                (a.anomaly_id, a.kind.value, a.record_id, a.category, a.detected_at, json.dumps(a.details, sort_keys=True)),
            )
            return a

    def get(self, anomaly_id: str) -> Anomaly:
        with self.db.read() as conn:
            row = conn.execute("SELECT * FROM anomalies WHERE anomaly_id=?", (str(anomaly_id),)).fetchone()
        if row is None:
            raise RecordNotFoundError(f"Anomaly '{anomaly_id}' not found.", anomaly_id=anomaly_id)
        return self._from_row(row)

    def open_anomalies(self, *, kind: Optional[AnomalyKind] = None, limit: int = 500) -> List[Anomaly]:
        sql = "SELECT * FROM anomalies WHERE status='open'"
        params: List[Any] = []
        if kind is not None:
            sql += " AND kind=?"
            params.append(AnomalyKind(kind).value)
        sql += " ORDER BY detected_at ASC LIMIT ?"
        params.append(max(1, int(limit)))
        with self.db.read() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._from_row(r) for r in rows]

    def resolve(self, anomaly_id: str, *, actor: str, resolution: str) -> Anomaly:
        if not str(resolution or "").strip():
            raise ValidationError("A resolution justification is required.")
        with self.db.transaction() as conn:
            row = conn.execute("SELECT * FROM anomalies WHERE anomaly_id=?", (str(anomaly_id),)).fetchone()
            if row is None:
                raise RecordNotFoundError(f"Anomaly '{anomaly_id}' not found.", anomaly_id=anomaly_id)
            if str(row["status"]) != "open":
                return self._from_row(row)
            conn.execute(
                "UPDATE anomalies SET status='resolved', resolved_at=?, resolved_by=?, resolution=? WHERE anomaly_id=?",
                (float(self._now()), str(actor), str(resolution)[:500], str(anomaly_id)),
            )
        return self.get(anomaly_id)
