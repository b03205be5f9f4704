from __future__ import annotations

import csv
import json
import os
import sqlite3
from typing import Any, Dict, Iterator, List, Optional

from retainer.core.audit.hasher import GENESIS_HASH, compute_hash
from retainer.core.audit.models import AuditEntry, IntegrityReport
from retainer.core.redaction import redact_text
from retainer.core.storage.sqlite import Database


class AuditLog:
    """
    Append-only, hash-chained transition log.

    Writes happen only through `append(conn, entry)` inside a caller's transaction, so a
    ledger update and its audit entry commit together. Everything else is read-only.
    """

    def __init__(self, db: Database, *, logger: Any = None):
        self.db = db
        self.logger = logger
        self._init_db()

    def _init_db(self) -> None:
        with self.db.transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS audit_log (
                  seq INTEGER PRIMARY KEY AUTOINCREMENT,
                  entry_id TEXT UNIQUE NOT NULL,
                  record_id TEXT NOT NULL,
                  category TEXT,
                  from_state TEXT NOT NULL,
                  to_state TEXT NOT NULL,
                  reason TEXT NOT NULL,
                  ts REAL NOT NULL,
                  actor TEXT,
                  note TEXT,
                  prev_hash TEXT NOT NULL,
                  hash TEXT NOT NULL
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_record ON audit_log(record_id, seq)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_ts ON audit_log(ts)")
            conn.execute(
                "CREATE TRIGGER IF NOT EXISTS audit_log_no_update BEFORE UPDATE ON audit_log "
                "BEGIN SELECT RAISE(ABORT, 'audit log is append-only'); END"
            )
            conn.execute(
                "CREATE TRIGGER IF NOT EXISTS audit_log_no_delete BEFORE DELETE ON audit_log "
                "BEGIN SELECT RAISE(ABORT, 'audit log is append-only'); END"
            )

    # ---- write path (internal) ----
    def append(self, conn: sqlite3.Connection, entry: AuditEntry) -> AuditEntry:
        """
        Chain and insert `entry` using the caller's open transaction.
        """
        row = conn.execute("SELECT hash FROM audit_log ORDER BY seq DESC LIMIT 1").fetchone()
        prev = str(row["hash"]) if row else GENESIS_HASH
        entry = entry.model_copy(update={"note": redact_text(entry.note, limit=1000)})
        h = compute_hash(prev, entry.chain_payload())
        cur = conn.execute(
            """
            INSERT INTO audit_log(entry_id, record_id, category, from_state, to_state, reason, ts, actor, note, prev_hash, hash)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry.entry_id,
                entry.record_id,
                entry.category,
                entry.from_state,
                entry.to_state,
                entry.reason.value,
                float(entry.timestamp),
                entry.actor,
                entry.note,
                prev,
                h,
            ),
        )
        return entry.model_copy(update={"seq": int(cur.lastrowid), "prev_hash": prev, "hash": h})

    # ---- read path ----
    @staticmethod
    def _from_row(r: sqlite3.Row) -> AuditEntry:
        return AuditEntry(
            seq=int(r["seq"]),
            entry_id=str(r["entry_id"]),
            record_id=str(r["record_id"]),
            category=str(r["category"] or ""),
            from_state=str(r["from_state"]),
            to_state=str(r["to_state"]),
            reason=str(r["reason"]),
            timestamp=float(r["ts"]),
            actor=str(r["actor"] or ""),
            note=str(r["note"] or ""),
            prev_hash=str(r["prev_hash"]),
            hash=str(r["hash"]),
        )

    def head_hash(self) -> str:
        with self.db.read() as conn:
            row = conn.execute("SELECT hash FROM audit_log ORDER BY seq DESC LIMIT 1").fetchone()
        return str(row["hash"]) if row else GENESIS_HASH

    def export(
        self,
        *,
        since: Optional[float] = None,
        until: Optional[float] = None,
        record_id: Optional[str] = None,
        limit: int = 10_000,
        offset: int = 0,
    ) -> List[AuditEntry]:
        where = []
        params: List[Any] = []
        if since is not None:
            where.append("ts >= ?")
            params.append(float(since))
        if until is not None:
            where.append("ts <= ?")
            params.append(float(until))
        if record_id:
            where.append("record_id = ?")
            params.append(str(record_id))
        sql = "SELECT * FROM audit_log"
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY seq ASC LIMIT ? OFFSET ?"
        params.extend([max(1, int(limit)), max(0, int(offset))])
        with self.db.read() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._from_row(r) for r in rows]

    def for_record(self, record_id: str) -> List[AuditEntry]:
        return self.export(record_id=record_id)

    def tail(self, n: int = 20) -> List[AuditEntry]:
        with self.db.read() as conn:
            rows = conn.execute("SELECT * FROM audit_log ORDER BY seq DESC LIMIT ?", (max(1, int(n)),)).fetchall()
        return [self._from_row(r) for r in reversed(rows)]

    def count(self) -> int:
        with self.db.read() as conn:
            row = conn.execute("SELECT COUNT(1) FROM audit_log").fetchone()
        return int(row[0] if row else 0)

    def _iter_all(self, *, batch: int = 1000) -> Iterator[AuditEntry]:
        last = 0
        while True:
            with self.db.read() as conn:
                rows = conn.execute("SELECT * FROM audit_log WHERE seq > ? ORDER BY seq ASC LIMIT ?", (last, batch)).fetchall()
            if not rows:
                return
            for r in rows:
                yield self._from_row(r)
            last = int(rows[-1]["seq"])

    def verify_integrity(self) -> IntegrityReport:
        prev = GENESIS_HASH
        checked = 0
        for entry in self._iter_all():
            if entry.prev_hash != prev:
                return IntegrityReport(ok=False, checked=checked, broken_at_seq=entry.seq, message="prev_hash mismatch", head_hash=self.head_hash())
            if compute_hash(prev, entry.chain_payload()) != entry.hash:
                return IntegrityReport(ok=False, checked=checked, broken_at_seq=entry.seq, message="hash mismatch", head_hash=self.head_hash())
            prev = str(entry.hash)
            checked += 1
        return IntegrityReport(ok=True, checked=checked, message="ok" if checked else "no entries", head_hash=prev)

    # ---- compliance exports ----
    def export_json(self, path: str, **filters: Any) -> str:
        rows = [e.model_dump(mode="json") for e in self.export(**filters)]
        os.makedirs(os.path.dirname(os.path.abspath(path)) or ".", exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump({"entries": rows, "head_hash": self.head_hash()}, f, indent=2, ensure_ascii=False)
            f.write("\n")
        return path

    def export_csv(self, path: str, **filters: Any) -> str:
        rows = self.export(**filters)
        fields = ["seq", "entry_id", "timestamp", "record_id", "category", "from_state", "to_state", "reason", "actor", "note", "hash"]
        os.makedirs(os.path.dirname(os.path.abspath(path)) or ".", exist_ok=True)
        with open(path, "w", encoding="utf-8", newline="") as f:
            w = csv.DictWriter(f, fieldnames=fields)
            w.writeheader()
            for e in rows:
                d: Dict[str, Any] = e.model_dump(mode="json")
                w.writerow({k: d.get(k) for k in fields})
        return path
