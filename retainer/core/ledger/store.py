from __future__ import annotations

import contextlib
import json
import sqlite3
import threading
import time
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from retainer.core.audit.log import AuditLog
from retainer.core.audit.models import AuditEntry, TransitionReason
from retainer.core.catalog.models import RetentionRule
from retainer.core.errors import InvalidTransitionError, RecordNotFoundError, ValidationError
from retainer.core.ledger.models import Record, RecordState, can_transition
from retainer.core.redaction import subject_digest
from retainer.core.storage.sqlite import Database

SHARD_SPACE = 1024

_UPDATABLE = {"deletion_attempts", "aggregate_id", "aggregate_cycle"}


class _KeyedLocks:
    """Per-key mutexes, created on demand and dropped when the last holder leaves."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, Tuple[threading.Lock, int]] = {}

    @contextlib.contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock, refs = self._locks.get(key, (threading.Lock(), 0))
            self._locks[key] = (lock, refs + 1)
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                lock, refs = self._locks[key]
                if refs <= 1:
                    del self._locks[key]
                else:
                    self._locks[key] = (lock, refs - 1)


class RecordLedger:
    """
    Lifecycle state per record.

    Reads never mutate. Every state change goes through `transition`, which writes the new
    state and its audit entry in a single transaction.
    """

    def __init__(self, db: Database, *, audit: AuditLog, logger: Any = None, now: Any = None):
        self.db = db
        self.audit = audit
        self.logger = logger
        self._now = now or time.time
        self._locks = _KeyedLocks()
        self._init_db()

    def _init_db(self) -> None:
        with self.db.transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS records (
                  record_id TEXT PRIMARY KEY,
                  category TEXT NOT NULL,
                  owner_id TEXT,
                  shard_bucket INTEGER NOT NULL DEFAULT 0,
                  created_at REAL NOT NULL,
                  last_active_at REAL,
                  state TEXT NOT NULL,
                  consent_withdrawn_at REAL,
                  held_from_state TEXT,
                  state_changed_at REAL,
                  pending_since REAL,
                  deletion_attempts INTEGER NOT NULL DEFAULT 0,
                  aggregate_id TEXT,
                  aggregate_cycle INTEGER,
                  tags_json TEXT
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_records_category ON records(category, record_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_records_state ON records(state, category)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_records_owner ON records(owner_id)")

    # ---- row mapping ----
    @staticmethod
    def _from_row(r: sqlite3.Row) -> Record:
        try:
            tags = json.loads(r["tags_json"] or "{}")
        except json.JSONDecodeError:
            tags = {}
        return Record(
            record_id=str(r["record_id"]),
            category=str(r["category"]),
            owner_id=str(r["owner_id"] or ""),
            created_at=float(r["created_at"]),
            last_active_at=r["last_active_at"],
            state=RecordState(str(r["state"])),
            consent_withdrawn_at=r["consent_withdrawn_at"],
            held_from_state=RecordState(str(r["held_from_state"])) if r["held_from_state"] else None,
            state_changed_at=r["state_changed_at"],
            pending_since=r["pending_since"],
            deletion_attempts=int(r["deletion_attempts"] or 0),
            aggregate_id=r["aggregate_id"],
            aggregate_cycle=r["aggregate_cycle"],
            tags=tags,
        )

    # ---- ingress ----
    def register(self, record: Record) -> Record:
        """
        Register a record. Re-registering the same id with the same category is a no-op
        (ingress is at-least-once); a conflicting category is rejected.
        """
        if not isinstance(record, Record):
            record = Record.model_validate(record)
        if record.state != RecordState.Active:
            raise ValidationError("Records are registered in the Active state.", record_id=record.record_id)
        last_active = record.last_active_at if record.last_active_at is not None else record.created_at
        bucket = int(subject_digest(record.owner_id)[:8], 16) % SHARD_SPACE
        with self.db.transaction() as conn:
            row = conn.execute("SELECT * FROM records WHERE record_id=?", (record.record_id,)).fetchone()
            if row is not None:
                existing = self._from_row(row)
                if existing.category != record.category:
                    raise ValidationError("Record id already registered under another category.", record_id=record.record_id)
                return existing
            conn.execute(
                """
                INSERT INTO records(record_id, category, owner_id, shard_bucket, created_at, last_active_at, state,
                                    consent_withdrawn_at, state_changed_at, tags_json)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.record_id,
                    record.category,
                    record.owner_id,
                    bucket,
                    float(record.created_at),
                    float(last_active),
                    RecordState.Active.value,
                    record.consent_withdrawn_at,
                    float(record.created_at),
                    json.dumps(record.tags, sort_keys=True),
                ),
            )
        return record.model_copy(update={"last_active_at": float(last_active), "state_changed_at": float(record.created_at)})

    def touch(self, record_id: str, at: Optional[float] = None) -> Record:
        t = float(self._now() if at is None else at)
        with self.db.transaction() as conn:
            rec = self._get_locked(conn, record_id)
            if rec.state == RecordState.Deleted:
                raise InvalidTransitionError("Deleted records cannot be touched.", record_id=record_id)
            conn.execute(
                "UPDATE records SET last_active_at=MAX(COALESCE(last_active_at, created_at), ?) WHERE record_id=?",
                (t, record_id),
            )
        return self.get(record_id)

    def mark_consent_withdrawn(self, record_id: str, at: Optional[float] = None) -> Record:
        t = float(self._now() if at is None else at)
        with self.db.transaction() as conn:
            rec = self._get_locked(conn, record_id)
            if rec.state != RecordState.Deleted and rec.consent_withdrawn_at is None:
                conn.execute("UPDATE records SET consent_withdrawn_at=? WHERE record_id=?", (t, record_id))
        return self.get(record_id)

    # ---- reads ----
    def _get_locked(self, conn: sqlite3.Connection, record_id: str) -> Record:
        row = conn.execute("SELECT * FROM records WHERE record_id=?", (str(record_id),)).fetchone()
        if row is None:
            raise RecordNotFoundError(f"Record '{record_id}' is not registered.", record_id=record_id)
        return self._from_row(row)

    def find(self, record_id: str) -> Optional[Record]:
        with self.db.read() as conn:
            row = conn.execute("SELECT * FROM records WHERE record_id=?", (str(record_id),)).fetchone()
        return self._from_row(row) if row else None

    def get(self, record_id: str) -> Record:
        rec = self.find(record_id)
        if rec is None:
            raise RecordNotFoundError(f"Record '{record_id}' is not registered.", record_id=record_id)
        return rec

    def candidates_for(
        self,
        category: str,
        as_of: float,
        rule: RetentionRule,
        *,
        page_size: int = 500,
        after_id: Optional[str] = None,
        shard: Optional[Tuple[int, int]] = None,
    ) -> Iterator[Record]:
        """
        Lazily yield records of `category` that need a lifecycle decision at `as_of`.

        Pages with a keyset cursor so a cancelled sweep can resume from `after_id`;
        at most `page_size` rows are held in memory at a time.
        """
        cursor = str(after_id or "")
        params_base: List[Any] = [
            str(category),
            RecordState.Deleted.value,
            RecordState.PendingDeletion.value,
            float(rule.retention_offset_seconds),
            float(as_of),
            rule.consent_grace_seconds,
            rule.consent_grace_seconds,
            float(as_of),
            rule.anonymize_after_seconds,
            RecordState.Active.value,
            rule.anonymize_after_seconds,
            float(as_of),
        ]
        shard_sql = ""
        shard_params: List[Any] = []
        if shard is not None:
            idx, total = int(shard[0]), max(1, int(shard[1]))
            shard_sql = " AND (shard_bucket % ?) = ?"
            shard_params = [total, idx]
        sql = (
            "SELECT * FROM records WHERE category=? AND state != ? AND ("
            " state = ?"
            " OR COALESCE(last_active_at, created_at) + ? < ?"
            " OR (? IS NOT NULL AND consent_withdrawn_at IS NOT NULL AND consent_withdrawn_at + ? < ?)"
            " OR (? IS NOT NULL AND state = ? AND created_at + ? < ?)"
            ")" + shard_sql + " AND record_id > ? ORDER BY record_id ASC LIMIT ?"
        )
        size = max(1, int(page_size))
        while True:
            with self.db.read() as conn:
                rows = conn.execute(sql, params_base + shard_params + [cursor, size]).fetchall()
            if not rows:
                return
            for r in rows:
                yield self._from_row(r)
            cursor = str(rows[-1]["record_id"])
            if len(rows) < size:
                return

    def iter_records(
        self,
        *,
        category: Optional[str] = None,
        states: Optional[Sequence[RecordState]] = None,
        page_size: int = 500,
    ) -> Iterator[Record]:
        where = ["record_id > ?"]
        params: List[Any] = []
        if category:
            where.append("category = ?")
            params.append(str(category))
        if states:
            where.append("state IN (" + ",".join("?" for _ in states) + ")")
            params.extend(RecordState(s).value for s in states)
        sql = "SELECT * FROM records WHERE " + " AND ".join(where) + " ORDER BY record_id ASC LIMIT ?"
        cursor = ""
        size = max(1, int(page_size))
        while True:
            with self.db.read() as conn:
                rows = conn.execute(sql, [cursor] + params + [size]).fetchall()
            if not rows:
                return
            for r in rows:
                yield self._from_row(r)
            cursor = str(rows[-1]["record_id"])
            if len(rows) < size:
                return

    def list_by_state(self, state: RecordState, *, category: Optional[str] = None, limit: int = 200) -> List[Record]:
        out: List[Record] = []
        for rec in self.iter_records(category=category, states=[state]):
            out.append(rec)
            if len(out) >= int(limit):
                break
        return out

    def list_by_owner(self, owner_id: str) -> List[Record]:
        with self.db.read() as conn:
            rows = conn.execute("SELECT * FROM records WHERE owner_id=? ORDER BY record_id ASC", (str(owner_id),)).fetchall()
        return [self._from_row(r) for r in rows]

    def categories(self) -> List[str]:
        with self.db.read() as conn:
            rows = conn.execute("SELECT DISTINCT category FROM records WHERE state != ? ORDER BY category", (RecordState.Deleted.value,)).fetchall()
        return [str(r["category"]) for r in rows]

    def count_by_state(self, *, category: Optional[str] = None) -> Dict[str, int]:
        sql = "SELECT state, COUNT(1) AS n FROM records"
        params: List[Any] = []
        if category:
            sql += " WHERE category=?"
            params.append(str(category))
        sql += " GROUP BY state"
        with self.db.read() as conn:
            rows = conn.execute(sql, params).fetchall()
        return {str(r["state"]): int(r["n"]) for r in rows}

    # ---- mutations ----
    @contextlib.contextmanager
    def record_lock(self, record_id: str) -> Iterator[None]:
        """Mutual exclusion scoped to one record (in-process)."""
        with self._locks.hold(str(record_id)):
            yield

    def transition(
        self,
        record_id: str,
        to_state: RecordState,
        *,
        reason: TransitionReason,
        actor: str = "system",
        note: str = "",
        expect_from: Optional[Sequence[RecordState]] = None,
        updates: Optional[Dict[str, Any]] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> Tuple[Record, Optional[AuditEntry]]:
        """
        Move a record to `to_state` and append exactly one audit entry.

        Returns (record, None) without writing anything when the record is already in
        `to_state`, which keeps retried sweeps idempotent.
        """
        if conn is None:
            with self.db.transaction() as c:
                return self.transition(
                    record_id, to_state, reason=reason, actor=actor, note=note, expect_from=expect_from, updates=updates, conn=c
                )
        dst = RecordState(to_state)
        rec = self._get_locked(conn, record_id)
        if rec.state == dst:
            return rec, None
        if expect_from is not None and rec.state not in set(expect_from):
            raise InvalidTransitionError(
                f"Record '{record_id}' is {rec.state.value}, expected one of {[s.value for s in expect_from]}.",
                record_id=record_id,
                state=rec.state.value,
            )
        if not can_transition(rec.state, dst, held_from=rec.held_from_state):
            raise InvalidTransitionError(
                f"Transition {rec.state.value} -> {dst.value} is not allowed.",
                record_id=record_id,
                from_state=rec.state.value,
                to_state=dst.value,
            )
        now = float(self._now())
        cols: Dict[str, Any] = {"state": dst.value, "state_changed_at": now}
        if dst == RecordState.Held:
            cols["held_from_state"] = rec.state.value
        elif rec.state == RecordState.Held:
            cols["held_from_state"] = None
        if dst == RecordState.PendingDeletion:
            cols["pending_since"] = rec.pending_since if rec.pending_since is not None else now
        elif dst != RecordState.Held and dst != RecordState.Deleted:
            cols["pending_since"] = None
        for k, v in (updates or {}).items():
            if k not in _UPDATABLE:
                raise ValidationError(f"Column '{k}' cannot be updated here.")
            cols[k] = v
        assignments = ", ".join(f"{k}=?" for k in cols)
        conn.execute(f"UPDATE records SET {assignments} WHERE record_id=?", list(cols.values()) + [record_id])
        entry = self.audit.append(
            conn,
            AuditEntry(
                record_id=rec.record_id,
                category=rec.category,
                from_state=rec.state.value,
                to_state=dst.value,
                reason=reason,
                timestamp=now,
                actor=str(actor or "system"),
                note=str(note or ""),
            ),
        )
        return self._get_locked(conn, record_id), entry

    def annotate(self, record_id: str, *, reason: TransitionReason, actor: str, note: str) -> AuditEntry:
        """
        Audit an operator decision that leaves the state unchanged (e.g. a dismissed anomaly).
        """
        with self.db.transaction() as conn:
            rec = self._get_locked(conn, record_id)
            return self.audit.append(
                conn,
                AuditEntry(
                    record_id=rec.record_id,
                    category=rec.category,
                    from_state=rec.state.value,
                    to_state=rec.state.value,
                    reason=reason,
                    timestamp=float(self._now()),
                    actor=str(actor or "system"),
                    note=str(note or ""),
                ),
            )

    def set_fields(self, record_id: str, **fields: Any) -> None:
        bad = set(fields) - _UPDATABLE
        if bad:
            raise ValidationError(f"Columns cannot be updated here: {sorted(bad)}")
        if not fields:
            return
        assignments = ", ".join(f"{k}=?" for k in fields)
        with self.db.transaction() as conn:
            self._get_locked(conn, record_id)
            conn.execute(f"UPDATE records SET {assignments} WHERE record_id=?", list(fields.values()) + [record_id])

    def redact_owner(self, record_id: str, *, conn: Optional[sqlite3.Connection] = None) -> None:
        """Drop the subject identifier of a deleted record; category and timestamps stay for counts."""
        if conn is None:
            with self.db.transaction() as c:
                return self.redact_owner(record_id, conn=c)
        conn.execute("UPDATE records SET owner_id='', tags_json='{}' WHERE record_id=? AND state=?", (record_id, RecordState.Deleted.value))

    def link_aggregate(self, conn: sqlite3.Connection, record_ids: Sequence[str], aggregate_id: str, cycle: int) -> int:
        """Point Anonymizing records at the aggregate that now covers them (inside the caller's transaction)."""
        n = 0
        for rid in record_ids:
            cur = conn.execute(
                "UPDATE records SET aggregate_id=?, aggregate_cycle=? WHERE record_id=? AND state=? AND aggregate_id IS NULL",
                (str(aggregate_id), int(cycle), str(rid), RecordState.Anonymizing.value),
            )
            n += int(cur.rowcount or 0)
        return n
