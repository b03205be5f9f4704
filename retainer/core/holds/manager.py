from __future__ import annotations

import sqlite3
import time
from typing import Any, List, Optional, Union

from retainer.core.audit.models import TransitionReason
from retainer.core.errors import InvalidTransitionError, RecordNotFoundError, ValidationError
from retainer.core.holds.models import LegalHold
from retainer.core.ledger.models import HOLDABLE_STATES, Record, RecordState
from retainer.core.ledger.store import RecordLedger
from retainer.core.storage.sqlite import Database


class LegalHoldManager:
    """
    Legal holds over records or whole subjects.

    `is_held` always reads the table: the executor calls it twice per deletion (before
    PendingDeletion and again right before erasure) and a hold committed between the two
    calls must win.
    """

    def __init__(self, db: Database, *, ledger: RecordLedger, logger: Any = None, now: Any = None):
        self.db = db
        self.ledger = ledger
        self.logger = logger
        self._now = now or time.time
        self._init_db()

    def _init_db(self) -> None:
        with self.db.transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS legal_holds (
                  hold_id TEXT PRIMARY KEY,
                  subject_id TEXT,
                  record_id TEXT,
                  reason TEXT NOT NULL,
                  created_at REAL NOT NULL,
                  created_by TEXT,
                  released_at REAL,
                  released_by TEXT,
                  release_justification TEXT
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_holds_record ON legal_holds(record_id, released_at)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_holds_subject ON legal_holds(subject_id, released_at)")

    @staticmethod
    def _from_row(r: sqlite3.Row) -> LegalHold:
        return LegalHold(
            hold_id=str(r["hold_id"]),
            subject_id=r["subject_id"],
            record_id=r["record_id"],
            reason=str(r["reason"]),
            created_at=float(r["created_at"]),
            created_by=str(r["created_by"] or ""),
            released_at=r["released_at"],
            released_by=r["released_by"],
            release_justification=str(r["release_justification"] or ""),
        )

    # ---- queries ----
    def get(self, hold_id: str) -> LegalHold:
        with self.db.read() as conn:
            row = conn.execute("SELECT * FROM legal_holds WHERE hold_id=?", (str(hold_id),)).fetchone()
        if row is None:
            raise RecordNotFoundError(f"Legal hold '{hold_id}' not found.", hold_id=hold_id)
        return self._from_row(row)

    def active_holds(self) -> List[LegalHold]:
        with self.db.read() as conn:
            rows = conn.execute("SELECT * FROM legal_holds WHERE released_at IS NULL ORDER BY created_at ASC").fetchall()
        return [self._from_row(r) for r in rows]

    def holds_for(self, record: Record, *, active_only: bool = True) -> List[LegalHold]:
        sql = "SELECT * FROM legal_holds WHERE (record_id=? OR (subject_id IS NOT NULL AND subject_id=?))"
        if active_only:
            sql += " AND released_at IS NULL"
        with self.db.read() as conn:
            rows = conn.execute(sql + " ORDER BY created_at ASC", (record.record_id, record.owner_id or None)).fetchall()
        return [self._from_row(r) for r in rows]

    def is_held(self, record: Union[Record, str]) -> bool:
        rec = record if isinstance(record, Record) else self.ledger.get(str(record))
        with self.db.read() as conn:
            row = conn.execute(
                "SELECT 1 FROM legal_holds WHERE released_at IS NULL AND (record_id=? OR (subject_id IS NOT NULL AND subject_id=?)) LIMIT 1",
                (rec.record_id, rec.owner_id or None),
            ).fetchone()
        return row is not None

    # ---- commands ----
    def _matching_records(self, hold: LegalHold) -> List[Record]:
        if hold.record_id:
            rec = self.ledger.find(hold.record_id)
            return [rec] if rec is not None else []
        return self.ledger.list_by_owner(str(hold.subject_id))

    def place(self, hold: LegalHold, *, note: str = "") -> LegalHold:
        if not isinstance(hold, LegalHold):
            hold = LegalHold.model_validate(hold)
        if hold.released_at is not None:
            raise ValidationError("A released hold cannot be placed.", hold_id=hold.hold_id)
        with self.db.transaction() as conn:
            conn.execute(
                "INSERT INTO legal_holds(hold_id, subject_id, record_id, reason, created_at, created_by, released_at, released_by, release_justification) VALUES (?, ?, ?, ?, ?, ?, NULL, NULL, '')",
                (hold.hold_id, hold.subject_id, hold.record_id, hold.reason, float(hold.created_at), hold.created_by),
            )
        moved = 0
        for rec in self._matching_records(hold):
            with self.ledger.record_lock(rec.record_id):
                current = self.ledger.get(rec.record_id)
                if current.state not in HOLDABLE_STATES:
                    continue
                self.ledger.transition(
                    current.record_id,
                    RecordState.Held,
                    reason=TransitionReason.legal_hold_placed,
                    actor=hold.created_by,
                    note=note or f"hold {hold.hold_id}: {hold.reason}",
                )
                moved += 1
        if self.logger:
            self.logger.info(f"Legal hold {hold.hold_id} placed; {moved} record(s) moved to Held.")
        return hold

    def release(self, hold_id: str, *, actor: str = "system", justification: str = "") -> LegalHold:
        hold = self.get(hold_id)
        if hold.released_at is not None:
            return hold
        now = float(self._now())
        with self.db.transaction() as conn:
            conn.execute(
                "UPDATE legal_holds SET released_at=?, released_by=?, release_justification=? WHERE hold_id=? AND released_at IS NULL",
                (now, str(actor), str(justification or ""), str(hold_id)),
            )
        restored = 0
        for rec in self._matching_records(hold):
            with self.ledger.record_lock(rec.record_id):
                current = self.ledger.get(rec.record_id)
                if current.state != RecordState.Held or current.held_from_state is None:
                    continue
                if self.is_held(current):
                    continue
                try:
                    self.ledger.transition(
                        current.record_id,
                        current.held_from_state,
                        reason=TransitionReason.legal_hold_released,
                        actor=actor,
                        note=justification or f"hold {hold_id} released",
                    )
                    restored += 1
                except InvalidTransitionError:
                    if self.logger:
                        self.logger.error(f"Could not restore record {current.record_id} after hold {hold_id} release.")
                    raise
        if self.logger:
            self.logger.info(f"Legal hold {hold_id} released; {restored} record(s) restored.")
        return self.get(hold_id)
