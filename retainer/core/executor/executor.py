from __future__ import annotations

import json
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict, Field

from retainer.core.audit.hasher import digest
from retainer.core.audit.models import TransitionReason
from retainer.core.errors import HeldError, InvalidTransitionError, PartialDeletionError, RecordNotFoundError, VerificationFailure
from retainer.core.executor.stores import RecordStore
from retainer.core.holds.manager import LegalHoldManager
from retainer.core.ledger.anomalies import AnomalyKind, AnomalyRegister
from retainer.core.ledger.models import Record, RecordState
from retainer.core.ledger.store import RecordLedger
from retainer.core.storage.sqlite import Database


class DeletionCertificate(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    record_id: str
    category: str
    deleted_at: float
    verified_at: float
    stores: List[str] = Field(default_factory=list)
    hash: str = ""

    def hash_payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude={"hash"})


class DeletionExecutor:
    """
    Irreversible erasure of one record across every store, with verification.

    Order per record (under the ledger's per-record lock):
      hold check -> PendingDeletion -> hold re-check -> parallel erase (bounded retries)
      -> verification read -> Deleted + certificate.
    There is no undelete.
    """

    def __init__(
        self,
        db: Database,
        *,
        ledger: RecordLedger,
        holds: LegalHoldManager,
        anomalies: AnomalyRegister,
        stores: Sequence[RecordStore],
        max_attempts: int = 3,
        backoff_seconds: float = 0.2,
        max_workers: int = 4,
        logger: Any = None,
        now: Any = None,
        sleep: Any = None,
    ):
        self.db = db
        self.ledger = ledger
        self.holds = holds
        self.anomalies = anomalies
        self.stores = list(stores)
        self.max_attempts = max(1, int(max_attempts))
        self.backoff_seconds = max(0.0, float(backoff_seconds))
        self.max_workers = max(1, int(max_workers))
        self.logger = logger
        self._now = now or time.time
        self._sleep = sleep or time.sleep
        self._init_db()

    def _init_db(self) -> None:
        with self.db.transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS certificates (
                  record_id TEXT PRIMARY KEY,
                  category TEXT,
                  deleted_at REAL NOT NULL,
                  verified_at REAL NOT NULL,
                  stores_json TEXT,
                  hash TEXT NOT NULL
                )
                """
            )

    # ---- store fan-out ----
    def _erase_one(self, store: RecordStore, record_id: str) -> Optional[str]:
        last = ""
        for attempt in range(1, self.max_attempts + 1):
            try:
                store.erase(record_id)
                return None
            except Exception as e:  # noqa: BLE001
                last = f"{type(e).__name__}: {e}"
                if self.logger:
                    self.logger.warning(f"Erase of {record_id} on store '{store.name}' failed (attempt {attempt}/{self.max_attempts}): {last}")
                if attempt < self.max_attempts:
                    self._sleep(self.backoff_seconds * attempt)
        return last or "erase failed"

    def erase_everywhere(self, record_id: str) -> Dict[str, str]:
        """Erase from all stores in parallel; returns {store: error} for stores that never confirmed."""
        if not self.stores:
            return {}
        workers = min(len(self.stores), self.max_workers)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="erase") as pool:
            futures = {s.name: pool.submit(self._erase_one, s, record_id) for s in self.stores}
        failures: Dict[str, str] = {}
        for name, fut in futures.items():
            err = fut.result()
            if err is not None:
                failures[name] = err
        return failures

    def verify_erased(self, record_id: str) -> Tuple[List[str], Dict[str, str]]:
        """Verification read on every store: (stores still returning data, {store: read error})."""
        still: List[str] = []
        unreadable: Dict[str, str] = {}
        for s in self.stores:
            try:
                if s.contains(record_id):
                    still.append(s.name)
            except Exception as e:  # noqa: BLE001
                unreadable[s.name] = f"{type(e).__name__}: {e}"
                if self.logger:
                    self.logger.warning(f"Verification read of {record_id} on store '{s.name}' failed: {unreadable[s.name]}")
        return still, unreadable

    def _check_erased(self, rec: Record, *, count_attempt: bool) -> float:
        """Raise unless every store answered and none still holds the record; returns the verification time."""
        rid = rec.record_id
        verified_at = float(self._now())
        still, unreadable = self.verify_erased(rid)
        if still:
            if count_attempt:
                self.ledger.set_fields(rid, deletion_attempts=rec.deletion_attempts + 1)
            self.anomalies.flag(
                AnomalyKind.verification_failure,
                record_id=rid,
                category=rec.category,
                details={"stores": still},
            )
            if self.logger:
                self.logger.error(f"Verification failed for {rid}: data still present in {still}.")
            raise VerificationFailure(f"Record '{rid}' still readable after erasure.", record_id=rid, stores=still)
        if unreadable:
            if count_attempt:
                self.ledger.set_fields(rid, deletion_attempts=rec.deletion_attempts + 1)
            raise PartialDeletionError(
                f"Erasure of '{rid}' could not be verified on {len(unreadable)} store(s).",
                record_id=rid,
                stores=sorted(unreadable),
            )
        return verified_at

    # ---- public API ----
    def get_certificate(self, record_id: str) -> Optional[DeletionCertificate]:
        with self.db.read() as conn:
            row = conn.execute("SELECT * FROM certificates WHERE record_id=?", (str(record_id),)).fetchone()
        if row is None:
            return None
        return DeletionCertificate(
            record_id=str(row["record_id"]),
            category=str(row["category"] or ""),
            deleted_at=float(row["deleted_at"]),
            verified_at=float(row["verified_at"]),
            stores=json.loads(row["stores_json"] or "[]"),
            hash=str(row["hash"]),
        )

    def delete(
        self,
        record_id: str,
        *,
        reason: TransitionReason = TransitionReason.policy_expired,
        actor: str = "system",
        note: str = "",
    ) -> DeletionCertificate:
        rid = str(record_id)
        with self.ledger.record_lock(rid):
            rec = self.ledger.get(rid)
            if rec.state == RecordState.Deleted:
                cert = self.get_certificate(rid)
                if cert is None:
                    raise RecordNotFoundError(f"Record '{rid}' is deleted but has no certificate.", record_id=rid)
                return cert

            if self.holds.is_held(rec):
                raise HeldError(f"Record '{rid}' is under legal hold.", record_id=rid)

            if rec.state != RecordState.PendingDeletion:
                rec, _ = self.ledger.transition(rid, RecordState.PendingDeletion, reason=reason, actor=actor, note=note)

            # A hold placed after the candidate list was read must still stop the irreversible step.
            if self.holds.is_held(rec):
                self.ledger.transition(
                    rid,
                    RecordState.Held,
                    reason=TransitionReason.legal_hold_placed,
                    actor=actor,
                    note="hold detected before erasure",
                )
                raise HeldError(f"Record '{rid}' was placed under legal hold before erasure.", record_id=rid)

            failures = self.erase_everywhere(rid)
            if failures:
                self.ledger.set_fields(rid, deletion_attempts=rec.deletion_attempts + 1)
                if self.logger:
                    self.logger.warning(f"Partial deletion of {rid}: {sorted(failures)} did not confirm; record stays PendingDeletion.")
                raise PartialDeletionError(
                    f"Erasure of '{rid}' failed on {len(failures)} store(s).",
                    record_id=rid,
                    stores=sorted(failures),
                )

            verified_at = self._check_erased(rec, count_attempt=True)

            cert = DeletionCertificate(
                record_id=rid,
                category=rec.category,
                deleted_at=float(self._now()),
                verified_at=verified_at,
                stores=[s.name for s in self.stores],
            )
            cert = cert.model_copy(update={"hash": digest(cert.hash_payload())})
            with self.db.transaction() as conn:
                self.ledger.transition(rid, RecordState.Deleted, reason=reason, actor=actor, note=note, conn=conn)
                conn.execute(
                    "INSERT INTO certificates(record_id, category, deleted_at, verified_at, stores_json, hash) VALUES (?, ?, ?, ?, ?, ?)",
                    (cert.record_id, cert.category, cert.deleted_at, cert.verified_at, json.dumps(cert.stores), cert.hash),
                )
                self.ledger.redact_owner(rid, conn=conn)
        if self.logger:
            self.logger.info(f"Record {rid} ({rec.category}) deleted and verified across {len(self.stores)} store(s).")
        return cert

    def erase_fine_grained(self, record_id: str, *, actor: str = "system", note: str = "") -> None:
        """
        Erase the raw rows of an Anonymizing record whose aggregate is already durable,
        then mark it Anonymized. Same hold and verification rules as `delete`.
        """
        rid = str(record_id)
        with self.ledger.record_lock(rid):
            rec = self.ledger.get(rid)
            if rec.state == RecordState.Anonymized:
                return
            if rec.state == RecordState.Held or self.holds.is_held(rec):
                raise HeldError(f"Record '{rid}' is under legal hold.", record_id=rid)
            if rec.state != RecordState.Anonymizing:
                raise InvalidTransitionError(
                    f"Record '{rid}' is {rec.state.value}; only Anonymizing rows are erased behind an aggregate.",
                    record_id=rid,
                    state=rec.state.value,
                )
            failures = self.erase_everywhere(rid)
            if failures:
                raise PartialDeletionError(f"Erasure of '{rid}' failed on {len(failures)} store(s).", record_id=rid, stores=sorted(failures))
            self._check_erased(rec, count_attempt=False)
            self.ledger.transition(
                rid,
                RecordState.Anonymized,
                reason=TransitionReason.aggregate_published,
                actor=actor,
                note=note,
                expect_from=[RecordState.Anonymizing],
            )
