from __future__ import annotations

import os
import time
from typing import Any, Dict, Iterable, List, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field

from retainer.core.anonymization.models import Aggregate
from retainer.core.anonymization.pipeline import AnonymizationPipeline, LadderStep
from retainer.core.audit.log import AuditLog
from retainer.core.audit.models import AuditEntry, IntegrityReport, TransitionReason
from retainer.core.catalog.models import CatalogVersion, RecordCategory
from retainer.core.catalog.store import PolicyCatalog
from retainer.core.config.manager import ConfigManager
from retainer.core.config.models import RetainerConfig, StoreSpec
from retainer.core.config.paths import ConfigFsPaths
from retainer.core.errors import HeldError, RecordNotFoundError, RetainerError, ValidationError
from retainer.core.executor.executor import DeletionCertificate, DeletionExecutor
from retainer.core.executor.stores import RecordStore, build_stores
from retainer.core.holds.manager import LegalHoldManager
from retainer.core.holds.models import LegalHold
from retainer.core.ledger.anomalies import Anomaly, AnomalyKind, AnomalyRegister
from retainer.core.ledger.models import Record, RecordState
from retainer.core.ledger.store import RecordLedger
from retainer.core.ops_log import OpsLogger
from retainer.core.redaction import subject_digest
from retainer.core.scheduler.jobs import DailyDeletionSweep, MonthlyAuditScan, WeeklyAggregationJob
from retainer.core.scheduler.leases import LeaseTable
from retainer.core.scheduler.models import SweepReport
from retainer.core.scheduler.runs import JobRunStore
from retainer.core.scheduler.scheduler import Scheduler
from retainer.core.storage.sqlite import Database
from retainer.core.timeutil import DAY, TimeLike, to_epoch


class RecordScope(BaseModel):
    model_config = ConfigDict(extra="forbid")

    record_id: str
    category: str
    disposition: str  # delete | retain_regulatory | retain_hold | deleted
    effective_at: Optional[float] = None
    error: str = ""


class SubjectErasureReport(BaseModel):
    """Scope assessment for an account closure / erasure request."""

    model_config = ConfigDict(extra="forbid")

    subject: str
    assessed_at: float
    executed: bool = False
    deletable_now: List[RecordScope] = Field(default_factory=list)
    retained: List[RecordScope] = Field(default_factory=list)
    already_deleted: int = 0
    deleted: int = 0


def _epoch(value: TimeLike) -> float:
    try:
        return to_epoch(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Invalid timestamp: {value!r}.") from e


def _justification(text: Optional[str]) -> str:
    j = str(text or "").strip()
    if not j:
        raise ValidationError("A justification is required for this operation.")
    return j


class LifecycleEngine:
    """
    Wires the lifecycle components over one SQLite file and exposes the ingress, egress and
    operator surface used by the web API and the CLI.
    """

    def __init__(
        self,
        cfg: RetainerConfig,
        *,
        root: str = ".",
        logger: Any = None,
        stores: Optional[Sequence[RecordStore]] = None,
        now: Any = None,
        sleep: Any = None,
        ops: Optional[OpsLogger] = None,
    ):
        self.cfg = cfg
        self.root = str(root)
        self.logger = logger
        self._now = now or time.time
        e = cfg.engine
        self.ops = ops or OpsLogger(path=self._path(e.logging.ops_log_path))

        self.db = Database(self._path(e.storage.db_path), busy_timeout_ms=e.storage.busy_timeout_ms)
        self.audit = AuditLog(self.db, logger=logger)
        self.catalog = PolicyCatalog(
            self.db,
            logger=logger,
            default_consent_grace_days=e.sweep.consent_grace_days,
            default_anonymize_after_days=e.sweep.anonymize_after_days,
            now=self._now,
        )
        self.ledger = RecordLedger(self.db, audit=self.audit, logger=logger, now=self._now)
        self.anomalies = AnomalyRegister(self.db, now=self._now)
        self.holds = LegalHoldManager(self.db, ledger=self.ledger, logger=logger, now=self._now)
        self.stores = list(stores) if stores is not None else build_stores([self._store_spec(s) for s in e.executor.stores])
        self.executor = DeletionExecutor(
            self.db,
            ledger=self.ledger,
            holds=self.holds,
            anomalies=self.anomalies,
            stores=self.stores,
            max_attempts=e.executor.max_attempts,
            backoff_seconds=e.executor.backoff_seconds,
            max_workers=e.executor.max_workers,
            logger=logger,
            now=self._now,
            sleep=sleep,
        )
        self.pipeline = AnonymizationPipeline(
            self.db,
            ledger=self.ledger,
            executor=self.executor,
            k_threshold=e.anonymization.k_threshold,
            ladder=[LadderStep(s.granularity, s.after_days) for s in e.anonymization.ladder],
            erase_delay_cycles=e.anonymization.erase_delay_cycles,
            logger=logger,
            now=self._now,
        )
        self.leases = LeaseTable(self.db, ttl_seconds=e.leases.ttl_seconds, logger=logger, now=self._now)
        self.runs = JobRunStore(self.db, now=self._now)

        common = dict(leases=self.leases, runs=self.runs, worker_id=e.sweep.worker_id, logger=logger, ops=self.ops, now=self._now)
        self.daily = DailyDeletionSweep(
            catalog=self.catalog,
            ledger=self.ledger,
            holds=self.holds,
            executor=self.executor,
            anomalies=self.anomalies,
            page_size=e.sweep.page_size,
            shards_per_category=e.sweep.shards_per_category,
            max_sweep_attempts=e.executor.max_sweep_attempts,
            **common,
        )
        self.weekly = WeeklyAggregationJob(catalog=self.catalog, pipeline=self.pipeline, **common)
        self.monthly = MonthlyAuditScan(
            catalog=self.catalog,
            ledger=self.ledger,
            audit=self.audit,
            anomalies=self.anomalies,
            stuck_deletion_grace_days=e.audit_scan.stuck_deletion_grace_days,
            **common,
        )
        sched = e.schedule
        self.scheduler = Scheduler(
            runs=self.runs,
            jobs={
                "daily": (self.daily, sched.daily_interval_hours * 3600.0),
                "weekly": (self.weekly, sched.weekly_interval_days * DAY),
                "monthly": (self.monthly, sched.monthly_interval_days * DAY),
            },
            poll_seconds=sched.poll_seconds,
            logger=logger,
            now=self._now,
        )
        self._seed_catalog()

    @classmethod
    def from_root(cls, root: str = ".", *, logger: Any = None, **kw: Any) -> "LifecycleEngine":
        cfg = ConfigManager(fs=ConfigFsPaths(root), logger=logger).load_all()
        return cls(cfg, root=root, logger=logger, **kw)

    def _path(self, p: str) -> str:
        if p == ":memory:" or os.path.isabs(p):
            return p
        return os.path.join(self.root, p)

    def _store_spec(self, spec: StoreSpec) -> Dict[str, Any]:
        d = spec.model_dump()
        if d.get("path"):
            d["path"] = self._path(str(d["path"]))
        return d

    def _seed_catalog(self) -> None:
        c = self.cfg.catalog
        v = self.catalog.seed(c.categories, effective_at=to_epoch(c.effective_at))
        if v is not None and self.ops:
            self.ops.log(event="catalog.seeded", outcome="ok", details={"version": v.version, "categories": sorted(v.rules)})

    def _ts(self, at: Optional[TimeLike]) -> float:
        return float(self._now()) if at is None else _epoch(at)

    # ---- ingress ----
    def register_record(
        self,
        category: str,
        owner_id: str,
        created_at: Optional[TimeLike] = None,
        record_id: Optional[str] = None,
        *,
        tags: Optional[Dict[str, str]] = None,
    ) -> Record:
        created = self._ts(created_at)
        now = float(self._now())
        rule = self.catalog.rule_for(category, now)
        if rule.category.sunset or category not in self.catalog.current_rules(now):
            raise ValidationError(f"Category '{category}' is sunset; new records are not accepted.", category=category)
        data: Dict[str, Any] = {"category": category, "owner_id": str(owner_id or ""), "created_at": created, "tags": tags or {}}
        if record_id:
            data["record_id"] = str(record_id)
        return self.ledger.register(Record(**data))

    def touch_record(self, record_id: str, at: Optional[TimeLike] = None) -> Record:
        return self.ledger.touch(record_id, self._ts(at))

    def record_consent_withdrawal(self, record_id: str, at: Optional[TimeLike] = None) -> Record:
        rec = self.ledger.mark_consent_withdrawn(record_id, self._ts(at))
        if self.logger:
            self.logger.info(f"Consent withdrawn for record {rec.record_id} ({rec.category}).")
        return rec

    def place_legal_hold(
        self,
        *,
        reason: str,
        subject_id: Optional[str] = None,
        record_id: Optional[str] = None,
        actor: str = "upstream",
        note: str = "",
    ) -> LegalHold:
        hold = LegalHold(subject_id=subject_id, record_id=record_id, reason=reason, created_at=float(self._now()), created_by=actor)
        hold = self.holds.place(hold, note=note)
        self.ops.log(event="hold.placed", outcome="ok", details={"hold_id": hold.hold_id, "actor": actor, "scope": "record" if record_id else "subject"})
        return hold

    def release_legal_hold(self, hold_id: str, *, actor: str = "upstream", justification: str = "") -> LegalHold:
        hold = self.holds.release(hold_id, actor=actor, justification=justification)
        self.ops.log(event="hold.released", outcome="ok", details={"hold_id": hold_id, "actor": actor})
        return hold

    def force_place_hold(
        self,
        *,
        justification: str,
        subject_id: Optional[str] = None,
        record_id: Optional[str] = None,
        actor: str = "operator",
    ) -> LegalHold:
        j = _justification(justification)
        hold = self.place_legal_hold(reason=j, subject_id=subject_id, record_id=record_id, actor=actor, note=f"forced by {actor}: {j}")
        self._audit_hold_override(hold, "none", "placed", actor=actor, justification=j)
        return hold

    def force_release_hold(self, hold_id: str, *, justification: str, actor: str = "operator") -> LegalHold:
        j = _justification(justification)
        hold = self.release_legal_hold(hold_id, actor=actor, justification=f"forced by {actor}: {j}")
        self._audit_hold_override(hold, "placed", "released", actor=actor, justification=j)
        return hold

    def _audit_hold_override(self, hold: LegalHold, from_state: str, to_state: str, *, actor: str, justification: str) -> None:
        # keyed by hold id: the forced operation may not move any record
        category = ""
        if hold.record_id:
            rec = self.ledger.find(hold.record_id)
            category = rec.category if rec is not None else ""
        with self.db.transaction() as conn:
            self.audit.append(
                conn,
                AuditEntry(
                    record_id=f"hold:{hold.hold_id}",
                    category=category,
                    from_state=from_state,
                    to_state=to_state,
                    reason=TransitionReason.manual_override,
                    timestamp=float(self._now()),
                    actor=actor,
                    note=justification[:1000],
                ),
            )

    # ---- egress ----
    def get_record(self, record_id: str) -> Record:
        return self.ledger.get(record_id)

    def get_deletion_certificate(self, record_id: str) -> DeletionCertificate:
        cert = self.executor.get_certificate(record_id)
        if cert is None:
            raise RecordNotFoundError(f"No deletion certificate for record '{record_id}'.", record_id=record_id)
        return cert

    def export_audit_log(
        self,
        since: Optional[TimeLike] = None,
        until: Optional[TimeLike] = None,
        *,
        record_id: Optional[str] = None,
        limit: int = 10_000,
        offset: int = 0,
    ) -> List[AuditEntry]:
        return self.audit.export(
            since=None if since is None else _epoch(since),
            until=None if until is None else _epoch(until),
            record_id=record_id,
            limit=limit,
            offset=offset,
        )

    def export_audit_file(
        self,
        path: str,
        *,
        fmt: str = "json",
        since: Optional[TimeLike] = None,
        until: Optional[TimeLike] = None,
        record_id: Optional[str] = None,
    ) -> str:
        if fmt not in {"json", "csv"}:
            raise ValidationError(f"Unsupported export format '{fmt}'.")
        writer = self.audit.export_csv if fmt == "csv" else self.audit.export_json
        out = writer(
            path,
            since=None if since is None else _epoch(since),
            until=None if until is None else _epoch(until),
            record_id=record_id,
            limit=1_000_000,
        )
        self.ops.log(event="audit.exported", outcome="ok", details={"format": fmt, "path": out})
        return out

    def verify_audit_log(self) -> IntegrityReport:
        return self.audit.verify_integrity()

    def get_current_policy_catalog(self, as_of: Optional[TimeLike] = None) -> CatalogVersion:
        v = self.catalog.current_version(None if as_of is None else to_epoch(as_of))
        if v is None:
            raise RecordNotFoundError("No policy catalog version is in effect.")
        return v

    def publish_catalog(
        self,
        categories: Iterable[Any],
        *,
        effective_at: TimeLike,
        published_by: str = "operator",
        notes: str = "",
    ) -> CatalogVersion:
        cats = [c if isinstance(c, RecordCategory) else RecordCategory.model_validate(c) for c in categories]
        v = self.catalog.publish(cats, effective_at=to_epoch(effective_at), published_by=published_by, notes=notes)
        self.ops.log(event="catalog.published", outcome="ok", details={"version": v.version, "by": published_by})
        return v

    def list_aggregates(self, category: Optional[str] = None) -> List[Aggregate]:
        return self.pipeline.list_aggregates(category=category)

    # ---- subject erasure ----
    def erase_subject(self, owner_id: str, *, at: Optional[TimeLike] = None, execute: bool = False, actor: str = "upstream") -> SubjectErasureReport:
        """
        Account closure: withdraw consent on every record of the subject and assess scope.

        Records under a regulatory basis stay until their retention ends, held records stay
        until release. With `execute`, everything else is deleted now instead of waiting for
        the consent grace period.
        """
        t = self._ts(at)
        report = SubjectErasureReport(subject=subject_digest(owner_id), assessed_at=t, executed=bool(execute))
        for rec in self.ledger.list_by_owner(owner_id):
            if rec.state == RecordState.Deleted:
                report.already_deleted += 1
                continue
            rec = self.ledger.mark_consent_withdrawn(rec.record_id, t)
            rule = self.catalog.rule_for(rec.category, t)
            if self.holds.is_held(rec):
                report.retained.append(RecordScope(record_id=rec.record_id, category=rec.category, disposition="retain_hold"))
                continue
            expires = rule.retention_expires_at(rec.effective_last_active)
            if rule.is_regulatory and expires >= t:
                report.retained.append(RecordScope(record_id=rec.record_id, category=rec.category, disposition="retain_regulatory", effective_at=expires))
                continue
            due = rule.consent_deletion_at(rec.consent_withdrawn_at)
            scope = RecordScope(record_id=rec.record_id, category=rec.category, disposition="delete", effective_at=t if execute else (due or t))
            if execute:
                try:
                    self.executor.delete(rec.record_id, reason=TransitionReason.consent_withdrawn, actor=actor, note="subject erasure request")
                    scope.disposition = "deleted"
                    report.deleted += 1
                except HeldError:
                    scope.disposition = "retain_hold"
                    report.retained.append(scope)
                    continue
                except RetainerError as e:
                    scope.error = e.code
            report.deletable_now.append(scope)
        self.ops.log(
            event="subject.erasure",
            outcome="ok",
            details={"subject": report.subject, "deletable": len(report.deletable_now), "retained": len(report.retained), "executed": report.executed},
        )
        return report

    # ---- operations ----
    def run_sweep(self, category: Optional[str] = None, *, as_of: Optional[TimeLike] = None) -> SweepReport:
        return self.daily.run(as_of=None if as_of is None else to_epoch(as_of), categories=[category] if category else None)

    def run_aggregation(self, category: Optional[str] = None, *, as_of: Optional[TimeLike] = None) -> SweepReport:
        return self.weekly.run(as_of=None if as_of is None else to_epoch(as_of), categories=[category] if category else None)

    def run_audit_scan(self, *, as_of: Optional[TimeLike] = None) -> SweepReport:
        return self.monthly.run(as_of=None if as_of is None else to_epoch(as_of))

    def pending_reviews(self, *, category: Optional[str] = None, limit: int = 200) -> List[Record]:
        return self.ledger.list_by_state(RecordState.PendingReview, category=category, limit=limit)

    def approve_review(self, record_id: str, *, actor: str, justification: str) -> DeletionCertificate:
        j = _justification(justification)
        rec = self.ledger.get(record_id)
        if rec.state != RecordState.PendingReview:
            raise ValidationError(f"Record '{record_id}' is not awaiting review.", record_id=record_id, state=rec.state.value)
        cert = self.executor.delete(record_id, reason=TransitionReason.review_approved, actor=actor, note=j)
        self.ops.log(event="review.approved", outcome="ok", details={"record_id": record_id, "actor": actor})
        return cert

    def deny_review(self, record_id: str, *, actor: str, justification: str) -> Record:
        """Keep the record: back to Active with its activity clock restarted."""
        j = _justification(justification)
        with self.ledger.record_lock(record_id):
            self.ledger.transition(
                record_id,
                RecordState.Active,
                reason=TransitionReason.review_denied,
                actor=actor,
                note=j,
                expect_from=[RecordState.PendingReview],
            )
            rec = self.ledger.touch(record_id, float(self._now()))
        self.ops.log(event="review.denied", outcome="ok", details={"record_id": record_id, "actor": actor})
        return rec

    def list_anomalies(self, *, kind: Optional[AnomalyKind] = None, limit: int = 500) -> List[Anomaly]:
        return self.anomalies.open_anomalies(kind=kind, limit=limit)

    def resolve_anomaly(self, anomaly_id: str, *, actor: str, justification: str, delete: bool = False) -> Anomaly:
        """
        Close a flagged anomaly. Always leaves a manual-override audit entry; with `delete`
        the affected record is erased (subject to holds) as part of the resolution.
        """
        j = _justification(justification)
        a = self.anomalies.get(anomaly_id)
        if a.status != "open":
            return a
        if a.record_id and self.ledger.find(a.record_id) is not None:
            if delete:
                self.executor.delete(a.record_id, reason=TransitionReason.manual_override, actor=actor, note=f"anomaly {a.kind.value}: {j}")
            else:
                self.ledger.annotate(a.record_id, reason=TransitionReason.manual_override, actor=actor, note=f"anomaly {a.kind.value} dismissed: {j}")
        else:
            if delete:
                raise ValidationError("Only record-level anomalies can be resolved by deletion.", anomaly_id=anomaly_id)
            with self.db.transaction() as conn:
                self.audit.append(
                    conn,
                    AuditEntry(
                        record_id=f"anomaly:{a.anomaly_id}",
                        category=a.category,
                        from_state="open",
                        to_state="resolved",
                        reason=TransitionReason.manual_override,
                        timestamp=float(self._now()),
                        actor=actor,
                        note=f"{a.kind.value}: {j}",
                    ),
                )
        resolved = self.anomalies.resolve(anomaly_id, actor=actor, resolution=j)
        self.ops.log(event="anomaly.resolved", outcome="ok", details={"anomaly_id": anomaly_id, "kind": a.kind.value, "delete": bool(delete)})
        return resolved

    def status(self) -> Dict[str, Any]:
        v = self.catalog.current_version()
        return {
            "catalog_version": v.version if v else None,
            "records": self.ledger.count_by_state(),
            "active_holds": len(self.holds.active_holds()),
            "open_anomalies": len(self.anomalies.open_anomalies()),
            "audit_entries": self.audit.count(),
            "stores": [s.name for s in self.stores],
        }
