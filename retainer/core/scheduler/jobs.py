from __future__ import annotations

import sqlite3
import threading
import time
from typing import Any, Iterable, List, Optional

from retainer.core.anonymization.pipeline import AnonymizationPipeline
from retainer.core.audit.log import AuditLog
from retainer.core.catalog.models import RetentionRule
from retainer.core.catalog.store import PolicyCatalog
from retainer.core.errors import HeldError, LeaseContentionError, RetainerError, UnknownCategoryError
from retainer.core.executor.executor import DeletionExecutor
from retainer.core.holds.manager import LegalHoldManager
from retainer.core.ledger.anomalies import AnomalyKind, AnomalyRegister
from retainer.core.ledger.models import Record, RecordState
from retainer.core.ledger.store import RecordLedger
from retainer.core.ops_log import OpsLogger
from retainer.core.scheduler.decide import Action, decide
from retainer.core.scheduler.leases import LeaseTable, shard_key
from retainer.core.scheduler.models import RecordFailure, SweepReport
from retainer.core.scheduler.runs import JobRunStore
from retainer.core.timeutil import DAY, iso
from retainer.core.trace import trace_context


class _Job:
    """
    Shared run bookkeeping: trace id, persisted run row, ops log line.

    Subclasses implement `_run`. Anything escaping `_run` (in practice `sqlite3.Error`,
    infrastructure failure) marks the run row failed and propagates so the scheduler
    retries next tick; the row never stays `running`.
    """

    name = "job"

    def __init__(
        self,
        *,
        leases: LeaseTable,
        runs: JobRunStore,
        worker_id: str = "worker-1",
        logger: Any = None,
        ops: Optional[OpsLogger] = None,
        now: Any = None,
    ):
        self.leases = leases
        self.runs = runs
        self.worker_id = str(worker_id)
        self.logger = logger
        self.ops = ops
        self._now = now or time.time

    def _cycle(self) -> Optional[int]:
        return None

    def run(
        self,
        *,
        as_of: Optional[float] = None,
        categories: Optional[Iterable[str]] = None,
        cancel: Optional[threading.Event] = None,
    ) -> SweepReport:
        t = float(self._now() if as_of is None else as_of)
        cats = sorted(set(categories)) if categories is not None else None
        with trace_context(None) as tid:
            cycle = self._cycle()
            run = self.runs.start(self.name, as_of=t, worker_id=self.worker_id, trace_id=tid, cycle=cycle)
            report = SweepReport(
                job=self.name,
                run_id=run.run_id,
                trace_id=tid,
                worker_id=self.worker_id,
                as_of=t,
                started_at=float(self._now()),
                cycle=cycle,
            )
            failure: Optional[BaseException] = None
            try:
                self._run(report, t, cats, cancel or threading.Event())
            except BaseException as e:
                failure = e
                raise
            finally:
                report.finished_at = float(self._now())
                if failure is None:
                    self._finish(run.run_id, report, tid)
                else:
                    self._abort(run.run_id, report, tid, failure)
        return report

    def _finish(self, run_id: str, report: SweepReport, tid: str) -> None:
        self.runs.finish(run_id, status=report.status, summary=report.summary())
        if self.ops:
            self.ops.log(event=f"job.{self.name}", outcome=report.status, details=report.summary(), trace_id=tid)
        if self.logger:
            self.logger.info(
                f"Job {self.name} as of {iso(report.as_of)} finished: {report.status}, {report.examined} examined, "
                f"{report.deleted} deleted, {len(report.errors)} error(s)."
            )

    def _abort(self, run_id: str, report: SweepReport, tid: str, err: BaseException) -> None:
        failure = f"{type(err).__name__}: {err}"
        self.runs.finish(run_id, status="failed", summary={**report.summary(), "failure": failure})
        if self.ops:
            self.ops.log(event=f"job.{self.name}", outcome="failed", details={"error": failure, "run_id": run_id}, trace_id=tid)
        if self.logger:
            self.logger.error(f"Job {self.name} aborted: {failure}")

    def _run(self, report: SweepReport, as_of: float, categories: Optional[List[str]], cancel: threading.Event) -> None:
        raise NotImplementedError

    @staticmethod
    def _fail(report: SweepReport, err: RetainerError, *, record_id: Optional[str] = None, category: str = "") -> None:
        report.errors.append(RecordFailure(record_id=record_id, category=category, code=err.code, message=err.user_message))


class DailyDeletionSweep(_Job):
    """
    Per category shard: lease, resolve the rule once, page through candidates and route
    each one through `decide`. Every record transition commits on its own, so a cancelled
    or crashed sweep resumes safely.
    """

    name = "daily"

    def __init__(
        self,
        *,
        catalog: PolicyCatalog,
        ledger: RecordLedger,
        holds: LegalHoldManager,
        executor: DeletionExecutor,
        anomalies: AnomalyRegister,
        page_size: int = 500,
        shards_per_category: int = 1,
        max_sweep_attempts: int = 5,
        **kw: Any,
    ):
        super().__init__(**kw)
        self.catalog = catalog
        self.ledger = ledger
        self.holds = holds
        self.executor = executor
        self.anomalies = anomalies
        self.page_size = max(1, int(page_size))
        self.shards_per_category = max(1, int(shards_per_category))
        # PendingDeletion records past this many failed attempts wait for an operator
        self.max_sweep_attempts = max(1, int(max_sweep_attempts))

    def _run(self, report: SweepReport, as_of: float, categories: Optional[List[str]], cancel: threading.Event) -> None:
        cats = categories if categories is not None else self.ledger.categories()
        total = self.shards_per_category
        for category in cats:
            for idx in range(total):
                if cancel.is_set():
                    report.cancelled = True
                    return
                self._sweep_shard(report, category, idx, total, as_of, cancel)

    def _sweep_shard(self, report: SweepReport, category: str, idx: int, total: int, as_of: float, cancel: threading.Event) -> None:
        key = shard_key(self.name, category, idx, total)
        try:
            self.leases.acquire(key, self.worker_id)
        except LeaseContentionError:
            report.shards_skipped += 1
            if self.logger:
                self.logger.info(f"Shard {key} is leased elsewhere; skipping.")
            return
        try:
            try:
                rule = self.catalog.rule_for(category, as_of)
            except UnknownCategoryError as e:
                self._fail(report, e, category=category)
                self.anomalies.flag(AnomalyKind.unknown_category, category=category, details={"job": self.name})
                report.anomalies_flagged += 1
                if self.logger:
                    self.logger.critical(f"Records reference unknown category '{category}'; shard {key} not swept.")
                return
            shard = (idx, total) if total > 1 else None
            for rec in self.ledger.candidates_for(category, as_of, rule, page_size=self.page_size, shard=shard):
                if cancel.is_set():
                    report.cancelled = True
                    return
                # renews past half the TTL; raises once the shard was taken over
                self.leases.keep(key, self.worker_id)
                self._handle(report, rec, rule, as_of)
            report.shards_done += 1
        except LeaseContentionError as e:
            report.shards_aborted += 1
            self._fail(report, e, category=category)
        finally:
            self.leases.release(key, self.worker_id)

    def _handle(self, report: SweepReport, rec: Record, rule: RetentionRule, as_of: float) -> None:
        report.examined += 1
        held = self.holds.is_held(rec)
        d = decide(rec, rule, as_of, held=held)
        try:
            if d.action == Action.noop:
                report.noop += 1
            elif d.action == Action.skip_held:
                report.held_skipped += 1
            elif d.action == Action.retry_delete and rec.deletion_attempts >= self.max_sweep_attempts:
                self.anomalies.flag(
                    AnomalyKind.stuck_deletion,
                    record_id=rec.record_id,
                    category=rec.category,
                    details={"attempts": rec.deletion_attempts, "pending_since": iso(float(rec.pending_since or as_of))},
                )
                report.retries_exhausted += 1
            elif d.action == Action.review:
                with self.ledger.record_lock(rec.record_id):
                    self.ledger.transition(
                        rec.record_id,
                        RecordState.PendingReview,
                        reason=d.reason,
                        actor=self.worker_id,
                        note="category requires review before deletion",
                        expect_from=[RecordState.Active],
                    )
                report.pending_review += 1
            elif d.action == Action.anonymize:
                with self.ledger.record_lock(rec.record_id):
                    self.ledger.transition(
                        rec.record_id,
                        RecordState.Anonymizing,
                        reason=d.reason,
                        actor=self.worker_id,
                        expect_from=[RecordState.Active],
                    )
                report.anonymizing += 1
            else:
                self.executor.delete(rec.record_id, reason=d.reason, actor=self.worker_id)
                if d.action == Action.retry_delete:
                    report.retried += 1
                report.deleted += 1
        except HeldError:
            report.held_skipped += 1
        except RetainerError as e:
            self._fail(report, e, record_id=rec.record_id, category=rec.category)
            if self.logger:
                self.logger.warning(f"Record {rec.record_id} ({rec.category}): {e.code}: {e.user_message}")
        except sqlite3.Error:
            raise
        except Exception as e:  # noqa: BLE001
            msg = f"{type(e).__name__}: {e}"
            report.errors.append(RecordFailure(record_id=rec.record_id, category=rec.category, code="internal_error", message=msg))
            if self.logger:
                self.logger.error(f"Record {rec.record_id} ({rec.category}) failed unexpectedly: {msg}")


class WeeklyAggregationJob(_Job):
    """Anonymizable categories: erase covered rows, publish aggregates, climb the ladder."""

    name = "weekly"

    def __init__(self, *, catalog: PolicyCatalog, pipeline: AnonymizationPipeline, **kw: Any):
        super().__init__(**kw)
        self.catalog = catalog
        self.pipeline = pipeline

    def _cycle(self) -> Optional[int]:
        return self.runs.next_cycle(self.name)

    def _targets(self, as_of: float, categories: Optional[List[str]]) -> List[RetentionRule]:
        if categories is not None:
            rules = []
            for c in categories:
                rules.append(self.catalog.rule_for(c, as_of))
            return [r for r in rules if r.category.anonymizable]
        return [r for _, r in sorted(self.catalog.current_rules(as_of).items()) if r.category.anonymizable]

    def _run(self, report: SweepReport, as_of: float, categories: Optional[List[str]], cancel: threading.Event) -> None:
        cycle = int(report.cycle or 0)
        try:
            targets = self._targets(as_of, categories)
        except UnknownCategoryError as e:
            self._fail(report, e)
            return
        for rule in targets:
            if cancel.is_set():
                report.cancelled = True
                return
            key = shard_key(self.name, rule.name)
            try:
                self.leases.acquire(key, self.worker_id)
            except LeaseContentionError:
                report.shards_skipped += 1
                continue
            try:
                res = self.pipeline.run_cycle(rule, as_of=as_of, cycle=cycle, actor=self.worker_id)
            except RetainerError as e:
                self._fail(report, e, category=rule.name)
                continue
            finally:
                self.leases.release(key, self.worker_id)
            report.shards_done += 1
            report.fine_rows_erased += res.fine_rows_erased
            report.held_skipped += res.fine_rows_held
            report.aggregates_purged += res.superseded_purged + res.aggregates_expired
            for ar in res.reports:
                report.aggregates_published += len(ar.published)
                report.buckets_merged += ar.merged_buckets
                report.buckets_deferred += ar.deferred_buckets
            for msg in res.errors:
                report.errors.append(RecordFailure(category=rule.name, code="aggregation_error", message=msg))
            if res.fine_rows_failed:
                report.errors.append(
                    RecordFailure(category=rule.name, code="partial_deletion", message=f"{res.fine_rows_failed} fine-grained row(s) not erased")
                )


class MonthlyAuditScan(_Job):
    """
    Flags what the engine will not fix on its own: records in categories the catalog no
    longer (or never) defined, deletions stuck past the grace window, broken hash chains.
    """

    name = "monthly"

    def __init__(
        self,
        *,
        catalog: PolicyCatalog,
        ledger: RecordLedger,
        audit: AuditLog,
        anomalies: AnomalyRegister,
        stuck_deletion_grace_days: float = 7.0,
        **kw: Any,
    ):
        super().__init__(**kw)
        self.catalog = catalog
        self.ledger = ledger
        self.audit = audit
        self.anomalies = anomalies
        self.stuck_grace = float(stuck_deletion_grace_days) * DAY

    def _run(self, report: SweepReport, as_of: float, categories: Optional[List[str]], cancel: threading.Event) -> None:
        key = shard_key(self.name, "all")
        try:
            self.leases.acquire(key, self.worker_id)
        except LeaseContentionError:
            report.shards_skipped += 1
            return
        try:
            self._scan_categories(report, as_of, categories)
            if cancel.is_set():
                report.cancelled = True
                return
            self._scan_stuck(report, as_of, categories, cancel)
            self._scan_chains(report)
            report.shards_done += 1
        finally:
            self.leases.release(key, self.worker_id)

    def _scan_categories(self, report: SweepReport, as_of: float, categories: Optional[List[str]]) -> None:
        current = self.catalog.current_rules(as_of)
        counts_for = self.ledger.count_by_state
        for category in self.ledger.categories():
            if categories is not None and category not in categories:
                continue
            report.examined += 1
            if category in current:
                continue
            kind = AnomalyKind.orphan_category if self.catalog.is_known(category) else AnomalyKind.unknown_category
            self.anomalies.flag(kind, category=category, details={"states": counts_for(category=category)})
            report.anomalies_flagged += 1
            if self.logger:
                self.logger.warning(f"Category '{category}' flagged as {kind.value}.")

    def _scan_stuck(self, report: SweepReport, as_of: float, categories: Optional[List[str]], cancel: threading.Event) -> None:
        for rec in self.ledger.iter_records(states=[RecordState.PendingDeletion]):
            if cancel.is_set():
                report.cancelled = True
                return
            if categories is not None and rec.category not in categories:
                continue
            since = rec.pending_since if rec.pending_since is not None else rec.state_changed_at
            if since is None or float(since) + self.stuck_grace >= as_of:
                continue
            self.anomalies.flag(
                AnomalyKind.stuck_deletion,
                record_id=rec.record_id,
                category=rec.category,
                details={"pending_since": iso(float(since)), "attempts": rec.deletion_attempts},
            )
            report.anomalies_flagged += 1

    def _scan_chains(self, report: SweepReport) -> None:
        integrity = self.audit.verify_integrity()
        if not integrity.ok:
            self.anomalies.flag(
                AnomalyKind.audit_chain_broken,
                details={"broken_at_seq": integrity.broken_at_seq, "message": integrity.message},
            )
            report.anomalies_flagged += 1
            if self.logger:
                self.logger.critical(f"Audit hash chain broken at seq {integrity.broken_at_seq}: {integrity.message}")
        if not self.catalog.verify_chain():
            self.anomalies.flag(AnomalyKind.catalog_chain_broken, details={"versions": len(self.catalog.versions())})
            report.anomalies_flagged += 1
            if self.logger:
                self.logger.critical("Policy catalog hash chain broken.")
