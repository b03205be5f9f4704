from __future__ import annotations

import json
import sqlite3
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from retainer.core.catalog.models import Granularity, RetentionRule
from retainer.core.errors import HeldError, PartialDeletionError, RetainerError, ValidationError, VerificationFailure
from retainer.core.anonymization.models import Aggregate, AggregateReport, AggregationWindow, CycleReport
from retainer.core.ledger.models import RecordState
from retainer.core.ledger.store import RecordLedger
from retainer.core.storage.sqlite import Database
from retainer.core.timeutil import DAY, day_start, month_start, next_month_start, week_start


@dataclass(frozen=True)
class LadderStep:
    """Aggregates finer than `granularity` roll up into it once their window ended `after_days` ago."""

    granularity: Granularity
    after_days: int


DEFAULT_LADDER: Tuple[LadderStep, ...] = (
    LadderStep(Granularity.weekly, 180),
    LadderStep(Granularity.monthly, 365),
)


def bucket_bounds(ts: float, granularity: Granularity) -> Tuple[float, float]:
    g = Granularity(granularity)
    if g == Granularity.daily:
        s = day_start(ts)
        return s, s + DAY
    if g == Granularity.weekly:
        s = week_start(ts)
        return s, s + 7 * DAY
    if g == Granularity.monthly:
        s = month_start(ts)
        return s, next_month_start(s)
    raise ValidationError("Raw is not a bucket granularity.")


class _Bucket:
    def __init__(self, start: float, end: float):
        self.start = start
        self.end = end
        self.ids: List[str] = []
        self.count = 0
        self.parts = 0

    def absorb(self, other: "_Bucket") -> None:
        self.end = max(self.end, other.end)
        self.ids.extend(other.ids)
        self.count += other.count
        self.parts += other.parts


class AnonymizationPipeline:
    """
    Replaces fine-grained rows with k-anonymous aggregates.

    Order is fixed: the aggregate is written (and its source rows linked to it) in one
    transaction; the source rows are only erased by a later cycle. A bucket smaller than
    k is merged with the following bucket, and if that still is not enough it is deferred.
    """

    def __init__(
        self,
        db: Database,
        *,
        ledger: RecordLedger,
        executor: Any,
        k_threshold: int = 5,
        ladder: Optional[Sequence[LadderStep]] = None,
        erase_delay_cycles: int = 1,
        logger: Any = None,
        now: Any = None,
    ):
        if int(k_threshold) < 2:
            raise ValidationError("k_threshold must be at least 2.")
        self.db = db
        self.ledger = ledger
        self.executor = executor
        self.k = int(k_threshold)
        self.erase_delay_cycles = max(1, int(erase_delay_cycles))
        self.ladder = sorted(list(ladder or DEFAULT_LADDER), key=lambda s: s.granularity.rank)
        self.logger = logger
        self._now = now or time.time
        self._init_db()

    def _init_db(self) -> None:
        with self.db.transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS aggregates (
                  aggregate_id TEXT PRIMARY KEY,
                  category TEXT NOT NULL,
                  granularity TEXT NOT NULL,
                  window_start REAL NOT NULL,
                  window_end REAL NOT NULL,
                  record_count INTEGER NOT NULL,
                  source TEXT NOT NULL,
                  source_ids_json TEXT,
                  published_cycle INTEGER NOT NULL,
                  created_at REAL NOT NULL,
                  superseded_by TEXT,
                  superseded_cycle INTEGER
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_aggregates_cat ON aggregates(category, granularity, window_start)")

    @staticmethod
    def _from_row(r: sqlite3.Row) -> Aggregate:
        return Aggregate(
            aggregate_id=str(r["aggregate_id"]),
            category=str(r["category"]),
            granularity=Granularity(str(r["granularity"])),
            window_start=float(r["window_start"]),
            window_end=float(r["window_end"]),
            record_count=int(r["record_count"]),
            source=Granularity(str(r["source"])),
            source_ids=json.loads(r["source_ids_json"] or "[]"),
            published_cycle=int(r["published_cycle"]),
            created_at=float(r["created_at"]),
            superseded_by=r["superseded_by"],
            superseded_cycle=r["superseded_cycle"],
        )

    # ---- reads ----
    def list_aggregates(
        self,
        *,
        category: Optional[str] = None,
        granularity: Optional[Granularity] = None,
        include_superseded: bool = False,
    ) -> List[Aggregate]:
        where: List[str] = []
        params: List[Any] = []
        if category:
            where.append("category=?")
            params.append(str(category))
        if granularity is not None:
            where.append("granularity=?")
            params.append(Granularity(granularity).value)
        if not include_superseded:
            where.append("superseded_by IS NULL")
        sql = "SELECT * FROM aggregates"
        if where:
            sql += " WHERE " + " AND ".join(where)
        with self.db.read() as conn:
            rows = conn.execute(sql + " ORDER BY window_start ASC, aggregate_id ASC", params).fetchall()
        return [self._from_row(r) for r in rows]

    def get_aggregate(self, aggregate_id: str) -> Optional[Aggregate]:
        with self.db.read() as conn:
            row = conn.execute("SELECT * FROM aggregates WHERE aggregate_id=?", (str(aggregate_id),)).fetchone()
        return self._from_row(row) if row else None

    # ---- bucketing ----
    def _sources(self, conn: sqlite3.Connection, category: str, window: AggregationWindow) -> List[Tuple[str, float, int]]:
        """(id, timestamp, weight) for every unaggregated source inside the window."""
        if window.source == Granularity.raw:
            rows = conn.execute(
                "SELECT record_id, created_at FROM records WHERE category=? AND state=? AND aggregate_id IS NULL"
                " AND created_at >= ? AND created_at < ? ORDER BY created_at ASC, record_id ASC",
                (category, RecordState.Anonymizing.value, window.start, window.end),
            ).fetchall()
            return [(str(r["record_id"]), float(r["created_at"]), 1) for r in rows]
        rows = conn.execute(
            "SELECT aggregate_id, window_start, window_end, record_count FROM aggregates WHERE category=? AND granularity=?"
            " AND superseded_by IS NULL AND window_start >= ? AND window_end <= ? ORDER BY window_start ASC, aggregate_id ASC",
            (category, window.source.value, window.start, window.end),
        ).fetchall()
        return [(str(r["aggregate_id"]), float(r["window_start"]), int(r["record_count"])) for r in rows]

    def _group(self, sources: List[Tuple[str, float, int]], window: AggregationWindow) -> Tuple[List[_Bucket], int]:
        """Group into closed buckets; returns (buckets in time order, count of sources in still-open buckets)."""
        buckets: Dict[float, _Bucket] = {}
        open_count = 0
        for sid, ts, weight in sources:
            start, end = bucket_bounds(ts, window.granularity)
            if end > window.end:
                open_count += weight
                continue
            b = buckets.get(start)
            if b is None:
                b = _Bucket(start, end)
                b.parts = 1
                buckets[start] = b
            b.ids.append(sid)
            b.count += weight
        return [buckets[k] for k in sorted(buckets)], open_count

    def _publish(self, conn: sqlite3.Connection, category: str, window: AggregationWindow, bucket: _Bucket, cycle: int) -> Aggregate:
        agg = Aggregate(
            category=category,
            granularity=window.granularity,
            window_start=bucket.start,
            window_end=bucket.end,
            record_count=bucket.count,
            source=window.source,
            source_ids=list(bucket.ids),
            published_cycle=int(cycle),
            created_at=float(self._now()),
        )
        conn.execute(
            "INSERT INTO aggregates(aggregate_id, category, granularity, window_start, window_end, record_count, source, source_ids_json,"
            " published_cycle, created_at, superseded_by, superseded_cycle) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, NULL, NULL)",
            (
                agg.aggregate_id,
                agg.category,
                agg.granularity.value,
                agg.window_start,
                agg.window_end,
                agg.record_count,
                agg.source.value,
                json.dumps(agg.source_ids),
                agg.published_cycle,
                agg.created_at,
            ),
        )
        if window.source == Granularity.raw:
            self.ledger.link_aggregate(conn, bucket.ids, agg.aggregate_id, cycle)
        else:
            for sid in bucket.ids:
                conn.execute(
                    "UPDATE aggregates SET superseded_by=?, superseded_cycle=? WHERE aggregate_id=? AND superseded_by IS NULL",
                    (agg.aggregate_id, int(cycle), sid),
                )
        return agg

    # ---- operations ----
    def aggregate(self, category: str, window: AggregationWindow, *, cycle: int) -> AggregateReport:
        """
        Publish aggregates for every closed bucket of `window` that reaches k, merging
        under-threshold buckets forward. Nothing is erased here.
        """
        report = AggregateReport(category=category, granularity=window.granularity, source=window.source, cycle=int(cycle))
        with self.db.transaction() as conn:
            sources = self._sources(conn, category, window)
            buckets, open_count = self._group(sources, window)
            report.deferred_records += open_count
            acc: Optional[_Bucket] = None
            for b in buckets:
                if acc is None:
                    acc = b
                else:
                    acc.absorb(b)
                if acc.count >= self.k:
                    if acc.parts > 1:
                        report.merged_buckets += acc.parts - 1
                    report.published.append(self._publish(conn, category, window, acc, cycle))
                    acc = None
            if acc is not None:
                report.deferred_buckets += acc.parts
                report.deferred_records += acc.count
        if self.logger and (report.published or report.deferred_buckets):
            self.logger.info(
                f"Aggregation {category} {window.source.value}->{window.granularity.value} cycle {cycle}: "
                f"{len(report.published)} published, {report.merged_buckets} merged, {report.deferred_buckets} bucket(s) deferred."
            )
        return report

    def erase_backing_rows(self, category: str, *, cycle: int, actor: str = "system") -> Dict[str, int]:
        """
        Erase raw rows whose aggregate was published at least `erase_delay_cycles` cycles ago. Held rows are skipped;
        other per-row failures are counted and retried next cycle.
        """
        out = {"erased": 0, "held": 0, "failed": 0}
        with self.db.read() as conn:
            rows = conn.execute(
                "SELECT record_id FROM records WHERE category=? AND state=? AND aggregate_id IS NOT NULL AND aggregate_cycle <= ?"
                " ORDER BY record_id ASC",
                (category, RecordState.Anonymizing.value, int(cycle) - self.erase_delay_cycles),
            ).fetchall()
        for r in rows:
            rid = str(r["record_id"])
            try:
                self.executor.erase_fine_grained(rid, actor=actor, note=f"aggregate cycle {cycle}")
                out["erased"] += 1
            except HeldError:
                out["held"] += 1
            except (PartialDeletionError, VerificationFailure) as e:
                out["failed"] += 1
                if self.logger:
                    self.logger.warning(f"Fine-grained erase of {rid} deferred: {e}")
        return out

    def purge_superseded(self, category: str, *, cycle: int) -> int:
        """Drop finer aggregates once the coarser one that replaced them is from an earlier cycle."""
        with self.db.transaction() as conn:
            cur = conn.execute(
                "DELETE FROM aggregates WHERE category=? AND superseded_by IS NOT NULL AND superseded_cycle < ?",
                (category, int(cycle)),
            )
            return int(cur.rowcount or 0)

    def expire_aggregates(self, category: str, rule: RetentionRule, *, as_of: float) -> int:
        """Aggregates are deleted too once their window is past the category's retention period."""
        with self.db.transaction() as conn:
            cur = conn.execute(
                "DELETE FROM aggregates WHERE category=? AND superseded_by IS NULL AND window_end + ? < ?",
                (category, float(rule.retention_offset_seconds), float(as_of)),
            )
            return int(cur.rowcount or 0)

    def run_cycle(self, rule: RetentionRule, *, as_of: float, cycle: int, actor: str = "system") -> CycleReport:
        """
        One weekly pass for a category: erase rows covered by earlier cycles, drop superseded
        aggregates, publish new raw aggregates, climb the ladder, expire old aggregates.
        """
        category = rule.name
        report = CycleReport(category=category, cycle=int(cycle))
        erased = self.erase_backing_rows(category, cycle=cycle, actor=actor)
        report.fine_rows_erased = erased["erased"]
        report.fine_rows_held = erased["held"]
        report.fine_rows_failed = erased["failed"]
        report.superseded_purged = self.purge_superseded(category, cycle=cycle)

        base = rule.category.min_aggregation_granularity
        report.reports.append(self.aggregate(category, AggregationWindow(end=as_of, granularity=base), cycle=cycle))
        previous = base
        for step in self.ladder:
            if step.granularity.rank <= base.rank:
                continue
            end = float(as_of) - step.after_days * DAY
            if end <= 0:
                previous = step.granularity
                continue
            try:
                window = AggregationWindow(end=end, granularity=step.granularity, source=previous)
                report.reports.append(self.aggregate(category, window, cycle=cycle))
            except RetainerError as e:
                report.errors.append(str(e))
            previous = step.granularity
        report.aggregates_expired = self.expire_aggregates(category, rule, as_of=as_of)
        return report
