from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class RecordFailure(BaseModel):
    model_config = ConfigDict(extra="forbid")

    record_id: Optional[str] = None
    category: str = ""
    code: str
    message: str


class SweepReport(BaseModel):
    """Outcome of one job run. Per-record failures land in `errors`; they never abort the run."""

    model_config = ConfigDict(extra="forbid")

    job: str
    run_id: str = ""
    trace_id: str = ""
    worker_id: str = ""
    as_of: float
    started_at: float
    finished_at: Optional[float] = None
    cycle: Optional[int] = None

    shards_done: int = 0
    shards_skipped: int = 0
    shards_aborted: int = 0
    examined: int = 0
    deleted: int = 0
    pending_review: int = 0
    anonymizing: int = 0
    held_skipped: int = 0
    retried: int = 0
    retries_exhausted: int = 0
    noop: int = 0

    aggregates_published: int = 0
    buckets_merged: int = 0
    buckets_deferred: int = 0
    fine_rows_erased: int = 0
    aggregates_purged: int = 0

    anomalies_flagged: int = 0
    cancelled: bool = False
    errors: List[RecordFailure] = Field(default_factory=list)

    @property
    def status(self) -> str:
        if self.cancelled:
            return "cancelled"
        if self.errors or self.shards_aborted:
            return "partial"
        return "ok"

    def summary(self) -> Dict[str, Any]:
        d = self.model_dump(mode="json", exclude={"errors"})
        d["status"] = self.status
        d["error_count"] = len(self.errors)
        d["error_codes"] = sorted({e.code for e in self.errors})
        return d
