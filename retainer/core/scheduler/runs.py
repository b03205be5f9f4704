from __future__ import annotations

import json
import time
import uuid
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from retainer.core.storage.sqlite import Database


class JobRun(BaseModel):
    model_config = ConfigDict(extra="forbid")

    run_id: str
    job: str
    worker_id: str = ""
    trace_id: str = ""
    as_of: float
    started_at: float
    finished_at: Optional[float] = None
    cycle: Optional[int] = None
    status: str = "running"
    summary: Dict[str, Any] = Field(default_factory=dict)


class JobRunStore:
    """Persisted run history: restart-safe `run_due` and the weekly cycle counter live here."""

    def __init__(self, db: Database, *, now: Any = None):
        self.db = db
        self._now = now or time.time
        self._init_db()

    def _init_db(self) -> None:
        with self.db.transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS job_runs (
                  run_id TEXT PRIMARY KEY,
                  job TEXT NOT NULL,
                  worker_id TEXT,
                  trace_id TEXT,
                  as_of REAL NOT NULL,
                  started_at REAL NOT NULL,
                  finished_at REAL,
                  cycle INTEGER,
                  status TEXT NOT NULL,
                  summary_json TEXT
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_job_runs_job ON job_runs(job, started_at)")

    @staticmethod
    def _from_row(r: Any) -> JobRun:
        return JobRun(
            run_id=str(r["run_id"]),
            job=str(r["job"]),
            worker_id=str(r["worker_id"] or ""),
            trace_id=str(r["trace_id"] or ""),
            as_of=float(r["as_of"]),
            started_at=float(r["started_at"]),
            finished_at=r["finished_at"],
            cycle=r["cycle"],
            status=str(r["status"]),
            summary=json.loads(r["summary_json"] or "{}"),
        )

    def start(self, job: str, *, as_of: float, worker_id: str = "", trace_id: str = "", cycle: Optional[int] = None) -> JobRun:
        run = JobRun(
            run_id=uuid.uuid4().hex,
            job=str(job),
            worker_id=str(worker_id),
            trace_id=str(trace_id),
            as_of=float(as_of),
            started_at=float(self._now()),
            cycle=cycle,
        )
        with self.db.transaction() as conn:
            conn.execute(
                "INSERT INTO job_runs(run_id, job, worker_id, trace_id, as_of, started_at, finished_at, cycle, status, summary_json) VALUES (?, ?, ?, ?, ?, ?, NULL, ?, 'running', '{}')",
                (run.run_id, run.job, run.worker_id, run.trace_id, run.as_of, run.started_at, run.cycle),
            )
        return run

    def finish(self, run_id: str, *, status: str, summary: Optional[Dict[str, Any]] = None) -> None:
        with self.db.transaction() as conn:
            conn.execute(
                "UPDATE job_runs SET finished_at=?, status=?, summary_json=? WHERE run_id=?",
                (float(self._now()), str(status), json.dumps(summary or {}, sort_keys=True, default=str), str(run_id)),
            )

    def next_cycle(self, job: str) -> int:
        """Cycles are allocated at start, so a crashed run still consumes its number."""
        with self.db.read() as conn:
            row = conn.execute("SELECT MAX(cycle) AS c FROM job_runs WHERE job=?", (str(job),)).fetchone()
        return int(row["c"] or 0) + 1

    def last_completed(self, job: str) -> Optional[JobRun]:
        with self.db.read() as conn:
            row = conn.execute(
                "SELECT * FROM job_runs WHERE job=? AND status IN ('ok', 'partial') ORDER BY as_of DESC, started_at DESC LIMIT 1",
                (str(job),),
            ).fetchone()
        return self._from_row(row) if row else None

    def history(self, job: Optional[str] = None, *, limit: int = 50) -> List[JobRun]:
        sql = "SELECT * FROM job_runs"
        params: List[Any] = []
        if job:
            sql += " WHERE job=?"
            params.append(str(job))
        sql += " ORDER BY started_at DESC LIMIT ?"
        params.append(max(1, int(limit)))
        with self.db.read() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._from_row(r) for r in rows]
