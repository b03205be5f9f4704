from __future__ import annotations

import sqlite3
import threading
import time
from typing import Any, Dict, List, Optional, Tuple

from retainer.core.scheduler.jobs import _Job
from retainer.core.scheduler.models import SweepReport
from retainer.core.scheduler.runs import JobRunStore


class Scheduler:
    """
    Periodic driver for the daily/weekly/monthly jobs.

    Each job gets its own supervisor thread, so a long daily sweep never delays the
    weekly or monthly run. Due-ness is computed from the persisted run history
    (`job_runs`), not from process uptime, so a restart neither skips nor doubles a run.
    `stop()` sets the cancel event that in-flight sweeps check between records.
    """

    def __init__(
        self,
        *,
        runs: JobRunStore,
        jobs: Dict[str, Tuple[_Job, float]],
        poll_seconds: float = 60.0,
        logger: Any = None,
        now: Any = None,
    ):
        self.runs = runs
        self.jobs = dict(jobs)
        self.poll_seconds = max(0.05, float(poll_seconds))
        self.logger = logger
        self._now = now or time.time
        self._stop = threading.Event()
        self._threads: Dict[str, threading.Thread] = {}
        # one run per job at a time, whether started by its thread or by run_due()
        self._job_locks = {name: threading.Lock() for name in self.jobs}

    def is_due(self, name: str, now: Optional[float] = None) -> bool:
        _, interval = self.jobs[name]
        t = float(self._now() if now is None else now)
        last = self.runs.last_completed(name)
        return last is None or t - float(last.as_of) >= float(interval)

    def run_if_due(self, name: str, now: Optional[float] = None) -> Optional[SweepReport]:
        job, _ = self.jobs[name]
        t = float(self._now() if now is None else now)
        with self._job_locks[name]:
            if self._stop.is_set() or not self.is_due(name, t):
                return None
            return job.run(as_of=t, cancel=self._stop)

    def run_due(self, now: Optional[float] = None) -> List[SweepReport]:
        """Run every due job once, in order, on the calling thread (`run --once`)."""
        t = float(self._now() if now is None else now)
        out: List[SweepReport] = []
        for name in self.jobs:
            if self._stop.is_set():
                break
            report = self.run_if_due(name, t)
            if report is not None:
                out.append(report)
        return out

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._threads = {
            name: threading.Thread(target=self._loop, args=(name,), name=f"retainer-{name}", daemon=True) for name in self.jobs
        }
        for t in self._threads.values():
            t.start()
        if self.logger:
            self.logger.info(f"Scheduler started ({', '.join(self.jobs)}; poll {self.poll_seconds:g}s).")

    def stop(self, timeout: float = 10.0) -> None:
        self._stop.set()
        deadline = time.monotonic() + float(timeout)
        for t in self._threads.values():
            t.join(timeout=max(0.0, deadline - time.monotonic()))
        self._threads = {}
        if self.logger:
            self.logger.info("Scheduler stopped.")

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads.values())

    def _loop(self, name: str) -> None:
        while not self._stop.is_set():
            try:
                self.run_if_due(name)
            except sqlite3.Error as e:
                # already recorded as a failed run; the next tick retries
                if self.logger:
                    self.logger.error(f"Scheduler tick for {name} failed: {e}")
            self._stop.wait(self.poll_seconds)
