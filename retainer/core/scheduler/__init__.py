from __future__ import annotations

from retainer.core.scheduler.decide import Action, Decision, decide
from retainer.core.scheduler.jobs import DailyDeletionSweep, MonthlyAuditScan, WeeklyAggregationJob
from retainer.core.scheduler.leases import Lease, LeaseTable, shard_key
from retainer.core.scheduler.models import RecordFailure, SweepReport
from retainer.core.scheduler.runs import JobRun, JobRunStore
from retainer.core.scheduler.scheduler import Scheduler

__all__ = [
    "Action",
    "DailyDeletionSweep",
    "Decision",
    "JobRun",
    "JobRunStore",
    "Lease",
    "LeaseTable",
    "MonthlyAuditScan",
    "RecordFailure",
    "Scheduler",
    "SweepReport",
    "WeeklyAggregationJob",
    "decide",
    "shard_key",
]
