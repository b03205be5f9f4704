from __future__ import annotations

import threading
import time

import pytest

from retainer.core.errors import LeaseContentionError
from retainer.core.scheduler.leases import LeaseTable, shard_key
from retainer.core.scheduler.scheduler import Scheduler
from retainer.core.timeutil import days


def test_shard_key_format():
    assert shard_key("daily", "auth-token") == "daily:auth-token"
    assert shard_key("daily", "auth-token", 2, 4) == "daily:auth-token:2/4"
    assert shard_key("daily", "auth-token", 0, 1) == "daily:auth-token"


def test_lease_contention_and_expiry(engine, clock):
    leases = LeaseTable(engine.db, ttl_seconds=30, now=clock.time)
    leases.acquire("daily:x", "w1")
    with pytest.raises(LeaseContentionError):
        leases.acquire("daily:x", "w2")
    # the owner may re-acquire its own lease
    leases.acquire("daily:x", "w1")

    clock.advance(31)
    taken = leases.acquire("daily:x", "w2")
    assert taken.owner == "w2"
    with pytest.raises(LeaseContentionError):
        leases.renew("daily:x", "w1")
    assert not leases.release("daily:x", "w1")
    assert leases.release("daily:x", "w2")
    assert leases.get("daily:x") is None


def test_renew_extends_expiry(engine, clock):
    leases = LeaseTable(engine.db, ttl_seconds=30, now=clock.time)
    first = leases.acquire("weekly:x", "w1")
    clock.advance(20)
    renewed = leases.renew("weekly:x", "w1")
    assert renewed.expires_at == first.expires_at + 20
    assert renewed.acquired_at == first.acquired_at


def test_keep_renews_only_past_half_ttl(engine, clock):
    leases = LeaseTable(engine.db, ttl_seconds=30, now=clock.time)
    first = leases.acquire("daily:x", "w1")
    clock.advance(10)
    assert leases.keep("daily:x", "w1").expires_at == first.expires_at
    clock.advance(10)
    assert leases.keep("daily:x", "w1").expires_at == clock.time() + 30

    clock.advance(31)
    leases.acquire("daily:x", "w2")
    with pytest.raises(LeaseContentionError):
        leases.keep("daily:x", "w1")


def test_held_context_releases(engine, clock):
    leases = LeaseTable(engine.db, now=clock.time)
    with leases.held("monthly:all", "w1") as lease:
        assert lease.owner == "w1"
        assert [x.shard for x in leases.active()] == ["monthly:all"]
    assert leases.active() == []


def test_run_due_survives_restart(make_engine, clock):
    engine = make_engine()
    reports = engine.scheduler.run_due()
    assert [r.job for r in reports] == ["daily", "weekly", "monthly"]
    assert engine.scheduler.run_due() == []

    restarted = make_engine()
    assert not restarted.scheduler.is_due("daily")

    clock.advance(days(1))
    assert [r.job for r in restarted.scheduler.run_due()] == ["daily"]

    clock.advance(days(6))
    assert [r.job for r in restarted.scheduler.run_due()] == ["daily", "weekly"]


def test_weekly_cycle_counter_is_persisted(make_engine, clock):
    engine = make_engine()
    assert engine.run_aggregation().cycle == 1
    assert make_engine().run_aggregation().cycle == 2
    assert sorted(r.cycle for r in engine.runs.history("weekly")) == [1, 2]


def test_scheduler_thread_starts_and_stops(engine):
    engine.scheduler.start()
    assert engine.scheduler.running
    for _ in range(100):
        if all(engine.runs.last_completed(j) is not None for j in ("daily", "weekly", "monthly")):
            break
        time.sleep(0.05)
    engine.scheduler.stop()
    assert not engine.scheduler.running
    assert all(engine.runs.last_completed(j) is not None for j in ("daily", "weekly", "monthly"))


class _BlockedJob:
    """Stands in for a daily sweep stuck on a slow store until released or cancelled."""

    def __init__(self):
        self.entered = threading.Event()
        self.release = threading.Event()

    def run(self, *, as_of=None, categories=None, cancel=None):
        self.entered.set()
        while not self.release.is_set() and not cancel.is_set():
            self.release.wait(0.01)


def test_jobs_run_on_separate_threads(engine, clock):
    blocked = _BlockedJob()
    scheduler = Scheduler(
        runs=engine.runs,
        jobs={"daily": (blocked, days(1)), "monthly": (engine.monthly, days(30))},
        poll_seconds=0.05,
        now=clock.time,
    )
    scheduler.start()
    try:
        assert blocked.entered.wait(5)
        for _ in range(100):
            if engine.runs.last_completed("monthly") is not None:
                break
            time.sleep(0.05)
        assert engine.runs.last_completed("monthly") is not None
        assert not blocked.release.is_set()
    finally:
        scheduler.stop()
    assert not scheduler.running
