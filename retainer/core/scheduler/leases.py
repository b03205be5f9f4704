from __future__ import annotations

import contextlib
import time
from typing import Any, Iterator, List, Optional

from pydantic import BaseModel, ConfigDict

from retainer.core.errors import LeaseContentionError
from retainer.core.storage.sqlite import Database


class Lease(BaseModel):
    model_config = ConfigDict(extra="forbid")

    shard: str
    owner: str
    acquired_at: float
    expires_at: float


def shard_key(job: str, category: str, index: Optional[int] = None, total: int = 1) -> str:
    """Lease unit name, ``job:category`` or ``job:category:i/N`` when the category is split."""
    if index is None or int(total) <= 1:
        return f"{job}:{category}"
    return f"{job}:{category}:{int(index)}/{int(total)}"


class LeaseTable:
    """
    TTL'd ownership of a shard so only one worker sweeps it at a time.

    A lease held by someone else and not yet expired cannot be taken; an expired one can.
    Renewal by anyone but the current owner fails, which is how a worker notices it lost
    its shard mid-sweep.
    """

    def __init__(self, db: Database, *, ttl_seconds: float = 300.0, logger: Any = None, now: Any = None):
        self.db = db
        self.ttl_seconds = max(1.0, float(ttl_seconds))
        self.logger = logger
        self._now = now or time.time
        self._init_db()

    def _init_db(self) -> None:
        with self.db.transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS shard_leases (
                  shard TEXT PRIMARY KEY,
                  owner TEXT NOT NULL,
                  acquired_at REAL NOT NULL,
                  expires_at REAL NOT NULL
                )
                """
            )

    def get(self, shard: str) -> Optional[Lease]:
        with self.db.read() as conn:
            row = conn.execute("SELECT * FROM shard_leases WHERE shard=?", (str(shard),)).fetchone()
        if row is None:
            return None
        return Lease(shard=str(row["shard"]), owner=str(row["owner"]), acquired_at=float(row["acquired_at"]), expires_at=float(row["expires_at"]))

    def active(self) -> List[Lease]:
        now = float(self._now())
        with self.db.read() as conn:
            rows = conn.execute("SELECT * FROM shard_leases WHERE expires_at > ? ORDER BY shard", (now,)).fetchall()
        return [Lease(shard=str(r["shard"]), owner=str(r["owner"]), acquired_at=float(r["acquired_at"]), expires_at=float(r["expires_at"])) for r in rows]

    def acquire(self, shard: str, owner: str, *, ttl_seconds: Optional[float] = None) -> Lease:
        ttl = self.ttl_seconds if ttl_seconds is None else max(1.0, float(ttl_seconds))
        now = float(self._now())
        with self.db.transaction() as conn:
            row = conn.execute("SELECT owner, expires_at FROM shard_leases WHERE shard=?", (str(shard),)).fetchone()
            if row is not None and str(row["owner"]) != str(owner) and float(row["expires_at"]) > now:
                raise LeaseContentionError(f"Shard '{shard}' is leased by another worker.", shard=shard, owner=str(row["owner"]))
            conn.execute(
                "INSERT INTO shard_leases(shard, owner, acquired_at, expires_at) VALUES (?, ?, ?, ?) "
                "ON CONFLICT(shard) DO UPDATE SET owner=excluded.owner, acquired_at=excluded.acquired_at, expires_at=excluded.expires_at",
                (str(shard), str(owner), now, now + ttl),
            )
        return Lease(shard=str(shard), owner=str(owner), acquired_at=now, expires_at=now + ttl)

    def renew(self, shard: str, owner: str, *, ttl_seconds: Optional[float] = None) -> Lease:
        ttl = self.ttl_seconds if ttl_seconds is None else max(1.0, float(ttl_seconds))
        now = float(self._now())
        with self.db.transaction() as conn:
            row = conn.execute("SELECT owner, acquired_at FROM shard_leases WHERE shard=?", (str(shard),)).fetchone()
            if row is None or str(row["owner"]) != str(owner):
                if self.logger:
                    self.logger.warning(f"Lease on '{shard}' lost by {owner}.")
                raise LeaseContentionError(f"Lease on shard '{shard}' is no longer held by this worker.", shard=shard)
            conn.execute("UPDATE shard_leases SET expires_at=? WHERE shard=? AND owner=?", (now + ttl, str(shard), str(owner)))
            acquired = float(row["acquired_at"])
        return Lease(shard=str(shard), owner=str(owner), acquired_at=acquired, expires_at=now + ttl)

    def keep(self, shard: str, owner: str) -> Lease:
        """
        Confirm `owner` still holds `shard`, renewing once less than half the TTL is left.
        Raises LeaseContentionError when the shard was taken over.
        """
        lease = self.get(shard)
        if lease is None or lease.owner != str(owner):
            if self.logger:
                self.logger.warning(f"Lease on '{shard}' lost by {owner}.")
            raise LeaseContentionError(f"Lease on shard '{shard}' is no longer held by this worker.", shard=shard)
        if lease.expires_at - float(self._now()) < self.ttl_seconds / 2:
            return self.renew(shard, owner)
        return lease

    def release(self, shard: str, owner: str) -> bool:
        with self.db.transaction() as conn:
            cur = conn.execute("DELETE FROM shard_leases WHERE shard=? AND owner=?", (str(shard), str(owner)))
            return bool(cur.rowcount)

    @contextlib.contextmanager
    def held(self, shard: str, owner: str) -> Iterator[Lease]:
        lease = self.acquire(shard, owner)
        try:
            yield lease
        finally:
            self.release(shard, owner)
