from __future__ import annotations

import contextlib
import os
import sqlite3
from typing import Iterator


class Database:
    """
    Shared SQLite handle for every lifecycle table.

    NOTES:
    - one short-lived connection per operation (thread safe, multi-process safe with WAL)
    - writers use BEGIN IMMEDIATE so the audit chain head is read and extended atomically
    """

    def __init__(self, path: str, *, busy_timeout_ms: int = 10_000):
        self.path = str(path)
        self.busy_timeout_ms = int(busy_timeout_ms)
        if self.path != ":memory:":
            os.makedirs(os.path.dirname(os.path.abspath(self.path)) or ".", exist_ok=True)

    def connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path, check_same_thread=False, isolation_level=None, timeout=self.busy_timeout_ms / 1000.0)
        conn.row_factory = sqlite3.Row
        conn.execute(f"PRAGMA busy_timeout={self.busy_timeout_ms};")
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        return conn

    @contextlib.contextmanager
    def read(self) -> Iterator[sqlite3.Connection]:
        conn = self.connect()
        try:
            yield conn
        finally:
            conn.close()

    @contextlib.contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        conn = self.connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()
