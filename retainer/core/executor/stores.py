from __future__ import annotations

import hashlib
import os
import re
import sqlite3
import threading
from typing import Any, Dict, List, Optional, Protocol, Sequence, runtime_checkable

from retainer.core.errors import ConfigError

_SAFE_ID_RE = re.compile(r"^[A-Za-z0-9_\-\.]{1,100}$")
_SAFE_TABLE_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}$")


@runtime_checkable
class RecordStore(Protocol):
    """
    A downstream copy of record content (primary db, cache, backup generation...).

    `erase` must be idempotent (erasing an absent record is a no-op) and `contains` is the
    post-deletion verification read.
    """

    name: str

    def erase(self, record_id: str) -> None: ...

    def contains(self, record_id: str) -> bool: ...


def _file_name(record_id: str) -> str:
    rid = str(record_id)
    if _SAFE_ID_RE.match(rid) and rid not in {".", ".."}:
        return rid + ".bin"
    return hashlib.sha256(rid.encode("utf-8")).hexdigest() + ".bin"


class InMemoryStore:
    def __init__(self, name: str = "memory"):
        self.name = str(name)
        self._data: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def put(self, record_id: str, data: bytes) -> None:
        with self._lock:
            self._data[str(record_id)] = bytes(data)

    def erase(self, record_id: str) -> None:
        with self._lock:
            self._data.pop(str(record_id), None)

    def contains(self, record_id: str) -> bool:
        with self._lock:
            return str(record_id) in self._data


class DirectoryStore:
    """
    One file per record, optionally replicated across backup generation sub-directories
    (``<root>/<generation>/<record>.bin``). Erasure removes every generation.
    """

    def __init__(self, name: str, root: str, *, generations: Optional[Sequence[str]] = None):
        self.name = str(name)
        self.root = str(root)
        self.generations = [str(g) for g in (generations or [""])]
        for g in self.generations:
            os.makedirs(os.path.join(self.root, g), exist_ok=True)

    def _paths(self, record_id: str) -> List[str]:
        fn = _file_name(record_id)
        return [os.path.join(self.root, g, fn) for g in self.generations]

    def put(self, record_id: str, data: bytes) -> None:
        for p in self._paths(record_id):
            with open(p, "wb") as f:
                f.write(bytes(data))

    def erase(self, record_id: str) -> None:
        for p in self._paths(record_id):
            try:
                os.remove(p)
            except FileNotFoundError:
                continue

    def contains(self, record_id: str) -> bool:
        return any(os.path.exists(p) for p in self._paths(record_id))


class SqliteTableStore:
    """Rows keyed by record id in an application table (``DELETE`` is a hard delete)."""

    def __init__(self, name: str, db_path: str, *, table: str = "record_content", key_column: str = "record_id", create: bool = True):
        if not _SAFE_TABLE_RE.match(table) or not _SAFE_TABLE_RE.match(key_column):
            raise ConfigError("Invalid table or column name for sqlite store.", table=table, key_column=key_column)
        self.name = str(name)
        self.db_path = str(db_path)
        self.table = table
        self.key_column = key_column
        os.makedirs(os.path.dirname(os.path.abspath(self.db_path)) or ".", exist_ok=True)
        if create:
            with self._conn() as c:
                c.execute(f"CREATE TABLE IF NOT EXISTS {self.table} ({self.key_column} TEXT PRIMARY KEY, body BLOB)")

    def _conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=10.0)
        conn.execute("PRAGMA journal_mode=WAL;")
        return conn

    def put(self, record_id: str, data: bytes) -> None:
        with self._conn() as c:
            c.execute(f"INSERT OR REPLACE INTO {self.table}({self.key_column}, body) VALUES (?, ?)", (str(record_id), bytes(data)))

    def erase(self, record_id: str) -> None:
        conn = self._conn()
        try:
            with conn:
                conn.execute(f"DELETE FROM {self.table} WHERE {self.key_column}=?", (str(record_id),))
            # reclaim pages so erased content does not linger in free pages
            conn.execute("PRAGMA incremental_vacuum;")
        finally:
            conn.close()

    def contains(self, record_id: str) -> bool:
        conn = self._conn()
        try:
            row = conn.execute(f"SELECT 1 FROM {self.table} WHERE {self.key_column}=? LIMIT 1", (str(record_id),)).fetchone()
        finally:
            conn.close()
        return row is not None


def build_stores(specs: Sequence[Dict[str, Any]]) -> List[RecordStore]:
    """Instantiate stores from `executor.stores` config entries."""
    out: List[RecordStore] = []
    seen = set()
    for spec in specs or []:
        kind = str(spec.get("kind") or "").lower()
        name = str(spec.get("name") or kind)
        if name in seen:
            raise ConfigError(f"Duplicate store name '{name}'.", store=name)
        seen.add(name)
        if kind == "memory":
            out.append(InMemoryStore(name))
        elif kind == "directory":
            out.append(DirectoryStore(name, str(spec.get("path") or name), generations=spec.get("generations") or None))
        elif kind == "sqlite":
            out.append(
                SqliteTableStore(
                    name,
                    str(spec.get("path") or f"{name}.sqlite"),
                    table=str(spec.get("table") or "record_content"),
                    key_column=str(spec.get("key_column") or "record_id"),
                )
            )
        else:
            raise ConfigError(f"Unknown store kind '{kind}'.", store=name)
    return out
