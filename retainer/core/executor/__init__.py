from __future__ import annotations

from retainer.core.executor.executor import DeletionCertificate, DeletionExecutor
from retainer.core.executor.stores import DirectoryStore, InMemoryStore, RecordStore, SqliteTableStore, build_stores

__all__ = ["DeletionCertificate", "DeletionExecutor", "DirectoryStore", "InMemoryStore", "RecordStore", "SqliteTableStore", "build_stores"]
