"""
Offline integrity check of the audit chain and the policy catalog chain.

Usage:
  python scripts/verify_audit.py [root]

Exit code 0 when both chains verify, 1 when either is broken, 2 when the
store cannot be opened.
"""

from __future__ import annotations

import json
import os
import sqlite3
import sys

from retainer.core.audit.log import AuditLog
from retainer.core.catalog.store import PolicyCatalog
from retainer.core.config.manager import ConfigManager
from retainer.core.config.paths import ConfigFsPaths
from retainer.core.errors import RetainerError
from retainer.core.storage.sqlite import Database


def main() -> int:
    root = sys.argv[1] if len(sys.argv) > 1 else "."
    try:
        cfg = ConfigManager(fs=ConfigFsPaths(root), logger=None, read_only=True).load_all()
        db_path = cfg.engine.storage.db_path
        if not os.path.isabs(db_path):
            db_path = os.path.join(root, db_path)
        if not os.path.exists(db_path):
            print(f"FAIL: no database at {db_path}", file=sys.stderr)
            return 2
        db = Database(db_path, busy_timeout_ms=cfg.engine.storage.busy_timeout_ms)
        audit = AuditLog(db).verify_integrity()
        catalog_ok = PolicyCatalog(db).verify_chain()
    except (RetainerError, sqlite3.Error) as e:
        print(f"FAIL: {e}", file=sys.stderr)
        return 2

    print(json.dumps({"audit": audit.model_dump(mode="json"), "catalog_chain_ok": catalog_ok}, indent=2, sort_keys=True))
    if not audit.ok or not catalog_ok:
        print("FAIL: integrity check failed", file=sys.stderr)
        return 1
    print("OK: audit and catalog chains verify")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
