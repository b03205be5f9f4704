from __future__ import annotations

import json
import os
import shutil
import tempfile
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from retainer.core.config.paths import ConfigFsPaths


@dataclass(frozen=True)
class ReadResult:
    ok: bool
    data: Dict[str, Any]
    error: Optional[str] = None

    @property
    def corrupt(self) -> bool:
        return bool(self.error) and (self.error.startswith("corrupt_json") or self.error == "not_object")


def read_json_file(path: str) -> ReadResult:
    if not os.path.exists(path):
        return ReadResult(ok=False, data={}, error="missing")
    try:
        with open(path, "r", encoding="utf-8") as f:
            obj = json.load(f)
    except json.JSONDecodeError as e:
        return ReadResult(ok=False, data={}, error=f"corrupt_json:{e}")
    except OSError as e:
        return ReadResult(ok=False, data={}, error=str(e))
    if not isinstance(obj, dict):
        return ReadResult(ok=False, data={}, error="not_object")
    return ReadResult(ok=True, data=obj)


class JsonFileStore:
    """
    File side of the config layer.

    backups/<file>.<stamp>.<reason>.json  copies taken before every overwrite and of corrupt files
    backups/last_known_good/<file>         the set that last validated, used to recover
    """

    def __init__(self, fs: ConfigFsPaths, *, max_backups: int = 10):
        self.fs = fs
        self.max_backups = max(1, int(max_backups))

    def ensure_layout(self) -> None:
        for d in (self.fs.config_dir, self.fs.backups_dir, self.fs.last_known_good_dir):
            os.makedirs(d, exist_ok=True)

    def path(self, filename: str) -> str:
        return os.path.join(self.fs.config_dir, filename)

    def read(self, filename: str) -> ReadResult:
        return read_json_file(self.path(filename))

    def _stamp(self) -> str:
        return time.strftime("%Y%m%dT%H%M%SZ", time.gmtime()) + f".{time.time_ns() % 1_000_000_000:09d}"

    def backups_of(self, filename: str) -> List[str]:
        if not os.path.isdir(self.fs.backups_dir):
            return []
        prefix = f"{filename}."
        names = sorted(n for n in os.listdir(self.fs.backups_dir) if n.startswith(prefix))
        return [os.path.join(self.fs.backups_dir, n) for n in names]

    def _prune(self, filename: str) -> None:
        for p in self.backups_of(filename)[: -self.max_backups]:
            try:
                os.remove(p)
            except FileNotFoundError:
                continue

    def backup(self, filename: str, *, reason: str) -> Optional[str]:
        src = self.path(filename)
        if not os.path.exists(src):
            return None
        os.makedirs(self.fs.backups_dir, exist_ok=True)
        out = os.path.join(self.fs.backups_dir, f"{filename}.{self._stamp()}.{reason}.json")
        shutil.copy2(src, out)
        self._prune(filename)
        return out

    def write(self, filename: str, data: Dict[str, Any]) -> None:
        """Backup, then write through a temp file in the same directory and rename over."""
        self.ensure_layout()
        self.backup(filename, reason="prewrite")
        fd, tmp = tempfile.mkstemp(prefix=".tmp_", suffix=".json", dir=self.fs.config_dir)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, ensure_ascii=False, sort_keys=True)
                f.write("\n")
            os.replace(tmp, self.path(filename))
        finally:
            if os.path.exists(tmp):
                os.remove(tmp)

    def recover(self, filename: str) -> Tuple[Dict[str, Any], bool]:
        """
        Move a corrupt file aside and put the last known good copy back.
        Returns (data, recovered); ({}, False) when there is nothing to restore.
        """
        self.ensure_layout()
        src = self.path(filename)
        if os.path.exists(src):
            shutil.move(src, os.path.join(self.fs.backups_dir, f"{filename}.{self._stamp()}.corrupt.json"))
            self._prune(filename)
        rr = read_json_file(os.path.join(self.fs.last_known_good_dir, filename))
        if not rr.ok:
            return {}, False
        self.write(filename, rr.data)
        return rr.data, True

    def snapshot_last_known_good(self, filenames: Tuple[str, ...]) -> None:
        os.makedirs(self.fs.last_known_good_dir, exist_ok=True)
        for name in filenames:
            src = self.path(name)
            if os.path.isfile(src):
                shutil.copy2(src, os.path.join(self.fs.last_known_good_dir, name))
