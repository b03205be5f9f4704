from __future__ import annotations

import json
import sys

from retainer.core.config.manager import ConfigManager
from retainer.core.config.paths import ConfigFsPaths


def main() -> None:
    root = sys.argv[1] if len(sys.argv) > 1 else "."
    cm = ConfigManager(fs=ConfigFsPaths(root), logger=None, read_only=True)
    cfg = cm.load_all()
    dump = cfg.model_dump(mode="json")
    if dump["engine"]["web"].get("api_key"):
        dump["engine"]["web"]["api_key"] = "***REDACTED***"
    print(json.dumps(dump, indent=2, sort_keys=True))


if __name__ == "__main__":
    main()
