from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import ValidationError as PydanticValidationError

from retainer.core.config.io import JsonFileStore
from retainer.core.config.models import CatalogConfigFile, EngineConfig, RetainerConfig, default_config_files
from retainer.core.config.paths import ConfigFsPaths
from retainer.core.errors import ConfigError

CONFIG_FILES = ("engine.json", "catalog.json")


class ConfigManager:
    """
    Loads `config/engine.json` and `config/catalog.json`.

    Missing files are created with defaults, corrupt ones are moved aside and restored from
    `backups/last_known_good`, and every write is atomic with a pre-write backup.
    A read-only manager never touches the disk (used by the scripts).
    """

    def __init__(self, *, fs: Optional[ConfigFsPaths] = None, logger: Any = None, read_only: bool = False, max_backups: int = 10):
        self.fs = fs or ConfigFsPaths(".")
        self.files = JsonFileStore(self.fs, max_backups=max_backups)
        self.logger = logger
        self.read_only = read_only
        self._cfg: Optional[RetainerConfig] = None
        self._raw_last: Dict[str, Dict[str, Any]] = {}

    # ---------- public API ----------
    def load_all(self) -> RetainerConfig:
        if not self.read_only:
            self.files.ensure_layout()
        raw = self._with_defaults(self._read_all())
        cfg = self._validate(raw)
        self._cfg = cfg
        self._raw_last = {k: dict(v) for k, v in raw.items()}
        if not self.read_only:
            self.files.snapshot_last_known_good(CONFIG_FILES)
        return cfg

    def get(self) -> RetainerConfig:
        if self._cfg is None:
            raise ConfigError("Config not loaded.")
        return self._cfg

    def validate(self) -> None:
        self._validate(self._with_defaults(self._read_all()))

    def save_non_sensitive(self, filename: str, data: Dict[str, Any]) -> RetainerConfig:
        """Validate the whole set with `data` swapped in, then write and reload."""
        if self.read_only:
            raise ConfigError("Config manager is read-only.")
        if filename not in CONFIG_FILES:
            raise ConfigError(f"Unknown config file '{filename}'.", filename=filename)
        if not isinstance(data, dict):
            raise ConfigError("Config data must be an object.")
        raw = dict(self._raw_last or self._read_all())
        raw[filename] = data
        self._validate(raw)
        self.files.write(filename, data)
        return self.load_all()

    def reload_if_changed(self) -> bool:
        """Re-read from disk; an invalid edit is rejected and the previous config kept."""
        if self._cfg is None:
            return False
        raw = self._read_all()
        changed = sorted(k for k, v in raw.items() if self._raw_last.get(k) != v)
        if not changed:
            return False
        try:
            cfg = self._validate(raw)
        except ConfigError as e:
            if self.logger:
                self.logger.warning(f"Config reload rejected (keeping previous): {e}")
            return False
        self._cfg = cfg
        self._raw_last = {k: dict(v) for k, v in raw.items()}
        if self.logger:
            self.logger.info(f"Config reloaded: {changed}")
        return True

    # ---------- internals ----------
    def _read_all(self) -> Dict[str, Dict[str, Any]]:
        out: Dict[str, Dict[str, Any]] = {}
        for name in CONFIG_FILES:
            rr = self.files.read(name)
            if rr.ok:
                out[name] = rr.data
            elif rr.corrupt and not self.read_only:
                data, recovered = self.files.recover(name)
                if self.logger:
                    self.logger.warning(f"Config {name} was corrupt; {'restored from last known good' if recovered else 'no backup, using defaults'}.")
                out[name] = data
            else:
                out[name] = {}
        return out

    def _with_defaults(self, raw: Dict[str, Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
        out = dict(raw)
        for name, dflt in default_config_files().items():
            if out.get(name):
                continue
            out[name] = dflt
            if self.logger:
                self.logger.warning(f"Missing config {name}; creating defaults.")
            if not self.read_only:
                self.files.write(name, dflt)
        return out

    def _validate(self, raw: Dict[str, Dict[str, Any]]) -> RetainerConfig:
        try:
            return RetainerConfig(
                engine=EngineConfig.model_validate(raw.get("engine.json") or {}),
                catalog=CatalogConfigFile.model_validate(raw.get("catalog.json") or {}),
            )
        except PydanticValidationError as e:
            raise ConfigError(f"Config validation failed: {e}") from e
