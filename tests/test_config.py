from __future__ import annotations

import json
import os

import pydantic
import pytest

from retainer.core.config.manager import ConfigManager
from retainer.core.config.models import AnonymizationConfig, EngineConfig, WebConfig
from retainer.core.config.paths import ConfigFsPaths
from retainer.core.errors import ConfigError


def _write(path: str, text: str) -> None:
    with open(path, "w", encoding="utf-8") as f:
        f.write(text)


def test_defaults_created_on_first_load(tmp_path):
    fs = ConfigFsPaths(str(tmp_path))
    cfg = ConfigManager(fs=fs).load_all()
    assert os.path.exists(fs.engine)
    assert os.path.exists(fs.catalog)
    assert os.path.exists(os.path.join(fs.last_known_good_dir, "engine.json"))
    assert cfg.engine.web.bind_host == "127.0.0.1"
    assert {c.name for c in cfg.catalog.categories} >= {"kyc-status", "analytics-event"}


def test_read_only_does_not_write(tmp_path):
    fs = ConfigFsPaths(str(tmp_path))
    ConfigManager(fs=fs, read_only=True).load_all()
    assert not os.path.exists(fs.engine)


def test_corrupt_file_restored_from_last_known_good(tmp_path):
    fs = ConfigFsPaths(str(tmp_path))
    cm = ConfigManager(fs=fs)
    cm.save_non_sensitive("engine.json", {"sweep": {"page_size": 42}})

    _write(fs.engine, "{not json")
    cfg = ConfigManager(fs=fs).load_all()
    assert cfg.engine.sweep.page_size == 42
    corrupt = [n for n in os.listdir(fs.backups_dir) if n.startswith("engine.json.") and n.endswith(".corrupt.json")]
    assert len(corrupt) == 1


def test_save_validates_before_writing(tmp_path):
    fs = ConfigFsPaths(str(tmp_path))
    cm = ConfigManager(fs=fs)
    cm.load_all()
    with pytest.raises(ConfigError):
        cm.save_non_sensitive("engine.json", {"sweep": {"bogus": 1}})
    with pytest.raises(ConfigError):
        cm.save_non_sensitive("secrets.json", {})
    with open(fs.engine, "r", encoding="utf-8") as f:
        assert "bogus" not in json.load(f).get("sweep", {})


def test_prewrite_backups_are_pruned(tmp_path):
    cm = ConfigManager(fs=ConfigFsPaths(str(tmp_path)), max_backups=3)
    cm.load_all()
    for i in range(6):
        cm.save_non_sensitive("engine.json", {"sweep": {"page_size": 10 + i}})
    kept = cm.files.backups_of("engine.json")
    assert len(kept) == 3
    with open(kept[-1], "r", encoding="utf-8") as f:
        assert json.load(f)["sweep"]["page_size"] == 14


def test_reload_rejects_invalid_edit(tmp_path):
    fs = ConfigFsPaths(str(tmp_path))
    cm = ConfigManager(fs=fs)
    cm.load_all()
    assert cm.reload_if_changed() is False

    _write(fs.engine, json.dumps({"leases": {"ttl_seconds": 0}}))
    assert cm.reload_if_changed() is False
    assert cm.get().engine.leases.ttl_seconds == 300

    _write(fs.engine, json.dumps({"leases": {"ttl_seconds": 60}}))
    assert cm.reload_if_changed() is True
    assert cm.get().engine.leases.ttl_seconds == 60


def test_get_before_load(tmp_path):
    with pytest.raises(ConfigError):
        ConfigManager(fs=ConfigFsPaths(str(tmp_path))).get()


def test_web_binds_loopback_unless_remote_with_key():
    assert WebConfig(bind_host="localhost").bind_host == "localhost"
    with pytest.raises(pydantic.ValidationError):
        WebConfig(bind_host="0.0.0.0")
    with pytest.raises(pydantic.ValidationError):
        WebConfig(bind_host="0.0.0.0", allow_remote=True)
    assert WebConfig(bind_host="0.0.0.0", allow_remote=True, api_key="k").allow_remote


def test_ladder_must_climb():
    with pytest.raises(pydantic.ValidationError):
        AnonymizationConfig(ladder=[{"granularity": "monthly", "after_days": 180}, {"granularity": "weekly", "after_days": 365}])
    with pytest.raises(pydantic.ValidationError):
        AnonymizationConfig(ladder=[{"granularity": "weekly", "after_days": 365}, {"granularity": "monthly", "after_days": 180}])
    with pytest.raises(pydantic.ValidationError):
        AnonymizationConfig(k_threshold=1)


def test_duplicate_store_names_rejected():
    with pytest.raises(pydantic.ValidationError):
        EngineConfig.model_validate({"executor": {"stores": [{"name": "a", "kind": "memory"}, {"name": "a", "kind": "memory"}]}})
