from __future__ import annotations

import os
from typing import Any, Dict, List, Optional, Sequence

import pytest

from helpers.fakes import DummyLogger, FakeClock

from retainer.core.catalog.models import RecordCategory
from retainer.core.config.models import CatalogConfigFile, EngineConfig, RetainerConfig, default_categories
from retainer.core.engine import LifecycleEngine
from retainer.core.executor.stores import InMemoryStore, RecordStore


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def primary():
    return InMemoryStore("primary")


def build_config(
    *,
    engine: Optional[Dict[str, Any]] = None,
    extra_categories: Sequence[RecordCategory] = (),
) -> RetainerConfig:
    raw: Dict[str, Any] = {"executor": {"backoff_seconds": 0, "stores": []}, "schedule": {"poll_seconds": 0.05}}
    for section, values in (engine or {}).items():
        raw[section] = {**raw.get(section, {}), **values}
    cats: List[RecordCategory] = default_categories() + list(extra_categories)
    return RetainerConfig(engine=EngineConfig.model_validate(raw), catalog=CatalogConfigFile(categories=cats))


@pytest.fixture
def make_engine(tmp_path, clock, primary):
    """
    Engine over tmp_path with a fake clock and in-memory stores. Calling it twice gives
    two engines (two "processes") over the same database.
    """

    def _make(
        *,
        stores: Optional[Sequence[RecordStore]] = None,
        engine: Optional[Dict[str, Any]] = None,
        extra_categories: Sequence[RecordCategory] = (),
        root: Optional[str] = None,
    ) -> LifecycleEngine:
        cfg = build_config(engine=engine, extra_categories=extra_categories)
        return LifecycleEngine(
            cfg,
            root=root or str(tmp_path),
            logger=DummyLogger(),
            stores=list(stores) if stores is not None else [primary],
            now=clock.time,
            sleep=lambda _s: None,
        )

    return _make


@pytest.fixture
def engine(make_engine):
    return make_engine()


@pytest.fixture
def case_file():
    """A plain 90 day retention category used by the hold scenarios."""
    return RecordCategory(name="case-file", post_active_retention_days=90)


@pytest.fixture
def ops_path(tmp_path):
    return os.path.join(str(tmp_path), "logs", "ops.jsonl")
