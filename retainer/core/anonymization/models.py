from __future__ import annotations

import time
import uuid
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from retainer.core.catalog.models import Granularity


class AggregationWindow(BaseModel):
    """
    Time range to aggregate, the target bucket size and what is being rolled up
    (raw records, or aggregates of a finer granularity).
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    start: float = 0.0
    end: float
    granularity: Granularity
    source: Granularity = Granularity.raw

    @model_validator(mode="after")
    def _check(self) -> "AggregationWindow":
        if self.end <= self.start:
            raise ValueError("window end must be after start")
        if self.granularity.rank <= self.source.rank:
            raise ValueError("target granularity must be coarser than the source")
        return self


class Aggregate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    aggregate_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    category: str
    granularity: Granularity
    window_start: float
    window_end: float
    record_count: int = Field(ge=0)
    source: Granularity = Granularity.raw
    source_ids: List[str] = Field(default_factory=list)
    published_cycle: int
    created_at: float = Field(default_factory=lambda: time.time())
    superseded_by: Optional[str] = None
    superseded_cycle: Optional[int] = None


class AggregateReport(BaseModel):
    model_config = ConfigDict(extra="forbid")

    category: str
    granularity: Granularity
    source: Granularity
    cycle: int
    published: List[Aggregate] = Field(default_factory=list)
    merged_buckets: int = 0
    deferred_buckets: int = 0
    deferred_records: int = 0


class CycleReport(BaseModel):
    model_config = ConfigDict(extra="forbid")

    category: str
    cycle: int
    fine_rows_erased: int = 0
    fine_rows_held: int = 0
    fine_rows_failed: int = 0
    superseded_purged: int = 0
    aggregates_expired: int = 0
    reports: List[AggregateReport] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
