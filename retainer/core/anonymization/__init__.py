from __future__ import annotations

from retainer.core.anonymization.models import Aggregate, AggregateReport, AggregationWindow, CycleReport
from retainer.core.anonymization.pipeline import AnonymizationPipeline, LadderStep, bucket_bounds

__all__ = ["Aggregate", "AggregateReport", "AggregationWindow", "AnonymizationPipeline", "CycleReport", "LadderStep", "bucket_bounds"]
