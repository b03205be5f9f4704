"""
Policy catalog: versioned retention rules per record category.
"""

from __future__ import annotations

from retainer.core.catalog.models import CatalogVersion, Granularity, LegalBasis, RecordCategory, RetentionRule
from retainer.core.catalog.store import PolicyCatalog

__all__ = ["CatalogVersion", "Granularity", "LegalBasis", "PolicyCatalog", "RecordCategory", "RetentionRule"]
