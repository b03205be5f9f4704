from __future__ import annotations

from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from retainer.core.timeutil import days


class LegalBasis(str, Enum):
    none = "None"
    consent_based = "ConsentBased"
    regulatory_required = "RegulatoryRequired"
    contractual_necessity = "ContractualNecessity"


class Granularity(str, Enum):
    raw = "raw"
    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"

    @property
    def rank(self) -> int:
        return _LADDER.index(self)

    def coarser(self) -> Optional["Granularity"]:
        i = self.rank + 1
        return _LADDER[i] if i < len(_LADDER) else None


_LADDER = [Granularity.raw, Granularity.daily, Granularity.weekly, Granularity.monthly]


class RecordCategory(BaseModel):
    """
    Retention rule for one classification tag.

    Immutable once published: a new catalog version supersedes it, nothing edits it in place.
    `None` for the optional day counts means "use the engine default" (see EngineConfig).
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str = Field(min_length=1, max_length=80, pattern=r"^[a-z0-9][a-z0-9_\-\.]*$")
    description: str = Field(default="", max_length=200)
    active_lifespan_days: float = Field(default=0, ge=0, le=36500)
    post_active_retention_days: float = Field(default=0, ge=0, le=36500)
    legal_basis: LegalBasis = LegalBasis.none
    legal_basis_days: Optional[float] = Field(default=None, ge=0, le=36500)
    anonymizable: bool = False
    min_aggregation_granularity: Granularity = Granularity.daily
    anonymize_after_days: Optional[float] = Field(default=None, ge=0, le=36500)
    consent_grace_days: Optional[float] = Field(default=None, ge=0, le=3650)
    review_required: bool = False
    sunset: bool = False

    @model_validator(mode="after")
    def _check_basis(self) -> "RecordCategory":
        if self.legal_basis == LegalBasis.regulatory_required and self.legal_basis_days is None:
            raise ValueError("RegulatoryRequired categories need legal_basis_days")
        if self.anonymizable and self.min_aggregation_granularity == Granularity.raw:
            raise ValueError("min_aggregation_granularity must be coarser than raw")
        return self


class RetentionRule(BaseModel):
    """
    A RecordCategory as resolved from one catalog version, with the derived deadlines.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    category: RecordCategory
    catalog_version: int
    effective_at: float
    default_consent_grace_days: float = 30.0
    default_anonymize_after_days: float = 30.0

    @property
    def name(self) -> str:
        return self.category.name

    @property
    def is_regulatory(self) -> bool:
        return self.category.legal_basis == LegalBasis.regulatory_required

    @property
    def governing_retention_days(self) -> float:
        # Regulatory retention always wins over minimisation: a max over every applicable duration.
        applicable = [float(self.category.post_active_retention_days)]
        if self.is_regulatory:
            applicable.append(float(self.category.legal_basis_days or 0))
        return max(applicable)

    @property
    def retention_offset_seconds(self) -> float:
        return days(self.category.active_lifespan_days) + days(self.governing_retention_days)

    @property
    def consent_grace_seconds(self) -> Optional[float]:
        if self.category.legal_basis != LegalBasis.consent_based:
            return None
        g = self.category.consent_grace_days
        return days(self.default_consent_grace_days if g is None else g)

    @property
    def anonymize_after_seconds(self) -> Optional[float]:
        if not self.category.anonymizable:
            return None
        a = self.category.anonymize_after_days
        return days(self.default_anonymize_after_days if a is None else a)

    def retention_expires_at(self, last_active_at: float) -> float:
        return float(last_active_at) + self.retention_offset_seconds

    def consent_deletion_at(self, consent_withdrawn_at: Optional[float]) -> Optional[float]:
        grace = self.consent_grace_seconds
        if grace is None or consent_withdrawn_at is None:
            return None
        return float(consent_withdrawn_at) + grace

    def anonymize_at(self, created_at: float) -> Optional[float]:
        after = self.anonymize_after_seconds
        if after is None:
            return None
        return float(created_at) + after


class CatalogVersion(BaseModel):
    model_config = ConfigDict(extra="forbid")

    version: int = Field(ge=1)
    effective_at: float
    rules: Dict[str, RecordCategory]
    published_at: float
    published_by: str = Field(default="system", max_length=120)
    notes: str = Field(default="", max_length=500)
    prev_hash: str = ""
    hash: str = ""

    def hash_payload(self) -> dict:
        return {
            "version": self.version,
            "effective_at": self.effective_at,
            "rules": {k: v.model_dump(mode="json") for k, v in sorted(self.rules.items())},
            "published_at": self.published_at,
            "published_by": self.published_by,
            "notes": self.notes,
        }
