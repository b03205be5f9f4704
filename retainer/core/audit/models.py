from __future__ import annotations

import time
import uuid
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class TransitionReason(str, Enum):
    policy_expired = "policy-expired"
    consent_withdrawn = "consent-withdrawn"
    legal_hold_released = "legal-hold-released"
    manual_override = "manual-override"
    legal_hold_placed = "legal-hold-placed"
    anonymization_threshold = "anonymization-threshold"
    aggregate_published = "aggregate-published"
    review_approved = "review-approved"
    review_denied = "review-denied"
    deletion_verified = "deletion-verified"


class AuditEntry(BaseModel):
    """
    One ledger transition. Carries category and state only: owner ids never enter the log,
    so entries stay valid compliance proof after the record itself is erased.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    seq: Optional[int] = None
    entry_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    record_id: str = Field(min_length=1, max_length=128)
    category: str = Field(default="", max_length=80)
    from_state: str
    to_state: str
    reason: TransitionReason
    timestamp: float = Field(default_factory=lambda: time.time())
    actor: str = Field(default="system", max_length=120)
    note: str = Field(default="", max_length=1000)
    prev_hash: Optional[str] = None
    hash: Optional[str] = None

    def chain_payload(self) -> dict:
        return self.model_dump(mode="json", exclude={"seq", "prev_hash", "hash"})


class IntegrityReport(BaseModel):
    model_config = ConfigDict(extra="forbid")

    ok: bool
    checked: int
    broken_at_seq: Optional[int] = None
    message: str = ""
    head_hash: Optional[str] = None
