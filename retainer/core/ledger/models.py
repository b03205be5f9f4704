from __future__ import annotations

import time
import uuid
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class RecordState(str, Enum):
    Active = "Active"
    PendingReview = "PendingReview"
    Held = "Held"
    Anonymizing = "Anonymizing"
    Anonymized = "Anonymized"
    PendingDeletion = "PendingDeletion"
    Deleted = "Deleted"


# Held -> <previous state> is handled separately: release restores `held_from_state`.
ALLOWED_TRANSITIONS: Dict[RecordState, FrozenSet[RecordState]] = {
    RecordState.Active: frozenset({RecordState.Held, RecordState.PendingReview, RecordState.Anonymizing, RecordState.PendingDeletion}),
    RecordState.PendingReview: frozenset({RecordState.Active, RecordState.Held, RecordState.PendingDeletion}),
    RecordState.Held: frozenset(),
    RecordState.Anonymizing: frozenset({RecordState.Anonymized, RecordState.Held, RecordState.PendingDeletion}),
    RecordState.Anonymized: frozenset({RecordState.Held, RecordState.PendingDeletion}),
    RecordState.PendingDeletion: frozenset({RecordState.Deleted, RecordState.Held}),
    RecordState.Deleted: frozenset(),
}

TERMINAL_STATES = frozenset({RecordState.Deleted})
HOLDABLE_STATES = frozenset(s for s, targets in ALLOWED_TRANSITIONS.items() if RecordState.Held in targets)


def can_transition(src: RecordState, dst: RecordState, *, held_from: Optional[RecordState] = None) -> bool:
    if src == RecordState.Held:
        return held_from is not None and dst == held_from
    return dst in ALLOWED_TRANSITIONS.get(src, frozenset())


class Record(BaseModel):
    """
    Ledger entry for one governed unit of data. Holds metadata only, never the content itself.
    """

    model_config = ConfigDict(extra="forbid")

    record_id: str = Field(default_factory=lambda: uuid.uuid4().hex, min_length=1, max_length=128)
    category: str = Field(min_length=1, max_length=80)
    owner_id: str = Field(default="", max_length=128)
    created_at: float = Field(default_factory=lambda: time.time())
    last_active_at: Optional[float] = None
    state: RecordState = RecordState.Active
    consent_withdrawn_at: Optional[float] = None
    held_from_state: Optional[RecordState] = None
    state_changed_at: Optional[float] = None
    pending_since: Optional[float] = None
    deletion_attempts: int = Field(default=0, ge=0)
    aggregate_id: Optional[str] = None
    aggregate_cycle: Optional[int] = None
    tags: Dict[str, str] = Field(default_factory=dict)

    @field_validator("tags", mode="before")
    @classmethod
    def _tags_sanitize(cls, v: Any) -> Dict[str, str]:
        if not isinstance(v, dict):
            return {}
        out: Dict[str, str] = {}
        for k, val in v.items():
            kk = str(k or "").strip()
            # never allow keys that usually carry raw content
            if not kk or kk.lower() in {"content", "text", "raw", "body", "message"}:
                continue
            vv = str(val or "").strip()
            if vv:
                out[kk[:64]] = vv[:120]
        return out

    @property
    def effective_last_active(self) -> float:
        return float(self.last_active_at if self.last_active_at is not None else self.created_at)
