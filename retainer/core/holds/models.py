from __future__ import annotations

import time
import uuid
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class LegalHold(BaseModel):
    """
    Suspends every deletion/anonymization for one record or for every record of one subject.
    """

    model_config = ConfigDict(extra="forbid")

    hold_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    subject_id: Optional[str] = Field(default=None, max_length=128)
    record_id: Optional[str] = Field(default=None, max_length=128)
    reason: str = Field(min_length=1, max_length=500)
    created_at: float = Field(default_factory=lambda: time.time())
    created_by: str = Field(default="system", max_length=120)
    released_at: Optional[float] = None
    released_by: Optional[str] = None
    release_justification: str = Field(default="", max_length=1000)

    @model_validator(mode="after")
    def _one_target(self) -> "LegalHold":
        if bool(self.subject_id) == bool(self.record_id):
            raise ValueError("a legal hold targets exactly one of subject_id or record_id")
        return self

    @property
    def active(self) -> bool:
        return self.released_at is None
