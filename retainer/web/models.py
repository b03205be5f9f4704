from __future__ import annotations

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

Timestamp = Union[float, str]


class RegisterRecordRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")
    category: str = Field(min_length=1, max_length=80)
    owner_id: str = Field(default="", max_length=128)
    created_at: Optional[Timestamp] = None
    record_id: Optional[str] = Field(default=None, min_length=1, max_length=128)
    tags: Dict[str, str] = Field(default_factory=dict)


class TimestampRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")
    at: Optional[Timestamp] = None


class PlaceHoldRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")
    subject_id: Optional[str] = Field(default=None, max_length=128)
    record_id: Optional[str] = Field(default=None, max_length=128)
    reason: str = Field(min_length=1, max_length=500)
    actor: str = Field(default="upstream", max_length=120)

    @model_validator(mode="after")
    def _one_target(self) -> "PlaceHoldRequest":
        if bool(self.subject_id) == bool(self.record_id):
            raise ValueError("exactly one of subject_id or record_id is required")
        return self


class ReleaseHoldRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")
    actor: str = Field(default="upstream", max_length=120)
    justification: str = Field(default="", max_length=1000)


class SubjectErasureRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")
    at: Optional[Timestamp] = None
    execute: bool = False


class AuditExportResponse(BaseModel):
    entries: List[Dict[str, Any]]
    head_hash: str
    count: int
