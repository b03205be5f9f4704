from __future__ import annotations

import ipaddress
from typing import Any, Dict, List, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from retainer.core.catalog.models import Granularity, LegalBasis, RecordCategory


class StorageConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    db_path: str = "data/retainer.sqlite"
    busy_timeout_ms: int = Field(default=10_000, ge=100, le=600_000)


class LoggingConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    log_dir: str = "logs"
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    ops_log_path: str = "logs/ops.jsonl"


class SweepConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    worker_id: str = Field(default="worker-1", min_length=1, max_length=64)
    page_size: int = Field(default=500, ge=1, le=10_000)
    shards_per_category: int = Field(default=1, ge=1, le=1024)
    # engine-wide defaults for categories that leave these unset
    consent_grace_days: float = Field(default=30, ge=0, le=3650)
    anonymize_after_days: float = Field(default=30, ge=0, le=3650)


class LeaseConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    ttl_seconds: float = Field(default=300, ge=1, le=86400)


class StoreSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")
    name: str = Field(min_length=1, max_length=64)
    kind: Literal["memory", "directory", "sqlite"]
    path: str = ""
    generations: List[str] = Field(default_factory=list)
    table: str = "record_content"
    key_column: str = "record_id"


class ExecutorConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    max_attempts: int = Field(default=3, ge=1, le=20)
    # sweeps that may retry a PendingDeletion record before it is left for manual follow-up
    max_sweep_attempts: int = Field(default=5, ge=1, le=100)
    backoff_seconds: float = Field(default=0.2, ge=0, le=60)
    max_workers: int = Field(default=4, ge=1, le=64)
    stores: List[StoreSpec] = Field(
        default_factory=lambda: [
            StoreSpec(name="primary", kind="sqlite", path="data/content.sqlite"),
            StoreSpec(name="backups", kind="directory", path="data/backups", generations=["daily", "weekly", "monthly"]),
        ]
    )

    @field_validator("stores")
    @classmethod
    def _unique_names(cls, v: List[StoreSpec]) -> List[StoreSpec]:
        names = [s.name for s in v]
        if len(names) != len(set(names)):
            raise ValueError("store names must be unique")
        return v


class LadderStepConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    granularity: Granularity
    after_days: int = Field(ge=1, le=36500)


class AnonymizationConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    k_threshold: int = Field(default=5, ge=2, le=1000)
    erase_delay_cycles: int = Field(default=1, ge=1, le=52)
    ladder: List[LadderStepConfig] = Field(
        default_factory=lambda: [
            LadderStepConfig(granularity=Granularity.weekly, after_days=180),
            LadderStepConfig(granularity=Granularity.monthly, after_days=365),
        ]
    )

    @model_validator(mode="after")
    def _ladder_ordered(self) -> "AnonymizationConfig":
        prev_rank, prev_days = 0, 0
        for step in self.ladder:
            if step.granularity == Granularity.raw:
                raise ValueError("ladder steps must be coarser than raw")
            if step.granularity.rank <= prev_rank or step.after_days <= prev_days:
                raise ValueError("ladder must climb in granularity and age")
            prev_rank, prev_days = step.granularity.rank, step.after_days
        return self


class AuditScanConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    stuck_deletion_grace_days: float = Field(default=7, ge=0, le=365)


class ScheduleConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    poll_seconds: float = Field(default=60, ge=0.05, le=3600)
    daily_interval_hours: float = Field(default=24, gt=0)
    weekly_interval_days: float = Field(default=7, gt=0)
    monthly_interval_days: float = Field(default=30, gt=0)


class WebConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    bind_host: str = "127.0.0.1"
    port: int = Field(default=8088, ge=1, le=65535)
    allow_remote: bool = False
    api_key: str = ""

    @model_validator(mode="after")
    def _check_bind(self) -> "WebConfig":
        if self.allow_remote:
            if not self.api_key:
                raise ValueError("allow_remote requires an api_key")
            return self
        try:
            ip = ipaddress.ip_address(self.bind_host)
        except ValueError:
            if self.bind_host != "localhost":
                raise ValueError("bind_host must be a loopback address unless allow_remote is set")
            return self
        if not ip.is_loopback:
            raise ValueError("bind_host must be a loopback address unless allow_remote is set")
        return self


class EngineConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    schema_version: int = Field(default=1, ge=1, le=1)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    sweep: SweepConfig = Field(default_factory=SweepConfig)
    leases: LeaseConfig = Field(default_factory=LeaseConfig)
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)
    anonymization: AnonymizationConfig = Field(default_factory=AnonymizationConfig)
    audit_scan: AuditScanConfig = Field(default_factory=AuditScanConfig)
    schedule: ScheduleConfig = Field(default_factory=ScheduleConfig)
    web: WebConfig = Field(default_factory=WebConfig)


def default_categories() -> List[RecordCategory]:
    return [
        RecordCategory(name="session-cookie", description="Essential session cookie; gone once the session ends."),
        RecordCategory(name="auth-token", description="Remember-me token.", active_lifespan_days=30),
        RecordCategory(
            name="preferences",
            description="Functional preference cookie.",
            active_lifespan_days=365,
            legal_basis=LegalBasis.consent_based,
        ),
        RecordCategory(
            name="analytics-event",
            description="Product analytics; raw 30 days, then progressively aggregated.",
            post_active_retention_days=730,
            legal_basis=LegalBasis.consent_based,
            anonymizable=True,
            min_aggregation_granularity=Granularity.daily,
            anonymize_after_days=30,
        ),
        RecordCategory(
            name="marketing-profile",
            description="Advertising and marketing data.",
            active_lifespan_days=365,
            post_active_retention_days=30,
            legal_basis=LegalBasis.consent_based,
            consent_grace_days=30,
        ),
        RecordCategory(
            name="kyc-status",
            description="KYC verification status.",
            legal_basis=LegalBasis.regulatory_required,
            legal_basis_days=1825,
        ),
        RecordCategory(
            name="transaction-record",
            description="Transaction and trading records.",
            legal_basis=LegalBasis.regulatory_required,
            legal_basis_days=3650,
            review_required=True,
        ),
        RecordCategory(
            name="support-ticket",
            description="Customer support history.",
            active_lifespan_days=365,
            post_active_retention_days=1095,
            legal_basis=LegalBasis.contractual_necessity,
        ),
    ]


class CatalogConfigFile(BaseModel):
    """`config/catalog.json`: the categories published as catalog version 1 on first start."""

    model_config = ConfigDict(extra="forbid")
    schema_version: int = Field(default=1, ge=1, le=1)
    effective_at: Union[float, str] = 0.0
    published_by: str = "seed"
    categories: List[RecordCategory] = Field(default_factory=default_categories)

    @field_validator("categories")
    @classmethod
    def _unique(cls, v: List[RecordCategory]) -> List[RecordCategory]:
        names = [c.name for c in v]
        if len(names) != len(set(names)):
            raise ValueError("category names must be unique")
        if not names:
            raise ValueError("catalog needs at least one category")
        return v


class RetainerConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    engine: EngineConfig
    catalog: CatalogConfigFile


def default_config_files() -> Dict[str, Dict[str, Any]]:
    return {
        "engine.json": EngineConfig().model_dump(mode="json"),
        "catalog.json": CatalogConfigFile().model_dump(mode="json", exclude_none=True),
    }
