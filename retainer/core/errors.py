from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict

from retainer.core.redaction import redact


class Severity(str, Enum):
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


@dataclass
class RetainerError(Exception):
    code: str
    user_message: str
    severity: Severity = Severity.ERROR
    recoverable: bool = True
    context: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        super().__init__(self.code)

    def __str__(self) -> str:
        return f"{self.code}: {self.user_message}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "user_message": self.user_message,
            "severity": self.severity.value,
            "recoverable": bool(self.recoverable),
            "context": redact(self.context or {}),
        }


# ---- lifecycle taxonomy ----
class UnknownCategoryError(RetainerError):
    """A record references a category absent from every catalog version (upstream classification bug)."""

    def __init__(self, user_message: str = "Record category is not defined in any policy catalog version.", **ctx: Any):
        super().__init__("unknown_category", user_message, severity=Severity.CRITICAL, recoverable=False, context=ctx)


class HeldError(RetainerError):
    def __init__(self, user_message: str = "Record is under an active legal hold.", **ctx: Any):
        super().__init__("held", user_message, severity=Severity.INFO, recoverable=True, context=ctx)


class PartialDeletionError(RetainerError):
    def __init__(self, user_message: str = "Erasure did not complete on every store.", **ctx: Any):
        super().__init__("partial_deletion", user_message, severity=Severity.ERROR, recoverable=True, context=ctx)


class LeaseContentionError(RetainerError):
    def __init__(self, user_message: str = "Shard lease is owned by another worker.", **ctx: Any):
        super().__init__("lease_contention", user_message, severity=Severity.WARN, recoverable=True, context=ctx)


class VerificationFailure(RetainerError):
    def __init__(self, user_message: str = "Post-deletion verification found data still present.", **ctx: Any):
        super().__init__("verification_failure", user_message, severity=Severity.CRITICAL, recoverable=False, context=ctx)


# ---- catalog / ledger ----
class CatalogPublishError(RetainerError):
    def __init__(self, user_message: str = "Catalog version rejected.", **ctx: Any):
        super().__init__("catalog_publish_error", user_message, severity=Severity.ERROR, recoverable=False, context=ctx)


class InvalidTransitionError(RetainerError):
    def __init__(self, user_message: str = "State transition not allowed.", **ctx: Any):
        super().__init__("invalid_transition", user_message, severity=Severity.ERROR, recoverable=False, context=ctx)


class RecordNotFoundError(RetainerError):
    def __init__(self, user_message: str = "Record not found.", **ctx: Any):
        super().__init__("not_found", user_message, severity=Severity.WARN, recoverable=False, context=ctx)


class ConfigError(RetainerError):
    def __init__(self, user_message: str = "Configuration error.", **ctx: Any):
        super().__init__("config_error", user_message, severity=Severity.CRITICAL, recoverable=False, context=ctx)


class ValidationError(RetainerError):
    def __init__(self, user_message: str = "Invalid request.", **ctx: Any):
        super().__init__("validation_error", user_message, severity=Severity.WARN, recoverable=False, context=ctx)
