from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from retainer.core.audit.models import TransitionReason
from retainer.core.catalog.models import RetentionRule
from retainer.core.ledger.models import Record, RecordState


class Action(str, Enum):
    noop = "noop"
    skip_held = "skip_held"
    review = "review"
    delete = "delete"
    anonymize = "anonymize"
    retry_delete = "retry_delete"


@dataclass(frozen=True)
class Decision:
    action: Action
    reason: Optional[TransitionReason] = None


NOOP = Decision(Action.noop)


def decide(record: Record, rule: RetentionRule, as_of: float, *, held: bool = False) -> Decision:
    """
    Route one record. Pure: reads the record and the rule, never the database.

    Retention always uses the governing (max) duration, so a regulatory basis cannot be
    shortened by consent withdrawal; consent deletion only exists for ConsentBased rules.
    """
    t = float(as_of)
    if record.state == RecordState.Deleted:
        return NOOP
    if held or record.state == RecordState.Held:
        return Decision(Action.skip_held)

    expired = rule.retention_expires_at(record.effective_last_active) < t
    consent_at = rule.consent_deletion_at(record.consent_withdrawn_at)
    consent_due = consent_at is not None and consent_at < t

    if record.state == RecordState.PendingDeletion:
        if consent_due:
            return Decision(Action.retry_delete, TransitionReason.consent_withdrawn)
        if expired:
            return Decision(Action.retry_delete, TransitionReason.policy_expired)
        return Decision(Action.retry_delete, TransitionReason.manual_override)

    if consent_due:
        return Decision(Action.delete, TransitionReason.consent_withdrawn)

    if expired:
        if rule.category.review_required:
            if record.state == RecordState.PendingReview:
                return NOOP
            if record.state == RecordState.Active:
                return Decision(Action.review, TransitionReason.policy_expired)
        return Decision(Action.delete, TransitionReason.policy_expired)

    anon_at = rule.anonymize_at(record.created_at)
    if record.state == RecordState.Active and anon_at is not None and anon_at < t:
        return Decision(Action.anonymize, TransitionReason.anonymization_threshold)
    return NOOP
