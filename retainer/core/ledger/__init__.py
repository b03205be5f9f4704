"""
Record ledger: lifecycle state per record, plus the anomaly register fed by the audit scan.
"""

from __future__ import annotations

from retainer.core.ledger.anomalies import Anomaly, AnomalyKind, AnomalyRegister
from retainer.core.ledger.models import ALLOWED_TRANSITIONS, Record, RecordState, can_transition
from retainer.core.ledger.store import RecordLedger

__all__ = ["ALLOWED_TRANSITIONS", "Anomaly", "AnomalyKind", "AnomalyRegister", "Record", "RecordLedger", "RecordState", "can_transition"]
