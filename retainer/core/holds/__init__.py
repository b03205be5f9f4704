from __future__ import annotations

from retainer.core.holds.manager import LegalHoldManager
from retainer.core.holds.models import LegalHold

__all__ = ["LegalHold", "LegalHoldManager"]
