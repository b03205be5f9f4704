from __future__ import annotations

import hashlib
import re
from typing import Any, Dict


_SECRET_KEYS = {
    "password",
    "passphrase",
    "api_key",
    "apikey",
    "token",
    "authorization",
    "secret",
    "bearer",
}

# Keys that identify a data subject. Audit and ops output must never carry them.
_SUBJECT_KEYS = {"owner_id", "subject_id", "user_id", "email", "phone", "name"}

_BEARER_RE = re.compile(r"(authorization:\s*bearer\s+)([A-Za-z0-9\-\._~\+/]+=*)", re.IGNORECASE)
_KV_RE = re.compile(r"(?i)\b(password|passphrase|token|api[_-]?key)\s*=\s*([^\s,;]+)")
_EMAIL_RE = re.compile(r"[A-Za-z0-9._%+\-]+@[A-Za-z0-9.\-]+\.[A-Za-z]{2,}")


def subject_digest(subject_id: str) -> str:
    """Stable, non-reversible handle for a subject (used for shard bucketing and counts)."""
    return hashlib.sha256(str(subject_id or "").encode("utf-8")).hexdigest()[:16]


def redact_text(s: str, *, limit: int = 500) -> str:
    s = _BEARER_RE.sub(r"\1<redacted>", str(s))
    s = _KV_RE.sub(r"\1=<redacted>", s)
    s = _EMAIL_RE.sub("<email>", s)
    if len(s) > limit:
        s = s[:limit] + "…"
    return s


def redact(v: Any) -> Any:
    if v is None:
        return None
    if isinstance(v, (int, float, bool)):
        return v
    if isinstance(v, (bytes, bytearray)):
        return "<bytes>"
    if isinstance(v, str):
        return redact_text(v, limit=300)
    if isinstance(v, (list, tuple)):
        return [redact(x) for x in list(v)[:50]]
    if isinstance(v, dict):
        out: Dict[str, Any] = {}
        for k, vv in list(v.items())[:100]:
            kk = str(k)
            if kk.lower() in _SECRET_KEYS:
                out[kk] = "<redacted>"
                continue
            if kk.lower() in _SUBJECT_KEYS:
                out[kk] = "<subject>"
                continue
            out[kk] = redact(vv)
        return out
    return str(v)[:300]
