from __future__ import annotations

import hmac
from typing import Callable

from fastapi import Header, HTTPException, Request

from retainer.core.ops_log import OpsLogger


def build_api_key_auth(api_key: str, ops: OpsLogger) -> Callable[..., object]:
    async def dep(request: Request, x_api_key: str = Header(default="")) -> None:
        client_host = getattr(getattr(request, "client", None), "host", None)
        if not x_api_key:
            ops.log(event="web.auth.failed", outcome="denied", details={"reason": "missing", "client_host": client_host, "path": str(request.url.path)})
            raise HTTPException(status_code=401, detail="Missing API key.")
        if not hmac.compare_digest(x_api_key, api_key):
            ops.log(event="web.auth.failed", outcome="denied", details={"reason": "invalid", "client_host": client_host, "path": str(request.url.path)})
            raise HTTPException(status_code=401, detail="Invalid API key.")

    return dep
