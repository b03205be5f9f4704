from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from retainer.core.engine import LifecycleEngine
from retainer.core.errors import RetainerError
from retainer.core.trace import new_trace_id, trace_context
from retainer.web.auth import build_api_key_auth
from retainer.web.models import (
    AuditExportResponse,
    PlaceHoldRequest,
    RegisterRecordRequest,
    ReleaseHoldRequest,
    SubjectErasureRequest,
    TimestampRequest,
)

STATUS_BY_CODE: Dict[str, int] = {
    "not_found": 404,
    "held": 423,
    "invalid_transition": 409,
    "lease_contention": 409,
    "validation_error": 400,
    "catalog_publish_error": 400,
    "unknown_category": 422,
    "partial_deletion": 503,
}


def create_app(engine: LifecycleEngine, *, api_key: Optional[str] = None, logger: Any = None) -> FastAPI:
    app = FastAPI(title="Retainer", version="0.1.0")
    deps = [Depends(build_api_key_auth(api_key, engine.ops))] if api_key else []

    @app.middleware("http")
    async def bind_trace(request: Request, call_next):
        tid = request.headers.get("x-trace-id") or new_trace_id()
        request.state.trace_id = tid
        with trace_context(tid):
            response = await call_next(request)
        response.headers["X-Trace-Id"] = tid
        return response

    @app.exception_handler(RetainerError)
    async def retainer_error_handler(request: Request, exc: RetainerError):
        code = STATUS_BY_CODE.get(exc.code, 500)
        if logger and code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return JSONResponse(status_code=code, content={"detail": exc.user_message, "code": exc.code})

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"detail": "Invalid request.", "code": "validation_error"})

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    # ---- ingress ----
    @app.post("/v1/records", status_code=201, dependencies=deps)
    def register_record(req: RegisterRecordRequest):
        rec = engine.register_record(req.category, req.owner_id, req.created_at, req.record_id, tags=req.tags)
        return {"record_id": rec.record_id, "category": rec.category, "state": rec.state.value}

    @app.post("/v1/records/{record_id}/touch", dependencies=deps)
    def touch_record(record_id: str, req: Optional[TimestampRequest] = None):
        rec = engine.touch_record(record_id, req.at if req else None)
        return {"record_id": rec.record_id, "last_active_at": rec.last_active_at}

    @app.post("/v1/records/{record_id}/consent-withdrawal", dependencies=deps)
    def consent_withdrawal(record_id: str, req: Optional[TimestampRequest] = None):
        rec = engine.record_consent_withdrawal(record_id, req.at if req else None)
        return {"record_id": rec.record_id, "consent_withdrawn_at": rec.consent_withdrawn_at}

    @app.get("/v1/records/{record_id}", dependencies=deps)
    def get_record(record_id: str):
        rec = engine.get_record(record_id)
        return rec.model_dump(mode="json", exclude={"owner_id", "tags"})

    @app.post("/v1/holds", status_code=201, dependencies=deps)
    def place_hold(req: PlaceHoldRequest):
        hold = engine.place_legal_hold(reason=req.reason, subject_id=req.subject_id, record_id=req.record_id, actor=req.actor)
        return {"hold_id": hold.hold_id, "created_at": hold.created_at}

    @app.post("/v1/holds/{hold_id}/release", dependencies=deps)
    def release_hold(hold_id: str, req: Optional[ReleaseHoldRequest] = None):
        r = req or ReleaseHoldRequest()
        hold = engine.release_legal_hold(hold_id, actor=r.actor, justification=r.justification)
        return {"hold_id": hold.hold_id, "released_at": hold.released_at}

    @app.post("/v1/subjects/{subject_id}/erasure", dependencies=deps)
    def erase_subject(subject_id: str, req: Optional[SubjectErasureRequest] = None):
        r = req or SubjectErasureRequest()
        return engine.erase_subject(subject_id, at=r.at, execute=r.execute).model_dump(mode="json")

    # ---- egress ----
    @app.get("/v1/certificates/{record_id}", dependencies=deps)
    def certificate(record_id: str):
        return engine.get_deletion_certificate(record_id).model_dump(mode="json")

    @app.get("/v1/audit", response_model=AuditExportResponse, dependencies=deps)
    def export_audit(since: Optional[str] = None, until: Optional[str] = None, record_id: Optional[str] = None, limit: int = 1000, offset: int = 0):
        entries: List[Dict[str, Any]] = [
            e.model_dump(mode="json")
            for e in engine.export_audit_log(since, until, record_id=record_id, limit=min(max(1, limit), 10_000), offset=offset)
        ]
        return AuditExportResponse(entries=entries, head_hash=engine.audit.head_hash(), count=len(entries))

    @app.get("/v1/catalog", dependencies=deps)
    def current_catalog():
        return engine.get_current_policy_catalog().model_dump(mode="json")

    return app
