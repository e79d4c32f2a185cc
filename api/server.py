"""
OTP Pipeline — API Server

FastAPI application serving:
  POST /v1/create?n=          — rent + register n accounts
  POST /v1/check-otp-retry    — fetch OTPs in rounds until none are waiting
  GET  /v1/status             — counts per status + recent records
  GET  /v1/records            — every record, oldest first
  GET  /health                — liveness

Workflows run in-process on the request thread; one orchestrator
serves the app, so requests against the same store run one at a time.

Usage:
    uvicorn api.server:create_app --factory --host 0.0.0.0 --port 8080

Requires: pip install fastapi uvicorn
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any

from core.config import Settings, load_settings
from core.exceptions import ValidationError
from pipeline.runtime import BatchOrchestrator, build_orchestrator

logger = logging.getLogger("otp_pipeline.api")


def create_app(
    orchestrator: BatchOrchestrator | None = None,
    settings: Settings | None = None,
) -> Any:
    """
    Create and configure the FastAPI application.

    Returns the app instance. Separated from module-level creation
    so tests can create fresh instances with a fake orchestrator.
    """
    from fastapi import Body, FastAPI, Query
    from fastapi.responses import JSONResponse

    from api.models import CreateRequest, WorkflowResponse

    app = FastAPI(
        title="OTP Pipeline API",
        version="0.1.0",
        description="Batch registration and OTP retrieval",
    )

    # ── State ────────────────────────────────────────────────

    _orchestrator: BatchOrchestrator | None = orchestrator
    # Single writer per store
    _lock = threading.Lock()

    def get_orchestrator() -> BatchOrchestrator:
        nonlocal _orchestrator
        if _orchestrator is None:
            _orchestrator = build_orchestrator(settings or load_settings(), verbose=False)
        return _orchestrator

    # ── Workflows ─────────────────────────────────────────────

    @app.post("/v1/create")
    def create(
        n: str | None = Query(None),
        body: dict[str, Any] | None = Body(None),
    ):
        emails = (body or {}).get("emails")
        try:
            count = int(n) if n is not None else None
        except (TypeError, ValueError):
            count = n
        request = CreateRequest(count=count, emails=emails)
        errors = request.validate()
        if errors:
            return JSONResponse(status_code=422, content={"errors": errors})

        orch = get_orchestrator()
        try:
            with _lock:
                summary = orch.create(request.count, emails=request.emails)
        except ValidationError as e:
            return JSONResponse(status_code=422, content={"errors": [str(e)]})
        logger.info("create n=%d: %s", request.count, summary.message)
        return JSONResponse(content=WorkflowResponse.from_summary(summary).to_dict())

    @app.post("/v1/check-otp-retry")
    def check_otp_retry():
        orch = get_orchestrator()
        with _lock:
            summary = orch.check_otp_retry()
            completed = orch.completed_otps()
        logger.info("check-otp-retry: %s", summary.message)
        return JSONResponse(
            content=WorkflowResponse.from_summary(summary, completed).to_dict()
        )

    # ── Store views ───────────────────────────────────────────

    @app.get("/v1/status")
    def status():
        with _lock:
            return JSONResponse(content=get_orchestrator().status())

    @app.get("/v1/records")
    def records():
        with _lock:
            rows = get_orchestrator().list_records()
        return JSONResponse(content={"total": len(rows), "records": rows})

    # ── Health ────────────────────────────────────────────────

    @app.get("/health")
    def health():
        return JSONResponse(content={
            "status": "ok",
            "timestamp": time.time(),
        })

    return app
