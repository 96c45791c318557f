"""
ReelForge API Server
====================

FastAPI surface over the runtime: enqueue-and-acknowledge triggers, job and
run polling, and the per-user operations websocket.  No request ever waits
for a pipeline run; results arrive over the websocket or by polling.

Run directly:
    python -m reelforge serve
    uvicorn reelforge.api:app --host 0.0.0.0 --port 8765

Port configurable via REELFORGE_API_PORT (default 8765).
"""

from __future__ import annotations

import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from reelforge import __version__
from reelforge.auth import init_auth, require_user, verify_token
from reelforge.errors import InvalidPayload
from reelforge.models import parse_capability_key
from reelforge.realtime import handle_websocket
from reelforge.runtime import Runtime, get_runtime

logger = logging.getLogger("reelforge.api")

ALLOWED_ORIGINS = os.getenv(
    "REELFORGE_CORS_ORIGINS",
    "http://localhost:3000,http://localhost:8765",
).split(",")


# ---------------------------------------------------------------------------
# Pydantic models
# ---------------------------------------------------------------------------


class TopicRequest(BaseModel):
    topic: str = Field(..., min_length=1)
    params: Optional[Dict[str, Any]] = None


class UrlRequest(BaseModel):
    url: str = Field(..., min_length=1)


class PreferenceRequest(BaseModel):
    adapter_ids: List[str] = Field(..., alias="adapterIds")


class OperationAck(BaseModel):
    operationId: str
    jobId: str


class HealthResponse(BaseModel):
    status: str
    version: str
    uptime_seconds: float
    workers_running: bool
    websocket_connections: int
    queue: Dict[str, int]


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

router = APIRouter()


def _runtime(request: Request) -> Runtime:
    return request.app.state.runtime


@router.get("/health", response_model=HealthResponse, tags=["Health"])
async def health(request: Request):
    rt = _runtime(request)
    return HealthResponse(
        status="ok",
        version=__version__,
        uptime_seconds=round(time.monotonic() - request.app.state.started, 1),
        workers_running=rt.workers.running,
        websocket_connections=rt.notifier.connection_count(),
        queue=rt.queue.counts(),
    )


@router.post("/api/operations/topic", status_code=202, response_model=OperationAck, tags=["Operations"])
async def create_from_topic(body: TopicRequest, request: Request, user_id: str = Depends(require_user)):
    try:
        return await _runtime(request).trigger_topic(user_id, body.topic, body.params)
    except InvalidPayload as exc:
        raise HTTPException(status_code=422, detail=str(exc))


@router.post("/api/operations/url", status_code=202, response_model=OperationAck, tags=["Operations"])
async def create_from_url(body: UrlRequest, request: Request, user_id: str = Depends(require_user)):
    try:
        return await _runtime(request).trigger_url(user_id, body.url)
    except InvalidPayload as exc:
        raise HTTPException(status_code=422, detail=str(exc))


@router.get("/api/jobs", tags=["Jobs"])
async def list_jobs(request: Request, status: Optional[str] = None, limit: int = 50,
                    user_id: str = Depends(require_user)):
    jobs = _runtime(request).queue.list_jobs(status=status, user_id=user_id, limit=min(limit, 500))
    return {"jobs": [j.to_dict() for j in jobs]}


@router.get("/api/jobs/{job_id}", tags=["Jobs"])
async def get_job(job_id: str, request: Request, user_id: str = Depends(require_user)):
    job = _runtime(request).queue.get(job_id)
    if job is None or job.user_id != user_id:
        raise HTTPException(status_code=404, detail=f"Job '{job_id}' not found")
    return job.to_dict()


@router.get("/api/runs/{operation_id}", tags=["Jobs"])
async def get_run(operation_id: str, request: Request, user_id: str = Depends(require_user)):
    run = _runtime(request).orchestrator.get_run(operation_id)
    if run is None or run.user_id != user_id:
        raise HTTPException(status_code=404, detail=f"Run '{operation_id}' not found")
    return run.to_dict()


@router.get("/api/runs/{operation_id}/attempts", tags=["Jobs"])
async def list_run_attempts(operation_id: str, request: Request, user_id: str = Depends(require_user)):
    runs = [r for r in _runtime(request).orchestrator.list_attempts(operation_id) if r.user_id == user_id]
    if not runs:
        raise HTTPException(status_code=404, detail=f"Run '{operation_id}' not found")
    return {"attempts": [r.to_dict() for r in runs]}


@router.get("/api/registry", tags=["Registry"])
async def registry(request: Request, _user: str = Depends(require_user)):
    return {"adapters": _runtime(request).registry.describe()}


@router.put("/api/preferences/{capability_key}", tags=["Registry"])
async def set_preference(capability_key: str, body: PreferenceRequest, request: Request,
                         user_id: str = Depends(require_user)):
    try:
        parse_capability_key(capability_key)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    rt = _runtime(request)
    unknown = [a for a in body.adapter_ids if a not in rt.registry.adapter_ids()]
    if unknown:
        raise HTTPException(status_code=422, detail=f"Unknown adapter(s): {', '.join(unknown)}")
    pref = rt.preferences.set(user_id, capability_key, body.adapter_ids)
    return pref.to_dict()


@router.websocket("/ws/operations")
async def operations_socket(websocket: WebSocket):
    await handle_websocket(websocket, websocket.app.state.runtime.notifier, verify_token)


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------


def create_app(
    runtime: Optional[Runtime] = None,
    start_workers: bool = True,
    start_scheduler: bool = False,
) -> FastAPI:
    """Build the app.  Workers run in-process unless *start_workers* is False."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        rt = runtime or get_runtime()
        app.state.runtime = rt
        app.state.started = time.monotonic()
        init_auth(rt.token_auth, disabled=rt.settings.auth_disabled)
        logger.info("Starting ReelForge API on port %d", rt.settings.api_port)
        if start_workers:
            await rt.workers.start()
        if start_scheduler:
            await rt.scheduler.start()
        try:
            yield
        finally:
            if start_scheduler:
                await rt.scheduler.stop()
            if start_workers:
                await rt.workers.stop(timeout=30)
            logger.info("ReelForge API stopped")

    app = FastAPI(
        title="ReelForge API",
        description="Enqueue short-video pipeline runs and follow their progress.",
        version=__version__,
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(router)
    return app


app = create_app()
