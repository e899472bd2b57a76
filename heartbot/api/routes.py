"""Core API routes — action-tagged heartbeat entrypoint, health, job and log views."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends, Query, Request
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import ValidationError

from heartbot import __version__
from heartbot.api.deps import get_db, get_engine, verify_api_key
from heartbot.core.heartbeat.engine import HeartbeatEngine, parse_request
from heartbot.memory.models import HealthResponse, JobsResponse, LogResponse
from heartbot.memory.store import HeartbeatStore

router = APIRouter()

# Validation error types that mean "no such action" rather than "bad fields"
_UNKNOWN_ACTION = frozenset({"union_tag_invalid", "union_tag_not_found"})


def _validation_response(exc: ValidationError) -> JSONResponse:
    errors = exc.errors()
    status = 400 if any(e.get("type") in _UNKNOWN_ACTION for e in errors) else 422
    message = "; ".join(
        f"{'.'.join(str(p) for p in e.get('loc', ()))}: {e.get('msg')}" for e in errors
    )
    return JSONResponse({"success": False, "error": message}, status_code=status)


@router.post("/heartbeat", dependencies=[Depends(verify_api_key)])
async def heartbeat(
    body: dict[str, Any] = Body(...),
    engine: HeartbeatEngine = Depends(get_engine),
):
    """Run one heartbeat action (tick, schedule_job, generate_briefing, ...)."""
    try:
        request = parse_request(body)
    except ValidationError as e:
        return _validation_response(e)

    try:
        return await engine.handle(request)
    except Exception as e:
        logger.error(f"Heartbeat action '{body.get('action')}' failed: {e}")
        return JSONResponse({"success": False, "error": str(e)}, status_code=500)


@router.get("/health", response_model=HealthResponse)
async def health(request: Request):
    """Health check."""
    ticker = getattr(request.app.state, "ticker", None)
    worker = getattr(request.app.state, "worker", None)
    return HealthResponse(
        status="ok",
        ticker_running=bool(ticker and ticker.running),
        agents_running=worker.get_running_count() if worker else 0,
        version=__version__,
    )


@router.get("/jobs/{user_id}", response_model=JobsResponse, dependencies=[Depends(verify_api_key)])
async def list_jobs(
    user_id: str,
    limit: int = Query(default=50, ge=1, le=500),
    db: HeartbeatStore = Depends(get_db),
):
    """Most recent jobs for a user, newest first."""
    return JobsResponse(user_id=user_id, jobs=db.list_jobs(user_id, limit=limit))


@router.get("/log/{user_id}", response_model=LogResponse, dependencies=[Depends(verify_api_key)])
async def list_log(
    user_id: str,
    job_type: str | None = None,
    limit: int = Query(default=50, ge=1, le=500),
    db: HeartbeatStore = Depends(get_db),
):
    """Heartbeat log entries for a user, newest first."""
    return LogResponse(user_id=user_id, entries=db.get_log(user_id, job_type=job_type, limit=limit))
