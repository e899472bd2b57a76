"""FastAPI dependency injection — pull singletons from app.state."""

from __future__ import annotations

from fastapi import Header, HTTPException, Request

from heartbot.core.config.schema import Config
from heartbot.core.heartbeat.engine import HeartbeatEngine
from heartbot.memory.store import HeartbeatStore


def get_config(request: Request) -> Config:
    """Get Config singleton from app state."""
    return request.app.state.config


def get_db(request: Request) -> HeartbeatStore:
    """Get HeartbeatStore singleton from app state."""
    return request.app.state.db


def get_engine(request: Request) -> HeartbeatEngine:
    """Get HeartbeatEngine singleton from app state."""
    return request.app.state.engine


async def verify_api_key(request: Request, x_api_key: str | None = Header(None)) -> None:
    """Reject the request unless X-API-Key matches the configured key.

    An empty ``api.api_key`` disables the check.
    """
    config: Config = request.app.state.config
    if not config.api_key_required:
        return
    if x_api_key != config.api.api_key:
        raise HTTPException(status_code=401, detail="Invalid API key")
