"""Pydantic models for API responses."""

from __future__ import annotations

from pydantic import BaseModel, Field

from heartbot.core.heartbeat.types import Job, LogEntry


class HealthResponse(BaseModel):
    status: str
    ticker_running: bool = False
    agents_running: int = 0
    version: str = ""


class JobsResponse(BaseModel):
    user_id: str
    jobs: list[Job] = Field(default_factory=list)


class LogResponse(BaseModel):
    user_id: str
    entries: list[LogEntry] = Field(default_factory=list)
