"""FastAPI application factory."""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from heartbot import __version__
from heartbot.api.routes import router as core_router
from heartbot.core.background.handlers import seed_default_agents
from heartbot.core.background.ticker import HeartbeatTicker
from heartbot.core.background.worker import AgentWorker
from heartbot.core.channels.gateway import ChannelGateway
from heartbot.core.config.loader import load_config
from heartbot.core.config.schema import Config
from heartbot.core.content import TemplateContentGenerator
from heartbot.core.heartbeat.engine import HeartbeatEngine
from heartbot.memory.store import HeartbeatStore


def build_services(config: Config) -> dict:
    """Wire Config → store → gateway → content → worker → engine → ticker."""
    db = HeartbeatStore(str(config.db_path))
    seed_default_agents(db)
    gateway = ChannelGateway(config, db)
    content = TemplateContentGenerator(db)
    worker = AgentWorker(db, gateway=gateway)
    engine = HeartbeatEngine(db, content, gateway, worker, config)
    ticker = HeartbeatTicker(engine, config.heartbeat)
    return {
        "config": config,
        "db": db,
        "gateway": gateway,
        "content": content,
        "worker": worker,
        "engine": engine,
        "ticker": ticker,
    }


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: build services and start the ticker. Shutdown: stop ticker, drain agent runs."""
    services = build_services(load_config())
    for name, service in services.items():
        setattr(app.state, name, service)

    await services["ticker"].start()
    logger.info(f"heartbot API started — interval {services['config'].heartbeat.interval_minutes}m")
    yield

    await services["ticker"].stop()
    await services["worker"].shutdown()
    logger.info("heartbot API shutting down")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="heartbot API",
        description="Proactive notification heartbeat engine",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(core_router)
    return app


app = create_app()
