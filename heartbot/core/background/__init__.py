"""Background services — heartbeat ticker and agent worker."""

from heartbot.core.background.ticker import HeartbeatTicker
from heartbot.core.background.worker import AgentWorker

__all__ = ["AgentWorker", "HeartbeatTicker"]
