"""AgentWorker — async background agent runner with persisted run history."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import TYPE_CHECKING, Callable

from loguru import logger

from heartbot.core.background.handlers import DEFAULT_HANDLERS, AgentContext, AgentHandler, AgentResult
from heartbot.core.clock import utc_now

if TYPE_CHECKING:
    from heartbot.core.channels.base import DeliveryGateway
    from heartbot.memory.store import HeartbeatStore

AGENT_INSIGHT_MESSAGE_TYPE = "agent_insight"


class AgentWorker:
    """Runs background agents spawned by the heartbeat invoker.

    Each spawn writes an ``agent_runs`` row (status ``running``) before the
    task starts, so the invoker's cooldown sees it immediately.  The run's
    state starts from the last completed run of the same (agent, user).
    Handlers that ask to notify are delivered as ``agent_insight`` messages.
    """

    def __init__(
        self,
        db: HeartbeatStore,
        gateway: DeliveryGateway | None = None,
        handlers: dict[str, AgentHandler] | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.gateway = gateway
        self._handlers: dict[str, AgentHandler] = dict(DEFAULT_HANDLERS if handlers is None else handlers)
        self._clock = clock
        self._tasks: dict[int, asyncio.Task] = {}

    def register(self, agent_id: str, handler: AgentHandler) -> None:
        self._handlers[agent_id] = handler

    def spawn(self, agent_id: str, user_id: str) -> str:
        """Start an agent run in the background. Returns the run id."""
        previous = self.db.get_last_agent_run(agent_id, user_id, status="completed")
        state = previous.state if previous else {}
        run_id = self.db.create_agent_run(agent_id, user_id, state=state, now=self._clock())

        bg_task = asyncio.create_task(self._run(run_id, agent_id, user_id, state))
        self._tasks[run_id] = bg_task
        bg_task.add_done_callback(lambda _: self._tasks.pop(run_id, None))
        logger.info(f"Agent run spawned: #{run_id} {agent_id} for {user_id}")
        return str(run_id)

    async def _run(self, run_id: int, agent_id: str, user_id: str, state: dict) -> None:
        handler = self._handlers.get(agent_id)
        if handler is None:
            logger.warning(f"No handler registered for agent {agent_id}")
            self.db.finish_agent_run(
                run_id, "failed", error=f"Unknown agent: {agent_id}", now=self._clock(),
            )
            return

        agent = self.db.get_agent(agent_id) or {}
        activation = self.db.get_agent_activation(user_id, agent_id) or {}
        user_config = activation.get("config", {})
        ctx = AgentContext(
            agent_id=agent_id,
            user_id=user_id,
            db=self.db,
            now=self._clock(),
            config={**agent.get("config", {}), **user_config},
            previous_state=state,
        )

        try:
            result: AgentResult = await handler(ctx)
        except Exception as e:
            logger.error(f"Agent run #{run_id} ({agent_id}) failed: {e}")
            self.db.finish_agent_run(run_id, "failed", error=str(e), now=self._clock())
            return

        self.db.finish_agent_run(
            run_id,
            "completed" if result.success else "failed",
            result=result.message,
            error=None if result.success else result.message,
            state=result.state if result.state is not None else state,
            now=self._clock(),
        )
        logger.info(f"Agent run #{run_id} ({agent_id}) finished: {result.message[:100]}")

        if result.notify and result.notification and user_config.get("notify", True):
            await self._notify(user_id, agent_id, result.notification)

    async def _notify(self, user_id: str, agent_id: str, text: str) -> None:
        if self.gateway is None:
            logger.debug(f"No gateway, insight from {agent_id} not delivered")
            return
        try:
            sent = await self.gateway.send(user_id, AGENT_INSIGHT_MESSAGE_TYPE, text, "normal")
        except Exception as e:
            logger.error(f"Agent insight delivery failed for {user_id}: {e}")
            return
        if not sent:
            logger.warning(f"Agent insight from {agent_id} not delivered to {user_id}")

    def get_running_count(self) -> int:
        """Number of currently running agent tasks."""
        return len(self._tasks)

    async def shutdown(self) -> None:
        """Wait for all running agent tasks to complete."""
        if not self._tasks:
            return
        logger.info(f"Waiting for {len(self._tasks)} agent runs to finish")
        await asyncio.gather(*self._tasks.values(), return_exceptions=True)
        self._tasks.clear()
