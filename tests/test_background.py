"""Tests for background services — agent worker, built-in agents, heartbeat ticker."""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from heartbot.core.background.handlers import (
    DEFAULT_AGENTS,
    AgentContext,
    AgentResult,
    seed_default_agents,
    smart_bill_reminder,
    stale_task_strategist,
)
from heartbot.core.background.ticker import TICK_JOB_ID, HeartbeatTicker
from heartbot.core.background.worker import AgentWorker
from heartbot.core.config.schema import HeartbeatConfig
from heartbot.core.heartbeat.types import TickResult

from conftest import NOW


@pytest.fixture
def worker(store, gateway):
    return AgentWorker(store, gateway=gateway, handlers={}, clock=lambda: NOW)


# ── AgentWorker ────────────────────────────────────────────


@pytest.mark.asyncio
async def test_spawn_records_run_and_notifies(store, worker, gateway):
    async def handler(ctx: AgentContext) -> AgentResult:
        return AgentResult(message="done", notify=True, notification="insight!", state={"seen": 3})

    worker.register("a1", handler)
    run_id = worker.spawn("a1", "u1")
    # The run row exists before the task has started
    assert store.get_agent_run(int(run_id)).status == "running"

    await worker.shutdown()
    run = store.get_agent_run(int(run_id))
    assert run.status == "completed"
    assert run.result == "done"
    assert run.state == {"seen": 3}
    assert gateway.sent == [
        {"user_id": "u1", "type": "agent_insight", "content": "insight!", "priority": "normal"}
    ]
    assert worker.get_running_count() == 0


@pytest.mark.asyncio
async def test_state_carries_over_from_last_completed_run(store, worker):
    seen = []

    async def handler(ctx: AgentContext) -> AgentResult:
        seen.append(ctx.previous_state)
        return AgentResult(state={"count": len(seen)})

    worker.register("a1", handler)
    worker.spawn("a1", "u1")
    await worker.shutdown()
    worker.spawn("a1", "u1")
    await worker.shutdown()
    assert seen == [{}, {"count": 1}]


@pytest.mark.asyncio
async def test_handler_exception_fails_run(store, worker):
    worker.register("a1", AsyncMock(side_effect=RuntimeError("boom")))
    run_id = worker.spawn("a1", "u1")
    await worker.shutdown()
    run = store.get_agent_run(int(run_id))
    assert run.status == "failed"
    assert run.error == "boom"


@pytest.mark.asyncio
async def test_unknown_agent_fails_run(store, worker):
    run_id = worker.spawn("mystery", "u1")
    await worker.shutdown()
    assert store.get_agent_run(int(run_id)).error == "Unknown agent: mystery"


@pytest.mark.asyncio
async def test_user_can_mute_agent_notifications(store, worker, gateway):
    store.upsert_agent("a1", "A1", "daily_9am")
    store.set_agent_activation("u1", "a1", config={"notify": False})
    worker.register("a1", AsyncMock(return_value=AgentResult(notify=True, notification="x")))
    worker.spawn("a1", "u1")
    await worker.shutdown()
    assert gateway.sent == []


@pytest.mark.asyncio
async def test_agent_config_merges_user_overrides(store, worker):
    store.upsert_agent("a1", "A1", "daily_9am", config={"staleness_days": 14, "keep": 1})
    store.set_agent_activation("u1", "a1", config={"staleness_days": 30})
    captured = {}

    async def handler(ctx: AgentContext) -> AgentResult:
        captured.update(ctx.config)
        return AgentResult()

    worker.register("a1", handler)
    worker.spawn("a1", "u1")
    await worker.shutdown()
    assert captured == {"staleness_days": 30, "keep": 1}


# ── Built-in agents ────────────────────────────────────────


def test_seed_default_agents(store):
    assert seed_default_agents(store) == len(DEFAULT_AGENTS)
    assert store.get_agent("email-triage-agent")["requires_connection"] == "gmail"
    assert seed_default_agents(store) == len(DEFAULT_AGENTS)
    assert len(store.list_agents()) == len(DEFAULT_AGENTS)


@pytest.mark.asyncio
async def test_stale_task_strategist(store):
    store.add_task("u1", "Learn piano", now=NOW - timedelta(days=20))
    store.add_task("u1", "Fresh idea", now=NOW - timedelta(days=2))
    store.add_task("u1", "Dated", due_date=NOW + timedelta(days=1), now=NOW - timedelta(days=20))

    ctx = AgentContext("stale-task-strategist", "u1", store, NOW, config={"staleness_days": 14})
    result = await stale_task_strategist(ctx)
    assert result.notify is True
    assert '1. "Learn piano" (20 days old)' in result.notification
    assert "Fresh idea" not in result.notification
    assert result.state == {"last_stale_count": 1}


@pytest.mark.asyncio
async def test_smart_bill_reminder(store):
    store.add_task("u1", "Pay electricity bill", due_date=NOW + timedelta(days=2), now=NOW)
    store.add_task("u1", "Rent", due_date=NOW - timedelta(days=2), now=NOW)
    store.add_task("u1", "Birthday cake", due_date=NOW + timedelta(days=1), now=NOW)

    ctx = AgentContext("smart-bill-reminder", "u1", store, NOW, config={"reminder_days": [3, 1]})
    result = await smart_bill_reminder(ctx)
    assert result.notify is True
    assert "🔴 OVERDUE:\n• \"Rent\" (Mar 9)" in result.notification
    assert "🟢 Coming up:\n• \"Pay electricity bill\" (Mar 13)" in result.notification
    assert "Birthday" not in result.notification


@pytest.mark.asyncio
async def test_smart_bill_reminder_nothing_due(store):
    ctx = AgentContext("smart-bill-reminder", "u1", store, NOW)
    result = await smart_bill_reminder(ctx)
    assert result.notify is False


# ── HeartbeatTicker ────────────────────────────────────────


@pytest.mark.asyncio
async def test_ticker_registers_interval_job():
    engine = MagicMock()
    ticker = HeartbeatTicker(engine, HeartbeatConfig(interval_minutes=5))
    with patch.object(ticker, "_scheduler") as aps:
        aps.running = False
        await ticker.start()
    kwargs = aps.add_job.call_args.kwargs
    assert kwargs["id"] == TICK_JOB_ID
    assert kwargs["trigger"].interval == timedelta(minutes=5)
    aps.start.assert_called_once()


@pytest.mark.asyncio
async def test_ticker_disabled_does_not_start():
    ticker = HeartbeatTicker(MagicMock(), HeartbeatConfig(enabled=False))
    with patch.object(ticker, "_scheduler") as aps:
        await ticker.start()
    aps.add_job.assert_not_called()
    aps.start.assert_not_called()


@pytest.mark.asyncio
async def test_ticker_tick_swallows_engine_errors():
    engine = MagicMock()
    engine.tick = AsyncMock(side_effect=RuntimeError("db gone"))
    ticker = HeartbeatTicker(engine, HeartbeatConfig())
    await ticker._tick()
    engine.tick.assert_awaited_once()

    engine.tick = AsyncMock(return_value=TickResult(errors=["nudges: x"]))
    await ticker._tick()
    engine.tick.assert_awaited_once()
