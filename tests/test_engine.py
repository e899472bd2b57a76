"""Tests for HeartbeatEngine — tick orchestration and action dispatch."""

from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from heartbot.core.content import TemplateContentGenerator
from heartbot.core.heartbeat.engine import HeartbeatEngine
from heartbot.core.heartbeat.types import JobStatus

from conftest import NOW, FakeGateway, open_prefs


@pytest.fixture
def runner():
    r = MagicMock()
    r.spawn = MagicMock(return_value="1")
    return r


@pytest.fixture
def engine(store, gateway, runner, config):
    return HeartbeatEngine(
        store, TemplateContentGenerator(store), gateway, runner, config, clock=lambda: NOW,
    )


# ── Tick ───────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_tick_runs_all_stages(store, engine, gateway, now):
    open_prefs(store, morning_briefing_enabled=True, morning_briefing_time="10:00")
    store.add_task("u1", "Overdue", due_date=now - timedelta(days=1), now=now)
    store.add_task("u1", "Soon", due_date=now + timedelta(minutes=10), now=now)

    result = await engine.tick()

    assert result.scheduled_jobs == 1
    assert result.processed_jobs == 1
    assert result.reminders_sent == 1
    assert result.nudges_sent == 1
    assert result.errors == []
    assert gateway.queue_runs == 1
    assert [m["type"] for m in gateway.sent] == ["morning_briefing", "reminder", "proactive_nudge"]


@pytest.mark.asyncio
async def test_repeated_ticks_send_once(store, engine, gateway, now):
    open_prefs(store, morning_briefing_enabled=True, morning_briefing_time="10:00")
    store.add_task("u1", "Overdue", due_date=now - timedelta(days=1), now=now)

    await engine.tick(now)
    await engine.tick(now + timedelta(minutes=5))
    await engine.tick(now + timedelta(minutes=10))

    assert [m["type"] for m in gateway.sent] == ["morning_briefing", "proactive_nudge"]
    sent_briefings = [e for e in store.get_log("u1", job_type="morning_briefing") if e.status.value == "sent"]
    assert len(sent_briefings) == 1


@pytest.mark.asyncio
async def test_stage_failure_is_isolated(store, engine, gateway, now):
    open_prefs(store)
    store.add_task("u1", "Overdue", due_date=now - timedelta(days=1), now=now)
    engine.reminders.run = MagicMock(side_effect=RuntimeError("db locked"))

    result = await engine.tick()

    assert result.errors == ["reminders: db locked"]
    assert result.nudges_sent == 1
    assert gateway.queue_runs == 1


@pytest.mark.asyncio
async def test_terminal_jobs_stay_terminal_across_ticks(store, config, runner, now):
    engine = HeartbeatEngine(
        store, TemplateContentGenerator(store), FakeGateway(ok=False), runner, config,
    )
    job_id = store.create_job("u1", "task_reminder", now, payload={"content": "x"}, now=now)
    await engine.tick(now)
    engine.gateway.ok = True
    await engine.tick(now + timedelta(minutes=15))
    assert store.get_job(job_id).status == JobStatus.FAILED


# ── Actions ────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_dispatch_tick(engine):
    result = await engine.dispatch({"action": "tick"})
    assert result["success"] is True
    assert set(result["tick_results"]) >= {"scheduled_jobs", "processed_jobs", "errors"}


@pytest.mark.asyncio
async def test_dispatch_unknown_action(engine):
    result = await engine.dispatch({"action": "explode"})
    assert result["success"] is False
    assert result["error"]


@pytest.mark.asyncio
async def test_schedule_job_defaults_to_now(store, engine):
    result = await engine.dispatch({"action": "schedule_job", "user_id": "u1", "job_type": "evening_review"})
    job = store.get_job(result["job_id"])
    assert job.status == JobStatus.PENDING
    assert job.scheduled_for == "2026-03-11T10:00:00+00:00"


@pytest.mark.asyncio
async def test_schedule_job_reads_time_from_payload(store, engine):
    result = await engine.dispatch({
        "action": "schedule_job",
        "user_id": "u1",
        "job_type": "pattern_suggestion",
        "payload": {"content": "hi", "scheduled_for": "2026-03-12T08:00:00+00:00"},
    })
    assert store.get_job(result["job_id"]).scheduled_for == "2026-03-12T08:00:00+00:00"


@pytest.mark.asyncio
async def test_schedule_job_rejects_bad_type(engine):
    result = await engine.dispatch({"action": "schedule_job", "user_id": "u1", "job_type": "party"})
    assert result["success"] is False
    assert "job_type" in result["error"]


@pytest.mark.asyncio
async def test_generate_briefing(store, engine, gateway):
    result = await engine.dispatch({"action": "generate_briefing", "user_id": "u1"})
    assert result["success"] is True
    assert result["briefing"].startswith("☀️ Good morning, Ali!")
    assert result["delivered"] is False
    assert gateway.sent == []

    delivered = await engine.dispatch({"action": "generate_briefing", "user_id": "u1", "deliver": True})
    assert delivered["delivered"] is True
    assert gateway.sent[0]["priority"] == "normal"


@pytest.mark.asyncio
async def test_generate_briefing_unknown_user(engine):
    result = await engine.dispatch({"action": "generate_briefing", "user_id": "ghost"})
    assert result == {"success": False, "error": "User not found: ghost"}


@pytest.mark.asyncio
async def test_test_briefing_by_phone(store, engine, gateway):
    result = await engine.dispatch({"action": "test_briefing", "phone_number": "+90 555 111 22 33"})
    assert result["success"] is True
    assert result["user_id"] == "u1"
    assert result["user_name"] == "Ali Veli"
    assert result["message"] == "Briefing sent successfully!"
    assert gateway.sent[0]["priority"] == "high"
    assert store.get_log("u1", job_type="morning_briefing")[0].status.value == "sent"


@pytest.mark.asyncio
async def test_test_briefing_phone_in_payload(engine):
    result = await engine.dispatch({"action": "test_briefing", "payload": {"phone_number": "+905551112233"}})
    assert result["user_id"] == "u1"


@pytest.mark.asyncio
async def test_test_briefing_unknown_phone(engine):
    result = await engine.dispatch({"action": "test_briefing", "phone_number": "123"})
    assert result == {"success": False, "error": "User not found for phone: 123"}


@pytest.mark.asyncio
async def test_check_reminders_and_get_pending(store, engine, now):
    open_prefs(store)
    store.add_task("u1", "Soon", due_date=now + timedelta(minutes=10), now=now)
    assert await engine.dispatch({"action": "check_reminders"}) == {"success": True, "reminders_sent": 1}

    store.create_job("u1", "evening_review", now + timedelta(hours=8), now=now)
    pending = await engine.dispatch({"action": "get_pending", "user_id": "u1"})
    assert [j["job_type"] for j in pending["jobs"]] == ["evening_review"]
