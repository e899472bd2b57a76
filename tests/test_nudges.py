"""Tests for the overdue-nudge engine."""

from datetime import timedelta

import pytest

from heartbot.core.heartbeat.nudges import OverdueNudgeEngine, build_nudge_message

from conftest import FakeGateway, open_prefs


@pytest.fixture
def engine(store, gateway, config):
    return OverdueNudgeEngine(store, gateway, config)


def _add_overdue(store, now, count):
    for i in range(count):
        store.add_task("u1", f"Overdue {i}", due_date=now - timedelta(days=i + 1), now=now)


def test_nudge_message_caps_list(store, now):
    _add_overdue(store, now, 5)
    tasks = store.get_overdue_tasks("u1", before=now)
    text = build_nudge_message(tasks, cap=3)
    assert "You have 5 overdue tasks:" in text
    assert "...and 2 more" in text
    assert text.endswith('Reply "show overdue" to see all or just send updates!')


@pytest.mark.asyncio
async def test_nudge_sent_at_low_priority(store, engine, gateway, now):
    open_prefs(store)
    _add_overdue(store, now, 2)

    assert await engine.run(now) == 1
    [msg] = gateway.sent
    assert msg["type"] == "proactive_nudge"
    assert msg["priority"] == "low"
    [entry] = store.get_log("u1", job_type="overdue_nudge")
    assert entry.message_preview == "2 overdue tasks"


@pytest.mark.asyncio
async def test_nudge_not_repeated_within_24h(store, engine, gateway, now):
    open_prefs(store)
    _add_overdue(store, now, 1)

    assert await engine.run(now) == 1
    for minutes in (15, 60, 6 * 60, 23 * 60 + 45):
        assert await engine.run(now + timedelta(minutes=minutes)) == 0
    assert await engine.run(now + timedelta(hours=24, minutes=1)) == 1
    assert len(gateway.sent) == 2


@pytest.mark.asyncio
async def test_task_due_later_today_is_not_overdue(store, engine, gateway, now):
    open_prefs(store)
    store.add_task("u1", "Earlier today", due_date=now - timedelta(hours=1), now=now)
    assert await engine.run(now) == 0
    assert gateway.sent == []


@pytest.mark.asyncio
async def test_nudge_respects_opt_out_and_quiet_hours(store, engine, gateway, now):
    _add_overdue(store, now, 1)
    open_prefs(store, overdue_nudge_enabled=False)
    assert await engine.run(now) == 0

    store.upsert_preference(
        "u1", overdue_nudge_enabled=True, quiet_hours_start="09:00", quiet_hours_end="12:00",
    )
    assert await engine.run(now) == 0
    assert gateway.sent == []


@pytest.mark.asyncio
async def test_failed_nudge_is_retried_next_tick(store, config, now):
    open_prefs(store)
    _add_overdue(store, now, 1)
    engine = OverdueNudgeEngine(store, FakeGateway(ok=False), config)
    assert await engine.run(now) == 0

    engine.gateway = FakeGateway()
    assert await engine.run(now + timedelta(minutes=15)) == 1
