"""Tests for the background-agent invoker and schedule parsing."""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from heartbot.core.clock import LocalTime
from heartbot.core.config.schema import AgentsConfig
from heartbot.core.heartbeat.agents import (
    DAILY,
    EVERY_TICK,
    WEEKLY,
    AgentInvoker,
    AgentSchedule,
    is_schedule_due,
    parse_schedule,
)
from heartbot.core.heartbeat.types import Preference

from conftest import open_prefs

# Monday 2026-03-09 09:05 UTC
MONDAY_0905 = datetime(2026, 3, 9, 9, 5, tzinfo=timezone.utc)


@pytest.fixture
def runner():
    r = MagicMock()
    r.spawn = MagicMock(return_value="1")
    return r


@pytest.fixture
def invoker(store, runner):
    return AgentInvoker(store, runner, AgentsConfig())


def _activate(store, agent_id="a1", schedule="daily_9am", requires=None):
    store.upsert_agent(agent_id, agent_id, schedule, requires_connection=requires)
    store.set_agent_activation("u1", agent_id)


# ── Schedule parsing ───────────────────────────────────────


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("every_15min", AgentSchedule(EVERY_TICK)),
        ("daily_check", AgentSchedule(DAILY)),
        ("daily_morning_briefing", AgentSchedule(DAILY, follows_briefing=True)),
        ("daily_9am", AgentSchedule(DAILY, hour=9)),
        ("daily_12am", AgentSchedule(DAILY, hour=0)),
        ("daily_6pm", AgentSchedule(DAILY, hour=18)),
        ("weekly_sunday_6pm", AgentSchedule(WEEKLY, hour=18, weekday=0)),
        ("weekly_monday_9am", AgentSchedule(WEEKLY, hour=9, weekday=1)),
    ],
)
def test_parse_schedule(raw, expected):
    assert parse_schedule(raw) == expected


@pytest.mark.parametrize("raw", ["hourly", "daily_13pm", "weekly_funday_9am", "", None])
def test_parse_schedule_unknown(raw):
    assert parse_schedule(raw) is None


def test_follows_briefing_uses_briefing_hour():
    pref = Preference(user_id="u1", morning_briefing_time="07:30")
    sched = AgentSchedule(DAILY, follows_briefing=True)
    assert is_schedule_due(sched, LocalTime(7, 45, 1), pref)
    assert not is_schedule_due(sched, LocalTime(9, 0, 1), pref)


# ── Invoker ────────────────────────────────────────────────


def test_daily_agent_runs_at_its_hour(store, invoker, runner):
    open_prefs(store)
    _activate(store)
    assert invoker.run(MONDAY_0905) == 1
    runner.spawn.assert_called_once_with("a1", "u1")
    assert invoker.run(MONDAY_0905 + timedelta(hours=1)) == 0


def test_cooldown_blocks_second_run(store, invoker, runner):
    open_prefs(store)
    _activate(store)
    store.create_agent_run("a1", "u1", now=MONDAY_0905 - timedelta(minutes=5))
    assert invoker.run(MONDAY_0905) == 0
    runner.spawn.assert_not_called()


def test_every_tick_cooldown(store, invoker):
    open_prefs(store)
    _activate(store, schedule="every_15min")
    store.create_agent_run("a1", "u1", now=MONDAY_0905 - timedelta(minutes=10))
    assert invoker.run(MONDAY_0905) == 0
    store.create_agent_run("a1", "u1", now=MONDAY_0905 - timedelta(minutes=13))
    assert invoker.run(MONDAY_0905 + timedelta(minutes=3)) == 1


def test_required_connection(store, invoker):
    open_prefs(store)
    _activate(store, schedule="every_15min", requires="gmail")
    assert invoker.run(MONDAY_0905) == 0
    store.set_connection("u1", "gmail")
    assert invoker.run(MONDAY_0905) == 1


def test_weekly_agent_only_on_its_day(store, invoker):
    open_prefs(store)
    _activate(store, schedule="weekly_monday_9am")
    assert invoker.run(MONDAY_0905 + timedelta(days=1)) == 0
    assert invoker.run(MONDAY_0905) == 1


def test_quiet_hours_and_unknown_schedule(store, invoker, runner):
    store.upsert_preference("u1", quiet_hours_start="08:00", quiet_hours_end="10:00")
    _activate(store)
    assert invoker.run(MONDAY_0905) == 0

    open_prefs(store)
    _activate(store, agent_id="a2", schedule="sometimes")
    store.upsert_agent("a1", "a1", "daily_9am", is_active=False)
    assert invoker.run(MONDAY_0905) == 0
    runner.spawn.assert_not_called()


def test_disabled_invoker(store, runner):
    open_prefs(store)
    _activate(store, schedule="every_15min")
    invoker = AgentInvoker(store, runner, AgentsConfig(enabled=False))
    assert invoker.run(MONDAY_0905) == 0


def test_user_without_preferences_uses_utc(store, invoker, runner):
    _activate(store)
    assert invoker.run(MONDAY_0905) == 1
