"""Tests for the reminder engine (explicit reminders + automatic due windows)."""

from datetime import datetime, timedelta, timezone

import pytest

from heartbot.core.heartbeat.reminders import (
    DueReminder,
    ReminderEngine,
    add_recurrence,
    build_reminder_message,
)

from conftest import FakeGateway, open_prefs


@pytest.fixture
def engine(store, gateway, config):
    return ReminderEngine(store, gateway, config)


# ── Recurrence ─────────────────────────────────────────────


def test_add_recurrence():
    base = datetime(2026, 1, 31, 9, 0, tzinfo=timezone.utc)
    assert add_recurrence(base, "daily") == base + timedelta(days=1)
    assert add_recurrence(base, "weekly", 2) == base + timedelta(weeks=2)
    assert add_recurrence(base, "monthly") == datetime(2026, 2, 28, 9, 0, tzinfo=timezone.utc)
    assert add_recurrence(base, "yearly") == datetime(2027, 1, 31, 9, 0, tzinfo=timezone.utc)
    assert add_recurrence(base, "none") is None


def test_leap_day_yearly_clamps():
    leap = datetime(2028, 2, 29, 9, 0, tzinfo=timezone.utc)
    assert add_recurrence(leap, "yearly") == datetime(2029, 2, 28, 9, 0, tzinfo=timezone.utc)


# ── Messages ───────────────────────────────────────────────


def test_single_auto_reminder_text(store, now):
    task = store.add_task("u1", "Dentist", due_date=now + timedelta(hours=2), now=now)
    text = build_reminder_message([DueReminder(task, auto_markers=["2h"], label="in 2 hours")])
    assert text.startswith('⏰ Reminder: "Dentist" is due in 2 hours')


def test_list_message_caps(store, now):
    items = [
        DueReminder(store.add_task("u1", f"Task {i}", now=now), explicit_marker=f"m{i}")
        for i in range(12)
    ]
    text = build_reminder_message(items, cap=10)
    assert text.startswith("⏰ You have 12 reminders:")
    assert "10. Task 9" in text
    assert "...and 2 more" in text


# ── Engine ─────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_task_due_in_130_minutes_gets_2h_marker_once(store, engine, gateway, now):
    open_prefs(store)
    task = store.add_task("u1", "Pick up kids", due_date=now + timedelta(minutes=130), now=now)

    batches = engine.collect(now)
    assert batches["u1"][0].auto_markers == ["2h"]

    assert await engine.run(now) == 1
    assert store.get_task(task.id).auto_reminders_sent == ["2h"]
    assert '"Pick up kids" is due in 2 hours' in gateway.sent[0]["content"]
    assert gateway.sent[0]["type"] == "reminder"

    assert engine.collect(now) == {}
    assert await engine.run(now) == 0
    assert len(gateway.sent) == 1


@pytest.mark.asyncio
async def test_explicit_reminder_fires_once(store, engine, gateway, now):
    open_prefs(store)
    task = store.add_task("u1", "Take pills", reminder_time=now + timedelta(minutes=5), now=now)

    assert await engine.run(now) == 1
    assert 'Here\'s your reminder: "Take pills"' in gateway.sent[0]["content"]
    updated = store.get_task(task.id)
    assert f"heartbeat_{task.reminder_time}" in updated.auto_reminders_sent
    assert updated.reminder_time is None
    assert updated.last_reminded_at is not None

    assert await engine.run(now + timedelta(minutes=5)) == 0


@pytest.mark.asyncio
async def test_recurring_reminder_advances(store, engine, now):
    open_prefs(store)
    at = now + timedelta(minutes=10)
    task = store.add_task(
        "u1", "Water plants", reminder_time=at, recurrence_frequency="weekly", now=now,
    )
    await engine.run(now)
    updated = store.get_task(task.id)
    assert updated.reminder_time == (at + timedelta(weeks=1)).isoformat()
    assert f"heartbeat_{task.reminder_time}" in updated.auto_reminders_sent


@pytest.mark.asyncio
async def test_reminders_are_grouped_per_user(store, engine, gateway, now):
    open_prefs(store)
    store.add_task("u1", "A", due_date=now + timedelta(minutes=10), now=now)
    store.add_task("u1", "B", reminder_time=now + timedelta(minutes=1), now=now)
    store.add_task("u2", "C", due_date=now + timedelta(hours=24), now=now)

    assert await engine.run(now) == 2
    by_user = {m["user_id"]: m["content"] for m in gateway.sent}
    assert by_user["u1"].startswith("⏰ You have 2 reminders:")
    assert "(due in 24 hours)" not in by_user["u2"]
    assert '"C" is due in 24 hours' in by_user["u2"]


@pytest.mark.asyncio
async def test_quiet_hours_hold_reminders_without_marking(store, engine, gateway, now):
    store.upsert_preference("u1", quiet_hours_start="09:00", quiet_hours_end="11:00")
    task = store.add_task("u1", "Quiet", due_date=now + timedelta(minutes=10), now=now)

    assert await engine.run(now) == 0
    assert gateway.sent == []
    assert store.get_task(task.id).auto_reminders_sent == []


@pytest.mark.asyncio
async def test_failed_send_leaves_task_unmarked(store, config, now):
    open_prefs(store)
    engine = ReminderEngine(store, FakeGateway(ok=False), config)
    task = store.add_task("u1", "Retry me", due_date=now + timedelta(minutes=10), now=now)
    assert await engine.run(now) == 0
    assert store.get_task(task.id).auto_reminders_sent == []
    assert not store.has_log_since("u1", "task_reminder", now - timedelta(hours=1))


@pytest.mark.asyncio
async def test_completed_tasks_are_ignored(store, engine, now):
    task = store.add_task("u1", "Done already", due_date=now + timedelta(minutes=10), now=now)
    store.complete_task(task.id)
    assert engine.collect(now) == {}


@pytest.mark.asyncio
async def test_successful_send_is_logged(store, engine, now):
    open_prefs(store)
    store.add_task("u1", "Log me", due_date=now + timedelta(minutes=110), now=now)
    await engine.run(now)
    [entry] = store.get_log("u1", job_type="task_reminder")
    assert entry.status.value == "sent"


@pytest.mark.parametrize(
    "minutes_until_due, markers",
    [
        (1424, None),
        (1425, ["24h"]),
        (1440, ["24h"]),
        (1455, ["24h"]),
        (1456, None),
        (104, None),
        (105, ["2h"]),
        (135, ["2h"]),
        (136, None),
        (0, ["15min"]),
        (20, ["15min"]),
        (21, None),
    ],
)
def test_auto_window_edges_are_inclusive(store, engine, now, minutes_until_due, markers):
    store.add_task("u1", "Edge", due_date=now + timedelta(minutes=minutes_until_due), now=now)
    batches = engine.collect(now)
    if markers is None:
        assert batches == {}
    else:
        assert batches["u1"][0].auto_markers == markers


@pytest.mark.asyncio
async def test_explicit_and_auto_trigger_merge_into_one_entry(store, engine, gateway, now):
    open_prefs(store)
    task = store.add_task(
        "u1", "Call mom",
        due_date=now + timedelta(minutes=10),
        reminder_time=now + timedelta(minutes=5),
        now=now,
    )

    [item] = engine.collect(now)["u1"]
    assert item.explicit_marker == f"heartbeat_{task.reminder_time}"
    assert item.auto_markers == ["15min"]

    assert await engine.run(now) == 1
    assert len(gateway.sent) == 1
    assert gateway.sent[0]["content"].startswith('⏰ Here\'s your reminder: "Call mom"')
    assert set(store.get_task(task.id).auto_reminders_sent) == {
        "15min", f"heartbeat_{task.reminder_time}",
    }
    assert engine.collect(now + timedelta(minutes=1)) == {}
