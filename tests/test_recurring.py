"""Tests for the recurring scheduler (briefing / review / weekly summary)."""

from datetime import datetime, timedelta, timezone

import pytest

from heartbot.core.config.schema import HeartbeatConfig
from heartbot.core.heartbeat.recurring import RecurringScheduler

from conftest import open_prefs

# Wednesday 07:05 UTC = 09:05 in Cairo (UTC+2)
AT_0905 = datetime(2026, 3, 11, 7, 5, tzinfo=timezone.utc)


@pytest.fixture
def scheduler(store):
    return RecurringScheduler(store, HeartbeatConfig())


def _jobs(store, job_type=None):
    return [j for j in store.list_jobs("u1") if job_type is None or j.job_type.value == job_type]


def test_briefing_scheduled_inside_window(store, scheduler):
    open_prefs(store, timezone="Africa/Cairo", morning_briefing_enabled=True, morning_briefing_time="09:00")
    assert scheduler.run(AT_0905) == 1
    [job] = _jobs(store)
    assert job.job_type.value == "morning_briefing"


def test_briefing_not_scheduled_after_window(store, scheduler):
    open_prefs(store, timezone="Africa/Cairo", morning_briefing_enabled=True, morning_briefing_time="09:00")
    assert scheduler.run(AT_0905 + timedelta(minutes=15)) == 0


def test_disabled_feature_is_ignored(store, scheduler):
    open_prefs(store, morning_briefing_enabled=False, morning_briefing_time="07:00")
    assert scheduler.run(AT_0905) == 0


def test_proactive_disabled_user_is_skipped(store, scheduler):
    open_prefs(store, proactive_enabled=False, morning_briefing_enabled=True, morning_briefing_time="07:00")
    assert scheduler.run(AT_0905) == 0


def test_quiet_hours_block_scheduling(store, scheduler):
    store.upsert_preference(
        "u1",
        quiet_hours_start="06:00",
        quiet_hours_end="08:00",
        morning_briefing_enabled=True,
        morning_briefing_time="07:00",
    )
    assert scheduler.run(AT_0905) == 0


def test_repeated_ticks_schedule_once(store, scheduler):
    """A pending job blocks a second one; a sent log blocks the rest of the window."""
    open_prefs(store, morning_briefing_enabled=True, morning_briefing_time="07:00")
    assert scheduler.run(AT_0905) == 1
    assert scheduler.run(AT_0905 + timedelta(minutes=5)) == 0

    [job] = _jobs(store)
    store.claim_job(job.id)
    store.complete_job(job.id)
    store.add_log("u1", "morning_briefing", "sent", now=AT_0905)
    assert scheduler.run(AT_0905 + timedelta(minutes=9)) == 0
    assert len(_jobs(store)) == 1


def test_next_day_is_eligible_again(store, scheduler):
    open_prefs(store, morning_briefing_enabled=True, morning_briefing_time="07:00")
    store.add_log("u1", "morning_briefing", "sent", now=AT_0905)
    assert scheduler.run(AT_0905 + timedelta(days=1)) == 1


def test_failed_log_does_not_count_as_sent(store, scheduler):
    open_prefs(store, morning_briefing_enabled=True, morning_briefing_time="07:00")
    store.add_log("u1", "morning_briefing", "failed", now=AT_0905 - timedelta(minutes=1))
    assert scheduler.run(AT_0905) == 1


def test_weekly_summary_only_on_its_day(store, scheduler):
    # Wednesday = 3
    open_prefs(
        store, weekly_summary_enabled=True, weekly_summary_time="07:00", weekly_summary_day=3,
    )
    assert scheduler.run(AT_0905) == 1
    assert scheduler.run(AT_0905 + timedelta(days=1)) == 0

    store.upsert_preference("u1", weekly_summary_day=4)
    store.add_log("u1", "weekly_summary", "sent", now=AT_0905)
    [job] = _jobs(store, "weekly_summary")
    store.claim_job(job.id)
    store.complete_job(job.id)
    # Thursday is within the 6-day lookback of Wednesday's send
    assert scheduler.run(AT_0905 + timedelta(days=1)) == 0


def test_evening_and_briefing_same_tick(store, scheduler):
    open_prefs(
        store,
        morning_briefing_enabled=True, morning_briefing_time="07:00",
        evening_review_enabled=True, evening_review_time="07:00",
    )
    assert scheduler.run(AT_0905) == 2
    assert {j.job_type.value for j in _jobs(store)} == {"morning_briefing", "evening_review"}


def test_job_queued_for_later_does_not_block_today(store, scheduler):
    open_prefs(store, morning_briefing_enabled=True, morning_briefing_time="07:00")
    store.create_job("u1", "morning_briefing", AT_0905 + timedelta(days=7), now=AT_0905)
    assert scheduler.run(AT_0905) == 1
    assert len(_jobs(store, "morning_briefing")) == 2


def test_stuck_processing_job_does_not_block_later_days(store, scheduler):
    open_prefs(store, morning_briefing_enabled=True, morning_briefing_time="07:00")
    three_days_ago = AT_0905 - timedelta(days=3)
    stuck = store.create_job("u1", "morning_briefing", three_days_ago, now=three_days_ago)
    store.claim_job(stuck)

    assert scheduler.run(AT_0905) == 1
    # Today's own job still blocks
    assert scheduler.run(AT_0905 + timedelta(minutes=5)) == 0
