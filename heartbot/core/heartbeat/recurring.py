"""Recurring job scheduler — morning briefing, evening review, weekly summary."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

from loguru import logger

from heartbot.core.clock import (
    LocalTime,
    hours_ago,
    in_window,
    is_quiet_hours,
    resolve_local_time,
    slot_day_of_week,
)
from heartbot.core.heartbeat.types import JobType, Preference

if TYPE_CHECKING:
    from heartbot.core.config.schema import HeartbeatConfig
    from heartbot.memory.store import HeartbeatStore


@dataclass(frozen=True)
class _Feature:
    job_type: JobType
    enabled: bool
    target: str
    weekday: int | None = None  # weekly features only


def _features(pref: Preference) -> list[_Feature]:
    return [
        _Feature(JobType.MORNING_BRIEFING, pref.morning_briefing_enabled, pref.morning_briefing_time),
        _Feature(JobType.EVENING_REVIEW, pref.evening_review_enabled, pref.evening_review_time),
        _Feature(
            JobType.WEEKLY_SUMMARY,
            pref.weekly_summary_enabled,
            pref.weekly_summary_time,
            weekday=pref.weekly_summary_day,
        ),
    ]


class RecurringScheduler:
    """Turns per-user recurring preferences into pending jobs."""

    def __init__(self, db: HeartbeatStore, config: HeartbeatConfig):
        self.db = db
        self.config = config

    def run(self, now: datetime) -> int:
        """Schedule due recurring jobs. Returns the number of jobs created."""
        scheduled = 0
        for pref in self.db.list_proactive_preferences():
            try:
                scheduled += self._schedule_user(pref, now)
            except Exception as e:
                logger.error(f"Recurring scheduling failed for {pref.user_id}: {e}")
        if scheduled:
            logger.info(f"Recurring scheduler: {scheduled} job(s) scheduled")
        return scheduled

    def _schedule_user(self, pref: Preference, now: datetime) -> int:
        local = resolve_local_time(now, pref.timezone)
        if is_quiet_hours(pref.quiet_hours_start, pref.quiet_hours_end, local.hour):
            logger.debug(f"Quiet hours for {pref.user_id}, no recurring jobs")
            return 0

        count = 0
        for feature in _features(pref):
            if not feature.enabled or not self._is_due(feature, local):
                continue
            if self._already_handled(pref.user_id, feature, now):
                continue
            job_id = self.db.create_job(pref.user_id, feature.job_type.value, now, now=now)
            logger.info(f"Scheduled {feature.job_type.value} #{job_id} for {pref.user_id}")
            count += 1
        return count

    def _is_due(self, feature: _Feature, local: LocalTime) -> bool:
        if not in_window(local, feature.target, self.config.window_minutes):
            return False
        if feature.weekday is None:
            return True
        return slot_day_of_week(local, feature.target) == feature.weekday

    def _already_handled(self, user_id: str, feature: _Feature, now: datetime) -> bool:
        lookback = (
            self.config.weekly_lookback_hours
            if feature.weekday is not None
            else self.config.daily_lookback_hours
        )
        job_type = feature.job_type.value
        since = hours_ago(now, lookback)
        if self.db.has_log_since(user_id, job_type, since):
            return True
        return self.db.has_unfinished_job(user_id, job_type, now, since)
