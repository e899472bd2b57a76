"""Reminder engine — explicit reminder_time hits plus automatic due-date windows.

Both sources are merged per task, grouped per author and sent as one
message per user.  Markers in ``auto_reminders_sent`` make each trigger
fire at most once per task:

    "24h" / "2h" / "15min"          automatic due-date windows
    "heartbeat_<reminder_time>"     an explicit reminder at that instant

Markers are only written after a successful delivery, so a batch skipped
for quiet hours is reconsidered on the next tick.
"""

from __future__ import annotations

import calendar
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from loguru import logger

from heartbot.core.clock import is_quiet_hours, parse_iso, resolve_local_time
from heartbot.core.heartbeat.types import JobType, LogStatus, Priority, RecurrenceFrequency, Task

if TYPE_CHECKING:
    from heartbot.core.channels.base import DeliveryGateway
    from heartbot.core.config.schema import Config
    from heartbot.memory.store import HeartbeatStore

REMINDER_MESSAGE_TYPE = "reminder"


def _add_months(dt: datetime, months: int) -> datetime:
    """Add calendar months, clamping the day to the target month's length."""
    index = dt.month - 1 + months
    year, month = dt.year + index // 12, index % 12 + 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


def add_recurrence(dt: datetime, frequency: str, interval: int = 1) -> datetime | None:
    """Next occurrence after ``dt``; None for non-recurring frequencies."""
    interval = max(interval or 1, 1)
    freq = RecurrenceFrequency(frequency) if frequency else RecurrenceFrequency.NONE
    if freq == RecurrenceFrequency.DAILY:
        return dt + timedelta(days=interval)
    if freq == RecurrenceFrequency.WEEKLY:
        return dt + timedelta(weeks=interval)
    if freq == RecurrenceFrequency.MONTHLY:
        return _add_months(dt, interval)
    if freq == RecurrenceFrequency.YEARLY:
        return _add_months(dt, 12 * interval)
    return None


@dataclass
class DueReminder:
    """One task selected this tick, with every trigger it matched."""

    task: Task
    explicit_marker: str | None = None
    auto_markers: list[str] = field(default_factory=list)
    label: str | None = None  # e.g. "in 2 hours" for automatic matches

    @property
    def is_explicit(self) -> bool:
        return self.explicit_marker is not None


_CLOSING_ONE = "Let me know if you have completed it or if you want me to remind you later! 🙂"
_CLOSING_MANY = "Let me know which ones you've completed or if you want me to remind you later! 🙂"


def build_reminder_message(items: list[DueReminder], cap: int = 10) -> str:
    if len(items) == 1:
        item = items[0]
        if item.is_explicit or not item.label:
            head = f"⏰ Here's your reminder: \"{item.task.summary}\""
        else:
            head = f"⏰ Reminder: \"{item.task.summary}\" is due {item.label}"
        return f"{head}\n\n{_CLOSING_ONE}"

    lines = []
    for i, item in enumerate(items[:cap], start=1):
        suffix = f" (due {item.label})" if item.label and not item.is_explicit else ""
        lines.append(f"{i}. {item.task.summary}{suffix}")
    if len(items) > cap:
        lines.append(f"...and {len(items) - cap} more")
    body = "\n".join(lines)
    return f"⏰ You have {len(items)} reminders:\n\n{body}\n\n{_CLOSING_MANY}"


class ReminderEngine:
    def __init__(self, db: HeartbeatStore, gateway: DeliveryGateway, config: Config):
        self.db = db
        self.gateway = gateway
        self.config = config

    async def run(self, now: datetime) -> int:
        """Send due reminders. Returns the number of messages sent."""
        sent = 0
        for user_id, items in self.collect(now).items():
            try:
                if await self._remind_user(user_id, items, now):
                    sent += 1
            except Exception as e:
                logger.error(f"Reminders failed for {user_id}: {e}")
        if sent:
            logger.info(f"Reminder engine: {sent} message(s) sent")
        return sent

    def collect(self, now: datetime) -> dict[str, list[DueReminder]]:
        """Merge both trigger sources into per-author batches."""
        cfg = self.config.heartbeat
        selected: dict[int, DueReminder] = {}

        horizon = now + timedelta(minutes=cfg.reminder_lookahead_minutes)
        for task in self.db.get_reminder_tasks(now, horizon, limit=cfg.reminder_batch_size):
            marker = f"heartbeat_{task.reminder_time}"
            if task.has_marker(marker):
                continue
            selected.setdefault(task.id, DueReminder(task)).explicit_marker = marker

        widest = max((w.max_minutes for w in cfg.reminder_windows), default=0)
        for task in self.db.get_tasks_due_between(now, now + timedelta(minutes=widest)):
            minutes = (parse_iso(task.due_date) - now).total_seconds() / 60
            for window in cfg.reminder_windows:
                if not window.min_minutes <= minutes <= window.max_minutes:
                    continue
                if task.has_marker(window.marker):
                    continue
                item = selected.setdefault(task.id, DueReminder(task))
                item.auto_markers.append(window.marker)
                item.label = item.label or window.label

        batches: dict[str, list[DueReminder]] = {}
        for item in selected.values():
            batches.setdefault(item.task.author_id, []).append(item)
        return batches

    async def _remind_user(self, user_id: str, items: list[DueReminder], now: datetime) -> bool:
        pref = self.db.get_preference_or_default(user_id)
        local = resolve_local_time(now, pref.timezone)
        if is_quiet_hours(pref.quiet_hours_start, pref.quiet_hours_end, local.hour):
            logger.debug(f"Quiet hours for {user_id}, {len(items)} reminder(s) held back")
            return False

        text = build_reminder_message(items, cap=self.config.heartbeat.reminder_list_cap)
        if not await self.gateway.send(user_id, REMINDER_MESSAGE_TYPE, text, Priority.NORMAL.value):
            logger.warning(f"Reminder delivery failed for {user_id}")
            return False

        for item in items:
            self._mark_sent(item, now)
        self.db.add_log(
            user_id, JobType.TASK_REMINDER.value, LogStatus.SENT.value,
            message_preview=text[: self.config.gateway.preview_chars],
            channel=self.config.channels.default,
            now=now,
        )
        return True

    def _mark_sent(self, item: DueReminder, now: datetime) -> None:
        task = item.task
        markers = list(item.auto_markers)
        if not item.is_explicit:
            self.db.update_task_reminder_state(task.id, markers, last_reminded_at=now)
            return

        markers.append(item.explicit_marker)
        next_time = None
        if task.is_recurring and task.reminder_time:
            next_time = add_recurrence(
                parse_iso(task.reminder_time),
                task.recurrence_frequency.value,
                task.recurrence_interval,
            )
            logger.debug(f"Task #{task.id} next reminder at {next_time}")
        self.db.update_task_reminder_state(
            task.id, markers, last_reminded_at=now, reminder_time=next_time,
        )
