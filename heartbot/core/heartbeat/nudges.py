"""Overdue-nudge engine — at most one low-priority digest per user per rolling day."""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from loguru import logger

from heartbot.core.clock import hours_ago, is_quiet_hours, local_midnight_utc, resolve_local_time
from heartbot.core.heartbeat.types import JobType, LogStatus, Preference, Priority, Task

if TYPE_CHECKING:
    from heartbot.core.channels.base import DeliveryGateway
    from heartbot.core.config.schema import Config
    from heartbot.memory.store import HeartbeatStore

NUDGE_MESSAGE_TYPE = "proactive_nudge"


def build_nudge_message(tasks: list[Task], cap: int = 3) -> str:
    plural = "s" if len(tasks) > 1 else ""
    text = f"📋 Quick check-in!\n\nYou have {len(tasks)} overdue task{plural}:\n"
    for task in tasks[:cap]:
        text += f"• {task.summary}\n"
    if len(tasks) > cap:
        text += f"...and {len(tasks) - cap} more\n"
    text += "\nReply \"show overdue\" to see all or just send updates!"
    return text


class OverdueNudgeEngine:
    def __init__(self, db: HeartbeatStore, gateway: DeliveryGateway, config: Config):
        self.db = db
        self.gateway = gateway
        self.config = config

    async def run(self, now: datetime) -> int:
        sent = 0
        for pref in self.db.list_nudge_preferences():
            try:
                if await self._nudge_user(pref, now):
                    sent += 1
            except Exception as e:
                logger.error(f"Overdue nudge failed for {pref.user_id}: {e}")
        if sent:
            logger.info(f"Overdue nudges: {sent} sent")
        return sent

    async def _nudge_user(self, pref: Preference, now: datetime) -> bool:
        user_id = pref.user_id
        local = resolve_local_time(now, pref.timezone)
        if is_quiet_hours(pref.quiet_hours_start, pref.quiet_hours_end, local.hour):
            return False

        since = hours_ago(now, self.config.heartbeat.nudge_lookback_hours)
        if self.db.has_log_since(user_id, JobType.OVERDUE_NUDGE.value, since):
            return False

        overdue = self.db.get_overdue_tasks(user_id, before=local_midnight_utc(now, pref.timezone))
        if not overdue:
            return False

        text = build_nudge_message(overdue, cap=self.config.heartbeat.nudge_list_cap)
        if not await self.gateway.send(user_id, NUDGE_MESSAGE_TYPE, text, Priority.LOW.value):
            logger.warning(f"Overdue nudge not delivered to {user_id}")
            return False

        self.db.add_log(
            user_id, JobType.OVERDUE_NUDGE.value, LogStatus.SENT.value,
            message_preview=f"{len(overdue)} overdue tasks",
            channel=self.config.channels.default,
            now=now,
        )
        return True
