"""Background-agent invoker — schedule classes, connection gate, cooldown, fire-and-forget spawn."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Protocol

from loguru import logger

from heartbot.core.clock import LocalTime, is_quiet_hours, parse_hhmm, parse_iso, resolve_local_time
from heartbot.core.heartbeat.types import AgentActivation, Preference

if TYPE_CHECKING:
    from heartbot.core.config.schema import AgentsConfig
    from heartbot.memory.store import HeartbeatStore

EVERY_TICK = "every_tick"
DAILY = "daily"
WEEKLY = "weekly"

_WEEKDAYS = ("sunday", "monday", "tuesday", "wednesday", "thursday", "friday", "saturday")
_DAILY_AT = re.compile(r"^daily_(\d{1,2})(am|pm)$")
_WEEKLY_AT = re.compile(r"^weekly_([a-z]+)_(\d{1,2})(am|pm)$")


class AgentRunner(Protocol):
    def spawn(self, agent_id: str, user_id: str) -> str: ...


@dataclass(frozen=True)
class AgentSchedule:
    """Parsed schedule class. ``hour``/``weekday`` of None mean "any"."""

    kind: str
    hour: int | None = None
    weekday: int | None = None  # 0 = Sunday
    follows_briefing: bool = False


def _to_24h(hour: int, meridiem: str) -> int | None:
    if not 1 <= hour <= 12:
        return None
    if meridiem == "am":
        return 0 if hour == 12 else hour
    return 12 if hour == 12 else hour + 12


def parse_schedule(schedule: str | None) -> AgentSchedule | None:
    """Parse an agent schedule string; None when it is not recognised.

    >>> parse_schedule("weekly_monday_9am")
    AgentSchedule(kind='weekly', hour=9, weekday=1, follows_briefing=False)
    """
    value = (schedule or "").strip().lower()
    if value in ("every_15min", "every_tick"):
        return AgentSchedule(EVERY_TICK)
    if value == "daily_check":
        return AgentSchedule(DAILY)
    if value == "daily_morning_briefing":
        return AgentSchedule(DAILY, follows_briefing=True)

    m = _DAILY_AT.match(value)
    if m:
        hour = _to_24h(int(m.group(1)), m.group(2))
        return AgentSchedule(DAILY, hour=hour) if hour is not None else None

    m = _WEEKLY_AT.match(value)
    if m and m.group(1) in _WEEKDAYS:
        hour = _to_24h(int(m.group(2)), m.group(3))
        if hour is not None:
            return AgentSchedule(WEEKLY, hour=hour, weekday=_WEEKDAYS.index(m.group(1)))
    return None


def is_schedule_due(sched: AgentSchedule, local: LocalTime, pref: Preference) -> bool:
    if sched.kind == EVERY_TICK:
        return True
    if sched.follows_briefing:
        hm = parse_hhmm(pref.morning_briefing_time)
        return hm is not None and local.hour == hm[0]
    if sched.weekday is not None and local.day_of_week != sched.weekday:
        return False
    return sched.hour is None or local.hour == sched.hour


class AgentInvoker:
    """Decides which (user, background agent) pairs run this tick."""

    def __init__(self, db: HeartbeatStore, runner: AgentRunner, config: AgentsConfig):
        self.db = db
        self.runner = runner
        self.config = config

    def run(self, now: datetime) -> int:
        """Spawn every eligible agent run. Returns the number spawned."""
        if not self.config.enabled:
            return 0
        invoked = 0
        for activation in self.db.get_background_activations():
            try:
                if self._maybe_invoke(activation, now):
                    invoked += 1
            except Exception as e:
                logger.error(
                    f"Agent {activation.agent_id} invocation failed for {activation.user_id}: {e}"
                )
        if invoked:
            logger.info(f"Agent invoker: {invoked} agent run(s) spawned")
        return invoked

    def cooldown_for(self, sched: AgentSchedule) -> timedelta:
        minutes = {
            EVERY_TICK: self.config.cooldowns.every_tick,
            DAILY: self.config.cooldowns.daily,
            WEEKLY: self.config.cooldowns.weekly,
        }[sched.kind]
        return timedelta(minutes=minutes)

    def _maybe_invoke(self, activation: AgentActivation, now: datetime) -> bool:
        user_id, agent_id = activation.user_id, activation.agent_id
        pref = self.db.get_preference_or_default(user_id)
        local = resolve_local_time(now, pref.timezone)
        if is_quiet_hours(pref.quiet_hours_start, pref.quiet_hours_end, local.hour):
            return False

        provider = activation.requires_connection
        if provider and not self.db.has_active_connection(user_id, provider):
            logger.debug(f"Agent {agent_id} needs {provider}, not connected for {user_id}")
            return False

        sched = parse_schedule(activation.schedule)
        if sched is None:
            logger.warning(f"Agent {agent_id} has unknown schedule '{activation.schedule}'")
            return False
        if not is_schedule_due(sched, local, pref):
            return False

        last = self.db.get_last_agent_run(agent_id, user_id)
        if last and now - parse_iso(last.started_at) < self.cooldown_for(sched):
            logger.debug(f"Agent {agent_id} in cooldown for {user_id}")
            return False

        run_ref = self.runner.spawn(agent_id, user_id)
        logger.info(f"Agent {agent_id} spawned for {user_id} ({run_ref})")
        return True
