"""Built-in background agents and the default agent catalog."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from loguru import logger

from heartbot.core.clock import parse_iso

if TYPE_CHECKING:
    from heartbot.memory.store import HeartbeatStore


@dataclass
class AgentContext:
    agent_id: str
    user_id: str
    db: HeartbeatStore
    now: datetime
    config: dict[str, Any] = field(default_factory=dict)
    previous_state: dict[str, Any] = field(default_factory=dict)


@dataclass
class AgentResult:
    success: bool = True
    message: str = ""
    notify: bool = False
    notification: str | None = None
    state: dict[str, Any] | None = None


AgentHandler = Callable[[AgentContext], Awaitable[AgentResult]]


# ════════════════════════════════════════════════════════════
# HANDLERS
# ════════════════════════════════════════════════════════════


async def stale_task_strategist(ctx: AgentContext) -> AgentResult:
    """Surface undated tasks that have been open longer than ``staleness_days``."""
    days = int(ctx.config.get("staleness_days") or 14)
    stale = ctx.db.get_undated_tasks_created_before(
        ctx.user_id, ctx.now - timedelta(days=days), limit=15
    )
    if not stale:
        return AgentResult(message="No stale tasks found")

    lines = []
    for i, task in enumerate(stale, start=1):
        age = (ctx.now - parse_iso(task.created_at)).days if task.created_at else days
        lines.append(f"{i}. \"{task.summary}\" ({age} days old)")
    text = (
        f"🧹 {len(stale)} task{'s' if len(stale) > 1 else ''} "
        f"untouched for over {days} days:\n\n" + "\n".join(lines) +
        "\n\nBreak them down, give them a date, or archive what no longer matters."
    )
    return AgentResult(
        message=text,
        notify=True,
        notification=text,
        state={"last_stale_count": len(stale)},
    )


_BILL_KEYWORDS = ("bill", "payment", "pay", "rent", "utilities", "insurance", "subscription", "invoice")


async def smart_bill_reminder(ctx: AgentContext) -> AgentResult:
    """Group bill-like tasks due soon into overdue / today / coming up."""
    reminder_days = ctx.config.get("reminder_days") or [3, 1]
    horizon = ctx.now + timedelta(days=max(reminder_days) + 1)
    candidates = ctx.db.get_overdue_tasks(ctx.user_id, before=horizon)
    if not candidates:
        return AgentResult(message="No upcoming bills")

    bills = [
        t for t in candidates
        if t.category in ("finance", "bill")
        or any(k in f"{t.summary} {t.category or ''}".lower() for k in _BILL_KEYWORDS)
    ]
    if not bills:
        return AgentResult(message="No bill-related due dates")

    overdue, today, soon = [], [], []
    for bill in bills:
        due = parse_iso(bill.due_date)
        label = f"\"{bill.summary}\" ({due.strftime('%b')} {due.day})"
        days_until = (due - ctx.now).days
        if days_until < 0:
            overdue.append(label)
        elif days_until == 0:
            today.append(label)
        else:
            soon.append(label)

    text = "💰 Bill Reminder\n\n"
    for title, items in (("🔴 OVERDUE:", overdue), ("🟡 DUE TODAY:", today), ("🟢 Coming up:", soon)):
        if items:
            text += title + "\n" + "\n".join(f"• {b}" for b in items) + "\n\n"
    text = text.rstrip() + "\n"
    return AgentResult(message=text, notify=True, notification=text)


DEFAULT_HANDLERS: dict[str, AgentHandler] = {
    "stale-task-strategist": stale_task_strategist,
    "smart-bill-reminder": smart_bill_reminder,
}


# ════════════════════════════════════════════════════════════
# CATALOG
# ════════════════════════════════════════════════════════════

DEFAULT_AGENTS: list[dict[str, Any]] = [
    {
        "agent_id": "stale-task-strategist",
        "name": "Stale Task Strategist",
        "description": "Finds tasks that have been sitting untouched and suggests what to do with them.",
        "schedule": "weekly_monday_9am",
        "config": {"staleness_days": 14},
    },
    {
        "agent_id": "smart-bill-reminder",
        "name": "Smart Bill Reminder",
        "description": "Reminds about bills and payments before they are due.",
        "schedule": "daily_9am",
        "config": {"reminder_days": [3, 1]},
    },
    {
        "agent_id": "energy-task-suggester",
        "name": "Energy Task Suggester",
        "description": "Matches the day's tasks to readiness data.",
        "schedule": "daily_morning_briefing",
        "requires_connection": "oura",
    },
    {
        "agent_id": "sleep-optimization-coach",
        "name": "Sleep Optimization Coach",
        "description": "Weekly sleep trend tips.",
        "schedule": "daily_10am",
        "requires_connection": "oura",
    },
    {
        "agent_id": "birthday-gift-agent",
        "name": "Birthday & Gift Agent",
        "description": "Reminds about upcoming important dates with gift ideas.",
        "schedule": "daily_check",
    },
    {
        "agent_id": "weekly-couple-sync",
        "name": "Weekly Couple Sync",
        "description": "Weekly alignment summary of both partners' activity.",
        "schedule": "weekly_sunday_6pm",
    },
    {
        "agent_id": "email-triage-agent",
        "name": "Email Triage Agent",
        "description": "Turns actionable emails into tasks.",
        "schedule": "every_15min",
        "requires_connection": "gmail",
    },
]


def seed_default_agents(db: HeartbeatStore) -> int:
    """Upsert the default catalog. Returns the number of agents written."""
    for agent in DEFAULT_AGENTS:
        db.upsert_agent(
            agent["agent_id"],
            agent["name"],
            agent["schedule"],
            description=agent.get("description", ""),
            requires_connection=agent.get("requires_connection"),
            config=agent.get("config"),
        )
    logger.debug(f"Agent catalog seeded with {len(DEFAULT_AGENTS)} agents")
    return len(DEFAULT_AGENTS)
