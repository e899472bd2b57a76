"""Content generation for briefings, reviews and weekly summaries."""

from __future__ import annotations

from collections import Counter
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Protocol

from heartbot.core.clock import local_midnight_utc, next_local_midnight_utc, to_iso
from heartbot.core.heartbeat.types import JobType, Task

if TYPE_CHECKING:
    from heartbot.memory.store import HeartbeatStore


class ContentGenerator(Protocol):
    async def generate(self, job_type: str, user_id: str, now: datetime) -> str: ...


class TemplateContentGenerator:
    """Builds message text from the user's visible tasks.

    "Today" and "tomorrow" are the user's local days; tasks shared through
    the user's group are included.
    """

    def __init__(self, db: HeartbeatStore):
        self.db = db

    async def generate(self, job_type: str, user_id: str, now: datetime) -> str:
        builders = {
            JobType.MORNING_BRIEFING.value: self.morning_briefing,
            JobType.EVENING_REVIEW.value: self.evening_review,
            JobType.WEEKLY_SUMMARY.value: self.weekly_summary,
        }
        builder = builders.get(str(getattr(job_type, "value", job_type)))
        if builder is None:
            raise ValueError(f"No content template for job type '{job_type}'")
        return builder(user_id, now)

    # ── Helpers ─────────────────────────────────────────────

    def _first_name(self, user_id: str) -> str:
        user = self.db.get_user(user_id) or {}
        name = (user.get("name") or "").strip()
        return name.split(" ")[0] if name else "there"

    def _day_bounds(self, user_id: str, now: datetime) -> tuple[datetime, datetime, datetime]:
        pref = self.db.get_preference_or_default(user_id)
        today = local_midnight_utc(now, pref.timezone)
        # Local days are 23 or 25 hours long across DST changes
        tomorrow = next_local_midnight_utc(now, pref.timezone)
        return today, tomorrow, next_local_midnight_utc(tomorrow, pref.timezone)

    def _due_in(self, user_id: str, start: datetime, end: datetime) -> list[Task]:
        # Half-open [start, end)
        return [
            t for t in self.db.get_tasks_due_between(start, end, user_id=user_id)
            if t.due_date and t.due_date < to_iso(end)
        ]

    # ── Templates ───────────────────────────────────────────

    def morning_briefing(self, user_id: str, now: datetime) -> str:
        today, tomorrow, _ = self._day_bounds(user_id, now)
        today_tasks = sorted(
            self._due_in(user_id, today, tomorrow),
            key=lambda t: t.priority != "high",
        )[:10]
        overdue = self.db.get_overdue_tasks(user_id, before=today, limit=5)
        urgent = self.db.get_open_tasks(user_id, priority="high", limit=5)

        text = f"☀️ Good morning, {self._first_name(user_id)}!\n\n"

        if overdue:
            plural = "s" if len(overdue) > 1 else ""
            text += f"⚠️ {len(overdue)} overdue task{plural}:\n"
            for task in overdue[:3]:
                text += f"• {task.summary}\n"
            text += "\n"

        if today_tasks:
            text += f"📅 Today's tasks ({len(today_tasks)}):\n"
            for i, task in enumerate(today_tasks[:5], start=1):
                flame = " 🔥" if task.priority == "high" else ""
                text += f"{i}. {task.summary}{flame}\n"
            if len(today_tasks) > 5:
                text += f"   ...and {len(today_tasks) - 5} more\n"
            text += "\n"
        elif not overdue:
            text += "✨ No tasks scheduled for today!\n\n"

        if urgent and not any(t.priority == "high" for t in today_tasks):
            text += "🔥 Urgent:\n"
            for task in urgent[:2]:
                text += f"• {task.summary}\n"
            text += "\n"

        text += "💬 Reply with your plan for the day or \"what's urgent\" to see more."
        return text

    def evening_review(self, user_id: str, now: datetime) -> str:
        today, tomorrow, day_after = self._day_bounds(user_id, now)
        completed = self.db.get_completed_since(user_id, today)[:10]
        pending = self._due_in(user_id, today, tomorrow)[:5]
        upcoming = self._due_in(user_id, tomorrow, day_after)[:5]

        text = f"🌙 Evening review, {self._first_name(user_id)}!\n\n"

        if completed:
            text += f"✅ Completed today ({len(completed)}):\n"
            for task in completed[:3]:
                text += f"• {task.summary}\n"
            if len(completed) > 3:
                text += f"   ...and {len(completed) - 3} more!\n"
            text += "\n"

        if pending:
            text += "⏳ Still pending from today:\n"
            for task in pending:
                flame = " 🔥" if task.priority == "high" else ""
                text += f"• {task.summary}{flame}\n"
            text += "\n"

        if upcoming:
            text += "📅 Tomorrow:\n"
            for task in upcoming[:3]:
                text += f"• {task.summary}\n"
            text += "\n"

        if len(completed) >= 3:
            text += "🎉 Great job today! You're doing awesome."
        else:
            text += "💪 Tomorrow is a new day. Rest well!"
        return text

    def weekly_summary(self, user_id: str, now: datetime) -> str:
        week_start = now - timedelta(days=7)
        completed = self.db.get_completed_since(user_id, week_start)
        created = self.db.count_created_since(user_id, week_start)
        pending = self.db.get_open_tasks(user_id, limit=10)

        text = f"📊 Weekly Summary for {self._first_name(user_id)}\n\n"
        text += "📈 This Week:\n"
        text += f"• Completed: {len(completed)} tasks\n"
        text += f"• Created: {created} tasks\n"
        text += f"• Still pending: {len(pending)} tasks\n\n"

        categories = Counter(t.category or "general" for t in completed)
        if categories:
            text += "📂 By Category:\n"
            for category, count in categories.most_common(4):
                text += f"• {category}: {count}\n"
            text += "\n"

        done = len(completed)
        if done >= 10:
            text += f"🏆 Amazing week! You completed {done} tasks!"
        elif done >= 5:
            text += f"💪 Good progress! {done} tasks completed."
        elif done > 0:
            text += f"✨ {done} task{'s' if done > 1 else ''} done. Every step counts!"
        else:
            text += "🌱 Fresh start next week! You've got this."
        return text
