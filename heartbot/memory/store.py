"""SQLite-based store for heartbot.

Tables:
    users, user_channels, preferences, tasks,
    heartbeat_jobs, heartbeat_log,
    agents, agent_activations, agent_runs,
    connections, outbound_queue

Timestamps are written by the application as canonical ISO-8601 UTC
strings (see ``heartbot.core.clock.to_iso``) so that string comparison in
SQL is chronological comparison.
"""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

from loguru import logger

from heartbot.core.clock import to_iso, utc_now
from heartbot.core.heartbeat.types import (
    AgentActivation,
    AgentRun,
    Job,
    JobStatus,
    LogEntry,
    Preference,
    Task,
)

_UNSET: Any = object()

_PREFERENCE_FIELDS = tuple(f for f in Preference.model_fields if f != "user_id")
_BOOL_PREFERENCE_FIELDS = frozenset(
    f for f, info in Preference.model_fields.items() if info.annotation in (bool, "bool")
)

# A task is visible to a user when they wrote it or it belongs to their group
_VISIBLE = (
    "(author_id = ? OR (group_id IS NOT NULL AND group_id = "
    "(SELECT group_id FROM users WHERE user_id = ?)))"
)


def _ts(now: datetime | None) -> str:
    return to_iso(now or utc_now())


class HeartbeatStore:
    """SQLite store — single source of truth for every scheduling decision."""

    def __init__(self, db_path: str = "data/heartbot.db"):
        self.db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()
        logger.info(f"HeartbeatStore initialized: {db_path}")

    @contextmanager
    def _get_conn(self):
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        try:
            yield conn
        finally:
            conn.close()

    def _init_db(self):
        with self._get_conn() as conn:
            conn.executescript(_SCHEMA)
            self._migrate(conn)
            conn.commit()

    def _migrate(self, conn) -> None:
        """Add columns missing in existing databases."""
        task_cols = {row[1] for row in conn.execute("PRAGMA table_info(tasks)").fetchall()}
        for col, ddl in [
            ("group_id", "TEXT"),
            ("last_reminded_at", "TEXT"),
            ("auto_reminders_sent", "TEXT NOT NULL DEFAULT '[]'"),
        ]:
            if col not in task_cols:
                conn.execute(f"ALTER TABLE tasks ADD COLUMN {col} {ddl}")

        user_cols = {row[1] for row in conn.execute("PRAGMA table_info(users)").fetchall()}
        for col in ("phone_number", "group_id"):
            if col not in user_cols:
                conn.execute(f"ALTER TABLE users ADD COLUMN {col} TEXT")

    # ════════════════════════════════════════════════════════════
    # USERS
    # ════════════════════════════════════════════════════════════

    def get_or_create_user(
        self,
        user_id: str,
        name: str | None = None,
        phone_number: str | None = None,
        group_id: str | None = None,
    ) -> str:
        with self._get_conn() as conn:
            row = conn.execute(
                "SELECT user_id FROM users WHERE user_id = ?", (user_id,)
            ).fetchone()
            if row:
                return user_id
            conn.execute(
                """INSERT INTO users (user_id, name, phone_number, group_id, created_at)
                   VALUES (?, ?, ?, ?, ?)""",
                (user_id, name, phone_number, group_id, _ts(None)),
            )
            conn.commit()
            logger.info(f"New user created: {user_id}")
        return user_id

    def get_user(self, user_id: str) -> dict[str, Any] | None:
        with self._get_conn() as conn:
            row = conn.execute(
                "SELECT user_id, name, phone_number, group_id, created_at FROM users WHERE user_id = ?",
                (user_id,),
            ).fetchone()
        return dict(row) if row else None

    def user_exists(self, user_id: str) -> bool:
        with self._get_conn() as conn:
            return (
                conn.execute(
                    "SELECT 1 FROM users WHERE user_id = ?", (user_id,)
                ).fetchone()
                is not None
            )

    def list_users(self) -> list[dict[str, Any]]:
        """List all users with their linked channels."""
        with self._get_conn() as conn:
            users = conn.execute(
                "SELECT user_id, name, phone_number, group_id, created_at FROM users ORDER BY created_at"
            ).fetchall()
        result = []
        for u in users:
            user = dict(u)
            user["channels"] = self.get_user_channels(u["user_id"])
            result.append(user)
        return result

    def find_user_by_phone(self, phone_number: str) -> dict[str, Any] | None:
        with self._get_conn() as conn:
            row = conn.execute(
                "SELECT user_id, name, phone_number FROM users WHERE phone_number = ? LIMIT 1",
                (phone_number,),
            ).fetchone()
        return dict(row) if row else None

    def update_user(
        self,
        user_id: str,
        name: str | None = None,
        phone_number: str | None = None,
        group_id: str | None = None,
    ) -> None:
        """Set any of name / phone / group that is given."""
        updates = {
            k: v for k, v in
            {"name": name, "phone_number": phone_number, "group_id": group_id}.items()
            if v is not None
        }
        if not updates:
            return
        assignments = ", ".join(f"{k} = ?" for k in updates)
        with self._get_conn() as conn:
            conn.execute(
                f"UPDATE users SET {assignments} WHERE user_id = ?",
                (*updates.values(), user_id),
            )
            conn.commit()

    # ════════════════════════════════════════════════════════════
    # USER CHANNELS (delivery identity)
    # ════════════════════════════════════════════════════════════

    def link_channel(
        self,
        user_id: str,
        channel: str,
        channel_user_id: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Link a channel identity (e.g. Telegram chat id) to a user."""
        self.get_or_create_user(user_id)
        with self._get_conn() as conn:
            conn.execute(
                """INSERT OR REPLACE INTO user_channels
                   (user_id, channel, channel_user_id, metadata) VALUES (?, ?, ?, ?)""",
                (user_id, channel, channel_user_id, json.dumps(metadata or {}, ensure_ascii=False)),
            )
            conn.commit()

    def get_channel_link(self, user_id: str, channel: str) -> dict[str, Any] | None:
        """Get channel link: {channel_user_id, metadata}."""
        with self._get_conn() as conn:
            row = conn.execute(
                "SELECT channel_user_id, metadata FROM user_channels WHERE user_id = ? AND channel = ?",
                (user_id, channel),
            ).fetchone()
        if not row:
            return None
        return {
            "channel_user_id": row["channel_user_id"],
            "metadata": json.loads(row["metadata"] or "{}"),
        }

    def get_user_channels(self, user_id: str) -> list[dict[str, Any]]:
        with self._get_conn() as conn:
            rows = conn.execute(
                "SELECT channel, channel_user_id FROM user_channels WHERE user_id = ?",
                (user_id,),
            ).fetchall()
        return [dict(r) for r in rows]

    # ════════════════════════════════════════════════════════════
    # PREFERENCES
    # ════════════════════════════════════════════════════════════

    @staticmethod
    def _row_to_preference(row: sqlite3.Row) -> Preference:
        data = dict(row)
        for f in _BOOL_PREFERENCE_FIELDS:
            data[f] = bool(data[f])
        return Preference(**{k: v for k, v in data.items() if k in Preference.model_fields})

    def get_preference(self, user_id: str) -> Preference | None:
        with self._get_conn() as conn:
            row = conn.execute(
                "SELECT * FROM preferences WHERE user_id = ?", (user_id,)
            ).fetchone()
        return self._row_to_preference(row) if row else None

    def get_preference_or_default(self, user_id: str) -> Preference:
        """Stored preferences, or UTC with no quiet hours when the user has no row."""
        pref = self.get_preference(user_id)
        if pref is None:
            pref = Preference(user_id=user_id, quiet_hours_start=None, quiet_hours_end=None)
        return pref

    def upsert_preference(self, user_id: str, **fields: Any) -> Preference:
        """Insert or merge preference fields (upsert-on-conflict)."""
        unknown = set(fields) - set(_PREFERENCE_FIELDS)
        if unknown:
            raise ValueError(f"Unknown preference fields: {sorted(unknown)}")
        self.get_or_create_user(user_id)

        current = self.get_preference(user_id) or Preference(user_id=user_id)
        merged = Preference.model_validate({**current.model_dump(), **fields})
        values = [getattr(merged, f) for f in _PREFERENCE_FIELDS]
        columns = ", ".join(_PREFERENCE_FIELDS)
        placeholders = ", ".join("?" for _ in _PREFERENCE_FIELDS)
        updates = ", ".join(f"{f} = excluded.{f}" for f in _PREFERENCE_FIELDS)
        with self._get_conn() as conn:
            conn.execute(
                f"""INSERT INTO preferences (user_id, {columns}, updated_at)
                    VALUES (?, {placeholders}, ?)
                    ON CONFLICT(user_id) DO UPDATE SET
                        {updates},
                        updated_at = excluded.updated_at""",
                (user_id, *values, _ts(None)),
            )
            conn.commit()
        return merged

    def list_proactive_preferences(self) -> list[Preference]:
        """Preferences of every user with proactive features enabled."""
        with self._get_conn() as conn:
            rows = conn.execute(
                "SELECT * FROM preferences WHERE proactive_enabled = 1 ORDER BY user_id"
            ).fetchall()
        return [self._row_to_preference(r) for r in rows]

    def list_nudge_preferences(self) -> list[Preference]:
        with self._get_conn() as conn:
            rows = conn.execute(
                """SELECT * FROM preferences
                   WHERE proactive_enabled = 1 AND overdue_nudge_enabled = 1
                   ORDER BY user_id"""
            ).fetchall()
        return [self._row_to_preference(r) for r in rows]

    # ════════════════════════════════════════════════════════════
    # TASKS
    # ════════════════════════════════════════════════════════════

    @staticmethod
    def _row_to_task(row: sqlite3.Row) -> Task:
        data = dict(row)
        data["completed"] = bool(data["completed"])
        data["auto_reminders_sent"] = json.loads(data.get("auto_reminders_sent") or "[]")
        return Task(**data)

    def add_task(
        self,
        author_id: str,
        summary: str,
        due_date: datetime | None = None,
        reminder_time: datetime | None = None,
        priority: str = "medium",
        category: str | None = None,
        recurrence_frequency: str = "none",
        recurrence_interval: int = 1,
        group_id: str | None = None,
        now: datetime | None = None,
    ) -> Task:
        self.get_or_create_user(author_id)
        created = _ts(now)
        with self._get_conn() as conn:
            cur = conn.execute(
                """INSERT INTO tasks
                   (author_id, group_id, summary, priority, category, completed,
                    due_date, reminder_time, recurrence_frequency, recurrence_interval,
                    auto_reminders_sent, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, 0, ?, ?, ?, ?, '[]', ?, ?)""",
                (
                    author_id, group_id, summary, priority, category,
                    to_iso(due_date) if due_date else None,
                    to_iso(reminder_time) if reminder_time else None,
                    recurrence_frequency, recurrence_interval,
                    created, created,
                ),
            )
            conn.commit()
            task_id = cur.lastrowid
        logger.debug(f"Task added: #{task_id} '{summary}' for {author_id}")
        return self.get_task(task_id)

    def get_task(self, task_id: int) -> Task | None:
        with self._get_conn() as conn:
            row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        return self._row_to_task(row) if row else None

    def list_tasks(
        self, user_id: str, include_completed: bool = False, limit: int = 100
    ) -> list[Task]:
        query = f"SELECT * FROM tasks WHERE {_VISIBLE}"
        if not include_completed:
            query += " AND completed = 0"
        query += " ORDER BY COALESCE(due_date, created_at) LIMIT ?"
        with self._get_conn() as conn:
            rows = conn.execute(query, (user_id, user_id, limit)).fetchall()
        return [self._row_to_task(r) for r in rows]

    def complete_task(self, task_id: int, now: datetime | None = None) -> bool:
        with self._get_conn() as conn:
            cur = conn.execute(
                "UPDATE tasks SET completed = 1, updated_at = ? WHERE id = ? AND completed = 0",
                (_ts(now), task_id),
            )
            conn.commit()
        return cur.rowcount > 0

    def get_reminder_tasks(
        self, start: datetime, end: datetime, limit: int = 50
    ) -> list[Task]:
        """Incomplete tasks whose reminder_time falls in [start, end]."""
        with self._get_conn() as conn:
            rows = conn.execute(
                """SELECT * FROM tasks
                   WHERE completed = 0 AND reminder_time IS NOT NULL
                     AND reminder_time >= ? AND reminder_time <= ?
                   ORDER BY reminder_time LIMIT ?""",
                (to_iso(start), to_iso(end), limit),
            ).fetchall()
        return [self._row_to_task(r) for r in rows]

    def get_tasks_due_between(
        self, start: datetime, end: datetime, user_id: str | None = None
    ) -> list[Task]:
        """Incomplete tasks with due_date in [start, end], optionally scoped to a user."""
        query = (
            "SELECT * FROM tasks WHERE completed = 0 AND due_date IS NOT NULL"
            " AND due_date >= ? AND due_date <= ?"
        )
        params: list[Any] = [to_iso(start), to_iso(end)]
        if user_id is not None:
            query += f" AND {_VISIBLE}"
            params += [user_id, user_id]
        query += " ORDER BY due_date"
        with self._get_conn() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_task(r) for r in rows]

    def get_overdue_tasks(
        self, user_id: str, before: datetime, limit: int | None = None
    ) -> list[Task]:
        """Incomplete tasks visible to the user that were due before ``before``."""
        query = (
            f"SELECT * FROM tasks WHERE {_VISIBLE} AND completed = 0"
            " AND due_date IS NOT NULL AND due_date < ? ORDER BY due_date"
        )
        params: list[Any] = [user_id, user_id, to_iso(before)]
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        with self._get_conn() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_task(r) for r in rows]

    def get_completed_since(self, user_id: str, since: datetime) -> list[Task]:
        with self._get_conn() as conn:
            rows = conn.execute(
                f"""SELECT * FROM tasks WHERE {_VISIBLE} AND completed = 1
                    AND updated_at >= ? ORDER BY updated_at DESC""",
                (user_id, user_id, to_iso(since)),
            ).fetchall()
        return [self._row_to_task(r) for r in rows]

    def count_created_since(self, user_id: str, since: datetime) -> int:
        with self._get_conn() as conn:
            row = conn.execute(
                f"SELECT COUNT(*) FROM tasks WHERE {_VISIBLE} AND created_at >= ?",
                (user_id, user_id, to_iso(since)),
            ).fetchone()
        return row[0]

    def get_open_tasks(
        self, user_id: str, priority: str | None = None, limit: int = 10
    ) -> list[Task]:
        query = f"SELECT * FROM tasks WHERE {_VISIBLE} AND completed = 0"
        params: list[Any] = [user_id, user_id]
        if priority is not None:
            query += " AND priority = ?"
            params.append(priority)
        query += " ORDER BY CASE priority WHEN 'high' THEN 0 WHEN 'medium' THEN 1 ELSE 2 END, id LIMIT ?"
        params.append(limit)
        with self._get_conn() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_task(r) for r in rows]

    def get_undated_tasks_created_before(
        self, author_id: str, before: datetime, limit: int = 15
    ) -> list[Task]:
        """Open tasks with no due date written by ``author_id`` before ``before``, oldest first."""
        with self._get_conn() as conn:
            rows = conn.execute(
                """SELECT * FROM tasks
                   WHERE author_id = ? AND completed = 0 AND due_date IS NULL
                     AND created_at < ?
                   ORDER BY created_at ASC LIMIT ?""",
                (author_id, to_iso(before), limit),
            ).fetchall()
        return [self._row_to_task(r) for r in rows]

    def update_task_reminder_state(
        self,
        task_id: int,
        add_markers: list[str],
        last_reminded_at: datetime,
        reminder_time: datetime | None = _UNSET,
    ) -> None:
        """Union-insert markers and stamp last_reminded_at in one UPDATE.

        ``reminder_time`` is left untouched unless given; ``None`` clears it.
        """
        with self._get_conn() as conn:
            row = conn.execute(
                "SELECT auto_reminders_sent FROM tasks WHERE id = ?", (task_id,)
            ).fetchone()
            if row is None:
                raise ValueError(f"Task {task_id} not found")
            markers = json.loads(row["auto_reminders_sent"] or "[]")
            for marker in add_markers:
                if marker not in markers:
                    markers.append(marker)

            assignments = "auto_reminders_sent = ?, last_reminded_at = ?, updated_at = ?"
            params: list[Any] = [
                json.dumps(markers), to_iso(last_reminded_at), to_iso(last_reminded_at),
            ]
            if reminder_time is not _UNSET:
                assignments += ", reminder_time = ?"
                params.append(to_iso(reminder_time) if reminder_time else None)
            conn.execute(f"UPDATE tasks SET {assignments} WHERE id = ?", (*params, task_id))
            conn.commit()

    # ════════════════════════════════════════════════════════════
    # HEARTBEAT JOBS
    # ════════════════════════════════════════════════════════════

    @staticmethod
    def _row_to_job(row: sqlite3.Row) -> Job:
        data = dict(row)
        data["payload"] = json.loads(data.get("payload") or "{}")
        return Job(**data)

    def create_job(
        self,
        user_id: str,
        job_type: str,
        scheduled_for: datetime,
        payload: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> int:
        """Insert a pending job. Returns the job id."""
        with self._get_conn() as conn:
            cur = conn.execute(
                """INSERT INTO heartbeat_jobs
                   (user_id, job_type, scheduled_for, payload, status, created_at)
                   VALUES (?, ?, ?, ?, 'pending', ?)""",
                (
                    user_id, str(job_type), to_iso(scheduled_for),
                    json.dumps(payload or {}, ensure_ascii=False), _ts(now),
                ),
            )
            conn.commit()
            return cur.lastrowid

    def get_job(self, job_id: int) -> Job | None:
        with self._get_conn() as conn:
            row = conn.execute(
                "SELECT * FROM heartbeat_jobs WHERE id = ?", (job_id,)
            ).fetchone()
        return self._row_to_job(row) if row else None

    def get_due_jobs(self, now: datetime, limit: int = 50) -> list[Job]:
        """Pending jobs with scheduled_for <= now, oldest first."""
        with self._get_conn() as conn:
            rows = conn.execute(
                """SELECT * FROM heartbeat_jobs
                   WHERE status = 'pending' AND scheduled_for <= ?
                   ORDER BY scheduled_for ASC, id ASC LIMIT ?""",
                (to_iso(now), limit),
            ).fetchall()
        return [self._row_to_job(r) for r in rows]

    def get_pending_jobs(self, user_id: str | None = None) -> list[Job]:
        with self._get_conn() as conn:
            if user_id:
                rows = conn.execute(
                    """SELECT * FROM heartbeat_jobs WHERE status = 'pending' AND user_id = ?
                       ORDER BY scheduled_for""",
                    (user_id,),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM heartbeat_jobs WHERE status = 'pending' ORDER BY scheduled_for"
                ).fetchall()
        return [self._row_to_job(r) for r in rows]

    def list_jobs(self, user_id: str | None = None, limit: int = 50) -> list[Job]:
        with self._get_conn() as conn:
            if user_id:
                rows = conn.execute(
                    "SELECT * FROM heartbeat_jobs WHERE user_id = ? ORDER BY id DESC LIMIT ?",
                    (user_id, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM heartbeat_jobs ORDER BY id DESC LIMIT ?", (limit,)
                ).fetchall()
        return [self._row_to_job(r) for r in rows]

    def has_unfinished_job(
        self, user_id: str, job_type: str, now: datetime, since: datetime,
    ) -> bool:
        """A due pending job, or one still processing for a slot after ``since``.

        Future jobs do not count, and neither do processing rows whose slot is
        older than ``since`` (a crashed send must not block the feature forever).
        """
        with self._get_conn() as conn:
            row = conn.execute(
                """SELECT 1 FROM heartbeat_jobs
                   WHERE user_id = ? AND job_type = ?
                     AND ((status = 'pending' AND scheduled_for <= ?)
                          OR (status = 'processing' AND scheduled_for >= ?))
                   LIMIT 1""",
                (user_id, str(job_type), to_iso(now), to_iso(since)),
            ).fetchone()
        return row is not None

    def _transition_job(
        self,
        job_id: int,
        expected: JobStatus,
        new: JobStatus,
        error: str | None = None,
        completed_at: datetime | None = None,
    ) -> bool:
        """Conditional status update. Returns False when the job was not in ``expected``."""
        with self._get_conn() as conn:
            cur = conn.execute(
                """UPDATE heartbeat_jobs
                   SET status = ?, error = COALESCE(?, error),
                       completed_at = COALESCE(?, completed_at)
                   WHERE id = ? AND status = ?""",
                (
                    new.value, error,
                    to_iso(completed_at) if completed_at else None,
                    job_id, expected.value,
                ),
            )
            conn.commit()
        return cur.rowcount > 0

    def claim_job(self, job_id: int) -> bool:
        """pending → processing. False if another tick already claimed it."""
        return self._transition_job(job_id, JobStatus.PENDING, JobStatus.PROCESSING)

    def complete_job(self, job_id: int, now: datetime | None = None) -> bool:
        return self._transition_job(
            job_id, JobStatus.PROCESSING, JobStatus.COMPLETED, completed_at=now or utc_now(),
        )

    def fail_job(self, job_id: int, error: str, now: datetime | None = None) -> bool:
        return self._transition_job(
            job_id, JobStatus.PROCESSING, JobStatus.FAILED,
            error=error, completed_at=now or utc_now(),
        )

    # ════════════════════════════════════════════════════════════
    # HEARTBEAT LOG (append-only)
    # ════════════════════════════════════════════════════════════

    def add_log(
        self,
        user_id: str,
        job_type: str,
        status: str,
        message_preview: str | None = None,
        channel: str | None = None,
        now: datetime | None = None,
    ) -> int:
        with self._get_conn() as conn:
            cur = conn.execute(
                """INSERT INTO heartbeat_log
                   (user_id, job_type, status, message_preview, channel, created_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (user_id, str(job_type), str(status), message_preview, channel, _ts(now)),
            )
            conn.commit()
            return cur.lastrowid

    def has_log_since(
        self, user_id: str, job_type: str, since: datetime, status: str = "sent"
    ) -> bool:
        """True when a log entry of this type/status exists at or after ``since``."""
        with self._get_conn() as conn:
            row = conn.execute(
                """SELECT 1 FROM heartbeat_log
                   WHERE user_id = ? AND job_type = ? AND status = ? AND created_at >= ?
                   LIMIT 1""",
                (user_id, str(job_type), str(status), to_iso(since)),
            ).fetchone()
        return row is not None

    def get_log(
        self, user_id: str | None = None, job_type: str | None = None, limit: int = 50
    ) -> list[LogEntry]:
        query = "SELECT * FROM heartbeat_log WHERE 1 = 1"
        params: list[Any] = []
        if user_id:
            query += " AND user_id = ?"
            params.append(user_id)
        if job_type:
            query += " AND job_type = ?"
            params.append(str(job_type))
        query += " ORDER BY created_at DESC, id DESC LIMIT ?"
        params.append(limit)
        with self._get_conn() as conn:
            rows = conn.execute(query, params).fetchall()
        return [LogEntry(**dict(r)) for r in rows]

    # ════════════════════════════════════════════════════════════
    # AGENTS (catalog, activations, run history)
    # ════════════════════════════════════════════════════════════

    def upsert_agent(
        self,
        agent_id: str,
        name: str,
        schedule: str | None,
        description: str = "",
        agent_type: str = "background_agent",
        requires_connection: str | None = None,
        config: dict[str, Any] | None = None,
        is_active: bool = True,
    ) -> None:
        with self._get_conn() as conn:
            conn.execute(
                """INSERT INTO agents
                   (agent_id, name, description, agent_type, schedule,
                    requires_connection, config, is_active)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(agent_id) DO UPDATE SET
                       name = excluded.name,
                       description = excluded.description,
                       agent_type = excluded.agent_type,
                       schedule = excluded.schedule,
                       requires_connection = excluded.requires_connection,
                       config = excluded.config,
                       is_active = excluded.is_active""",
                (
                    agent_id, name, description, agent_type, schedule,
                    requires_connection, json.dumps(config or {}), int(is_active),
                ),
            )
            conn.commit()

    def get_agent(self, agent_id: str) -> dict[str, Any] | None:
        with self._get_conn() as conn:
            row = conn.execute(
                "SELECT * FROM agents WHERE agent_id = ?", (agent_id,)
            ).fetchone()
        if not row:
            return None
        agent = dict(row)
        agent["config"] = json.loads(agent["config"] or "{}")
        return agent

    def set_agent_activation(
        self,
        user_id: str,
        agent_id: str,
        enabled: bool = True,
        config: dict[str, Any] | None = None,
    ) -> None:
        self.get_or_create_user(user_id)
        with self._get_conn() as conn:
            conn.execute(
                """INSERT INTO agent_activations (user_id, agent_id, enabled, config)
                   VALUES (?, ?, ?, ?)
                   ON CONFLICT(user_id, agent_id) DO UPDATE SET
                       enabled = excluded.enabled,
                       config = excluded.config""",
                (user_id, agent_id, int(enabled), json.dumps(config or {})),
            )
            conn.commit()

    def list_agents(self) -> list[dict[str, Any]]:
        with self._get_conn() as conn:
            rows = conn.execute("SELECT * FROM agents ORDER BY agent_id").fetchall()
        result = []
        for r in rows:
            agent = dict(r)
            agent["config"] = json.loads(agent["config"] or "{}")
            result.append(agent)
        return result

    def get_agent_activation(self, user_id: str, agent_id: str) -> dict[str, Any] | None:
        with self._get_conn() as conn:
            row = conn.execute(
                "SELECT enabled, config FROM agent_activations WHERE user_id = ? AND agent_id = ?",
                (user_id, agent_id),
            ).fetchone()
        if not row:
            return None
        return {"enabled": bool(row["enabled"]), "config": json.loads(row["config"] or "{}")}

    def get_background_activations(self) -> list[AgentActivation]:
        """Enabled activations of active background agents."""
        with self._get_conn() as conn:
            rows = conn.execute(
                """SELECT a.user_id, a.agent_id, a.config AS user_config,
                          g.name, g.schedule, g.requires_connection, g.config AS agent_config
                   FROM agent_activations a
                   JOIN agents g ON g.agent_id = a.agent_id
                   WHERE a.enabled = 1 AND g.is_active = 1
                     AND g.agent_type = 'background_agent'
                   ORDER BY a.user_id, a.agent_id"""
            ).fetchall()
        result = []
        for r in rows:
            data = dict(r)
            data["user_config"] = json.loads(data["user_config"] or "{}")
            data["agent_config"] = json.loads(data["agent_config"] or "{}")
            result.append(AgentActivation(**data))
        return result

    @staticmethod
    def _row_to_run(row: sqlite3.Row) -> AgentRun:
        data = dict(row)
        data["state"] = json.loads(data.get("state") or "{}")
        return AgentRun(**data)

    def create_agent_run(
        self,
        agent_id: str,
        user_id: str,
        state: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> int:
        with self._get_conn() as conn:
            cur = conn.execute(
                """INSERT INTO agent_runs (agent_id, user_id, status, state, started_at)
                   VALUES (?, ?, 'running', ?, ?)""",
                (agent_id, user_id, json.dumps(state or {}), _ts(now)),
            )
            conn.commit()
            return cur.lastrowid

    def finish_agent_run(
        self,
        run_id: int,
        status: str,
        result: str | None = None,
        error: str | None = None,
        state: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> None:
        with self._get_conn() as conn:
            conn.execute(
                """UPDATE agent_runs
                   SET status = ?, result = ?, error = ?,
                       state = COALESCE(?, state), completed_at = ?
                   WHERE id = ?""",
                (
                    status, result, error,
                    json.dumps(state) if state is not None else None,
                    _ts(now), run_id,
                ),
            )
            conn.commit()

    def get_agent_run(self, run_id: int) -> AgentRun | None:
        with self._get_conn() as conn:
            row = conn.execute("SELECT * FROM agent_runs WHERE id = ?", (run_id,)).fetchone()
        return self._row_to_run(row) if row else None

    def get_last_agent_run(
        self, agent_id: str, user_id: str, status: str | None = None
    ) -> AgentRun | None:
        """Most recent run for (agent, user), optionally filtered by status."""
        query = "SELECT * FROM agent_runs WHERE agent_id = ? AND user_id = ?"
        params: list[Any] = [agent_id, user_id]
        if status:
            query += " AND status = ?"
            params.append(status)
        query += " ORDER BY started_at DESC, id DESC LIMIT 1"
        with self._get_conn() as conn:
            row = conn.execute(query, params).fetchone()
        return self._row_to_run(row) if row else None

    # ════════════════════════════════════════════════════════════
    # CONNECTIONS (external integrations)
    # ════════════════════════════════════════════════════════════

    def set_connection(self, user_id: str, provider: str, is_active: bool = True) -> None:
        self.get_or_create_user(user_id)
        with self._get_conn() as conn:
            conn.execute(
                """INSERT INTO connections (user_id, provider, is_active, updated_at)
                   VALUES (?, ?, ?, ?)
                   ON CONFLICT(user_id, provider) DO UPDATE SET
                       is_active = excluded.is_active,
                       updated_at = excluded.updated_at""",
                (user_id, provider, int(is_active), _ts(None)),
            )
            conn.commit()

    def has_active_connection(self, user_id: str, provider: str) -> bool:
        with self._get_conn() as conn:
            row = conn.execute(
                "SELECT 1 FROM connections WHERE user_id = ? AND provider = ? AND is_active = 1",
                (user_id, provider),
            ).fetchone()
        return row is not None

    # ════════════════════════════════════════════════════════════
    # OUTBOUND QUEUE (gateway deliveries)
    # ════════════════════════════════════════════════════════════

    def enqueue_message(
        self,
        user_id: str,
        message_type: str,
        content: str,
        priority: str = "normal",
        scheduled_for: datetime | None = None,
        status: str = "pending",
        now: datetime | None = None,
    ) -> int:
        """Add an outbound row. ``status='sent'`` records a direct delivery."""
        created = _ts(now)
        sent_at = created if status == "sent" else None
        with self._get_conn() as conn:
            cur = conn.execute(
                """INSERT INTO outbound_queue
                   (user_id, message_type, content, priority, status,
                    scheduled_for, sent_at, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    user_id, message_type, content, priority, status,
                    to_iso(scheduled_for) if scheduled_for else created,
                    sent_at, created,
                ),
            )
            conn.commit()
            return cur.lastrowid

    def get_due_queue(self, now: datetime, limit: int = 50) -> list[dict[str, Any]]:
        with self._get_conn() as conn:
            rows = conn.execute(
                """SELECT * FROM outbound_queue
                   WHERE status = 'pending' AND scheduled_for <= ?
                   ORDER BY CASE priority WHEN 'high' THEN 0 WHEN 'normal' THEN 1 ELSE 2 END,
                            scheduled_for ASC
                   LIMIT ?""",
                (to_iso(now), limit),
            ).fetchall()
        return [dict(r) for r in rows]

    def mark_queue_sent(self, queue_id: int, now: datetime | None = None) -> None:
        with self._get_conn() as conn:
            conn.execute(
                "UPDATE outbound_queue SET status = 'sent', sent_at = ? WHERE id = ?",
                (_ts(now), queue_id),
            )
            conn.commit()

    def mark_queue_failed(self, queue_id: int, error: str) -> None:
        with self._get_conn() as conn:
            conn.execute(
                "UPDATE outbound_queue SET status = 'failed', error = ? WHERE id = ?",
                (error, queue_id),
            )
            conn.commit()

    def reschedule_queued(self, queue_id: int, scheduled_for: datetime) -> None:
        with self._get_conn() as conn:
            conn.execute(
                "UPDATE outbound_queue SET scheduled_for = ? WHERE id = ?",
                (to_iso(scheduled_for), queue_id),
            )
            conn.commit()

    def count_sent_since(self, user_id: str, since: datetime, exclude_priority: str | None = "high") -> int:
        """Delivered messages for a user since ``since`` (high priority excluded by default)."""
        query = "SELECT COUNT(*) FROM outbound_queue WHERE user_id = ? AND status = 'sent' AND sent_at >= ?"
        params: list[Any] = [user_id, to_iso(since)]
        if exclude_priority:
            query += " AND priority != ?"
            params.append(exclude_priority)
        with self._get_conn() as conn:
            row = conn.execute(query, params).fetchone()
        return row[0]


# ════════════════════════════════════════════════════════════
# SQL SCHEMA
# ════════════════════════════════════════════════════════════

_SCHEMA = """
-- 1. Users
CREATE TABLE IF NOT EXISTS users (
    user_id TEXT PRIMARY KEY,
    name TEXT,
    phone_number TEXT,
    group_id TEXT,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_users_phone ON users(phone_number);

-- 2. Delivery identity
CREATE TABLE IF NOT EXISTS user_channels (
    user_id TEXT NOT NULL,
    channel TEXT NOT NULL,
    channel_user_id TEXT NOT NULL,
    metadata TEXT DEFAULT '{}',
    PRIMARY KEY (user_id, channel),
    FOREIGN KEY (user_id) REFERENCES users(user_id)
);

-- 3. Proactive preferences (one row per user)
CREATE TABLE IF NOT EXISTS preferences (
    user_id TEXT PRIMARY KEY,
    proactive_enabled INTEGER NOT NULL DEFAULT 1,
    timezone TEXT NOT NULL DEFAULT 'UTC',
    quiet_hours_start TEXT DEFAULT '22:00',
    quiet_hours_end TEXT DEFAULT '07:00',
    max_daily_messages INTEGER NOT NULL DEFAULT 5,
    morning_briefing_enabled INTEGER NOT NULL DEFAULT 0,
    morning_briefing_time TEXT NOT NULL DEFAULT '08:00',
    evening_review_enabled INTEGER NOT NULL DEFAULT 0,
    evening_review_time TEXT NOT NULL DEFAULT '20:00',
    weekly_summary_enabled INTEGER NOT NULL DEFAULT 0,
    weekly_summary_time TEXT NOT NULL DEFAULT '18:00',
    weekly_summary_day INTEGER NOT NULL DEFAULT 0,
    overdue_nudge_enabled INTEGER NOT NULL DEFAULT 1,
    pattern_suggestions_enabled INTEGER NOT NULL DEFAULT 1,
    updated_at TEXT,
    FOREIGN KEY (user_id) REFERENCES users(user_id)
);

-- 4. Tasks / notes carrying reminders
CREATE TABLE IF NOT EXISTS tasks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    author_id TEXT NOT NULL,
    group_id TEXT,
    summary TEXT NOT NULL,
    priority TEXT NOT NULL DEFAULT 'medium',
    category TEXT,
    completed INTEGER NOT NULL DEFAULT 0,
    due_date TEXT,
    reminder_time TEXT,
    recurrence_frequency TEXT NOT NULL DEFAULT 'none',
    recurrence_interval INTEGER NOT NULL DEFAULT 1,
    auto_reminders_sent TEXT NOT NULL DEFAULT '[]',
    last_reminded_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    FOREIGN KEY (author_id) REFERENCES users(user_id)
);
CREATE INDEX IF NOT EXISTS idx_tasks_reminder ON tasks(completed, reminder_time);
CREATE INDEX IF NOT EXISTS idx_tasks_due ON tasks(completed, due_date);
CREATE INDEX IF NOT EXISTS idx_tasks_author ON tasks(author_id);

-- 5. Heartbeat jobs (never deleted)
CREATE TABLE IF NOT EXISTS heartbeat_jobs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    job_type TEXT NOT NULL,
    scheduled_for TEXT NOT NULL,
    payload TEXT NOT NULL DEFAULT '{}',
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'processing', 'completed', 'failed')),
    error TEXT,
    created_at TEXT NOT NULL,
    completed_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_jobs_due ON heartbeat_jobs(status, scheduled_for);
CREATE INDEX IF NOT EXISTS idx_jobs_user ON heartbeat_jobs(user_id, job_type, status);

-- 6. Heartbeat log (append-only, dedup source of truth)
CREATE TABLE IF NOT EXISTS heartbeat_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    job_type TEXT NOT NULL,
    status TEXT NOT NULL CHECK (status IN ('sent', 'failed', 'skipped')),
    message_preview TEXT,
    channel TEXT,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_log_lookup ON heartbeat_log(user_id, job_type, status, created_at);

-- 7. Agent catalog
CREATE TABLE IF NOT EXISTS agents (
    agent_id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    description TEXT DEFAULT '',
    agent_type TEXT NOT NULL DEFAULT 'background_agent',
    schedule TEXT,
    requires_connection TEXT,
    config TEXT NOT NULL DEFAULT '{}',
    is_active INTEGER NOT NULL DEFAULT 1
);

-- 8. Per-user agent activations
CREATE TABLE IF NOT EXISTS agent_activations (
    user_id TEXT NOT NULL,
    agent_id TEXT NOT NULL,
    enabled INTEGER NOT NULL DEFAULT 1,
    config TEXT NOT NULL DEFAULT '{}',
    PRIMARY KEY (user_id, agent_id),
    FOREIGN KEY (user_id) REFERENCES users(user_id),
    FOREIGN KEY (agent_id) REFERENCES agents(agent_id)
);

-- 9. Agent run history (cooldown source)
CREATE TABLE IF NOT EXISTS agent_runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    agent_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'running',
    state TEXT NOT NULL DEFAULT '{}',
    result TEXT,
    error TEXT,
    started_at TEXT NOT NULL,
    completed_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_agent_runs_user ON agent_runs(agent_id, user_id, started_at DESC);

-- 10. External integration connectivity
CREATE TABLE IF NOT EXISTS connections (
    user_id TEXT NOT NULL,
    provider TEXT NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 1,
    updated_at TEXT,
    PRIMARY KEY (user_id, provider),
    FOREIGN KEY (user_id) REFERENCES users(user_id)
);

-- 11. Outbound queue (deferred + delivered messages)
CREATE TABLE IF NOT EXISTS outbound_queue (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    message_type TEXT NOT NULL,
    content TEXT NOT NULL,
    priority TEXT NOT NULL DEFAULT 'normal' CHECK (priority IN ('low', 'normal', 'high')),
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'sent', 'failed', 'cancelled')),
    scheduled_for TEXT NOT NULL,
    sent_at TEXT,
    error TEXT,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_queue_due ON outbound_queue(status, scheduled_for);
CREATE INDEX IF NOT EXISTS idx_queue_user ON outbound_queue(user_id, status, sent_at);
"""
