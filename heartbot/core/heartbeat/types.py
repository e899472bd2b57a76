"""Heartbeat domain types — mirror the SQLite tables plus request/result shapes."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, ClassVar, Literal, Union

from pydantic import BaseModel, Field, model_validator


class JobType(str, Enum):
    MORNING_BRIEFING = "morning_briefing"
    EVENING_REVIEW = "evening_review"
    WEEKLY_SUMMARY = "weekly_summary"
    TASK_REMINDER = "task_reminder"
    OVERDUE_NUDGE = "overdue_nudge"
    PATTERN_SUGGESTION = "pattern_suggestion"


# Job types whose content comes from the content generator rather than the payload
GENERATED_JOB_TYPES = frozenset(
    {JobType.MORNING_BRIEFING, JobType.EVENING_REVIEW, JobType.WEEKLY_SUMMARY}
)


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class LogStatus(str, Enum):
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"


class Priority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


class RecurrenceFrequency(str, Enum):
    NONE = "none"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


# ════════════════════════════════════════════════════════════
# STORED ENTITIES
# ════════════════════════════════════════════════════════════


class Job(BaseModel):
    """A unit of proactive work — mirrors heartbeat_jobs."""

    id: int
    user_id: str
    job_type: JobType
    scheduled_for: str
    payload: dict[str, Any] = Field(default_factory=dict)
    status: JobStatus = JobStatus.PENDING
    error: str | None = None
    created_at: str | None = None
    completed_at: str | None = None


class LogEntry(BaseModel):
    """Append-only heartbeat_log row."""

    id: int
    user_id: str
    job_type: str
    status: LogStatus
    message_preview: str | None = None
    channel: str | None = None
    created_at: str


class Preference(BaseModel):
    """Per-user proactive settings — read-only to the engine."""

    user_id: str
    proactive_enabled: bool = True
    timezone: str = "UTC"
    quiet_hours_start: str | None = "22:00"
    quiet_hours_end: str | None = "07:00"
    max_daily_messages: int = 5
    morning_briefing_enabled: bool = False
    morning_briefing_time: str = "08:00"
    evening_review_enabled: bool = False
    evening_review_time: str = "20:00"
    weekly_summary_enabled: bool = False
    weekly_summary_time: str = "18:00"
    weekly_summary_day: int = 0  # Sunday
    overdue_nudge_enabled: bool = True
    pattern_suggestions_enabled: bool = True


class Task(BaseModel):
    """A reminder-bearing note/task."""

    id: int
    author_id: str
    group_id: str | None = None
    summary: str
    priority: str = "medium"
    category: str | None = None
    completed: bool = False
    due_date: str | None = None
    reminder_time: str | None = None
    recurrence_frequency: RecurrenceFrequency = RecurrenceFrequency.NONE
    recurrence_interval: int = 1
    auto_reminders_sent: list[str] = Field(default_factory=list)
    last_reminded_at: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    def has_marker(self, marker: str) -> bool:
        return marker in self.auto_reminders_sent

    @property
    def is_recurring(self) -> bool:
        return self.recurrence_frequency != RecurrenceFrequency.NONE


class AgentActivation(BaseModel):
    """An enabled (user, background agent) pair joined with its catalog row."""

    user_id: str
    agent_id: str
    name: str = ""
    schedule: str | None = None
    requires_connection: str | None = None
    agent_config: dict[str, Any] = Field(default_factory=dict)
    user_config: dict[str, Any] = Field(default_factory=dict)


class AgentRun(BaseModel):
    id: int
    agent_id: str
    user_id: str
    status: str
    state: dict[str, Any] = Field(default_factory=dict)
    result: str | None = None
    error: str | None = None
    started_at: str
    completed_at: str | None = None


# ════════════════════════════════════════════════════════════
# TICK RESULT
# ════════════════════════════════════════════════════════════


class TickResult(BaseModel):
    """Per-stage counters returned by one tick."""

    scheduled_jobs: int = 0
    processed_jobs: int = 0
    failed_jobs: int = 0
    reminders_sent: int = 0
    nudges_sent: int = 0
    agents_invoked: int = 0
    queue_processed: int = 0
    errors: list[str] = Field(default_factory=list)


# ════════════════════════════════════════════════════════════
# ACTION REQUESTS (discriminated on "action")
# ════════════════════════════════════════════════════════════


class TickRequest(BaseModel):
    action: Literal["tick"] = "tick"


class ScheduleJobRequest(BaseModel):
    action: Literal["schedule_job"] = "schedule_job"
    user_id: str = Field(min_length=1)
    job_type: JobType
    scheduled_for: datetime | None = None
    payload: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _scheduled_for_from_payload(cls, data: Any) -> Any:
        # Older callers put scheduled_for inside the payload
        if isinstance(data, dict) and not data.get("scheduled_for"):
            payload = data.get("payload") or {}
            if isinstance(payload, dict) and payload.get("scheduled_for"):
                data = {**data, "scheduled_for": payload["scheduled_for"]}
        return data


class GenerateBriefingRequest(BaseModel):
    action: Literal["generate_briefing"] = "generate_briefing"
    user_id: str = Field(min_length=1)
    deliver: bool = False


class CheckRemindersRequest(BaseModel):
    action: Literal["check_reminders"] = "check_reminders"


class TestBriefingRequest(BaseModel):
    __test__: ClassVar[bool] = False  # not a pytest class

    action: Literal["test_briefing"] = "test_briefing"
    phone_number: str = Field(min_length=1)

    @model_validator(mode="before")
    @classmethod
    def _phone_from_payload(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("phone_number"):
            payload = data.get("payload") or {}
            if isinstance(payload, dict) and payload.get("phone_number"):
                data = {**data, "phone_number": payload["phone_number"]}
        return data


class GetPendingRequest(BaseModel):
    action: Literal["get_pending"] = "get_pending"
    user_id: str | None = None


HeartbeatRequest = Annotated[
    Union[
        TickRequest,
        ScheduleJobRequest,
        GenerateBriefingRequest,
        CheckRemindersRequest,
        TestBriefingRequest,
        GetPendingRequest,
    ],
    Field(discriminator="action"),
]


class HeartbeatError(Exception):
    """Base error for request-level failures."""


class UserNotFoundError(HeartbeatError):
    pass
