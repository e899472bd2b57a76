"""HeartbeatEngine — tick orchestrator and action dispatch."""

from __future__ import annotations

import inspect
from datetime import datetime
from typing import TYPE_CHECKING, Any, Awaitable, Callable, assert_never

from loguru import logger
from pydantic import TypeAdapter, ValidationError

from heartbot.core.channels.base import normalize_phone
from heartbot.core.clock import utc_now
from heartbot.core.heartbeat.agents import AgentInvoker
from heartbot.core.heartbeat.jobs import JobQueueProcessor
from heartbot.core.heartbeat.nudges import OverdueNudgeEngine
from heartbot.core.heartbeat.recurring import RecurringScheduler
from heartbot.core.heartbeat.reminders import ReminderEngine
from heartbot.core.heartbeat.types import (
    CheckRemindersRequest,
    GenerateBriefingRequest,
    GetPendingRequest,
    HeartbeatError,
    HeartbeatRequest,
    JobType,
    LogStatus,
    Priority,
    ScheduleJobRequest,
    TestBriefingRequest,
    TickRequest,
    TickResult,
    UserNotFoundError,
)

if TYPE_CHECKING:
    from heartbot.core.channels.base import DeliveryGateway
    from heartbot.core.config.schema import Config
    from heartbot.core.content import ContentGenerator
    from heartbot.core.heartbeat.agents import AgentRunner
    from heartbot.memory.store import HeartbeatStore

_request_adapter: TypeAdapter[HeartbeatRequest] = TypeAdapter(HeartbeatRequest)


def parse_request(data: dict[str, Any]) -> HeartbeatRequest:
    """Validate an action-tagged body. Raises pydantic.ValidationError."""
    return _request_adapter.validate_python(data)


def _format_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(parts)


class HeartbeatEngine:
    """Runs the five sub-schedulers in a fixed, failure-isolated order.

    Holds no state between ticks; everything is re-derived from the store.
    """

    def __init__(
        self,
        db: HeartbeatStore,
        content: ContentGenerator,
        gateway: DeliveryGateway,
        runner: AgentRunner,
        config: Config,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.content = content
        self.gateway = gateway
        self.config = config
        self._clock = clock

        self.recurring = RecurringScheduler(db, config.heartbeat)
        self.jobs = JobQueueProcessor(db, content, gateway, config)
        self.reminders = ReminderEngine(db, gateway, config)
        self.nudges = OverdueNudgeEngine(db, gateway, config)
        self.agents = AgentInvoker(db, runner, config.agents)

    # ════════════════════════════════════════════════════════════
    # TICK
    # ════════════════════════════════════════════════════════════

    async def tick(self, now: datetime | None = None) -> TickResult:
        now = now or self._clock()
        result = TickResult()
        logger.info(f"Heartbeat tick started at {now.isoformat()}")

        result.scheduled_jobs = await self._stage(result, "recurring", lambda: self.recurring.run(now), 0)
        jobs = await self._stage(result, "jobs", lambda: self.jobs.run(now), {})
        result.processed_jobs = jobs.get("processed", 0)
        result.failed_jobs = jobs.get("failed", 0)
        result.reminders_sent = await self._stage(result, "reminders", lambda: self.reminders.run(now), 0)
        result.nudges_sent = await self._stage(result, "nudges", lambda: self.nudges.run(now), 0)
        result.agents_invoked = await self._stage(result, "agents", lambda: self.agents.run(now), 0)
        result.queue_processed = await self._stage(result, "queue", self.gateway.process_queue, 0)

        logger.info(
            f"Heartbeat tick done: scheduled={result.scheduled_jobs} "
            f"processed={result.processed_jobs} failed={result.failed_jobs} "
            f"reminders={result.reminders_sent} nudges={result.nudges_sent} "
            f"agents={result.agents_invoked} queue={result.queue_processed}"
        )
        return result

    async def _stage(
        self,
        result: TickResult,
        name: str,
        call: Callable[[], Any | Awaitable[Any]],
        default: Any,
    ) -> Any:
        try:
            value = call()
            if inspect.isawaitable(value):
                value = await value
            return value
        except Exception as e:
            logger.error(f"Heartbeat stage '{name}' failed: {e}")
            result.errors.append(f"{name}: {e}")
            return default

    # ════════════════════════════════════════════════════════════
    # ACTIONS
    # ════════════════════════════════════════════════════════════

    async def dispatch(self, data: dict[str, Any]) -> dict[str, Any]:
        """Validate a raw body and run it. Structural errors never reach the store."""
        try:
            request = parse_request(data)
        except ValidationError as e:
            return {"success": False, "error": _format_validation_error(e)}
        return await self.handle(request)

    async def handle(self, request: HeartbeatRequest) -> dict[str, Any]:
        try:
            match request:
                case TickRequest():
                    result = await self.tick()
                    return {"success": True, "tick_results": result.model_dump()}
                case ScheduleJobRequest():
                    return {"success": True, "job_id": self.schedule_job(request)}
                case GenerateBriefingRequest():
                    return await self.generate_briefing(request.user_id, deliver=request.deliver)
                case CheckRemindersRequest():
                    return {"success": True, "reminders_sent": await self.check_reminders()}
                case TestBriefingRequest():
                    return await self.test_briefing(request.phone_number)
                case GetPendingRequest():
                    jobs = self.db.get_pending_jobs(request.user_id)
                    return {"success": True, "jobs": [j.model_dump() for j in jobs]}
                case _:
                    assert_never(request)
        except HeartbeatError as e:
            return {"success": False, "error": str(e)}

    def schedule_job(self, request: ScheduleJobRequest) -> int:
        now = self._clock()
        job_id = self.db.create_job(
            request.user_id,
            request.job_type.value,
            request.scheduled_for or now,
            payload=request.payload,
            now=now,
        )
        logger.info(f"Job #{job_id} ({request.job_type.value}) scheduled for {request.user_id}")
        return job_id

    async def check_reminders(self) -> int:
        return await self.reminders.run(self._clock())

    async def generate_briefing(self, user_id: str, deliver: bool = False) -> dict[str, Any]:
        """Build a morning briefing on demand; optionally deliver it now."""
        if not self.db.user_exists(user_id):
            raise UserNotFoundError(f"User not found: {user_id}")
        now = self._clock()
        briefing = await self.content.generate(JobType.MORNING_BRIEFING.value, user_id, now)
        delivered = False
        if deliver:
            delivered = await self.gateway.send(
                user_id, JobType.MORNING_BRIEFING.value, briefing, Priority.NORMAL.value,
            )
            self._log_briefing(user_id, briefing, delivered, now)
        return {"success": True, "briefing": briefing, "delivered": delivered}

    async def test_briefing(self, phone_number: str) -> dict[str, Any]:
        """Resolve a user by phone and force-deliver a briefing (high priority)."""
        clean = normalize_phone(phone_number)
        user = self.db.find_user_by_phone(clean)
        if user is None:
            raise UserNotFoundError(f"User not found for phone: {clean}")

        now = self._clock()
        user_id = user["user_id"]
        briefing = await self.content.generate(JobType.MORNING_BRIEFING.value, user_id, now)
        sent = await self.gateway.send(
            user_id, JobType.MORNING_BRIEFING.value, briefing, Priority.HIGH.value,
        )
        self._log_briefing(user_id, briefing, sent, now)
        logger.info(f"Test briefing for {user_id}: {'sent' if sent else 'failed'}")
        return {
            "success": sent,
            "user_id": user_id,
            "user_name": user.get("name"),
            "briefing_preview": briefing[:300],
            "message": "Briefing sent successfully!" if sent else "Failed to send briefing",
        }

    def _log_briefing(self, user_id: str, briefing: str, sent: bool, now: datetime) -> None:
        self.db.add_log(
            user_id,
            JobType.MORNING_BRIEFING.value,
            LogStatus.SENT.value if sent else LogStatus.FAILED.value,
            message_preview=briefing[: self.config.gateway.preview_chars],
            channel=self.config.channels.default,
            now=now,
        )
