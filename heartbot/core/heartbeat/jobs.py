"""Job queue processor — pending heartbeat_jobs → content → gateway → terminal status."""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from loguru import logger

from heartbot.core.heartbeat.types import GENERATED_JOB_TYPES, Job, LogStatus, Priority

if TYPE_CHECKING:
    from heartbot.core.channels.base import DeliveryGateway
    from heartbot.core.config.schema import Config
    from heartbot.core.content import ContentGenerator
    from heartbot.memory.store import HeartbeatStore


class JobQueueProcessor:
    """Processes due jobs once each; a failed job is terminal and never retried."""

    def __init__(
        self,
        db: HeartbeatStore,
        content: ContentGenerator,
        gateway: DeliveryGateway,
        config: Config,
    ):
        self.db = db
        self.content = content
        self.gateway = gateway
        self.config = config

    async def run(self, now: datetime) -> dict[str, int]:
        processed = 0
        failed = 0
        jobs = self.db.get_due_jobs(now, limit=self.config.heartbeat.job_batch_size)
        for job in jobs:
            try:
                claimed = self.db.claim_job(job.id)
            except Exception as e:
                logger.error(f"Job #{job.id} could not be claimed: {e}")
                continue
            if not claimed:
                logger.debug(f"Job #{job.id} already claimed, skipping")
                continue
            try:
                ok = await self._process(job, now)
            except Exception as e:
                logger.error(f"Job #{job.id} bookkeeping failed: {e}")
                self._release(job, str(e), now)
                ok = False
            if ok:
                processed += 1
            else:
                failed += 1
        if jobs:
            logger.info(f"Job queue: {processed} processed, {failed} failed")
        return {"processed": processed, "failed": failed}

    async def _process(self, job: Job, now: datetime) -> bool:
        job_type = job.job_type.value
        try:
            text = await self._content_for(job, now)
            priority = job.payload.get("priority") or Priority.NORMAL.value
            delivered = await self.gateway.send(job.user_id, job_type, text, priority)
        except Exception as e:
            logger.error(f"Job #{job.id} ({job_type}) failed: {e}")
            self._fail(job, str(e), now)
            return False

        if not delivered:
            logger.warning(f"Job #{job.id} ({job_type}) not delivered to {job.user_id}")
            self._fail(job, "delivery failed", now)
            return False

        self.db.complete_job(job.id, now=now)
        self.db.add_log(
            job.user_id, job_type, LogStatus.SENT.value,
            message_preview=text[: self.config.gateway.preview_chars],
            channel=self.config.channels.default,
            now=now,
        )
        return True

    async def _content_for(self, job: Job, now: datetime) -> str:
        if job.job_type in GENERATED_JOB_TYPES:
            return await self.content.generate(job.job_type.value, job.user_id, now)
        text = job.payload.get("content")
        if not text:
            raise ValueError(f"Job payload has no content for {job.job_type.value}")
        return str(text)

    def _release(self, job: Job, error: str, now: datetime) -> None:
        """Move a claimed job out of processing after a store error; best effort."""
        try:
            self.db.fail_job(job.id, error, now=now)
        except Exception as e:
            logger.error(f"Job #{job.id} left in processing: {e}")

    def _fail(self, job: Job, error: str, now: datetime) -> None:
        self.db.fail_job(job.id, error, now=now)
        self.db.add_log(
            job.user_id, job.job_type.value, LogStatus.FAILED.value,
            message_preview=error[: self.config.gateway.preview_chars],
            channel=self.config.channels.default,
            now=now,
        )
