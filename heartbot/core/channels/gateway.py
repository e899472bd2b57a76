"""ChannelGateway — resolves a user's channel, enforces the daily cap, drains the outbound queue."""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Callable

import httpx
from loguru import logger

from heartbot.core.channels.telegram import send_message
from heartbot.core.clock import local_midnight_utc, next_local_midnight_utc, utc_now
from heartbot.core.heartbeat.types import Preference, Priority

if TYPE_CHECKING:
    from heartbot.core.config.schema import Config
    from heartbot.memory.store import HeartbeatStore


class ChannelGateway:
    """Default delivery gateway.

    Every direct delivery is recorded in ``outbound_queue`` with status
    ``sent``, which is what the daily message cap counts.  Non-high
    priority messages over ``max_daily_messages`` are parked in the queue
    until the user's next local midnight; ``send`` still returns True for
    them because the gateway now owns their delivery.
    """

    def __init__(
        self,
        config: Config,
        db: HeartbeatStore,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.config = config
        self.db = db
        self._clock = clock

    async def send(
        self,
        user_id: str,
        message_type: str,
        content: str,
        priority: str = "normal",
    ) -> bool:
        now = self._clock()
        pref = self.db.get_preference_or_default(user_id)

        if self._over_daily_limit(pref, priority, now):
            release_at = next_local_midnight_utc(now, pref.timezone)
            self.db.enqueue_message(
                user_id, message_type, content, priority,
                scheduled_for=release_at, now=now,
            )
            logger.info(
                f"Daily limit reached for {user_id}, {message_type} deferred to {release_at.isoformat()}"
            )
            return True

        if not await self._deliver(user_id, content):
            return False
        self.db.enqueue_message(
            user_id, message_type, content, priority, status="sent", now=now,
        )
        return True

    async def process_queue(self) -> int:
        """Deliver due queued messages. Returns the number delivered."""
        now = self._clock()
        sent = 0
        for row in self.db.get_due_queue(now, limit=self.config.gateway.queue_batch_size):
            user_id = row["user_id"]
            pref = self.db.get_preference_or_default(user_id)
            if self._over_daily_limit(pref, row["priority"], now):
                self.db.reschedule_queued(row["id"], next_local_midnight_utc(now, pref.timezone))
                continue
            if await self._deliver(user_id, row["content"]):
                self.db.mark_queue_sent(row["id"], now=now)
                sent += 1
            else:
                self.db.mark_queue_failed(row["id"], "delivery failed")
        if sent:
            logger.info(f"Outbound queue: {sent} message(s) delivered")
        return sent

    def channel_for(self, user_id: str) -> str | None:
        """Name of the channel a message to this user would go through."""
        resolved = self._resolve_channel(user_id)
        return resolved[0] if resolved else None

    # ── Internals ───────────────────────────────────────────

    def _over_daily_limit(self, pref: Preference, priority: str, now: datetime) -> bool:
        if priority == Priority.HIGH.value or not self.config.gateway.enforce_daily_limit:
            return False
        since = local_midnight_utc(now, pref.timezone)
        return self.db.count_sent_since(pref.user_id, since) >= pref.max_daily_messages

    def _resolve_channel(self, user_id: str) -> tuple[str, str | None] | None:
        """(channel, target) for the user, preferring the configured default."""
        links = {c["channel"]: c["channel_user_id"] for c in self.db.get_user_channels(user_id)}
        tg = self.config.channels.telegram
        telegram_ok = "telegram" in links and tg.enabled and bool(tg.bot_token)

        order = [self.config.channels.default, "telegram", "log"]
        for channel in order:
            if channel == "telegram" and telegram_ok:
                return "telegram", links["telegram"]
            if channel == "log" and ("log" in links or self.config.channels.default == "log"):
                return "log", links.get("log")
        return None

    async def _deliver(self, user_id: str, content: str) -> bool:
        resolved = self._resolve_channel(user_id)
        if resolved is None:
            logger.warning(f"No deliverable channel for user {user_id}")
            return False

        channel, target = resolved
        if channel == "log":
            logger.info(f"[log channel] → {user_id}: {content[:200]}")
            return True

        try:
            ok = await send_message(self.config.channels.telegram.bot_token, target, content)
        except httpx.HTTPError as e:
            logger.error(f"Telegram send failed for {user_id}: {e}")
            return False
        if not ok:
            logger.warning(f"Telegram rejected message for {user_id}")
        return ok
