"""Shared fixtures: a temp store, a fixed clock and a recording gateway."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from heartbot.core.config import Config
from heartbot.memory.store import HeartbeatStore

# Wednesday 2026-03-11 10:00 UTC
NOW = datetime(2026, 3, 11, 10, 0, tzinfo=timezone.utc)


class FakeGateway:
    """Records every send; ``ok`` controls the return value."""

    def __init__(self, ok: bool = True):
        self.ok = ok
        self.sent: list[dict] = []
        self.queue_runs = 0

    async def send(self, user_id, message_type, content, priority="normal"):
        self.sent.append(
            {"user_id": user_id, "type": message_type, "content": content, "priority": priority}
        )
        return self.ok

    async def process_queue(self):
        self.queue_runs += 1
        return 0


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def store(tmp_path):
    s = HeartbeatStore(str(tmp_path / "test.db"))
    s.get_or_create_user("u1", "Ali Veli", phone_number="+905551112233")
    return s


@pytest.fixture
def config(tmp_path):
    return Config(
        database={"path": str(tmp_path / "test.db")},
        channels={"default": "log"},
    )


@pytest.fixture
def gateway():
    return FakeGateway()


def open_prefs(store: HeartbeatStore, user_id: str = "u1", **fields):
    """Preferences with quiet hours off, plus overrides."""
    values = {"quiet_hours_start": None, "quiet_hours_end": None}
    values.update(fields)
    return store.upsert_preference(user_id, **values)
