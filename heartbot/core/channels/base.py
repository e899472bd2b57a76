"""Delivery contract shared by the heartbeat stages and the channel gateway."""

from __future__ import annotations

from typing import Protocol


class DeliveryGateway(Protocol):
    """Anything that can hand a message to a user.

    ``send`` returns True when the gateway accepted the message (delivered
    now or deferred into its own queue) and False when delivery failed.
    """

    async def send(
        self,
        user_id: str,
        message_type: str,
        content: str,
        priority: str = "normal",
    ) -> bool: ...

    async def process_queue(self) -> int: ...


def normalize_phone(phone_number: str) -> str:
    """Strip spaces, dashes and parentheses from a phone number."""
    return "".join(ch for ch in phone_number if ch not in " -()")
