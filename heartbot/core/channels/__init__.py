"""Delivery channels — gateway contract, Telegram sender, default gateway."""

from heartbot.core.channels.base import DeliveryGateway, normalize_phone
from heartbot.core.channels.gateway import ChannelGateway

__all__ = ["ChannelGateway", "DeliveryGateway", "normalize_phone"]
