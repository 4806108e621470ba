"""Messaging adapters: event bus and Telegram."""

from futures_bot.adapters.messaging.event_bus import InMemoryEventBus
from futures_bot.adapters.messaging.telegram import TelegramAdapter

__all__ = ["InMemoryEventBus", "TelegramAdapter"]
