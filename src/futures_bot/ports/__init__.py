"""
Ports: Abstract interfaces for external dependencies.

The exit core depends only on these interfaces; exchange clients, the journal
database and Telegram live behind them.
"""

from futures_bot.ports.event_bus import EventBusPort
from futures_bot.ports.exchange import (
    ExchangePort,
    StopOrderPort,
    TakeProfitUpdateCapability,
    TrailingStopCapability,
)
from futures_bot.ports.journal import JournalPort, SessionStatsPort
from futures_bot.ports.notification import NotificationPort
from futures_bot.ports.positions import PositionRemovalPort

__all__ = [
    "EventBusPort",
    "ExchangePort",
    "StopOrderPort",
    "TakeProfitUpdateCapability",
    "TrailingStopCapability",
    "JournalPort",
    "SessionStatsPort",
    "NotificationPort",
    "PositionRemovalPort",
]
