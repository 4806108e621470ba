"""Observability: logging and metrics."""

from futures_bot.observability.logging import (
    LOG_TAG_EXIT,
    LOG_TAG_HEALTH,
    LOG_TAG_TRADE,
    get_logger,
    setup_logging,
)
from futures_bot.observability.metrics import (
    record_exit_action,
    record_position_close,
    record_tp_match,
    track_close_duration,
)

__all__ = [
    "LOG_TAG_EXIT",
    "LOG_TAG_HEALTH",
    "LOG_TAG_TRADE",
    "get_logger",
    "setup_logging",
    "record_exit_action",
    "record_position_close",
    "record_tp_match",
    "track_close_duration",
]
