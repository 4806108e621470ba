"""
Notification Port.

Exit alerts are fire-and-forget from the exit core's point of view: callers
ignore the result and never let a delivery failure undo a trading action.
"""

from __future__ import annotations

from typing import Protocol


class NotificationPort(Protocol):
    """Interface for alert delivery (Telegram in production)."""

    async def send_message(self, message: str) -> bool:
        """Deliver an HTML-formatted alert. Returns False when delivery failed."""
        ...
