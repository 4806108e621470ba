"""
Clock service.

Exchange timestamps are validated against the server clock, so local time is
corrected by an offset measured against the exchange. The offset lives on the
instance; nothing global is patched. Inject one ClockService wherever the exit
core writes a timestamp.
"""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

from futures_bot.observability.logging import get_logger

logger = get_logger(__name__)

# Offsets above this are worth an INFO line; smaller drift is logged at DEBUG.
_NOTABLE_OFFSET_MS = 100


class ClockService:
    """Server-corrected clock."""

    def __init__(self, time_source: Callable[[], float] = time.time, offset_ms: int = 0):
        self._time_source = time_source
        self._offset_ms = offset_ms

    @property
    def offset_ms(self) -> int:
        """local - server, in milliseconds."""
        return self._offset_ms

    def local_ms(self) -> int:
        return int(self._time_source() * 1000)

    def now_ms(self) -> int:
        """Corrected epoch milliseconds."""
        return self.local_ms() - self._offset_ms

    def now(self) -> datetime:
        """Corrected UTC datetime."""
        return datetime.fromtimestamp(self.now_ms() / 1000, tz=UTC)

    def set_offset(self, offset_ms: int) -> None:
        old = self._offset_ms
        self._offset_ms = offset_ms
        if abs(offset_ms) > _NOTABLE_OFFSET_MS:
            logger.info(f"Clock offset applied: {offset_ms}ms (was {old}ms)")
        else:
            logger.debug(f"Clock offset applied: {offset_ms}ms (was {old}ms)")

    def apply_server_time(self, server_time_ms: int) -> int:
        """Recompute the offset from a server timestamp; returns the new offset."""
        offset = self.local_ms() - int(server_time_ms)
        self.set_offset(offset)
        return offset

    async def resync(self, fetch_server_time_ms: Callable[[], Awaitable[int]]) -> bool:
        """
        Re-measure drift against the exchange.

        A failed fetch keeps the previous offset.
        """
        try:
            server_time_ms = await fetch_server_time_ms()
        except Exception as e:
            logger.warning(f"Clock resync failed, keeping offset {self._offset_ms}ms: {e}")
            return False

        old = self._offset_ms
        new = self.apply_server_time(server_time_ms)
        logger.debug(f"Clock resynced: drift change {new - old}ms")
        return True
