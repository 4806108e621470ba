"""
Journal Ports: trade journal and session statistics.

Persistence lives outside the exit core; these are the only calls it makes.
"""

from __future__ import annotations

from typing import Protocol

from futures_bot.domain.models import JournalTrade, TradeCloseRecord, TradeExitStats


class JournalPort(Protocol):
    """Interface for the trade journal."""

    async def get_trade(self, journal_id: str) -> JournalTrade | None:
        """Return the journal entry, or None if it does not exist."""
        ...

    async def record_trade_close(self, record: TradeCloseRecord) -> None: ...

    async def get_open_position_by_symbol(self, symbol: str) -> JournalTrade | None:
        """Open journal entry for `symbol`, used to relink restored positions."""
        ...


class SessionStatsPort(Protocol):
    """Interface for per-session trading statistics."""

    async def update_trade_exit(self, journal_id: str, stats: TradeExitStats) -> None: ...
