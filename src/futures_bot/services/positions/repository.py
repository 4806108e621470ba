"""
Position repository.

Tracks the single open position of the bot, its partial-close ledger, and the
per-position close locks that serialize racing close paths (WebSocket close
event vs. time-based exit).
"""

from __future__ import annotations

import asyncio
import copy
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from decimal import Decimal
from typing import TypeVar

from futures_bot.domain.events import PositionCleared
from futures_bot.domain.models import Position, PositionStatus
from futures_bot.domain.validation import PositionValidator
from futures_bot.observability.logging import get_logger
from futures_bot.ports.event_bus import EventBusPort
from futures_bot.ports.exchange import ExchangePort
from futures_bot.ports.journal import JournalPort
from futures_bot.services.positions.ledger import TakeProfitLedger

logger = get_logger(__name__)

T = TypeVar("T")

_NO_POSITION_KEY = "__no_position__"


@dataclass(slots=True)
class _KeyedLock:
    lock: asyncio.Lock
    users: int = 0


class PositionRepository:
    """In-process owner of the tracked position."""

    def __init__(
        self,
        exchange: ExchangePort,
        journal: JournalPort,
        event_bus: EventBusPort | None = None,
        fee_rate: Decimal = Decimal("0"),
    ):
        self.exchange = exchange
        self.journal = journal
        self.event_bus = event_bus
        self.fee_rate = fee_rate

        self._position: Position | None = None
        self._ledger: TakeProfitLedger | None = None
        # position id -> lock, dropped once no caller holds or waits on it
        self._close_locks: dict[str, _KeyedLock] = {}

    # =========================================================================
    # Queries
    # =========================================================================

    def get_current_position(self) -> Position | None:
        return self._position

    def get_position_snapshot(self) -> Position | None:
        """Detached copy for readers that must not observe in-flight mutation."""
        return copy.deepcopy(self._position)

    @property
    def take_profit_ledger(self) -> TakeProfitLedger | None:
        return self._ledger

    def has_close_lock(self, key: str) -> bool:
        return key in self._close_locks

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def open_position(self, position: Position) -> TakeProfitLedger:
        """
        Start tracking a freshly opened position with a new ledger.

        Raises:
            PositionValidationError: The snapshot carries missing or non-finite fields.
                Nothing is tracked in that case.
        """
        PositionValidator.validate_for_monitoring(position)

        if self._position is not None and not self._position.is_closed:
            logger.warning(f"Replacing tracked position {self._position.id} with {position.id}")

        self._position = position
        self._ledger = TakeProfitLedger.for_position(position, self.fee_rate)
        logger.info(
            f"[TRADE] Tracking {position.side.value} {position.symbol}: "
            f"qty={position.quantity} entry={position.entry_price} SL={position.stop_loss.price}"
        )
        return self._ledger

    async def sync_with_websocket(self, ws_position: Position) -> None:
        """
        Merge an exchange snapshot into the tracked position.

        With nothing tracked the snapshot is adopted (e.g. after a restart) and
        relinked to its open journal entry. Otherwise only quantity and
        unrealized PnL follow the exchange; entry price is filled in once, and
        only while the tracked one is still zero.
        """
        current = self._position
        if current is None:
            journal_id = None
            try:
                trade = await self.journal.get_open_position_by_symbol(ws_position.symbol)
                journal_id = trade.id if trade else None
            except Exception as e:
                logger.warning(f"Journal lookup for restored {ws_position.symbol} failed: {e}")

            ws_position.journal_id = journal_id
            ws_position.status = PositionStatus.OPEN
            self._position = ws_position
            self._ledger = None
            logger.info(
                f"Restored position {ws_position.id} from exchange "
                f"(journal_id={journal_id or 'none'})"
            )
            return

        current.quantity = ws_position.quantity
        current.unrealized_pnl = ws_position.unrealized_pnl

        if current.entry_price == 0 and ws_position.entry_price > 0:
            current.entry_price = ws_position.entry_price
            logger.info(f"Entry price for {current.id} filled in from exchange: {current.entry_price}")

    async def clear_position(self) -> None:
        """Cancel leftover conditional orders and drop the tracked position."""
        position = self._position

        try:
            await self.exchange.cancel_all_conditional_orders()
        except Exception as e:
            logger.warning(f"Failed to cancel conditional orders while clearing position: {e}")

        self._position = None
        self._ledger = None

        if position is None:
            return

        logger.info(f"Cleared tracked position {position.id}")
        if self.event_bus is not None:
            await self.event_bus.publish(PositionCleared(position_id=position.id, symbol=position.symbol))

    async def remove(self, symbol: str) -> bool:
        """Drop the tracked position of `symbol`."""
        if self._position is None or self._position.symbol != symbol:
            return False
        await self.clear_position()
        return True

    # =========================================================================
    # Close serialization
    # =========================================================================

    async def close_position_with_atomic_lock(self, reason: str, callback: Callable[[], Awaitable[T]]) -> T:
        """
        Run `callback` while holding the close lock of the tracked position.

        The lock is held for the whole callback, so a second close path waits
        and then observes the first one's final state.
        """
        key = self._position.id if self._position is not None else _NO_POSITION_KEY
        entry = self._close_locks.get(key)
        if entry is None:
            entry = self._close_locks[key] = _KeyedLock(asyncio.Lock())

        if entry.lock.locked():
            logger.warning(f"Position {key} is already closing; {reason} waits for the lock")

        entry.users += 1
        try:
            async with entry.lock:
                logger.debug(f"Close lock acquired for {key} ({reason})")
                return await callback()
        finally:
            entry.users -= 1
            if entry.users == 0:
                self._close_locks.pop(key, None)
