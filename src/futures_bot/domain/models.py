"""
Canonical Domain Models.

All financial calculations use Decimal for precision.
A Position is the mutable aggregate for one open trade; everything the exit
core touches (stop-loss, take-profit ladder, status) hangs off it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

# =============================================================================
# ENUMS
# =============================================================================


class PositionSide(str, Enum):
    """Position direction."""

    LONG = "LONG"
    SHORT = "SHORT"

    @property
    def sign(self) -> Decimal:
        """+1 for LONG, -1 for SHORT (multiplier for every side-aware formula)."""
        return Decimal("1") if self == PositionSide.LONG else Decimal("-1")

    @property
    def order_side(self) -> str:
        """Exchange order side that opened the position."""
        return "Buy" if self == PositionSide.LONG else "Sell"

    @classmethod
    def from_string(cls, value: str) -> PositionSide:
        """Parse side from various string formats."""
        normalized = value.upper().strip()
        if normalized in ("LONG", "BUY", "B"):
            return cls.LONG
        if normalized in ("SHORT", "SELL", "S"):
            return cls.SHORT
        raise ValueError(f"Unknown side: {value}")


class PositionStatus(str, Enum):
    """Lifecycle status. OPEN -> CLOSED is one-way."""

    OPEN = "OPEN"
    CLOSED = "CLOSED"


class ExitType(str, Enum):
    """How a position (or part of it) left the market."""

    STOP_LOSS = "STOP_LOSS"
    TAKE_PROFIT_1 = "TAKE_PROFIT_1"
    TAKE_PROFIT_2 = "TAKE_PROFIT_2"
    TAKE_PROFIT_3 = "TAKE_PROFIT_3"
    TRAILING_STOP = "TRAILING_STOP"
    TIME_BASED_EXIT = "TIME_BASED_EXIT"
    MANUAL = "MANUAL"
    LIQUIDATION = "LIQUIDATION"

    @classmethod
    def take_profit(cls, level: int) -> ExitType:
        """Exit type for a TP level; levels past 3 report as TAKE_PROFIT_3."""
        if level <= 1:
            return cls.TAKE_PROFIT_1
        if level == 2:
            return cls.TAKE_PROFIT_2
        return cls.TAKE_PROFIT_3


class TakeProfitAction(str, Enum):
    """What a config-driven TP level does when it is hit."""

    CLOSE = "CLOSE"
    MOVE_SL_TO_BREAKEVEN = "MOVE_SL_TO_BREAKEVEN"
    ACTIVATE_TRAILING = "ACTIVATE_TRAILING"
    CUSTOM = "CUSTOM"


class CloseTrigger(str, Enum):
    """Exchange-side trigger of the last close, as reported by executions."""

    TP = "TP"
    SL = "SL"
    TRAILING = "TRAILING"


class ExecutionKind(str, Enum):
    """Classification of a raw exchange execution."""

    TAKE_PROFIT = "TAKE_PROFIT"
    STOP_LOSS = "STOP_LOSS"
    TRAILING_STOP = "TRAILING_STOP"
    ENTRY = "ENTRY"


def _utcnow() -> datetime:
    return datetime.now(UTC)


# =============================================================================
# POSITION AGGREGATE
# =============================================================================


@dataclass(slots=True)
class StopLoss:
    """
    Protective stop of a position.

    Once `is_breakeven` or `is_trailing` is set, `price` only ratchets in the
    profitable direction.
    """

    price: Decimal
    initial_price: Decimal = Decimal("0")
    order_id: str | None = None
    is_breakeven: bool = False
    is_trailing: bool = False
    trailing_percent: Decimal | None = None
    trailing_activation_price: Decimal | None = None
    updated_at: datetime = field(default_factory=_utcnow)

    def __post_init__(self) -> None:
        if self.initial_price == 0:
            self.initial_price = self.price


@dataclass(slots=True)
class TakeProfit:
    """
    One TP level.

    `size_percent` is a fraction of the ORIGINAL position quantity.
    `hit` flips False -> True exactly once and clears `order_id`.
    """

    level: int
    percent: Decimal
    size_percent: Decimal
    price: Decimal
    hit: bool = False
    hit_at: datetime | None = None
    order_id: str | None = None


@dataclass(slots=True)
class Position:
    """A single open futures position and its protective orders."""

    id: str
    symbol: str
    side: PositionSide
    entry_price: Decimal
    quantity: Decimal
    stop_loss: StopLoss
    take_profits: list[TakeProfit] = field(default_factory=list)
    leverage: Decimal = Decimal("1")
    margin_used: Decimal = Decimal("0")
    unrealized_pnl: Decimal | None = Decimal("0")
    status: PositionStatus = PositionStatus.OPEN
    journal_id: str | None = None
    order_id: str | None = None
    reason: str = ""
    opened_at: datetime = field(default_factory=_utcnow)

    @staticmethod
    def make_id(symbol: str, side: PositionSide) -> str:
        """Stable id of the exchange-side position."""
        return f"{symbol}_{side.value}"

    @property
    def is_long(self) -> bool:
        return self.side == PositionSide.LONG

    @property
    def is_closed(self) -> bool:
        return self.status == PositionStatus.CLOSED

    def take_profit(self, level: int) -> TakeProfit | None:
        """Return the TP with the given level, if configured."""
        for tp in self.take_profits:
            if tp.level == level:
                return tp
        return None

    def tp_levels_hit(self) -> list[int]:
        """Levels already hit, in ladder order."""
        return [tp.level for tp in self.take_profits if tp.hit]


@dataclass(slots=True)
class LadderTpLevel:
    """A rung of the scalping ladder, priced from the entry."""

    level: int
    price_percent: Decimal
    close_percent: Decimal
    target_price: Decimal
    hit: bool = False


@dataclass(frozen=True, slots=True)
class Candle:
    """OHLCV bar (only `close` is used by the exit core)."""

    close: Decimal
    open: Decimal = Decimal("0")
    high: Decimal = Decimal("0")
    low: Decimal = Decimal("0")
    volume: Decimal = Decimal("0")
    timestamp: datetime | None = None


# =============================================================================
# JOURNAL / SESSION RECORDS
# =============================================================================


@dataclass(frozen=True, slots=True)
class JournalTrade:
    """Journal view of a trade, as returned by JournalPort.get_trade()."""

    id: str
    status: str
    exit_condition: dict[str, Any] | None = None


@dataclass(frozen=True, slots=True)
class ExitCondition:
    """Exit details attached to a closed journal entry."""

    exit_type: ExitType
    price: Decimal
    timestamp: datetime
    reason: str
    pnl_usdt: Decimal
    pnl_percent: Decimal
    realized_pnl: Decimal
    tp_levels_hit: list[int]
    tp_levels_hit_count: int
    holding_time_ms: int
    holding_time_minutes: Decimal
    holding_time_hours: Decimal
    stopped_out: bool
    sl_moved_to_breakeven: bool
    trailing_stop_activated: bool
    max_profit_percent: Decimal
    max_drawdown_percent: Decimal


@dataclass(frozen=True, slots=True)
class TradeCloseRecord:
    """Payload of JournalPort.record_trade_close()."""

    id: str
    exit_price: Decimal
    realized_pnl: Decimal
    exit_condition: ExitCondition


@dataclass(frozen=True, slots=True)
class StopLossSummary:
    initial: Decimal
    final: Decimal
    moved_to_breakeven: bool
    trailing_activated: bool


@dataclass(frozen=True, slots=True)
class TradeExitStats:
    """Payload of SessionStatsPort.update_trade_exit()."""

    exit_price: Decimal
    pnl: Decimal
    pnl_percent: Decimal
    exit_type: ExitType
    tp_hit_levels: list[int]
    holding_time_ms: int
    stop_loss: StopLossSummary
