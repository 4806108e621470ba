"""
Exit calculations.

Pure functions over a Position snapshot: breakeven, trailing distance,
TP/SL hit tests, PnL and size arithmetic. No state, no I/O, no mutation.

Sign convention: every side-aware formula multiplies by `position.side.sign`
(+1 LONG, -1 SHORT), so a LONG loss and a SHORT loss both come out negative.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol, TypeVar

from futures_bot.domain.models import Position, PositionSide

HUNDRED = Decimal("100")

# Trailing distance is clamped to this band (percent of entry price).
MIN_TRAILING_DISTANCE_PERCENT = Decimal("0.1")
MAX_TRAILING_DISTANCE_PERCENT = Decimal("5.0")


class _HasLevel(Protocol):
    level: int


class _HasSizePercent(Protocol):
    size_percent: Decimal


L = TypeVar("L", bound=_HasLevel)


@dataclass(frozen=True, slots=True)
class ExitPnL:
    pnl: Decimal
    pnl_percent: Decimal


# =============================================================================
# Breakeven
# =============================================================================


def calculate_breakeven_sl(position: Position, be_margin_percent: Decimal) -> Decimal:
    """Entry shifted into profit by `be_margin_percent` of the entry price."""
    margin = position.entry_price * be_margin_percent / HUNDRED
    return position.entry_price + position.side.sign * margin


def is_breakeven_valid(position: Position, proposed_sl: Decimal) -> bool:
    """Breakeven must sit on the profitable side of entry (or exactly on it)."""
    if position.side == PositionSide.LONG:
        return proposed_sl >= position.entry_price
    return proposed_sl <= position.entry_price


# =============================================================================
# Trailing
# =============================================================================


def calculate_trailing_distance(
    position: Position,
    base_percent: Decimal,
    atr_percent: Decimal | None = None,
    atr_multiplier: Decimal = Decimal("1.0"),
) -> Decimal:
    """
    Absolute trailing distance in price units.

    ATR% (when supplied and positive) times the multiplier replaces the base
    percent. The percent is clamped to [0.1%, 5.0%] of the entry price.
    """
    if atr_percent is not None and atr_percent > 0:
        distance_percent = atr_percent * atr_multiplier
    else:
        distance_percent = base_percent

    distance_percent = max(MIN_TRAILING_DISTANCE_PERCENT, min(MAX_TRAILING_DISTANCE_PERCENT, distance_percent))
    return position.entry_price * distance_percent / HUNDRED


def calculate_current_trailing_sl(position: Position, current_price: Decimal, distance: Decimal) -> Decimal:
    """Trailing stop `distance` behind the current price."""
    return current_price - position.side.sign * distance


def calculate_trailing_stop_price(position: Position, current_price: Decimal, trailing_percent: Decimal) -> Decimal:
    """Trailing stop `trailing_percent` of the current price behind it."""
    distance = current_price * trailing_percent / HUNDRED
    return calculate_current_trailing_sl(position, current_price, distance)


def should_update_trailing_sl(
    position: Position,
    current_price: Decimal,
    last_trailing_price: Decimal,
    distance: Decimal,
) -> bool:
    """Only re-trail once price moved further in our favor than the last update point."""
    if position.side == PositionSide.LONG:
        return current_price > last_trailing_price
    return current_price < last_trailing_price


def is_more_favorable_stop(position: Position, candidate: Decimal) -> bool:
    """The ratchet: LONG stops only move up, SHORT stops only move down."""
    if position.side == PositionSide.LONG:
        return candidate > position.stop_loss.price
    return candidate < position.stop_loss.price


def calculate_bollinger_stop(
    position: Position,
    closes: Sequence[Decimal],
    period: int = 20,
    std_multiplier: Decimal = Decimal("2"),
) -> Decimal | None:
    """
    Lower band for LONG, upper band for SHORT over the last `period` closes.

    Uses the population standard deviation. Returns None with too few closes.
    """
    if len(closes) < period:
        return None

    window = [Decimal(c) for c in closes[-period:]]
    mean = sum(window, Decimal("0")) / len(window)
    variance = sum(((c - mean) ** 2 for c in window), Decimal("0")) / len(window)
    std_dev = variance.sqrt()

    return mean - position.side.sign * std_multiplier * std_dev


# =============================================================================
# Hit tests
# =============================================================================


def is_tp_hit(position: Position, current_price: Decimal, tp_price: Decimal) -> bool:
    if position.side == PositionSide.LONG:
        return current_price >= tp_price
    return current_price <= tp_price


def is_stop_loss_hit(position: Position, current_price: Decimal) -> bool:
    if position.side == PositionSide.LONG:
        return current_price <= position.stop_loss.price
    return current_price >= position.stop_loss.price


def calculate_tp_price(position: Position, tp_percent: Decimal) -> Decimal:
    """TP target `tp_percent` away from entry in the profitable direction."""
    return position.entry_price * (Decimal("1") + position.side.sign * tp_percent / HUNDRED)


# =============================================================================
# PnL
# =============================================================================


def calculate_pnl(position: Position, exit_price: Decimal) -> Decimal:
    """Side-signed linear PnL on the live quantity (no leverage)."""
    return (exit_price - position.entry_price) * position.quantity * position.side.sign


def calculate_pnl_percent(position: Position, exit_price: Decimal) -> Decimal:
    """Side-signed price move in percent of entry."""
    return (exit_price - position.entry_price) / position.entry_price * HUNDRED * position.side.sign


def calculate_exit_pnl(position: Position, exit_price: Decimal) -> ExitPnL:
    return ExitPnL(
        pnl=calculate_pnl(position, exit_price),
        pnl_percent=calculate_pnl_percent(position, exit_price),
    )


def calculate_leveraged_pnl(
    side: PositionSide,
    entry_price: Decimal,
    exit_price: Decimal,
    quantity: Decimal,
    leverage: Decimal,
) -> Decimal:
    """Gross PnL of closing `quantity` at `exit_price`, scaled by leverage."""
    return (exit_price - entry_price) * quantity * side.sign * leverage


def calculate_round_trip_fees(
    entry_price: Decimal,
    exit_price: Decimal,
    quantity: Decimal,
    fee_rate: Decimal,
) -> Decimal:
    """Fees on entry notional plus exit notional."""
    return (entry_price * quantity + exit_price * quantity) * fee_rate


# =============================================================================
# Sizes
# =============================================================================


def calculate_size_to_close(position: Position, tp_config: _HasSizePercent) -> Decimal:
    return position.quantity * tp_config.size_percent / HUNDRED


def calculate_remaining_size(position: Position, size_to_close: Decimal) -> Decimal:
    """Quantity left after closing `size_to_close`, never negative."""
    return max(Decimal("0"), position.quantity - size_to_close)


def live_close_percent(original_quantity: Decimal, live_quantity: Decimal, size_percent: Decimal) -> Decimal:
    """
    Convert "close `size_percent` of the original size" into a percent of the live size.

    Capped at 100 so the last rung never asks for more than what is left.
    """
    if live_quantity <= 0:
        return Decimal("0")
    target_qty = original_quantity * size_percent / HUNDRED
    return min(HUNDRED, target_qty / live_quantity * HUNDRED)


# =============================================================================
# TP config helpers
# =============================================================================


def get_tp_config_for_level(tp_configs: Iterable[L], level: int) -> L | None:
    for tp in tp_configs:
        if tp.level == level:
            return tp
    return None


def sort_tp_levels(tp_configs: Iterable[L]) -> list[L]:
    return sorted(tp_configs, key=lambda tp: tp.level)
