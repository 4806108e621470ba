"""
Partial-close ledger.

Nets the realized PnL of TP partial fills with the final close of the
remainder, so the journal sees one realized number per trade. Owned by the
position repository; only called from the serialized exit path.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

from futures_bot.domain.exit_calculations import calculate_leveraged_pnl, calculate_round_trip_fees
from futures_bot.domain.models import Position, PositionSide
from futures_bot.observability.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class PartialClose:
    level: int
    quantity: Decimal
    price: Decimal
    pnl_gross: Decimal
    fees: Decimal


@dataclass(frozen=True, slots=True)
class PnLBreakdown:
    pnl_gross: Decimal
    fees: Decimal
    pnl_net: Decimal


@dataclass(frozen=True, slots=True)
class FinalPnL:
    total_pnl: PnLBreakdown
    partials: list[PartialClose] = field(default_factory=list)
    remaining_quantity: Decimal = Decimal("0")


class TakeProfitLedger:
    """Records one partial close per TP level against the quantity at open."""

    def __init__(
        self,
        side: PositionSide,
        entry_price: Decimal,
        initial_quantity: Decimal,
        leverage: Decimal = Decimal("1"),
        fee_rate: Decimal = Decimal("0"),
    ):
        self.side = side
        self.entry_price = entry_price
        self.initial_quantity = initial_quantity
        self.leverage = leverage
        self.fee_rate = fee_rate
        self._partials: dict[int, PartialClose] = {}

    @classmethod
    def for_position(cls, position: Position, fee_rate: Decimal) -> TakeProfitLedger:
        return cls(
            side=position.side,
            entry_price=position.entry_price,
            initial_quantity=position.quantity,
            leverage=position.leverage,
            fee_rate=fee_rate,
        )

    @property
    def closed_quantity(self) -> Decimal:
        return sum((p.quantity for p in self._partials.values()), Decimal("0"))

    @property
    def remaining_quantity(self) -> Decimal:
        return max(Decimal("0"), self.initial_quantity - self.closed_quantity)

    def record_partial_close(self, level: int, quantity: Decimal, price: Decimal) -> bool:
        """Record a TP partial fill. A level already recorded is ignored."""
        if level in self._partials:
            logger.debug(f"TP{level} partial already recorded, ignoring duplicate")
            return False
        if quantity <= 0:
            logger.warning(f"Ignoring TP{level} partial with non-positive quantity {quantity}")
            return False

        partial = PartialClose(
            level=level,
            quantity=quantity,
            price=price,
            pnl_gross=calculate_leveraged_pnl(self.side, self.entry_price, price, quantity, self.leverage),
            fees=calculate_round_trip_fees(self.entry_price, price, quantity, self.fee_rate),
        )
        self._partials[level] = partial
        logger.debug(
            f"Ledger TP{level}: {quantity} @ {price} "
            f"(gross {partial.pnl_gross:.4f}, fees {partial.fees:.4f})"
        )
        return True

    def calculate_final_pnl(self, exit_price: Decimal) -> FinalPnL:
        """Partials plus the remaining quantity closed at `exit_price`."""
        remaining = self.remaining_quantity
        partials = [self._partials[level] for level in sorted(self._partials)]

        gross = sum((p.pnl_gross for p in partials), Decimal("0"))
        fees = sum((p.fees for p in partials), Decimal("0"))
        if remaining > 0:
            gross += calculate_leveraged_pnl(self.side, self.entry_price, exit_price, remaining, self.leverage)
            fees += calculate_round_trip_fees(self.entry_price, exit_price, remaining, self.fee_rate)

        return FinalPnL(
            total_pnl=PnLBreakdown(pnl_gross=gross, fees=fees, pnl_net=gross - fees),
            partials=partials,
            remaining_quantity=remaining,
        )

    def get_tp_levels_hit(self) -> list[int]:
        return sorted(self._partials)
