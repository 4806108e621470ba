"""
Take-profit level resolution for TP fill events.

Fill frames do not always carry a usable order id, so the level is resolved
by an ordered chain of matchers, most reliable first:

1. order id      - the fill's order id equals a TP's stored order id
2. price         - fill price within a relative tolerance of a TP price
3. quantity      - filled share of the pre-fill size close to an unhit TP's size percent
4. first unhit   - last resort; a guess, logged at error level

The first matcher that returns a level wins.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol

from futures_bot.domain.exit_calculations import HUNDRED
from futures_bot.domain.models import Position, TakeProfit
from futures_bot.observability.logging import get_logger
from futures_bot.observability.metrics import record_tp_match

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class TPFill:
    """Validated TP fill: prices and quantities already parsed."""

    order_id: str
    avg_price: Decimal | None = None
    cum_exec_qty: Decimal | None = None


@dataclass(frozen=True, slots=True)
class TPMatch:
    level: int
    tier: str


class TakeProfitMatcher(Protocol):
    tier: str
    last_resort: bool

    def match(self, position: Position, fill: TPFill) -> TakeProfit | None: ...


class OrderIdMatcher:
    tier = "order_id"
    last_resort = False

    def match(self, position: Position, fill: TPFill) -> TakeProfit | None:
        if not fill.order_id:
            return None
        for tp in position.take_profits:
            if tp.order_id == fill.order_id:
                return tp
        return None


class PriceToleranceMatcher:
    tier = "price"
    last_resort = False

    def __init__(self, tolerance_percent: Decimal = Decimal("0.3")):
        self.tolerance = tolerance_percent / HUNDRED

    def match(self, position: Position, fill: TPFill) -> TakeProfit | None:
        if fill.avg_price is None or fill.avg_price <= 0:
            return None
        for tp in position.take_profits:
            if tp.price > 0 and abs(fill.avg_price - tp.price) / tp.price <= self.tolerance:
                return tp
        return None


class QuantityToleranceMatcher:
    """The position has already shrunk by the fill, so pre-fill size = live + filled."""

    tier = "quantity"
    last_resort = False

    def __init__(self, tolerance_points: Decimal = Decimal("5")):
        self.tolerance_points = tolerance_points

    def match(self, position: Position, fill: TPFill) -> TakeProfit | None:
        if fill.cum_exec_qty is None or fill.cum_exec_qty <= 0:
            return None

        pre_fill_quantity = position.quantity + fill.cum_exec_qty
        percent_filled = fill.cum_exec_qty / pre_fill_quantity * HUNDRED
        logger.debug(f"TP quantity match: {fill.cum_exec_qty} of {pre_fill_quantity} = {percent_filled:.2f}%")

        for tp in position.take_profits:
            if not tp.hit and abs(percent_filled - tp.size_percent) <= self.tolerance_points:
                return tp
        return None


class FirstUnhitMatcher:
    tier = "first_unhit"
    last_resort = True

    def match(self, position: Position, fill: TPFill) -> TakeProfit | None:
        for tp in position.take_profits:
            if not tp.hit:
                return tp
        return None


class TakeProfitLevelResolver:
    """Runs the matcher chain in order."""

    def __init__(self, matchers: list[TakeProfitMatcher]):
        self.matchers = matchers

    @classmethod
    def default(
        cls,
        price_tolerance_percent: Decimal = Decimal("0.3"),
        quantity_tolerance_points: Decimal = Decimal("5"),
    ) -> TakeProfitLevelResolver:
        return cls(
            [
                OrderIdMatcher(),
                PriceToleranceMatcher(price_tolerance_percent),
                QuantityToleranceMatcher(quantity_tolerance_points),
                FirstUnhitMatcher(),
            ]
        )

    def resolve(self, position: Position, fill: TPFill) -> TPMatch | None:
        for matcher in self.matchers:
            tp = matcher.match(position, fill)
            if tp is None:
                continue

            if matcher.last_resort:
                logger.error(
                    f"TP level GUESSED for fill {fill.order_id}: using first unhit TP{tp.level} "
                    f"(no order id, price or quantity match)"
                )
            elif matcher.tier == "order_id":
                logger.info(f"Matched TP{tp.level} by order id {fill.order_id}")
            else:
                logger.warning(
                    f"Matched TP{tp.level} by {matcher.tier} (fallback) for fill {fill.order_id}: "
                    f"price={fill.avg_price} qty={fill.cum_exec_qty} expected price={tp.price}"
                )

            record_tp_match(matcher.tier)
            return TPMatch(level=tp.level, tier=matcher.tier)

        levels = ", ".join(
            f"TP{tp.level}@{tp.price} order={tp.order_id} hit={tp.hit}" for tp in position.take_profits
        )
        logger.critical(
            f"Could not resolve ANY TP level for fill {fill.order_id} "
            f"(price={fill.avg_price}, qty={fill.cum_exec_qty}); levels: [{levels}]"
        )
        record_tp_match("none")
        return None
