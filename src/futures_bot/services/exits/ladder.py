"""
Ladder take-profit manager.

A self-contained multi-level TP ladder for the scalping strategy: N levels at
fixed percentage offsets from entry, each closing part of the position,
with breakeven after TP1 and a trailing stop after TP2.

Example (LONG, entry 1.0000, default config):
    TP1 1.0008 closes 33% -> SL to 1.0000
    TP2 1.0015 closes 33% -> trailing 0.05% behind price
    TP3 1.0025 closes the rest

Driven by price polling rather than exchange events. One strategy owns at
most one active ladder (`LadderTracker`).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

from futures_bot.config.settings import LadderSettings
from futures_bot.domain.errors import LadderConfigError
from futures_bot.domain.exit_calculations import HUNDRED, is_more_favorable_stop
from futures_bot.domain.models import LadderTpLevel, Position, PositionSide
from futures_bot.observability.logging import get_logger
from futures_bot.ports.exchange import ExchangePort
from futures_bot.utils.clock import ClockService
from futures_bot.utils.decimals import fmt_price

logger = get_logger(__name__)

# Deviation of the summed close percents from 100 that is still accepted silently.
_TOTAL_CLOSE_SLACK = Decimal("5")


class LadderTpManager:
    """Level arithmetic and exchange actions of the ladder. Holds no per-position state."""

    def __init__(self, config: LadderSettings, exchange: ExchangePort, clock: ClockService | None = None):
        self.config = config
        self.exchange = exchange
        self.clock = clock or ClockService()
        self._validate_config()

        logger.info(
            f"Ladder TP manager: {len(config.levels)} levels, "
            f"breakeven after TP1={config.move_to_breakeven_after_tp1}, "
            f"trailing after TP2={config.trailing_after_tp2} ({config.trailing_distance_percent}%)"
        )

    def _validate_config(self) -> None:
        config = self.config
        if not config.levels:
            raise LadderConfigError("Ladder needs at least 1 level")

        for index, level in enumerate(config.levels, start=1):
            if level.price_percent <= 0:
                raise LadderConfigError(
                    f"Ladder level {index}: price_percent {level.price_percent} must be > 0",
                    details={"level": index},
                )
            if not config.min_partial_close_percent <= level.close_percent <= config.max_partial_close_percent:
                raise LadderConfigError(
                    f"Ladder level {index}: close_percent {level.close_percent} must be within "
                    f"{config.min_partial_close_percent}-{config.max_partial_close_percent}%",
                    details={"level": index},
                )

        if config.trailing_after_tp2 and config.trailing_distance_percent <= 0:
            raise LadderConfigError(
                f"trailing_distance_percent {config.trailing_distance_percent} must be > 0 when trailing is enabled"
            )

        total = sum((level.close_percent for level in config.levels), Decimal("0"))
        if abs(total - HUNDRED) > _TOTAL_CLOSE_SLACK:
            logger.warning(f"Ladder close percents total {total}%, part of the position may remain open")

    def create_ladder_levels(self, entry_price: Decimal, side: PositionSide) -> list[LadderTpLevel]:
        levels = [
            LadderTpLevel(
                level=index,
                price_percent=cfg.price_percent,
                close_percent=cfg.close_percent,
                target_price=entry_price * (Decimal("1") + side.sign * cfg.price_percent / HUNDRED),
            )
            for index, cfg in enumerate(self.config.levels, start=1)
        ]
        logger.info(
            f"Ladder for {side.value} @ {fmt_price(entry_price)}: "
            + ", ".join(f"TP{lvl.level} {fmt_price(lvl.target_price)} ({lvl.close_percent}%)" for lvl in levels)
        )
        return levels

    def check_tp_hit(self, level: LadderTpLevel, current_price: Decimal, side: PositionSide) -> bool:
        """
        Side-aware hit test with a relative tolerance.

        A price short of the target by less than `tp_hit_tolerance_percent`
        of it still counts. A level already hit never hits again.
        """
        if level.hit:
            return False

        tolerance = level.target_price * self.config.tp_hit_tolerance_percent / HUNDRED
        if side == PositionSide.LONG:
            is_hit = current_price >= level.target_price - tolerance
        else:
            is_hit = current_price <= level.target_price + tolerance

        if is_hit:
            logger.info(
                f"[EXIT] Ladder TP{level.level} hit: target {fmt_price(level.target_price)}, "
                f"price {fmt_price(current_price)}"
            )
        return is_hit

    async def execute_partial_close(self, level: LadderTpLevel, position: Position) -> bool:
        close_qty = position.quantity * level.close_percent / HUNDRED
        if close_qty < self.config.min_close_quantity:
            logger.warning(
                f"Ladder TP{level.level}: close quantity {close_qty} below minimum "
                f"{self.config.min_close_quantity}, skipping"
            )
            return False

        try:
            await self.exchange.close_position(position.id, level.close_percent)
        except Exception as e:
            logger.error(f"Ladder TP{level.level} partial close failed: {e}")
            return False

        logger.info(f"[EXIT] Ladder TP{level.level}: closed {level.close_percent}% ({close_qty})")
        return True

    async def move_to_breakeven(self, position: Position) -> bool:
        """SL to the entry price (no offset)."""
        if not self.config.move_to_breakeven_after_tp1:
            return False

        breakeven = position.entry_price
        try:
            await self.exchange.update_stop_loss(position.id, breakeven)
        except Exception as e:
            logger.error(f"Ladder breakeven move failed: {e}")
            return False

        logger.info(f"[EXIT] Ladder SL {fmt_price(position.stop_loss.price)} -> breakeven {fmt_price(breakeven)}")
        position.stop_loss.price = breakeven
        position.stop_loss.is_breakeven = True
        position.stop_loss.updated_at = self.clock.now()
        return True

    async def move_trailing(self, position: Position, current_price: Decimal) -> bool:
        """Trail `trailing_distance_percent` behind price; never loosens the stop."""
        if not self.config.trailing_after_tp2:
            return False

        distance = self.config.trailing_distance_percent / HUNDRED
        candidate = current_price * (Decimal("1") - position.side.sign * distance)
        if not is_more_favorable_stop(position, candidate):
            logger.debug(
                f"Ladder trailing SL {fmt_price(candidate)} not better than {fmt_price(position.stop_loss.price)}"
            )
            return False

        try:
            await self.exchange.update_stop_loss(position.id, candidate)
        except Exception as e:
            logger.error(f"Ladder trailing update failed: {e}")
            return False

        logger.info(f"[EXIT] Ladder trailing SL {fmt_price(position.stop_loss.price)} -> {fmt_price(candidate)}")
        position.stop_loss.price = candidate
        position.stop_loss.is_trailing = True
        position.stop_loss.updated_at = self.clock.now()
        return True


# =============================================================================
# Active ladder
# =============================================================================


@dataclass(slots=True)
class ActiveLadder:
    position: Position
    levels: list[LadderTpLevel] = field(default_factory=list)
    trailing_active: bool = False

    def next_level(self) -> LadderTpLevel | None:
        for level in self.levels:
            if not level.hit:
                return level
        return None


class LadderTracker:
    """The strategy's single active ladder, advanced one level per price tick."""

    TRAILING_LEVEL = 2

    def __init__(self, manager: LadderTpManager, clock: ClockService | None = None):
        self.manager = manager
        self.clock = clock or manager.clock
        self.active_ladder: ActiveLadder | None = None

    def setup(self, position: Position) -> ActiveLadder:
        """Start a ladder for a freshly opened position, discarding any previous one."""
        if self.active_ladder is not None:
            logger.info(f"Replacing active ladder of {self.active_ladder.position.id}")

        levels = self.manager.create_ladder_levels(position.entry_price, position.side)
        self.active_ladder = ActiveLadder(position=position, levels=levels)
        return self.active_ladder

    def clear(self) -> None:
        ladder = self.active_ladder
        if ladder is not None:
            logger.debug(f"Clearing ladder of {ladder.position.id} (hit: {[lvl.level for lvl in ladder.levels if lvl.hit]})")
        self.active_ladder = None

    async def on_price(self, current_price: Decimal) -> None:
        ladder = self.active_ladder
        if ladder is None:
            return

        position = ladder.position
        level = ladder.next_level()
        if level is not None and self.manager.check_tp_hit(level, current_price, position.side):
            await self._on_level_hit(ladder, level)
        elif ladder.trailing_active:
            await self.manager.move_trailing(position, current_price)

        if self.active_ladder is ladder and self._max_holding_time_exceeded(position):
            logger.warning(
                f"Ladder of {position.id} exceeded max holding time "
                f"({self.manager.config.max_holding_time_seconds}s), clearing"
            )
            self.clear()

    async def _on_level_hit(self, ladder: ActiveLadder, level: LadderTpLevel) -> None:
        position = ladder.position
        is_last = level is ladder.levels[-1]

        if not await self.manager.execute_partial_close(level, position):
            # Level stays open and is retried on the next tick.
            return
        level.hit = True

        if is_last:
            logger.info(f"[EXIT] Ladder complete for {position.id}")
            self.clear()
            return

        if level.level == 1:
            await self.manager.move_to_breakeven(position)

        position.quantity *= Decimal("1") - level.close_percent / HUNDRED

        if level.level == self.TRAILING_LEVEL and self.manager.config.trailing_after_tp2:
            ladder.trailing_active = True

    def _max_holding_time_exceeded(self, position: Position) -> bool:
        limit = self.manager.config.max_holding_time_seconds
        if limit == 0:
            return False
        return (self.clock.now() - position.opened_at).total_seconds() >= limit
