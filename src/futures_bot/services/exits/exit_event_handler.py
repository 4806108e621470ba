"""
Config-driven exit event handler.

Used by strategies that describe TP behavior declaratively: each TP level
config says what happens when the level is hit (move to breakeven, start
trailing, close, custom). The handler turns a TP-hit or position-closed
event into that action and reports what it did as a result object; it never
raises.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import assert_never

from futures_bot.config.settings import ExitStrategySettings, TakeProfitLevelSettings
from futures_bot.domain.events import ExitEvent, PositionClosedEvent, TPHitEvent
from futures_bot.domain.exit_calculations import (
    calculate_breakeven_sl,
    calculate_pnl_percent,
    calculate_trailing_distance,
    get_tp_config_for_level,
    is_breakeven_valid,
)
from futures_bot.domain.models import Position, TakeProfitAction
from futures_bot.observability.logging import get_logger
from futures_bot.ports.exchange import StopOrderPort
from futures_bot.ports.positions import PositionRemovalPort
from futures_bot.utils.decimals import fmt_price

logger = get_logger(__name__)

DEFAULT_BREAKEVEN_MARGIN_PERCENT = Decimal("0.1")


class ExitHandlerAction(str, Enum):
    NONE = "NONE"
    CLOSE = "CLOSE"
    MOVE_SL_TO_BREAKEVEN = "MOVE_SL_TO_BREAKEVEN"
    ACTIVATE_TRAILING = "ACTIVATE_TRAILING"


@dataclass(frozen=True, slots=True)
class TPHitResult:
    success: bool
    action: ExitHandlerAction
    reason: str
    new_sl_price: Decimal | None = None
    trailing_distance: Decimal | None = None
    error: str | None = None


@dataclass(frozen=True, slots=True)
class PositionClosedResult:
    success: bool
    removed: bool
    reason: str
    error: str | None = None


ExitHandlerResult = TPHitResult | PositionClosedResult


class ExitEventHandler:
    """Applies per-level exit config to TP-hit and position-closed events."""

    def __init__(self, exchange: StopOrderPort, positions: PositionRemovalPort, config: ExitStrategySettings):
        self.exchange = exchange
        self.positions = positions
        self.config = config

        logger.info(
            f"Exit event handler ready: {len(config.take_profits)} TP levels, "
            f"trailing={'on' if config.trailing and config.trailing.enabled else 'off'}, "
            f"breakeven={'on' if config.breakeven and config.breakeven.enabled else 'off'}"
        )

    async def handle(self, event: ExitEvent) -> ExitHandlerResult:
        try:
            match event:
                case TPHitEvent():
                    return await self._handle_tp_hit(event)
                case PositionClosedEvent():
                    return await self._handle_position_closed(event)
                case _:
                    assert_never(event)
        except Exception as e:
            logger.error(f"Exit event handling failed for {event.event_type} {event.symbol}: {e}")
            if isinstance(event, PositionClosedEvent):
                return PositionClosedResult(
                    success=False,
                    removed=False,
                    reason=f"Handler error: {e}",
                    error=str(e),
                )
            return TPHitResult(
                success=False,
                action=ExitHandlerAction.NONE,
                reason=f"Handler error: {e}",
                error=str(e),
            )

    # =========================================================================
    # TP hit
    # =========================================================================

    async def _handle_tp_hit(self, event: TPHitEvent) -> TPHitResult:
        level = event.tp_level
        tp_config = get_tp_config_for_level(self.config.take_profits, level)
        if tp_config is None:
            logger.warning(
                f"TP{level} hit on {event.symbol} but no config for it "
                f"(configured: {[tp.level for tp in self.config.take_profits]})"
            )
            return TPHitResult(success=False, action=ExitHandlerAction.NONE, reason=f"No config for TP level {level}")

        position = event.position
        if position is None:
            return TPHitResult(success=False, action=ExitHandlerAction.NONE, reason=f"TP{level} event without position")

        logger.info(
            f"[EXIT] TP{level} hit on {event.symbol}: tp={fmt_price(event.tp_price)} "
            f"price={fmt_price(event.current_price)} "
            f"profit={calculate_pnl_percent(position, event.current_price):.2f}% "
            f"size={tp_config.size_percent}%"
        )

        action = tp_config.on_hit or TakeProfitAction.CLOSE
        match action:
            case TakeProfitAction.MOVE_SL_TO_BREAKEVEN:
                return await self._move_sl_to_breakeven(event.symbol, position, tp_config)
            case TakeProfitAction.ACTIVATE_TRAILING:
                return await self._activate_trailing(event, position, tp_config)
            case TakeProfitAction.CLOSE:
                return TPHitResult(
                    success=True,
                    action=ExitHandlerAction.CLOSE,
                    reason=(
                        f"TP{level} hit at {fmt_price(event.tp_price)} - "
                        f"closing {tp_config.size_percent}% on exchange"
                    ),
                )
            case TakeProfitAction.CUSTOM:
                logger.info(f"TP{level} on {event.symbol} delegated to custom handler {tp_config.custom_handler}")
                return TPHitResult(
                    success=True,
                    action=ExitHandlerAction.NONE,
                    reason=f"Custom handler: {tp_config.custom_handler}",
                )
            case _:
                assert_never(action)

    async def _move_sl_to_breakeven(
        self,
        symbol: str,
        position: Position,
        tp_config: TakeProfitLevelSettings,
    ) -> TPHitResult:
        if tp_config.be_margin is not None:
            margin = tp_config.be_margin
        elif self.config.breakeven is not None:
            margin = self.config.breakeven.offset_percent
        else:
            margin = DEFAULT_BREAKEVEN_MARGIN_PERCENT

        new_sl = calculate_breakeven_sl(position, margin)
        if not is_breakeven_valid(position, new_sl):
            logger.warning(
                f"Invalid breakeven SL {fmt_price(new_sl)} for {symbol} (entry {fmt_price(position.entry_price)})"
            )
            return TPHitResult(
                success=False, action=ExitHandlerAction.NONE, reason=f"Invalid BE SL: {fmt_price(new_sl)}"
            )

        try:
            await self.exchange.update_stop_loss(symbol, new_sl)
        except Exception as e:
            logger.error(f"Failed to move SL to breakeven for {symbol}: {e}")
            return TPHitResult(
                success=False, action=ExitHandlerAction.NONE, reason="Failed to move SL to BE", error=str(e)
            )

        logger.info(f"[EXIT] {symbol} SL moved to breakeven {fmt_price(new_sl)} (margin {margin}%)")
        return TPHitResult(
            success=True,
            action=ExitHandlerAction.MOVE_SL_TO_BREAKEVEN,
            new_sl_price=new_sl,
            reason=f"TP{tp_config.level} hit - SL moved to BE at {fmt_price(new_sl)}",
        )

    async def _activate_trailing(
        self,
        event: TPHitEvent,
        position: Position,
        tp_config: TakeProfitLevelSettings,
    ) -> TPHitResult:
        trailing = tp_config.trailing or self.config.trailing
        if trailing is None or not trailing.enabled:
            logger.debug(f"Trailing disabled for TP{tp_config.level} on {event.symbol}")
            return TPHitResult(
                success=True,
                action=ExitHandlerAction.NONE,
                reason=f"TP{tp_config.level} hit - trailing disabled",
            )

        atr_percent = None
        if trailing.use_atr and event.indicators is not None:
            atr_percent = event.indicators.atr_percent

        distance = calculate_trailing_distance(position, trailing.percent, atr_percent, trailing.atr_multiplier)

        try:
            await self.exchange.set_trailing_stop(event.symbol, distance)
        except Exception as e:
            logger.error(f"Failed to activate trailing stop for {event.symbol}: {e}")
            return TPHitResult(
                success=False, action=ExitHandlerAction.NONE, reason="Failed to activate trailing", error=str(e)
            )

        logger.info(
            f"[EXIT] {event.symbol} trailing active after TP{tp_config.level}: distance {fmt_price(distance)} "
            f"({trailing.percent}%, ATR {atr_percent if atr_percent is not None else 'n/a'})"
        )
        return TPHitResult(
            success=True,
            action=ExitHandlerAction.ACTIVATE_TRAILING,
            trailing_distance=distance,
            reason=f"TP{tp_config.level} hit - trailing activated at distance {fmt_price(distance)}",
        )

    # =========================================================================
    # Position closed
    # =========================================================================

    async def _handle_position_closed(self, event: PositionClosedEvent) -> PositionClosedResult:
        pnl = f"{event.pnl:.2f} USDT" if event.pnl is not None else "n/a"
        pnl_percent = f"{event.pnl_percent:.2f}%" if event.pnl_percent is not None else "n/a"
        logger.info(
            f"[EXIT] {event.symbol} closed by {event.reason.value}: PnL {pnl} ({pnl_percent}), "
            f"size {event.closed_size}, price {fmt_price(event.closing_price)}"
        )

        try:
            await self.positions.remove(event.symbol)
        except Exception as e:
            logger.warning(f"Failed to remove closed position {event.symbol} from memory: {e}")
            return PositionClosedResult(
                success=True,
                removed=False,
                reason=f"Position closed by {event.reason.value} but cleanup failed",
                error=str(e),
            )

        return PositionClosedResult(
            success=True,
            removed=True,
            reason=f"Position closed by {event.reason.value} and removed from memory",
        )
