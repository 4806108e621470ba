"""
Position exiting service.

The transactional core of the exit lifecycle: partial and full closes, stop
moves, trailing activation and TP-hit bookkeeping. Every close path funnels
through here so the exactly-once guard lives in one place:

- `Position.status` is flipped to CLOSED synchronously, before the first
  await of `close_full_position`. A second caller that arrives during the
  exchange round-trip sees CLOSED and returns False.
- Racing close paths additionally serialize on the repository's close lock
  (see `PositionRepository.close_position_with_atomic_lock`).

Stop-loss moves obey a ratchet: LONG stops only go up, SHORT stops only go
down. Recording (journal, session stats, alerts) never turns a successful
exchange close into a failure.
"""

from __future__ import annotations

from collections.abc import Sequence
from decimal import Decimal
from typing import assert_never

from futures_bot.config.settings import Settings
from futures_bot.domain.errors import is_position_already_closed_error
from futures_bot.domain.exit_actions import (
    ActivateTrailing,
    CloseAll,
    ClosePercent,
    ExitActionRequest,
    MoveStopLossToBreakeven,
    UpdateStopLoss,
)
from futures_bot.domain.exit_calculations import (
    HUNDRED,
    calculate_bollinger_stop,
    calculate_breakeven_sl,
    calculate_current_trailing_sl,
    calculate_leveraged_pnl,
    calculate_pnl_percent,
    calculate_remaining_size,
    calculate_round_trip_fees,
    calculate_trailing_stop_price,
    is_breakeven_valid,
    is_more_favorable_stop,
)
from futures_bot.domain.models import (
    Candle,
    ExitCondition,
    ExitType,
    Position,
    PositionSide,
    PositionStatus,
    StopLossSummary,
    TradeCloseRecord,
    TradeExitStats,
)
from futures_bot.observability.logging import get_logger
from futures_bot.observability.metrics import record_exit_action, track_close_duration
from futures_bot.ports.exchange import ExchangePort
from futures_bot.ports.journal import JournalPort, SessionStatsPort
from futures_bot.services.notification import ExitNotifier
from futures_bot.services.positions.ledger import TakeProfitLedger
from futures_bot.services.positions.repository import PositionRepository
from futures_bot.utils.clock import ClockService
from futures_bot.utils.decimals import fmt_price

logger = get_logger(__name__)


class PositionExitingService:
    """Executes exit actions against the exchange and keeps the Position in step."""

    def __init__(
        self,
        settings: Settings,
        exchange: ExchangePort,
        journal: JournalPort,
        session_stats: SessionStatsPort,
        positions: PositionRepository,
        notifier: ExitNotifier | None = None,
        clock: ClockService | None = None,
    ):
        self.settings = settings
        self.exchange = exchange
        self.journal = journal
        self.session_stats = session_stats
        self.positions = positions
        self.notifier = notifier or ExitNotifier()
        self.clock = clock or ClockService()

    @property
    def ledger(self) -> TakeProfitLedger | None:
        return self.positions.take_profit_ledger

    def _ledger_for(self, position: Position) -> TakeProfitLedger | None:
        """The repository ledger, only while it belongs to `position`."""
        if self.positions.get_current_position() is not position:
            return None
        return self.ledger

    # =========================================================================
    # Dispatcher
    # =========================================================================

    async def execute_exit_action(
        self,
        position: Position | None,
        action: ExitActionRequest,
        exit_price: Decimal,
        exit_reason: str,
        exit_type: ExitType,
    ) -> bool:
        """Run one exit action. Returns False for closed positions and on any failure."""
        if position is None:
            logger.error(f"Exit action {action.action.value} requested without a position")
            return False

        if position.is_closed:
            logger.debug(f"Position {position.id} already closed, ignoring {action.action.value}")
            return False

        try:
            match action:
                case ClosePercent(percent=percent):
                    result = await self.close_partial_position(position, percent, exit_price, exit_reason, exit_type)
                case CloseAll():
                    result = await self.close_full_position(position, exit_price, exit_reason, exit_type)
                case UpdateStopLoss(new_stop_loss=new_stop_loss):
                    result = await self.update_stop_loss(position, new_stop_loss)
                case ActivateTrailing(trailing_distance=distance):
                    result = await self.activate_trailing_stop(position, distance, exit_price)
                case MoveStopLossToBreakeven():
                    result = await self.move_stop_loss_to_breakeven(position)
                case _:
                    assert_never(action)
        except Exception as e:
            logger.exception(f"Exit action {action.action.value} failed for {position.id}: {e}")
            result = False

        record_exit_action(action.action.value, result)
        return result

    # =========================================================================
    # Partial close
    # =========================================================================

    async def close_partial_position(
        self,
        position: Position,
        percent: Decimal,
        exit_price: Decimal,
        reason: str,
        exit_type: ExitType,
    ) -> bool:
        """Close `percent` of the live quantity. Quantity changes only after the exchange accepts."""
        # Ladder and other callers reach this without the dispatcher.
        if position.is_closed:
            logger.debug(f"Position {position.id} already closed, skipping partial close")
            return False

        if percent <= 0 or percent > HUNDRED or position.quantity <= 0:
            logger.warning(f"Invalid partial close for {position.id}: {percent}% of {position.quantity}")
            return False

        qty_to_close = position.quantity * percent / HUNDRED
        percentage = qty_to_close / position.quantity * HUNDRED

        try:
            await self.exchange.close_position(position.id, percentage)
        except Exception as e:
            logger.error(f"Partial close ({percent}%) of {position.id} failed: {e}")
            return False

        if position.is_closed:
            logger.warning(f"Position {position.id} was fully closed while a partial close was in flight")
            return False

        position.quantity = calculate_remaining_size(position, qty_to_close)

        self._record_partial_in_ledger(position, qty_to_close, exit_price)
        pnl = self._log_partial_pnl(position, qty_to_close, exit_price, percent, exit_type)

        await self.notifier.partial_close(position, percent, exit_price, pnl, reason)
        return True

    def _record_partial_in_ledger(self, position: Position, quantity: Decimal, exit_price: Decimal) -> None:
        """Attribute the fill to the TP level whose price is within tolerance of the exit price."""
        ledger = self._ledger_for(position)
        if ledger is None or exit_price <= 0:
            return

        tolerance = self.settings.risk.ledger_price_match_percent / HUNDRED
        for tp in position.take_profits:
            if abs(tp.price - exit_price) / exit_price < tolerance:
                ledger.record_partial_close(tp.level, quantity, exit_price)
                return

        logger.debug(f"Partial close @ {fmt_price(exit_price)} matches no TP level, not recorded in ledger")

    def _log_partial_pnl(
        self,
        position: Position,
        quantity: Decimal,
        exit_price: Decimal,
        percent: Decimal,
        exit_type: ExitType,
    ) -> Decimal:
        try:
            pnl = calculate_leveraged_pnl(position.side, position.entry_price, exit_price, quantity, position.leverage)
            fees = calculate_round_trip_fees(
                position.entry_price, exit_price, quantity, self.settings.trading.trading_fee_rate
            )
        except Exception as e:
            logger.warning(f"PnL calculation for partial close of {position.id} failed: {e}")
            return Decimal("0")

        logger.info(
            f"[EXIT] Partial close {percent}% of {position.symbol} ({exit_type.value}): "
            f"{quantity} @ {fmt_price(exit_price)} | PnL {pnl:+.4f} | fees {fees:.4f} | "
            f"remaining {position.quantity}"
        )
        return pnl

    # =========================================================================
    # Full close
    # =========================================================================

    async def close_full_position(
        self,
        position: Position,
        exit_price: Decimal,
        reason: str,
        exit_type: ExitType,
    ) -> bool:
        """
        Close the whole position exactly once.

        Returns True for the single winning call, including when recording
        fails afterwards. Returns False for duplicates and when the exchange
        rejects the close (the position is then OPEN again for the next trigger).
        """
        if position.is_closed:
            logger.debug(f"Position {position.id} already closed, duplicate close ignored")
            return False

        # Must happen before the first await.
        position.status = PositionStatus.CLOSED

        with track_close_duration(position.symbol, exit_type.value) as ctx:
            try:
                await self.exchange.close_position(position.id, HUNDRED)
            except Exception as e:
                if not is_position_already_closed_error(e):
                    logger.error(f"Full close of {position.id} failed: {e}")
                    position.status = PositionStatus.OPEN
                    return False
                logger.info(f"Position {position.id} already closed on exchange ({e})")

            try:
                await self.exchange.cancel_all_conditional_orders()
            except Exception as e:
                logger.warning(f"Failed to cancel conditional orders for {position.id}: {e}")

            # The exchange close stands from here on; bookkeeping errors only get logged.
            try:
                realized_pnl, pnl_percent, condition = self._build_exit_condition(
                    position, exit_price, reason, exit_type
                )
            except Exception as e:
                logger.error(f"Close bookkeeping for {position.id} failed, close not journaled: {e}")
                ctx["success"] = True
                return True

            await self._record_journal(position, exit_price, realized_pnl, condition)
            await self._update_session_stats(position, condition)
            await self.notifier.position_closed(position, exit_price, realized_pnl, pnl_percent, exit_type, reason)

            ctx["success"] = True
            ctx["pnl_usdt"] = realized_pnl
            return True

    def _build_exit_condition(
        self,
        position: Position,
        exit_price: Decimal,
        reason: str,
        exit_type: ExitType,
    ) -> tuple[Decimal, Decimal, ExitCondition]:
        closed_at = self.clock.now()
        holding_time_ms = max(0, int((closed_at - position.opened_at).total_seconds() * 1000))
        pnl_percent = calculate_pnl_percent(position, exit_price)
        realized_pnl, tp_levels_hit = self._realized_pnl(position, exit_price)

        logger.info(
            f"[EXIT] {position.symbol} closed ({exit_type.value}) @ {fmt_price(exit_price)} | "
            f"realized {realized_pnl:+.4f} USDT ({pnl_percent:+.2f}%) | TP hit {tp_levels_hit or '-'} | {reason}"
        )

        condition = ExitCondition(
            exit_type=exit_type,
            price=exit_price,
            timestamp=closed_at,
            reason=reason,
            pnl_usdt=realized_pnl,
            pnl_percent=pnl_percent,
            realized_pnl=realized_pnl,
            tp_levels_hit=tp_levels_hit,
            tp_levels_hit_count=len(tp_levels_hit),
            holding_time_ms=holding_time_ms,
            holding_time_minutes=Decimal(holding_time_ms) / Decimal("60000"),
            holding_time_hours=Decimal(holding_time_ms) / Decimal("3600000"),
            stopped_out=exit_type == ExitType.STOP_LOSS,
            sl_moved_to_breakeven=position.stop_loss.is_breakeven,
            trailing_stop_activated=position.stop_loss.is_trailing,
            max_profit_percent=pnl_percent if pnl_percent > 0 else Decimal("0"),
            max_drawdown_percent=abs(pnl_percent) if pnl_percent < 0 else Decimal("0"),
        )
        return realized_pnl, pnl_percent, condition

    def _realized_pnl(self, position: Position, exit_price: Decimal) -> tuple[Decimal, list[int]]:
        """Ledger result when one is attached, else simple PnL on the live quantity minus fees."""
        ledger = self._ledger_for(position)
        try:
            if ledger is not None:
                final = ledger.calculate_final_pnl(exit_price)
                return final.total_pnl.pnl_net, ledger.get_tp_levels_hit()

            gross = calculate_leveraged_pnl(
                position.side, position.entry_price, exit_price, position.quantity, position.leverage
            )
            fees = calculate_round_trip_fees(
                position.entry_price, exit_price, position.quantity, self.settings.trading.trading_fee_rate
            )
            return gross - fees, position.tp_levels_hit()
        except Exception as e:
            logger.error(f"Realized PnL calculation for {position.id} failed: {e}")
            return Decimal("0"), position.tp_levels_hit()

    async def _record_journal(
        self,
        position: Position,
        exit_price: Decimal,
        realized_pnl: Decimal,
        condition: ExitCondition,
    ) -> None:
        if not position.journal_id:
            logger.warning(f"Position {position.id} has no journal entry, close not journaled")
            return

        try:
            await self.journal.record_trade_close(
                TradeCloseRecord(
                    id=position.journal_id,
                    exit_price=exit_price,
                    realized_pnl=realized_pnl,
                    exit_condition=condition,
                )
            )
        except Exception as e:
            logger.error(f"Journal close recording for {position.journal_id} failed: {e}")

    async def _update_session_stats(self, position: Position, condition: ExitCondition) -> None:
        if not position.journal_id:
            return

        sl = position.stop_loss
        try:
            stats = TradeExitStats(
                exit_price=condition.price,
                pnl=condition.realized_pnl,
                pnl_percent=condition.pnl_percent,
                exit_type=condition.exit_type,
                tp_hit_levels=condition.tp_levels_hit,
                holding_time_ms=condition.holding_time_ms,
                stop_loss=StopLossSummary(
                    initial=sl.initial_price or sl.price,
                    final=sl.price,
                    moved_to_breakeven=sl.is_breakeven,
                    trailing_activated=sl.is_trailing,
                ),
            )
            await self.session_stats.update_trade_exit(position.journal_id, stats)
        except Exception as e:
            logger.error(f"Session stats update for {position.journal_id} failed: {e}")

    # =========================================================================
    # Stop-loss moves
    # =========================================================================

    async def update_stop_loss(self, position: Position, new_price: Decimal) -> bool:
        """Move the stop only in the profitable direction."""
        if not new_price.is_finite():
            logger.warning(f"Rejected non-finite stop {new_price} for {position.id}")
            return False

        if not is_more_favorable_stop(position, new_price):
            logger.debug(
                f"Stop {fmt_price(new_price)} not more favorable than {fmt_price(position.stop_loss.price)} "
                f"for {position.side.value} {position.id}"
            )
            return False

        try:
            await self.exchange.update_stop_loss(position.id, new_price)
        except Exception as e:
            logger.error(f"Stop update for {position.id} failed: {e}")
            return False

        old = position.stop_loss.price
        position.stop_loss.price = new_price
        position.stop_loss.updated_at = self.clock.now()
        logger.info(f"[EXIT] {position.symbol} SL {fmt_price(old)} -> {fmt_price(new_price)}")
        return True

    async def activate_trailing_stop(self, position: Position, trailing_distance: Decimal, current_price: Decimal) -> bool:
        """First activation is unconditional; later updates go through the ratchet."""
        trailing_price = calculate_current_trailing_sl(position, current_price, trailing_distance)

        try:
            await self.exchange.update_stop_loss(position.id, trailing_price)
        except Exception as e:
            logger.error(f"Trailing activation for {position.id} failed: {e}")
            return False

        sl = position.stop_loss
        sl.is_trailing = True
        sl.price = trailing_price
        sl.updated_at = self.clock.now()
        logger.info(
            f"[EXIT] {position.symbol} trailing active: SL {fmt_price(trailing_price)} "
            f"({trailing_distance} behind {fmt_price(current_price)})"
        )
        return True

    async def move_stop_loss_to_breakeven(self, position: Position) -> bool:
        sl = position.stop_loss
        if sl.is_breakeven:
            logger.debug(f"{position.id} already at breakeven")
            return False

        offset_percent = self.settings.risk.breakeven_offset_bps / HUNDRED
        breakeven = calculate_breakeven_sl(position, offset_percent)
        if not is_breakeven_valid(position, breakeven):
            logger.warning(f"Breakeven {breakeven} for {position.id} is on the losing side of entry")
            return False

        if sl.is_trailing and not is_more_favorable_stop(position, breakeven):
            logger.debug(f"Trailing stop of {position.id} already beyond breakeven")
            return False

        try:
            await self.exchange.update_stop_loss(position.id, breakeven)
        except Exception as e:
            logger.error(f"Breakeven move for {position.id} failed: {e}")
            return False

        sl.price = breakeven
        sl.is_breakeven = True
        sl.updated_at = self.clock.now()
        logger.info(f"[EXIT] {position.symbol} SL moved to breakeven {fmt_price(breakeven)}")

        await self.notifier.breakeven_moved(position, breakeven)
        return True

    # =========================================================================
    # TP hit
    # =========================================================================

    async def on_take_profit_hit(self, position: Position, tp_level: int, current_price: Decimal) -> None:
        """Mark a TP level hit and apply its follow-up (breakeven on TP1, trailing on the activation level)."""
        if position.is_closed:
            logger.debug(f"TP{tp_level} event for closed position {position.id} ignored")
            return

        tp = position.take_profit(tp_level)
        if tp is None:
            logger.warning(f"TP{tp_level} not configured for {position.id}")
            return
        if tp.hit:
            logger.debug(f"TP{tp_level} of {position.id} already hit, duplicate event ignored")
            return

        try:
            ledger = self._ledger_for(position)
            if ledger is not None:
                ledger.record_partial_close(tp_level, position.quantity * tp.size_percent / HUNDRED, current_price)

            tp.hit = True
            tp.hit_at = self.clock.now()
            tp.order_id = None
            logger.info(f"[EXIT] {position.symbol} TP{tp_level} hit @ {fmt_price(current_price)}")

            if tp_level == 1:
                await self.move_stop_loss_to_breakeven(position)

            if tp_level == self.settings.risk.trailing_stop_activation_level:
                await self._activate_trailing_for_level(position, current_price)
        except Exception as e:
            logger.exception(f"Handling TP{tp_level} hit for {position.id} failed: {e}")

    async def _activate_trailing_for_level(self, position: Position, current_price: Decimal) -> None:
        risk = self.settings.risk
        sl = position.stop_loss
        if sl.is_trailing:
            logger.debug(f"Trailing already active for {position.id}")
            return
        if risk.trailing_exclusive_of_breakeven and sl.is_breakeven:
            logger.debug(f"{position.id} at breakeven, trailing not activated")
            return

        trailing_percent = risk.trailing_stop_percent
        capability = self.exchange.trailing_stop_capability()
        if capability is not None:
            await capability.set_trailing_stop(
                side=position.side.order_side,
                activation_price=current_price,
                trailing_percent=trailing_percent,
            )
        else:
            logger.info(f"No native trailing stop on exchange; {position.symbol} trails by polling")

        sl.is_trailing = True
        sl.trailing_percent = trailing_percent
        sl.trailing_activation_price = current_price
        sl.updated_at = self.clock.now()
        logger.info(f"[EXIT] {position.symbol} trailing {trailing_percent}% armed @ {fmt_price(current_price)}")

        await self.notifier.trailing_activated(position, trailing_percent, current_price)

    # =========================================================================
    # Periodic trailing refinement
    # =========================================================================

    async def update_smart_trailing_v2(self, position: Position, current_price: Decimal) -> bool:
        """Re-trail `trailing_percent` behind the current price, ratchet only."""
        if position.is_closed or not position.stop_loss.is_trailing:
            return False

        percent = position.stop_loss.trailing_percent or self.settings.risk.trailing_stop_percent
        candidate = calculate_trailing_stop_price(position, current_price, percent)
        if not is_more_favorable_stop(position, candidate):
            return False

        return await self.update_stop_loss(position, candidate)

    async def update_smart_tp3(self, position: Position, current_price: Decimal) -> bool:
        """Push the TP3 order further out by at most `max_ticks` ticks while trailing."""
        config = self.settings.risk.smart_tp3
        if not config.enabled or position.is_closed or not position.stop_loss.is_trailing:
            return False

        tp3 = position.take_profit(3)
        if tp3 is None or tp3.hit or not tp3.order_id:
            return False

        capability = self.exchange.take_profit_update_capability()
        if capability is None:
            return False

        tick = config.tick_size_percent / HUNDRED * current_price
        max_move = tick * config.max_ticks

        if position.side == PositionSide.LONG:
            new_price = min(tp3.price + max_move, current_price + max_move)
            moved = new_price > tp3.price
        else:
            new_price = max(tp3.price - max_move, current_price - max_move)
            moved = new_price < tp3.price

        if not moved:
            return False

        try:
            await capability.update_take_profit(tp3.order_id, new_price)
        except Exception as e:
            logger.error(f"TP3 update for {position.id} failed: {e}")
            return False

        logger.info(f"[EXIT] {position.symbol} TP3 {fmt_price(tp3.price)} -> {fmt_price(new_price)}")
        tp3.price = new_price
        return True

    async def update_bb_trailing_stop(self, position: Position, candles: Sequence[Candle]) -> bool:
        """Trail on the Bollinger band (lower for LONG, upper for SHORT), ratchet only."""
        if position.is_closed or not position.stop_loss.is_trailing:
            return False

        risk = self.settings.risk
        if len(candles) < risk.bollinger_period:
            return False

        band = calculate_bollinger_stop(
            position,
            [c.close for c in candles],
            period=risk.bollinger_period,
            std_multiplier=risk.bollinger_std_multiplier,
        )
        if band is None or not is_more_favorable_stop(position, band):
            return False

        return await self.update_stop_loss(position, band)
