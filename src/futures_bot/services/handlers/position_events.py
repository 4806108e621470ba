"""
Position event handler (poll / price-check path).

The monitor detects SL and TP crossings by polling prices. Detection here is
backup only: recording is left to the WebSocket close confirmation so the
same economic event is not recorded twice. The time-based exit is the one
bot-initiated close on this path.
"""

from __future__ import annotations

from futures_bot.domain.events import (
    MonitorError,
    PositionClosedExternally,
    StopLossHitDetected,
    TakeProfitHitDetected,
    TimeBasedExitTriggered,
)
from futures_bot.domain.exit_calculations import HUNDRED
from futures_bot.domain.models import ExitType
from futures_bot.observability.logging import get_logger
from futures_bot.ports.event_bus import EventBusPort
from futures_bot.ports.exchange import ExchangePort
from futures_bot.services.notification import ExitNotifier
from futures_bot.services.positions.exiting import PositionExitingService
from futures_bot.services.positions.repository import PositionRepository
from futures_bot.utils.decimals import fmt_price

logger = get_logger(__name__)


class PositionEventHandler:
    def __init__(
        self,
        exiting: PositionExitingService,
        positions: PositionRepository,
        exchange: ExchangePort,
        notifier: ExitNotifier | None = None,
    ):
        self.exiting = exiting
        self.positions = positions
        self.exchange = exchange
        self.notifier = notifier or ExitNotifier()

    async def handle_stop_loss_hit(self, event: StopLossHitDetected) -> None:
        position = event.position
        logger.warning(
            f"Stop-loss crossed (price check) for {position.id if position else '?'} "
            f"@ {fmt_price(event.current_price)}, waiting for exchange confirmation"
        )

    async def handle_take_profit_hit(self, event: TakeProfitHitDetected) -> None:
        position = event.position
        logger.info(
            f"TP{event.tp_level} crossed (price check) for {position.id if position else '?'} "
            f"@ {fmt_price(event.current_price)}"
        )

    async def handle_position_closed_externally(self, event: PositionClosedExternally) -> None:
        """Fallback cleanup after another routine failed to record a close. Does not record again."""
        position = event.position
        if position is None:
            logger.warning("FALLBACK close event without a position, ignoring")
            return

        logger.warning(
            f"FALLBACK: position {position.id} closed externally, clearing "
            f"(last unrealized PnL {position.unrealized_pnl})"
        )
        await self.positions.clear_position()
        await self.notifier.fallback_close(position)

    async def handle_time_based_exit(self, event: TimeBasedExitTriggered) -> None:
        """
        Close on the holding-time ceiling.

        On success the exchange's close confirmation does the recording. If
        the exchange close fails, record and clear here under the close lock.
        """
        position = event.position
        if position is None:
            logger.warning("Time-based exit without a position, ignoring")
            return

        logger.warning(
            f"Time-based exit for {position.id}: {event.reason} "
            f"(open {event.opened_minutes:.1f} min, PnL {event.pnl_percent:.2f}%)"
        )
        await self.notifier.time_based_exit(position, event.reason, event.opened_minutes)

        try:
            await self.exchange.close_position(position.id, HUNDRED)
            logger.info(f"Time-based exit: {position.id} close sent to exchange")
            return
        except Exception as e:
            logger.error(f"Time-based exit close of {position.id} failed: {e}")

        exit_price = event.current_price if event.current_price and event.current_price > 0 else position.entry_price
        reason = f"Time-based exit: {event.reason} (fallback - exchange close failed)"

        async def _record_and_clear() -> None:
            await self.exiting.close_full_position(position, exit_price, reason, ExitType.TIME_BASED_EXIT)
            current = self.positions.get_current_position()
            if current is not position:
                logger.info(
                    f"Time-based exit: {position.id} no longer tracked "
                    f"(now {current.id if current else 'none'}), not clearing"
                )
                return
            await self.positions.clear_position()

        await self.positions.close_position_with_atomic_lock("TIME_BASED_EXIT", _record_and_clear)

    async def handle_monitor_error(self, event: MonitorError) -> None:
        logger.error(f"Position monitor error: {event.message}")


def register_position_handlers(bus: EventBusPort, handler: PositionEventHandler) -> None:
    bus.subscribe(StopLossHitDetected, handler.handle_stop_loss_hit)
    bus.subscribe(TakeProfitHitDetected, handler.handle_take_profit_hit)
    bus.subscribe(PositionClosedExternally, handler.handle_position_closed_externally)
    bus.subscribe(TimeBasedExitTriggered, handler.handle_time_based_exit)
    bus.subscribe(MonitorError, handler.handle_monitor_error)
