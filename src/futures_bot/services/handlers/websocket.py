"""
WebSocket event handler.

Entry point for exchange push events. Frames are validated before anything
trusts them; a malformed frame is logged and skipped, never raised, so one bad
message cannot stall the stream.

Close handling runs inside the repository's close lock for its whole
duration, which serializes it against the time-based exit path.
"""

from __future__ import annotations

from decimal import Decimal

from futures_bot.domain.errors import InvalidEventError
from futures_bot.domain.events import (
    OrderFilled,
    PositionClosedReceived,
    PositionUpdateReceived,
    StopLossFilled,
    TakeProfitFilled,
    WebSocketError,
)
from futures_bot.domain.exit_calculations import calculate_pnl_percent
from futures_bot.domain.models import CloseTrigger, ExitType, Position
from futures_bot.domain.validation import PositionValidator
from futures_bot.observability.logging import get_logger
from futures_bot.ports.event_bus import EventBusPort
from futures_bot.ports.exchange import ExchangePort
from futures_bot.ports.journal import JournalPort
from futures_bot.services.handlers.execution_detector import OrderExecutionDetector
from futures_bot.services.handlers.tp_matching import TakeProfitLevelResolver, TPFill
from futures_bot.services.notification import ExitNotifier
from futures_bot.services.positions.exiting import PositionExitingService
from futures_bot.services.positions.repository import PositionRepository
from futures_bot.utils.decimals import fmt_price, parse_decimal

logger = get_logger(__name__)

EXTERNAL_CLOSE_REASON = "Position closed (SL/TP/Trailing)"


def parse_take_profit_event(event: TakeProfitFilled | None) -> TPFill:
    """
    Validate a TP fill frame.

    Order id is required; price and quantity are optional but must be finite
    and non-negative when present.
    """
    if event is None:
        raise InvalidEventError("TP fill event is missing")

    if not isinstance(event.order_id, str) or not event.order_id.strip():
        raise InvalidEventError("TP fill event has no order id", symbol=event.symbol or None)

    def _optional_amount(name: str, raw: object) -> Decimal | None:
        if raw is None:
            return None
        value = parse_decimal(raw)
        if value is None or value < 0:
            raise InvalidEventError(
                f"TP fill {event.order_id}: {name} must be a finite non-negative number (got {raw!r})",
                symbol=event.symbol or None,
                details={"field": name},
            )
        return value

    return TPFill(
        order_id=event.order_id,
        avg_price=_optional_amount("avg_price", event.avg_price),
        cum_exec_qty=_optional_amount("cum_exec_qty", event.cum_exec_qty),
    )


class WebSocketEventHandler:
    """Routes exchange push events into the exit core."""

    def __init__(
        self,
        exiting: PositionExitingService,
        positions: PositionRepository,
        exchange: ExchangePort,
        journal: JournalPort,
        detector: OrderExecutionDetector,
        resolver: TakeProfitLevelResolver | None = None,
        notifier: ExitNotifier | None = None,
    ):
        self.exiting = exiting
        self.positions = positions
        self.exchange = exchange
        self.journal = journal
        self.detector = detector
        self.resolver = resolver or TakeProfitLevelResolver.default()
        self.notifier = notifier or ExitNotifier()

    # =========================================================================
    # Position stream
    # =========================================================================

    async def handle_position_update(self, event: PositionUpdateReceived) -> None:
        position = event.position
        if not PositionValidator.is_valid_ws_position(position):
            logger.warning(f"Skipping invalid position frame: {position!r}")
            return

        await self.positions.sync_with_websocket(position)

    async def handle_position_closed(self, event: PositionClosedReceived | None = None) -> None:
        logger.info(f"WebSocket: position closed{f' ({event.symbol})' if event and event.symbol else ''}")
        await self.positions.close_position_with_atomic_lock("EXTERNAL_CLOSE", self._handle_position_closed_locked)

    async def _handle_position_closed_locked(self) -> None:
        position = self.positions.get_current_position()
        if position is None:
            logger.debug("No tracked position, close already handled")
            return

        journal_id = position.journal_id or position.id
        try:
            trade = await self.journal.get_trade(journal_id)
        except Exception as e:
            logger.warning(f"Journal lookup for {journal_id} failed, continuing with close: {e}")
            trade = None

        if trade is not None and trade.status == "CLOSED":
            exit_type = (trade.exit_condition or {}).get("exit_type")
            logger.debug(f"Trade {journal_id} already closed in journal ({exit_type}), skipping duplicate record")
            return

        current_price = await self._get_current_price_with_fallback(position.entry_price)
        exit_type = self._determine_exit_type(position)
        self.detector.reset_last_close_reason()

        recorded = await self.exiting.close_full_position(position, current_price, EXTERNAL_CLOSE_REASON, exit_type)
        if not recorded:
            # The exiting service only alerts on the close it records.
            pnl = position.unrealized_pnl or Decimal("0")
            await self.notifier.position_closed(
                position,
                current_price,
                pnl,
                calculate_pnl_percent(position, current_price),
                exit_type,
                EXTERNAL_CLOSE_REASON,
            )

        await self.positions.clear_position()

    def _determine_exit_type(self, position: Position) -> ExitType:
        """
        Prefer the exchange's own trigger tag over locally inferred state.

        Without a tag, fall back to the last TP hit, then to the stop kind.
        """
        tp_hits = position.tp_levels_hit()
        last_reason = self.detector.get_last_close_reason()

        if last_reason == CloseTrigger.TP:
            return ExitType.take_profit(tp_hits[-1]) if tp_hits else ExitType.STOP_LOSS
        if last_reason == CloseTrigger.TRAILING:
            return ExitType.TRAILING_STOP
        if last_reason == CloseTrigger.SL:
            return ExitType.STOP_LOSS

        if tp_hits:
            return ExitType.take_profit(tp_hits[-1])
        return ExitType.TRAILING_STOP if position.stop_loss.is_trailing else ExitType.STOP_LOSS

    async def _get_current_price_with_fallback(self, fallback: Decimal) -> Decimal:
        try:
            raw = await self.exchange.get_current_price()
        except Exception as e:
            logger.warning(f"Price fetch failed, using entry price {fmt_price(fallback)}: {e}")
            return fallback

        price = parse_decimal(raw)
        if price is None or price <= 0:
            logger.warning(f"Invalid price {raw!r} from exchange, using entry price {fmt_price(fallback)}")
            return fallback
        return price

    # =========================================================================
    # Order stream
    # =========================================================================

    async def handle_order_filled(self, event: OrderFilled) -> None:
        # Close consequences arrive through the position stream.
        logger.info(f"WebSocket: order filled {event.order_id} ({event.side} {event.qty} @ {event.avg_price})")

    async def handle_take_profit_filled(self, event: TakeProfitFilled) -> None:
        try:
            fill = parse_take_profit_event(event)
        except InvalidEventError as e:
            logger.warning(f"Skipping invalid TP fill event: {e}")
            return

        logger.info(f"WebSocket: TP filled {fill.order_id} (price {fill.avg_price}, qty {fill.cum_exec_qty})")

        position = self.positions.get_current_position()
        if position is None:
            logger.warning("TP filled but no tracked position")
            return

        resolved = self.resolver.resolve(position, fill)
        if resolved is None:
            return

        price = fill.avg_price if fill.avg_price is not None and fill.avg_price > 0 else position.entry_price
        logger.info(f"[EXIT] TP{resolved.level} filled via {resolved.tier} @ {fmt_price(price)}")
        await self.exiting.on_take_profit_hit(position, resolved.level, price)

    async def handle_stop_loss_filled(self, event: StopLossFilled) -> None:
        # Recorded when the position stream reports the close.
        logger.info(f"WebSocket: stop-loss filled {event.order_id} @ {event.avg_price}")

    async def handle_error(self, event: WebSocketError) -> None:
        # Reconnection belongs to the stream client.
        logger.error(f"WebSocket error: {event.message}")


def register_websocket_handlers(bus: EventBusPort, handler: WebSocketEventHandler) -> None:
    bus.subscribe(PositionUpdateReceived, handler.handle_position_update)
    bus.subscribe(PositionClosedReceived, handler.handle_position_closed)
    bus.subscribe(OrderFilled, handler.handle_order_filled)
    bus.subscribe(TakeProfitFilled, handler.handle_take_profit_filled)
    bus.subscribe(StopLossFilled, handler.handle_stop_loss_filled)
    bus.subscribe(WebSocketError, handler.handle_error)
