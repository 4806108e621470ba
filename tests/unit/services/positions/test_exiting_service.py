"""
Unit tests for PositionExitingService.

Covers the exactly-once full close, partial close bookkeeping, the stop-loss
ratchet, breakeven/trailing follow-ups of TP hits and the periodic trailing
refinements.
"""

import asyncio
from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from futures_bot.domain.exit_actions import (
    ActivateTrailing,
    CloseAll,
    ClosePercent,
    MoveStopLossToBreakeven,
    UpdateStopLoss,
)
from futures_bot.domain.errors import PositionAlreadyClosedError
from futures_bot.domain.models import Candle, ExitType, PositionSide, PositionStatus, TradeCloseRecord

pytestmark = pytest.mark.unit


def D(x: str) -> Decimal:
    return Decimal(x)


# =============================================================================
# Full close
# =============================================================================


class TestCloseFullPosition:
    @pytest.mark.asyncio
    async def test_concurrent_closes_win_exactly_once(self, exiting, mock_exchange, position_factory):
        """Three racing close paths: one wins, the exchange is called once."""
        position = position_factory()

        async def slow_close(*args, **kwargs):
            await asyncio.sleep(0.01)

        mock_exchange.close_position.side_effect = slow_close

        results = await asyncio.gather(
            exiting.close_full_position(position, D("110"), "ws close", ExitType.TAKE_PROFIT_2),
            exiting.close_full_position(position, D("110"), "time exit", ExitType.TIME_BASED_EXIT),
            exiting.close_full_position(position, D("110"), "monitor", ExitType.STOP_LOSS),
        )

        assert results == [True, False, False]
        mock_exchange.close_position.assert_awaited_once_with(position.id, D("100"))
        assert position.status == PositionStatus.CLOSED

    @pytest.mark.asyncio
    async def test_closed_position_never_reaches_exchange(self, exiting, mock_exchange, position_factory):
        position = position_factory()
        position.status = PositionStatus.CLOSED

        assert await exiting.close_full_position(position, D("110"), "dup", ExitType.MANUAL) is False
        assert await exiting.close_partial_position(position, D("50"), D("110"), "dup", ExitType.MANUAL) is False
        assert await exiting.execute_exit_action(position, CloseAll(), D("110"), "dup", ExitType.MANUAL) is False

        mock_exchange.close_position.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_records_journal_stats_and_alert(
        self, exiting, mock_exchange, mock_journal, mock_session_stats, mock_notifier, position_factory
    ):
        position = position_factory()

        result = await exiting.close_full_position(position, D("110"), "TP2 fill", ExitType.TAKE_PROFIT_2)

        assert result is True
        mock_exchange.cancel_all_conditional_orders.assert_awaited_once()

        record = mock_journal.record_trade_close.await_args.args[0]
        assert isinstance(record, TradeCloseRecord)
        assert record.id == "journal-1"
        assert record.exit_price == D("110")
        # gross 10*10 minus fees (1000 + 1100) * 0.00055
        assert record.realized_pnl == D("98.845")

        condition = record.exit_condition
        assert condition.exit_type == ExitType.TAKE_PROFIT_2
        assert condition.holding_time_ms == 30 * 60 * 1000
        assert condition.holding_time_minutes == D("30")
        assert condition.pnl_percent == D("10")
        assert condition.max_profit_percent == D("10")
        assert condition.max_drawdown_percent == D("0")
        assert condition.stopped_out is False

        journal_id, stats = mock_session_stats.update_trade_exit.await_args.args
        assert journal_id == "journal-1"
        assert stats.stop_loss.initial == D("95")
        assert stats.exit_type == ExitType.TAKE_PROFIT_2

        message = mock_notifier.send_message.await_args.args[0]
        assert "Position Closed" in message
        assert "TAKE_PROFIT_2" in message

    @pytest.mark.asyncio
    async def test_uses_ledger_when_tracking(self, exiting, repository, mock_journal, position_factory):
        position = position_factory()
        repository.open_position(position)
        repository.take_profit_ledger.record_partial_close(1, D("3.3"), D("105"))
        exiting.settings.trading.trading_fee_rate = D("0")

        await exiting.close_full_position(position, D("110"), "close", ExitType.TAKE_PROFIT_2)

        record = mock_journal.record_trade_close.await_args.args[0]
        # 3.3*5 + 6.7*10
        assert record.realized_pnl == D("83.5")
        assert record.exit_condition.tp_levels_hit == [1]

    @pytest.mark.asyncio
    async def test_exchange_failure_reverts_to_open(self, exiting, mock_exchange, mock_journal, position_factory):
        position = position_factory()
        mock_exchange.close_position.side_effect = RuntimeError("503 Service Unavailable")

        assert await exiting.close_full_position(position, D("110"), "close", ExitType.MANUAL) is False

        assert position.status == PositionStatus.OPEN
        mock_journal.record_trade_close.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_already_closed_on_exchange_counts_as_success(
        self, exiting, mock_exchange, mock_journal, position_factory
    ):
        position = position_factory()
        mock_exchange.close_position.side_effect = PositionAlreadyClosedError("position is zero")

        assert await exiting.close_full_position(position, D("94"), "SL", ExitType.STOP_LOSS) is True

        record = mock_journal.record_trade_close.await_args.args[0]
        assert record.exit_condition.stopped_out is True
        assert record.exit_condition.max_drawdown_percent == D("6")

    @pytest.mark.asyncio
    async def test_recording_failures_do_not_fail_the_close(
        self, exiting, mock_exchange, mock_journal, mock_session_stats, mock_notifier, position_factory
    ):
        position = position_factory()
        mock_exchange.cancel_all_conditional_orders.side_effect = RuntimeError("cancel failed")
        mock_journal.record_trade_close.side_effect = RuntimeError("db locked")
        mock_session_stats.update_trade_exit.side_effect = RuntimeError("stats down")
        mock_notifier.send_message.side_effect = RuntimeError("telegram down")

        assert await exiting.close_full_position(position, D("110"), "close", ExitType.MANUAL) is True
        assert position.status == PositionStatus.CLOSED

    @pytest.mark.asyncio
    async def test_without_journal_entry_skips_recording(
        self, exiting, mock_journal, mock_session_stats, position_factory
    ):
        position = position_factory(journal_id=None)

        assert await exiting.close_full_position(position, D("110"), "close", ExitType.MANUAL) is True

        mock_journal.record_trade_close.assert_not_awaited()
        mock_session_stats.update_trade_exit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_bookkeeping_error_after_exchange_close_still_succeeds(
        self, exiting, mock_exchange, mock_journal, position_factory
    ):
        position = position_factory()
        position.entry_price = D("NaN")

        assert await exiting.close_full_position(position, D("105"), "stop", ExitType.STOP_LOSS) is True

        assert position.status == PositionStatus.CLOSED
        mock_exchange.close_position.assert_awaited_once()
        mock_journal.record_trade_close.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_holding_time_never_negative(self, exiting, mock_journal, position_factory, clock):
        position = position_factory(opened_at=clock.now() + timedelta(seconds=5))

        await exiting.close_full_position(position, D("100"), "close", ExitType.MANUAL)

        assert mock_journal.record_trade_close.await_args.args[0].exit_condition.holding_time_ms == 0


# =============================================================================
# Partial close
# =============================================================================


class TestClosePartialPosition:
    @pytest.mark.asyncio
    async def test_quantity_follows_live_size(self, exiting, mock_exchange, position_factory):
        position = position_factory()

        assert await exiting.close_partial_position(position, D("50"), D("104"), "scale out", ExitType.MANUAL)
        assert position.quantity == D("5")
        percentage = mock_exchange.close_position.await_args.args[1]
        assert float(percentage) == pytest.approx(50.0)

        assert await exiting.close_partial_position(position, D("50"), D("104"), "scale out", ExitType.MANUAL)
        assert position.quantity == D("2.5")

    @pytest.mark.asyncio
    async def test_quarter_close(self, exiting, position_factory):
        position = position_factory()

        await exiting.execute_exit_action(position, ClosePercent(D("25")), D("104"), "scale", ExitType.MANUAL)

        assert position.quantity == D("7.5")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("percent", [D("0"), D("-5")])
    async def test_rejects_non_positive_percent(self, exiting, mock_exchange, position_factory, percent):
        position = position_factory()

        assert await exiting.close_partial_position(position, percent, D("104"), "x", ExitType.MANUAL) is False
        mock_exchange.close_position.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rejects_more_than_whole_position(self, exiting, mock_exchange, position_factory):
        position = position_factory()

        result = await exiting.execute_exit_action(position, ClosePercent(D("150")), D("104"), "x", ExitType.MANUAL)

        assert result is False
        assert position.quantity == D("10")
        mock_exchange.close_position.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_hundred_percent_leaves_zero(self, exiting, position_factory):
        position = position_factory()

        assert await exiting.close_partial_position(position, D("100"), D("104"), "x", ExitType.MANUAL) is True
        assert position.quantity == D("0")

    @pytest.mark.asyncio
    async def test_exchange_failure_keeps_quantity(self, exiting, mock_exchange, position_factory):
        position = position_factory()
        mock_exchange.close_position.side_effect = RuntimeError("rate limited")

        assert await exiting.close_partial_position(position, D("50"), D("104"), "x", ExitType.MANUAL) is False
        assert position.quantity == D("10")

    @pytest.mark.asyncio
    async def test_full_close_during_flight_wins(self, exiting, mock_exchange, position_factory):
        position = position_factory()

        async def close_and_race(*args, **kwargs):
            position.status = PositionStatus.CLOSED

        mock_exchange.close_position.side_effect = close_and_race

        assert await exiting.close_partial_position(position, D("50"), D("104"), "x", ExitType.MANUAL) is False
        assert position.quantity == D("10")

    @pytest.mark.asyncio
    async def test_ledger_attribution_by_price(self, exiting, repository, mock_notifier, position_factory):
        position = position_factory()
        repository.open_position(position)

        await exiting.close_partial_position(position, D("33"), D("105.5"), "TP1", ExitType.TAKE_PROFIT_1)
        await exiting.close_partial_position(position, D("10"), D("107.5"), "manual", ExitType.MANUAL)

        # 105.5 is within 1% of TP1 (105); 107.5 is not within 1% of any level
        assert repository.take_profit_ledger.get_tp_levels_hit() == [1]
        assert "Partial Close (33%)" in mock_notifier.send_message.await_args_list[0].args[0]


# =============================================================================
# Stop-loss moves
# =============================================================================


class TestStopLossRatchet:
    @pytest.mark.asyncio
    async def test_long_stop_only_moves_up(self, exiting, mock_exchange, position_factory):
        position = position_factory()

        tightened = await exiting.execute_exit_action(position, UpdateStopLoss(D("101")), D("106"), "", ExitType.MANUAL)
        loosened = await exiting.execute_exit_action(position, UpdateStopLoss(D("98")), D("106"), "", ExitType.MANUAL)

        assert tightened is True
        assert loosened is False

        assert position.stop_loss.price == D("101")
        mock_exchange.update_stop_loss.assert_awaited_once_with(position.id, D("101"))

    @pytest.mark.asyncio
    async def test_short_stop_only_moves_down(self, exiting, position_factory):
        position = position_factory(side=PositionSide.SHORT)

        assert await exiting.update_stop_loss(position, D("99"))
        assert await exiting.update_stop_loss(position, D("102")) is False
        assert position.stop_loss.price == D("99")

    @pytest.mark.asyncio
    async def test_non_finite_stop_rejected(self, exiting, mock_exchange, position_factory):
        position = position_factory()

        assert await exiting.update_stop_loss(position, Decimal("NaN")) is False
        mock_exchange.update_stop_loss.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_exchange_failure_keeps_stop(self, exiting, mock_exchange, position_factory):
        position = position_factory()
        mock_exchange.update_stop_loss.side_effect = RuntimeError("order not found")

        assert await exiting.update_stop_loss(position, D("99")) is False
        assert position.stop_loss.price == D("95")

    @pytest.mark.asyncio
    async def test_entry_price_never_changes(self, exiting, position_factory):
        position = position_factory()

        await exiting.execute_exit_action(position, UpdateStopLoss(D("101")), D("106"), "", ExitType.MANUAL)
        await exiting.execute_exit_action(position, ClosePercent(D("50")), D("106"), "", ExitType.MANUAL)
        await exiting.execute_exit_action(position, MoveStopLossToBreakeven(), D("106"), "", ExitType.MANUAL)
        await exiting.execute_exit_action(position, CloseAll(), D("106"), "", ExitType.MANUAL)

        assert position.entry_price == D("100")


class TestBreakevenAndTrailing:
    @pytest.mark.asyncio
    async def test_breakeven_uses_bps_offset(self, exiting, mock_exchange, mock_notifier, position_factory):
        position = position_factory()

        assert await exiting.move_stop_loss_to_breakeven(position)

        # 0.3 bps of 100
        assert position.stop_loss.price == D("100.003")
        assert position.stop_loss.is_breakeven is True
        mock_exchange.update_stop_loss.assert_awaited_once_with(position.id, D("100.003"))
        assert "breakeven" in mock_notifier.send_message.await_args.args[0]

    @pytest.mark.asyncio
    async def test_breakeven_only_once(self, exiting, mock_exchange, position_factory):
        position = position_factory()

        await exiting.move_stop_loss_to_breakeven(position)
        assert await exiting.move_stop_loss_to_breakeven(position) is False
        assert mock_exchange.update_stop_loss.await_count == 1

    @pytest.mark.asyncio
    async def test_breakeven_never_loosens_trailing_stop(self, exiting, mock_exchange, position_factory):
        position = position_factory()
        position.stop_loss.price = D("108")
        position.stop_loss.is_trailing = True

        assert await exiting.move_stop_loss_to_breakeven(position) is False
        assert position.stop_loss.price == D("108")
        mock_exchange.update_stop_loss.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_activate_trailing_via_dispatcher(self, exiting, position_factory):
        position = position_factory()

        assert await exiting.execute_exit_action(position, ActivateTrailing(D("2")), D("110"), "", ExitType.MANUAL)

        assert position.stop_loss.price == D("108")
        assert position.stop_loss.is_trailing is True

    @pytest.mark.asyncio
    async def test_dispatcher_without_position(self, exiting):
        assert await exiting.execute_exit_action(None, CloseAll(), D("1"), "", ExitType.MANUAL) is False


# =============================================================================
# TP hit follow-ups
# =============================================================================


class TestOnTakeProfitHit:
    @pytest.mark.asyncio
    async def test_tp1_marks_hit_and_moves_to_breakeven(self, exiting, position_factory, clock):
        position = position_factory()

        await exiting.on_take_profit_hit(position, 1, D("105"))

        tp1 = position.take_profit(1)
        assert tp1.hit is True
        assert tp1.hit_at == clock.now()
        assert tp1.order_id is None
        assert position.stop_loss.is_breakeven is True
        assert position.stop_loss.is_trailing is False

    @pytest.mark.asyncio
    async def test_duplicate_hit_ignored(self, exiting, mock_exchange, position_factory):
        position = position_factory()

        await exiting.on_take_profit_hit(position, 1, D("105"))
        await exiting.on_take_profit_hit(position, 1, D("105"))

        assert mock_exchange.update_stop_loss.await_count == 1

    @pytest.mark.asyncio
    async def test_tp2_arms_trailing_by_polling_without_capability(self, exiting, position_factory):
        position = position_factory()

        await exiting.on_take_profit_hit(position, 2, D("110"))

        sl = position.stop_loss
        assert sl.is_trailing is True
        assert sl.trailing_percent == D("0.5")
        assert sl.trailing_activation_price == D("110")

    @pytest.mark.asyncio
    async def test_tp2_uses_native_trailing_when_available(self, exiting, mock_exchange, position_factory):
        capability = MagicMock()
        capability.set_trailing_stop = AsyncMock()
        mock_exchange.trailing_stop_capability.return_value = capability
        position = position_factory()

        await exiting.on_take_profit_hit(position, 2, D("110"))

        capability.set_trailing_stop.assert_awaited_once_with(
            side="Buy", activation_price=D("110"), trailing_percent=D("0.5")
        )

    @pytest.mark.asyncio
    async def test_trailing_exclusive_of_breakeven(self, exiting, position_factory):
        exiting.settings.risk.trailing_exclusive_of_breakeven = True
        position = position_factory()

        await exiting.on_take_profit_hit(position, 1, D("105"))
        await exiting.on_take_profit_hit(position, 2, D("110"))

        assert position.stop_loss.is_breakeven is True
        assert position.stop_loss.is_trailing is False

    @pytest.mark.asyncio
    async def test_records_ledger_partial(self, exiting, repository, position_factory):
        position = position_factory()
        repository.open_position(position)

        await exiting.on_take_profit_hit(position, 1, D("105"))

        assert repository.take_profit_ledger.get_tp_levels_hit() == [1]

    @pytest.mark.asyncio
    async def test_unknown_level_and_closed_position(self, exiting, mock_exchange, position_factory):
        position = position_factory()

        await exiting.on_take_profit_hit(position, 7, D("130"))
        position.status = PositionStatus.CLOSED
        await exiting.on_take_profit_hit(position, 1, D("105"))

        assert position.tp_levels_hit() == []
        mock_exchange.update_stop_loss.assert_not_awaited()


# =============================================================================
# Periodic refinements
# =============================================================================


class TestTrailingRefinements:
    @pytest.mark.asyncio
    async def test_smart_trailing_ratchets(self, exiting, position_factory):
        position = position_factory()
        position.stop_loss.is_trailing = True
        position.stop_loss.trailing_percent = D("0.5")

        assert await exiting.update_smart_trailing_v2(position, D("120")) is True
        assert position.stop_loss.price == D("119.4")
        assert await exiting.update_smart_trailing_v2(position, D("119")) is False
        assert position.stop_loss.price == D("119.4")

    @pytest.mark.asyncio
    async def test_smart_trailing_requires_trailing(self, exiting, mock_exchange, position_factory):
        assert await exiting.update_smart_trailing_v2(position_factory(), D("120")) is False
        mock_exchange.update_stop_loss.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_smart_tp3_moves_target_by_ticks(self, exiting, mock_exchange, position_factory):
        capability = MagicMock()
        capability.update_take_profit = AsyncMock()
        mock_exchange.take_profit_update_capability.return_value = capability
        exiting.settings.risk.smart_tp3.enabled = True
        position = position_factory()
        position.stop_loss.is_trailing = True

        assert await exiting.update_smart_tp3(position, D("114.9")) is True

        # tick = 0.05% of 114.9, three ticks past the current price
        capability.update_take_profit.assert_awaited_once_with("tp-order-3", D("115.07235"))
        assert position.take_profit(3).price == D("115.07235")

    @pytest.mark.asyncio
    async def test_smart_tp3_disabled_by_default(self, exiting, position_factory):
        position = position_factory()
        position.stop_loss.is_trailing = True

        assert await exiting.update_smart_tp3(position, D("114.9")) is False

    @pytest.mark.asyncio
    async def test_bollinger_trailing(self, exiting, position_factory):
        position = position_factory()
        position.stop_loss.is_trailing = True
        candles = [Candle(close=c) for c in [D("100"), D("102")] * 10]

        assert await exiting.update_bb_trailing_stop(position, candles) is True
        assert position.stop_loss.price == D("99")
        assert await exiting.update_bb_trailing_stop(position, candles) is False

    @pytest.mark.asyncio
    async def test_bollinger_needs_full_window(self, exiting, position_factory):
        position = position_factory()
        position.stop_loss.is_trailing = True

        assert await exiting.update_bb_trailing_stop(position, [Candle(close=D("120"))] * 5) is False
