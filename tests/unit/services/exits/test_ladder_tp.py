"""
Unit tests for the ladder TP manager and its single-ladder tracker.

Default ladder: TP1 +0.08% (33%), TP2 +0.15% (33%), TP3 +0.25% (34%),
breakeven after TP1, 0.05% trailing after TP2.
"""

from decimal import Decimal

import pytest

from futures_bot.config.settings import LadderLevelSettings, LadderSettings
from futures_bot.domain.errors import LadderConfigError
from futures_bot.domain.models import PositionSide
from futures_bot.services.exits.ladder import LadderTpManager, LadderTracker

pytestmark = pytest.mark.unit


def D(x: str) -> Decimal:
    return Decimal(x)


@pytest.fixture
def manager(mock_exchange, clock) -> LadderTpManager:
    return LadderTpManager(LadderSettings(), mock_exchange, clock=clock)


@pytest.fixture
def ladder_position(position_factory):
    return position_factory(entry_price=D("1"), stop_loss=D("0.99"), tp_prices=())


# =============================================================================
# Config validation
# =============================================================================


class TestConfigValidation:
    @pytest.mark.parametrize(
        "overrides",
        [
            {"levels": []},
            {"levels": [LadderLevelSettings(price_percent=D("0"), close_percent=D("50"))]},
            {"levels": [LadderLevelSettings(price_percent=D("0.1"), close_percent=D("5"))]},
            {"levels": [LadderLevelSettings(price_percent=D("0.1"), close_percent=D("95"))]},
            {"trailing_distance_percent": D("0")},
        ],
    )
    def test_rejected_at_construction(self, mock_exchange, overrides):
        with pytest.raises(LadderConfigError):
            LadderTpManager(LadderSettings(**overrides), mock_exchange)

    def test_zero_trailing_distance_allowed_when_trailing_off(self, mock_exchange):
        config = LadderSettings(trailing_after_tp2=False, trailing_distance_percent=D("0"))

        LadderTpManager(config, mock_exchange)


# =============================================================================
# Levels and hit tests
# =============================================================================


class TestLevels:
    def test_long_targets(self, manager):
        levels = manager.create_ladder_levels(D("1"), PositionSide.LONG)

        assert [lvl.target_price for lvl in levels] == [D("1.0008"), D("1.0015"), D("1.0025")]
        assert [lvl.level for lvl in levels] == [1, 2, 3]

    def test_short_targets(self, manager):
        levels = manager.create_ladder_levels(D("1"), PositionSide.SHORT)

        assert [lvl.target_price for lvl in levels] == [D("0.9992"), D("0.9985"), D("0.9975")]


class TestCheckTpHit:
    @pytest.mark.parametrize(
        "price, expected",
        [
            (D("1.0008"), True),  # exact
            (D("1.0010"), True),  # overshoot
            (D("1.00079"), True),  # microscopic undershoot
            (D("1.0006"), False),  # materially short
        ],
    )
    def test_long(self, manager, price, expected):
        level = manager.create_ladder_levels(D("1"), PositionSide.LONG)[0]

        assert manager.check_tp_hit(level, price, PositionSide.LONG) is expected

    @pytest.mark.parametrize(
        "price, expected",
        [
            (D("0.9992"), True),
            (D("0.99921"), True),
            (D("0.9994"), False),
        ],
    )
    def test_short(self, manager, price, expected):
        level = manager.create_ladder_levels(D("1"), PositionSide.SHORT)[0]

        assert manager.check_tp_hit(level, price, PositionSide.SHORT) is expected

    def test_hit_level_never_hits_again(self, manager):
        level = manager.create_ladder_levels(D("1"), PositionSide.LONG)[0]
        level.hit = True

        assert manager.check_tp_hit(level, D("2"), PositionSide.LONG) is False


# =============================================================================
# Exchange actions
# =============================================================================


class TestActions:
    @pytest.mark.asyncio
    async def test_partial_close_by_percentage(self, manager, mock_exchange, ladder_position):
        level = manager.create_ladder_levels(D("1"), PositionSide.LONG)[0]

        assert await manager.execute_partial_close(level, ladder_position) is True
        mock_exchange.close_position.assert_awaited_once_with(ladder_position.id, D("33"))

    @pytest.mark.asyncio
    async def test_partial_close_below_minimum_skipped(self, manager, mock_exchange, ladder_position):
        ladder_position.quantity = D("0.02")
        level = manager.create_ladder_levels(D("1"), PositionSide.LONG)[0]

        assert await manager.execute_partial_close(level, ladder_position) is False
        mock_exchange.close_position.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_partial_close_exchange_error(self, manager, mock_exchange, ladder_position):
        mock_exchange.close_position.side_effect = RuntimeError("insufficient position")
        level = manager.create_ladder_levels(D("1"), PositionSide.LONG)[0]

        assert await manager.execute_partial_close(level, ladder_position) is False

    @pytest.mark.asyncio
    async def test_breakeven_is_entry(self, manager, mock_exchange, ladder_position):
        assert await manager.move_to_breakeven(ladder_position) is True

        assert ladder_position.stop_loss.price == D("1")
        assert ladder_position.stop_loss.is_breakeven is True
        mock_exchange.update_stop_loss.assert_awaited_once_with(ladder_position.id, D("1"))

    @pytest.mark.asyncio
    async def test_breakeven_disabled(self, mock_exchange, clock, ladder_position):
        manager = LadderTpManager(LadderSettings(move_to_breakeven_after_tp1=False), mock_exchange, clock=clock)

        assert await manager.move_to_breakeven(ladder_position) is False
        mock_exchange.update_stop_loss.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_trailing_ratchet(self, manager, mock_exchange, ladder_position):
        assert await manager.move_trailing(ladder_position, D("1.002")) is True
        assert ladder_position.stop_loss.price == D("1.001499")
        assert ladder_position.stop_loss.is_trailing is True

        assert await manager.move_trailing(ladder_position, D("1.001")) is False
        assert mock_exchange.update_stop_loss.await_count == 1

    @pytest.mark.asyncio
    async def test_short_trailing(self, manager, position_factory):
        position = position_factory(side=PositionSide.SHORT, entry_price=D("1"), stop_loss=D("1.01"), tp_prices=())

        assert await manager.move_trailing(position, D("0.998")) is True
        assert position.stop_loss.price == D("0.998499")


# =============================================================================
# Tracker
# =============================================================================


class TestLadderTracker:
    @pytest.mark.asyncio
    async def test_full_ladder_walk(self, manager, mock_exchange, ladder_position):
        tracker = LadderTracker(manager)
        ladder = tracker.setup(ladder_position)

        await tracker.on_price(D("1.0008"))
        assert ladder.levels[0].hit is True
        assert ladder_position.stop_loss.price == D("1")
        assert ladder_position.quantity == D("6.7")

        await tracker.on_price(D("1.0015"))
        assert ladder.levels[1].hit is True
        assert ladder.trailing_active is True
        assert ladder_position.quantity == D("4.489")

        await tracker.on_price(D("1.0020"))
        assert ladder.levels[2].hit is False
        assert ladder_position.stop_loss.price == D("1.001499")

        await tracker.on_price(D("1.0025"))
        assert tracker.active_ladder is None
        assert mock_exchange.close_position.await_count == 3

    @pytest.mark.asyncio
    async def test_one_level_per_tick(self, manager, ladder_position):
        tracker = LadderTracker(manager)
        ladder = tracker.setup(ladder_position)

        await tracker.on_price(D("1.01"))

        assert [lvl.hit for lvl in ladder.levels] == [True, False, False]

    @pytest.mark.asyncio
    async def test_failed_close_leaves_level_open(self, manager, mock_exchange, ladder_position):
        mock_exchange.close_position.side_effect = [RuntimeError("503 Service Unavailable"), None]
        tracker = LadderTracker(manager)
        ladder = tracker.setup(ladder_position)

        await tracker.on_price(D("1.0008"))

        assert ladder.levels[0].hit is False
        assert ladder_position.quantity == D("10")
        assert ladder_position.stop_loss.price == D("0.99")
        mock_exchange.update_stop_loss.assert_not_awaited()

        await tracker.on_price(D("1.0008"))

        assert ladder.levels[0].hit is True
        assert ladder_position.quantity == D("6.7")
        assert mock_exchange.close_position.await_count == 2

    @pytest.mark.asyncio
    async def test_skipped_close_does_not_shrink_quantity(self, manager, mock_exchange, position_factory):
        position = position_factory(entry_price=D("1"), quantity=D("0.02"), stop_loss=D("0.99"), tp_prices=())
        tracker = LadderTracker(manager)
        ladder = tracker.setup(position)

        await tracker.on_price(D("1.0008"))

        assert ladder.levels[0].hit is False
        assert position.quantity == D("0.02")
        mock_exchange.close_position.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_setup_replaces_previous_ladder(self, manager, ladder_position, position_factory):
        tracker = LadderTracker(manager)
        tracker.setup(ladder_position)
        replacement = position_factory(entry_price=D("2"), stop_loss=D("1.98"), tp_prices=())

        ladder = tracker.setup(replacement)

        assert tracker.active_ladder is ladder
        assert ladder.position is replacement

    @pytest.mark.asyncio
    async def test_max_holding_time_clears(self, mock_exchange, clock, ladder_position):
        manager = LadderTpManager(LadderSettings(max_holding_time_seconds=60), mock_exchange, clock=clock)
        tracker = LadderTracker(manager)
        tracker.setup(ladder_position)

        await tracker.on_price(D("1"))

        assert tracker.active_ladder is None

    @pytest.mark.asyncio
    async def test_no_ladder_is_noop(self, manager, mock_exchange):
        await LadderTracker(manager).on_price(D("1"))

        mock_exchange.close_position.assert_not_awaited()
