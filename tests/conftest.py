"""
Shared fixtures for the exit lifecycle tests.

Exchange, journal, session stats and notifier are mocks; everything else is
the real service wired the way the bootstrap wires it.
"""

from datetime import UTC, datetime, timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from futures_bot.config.settings import Settings
from futures_bot.domain.models import Position, PositionSide, StopLoss, TakeProfit
from futures_bot.ports.exchange import ExchangePort
from futures_bot.services.notification import ExitNotifier
from futures_bot.services.positions.exiting import PositionExitingService
from futures_bot.services.positions.repository import PositionRepository
from futures_bot.utils.clock import ClockService

FIXED_NOW = datetime(2026, 3, 2, 12, 0, 0, tzinfo=UTC)


def D(x: str) -> Decimal:
    """Helper to create Decimal from string."""
    return Decimal(x)


def make_position(
    side: PositionSide = PositionSide.LONG,
    entry_price: Decimal = Decimal("100"),
    quantity: Decimal = Decimal("10"),
    stop_loss: Decimal | None = None,
    tp_prices: tuple[Decimal, ...] | None = None,
    journal_id: str | None = "journal-1",
    opened_at: datetime | None = None,
) -> Position:
    """LONG 10 @ 100, SL 95, TP 105/110/115 sized 33/33/34 unless overridden."""
    if stop_loss is None:
        stop_loss = D("95") if side == PositionSide.LONG else D("105")
    if tp_prices is None:
        tp_prices = (D("105"), D("110"), D("115")) if side == PositionSide.LONG else (D("95"), D("90"), D("85"))

    sizes = (D("33"), D("33"), D("34"))
    take_profits = [
        TakeProfit(
            level=index,
            percent=abs(price - entry_price) / entry_price * 100,
            size_percent=sizes[index - 1],
            price=price,
            order_id=f"tp-order-{index}",
        )
        for index, price in enumerate(tp_prices, start=1)
    ]
    return Position(
        id=Position.make_id("BTCUSDT", side),
        symbol="BTCUSDT",
        side=side,
        entry_price=entry_price,
        quantity=quantity,
        stop_loss=StopLoss(price=stop_loss),
        take_profits=take_profits,
        journal_id=journal_id,
        opened_at=opened_at or FIXED_NOW - timedelta(minutes=30),
    )


@pytest.fixture
def settings() -> Settings:
    return Settings()


@pytest.fixture
def clock() -> ClockService:
    return ClockService(time_source=lambda: FIXED_NOW.timestamp())


@pytest.fixture
def mock_exchange():
    """Mock ExchangePort without optional capabilities."""
    exchange = MagicMock(spec=ExchangePort)
    exchange.close_position = AsyncMock(return_value=None)
    exchange.update_stop_loss = AsyncMock(return_value=None)
    exchange.cancel_all_conditional_orders = AsyncMock(return_value=None)
    exchange.get_current_price = AsyncMock(return_value=D("108"))
    exchange.trailing_stop_capability = MagicMock(return_value=None)
    exchange.take_profit_update_capability = MagicMock(return_value=None)
    return exchange


@pytest.fixture
def mock_journal():
    journal = MagicMock()
    journal.get_trade = AsyncMock(return_value=None)
    journal.record_trade_close = AsyncMock(return_value=None)
    journal.get_open_position_by_symbol = AsyncMock(return_value=None)
    return journal


@pytest.fixture
def mock_session_stats():
    stats = MagicMock()
    stats.update_trade_exit = AsyncMock(return_value=None)
    return stats


@pytest.fixture
def mock_notifier():
    notifier = MagicMock(spec=["send_message"])
    notifier.send_message = AsyncMock(return_value=True)
    return notifier


@pytest.fixture
def repository(mock_exchange, mock_journal) -> PositionRepository:
    return PositionRepository(exchange=mock_exchange, journal=mock_journal)


@pytest.fixture
def exiting(
    settings, mock_exchange, mock_journal, mock_session_stats, mock_notifier, repository, clock
) -> PositionExitingService:
    return PositionExitingService(
        settings=settings,
        exchange=mock_exchange,
        journal=mock_journal,
        session_stats=mock_session_stats,
        positions=repository,
        notifier=ExitNotifier(mock_notifier),
        clock=clock,
    )


@pytest.fixture
def position_factory():
    """Factory fixture around make_position()."""
    return make_position
