"""
Composition root of the exit lifecycle.

The trading loop owns the exchange client, the journal database and the
strategy; it hands them in here and gets back the wired exit stack.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from futures_bot.adapters.messaging.event_bus import InMemoryEventBus
from futures_bot.adapters.messaging.telegram import TelegramAdapter
from futures_bot.config.settings import Settings
from futures_bot.observability.logging import get_logger
from futures_bot.ports.exchange import ExchangePort, StopOrderPort
from futures_bot.ports.journal import JournalPort, SessionStatsPort
from futures_bot.ports.notification import NotificationPort
from futures_bot.services.exits.exit_event_handler import ExitEventHandler
from futures_bot.services.exits.ladder import LadderTpManager, LadderTracker
from futures_bot.services.handlers.execution_detector import OrderExecutionDetector
from futures_bot.services.handlers.position_events import PositionEventHandler, register_position_handlers
from futures_bot.services.handlers.tp_matching import TakeProfitLevelResolver
from futures_bot.services.handlers.websocket import WebSocketEventHandler, register_websocket_handlers
from futures_bot.services.notification import ExitNotifier
from futures_bot.services.positions.exiting import PositionExitingService
from futures_bot.services.positions.repository import PositionRepository
from futures_bot.utils.clock import ClockService

logger = get_logger(__name__)


def load_environment() -> Path | None:
    """Load the first .env found (cwd, then project root). Returns its path."""
    for env_path in (Path.cwd() / ".env", Path(__file__).resolve().parents[3] / ".env"):
        if env_path.exists():
            load_dotenv(env_path)
            return env_path
    load_dotenv()
    return None


@dataclass(slots=True)
class ExitStack:
    settings: Settings
    clock: ClockService
    event_bus: InMemoryEventBus
    notifier: NotificationPort | None
    alerts: ExitNotifier
    repository: PositionRepository
    exiting: PositionExitingService
    detector: OrderExecutionDetector
    websocket_handler: WebSocketEventHandler
    position_handler: PositionEventHandler
    ladder_manager: LadderTpManager
    ladder: LadderTracker
    exit_event_handler: ExitEventHandler | None = None

    async def start(self) -> None:
        if self.notifier is not None and hasattr(self.notifier, "start"):
            await self.notifier.start()
        await self.event_bus.start()
        logger.info("[HEALTH] Exit stack started")

    async def stop(self) -> None:
        await self.event_bus.stop()
        if self.notifier is not None and hasattr(self.notifier, "stop"):
            await self.notifier.stop()
        logger.info("[HEALTH] Exit stack stopped")


def build_exit_stack(
    settings: Settings,
    exchange: ExchangePort,
    journal: JournalPort,
    session_stats: SessionStatsPort,
    notifier: NotificationPort | None = None,
    clock: ClockService | None = None,
    stop_orders: StopOrderPort | None = None,
) -> ExitStack:
    """
    Wire the exit lifecycle.

    Without an explicit notifier, Telegram is used when enabled in settings.
    The config-driven exit handler is only built when a symbol-keyed
    `stop_orders` port is supplied.
    """
    clock = clock or ClockService()
    if notifier is None and settings.telegram.enabled:
        notifier = TelegramAdapter(settings.telegram)
    alerts = ExitNotifier(notifier)

    event_bus = InMemoryEventBus()
    repository = PositionRepository(
        exchange=exchange,
        journal=journal,
        event_bus=event_bus,
        fee_rate=settings.trading.trading_fee_rate,
    )
    exiting = PositionExitingService(
        settings=settings,
        exchange=exchange,
        journal=journal,
        session_stats=session_stats,
        positions=repository,
        notifier=alerts,
        clock=clock,
    )

    detector = OrderExecutionDetector()
    resolver = TakeProfitLevelResolver.default(
        price_tolerance_percent=settings.websocket.tp_price_match_tolerance_percent,
        quantity_tolerance_points=settings.websocket.tp_quantity_match_tolerance_percent,
    )
    websocket_handler = WebSocketEventHandler(
        exiting=exiting,
        positions=repository,
        exchange=exchange,
        journal=journal,
        detector=detector,
        resolver=resolver,
        notifier=alerts,
    )
    position_handler = PositionEventHandler(exiting=exiting, positions=repository, exchange=exchange, notifier=alerts)
    register_websocket_handlers(event_bus, websocket_handler)
    register_position_handlers(event_bus, position_handler)

    ladder_manager = LadderTpManager(settings.ladder, exchange, clock=clock)

    exit_event_handler = None
    if stop_orders is not None:
        exit_event_handler = ExitEventHandler(stop_orders, repository, settings.exit_strategy)

    return ExitStack(
        settings=settings,
        clock=clock,
        event_bus=event_bus,
        notifier=notifier,
        alerts=alerts,
        repository=repository,
        exiting=exiting,
        detector=detector,
        websocket_handler=websocket_handler,
        position_handler=position_handler,
        ladder_manager=ladder_manager,
        ladder=LadderTracker(ladder_manager, clock=clock),
        exit_event_handler=exit_event_handler,
    )
