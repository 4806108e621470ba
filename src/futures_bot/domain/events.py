"""
Domain Events.

Events are immutable records of things that happened in the domain.
They are used for:
- Routing exchange push events (WebSocket) to their handlers
- Routing poll/monitor detections to their handlers
- Config-driven exit handling (TP hit / position closed)
- Lifecycle notifications (position cleared)
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum

from futures_bot.domain.models import Position


@dataclass(frozen=True, slots=True)
class DomainEvent:
    """Base class for all domain events."""

    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def event_type(self) -> str:
        return self.__class__.__name__


# =============================================================================
# Config-driven exit events
# =============================================================================


class ClosedBy(str, Enum):
    """Why the exchange closed a position (config-driven exit path)."""

    SL_HIT = "SL_HIT"
    TP_HIT = "TP_HIT"
    TRAILING_HIT = "TRAILING_HIT"
    MANUAL = "MANUAL"
    LIQUIDATION = "LIQUIDATION"


@dataclass(frozen=True, slots=True)
class ExitIndicators:
    """Market context optionally attached to a TP hit."""

    atr_percent: Decimal | None = None
    atr_value: Decimal | None = None
    current_volume: Decimal | None = None
    avg_volume: Decimal | None = None


@dataclass(frozen=True, slots=True)
class TPHitEvent(DomainEvent):
    """A specific TP level of a position was hit."""

    symbol: str = ""
    position: Position | None = None
    current_price: Decimal = Decimal("0")
    tp_level: int = 0
    tp_price: Decimal = Decimal("0")
    indicators: ExitIndicators | None = None


@dataclass(frozen=True, slots=True)
class PositionClosedEvent(DomainEvent):
    """A position was closed on the exchange (SL, TP, trailing, manual, liquidation)."""

    symbol: str = ""
    position: Position | None = None
    current_price: Decimal = Decimal("0")
    reason: ClosedBy = ClosedBy.MANUAL
    closed_at: datetime | None = None
    closed_size: Decimal = Decimal("0")
    closed_percent: Decimal | None = None
    pnl: Decimal | None = None
    pnl_percent: Decimal | None = None
    closing_price: Decimal | None = None


ExitEvent = TPHitEvent | PositionClosedEvent


# =============================================================================
# WebSocket (exchange push) events
# =============================================================================


@dataclass(frozen=True, slots=True)
class PositionUpdateReceived(DomainEvent):
    """Position snapshot pushed by the exchange."""

    position: Position | None = None


@dataclass(frozen=True, slots=True)
class PositionClosedReceived(DomainEvent):
    """Exchange reports the tracked position is flat."""

    symbol: str = ""


@dataclass(frozen=True, slots=True)
class OrderFilled(DomainEvent):
    order_id: str = ""
    symbol: str = ""
    side: str = ""
    avg_price: str | None = None
    qty: str | None = None


@dataclass(frozen=True, slots=True)
class TakeProfitFilled(DomainEvent):
    """A TP order executed. Raw wire values; validated by the handler."""

    order_id: str = ""
    symbol: str = ""
    avg_price: str | Decimal | None = None
    cum_exec_qty: str | Decimal | None = None


@dataclass(frozen=True, slots=True)
class StopLossFilled(DomainEvent):
    order_id: str = ""
    symbol: str = ""
    avg_price: str | Decimal | None = None


@dataclass(frozen=True, slots=True)
class WebSocketError(DomainEvent):
    message: str = ""


# =============================================================================
# Poll / monitor events
# =============================================================================


@dataclass(frozen=True, slots=True)
class StopLossHitDetected(DomainEvent):
    """Price check saw the stop crossed (backup detection only)."""

    position: Position | None = None
    current_price: Decimal = Decimal("0")


@dataclass(frozen=True, slots=True)
class TakeProfitHitDetected(DomainEvent):
    """Price check saw a TP crossed (backup detection only)."""

    position: Position | None = None
    tp_level: int = 0
    current_price: Decimal = Decimal("0")


@dataclass(frozen=True, slots=True)
class PositionClosedExternally(DomainEvent):
    """Another sync routine failed to record a close; fallback cleanup requested."""

    position: Position | None = None


@dataclass(frozen=True, slots=True)
class TimeBasedExitTriggered(DomainEvent):
    """Holding-duration ceiling reached; bot-initiated close."""

    position: Position | None = None
    reason: str = ""
    opened_minutes: Decimal = Decimal("0")
    pnl_percent: Decimal = Decimal("0")
    current_price: Decimal | None = None


@dataclass(frozen=True, slots=True)
class MonitorError(DomainEvent):
    message: str = ""


# =============================================================================
# Lifecycle events
# =============================================================================


@dataclass(frozen=True, slots=True)
class PositionCleared(DomainEvent):
    """Tracked position removed after close handling."""

    position_id: str = ""
    symbol: str = ""
