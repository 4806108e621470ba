"""
Domain Layer: position aggregate, exit actions, events and pure exit math.

No I/O and no SDK types live here.
"""

from futures_bot.domain.errors import (
    DomainError,
    ExchangeError,
    InvalidEventError,
    LadderConfigError,
    PositionAlreadyClosedError,
    PositionValidationError,
    ValidationError,
)
from futures_bot.domain.exit_actions import (
    ActivateTrailing,
    CloseAll,
    ClosePercent,
    ExitAction,
    ExitActionRequest,
    MoveStopLossToBreakeven,
    UpdateStopLoss,
)
from futures_bot.domain.models import (
    ExitType,
    Position,
    PositionSide,
    PositionStatus,
    StopLoss,
    TakeProfit,
    TakeProfitAction,
)

__all__ = [
    "DomainError",
    "ExchangeError",
    "InvalidEventError",
    "LadderConfigError",
    "PositionAlreadyClosedError",
    "PositionValidationError",
    "ValidationError",
    "ActivateTrailing",
    "CloseAll",
    "ClosePercent",
    "ExitAction",
    "ExitActionRequest",
    "MoveStopLossToBreakeven",
    "UpdateStopLoss",
    "ExitType",
    "Position",
    "PositionSide",
    "PositionStatus",
    "StopLoss",
    "TakeProfit",
    "TakeProfitAction",
]
