"""
Exit action requests.

A closed set of requests the exiting service understands. Each request is a
frozen value object tagged with its `ExitAction`; consumers dispatch with
`match` and `typing.assert_never` so a new variant cannot be silently ignored.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import ClassVar


class ExitAction(str, Enum):
    """Tag of an exit action request."""

    CLOSE_PERCENT = "CLOSE_PERCENT"
    CLOSE_ALL = "CLOSE_ALL"
    UPDATE_SL = "UPDATE_SL"
    ACTIVATE_TRAILING = "ACTIVATE_TRAILING"
    MOVE_SL_TO_BREAKEVEN = "MOVE_SL_TO_BREAKEVEN"


@dataclass(frozen=True, slots=True)
class ClosePercent:
    """Close `percent` of the live quantity."""

    percent: Decimal
    action: ClassVar[ExitAction] = ExitAction.CLOSE_PERCENT


@dataclass(frozen=True, slots=True)
class CloseAll:
    action: ClassVar[ExitAction] = ExitAction.CLOSE_ALL


@dataclass(frozen=True, slots=True)
class UpdateStopLoss:
    new_stop_loss: Decimal
    action: ClassVar[ExitAction] = ExitAction.UPDATE_SL


@dataclass(frozen=True, slots=True)
class ActivateTrailing:
    """Start trailing; `trailing_distance` is in price units."""

    trailing_distance: Decimal
    action: ClassVar[ExitAction] = ExitAction.ACTIVATE_TRAILING


@dataclass(frozen=True, slots=True)
class MoveStopLossToBreakeven:
    action: ClassVar[ExitAction] = ExitAction.MOVE_SL_TO_BREAKEVEN


ExitActionRequest = ClosePercent | CloseAll | UpdateStopLoss | ActivateTrailing | MoveStopLossToBreakeven
