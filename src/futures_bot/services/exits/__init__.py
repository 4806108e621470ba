"""
Exit strategies: config-driven exit handling and the scalping TP ladder.
"""

from futures_bot.services.exits.exit_event_handler import (
    ExitEventHandler,
    ExitHandlerAction,
    PositionClosedResult,
    TPHitResult,
)
from futures_bot.services.exits.ladder import ActiveLadder, LadderTpManager, LadderTracker

__all__ = [
    "ExitEventHandler",
    "ExitHandlerAction",
    "PositionClosedResult",
    "TPHitResult",
    "ActiveLadder",
    "LadderTpManager",
    "LadderTracker",
]
