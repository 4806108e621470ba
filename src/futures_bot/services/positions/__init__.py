"""
Position tracking and exit execution.
"""

from futures_bot.services.positions.exiting import PositionExitingService
from futures_bot.services.positions.ledger import FinalPnL, PnLBreakdown, TakeProfitLedger
from futures_bot.services.positions.repository import PositionRepository

__all__ = [
    "PositionExitingService",
    "PositionRepository",
    "TakeProfitLedger",
    "FinalPnL",
    "PnLBreakdown",
]
