"""
Event handlers of the exit lifecycle (exchange push and price monitor).
"""

from futures_bot.services.handlers.execution_detector import ExecutionResult, OrderExecutionDetector
from futures_bot.services.handlers.position_events import PositionEventHandler, register_position_handlers
from futures_bot.services.handlers.tp_matching import TakeProfitLevelResolver, TPFill, TPMatch
from futures_bot.services.handlers.websocket import WebSocketEventHandler, register_websocket_handlers

__all__ = [
    "ExecutionResult",
    "OrderExecutionDetector",
    "PositionEventHandler",
    "register_position_handlers",
    "TakeProfitLevelResolver",
    "TPFill",
    "TPMatch",
    "WebSocketEventHandler",
    "register_websocket_handlers",
]
