"""
Execution classification.

Classifies raw execution frames from the exchange's private stream into TP,
SL, trailing-stop and entry fills. It also keeps two pieces of state the
close path needs: how many TP fills were seen since the last entry, and what
actually triggered the most recent close.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from futures_bot.domain.models import CloseTrigger, ExecutionKind
from futures_bot.observability.logging import get_logger
from futures_bot.utils.decimals import safe_decimal

logger = get_logger(__name__)

_STOP_LOSS_ORDER_TYPES = frozenset({"StopLoss", "Stop", "PartialStopLoss"})


@dataclass(frozen=True, slots=True)
class ExecutionResult:
    kind: ExecutionKind
    symbol: str
    order_id: str | None
    exec_price: Decimal
    exec_qty: Decimal
    closed_size: Decimal
    side: str
    tp_level: int | None = None


class OrderExecutionDetector:
    """Stateful classifier of execution frames (one instance per traded symbol)."""

    def __init__(self):
        self._tp_counter = 0
        self._last_close_reason: CloseTrigger | None = None

    def detect_execution(self, execution: Mapping[str, Any]) -> ExecutionResult:
        """
        Classify one execution frame (exchange field names: stopOrderType,
        createType, closedSize, execPrice, execQty, orderId, symbol, side).
        """
        stop_order_type = execution.get("stopOrderType") or ""
        closed_size = safe_decimal(execution.get("closedSize"))
        order_id = execution.get("orderId")

        logger.debug(
            f"Execution {order_id}: stopOrderType={stop_order_type} "
            f"createType={execution.get('createType')} execPrice={execution.get('execPrice')} "
            f"execQty={execution.get('execQty')} closedSize={execution.get('closedSize')}"
        )

        is_take_profit = stop_order_type == "PartialTakeProfit" or (
            stop_order_type == "UNKNOWN" and execution.get("createType") == "CreateByUser" and closed_size > 0
        )

        tp_level: int | None = None
        if is_take_profit:
            kind = ExecutionKind.TAKE_PROFIT
            self._tp_counter += 1
            tp_level = self._tp_counter
            self._last_close_reason = CloseTrigger.TP
            logger.info(f"TP{tp_level} execution detected (order {order_id}, price {execution.get('execPrice')})")
        elif stop_order_type in _STOP_LOSS_ORDER_TYPES:
            kind = ExecutionKind.STOP_LOSS
            logger.info(f"Stop-loss execution detected (order {order_id}, price {execution.get('execPrice')})")
            self._tp_counter = 0
            self._last_close_reason = CloseTrigger.SL
        elif stop_order_type == "TrailingStop":
            kind = ExecutionKind.TRAILING_STOP
            logger.info(f"Trailing-stop execution detected (order {order_id}, price {execution.get('execPrice')})")
            self._tp_counter = 0
            self._last_close_reason = CloseTrigger.TRAILING
        else:
            kind = ExecutionKind.ENTRY
            logger.debug(f"Entry execution, TP counter reset from {self._tp_counter}")
            self._tp_counter = 0

        return ExecutionResult(
            kind=kind,
            symbol=execution.get("symbol") or "",
            order_id=order_id,
            exec_price=safe_decimal(execution.get("execPrice")),
            exec_qty=safe_decimal(execution.get("execQty")),
            closed_size=closed_size,
            side=execution.get("side") or "",
            tp_level=tp_level,
        )

    @property
    def tp_counter(self) -> int:
        return self._tp_counter

    def reset_tp_counter(self) -> None:
        self._tp_counter = 0
        logger.debug("TP counter reset")

    def get_last_close_reason(self) -> CloseTrigger | None:
        return self._last_close_reason

    def reset_last_close_reason(self) -> None:
        """Call once the close has been recorded."""
        self._last_close_reason = None
