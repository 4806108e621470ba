"""
Prometheus metrics for the exit lifecycle.

Usage:
    from futures_bot.observability.metrics import record_exit_action, track_close_duration

    record_exit_action("CLOSE_PERCENT", success=True)

    with track_close_duration("BTCUSDT", "TAKE_PROFIT_2") as ctx:
        ctx["success"] = await exiting.close_full_position(...)
"""

from __future__ import annotations

import time
from collections.abc import Generator
from contextlib import contextmanager
from decimal import Decimal
from typing import Any

from prometheus_client import Counter, Histogram

# =============================================================================
# Metric Definitions
# =============================================================================

exit_actions_total = Counter(
    "futures_bot_exit_actions_total",
    "Exit action requests handled by the exiting service",
    ["action", "success"],
)

position_closes_total = Counter(
    "futures_bot_position_closes_total",
    "Full position closes by exit type",
    ["symbol", "exit_type", "success"],
)

close_duration_seconds = Histogram(
    "futures_bot_close_duration_seconds",
    "Duration of full close handling in seconds",
    ["symbol", "exit_type"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0),
)

close_pnl_usdt = Histogram(
    "futures_bot_close_pnl_usdt",
    "Realized PnL of full closes in USDT",
    ["symbol"],
    buckets=(-100, -50, -20, -10, -5, 0, 5, 10, 20, 50, 100, 200, 500),
)

tp_level_matches_total = Counter(
    "futures_bot_tp_level_matches_total",
    "TP fill events by the matcher tier that resolved them",
    ["tier"],  # tier: order_id, price, quantity, first_unhit, none
)


# =============================================================================
# Helper Functions
# =============================================================================


def record_exit_action(action: str, success: bool) -> None:
    exit_actions_total.labels(action=action, success=str(success).lower()).inc()


def record_position_close(
    symbol: str,
    exit_type: str,
    success: bool,
    duration_seconds: float,
    pnl_usdt: float | Decimal = 0,
) -> None:
    """
    Record a full close.

    Args:
        symbol: Trading symbol (e.g., "BTCUSDT")
        exit_type: ExitType value
        success: Whether this call won the close
        duration_seconds: Time taken by the close handling
        pnl_usdt: Realized PnL
    """
    position_closes_total.labels(symbol=symbol, exit_type=exit_type, success=str(success).lower()).inc()
    close_duration_seconds.labels(symbol=symbol, exit_type=exit_type).observe(duration_seconds)

    if success and pnl_usdt:
        close_pnl_usdt.labels(symbol=symbol).observe(float(pnl_usdt))


def record_tp_match(tier: str) -> None:
    tp_level_matches_total.labels(tier=tier).inc()


@contextmanager
def track_close_duration(symbol: str, exit_type: str) -> Generator[dict[str, Any], None, None]:
    """
    Context manager timing a full close.

    Usage:
        with track_close_duration("BTCUSDT", "STOP_LOSS") as ctx:
            ctx["success"] = True
            ctx["pnl_usdt"] = Decimal("-3.2")
    """
    start_time = time.monotonic()
    ctx: dict[str, Any] = {"success": False, "pnl_usdt": 0}

    try:
        yield ctx
    finally:
        record_position_close(
            symbol=symbol,
            exit_type=exit_type,
            success=ctx.get("success", False),
            duration_seconds=time.monotonic() - start_time,
            pnl_usdt=ctx.get("pnl_usdt", 0),
        )
