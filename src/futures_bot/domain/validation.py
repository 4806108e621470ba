"""
Position snapshot validation.

Snapshots reach the exit core from WebSocket frames, journal restores and the
strategy layer. Corruption from upstream parsing usually shows up as empty
strings or NaN in numeric fields, so every numeric field is checked for being
a real, finite number before anything downstream trusts it.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from futures_bot.domain.errors import PositionValidationError
from futures_bot.domain.exit_calculations import calculate_pnl
from futures_bot.domain.models import Position, PositionSide
from futures_bot.observability.logging import get_logger
from futures_bot.utils.decimals import is_finite_number

logger = get_logger(__name__)

_NUMERIC_FIELDS: tuple[str, ...] = ("entry_price", "quantity", "unrealized_pnl", "leverage")


class PositionValidator:
    """Structural and numeric checks for Position snapshots."""

    @staticmethod
    def validate_for_monitoring(position: Position | None) -> None:
        """
        Validate a snapshot before it is monitored.

        Collects every violation and raises one PositionValidationError listing
        all of them. Not retryable: the same snapshot fails again.
        """
        violations = PositionValidator.collect_violations(position)
        if not violations:
            return

        message = "Position validation failed:\n" + "\n".join(f"  - {v}" for v in violations)
        logger.error(message)

        symbol = getattr(position, "symbol", None)
        position_id = getattr(position, "id", None)
        raise PositionValidationError(
            message,
            violations=violations,
            symbol=symbol if isinstance(symbol, str) and symbol else None,
            position_id=position_id if isinstance(position_id, str) else None,
        )

    @staticmethod
    def collect_violations(position: Any) -> list[str]:
        if position is None:
            return ["position is missing"]

        violations: list[str] = []

        for name in ("id", "symbol"):
            value = getattr(position, name, None)
            if not isinstance(value, str) or not value.strip():
                violations.append(f"{name} must be a non-empty string (got {value!r})")

        for name in _NUMERIC_FIELDS:
            value = getattr(position, name, None)
            if not is_finite_number(value):
                violations.append(f"{name} must be a finite number (got {value!r})")

        take_profits = getattr(position, "take_profits", None)
        if not isinstance(take_profits, list):
            violations.append(f"take_profits must be a list (got {type(take_profits).__name__})")

        stop_loss = getattr(position, "stop_loss", None)
        if stop_loss is not None:
            sl_price = getattr(stop_loss, "price", None)
            if sl_price is not None and not is_finite_number(sl_price):
                violations.append(f"stop_loss.price must be a finite number (got {sl_price!r})")

        side = getattr(position, "side", None)
        if side is not None and not isinstance(side, PositionSide):
            violations.append(f"side must be LONG or SHORT (got {side!r})")

        opened_at = getattr(position, "opened_at", None)
        if opened_at is not None and not isinstance(opened_at, datetime):
            violations.append(f"opened_at must be a datetime (got {opened_at!r})")

        return violations

    @staticmethod
    def fill_missing_fields(position: Position, current_price: Decimal) -> Position:
        """
        Backfill unrealized PnL and margin for legacy snapshots.

        Best-effort only; the exchange remains the source of truth for both.
        """
        if position.unrealized_pnl is None:
            position.unrealized_pnl = calculate_pnl(position, current_price)
            logger.debug(f"Backfilled unrealized_pnl for {position.id}: {position.unrealized_pnl}")

        if not position.margin_used and position.leverage:
            position.margin_used = position.quantity * position.entry_price / position.leverage
            logger.debug(f"Backfilled margin_used for {position.id}: {position.margin_used}")

        return position

    @staticmethod
    def is_valid_ws_position(position: Any) -> bool:
        """Inline check for WebSocket snapshots: ids present, entry and quantity finite and positive."""
        if position is None:
            return False

        for name in ("id", "symbol"):
            value = getattr(position, name, None)
            if not isinstance(value, str) or not value.strip():
                return False

        for name in ("entry_price", "quantity"):
            value = getattr(position, name, None)
            if not is_finite_number(value) or value <= 0:
                return False

        return True
