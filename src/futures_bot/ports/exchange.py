"""
Exchange Port: Abstract interface for the exchange adapter.

The exit core only needs the position-management surface of the exchange:
closing (fully or by percentage), moving the stop-loss, cancelling the
remaining conditional orders and reading the mark price. Optional features are
exposed as capability interfaces that an adapter either provides or not.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Protocol, runtime_checkable


# =============================================================================
# Optional capabilities
# =============================================================================


@runtime_checkable
class TrailingStopCapability(Protocol):
    """Exchange-native trailing stop."""

    async def set_trailing_stop(
        self,
        side: str,
        activation_price: Decimal,
        trailing_percent: Decimal,
    ) -> None:
        """
        Arm a trailing stop on the exchange.

        Args:
            side: Order side that opened the position ("Buy" / "Sell").
            activation_price: Price at which trailing starts.
            trailing_percent: Trailing distance in percent of price.
        """
        ...


@runtime_checkable
class TakeProfitUpdateCapability(Protocol):
    """Amend the trigger price of a resting TP order."""

    async def update_take_profit(self, order_id: str, new_price: Decimal) -> None: ...


class ExchangePort(ABC):
    """
    Abstract interface for exchange operations.

    All methods are async and may raise. The exit core treats
    "already closed / reduce-only" failures as success and every other
    failure as a failed operation.
    """

    @abstractmethod
    async def close_position(self, position_id: str, percentage: Decimal) -> None:
        """Close `percentage` (0-100] of the live position at market."""
        ...

    @abstractmethod
    async def update_stop_loss(self, position_id: str, new_price: Decimal) -> None:
        """Move the position's stop-loss trigger price."""
        ...

    @abstractmethod
    async def cancel_all_conditional_orders(self) -> None:
        """Cancel every resting SL/TP order of the traded symbol."""
        ...

    @abstractmethod
    async def get_current_price(self) -> Decimal:
        """Last/mark price of the traded symbol."""
        ...

    # =========================================================================
    # Capabilities
    # =========================================================================

    def trailing_stop_capability(self) -> TrailingStopCapability | None:
        """Return the trailing stop capability, or None when unsupported."""
        return None

    def take_profit_update_capability(self) -> TakeProfitUpdateCapability | None:
        """Return the TP amend capability, or None when unsupported."""
        return None


class StopOrderPort(Protocol):
    """Symbol-keyed stop management used by the config-driven exit handler."""

    async def update_stop_loss(self, symbol: str, price: Decimal) -> None: ...

    async def set_trailing_stop(self, symbol: str, distance: Decimal) -> None:
        """Arm a trailing stop `distance` price units behind the market."""
        ...
