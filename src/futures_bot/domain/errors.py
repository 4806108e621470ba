"""
Domain Error Taxonomy.

All domain-specific exceptions with clear categorization.
"""

from __future__ import annotations

from typing import Any


class DomainError(Exception):
    """
    Base class for all domain errors.

    Includes structured error info for logging and debugging.
    """

    error_code: str = "DOMAIN_ERROR"

    def __init__(
        self,
        message: str,
        *,
        symbol: str | None = None,
        position_id: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.symbol = symbol
        self.position_id = position_id
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict for logging."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "symbol": self.symbol,
            "position_id": self.position_id,
            "details": self.details,
        }


# =============================================================================
# Validation Errors
# =============================================================================


class ValidationError(DomainError):
    """Invalid input or state."""

    error_code = "VALIDATION_ERROR"


class PositionValidationError(ValidationError):
    """A position snapshot failed structural/numeric validation.

    Fatal for the triggering operation; retrying with the same snapshot fails again.
    """

    error_code = "POSITION_VALIDATION"

    def __init__(self, message: str, *, violations: list[str], **kwargs: Any):
        super().__init__(message, **kwargs)
        self.violations = list(violations)
        self.details["violations"] = self.violations


class InvalidEventError(ValidationError):
    """Malformed exchange event (WebSocket frame or monitor event)."""

    error_code = "INVALID_EVENT"


class LadderConfigError(ValidationError):
    """Ladder TP configuration rejected at construction."""

    error_code = "LADDER_CONFIG"


# =============================================================================
# Exchange Errors
# =============================================================================


class ExchangeError(DomainError):
    """Exchange API error."""

    error_code = "EXCHANGE_ERROR"


class PositionAlreadyClosedError(ExchangeError):
    """Exchange reports the position is already flat (zero size / reduce-only rejected)."""

    error_code = "POSITION_ALREADY_CLOSED"


_ALREADY_CLOSED_MARKERS: tuple[str, ...] = ("position is zero", "reduce-only")


def is_position_already_closed_error(error: BaseException) -> bool:
    """
    True when an exchange close failure means the position is already flat.

    Adapters may raise PositionAlreadyClosedError directly; raw SDK errors are
    recognised by their message.
    """
    if isinstance(error, PositionAlreadyClosedError):
        return True
    message = str(error).lower()
    return any(marker in message for marker in _ALREADY_CLOSED_MARKERS)
