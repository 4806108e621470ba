"""Shared utility helpers."""

from futures_bot.utils.clock import ClockService
from futures_bot.utils.decimals import fmt_price, is_finite_number, parse_decimal, safe_decimal

__all__ = ["ClockService", "fmt_price", "is_finite_number", "parse_decimal", "safe_decimal"]
