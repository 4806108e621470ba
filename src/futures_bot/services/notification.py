"""
Exit notifications.

Formats exit alerts and delivers them best-effort: a delivery failure is
logged and never reaches the trading path that triggered it.
"""

from __future__ import annotations

from decimal import Decimal

from futures_bot.domain.models import ExitType, Position
from futures_bot.observability.logging import get_logger
from futures_bot.ports.notification import NotificationPort
from futures_bot.utils.decimals import fmt_price

logger = get_logger(__name__)


def _pnl_emoji(pnl: Decimal) -> str:
    return "🟢" if pnl >= 0 else "🔴"


class ExitNotifier:
    """Formats and sends exit alerts."""

    def __init__(self, notifier: NotificationPort | None = None):
        self.notifier = notifier

    async def partial_close(
        self,
        position: Position,
        percent: Decimal,
        exit_price: Decimal,
        pnl: Decimal,
        reason: str,
    ) -> None:
        await self._send(
            f"{_pnl_emoji(pnl)} <b>Partial Close ({percent:.0f}%): {position.symbol}</b>\n"
            f"Side: {position.side.value}\n"
            f"Exit: <code>{fmt_price(exit_price)}</code>\n"
            f"PnL: <b>{pnl:+.2f} USDT</b>\n"
            f"Remaining: {position.quantity}\n"
            f"Reason: {reason}"
        )

    async def position_closed(
        self,
        position: Position,
        exit_price: Decimal,
        pnl: Decimal,
        pnl_percent: Decimal,
        exit_type: ExitType,
        reason: str = "",
    ) -> None:
        lines = [
            f"{_pnl_emoji(pnl)} <b>Position Closed: {position.symbol}</b>",
            f"Side: {position.side.value}",
            f"Entry: <code>{fmt_price(position.entry_price)}</code>",
            f"Exit: <code>{fmt_price(exit_price)}</code>",
            f"Exit Type: <b>{exit_type.value}</b>",
            f"PnL: <b>{pnl:+.2f} USDT ({pnl_percent:+.2f}%)</b>",
        ]
        tp_hits = position.tp_levels_hit()
        if tp_hits:
            lines.append("TP hit: " + ", ".join(f"TP{level}" for level in tp_hits))
        if reason:
            lines.append(f"Reason: {reason}")
        await self._send("\n".join(lines))

    async def breakeven_moved(self, position: Position, new_stop: Decimal) -> None:
        await self._send(
            f"🛡️ <b>Stop moved to breakeven: {position.symbol}</b>\n"
            f"SL: <code>{fmt_price(new_stop)}</code> (entry {fmt_price(position.entry_price)})"
        )

    async def trailing_activated(self, position: Position, trailing_percent: Decimal, current_price: Decimal) -> None:
        await self._send(
            f"📈 <b>Trailing stop active: {position.symbol}</b>\n"
            f"Distance: {trailing_percent}%\n"
            f"Activation: <code>{fmt_price(current_price)}</code>"
        )

    async def fallback_close(self, position: Position) -> None:
        await self._send(
            f"⚠️ <b>Position closed (FALLBACK): {position.symbol}</b>\n"
            f"Tracked position {position.id} cleared after a failed close recording."
        )

    async def time_based_exit(self, position: Position, reason: str, opened_minutes: Decimal) -> None:
        await self._send(
            f"⏱️ <b>Time-based exit: {position.symbol}</b>\n"
            f"Held {opened_minutes:.0f} min\n"
            f"Reason: {reason}"
        )

    async def _send(self, message: str) -> None:
        if self.notifier is None:
            return
        try:
            delivered = await self.notifier.send_message(message)
            if not delivered:
                logger.debug("Exit alert not delivered")
        except Exception as e:
            logger.warning(f"Exit alert failed: {e}")
