"""
Telegram Adapter.

Delivers exit alerts through the Telegram Bot API.
"""

from __future__ import annotations

from html import escape as _html_escape

import aiohttp

from futures_bot.config.settings import TelegramSettings
from futures_bot.observability.logging import get_logger
from futures_bot.ports.notification import NotificationPort

logger = get_logger(__name__)

# Telegram rejects messages longer than this.
MAX_MESSAGE_LENGTH = 4096

_REQUEST_TIMEOUT = aiohttp.ClientTimeout(total=10)

# Tags the exit notifier emits; anything else is escaped.
_ALLOWED_HTML_TAGS: tuple[str, ...] = ("<b>", "</b>", "<i>", "</i>", "<code>", "</code>")


def sanitize_html(message: str) -> str:
    """Escape everything except the small tag set used by exit alerts."""
    escaped = _html_escape(message, quote=False)
    for tag in _ALLOWED_HTML_TAGS:
        escaped = escaped.replace(_html_escape(tag, quote=False), tag)
    return escaped


def _truncate(message: str) -> str:
    if len(message) <= MAX_MESSAGE_LENGTH:
        return message
    return message[: MAX_MESSAGE_LENGTH - 1] + "…"


def _is_parse_error(status: int, response_text: str) -> bool:
    return status == 400 and "can't parse entities" in response_text.lower()


class TelegramAdapter(NotificationPort):
    """Telegram implementation of NotificationPort."""

    def __init__(self, settings: TelegramSettings, session: aiohttp.ClientSession | None = None):
        self.settings = settings
        self._session = session
        self._owns_session = session is None
        self._base_url = f"https://api.telegram.org/bot{settings.bot_token}"

    @property
    def configured(self) -> bool:
        return bool(self.settings.enabled and self.settings.bot_token and self.settings.chat_id)

    async def start(self) -> None:
        """Open the HTTP session and verify the token."""
        if not self.configured:
            logger.info("Telegram alerts disabled")
            return

        session = self._ensure_session()
        try:
            async with session.get(f"{self._base_url}/getMe", timeout=_REQUEST_TIMEOUT) as resp:
                if resp.status == 200:
                    data = await resp.json()
                    logger.info(f"Telegram connected as @{data.get('result', {}).get('username', 'unknown')}")
                else:
                    logger.error(f"Telegram auth failed: {resp.status}")
        except Exception as e:
            logger.warning(f"Telegram connection check failed: {e}")

    async def stop(self) -> None:
        if self._session and self._owns_session:
            await self._session.close()
        self._session = None

    async def send_message(self, message: str) -> bool:
        if not self.configured:
            return False

        session = self._ensure_session()
        url = f"{self._base_url}/sendMessage"
        html_payload = {
            "chat_id": self.settings.chat_id,
            "text": _truncate(sanitize_html(message)),
            "parse_mode": "HTML",
            "disable_web_page_preview": True,
        }

        try:
            async with session.post(url, json=html_payload, timeout=_REQUEST_TIMEOUT) as resp:
                if resp.status == 200:
                    return True
                text = await resp.text()

            if not _is_parse_error(resp.status, text):
                logger.error(f"Telegram send failed ({resp.status}): {text}")
                return False

            # Alert still has to arrive; resend without markup.
            logger.warning("Telegram HTML parse failed. Retrying as plain text.")
            plain_payload = {
                "chat_id": self.settings.chat_id,
                "text": _truncate(message),
                "disable_web_page_preview": True,
            }
            async with session.post(url, json=plain_payload, timeout=_REQUEST_TIMEOUT) as resp:
                if resp.status == 200:
                    return True
                logger.error(f"Telegram plain-text send failed ({resp.status}): {await resp.text()}")
                return False

        except Exception as e:
            logger.error(f"Telegram error: {e}")
            return False

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session
