"""Out-of-band notifications for account recovery.

Learn: Recovery codes never go back in the HTTP response (that would let
anyone recover any account). They go to the operator, who passes the
code to the person over a channel they already trust. Telegram is the
production channel; without a bot configured, codes are only logged.

Notifiers return True/False instead of raising: a failed send is logged
and the request still answers the same generic "if the account exists"
message.
"""

from typing import Optional

import httpx
import structlog

from tripgate.config import settings

logger = structlog.get_logger()

TELEGRAM_API = "https://api.telegram.org"


class Notifier:
    """Base notifier. Subclasses deliver `text` somewhere an operator reads."""

    async def send(self, text: str) -> bool:
        raise NotImplementedError


class LogNotifier(Notifier):
    """Writes the message to the structured log. Used when nothing else is configured."""

    async def send(self, text: str) -> bool:
        logger.warning("notifier.not_configured", message=text)
        return False


class TelegramNotifier(Notifier):
    """Posts to a Telegram chat through the Bot API."""

    def __init__(
        self,
        bot_token: str,
        chat_id: str,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        base_url: str = TELEGRAM_API,
    ):
        self.bot_token = bot_token
        self.chat_id = chat_id
        self._transport = transport
        self._base_url = base_url

    async def send(self, text: str) -> bool:
        try:
            async with httpx.AsyncClient(
                base_url=self._base_url, transport=self._transport, timeout=10.0
            ) as client:
                r = await client.post(
                    f"/bot{self.bot_token}/sendMessage",
                    json={"chat_id": self.chat_id, "text": text, "parse_mode": "HTML"},
                )
        except httpx.HTTPError as e:
            logger.error("notifier.telegram_failed", error=str(e))
            return False
        if r.status_code != 200:
            logger.error("notifier.telegram_rejected", status=r.status_code)
            return False
        return True


def default_notifier() -> Notifier:
    """Telegram when both settings are present, otherwise the log."""
    if settings.telegram_bot_token and settings.telegram_chat_id:
        return TelegramNotifier(settings.telegram_bot_token, settings.telegram_chat_id)
    return LogNotifier()
