"""
Operator Notifications
Fire-and-forget Telegram messages; failures are logged, never raised.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Optional

import aiohttp

from atr_reversal.shared.config import TelegramSettings

logger = logging.getLogger(__name__)


class Notifier(ABC):
    """Abstract operator notification channel."""

    @abstractmethod
    async def send(self, text: str) -> None:
        """
        Deliver a human-readable message.

        Implementations must not raise.
        """
        pass

    async def close(self) -> None:
        """Release resources."""
        pass


class TelegramNotifier(Notifier):
    """Telegram Bot API notifier."""

    def __init__(self, settings: TelegramSettings, timeout: float = 10.0) -> None:
        self._settings = settings
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: Optional[aiohttp.ClientSession] = None

        if not settings.enabled:
            logger.warning("Telegram bot token or chat id missing - notifications disabled")

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def send(self, text: str) -> None:
        """Post a message to the configured chat."""
        if not self._settings.enabled:
            logger.debug(f"Notification skipped (telegram disabled): {text}")
            return

        body = {
            "chat_id": self._settings.chat_id,
            "text": text,
        }

        try:
            session = await self._get_session()
            async with session.post(self._settings.api_url, json=body) as response:
                if response.status != 200:
                    detail = await response.text()
                    logger.error(f"Telegram send failed: {response.status} {detail[:200]}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"Telegram send failed: {e}")

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None
