"""
Binance Session
Single AsyncClient + socket manager shared by the data feed and broker.
"""

import logging
from decimal import Decimal
from typing import Any, Optional

from binance import AsyncClient, BinanceSocketManager

from atr_reversal.shared.config import BinanceSettings
from atr_reversal.shared.errors import AgentError

logger = logging.getLogger(__name__)


def to_decimal(value: Any, default: str = "0") -> Decimal:
    """Exchange numbers arrive as strings; empty values map to ``default``."""
    if value is None or value == "":
        return Decimal(default)
    return Decimal(str(value))


class BinanceSession:
    """Owns the python-binance client lifecycle."""

    def __init__(self, settings: BinanceSettings) -> None:
        self._settings = settings
        self._client: Optional[AsyncClient] = None
        self._bsm: Optional[BinanceSocketManager] = None

    @property
    def client(self) -> AsyncClient:
        if self._client is None:
            raise AgentError("Binance session is not connected")
        return self._client

    @property
    def socket_manager(self) -> BinanceSocketManager:
        if self._bsm is None:
            raise AgentError("Binance session is not connected")
        return self._bsm

    async def connect(self) -> None:
        """Create the REST client and socket manager."""
        if self._client is not None:
            return
        self._client = await AsyncClient.create(
            api_key=self._settings.api_key or None,
            api_secret=self._settings.api_secret or None,
            testnet=self._settings.testnet,
        )
        self._bsm = BinanceSocketManager(self._client)
        logger.info(f"Connected to Binance futures {'Testnet' if self._settings.testnet else 'Live'}")

    async def close(self) -> None:
        """Close the REST client."""
        if self._client is not None:
            await self._client.close_connection()
        self._client = None
        self._bsm = None
        logger.info("Disconnected from Binance")
