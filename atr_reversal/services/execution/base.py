"""
Abstract Broker Adapter Interface
Account queries, leverage, order submission and order-update push events.
"""

from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Callable, List, Optional

from atr_reversal.shared.models import OrderReport, OrderRequest, OrderUpdate, PositionInfo


class BrokerAdapter(ABC):
    """
    Abstract broker adapter interface.

    All exchange-side trading is delegated to implementations of this
    interface; the engine and risk manager never talk to the exchange
    directly.
    """

    def __init__(self) -> None:
        self._connected = False
        self._on_order_update_callback: Optional[Callable[[OrderUpdate], None]] = None

    @property
    def is_connected(self) -> bool:
        """Check if connected to broker."""
        return self._connected

    def set_on_order_update_callback(self, callback: Callable[[OrderUpdate], None]) -> None:
        """Set callback for pushed order status updates."""
        self._on_order_update_callback = callback

    def _emit_order_update(self, update: OrderUpdate) -> None:
        if self._on_order_update_callback:
            self._on_order_update_callback(update)

    @abstractmethod
    async def get_available_balance(self, asset: str) -> Decimal:
        """
        Get available balance.

        Returns:
            Available balance of ``asset``; zero if the asset is absent
        """
        pass

    @abstractmethod
    async def get_positions(self) -> List[PositionInfo]:
        """Get all live positions (including zero-size entries)."""
        pass

    @abstractmethod
    async def set_leverage(self, symbol: str, leverage: int) -> None:
        """Set leverage for an instrument."""
        pass

    @abstractmethod
    async def submit_order(self, request: OrderRequest) -> OrderReport:
        """
        Submit order to broker.

        Raises:
            OrderError: If submission fails
        """
        pass

    @abstractmethod
    async def get_order(self, symbol: str, order_id: str) -> OrderReport:
        """Get current status of an order."""
        pass

    @abstractmethod
    async def cancel_order(self, symbol: str, order_id: str) -> OrderReport:
        """
        Cancel an open order.

        Returns:
            Final order state including quantity filled before cancel
        """
        pass

    @abstractmethod
    async def cancel_open_orders(self, symbol: str) -> None:
        """
        Cancel every resting order on an instrument (protective stops included).

        Raises:
            OrderError: If the cancel request fails
        """
        pass

    async def start(self) -> None:
        """Start the broker adapter (and its order-update stream)."""
        self._connected = True

    async def stop(self) -> None:
        """Stop the broker adapter."""
        self._connected = False
