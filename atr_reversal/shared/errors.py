"""Typed errors for the agent's exchange, execution and state layers."""

from typing import Optional


class AgentError(Exception):
    """Base class for agent errors."""


class DataFeedError(AgentError):
    """Raised when a market-data call or stream fails."""

    def __init__(self, message: str, symbol: Optional[str] = None) -> None:
        self.symbol = symbol
        prefix = f"[{symbol}] " if symbol else ""
        super().__init__(f"{prefix}{message}")


class OrderError(AgentError):
    """Raised by broker operations (submit, cancel, query, account)."""

    def __init__(
        self,
        message: str,
        symbol: Optional[str] = None,
        broker_error_code: Optional[str] = None,
    ) -> None:
        self.symbol = symbol
        self.broker_error_code = broker_error_code
        super().__init__(message)


class TradeValidationError(AgentError):
    """Raised when an execution attempt fails sizing or notional checks."""


class InstrumentNotFoundError(TradeValidationError):
    """Raised when no exchange constraints exist for a symbol."""


class TradeStateError(AgentError):
    """Raised on an illegal trade status transition."""


class CycleConflictError(AgentError):
    """Raised when a symbol was already traded or claimed in the current cycle."""
