"""Configuration, models, errors and persistence shared by every layer."""

from atr_reversal.shared.errors import (
    AgentError,
    CycleConflictError,
    DataFeedError,
    InstrumentNotFoundError,
    OrderError,
    TradeStateError,
    TradeValidationError,
)

__all__ = [
    "AgentError",
    "CycleConflictError",
    "DataFeedError",
    "InstrumentNotFoundError",
    "OrderError",
    "TradeStateError",
    "TradeValidationError",
]
