"""ATR reversal trading agent for Binance USD-M futures."""

__version__ = "0.1.0"
