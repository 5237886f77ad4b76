"""ATR cache, volatility scan and streaming pattern watch."""
