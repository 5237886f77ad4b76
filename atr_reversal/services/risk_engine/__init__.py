"""Open trades, the daily trade cycle and exit enforcement."""
