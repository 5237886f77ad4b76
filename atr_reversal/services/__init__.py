"""Exchange-facing services: data feed, execution, signals, risk, monitoring."""
