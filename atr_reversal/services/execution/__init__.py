"""Order execution: broker adapters, instrument metadata, chasing entries."""
