"""
ATR Reversal Agent CLI
Usage:
    atr-reversal run            # long-running agent
    atr-reversal refresh-atr    # recompute the ATR cache once
    atr-reversal scan           # print today's volatility candidates
    atr-reversal positions      # print open trades from the local store
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import signal
import sys
from typing import Optional, Sequence

from atr_reversal.runner.app import TradingAgent
from atr_reversal.shared.config import AgentSettings, get_settings
from atr_reversal.shared.log_setup import configure_logging

logger = logging.getLogger("atr_reversal")


async def run_agent(settings: AgentSettings) -> int:
    agent = TradingAgent(settings)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, lambda: asyncio.create_task(agent.stop()))

    try:
        await agent.run_forever()
    finally:
        await agent.stop()
    return 0


async def refresh_atr(settings: AgentSettings) -> int:
    agent = TradingAgent(settings)
    try:
        await agent.open()
        cache = await agent.atr_service.refresh()
    finally:
        await agent.close()
    print(f"ATR cache refreshed: {len(cache)} symbols")
    return 0


async def scan(settings: AgentSettings) -> int:
    agent = TradingAgent(settings)
    try:
        await agent.open()
        cache = await agent.atr_service.get_or_refresh()
        candidates = await agent.scanner.scan(cache)
    finally:
        await agent.close()

    if not candidates:
        print("No volatility candidates")
        return 0
    print(f"{'SYMBOL':<16}{'SIDE':<6}{'RANGE':>16}{'ATR':>16}")
    for c in candidates:
        print(f"{c.symbol:<16}{c.preferred_side.value:<6}{c.range:>16}{c.atr:>16}")
    return 0


async def show_positions(settings: AgentSettings) -> int:
    agent = TradingAgent(settings)
    try:
        records = await agent.trades.load_open()
    finally:
        await agent.close()

    if not records:
        print("No open trades")
        return 0
    for r in records:
        floor = f" floor={r.profit_floor}" if r.profit_lock_applied else ""
        print(
            f"{r.symbol} {r.side.value} qty={r.quantity} entry={r.entry_price} "
            f"stop={r.stop_loss}{floor} opened={r.opened_at.isoformat()}"
        )
    return 0


COMMANDS = {
    "run": run_agent,
    "refresh-atr": refresh_atr,
    "scan": scan,
    "positions": show_positions,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="atr-reversal",
        description="ATR reversal trading agent for Binance USD-M futures",
    )
    parser.add_argument(
        "command",
        choices=sorted(COMMANDS),
        help="What to run",
    )
    parser.add_argument(
        "--log-level",
        help="Override LOG_LEVEL",
    )
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    settings = get_settings()
    if args.log_level:
        settings.logging.log_level = args.log_level
    configure_logging(settings.logging)

    try:
        return asyncio.run(COMMANDS[args.command](settings))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 130


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
