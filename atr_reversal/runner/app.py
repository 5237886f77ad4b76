"""
ATR Reversal Agent
Composition root wiring the exchange, signal, execution and risk layers.

Pipeline:
    ATR job (daily) -> candidate job (daily): scan -> watch -> execute
    order-update listener + position manager run for the whole process
"""

import asyncio
import logging
from datetime import timedelta
from typing import Coroutine, List, Optional, Set

from atr_reversal.runner.scheduler import DailyJob, JobScheduler
from atr_reversal.services.data_feed.base import MarketDataProvider
from atr_reversal.services.data_feed.binance_futures import BinanceFuturesFeed
from atr_reversal.services.exchange import BinanceSession
from atr_reversal.services.execution.base import BrokerAdapter
from atr_reversal.services.execution.binance_futures import BinanceFuturesBroker
from atr_reversal.services.execution.instruments import InstrumentRegistry
from atr_reversal.services.execution.order_executor import ChasingOrderExecutor, TradeExecutor
from atr_reversal.services.monitoring.notifier import Notifier, TelegramNotifier
from atr_reversal.services.risk_engine.position_manager import PositionManager
from atr_reversal.services.risk_engine.trade_cycle import TradeCycle
from atr_reversal.services.risk_engine.trade_monitor import TradeMonitor
from atr_reversal.services.risk_engine.trade_store import TradeStore
from atr_reversal.services.signal_gen.atr_service import AtrService
from atr_reversal.services.signal_gen.candidate_scanner import CandidateScanner
from atr_reversal.services.signal_gen.pattern_watcher import PatternWatcher
from atr_reversal.shared.config import AgentSettings
from atr_reversal.shared.errors import CycleConflictError
from atr_reversal.shared.models import TradeIntent, TradeRecord, VolatilityCandidate
from atr_reversal.shared.storage import JsonStore

logger = logging.getLogger(__name__)


def format_watch_list(candidates: List[VolatilityCandidate]) -> str:
    lines = [f"Watching {len(candidates)} candidates:"]
    for c in candidates:
        lines.append(f"{c.symbol} {c.preferred_side.value} range={c.range} atr={c.atr}")
    return "\n".join(lines)


class TradingAgent:
    """
    Owns every long-lived component and background task.

    Collaborators can be injected; anything omitted is built from settings
    against Binance USD-M futures and Telegram.
    """

    def __init__(
        self,
        settings: AgentSettings,
        session: Optional[BinanceSession] = None,
        feed: Optional[MarketDataProvider] = None,
        broker: Optional[BrokerAdapter] = None,
        notifier: Optional[Notifier] = None,
        store: Optional[JsonStore] = None,
    ) -> None:
        self._settings = settings
        strategy = settings.strategy
        paths = settings.paths

        if session is None and (feed is None or broker is None):
            session = BinanceSession(settings.binance)
        self._session = session
        self._feed = feed or BinanceFuturesFeed(session)
        self._broker = broker or BinanceFuturesBroker(session)
        self._notifier = notifier or TelegramNotifier(settings.telegram)
        store = store or JsonStore()

        self.cycle = TradeCycle(store, paths.trade_cycle)
        self.trades = TradeStore(store, paths.open_trades, paths.trade_log)
        self.registry = InstrumentRegistry(
            self._feed,
            strategy.quote_asset,
            ttl=timedelta(seconds=strategy.instrument_cache_ttl_sec),
        )
        self.atr_service = AtrService(
            self._feed,
            store,
            paths.atr_cache,
            quote_asset=strategy.quote_asset,
            period=strategy.atr_period,
            concurrency=strategy.atr_concurrency,
        )
        self.scanner = CandidateScanner(
            self._feed,
            self.cycle,
            interval=strategy.scan_interval,
            range_atr_ratio=strategy.scan_range_atr_ratio,
            concurrency=strategy.scan_concurrency,
        )
        self.watcher = PatternWatcher(
            self._feed,
            interval=strategy.watch_interval,
            monitor_window=timedelta(minutes=strategy.monitor_minutes),
        )
        self.executor = TradeExecutor(
            self._broker,
            self.registry,
            self.cycle,
            self.trades,
            self._notifier,
            ChasingOrderExecutor(
                self._broker,
                self._feed,
                delay=strategy.order_chase_delay_sec,
                max_attempts=strategy.order_chase_max_attempts,
            ),
            strategy,
        )
        self.position_manager = PositionManager(self._broker, self.trades, self._notifier, strategy)
        self.trade_monitor = TradeMonitor(self._broker, self.trades, self._notifier)
        self.scheduler = JobScheduler(self._notifier)

        self._tasks: Set[asyncio.Task] = set()
        self._opened = False
        self._stopped = asyncio.Event()

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    # Lifecycle
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    async def open(self) -> None:
        """Connect the exchange client and market data feed."""
        if self._opened:
            return
        if self._session is not None:
            await self._session.connect()
        await self._feed.start()
        self._opened = True

    async def start(self) -> None:
        """Start listeners, run the ATR job once and schedule the daily jobs."""
        scheduling = self._settings.scheduling
        logger.info("=" * 60)
        logger.info("  ATR Reversal Agent")
        logger.info(f"  Quote asset: {self._settings.strategy.quote_asset}")
        logger.info(f"  ATR job: {scheduling.atr_job_time} UTC")
        logger.info(f"  Candidate job: {scheduling.candidate_job_time} UTC")
        logger.info("=" * 60)

        await self.open()
        await self.trades.load()

        self.trade_monitor.start()
        await self._broker.start()
        self._spawn(self.position_manager.run_forever(), "position-manager")

        atr_job = DailyJob("ATR job", scheduling.atr_job_time, self.run_atr_job)
        candidate_job = DailyJob(
            "Candidate job", scheduling.candidate_job_time, self.run_candidate_job
        )
        await self.scheduler.run_job(atr_job)
        self.scheduler.add(atr_job)
        self.scheduler.add(candidate_job)
        self.scheduler.start()

        if scheduling.run_candidate_on_start:
            self._spawn(self.scheduler.run_job(candidate_job), "candidate-on-start")

        logger.info("Agent started")
        await self._notifier.send("ATR reversal agent started")

    async def run_forever(self) -> None:
        """Start and block until ``stop()``."""
        await self.start()
        await self._stopped.wait()

    async def stop(self) -> None:
        """Cancel every background task and release exchange resources."""
        logger.info("Stopping agent...")
        await self.scheduler.stop()

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

        await self.trade_monitor.stop()
        await self._broker.stop()
        await self.close()
        self._stopped.set()
        logger.info("Agent stopped")

    async def close(self) -> None:
        """Disconnect the feed, the exchange client and the notifier."""
        if self._opened:
            await self._feed.stop()
            if self._session is not None:
                await self._session.close()
            self._opened = False
        await self._notifier.close()

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    # Jobs
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    async def run_atr_job(self) -> None:
        """Recompute the ATR cache."""
        cache = await self.atr_service.refresh()
        await self._notifier.send(f"ATR cache refreshed for {len(cache)} symbols")

    async def run_candidate_job(self) -> None:
        """Scan, watch the candidates and execute every confirmed intent."""
        cache = await self.atr_service.get_or_refresh()
        candidates = await self.scanner.scan(cache)
        if not candidates:
            logger.info("No volatility candidates today")
            await self._notifier.send("No volatility candidates today")
            return

        await self._notifier.send(format_watch_list(candidates))
        async for intent in self.watcher.watch(candidates):
            self._spawn(self.execute_intent(intent), f"execute-{intent.symbol}")

    async def execute_intent(self, intent: TradeIntent) -> Optional[TradeRecord]:
        """Execute one intent; failures are logged (the executor notifies)."""
        try:
            return await self.executor.execute(intent)
        except CycleConflictError as e:
            logger.info(f"Skipping intent: {e}")
        except Exception as e:
            logger.error(f"Execution failed for {intent.symbol}: {e}")
        return None

    def _spawn(self, coro: Coroutine, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task
