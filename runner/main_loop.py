"""
turntrader Runner: Main Loop

Orchestrates trading runs.

Flow (per run):
1. Increment the run counter
2. [Optional] Refresh the incremental candle store
3. For each configured pair, sequentially: run the decision loop
4. Snapshot the portfolio (when the exchange is configured)

Pairs are processed one after another so the decision store and ledger have
a single writer; a failure on one pair never aborts the others.
"""

import asyncio
import time
from typing import List, Optional
import logging

from ai.decision_loop import DecisionLoop, DecisionLoopResult
from ai.llm_client import create_reasoning_client
from analytics.portfolio import PortfolioTracker
from core.data_store import MarketDataStore
from core.exchange_binance import BinanceExchange
from core.executor import TradeExecutor
from core.ledger import Ledger
from core.market_data import KlineCache
from core.trade_validator import TradeRestrictions, TradeValidator
from infra.decision_store import DecisionStore
from infra.log_context import configure_logging, log_context
from tools.config_validator import AppSettings, load_settings

logger = logging.getLogger(__name__)


class TradingLoop:
    """
    Main trading loop orchestrator.

    Responsibilities:
    - Load config
    - Wire exchange, stores, ledger, executor and reasoning client
    - Run periodic trading runs
    - Handle errors per pair
    """

    def __init__(self, config_dir: str = "config", settings: Optional[AppSettings] = None,
                 client=None, exchange=None, acquire_lock: bool = True,
                 setup_logging: bool = True):
        self.settings = settings or load_settings(config_dir)
        cfg = self.settings

        if setup_logging:
            configure_logging(cfg.logging.level, cfg.logging.file, cfg.logging.json_file)

        logger.info(
            f"Starting {cfg.app.name} in mode={cfg.app.mode}, pairs={cfg.pairs()}, "
            f"max_turns={cfg.trading.max_turns}"
        )

        self.instance_lock = None
        if acquire_lock:
            from infra.instance_lock import check_single_instance
            self.instance_lock = check_single_instance(cfg.app.name, lock_dir=cfg.data.dir)
            if not self.instance_lock:
                raise RuntimeError("Another instance is already running")

        self.exchange = exchange or BinanceExchange(
            api_key=cfg.exchange.api_key,
            api_secret=cfg.exchange.api_secret,
            base_url=cfg.exchange.base_url,
            recv_window=cfg.exchange.recv_window_ms,
            timeout_s=cfg.exchange.timeout_s,
        )
        if not self.exchange.configured:
            logger.warning("Exchange credentials not configured: account context and live orders disabled")

        self.kline_cache = KlineCache(self.exchange, ttl_seconds=cfg.data.kline_cache_ttl_s)
        self.data_store = MarketDataStore(
            self.exchange,
            data_dir=cfg.data.dir,
            interval=cfg.trading.interval,
            backfill_start=cfg.data.backfill_start_date,
        )

        self.ledger = Ledger(cfg.data.transactions_file)
        self.ledger.load()

        self.decision_store = DecisionStore(cfg.data.state_file, retention=cfg.data.history_retention)
        self.decision_store.load()

        self.validator = TradeValidator(TradeRestrictions(
            max_trade_value=cfg.trading.max_trade_value,
            sell_value_multiplier=cfg.trading.sell_value_multiplier,
            max_active_orders=cfg.trading.max_active_orders,
        ))
        self.executor = TradeExecutor(
            self.exchange,
            self.ledger,
            self.validator,
            self.kline_cache,
            interval=cfg.trading.interval,
            dry_run=cfg.dry_run,
        )

        # A backend client that cannot be constructed is fatal.
        self.client = client or create_reasoning_client(
            base_url=cfg.llm.base_url,
            api_key=cfg.llm.api_key,
            model=cfg.llm.model,
            timeout_s=cfg.llm.turn_timeout_s,
            temperature=cfg.llm.temperature,
        )

        self.decision_loop = DecisionLoop(
            client=self.client,
            executor=self.executor,
            decision_store=self.decision_store,
            ledger=self.ledger,
            kline_cache=self.kline_cache,
            exchange=self.exchange,
            max_turns=cfg.trading.max_turns,
            interval=cfg.trading.interval,
            turn_timeout_s=cfg.llm.turn_timeout_s,
            kline_limit=cfg.trading.kline_limit,
            transactions_limit=cfg.trading.transactions_in_context,
            data_store=self.data_store,
        )
        self.portfolio = PortfolioTracker(self.exchange, cfg.data.portfolio_file)

        self._running = True

    async def run_cycle(self) -> List[DecisionLoopResult]:
        """Execute one trading run across all configured pairs."""
        run_number = self.decision_store.increment_runs()
        pairs = self.settings.pairs()
        results: List[DecisionLoopResult] = []

        with log_context(run=run_number):
            logger.info(f"Run {run_number} started ({len(pairs)} pairs)")
            start = time.monotonic()

            if self.settings.data.collect_before_run:
                await asyncio.to_thread(self.data_store.collect_all, pairs)

            for symbol in pairs:
                try:
                    result = await self.decision_loop.run(symbol)
                except Exception as e:
                    logger.error(f"Decision loop failed for {symbol}: {e}", exc_info=True)
                    continue
                results.append(result)

            if self.exchange.configured:
                try:
                    await self.portfolio.take_snapshot(run_number)
                except Exception as e:
                    logger.warning(f"Portfolio snapshot failed: {e}")

            self._log_summary(run_number, results, time.monotonic() - start)
        return results

    def _log_summary(self, run_number: int, results: List[DecisionLoopResult], elapsed: float) -> None:
        for r in results:
            if r.skipped:
                outcome = f"skipped ({r.skip_reason})"
            elif r.decision is None:
                outcome = f"no decision after {r.turns_used} turns"
            else:
                outcome = (
                    f"{r.decision.action.label} {r.decision.amount or ''} "
                    f"({r.decision.confidence}%) in {r.turns_used} turns"
                )
            logger.info(f"  {r.symbol}: {outcome}")
        logger.info(f"Run {run_number} finished in {elapsed:.1f}s")

    async def run_forever(self, interval_seconds: Optional[float] = None) -> None:
        """
        Run trading loop continuously.

        Args:
            interval_seconds: Seconds between run starts
        """
        interval = float(interval_seconds or self.settings.loop.interval_seconds)
        interval = max(interval, 1.0)
        logger.info(f"Starting continuous loop (interval={interval}s)")

        try:
            while self._running:
                start = time.monotonic()
                await self.run_cycle()
                elapsed = time.monotonic() - start
                sleep_for = max(1.0, interval - elapsed)
                logger.info(f"Run took {elapsed:.2f}s, sleeping {sleep_for:.2f}s")
                await asyncio.sleep(sleep_for)
        except asyncio.CancelledError:
            logger.info("Trading loop cancelled, shutting down")
            raise

        logger.info("Trading loop stopped cleanly.")

    def stop(self) -> None:
        self._running = False

    def close(self) -> None:
        if self.instance_lock:
            self.instance_lock.release()


def main():
    """Entry point"""
    import argparse

    parser = argparse.ArgumentParser(description="turntrader - LLM-driven trading bot")
    parser.add_argument("--once", action="store_true", help="Run once and exit")
    parser.add_argument("--interval", type=float, default=None, help="Seconds between runs (default: loop.interval_seconds)")
    parser.add_argument("--config-dir", default="config", help="Config directory")
    parser.add_argument("--dry-run", action="store_true", help="Force DRY_RUN mode (simulated fills)")

    args = parser.parse_args()

    settings = load_settings(args.config_dir)
    if args.dry_run:
        settings.app.mode = "DRY_RUN"

    loop = TradingLoop(config_dir=args.config_dir, settings=settings)
    try:
        if args.once:
            asyncio.run(loop.run_cycle())
        else:
            asyncio.run(loop.run_forever(interval_seconds=args.interval))
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
    finally:
        loop.close()


if __name__ == "__main__":
    main()
