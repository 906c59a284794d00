#!/usr/bin/env python3
"""
Collect candle history for every configured pair into the Parquet store.

Usage:
    python -m tools.collect_data                 # incremental update
    python -m tools.collect_data --stats         # show stored ranges only
"""
import argparse
import logging
import sys
from datetime import datetime, timezone

from core.data_store import MarketDataStore
from core.exchange_binance import BinanceExchange
from tools.config_validator import load_settings

logger = logging.getLogger(__name__)


def _fmt_ms(ms):
    if ms is None:
        return "-"
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d %H:%M")


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Incremental candle collector")
    parser.add_argument("--config-dir", default="config", help="Config directory")
    parser.add_argument("--stats", action="store_true", help="Print stored data ranges and exit")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    settings = load_settings(args.config_dir)
    exchange = BinanceExchange(base_url=settings.exchange.base_url, timeout_s=settings.exchange.timeout_s)
    store = MarketDataStore(
        exchange,
        data_dir=settings.data.dir,
        interval=settings.trading.interval,
        backfill_start=settings.data.backfill_start_date,
    )
    pairs = settings.pairs()

    results = {} if args.stats else store.collect_all(pairs)

    print(f"\n{'PAIR':<12} {'ADDED':>8} {'ROWS':>10}  FIRST              LAST")
    for pair in pairs:
        stats = store.stats(pair)
        added = results.get(pair, 0)
        added_txt = "FAILED" if added < 0 else str(added)
        print(
            f"{pair:<12} {added_txt:>8} {stats['count']:>10}  "
            f"{_fmt_ms(stats['first_open_time']):<18} {_fmt_ms(stats['last_open_time'])}"
        )

    return 1 if any(v < 0 for v in results.values()) else 0


if __name__ == "__main__":
    sys.exit(main())
