"""
turntrader Core: Incremental Market Data Store

Per-symbol candle history persisted as Parquet (fast columnar storage).
Each collection cycle fetches only candles newer than the last stored close
time, merges them with the existing file, deduplicates by open_time and
replaces the file with the sorted result.
"""

import os
import tempfile
import time
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional
import logging

import pandas as pd

from core.exceptions import ConfigurationError
from core.exchange_binance import MAX_KLINE_LIMIT
from core.market_data import CANDLE_COLUMNS, Candle

logger = logging.getLogger(__name__)

_FLOAT_COLUMNS = [
    "open", "high", "low", "close", "volume",
    "quote_asset_volume", "taker_buy_base_volume", "taker_buy_quote_volume",
]
_INT_COLUMNS = ["open_time", "close_time", "number_of_trades"]


def parse_start_date(value: str) -> int:
    """Convert a YYYY-MM-DD backfill date to epoch ms at UTC midnight."""
    try:
        day = datetime.strptime(value.strip(), "%Y-%m-%d")
    except (AttributeError, ValueError) as e:
        raise ConfigurationError(f"Invalid backfill start date {value!r}, expected YYYY-MM-DD") from e
    return int(day.replace(tzinfo=timezone.utc).timestamp() * 1000)


def empty_frame() -> pd.DataFrame:
    return pd.DataFrame({col: pd.Series(dtype=_dtype(col)) for col in CANDLE_COLUMNS})


def _dtype(column: str) -> str:
    if column in _INT_COLUMNS:
        return "int64"
    if column == "symbol":
        return "object"
    return "float64"


def candles_to_frame(candles: Iterable[Candle]) -> pd.DataFrame:
    rows = [asdict(c) for c in candles]
    if not rows:
        return empty_frame()
    return pd.DataFrame(rows, columns=CANDLE_COLUMNS).astype({c: _dtype(c) for c in CANDLE_COLUMNS})


def frame_to_candles(df: pd.DataFrame) -> List[Candle]:
    candles = []
    for row in df.itertuples(index=False):
        candles.append(Candle(
            open_time=int(row.open_time),
            close_time=int(row.close_time),
            symbol=str(row.symbol),
            open=float(row.open),
            high=float(row.high),
            low=float(row.low),
            close=float(row.close),
            volume=float(row.volume),
            quote_asset_volume=float(row.quote_asset_volume),
            number_of_trades=int(row.number_of_trades),
            taker_buy_base_volume=float(row.taker_buy_base_volume),
            taker_buy_quote_volume=float(row.taker_buy_quote_volume),
        ))
    return candles


def merge_candles(existing: pd.DataFrame, new_candles: Iterable[Candle]) -> pd.DataFrame:
    """
    Merge freshly fetched candles into an existing dataset.

    Rows are concatenated with existing data first, so on a duplicate
    open_time the stored row wins. The result is sorted by open_time with a
    fresh index.
    """
    incoming = candles_to_frame(new_candles)
    frames = [df for df in (existing, incoming) if not df.empty]
    if not frames:
        return empty_frame()
    merged = pd.concat(frames, ignore_index=True)
    merged = merged.drop_duplicates(subset="open_time", keep="first")
    merged = merged.sort_values("open_time", kind="mergesort").reset_index(drop=True)
    return merged


class MarketDataStore:
    """
    Incremental candle store backed by one Parquet file per symbol.

    Usage:
        store = MarketDataStore(exchange, data_dir="data", interval="5m")
        store.collect_all(["BTCUSDC", "ETHUSDC"])
    """

    def __init__(self, exchange, data_dir: str = "data", interval: str = "5m",
                 backfill_start: str = "2024-01-01", page_limit: int = MAX_KLINE_LIMIT,
                 page_delay_s: float = 0.1, symbol_delay_s: float = 0.2):
        self.exchange = exchange
        self.data_dir = Path(data_dir)
        self.interval = interval
        self.backfill_start_ms = parse_start_date(backfill_start)
        self.page_limit = max(1, min(page_limit, MAX_KLINE_LIMIT))
        self.page_delay_s = page_delay_s
        self.symbol_delay_s = symbol_delay_s

        self.data_dir.mkdir(parents=True, exist_ok=True)
        logger.info(f"Initialized MarketDataStore at {self.data_dir} (interval={interval})")

    def path_for(self, symbol: str) -> Path:
        return self.data_dir / f"{symbol.lower()}_{self.interval}.parquet"

    def load(self, symbol: str) -> pd.DataFrame:
        """Load the stored dataset (empty frame if none)."""
        path = self.path_for(symbol)
        if not path.exists():
            return empty_frame()
        return pd.read_parquet(path)

    def last_close_time(self, symbol: str) -> Optional[int]:
        df = self.load(symbol)
        if df.empty:
            return None
        return int(df["close_time"].max())

    def fetch_range(self, symbol: str, start_ms: int, end_ms: Optional[int] = None) -> List[Candle]:
        """
        Paginate candles from start_ms forward.

        Stops on a short page, an empty page, or once the cursor passes end_ms.
        """
        fetched: List[Candle] = []
        cursor = start_ms
        pages = 0

        while True:
            if end_ms is not None and cursor > end_ms:
                break

            page = self.exchange.get_klines(
                symbol, self.interval, self.page_limit,
                start_time=cursor, end_time=end_ms,
            )
            pages += 1
            if not page:
                break

            fetched.extend(page)
            cursor = page[-1].close_time + 1

            if len(page) < self.page_limit:
                break

            time.sleep(self.page_delay_s)

        logger.debug(f"Fetched {len(fetched)} candles for {symbol} in {pages} page(s)")
        return fetched

    def ensure_fresh(self, symbol: str, end_ms: Optional[int] = None) -> int:
        """
        Bring a symbol's dataset up to date.

        Returns:
            Number of rows added to the stored dataset
        """
        existing = self.load(symbol)
        if existing.empty:
            start_ms = self.backfill_start_ms
            logger.info(f"No stored data for {symbol}, backfilling from {start_ms}")
        else:
            start_ms = int(existing["close_time"].max()) + 1

        new_candles = self.fetch_range(symbol, start_ms, end_ms)
        if not new_candles:
            logger.info(f"{symbol}: already up to date ({len(existing)} rows)")
            return 0

        merged = merge_candles(existing, new_candles)
        self._write(symbol, merged)

        added = len(merged) - len(existing)
        logger.info(f"{symbol}: +{added} candles ({len(merged)} total)")
        return added

    def _write(self, symbol: str, df: pd.DataFrame) -> None:
        """Replace the symbol's file atomically."""
        path = self.path_for(symbol)
        temp_fd, temp_path = tempfile.mkstemp(
            dir=path.parent,
            prefix=f".{path.stem}_",
            suffix=".parquet.tmp",
        )
        os.close(temp_fd)
        try:
            df.to_parquet(temp_path, index=False)
            os.replace(temp_path, path)
        except Exception:
            if os.path.exists(temp_path):
                os.remove(temp_path)
            raise

    def collect_all(self, symbols: List[str], end_ms: Optional[int] = None) -> Dict[str, int]:
        """
        Refresh every symbol; a failing symbol is logged and skipped.

        Returns:
            symbol -> rows added (-1 when the fetch failed)
        """
        results: Dict[str, int] = {}
        for idx, symbol in enumerate(symbols):
            try:
                results[symbol] = self.ensure_fresh(symbol, end_ms)
            except Exception as e:
                logger.error(f"Failed to collect data for {symbol}: {e}")
                results[symbol] = -1

            if idx < len(symbols) - 1:
                time.sleep(self.symbol_delay_s)

        ok = sum(1 for v in results.values() if v >= 0)
        logger.info(f"Collection finished: {ok}/{len(symbols)} symbols updated")
        return results

    def get_klines(self, symbol: str, start_ms: Optional[int] = None,
                   end_ms: Optional[int] = None) -> List[Candle]:
        df = self.load(symbol)
        if start_ms is not None:
            df = df[df["open_time"] >= start_ms]
        if end_ms is not None:
            df = df[df["open_time"] <= end_ms]
        return frame_to_candles(df)

    def recent_klines(self, symbol: str, limit: int) -> List[Candle]:
        """The newest `limit` stored candles, oldest first."""
        if limit <= 0:
            return []
        return frame_to_candles(self.load(symbol).tail(limit))

    def stats(self, symbol: str) -> Dict[str, Optional[int]]:
        df = self.load(symbol)
        if df.empty:
            return {"count": 0, "first_open_time": None, "last_open_time": None}
        return {
            "count": int(len(df)),
            "first_open_time": int(df["open_time"].min()),
            "last_open_time": int(df["open_time"].max()),
        }
