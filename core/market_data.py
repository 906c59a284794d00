"""
turntrader Core: Market Data

Candle model plus a short-TTL in-memory cache of fetched candle windows so a
polling cycle never refetches the same window twice.
"""

import asyncio
import time
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple
import logging

logger = logging.getLogger(__name__)

CANDLE_COLUMNS = [
    "open_time",
    "close_time",
    "symbol",
    "open",
    "high",
    "low",
    "close",
    "volume",
    "quote_asset_volume",
    "number_of_trades",
    "taker_buy_base_volume",
    "taker_buy_quote_volume",
]


@dataclass(frozen=True)
class Candle:
    """One OHLCV observation. Times are epoch milliseconds."""
    open_time: int
    close_time: int
    symbol: str
    open: float
    high: float
    low: float
    close: float
    volume: float
    quote_asset_volume: float = 0.0
    number_of_trades: int = 0
    taker_buy_base_volume: float = 0.0
    taker_buy_quote_volume: float = 0.0

    @classmethod
    def from_binance(cls, symbol: str, row: Sequence[Any]) -> "Candle":
        """
        Parse a kline array as returned by the exchange.

        Layout: [open_time, open, high, low, close, volume, close_time,
        quote_asset_volume, number_of_trades, taker_buy_base, taker_buy_quote, ignore]
        """
        if len(row) < 11:
            raise ValueError(f"Kline row has {len(row)} fields, expected 12")
        return cls(
            open_time=int(row[0]),
            close_time=int(row[6]),
            symbol=symbol,
            open=float(row[1]),
            high=float(row[2]),
            low=float(row[3]),
            close=float(row[4]),
            volume=float(row[5]),
            quote_asset_volume=float(row[7]),
            number_of_trades=int(row[8]),
            taker_buy_base_volume=float(row[9]),
            taker_buy_quote_volume=float(row[10]),
        )

    @property
    def close_datetime(self) -> datetime:
        return datetime.fromtimestamp(self.close_time / 1000, tz=timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class KlineCache:
    """
    Short-TTL cache of candle windows keyed by (symbol, interval, limit).

    Exchange calls are synchronous, so fetches run in a worker thread and the
    event loop stays responsive while the request is in flight.
    """

    DEFAULT_TTL_SECONDS = 60.0

    def __init__(self, exchange, ttl_seconds: float = DEFAULT_TTL_SECONDS):
        self.exchange = exchange
        self.ttl_seconds = ttl_seconds
        self._entries: Dict[str, Tuple[float, List[Candle]]] = {}
        self.hits = 0
        self.misses = 0

    @staticmethod
    def _key(symbol: str, interval: str, limit: int) -> str:
        return f"{symbol}:{interval}:{limit}"

    def get_cached(self, symbol: str, interval: str, limit: int) -> Optional[List[Candle]]:
        """Return a still-fresh cached window, or None."""
        entry = self._entries.get(self._key(symbol, interval, limit))
        if entry is None:
            return None
        fetched_at, candles = entry
        if time.monotonic() - fetched_at >= self.ttl_seconds:
            return None
        return candles

    async def fetch_klines(self, symbol: str, interval: str, limit: int = 100) -> List[Candle]:
        """Return candles for the window, fetching upstream only when the cache is stale."""
        cached = self.get_cached(symbol, interval, limit)
        if cached is not None:
            self.hits += 1
            logger.debug(f"Kline cache hit for {symbol}:{interval}:{limit}")
            return cached

        self.misses += 1
        candles = await asyncio.to_thread(
            self.exchange.get_klines, symbol, interval, limit
        )
        self._entries[self._key(symbol, interval, limit)] = (time.monotonic(), candles)
        logger.debug(f"Fetched {len(candles)} klines for {symbol} ({interval}, limit={limit})")
        return candles

    async def latest_candle(self, symbol: str, interval: str) -> Optional[Candle]:
        candles = await self.fetch_klines(symbol, interval, 1)
        return candles[-1] if candles else None

    async def latest_close_time(self, symbol: str, interval: str) -> Optional[int]:
        """Close time (ms) of the newest candle, the idempotency key for a decision."""
        candle = await self.latest_candle(symbol, interval)
        return candle.close_time if candle else None

    async def latest_price(self, symbol: str, interval: str) -> Optional[float]:
        candle = await self.latest_candle(symbol, interval)
        return candle.close if candle else None

    def invalidate(self, symbol: Optional[str] = None) -> None:
        """Drop cached windows for one symbol (or all when symbol is None)."""
        if symbol is None:
            self._entries.clear()
            return
        prefix = f"{symbol}:"
        for key in [k for k in self._entries if k.startswith(prefix)]:
            del self._entries[key]

    def clear(self) -> None:
        self.invalidate(None)


def format_klines(candles: List[Candle], limit: int = 20) -> str:
    """Compact table of the most recent candles for prompts."""
    if not candles:
        return "No kline data available"
    lines = ["close_time (UTC)      open        high        low         close       volume"]
    for c in candles[-limit:]:
        ts = c.close_datetime.strftime("%Y-%m-%d %H:%M")
        lines.append(
            f"{ts:<20}  {c.open:<10.4f}  {c.high:<10.4f}  {c.low:<10.4f}  "
            f"{c.close:<10.4f}  {c.volume:.4f}"
        )
    return "\n".join(lines)
