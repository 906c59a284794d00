"""
turntrader Core: Exchange Connector (Binance)

Spot REST API integration: klines, ticker prices, account balances, open
orders and market orders. Signed endpoints use HMAC-SHA256 query signatures.
"""

import hashlib
import hmac
import random
import time
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode
import logging

import requests

from core.exceptions import ExchangeError, ExchangeNotConfigured
from core.market_data import Candle

logger = logging.getLogger(__name__)

BINANCE_BASE = "https://api.binance.com"
MAX_KLINE_LIMIT = 1000

_PLACEHOLDER_KEYS = {"", "noop"}


class BinanceExchange:
    """
    Binance spot connector.

    Supports:
    - Market data (klines, ticker price) without credentials
    - Account data (balances, open orders)
    - Market order execution
    """

    def __init__(self, api_key: str = "", api_secret: str = "",
                 base_url: str = BINANCE_BASE, recv_window: int = 5000,
                 timeout_s: float = 20.0):
        self.api_key = api_key or ""
        self.api_secret = api_secret or ""
        self.base_url = base_url.rstrip("/")
        self.recv_window = recv_window
        self.timeout_s = timeout_s

        self._session = requests.Session()
        self._last_call: Dict[str, float] = {}
        self._min_interval = 0.1  # 100ms between calls per endpoint

        logger.info(f"Initialized BinanceExchange (configured={self.configured}, base={self.base_url})")

    @property
    def configured(self) -> bool:
        """True when real credentials are present."""
        return self.api_key not in _PLACEHOLDER_KEYS and self.api_secret not in _PLACEHOLDER_KEYS

    def _rate_limit(self, endpoint: str):
        """Simple rate limiting"""
        last = self._last_call.get(endpoint, 0)
        elapsed = time.time() - last
        if elapsed < self._min_interval:
            time.sleep(self._min_interval - elapsed)
        self._last_call[endpoint] = time.time()

    def _sign(self, params: Dict[str, Any]) -> str:
        query = urlencode(params, doseq=True)
        signature = hmac.new(
            self.api_secret.encode(),
            query.encode(),
            hashlib.sha256,
        ).hexdigest()
        return f"{query}&signature={signature}"

    def _req(self, method: str, endpoint: str, params: Optional[Dict[str, Any]] = None,
             signed: bool = False, max_retries: int = 3) -> Any:
        """
        Make HTTP request to the exchange with exponential backoff.

        Retries on:
        - 429 / 418 (rate limit)
        - 5xx (server errors)
        - Network errors (timeout, connection)

        Does NOT retry on:
        - other 4xx - client errors like 400, 401
        """
        if signed and not self.configured:
            raise ExchangeNotConfigured(f"Credentials required for {endpoint}")

        self._rate_limit(endpoint)
        params = {k: v for k, v in (params or {}).items() if v is not None}
        headers = {"X-MBX-APIKEY": self.api_key} if self.api_key else {}

        last_exception: Optional[Exception] = None

        for attempt in range(max_retries):
            try:
                if signed:
                    signed_params = dict(params)
                    signed_params["timestamp"] = int(time.time() * 1000)
                    signed_params["recvWindow"] = self.recv_window
                    url = f"{self.base_url}{endpoint}?{self._sign(signed_params)}"
                    response = self._session.request(method, url, headers=headers, timeout=self.timeout_s)
                else:
                    response = self._session.request(
                        method, f"{self.base_url}{endpoint}",
                        params=params, headers=headers, timeout=self.timeout_s,
                    )
                response.raise_for_status()
                return response.json()

            except requests.exceptions.HTTPError as e:
                status_code = e.response.status_code
                body = e.response.text

                if 400 <= status_code < 500 and status_code not in (418, 429):
                    logger.error(f"Exchange client error on {endpoint}: {status_code} - {body}")
                    raise ExchangeError(
                        f"{method} {endpoint} rejected ({status_code}): {body}",
                        status_code=status_code,
                        payload=body,
                    ) from e

                if status_code in (418, 429):
                    logger.warning(f"Rate limited ({status_code}) on {endpoint}, attempt {attempt + 1}/{max_retries}")
                else:
                    logger.warning(f"Server error ({status_code}) on {endpoint}, attempt {attempt + 1}/{max_retries}")
                last_exception = e

            except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
                logger.warning(f"Network error on {endpoint}: {e}, attempt {attempt + 1}/{max_retries}")
                last_exception = e

            if attempt < max_retries - 1:
                backoff = (2 ** attempt) + random.uniform(0, 1)
                logger.info(f"Retrying in {backoff:.1f}s...")
                time.sleep(backoff)

        logger.error(f"All {max_retries} retries exhausted for {endpoint}")
        raise ExchangeError(f"{method} {endpoint} failed after {max_retries} attempts") from last_exception

    # ----------------------------------------------------------------------------------
    # Market data
    # ----------------------------------------------------------------------------------

    def get_klines(self, symbol: str, interval: str = "5m", limit: int = 100,
                   start_time: Optional[int] = None, end_time: Optional[int] = None) -> List[Candle]:
        """
        Get candlesticks, oldest to newest.

        Args:
            symbol: e.g. "BTCUSDC"
            interval: "1m", "5m", "15m", "1h", "1d", ...
            limit: Number of candles (max 1000)
            start_time: Inclusive start (epoch ms)
            end_time: Inclusive end (epoch ms)
        """
        params = {
            "symbol": symbol,
            "interval": interval,
            "limit": max(1, min(int(limit), MAX_KLINE_LIMIT)),
            "startTime": start_time,
            "endTime": end_time,
        }
        rows = self._req("GET", "/api/v3/klines", params=params)
        if not isinstance(rows, list):
            raise ExchangeError(f"Unexpected klines payload for {symbol}", payload=rows)

        candles = []
        for row in rows:
            try:
                candles.append(Candle.from_binance(symbol, row))
            except (ValueError, TypeError, IndexError) as e:
                logger.warning(f"Skipping malformed kline for {symbol}: {row} - {e}")
        return candles

    def get_all_prices(self) -> Dict[str, float]:
        """Map of pair -> last price for every listed pair."""
        data = self._req("GET", "/api/v3/ticker/price")
        prices = {}
        for item in data or []:
            try:
                prices[item["symbol"]] = float(item["price"])
            except (KeyError, TypeError, ValueError):
                continue
        return prices

    # ----------------------------------------------------------------------------------
    # Account
    # ----------------------------------------------------------------------------------

    def get_balances(self) -> List[Dict[str, Any]]:
        """Non-zero balances sorted by total amount, largest first."""
        account = self._req("GET", "/api/v3/account", signed=True)
        balances = []
        for bal in account.get("balances", []):
            try:
                free = float(bal.get("free", 0) or 0)
                locked = float(bal.get("locked", 0) or 0)
            except (TypeError, ValueError):
                continue
            total = free + locked
            if total > 0:
                balances.append({
                    "asset": bal.get("asset", ""),
                    "free": free,
                    "locked": locked,
                    "total": total,
                })
        balances.sort(key=lambda b: b["total"], reverse=True)
        return balances

    def get_open_orders(self, symbol: Optional[str] = None) -> List[Dict[str, Any]]:
        orders = self._req("GET", "/api/v3/openOrders", params={"symbol": symbol}, signed=True)
        return [
            {
                "symbol": o.get("symbol"),
                "order_id": o.get("orderId"),
                "side": o.get("side"),
                "type": o.get("type"),
                "quantity": o.get("origQty"),
                "price": o.get("price"),
                "status": o.get("status"),
                "time": o.get("time"),
            }
            for o in (orders or [])
        ]

    # ----------------------------------------------------------------------------------
    # Execution
    # ----------------------------------------------------------------------------------

    def place_market_order(self, symbol: str, side: str, quantity: float) -> Dict[str, Any]:
        """
        Place a market order and return normalized fill info.

        Returns:
            dict with order_id, status, executed_qty, avg_price
        """
        side = side.upper()
        if side not in ("BUY", "SELL"):
            raise ValueError(f"Invalid order side: {side}")

        params = {
            "symbol": symbol,
            "side": side,
            "type": "MARKET",
            "quantity": f"{quantity:.8f}".rstrip("0").rstrip("."),
            "newOrderRespType": "FULL",
        }
        logger.info(f"Placing MARKET {side} {params['quantity']} {symbol}")
        result = self._req("POST", "/api/v3/order", params=params, signed=True, max_retries=1)

        executed_qty = float(result.get("executedQty", 0) or 0)
        quote_qty = float(result.get("cummulativeQuoteQty", 0) or 0)
        avg_price = quote_qty / executed_qty if executed_qty > 0 else 0.0
        if avg_price <= 0:
            fills = result.get("fills") or []
            if fills:
                avg_price = float(fills[0].get("price", 0) or 0)

        return {
            "order_id": result.get("orderId"),
            "status": result.get("status", "UNKNOWN"),
            "executed_qty": executed_qty,
            "avg_price": avg_price,
        }

    def format_account_summary(self) -> str:
        """Account overview rendered for the reasoning backend."""
        balances = self.get_balances()
        open_orders = self.get_open_orders()
        return format_account_summary(balances, open_orders)


def format_account_summary(balances: List[Dict[str, Any]], open_orders: List[Dict[str, Any]]) -> str:
    lines = ["📊 **ACCOUNT SUMMARY**", "", "💰 **Current Assets:**"]
    if not balances:
        lines.append("- No assets with balance > 0")
    else:
        for bal in balances[:10]:
            lines.append(
                f"- {bal['asset']}: {bal['total']} (Free: {bal['free']}, Locked: {bal['locked']})"
            )
        if len(balances) > 10:
            lines.append(f"- ... and {len(balances) - 10} more assets")

    lines.extend(["", "📋 **Open Orders:**"])
    if not open_orders:
        lines.append("- No open orders")
    else:
        for order in open_orders[:5]:
            lines.append(
                f"- {order['symbol']} {order['side']}: {order['quantity']} @ {order['price']} "
                f"(Status: {order['status']})"
            )
        if len(open_orders) > 5:
            lines.append(f"- ... and {len(open_orders) - 5} more open orders")

    lines.extend(["", "Use this information to make informed trading decisions."])
    return "\n".join(lines) + "\n"
