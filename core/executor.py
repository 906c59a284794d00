"""
turntrader Core: Trade Executor

Executes the terminal tool calls (buy / sell / hold) requested by the
reasoning backend: validates against trade restrictions, places the market
order (or simulates it in DRY_RUN) and records the fill in the ledger.
"""

import asyncio
from typing import Optional
import logging
import math

from ai.schemas import ToolCall, ToolResult, TradeAction
from core.exceptions import ExchangeError
from core.ledger import Ledger
from core.trade_validator import TradeValidator
from infra.symbols import normalize_pair, pairs_equivalent

logger = logging.getLogger(__name__)


class TradeExecutor:
    """
    Turns tool calls into orders.

    Every outcome is reported as a ToolResult; nothing here raises for
    validation or exchange failures.
    """

    def __init__(self, exchange, ledger: Ledger, validator: TradeValidator,
                 kline_cache, interval: str = "5m", dry_run: bool = True):
        self.exchange = exchange
        self.ledger = ledger
        self.validator = validator
        self.kline_cache = kline_cache
        self.interval = interval
        self.dry_run = dry_run

    async def execute(self, call: ToolCall, symbol: str) -> ToolResult:
        """
        Execute one tool call for the symbol under analysis.

        Args:
            call: Tool call from the reasoning backend
            symbol: Pair being analyzed (e.g. "BTCUSDC")

        Returns:
            ToolResult (ok=True only when the action was carried out)
        """
        try:
            action = TradeAction.from_tool_name(call.name)
        except ValueError:
            return ToolResult.failure(f"Unknown tool '{call.name}'. Use buy, sell or hold.")

        if call.parse_error:
            return ToolResult.failure(f"Could not read {call.name} arguments: {call.parse_error}", action=action)

        pair = normalize_pair(call.arguments.get("pair") or symbol)
        if not pairs_equivalent(pair, symbol):
            return ToolResult.failure(
                f"Pair {pair} does not match the symbol under analysis ({symbol})", action=action
            )

        if action is TradeAction.HOLD:
            return ToolResult.success(f"Hold for pair {pair}", action=action)

        if action is TradeAction.BUY or action is TradeAction.SELL:
            return await self._trade(action, pair, call)

        return ToolResult.failure(f"Unsupported action {action}", action=action)

    async def _trade(self, action: TradeAction, pair: str, call: ToolCall) -> ToolResult:
        try:
            amount = float(call.arguments["amount"])
            if not math.isfinite(amount):
                raise ValueError(amount)
        except (KeyError, TypeError, ValueError):
            return ToolResult.failure(
                f"{action.label} requires a numeric 'amount' (got {call.arguments.get('amount')!r})",
                action=action,
            )

        try:
            price = await self.kline_cache.latest_price(pair, self.interval)
        except Exception as e:
            logger.error(f"Price lookup failed for {pair}: {e}")
            return ToolResult.failure(f"Price unavailable for {pair}: {e}", action=action, amount=amount)

        open_orders = 0
        if self.exchange.configured:
            try:
                orders = await asyncio.to_thread(self.exchange.get_open_orders)
                open_orders = len(orders)
            except ExchangeError as e:
                return ToolResult.failure(f"Could not read open orders: {e}", action=action, amount=amount)

        check = self.validator.validate(action, pair, amount, price, open_orders)
        if not check.approved:
            return ToolResult.failure(
                f"Trade rejected: {check.reason}", action=action, amount=amount, price=price
            )

        fill_qty, fill_price = amount, price
        if self.dry_run:
            logger.info(f"[DRY_RUN] Simulated {action.label} {amount} {pair} @ {price}")
        else:
            if not self.exchange.configured:
                return ToolResult.failure(
                    "Exchange credentials not configured, cannot place orders", action=action, amount=amount
                )
            try:
                fill = await asyncio.to_thread(
                    self.exchange.place_market_order, pair, action.label, amount
                )
            except (ExchangeError, ValueError) as e:
                logger.error(f"{action.label} {amount} {pair} failed: {e}")
                return ToolResult.failure(f"Order failed: {e}", action=action, amount=amount, price=price)
            fill_qty = float(fill.get("executed_qty") or 0.0)
            if not math.isfinite(fill_qty) or fill_qty <= 0:
                logger.error(
                    f"{action.label} {amount} {pair} not filled (status={fill.get('status')}, "
                    f"order_id={fill.get('order_id')})"
                )
                return ToolResult.failure(
                    f"Order not filled: status {fill.get('status') or 'unknown'}, executed quantity {fill_qty}",
                    action=action, amount=amount, price=price,
                )
            fill_price = float(fill.get("avg_price") or price)

        if action is TradeAction.BUY:
            await self.ledger.record_buy(pair, fill_qty, fill_price)
            message = f"Bought {fill_qty} {pair} @ {fill_price:.8f}"
        else:
            tx = await self.ledger.record_sell(pair, fill_qty, fill_price)
            message = (
                f"Sold {fill_qty} {pair} @ {fill_price:.8f} "
                f"(realized P&L ${tx.profit_in_usd or 0.0:+.2f})"
            )

        return ToolResult.success(message, action=action, amount=fill_qty, price=fill_price)
