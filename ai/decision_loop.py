"""Decision Loop - turn-bounded conversation with the reasoning backend.

One invocation analyzes one symbol: it checks the decision store for an
existing decision on the latest candle, builds the context message, then
drives up to `max_turns` streamed turns until a buy/sell/hold tool call
executes successfully.

Design goals:
- At most one recorded decision per (symbol, candle close time)
- Bounded: never more than max_turns backend calls, each with a timeout
- A decision is recorded only when its tool execution reports ok
- Pending trades are written ahead so a crash cannot cause a repeat order
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import logging

from ai.llm_client import LLMResponse, TOOL_SCHEMAS
from ai.prompts import SYSTEM_MESSAGE, build_context_message, continue_prompt, final_turn_prompt
from ai.schemas import ToolCall, TradeAction, normalize_confidence
from core.exceptions import ExchangeError
from core.market_data import Candle, format_klines
from infra.decision_store import DecisionStore, TradingDecision
from infra.log_context import log_context
from infra.symbols import extract_asset_from_pair

logger = logging.getLogger(__name__)


@dataclass
class DecisionLoopResult:
    """Outcome of one decision loop invocation."""

    symbol: str
    decision: Optional[TradingDecision] = None
    turns_used: int = 0
    final_response: str = ""
    transcript: List[Dict[str, Any]] = field(default_factory=list)
    skipped: bool = False
    skip_reason: str = ""
    price_timestamp: Optional[int] = None


class DecisionLoop:
    """Turn-bounded state machine around the reasoning backend."""

    def __init__(
        self,
        client,
        executor,
        decision_store: DecisionStore,
        ledger,
        kline_cache,
        exchange,
        max_turns: int = 30,
        interval: str = "5m",
        turn_timeout_s: float = 120.0,
        kline_limit: int = 100,
        transactions_limit: int = 10,
        data_store=None,
    ) -> None:
        if max_turns < 1:
            raise ValueError("max_turns must be at least 1")
        self.client = client
        self.executor = executor
        self.decision_store = decision_store
        self.ledger = ledger
        self.kline_cache = kline_cache
        self.exchange = exchange
        self.max_turns = max_turns
        self.interval = interval
        self.turn_timeout_s = turn_timeout_s
        self.kline_limit = kline_limit
        self.transactions_limit = transactions_limit
        self.data_store = data_store

    async def run(self, symbol: str) -> DecisionLoopResult:
        """Analyze one symbol and return its decision (or why none was made)."""

        with log_context(symbol=symbol):
            try:
                candle = await self.kline_cache.latest_candle(symbol, self.interval)
            except Exception as exc:
                logger.error("Market data unavailable for %s: %s", symbol, exc)
                return DecisionLoopResult(symbol=symbol, skipped=True, skip_reason=f"market data unavailable: {exc}")

            if candle is None:
                logger.warning("No candles returned for %s, skipping", symbol)
                return DecisionLoopResult(symbol=symbol, skipped=True, skip_reason="no market data")

            price_ts = candle.close_time
            self.decision_store.resolve_stale_pending(symbol, price_ts)
            if self.decision_store.has_decision_for_timestamp(symbol, price_ts):
                logger.info("Decision for %s at price_ts=%s already recorded, skipping", symbol, price_ts)
                return DecisionLoopResult(
                    symbol=symbol,
                    skipped=True,
                    skip_reason="decision already recorded for latest candle",
                    price_timestamp=price_ts,
                )

            context = await self._build_context(symbol, candle)
            transcript: List[Dict[str, Any]] = [
                {"role": "system", "content": SYSTEM_MESSAGE},
                {"role": "user", "content": context},
            ]
            return await self._drive_turns(symbol, candle, transcript)

    # ------------------------------------------------------------------
    # Turn Handling
    # ------------------------------------------------------------------

    async def _drive_turns(
        self,
        symbol: str,
        candle: Candle,
        transcript: List[Dict[str, Any]],
    ) -> DecisionLoopResult:
        decision: Optional[TradingDecision] = None
        final_response = ""
        turns_used = 0

        for turn in range(1, self.max_turns + 1):
            turns_used = turn
            remaining = self.max_turns - turn

            with log_context(turn=turn):
                response = await self._call_backend(transcript, turn)
                if response is not None:
                    transcript.append(response.to_message())
                    if response.content:
                        final_response = response.content
                    if response.tool_calls:
                        decision = await self._dispatch(symbol, candle, response.tool_calls, transcript)
                        if decision is not None:
                            break

            if remaining == 0:
                break
            next_prompt = final_turn_prompt() if remaining == 1 else continue_prompt(remaining)
            transcript.append({"role": "user", "content": next_prompt})

        if decision is None:
            logger.info("No decision for %s after %d turn(s)", symbol, turns_used)
        else:
            logger.info(
                "Decision for %s: %s (%d%%) after %d turn(s)",
                symbol, decision.action.label, decision.confidence, turns_used,
            )

        return DecisionLoopResult(
            symbol=symbol,
            decision=decision,
            turns_used=turns_used,
            final_response=final_response,
            transcript=transcript,
            price_timestamp=candle.close_time,
        )

    async def _call_backend(self, transcript: List[Dict[str, Any]], turn: int) -> Optional[LLMResponse]:
        """One backend round trip; a timeout or error consumes the turn."""
        try:
            return await asyncio.wait_for(
                self.client.complete(list(transcript), TOOL_SCHEMAS),
                timeout=self.turn_timeout_s,
            )
        except asyncio.TimeoutError:
            logger.warning("Reasoning backend timed out after %.0fs on turn %d", self.turn_timeout_s, turn)
        except Exception as exc:
            logger.error("Reasoning backend failed on turn %d: %s", turn, exc)
        return None

    async def _dispatch(
        self,
        symbol: str,
        candle: Candle,
        tool_calls: List[ToolCall],
        transcript: List[Dict[str, Any]],
    ) -> Optional[TradingDecision]:
        """Execute tool calls in order; the first successful one becomes the decision."""

        for call in tool_calls:
            action = self._action_for(call)
            confidence = normalize_confidence(call.arguments.get("confidence", 0))
            explanation = str(call.arguments.get("explanation", ""))
            trades = action is TradeAction.BUY or action is TradeAction.SELL
            if trades:
                self.decision_store.mark_pending(symbol, candle.close_time, action, call.arguments.get("amount"))

            result = await self.executor.execute(call, symbol)
            transcript.append({"role": "tool", "tool_call_id": call.id, "content": result.display()})

            if not result.ok:
                logger.info("Tool %s failed: %s", call.name, result.message)
                if trades:
                    self.decision_store.clear_pending(symbol)
                continue

            decision = TradingDecision(
                symbol=symbol,
                action=result.action or action,
                amount=result.amount,
                confidence=confidence,
                explanation=explanation,
                timestamp=datetime.now(timezone.utc),
                price_at_decision=result.price if result.price is not None else candle.close,
                price_timestamp=candle.close_time,
            )
            self.decision_store.add_decision(decision)
            return decision

        return None

    @staticmethod
    def _action_for(call: ToolCall) -> Optional[TradeAction]:
        try:
            return TradeAction.from_tool_name(call.name)
        except ValueError:
            return None

    # ------------------------------------------------------------------
    # Context Helpers
    # ------------------------------------------------------------------

    async def _context_window(self, symbol: str, candle: Candle) -> List[Candle]:
        """Stored candles when the store has caught up with the market, else the live window."""
        if self.data_store is not None:
            stored = await asyncio.to_thread(self.data_store.recent_klines, symbol, self.kline_limit)
            if stored and stored[-1].close_time >= candle.close_time:
                return stored
            logger.debug("Stored candles for %s lag the market, using the live window", symbol)
        return await self.kline_cache.fetch_klines(symbol, self.interval, self.kline_limit)

    async def _build_context(self, symbol: str, candle: Candle) -> str:
        try:
            candles = await self._context_window(symbol, candle)
            market_data = format_klines(candles)
        except Exception as exc:
            logger.warning("Could not load kline window for %s: %s", symbol, exc)
            market_data = "Market data unavailable"

        account_summary = None
        if self.exchange.configured:
            try:
                account_summary = await asyncio.to_thread(self.exchange.format_account_summary)
            except ExchangeError as exc:
                logger.warning("Account summary unavailable: %s", exc)
                account_summary = f"📊 **ACCOUNT SUMMARY** unavailable: {exc}\n"

        return build_context_message(
            symbol=symbol,
            max_turns=self.max_turns,
            market_data=market_data,
            account_summary=account_summary,
            transactions_summary=self.ledger.format_recent_transactions(pair=symbol, limit=self.transactions_limit),
            history_summary=self.decision_store.context_summary(symbol),
            restrictions=self._format_restrictions(symbol),
            current_price=candle.close,
        )

    def _format_restrictions(self, symbol: str) -> str:
        limits = self.executor.validator.restrictions
        asset = extract_asset_from_pair(symbol)
        position = self.ledger.position(asset)
        if position is None:
            position_line = f"- Tracked {asset} position: none"
        else:
            position_line = (
                f"- Tracked {asset} position: {position.total_amount} "
                f"@ avg ${position.average_buy_price:.4f} (invested ${position.total_invested:.2f})"
            )
        return "\n".join([
            "⚖️ **TRADE RESTRICTIONS:**",
            f"- Max buy value per trade: ${limits.max_trade_value:.2f}",
            f"- Max sell value per trade: ${limits.max_sell_value:.2f}",
            f"- Max open orders: {limits.max_active_orders}",
            position_line,
        ])
