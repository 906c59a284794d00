"""
turntrader Infrastructure: Decision Store

Durable per-symbol decision history with atomic writes. Decisions are keyed
by the close time of the candle that triggered them, so repeated runs on
unchanged market data never act twice.
"""

import json
import os
import shutil
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional
import logging

from ai.schemas import TradeAction, normalize_confidence

logger = logging.getLogger(__name__)

DEFAULT_RETENTION = 30


def _iso(ts: Optional[datetime]) -> Optional[str]:
    return ts.isoformat() if ts else None


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


@dataclass
class TradingDecision:
    """One terminal action taken by the decision loop."""
    symbol: str
    action: TradeAction
    confidence: int
    explanation: str
    timestamp: datetime
    amount: Optional[float] = None
    price_at_decision: Optional[float] = None
    price_timestamp: Optional[int] = None

    def __post_init__(self):
        self.confidence = normalize_confidence(self.confidence)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "action": self.action.value,
            "amount": self.amount,
            "confidence": self.confidence,
            "explanation": self.explanation,
            "timestamp": _iso(self.timestamp),
            "price_at_decision": self.price_at_decision,
            "price_timestamp": self.price_timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TradingDecision":
        return cls(
            symbol=data["symbol"],
            action=TradeAction.from_tool_name(data["action"]),
            amount=data.get("amount"),
            confidence=data.get("confidence", 0),
            explanation=data.get("explanation", ""),
            timestamp=_parse_ts(data.get("timestamp")) or datetime.now(timezone.utc),
            price_at_decision=data.get("price_at_decision"),
            price_timestamp=data.get("price_timestamp"),
        )


@dataclass
class SymbolHistory:
    """
    Per-symbol decision history.

    `decisions` is a rolling window; the counters are lifetime totals and keep
    counting after old decisions are evicted from the window.
    """
    symbol: str
    decisions: List[TradingDecision] = field(default_factory=list)
    last_decision: Optional[TradingDecision] = None
    total_decisions: int = 0
    buy_count: int = 0
    sell_count: int = 0
    hold_count: int = 0

    def add(self, decision: TradingDecision, retention: int = DEFAULT_RETENTION) -> None:
        self.decisions.append(decision)
        self.last_decision = decision
        self.total_decisions += 1
        if decision.action is TradeAction.BUY:
            self.buy_count += 1
        elif decision.action is TradeAction.SELL:
            self.sell_count += 1
        elif decision.action is TradeAction.HOLD:
            self.hold_count += 1
        if len(self.decisions) > retention:
            self.decisions = self.decisions[-retention:]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "decisions": [d.to_dict() for d in self.decisions],
            "last_decision": self.last_decision.to_dict() if self.last_decision else None,
            "total_decisions": self.total_decisions,
            "buy_count": self.buy_count,
            "sell_count": self.sell_count,
            "hold_count": self.hold_count,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SymbolHistory":
        last = data.get("last_decision")
        return cls(
            symbol=data["symbol"],
            decisions=[TradingDecision.from_dict(d) for d in data.get("decisions", [])],
            last_decision=TradingDecision.from_dict(last) if last else None,
            total_decisions=int(data.get("total_decisions", 0)),
            buy_count=int(data.get("buy_count", 0)),
            sell_count=int(data.get("sell_count", 0)),
            hold_count=int(data.get("hold_count", 0)),
        )


@dataclass
class TradingState:
    """Process-wide decision state persisted as one JSON document."""
    symbols: Dict[str, SymbolHistory] = field(default_factory=dict)
    last_updated: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    total_runs: int = 0
    pending: Dict[str, Dict[str, Any]] = field(default_factory=dict)  # symbol -> write-ahead record

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbols": {sym: hist.to_dict() for sym, hist in self.symbols.items()},
            "last_updated": _iso(self.last_updated),
            "total_runs": self.total_runs,
            "pending": self.pending,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TradingState":
        return cls(
            symbols={sym: SymbolHistory.from_dict(h) for sym, h in (data.get("symbols") or {}).items()},
            last_updated=_parse_ts(data.get("last_updated")) or datetime.now(timezone.utc),
            total_runs=int(data.get("total_runs", 0)),
            pending=dict(data.get("pending") or {}),
        )


class DecisionStore:
    """
    Persistent decision history using a JSON file.

    Features:
    - Atomic writes (temp file + rename)
    - Corrupt/missing file falls back to a fresh state
    - Idempotency index by candle close time
    - Write-ahead pending records around trade execution
    """

    def __init__(self, state_file: Optional[str] = None, retention: int = DEFAULT_RETENTION):
        """
        Initialize decision store.

        Args:
            state_file: Path to state JSON file (default: data/trading_state.json)
            retention: Decisions kept per symbol
        """
        if state_file:
            self.state_file = Path(state_file)
        else:
            self.state_file = Path(os.getenv("TRADING_STATE_FILE", "data/trading_state.json"))
        self.retention = retention

        self.state_file.parent.mkdir(parents=True, exist_ok=True)
        self.state = TradingState()
        logger.info(f"Initialized DecisionStore at {self.state_file}")

    def load(self) -> TradingState:
        """Load state from file; never raises."""
        if not self.state_file.exists():
            logger.info("No trading state found, starting fresh")
            self.state = TradingState()
            return self.state

        try:
            with open(self.state_file, "r", encoding="utf-8") as f:
                data = json.load(f)
            if not isinstance(data, dict):
                raise ValueError("state root is not an object")
            self.state = TradingState.from_dict(data)
            logger.info(
                f"Loaded trading state: {len(self.state.symbols)} symbols, "
                f"{self.state.total_runs} runs"
            )
        except Exception as e:
            logger.error(f"Failed to load trading state from {self.state_file}: {e}; starting fresh")
            self.state = TradingState()
        return self.state

    def save(self) -> None:
        """Save state to file atomically."""
        self.state.last_updated = datetime.now(timezone.utc)
        temp_fd, temp_path = tempfile.mkstemp(
            dir=self.state_file.parent,
            prefix=".trading_state_",
            suffix=".json.tmp",
        )
        try:
            with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
                json.dump(self.state.to_dict(), f, indent=2)
            os.replace(temp_path, self.state_file)
        except Exception:
            if os.path.exists(temp_path):
                os.remove(temp_path)
            raise
        logger.debug("Saved trading state")

    def backup(self) -> Optional[Path]:
        """Copy the state file to a timestamped backup."""
        if not self.state_file.exists():
            return None
        stamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
        backup_path = Path(f"{self.state_file}.backup.{stamp}")
        shutil.copy2(self.state_file, backup_path)
        logger.info(f"Backed up trading state to {backup_path}")
        return backup_path

    # ---------------------------------------------------------------- decisions

    def get_history(self, symbol: str) -> Optional[SymbolHistory]:
        return self.state.symbols.get(symbol)

    def add_decision(self, decision: TradingDecision) -> None:
        """Append a decision, clear its pending record and persist."""
        history = self.state.symbols.get(decision.symbol)
        if history is None:
            history = SymbolHistory(symbol=decision.symbol)
            self.state.symbols[decision.symbol] = history
        history.add(decision, self.retention)
        self.state.pending.pop(decision.symbol, None)
        self.save()
        logger.info(
            f"Recorded {decision.action.label} for {decision.symbol} "
            f"(confidence {decision.confidence}%, price_ts={decision.price_timestamp})"
        )

    def has_decision_for_timestamp(self, symbol: str, price_timestamp: Optional[int]) -> bool:
        """True if a decision (or an unresolved pending execution) exists for this candle."""
        if price_timestamp is None:
            return False
        pending = self.state.pending.get(symbol)
        if pending and pending.get("price_timestamp") == price_timestamp:
            return True
        history = self.state.symbols.get(symbol)
        if history is None:
            return False
        return any(d.price_timestamp == price_timestamp for d in history.decisions)

    def get_latest_price_timestamp(self, symbol: str) -> Optional[int]:
        history = self.state.symbols.get(symbol)
        if history is None:
            return None
        stamps = [d.price_timestamp for d in history.decisions if d.price_timestamp is not None]
        return max(stamps) if stamps else None

    def increment_runs(self) -> int:
        self.state.total_runs += 1
        self.save()
        return self.state.total_runs

    # ---------------------------------------------------------------- write-ahead

    def mark_pending(self, symbol: str, price_timestamp: Optional[int],
                     action: TradeAction, amount: Optional[float]) -> None:
        """Persist intent to execute before the order is sent."""
        self.state.pending[symbol] = {
            "price_timestamp": price_timestamp,
            "action": action.value,
            "amount": amount,
            "created_at": datetime.now(timezone.utc).isoformat(),
        }
        self.save()

    def clear_pending(self, symbol: str) -> None:
        if self.state.pending.pop(symbol, None) is not None:
            self.save()

    def resolve_stale_pending(self, symbol: str, latest_price_timestamp: Optional[int]) -> Optional[Dict[str, Any]]:
        """
        Drop a pending record left by an interrupted run once the market has moved on.

        Returns:
            The dropped record, or None
        """
        pending = self.state.pending.get(symbol)
        if not pending or latest_price_timestamp is None:
            return None
        if pending.get("price_timestamp") == latest_price_timestamp:
            return None
        logger.warning(
            f"Dropping unresolved pending {pending.get('action')} for {symbol} "
            f"(price_ts={pending.get('price_timestamp')}); verify the exchange fill manually"
        )
        self.clear_pending(symbol)
        return pending

    # ---------------------------------------------------------------- context

    def context_summary(self, symbol: str) -> str:
        """Human-readable decision history consumed by the reasoning backend."""
        history = self.state.symbols.get(symbol)
        if history is None or history.last_decision is None:
            return f"\n📊 TRADING HISTORY FOR {symbol}:\n  • No previous decisions found\n"

        last = history.last_decision
        lines = [
            "",
            f"📊 TRADING HISTORY FOR {symbol}:",
            f"  • Total decisions: {history.total_decisions} "
            f"(Buy: {history.buy_count}, Sell: {history.sell_count}, Hold: {history.hold_count})",
            f"  • Last decision: {last.action.label} (Confidence: {last.confidence}%) "
            f"at {last.timestamp.strftime('%Y-%m-%d %H:%M:%S')} UTC",
            f"  • Last explanation: {last.explanation}",
        ]
        if last.price_at_decision is not None:
            lines.append(f"  • Price at last decision: ${last.price_at_decision:.4f}")

        if len(history.decisions) > 1:
            lines.append("  • Recent decisions:")
            for d in reversed(history.decisions[-3:]):
                lines.append(
                    f"    - {d.action.label} ({d.confidence}%) on {d.timestamp.strftime('%m-%d %H:%M')}"
                )
        return "\n".join(lines) + "\n"
