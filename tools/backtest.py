#!/usr/bin/env python3
"""
Replay stored candles through the reasoning backend and score its decisions.

Each sampled candle becomes a one-turn prompt built from the trailing window
of stored candles. The returned buy/sell/hold is scored against what the
market did over the following 30m, 1h and 2h, and an all-in/all-out paper
portfolio is simulated per horizon.

Usage:
    python -m tools.backtest --from 2024-10-01 --to 2024-10-02
    python -m tools.backtest --symbol ETHUSDC --from 2024-10-01 --to 2024-10-01 --step 6
"""
import argparse
import asyncio
import logging
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, Tuple

from ai.llm_client import TOOL_SCHEMAS, create_reasoning_client
from ai.prompts import SYSTEM_MESSAGE
from ai.schemas import TradeAction, normalize_confidence
from core.data_store import MarketDataStore, parse_start_date
from core.exceptions import ConfigurationError
from core.market_data import Candle, format_klines
from infra.symbols import normalize_pair
from tools.config_validator import load_settings

logger = logging.getLogger(__name__)

HORIZONS: Tuple[Tuple[str, int], ...] = (("30m", 30), ("1h", 60), ("2h", 120))
FATAL_LOSS_PCT = -3.0
HOLD_BAND_PCT = 1.0
DAY_MS = 86_400_000

_UNIT_MINUTES = {"m": 1, "h": 60, "d": 1440, "w": 10080, "M": 43200}


def interval_minutes(interval: str) -> int:
    """Length of a candle interval such as "5m" or "1h" in minutes."""
    try:
        minutes = int(interval[:-1]) * _UNIT_MINUTES[interval[-1]]
    except (ValueError, KeyError, IndexError, TypeError):
        raise ValueError(f"Unsupported candle interval {interval!r}") from None
    if minutes <= 0:
        raise ValueError(f"Unsupported candle interval {interval!r}")
    return minutes


def horizon_steps(interval: str, minutes: int) -> int:
    """Number of candles covering `minutes` (at least one)."""
    return max(1, round(minutes / interval_minutes(interval)))


def _fmt_ms(ms: int, fmt: str = "%Y-%m-%d %H:%M") -> str:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).strftime(fmt)


# ─── Scoring ───────────────────────────────────────────────────────────────

@dataclass
class HorizonOutcome:
    """How one decision played out over one horizon."""
    reference_price: float  # best high for buys, best low for sells, exit close for holds
    exit_price: float
    correct: bool
    profit_pct: float

    @property
    def fatal(self) -> bool:
        return self.profit_pct < FATAL_LOSS_PCT


def evaluate_decision(action: TradeAction, price: float, future: Sequence[Candle],
                      steps: int) -> Optional[HorizonOutcome]:
    """
    Score a decision against the next `steps` candles.

    A buy is right when any later high beats the entry price, a sell when
    any later low undercuts it, and a hold when the close at the end of the
    horizon stays within HOLD_BAND_PCT of the entry.

    Returns:
        HorizonOutcome, or None when fewer than `steps` candles follow
    """
    if steps < 1 or len(future) < steps or price <= 0:
        return None

    window = future[:steps]
    exit_price = window[-1].close

    if action is TradeAction.BUY:
        best = max(c.high for c in window)
        return HorizonOutcome(best, exit_price, best > price, (best - price) / price * 100.0)
    if action is TradeAction.SELL:
        best = min(c.low for c in window)
        return HorizonOutcome(best, exit_price, best < price, (price - best) / price * 100.0)

    change_pct = abs(exit_price - price) / price * 100.0
    return HorizonOutcome(exit_price, exit_price, change_pct < HOLD_BAND_PCT, 0.0)


@dataclass
class ReplayDecision:
    """One backend decision on a historical candle."""
    open_time: int
    price: float
    action: TradeAction
    confidence: int
    explanation: str = ""
    outcomes: Dict[str, HorizonOutcome] = field(default_factory=dict)


class PortfolioSimulation:
    """All-in / all-out paper portfolio valued at each horizon's exit close."""

    def __init__(self, initial_value: float):
        self.initial_value = initial_value
        self.cash = initial_value
        self.crypto = 0.0
        self.value = initial_value
        self.trades = 0

    def apply(self, action: TradeAction, price: float, exit_price: float) -> None:
        if action is TradeAction.BUY and self.cash > 0:
            self.crypto = self.cash / price
            self.cash = 0.0
            self.trades += 1
        elif action is TradeAction.SELL and self.crypto > 0:
            self.cash = self.crypto * price
            self.crypto = 0.0
            self.trades += 1
        self.value = self.cash + self.crypto * exit_price

    @property
    def return_pct(self) -> float:
        if not self.initial_value:
            return 0.0
        return (self.value - self.initial_value) / self.initial_value * 100.0


def _pct(part: int, whole: int) -> float:
    return part / whole * 100.0 if whole else 0.0


@dataclass
class HorizonStats:
    """Aggregate scores for one horizon."""
    label: str
    evaluated: int = 0
    correct: int = 0
    buys: int = 0
    good_buys: int = 0
    fatal_buys: int = 0
    sells: int = 0
    good_sells: int = 0
    fatal_sells: int = 0
    profitable: int = 0
    losing: int = 0
    total_profit_pct: float = 0.0
    best_profit_pct: float = 0.0
    worst_profit_pct: float = 0.0
    final_value: float = 0.0
    return_pct: float = 0.0
    trades: int = 0

    @property
    def accuracy(self) -> float:
        return _pct(self.correct, self.evaluated)

    @property
    def buy_accuracy(self) -> float:
        return _pct(self.good_buys, self.buys)

    @property
    def sell_accuracy(self) -> float:
        return _pct(self.good_sells, self.sells)

    @property
    def average_profit_pct(self) -> float:
        return self.total_profit_pct / self.evaluated if self.evaluated else 0.0


def horizon_stats(label: str, decisions: Sequence[ReplayDecision], initial_value: float) -> HorizonStats:
    """Score every decision that has an outcome for `label` and simulate the portfolio."""
    stats = HorizonStats(label=label, final_value=initial_value)
    portfolio = PortfolioSimulation(initial_value)
    profits: List[float] = []

    for d in decisions:
        outcome = d.outcomes.get(label)
        if outcome is None:
            continue
        stats.evaluated += 1
        stats.correct += int(outcome.correct)
        if d.action is TradeAction.BUY:
            stats.buys += 1
            stats.good_buys += int(outcome.correct)
            stats.fatal_buys += int(outcome.fatal)
        elif d.action is TradeAction.SELL:
            stats.sells += 1
            stats.good_sells += int(outcome.correct)
            stats.fatal_sells += int(outcome.fatal)
        profits.append(outcome.profit_pct)
        portfolio.apply(d.action, d.price, outcome.exit_price)

    if profits:
        stats.total_profit_pct = sum(profits)
        stats.best_profit_pct = max(profits)
        stats.worst_profit_pct = min(profits)
        stats.profitable = sum(1 for p in profits if p > 0)
        stats.losing = sum(1 for p in profits if p < 0)

    stats.final_value = portfolio.value
    stats.return_pct = portfolio.return_pct
    stats.trades = portfolio.trades
    return stats


@dataclass
class BacktestReport:
    symbol: str
    model: str
    period_from: str
    period_to: str
    initial_value: float
    decisions: List[ReplayDecision]
    failures: int
    horizons: List[HorizonStats]

    def count(self, action: TradeAction) -> int:
        return sum(1 for d in self.decisions if d.action is action)


def build_report(symbol: str, model: str, period_from: str, period_to: str,
                 decisions: List[ReplayDecision], failures: int,
                 initial_value: float = 1000.0) -> BacktestReport:
    return BacktestReport(
        symbol=symbol,
        model=model,
        period_from=period_from,
        period_to=period_to,
        initial_value=initial_value,
        decisions=decisions,
        failures=failures,
        horizons=[horizon_stats(label, decisions, initial_value) for label, _ in HORIZONS],
    )


# ─── Replay ────────────────────────────────────────────────────────────────

def build_replay_message(symbol: str, history: Sequence[Candle]) -> str:
    """One-turn prompt for the newest candle in `history`."""
    current = history[-1]
    return (
        f"Analyze {symbol} and decide: buy, sell or hold.\n"
        f"This is a historical replay as of {_fmt_ms(current.close_time)} UTC. "
        "You have exactly one turn.\n\n"
        f"Current price: {current.close:.8f}\n"
        f"📈 **MARKET DATA ({symbol}):**\n{format_klines(list(history), limit=len(history))}\n\n"
        "Invoke exactly one of the buy, sell or hold tools now."
    )


class BacktestRunner:
    """Asks the backend for one decision per sampled candle and scores it."""

    def __init__(self, client, interval: str = "5m", window: int = 20, step: int = 1,
                 turn_timeout_s: float = 120.0, request_delay_s: float = 0.1):
        if window < 1 or step < 1:
            raise ValueError("window and step must be at least 1")
        self.client = client
        self.interval = interval
        self.window = window
        self.step = step
        self.turn_timeout_s = turn_timeout_s
        self.request_delay_s = request_delay_s
        self.steps = {label: horizon_steps(interval, minutes) for label, minutes in HORIZONS}

    async def decide(self, symbol: str, history: Sequence[Candle]) -> Optional[Tuple[TradeAction, int, str]]:
        """First buy/sell/hold tool call of a single backend turn, if any."""
        messages = [
            {"role": "system", "content": SYSTEM_MESSAGE},
            {"role": "user", "content": build_replay_message(symbol, history)},
        ]
        response = await asyncio.wait_for(
            self.client.complete(messages, TOOL_SCHEMAS),
            timeout=self.turn_timeout_s,
        )
        for call in response.tool_calls:
            try:
                action = TradeAction.from_tool_name(call.name)
            except ValueError:
                continue
            return (
                action,
                normalize_confidence(call.arguments.get("confidence", 0)),
                str(call.arguments.get("explanation", "")),
            )
        return None

    async def run(self, symbol: str, candles: Sequence[Candle], start_ms: int,
                  end_ms: int) -> Tuple[List[ReplayDecision], int]:
        """
        Replay candles whose open_time falls in [start_ms, end_ms].

        Candles outside the range still serve as lookback and as future
        prices for scoring.

        Returns:
            (decisions, number of candles without a usable decision)
        """
        indices = [i for i, c in enumerate(candles) if start_ms <= c.open_time <= end_ms][::self.step]
        lookahead = max(self.steps.values())
        decisions: List[ReplayDecision] = []
        failures = 0

        logger.info(f"Replaying {len(indices)} candles for {symbol}")
        for n, i in enumerate(indices):
            candle = candles[i]
            history = candles[max(0, i - self.window + 1):i + 1]
            try:
                picked = await self.decide(symbol, history)
            except Exception as e:
                logger.warning(f"Reasoning backend failed at {_fmt_ms(candle.open_time)}: {e!r}")
                picked = None

            if picked is None:
                failures += 1
            else:
                action, confidence, explanation = picked
                decision = ReplayDecision(candle.open_time, candle.close, action, confidence, explanation)
                future = candles[i + 1:i + 1 + lookahead]
                for label, steps in self.steps.items():
                    outcome = evaluate_decision(action, candle.close, future, steps)
                    if outcome is not None:
                        decision.outcomes[label] = outcome
                decisions.append(decision)
                logger.info(
                    f"{_fmt_ms(candle.open_time)} {action.label} ({confidence}%) @ {candle.close:.4f}"
                )

            if self.request_delay_s and n < len(indices) - 1:
                await asyncio.sleep(self.request_delay_s)

        return decisions, failures


# ─── Report ────────────────────────────────────────────────────────────────

def render(report: BacktestReport) -> str:
    total = len(report.decisions)
    lines = ["", "=" * 60, f"TURNTRADER BACKTEST: {report.symbol}", "=" * 60]
    lines.append(f"  Model:                   {report.model}")
    lines.append(f"  Period:                  {report.period_from} to {report.period_to}")
    lines.append(
        f"  Decisions:               {total} (buy {report.count(TradeAction.BUY)}, "
        f"sell {report.count(TradeAction.SELL)}, hold {report.count(TradeAction.HOLD)})"
    )
    lines.append(f"  Without decision:        {report.failures}")

    for h in report.horizons:
        lines.append(f"\nHORIZON {h.label}:")
        if not h.evaluated:
            lines.append("  Not enough future candles to evaluate")
            continue
        lines.append(f"  Accuracy:                {h.accuracy:.1f}% ({h.correct}/{h.evaluated})")
        lines.append(f"  Buy accuracy:            {h.buy_accuracy:.1f}% ({h.good_buys}/{h.buys})")
        lines.append(f"  Sell accuracy:           {h.sell_accuracy:.1f}% ({h.good_sells}/{h.sells})")
        lines.append(f"  P&L total / avg:         {h.total_profit_pct:+.2f}% / {h.average_profit_pct:+.2f}%")
        lines.append(f"  Best / worst:            {h.best_profit_pct:+.2f}% / {h.worst_profit_pct:+.2f}%")
        lines.append(f"  Profitable / losing:     {h.profitable} / {h.losing}")
        lines.append(f"  Fatal buys / sells:      {h.fatal_buys} / {h.fatal_sells}")
        lines.append(
            f"  Portfolio:               ${report.initial_value:.2f} -> ${h.final_value:.2f} "
            f"({h.return_pct:+.2f}%, {h.trades} trades)"
        )

    if report.decisions:
        labels = [label for label, _ in HORIZONS]
        lines.append("\nDECISIONS:")
        lines.append(f"  {'TIME':<12} {'PRICE':>12} {'ACTION':<6} {'CONF':>5}  " + "  ".join(f"{label:>9}" for label in labels))
        for d in report.decisions:
            cells = []
            for label in labels:
                outcome = d.outcomes.get(label)
                if outcome is None:
                    cells.append(f"{'-':>9}")
                else:
                    mark = "✅" if outcome.correct else "❌"
                    cells.append(f"{outcome.profit_pct:+7.2f}%{mark}")
            lines.append(
                f"  {_fmt_ms(d.open_time, '%m-%d %H:%M'):<12} {d.price:>12.4f} {d.action.label:<6} "
                f"{d.confidence:>4}%  " + "  ".join(cells)
            )
    lines.append("=" * 60)
    return "\n".join(lines)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Replay stored candles through the reasoning backend")
    parser.add_argument("--config-dir", default="config", help="Config directory")
    parser.add_argument("--symbol", default=None, help="Pair to replay (default: first configured pair)")
    parser.add_argument("--from", dest="date_from", required=True, help="First day, YYYY-MM-DD")
    parser.add_argument("--to", dest="date_to", required=True, help="Last day (inclusive), YYYY-MM-DD")
    parser.add_argument("--step", type=int, default=1, help="Ask for a decision every N candles")
    parser.add_argument("--window", type=int, default=20, help="Candles of lookback in each prompt")
    parser.add_argument("--initial", type=float, default=1000.0, help="Simulated starting capital")
    parser.add_argument("--delay", type=float, default=0.1, help="Seconds between backend requests")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    settings = load_settings(args.config_dir)
    symbol = normalize_pair(args.symbol) if args.symbol else settings.pairs()[0]
    try:
        start_ms = parse_start_date(args.date_from)
        end_ms = parse_start_date(args.date_to) + DAY_MS - 1
    except ConfigurationError as e:
        print(f"❌ {e}")
        return 2
    if end_ms < start_ms:
        print(f"❌ --to {args.date_to} is before --from {args.date_from}")
        return 2

    store = MarketDataStore(
        None,
        data_dir=settings.data.dir,
        interval=settings.trading.interval,
        backfill_start=settings.data.backfill_start_date,
    )
    candles = store.get_klines(symbol)
    if not candles:
        print(f"❌ No stored candles for {symbol}, run tools.collect_data first")
        return 1

    client = create_reasoning_client(
        base_url=settings.llm.base_url,
        api_key=settings.llm.api_key,
        model=settings.llm.model,
        timeout_s=settings.llm.turn_timeout_s,
        temperature=settings.llm.temperature,
    )
    runner = BacktestRunner(
        client,
        interval=settings.trading.interval,
        window=args.window,
        step=args.step,
        turn_timeout_s=settings.llm.turn_timeout_s,
        request_delay_s=args.delay,
    )
    decisions, failures = asyncio.run(runner.run(symbol, candles, start_ms, end_ms))

    report = build_report(symbol, settings.llm.model, args.date_from, args.date_to,
                          decisions, failures, initial_value=args.initial)
    print(render(report))
    return 0 if decisions else 1


if __name__ == "__main__":
    sys.exit(main())
