"""
turntrader Core: Position Ledger

Weighted-average-cost accounting for executed trades. The append-only
transaction log (JSONL) is the source of truth; positions are rebuilt from it
on load and updated incrementally as new trades are recorded.
"""

import asyncio
import json
from dataclasses import dataclass, asdict, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Tuple
import logging

from infra.symbols import extract_asset_from_pair, normalize_pair

logger = logging.getLogger(__name__)

# Positions below this amount are treated as closed.
POSITION_EPSILON = 1e-4


@dataclass
class AssetPosition:
    """Running cost basis for one asset."""
    asset: str
    total_amount: float = 0.0
    average_buy_price: float = 0.0
    total_invested: float = 0.0


@dataclass
class Transaction:
    """One executed trade (append-only log entry)."""
    date: str
    time: str
    asset: str
    pair: str
    transaction_type: str  # BUY / SELL
    amount: float
    price_per_unit: float
    amount_in_usd: float
    profit: Optional[float] = None
    profit_in_usd: Optional[float] = None
    profit_percent: Optional[float] = None
    total_asset: float = 0.0
    total_asset_worth_usd: float = 0.0

    @property
    def is_sell(self) -> bool:
        return self.transaction_type == "SELL"

    @property
    def executed_at(self) -> datetime:
        try:
            return datetime.strptime(f"{self.date} {self.time}", "%Y-%m-%d %H:%M:%S").replace(tzinfo=timezone.utc)
        except ValueError:
            return datetime.min.replace(tzinfo=timezone.utc)

    @classmethod
    def from_dict(cls, data: dict) -> "Transaction":
        return cls(
            date=str(data["date"]),
            time=str(data["time"]),
            asset=str(data["asset"]),
            pair=str(data["pair"]),
            transaction_type=str(data["transaction_type"]).upper(),
            amount=float(data["amount"]),
            price_per_unit=float(data["price_per_unit"]),
            amount_in_usd=float(data.get("amount_in_usd", float(data["amount"]) * float(data["price_per_unit"]))),
            profit=_opt_float(data.get("profit")),
            profit_in_usd=_opt_float(data.get("profit_in_usd")),
            profit_percent=_opt_float(data.get("profit_percent")),
            total_asset=float(data.get("total_asset", 0.0) or 0.0),
            total_asset_worth_usd=float(data.get("total_asset_worth_usd", 0.0) or 0.0),
        )


def _opt_float(value) -> Optional[float]:
    return None if value is None else float(value)


class Ledger:
    """
    Position ledger with an append-only transaction log.

    One instance is constructed by the runner and passed to the executor.
    All mutations that touch both positions and the log go through
    record_buy/record_sell, which hold the ledger's lock so the
    read-position / compute / append / write-position sequence is atomic.
    """

    def __init__(self, transactions_file: str = "data/transactions.jsonl"):
        self.transactions_file = Path(transactions_file)
        self._positions: Dict[str, AssetPosition] = {}
        self._transactions: List[Transaction] = []
        self._lock = asyncio.Lock()

    # ---------------------------------------------------------------- persistence

    def load(self) -> int:
        """
        Rebuild positions by replaying the transaction log in order.

        Returns:
            Number of transactions replayed
        """
        self._positions = {}
        self._transactions = []

        if not self.transactions_file.exists():
            logger.info(f"No transaction log at {self.transactions_file}, starting empty ledger")
            return 0

        parsed: List[Transaction] = []
        with open(self.transactions_file, "r", encoding="utf-8") as f:
            for lineno, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    tx = Transaction.from_dict(json.loads(line))
                except (ValueError, KeyError, TypeError) as e:
                    logger.warning(f"Skipping malformed transaction at line {lineno}: {e}")
                    continue
                if tx.transaction_type not in ("BUY", "SELL"):
                    logger.warning(f"Unknown transaction type at line {lineno}: {tx.transaction_type}")
                    continue
                parsed.append(tx)

        # Stable sort: same-second trades keep their log order.
        for tx in sorted(parsed, key=lambda t: t.executed_at):
            if tx.is_sell:
                self.apply_sell(tx.asset, tx.amount, tx.price_per_unit)
            else:
                self.apply_buy(tx.asset, tx.amount, tx.price_per_unit)
            self._transactions.append(tx)

        logger.info(
            f"Replayed {len(self._transactions)} transactions, "
            f"{len(self._positions)} open positions"
        )
        return len(self._transactions)

    def _append(self, tx: Transaction) -> None:
        self.transactions_file.parent.mkdir(parents=True, exist_ok=True)
        with open(self.transactions_file, "a", encoding="utf-8") as f:
            f.write(json.dumps(asdict(tx)) + "\n")
        self._transactions.append(tx)

    # ---------------------------------------------------------------- position math

    def apply_buy(self, asset: str, amount: float, price: float) -> AssetPosition:
        """Add to a position, updating the weighted-average cost."""
        pos = self._positions.get(asset)
        if pos is None:
            pos = AssetPosition(asset=asset)
            self._positions[asset] = pos

        pos.total_invested += amount * price
        pos.total_amount += amount
        if pos.total_amount > 0:
            pos.average_buy_price = pos.total_invested / pos.total_amount
        return pos

    def apply_sell(self, asset: str, amount: float, price: float) -> Tuple[float, float]:
        """
        Reduce a position and compute realized profit against its average cost.

        A sell with no recorded position is treated as break-even.

        Returns:
            (profit_usd, profit_percent)
        """
        pos = self._positions.get(asset)
        if pos is None or pos.total_amount <= 0:
            return 0.0, 0.0

        cost_basis = pos.average_buy_price * amount
        profit = (price - pos.average_buy_price) * amount
        profit_pct = (profit / cost_basis * 100.0) if cost_basis > 0 else 0.0

        sold = min(amount, pos.total_amount)
        fraction = sold / pos.total_amount
        pos.total_invested -= pos.total_invested * fraction
        pos.total_amount -= sold

        if pos.total_amount < POSITION_EPSILON:
            del self._positions[asset]

        return profit, profit_pct

    # ---------------------------------------------------------------- recording

    async def record_buy(self, pair: str, amount: float, price: float,
                         executed_at: Optional[datetime] = None) -> Transaction:
        async with self._lock:
            return self._record("BUY", pair, amount, price, executed_at)

    async def record_sell(self, pair: str, amount: float, price: float,
                          executed_at: Optional[datetime] = None) -> Transaction:
        async with self._lock:
            return self._record("SELL", pair, amount, price, executed_at)

    def _record(self, side: str, pair: str, amount: float, price: float,
                executed_at: Optional[datetime]) -> Transaction:
        pair = normalize_pair(pair)
        asset = extract_asset_from_pair(pair)
        now = executed_at or datetime.now(timezone.utc)

        profit = profit_pct = None
        if side == "BUY":
            self.apply_buy(asset, amount, price)
        else:
            profit, profit_pct = self.apply_sell(asset, amount, price)

        pos = self._positions.get(asset)
        held = pos.total_amount if pos else 0.0

        tx = Transaction(
            date=now.strftime("%Y-%m-%d"),
            time=now.strftime("%H:%M:%S"),
            asset=asset,
            pair=pair,
            transaction_type=side,
            amount=amount,
            price_per_unit=price,
            amount_in_usd=amount * price,
            profit=profit,
            profit_in_usd=profit,
            profit_percent=profit_pct,
            total_asset=held,
            total_asset_worth_usd=held * price,
        )
        self._append(tx)

        if profit is not None:
            logger.info(
                f"Recorded SELL {amount} {asset} @ {price:.4f} "
                f"(profit ${profit:.2f}, {profit_pct:+.2f}%)"
            )
        else:
            logger.info(f"Recorded BUY {amount} {asset} @ {price:.4f} (holding {held})")
        return tx

    # ---------------------------------------------------------------- queries

    def position(self, asset: str) -> Optional[AssetPosition]:
        return self._positions.get(asset)

    def positions(self) -> Dict[str, AssetPosition]:
        return dict(self._positions)

    def transactions(self, pair: Optional[str] = None, limit: Optional[int] = None) -> List[Transaction]:
        """Transactions in log order, optionally filtered by pair and trimmed to the last `limit`."""
        txs = self._transactions
        if pair:
            wanted = normalize_pair(pair)
            txs = [t for t in txs if t.pair == wanted]
        if limit is not None:
            txs = txs[-limit:] if limit > 0 else []
        return list(txs)

    def total_portfolio_value_usd(self, prices: Dict[str, float]) -> float:
        """Value open positions at the given asset -> price map (missing prices count as 0)."""
        return sum(pos.total_amount * prices.get(asset, 0.0) for asset, pos in self._positions.items())

    def total_profit_usd(self) -> float:
        return sum(t.profit_in_usd or 0.0 for t in self._transactions if t.is_sell)

    def format_recent_transactions(self, pair: Optional[str] = None, limit: int = 10) -> str:
        """Most recent transactions (newest first) rendered for the reasoning backend."""
        txs = self.transactions(pair=pair, limit=limit)
        if not txs:
            return "📋 **RECENT TRANSACTIONS:** No recent transactions found.\n"

        lines = ["📋 **RECENT TRANSACTIONS:**"]
        for i, tx in enumerate(reversed(txs), start=1):
            marker = "🔴" if tx.is_sell else "🟢"
            line = (
                f"{i}. {marker} {tx.transaction_type} {tx.amount} {tx.pair} "
                f"at {tx.price_per_unit} ({tx.date} {tx.time})"
            )
            if tx.is_sell and tx.profit_in_usd is not None:
                line += f" | P&L: ${tx.profit_in_usd:+.2f} ({(tx.profit_percent or 0.0):+.2f}%)"
            lines.append(line)

        lines.append("")
        lines.append("Use this transaction history to understand recent trading patterns and make informed decisions.")
        return "\n".join(lines) + "\n"
