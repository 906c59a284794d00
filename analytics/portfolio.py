"""
turntrader Analytics: Portfolio Snapshots

One valuation of the whole account per trading run, appended to a JSONL log:
every non-zero balance priced in USDC and BTC with its portfolio weight.
"""

import asyncio
import json
from dataclasses import dataclass, asdict, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional
import logging

from infra.symbols import STABLE_ASSETS

logger = logging.getLogger(__name__)


@dataclass
class AssetValue:
    asset: str
    balance: float
    price_usdc: float
    value_usdc: float
    price_btc: float
    value_btc: float
    percentage_of_portfolio: float = 0.0


@dataclass
class PortfolioSnapshot:
    """Point-in-time account valuation."""
    timestamp: datetime
    run_number: int
    btc_price_usdc: float
    total_value_usdc: float
    total_value_btc: float
    assets: List[AssetValue] = field(default_factory=list)
    asset_count: int = 0

    def to_dict(self) -> dict:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "PortfolioSnapshot":
        ts = datetime.fromisoformat(str(data["timestamp"]).replace("Z", "+00:00"))
        if ts.tzinfo is None:
            ts = ts.replace(tzinfo=timezone.utc)
        assets = [AssetValue(**a) for a in data.get("assets", [])]
        return cls(
            timestamp=ts,
            run_number=int(data.get("run_number", 0)),
            btc_price_usdc=float(data.get("btc_price_usdc", 0.0)),
            total_value_usdc=float(data.get("total_value_usdc", 0.0)),
            total_value_btc=float(data.get("total_value_btc", 0.0)),
            assets=assets,
            asset_count=int(data.get("asset_count", len(assets))),
        )


@dataclass
class PortfolioSummary:
    total_snapshots: int
    first_snapshot: datetime
    latest_snapshot: datetime
    current_value_usdc: float
    current_value_btc: float
    value_change_usdc: float
    value_change_percent: float
    current_btc_price: float
    btc_change_percent: float
    current_asset_count: int


def asset_price_usdc(asset: str, prices: Dict[str, float]) -> float:
    """Price an asset via its USDC pair, then USDT; stablecoins are 1, unknown is 0."""
    if asset in STABLE_ASSETS:
        return 1.0
    for quote in ("USDC", "USDT"):
        price = prices.get(f"{asset}{quote}")
        if price:
            return float(price)
    return 0.0


def build_snapshot(balances: List[Dict], prices: Dict[str, float], run_number: int,
                   timestamp: Optional[datetime] = None) -> PortfolioSnapshot:
    """
    Value balances against a pair -> price map.

    Args:
        balances: [{"asset": "BTC", "total": 0.1, ...}, ...]
        prices: Exchange pair -> last price (e.g. {"BTCUSDC": 50000.0})
        run_number: Trading run that produced the snapshot
    """
    btc_price = asset_price_usdc("BTC", prices)
    assets: List[AssetValue] = []
    for bal in balances:
        amount = float(bal.get("total", 0.0) or 0.0)
        if amount <= 0:
            continue
        asset = bal["asset"]
        price = asset_price_usdc(asset, prices)
        value = amount * price
        assets.append(AssetValue(
            asset=asset,
            balance=amount,
            price_usdc=price,
            value_usdc=value,
            price_btc=price / btc_price if btc_price > 0 else 0.0,
            value_btc=value / btc_price if btc_price > 0 else 0.0,
        ))

    total_usdc = sum(a.value_usdc for a in assets)
    for a in assets:
        a.percentage_of_portfolio = (a.value_usdc / total_usdc * 100.0) if total_usdc > 0 else 0.0
    assets.sort(key=lambda a: a.value_usdc, reverse=True)

    return PortfolioSnapshot(
        timestamp=timestamp or datetime.now(timezone.utc),
        run_number=run_number,
        btc_price_usdc=btc_price,
        total_value_usdc=total_usdc,
        total_value_btc=total_usdc / btc_price if btc_price > 0 else 0.0,
        assets=assets,
        asset_count=len(assets),
    )


def summarize(history: List[PortfolioSnapshot]) -> Optional[PortfolioSummary]:
    """Compare the first and latest snapshot of a (time-sorted) history."""
    if not history:
        return None
    first, latest = history[0], history[-1]
    change = latest.total_value_usdc - first.total_value_usdc
    change_pct = (change / first.total_value_usdc * 100.0) if first.total_value_usdc > 0 else 0.0
    btc_change_pct = (
        (latest.btc_price_usdc - first.btc_price_usdc) / first.btc_price_usdc * 100.0
        if first.btc_price_usdc > 0 else 0.0
    )
    return PortfolioSummary(
        total_snapshots=len(history),
        first_snapshot=first.timestamp,
        latest_snapshot=latest.timestamp,
        current_value_usdc=latest.total_value_usdc,
        current_value_btc=latest.total_value_btc,
        value_change_usdc=change,
        value_change_percent=change_pct,
        current_btc_price=latest.btc_price_usdc,
        btc_change_percent=btc_change_pct,
        current_asset_count=latest.asset_count,
    )


class PortfolioTracker:
    """
    Appends one PortfolioSnapshot per run to a JSONL log.

    Output format: JSONL (one JSON object per line)
    """

    def __init__(self, exchange, snapshot_file: str = "data/portfolio.jsonl"):
        self.exchange = exchange
        self.snapshot_file = Path(snapshot_file)
        self.snapshot_file.parent.mkdir(parents=True, exist_ok=True)

    async def take_snapshot(self, run_number: int) -> PortfolioSnapshot:
        """Fetch balances and prices from the exchange and append a snapshot."""
        balances = await asyncio.to_thread(self.exchange.get_balances)
        prices = await asyncio.to_thread(self.exchange.get_all_prices)
        snapshot = build_snapshot(balances, prices, run_number)
        self.append(snapshot)
        logger.info(
            f"Portfolio snapshot run={run_number}: ${snapshot.total_value_usdc:.2f} "
            f"({snapshot.total_value_btc:.6f} BTC, {snapshot.asset_count} assets)"
        )
        return snapshot

    def append(self, snapshot: PortfolioSnapshot) -> None:
        with open(self.snapshot_file, "a", encoding="utf-8") as f:
            f.write(json.dumps(snapshot.to_dict()) + "\n")

    def load_history(self) -> List[PortfolioSnapshot]:
        """All snapshots sorted by timestamp; malformed lines are skipped."""
        if not self.snapshot_file.exists():
            return []
        history = []
        with open(self.snapshot_file, "r", encoding="utf-8") as f:
            for lineno, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    history.append(PortfolioSnapshot.from_dict(json.loads(line)))
                except (ValueError, KeyError, TypeError) as e:
                    logger.warning(f"Skipping malformed snapshot at line {lineno}: {e}")
        history.sort(key=lambda s: s.timestamp)
        return history

    def summary(self) -> Optional[PortfolioSummary]:
        return summarize(self.load_history())
