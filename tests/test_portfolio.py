"""
Tests for portfolio valuation snapshots.
"""

from datetime import datetime, timedelta, timezone

import pytest

from analytics.portfolio import (
    PortfolioSnapshot,
    PortfolioTracker,
    asset_price_usdc,
    build_snapshot,
    summarize,
)
from tests.helpers import FakeExchange

PRICES = {"BTCUSDC": 50000.0, "ETHUSDT": 2500.0, "SOLUSDC": 100.0}
BALANCES = [
    {"asset": "USDC", "free": 50.0, "locked": 0.0, "total": 50.0},
    {"asset": "BTC", "free": 0.002, "locked": 0.0, "total": 0.002},
    {"asset": "ETH", "free": 0.01, "locked": 0.01, "total": 0.02},
    {"asset": "XYZ", "free": 5.0, "locked": 0.0, "total": 5.0},
]


class TestValuation:

    def test_asset_price_lookup_order(self):
        assert asset_price_usdc("USDT", PRICES) == 1.0
        assert asset_price_usdc("BTC", PRICES) == 50000.0
        assert asset_price_usdc("ETH", PRICES) == 2500.0
        assert asset_price_usdc("XYZ", PRICES) == 0.0

    def test_snapshot_totals_and_weights(self):
        snap = build_snapshot(BALANCES, PRICES, run_number=3)

        assert snap.run_number == 3
        assert snap.btc_price_usdc == 50000.0
        assert snap.total_value_usdc == pytest.approx(200.0)
        assert snap.total_value_btc == pytest.approx(0.004)
        assert [a.asset for a in snap.assets[:3]] == ["BTC", "USDC", "ETH"]
        assert snap.assets[0].percentage_of_portfolio == pytest.approx(50.0)
        assert snap.asset_count == 4
        assert sum(a.percentage_of_portfolio for a in snap.assets) == pytest.approx(100.0)

    def test_no_btc_price_gives_zero_btc_values(self):
        snap = build_snapshot([{"asset": "USDC", "total": 10.0}], {}, run_number=1)
        assert snap.total_value_usdc == 10.0
        assert snap.total_value_btc == 0.0

    def test_serialization_round_trip(self):
        snap = build_snapshot(BALANCES, PRICES, run_number=1,
                              timestamp=datetime(2025, 3, 1, tzinfo=timezone.utc))
        assert PortfolioSnapshot.from_dict(snap.to_dict()) == snap


class TestPortfolioTracker:

    async def test_take_snapshot_appends_jsonl(self, tmp_path):
        exchange = FakeExchange(configured=True, balances=BALANCES, prices=PRICES)
        tracker = PortfolioTracker(exchange, str(tmp_path / "portfolio.jsonl"))

        await tracker.take_snapshot(1)
        await tracker.take_snapshot(2)

        lines = (tmp_path / "portfolio.jsonl").read_text().strip().splitlines()
        assert len(lines) == 2
        history = tracker.load_history()
        assert [s.run_number for s in history] == [1, 2]

    def test_history_sorted_and_malformed_skipped(self, tmp_path):
        path = tmp_path / "portfolio.jsonl"
        tracker = PortfolioTracker(FakeExchange(), str(path))
        t0 = datetime(2025, 1, 1, tzinfo=timezone.utc)
        tracker.append(build_snapshot(BALANCES, PRICES, 2, timestamp=t0 + timedelta(hours=1)))
        with open(path, "a") as f:
            f.write("garbage\n")
        tracker.append(build_snapshot(BALANCES[:1], PRICES, 1, timestamp=t0))

        history = tracker.load_history()

        assert [s.run_number for s in history] == [1, 2]

    def test_summary(self, tmp_path):
        tracker = PortfolioTracker(FakeExchange(), str(tmp_path / "portfolio.jsonl"))
        assert tracker.summary() is None

        t0 = datetime(2025, 1, 1, tzinfo=timezone.utc)
        tracker.append(build_snapshot([{"asset": "USDC", "total": 100.0}], {"BTCUSDC": 40000.0}, 1, timestamp=t0))
        tracker.append(build_snapshot([{"asset": "USDC", "total": 110.0}], {"BTCUSDC": 50000.0}, 2,
                                      timestamp=t0 + timedelta(days=1)))

        summary = summarize(tracker.load_history())

        assert summary.total_snapshots == 2
        assert summary.value_change_usdc == pytest.approx(10.0)
        assert summary.value_change_percent == pytest.approx(10.0)
        assert summary.btc_change_percent == pytest.approx(25.0)
        assert summary.current_asset_count == 1
