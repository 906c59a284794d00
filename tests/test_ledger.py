"""
Tests for the position ledger.

Validates weighted-average cost, realized profit on sells, and that the
transaction log rebuilds the same positions on replay.
"""

import json
from datetime import datetime, timezone

import pytest

from core.ledger import Ledger, POSITION_EPSILON, Transaction


class TestPositionMath:
    """Weighted-average cost basis"""

    def setup_method(self):
        self.ledger = Ledger("unused.jsonl")

    def test_documented_buy_buy_sell_scenario(self):
        """0.1@50k + 0.1@60k averages 55k; selling 0.1@70k realizes 1500"""
        pos = self.ledger.apply_buy("BTC", 0.1, 50000)
        assert pos.average_buy_price == pytest.approx(50000)
        assert pos.total_invested == pytest.approx(5000)

        pos = self.ledger.apply_buy("BTC", 0.1, 60000)
        assert pos.total_amount == pytest.approx(0.2)
        assert pos.total_invested == pytest.approx(11000)
        assert pos.average_buy_price == pytest.approx(55000)

        profit, profit_pct = self.ledger.apply_sell("BTC", 0.1, 70000)
        assert profit == pytest.approx(1500)
        assert profit_pct == pytest.approx(1500 / 5500 * 100)

        pos = self.ledger.position("BTC")
        assert pos.total_amount == pytest.approx(0.1)
        assert pos.total_invested == pytest.approx(5500)
        assert pos.average_buy_price == pytest.approx(55000)

    def test_average_times_amount_matches_invested_after_buys(self):
        """avg_price * amount == invested after any sequence of buys"""
        fills = [(0.013, 41_250.5), (0.2, 39_999.99), (0.0007, 44_100.0), (1.5, 37_000.25)]
        for amount, price in fills:
            self.ledger.apply_buy("BTC", amount, price)
            pos = self.ledger.position("BTC")
            assert abs(pos.average_buy_price * pos.total_amount - pos.total_invested) < 1e-6

    def test_sell_without_position_is_break_even(self):
        """Trades made outside the bot are not an error"""
        assert self.ledger.apply_sell("ETH", 1.0, 2000) == (0.0, 0.0)
        assert self.ledger.position("ETH") is None

    def test_selling_down_to_dust_removes_position(self):
        self.ledger.apply_buy("BTC", 0.1, 50000)
        self.ledger.apply_sell("BTC", 0.1 - POSITION_EPSILON / 2, 51000)
        assert self.ledger.position("BTC") is None

    def test_oversell_clamps_and_removes(self):
        self.ledger.apply_buy("BTC", 0.1, 50000)
        profit, _ = self.ledger.apply_sell("BTC", 0.3, 50000)
        assert profit == pytest.approx(0.0)
        assert self.ledger.position("BTC") is None

    def test_losing_sell_has_negative_profit(self):
        self.ledger.apply_buy("SOL", 10, 100)
        profit, pct = self.ledger.apply_sell("SOL", 5, 90)
        assert profit == pytest.approx(-50)
        assert pct == pytest.approx(-10)


class TestTransactionLog:
    """Append-only JSONL log and replay"""

    async def test_record_appends_and_replay_rebuilds(self, tmp_path):
        path = tmp_path / "tx.jsonl"
        ledger = Ledger(str(path))
        ledger.load()
        ts = datetime(2025, 1, 2, 3, 4, 5, tzinfo=timezone.utc)

        await ledger.record_buy("BTC_USDC", 0.1, 50000, executed_at=ts)
        await ledger.record_buy("BTCUSDC", 0.1, 60000, executed_at=ts)
        sell = await ledger.record_sell("BTCUSDC", 0.1, 70000, executed_at=ts)

        assert sell.asset == "BTC"
        assert sell.pair == "BTCUSDC"
        assert sell.date == "2025-01-02"
        assert sell.time == "03:04:05"
        assert sell.profit_in_usd == pytest.approx(1500)
        assert sell.total_asset == pytest.approx(0.1)
        assert sell.total_asset_worth_usd == pytest.approx(7000)

        lines = path.read_text().strip().splitlines()
        assert len(lines) == 3
        assert json.loads(lines[0])["transaction_type"] == "BUY"
        assert json.loads(lines[0])["profit"] is None

        replayed = Ledger(str(path))
        assert replayed.load() == 3
        pos = replayed.position("BTC")
        assert pos.total_amount == pytest.approx(0.1)
        assert pos.total_invested == pytest.approx(5500)
        assert replayed.total_profit_usd() == pytest.approx(1500)

    def test_malformed_lines_are_skipped(self, tmp_path):
        path = tmp_path / "tx.jsonl"
        good = Transaction(
            date="2025-01-01", time="00:00:00", asset="ETH", pair="ETHUSDC",
            transaction_type="BUY", amount=1.0, price_per_unit=2000.0, amount_in_usd=2000.0,
        )
        path.write_text(
            "{not json}\n"
            + json.dumps(good.__dict__) + "\n"
            + "\n"
            + json.dumps({"date": "2025-01-01"}) + "\n"
        )

        ledger = Ledger(str(path))
        assert ledger.load() == 1
        assert ledger.position("ETH").total_amount == pytest.approx(1.0)

    def test_replay_follows_timestamps(self, tmp_path):
        """A sell logged before its buy still realizes profit against the buy"""
        path = tmp_path / "tx.jsonl"
        base = dict(asset="BTC", pair="BTCUSDC", amount=0.1, date="2025-01-01")
        sell = Transaction(time="12:00:00", transaction_type="SELL", price_per_unit=60000.0,
                           amount_in_usd=6000.0, **base)
        buy = Transaction(time="11:00:00", transaction_type="BUY", price_per_unit=50000.0,
                          amount_in_usd=5000.0, **base)
        path.write_text(json.dumps(sell.__dict__) + "\n" + json.dumps(buy.__dict__) + "\n")

        ledger = Ledger(str(path))
        ledger.load()

        assert ledger.position("BTC") is None
        assert [t.transaction_type for t in ledger.transactions()] == ["BUY", "SELL"]

    def test_missing_log_starts_empty(self, tmp_path):
        ledger = Ledger(str(tmp_path / "nope" / "tx.jsonl"))
        assert ledger.load() == 0
        assert ledger.positions() == {}

    async def test_format_recent_transactions_newest_first(self, tmp_path):
        ledger = Ledger(str(tmp_path / "tx.jsonl"))
        await ledger.record_buy("BTCUSDC", 0.001, 50000)
        await ledger.record_sell("BTCUSDC", 0.001, 55000)
        await ledger.record_buy("ETHUSDC", 0.01, 2000)

        text = ledger.format_recent_transactions(pair="BTCUSDC")
        lines = text.splitlines()
        assert lines[0] == "📋 **RECENT TRANSACTIONS:**"
        assert lines[1].startswith("1. 🔴 SELL 0.001 BTCUSDC")
        assert "P&L: $+5.00" in lines[1]
        assert lines[2].startswith("2. 🟢 BUY 0.001 BTCUSDC")
        assert "ETHUSDC" not in text

    def test_format_without_transactions(self, tmp_path):
        ledger = Ledger(str(tmp_path / "tx.jsonl"))
        assert "No recent transactions found" in ledger.format_recent_transactions()

    async def test_portfolio_value_uses_given_prices(self, tmp_path):
        ledger = Ledger(str(tmp_path / "tx.jsonl"))
        await ledger.record_buy("BTCUSDC", 0.1, 50000)
        await ledger.record_buy("ETHUSDC", 2, 2000)
        assert ledger.total_portfolio_value_usd({"BTC": 60000}) == pytest.approx(6000)
        assert ledger.total_portfolio_value_usd({"BTC": 60000, "ETH": 2500}) == pytest.approx(11000)
