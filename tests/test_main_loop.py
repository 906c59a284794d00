"""
Integration tests for TradingLoop: wiring, run counting, per-pair isolation.
"""

import asyncio
import json

import pytest

from ai.llm_client import MockReasoningClient, tool_response
from ai.schemas import TradeAction
from runner.main_loop import TradingLoop
from tools.config_validator import AppSettings
from tests.helpers import FakeExchange


def make_settings(tmp_path, pairs="BTC_USDC,ETH_USDC,SOL_USDC"):
    data_dir = tmp_path / "data"
    return AppSettings(
        trading={"pairs": pairs, "max_turns": 3},
        data={
            "dir": str(data_dir),
            "state_file": str(data_dir / "trading_state.json"),
            "transactions_file": str(data_dir / "transactions.jsonl"),
            "portfolio_file": str(data_dir / "portfolio.jsonl"),
        },
    )


def hold(pair):
    return tool_response("hold", pair=pair, confidence=50, explanation="wait")


def make_loop(tmp_path, client, exchange, **kwargs):
    return TradingLoop(
        settings=make_settings(tmp_path, **kwargs),
        client=client,
        exchange=exchange,
        acquire_lock=False,
        setup_logging=False,
    )


class TestTradingLoop:

    async def test_cycle_runs_every_pair(self, tmp_path):
        client = MockReasoningClient([hold("BTCUSDC"), hold("ETHUSDC"), hold("SOLUSDC")])
        loop = make_loop(tmp_path, client, FakeExchange())

        results = await loop.run_cycle()

        assert [r.symbol for r in results] == ["BTCUSDC", "ETHUSDC", "SOLUSDC"]
        assert all(r.decision.action is TradeAction.HOLD for r in results)
        assert loop.decision_store.state.total_runs == 1

        state = json.loads((tmp_path / "data" / "trading_state.json").read_text())
        assert set(state["symbols"]) == {"BTCUSDC", "ETHUSDC", "SOLUSDC"}

    async def test_unchanged_candle_skips_on_next_run(self, tmp_path):
        client = MockReasoningClient([hold("BTCUSDC")])
        loop = make_loop(tmp_path, client, FakeExchange(), pairs="BTC_USDC")

        await loop.run_cycle()
        results = await loop.run_cycle()

        assert results[0].skipped
        assert client.call_count == 1
        assert loop.decision_store.state.total_runs == 2

    async def test_market_data_failure_skips_only_that_pair(self, tmp_path):
        client = MockReasoningClient([hold("BTCUSDC"), hold("SOLUSDC")])
        loop = make_loop(tmp_path, client, FakeExchange(failing_symbols=("ETHUSDC",)))

        results = await loop.run_cycle()

        by_symbol = {r.symbol: r for r in results}
        assert by_symbol["ETHUSDC"].skipped
        assert by_symbol["BTCUSDC"].decision.action is TradeAction.HOLD
        assert by_symbol["SOLUSDC"].decision.action is TradeAction.HOLD

    async def test_exception_in_one_pair_does_not_abort_cycle(self, tmp_path, monkeypatch):
        client = MockReasoningClient([hold("BTCUSDC"), hold("SOLUSDC")])
        loop = make_loop(tmp_path, client, FakeExchange())
        original_run = loop.decision_loop.run

        async def flaky_run(symbol):
            if symbol == "ETHUSDC":
                raise RuntimeError("boom")
            return await original_run(symbol)

        monkeypatch.setattr(loop.decision_loop, "run", flaky_run)

        results = await loop.run_cycle()

        assert [r.symbol for r in results] == ["BTCUSDC", "SOLUSDC"]

    async def test_state_reloaded_by_new_process(self, tmp_path):
        loop = make_loop(tmp_path, MockReasoningClient([hold("BTCUSDC")]), FakeExchange(), pairs="BTC_USDC")
        await loop.run_cycle()

        client = MockReasoningClient([hold("BTCUSDC")])
        restarted = make_loop(tmp_path, client, FakeExchange(), pairs="BTC_USDC")
        results = await restarted.run_cycle()

        assert results[0].skipped
        assert client.call_count == 0
        assert restarted.decision_store.state.total_runs == 2

    async def test_snapshot_taken_when_configured(self, tmp_path):
        exchange = FakeExchange(
            configured=True,
            balances=[{"asset": "USDC", "free": 100.0, "locked": 0.0, "total": 100.0}],
            prices={"BTCUSDC": 50000.0},
        )
        loop = make_loop(tmp_path, MockReasoningClient([hold("BTCUSDC")]), exchange, pairs="BTC_USDC")

        await loop.run_cycle()

        history = loop.portfolio.load_history()
        assert len(history) == 1
        assert history[0].run_number == 1
        assert history[0].total_value_usdc == pytest.approx(100.0)

    async def test_no_snapshot_without_credentials(self, tmp_path):
        loop = make_loop(tmp_path, MockReasoningClient([hold("BTCUSDC")]), FakeExchange(), pairs="BTC_USDC")
        await loop.run_cycle()
        assert not (tmp_path / "data" / "portfolio.jsonl").exists()

    async def test_stop_ends_run_forever(self, tmp_path, monkeypatch):
        loop = make_loop(tmp_path, MockReasoningClient([]), FakeExchange(), pairs="BTC_USDC")
        real_sleep = asyncio.sleep

        async def fake_sleep(seconds, *args, **kwargs):
            loop.stop()
            await real_sleep(0)

        monkeypatch.setattr("runner.main_loop.asyncio.sleep", fake_sleep)
        await loop.run_forever(interval_seconds=5)

        assert loop.decision_store.state.total_runs == 1
