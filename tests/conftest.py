"""
Pytest configuration and fixtures for turntrader tests.

This conftest.py provides shared fixtures and hooks for all tests.
"""
import pytest

from ai.llm_client import MockReasoningClient
from core.executor import TradeExecutor
from core.ledger import Ledger
from core.market_data import KlineCache
from core.trade_validator import TradeRestrictions, TradeValidator
from infra.decision_store import DecisionStore
from tests.helpers import FakeExchange


@pytest.fixture(autouse=True)
def isolated_workdir(tmp_path, monkeypatch):
    """
    Run every test inside its own temporary directory.

    Default paths (data/, logs/) and env-driven file locations resolve under
    tmp_path, so no test touches the real state or transaction log.
    """
    monkeypatch.chdir(tmp_path)
    for var in ("TRADING_STATE_FILE", "ALLOWED_PAIRS", "BOT_MAX_TURNS", "MAX_TRADE_VALUE",
                "BINANCE_API_KEY", "BINANCE_SECRET_KEY", "TRADING_MODE"):
        monkeypatch.delenv(var, raising=False)
    yield


@pytest.fixture
def exchange():
    return FakeExchange(price=50000.0)


@pytest.fixture
def ledger(tmp_path):
    led = Ledger(str(tmp_path / "transactions.jsonl"))
    led.load()
    return led


@pytest.fixture
def decision_store(tmp_path):
    store = DecisionStore(str(tmp_path / "trading_state.json"))
    store.load()
    return store


@pytest.fixture
def executor(exchange, ledger):
    validator = TradeValidator(TradeRestrictions(max_trade_value=20.0, max_active_orders=2))
    return TradeExecutor(exchange, ledger, validator, KlineCache(exchange), interval="5m", dry_run=True)


@pytest.fixture
def mock_client():
    return MockReasoningClient()
