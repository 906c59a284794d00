"""
Tests for configuration validation.

Validates that config_validator correctly identifies invalid configs,
accepts valid configs, and applies environment overrides.
"""
import shutil
from pathlib import Path

import pytest
import yaml

from core.exceptions import ConfigurationError
from tools.config_validator import (
    AppSettings,
    TradingSection,
    apply_env_overrides,
    load_settings,
    validate_all_configs,
    validate_sanity_checks,
)

REPO_CONFIG = Path(__file__).resolve().parent.parent / "config"


def write_app_yaml(config_dir: Path, config: dict) -> Path:
    config_dir.mkdir(parents=True, exist_ok=True)
    path = config_dir / "app.yaml"
    with open(path, "w") as f:
        yaml.safe_dump(config, f)
    return config_dir


class TestAppValidation:
    """Test app.yaml validation"""

    def test_shipped_config_is_valid(self, tmp_path):
        """The repository's default app.yaml passes validation"""
        config_dir = tmp_path / "config"
        shutil.copytree(REPO_CONFIG, config_dir)
        assert validate_all_configs(str(config_dir), env={}) == []

        settings = load_settings(str(config_dir), env={})
        assert settings.pairs() == ["BTCUSDC", "ETHUSDC"]
        assert settings.dry_run
        assert settings.trading.max_trade_value == 20

    def test_empty_file_uses_defaults(self, tmp_path):
        config_dir = tmp_path / "config"
        config_dir.mkdir()
        (config_dir / "app.yaml").write_text("")

        settings = load_settings(str(config_dir), env={})

        assert settings.app.mode == "DRY_RUN"
        assert settings.trading.max_turns == 30
        assert settings.trading.max_active_orders == 2
        assert settings.data.backfill_start_date == "2024-01-01"

    def test_missing_file_reported(self, tmp_path):
        errors = validate_all_configs(str(tmp_path / "nowhere"), env={})
        assert len(errors) == 1
        assert "not found" in errors[0]

    def test_malformed_yaml_reported(self, tmp_path):
        config_dir = tmp_path / "config"
        config_dir.mkdir()
        (config_dir / "app.yaml").write_text("trading: [unclosed\n")

        errors = validate_all_configs(str(config_dir), env={})

        assert errors and "Invalid YAML" in errors[0]

    def test_invalid_mode_rejected(self, tmp_path):
        config_dir = write_app_yaml(tmp_path / "config", {"app": {"mode": "PAPER"}})
        errors = validate_all_configs(str(config_dir), env={})
        assert any("app -> mode" in e for e in errors)

    def test_invalid_backfill_date_rejected(self, tmp_path):
        config_dir = write_app_yaml(tmp_path / "config", {"data": {"backfill_start_date": "01/02/2024"}})
        errors = validate_all_configs(str(config_dir), env={})
        assert any("backfill_start_date" in e for e in errors)

    def test_zero_turns_rejected(self, tmp_path):
        config_dir = write_app_yaml(tmp_path / "config", {"trading": {"max_turns": 0}})
        with pytest.raises(ConfigurationError):
            load_settings(str(config_dir), env={})

    def test_pair_without_quote_rejected(self):
        with pytest.raises(ValueError):
            TradingSection(pairs="BTC,ETH_USDC")


class TestEnvOverrides:
    """Environment variables win over app.yaml"""

    def test_overrides_applied_with_types(self, tmp_path):
        config_dir = write_app_yaml(tmp_path / "config", {"trading": {"pairs": "BTC_USDC", "max_turns": 10}})
        env = {
            "ALLOWED_PAIRS": "SOL_USDC,ETH_USDC",
            "BOT_MAX_TURNS": "5",
            "MAX_TRADE_VALUE": "35.5",
            "OPENAI_MODEL": "local/llama",
            "BACKTEST_START_DATE": "2023-06-01",
            "MAX_ACTIVE_ORDERS": "",
        }

        settings = load_settings(str(config_dir), env=env)

        assert settings.pairs() == ["SOLUSDC", "ETHUSDC"]
        assert settings.trading.max_turns == 5
        assert settings.trading.max_trade_value == 35.5
        assert settings.trading.max_active_orders == 2
        assert settings.llm.model == "local/llama"
        assert settings.data.backfill_start_date == "2023-06-01"

    def test_bad_number_in_env(self, tmp_path):
        config_dir = write_app_yaml(tmp_path / "config", {})
        errors = validate_all_configs(str(config_dir), env={"BOT_MAX_TURNS": "many"})
        assert errors == ["app.yaml: BOT_MAX_TURNS='many' is not a valid int"]

    def test_override_does_not_mutate_input(self):
        raw = {"trading": {"max_turns": 10}}
        merged = apply_env_overrides(raw, env={"BOT_MAX_TURNS": "3"})
        assert merged["trading"]["max_turns"] == 3
        assert raw["trading"]["max_turns"] == 10

    def test_process_environment_used_by_default(self, tmp_path, monkeypatch):
        config_dir = write_app_yaml(tmp_path / "config", {})
        monkeypatch.setenv("ALLOWED_PAIRS", "ADA_USDC")
        assert load_settings(str(config_dir)).pairs() == ["ADAUSDC"]


class TestSanityChecks:

    def test_live_without_credentials_fails(self, tmp_path):
        config_dir = write_app_yaml(tmp_path / "config", {"app": {"mode": "LIVE"}})
        errors = validate_all_configs(str(config_dir), env={})
        assert errors == ["LIVE mode requires exchange api_key and api_secret"]

    def test_live_with_credentials_passes(self, tmp_path):
        config_dir = write_app_yaml(tmp_path / "config", {"app": {"mode": "LIVE"}})
        env = {"BINANCE_API_KEY": "k", "BINANCE_SECRET_KEY": "s"}
        settings = load_settings(str(config_dir), env=env)
        assert not settings.dry_run

    def test_assets_from_pairs(self):
        settings = AppSettings(trading={"pairs": "BTC_USDC,ETH_BTC"})
        assert settings.assets() == ["BTC", "ETH", "USDC"]
        assert validate_sanity_checks(settings) == []
