"""
Configuration Loading & Validation Module

Loads app.yaml, applies environment overrides and validates the result
against Pydantic schemas before the bot starts.

Usage:
    from tools.config_validator import validate_all_configs, load_settings

    errors = validate_all_configs("config")
    if errors:
        for error in errors:
            print(f"ERROR: {error}")
        sys.exit(1)
    settings = load_settings("config")
"""
import logging
import os
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import yaml
from pydantic import BaseModel, Field, field_validator, ValidationError

from core.data_store import parse_start_date
from core.exceptions import ConfigurationError
from infra.symbols import parse_pair_list, split_pair

logger = logging.getLogger(__name__)

APP_CONFIG_FILE = "app.yaml"


# ===== App Schema =====
class AppSection(BaseModel):
    """Process identity and mode"""
    name: str = Field(default="turntrader", min_length=1)
    mode: str = Field(default="DRY_RUN", pattern="^(DRY_RUN|LIVE)$", description="DRY_RUN simulates fills")


class ExchangeSection(BaseModel):
    """Exchange endpoint and credentials"""
    base_url: str = Field(default="https://api.binance.com", min_length=1)
    api_key: str = Field(default="noop")
    api_secret: str = Field(default="noop")
    recv_window_ms: int = Field(default=5000, gt=0, le=60000)
    timeout_s: float = Field(default=20.0, gt=0)


class LLMSection(BaseModel):
    """Reasoning backend (OpenAI-compatible)"""
    base_url: str = Field(default="http://localhost:1234/v1", min_length=1)
    api_key: str = Field(default="noop")
    model: str = Field(default="openai/gpt-oss-20b", min_length=1)
    turn_timeout_s: float = Field(default=120.0, gt=0, description="Timeout per reasoning turn")
    temperature: Optional[float] = Field(default=None, ge=0, le=2)


class TradingSection(BaseModel):
    """Pairs, turn budget and trade restrictions"""
    pairs: List[str] = Field(default_factory=lambda: ["BTCUSDC"], min_length=1)
    interval: str = Field(default="5m", pattern="^[0-9]+[mhdwM]$")
    max_turns: int = Field(default=30, ge=1, le=200)
    max_trade_value: float = Field(default=20.0, gt=0, description="Max buy value in quote currency")
    sell_value_multiplier: float = Field(default=1.1, ge=1.0, le=2.0, description="Sell ceiling = max_trade_value * multiplier")
    max_active_orders: int = Field(default=2, ge=1)
    kline_limit: int = Field(default=100, ge=1, le=1000)
    transactions_in_context: int = Field(default=10, ge=0)

    @field_validator("pairs", mode="before")
    @classmethod
    def parse_pairs(cls, v: Any) -> List[str]:
        """Accept `BTC_USDC,ETH_USDC` or a list; normalize to BTCUSDC form"""
        pairs = parse_pair_list(v)
        for pair in pairs:
            _, quote = split_pair(pair)
            if not quote:
                raise ValueError(f"Cannot determine quote currency of pair {pair}")
        return pairs


class DataSection(BaseModel):
    """Persisted files"""
    dir: str = Field(default="data", min_length=1)
    backfill_start_date: str = Field(default="2024-01-01")
    state_file: str = Field(default="data/trading_state.json")
    transactions_file: str = Field(default="data/transactions.jsonl")
    portfolio_file: str = Field(default="data/portfolio.jsonl")
    history_retention: int = Field(default=30, ge=1)
    kline_cache_ttl_s: float = Field(default=60.0, ge=0)
    collect_before_run: bool = Field(default=False, description="Refresh the candle store each run")

    @field_validator("backfill_start_date")
    @classmethod
    def validate_start_date(cls, v: str) -> str:
        parse_start_date(v)
        return v


class LoggingSection(BaseModel):
    level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    file: Optional[str] = Field(default="logs/turntrader.log")
    json_file: Optional[str] = Field(default="logs/turntrader.jsonl")

    @field_validator("level", mode="before")
    @classmethod
    def upper_level(cls, v: Any) -> Any:
        return v.upper() if isinstance(v, str) else v


class LoopSection(BaseModel):
    interval_seconds: float = Field(default=60.0, gt=0)


class AppSettings(BaseModel):
    """Complete app configuration schema"""
    app: AppSection = Field(default_factory=AppSection)
    exchange: ExchangeSection = Field(default_factory=ExchangeSection)
    llm: LLMSection = Field(default_factory=LLMSection)
    trading: TradingSection = Field(default_factory=TradingSection)
    data: DataSection = Field(default_factory=DataSection)
    logging: LoggingSection = Field(default_factory=LoggingSection)
    loop: LoopSection = Field(default_factory=LoopSection)

    @property
    def dry_run(self) -> bool:
        return self.app.mode != "LIVE"

    def pairs(self) -> List[str]:
        """Exchange pairs, e.g. ["BTCUSDC", "ETHUSDC"]"""
        return list(self.trading.pairs)

    def assets(self) -> List[str]:
        """Unique base and quote assets across all pairs"""
        seen = set()
        for pair in self.trading.pairs:
            base, quote = split_pair(pair)
            seen.update(a for a in (base, quote) if a)
        return sorted(seen)


# ===== Environment Overrides =====
ENV_OVERRIDES: Dict[str, Tuple[str, str, Callable[[str], Any]]] = {
    "BINANCE_API_KEY": ("exchange", "api_key", str),
    "BINANCE_SECRET_KEY": ("exchange", "api_secret", str),
    "OPENAI_BASE_URL": ("llm", "base_url", str),
    "OPENAI_API_KEY": ("llm", "api_key", str),
    "OPENAI_MODEL": ("llm", "model", str),
    "MAX_ACTIVE_ORDERS": ("trading", "max_active_orders", int),
    "MAX_TRADE_VALUE": ("trading", "max_trade_value", float),
    "ALLOWED_PAIRS": ("trading", "pairs", str),
    "TRADING_INTERVAL": ("trading", "interval", str),
    "BOT_MAX_TURNS": ("trading", "max_turns", int),
    "BACKTEST_START_DATE": ("data", "backfill_start_date", str),
    "TRADING_MODE": ("app", "mode", str),
}


def apply_env_overrides(config: Dict[str, Any], env: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """
    Overlay environment variables on a raw config dict.

    Args:
        config: Parsed app.yaml (may be empty)
        env: Environment mapping (default: os.environ)

    Returns:
        New dict with overrides applied
    """
    env = os.environ if env is None else env
    merged = {section: dict(values or {}) for section, values in (config or {}).items()}
    for var, (section, key, cast) in ENV_OVERRIDES.items():
        raw = env.get(var)
        if raw is None or raw == "":
            continue
        try:
            value = cast(raw)
        except ValueError as e:
            raise ConfigurationError(f"{var}={raw!r} is not a valid {cast.__name__}") from e
        merged.setdefault(section, {})[key] = value
        logger.debug(f"Config override from env: {section}.{key} <- {var}")
    return merged


# ===== Validation Functions =====
def _format_yaml_error(file_path: Path, error: yaml.YAMLError) -> str:
    """Return enriched message with line/column context for YAML errors."""

    message = f"Malformed YAML in {file_path}: {error}"
    mark = getattr(error, "problem_mark", None)
    if mark is None:
        return message

    line = getattr(mark, "line", None)
    column = getattr(mark, "column", None)
    if line is None or column is None:
        return message

    problem = getattr(error, "problem", str(error))
    return f"Malformed YAML in {file_path}: line {line + 1}, column {column + 1}: {problem}"


def load_yaml_file(file_path: Path) -> Dict[str, Any]:
    """
    Load YAML file and return as dict.

    Raises:
        FileNotFoundError: If file doesn't exist
        yaml.YAMLError: If YAML is malformed
    """
    if not file_path.exists():
        raise FileNotFoundError(f"Config file not found: {file_path}")

    with open(file_path, 'r') as f:
        try:
            return yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise yaml.YAMLError(_format_yaml_error(file_path, e))


def _read_settings(config_dir: Path, env: Optional[Mapping[str, str]]) -> AppSettings:
    raw = load_yaml_file(config_dir / APP_CONFIG_FILE)
    if not isinstance(raw, dict):
        raise ConfigurationError(f"{APP_CONFIG_FILE}: top level must be a mapping")
    return AppSettings(**apply_env_overrides(raw, env))


def validate_app(config_dir: Path, env: Optional[Mapping[str, str]] = None) -> List[str]:
    """
    Validate app.yaml (with env overrides) against schema.

    Returns:
        List of error messages (empty if valid)
    """
    errors = []
    try:
        _read_settings(config_dir, env)
        logger.info("✅ app.yaml validation passed")
    except FileNotFoundError as e:
        errors.append(f"{APP_CONFIG_FILE}: {e}")
    except yaml.YAMLError as e:
        errors.append(f"{APP_CONFIG_FILE}: Invalid YAML - {e}")
    except ValidationError as e:
        for error in e.errors():
            field = " -> ".join(str(loc) for loc in error['loc'])
            errors.append(f"{APP_CONFIG_FILE}: {field}: {error['msg']}")
    except ConfigurationError as e:
        errors.append(f"{APP_CONFIG_FILE}: {e}")
    return errors


def validate_sanity_checks(settings: AppSettings) -> List[str]:
    """Logical consistency checks beyond field types."""
    errors = []
    if not settings.dry_run and not (
        settings.exchange.api_key not in ("", "noop") and settings.exchange.api_secret not in ("", "noop")
    ):
        errors.append("LIVE mode requires exchange api_key and api_secret")
    if settings.loop.interval_seconds < settings.llm.turn_timeout_s / 10:
        logger.warning(
            f"loop.interval_seconds ({settings.loop.interval_seconds}s) is short relative to "
            f"llm.turn_timeout_s ({settings.llm.turn_timeout_s}s)"
        )
    return errors


def validate_all_configs(config_dir: str = "config", env: Optional[Mapping[str, str]] = None) -> List[str]:
    """
    Validate all configuration.

    Performs:
    1. Schema validation (Pydantic type checks)
    2. Sanity checks (logical consistency)

    Returns:
        List of all error messages (empty if all valid)
    """
    config_path = Path(config_dir)
    all_errors = validate_app(config_path, env)

    if not all_errors:
        all_errors.extend(validate_sanity_checks(_read_settings(config_path, env)))

    if not all_errors:
        logger.info("✅ All config files validated successfully")
    else:
        logger.error(f"❌ {len(all_errors)} validation error(s) found")
    return all_errors


def load_settings(config_dir: str = "config", env: Optional[Mapping[str, str]] = None) -> AppSettings:
    """
    Load validated settings.

    Raises:
        ConfigurationError: If the configuration is missing or invalid
    """
    errors = validate_all_configs(config_dir, env)
    if errors:
        raise ConfigurationError(
            f"Invalid configuration: {len(errors)} error(s) found\n" + "\n".join(errors)
        )
    return _read_settings(Path(config_dir), env)


if __name__ == "__main__":
    """Run validation from command line"""
    import sys

    logging.basicConfig(level=logging.INFO, format='%(levelname)s: %(message)s')

    config_dir = sys.argv[1] if len(sys.argv) > 1 else "config"

    errors = validate_all_configs(config_dir)

    if errors:
        print("\n❌ Configuration Validation Failed:\n")
        for error in errors:
            print(f"  • {error}")
        print()
        sys.exit(1)
    else:
        print("\n✅ All configuration files are valid!\n")
        sys.exit(0)
