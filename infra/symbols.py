"""Symbol and pair utilities for exchange trading pairs.

The exchange addresses markets as concatenated pairs (`BTCUSDC`), while
configuration lists them with an underscore (`BTC_USDC`) and the ledger keys
positions by base asset (`BTC`). These helpers convert between the three so
every module agrees on the same canonical keys.
"""

from __future__ import annotations

from typing import Iterable, List, Optional, Tuple

# Quote suffixes stripped when deriving the traded asset from a pair.
QUOTE_SUFFIXES: Tuple[str, ...] = (
    "USDT",
    "USDC",
    "BTC",
    "ETH",
)

# Assets valued at par against the portfolio's quote currency.
STABLE_ASSETS: Tuple[str, ...] = ("USDC", "USDT", "BUSD", "FDUSD")


def normalize_pair(pair: Optional[str]) -> str:
    """Normalize a pair to the exchange's concatenated form (e.g. btc_usdc -> BTCUSDC)."""

    if not pair:
        return ""
    token = str(pair).strip().upper()
    for delim in ("_", "-", "/", " "):
        token = token.replace(delim, "")
    return token


def split_pair(pair: Optional[str]) -> Tuple[str, str]:
    """Return (base, quote) for a pair in any supported notation.

    Delimited notations are split on the delimiter; concatenated pairs are
    split on the first known quote suffix. Returns (pair, "") when no quote
    can be identified.
    """

    if not pair:
        return "", ""
    token = str(pair).strip().upper()
    for delim in ("_", "-", "/"):
        if delim in token:
            base, quote = token.split(delim, 1)
            return base, quote

    for quote in QUOTE_SUFFIXES:
        if token.endswith(quote) and len(token) > len(quote):
            return token[: -len(quote)], quote
    return token, ""


def extract_asset_from_pair(pair: Optional[str]) -> str:
    """Return the base asset traded by a pair (BTCUSDC -> BTC)."""

    base, _ = split_pair(pair)
    return base


def parse_pair_list(raw: Optional[str | Iterable[str]]) -> List[str]:
    """Parse `BTC_USDC,ETH_USDC` (or an iterable of pairs) into normalized pairs."""

    if not raw:
        return []
    items = raw.split(",") if isinstance(raw, str) else list(raw)
    pairs: List[str] = []
    for item in items:
        normalized = normalize_pair(item)
        if normalized and normalized not in pairs:
            pairs.append(normalized)
    return pairs


def pairs_equivalent(lhs: Optional[str], rhs: Optional[str]) -> bool:
    """Return True if two pair notations refer to the same market."""

    return normalize_pair(lhs) == normalize_pair(rhs)


__all__ = [
    "QUOTE_SUFFIXES",
    "STABLE_ASSETS",
    "normalize_pair",
    "split_pair",
    "extract_asset_from_pair",
    "parse_pair_list",
    "pairs_equivalent",
]
