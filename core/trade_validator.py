"""
turntrader Core: Trade Validator

Hard restrictions checked before any order reaches the exchange:
- Max trade value (quote currency), with a slightly larger ceiling for sells
  so oversized positions can still be closed
- Max concurrently open orders

Failures are returned as values, never raised.
"""

from dataclasses import dataclass, field
from typing import List, Optional
import logging
import math

from ai.schemas import TradeAction

logger = logging.getLogger(__name__)


@dataclass
class TradeRestrictions:
    """Configured trade limits."""
    max_trade_value: float = 20.0
    sell_value_multiplier: float = 1.1
    max_active_orders: int = 2

    @property
    def max_sell_value(self) -> float:
        return self.max_trade_value * self.sell_value_multiplier


@dataclass
class ValidationResult:
    """Result of trade validation"""
    approved: bool
    reason: str = ""
    violated_checks: List[str] = field(default_factory=list)
    trade_value: float = 0.0


class TradeValidator:
    """Checks a requested trade against TradeRestrictions."""

    def __init__(self, restrictions: Optional[TradeRestrictions] = None):
        self.restrictions = restrictions or TradeRestrictions()

    def validate(self, action: TradeAction, pair: str, amount: Optional[float],
                 price: Optional[float], open_orders_count: int = 0) -> ValidationResult:
        """
        Validate a trade request.

        Args:
            action: Requested action
            pair: Trading pair (e.g. "BTCUSDC")
            amount: Base-asset quantity
            price: Current price in quote currency
            open_orders_count: Currently open orders on the account

        Returns:
            ValidationResult with approved flag and violated checks
        """
        if action is TradeAction.HOLD:
            return ValidationResult(approved=True, reason="hold requires no order")

        violated: List[str] = []
        reasons: List[str] = []

        if amount is None or not math.isfinite(amount) or amount <= 0:
            violated.append("amount")
            reasons.append(f"amount must be a positive finite number (got {amount})")

        if price is None or not math.isfinite(price) or price <= 0:
            violated.append("price")
            reasons.append(f"no valid price available for {pair}")

        value = 0.0
        if not violated:
            value = round(amount * price, 2)
            limit = (
                self.restrictions.max_trade_value
                if action is TradeAction.BUY
                else self.restrictions.max_sell_value
            )
            if value > round(limit, 2):
                violated.append("max_trade_value")
                reasons.append(
                    f"trade value ${value:.2f} exceeds max {action.label} value ${limit:.2f}"
                )

        if open_orders_count >= self.restrictions.max_active_orders:
            violated.append("max_active_orders")
            reasons.append(
                f"{open_orders_count} open orders (max {self.restrictions.max_active_orders})"
            )

        if violated:
            reason = "; ".join(reasons)
            logger.warning(f"Rejected {action.label} {amount} {pair}: {reason}")
            return ValidationResult(approved=False, reason=reason, violated_checks=violated, trade_value=value)

        return ValidationResult(approved=True, reason="within limits", trade_value=value)
