"""Infrastructure modules for turntrader"""

from .decision_store import DecisionStore, TradingDecision  # noqa: F401
from .instance_lock import SingleInstanceLock  # noqa: F401

__all__ = [
	"DecisionStore",
	"TradingDecision",
	"SingleInstanceLock",
]
