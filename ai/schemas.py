"""
Decision loop schemas and data structures.

Defines the contract between the reasoning backend, the tool executor and
the decision store. Actions are a closed enum and tool results carry an
explicit success flag so nothing downstream depends on display text.
"""

import json
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class TradeAction(str, Enum):
    """Terminal actions the reasoning backend may invoke."""
    BUY = "buy"
    SELL = "sell"
    HOLD = "hold"

    @classmethod
    def from_tool_name(cls, name: str) -> "TradeAction":
        """Resolve a tool name to an action (raises ValueError on unknown names)."""
        return cls((name or "").strip().lower())

    @property
    def label(self) -> str:
        return self.value.upper()


@dataclass
class ToolCall:
    """Single tool invocation requested by the model."""
    id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)
    raw_arguments: str = ""
    parse_error: Optional[str] = None

    def to_message(self) -> Dict[str, Any]:
        """Render in chat-completions `tool_calls` format."""
        return {
            "id": self.id,
            "type": "function",
            "function": {
                "name": self.name,
                "arguments": self.raw_arguments or json.dumps(self.arguments),
            },
        }


@dataclass
class ToolResult:
    """Outcome of executing a tool call."""
    ok: bool
    message: str
    action: Optional[TradeAction] = None
    amount: Optional[float] = None
    price: Optional[float] = None

    @classmethod
    def success(cls, message: str, **kwargs) -> "ToolResult":
        return cls(ok=True, message=message, **kwargs)

    @classmethod
    def failure(cls, message: str, **kwargs) -> "ToolResult":
        return cls(ok=False, message=message, **kwargs)

    def display(self) -> str:
        """Text fed back to the model as the tool message."""
        marker = "✅" if self.ok else "❌"
        return f"{marker} {self.message}"


def normalize_confidence(value: Any) -> int:
    """
    Normalize a model-provided confidence to an integer percentage 0-100.

    Floats in [0, 1] are treated as fractions; everything else is read as a
    percentage. Unparseable and non-finite values become 0.
    """
    if isinstance(value, bool):
        return 0
    if isinstance(value, str):
        text = value.strip().rstrip("%").strip()
        try:
            value = float(text) if "." in text else int(text)
        except ValueError:
            return 0
    if isinstance(value, float):
        if not math.isfinite(value):
            return 0
        if 0.0 <= value <= 1.0:
            value = value * 100.0
        return max(0, min(100, int(round(value))))
    if isinstance(value, int):
        return max(0, min(100, value))
    return 0
