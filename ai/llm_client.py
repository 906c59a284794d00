"""
Reasoning Client - Streaming chat-completion interface for the decision loop.

Talks to any OpenAI-compatible endpoint (hosted or local), streams the
assistant turn, and assembles tool-call fragments into complete ToolCalls.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ai.schemas import ToolCall

logger = logging.getLogger(__name__)

# ─── Tool Schemas ──────────────────────────────────────────────────────────

_PAIR = {"type": "string", "description": "Trading pair, e.g. BTCUSDC"}
_CONFIDENCE = {
    "type": "integer",
    "minimum": 0,
    "maximum": 100,
    "description": "Confidence in this decision as a percentage (0-100)",
}
_EXPLANATION = {"type": "string", "description": "Short justification for the decision"}
_AMOUNT = {"type": "number", "description": "Quantity of the base asset"}


def _function(name: str, description: str, properties: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": description,
            "parameters": {
                "type": "object",
                "properties": properties,
                "required": list(properties.keys()),
            },
        },
    }


TOOL_SCHEMAS: List[Dict[str, Any]] = [
    _function(
        "buy",
        "Buy asset. THIS IS FINAL DECISION.",
        {"pair": _PAIR, "amount": _AMOUNT, "confidence": _CONFIDENCE, "explanation": _EXPLANATION},
    ),
    _function(
        "sell",
        "Sell asset. THIS IS FINAL DECISION.",
        {"pair": _PAIR, "amount": _AMOUNT, "confidence": _CONFIDENCE, "explanation": _EXPLANATION},
    ),
    _function(
        "hold",
        "Hold, take no trade this cycle. THIS IS FINAL DECISION.",
        {"pair": _PAIR, "confidence": _CONFIDENCE, "explanation": _EXPLANATION},
    ),
]


# ─── Data Structures ───────────────────────────────────────────────────────

@dataclass
class LLMResponse:
    """One assistant turn."""
    content: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)
    latency_ms: float = 0.0
    finish_reason: Optional[str] = None

    def to_message(self) -> Dict[str, Any]:
        """Assistant message for the transcript (always appended, even if empty)."""
        message: Dict[str, Any] = {"role": "assistant", "content": self.content}
        if self.tool_calls:
            message["tool_calls"] = [tc.to_message() for tc in self.tool_calls]
        return message


class ToolCallAccumulator:
    """Merges streamed tool-call deltas by index into complete calls."""

    def __init__(self):
        self._parts: Dict[int, Dict[str, Any]] = {}

    def add(self, delta: Any) -> None:
        index = getattr(delta, "index", None)
        if index is None:
            index = len(self._parts)
        part = self._parts.setdefault(index, {"id": "", "name": "", "arguments": ""})
        if getattr(delta, "id", None):
            part["id"] = delta.id
        function = getattr(delta, "function", None)
        if function is not None:
            if getattr(function, "name", None):
                part["name"] += function.name
            if getattr(function, "arguments", None):
                part["arguments"] += function.arguments

    def build(self) -> List[ToolCall]:
        calls = []
        for index in sorted(self._parts):
            part = self._parts[index]
            raw = part["arguments"]
            arguments: Dict[str, Any] = {}
            parse_error = None
            if raw.strip():
                try:
                    parsed = json.loads(raw)
                    if isinstance(parsed, dict):
                        arguments = parsed
                    else:
                        parse_error = "arguments are not a JSON object"
                except json.JSONDecodeError as e:
                    parse_error = f"invalid JSON arguments: {e}"
            if parse_error:
                logger.warning(f"Tool call {part['name']!r} has unusable arguments: {raw!r} ({parse_error})")
            calls.append(ToolCall(
                id=part["id"] or f"call_{index}",
                name=part["name"],
                arguments=arguments,
                raw_arguments=raw,
                parse_error=parse_error,
            ))
        return calls


# ─── Reasoning Client ──────────────────────────────────────────────────────

class ReasoningClient:
    """
    Streaming client for OpenAI-compatible chat completions.

    Responsibilities:
    - Send the full transcript with the registered tool schemas
    - Accumulate streamed content and tool-call fragments
    - Report latency per turn
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        model: str,
        timeout_s: float = 120.0,
        temperature: Optional[float] = None,
    ):
        self.base_url = base_url
        self.model = model
        self.timeout_s = timeout_s
        self.temperature = temperature

        # Lazy-import provider SDK
        import openai
        self.client = openai.AsyncOpenAI(base_url=base_url, api_key=api_key or "noop", timeout=timeout_s)

    async def complete(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
    ) -> LLMResponse:
        """
        Run one streamed assistant turn.

        Args:
            messages: Full transcript
            tools: Tool schemas (default: buy/sell/hold)

        Returns:
            LLMResponse with content and complete tool calls
        """
        start = time.perf_counter()
        kwargs: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "tools": tools if tools is not None else TOOL_SCHEMAS,
            "stream": True,
        }
        if self.temperature is not None:
            kwargs["temperature"] = self.temperature

        stream = await self.client.chat.completions.create(**kwargs)

        content_parts: List[str] = []
        accumulator = ToolCallAccumulator()
        finish_reason = None

        async for chunk in stream:
            if not chunk.choices:
                continue
            choice = chunk.choices[0]
            delta = choice.delta
            if delta is not None:
                if delta.content:
                    content_parts.append(delta.content)
                for tc_delta in delta.tool_calls or []:
                    accumulator.add(tc_delta)
            if choice.finish_reason:
                finish_reason = choice.finish_reason

        latency_ms = (time.perf_counter() - start) * 1000
        response = LLMResponse(
            content="".join(content_parts),
            tool_calls=accumulator.build(),
            latency_ms=latency_ms,
            finish_reason=finish_reason,
        )
        logger.info(
            f"Reasoning turn completed in {latency_ms:.0f}ms "
            f"({len(response.content)} chars, {len(response.tool_calls)} tool calls)"
        )
        return response


# ─── Mock Client for Testing ───────────────────────────────────────────────

class MockReasoningClient:
    """Mock client that replays scripted responses in order."""

    def __init__(self, responses: Optional[List[LLMResponse]] = None):
        self.responses = list(responses or [])
        self.call_count = 0
        self.transcripts: List[List[Dict[str, Any]]] = []

    async def complete(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
    ) -> LLMResponse:
        """Return the next scripted response (empty once the script runs out)."""
        self.transcripts.append([dict(m) for m in messages])
        index = self.call_count
        self.call_count += 1
        if index < len(self.responses):
            return self.responses[index]
        return LLMResponse()


def tool_response(name: str, content: str = "", call_id: Optional[str] = None, **arguments) -> LLMResponse:
    """Build an LLMResponse carrying a single tool call."""
    call = ToolCall(
        id=call_id or f"call_{name}",
        name=name,
        arguments=arguments,
        raw_arguments=json.dumps(arguments),
    )
    return LLMResponse(content=content, tool_calls=[call])


# ─── Factory ───────────────────────────────────────────────────────────────

def create_reasoning_client(
    base_url: str,
    api_key: str,
    model: str,
    timeout_s: float = 120.0,
    **kwargs
) -> ReasoningClient:
    """
    Factory for creating reasoning clients.

    Args:
        base_url: OpenAI-compatible endpoint (e.g. http://localhost:1234/v1)
        api_key: API key ("noop" for local servers)
        model: Model identifier
        timeout_s: Request timeout

    Returns:
        ReasoningClient instance
    """
    return ReasoningClient(
        base_url=base_url,
        api_key=api_key,
        model=model,
        timeout_s=timeout_s,
        **kwargs
    )
