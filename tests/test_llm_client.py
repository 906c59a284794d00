"""
Tests for the streaming reasoning client and tool-call assembly.
"""

import json
from types import SimpleNamespace

import pytest

from ai.llm_client import (
    LLMResponse,
    MockReasoningClient,
    ReasoningClient,
    TOOL_SCHEMAS,
    ToolCallAccumulator,
    tool_response,
)
from ai.schemas import ToolCall, ToolResult, TradeAction, normalize_confidence


def tc_delta(index, id=None, name=None, arguments=None):
    return SimpleNamespace(index=index, id=id, function=SimpleNamespace(name=name, arguments=arguments))


def chunk(content=None, tool_calls=None, finish_reason=None):
    delta = SimpleNamespace(content=content, tool_calls=tool_calls)
    return SimpleNamespace(choices=[SimpleNamespace(delta=delta, finish_reason=finish_reason)])


class FakeStream:
    def __init__(self, chunks):
        self._chunks = list(chunks)

    def __aiter__(self):
        return self

    async def __anext__(self):
        if not self._chunks:
            raise StopAsyncIteration
        return self._chunks.pop(0)


class FakeCompletions:
    def __init__(self, chunks):
        self.chunks = chunks
        self.kwargs = None

    async def create(self, **kwargs):
        self.kwargs = kwargs
        return FakeStream(self.chunks)


class TestToolSchemas:

    def test_three_terminal_tools(self):
        names = [t["function"]["name"] for t in TOOL_SCHEMAS]
        assert names == ["buy", "sell", "hold"]
        for tool in TOOL_SCHEMAS:
            assert "THIS IS FINAL DECISION" in tool["function"]["description"]
        hold = TOOL_SCHEMAS[2]["function"]["parameters"]
        assert "amount" not in hold["properties"]


class TestToolCallAccumulator:
    """Fragments merged by index"""

    def test_fragments_merge_by_index(self):
        acc = ToolCallAccumulator()
        acc.add(tc_delta(0, id="call_1", name="buy", arguments='{"pair": "BTC'))
        acc.add(tc_delta(1, id="call_2", name="hold", arguments='{"pair": "ETHUSDC"}'))
        acc.add(tc_delta(0, arguments='USDC", "amount": 0.0004}'))

        calls = acc.build()

        assert [c.id for c in calls] == ["call_1", "call_2"]
        assert calls[0].arguments == {"pair": "BTCUSDC", "amount": 0.0004}
        assert calls[0].parse_error is None
        assert calls[1].name == "hold"

    def test_invalid_json_recorded_not_raised(self):
        acc = ToolCallAccumulator()
        acc.add(tc_delta(0, id="x", name="sell", arguments='{"amount": 0.1'))

        call = acc.build()[0]

        assert call.arguments == {}
        assert call.parse_error.startswith("invalid JSON arguments")
        assert call.raw_arguments == '{"amount": 0.1'

    def test_non_object_arguments(self):
        acc = ToolCallAccumulator()
        acc.add(tc_delta(0, id="x", name="hold", arguments="[1, 2]"))
        assert acc.build()[0].parse_error == "arguments are not a JSON object"

    def test_missing_id_gets_generated(self):
        acc = ToolCallAccumulator()
        acc.add(tc_delta(3, name="hold", arguments=""))
        call = acc.build()[0]
        assert call.id == "call_3"
        assert call.arguments == {}


class TestReasoningClient:
    """Streaming turn assembly"""

    async def test_streamed_turn_assembled(self):
        client = ReasoningClient(base_url="http://localhost:1234/v1", api_key="noop", model="local-model",
                                 temperature=0.2)
        completions = FakeCompletions([
            chunk(content="Momentum "),
            chunk(content="is fading."),
            chunk(tool_calls=[tc_delta(0, id="call_9", name="sell", arguments='{"pair":"BTCUSDC",')]),
            chunk(tool_calls=[tc_delta(0, arguments='"amount":0.0002,"confidence":65}')]),
            chunk(finish_reason="tool_calls"),
        ])
        client.client = SimpleNamespace(chat=SimpleNamespace(completions=completions))
        messages = [{"role": "user", "content": "go"}]

        response = await client.complete(messages)

        assert response.content == "Momentum is fading."
        assert response.finish_reason == "tool_calls"
        assert response.tool_calls[0].name == "sell"
        assert response.tool_calls[0].arguments == {"pair": "BTCUSDC", "amount": 0.0002, "confidence": 65}
        assert completions.kwargs["stream"] is True
        assert completions.kwargs["model"] == "local-model"
        assert completions.kwargs["tools"] is TOOL_SCHEMAS
        assert completions.kwargs["temperature"] == 0.2
        assert response.latency_ms >= 0

    async def test_chunks_without_choices_ignored(self):
        client = ReasoningClient(base_url="http://localhost:1234/v1", api_key="", model="m")
        completions = FakeCompletions([SimpleNamespace(choices=[]), chunk(content="ok")])
        client.client = SimpleNamespace(chat=SimpleNamespace(completions=completions))

        response = await client.complete([])

        assert response.content == "ok"
        assert response.tool_calls == []
        assert "temperature" not in completions.kwargs


class TestMessages:

    def test_assistant_message_with_tool_calls(self):
        response = tool_response("hold", content="wait", call_id="c1", pair="BTCUSDC", confidence=50)
        message = response.to_message()
        assert message["role"] == "assistant"
        assert message["content"] == "wait"
        assert message["tool_calls"][0]["function"]["name"] == "hold"
        assert json.loads(message["tool_calls"][0]["function"]["arguments"]) == {"pair": "BTCUSDC", "confidence": 50}

    def test_empty_response_has_no_tool_calls_key(self):
        assert LLMResponse().to_message() == {"role": "assistant", "content": ""}

    def test_tool_result_display(self):
        assert ToolResult.success("Hold for pair BTCUSDC").display() == "✅ Hold for pair BTCUSDC"
        assert ToolResult.failure("nope").display() == "❌ nope"

    async def test_mock_client_records_transcripts(self):
        client = MockReasoningClient([tool_response("hold")])
        first = await client.complete([{"role": "user", "content": "a"}])
        second = await client.complete([])
        assert first.tool_calls[0].name == "hold"
        assert second.tool_calls == []
        assert client.call_count == 2
        assert client.transcripts[0] == [{"role": "user", "content": "a"}]


class TestTradeAction:

    @pytest.mark.parametrize("name,expected", [("buy", TradeAction.BUY), (" SELL ", TradeAction.SELL),
                                               ("Hold", TradeAction.HOLD)])
    def test_from_tool_name(self, name, expected):
        assert TradeAction.from_tool_name(name) is expected

    def test_unknown_tool_name(self):
        with pytest.raises(ValueError):
            TradeAction.from_tool_name("short")

    def test_tool_call_message_uses_raw_arguments(self):
        call = ToolCall(id="1", name="buy", arguments={"a": 1}, raw_arguments='{"a":1}')
        assert call.to_message()["function"]["arguments"] == '{"a":1}'


class TestNormalizeConfidence:

    @pytest.mark.parametrize("value,expected", [
        (80, 80),
        (0.8, 80),
        (1.0, 100),
        (0, 0),
        (150, 100),
        (-5, 0),
        (72.6, 73),
        ("65", 65),
        ("0.35", 35),
        ("90%", 90),
        ("high", 0),
        (None, 0),
        (True, 0),
        (float("nan"), 0),
        (float("inf"), 0),
        (float("-inf"), 0),
        ("Infinity", 0),
        ("inf%", 0),
    ])
    def test_normalization(self, value, expected):
        assert normalize_confidence(value) == expected
