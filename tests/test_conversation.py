"""Tests for ConversationEngine with a scripted model and an in-memory tool server."""

import asyncio
import json

import pytest

from cloud_cost_shared.conversation import ConversationEngine, _make_name_maps, _openai_tools_from_mcp
from cloud_cost_shared.data_models import (
    ModelResponse,
    TextBlock,
    ToolDescriptor,
    ToolInvocation,
    ToolResultBlock,
    ToolUseBlock,
)
from cloud_cost_shared.events import EventHub
from cloud_cost_shared.exceptions import (
    ConnectionLostError,
    InvocationError,
    NotConnectedError,
    TurnError,
    TurnInProgressError,
)

SAVINGS = ToolDescriptor(
    name="calculate_instance_savings",
    description="Compare costs",
    input_schema={"type": "object", "properties": {"instances": {"type": "array"}}},
)
LISTING = ToolDescriptor(name="pricing.list", description="List", input_schema={"type": "object"})


class FakeLLM:
    """Returns queued responses and records what it was sent."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    async def generate(self, messages, instructions=None, tools=None, name_map=None):
        self.calls.append({"messages": list(messages), "instructions": instructions, "tools": tools})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return await response()
        return response


class FakeToolServer:
    def __init__(self, tools=(SAVINGS, LISTING), results=None):
        self.tools = list(tools)
        self.results = results or {}
        self.connected = True
        self.invocations = []
        self.list_calls = 0
        self._events = EventHub("connected")

    def is_connected(self):
        return self.connected

    def subscribe(self, event, callback):
        return self._events.subscribe(event, callback)

    def reconnect(self):
        self._events.emit("connected")

    async def list_tools(self):
        self.list_calls += 1
        return list(self.tools)

    async def call_tool(self, name, arguments=None):
        self.invocations.append((name, arguments))
        result = self.results.get(name, {"ok": True})
        if isinstance(result, Exception):
            raise result
        return result


def _call(call_id, name, arguments=None, **kwargs):
    return ToolInvocation(id=call_id, name=name, arguments=arguments or {}, **kwargs)


def _engine(llm, server=None, **kwargs):
    return ConversationEngine(llm, server or FakeToolServer(), "You are helpful.", **kwargs)


def test_name_maps_replace_dots_and_resolve_collisions():
    mcp_to_llm, llm_to_mcp = _make_name_maps(["a.b", "a_b", "plain"])
    assert mcp_to_llm == {"a.b": "a_b", "a_b": "a_b__2", "plain": "plain"}
    assert llm_to_mcp["a_b__2"] == "a_b"


def test_openai_tools_pass_schema_through():
    tools, mcp_to_llm, _ = _openai_tools_from_mcp([SAVINGS, LISTING])
    assert tools[0] == {
        "type": "function",
        "name": "calculate_instance_savings",
        "description": "Compare costs",
        "parameters": SAVINGS.input_schema,
        "strict": False,
    }
    assert tools[1]["name"] == mcp_to_llm["pricing.list"] == "pricing_list"


@pytest.mark.asyncio
async def test_plain_answer():
    llm = FakeLLM(ModelResponse(text="Hello!"))
    engine = _engine(llm)

    assert await engine.send_message("hi") == "Hello!"

    history = engine.get_history()
    assert [(m.role, m.content) for m in history] == [("user", "hi"), ("assistant", "Hello!")]
    assert llm.calls[0]["instructions"] == "You are helpful."


@pytest.mark.asyncio
async def test_tool_round_trip_keeps_order_and_call_ids():
    server = FakeToolServer(results={"calculate_instance_savings": {"savings": 4.6}})
    llm = FakeLLM(
        ModelResponse(
            text="Let me check.",
            tool_calls=[
                _call("call_1", "calculate_instance_savings", {"instances": []}),
                _call("call_2", "pricing_list"),
            ],
        ),
        ModelResponse(text="You save $4.60 a month."),
    )
    engine = _engine(llm, server)
    seen = []
    engine.subscribe("tool_call", lambda name, args: seen.append(name))

    answer = await engine.send_message("3 t3.micro in us-east-1")

    assert answer == "You save $4.60 a month."
    assert seen == ["calculate_instance_savings", "pricing.list"]
    assert server.invocations == [("calculate_instance_savings", {"instances": []}), ("pricing.list", {})]

    user, assistant, results, final = engine.get_history()
    assert assistant.content == [
        TextBlock(text="Let me check."),
        ToolUseBlock(id="call_1", name="calculate_instance_savings", input={"instances": []}),
        ToolUseBlock(id="call_2", name="pricing.list", input={}),
    ]
    assert results.role == "user"
    assert [b.tool_use_id for b in results.content] == ["call_1", "call_2"]
    assert json.loads(results.content[0].content) == {"savings": 4.6}
    assert final.content == "You save $4.60 a month."

    # The second model call saw the tool results
    assert len(llm.calls[1]["messages"]) == 3


@pytest.mark.asyncio
async def test_tools_are_listed_once_until_reconnect():
    server = FakeToolServer()
    llm = FakeLLM(ModelResponse(text="a"), ModelResponse(text="b"), ModelResponse(text="c"))
    engine = _engine(llm, server)

    await engine.send_message("one")
    await engine.send_message("two")
    assert server.list_calls == 1

    server.reconnect()
    await engine.send_message("three")
    assert server.list_calls == 2


@pytest.mark.asyncio
async def test_invocation_error_is_fed_back_to_model():
    server = FakeToolServer(
        results={"calculate_instance_savings": InvocationError("calculate_instance_savings", "Quantity must be positive, got 0")}
    )
    llm = FakeLLM(
        ModelResponse(text="", tool_calls=[_call("c1", "calculate_instance_savings")]),
        ModelResponse(text="Quantity must be at least 1."),
    )
    engine = _engine(llm, server)

    assert await engine.send_message("0 instances") == "Quantity must be at least 1."
    block = engine.get_history()[2].content[0]
    assert isinstance(block, ToolResultBlock)
    assert block.is_error
    assert json.loads(block.content) == {"error": "Quantity must be positive, got 0"}


@pytest.mark.asyncio
async def test_unknown_tool_and_bad_arguments_become_failures():
    server = FakeToolServer()
    llm = FakeLLM(
        ModelResponse(
            text="",
            tool_calls=[
                _call("c1", "made_up_tool"),
                _call("c2", "calculate_instance_savings", arguments_error="Invalid JSON arguments"),
            ],
        ),
        ModelResponse(text="Sorry."),
    )
    engine = _engine(llm, server)

    await engine.send_message("go")
    errors = [json.loads(b.content)["error"] for b in engine.get_history()[2].content]
    assert errors == ["Unknown tool: made_up_tool", "Invalid JSON arguments"]
    assert server.invocations == []


@pytest.mark.asyncio
async def test_tool_loop_is_bounded():
    looping = [ModelResponse(text="", tool_calls=[_call(f"c{i}", "pricing_list")]) for i in range(5)]
    engine = _engine(FakeLLM(*looping), max_tool_iterations=2)

    with pytest.raises(TurnError, match="2 iterations"):
        await engine.send_message("loop forever")
    assert not engine.is_processing


@pytest.mark.asyncio
async def test_model_failure_becomes_turn_error():
    engine = _engine(FakeLLM(RuntimeError("OpenAI API error: 401")))
    with pytest.raises(TurnError, match="401"):
        await engine.send_message("hi")
    assert not engine.is_processing


@pytest.mark.asyncio
async def test_not_connected_leaves_history_untouched():
    server = FakeToolServer()
    server.connected = False
    engine = _engine(FakeLLM(), server)

    with pytest.raises(NotConnectedError):
        await engine.send_message("hi")
    assert engine.get_history() == []


@pytest.mark.asyncio
async def test_connection_lost_propagates():
    server = FakeToolServer(results={"pricing.list": ConnectionLostError("gone")})
    llm = FakeLLM(ModelResponse(text="", tool_calls=[_call("c1", "pricing_list")]))
    engine = _engine(llm, server)

    with pytest.raises(ConnectionLostError):
        await engine.send_message("hi")


@pytest.mark.asyncio
async def test_concurrent_turn_rejected():
    release = asyncio.Event()

    async def slow():
        await release.wait()
        return ModelResponse(text="done")

    engine = _engine(FakeLLM(slow))
    first = asyncio.create_task(engine.send_message("one"))
    await asyncio.sleep(0)
    assert engine.is_processing

    with pytest.raises(TurnInProgressError):
        await engine.send_message("two")

    release.set()
    assert await first == "done"
    assert [m.content for m in engine.get_history()] == ["one", "done"]


@pytest.mark.asyncio
async def test_reset_clears_history():
    engine = _engine(FakeLLM(ModelResponse(text="a")))
    await engine.send_message("hi")
    engine.reset()
    assert engine.get_history() == []


def test_iteration_bound_must_be_positive():
    with pytest.raises(ValueError):
        _engine(FakeLLM(), max_tool_iterations=0)


@pytest.mark.asyncio
async def test_close_unsubscribes_from_tool_server():
    server = FakeToolServer()
    engine = _engine(FakeLLM(ModelResponse(text="a"), ModelResponse(text="b")), server)
    await engine.send_message("one")
    engine.close()
    server.reconnect()
    await engine.send_message("two")
    assert server.list_calls == 1


def test_engine_publishes_only_tool_call_events():
    engine = _engine(FakeLLM())
    engine.subscribe("tool_call", lambda name, args: None)
    with pytest.raises(ValueError, match="Unknown event: response"):
        engine.subscribe("response", lambda text: None)
