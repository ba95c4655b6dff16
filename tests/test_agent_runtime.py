"""Tests for AgentRuntime — the completion / tool-dispatch loop."""

from __future__ import annotations

import json
from typing import Any

import pytest
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from gigwatch_agent import telemetry
from gigwatch_agent.agent_runtime import (
    FAILURE_REPLY,
    INCOMPLETE_REPLY,
    NOT_CONFIGURED_REPLY,
    AgentRuntime,
    RuntimeState,
    TurnStatus,
    can_transition,
    compact_tool_result,
    parse_tool_arguments,
)
from gigwatch_agent.errors import ProviderError, ToolArgumentError
from gigwatch_agent.provider import (
    ChatMessage,
    ChatResponse,
    ChatRole,
    StubLLMProvider,
    ToolCall,
)
from gigwatch_agent.records import StepType
from gigwatch_agent.telemetry import AgentTracer, TelemetryConfig
from gigwatch_agent.tools.base import FunctionTool
from gigwatch_agent.tools.registry import ToolRegistry

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _prompt() -> list[ChatMessage]:
    return [
        ChatMessage(role=ChatRole.SYSTEM, content="You are a test agent."),
        ChatMessage(role=ChatRole.USER, content="list the events"),
    ]


def _call(name: str, arguments: str, call_id: str = "call_1") -> ChatResponse:
    return ChatResponse(
        content="",
        tool_calls=[ToolCall(tool_name=name, call_id=call_id, raw_arguments=arguments)],
    )


async def _list_events(arguments: dict[str, Any]) -> dict[str, Any]:
    count = int(arguments.get("count", 3))
    return {"events": [{"id": i} for i in range(count)], "city": "Shanghai"}


async def _explode(arguments: dict[str, Any]) -> dict[str, Any]:
    raise RuntimeError("scraper crashed")


def _registry() -> ToolRegistry:
    return ToolRegistry(
        [
            FunctionTool("list_events", "List events", _list_events),
            FunctionTool("explode", "Always fails", _explode),
        ]
    )


@pytest.fixture
def spans(monkeypatch):
    exporter = InMemorySpanExporter()
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    tracer = AgentTracer(TelemetryConfig(exporter="none"))
    tracer._tracer = provider.get_tracer("test")
    monkeypatch.setattr(telemetry, "_DEFAULT_TRACER", tracer)
    yield exporter
    provider.shutdown()


def _tool_messages(messages: list[ChatMessage]) -> list[dict[str, Any]]:
    return [json.loads(m.content) for m in messages if m.role == ChatRole.TOOL]


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def test_transition_table():
    assert can_transition(RuntimeState.AWAITING_COMPLETION, RuntimeState.DISPATCHING_TOOLS)
    assert can_transition(RuntimeState.DISPATCHING_TOOLS, RuntimeState.AWAITING_COMPLETION)
    assert not can_transition(RuntimeState.DISPATCHING_TOOLS, RuntimeState.DONE)
    assert not can_transition(RuntimeState.DONE, RuntimeState.AWAITING_COMPLETION)
    assert not can_transition(RuntimeState.ERROR, RuntimeState.DONE)


def test_parse_tool_arguments():
    assert parse_tool_arguments(ToolCall(tool_name="t", raw_arguments='{"a": 1}')) == {"a": 1}
    assert parse_tool_arguments(ToolCall(tool_name="t", raw_arguments="  ")) == {}
    assert parse_tool_arguments(ToolCall(tool_name="t", arguments={"b": 2})) == {"b": 2}
    with pytest.raises(ToolArgumentError):
        parse_tool_arguments(ToolCall(tool_name="t", raw_arguments="{not json"))
    with pytest.raises(ToolArgumentError, match="JSON object"):
        parse_tool_arguments(ToolCall(tool_name="t", raw_arguments="[1, 2]"))


def test_compact_tool_result():
    payload = {
        "success": True,
        "data": {
            "events": list(range(25)),
            "report": {"events": list(range(12)), "title": "daily"},
            "short": [1, 2],
        },
    }
    compacted = compact_tool_result(payload)
    assert compacted["data"]["events"] == {"items": list(range(10)), "total": 25}
    assert compacted["data"]["report"]["events"]["total"] == 12
    assert compacted["data"]["report"]["title"] == "daily"
    assert compacted["data"]["short"] == [1, 2]
    assert payload["data"]["events"] == list(range(25))
    assert compact_tool_result({"success": False, "error": "x"}) == {"success": False, "error": "x"}


# ---------------------------------------------------------------------------
# run_turn
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_plain_answer():
    provider = StubLLMProvider(script=[ChatResponse(content="  Nothing on tonight.  ")])
    result = await AgentRuntime(provider, _registry()).run_turn(_prompt())

    assert result.status == TurnStatus.SUCCESS
    assert result.reply == "Nothing on tonight."
    assert result.iterations == 1
    assert [s.step_type for s in result.steps] == [StepType.ASSISTANT_MESSAGE]
    assert result.steps[0].payload == {"content": "Nothing on tonight.", "toolCalls": 0}

    request = provider.requests[0]
    assert request.tool_choice == "auto"
    assert request.temperature == 1.0
    assert [s.name for s in provider.tool_specs[0]] == ["list_events", "explode"]


@pytest.mark.asyncio
async def test_tool_call_then_answer():
    provider = StubLLMProvider(
        script=[
            _call("list_events", '{"count": 15}'),
            ChatResponse(content="There are 15 events."),
        ]
    )
    result = await AgentRuntime(provider, _registry()).run_turn(_prompt())

    assert result.status == TurnStatus.SUCCESS
    assert result.reply == "There are 15 events."
    assert [s.step_type for s in result.steps] == [
        StepType.ASSISTANT_MESSAGE,
        StepType.TOOL_CALL,
        StepType.TOOL_RESULT,
        StepType.ASSISTANT_MESSAGE,
    ]
    assert result.steps[1].payload == {"arguments": {"count": 15}}
    assert result.steps[2].tool_name == "list_events"
    assert result.steps[2].payload["success"] is True

    tool_message = next(m for m in result.messages if m.role == ChatRole.TOOL)
    assert tool_message.tool_call_id == "call_1"
    content = json.loads(tool_message.content)
    assert content["data"]["events"]["total"] == 15
    assert len(content["data"]["events"]["items"]) == 10

    # The second request replays the assistant tool call and the tool result.
    second = provider.requests[1].messages
    assert second[-2].role == ChatRole.ASSISTANT
    assert second[-2].tool_calls[0].call_id == "call_1"
    assert second[-1].role == ChatRole.TOOL


@pytest.mark.asyncio
async def test_malformed_arguments_are_recovered():
    provider = StubLLMProvider(
        script=[_call("list_events", "{count: 15"), ChatResponse(content="Sorry, retrying.")]
    )
    result = await AgentRuntime(provider, _registry()).run_turn(_prompt())

    assert result.status == TurnStatus.SUCCESS
    error_step = result.steps[1]
    assert error_step.step_type == StepType.SYSTEM_ERROR
    assert error_step.payload["errorKind"] == "tool_argument"
    assert _tool_messages(result.messages) == [
        {
            "success": False,
            "error": error_step.payload["error"],
            "error_kind": "tool_argument",
            "duration_ms": 0.0,
        }
    ]


@pytest.mark.asyncio
async def test_unknown_tool_is_recovered():
    provider = StubLLMProvider(
        script=[_call("rm_rf", "{}"), ChatResponse(content="I cannot do that.")]
    )
    result = await AgentRuntime(provider, _registry()).run_turn(_prompt())

    assert result.status == TurnStatus.SUCCESS
    assert [s.step_type for s in result.steps[:3]] == [
        StepType.ASSISTANT_MESSAGE,
        StepType.TOOL_CALL,
        StepType.SYSTEM_ERROR,
    ]
    assert _tool_messages(result.messages)[0]["error_kind"] == "unknown_tool"


@pytest.mark.asyncio
async def test_tool_exception_becomes_failed_result():
    provider = StubLLMProvider(script=[_call("explode", "{}"), ChatResponse(content="It failed.")])
    result = await AgentRuntime(provider, _registry()).run_turn(_prompt())

    assert result.status == TurnStatus.SUCCESS
    tool_result = result.steps[2]
    assert tool_result.step_type == StepType.TOOL_RESULT
    assert tool_result.payload["success"] is False
    assert tool_result.payload["result"]["error"] == "scraper crashed"
    assert _tool_messages(result.messages)[0]["error_kind"] == "tool_execution"


@pytest.mark.asyncio
async def test_missing_call_ids_are_filled_in():
    provider = StubLLMProvider(
        script=[_call("list_events", "{}", call_id=""), ChatResponse(content="done")]
    )
    result = await AgentRuntime(provider, _registry()).run_turn(_prompt())
    tool_message = next(m for m in result.messages if m.role == ChatRole.TOOL)
    assert tool_message.tool_call_id == "call_1_0"


@pytest.mark.asyncio
async def test_empty_answer_asks_again():
    provider = StubLLMProvider(script=[ChatResponse(content=""), ChatResponse(content="Here.")])
    result = await AgentRuntime(provider, _registry()).run_turn(_prompt())
    assert result.reply == "Here."
    assert result.iterations == 2


@pytest.mark.asyncio
async def test_iteration_cap_gives_incomplete_reply():
    script = [_call("list_events", "{}", call_id=f"c{i}") for i in range(5)]
    provider = StubLLMProvider(script=script)
    result = await AgentRuntime(provider, _registry(), max_iterations=3).run_turn(_prompt())

    assert result.status == TurnStatus.FAILED
    assert result.reply == INCOMPLETE_REPLY
    assert result.iterations == 3
    assert len(provider.requests) == 3
    assert result.steps[-1].payload == {
        "error": "max_iterations_reached",
        "errorKind": "budget_exceeded",
    }


@pytest.mark.asyncio
async def test_provider_error_gives_canned_reply():
    provider = StubLLMProvider(script=[ProviderError("HTTP 502 from upstream")])
    result = await AgentRuntime(provider, _registry()).run_turn(_prompt())

    assert result.status == TurnStatus.FAILED
    assert result.reply == FAILURE_REPLY
    assert "502" not in result.reply
    assert "502" in result.steps[-1].payload["error"]
    assert result.steps[-1].payload["errorKind"] == "provider"


@pytest.mark.asyncio
async def test_not_configured():
    result = await AgentRuntime(None, _registry()).run_turn(_prompt())
    assert result.status == TurnStatus.FAILED
    assert result.reply == NOT_CONFIGURED_REPLY
    assert result.messages[-1].content == NOT_CONFIGURED_REPLY
    assert result.steps[0].payload["error"] == "provider_not_configured"


@pytest.mark.asyncio
async def test_provider_without_model_is_not_configured():
    provider = StubLLMProvider(model="")
    runtime = AgentRuntime(provider, _registry())
    assert not runtime.configured
    result = await runtime.run_turn(_prompt())
    assert result.reply == NOT_CONFIGURED_REPLY
    assert provider.requests == []


def test_rejects_non_positive_iteration_cap():
    with pytest.raises(ValueError):
        AgentRuntime(StubLLMProvider(), ToolRegistry(), max_iterations=0)


@pytest.mark.asyncio
async def test_turn_is_traced(spans):
    provider = StubLLMProvider(
        script=[_call("explode", "{}"), ChatResponse(content="It failed.")]
    )
    await AgentRuntime(provider, _registry()).run_turn(_prompt())

    finished = spans.get_finished_spans()
    assert [s.name for s in finished].count("llm/completion") == 2
    tool_span = next(s for s in finished if s.name == "tool/call")
    assert tool_span.attributes["tool.name"] == "explode"
    event = tool_span.events[0]
    assert event.name == "tool.result"
    assert event.attributes["tool.success"] == "false"
    assert event.attributes["tool.error_kind"] == "tool_execution"
