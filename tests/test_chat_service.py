"""Tests for ChatService — end-to-end turns over the SQLite store."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

import pytest
import requests

from gigwatch_agent import telemetry
from gigwatch_agent.agent_runtime import FAILURE_REPLY, NOT_CONFIGURED_REPLY, AgentRuntime
from gigwatch_agent.chat_service import ChatService, IncomingMessage
from gigwatch_agent.config import AgentSettings
from gigwatch_agent.context_manager import ContextManager
from gigwatch_agent.conversation_store import ConversationStore
from gigwatch_agent.errors import InputError, RegistryFrozenError
from gigwatch_agent.openai_provider import OpenAICompatProvider
from gigwatch_agent.provider import ChatMessage, ChatResponse, ChatRole, StubLLMProvider, ToolCall
from gigwatch_agent.records import RunStatus, StepType
from gigwatch_agent.summarizer import ContextSummarizer
from gigwatch_agent.tools.base import FunctionTool
from gigwatch_agent.tools.registry import ToolRegistry

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _ping(arguments: dict) -> dict:
    return {"pong": True}


def _service(provider, store: ConversationStore | None = None) -> ChatService:
    store = store or ConversationStore()
    registry = ToolRegistry([FunctionTool("ping", "Ping", _ping)])
    runtime = AgentRuntime(provider, registry)
    return ChatService(store, registry, runtime, ContextManager(store, ContextSummarizer()))


def _incoming(text: str = "any shows tonight?") -> IncomingMessage:
    return IncomingMessage(source="web", text=text, external_chat_id="chat-1")


class ExplodingRuntime(AgentRuntime):
    async def run_turn(self, initial_messages: list[ChatMessage]):
        raise RuntimeError("database is locked")


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_turn_persists_messages_run_and_steps():
    provider = StubLLMProvider(
        script=[
            ChatResponse(
                content="",
                tool_calls=[ToolCall(tool_name="ping", call_id="c1", raw_arguments="{}")],
            ),
            ChatResponse(content="Two shows tonight."),
        ]
    )
    service = _service(provider)
    reply = await service.handle_incoming_message(_incoming("  any shows tonight?  "))

    assert reply.text == "Two shows tonight."
    assert reply.status == RunStatus.SUCCESS

    store = service.store
    user = store.get_message(reply.user_message_id)
    assert user.content == "any shows tonight?"
    assert user.external_chat_id == "chat-1"

    assistant = store.get_message(reply.assistant_message_id)
    assert assistant.role == ChatRole.ASSISTANT
    assert assistant.source == "agent"
    assert assistant.metadata["runId"] == reply.run_id
    assert assistant.metadata["estimatedPromptTokens"] <= assistant.metadata["promptTokenBudget"]
    assert assistant.metadata["modelContextWindow"] == 16 * 1024

    run = store.get_run(reply.run_id)
    assert run.status == RunStatus.SUCCESS
    assert run.trigger_message_id == user.id
    assert run.model == "stub-model"
    assert run.metadata["externalChatId"] == "chat-1"

    steps = store.list_steps(reply.run_id)
    assert [s.step_index for s in steps] == [1, 2, 3, 4]
    assert [s.step_type for s in steps] == [
        StepType.ASSISTANT_MESSAGE,
        StepType.TOOL_CALL,
        StepType.TOOL_RESULT,
        StepType.ASSISTANT_MESSAGE,
    ]

    # The prompt for the turn ends with the user message that triggered it.
    last = provider.requests[0].messages[-1]
    assert last.role == ChatRole.USER
    assert last.content == "any shows tonight?"
    await service.drain_background()


@pytest.mark.asyncio
async def test_list_visible_messages():
    service = _service(StubLLMProvider(script=[ChatResponse(content="hi there")]))
    await service.handle_incoming_message(_incoming("hello"))
    messages = service.list_visible_messages()
    assert [(m.role, m.content) for m in messages] == [
        (ChatRole.USER, "hello"),
        (ChatRole.ASSISTANT, "hi there"),
    ]
    await service.drain_background()


def test_registry_is_frozen():
    service = _service(StubLLMProvider())
    with pytest.raises(RegistryFrozenError):
        service.registry.register(FunctionTool("late", "Too late", _ping))


# ---------------------------------------------------------------------------
# Failure paths
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_empty_input_rejected_before_any_write():
    service = _service(StubLLMProvider())
    with pytest.raises(InputError):
        await service.handle_incoming_message(_incoming("   "))
    assert service.store.list_visible_latest() == []
    assert service.store.list_runs() == []


@pytest.mark.asyncio
async def test_unreachable_endpoint_gives_canned_reply_and_failed_run():
    provider = OpenAICompatProvider(api_key="sk-test", base_url="http://127.0.0.1:9/v1", model="m")
    service = _service(provider)
    with patch("gigwatch_agent.openai_provider.requests.post") as post:
        post.side_effect = requests.ConnectionError("Connection refused")
        reply = await service.handle_incoming_message(_incoming())

    assert reply.text == FAILURE_REPLY
    assert reply.status == RunStatus.FAILED
    run = service.store.get_run(reply.run_id)
    assert run.status == RunStatus.FAILED
    assert "Connection refused" in (run.error or "")
    steps = service.store.list_steps(reply.run_id)
    assert steps[-1].step_type == StepType.SYSTEM_ERROR
    assert "Connection refused" in steps[-1].payload["error"]
    assert service.store.get_message(reply.assistant_message_id).content == FAILURE_REPLY
    await service.drain_background()


@pytest.mark.asyncio
async def test_unexpected_exception_fails_run_with_canned_reply():
    store = ConversationStore()
    registry = ToolRegistry()
    service = ChatService(
        store,
        registry,
        ExplodingRuntime(StubLLMProvider(), registry),
        ContextManager(store, ContextSummarizer()),
    )
    reply = await service.handle_incoming_message(_incoming())

    assert reply.text == FAILURE_REPLY
    run = store.get_run(reply.run_id)
    assert run.status == RunStatus.FAILED
    assert run.error == "database is locked"
    assistant = store.get_message(reply.assistant_message_id)
    assert assistant.metadata["error"] == "database is locked"


@pytest.mark.asyncio
async def test_not_configured_service(tmp_path: Path, monkeypatch):
    monkeypatch.setattr(telemetry, "_DEFAULT_TRACER", None)
    settings = AgentSettings(
        openai_api_key=None,
        db_path=str(tmp_path / "db" / "chat.sqlite"),
        workspace_root=str(tmp_path),
    )
    service = ChatService.from_settings(settings)
    assert service.registry.names() == ["bash_exec", "read_file", "web_fetch"]
    assert service.registry.frozen

    reply = await service.handle_incoming_message(_incoming())
    assert reply.text == NOT_CONFIGURED_REPLY
    assert service.store.get_run(reply.run_id).status == RunStatus.FAILED
    await service.drain_background()
    service.close()


def test_from_settings_installs_configured_tracer(tmp_path: Path, monkeypatch):
    monkeypatch.setattr(telemetry, "_DEFAULT_TRACER", None)
    settings = AgentSettings(
        db_path=str(tmp_path / "chat.sqlite"),
        workspace_root=str(tmp_path),
        telemetry_exporter="stdout",
    )
    service = ChatService.from_settings(settings)
    tracer = telemetry.get_tracer()
    assert tracer.config.exporter == "stdout"
    with tracer.span("agent/turn") as span:
        assert span.is_recording()
    tracer.shutdown()
    service.close()


# ---------------------------------------------------------------------------
# Background compaction
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_compaction_runs_in_background():
    script = [ChatResponse(content=f"answer {i}") for i in range(15)]
    service = _service(StubLLMProvider(script=script))
    for i in range(15):
        await service.handle_incoming_message(_incoming(f"question {i}"))
    await service.drain_background()

    summary = service.store.get_summary("global")
    assert summary.until_message_id == 20
    assert "question 0" in summary.summary_text
