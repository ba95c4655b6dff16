"""LLM Provider abstraction — pluggable backend for real and stub LLMs."""

from __future__ import annotations

from abc import ABC, abstractmethod
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

# ---------------------------------------------------------------------------
# Data types
# ---------------------------------------------------------------------------


class ChatRole(StrEnum):
    """Role of a message participant."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class ToolCall(BaseModel):
    """A tool invocation returned by the LLM.

    ``raw_arguments`` keeps the JSON text exactly as the model produced it;
    ``arguments`` is used when a provider hands over already-decoded input.
    """

    tool_name: str
    call_id: str = ""
    arguments: dict[str, Any] = Field(default_factory=dict)
    raw_arguments: str | None = None


class ChatMessage(BaseModel):
    """Single message in a conversation."""

    role: ChatRole
    content: str
    tool_calls: list[ToolCall] = Field(default_factory=list)
    tool_call_id: str | None = None


class ChatRequest(BaseModel):
    """Request payload sent to an LLM provider."""

    model: str
    messages: list[ChatMessage]
    max_tokens: int | None = None
    temperature: float | None = None
    tool_choice: str | None = None


class ToolSpec(BaseModel):
    """Specification for a tool that an LLM can call."""

    name: str
    description: str
    parameters: dict[str, Any] = Field(default_factory=dict)


class TokenUsage(BaseModel):
    """Token consumption metrics for a single request."""

    prompt_tokens: int
    completion_tokens: int


class ChatResponse(BaseModel):
    """Response returned from an LLM provider."""

    content: str
    tool_calls: list[ToolCall] = Field(default_factory=list)
    usage: TokenUsage | None = None


# ---------------------------------------------------------------------------
# LLMProvider ABC
# ---------------------------------------------------------------------------


class LLMProvider(ABC):
    """Abstract base class for LLM providers."""

    @abstractmethod
    def name(self) -> str:
        """Return the canonical provider name (e.g. 'openai', 'stub')."""

    @property
    @abstractmethod
    def model(self) -> str:
        """Return the default model name for requests."""

    @abstractmethod
    async def chat(self, request: ChatRequest) -> ChatResponse:
        """Send a chat completion request."""

    @abstractmethod
    async def chat_with_tools(self, request: ChatRequest, tools: list[ToolSpec]) -> ChatResponse:
        """Send a chat completion request with tool definitions."""


# ---------------------------------------------------------------------------
# Stub implementation (for testing / offline development)
# ---------------------------------------------------------------------------


class StubLLMProvider(LLMProvider):
    """Returns scripted or canned responses without making real HTTP calls.

    Each call pops the next entry of *script*. An entry that is an exception
    is raised instead of returned. Once the script is exhausted the provider
    answers with a deterministic canned text.
    """

    _CANNED = "This is a stub response for testing purposes."

    def __init__(
        self,
        script: list[ChatResponse | Exception] | None = None,
        model: str = "stub-model",
    ) -> None:
        self._script = list(script or [])
        self._model = model
        self.requests: list[ChatRequest] = []
        self.tool_specs: list[list[ToolSpec]] = []

    def name(self) -> str:
        return "stub"

    @property
    def model(self) -> str:
        return self._model

    async def chat(self, request: ChatRequest) -> ChatResponse:
        """Return the next scripted response, or a deterministic canned one."""
        self.requests.append(request.model_copy(deep=True))
        if self._script:
            entry = self._script.pop(0)
            if isinstance(entry, Exception):
                raise entry
            return entry
        prompt_tokens = sum(len(m.content.split()) for m in request.messages)
        reply = f"{self._CANNED} (model={request.model})"
        return ChatResponse(
            content=reply,
            tool_calls=[],
            usage=TokenUsage(
                prompt_tokens=prompt_tokens,
                completion_tokens=len(reply.split()),
            ),
        )

    async def chat_with_tools(self, request: ChatRequest, tools: list[ToolSpec]) -> ChatResponse:
        """Record the offered tools, then answer like :meth:`chat`."""
        self.tool_specs.append(list(tools))
        return await self.chat(request)
