"""Persisted records: messages, rolling summaries, agent runs and their steps."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from .provider import ChatRole


class RunStatus(StrEnum):
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


class StepType(StrEnum):
    ASSISTANT_MESSAGE = "assistant_message"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    SYSTEM_ERROR = "system_error"


@dataclass(frozen=True)
class StoredMessage:
    """A message as written to the conversation log. Never mutated."""

    id: int
    role: ChatRole
    content: str
    source: str
    external_chat_id: str | None = None
    external_user_id: str | None = None
    visible: bool = True
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: str = ""


@dataclass
class ConversationSummary:
    """Rolling summary of everything up to and including ``until_message_id``."""

    scope: str
    until_message_id: int
    summary_text: str
    updated_at: str


@dataclass
class AgentRun:
    id: int
    trigger_message_id: int | None
    source: str
    status: RunStatus
    model: str
    started_at: str
    finished_at: str | None = None
    error: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def finished(self) -> bool:
        return self.status != RunStatus.RUNNING


@dataclass
class AgentStep:
    """One trace entry of a run. ``step_index`` is 1-based and store-assigned."""

    run_id: int
    step_index: int
    step_type: StepType
    payload: dict[str, Any]
    tool_name: str | None = None
    created_at: str = ""


@dataclass
class PendingStep:
    """A step recorded by the runtime, before the store assigns its index."""

    step_type: StepType
    payload: dict[str, Any]
    tool_name: str | None = None
