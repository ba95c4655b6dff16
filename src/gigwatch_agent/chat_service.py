"""Chat service — the entry point every channel calls with an inbound message.

One call is one turn: persist the user message, open a run, build the
prompt, run the agent loop, persist its steps and reply, close the run.
History compaction is scheduled in the background afterwards so it never
delays the reply.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from typing import Any

from pydantic import BaseModel, Field

from .agent_runtime import FAILURE_REPLY, AgentRuntime, TurnStatus
from .config import AgentSettings
from .context_manager import ContextManager
from .conversation_store import ConversationStore
from .errors import InputError
from .provider import ChatRole
from .provider_factory import ProviderFactory
from .records import RunStatus, StoredMessage
from .summarizer import ContextSummarizer
from .telemetry import TelemetryConfig, install_tracer, trace_agent_turn
from .tools.base import Tool
from .tools.read_file import ReadFileTool
from .tools.registry import ToolRegistry
from .tools.sandbox_exec import SandboxedExecutor
from .tools.web_fetch import WebFetchTool

logger = logging.getLogger(__name__)

AGENT_SOURCE = "agent"

SYSTEM_PROMPT = "\n".join(
    [
        "You are the GigWatch assistant. Users describe tasks in natural language; "
        "you complete them by calling the provided tools.",
        "",
        "Key files (relative to the project root):",
        "- Monitoring config: ./config/monitoring.json",
        "- Data directory: ./data",
        "",
        "Working with files:",
        "- Prefer the bash_exec tool to inspect project files "
        "(find, grep, ls, cat, head, tail, wc).",
        "- bash_exec takes a command plus an argument list; pipes and redirects "
        "are not supported.",
        "- read_file reads a single file from the config or data directories.",
        "- web_fetch downloads a web page (http or https) and returns its title and text.",
        "",
        "Answering:",
        "- Ask for missing information first; if the tools cannot do the task, say so.",
    ]
)


class IncomingMessage(BaseModel):
    """An inbound chat message from any channel."""

    source: str
    text: str
    external_chat_id: str | None = None
    external_user_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class ChatReply(BaseModel):
    text: str
    user_message_id: int
    assistant_message_id: int
    run_id: int
    status: RunStatus


class ChatService:
    """Orchestrates one turn per inbound message."""

    def __init__(
        self,
        store: ConversationStore,
        registry: ToolRegistry,
        runtime: AgentRuntime,
        context_manager: ContextManager,
        system_prompt: str = SYSTEM_PROMPT,
    ) -> None:
        registry.freeze()
        self._store = store
        self._registry = registry
        self._runtime = runtime
        self._context = context_manager
        self._system_prompt = system_prompt
        self._background: set[asyncio.Task[None]] = set()

    @classmethod
    def from_settings(cls, settings: AgentSettings, tools: Iterable[Tool] = ()) -> ChatService:
        """Wire tracing, store, tools, provider, summarizer, context manager and runtime."""
        install_tracer(
            TelemetryConfig(
                exporter=settings.telemetry_exporter,
                otlp_endpoint=settings.otlp_endpoint,
            )
        )
        store = ConversationStore(settings.db_path)
        registry = ToolRegistry(
            [
                SandboxedExecutor(root=settings.workspace_root),
                ReadFileTool(settings.read_roots, base_dir=settings.workspace_root),
                WebFetchTool(),
                *tools,
            ]
        )
        provider = ProviderFactory.create(settings)
        logger.info("Using %s", ProviderFactory.describe(provider))
        summarizer = ContextSummarizer(
            provider, model=settings.openai_model, temperature=settings.openai_temperature
        )
        runtime = AgentRuntime(
            provider,
            registry,
            model=settings.openai_model,
            temperature=settings.openai_temperature,
            max_iterations=settings.max_iterations,
        )
        return cls(store, registry, runtime, ContextManager(store, summarizer))

    @property
    def store(self) -> ConversationStore:
        return self._store

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    async def handle_incoming_message(self, message: IncomingMessage) -> ChatReply:
        """Run one turn for *message* and return the reply that was stored.

        Raises:
            InputError: If the message text is empty; nothing is persisted.
        """
        text = (message.text or "").strip()
        if not text:
            msg = "Empty message"
            raise InputError(msg)

        user_message = self._store.insert_message(
            ChatRole.USER,
            text,
            message.source,
            external_chat_id=message.external_chat_id,
            external_user_id=message.external_user_id,
            metadata=message.metadata,
        )
        run = self._store.start_run(
            user_message.id,
            message.source,
            self._runtime.model,
            metadata={
                "externalChatId": message.external_chat_id,
                "externalUserId": message.external_user_id,
            },
        )

        try:
            with trace_agent_turn(message.source) as span:
                span.set_attribute("run.id", run.id)
                prompt = await self._context.build_prompt(
                    user_message.id, self._system_prompt, self._runtime.model
                )
                result = await self._runtime.run_turn(prompt.messages)

            for step in result.steps:
                self._store.append_step(run.id, step.step_type, step.payload, step.tool_name)

            assistant_message = self._store.insert_message(
                ChatRole.ASSISTANT,
                result.reply,
                AGENT_SOURCE,
                external_chat_id=message.external_chat_id,
                external_user_id=message.external_user_id,
                metadata={
                    "runId": run.id,
                    "estimatedPromptTokens": prompt.estimated_prompt_tokens,
                    "promptTokenBudget": prompt.prompt_token_budget,
                    "modelContextWindow": prompt.model_context_window,
                },
            )
            status = RunStatus.SUCCESS if result.status == TurnStatus.SUCCESS else RunStatus.FAILED
            self._store.finish_run(
                run.id,
                status,
                error=result.error,
                metadata={"iterations": result.iterations},
            )
        except Exception as exc:
            logger.exception("Failed to handle message for run %d", run.id)
            self._store.finish_run(run.id, RunStatus.FAILED, error=str(exc))
            assistant_message = self._store.insert_message(
                ChatRole.ASSISTANT,
                FAILURE_REPLY,
                AGENT_SOURCE,
                external_chat_id=message.external_chat_id,
                external_user_id=message.external_user_id,
                metadata={"runId": run.id, "error": str(exc)},
            )
            return ChatReply(
                text=FAILURE_REPLY,
                user_message_id=user_message.id,
                assistant_message_id=assistant_message.id,
                run_id=run.id,
                status=RunStatus.FAILED,
            )

        self._schedule_compaction()
        return ChatReply(
            text=result.reply,
            user_message_id=user_message.id,
            assistant_message_id=assistant_message.id,
            run_id=run.id,
            status=status,
        )

    def list_visible_messages(self, limit: int = 200) -> list[StoredMessage]:
        return self._store.list_visible_latest(limit)

    # ------------------------------------------------------------------
    # Background compaction
    # ------------------------------------------------------------------

    def _schedule_compaction(self) -> None:
        task = asyncio.create_task(self._compact())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _compact(self) -> None:
        try:
            await self._context.maybe_compact_history()
        except Exception:
            logger.exception("Background history compaction failed")

    async def drain_background(self) -> None:
        """Wait for every scheduled compaction task to finish."""
        while self._background:
            pending = list(self._background)
            await asyncio.gather(*pending)
            self._background.difference_update(pending)

    def close(self) -> None:
        self._store.close()
