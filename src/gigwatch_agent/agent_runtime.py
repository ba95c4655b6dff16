"""Agent runtime — the bounded completion / tool-dispatch loop for one turn.

Each iteration asks the model for a completion with the registry's tool
schemas attached. Tool calls are dispatched in order and their results fed
back as ``tool`` messages; a non-empty text answer without tool calls ends
the turn. Every failure short of a provider error is recovered inside the
loop and shown to the model as a structured tool result.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from .errors import AgentError, BudgetExceededError, ErrorKind, ToolArgumentError, UnknownToolError
from .model_catalog import resolve_temperature
from .provider import ChatMessage, ChatRequest, ChatRole, LLMProvider, ToolCall
from .records import PendingStep, StepType
from .telemetry import get_tracer, trace_completion, trace_tool_call
from .tools.base import ToolResult
from .tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS = 50
LIST_COMPACT_LIMIT = 10

FAILURE_REPLY = "Something went wrong while handling your request. Please try again later."
INCOMPLETE_REPLY = "I could not finish this task. Please rephrase it and try again."
NOT_CONFIGURED_REPLY = (
    "The language model is not configured (OPENAI_API_KEY is missing), "
    "so I cannot handle requests yet."
)


class RuntimeState(StrEnum):
    AWAITING_COMPLETION = "awaiting_completion"
    DISPATCHING_TOOLS = "dispatching_tools"
    DONE = "done"
    ERROR = "error"


_TRANSITIONS: dict[RuntimeState, list[RuntimeState]] = {
    RuntimeState.AWAITING_COMPLETION: [
        RuntimeState.DISPATCHING_TOOLS,
        RuntimeState.AWAITING_COMPLETION,  # empty answer, ask again
        RuntimeState.DONE,
        RuntimeState.ERROR,
    ],
    RuntimeState.DISPATCHING_TOOLS: [RuntimeState.AWAITING_COMPLETION],
    RuntimeState.DONE: [],
    RuntimeState.ERROR: [],
}


def can_transition(current: RuntimeState, target: RuntimeState) -> bool:
    return target in _TRANSITIONS.get(current, [])


class TurnStatus(StrEnum):
    SUCCESS = "success"
    FAILED = "failed"


@dataclass
class TurnResult:
    """Outcome of :meth:`AgentRuntime.run_turn`."""

    reply: str
    status: TurnStatus
    messages: list[ChatMessage]
    steps: list[PendingStep] = field(default_factory=list)
    error: str | None = None
    iterations: int = 0

    @property
    def succeeded(self) -> bool:
        return self.status == TurnStatus.SUCCESS


# ---------------------------------------------------------------------------
# Tool result shaping
# ---------------------------------------------------------------------------


def _compact_list(value: Any, limit: int) -> Any:
    if isinstance(value, list) and len(value) > limit:
        return {"items": value[:limit], "total": len(value)}
    return value


def compact_tool_result(payload: dict[str, Any], limit: int = LIST_COMPACT_LIMIT) -> dict[str, Any]:
    """Shorten long list fields of ``payload["data"]`` before they reach the model.

    Lists longer than *limit* become ``{"items": first limit, "total": n}``,
    both directly under ``data`` and one level down in nested dicts.
    """
    data = payload.get("data")
    if not isinstance(data, dict):
        return payload
    compacted: dict[str, Any] = {}
    for key, value in data.items():
        if isinstance(value, dict):
            value = {k: _compact_list(v, limit) for k, v in value.items()}
        compacted[key] = _compact_list(value, limit)
    return {**payload, "data": compacted}


def parse_tool_arguments(call: ToolCall) -> dict[str, Any]:
    """Decode a tool call's arguments.

    Raises:
        ToolArgumentError: If the JSON is malformed or not an object.
    """
    if call.raw_arguments is None:
        return dict(call.arguments)
    text = call.raw_arguments.strip() or "{}"
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as exc:
        msg = f"Tool arguments parse error: {exc}"
        raise ToolArgumentError(msg) from exc
    if not isinstance(parsed, dict):
        msg = f"Tool arguments must be a JSON object, got {type(parsed).__name__}"
        raise ToolArgumentError(msg)
    return parsed


def _error_step(error: str, kind: ErrorKind, tool_name: str | None = None) -> PendingStep:
    return PendingStep(
        StepType.SYSTEM_ERROR,
        {"error": error, "errorKind": kind.value},
        tool_name=tool_name,
    )


# ---------------------------------------------------------------------------
# AgentRuntime
# ---------------------------------------------------------------------------


class AgentRuntime:
    """Runs one conversational turn against a provider and a tool registry."""

    def __init__(
        self,
        provider: LLMProvider | None,
        registry: ToolRegistry,
        model: str | None = None,
        temperature: float | None = None,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
    ) -> None:
        if max_iterations <= 0:
            msg = "max_iterations must be positive"
            raise ValueError(msg)
        self._provider = provider
        self._registry = registry
        self._model = model or (provider.model if provider is not None else "")
        self._temperature = resolve_temperature(self._model, temperature, 1.0)
        self._max_iterations = max_iterations

    @property
    def model(self) -> str:
        return self._model

    @property
    def configured(self) -> bool:
        return self._provider is not None and bool(self._model)

    @property
    def max_iterations(self) -> int:
        return self._max_iterations

    async def run_turn(self, initial_messages: list[ChatMessage]) -> TurnResult:
        messages = list(initial_messages)
        steps: list[PendingStep] = []
        state = RuntimeState.AWAITING_COMPLETION

        def move(target: RuntimeState) -> None:
            nonlocal state
            if not can_transition(state, target):
                msg = f"Invalid runtime transition: {state} -> {target}"
                raise RuntimeError(msg)
            state = target

        provider = self._provider
        if provider is None or not self._model:
            move(RuntimeState.ERROR)
            steps.append(_error_step("provider_not_configured", ErrorKind.PROVIDER))
            messages.append(ChatMessage(role=ChatRole.ASSISTANT, content=NOT_CONFIGURED_REPLY))
            return TurnResult(
                reply=NOT_CONFIGURED_REPLY,
                status=TurnStatus.FAILED,
                messages=messages,
                steps=steps,
                error="provider_not_configured",
            )

        tool_specs = self._registry.export_schemas()
        iterations = 0

        while iterations < self._max_iterations:
            iterations += 1
            request = ChatRequest(
                model=self._model,
                messages=messages,
                temperature=self._temperature,
                tool_choice="auto",
            )
            try:
                with trace_completion(self._model, iterations):
                    response = await provider.chat_with_tools(request, tool_specs)
            except Exception as exc:
                error = f"LLM iteration failed: {exc}"
                logger.error("%s", error)
                move(RuntimeState.ERROR)
                kind = exc.kind if isinstance(exc, AgentError) else ErrorKind.PROVIDER
                steps.append(_error_step(error, kind))
                return TurnResult(
                    reply=FAILURE_REPLY,
                    status=TurnStatus.FAILED,
                    messages=messages,
                    steps=steps,
                    error=error,
                    iterations=iterations,
                )

            calls = [
                call
                if call.call_id
                else call.model_copy(update={"call_id": f"call_{iterations}_{i}"})
                for i, call in enumerate(response.tool_calls)
            ]
            content = response.content.strip()
            messages.append(ChatMessage(role=ChatRole.ASSISTANT, content=content, tool_calls=calls))
            steps.append(
                PendingStep(
                    StepType.ASSISTANT_MESSAGE,
                    {"content": content, "toolCalls": len(calls)},
                )
            )

            if calls:
                move(RuntimeState.DISPATCHING_TOOLS)
                logger.info("Model requested %d tool calls", len(calls))
                for call in calls:
                    await self._dispatch(call, messages, steps)
                move(RuntimeState.AWAITING_COMPLETION)
                continue

            if content:
                move(RuntimeState.DONE)
                return TurnResult(
                    reply=content,
                    status=TurnStatus.SUCCESS,
                    messages=messages,
                    steps=steps,
                    iterations=iterations,
                )
            move(RuntimeState.AWAITING_COMPLETION)

        logger.warning("Reached %d iterations without a final answer", self._max_iterations)
        move(RuntimeState.ERROR)
        exhausted = BudgetExceededError("max_iterations_reached")
        steps.append(_error_step(exhausted.message, exhausted.kind))
        return TurnResult(
            reply=INCOMPLETE_REPLY,
            status=TurnStatus.FAILED,
            messages=messages,
            steps=steps,
            error=exhausted.message,
            iterations=iterations,
        )

    async def _dispatch(
        self,
        call: ToolCall,
        messages: list[ChatMessage],
        steps: list[PendingStep],
    ) -> None:
        """Run one tool call; every outcome ends as a ``tool`` message."""
        name = call.tool_name

        def reply(payload: dict[str, Any]) -> None:
            messages.append(
                ChatMessage(
                    role=ChatRole.TOOL,
                    content=json.dumps(payload, ensure_ascii=False, default=str),
                    tool_call_id=call.call_id,
                )
            )

        def recover(kind: ErrorKind, error: str) -> None:
            logger.warning("Tool call %s recovered: %s", name, error)
            steps.append(_error_step(error, kind, tool_name=name))
            reply(ToolResult.fail(kind, error).to_payload())

        try:
            arguments = parse_tool_arguments(call)
        except ToolArgumentError as exc:
            recover(exc.kind, exc.message)
            return

        steps.append(PendingStep(StepType.TOOL_CALL, {"arguments": arguments}, tool_name=name))

        tool = self._registry.get(name)
        if tool is None:
            exc = UnknownToolError(f'Tool "{name}" not found')
            recover(exc.kind, exc.message)
            return

        with trace_tool_call(name):
            try:
                result = await tool.execute(arguments)
            except Exception as exc:
                logger.warning("Tool %s raised", name, exc_info=True)
                result = ToolResult.fail(ErrorKind.TOOL_EXECUTION, str(exc))
            get_tracer().record_event(
                "tool.result",
                {
                    "tool.success": str(result.success).lower(),
                    "tool.error_kind": result.error_kind or "",
                },
            )

        payload = compact_tool_result(result.to_payload())
        steps.append(
            PendingStep(
                StepType.TOOL_RESULT,
                {"success": result.success, "result": payload},
                tool_name=name,
            )
        )
        reply(payload)
