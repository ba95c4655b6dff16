"""GigWatch agent — conversational tool-using agent runtime."""

from __future__ import annotations

__version__ = "0.1.0"

from .agent_runtime import AgentRuntime, RuntimeState, TurnResult, TurnStatus
from .channels import ChannelSender, EventDedupCache, handle_channel_event
from .chat_service import ChatReply, ChatService, IncomingMessage
from .config import AgentSettings, configure_logging
from .context_manager import ContextManager, PromptBuild
from .conversation_store import ConversationStore
from .errors import (
    AgentError,
    BudgetExceededError,
    DuplicateToolError,
    ErrorKind,
    InputError,
    ProviderError,
    RegistryFrozenError,
    ToolArgumentError,
    UnknownToolError,
)
from .model_catalog import resolve_context_window, resolve_temperature
from .openai_provider import OpenAICompatProvider
from .provider import (
    ChatMessage,
    ChatRequest,
    ChatResponse,
    ChatRole,
    LLMProvider,
    StubLLMProvider,
    TokenUsage,
    ToolCall,
    ToolSpec,
)
from .provider_factory import ProviderFactory
from .records import AgentRun, AgentStep, ConversationSummary, RunStatus, StepType, StoredMessage
from .summarizer import ContextSummarizer
from .telemetry import AgentTracer, TelemetryConfig
from .token_estimator import TokenBudget, estimate_tokens
from .tools import (
    FunctionTool,
    ReadFileTool,
    SandboxedExecutor,
    Tool,
    ToolRegistry,
    ToolResult,
    WebFetchTool,
)

__all__ = [
    "AgentError",
    "AgentRun",
    "AgentRuntime",
    "AgentSettings",
    "AgentStep",
    "AgentTracer",
    "BudgetExceededError",
    "ChannelSender",
    "ChatMessage",
    "ChatReply",
    "ChatRequest",
    "ChatResponse",
    "ChatRole",
    "ChatService",
    "ContextManager",
    "ContextSummarizer",
    "ConversationStore",
    "ConversationSummary",
    "DuplicateToolError",
    "ErrorKind",
    "EventDedupCache",
    "FunctionTool",
    "IncomingMessage",
    "InputError",
    "LLMProvider",
    "OpenAICompatProvider",
    "PromptBuild",
    "ProviderError",
    "ProviderFactory",
    "ReadFileTool",
    "RegistryFrozenError",
    "RunStatus",
    "RuntimeState",
    "SandboxedExecutor",
    "StepType",
    "StoredMessage",
    "StubLLMProvider",
    "TelemetryConfig",
    "TokenBudget",
    "TokenUsage",
    "Tool",
    "ToolArgumentError",
    "ToolCall",
    "ToolRegistry",
    "ToolResult",
    "ToolSpec",
    "TurnResult",
    "TurnStatus",
    "UnknownToolError",
    "WebFetchTool",
    "configure_logging",
    "estimate_tokens",
    "handle_channel_event",
    "resolve_context_window",
    "resolve_temperature",
]
