"""Error taxonomy shared by the runtime, the tools and the chat service."""

from __future__ import annotations

from enum import StrEnum


class ErrorKind(StrEnum):
    """Named failure categories, carried on exceptions and tool results."""

    INPUT = "input"
    TOOL_ARGUMENT = "tool_argument"
    UNKNOWN_TOOL = "unknown_tool"
    TOOL_EXECUTION = "tool_execution"
    PROVIDER = "provider"
    BUDGET_EXCEEDED = "budget_exceeded"
    EXECUTOR_SECURITY = "executor_security"
    EXECUTOR_TIMEOUT = "executor_timeout"
    EXECUTOR_SPAWN = "executor_spawn"


class AgentError(Exception):
    """Base class for all agent errors."""

    kind: ErrorKind = ErrorKind.TOOL_EXECUTION

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class InputError(AgentError):
    """Raised when an inbound message is empty or malformed."""

    kind = ErrorKind.INPUT


class ToolArgumentError(AgentError):
    """Tool-call arguments are not a JSON object."""

    kind = ErrorKind.TOOL_ARGUMENT


class UnknownToolError(AgentError):
    """The model asked for a tool that is not registered."""

    kind = ErrorKind.UNKNOWN_TOOL


class ProviderError(AgentError):
    """Raised when the model endpoint fails or returns nothing usable."""

    kind = ErrorKind.PROVIDER

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class BudgetExceededError(AgentError):
    """A turn hit its iteration cap without a final answer."""

    kind = ErrorKind.BUDGET_EXCEEDED


class DuplicateToolError(ValueError):
    """Raised when two tools are registered under the same name."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Tool '{name}' is already registered")


class RegistryFrozenError(RuntimeError):
    """Raised when registering into a registry that has been frozen."""
