"""Tool contract — the single capability interface the runtime dispatches to."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import Any

from pydantic import BaseModel

from ..errors import ErrorKind
from ..provider import ToolSpec


class ToolResult(BaseModel):
    """Outcome of a tool execution: ``{success, data}`` or ``{success, error}``."""

    success: bool
    data: Any = None
    error: str | None = None
    error_kind: ErrorKind | None = None
    duration_ms: float = 0.0

    @classmethod
    def ok(cls, data: Any = None) -> ToolResult:
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, kind: ErrorKind, error: str, data: Any = None) -> ToolResult:
        return cls(success=False, error=error, error_kind=kind, data=data)

    def to_payload(self) -> dict[str, Any]:
        """JSON-ready dict with ``None`` fields dropped."""
        return self.model_dump(mode="json", exclude_none=True)


class Tool(ABC):
    """A named, schema-described capability invocable by the agent.

    Subclasses set ``name``, ``description`` and ``parameters`` (a JSON
    schema of type ``object``) and implement :meth:`execute`. ``execute``
    reports failures through :class:`ToolResult` instead of raising.
    """

    name: str
    description: str
    parameters: dict[str, Any] = {"type": "object", "properties": {}}

    @abstractmethod
    async def execute(self, arguments: dict[str, Any]) -> ToolResult:
        """Run the tool with decoded JSON *arguments*."""

    def spec(self) -> ToolSpec:
        return ToolSpec(
            name=self.name,
            description=self.description,
            parameters=self.parameters,
        )


class FunctionTool(Tool):
    """Adapts a plain async callable to the :class:`Tool` contract.

    The callable may return a :class:`ToolResult` or any JSON-serialisable
    value, which is wrapped as a successful result.
    """

    def __init__(
        self,
        name: str,
        description: str,
        fn: Callable[[dict[str, Any]], Awaitable[Any]],
        parameters: dict[str, Any] | None = None,
    ) -> None:
        self.name = name
        self.description = description
        self.parameters = parameters or {"type": "object", "properties": {}}
        self._fn = fn

    async def execute(self, arguments: dict[str, Any]) -> ToolResult:
        result = await self._fn(arguments)
        if isinstance(result, ToolResult):
            return result
        return ToolResult.ok(result)
