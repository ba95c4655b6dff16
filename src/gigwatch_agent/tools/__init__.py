"""Tools the agent can invoke: the contract, the registry and built-ins."""

from .base import FunctionTool, Tool, ToolResult
from .read_file import ReadFileTool
from .registry import ToolRegistry
from .sandbox_exec import SandboxedExecutor
from .web_fetch import WebFetchTool

__all__ = [
    "FunctionTool",
    "ReadFileTool",
    "SandboxedExecutor",
    "Tool",
    "ToolRegistry",
    "ToolResult",
    "WebFetchTool",
]
