"""Tool registry — holds capability contracts and exports their schemas."""

from __future__ import annotations

import logging

from ..errors import DuplicateToolError, RegistryFrozenError
from ..provider import ToolSpec
from .base import Tool

logger = logging.getLogger(__name__)


class ToolRegistry:
    """Name-keyed set of tools, populated once at startup.

    After :meth:`freeze` the registry is read-only for the rest of the
    process lifetime.
    """

    def __init__(self, tools: list[Tool] | None = None) -> None:
        self._tools: dict[str, Tool] = {}
        self._frozen = False
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        """Add *tool*.

        Raises:
            DuplicateToolError: If a tool with the same name exists.
            RegistryFrozenError: If the registry has been frozen.
        """
        if self._frozen:
            msg = f"Cannot register '{tool.name}': registry is frozen"
            raise RegistryFrozenError(msg)
        if tool.name in self._tools:
            raise DuplicateToolError(tool.name)
        self._tools[tool.name] = tool
        logger.debug("Registered tool %s", tool.name)

    def freeze(self) -> None:
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def has(self, name: str) -> bool:
        return name in self._tools

    def list(self) -> list[Tool]:
        return list(self._tools.values())

    def names(self) -> list[str]:
        return list(self._tools)

    def export_schemas(self) -> list[ToolSpec]:
        """Return the tool specs offered to the model, in registration order."""
        return [tool.spec() for tool in self._tools.values()]

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools
