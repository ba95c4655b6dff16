"""``read_file`` tool: read a UTF-8 text file under a configured set of roots."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

from ..errors import ErrorKind
from .base import Tool, ToolResult

logger = logging.getLogger(__name__)

DEFAULT_MAX_BYTES = 200_000


class ReadFileTool(Tool):
    """Reads files that live under one of *allowed_roots*.

    Relative paths are resolved against the first root. Symlinks are
    resolved before the containment check, so a link pointing outside the
    roots is refused.
    """

    name = "read_file"
    description = "Read a text file from the project's config or data directories."
    parameters = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "File path, relative to the project directory",
            },
        },
        "required": ["path"],
    }

    def __init__(
        self,
        allowed_roots: list[str | Path],
        base_dir: str | Path | None = None,
        max_bytes: int = DEFAULT_MAX_BYTES,
    ) -> None:
        if not allowed_roots:
            msg = "allowed_roots must not be empty"
            raise ValueError(msg)
        base = Path(base_dir if base_dir is not None else os.getcwd()).resolve()
        self._base = base
        self._roots = [(base / root).resolve() for root in allowed_roots]
        self._max_bytes = max_bytes

    @property
    def roots(self) -> list[Path]:
        return list(self._roots)

    async def execute(self, arguments: dict[str, Any]) -> ToolResult:
        raw = arguments.get("path")
        if not isinstance(raw, str) or not raw.strip():
            return ToolResult.fail(ErrorKind.INPUT, "path is required")

        target = (self._base / raw.strip()).resolve()
        if not any(target == root or target.is_relative_to(root) for root in self._roots):
            logger.info("read_file refused path outside roots: %s", raw)
            return ToolResult.fail(
                ErrorKind.EXECUTOR_SECURITY, f"path is outside readable roots: {raw}"
            )
        if not target.is_file():
            return ToolResult.fail(ErrorKind.TOOL_EXECUTION, f"file not found: {raw}")

        size = target.stat().st_size
        if size > self._max_bytes:
            return ToolResult.fail(
                ErrorKind.TOOL_EXECUTION,
                f"file is too large ({size} bytes, limit {self._max_bytes})",
            )

        try:
            content = target.read_text(encoding="utf-8", errors="replace")
        except OSError as exc:
            return ToolResult.fail(ErrorKind.TOOL_EXECUTION, f"cannot read {raw}: {exc}")

        display = target.relative_to(self._base) if target.is_relative_to(self._base) else target
        return ToolResult.ok({"path": str(display), "size": size, "content": content})
