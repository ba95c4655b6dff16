"""``web_fetch`` tool: download a web page and return its title and text."""

from __future__ import annotations

import asyncio
import logging
import re
from html.parser import HTMLParser
from typing import Any

import requests

from ..errors import ErrorKind
from .base import Tool, ToolResult
from .sandbox_exec import clamp

logger = logging.getLogger(__name__)

DEFAULT_MAX_CHARS = 6_000
MIN_MAX_CHARS = 500
MAX_MAX_CHARS = 20_000
DEFAULT_TIMEOUT_SEC = 15.0

_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/123.0 Safari/537.36"
)
_SUPPORTED_URL = re.compile(r"^https?://", re.IGNORECASE)
_WHITESPACE = re.compile(r"\s+")


class _TextExtractor(HTMLParser):
    """Collects the ``<title>`` and the visible body text of a page."""

    _SKIPPED = frozenset({"script", "style", "noscript"})

    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self._skip_depth = 0
        self._in_title = False
        self._title: list[str] = []
        self._text: list[str] = []

    def handle_starttag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        if tag in self._SKIPPED:
            self._skip_depth += 1
        elif tag == "title":
            self._in_title = True

    def handle_endtag(self, tag: str) -> None:
        if tag in self._SKIPPED and self._skip_depth:
            self._skip_depth -= 1
        elif tag == "title":
            self._in_title = False

    def handle_data(self, data: str) -> None:
        if self._skip_depth:
            return
        if self._in_title:
            self._title.append(data)
        else:
            self._text.append(data)

    @property
    def title(self) -> str:
        return _WHITESPACE.sub(" ", " ".join(self._title)).strip()

    @property
    def text(self) -> str:
        return _WHITESPACE.sub(" ", " ".join(self._text)).strip()


def extract_page(html: str) -> tuple[str, str]:
    """Return ``(title, text)`` for an HTML document."""
    parser = _TextExtractor()
    parser.feed(html)
    parser.close()
    return parser.title, parser.text


class WebFetchTool(Tool):
    """Fetches an http(s) URL and returns its title and plain-text content."""

    name = "web_fetch"
    description = "Fetch a web page by URL and extract its title and body text."
    parameters = {
        "type": "object",
        "properties": {
            "url": {
                "type": "string",
                "description": "Page URL (http or https)",
            },
            "maxChars": {
                "type": "number",
                "description": f"Max characters of body text returned (default "
                f"{DEFAULT_MAX_CHARS}, max {MAX_MAX_CHARS})",
                "default": DEFAULT_MAX_CHARS,
            },
        },
        "required": ["url"],
    }

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT_SEC,
        session: requests.Session | None = None,
    ) -> None:
        self._timeout = timeout
        self._session = session

    async def execute(self, arguments: dict[str, Any]) -> ToolResult:
        raw = arguments.get("url")
        url = raw.strip() if isinstance(raw, str) else ""
        if not url:
            return ToolResult.fail(ErrorKind.INPUT, "url is required")
        if not _SUPPORTED_URL.match(url):
            return ToolResult.fail(ErrorKind.INPUT, "only http/https URLs are supported")
        max_chars = clamp(
            arguments.get("maxChars"), DEFAULT_MAX_CHARS, MIN_MAX_CHARS, MAX_MAX_CHARS
        )

        try:
            resp = await asyncio.to_thread(self._get, url)
        except requests.RequestException as exc:
            logger.info("web_fetch failed for %s: %s", url, exc)
            return ToolResult.fail(ErrorKind.TOOL_EXECUTION, f"web fetch failed: {exc}")
        if resp.status_code >= 400:
            return ToolResult.fail(
                ErrorKind.TOOL_EXECUTION, f"web fetch failed: HTTP {resp.status_code}"
            )

        title, text = extract_page(resp.text or "")
        content = text[:max_chars]
        return ToolResult.ok(
            {
                "url": url,
                "finalUrl": resp.url or url,
                "title": title,
                "content": content,
                "contentLength": len(content),
                "truncated": len(text) > len(content),
            }
        )

    def _get(self, url: str) -> requests.Response:
        getter = self._session.get if self._session is not None else requests.get
        return getter(url, headers={"User-Agent": _USER_AGENT}, timeout=self._timeout)
