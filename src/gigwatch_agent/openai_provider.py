"""OpenAI-compatible provider — chat completions over HTTP with native tool calling."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from typing import Any

import requests

from .errors import ProviderError
from .provider import (
    ChatMessage,
    ChatRequest,
    ChatResponse,
    ChatRole,
    LLMProvider,
    TokenUsage,
    ToolCall,
    ToolSpec,
)

logger = logging.getLogger(__name__)

_DEFAULT_BASE_URL = "https://api.openai.com/v1"
_DEFAULT_MODEL = "kimi-k2-turbo-preview"
_DEFAULT_TIMEOUT = 60.0


class OpenAICompatProvider(LLMProvider):
    """LLM provider for any endpoint speaking the OpenAI chat-completions API.

    Configuration via constructor arguments, falling back to environment:
        - ``OPENAI_API_KEY``: bearer token (required)
        - ``OPENAI_BASE_URL``: API root (default ``https://api.openai.com/v1``)
        - ``OPENAI_MODEL``: model name (default ``kimi-k2-turbo-preview``)

    ``requests`` is blocking, so each call runs in a worker thread; the
    event loop only sees one suspension point per completion.
    """

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        model: str | None = None,
        timeout: float | None = None,
        session: requests.Session | None = None,
    ) -> None:
        self._api_key = api_key or os.environ.get("OPENAI_API_KEY", "")
        root = base_url or os.environ.get("OPENAI_BASE_URL") or _DEFAULT_BASE_URL
        self._url = f"{root.rstrip('/')}/chat/completions"
        self._model = model or os.environ.get("OPENAI_MODEL", _DEFAULT_MODEL)
        self._timeout = timeout or _DEFAULT_TIMEOUT
        self._session = session

    def name(self) -> str:
        return "openai"

    @property
    def model(self) -> str:
        return self._model

    @property
    def url(self) -> str:
        return self._url

    async def chat(self, request: ChatRequest) -> ChatResponse:
        return await self._complete(self._build_body(request, []))

    async def chat_with_tools(self, request: ChatRequest, tools: list[ToolSpec]) -> ChatResponse:
        return await self._complete(self._build_body(request, tools))

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _complete(self, body: dict[str, Any]) -> ChatResponse:
        if not self._api_key:
            msg = "OPENAI_API_KEY is not configured"
            raise ProviderError(msg)
        data = await asyncio.to_thread(self._post, body)
        return self._parse_response(data)

    def _post(self, body: dict[str, Any]) -> dict[str, Any]:
        poster = self._session.post if self._session is not None else requests.post
        try:
            resp = poster(
                self._url,
                json=body,
                headers={"Authorization": f"Bearer {self._api_key}"},
                timeout=self._timeout,
            )
        except requests.RequestException as exc:
            msg = f"chat completion request failed: {exc}"
            raise ProviderError(msg) from exc

        if resp.status_code >= 400:
            detail = resp.text[:500] if resp.text else resp.reason
            msg = f"chat completion failed (HTTP {resp.status_code}): {detail}"
            raise ProviderError(msg, status_code=resp.status_code)

        try:
            payload = resp.json()
        except ValueError as exc:
            msg = "chat completion returned a non-JSON body"
            raise ProviderError(msg, status_code=resp.status_code) from exc
        if not isinstance(payload, dict):
            msg = "chat completion returned an unexpected payload"
            raise ProviderError(msg, status_code=resp.status_code)
        return payload

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _build_body(self, request: ChatRequest, tools: list[ToolSpec]) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": request.model or self._model,
            "messages": [self._encode_message(m) for m in request.messages],
        }
        if tools:
            body["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": t.name,
                        "description": t.description,
                        "parameters": t.parameters,
                    },
                }
                for t in tools
            ]
            body["tool_choice"] = request.tool_choice or "auto"
        if request.temperature is not None:
            body["temperature"] = request.temperature
        if request.max_tokens is not None:
            body["max_tokens"] = request.max_tokens
        return body

    @staticmethod
    def _encode_message(message: ChatMessage) -> dict[str, Any]:
        encoded: dict[str, Any] = {"role": message.role.value, "content": message.content}
        if message.role == ChatRole.ASSISTANT and message.tool_calls:
            encoded["tool_calls"] = [
                {
                    "id": call.call_id,
                    "type": "function",
                    "function": {
                        "name": call.tool_name,
                        "arguments": (
                            call.raw_arguments
                            if call.raw_arguments is not None
                            else json.dumps(call.arguments, ensure_ascii=False)
                        ),
                    },
                }
                for call in message.tool_calls
            ]
        if message.role == ChatRole.TOOL and message.tool_call_id:
            encoded["tool_call_id"] = message.tool_call_id
        return encoded

    @staticmethod
    def _parse_response(payload: dict[str, Any]) -> ChatResponse:
        """Map ``choices[0].message`` onto a :class:`ChatResponse`."""
        choices = payload.get("choices") or []
        if not choices or not isinstance(choices[0], dict):
            msg = "No response from LLM"
            raise ProviderError(msg)
        message = choices[0].get("message") or {}

        tool_calls: list[ToolCall] = []
        for raw in message.get("tool_calls") or []:
            function = raw.get("function") or {}
            arguments = function.get("arguments")
            if arguments is not None and not isinstance(arguments, str):
                arguments = json.dumps(arguments, ensure_ascii=False)
            tool_calls.append(
                ToolCall(
                    tool_name=function.get("name", ""),
                    call_id=raw.get("id", ""),
                    raw_arguments=arguments if arguments is not None else "{}",
                )
            )

        usage = None
        raw_usage = payload.get("usage")
        if isinstance(raw_usage, dict):
            usage = TokenUsage(
                prompt_tokens=raw_usage.get("prompt_tokens", 0),
                completion_tokens=raw_usage.get("completion_tokens", 0),
            )

        return ChatResponse(
            content=normalize_content(message.get("content")),
            tool_calls=tool_calls,
            usage=usage,
        )


def normalize_content(content: Any) -> str:
    """Flatten assistant content (plain string or list of text parts)."""
    if isinstance(content, str):
        return content.strip()
    if isinstance(content, list):
        parts = [
            item["text"]
            for item in content
            if isinstance(item, dict) and isinstance(item.get("text"), str)
        ]
        return "\n".join(parts).strip()
    return ""
