"""Context summarizer — folds old conversation into a rolling summary."""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence

from .model_catalog import resolve_temperature
from .provider import ChatMessage, ChatRequest, ChatRole, LLMProvider
from .records import StoredMessage

logger = logging.getLogger(__name__)

MAX_SUMMARY_CHARS = 4000
MAX_LINE_CONTENT_CHARS = 320

SUMMARY_INSTRUCTION = (
    "You maintain the long-term memory of a conversation. Write a concise "
    "summary that keeps the user's preferences, confirmed facts, open to-do "
    "items and decisions reached. Do not invent anything. Stay under 1000 words."
)

_WHITESPACE = re.compile(r"\s+")


def to_line(message: StoredMessage) -> str:
    """Flatten a message to one ``Role: text`` line."""
    prefix = "User" if message.role == ChatRole.USER else "Assistant"
    compact = _WHITESPACE.sub(" ", message.content).strip()
    return f"{prefix}: {compact[:MAX_LINE_CONTENT_CHARS]}"


def _dialogue(messages: Sequence[StoredMessage]) -> list[StoredMessage]:
    return [m for m in messages if m.role in (ChatRole.USER, ChatRole.ASSISTANT)]


def fallback_summary(existing: str, messages: Sequence[StoredMessage]) -> str:
    """Deterministic summary: previous text plus one line per message, tail-capped."""
    lines: list[str] = []
    if existing.strip():
        lines.append(existing.strip())
    lines.extend(to_line(m) for m in _dialogue(messages))
    return "\n".join(lines)[-MAX_SUMMARY_CHARS:]


class ContextSummarizer:
    """Produces the next rolling summary from the previous one and new messages.

    With a provider, one completion request is made; without one, or when the
    request fails or comes back empty, :func:`fallback_summary` is used.
    """

    def __init__(
        self,
        provider: LLMProvider | None = None,
        model: str | None = None,
        temperature: float | None = None,
    ) -> None:
        self._provider = provider
        self._model = model or (provider.model if provider is not None else None)
        self._temperature = resolve_temperature(self._model, temperature, 1.0)

    async def summarize(self, existing_summary: str, new_messages: Sequence[StoredMessage]) -> str:
        if not new_messages:
            return existing_summary
        if self._provider is None or not self._model:
            return fallback_summary(existing_summary, new_messages)

        transcript = "\n".join(to_line(m) for m in _dialogue(new_messages))
        request = ChatRequest(
            model=self._model,
            temperature=self._temperature,
            messages=[
                ChatMessage(role=ChatRole.SYSTEM, content=SUMMARY_INSTRUCTION),
                ChatMessage(
                    role=ChatRole.USER,
                    content=(
                        f"Existing summary:\n{existing_summary or '(none)'}\n\n"
                        f"New conversation:\n{transcript}"
                    ),
                ),
            ],
        )
        try:
            response = await self._provider.chat(request)
        except Exception as exc:
            logger.warning("Summarization failed, using local fallback: %s", exc)
            return fallback_summary(existing_summary, new_messages)

        content = response.content.strip()
        if not content:
            logger.warning("Summarizer returned empty text, using local fallback")
            return fallback_summary(existing_summary, new_messages)
        return content[:MAX_SUMMARY_CHARS]
