"""Provider factory — deterministic provider selection from settings."""

from __future__ import annotations

from .config import AgentSettings
from .openai_provider import OpenAICompatProvider
from .provider import LLMProvider, StubLLMProvider


class ProviderFactory:
    """Creates the LLM provider described by :class:`AgentSettings`.

    Resolution logic (deterministic, no magic):
        1. ``OPENAI_API_KEY`` set: return an :class:`OpenAICompatProvider`.
        2. Otherwise return ``None``; the runtime answers with a
           "not configured" reply and the summarizer uses its local fallback.
    """

    @staticmethod
    def create(settings: AgentSettings) -> LLMProvider | None:
        if not settings.llm_configured:
            return None
        return OpenAICompatProvider(
            api_key=settings.openai_api_key,
            base_url=settings.openai_base_url,
            model=settings.openai_model,
            timeout=settings.llm_timeout_sec,
        )

    @staticmethod
    def describe(provider: LLMProvider | None) -> str:
        """Return a human-readable description of a provider for log output."""
        if provider is None:
            return "no provider (OPENAI_API_KEY not set)"
        if isinstance(provider, OpenAICompatProvider):
            return f"OpenAICompatProvider (model={provider.model}, url={provider.url})"
        if isinstance(provider, StubLLMProvider):
            return "StubLLMProvider (deterministic responses)"
        return f"{type(provider).__name__}"
