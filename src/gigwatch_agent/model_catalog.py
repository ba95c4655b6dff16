"""Model catalog — context window sizes and per-model sampling rules."""

from __future__ import annotations

import math
import re

DEFAULT_CONTEXT_WINDOW = 16 * 1024

# Keys are lower-case model names; lookups fall back to the longest prefix.
MODEL_CONTEXT_WINDOWS: dict[str, int] = {
    "kimi-k2.5": 32 * 1024,
    "kimi-k2": 128 * 1024,
    # DeepSeek
    "deepseek-chat": 128 * 1024,
    "deepseek-reasoner": 128 * 1024,
    # MiniMax
    "minimax-m2.5": 200 * 1024,
    "minimax-m2.5-highspeed": 200 * 1024,
    "minimax-m2.1": 200 * 1024,
    "minimax-m2.1-highspeed": 200 * 1024,
    "minimax-m2.1-lightning": 200 * 1024,
    "minimax-m2": 200 * 1024,
    # GLM (Zhipu)
    "glm-5": 200 * 1024,
    "glm-4.7": 200 * 1024,
    "glm-4.7-flash": 200 * 1024,
    "glm-4.7-flashx": 200 * 1024,
    "glm-4.6": 200 * 1024,
    "glm-4.5": 128 * 1024,
    "glm-4.5-air": 128 * 1024,
    "glm-4.5-airx": 128 * 1024,
    "glm-4.5-flash": 128 * 1024,
    "glm-4-long": 1024 * 1024,
    "glm-4-flash": 128 * 1024,
    "glm-4-flash-250414": 128 * 1024,
    "glm-4-flashx-250414": 128 * 1024,
    # OpenAI
    "gpt-4o": 128 * 1024,
    "gpt-4.1": 1024 * 1024,
}

# Models that reject any temperature other than a fixed value.
_FIXED_TEMPERATURE_RULES: list[tuple[re.Pattern[str], float]] = [
    (re.compile(r"^kimi-k2\.5(?:$|[-_])", re.I), 1.0),
]


def resolve_context_window(
    model: str | None,
    windows: dict[str, int] | None = None,
    default: int = DEFAULT_CONTEXT_WINDOW,
) -> int:
    """Resolve a model's context window: exact match, longest prefix, default."""
    if not model:
        return default
    table = windows if windows is not None else MODEL_CONTEXT_WINDOWS
    normalized = model.strip().lower()
    if normalized in table:
        return table[normalized]
    prefixes = [key for key in table if normalized.startswith(key)]
    if prefixes:
        return table[max(prefixes, key=len)]
    return default


def resolve_temperature(
    model: str | None,
    requested: float | None = None,
    fallback: float = 1.0,
) -> float:
    """Return the sampling temperature to send for *model*."""
    if model:
        for pattern, fixed in _FIXED_TEMPERATURE_RULES:
            if pattern.search(model.strip()):
                return fixed
    if requested is None or not math.isfinite(requested):
        return fallback
    return requested
