"""Tests for model context windows and temperature rules."""

from gigwatch_agent.model_catalog import (
    DEFAULT_CONTEXT_WINDOW,
    resolve_context_window,
    resolve_temperature,
)


def test_exact_match():
    assert resolve_context_window("kimi-k2.5") == 32 * 1024
    assert resolve_context_window("deepseek-chat") == 128 * 1024


def test_match_is_case_and_whitespace_insensitive():
    assert resolve_context_window("  GLM-4-Long ") == 1024 * 1024


def test_longest_prefix_wins():
    # "kimi-k2.5-preview" starts with both "kimi-k2" and "kimi-k2.5"
    assert resolve_context_window("kimi-k2.5-preview") == 32 * 1024
    assert resolve_context_window("kimi-k2-turbo-preview") == 128 * 1024


def test_unknown_model_uses_default():
    assert resolve_context_window("some-local-model") == DEFAULT_CONTEXT_WINDOW
    assert resolve_context_window(None) == DEFAULT_CONTEXT_WINDOW
    assert resolve_context_window("") == DEFAULT_CONTEXT_WINDOW


def test_custom_table_and_default():
    table = {"tiny": 1000}
    assert resolve_context_window("tiny-v2", table) == 1000
    assert resolve_context_window("other", table, default=2048) == 2048


def test_temperature_forced_for_kimi_k25():
    assert resolve_temperature("kimi-k2.5", 0.2) == 1.0
    assert resolve_temperature("kimi-k2.5-preview", 0.2) == 1.0


def test_temperature_passthrough_and_fallback():
    assert resolve_temperature("kimi-k2-turbo-preview", 0.3) == 0.3
    assert resolve_temperature("gpt-4o", None) == 1.0
    assert resolve_temperature("gpt-4o", None, fallback=0.7) == 0.7
    assert resolve_temperature("gpt-4o", float("nan")) == 1.0
