"""Tests for AgentSettings and logging setup."""

from __future__ import annotations

import logging

import pytest

from gigwatch_agent.config import AgentSettings, configure_logging


def test_defaults_from_empty_environment():
    settings = AgentSettings.from_env({})
    assert settings.openai_api_key is None
    assert not settings.llm_configured
    assert settings.openai_base_url == "https://api.openai.com/v1"
    assert settings.openai_model == "kimi-k2-turbo-preview"
    assert settings.openai_temperature is None
    assert settings.max_iterations == 50
    assert settings.db_path == "./data/gigwatch.sqlite"
    assert settings.read_roots == ["config", "data"]
    assert settings.telemetry_exporter == "none"


def test_environment_overrides():
    settings = AgentSettings.from_env(
        {
            "OPENAI_API_KEY": "sk-live",
            "OPENAI_BASE_URL": "https://api.moonshot.cn/v1",
            "OPENAI_MODEL": "gpt-4o",
            "OPENAI_TEMPERATURE": "0.2",
            "GIGWATCH_MAX_ITERATIONS": "8",
            "DB_PATH": "/tmp/agent.sqlite",
            "GIGWATCH_READ_ROOTS": "config, data ,, logs",
        }
    )
    assert settings.llm_configured
    assert settings.openai_base_url == "https://api.moonshot.cn/v1"
    assert settings.openai_model == "gpt-4o"
    assert settings.openai_temperature == 0.2
    assert settings.max_iterations == 8
    assert settings.db_path == "/tmp/agent.sqlite"
    assert settings.read_roots == ["config", "data", "logs"]


def test_blank_values_keep_defaults():
    settings = AgentSettings.from_env({"OPENAI_API_KEY": "  ", "OPENAI_MODEL": ""})
    assert settings.openai_api_key is None
    assert settings.openai_model == "kimi-k2-turbo-preview"


def test_bad_number_is_rejected():
    with pytest.raises(ValueError, match="OPENAI_TEMPERATURE"):
        AgentSettings.from_env({"OPENAI_TEMPERATURE": "warm"})


def test_telemetry_settings():
    settings = AgentSettings.from_env(
        {
            "GIGWATCH_TELEMETRY_EXPORTER": "otlp",
            "OTEL_EXPORTER_OTLP_ENDPOINT": "http://collector:4317",
        }
    )
    assert settings.telemetry_exporter == "otlp"
    assert settings.otlp_endpoint == "http://collector:4317"
    with pytest.raises(ValueError):
        AgentSettings.from_env({"GIGWATCH_TELEMETRY_EXPORTER": "jaeger"})


def test_configure_logging_is_idempotent(tmp_path):
    settings = AgentSettings(log_path=str(tmp_path / "logs" / "agent.log"))
    logger = configure_logging(settings)
    configure_logging(settings)
    ours = [h for h in logger.handlers if getattr(h, "_gigwatch_handler", False)]
    assert len(ours) == 2

    logging.getLogger("gigwatch_agent.test").info("hello log file")
    for handler in ours:
        handler.flush()
    assert "hello log file" in (tmp_path / "logs" / "agent.log").read_text(encoding="utf-8")

    for handler in ours:
        logger.removeHandler(handler)
        handler.close()
