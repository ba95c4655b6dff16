"""Runtime settings resolved from environment variables, plus logging setup."""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field

_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
_HANDLER_MARK = "_gigwatch_handler"


class AgentSettings(BaseModel):
    """Settings for the agent runtime and its collaborators."""

    openai_api_key: str | None = None
    openai_base_url: str = "https://api.openai.com/v1"
    openai_model: str = "kimi-k2-turbo-preview"
    openai_temperature: float | None = None
    llm_timeout_sec: float = 60.0
    max_iterations: int = 50
    db_path: str = "./data/gigwatch.sqlite"
    log_path: str = "./data/gigwatch.log"
    workspace_root: str = Field(default_factory=os.getcwd)
    read_roots: list[str] = Field(default_factory=lambda: ["config", "data"])
    telemetry_exporter: Literal["none", "stdout", "otlp"] = "none"
    otlp_endpoint: str = "http://localhost:4317"

    @property
    def llm_configured(self) -> bool:
        return bool(self.openai_api_key)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> AgentSettings:
        """Build settings from *environ* (defaults to ``os.environ``).

        Raises:
            ValueError: If a numeric variable cannot be parsed or the
                telemetry exporter is unknown.
        """
        env = environ if environ is not None else os.environ
        values: dict[str, object] = {}

        def _text(key: str, field: str) -> None:
            raw = env.get(key, "").strip()
            if raw:
                values[field] = raw

        def _number(key: str, field: str, cast: type) -> None:
            raw = env.get(key, "").strip()
            if not raw:
                return
            try:
                values[field] = cast(raw)
            except ValueError as exc:
                msg = f"{key} must be a number, got {raw!r}"
                raise ValueError(msg) from exc

        _text("OPENAI_API_KEY", "openai_api_key")
        _text("OPENAI_BASE_URL", "openai_base_url")
        _text("OPENAI_MODEL", "openai_model")
        _number("OPENAI_TEMPERATURE", "openai_temperature", float)
        _number("GIGWATCH_LLM_TIMEOUT_SEC", "llm_timeout_sec", float)
        _number("GIGWATCH_MAX_ITERATIONS", "max_iterations", int)
        _text("DB_PATH", "db_path")
        _text("LOG_PATH", "log_path")
        _text("GIGWATCH_WORKSPACE_ROOT", "workspace_root")
        _text("GIGWATCH_TELEMETRY_EXPORTER", "telemetry_exporter")
        _text("OTEL_EXPORTER_OTLP_ENDPOINT", "otlp_endpoint")

        roots = env.get("GIGWATCH_READ_ROOTS", "").strip()
        if roots:
            values["read_roots"] = [r.strip() for r in roots.split(",") if r.strip()]

        return cls(**values)


def configure_logging(settings: AgentSettings, level: int = logging.INFO) -> logging.Logger:
    """Attach a file handler and a stderr handler to the package logger.

    Calling it again replaces the handlers installed by a previous call.
    """
    root = logging.getLogger("gigwatch_agent")
    root.setLevel(level)
    for handler in list(root.handlers):
        if getattr(handler, _HANDLER_MARK, False):
            root.removeHandler(handler)
            handler.close()

    log_path = Path(settings.log_path)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    formatter = logging.Formatter(_LOG_FORMAT)
    for handler in (
        logging.FileHandler(log_path, encoding="utf-8"),
        logging.StreamHandler(),
    ):
        handler.setFormatter(formatter)
        setattr(handler, _HANDLER_MARK, True)
        root.addHandler(handler)
    return root
