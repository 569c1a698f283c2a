from __future__ import annotations

import os
import threading
import time
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional, Protocol

import yaml
from dotenv import dotenv_values
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from weavr.logging import get_logger

logger = get_logger(__name__)


class AIProviderName(str, Enum):
    """LLM providers the agent tool loop can talk to."""

    ANTHROPIC = "anthropic"
    OPENAI = "openai"
    OLLAMA = "ollama"


class WebSearchProviderName(str, Enum):
    """Search backends used by web_search tools and memory sources."""

    BRAVE = "brave"
    TAVILY = "tavily"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _default_home() -> str:
    return str(Path.home() / ".weavr")


class Settings(BaseModel):
    """Process settings read from the environment and an optional .env file."""

    home_dir: str = env_field(_default_home(), "WEAVR_HOME")
    workflows_dir: str | None = env_field(None, "WEAVR_WORKFLOWS_DIR")
    config_file: str | None = env_field(None, "WEAVR_CONFIG_FILE")
    host: str = env_field("localhost", "WEAVR_HOST")
    port: int = env_field(3847, "WEAVR_PORT")
    run_history_size: int = env_field(
        100,
        "WEAVR_RUN_HISTORY_SIZE",
        description="Number of finished runs kept in the in-memory run history",
    )
    config_ttl_seconds: float = env_field(
        5.0,
        "WEAVR_CONFIG_TTL_SECONDS",
        description="How long AI/search configuration is cached before re-reading the file",
    )
    agent_max_iterations: int = env_field(10, "WEAVR_AGENT_MAX_ITERATIONS")
    http_max_retries: int = env_field(3, "WEAVR_HTTP_MAX_RETRIES")
    http_timeout_seconds: float = env_field(30.0, "WEAVR_HTTP_TIMEOUT_SECONDS")
    shell_timeout_seconds: float = env_field(30.0, "WEAVR_SHELL_TIMEOUT_SECONDS")
    strict_templates: bool = env_field(
        False,
        "WEAVR_STRICT_TEMPLATES",
        description="Fail steps whose templates reference missing values",
    )
    tool_workspace: str | None = env_field(
        None,
        "WEAVR_TOOL_WORKSPACE",
        description="Root directory agent file tools are confined to",
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("run_history_size", "agent_max_iterations")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @property
    def resolved_workflows_dir(self) -> Path:
        return Path(self.workflows_dir or Path(self.home_dir) / "workflows")

    @property
    def resolved_config_file(self) -> Path:
        return Path(self.config_file or Path(self.home_dir) / "config.yaml")

    @property
    def resolved_tool_workspace(self) -> Path:
        return Path(self.tool_workspace or Path(self.home_dir) / "workspace")


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None


# =========================================================================
# AI / web search configuration store
# =========================================================================


class AIConfig(BaseModel):
    """Credentials and model selection for the configured LLM provider."""

    provider: AIProviderName | None = None
    api_key: str | None = Field(None, validation_alias=AliasChoices("api_key", "apiKey"))
    model: str | None = None
    base_url: str | None = Field(None, validation_alias=AliasChoices("base_url", "baseUrl"))

    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class WebSearchConfig(BaseModel):
    provider: WebSearchProviderName | None = None
    api_key: str | None = Field(None, validation_alias=AliasChoices("api_key", "apiKey"))

    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class ConfigProvider(Protocol):
    """Key/value view over the external AI and search configuration."""

    def ai(self) -> AIConfig: ...

    def web_search(self) -> WebSearchConfig: ...

    def refresh(self) -> None: ...


class StaticConfigProvider:
    """Configuration provider over fixed values."""

    def __init__(
        self,
        ai: AIConfig | None = None,
        web_search: WebSearchConfig | None = None,
    ) -> None:
        self._ai = ai or AIConfig()
        self._web_search = web_search or WebSearchConfig()

    def ai(self) -> AIConfig:
        return self._ai

    def web_search(self) -> WebSearchConfig:
        return self._web_search

    def refresh(self) -> None:
        return None


def _ai_from_environment(env: dict[str, str]) -> AIConfig:
    if env.get("ANTHROPIC_API_KEY"):
        return AIConfig(provider=AIProviderName.ANTHROPIC, api_key=env["ANTHROPIC_API_KEY"])
    if env.get("OPENAI_API_KEY"):
        return AIConfig(provider=AIProviderName.OPENAI, api_key=env["OPENAI_API_KEY"])
    return AIConfig()


class FileConfigProvider:
    """Reads ``ai`` and ``webSearch`` sections from a YAML config file.

    The parsed file is cached for ``ttl_seconds`` so hot paths (every AI step)
    do not re-read the disk; ``refresh()`` drops the cache. When the file has
    no usable AI section, ``ANTHROPIC_API_KEY`` / ``OPENAI_API_KEY`` from the
    environment are used instead.
    """

    def __init__(
        self,
        path: str | Path,
        *,
        ttl_seconds: float = 5.0,
        environ: Optional[dict[str, str]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.path = Path(path)
        self.ttl_seconds = ttl_seconds
        self._environ = environ
        self._clock = clock
        self._lock = threading.Lock()
        self._loaded_at: float | None = None
        self._ai = AIConfig()
        self._web_search = WebSearchConfig()

    def _load(self) -> None:
        raw: dict[str, Any] = {}
        try:
            text = self.path.read_text(encoding="utf-8")
            loaded = yaml.safe_load(text) or {}
            if isinstance(loaded, dict):
                raw = loaded
        except FileNotFoundError:
            raw = {}
        except (OSError, yaml.YAMLError) as exc:
            logger.warning("config_file_read_failed", path=str(self.path), error=str(exc))
            raw = {}

        env = self._environ if self._environ is not None else dict(os.environ)
        try:
            ai = AIConfig(**(raw.get("ai") or {}))
        except ValidationError as exc:
            logger.warning("config_ai_section_invalid", path=str(self.path), error=str(exc))
            ai = AIConfig()
        if not ai.provider or (not ai.api_key and ai.provider != AIProviderName.OLLAMA):
            fallback = _ai_from_environment(env)
            if fallback.provider:
                ai = fallback.model_copy(update={"model": ai.model or fallback.model})
        try:
            search = WebSearchConfig(**(raw.get("webSearch") or raw.get("web_search") or {}))
        except ValidationError as exc:
            logger.warning("config_search_section_invalid", path=str(self.path), error=str(exc))
            search = WebSearchConfig()

        self._ai = ai
        self._web_search = search
        self._loaded_at = self._clock()

    def _ensure_fresh(self) -> None:
        with self._lock:
            if self._loaded_at is None or self._clock() - self._loaded_at >= self.ttl_seconds:
                self._load()

    def ai(self) -> AIConfig:
        self._ensure_fresh()
        return self._ai

    def web_search(self) -> WebSearchConfig:
        self._ensure_fresh()
        return self._web_search

    def refresh(self) -> None:
        with self._lock:
            self._loaded_at = None
