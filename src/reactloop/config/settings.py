"""
reactloop/config/settings.py — Runtime settings

config.yaml supplies the sections, the environment (and .env) supplies
secrets plus any key the file leaves out (AGENT__MAX_STEPS=5). Each section is a pydantic
model that rejects bad values while parsing; validate_all() then checks the
combinations a single field can't see and reports every problem at once.
"""

from __future__ import annotations

import os
import threading as _threading
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# ─────────────────────────────────────────────────────────────────────────────
# Errors
# ─────────────────────────────────────────────────────────────────────────────

class ConfigError(Exception):
    """Raised by validate_all() when one or more config problems are found."""


# ─────────────────────────────────────────────────────────────────────────────
# Defaults
# ─────────────────────────────────────────────────────────────────────────────

_VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
_VALID_BACKENDS   = {"memory", "sqlite"}
_KNOWN_PROVIDERS  = {"openai"}

DEFAULT_SYSTEM_PROMPT = """\
You are reactloop, a general-purpose assistant whose goal is to complete the
task the user gives you. You can call tools, and combine them, to get there.

How you work:
1. Understand the request and break complex tasks into executable steps.
2. Pick the most suitable tool (or combination of tools) for each step.
3. Explain what you did and what came back, so the user can follow progress.
4. Keep the conversation context coherent across steps.

Prefer accurate, practical answers that actually solve the problem.
"""

DEFAULT_NEXT_STEP_PROMPT = """\
Based on the request and the conversation so far:

1. Work out where the task stands: what is done and what remains.
2. Choose the tool (or tools) that moves it forward; avoid pointless calls.
3. If the task is large, split it into smaller steps and advance one at a time.
4. After each tool call, state the result and the next planned step.
5. When the task is complete, or you must stop, call the `do_terminate` tool.
"""


# ─────────────────────────────────────────────────────────────────────────────
# Sub-models
# ─────────────────────────────────────────────────────────────────────────────

class AgentConfig(BaseModel):
    name: str = "reactloop"
    max_steps: int = 20
    step_delay_ms: int = 100
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    next_step_prompt: str = DEFAULT_NEXT_STEP_PROMPT

    @field_validator("max_steps")
    @classmethod
    def _positive_steps(cls, v: int) -> int:
        if v < 1:
            raise ValueError("agent.max_steps must be >= 1")
        return v

    @field_validator("step_delay_ms")
    @classmethod
    def _non_negative_delay(cls, v: int) -> int:
        if v < 0:
            raise ValueError("agent.step_delay_ms must be >= 0")
        return v

    @property
    def step_delay_seconds(self) -> float:
        return self.step_delay_ms / 1000.0


class BreakerConfig(BaseModel):
    """Consecutive-failure circuit breaker."""
    max_consecutive_failures: int = 3

    @field_validator("max_consecutive_failures")
    @classmethod
    def _positive_threshold(cls, v: int) -> int:
        if v < 1:
            raise ValueError("breaker.max_consecutive_failures must be >= 1")
        return v


class SessionConfig(BaseModel):
    backend: str = "memory"
    sqlite_path: str = "./data/sqlite/sessions.db"
    max_messages: int = 100
    ttl_hours: float = 24.0

    @field_validator("backend")
    @classmethod
    def _known_backend(cls, v: str) -> str:
        v = v.lower().strip()
        if v not in _VALID_BACKENDS:
            raise ValueError(
                f"session.backend must be one of {sorted(_VALID_BACKENDS)}, got '{v}'"
            )
        return v

    @field_validator("max_messages")
    @classmethod
    def _positive_messages(cls, v: int) -> int:
        if v < 1:
            raise ValueError("session.max_messages must be >= 1")
        return v

    @field_validator("ttl_hours")
    @classmethod
    def _positive_ttl(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("session.ttl_hours must be > 0")
        return v

    @property
    def ttl_seconds(self) -> float:
        return self.ttl_hours * 3600.0


class StreamConfig(BaseModel):
    timeout_seconds: float = 300.0
    queue_size: int = 64

    @field_validator("timeout_seconds")
    @classmethod
    def _positive_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("stream.timeout_seconds must be > 0")
        return v

    @field_validator("queue_size")
    @classmethod
    def _positive_queue(cls, v: int) -> int:
        if v < 1:
            raise ValueError("stream.queue_size must be >= 1")
        return v


class ToolsConfig(BaseModel):
    timeout_seconds: float = 30.0
    terminate_tool: str = "do_terminate"
    max_result_chars: int = 8_000

    @field_validator("timeout_seconds")
    @classmethod
    def _positive_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("tools.timeout_seconds must be > 0")
        return v


class LLMRetryConfig(BaseModel):
    """Exponential backoff config for transient LLM errors."""
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0

    @field_validator("max_attempts")
    @classmethod
    def _positive_attempts(cls, v: int) -> int:
        if v < 1:
            raise ValueError("llm.retry.max_attempts must be >= 1")
        return v


class LLMConfig(BaseModel):
    provider: str = "openai"
    model: str = "gpt-4o"
    temperature: float = 0.7
    max_tokens: int = 4096
    base_url: Optional[str] = None
    timeout_seconds: float = 60.0
    retry: LLMRetryConfig = Field(default_factory=LLMRetryConfig)

    @field_validator("provider")
    @classmethod
    def _known_provider(cls, v: str) -> str:
        if v not in _KNOWN_PROVIDERS:
            raise ValueError(
                f"llm.provider '{v}' is not supported. "
                f"Supported: {sorted(_KNOWN_PROVIDERS)}"
            )
        return v

    @field_validator("temperature")
    @classmethod
    def _valid_temperature(cls, v: float) -> float:
        if not (0.0 <= v <= 2.0):
            raise ValueError("llm.temperature must be between 0.0 and 2.0")
        return v

    @field_validator("max_tokens")
    @classmethod
    def _positive_tokens(cls, v: int) -> int:
        if v < 1:
            raise ValueError("llm.max_tokens must be >= 1")
        return v


class LoggingConfig(BaseModel):
    level: str = "INFO"
    log_dir: str = "./data/logs"
    max_file_size_mb: int = 100
    backup_count: int = 5
    console_output: bool = False
    json_format: bool = True

    @field_validator("level")
    @classmethod
    def _valid_log_level(cls, v: str) -> str:
        upper = v.upper()
        if upper not in _VALID_LOG_LEVELS:
            raise ValueError(
                f"logging.level '{v}' is not valid. "
                f"Must be one of: {sorted(_VALID_LOG_LEVELS)}"
            )
        return upper


# ─────────────────────────────────────────────────────────────────────────────
# Settings
# ─────────────────────────────────────────────────────────────────────────────

class Settings(BaseSettings):
    """
    Where a key is set more than once, the first of these wins:
      1. keyword arguments (load_settings() passes the config.yaml sections)
      2. environment variables
      3. .env
      4. field defaults
    Nested sections merge key by key, so AGENT__MAX_STEPS still fills a
    config.yaml agent section that doesn't mention max_steps.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
    )

    # secrets, normally from .env or the environment
    openai_api_key: Optional[str] = Field(default=None, alias="OPENAI_API_KEY")
    openai_base_url: Optional[str] = Field(default=None, alias="OPENAI_BASE_URL")

    # sections, normally from config.yaml
    agent: AgentConfig = Field(default_factory=AgentConfig)
    breaker: BreakerConfig = Field(default_factory=BreakerConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    stream: StreamConfig = Field(default_factory=StreamConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)



    @property
    def llm_base_url(self) -> Optional[str]:
        return self.llm.base_url or self.openai_base_url

    def validate_all(self) -> None:
        """
        Full startup validation. Raises ConfigError listing every problem found.

        Pydantic field validators catch type/value errors at parse time; this
        method catches cross-field and runtime problems Pydantic can't see
        (API key presence, a breaker that can never trip inside the step
        bound, a stream timeout shorter than the inter-step delay).
        """
        errors: list[str] = []

        # ── LLM provider API key ─────────────────────────────────────────────
        if self.llm.provider == "openai" and not self.openai_api_key:
            errors.append(
                "LLM provider 'openai' requires OPENAI_API_KEY to be set "
                "in your environment or .env file."
            )

        # ── Terminate tool name ──────────────────────────────────────────────
        if not self.tools.terminate_tool.strip():
            errors.append("tools.terminate_tool must not be empty.")

        # ── Breaker vs. step bound ───────────────────────────────────────────
        if self.breaker.max_consecutive_failures > self.agent.max_steps:
            errors.append(
                f"breaker.max_consecutive_failures "
                f"({self.breaker.max_consecutive_failures}) exceeds "
                f"agent.max_steps ({self.agent.max_steps}); the breaker "
                f"could never trip."
            )

        # ── Stream timeout vs. step delay ────────────────────────────────────
        if self.stream.timeout_seconds <= self.agent.step_delay_seconds:
            errors.append(
                "stream.timeout_seconds must be longer than agent.step_delay_ms."
            )

        if errors:
            numbered = "\n".join(f"  {i+1}. {e}" for i, e in enumerate(errors))
            raise ConfigError(
                f"\n\nreactloop cannot start, {len(errors)} configuration "
                f"problem(s) found:\n\n{numbered}\n\n"
                f"Fix the issues above in config/config.yaml or your .env file "
                f"and restart.\n"
            )


# ─────────────────────────────────────────────────────────────────────────────
# Loader + singleton
# ─────────────────────────────────────────────────────────────────────────────

_singleton: Optional[Settings] = None
_singleton_lock = _threading.Lock()

_KNOWN_SECTIONS = {"agent", "breaker", "session", "stream", "tools", "llm", "logging"}


def _load_yaml(path: Path) -> dict:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def _resolve_config_path(config_path: str | Path | None) -> Path:
    """
    Which config.yaml to read:
      1. config_path, when given (the --config flag)
      2. $REACTLOOP_CONFIG
      3. config/config.yaml
    """
    if config_path is not None:
        return Path(config_path)
    env_path = os.environ.get("REACTLOOP_CONFIG")
    if env_path:
        return Path(env_path)
    return Path("config/config.yaml")


def load_settings(config_path: str | Path | None = None) -> Settings:
    """Load settings by merging config.yaml with environment variables."""
    global _singleton
    yaml_data = _load_yaml(_resolve_config_path(config_path))
    init_kwargs = {k: v for k, v in yaml_data.items() if k in _KNOWN_SECTIONS}

    instance = Settings(**init_kwargs)
    with _singleton_lock:
        _singleton = instance
    return instance


def get_settings() -> Settings:
    """
    Return the global Settings singleton, loading from the default path
    on first use. Guarded by _singleton_lock against double initialisation.
    """
    global _singleton
    if _singleton is not None:
        return _singleton
    with _singleton_lock:
        if _singleton is None:
            yaml_data = _load_yaml(_resolve_config_path(None))
            _singleton = Settings(
                **{k: v for k, v in yaml_data.items() if k in _KNOWN_SECTIONS}
            )
        return _singleton
