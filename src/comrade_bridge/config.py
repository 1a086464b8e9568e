"""Configuration for the Comrade chat bridge.

Config discovery (first match wins):
  1. ``--config`` flag
  2. ``./comrade_bridge.yaml``
  3. ``~/.comrade_bridge/comrade_bridge.yaml``
  4. Built-in defaults
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Protocol

import yaml
from pydantic import BaseModel, Field

from comrade_bridge.errors import BridgeError, ErrorCode
from comrade_bridge.types import ExecutionContext, SecurityLevel

_logger = logging.getLogger(__name__)

SUPPORTED_PROVIDERS = ("openai", "anthropic", "ollama", "custom")


class AgentConfig(BaseModel):
    """Connection settings for one agent (provider + model)."""

    provider: str = "ollama"
    model: str = "llama3"
    api_key: str | None = None
    api_key_env: str | None = None  # consulted when api_key is unset
    endpoint: str | None = None
    temperature: float | None = Field(default=None, ge=0, le=2)
    max_tokens: int | None = Field(default=None, gt=0)
    timeout: float = Field(default=30.0, gt=0)  # seconds
    extra_headers: dict[str, str] = Field(default_factory=dict)

    def resolved_api_key(self) -> str | None:
        if self.api_key:
            return self.api_key
        if self.api_key_env:
            return os.environ.get(self.api_key_env) or None
        return None


class RetrySettings(BaseModel):
    max_attempts: int = Field(default=3, ge=0)
    base_delay: float = Field(default=1.0, ge=0)  # seconds
    max_delay: float = Field(default=30.0, gt=0)


class StreamSettings(BaseModel):
    native: bool = True  # False = simulate streaming over one plain request
    simulated_chunk_delay: float = Field(default=0.03, ge=0)
    max_stream_bytes: int = Field(default=10 * 1024 * 1024, gt=0)
    pressure_check_interval: int = Field(default=64, gt=0)  # chunks


class SecuritySettings(BaseModel):
    level: SecurityLevel = SecurityLevel.NORMAL
    allow_dangerous: bool = False


class BridgeConfig(BaseModel):
    default_agent: str = "local"
    agents: dict[str, AgentConfig] = Field(
        default_factory=lambda: {"local": AgentConfig()},
    )
    retry: RetrySettings = Field(default_factory=RetrySettings)
    stream: StreamSettings = Field(default_factory=StreamSettings)
    security: SecuritySettings = Field(default_factory=SecuritySettings)
    system_prompt: str | None = None
    workspace: str | None = None

    def execution_context(self, agent_id: str | None = None) -> ExecutionContext:
        return ExecutionContext(
            agent_id=agent_id or self.default_agent,
            workspace=self.workspace,
            level=self.security.level,
            allow_dangerous=self.security.allow_dangerous,
        )


# ---------------------------------------------------------------------------
# Config provider
# ---------------------------------------------------------------------------

class ConfigProvider(Protocol):
    """Supplies read-only per-agent settings."""

    def get_agent(self, name: str | None = None) -> AgentConfig:
        ...


class StaticConfigProvider:
    """``ConfigProvider`` backed by a loaded ``BridgeConfig``."""

    def __init__(self, config: BridgeConfig) -> None:
        self.config = config

    def agent_names(self) -> list[str]:
        return list(self.config.agents)

    def get_agent(self, name: str | None = None) -> AgentConfig:
        key = name or self.config.default_agent
        agent = self.config.agents.get(key)
        if agent is None:
            available = ", ".join(sorted(self.config.agents)) or "(none)"
            raise BridgeError(
                f"Unknown agent '{key}'. Available: {available}",
                ErrorCode.CONFIGURATION_ERROR,
            )
        # Callers get a copy; configuration stays read-only during a call
        return agent.model_copy(deep=True)


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

CONFIG_FILENAME = "comrade_bridge.yaml"


def load_config(
    config_path: str | Path | None = None,
) -> tuple[BridgeConfig, Path | None]:
    """Load configuration from a YAML file.

    Returns ``(config, resolved_path)``.  *resolved_path* is ``None`` when
    no file was found and built-in defaults are used.
    """
    if config_path is None:
        for d in (Path.cwd(), Path.home() / ".comrade_bridge"):
            candidate = d / CONFIG_FILENAME
            if candidate.exists():
                config_path = candidate
                break

    if config_path is None:
        _logger.info("No config file found, using defaults")
        return BridgeConfig(), None

    resolved = Path(config_path)
    if not resolved.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    _logger.info("Loading config from %s", resolved)
    with open(resolved) as f:
        raw: dict[str, Any] = yaml.safe_load(f) or {}
    return BridgeConfig.model_validate(raw), resolved.resolve()
