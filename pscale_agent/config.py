"""Configuration models and loaders for pscale_agent.

Values come from an optional YAML file plus environment variable overrides.
Credentials are read once at startup and never mutated afterwards.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_CONFIG_PATH = "pscale_agent.yaml"
DEFAULT_MODEL = "gpt-4-1106-preview"


class LoggingConfig(BaseModel):
    """Logging-related configuration."""

    model_config = ConfigDict(populate_by_name=True)

    level: str = "INFO"
    json_logs: bool = Field(default=False, alias="json")


class AgentConfig(BaseModel):
    """Top-level agent configuration."""

    model_config = ConfigDict(extra="forbid")

    host: str = "0.0.0.0"
    port: int = 3000

    openai_base_url: str = "https://api.openai.com"
    openai_api_key: str
    model: str = DEFAULT_MODEL

    planetscale_base_url: str = "https://api.planetscale.com"
    planetscale_org: str
    planetscale_token_id: str
    planetscale_token: str
    planetscale_timeout_seconds: float = 30.0

    completion_connect_retries: int = 0
    completion_retry_interval_ms: int = 1000
    max_tool_loops: int = 10
    disconnect_poll_seconds: float = 0.5

    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("openai_api_key", "planetscale_org", "planetscale_token_id", "planetscale_token")
    @classmethod
    def _require_non_blank(cls, value: str) -> str:
        """Reject credentials that are present but empty."""
        if not value.strip():
            raise ValueError("must not be empty")
        return value.strip()

    @field_validator("max_tool_loops")
    @classmethod
    def _validate_max_tool_loops(cls, value: int) -> int:
        if value < 1:
            raise ValueError("max_tool_loops must be >= 1")
        return value

    @field_validator("logging", mode="before")
    @classmethod
    def _none_to_default_logging(cls, value: Any) -> Any:
        """Treat explicit YAML `null` for logging as defaults."""
        if value is None:
            return {}
        return value

    @property
    def planetscale_auth(self) -> str:
        """Authorization header value expected by the PlanetScale API."""
        return f"{self.planetscale_token_id}:{self.planetscale_token}"

    @property
    def planetscale_org_url(self) -> str:
        """Organization-scoped base URL that every resource path is appended to."""
        return f"{self.planetscale_base_url.rstrip('/')}/v1/organizations/{self.planetscale_org}"


def _load_yaml(path: str | None) -> dict[str, Any]:
    """Load a YAML file into a dictionary.

    Missing files are treated as empty config for environment-only deployments.
    """
    if not path:
        return {}
    cfg_path = Path(path)
    if not cfg_path.exists():
        return {}
    with cfg_path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config root must be object: {path}")
    return data


_INT_KEYS = {
    "port",
    "completion_connect_retries",
    "completion_retry_interval_ms",
    "max_tool_loops",
}
_FLOAT_KEYS = {"planetscale_timeout_seconds", "disconnect_poll_seconds"}


def _override_from_env(data: dict[str, Any]) -> dict[str, Any]:
    """Apply environment variable overrides on top of file configuration."""
    env_map = {
        "host": "PSCALE_AGENT_HOST",
        "port": "PORT",
        "openai_base_url": "OPENAI_BASE_URL",
        "openai_api_key": "OPENAI_API_KEY",
        "model": "PSCALE_AGENT_MODEL",
        "planetscale_base_url": "PLANETSCALE_BASE_URL",
        "planetscale_org": "PLANETSCALE_ORG",
        "planetscale_token_id": "PLANETSCALE_API_TOKEN_ID",
        "planetscale_token": "PLANETSCALE_API_TOKEN",
        "planetscale_timeout_seconds": "PLANETSCALE_TIMEOUT_SECONDS",
        "completion_connect_retries": "PSCALE_AGENT_COMPLETION_CONNECT_RETRIES",
        "completion_retry_interval_ms": "PSCALE_AGENT_COMPLETION_RETRY_INTERVAL_MS",
        "max_tool_loops": "PSCALE_AGENT_MAX_TOOL_LOOPS",
        "disconnect_poll_seconds": "PSCALE_AGENT_DISCONNECT_POLL_SECONDS",
        "logging.level": "LOG_LEVEL",
        "logging.json_logs": "PSCALE_AGENT_LOG_JSON",
    }

    out = dict(data)
    out["logging"] = dict(out.get("logging") or {})

    for key, env_name in env_map.items():
        value = os.getenv(env_name)
        if value is None:
            continue

        if key in _INT_KEYS:
            out[key] = int(value)
        elif key in _FLOAT_KEYS:
            out[key] = float(value)
        elif key == "logging.json_logs":
            out["logging"]["json"] = value.lower() in {"1", "true", "yes", "on"}
        elif key == "logging.level":
            out["logging"]["level"] = value
        else:
            out[key] = value

    return out


def resolve_config_path(path: str | None = None) -> str:
    """Pick the config file path from CLI, environment or default."""
    return path or os.getenv("PSCALE_AGENT_CONFIG") or DEFAULT_CONFIG_PATH


def load_config(path: str | None = None) -> AgentConfig:
    """Load, merge, and validate agent configuration."""
    raw = _load_yaml(resolve_config_path(path))
    raw = _override_from_env(raw)
    return AgentConfig.model_validate(raw)
