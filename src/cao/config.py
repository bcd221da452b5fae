"""YAML configuration for the orchestrator and its CLI."""

from __future__ import annotations

import copy
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

DEFAULT_CONFIG_NAME = "config.yaml"
HARD_MAX_ITERATIONS = 100

API_KEY_ENV = {
    "gemini": "GEMINI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "xai": "XAI_API_KEY",
}

DEFAULT_CONFIG_TEMPLATE: Dict[str, Any] = {
    "models": {
        "default": "gemini-2.5-flash",
        "max_tokens": 32768,
        "temperature": 0.7,
        "timeout": 120,
        "stream": True,
        "api_keys": {},
    },
    "loop": {
        "max_iterations": 30,
        "history_limit": 20,
        "history_char_limit": 4000,
        "blackboard_limit": 10,
    },
    "paths": {
        "data": "data",
        "db_path": "data/cao.sqlite",
        "logs": "data/logs",
        "staging": "data/staging.json",
    },
    "workspace": {
        "root": ".",
        "repo_id": "local",
    },
}


class ConfigError(RuntimeError):
    """Raised when configuration cannot be read or validated."""


class _Section(BaseModel):
    model_config = ConfigDict(extra="forbid")


class ModelSettings(_Section):
    default: str = "gemini-2.5-flash"
    max_tokens: int = Field(default=32768, gt=0)
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    timeout: float = Field(default=120.0, gt=0)
    stream: bool = True
    api_keys: Dict[str, Optional[str]] = Field(default_factory=dict)

    def resolved_api_keys(self) -> Dict[str, Optional[str]]:
        """Config keys first, then the provider environment variables."""
        return {
            provider: self.api_keys.get(provider) or os.getenv(env_name)
            for provider, env_name in API_KEY_ENV.items()
        }


class LoopSettings(_Section):
    max_iterations: int = 30
    history_limit: int = Field(default=20, ge=2)
    history_char_limit: int = Field(default=4000, ge=200)
    blackboard_limit: int = Field(default=10, ge=0, le=50)

    @field_validator("max_iterations")
    @classmethod
    def _clamp_iterations(cls, value: int) -> int:
        return max(1, min(int(value), HARD_MAX_ITERATIONS))


class PathSettings(_Section):
    data: str = "data"
    db_path: Optional[str] = None
    logs: Optional[str] = "data/logs"
    staging: Optional[str] = "data/staging.json"


class WorkspaceSettings(_Section):
    root: str = "."
    repo_id: str = "local"


class AgentConfig(_Section):
    models: ModelSettings = Field(default_factory=ModelSettings)
    loop: LoopSettings = Field(default_factory=LoopSettings)
    paths: PathSettings = Field(default_factory=PathSettings)
    workspace: WorkspaceSettings = Field(default_factory=WorkspaceSettings)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "AgentConfig":
        try:
            return cls.model_validate(dict(data))
        except ValidationError as error:
            raise ConfigError(f"Invalid configuration: {error}") from error

    def resolve_path(self, value: Optional[str], base: Path) -> Optional[Path]:
        """Resolve ``value`` relative to the directory holding the config."""
        if not value:
            return None
        candidate = Path(value).expanduser()
        if not candidate.is_absolute():
            candidate = (base / candidate).resolve()
        return candidate


def default_config_data() -> Dict[str, Any]:
    """Return a deep copy of the default configuration template."""
    return copy.deepcopy(DEFAULT_CONFIG_TEMPLATE)


def load_config(config_path: Path) -> AgentConfig:
    """Load YAML configuration from disk; a missing file yields defaults."""
    if not config_path.exists():
        return AgentConfig()
    try:
        with config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as error:
        raise ConfigError(f"Failed to parse config {config_path}: {error}") from error
    except OSError as error:
        raise ConfigError(f"Failed to read config {config_path}: {error}") from error

    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a mapping at the top level.")
    return AgentConfig.from_mapping(data)


def write_config(config_path: Path, config_data: Mapping[str, Any]) -> None:
    """Persist configuration data to disk with stable formatting."""
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(dict(config_data), handle, sort_keys=False)


__all__ = [
    "API_KEY_ENV",
    "AgentConfig",
    "ConfigError",
    "DEFAULT_CONFIG_NAME",
    "DEFAULT_CONFIG_TEMPLATE",
    "HARD_MAX_ITERATIONS",
    "LoopSettings",
    "ModelSettings",
    "PathSettings",
    "WorkspaceSettings",
    "default_config_data",
    "load_config",
    "write_config",
]
