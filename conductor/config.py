"""Configuration management with Pydantic Settings + optional YAML."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from conductor.utils.platform import get_config_dir, get_data_dir


class LLMConfig(BaseModel):
    provider: Literal["anthropic", "local"] = "anthropic"
    model: str = "claude-sonnet-4-20250514"
    api_key: str = ""
    local_endpoint: str = "http://localhost:11434/v1"
    max_tokens: int = 2048
    temperature: float = 0.2


class PlannerConfig(BaseModel):
    max_steps: int = 10
    plan_base_cost: float = 0.002
    step_cost_estimate: float = 0.0004


class ExecutorConfig(BaseModel):
    step_cost: float = 0.0004
    action_memory_limit: int = 5
    orphan_threshold_seconds: int = 600
    sweep_cron: str = "*/5 * * * *"
    sweep_enabled: bool = True


class ContinuationConfig(BaseModel):
    """How a finished step hands off to the next invocation.

    ``bus`` keeps everything in-process; ``http`` posts to the continue
    endpoint of a (possibly different) ``conductor serve`` instance.
    """
    mode: Literal["bus", "http"] = "bus"
    base_url: str = ""
    secret: str = ""
    timeout: float = 10.0


class ServerConfig(BaseModel):
    bind: str = "127.0.0.1"
    port: int = 8430
    secret: str = ""
    approval_url_template: str = "/plans/{plan_id}/approve"


class RegistryConfig(BaseModel):
    url: str = ""
    secret: str = ""
    timeout: float = 60.0


class NotificationsConfig(BaseModel):
    push_url: str = ""
    timeout: float = 5.0


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="CONDUCTOR_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    llm: LLMConfig = Field(default_factory=LLMConfig)
    planner: PlannerConfig = Field(default_factory=PlannerConfig)
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)
    continuation: ContinuationConfig = Field(default_factory=ContinuationConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    registry: RegistryConfig = Field(default_factory=RegistryConfig)
    notifications: NotificationsConfig = Field(default_factory=NotificationsConfig)
    data_dir: str = ""
    log_level: str = "INFO"
    log_json: bool = False

    def get_data_dir(self) -> Path:
        if self.data_dir:
            return Path(self.data_dir)
        return get_data_dir()


def load_settings(config_path: str | Path | None = None) -> Settings:
    """Load settings from env vars, optionally overlaying a YAML config."""
    yaml_data: dict[str, Any] = {}

    if config_path is None:
        config_path = os.environ.get("CONDUCTOR_CONFIG")
    if config_path is None:
        default = get_config_dir() / "config.yaml"
        if default.exists():
            config_path = default

    if config_path is not None:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                yaml_data = yaml.safe_load(f) or {}

    # YAML values act as init kwargs; pydantic-settings gives init kwargs
    # priority over env vars.
    return Settings(**yaml_data)
