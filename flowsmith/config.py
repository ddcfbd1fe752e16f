from __future__ import annotations

import os
from typing import Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import (
    DEFAULT_MAX_CONCURRENT_INSTANCES,
    DEFAULT_MAX_RETRIES,
    DEFAULT_MAX_STEPS,
    DEFAULT_STEP_AGENTS,
    DEFAULT_STEP_TIMEOUT_MS,
    FALLBACK_AGENT,
    KNOWN_AGENTS,
)


class RedisConfig(BaseModel):
    """Configuration for the Redis event sink."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class EventsConfig(BaseModel):
    """Progress event sink settings."""

    backend: Literal["inmemory", "redis", "none"] = "inmemory"
    redis: RedisConfig = RedisConfig()


class RetryConfig(BaseModel):
    """Deployment-wide recovery policy."""

    max_retries: int = Field(default=DEFAULT_MAX_RETRIES, ge=0)
    backoff_base_ms: int = Field(default=1000, ge=0)
    backoff_factor: float = Field(default=2.0, ge=1.0)
    backoff_jitter_ms: int = Field(default=250, ge=0)
    max_backoff_ms: int = Field(default=30_000, ge=0)
    pause_on_error: bool = False


class EngineSettings(BaseModel):
    """Execution loop limits."""

    default_timeout_ms: int = Field(default=DEFAULT_STEP_TIMEOUT_MS, gt=0)
    max_steps: int = Field(default=DEFAULT_MAX_STEPS, gt=0)
    max_concurrent_instances: int = Field(
        default=DEFAULT_MAX_CONCURRENT_INSTANCES, gt=0
    )
    cycle_artifacts: Literal["per_item", "merged"] = "per_item"


class DefinitionsConfig(BaseModel):
    """Where definitions live and how missing agents are inferred."""

    workflows_path: str = "workflows"
    agent_defaults: Dict[str, str] = Field(
        default_factory=lambda: dict(DEFAULT_STEP_AGENTS)
    )
    fallback_agent: str = FALLBACK_AGENT
    known_agents: List[str] = Field(default_factory=lambda: list(KNOWN_AGENTS))
    templates_path: Optional[str] = None
    tasks_path: Optional[str] = None
    checklists_path: Optional[str] = None


class ArtifactsConfig(BaseModel):
    """Optional out-of-record artifact storage."""

    backend: Literal["inline", "memory", "file"] = "inline"
    path: str = ".flowsmith/artifacts"


class AgentModelConfig(BaseModel):
    """Model binding for one agent id when running through pydantic-ai."""

    model: str
    instructions: Optional[str] = None


class FlowsmithConfig(BaseModel):
    """Top-level configuration model."""

    retry: RetryConfig = RetryConfig()
    engine: EngineSettings = EngineSettings()
    definitions: DefinitionsConfig = DefinitionsConfig()
    events: EventsConfig = EventsConfig()
    artifacts: ArtifactsConfig = ArtifactsConfig()
    agents: Dict[str, AgentModelConfig] = Field(default_factory=dict)
    database_url: Optional[str] = None


def load_config(path: Optional[str] = None) -> FlowsmithConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to FLOWSMITH_CONFIG env
            variable or 'flowsmith.yaml' in the current directory.
    """

    config_path = path or os.getenv("FLOWSMITH_CONFIG", "flowsmith.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = FlowsmithConfig(**data)
    else:
        config = FlowsmithConfig()

    env_db_url = os.getenv("FLOWSMITH_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_events = os.getenv("FLOWSMITH_EVENTS")
    if env_events:
        config.events.backend = env_events.lower()
    return config
