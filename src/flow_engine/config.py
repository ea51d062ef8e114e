"""Configuration for the flow engine.

Configuration is loaded from:
- environment variables
- and a local `.env` file (if present)
"""

from __future__ import annotations

from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from flow_engine.core.definition import DEFAULT_FLOW_ID


class FlowEngineSettings(BaseSettings):
    """Settings shared by the CLI and the REST server.

    Environment variables:
    - LOG_LEVEL                      (optional)
    - FLOW_ENGINE_STATE_PATH         (optional)
    - FLOW_ENGINE_DEFINITION         (optional, built-in id or path to a .json file)
    - FLOW_ENGINE_LOCK_TTL_SECONDS   (optional)
    - FLOW_ENGINE_EVENTS_LIMIT_MAX   (optional)

    Notes:
        Tests can override the env file via `FlowEngineSettings(_env_file=path)`.
    """

    log_level: str = Field(
        default="INFO",
        validation_alias="LOG_LEVEL",
        description="Root logging level",
    )

    state_path: Path = Field(
        default=Path("flow_state"),
        validation_alias="FLOW_ENGINE_STATE_PATH",
        description="Directory where instances, runs, step states and events are persisted",
    )

    definition: str = Field(
        default=DEFAULT_FLOW_ID,
        validation_alias="FLOW_ENGINE_DEFINITION",
        description="Default flow definition: a built-in flow id or a path to a JSON file",
    )

    lock_ttl_seconds: float = Field(
        default=30.0,
        validation_alias="FLOW_ENGINE_LOCK_TTL_SECONDS",
        description="How long an evaluation may hold a flow instance lock",
        ge=1,
        le=3600,
    )

    events_limit_max: int = Field(
        default=100,
        validation_alias="FLOW_ENGINE_EVENTS_LIMIT_MAX",
        description="Upper bound for the number of events returned by the events endpoint",
        ge=1,
    )

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @field_validator("log_level")
    @classmethod
    def _normalise_level(cls, value: str) -> str:
        level = value.strip().upper()
        if level not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(f"Unknown log level: {value}")
        return level
