"""Pydantic configuration models for the batch test runner."""
from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator, model_validator

from exceptions import ConfigFileNotFoundError


# Load .env file if present
load_dotenv()


def _fill_from_env(data: Any, env_mapping: dict[str, str]) -> Any:
    if not isinstance(data, dict):
        return data
    for field_name, env_var in env_mapping.items():
        if field_name not in data or data[field_name] is None:
            env_value = os.getenv(env_var)
            if env_value:
                data[field_name] = env_value
    return data


class RemoteConfig(BaseModel):
    """Remote browser-automation API configuration."""

    api_key: str = Field(
        default="",
        description="API key sent as X-Browser-Use-API-Key",
    )
    base_url: str = Field(
        default="https://api.browser-use.com/api/v2",
        description="Base URL of the remote task API",
    )
    poll_interval_ms: int = Field(
        default=3000,
        ge=0,
        le=60000,
        description="Delay between two status polls",
    )
    max_poll_attempts: int = Field(
        default=100,
        ge=1,
        le=10000,
        description="Poll budget before a task is declared timed out",
    )
    request_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="HTTP timeout for a single API request",
    )

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        """Ensure base_url doesn't have trailing slash."""
        return v.rstrip("/")

    @model_validator(mode="before")
    @classmethod
    def load_from_env(cls, data: Any) -> Any:
        """Load values from environment variables if not explicitly set."""
        return _fill_from_env(
            data,
            {
                "api_key": "BROWSER_USE_API_KEY",
                "base_url": "BROWSER_USE_BASE_URL",
            },
        )


class OrchestratorConfig(BaseModel):
    """Batch execution settings."""

    inter_test_delay_seconds: float = Field(
        default=10.0,
        ge=0.0,
        le=600.0,
        description="Pause between two consecutive tests when neither the request nor the project sets one",
    )
    min_inter_test_delay_seconds: float = Field(
        default=5.0,
        ge=0.0,
        le=600.0,
        description="Lower bound applied to every resolved inter-test delay",
    )
    create_retry_attempts: int = Field(
        default=4,
        ge=1,
        le=10,
        description="Task creation attempts when the remote API hits its concurrency limit",
    )
    create_retry_wait_seconds: float = Field(
        default=20.0,
        ge=0.0,
        description="Initial wait before retrying task creation",
    )
    create_retry_max_wait_seconds: float = Field(
        default=90.0,
        ge=0.0,
        description="Upper bound for the task creation retry wait",
    )
    save_browser_data: bool = Field(
        default=True,
        description="Ask the remote API to keep browser data for the task",
    )
    default_max_steps: int = Field(
        default=10,
        ge=1,
        le=500,
        description="Agent step limit when the project does not set one",
    )
    default_record_video: bool = Field(
        default=True,
        description="Record video when the project does not say otherwise",
    )


class StoreConfig(BaseModel):
    """Persistence configuration."""

    database_url: str = Field(
        default="sqlite+aiosqlite:///./batches.db",
        description="SQLAlchemy async database URL",
    )
    echo_sql: bool = Field(default=False, description="Log emitted SQL")

    @model_validator(mode="before")
    @classmethod
    def load_from_env(cls, data: Any) -> Any:
        return _fill_from_env(data, {"database_url": "BATCH_DATABASE_URL"})


class ServerConfig(BaseModel):
    """HTTP trigger configuration."""

    host: str = Field(default="127.0.0.1")
    port: int = Field(default=8765, ge=1, le=65535)
    max_concurrent_batches: int = Field(
        default=4,
        ge=1,
        le=64,
        description="Number of batches allowed to run at the same time",
    )


class AppConfig(BaseModel):
    """Root configuration model combining all config sections."""

    remote: RemoteConfig = Field(default_factory=RemoteConfig)
    orchestrator: OrchestratorConfig = Field(default_factory=OrchestratorConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)

    verbose: bool = Field(
        default=False,
        description="Enable verbose logging",
    )


def load_config(
    config_path: Optional[Path] = None,
    overrides: Optional[dict[str, Any]] = None,
) -> AppConfig:
    """
    Load configuration from file with overrides.

    Priority (highest to lowest):
    1. Overrides
    2. Environment variables
    3. Config file
    4. Defaults
    """
    config_data: dict[str, Any] = {}

    if config_path is None:
        config_path = Path("config.json")
        if not config_path.exists():
            config_path = None
    elif not config_path.exists():
        raise ConfigFileNotFoundError(str(config_path))

    if config_path is not None:
        with open(config_path, "r", encoding="utf-8") as f:
            if config_path.suffix in {".yaml", ".yml"}:
                config_data = yaml.safe_load(f) or {}
            else:
                config_data = json.load(f)

    config = AppConfig.model_validate(config_data)

    if overrides:
        config_dict = config.model_dump()
        _apply_overrides(config_dict, overrides)
        config = AppConfig.model_validate(config_dict)

    return config


def _apply_overrides(config_dict: dict[str, Any], overrides: dict[str, Any]) -> None:
    """Apply flat overrides (e.g. from the command line) to a config dictionary."""
    override_mapping = {
        "api_key": ("remote", "api_key"),
        "base_url": ("remote", "base_url"),
        "poll_interval_ms": ("remote", "poll_interval_ms"),
        "max_poll_attempts": ("remote", "max_poll_attempts"),
        "inter_test_delay": ("orchestrator", "inter_test_delay_seconds"),
        "database_url": ("store", "database_url"),
        "host": ("server", "host"),
        "port": ("server", "port"),
        "max_concurrent_batches": ("server", "max_concurrent_batches"),
        "verbose": ("verbose", None),
    }

    for key, value in overrides.items():
        if value is None:
            continue

        mapping = override_mapping.get(key)
        if mapping:
            section, field = mapping
            if field is None:
                config_dict[section] = value
            else:
                config_dict[section][field] = value
