"""Configuration module for the batch test runner."""
from config.models import (
    AppConfig,
    OrchestratorConfig,
    RemoteConfig,
    ServerConfig,
    StoreConfig,
    load_config,
)

__all__ = [
    "AppConfig",
    "OrchestratorConfig",
    "RemoteConfig",
    "ServerConfig",
    "StoreConfig",
    "load_config",
]
