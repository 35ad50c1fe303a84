"""
Configuration package for the designation protocol.
Provides centralized configuration management with environment overrides and feature flags.
"""

from .config import (
    Config,
    DatabaseConfig,
    FeatureFlags,
    IdentifierConfig,
    InterviewConfig,
    PersistenceSettings,
    ProtectionConfig,
    config,
    initialize_config,
)
from .environments import EnvironmentManager, environment_manager


def get_flag(name: str) -> bool:
    """Get a feature flag value from the global configuration."""
    return config.get_feature_flag(name)


def is_enabled(name: str) -> bool:
    """Check whether a feature flag is enabled."""
    return bool(get_flag(name))


__all__ = [
    # Main configuration
    "config",
    "Config",
    "initialize_config",
    "DatabaseConfig",
    "InterviewConfig",
    "IdentifierConfig",
    "ProtectionConfig",
    "PersistenceSettings",
    "FeatureFlags",
    # Environments
    "EnvironmentManager",
    "environment_manager",
    # Feature flags
    "get_flag",
    "is_enabled",
]
