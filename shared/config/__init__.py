"""Configuration management for the target trial emulation pipeline."""

from .base import (
    BaseConfiguration,
    ConfigurationManager,
    Environment,
    config_manager,
)
from .tte_config import TrialEmulationConfig

__all__ = [
    "BaseConfiguration",
    "ConfigurationManager",
    "Environment",
    "config_manager",
    "TrialEmulationConfig",
]
