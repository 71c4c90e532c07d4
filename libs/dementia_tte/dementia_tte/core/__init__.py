"""Core data models and exceptions."""

from .base import (
    DataValidationError,
    EffectEstimate,
    ExpansionError,
    ModelFittingError,
    TrialEmulationError,
    require_binary,
    require_columns,
)

__all__ = [
    "DataValidationError",
    "EffectEstimate",
    "ExpansionError",
    "ModelFittingError",
    "TrialEmulationError",
    "require_binary",
    "require_columns",
]
