"""Target trial emulation of statin initiation and dementia.

Cohort construction, time-to-event outcomes with death as a competing risk,
person-period formatting and sequential trial emulation with inverse
probability of switching and censoring weights.
"""

__version__ = "0.1.0"

from .core import (
    DataValidationError,
    EffectEstimate,
    ExpansionError,
    ModelFittingError,
    TrialEmulationError,
)
from .pipeline import PipelineResult, run_pipeline

__all__ = [
    "__version__",
    "DataValidationError",
    "EffectEstimate",
    "ExpansionError",
    "ModelFittingError",
    "PipelineResult",
    "TrialEmulationError",
    "run_pipeline",
]
