"""Sequential target trial emulation.

This module provides the protocol, weighting, trial expansion and outcome
model used to emulate a sequence of target trials from person-period data.
"""

from .emulator import TargetTrialEmulator
from .expansion import expand_trials, person_trial_summary
from .msm import ANALYSIS_WEIGHTS, MarginalStructuralModel
from .preparation import prepare_person_period
from .protocol import TrialEmulationProtocol
from .results import (
    EmulationDiagnostics,
    EmulationReport,
    TargetTrialResults,
    compare_itt_vs_pp,
)
from .weights import FittedWeightModel, WeightModelFitter, WeightModelSummary

__all__ = [
    "ANALYSIS_WEIGHTS",
    "EmulationDiagnostics",
    "EmulationReport",
    "FittedWeightModel",
    "MarginalStructuralModel",
    "TargetTrialEmulator",
    "TargetTrialResults",
    "TrialEmulationProtocol",
    "WeightModelFitter",
    "WeightModelSummary",
    "compare_itt_vs_pp",
    "expand_trials",
    "person_trial_summary",
    "prepare_person_period",
]
