"""Base data models and exceptions shared across the pipeline.

This module provides the effect estimate container returned by the outcome
model and the exception hierarchy raised by every analysis step.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

import numpy as np
import pandas as pd


@dataclass
class EffectEstimate:
    """Ratio-scale treatment effect from a marginal structural model.

    Estimates are odds ratios for ``assigned_treatment``; the confidence
    interval is based on the cluster-robust standard error of the log odds
    ratio.
    """

    estimate: float
    log_se: float | None = None
    ci_lower: float | None = None
    ci_upper: float | None = None
    p_value: float | None = None
    confidence_level: float = 0.95

    estimand: str = "ITT"
    method: str = "pooled_logistic_msm"
    n_observations: int | None = None
    n_patients: int | None = None
    n_events: int | None = None

    diagnostics: dict[str, Any] | None = None

    def __post_init__(self) -> None:
        """Validate the estimate after initialization."""
        if self.ci_lower is not None and self.ci_upper is not None:
            if self.ci_lower > self.ci_upper:
                raise ValueError("Lower confidence bound cannot exceed upper bound")

        if self.confidence_level <= 0 or self.confidence_level >= 1:
            raise ValueError("Confidence level must be between 0 and 1")

        if self.estimate <= 0 or not np.isfinite(self.estimate):
            raise ValueError("Odds ratio must be a positive finite number")

    @property
    def is_significant(self) -> bool:
        """True when the confidence interval excludes the null value of 1."""
        if self.ci_lower is None or self.ci_upper is None:
            return False
        return self.ci_lower > 1 or self.ci_upper < 1

    @property
    def confidence_interval(self) -> tuple[float, float] | None:
        """Get confidence interval as a tuple."""
        if self.ci_lower is not None and self.ci_upper is not None:
            return (self.ci_lower, self.ci_upper)
        return None


class TrialEmulationError(Exception):
    """Base exception class for target trial emulation errors."""

    pass


class DataValidationError(TrialEmulationError):
    """Raised when input data fails validation."""

    pass


class ModelFittingError(TrialEmulationError):
    """Raised when a weight or outcome model cannot be fitted."""

    pass


class ExpansionError(TrialEmulationError):
    """Raised when person-period data cannot be expanded into trials."""

    pass


def require_columns(df: pd.DataFrame, columns: Iterable[str], context: str = "") -> None:
    """Raise DataValidationError if any of ``columns`` is absent from ``df``."""
    missing = [c for c in columns if c not in df.columns]
    if missing:
        where = f" for {context}" if context else ""
        raise DataValidationError(f"Missing required columns{where}: {missing}")


def require_binary(df: pd.DataFrame, columns: Iterable[str]) -> None:
    """Raise DataValidationError if a column holds values other than 0/1."""
    for col in columns:
        values = pd.unique(df[col].dropna())
        if not set(np.asarray(values).tolist()) <= {0, 1}:
            raise DataValidationError(
                f"Column '{col}' must be binary (0/1), found {sorted(values)[:5]}"
            )
