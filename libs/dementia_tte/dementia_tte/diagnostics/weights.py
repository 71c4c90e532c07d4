"""Distribution diagnostics for inverse probability weights.

This module summarizes the weights carried by the expanded trial data so
that extreme weights and a collapsing effective sample size are visible
before the outcome model is interpreted.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any

import numpy as np
from numpy.typing import ArrayLike
from scipy import stats

from ..core.base import DataValidationError

# Configure logger
logger = logging.getLogger(__name__)


@dataclass
class WeightSummary:
    """Summary statistics of a weight distribution."""

    n_observations: int
    min_weight: float
    max_weight: float
    mean_weight: float
    median_weight: float
    std_weight: float
    skewness: float
    percentiles: dict[str, float]
    effective_sample_size: float
    ess_ratio: float
    extreme_weight_threshold: float
    extreme_weight_count: int
    extreme_weight_percentage: float

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def summarize_weights(
    weights: ArrayLike,
    extreme_threshold: float = 10.0,
    low_ess_ratio: float = 0.5,
) -> WeightSummary:
    """Analyze a weight distribution.

    Args:
        weights: Weights to analyze
        extreme_threshold: Weights above this value are flagged as extreme
        low_ess_ratio: Warn when ESS / n falls below this ratio

    Returns:
        WeightSummary with diagnostic information

    Raises:
        DataValidationError: If the weights are empty, negative or not finite
    """
    weights = np.asarray(weights, dtype=float)
    n_obs = len(weights)
    if n_obs == 0:
        raise DataValidationError("Cannot summarize an empty weight vector")
    if not np.all(np.isfinite(weights)) or np.any(weights < 0):
        raise DataValidationError("Weights must be finite and non-negative")

    logger.debug(f"Weight range: [{np.min(weights):.6f}, {np.max(weights):.6f}]")

    extreme_count = int(np.sum(weights > extreme_threshold))
    extreme_percentage = extreme_count / n_obs * 100
    if extreme_count > 0:
        logger.warning(
            f"Found {extreme_count} extreme weights ({extreme_percentage:.1f}%) "
            f"above threshold {extreme_threshold}"
        )

    # ESS = (sum of weights)^2 / sum of weights^2
    sum_sq = np.sum(weights**2)
    ess = float(np.sum(weights) ** 2 / sum_sq) if sum_sq > 0 else 0.0
    ess_ratio = ess / n_obs

    logger.info(f"Effective sample size: {ess:,.1f} ({ess_ratio:.1%} of original)")
    if ess_ratio < low_ess_ratio:
        logger.warning(
            f"Low effective sample size ({ess_ratio:.1%}), consider weight truncation"
        )

    percentiles = {
        f"p{p}": float(np.percentile(weights, p)) for p in (1, 5, 25, 50, 75, 95, 99)
    }
    skewness = float(stats.skew(weights)) if np.ptp(weights) > 0 else 0.0

    return WeightSummary(
        n_observations=n_obs,
        min_weight=float(np.min(weights)),
        max_weight=float(np.max(weights)),
        mean_weight=float(np.mean(weights)),
        median_weight=float(np.median(weights)),
        std_weight=float(np.std(weights)),
        skewness=skewness,
        percentiles=percentiles,
        effective_sample_size=ess,
        ess_ratio=ess_ratio,
        extreme_weight_threshold=extreme_threshold,
        extreme_weight_count=extreme_count,
        extreme_weight_percentage=extreme_percentage,
    )
