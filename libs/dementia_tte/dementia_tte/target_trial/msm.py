"""Marginal structural model for the expanded sequence of trials.

The outcome model is a weighted pooled logistic regression of the per-period
outcome on the assigned treatment, follow-up time, trial period and baseline
covariates. Because every patient contributes to many trials, standard
errors are clustered on the patient identifier.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

import numpy as np
import pandas as pd
import statsmodels.api as sm
from scipy import stats
from scipy.special import expit

from ..core.base import (
    DataValidationError,
    EffectEstimate,
    ModelFittingError,
    require_binary,
    require_columns,
)

logger = logging.getLogger(__name__)

ANALYSIS_WEIGHTS = ("asis", "unweighted", "p99", "weight_limits")


def _term_label(term: str) -> str:
    return f"I({term[:-3]}**2)" if term.endswith("_sq") else term


class MarginalStructuralModel:
    """Weighted pooled logistic regression with cluster-robust covariance."""

    def __init__(
        self,
        analysis_weights: str = "p99",
        weight_limits: tuple[float, float] = (0.0, np.inf),
        confidence_level: float = 0.95,
        id_col: str = "id",
    ):
        """Initialize the model.

        Args:
            analysis_weights: ``asis`` uses the weights unchanged,
                ``unweighted`` ignores them, ``p99`` truncates them at the
                1st and 99th percentiles and ``weight_limits`` clips them to
                ``weight_limits``
            weight_limits: Lower and upper bounds for ``weight_limits``
            confidence_level: Confidence level for intervals
            id_col: Cluster (patient) identifier column
        """
        if analysis_weights not in ANALYSIS_WEIGHTS:
            raise ValueError(f"analysis_weights must be one of {ANALYSIS_WEIGHTS}")
        low, high = weight_limits
        if low < 0 or high <= low:
            raise ValueError("weight_limits must satisfy 0 <= low < high")
        if not 0 < confidence_level < 1:
            raise ValueError("Confidence level must be between 0 and 1")

        self.analysis_weights = analysis_weights
        self.weight_limits = (float(low), float(high))
        self.confidence_level = confidence_level
        self.id_col = id_col

        self.result_ = None
        self.terms_: list[str] = []
        self.outcome_covariates_: list[str] = []
        self.event_col_: str | None = None
        self.formula_: str | None = None
        self.n_patients_: int | None = None
        self.n_events_: int | None = None

    @property
    def is_fitted(self) -> bool:
        return self.result_ is not None

    def _check_fitted(self) -> None:
        if not self.is_fitted:
            raise ModelFittingError("Model must be fitted before use")

    def _prepare_weights(self, weights: pd.Series) -> np.ndarray:
        w = weights.to_numpy(dtype=float)
        if self.analysis_weights == "unweighted":
            return np.ones_like(w)
        if self.analysis_weights == "p99":
            low, high = np.percentile(w, [1, 99])
            return np.clip(w, low, high)
        if self.analysis_weights == "weight_limits":
            return np.clip(w, *self.weight_limits)
        return w

    def _design(self, frame: pd.DataFrame, terms: Sequence[str] | None = None) -> pd.DataFrame:
        followup = frame["followup_time"].to_numpy(dtype=float)
        trial = frame["trial_period"].to_numpy(dtype=float)
        columns = {
            "Intercept": np.ones(len(frame)),
            "assigned_treatment": frame["assigned_treatment"].to_numpy(dtype=float),
            "followup_time": followup,
            "followup_time_sq": followup**2,
            "trial_period": trial,
            "trial_period_sq": trial**2,
        }
        for col in self.outcome_covariates_:
            columns[col] = frame[col].to_numpy(dtype=float)
        design = pd.DataFrame(columns, index=frame.index)
        return design[list(terms)] if terms is not None else design

    def fit(
        self,
        expanded: pd.DataFrame,
        outcome_covariates: Sequence[str] = (),
        event_col: str = "outcome",
    ) -> "MarginalStructuralModel":
        """Fit the pooled logistic outcome model.

        Args:
            expanded: Output of ``expand_trials``
            outcome_covariates: Numeric baseline covariates
            event_col: Binary event column (outcome or competing event)

        Returns:
            self

        Raises:
            DataValidationError: If columns are missing or non-numeric
            ModelFittingError: If the model cannot be estimated
        """
        self.outcome_covariates_ = list(outcome_covariates)
        require_columns(
            expanded,
            [self.id_col, "trial_period", "followup_time", "assigned_treatment", event_col]
            + (["weight"] if self.analysis_weights != "unweighted" else [])
            + self.outcome_covariates_,
            "outcome model",
        )
        require_binary(expanded, [event_col, "assigned_treatment"])
        non_numeric = [
            c for c in self.outcome_covariates_ if not pd.api.types.is_numeric_dtype(expanded[c])
        ]
        if non_numeric:
            raise DataValidationError(
                f"Outcome covariates must be numeric: {non_numeric}"
            )

        y = expanded[event_col].to_numpy(dtype=float)
        self.n_events_ = int(y.sum())
        if self.n_events_ == 0:
            raise ModelFittingError(f"No events in '{event_col}'; cannot fit outcome model")
        if expanded["assigned_treatment"].nunique() < 2:
            raise ModelFittingError("Outcome model needs trials in both treatment arms")

        design = self._design(expanded)
        # Terms without variation (e.g. a single trial period) are not estimable
        self.terms_ = [
            t
            for t in design.columns
            if t in ("Intercept", "assigned_treatment") or design[t].nunique() > 1
        ]
        dropped = [t for t in design.columns if t not in self.terms_]
        if dropped:
            logger.debug(f"Dropping constant outcome model terms: {dropped}")
        design = design[self.terms_]

        if "weight" in expanded.columns:
            weights = self._prepare_weights(expanded["weight"])
        else:
            weights = np.ones(len(expanded))
        groups = pd.factorize(expanded[self.id_col])[0]

        try:
            model = sm.GLM(
                y, design, family=sm.families.Binomial(), var_weights=weights
            )
            self.result_ = model.fit(cov_type="cluster", cov_kwds={"groups": groups})
        except Exception as e:
            raise ModelFittingError(f"Outcome model fitting failed: {str(e)}") from e

        self.event_col_ = event_col
        self.n_patients_ = int(expanded[self.id_col].nunique())
        self.formula_ = f"{event_col} ~ " + " + ".join(
            _term_label(t) for t in self.terms_ if t != "Intercept"
        )
        logger.info(
            f"Fitted outcome model {self.formula_} on {len(expanded):,} rows "
            f"({self.n_events_:,} events, {self.n_patients_:,} patients, "
            f"weights: {self.analysis_weights})"
        )
        return self

    def summary(self) -> pd.DataFrame:
        """Coefficient table with cluster-robust standard errors."""
        self._check_fitted()
        ci = self.result_.conf_int(alpha=1 - self.confidence_level)
        return pd.DataFrame(
            {
                "term": self.result_.params.index,
                "estimate": self.result_.params.to_numpy(),
                "robust_se": self.result_.bse.to_numpy(),
                "ci_lower": ci.iloc[:, 0].to_numpy(),
                "ci_upper": ci.iloc[:, 1].to_numpy(),
                "p_value": self.result_.pvalues.to_numpy(),
            }
        )

    def treatment_effect(self, estimand: str = "ITT") -> EffectEstimate:
        """Odds ratio for the assigned treatment."""
        self._check_fitted()
        coef = float(self.result_.params["assigned_treatment"])
        se = float(self.result_.bse["assigned_treatment"])
        z = stats.norm.ppf(1 - (1 - self.confidence_level) / 2)

        return EffectEstimate(
            estimate=float(np.exp(coef)),
            log_se=se,
            ci_lower=float(np.exp(coef - z * se)),
            ci_upper=float(np.exp(coef + z * se)),
            p_value=float(self.result_.pvalues["assigned_treatment"]),
            confidence_level=self.confidence_level,
            estimand=estimand,
            n_observations=int(self.result_.nobs),
            n_patients=self.n_patients_,
            n_events=self.n_events_,
            diagnostics={
                "analysis_weights": self.analysis_weights,
                "formula": self.formula_,
                "log_odds_ratio": coef,
            },
        )

    def _draw_coefficients(
        self, n_samples: int, rng: np.random.Generator
    ) -> np.ndarray:
        params = self.result_.params.to_numpy()
        draws = rng.multivariate_normal(
            params, self.result_.cov_params().to_numpy(), size=n_samples
        )
        return np.vstack([params, draws])

    def predict_cumulative_incidence(
        self,
        newdata: pd.DataFrame,
        followup_times: Sequence[int],
        competing_model: "MarginalStructuralModel | None" = None,
        n_samples: int = 200,
        random_state: int | None = None,
    ) -> pd.DataFrame:
        """Marginal cumulative incidence under each assigned treatment.

        Every row of ``newdata`` is followed from follow-up time 0 under
        ``assigned_treatment`` set to 0 and to 1; predicted discrete hazards
        are turned into cumulative incidence and averaged over rows. With a
        competing-event model the incidence of the outcome is
        ``sum_k h_k * S(k - 1)``, where ``S`` is event-free survival from
        both causes.

        Args:
            newdata: Baseline rows holding ``trial_period`` and the outcome
                covariates
            followup_times: Follow-up times to report
            competing_model: Fitted model for the competing event
            n_samples: Coefficient draws for confidence limits
            random_state: Seed for the coefficient draws

        Returns:
            DataFrame with ``followup_time``, ``cum_inc_control``,
            ``cum_inc_treated``, ``difference`` and lower/upper limits
        """
        self._check_fitted()
        if competing_model is not None:
            competing_model._check_fitted()
        if len(newdata) == 0:
            raise DataValidationError("newdata must contain at least one row")
        followup_times = sorted({int(t) for t in followup_times})
        if not followup_times or followup_times[0] < 0:
            raise ValueError("followup_times must be non-negative integers")
        if n_samples < 0:
            raise ValueError("n_samples must be non-negative")

        rng = np.random.default_rng(random_state)
        betas = self._draw_coefficients(n_samples, rng)
        comp_betas = (
            competing_model._draw_coefficients(n_samples, rng)
            if competing_model is not None
            else None
        )

        horizon = followup_times[-1]
        n_rows = len(newdata)
        newdata = newdata.reset_index(drop=True)
        grid = newdata.loc[newdata.index.repeat(horizon + 1)].copy()
        grid["followup_time"] = np.tile(np.arange(horizon + 1), n_rows)

        curves = {}
        for arm in (0, 1):
            grid["assigned_treatment"] = arm
            X = self._design(grid, self.terms_).to_numpy()
            X_comp = (
                competing_model._design(grid, competing_model.terms_).to_numpy()
                if competing_model is not None
                else None
            )
            curves[arm] = np.column_stack(
                [
                    self._cumulative_incidence(
                        X,
                        betas[s],
                        n_rows,
                        horizon,
                        X_comp,
                        comp_betas[s] if comp_betas is not None else None,
                    )
                    for s in range(len(betas))
                ]
            )

        alpha = 1 - self.confidence_level
        quantiles = [100 * alpha / 2, 100 * (1 - alpha / 2)]
        rows = np.asarray(followup_times)
        out = pd.DataFrame({"followup_time": rows})
        diff = curves[1] - curves[0]
        for name, values in (
            ("cum_inc_control", curves[0]),
            ("cum_inc_treated", curves[1]),
            ("difference", diff),
        ):
            out[name] = values[rows, 0]
            if n_samples > 0:
                limits = np.percentile(values[rows, 1:], quantiles, axis=1)
                out[f"{name}_lower"] = limits[0]
                out[f"{name}_upper"] = limits[1]
        return out

    @staticmethod
    def _cumulative_incidence(
        X: np.ndarray,
        beta: np.ndarray,
        n_rows: int,
        horizon: int,
        X_comp: np.ndarray | None = None,
        beta_comp: np.ndarray | None = None,
    ) -> np.ndarray:
        hazard = expit(X @ beta).reshape(n_rows, horizon + 1)
        if X_comp is None:
            survival = np.cumprod(1 - hazard, axis=1)
            return (1 - survival).mean(axis=0)

        hazard_comp = expit(X_comp @ beta_comp).reshape(n_rows, horizon + 1)
        event_free = np.cumprod((1 - hazard) * (1 - hazard_comp), axis=1)
        event_free_before = np.hstack([np.ones((n_rows, 1)), event_free[:, :-1]])
        return np.cumsum(hazard * event_free_before, axis=1).mean(axis=0)
